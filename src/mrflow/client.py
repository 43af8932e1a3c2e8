"""GitLab REST API client for merge request timeline data."""

from __future__ import annotations

import logging
import re
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from .config import Config
from .errors import (
    ApiError,
    AuthenticationError,
    NetworkError,
    NotFoundError,
    RateLimitedError,
)
from .models import Commit, MergeRequestInfo, Note, Pipeline, User

logger = logging.getLogger(__name__)

_ADDED_LINE = re.compile(r"^\+(?!\+)", re.MULTILINE)
_REMOVED_LINE = re.compile(r"^-(?!-)", re.MULTILINE)


class GitLabClient:
    """Small, typed client for the GitLab merge request APIs."""

    _PAGE_SIZE = 100
    _MAX_ATTEMPTS = 3
    _DEFAULT_RETRY_AFTER_SECONDS = 60
    _MAX_DIFF_BYTES = 100 * 1024
    _LARGE_DIFF_LINES = 100

    def __init__(self, config: Config) -> None:
        """Initialize an authenticated GitLab API client.

        Args:
            config: Validated runtime configuration including URL, project and token.
        """
        self._config = config
        self._timeout_seconds = config.request_timeout_seconds
        self._base_url = f"{config.base_url}/api/v4/projects/{quote(config.project, safe='')}"

        self._session = requests.Session()
        self._session.headers.update(
            {"Accept": "application/json", "PRIVATE-TOKEN": config.token}
        )

    def _build_url(self, path: str) -> str:
        """Build a fully qualified API URL from a path below the project resource."""
        return f"{self._base_url}/{path.lstrip('/')}"

    def _parse_datetime(self, value: Optional[str]) -> Optional[datetime]:
        """Parse GitLab ISO8601 timestamps into timezone-aware datetimes."""
        if not value:
            return None

        normalized = value[:-1] + "+00:00" if value.endswith("Z") else value
        parsed = datetime.fromisoformat(normalized)
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed

    def _retry_after_seconds(self, response: requests.Response) -> float:
        """Return the server's Retry-After hint, falling back to 60 seconds."""
        header = response.headers.get("Retry-After")
        if header:
            try:
                return max(0.0, float(header))
            except ValueError:
                pass
        return float(self._DEFAULT_RETRY_AFTER_SECONDS)

    def _request(self, path: str, params: Optional[Dict[str, Any]] = None) -> requests.Response:
        """Execute a GET request, retrying only on HTTP 429.

        Raises:
            AuthenticationError: On HTTP 401.
            NotFoundError: On HTTP 403 or 404.
            NetworkError: If the transport fails.
            RateLimitedError: If every attempt was rate limited.
            ApiError: On any other HTTP status >= 400.
        """
        url = self._build_url(path)
        retry_after = float(self._DEFAULT_RETRY_AFTER_SECONDS)

        for attempt in range(1, self._MAX_ATTEMPTS + 1):
            try:
                response = self._session.get(url, params=params, timeout=self._timeout_seconds)
            except requests.RequestException as exc:
                raise NetworkError(f"GitLab request failed: GET {url}: {exc}") from exc

            status_code = response.status_code
            if status_code == 429:
                retry_after = self._retry_after_seconds(response)
                if attempt < self._MAX_ATTEMPTS:
                    logger.warning(
                        "Rate limited by GitLab; retrying",
                        extra={"attempt": attempt, "retry_after": retry_after, "url": url},
                    )
                    time.sleep(retry_after)
                    continue
                break

            if status_code == 401:
                raise AuthenticationError(
                    "GitLab rejected the access token (HTTP 401). Check 'GITLAB_TOKEN'."
                )
            if status_code in (403, 404):
                raise NotFoundError(
                    f"GitLab resource not found or not accessible: GET {url} returned {status_code}",
                    status_code=status_code,
                )
            if status_code >= 400:
                raise ApiError(
                    f"GitLab API request failed: GET {url} returned {status_code} - {response.text}",
                    status_code=status_code,
                )
            return response

        raise RateLimitedError(
            f"GitLab API rate limit persisted after {self._MAX_ATTEMPTS} attempts: GET {url}",
            retry_after=retry_after,
        )

    def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Execute a GET request and decode the JSON body.

        Raises:
            ApiError: If the body is not valid JSON, or any error of ``_request``.
        """
        response = self._request(path, params)
        try:
            return response.json()
        except ValueError as exc:
            raise ApiError(f"GitLab API returned invalid JSON: GET {self._build_url(path)}") from exc

    def _get_paginated(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Collect every page of a list endpoint by following ``X-Next-Page``."""
        items: List[Dict[str, Any]] = []
        page: Optional[str] = "1"

        while page:
            query = dict(params or {})
            query["per_page"] = self._PAGE_SIZE
            query["page"] = page
            response = self._request(path, query)
            try:
                payload = response.json()
            except ValueError as exc:
                raise ApiError(
                    f"GitLab API returned invalid JSON: GET {self._build_url(path)}"
                ) from exc
            if not isinstance(payload, list):
                raise ApiError(
                    f"GitLab API returned unexpected payload shape: GET {self._build_url(path)}"
                )
            items.extend(payload)
            page = (response.headers.get("X-Next-Page") or "").strip() or None

        return items

    def _parse_user(self, payload: Optional[Dict[str, Any]]) -> Optional[User]:
        if not payload:
            return None
        user_id = payload.get("id")
        return User(
            id=int(user_id) if user_id is not None else None,
            username=str(payload.get("username") or ""),
            name=str(payload.get("name") or payload.get("username") or ""),
        )

    def get_merge_request(self, iid: int) -> MergeRequestInfo:
        """Fetch a single merge request by its project-scoped iid."""
        payload = self._get_json(f"merge_requests/{iid}")
        if not isinstance(payload, dict):
            raise ApiError(f"GitLab API returned unexpected payload shape for MR !{iid}")

        author = self._parse_user(payload.get("author"))
        created_at = self._parse_datetime(payload.get("created_at"))
        if author is None or created_at is None:
            raise ApiError(
                f"GitLab merge request payload is missing required fields: iid={iid}"
            )

        changes = str(payload.get("changes_count") or "0").rstrip("+")
        return MergeRequestInfo(
            iid=int(payload.get("iid", iid)),
            title=str(payload.get("title") or ""),
            author=author,
            created_at=created_at,
            merged_at=self._parse_datetime(payload.get("merged_at")),
            is_draft=bool(payload.get("draft") or payload.get("work_in_progress")),
            source_branch=str(payload.get("source_branch") or ""),
            target_branch=str(payload.get("target_branch") or ""),
            web_url=str(payload.get("web_url") or ""),
            changes_count=int(changes) if changes.isdigit() else 0,
            merged_by=self._parse_user(payload.get("merged_by") or payload.get("merge_user")),
        )

    def list_commits(self, iid: int) -> List[Commit]:
        """List the commits of a merge request."""
        commits: List[Commit] = []
        for item in self._get_paginated(f"merge_requests/{iid}/commits"):
            authored_at = self._parse_datetime(item.get("authored_date") or item.get("created_at"))
            if authored_at is None:
                continue
            commits.append(
                Commit(
                    sha=str(item.get("id") or ""),
                    authored_at=authored_at,
                    author_name=str(item.get("author_name") or ""),
                    author_email=str(item.get("author_email") or ""),
                    title=str(item.get("title") or ""),
                    committed_at=self._parse_datetime(
                        item.get("created_at") or item.get("committed_date")
                    ),
                )
            )
        return commits

    def list_notes(self, iid: int) -> List[Note]:
        """List merge request notes, oldest first."""
        notes: List[Note] = []
        for item in self._get_paginated(
            f"merge_requests/{iid}/notes", {"sort": "asc", "order_by": "created_at"}
        ):
            author = self._parse_user(item.get("author"))
            created_at = self._parse_datetime(item.get("created_at"))
            if author is None or created_at is None:
                continue
            notes.append(
                Note(
                    id=int(item.get("id") or 0),
                    body=str(item.get("body") or ""),
                    author=author,
                    created_at=created_at,
                    system=bool(item.get("system")),
                    noteable_type=str(item.get("noteable_type") or "MergeRequest"),
                )
            )
        notes.sort(key=lambda note: note.created_at)
        return notes

    def list_pipelines(self, iid: int) -> List[Pipeline]:
        """List merge request pipelines; returns an empty list when unavailable."""
        try:
            payload = self._get_paginated(f"merge_requests/{iid}/pipelines")
        except ApiError as exc:
            logger.debug("Pipelines unavailable", extra={"mr_iid": iid, "error": str(exc)})
            return []

        pipelines: List[Pipeline] = []
        for item in payload:
            created_at = self._parse_datetime(item.get("created_at"))
            if created_at is None:
                continue
            pipelines.append(
                Pipeline(
                    id=int(item.get("id") or 0),
                    iid=int(item.get("iid") or 0),
                    status=str(item.get("status") or ""),
                    created_at=created_at,
                    updated_at=self._parse_datetime(item.get("updated_at")),
                )
            )
        return pipelines

    def count_changed_lines(self, iid: int) -> Optional[int]:
        """Count added and removed lines across the merge request diffs.

        Diffs larger than 100 KB count as 100 lines each.

        Returns:
            The line count, or ``None`` when no diff data is available.
        """
        try:
            diffs = self._get_paginated(f"merge_requests/{iid}/diffs")
        except ApiError as exc:
            logger.debug("Diffs unavailable", extra={"mr_iid": iid, "error": str(exc)})
            return None
        if not diffs:
            return None

        total = 0
        for item in diffs:
            diff = item.get("diff") or ""
            if not diff or len(diff) > self._MAX_DIFF_BYTES:
                total += self._LARGE_DIFF_LINES
                continue
            total += len(_ADDED_LINE.findall(diff)) + len(_REMOVED_LINE.findall(diff))
        return total

    def count_diff_versions(self, iid: int) -> Optional[int]:
        """Return the number of diff revisions after the first, or ``None`` on failure."""
        try:
            versions = self._get_json(f"merge_requests/{iid}/versions")
        except ApiError as exc:
            logger.debug("Diff versions unavailable", extra={"mr_iid": iid, "error": str(exc)})
            return None
        if not isinstance(versions, list) or not versions:
            return None
        return max(0, len(versions) - 1)
