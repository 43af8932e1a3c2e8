"""Tests for GitLab API client behavior with mocked HTTP."""

import sys
from pathlib import Path
from unittest.mock import Mock, patch

import pytest
import requests

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from mrflow.client import GitLabClient
from mrflow.config import Config
from mrflow.errors import (
    ApiError,
    AuthenticationError,
    NetworkError,
    NotFoundError,
    RateLimitedError,
)


def _build_client() -> GitLabClient:
    config = Config(base_url="https://gitlab.example.com", project="group/app", token="glpat-token")
    return GitLabClient(config=config)


def _response(status_code: int, payload=None, text: str = "", headers: dict | None = None):
    response = Mock()
    response.status_code = status_code
    response.text = text
    response.headers = headers or {}
    response.json.return_value = payload if payload is not None else {}
    return response


def _mr_payload(iid: int = 12) -> dict:
    return {
        "iid": iid,
        "title": "Add retries",
        "author": {"id": 1, "username": "alice", "name": "Alice"},
        "created_at": "2025-01-01T00:00:00Z",
        "merged_at": "2025-01-02T00:00:00.000Z",
        "draft": False,
        "source_branch": "feature/retries",
        "target_branch": "main",
        "changes_count": "12",
        "merged_by": {"id": 2, "username": "bob", "name": "Bob"},
    }


def test_client_sends_private_token_header_and_encodes_project():
    """Verify authentication header and URL-encoded project path."""
    client = _build_client()

    assert client._session.headers["PRIVATE-TOKEN"] == "glpat-token"
    assert client._build_url("merge_requests/1") == (
        "https://gitlab.example.com/api/v4/projects/group%2Fapp/merge_requests/1"
    )


def test_get_merge_request_parses_payload():
    """Verify merge request payloads are parsed into models."""
    client = _build_client()
    client._session.get = Mock(return_value=_response(200, payload=_mr_payload()))

    mr = client.get_merge_request(12)

    assert mr.iid == 12
    assert mr.author.username == "alice"
    assert mr.created_at.tzinfo is not None
    assert mr.merged_at is not None
    assert mr.changes_count == 12
    assert mr.merged_by.username == "bob"


def test_changes_count_with_plus_suffix():
    """Verify a capped changes count such as '1000+' is parsed."""
    payload = _mr_payload()
    payload["changes_count"] = "1000+"
    client = _build_client()
    client._session.get = Mock(return_value=_response(200, payload=payload))

    assert client.get_merge_request(12).changes_count == 1000


def test_rate_limit_retries_with_retry_after_then_succeeds():
    """Verify HTTP 429 is retried after the server-provided delay."""
    client = _build_client()
    client._session.get = Mock(
        side_effect=[
            _response(429, headers={"Retry-After": "7"}),
            _response(200, payload=_mr_payload()),
        ]
    )

    with patch("mrflow.client.time.sleep") as sleep_mock:
        mr = client.get_merge_request(12)

    assert mr.iid == 12
    sleep_mock.assert_called_once_with(7.0)
    assert client._session.get.call_count == 2


def test_rate_limit_defaults_to_sixty_seconds_and_gives_up_after_three_attempts():
    """Verify three 429s raise RateLimitedError after sleeping 60 seconds twice."""
    client = _build_client()
    client._session.get = Mock(return_value=_response(429))

    with patch("mrflow.client.time.sleep") as sleep_mock:
        with pytest.raises(RateLimitedError) as excinfo:
            client.get_merge_request(12)

    assert client._session.get.call_count == 3
    assert sleep_mock.call_count == 2
    sleep_mock.assert_called_with(60.0)
    assert excinfo.value.retry_after == 60.0
    assert excinfo.value.status_code == 429


@pytest.mark.parametrize(
    "status_code, error_type",
    [(401, AuthenticationError), (403, NotFoundError), (404, NotFoundError), (500, ApiError)],
)
def test_error_statuses_are_mapped_without_retry(status_code, error_type):
    """Verify non-429 failures surface immediately as domain errors."""
    client = _build_client()
    client._session.get = Mock(return_value=_response(status_code, text="failure"))

    with patch("mrflow.client.time.sleep") as sleep_mock:
        with pytest.raises(error_type):
            client.get_merge_request(12)

    sleep_mock.assert_not_called()
    assert client._session.get.call_count == 1


def test_transport_failure_raises_network_error():
    """Verify requests exceptions become NetworkError without retry."""
    client = _build_client()
    client._session.get = Mock(side_effect=requests.ConnectionError("refused"))

    with pytest.raises(NetworkError):
        client.get_merge_request(12)

    assert client._session.get.call_count == 1


def test_invalid_json_raises_api_error():
    """Verify undecodable bodies raise ApiError."""
    client = _build_client()
    response = _response(200)
    response.json.side_effect = ValueError("bad json")
    client._session.get = Mock(return_value=response)

    with pytest.raises(ApiError):
        client.get_merge_request(12)


def test_list_notes_follows_pagination_and_sorts():
    """Verify X-Next-Page pagination is followed and notes come back oldest first."""
    client = _build_client()
    page_one = [
        {
            "id": 2,
            "body": "second",
            "author": {"id": 2, "username": "bob", "name": "Bob"},
            "created_at": "2025-01-01T02:00:00Z",
            "system": False,
        }
    ]
    page_two = [
        {
            "id": 1,
            "body": "first",
            "author": {"id": 2, "username": "bob", "name": "Bob"},
            "created_at": "2025-01-01T01:00:00Z",
            "system": False,
        }
    ]
    client._session.get = Mock(
        side_effect=[
            _response(200, payload=page_one, headers={"X-Next-Page": "2"}),
            _response(200, payload=page_two, headers={"X-Next-Page": ""}),
        ]
    )

    notes = client.list_notes(12)

    assert [note.id for note in notes] == [1, 2]
    assert client._session.get.call_count == 2
    second_params = client._session.get.call_args_list[1].kwargs["params"]
    assert second_params["page"] == "2"
    assert second_params["per_page"] == 100


def test_list_commits_parses_commit_fields():
    """Verify commits keep both author and commit timestamps."""
    client = _build_client()
    client._session.get = Mock(
        return_value=_response(
            200,
            payload=[
                {
                    "id": "abc123",
                    "title": "Initial",
                    "authored_date": "2024-12-31T10:00:00Z",
                    "created_at": "2025-01-01T08:00:00Z",
                    "author_name": "Alice",
                    "author_email": "alice@example.com",
                }
            ],
        )
    )

    commits = client.list_commits(12)

    assert commits[0].sha == "abc123"
    assert commits[0].author_email == "alice@example.com"
    assert commits[0].authored_at.hour == 10
    assert commits[0].committed_at.isoformat() == "2025-01-01T08:00:00+00:00"


def test_list_pipelines_returns_empty_list_on_failure():
    """Verify pipeline lookup failures degrade to an empty list."""
    client = _build_client()
    client._session.get = Mock(return_value=_response(404))

    assert client.list_pipelines(12) == []


def test_count_changed_lines_counts_additions_and_deletions():
    """Verify diff line counting, including the large diff estimate."""
    client = _build_client()
    diffs = [
        {"diff": "@@ -1,2 +1,2 @@\n-old\n+new\n+extra\n context\n"},
        {"diff": "+" * (100 * 1024 + 1)},
    ]
    client._session.get = Mock(return_value=_response(200, payload=diffs))

    assert client.count_changed_lines(12) == 3 + 100


def test_count_changed_lines_without_diffs_returns_none():
    """Verify missing diff data returns None so callers can estimate."""
    client = _build_client()
    client._session.get = Mock(return_value=_response(200, payload=[]))

    assert client.count_changed_lines(12) is None


def test_count_diff_versions():
    """Verify diff revisions are versions minus one, and None on failure."""
    client = _build_client()
    client._session.get = Mock(return_value=_response(200, payload=[{}, {}, {}]))
    assert client.count_diff_versions(12) == 2

    client._session.get = Mock(return_value=_response(500))
    assert client.count_diff_versions(12) is None
