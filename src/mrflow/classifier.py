"""Actor and reviewer classification for merge request timelines.

Classification is expressed as ordered rule lists. Each rule inspects its input
and either commits to an answer or returns ``None`` to defer to the next rule,
so that every precedence step can be tested on its own.

Actor role precedence:
1. The merge request author is always ``Author``, even when it is a bot.
2. Events without a user id are ``System``.
3. Identities detected as AI bots are ``AI Reviewer``.
4. Everyone else is ``Reviewer``.

AI bot detection precedence:
1. Configured allow-list.
2. CI/build bot denylist.
3. Username patterns.
4. Comment template and comment length heuristics (only without an allow-list).
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set

from .models import ActorRole, Note, User

DEFAULT_AI_RESPONSE_THRESHOLD_SECONDS = 480
DEFAULT_BURST_MIN_REVIEW_COUNT = 5
DEFAULT_BURST_TIME_WINDOW_SECONDS = 60

CI_BOT_USERNAMES = ("gitlab ci bot", "gitlab-bot", "jenkins", "ci-bot", "build bot")

AI_BOT_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"(?:^|[-_])bot(?:[-_]|$)",
        r"[-_]ai[-_]",
        r"^ai[-_]",
        r"[-_]ai$",
        r"\bautomated\b",
        r"gitlab-bot",
        r"auto-review",
        r"code-review-bot",
        r"coderabbit",
        r"copilot",
        r"dependabot",
        r"renovate",
    )
)

AI_COMMENT_PATTERNS = tuple(
    re.compile(pattern, re.MULTILINE)
    for pattern in (
        r"^\U0001F4CB\s*Code\s+Review",
        r"^\s*##\s+",
        r"\|\s*\*\*.*\*\*\s*\|",
        "\U0001F4C1|\U0001F7E1|\U0001F7E2|\U0001F4A1|⚠️|\U0001F41B|\U0001F527|\U0001F3A8",
    )
)

CI_BOT_COMMENT_PATTERNS = (
    re.compile(r"\*\*Jenkins says:\*\*", re.IGNORECASE),
    re.compile(r"CI (started|passed|failed)", re.IGNORECASE),
    re.compile(r"Build number \d+", re.IGNORECASE),
    re.compile(r"LGTM\s*:[+\-]1:"),
    re.compile(r"\[Build\s+#\d+\]", re.IGNORECASE),
    re.compile(r"Pipeline\s+#\d+", re.IGNORECASE),
    re.compile(r"pipeline\s+(passed|failed|succeeded|running)", re.IGNORECASE),
    re.compile(r"Coverage:\s+\d+", re.IGNORECASE),
    re.compile(r"\bMerge Request Test\b", re.IGNORECASE),
    re.compile(r"successfully deployed", re.IGNORECASE),
    re.compile(r"\bCI/CD\b", re.IGNORECASE),
    re.compile(r"^added\s+\d+\s+commit", re.IGNORECASE),
    re.compile(r"^Pipeline for \w+", re.IGNORECASE),
)

COMMENT_LENGTH_THRESHOLD = 300
AI_PATTERN_THRESHOLD = 0.5
MAX_COMMENT_SAMPLES = 5


def is_ci_bot_comment(body: str) -> bool:
    """Return True when a comment body looks like an automated CI notification."""
    return any(pattern.search(body) for pattern in CI_BOT_COMMENT_PATTERNS)


@dataclass(frozen=True)
class BurstDetection:
    """Sliding-window settings that flag rapid review bursts."""

    min_review_count: int = DEFAULT_BURST_MIN_REVIEW_COUNT
    time_window_seconds: float = DEFAULT_BURST_TIME_WINDOW_SECONDS


@dataclass(frozen=True)
class HybridReviewerConfig:
    """An identity that posts both automated and manual reviews."""

    username: str
    time_threshold_seconds: float = DEFAULT_AI_RESPONSE_THRESHOLD_SECONDS
    treat_as_human_if_other_ai_review_exists: bool = True
    burst_detection: Optional[BurstDetection] = None


@dataclass(slots=True)
class UserCommentStats:
    """Per-user comment statistics used by the content heuristics."""

    avg_length: float = 0.0
    samples: List[str] = field(default_factory=list)
    first_comment_at: Optional[datetime] = None


def aggregate_user_comments(notes: Iterable[Note]) -> Dict[str, UserCommentStats]:
    """Aggregate average comment length and sample bodies per username.

    System notes are ignored. Only the first five bodies are kept as samples.
    """
    lengths: Dict[str, List[int]] = {}
    stats: Dict[str, UserCommentStats] = {}

    for note in notes:
        if note.system:
            continue
        username = note.author.username
        entry = stats.setdefault(username, UserCommentStats())
        lengths.setdefault(username, []).append(len(note.body))
        if len(entry.samples) < MAX_COMMENT_SAMPLES:
            entry.samples.append(note.body)
        if entry.first_comment_at is None or note.created_at < entry.first_comment_at:
            entry.first_comment_at = note.created_at

    for username, entry in stats.items():
        user_lengths = lengths[username]
        entry.avg_length = sum(user_lengths) / len(user_lengths)

    return stats


DetectionRule = Callable[[str, Optional[UserCommentStats]], Optional[bool]]


class AIBotDetector:
    """Layered AI bot detector driven by an ordered rule list."""

    def __init__(self, configured_bots: Iterable[str] = ()) -> None:
        self._configured_bots: Set[str] = {name for name in configured_bots if name}
        self._rules: Sequence[DetectionRule] = (
            self._allow_list_rule,
            self._ci_denylist_rule,
            self._username_pattern_rule,
            self._comment_template_rule,
            self._comment_length_rule,
        )

    @property
    def configured_bots(self) -> Set[str]:
        return set(self._configured_bots)

    def is_ai_bot(self, username: str, comment_stats: Optional[UserCommentStats] = None) -> bool:
        """Return True when ``username`` belongs to an automated AI reviewer.

        Args:
            username: GitLab username.
            comment_stats: Optional aggregated comment data for that username.
        """
        if not username:
            return False
        for rule in self._rules:
            verdict = rule(username, comment_stats)
            if verdict is not None:
                return verdict
        return False

    def _allow_list_rule(self, username: str, _: Optional[UserCommentStats]) -> Optional[bool]:
        return True if username in self._configured_bots else None

    def _ci_denylist_rule(self, username: str, _: Optional[UserCommentStats]) -> Optional[bool]:
        lowered = username.lower()
        return False if any(ci_bot in lowered for ci_bot in CI_BOT_USERNAMES) else None

    def _username_pattern_rule(
        self, username: str, _: Optional[UserCommentStats]
    ) -> Optional[bool]:
        return True if any(pattern.search(username) for pattern in AI_BOT_PATTERNS) else None

    def _comment_template_rule(
        self, _: str, comment_stats: Optional[UserCommentStats]
    ) -> Optional[bool]:
        if self._configured_bots or comment_stats is None or not comment_stats.samples:
            return None
        matches = sum(
            1
            for sample in comment_stats.samples
            if any(pattern.search(sample) for pattern in AI_COMMENT_PATTERNS)
        )
        return True if matches / len(comment_stats.samples) >= AI_PATTERN_THRESHOLD else None

    def _comment_length_rule(
        self, _: str, comment_stats: Optional[UserCommentStats]
    ) -> Optional[bool]:
        if self._configured_bots or comment_stats is None or not comment_stats.samples:
            return None
        return True if comment_stats.avg_length >= COMMENT_LENGTH_THRESHOLD else None


@dataclass(frozen=True)
class ActorContext:
    """Inputs of the actor role rules."""

    user: Optional[User]
    mr_author_id: Optional[int]
    is_ai_bot: bool = False


RoleRule = Callable[[ActorContext], Optional[ActorRole]]


def author_rule(context: ActorContext) -> Optional[ActorRole]:
    user = context.user
    if user is not None and user.id is not None and user.id == context.mr_author_id:
        return ActorRole.AUTHOR
    return None


def system_rule(context: ActorContext) -> Optional[ActorRole]:
    if context.user is None or not context.user.id:
        return ActorRole.SYSTEM
    return None


def ai_bot_rule(context: ActorContext) -> Optional[ActorRole]:
    return ActorRole.AI_REVIEWER if context.is_ai_bot else None


def reviewer_rule(context: ActorContext) -> Optional[ActorRole]:
    return ActorRole.REVIEWER


ACTOR_ROLE_RULES: Sequence[RoleRule] = (author_rule, system_rule, ai_bot_rule, reviewer_rule)


def classify_actor_role(
    context: ActorContext,
    rules: Sequence[RoleRule] = ACTOR_ROLE_RULES,
) -> ActorRole:
    """Evaluate ``rules`` in order and return the first committed role."""
    for rule in rules:
        role = rule(context)
        if role is not None:
            return role
    return ActorRole.REVIEWER


class HybridReviewerPolicy:
    """Decides whether a hybrid identity's comment is an AI or a human review."""

    def __init__(self, configs: Iterable[HybridReviewerConfig] = ()) -> None:
        self._configs: Dict[str, HybridReviewerConfig] = {
            config.username: config for config in configs
        }

    def is_hybrid(self, username: str) -> bool:
        return username in self._configs

    def config_for(self, username: str) -> Optional[HybridReviewerConfig]:
        return self._configs.get(username)

    def detect_review_bursts(self, notes: Sequence[Note]) -> Set[int]:
        """Return ids of hybrid-identity notes that belong to a review burst.

        A burst is at least ``min_review_count`` notes by the same identity whose
        timestamps fit in a ``time_window_seconds`` window starting at any of
        those notes.
        """
        notes_by_user: Dict[str, List[Note]] = {}
        bursts: Dict[str, BurstDetection] = {}
        for note in sorted(notes, key=lambda item: item.created_at):
            if note.system:
                continue
            config = self._configs.get(note.author.username)
            if config is None or config.burst_detection is None:
                continue
            bursts[note.author.username] = config.burst_detection
            notes_by_user.setdefault(note.author.username, []).append(note)

        burst_ids: Set[int] = set()
        for username, user_notes in notes_by_user.items():
            burst = bursts[username]
            for start_index, start_note in enumerate(user_notes):
                window: List[int] = []
                for candidate in user_notes[start_index:]:
                    elapsed = (candidate.created_at - start_note.created_at).total_seconds()
                    if elapsed > burst.time_window_seconds:
                        break
                    window.append(candidate.id)
                if len(window) >= burst.min_review_count:
                    burst_ids.update(window)

        return burst_ids

    def should_classify_as_ai_review(
        self,
        username: str,
        response_time_seconds: float,
        has_earlier_ai_review: bool,
        is_burst_review: bool = False,
    ) -> bool:
        """Apply the hybrid decision: burst, then other-AI override, then latency.

        Returns False for identities that are not configured as hybrid.
        """
        config = self._configs.get(username)
        if config is None:
            return False
        if is_burst_review:
            return True
        if config.treat_as_human_if_other_ai_review_exists and has_earlier_ai_review:
            return False
        return response_time_seconds <= config.time_threshold_seconds
