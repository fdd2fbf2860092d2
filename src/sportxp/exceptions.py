"""Exception hierarchy for the progression engine.

Reward cascades decide per stage whether an error stops the caller; these
types carry enough context (user, operation, extra fields) for the log line
written where the error is finally caught.
"""

from __future__ import annotations

from typing import Any


class ProgressionError(Exception):
    """Base exception for all progression errors."""

    def __init__(
        self,
        message: str,
        user_id: int | None = None,
        operation: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.user_id = user_id
        self.operation = operation
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "user_id": self.user_id,
            "operation": self.operation,
            "context": self.context,
        }


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------


class NotFoundError(ProgressionError):
    """A referenced user, badge or challenge does not exist."""


class UserNotFoundError(NotFoundError):
    def __init__(self, user_id: int, operation: str | None = None) -> None:
        super().__init__(f"User {user_id} not found", user_id=user_id, operation=operation)


class BadgeNotFoundError(NotFoundError):
    def __init__(self, badge_ref: int | str, user_id: int | None = None) -> None:
        super().__init__(
            f"Badge {badge_ref!r} not found",
            user_id=user_id,
            operation="award_badge",
            context={"badge": badge_ref},
        )


class ChallengeNotFoundError(NotFoundError):
    def __init__(self, challenge_id: int, user_id: int | None = None) -> None:
        super().__init__(
            f"Challenge {challenge_id} not found",
            user_id=user_id,
            context={"challenge_id": challenge_id},
        )


# ---------------------------------------------------------------------------
# Criteria / grants / collaborators
# ---------------------------------------------------------------------------


class InvalidCriteriaError(ProgressionError):
    """Unknown or malformed criteria payload (strict parsing only)."""

    def __init__(self, raw: Any, reason: str = "unknown criteria type") -> None:
        super().__init__(f"Invalid criteria: {reason}", context={"criteria": raw})


class DuplicateGrantError(ProgressionError):
    """A badge grant or challenge instance already exists. Benign."""


class DependencyFailureError(ProgressionError):
    """Notification sink or aggregate query failed inside a cascade."""
