from __future__ import annotations

from enum import Enum
from typing import Any

from kgx.schemas import KGXBaseModel


class OutcomeKind(str, Enum):
    succeeded = "succeeded"
    retry = "retry"
    failed = "failed"
    cancelled = "cancelled"


class WorkerOutcome(KGXBaseModel):
    kind: OutcomeKind
    task_id: int
    account_id: int | None = None
    error_type: str | None = None
    error: str | None = None
    rate_limited: bool = False
    account_blamed: bool = False
    knowledge_graph_id: int | None = None


class ExtractionError(RuntimeError):
    """Base class for failures raised while driving one extraction task."""

    retryable: bool = True
    blame_account: bool = False
    rate_limited: bool = False

    def __init__(
        self,
        message: str,
        *,
        details: str | None = None,
        diagnostics: dict[str, Any] | None = None,
    ) -> None:
        self.details = details
        self.diagnostics = dict(diagnostics or {})
        full_message = message
        if details:
            full_message = f"{message} ({details})"
        super().__init__(full_message)


class BrowserLaunchError(ExtractionError):
    pass


class NavigationError(ExtractionError):
    pass


class ElementNotFoundError(ExtractionError):
    def __init__(self, *, role: str, selectors: tuple[str, ...] | list[str], details: str | None = None) -> None:
        super().__init__(
            f"unable to locate {role}",
            details=details,
            diagnostics={"role": role, "selectors": list(selectors)},
        )
        self.role = role


class SubmissionError(ExtractionError):
    pass


class ResponseExtractionError(ExtractionError):
    """Expected failure mode of the web UI; always retryable."""


class JsonRecoveryError(ExtractionError):
    retryable = False


class RateLimitError(ExtractionError):
    blame_account = True
    rate_limited = True


class AuthenticationError(ExtractionError):
    blame_account = True


class LoginError(AuthenticationError):
    def __init__(self, *, step: str, reason: str, details: str | None = None) -> None:
        super().__init__(f"login failed during '{step}': {reason}", details=details)
        self.step = step


class AntiBotChallengeError(AuthenticationError):
    def __init__(self, *, details: str | None = None) -> None:
        super().__init__("anti-bot challenge encountered", details=details)


class MFAChallengeError(AuthenticationError):
    retryable = False

    def __init__(self, *, details: str | None = None) -> None:
        super().__init__("second-factor verification required; this flow is unsupported", details=details)


class TaskCancelledError(ExtractionError):
    retryable = False


def classify_failure(exc: BaseException) -> tuple[bool, bool]:
    """Return ``(retryable, rate_limited)`` for an exception caught at the worker boundary."""
    if isinstance(exc, ExtractionError):
        return exc.retryable, exc.rate_limited
    return True, False


def error_diagnostics(exc: BaseException) -> dict[str, Any]:
    payload: dict[str, Any] = {"error_type": exc.__class__.__name__}
    if isinstance(exc, ExtractionError):
        if exc.details:
            payload["details"] = exc.details
        if exc.blame_account:
            payload["account_blamed"] = True
        payload.update(exc.diagnostics)
    return payload
