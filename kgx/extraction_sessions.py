from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import ValidationError, field_validator

from kgx.extraction_config import ExtractorConfig, resolve_runtime_path
from kgx.extraction_errors import AuthenticationError
from kgx.schemas import Account, KGXBaseModel, normalize_timestamp, utc_now

LOGGER = logging.getLogger(__name__)

SHARED_SCOPE = "shared"


class SessionLookupStatus(str, Enum):
    ready = "ready"
    missing = "missing"
    expired = "expired"


class SessionSource(str, Enum):
    account = "account"
    environment = "environment"
    shared_file = "shared_file"
    none = "none"


class SessionLookupDiagnostics(KGXBaseModel):
    scope: str
    session_state_path: str
    status: SessionLookupStatus
    message: str
    expires_at: datetime | None = None
    storage_state: dict[str, Any] | None = None


class ResolvedSession(KGXBaseModel):
    source: SessionSource
    storage_state: dict[str, Any] | None = None
    expires_at: datetime | None = None
    skipped: list[str] = []


class SessionTransferPayload(KGXBaseModel):
    scope: str
    exported_at: datetime
    expires_at: datetime | None = None
    storage_state: dict[str, Any]

    @field_validator("storage_state")
    @classmethod
    def validate_storage_state(cls, value: dict[str, Any]) -> dict[str, Any]:
        return validate_storage_state(value)


class SessionStateMissingError(AuthenticationError):
    def __init__(self, *, diagnostics: SessionLookupDiagnostics) -> None:
        super().__init__("session state not found", details=diagnostics.message)


class SessionStateExpiredError(AuthenticationError):
    def __init__(self, *, diagnostics: SessionLookupDiagnostics) -> None:
        super().__init__("session state expired", details=diagnostics.message)


class InvalidSessionStateError(AuthenticationError):
    def __init__(self, *, scope: str, details: str) -> None:
        super().__init__(f"invalid session state for '{scope}'", details=details)
        self.scope = scope


def _require_object_list(storage_state: Mapping[str, Any], key: str, label: str) -> list[dict[str, Any]]:
    items = storage_state.get(key)
    if not isinstance(items, list):
        raise ValueError(f"storageState must include '{key}' as a list")
    bad = next((position for position, item in enumerate(items) if not isinstance(item, dict)), None)
    if bad is not None:
        raise ValueError(f"{label} at index {bad} must be an object")
    return items


def validate_storage_state(storage_state: dict[str, Any]) -> dict[str, Any]:
    _require_object_list(storage_state, "cookies", "cookie")
    _require_object_list(storage_state, "origins", "origin")
    return storage_state


def _cookie_expiry_seconds(cookie: Mapping[str, Any], position: int) -> float | None:
    value = cookie.get("expires")
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"cookie at index {position} has non-numeric 'expires' value")
    try:
        seconds = float(value)
    except ValueError as exc:
        raise ValueError(f"cookie at index {position} has non-numeric 'expires' value") from exc
    return seconds if seconds > 0 else None


def storage_state_expiry(storage_state: dict[str, Any]) -> datetime | None:
    """Latest positive cookie ``expires`` value; session cookies (``-1``) are ignored."""
    cookies = _require_object_list(storage_state, "cookies", "cookie")
    deadlines = [
        seconds
        for position, cookie in enumerate(cookies)
        if (seconds := _cookie_expiry_seconds(cookie, position)) is not None
    ]
    if not deadlines:
        return None
    try:
        return datetime.fromtimestamp(max(deadlines), tz=UTC)
    except (OverflowError, OSError, ValueError) as exc:
        raise ValueError("cookie 'expires' timestamp is out of range") from exc


def is_expired(storage_state: dict[str, Any], *, now: datetime | None = None) -> bool:
    expires_at = storage_state_expiry(storage_state)
    if expires_at is None:
        return False
    return expires_at <= (normalize_timestamp(now) or utc_now())


def parse_storage_state_blob(blob: str, *, scope: str) -> dict[str, Any]:
    try:
        parsed = json.loads(blob)
    except json.JSONDecodeError as exc:
        raise InvalidSessionStateError(scope=scope, details=f"unable to parse JSON: {exc.msg}") from exc
    if not isinstance(parsed, dict):
        raise InvalidSessionStateError(scope=scope, details="session payload must be a JSON object")
    try:
        validated = validate_storage_state(parsed)
        storage_state_expiry(validated)
    except ValueError as exc:
        raise InvalidSessionStateError(scope=scope, details=str(exc)) from exc
    return validated


def dump_storage_state(storage_state: dict[str, Any]) -> str:
    return json.dumps(storage_state, sort_keys=True)


def resolve_shared_session_path(*, config: ExtractorConfig, project_root: Path) -> Path:
    return resolve_runtime_path(project_root, config.sessions.shared_session_path)


def save_shared_session(
    storage_state: dict[str, Any],
    *,
    config: ExtractorConfig,
    project_root: Path,
) -> Path:
    session_path = resolve_shared_session_path(config=config, project_root=project_root)
    try:
        normalized = validate_storage_state(storage_state)
        storage_state_expiry(normalized)
    except ValueError as exc:
        raise InvalidSessionStateError(scope=SHARED_SCOPE, details=str(exc)) from exc

    session_path.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(normalized, indent=2, sort_keys=True)
    session_path.write_text(payload + "\n", encoding="utf-8")
    return session_path


def lookup_shared_session(
    *,
    config: ExtractorConfig,
    project_root: Path,
    now: datetime | None = None,
) -> SessionLookupDiagnostics:
    session_path = resolve_shared_session_path(config=config, project_root=project_root)
    session_path_text = str(session_path)
    if not session_path.exists():
        return SessionLookupDiagnostics(
            scope=SHARED_SCOPE,
            session_state_path=session_path_text,
            status=SessionLookupStatus.missing,
            message=(
                f"Shared session state not found at '{session_path_text}'. "
                "Run 'kgx session sync' or import an exported session first."
            ),
        )

    storage_state = _read_storage_state_json(session_path, scope=SHARED_SCOPE)
    try:
        expires_at = storage_state_expiry(storage_state)
    except ValueError as exc:
        raise InvalidSessionStateError(scope=SHARED_SCOPE, details=str(exc)) from exc
    current_time = normalize_timestamp(now) or utc_now()
    if expires_at is not None and expires_at <= current_time:
        return SessionLookupDiagnostics(
            scope=SHARED_SCOPE,
            session_state_path=session_path_text,
            status=SessionLookupStatus.expired,
            message=(
                f"Shared session state at '{session_path_text}' expired at {expires_at.isoformat()}. "
                "Run 'kgx session sync' to refresh it."
            ),
            expires_at=expires_at,
            storage_state=storage_state,
        )

    return SessionLookupDiagnostics(
        scope=SHARED_SCOPE,
        session_state_path=session_path_text,
        status=SessionLookupStatus.ready,
        message=f"Shared session state is ready at '{session_path_text}'.",
        expires_at=expires_at,
        storage_state=storage_state,
    )


def load_shared_session(
    *,
    config: ExtractorConfig,
    project_root: Path,
    now: datetime | None = None,
) -> dict[str, Any]:
    diagnostics = lookup_shared_session(config=config, project_root=project_root, now=now)
    if diagnostics.status == SessionLookupStatus.missing:
        raise SessionStateMissingError(diagnostics=diagnostics)
    if diagnostics.status == SessionLookupStatus.expired:
        raise SessionStateExpiredError(diagnostics=diagnostics)
    if diagnostics.storage_state is None:
        raise InvalidSessionStateError(
            scope=SHARED_SCOPE,
            details="session lookup unexpectedly returned no storage_state for a ready session",
        )
    return diagnostics.storage_state


def resolve_session_source(
    account: Account | None,
    *,
    config: ExtractorConfig,
    project_root: Path,
    environ: Mapping[str, str] | None = None,
    now: datetime | None = None,
) -> ResolvedSession:
    """Pick the storage state a worker should start from.

    Order: the account's own persisted blob, the shared session in the
    environment, the shared session file. Unparseable or expired entries are
    skipped and reported in ``skipped``.
    """
    env = os.environ if environ is None else environ
    skipped: list[str] = []

    def _accept(blob: str, scope: str, source: SessionSource) -> ResolvedSession | None:
        try:
            storage_state = parse_storage_state_blob(blob, scope=scope)
        except InvalidSessionStateError as exc:
            skipped.append(f"{source.value}: {exc}")
            return None
        if is_expired(storage_state, now=now):
            skipped.append(f"{source.value}: expired")
            return None
        return ResolvedSession(
            source=source,
            storage_state=storage_state,
            expires_at=storage_state_expiry(storage_state),
            skipped=list(skipped),
        )

    if account is not None and account.persisted_session:
        resolved = _accept(account.persisted_session, account.email, SessionSource.account)
        if resolved is not None:
            return resolved

    env_blob = env.get(config.sessions.shared_session_env_var, "").strip()
    if env_blob:
        resolved = _accept(env_blob, SHARED_SCOPE, SessionSource.environment)
        if resolved is not None:
            return resolved

    session_path = resolve_shared_session_path(config=config, project_root=project_root)
    if session_path.exists():
        try:
            file_blob = session_path.read_text(encoding="utf-8")
        except OSError as exc:
            skipped.append(f"{SessionSource.shared_file.value}: unable to read '{session_path}': {exc}")
        else:
            resolved = _accept(file_blob, SHARED_SCOPE, SessionSource.shared_file)
            if resolved is not None:
                return resolved

    for reason in skipped:
        LOGGER.warning("skipped session source %s", reason)
    return ResolvedSession(source=SessionSource.none, skipped=skipped)


def export_session_state_json(
    storage_state: dict[str, Any],
    export_path: Path,
    *,
    scope: str,
    project_root: Path,
    now: datetime | None = None,
) -> Path:
    try:
        expires_at = storage_state_expiry(validate_storage_state(storage_state))
    except ValueError as exc:
        raise InvalidSessionStateError(scope=scope, details=str(exc)) from exc
    payload = SessionTransferPayload(
        scope=scope,
        exported_at=normalize_timestamp(now) or utc_now(),
        expires_at=expires_at,
        storage_state=storage_state,
    )

    resolved_export_path = _resolve_external_path(export_path, project_root=project_root)
    resolved_export_path.parent.mkdir(parents=True, exist_ok=True)
    resolved_export_path.write_text(
        json.dumps(payload.model_dump(mode="json"), indent=2, sort_keys=True) + "\n",
        encoding="utf-8",
    )
    return resolved_export_path


def import_session_state_json(
    import_path: Path,
    *,
    scope: str,
    project_root: Path,
) -> dict[str, Any]:
    resolved_import_path = _resolve_external_path(import_path, project_root=project_root)
    if not resolved_import_path.exists():
        raise InvalidSessionStateError(
            scope=scope,
            details=(
                f"session import file not found at '{resolved_import_path}'. "
                "Provide a valid exported session JSON file."
            ),
        )

    payload = _read_json_object(resolved_import_path, scope=scope)
    return _extract_storage_state_from_import_payload(payload, expected_scope=scope)


def _resolve_external_path(path: Path, *, project_root: Path) -> Path:
    if path.is_absolute():
        return path
    return project_root.joinpath(path)


def _read_storage_state_json(path: Path, *, scope: str) -> dict[str, Any]:
    payload = _read_json_object(path, scope=scope)
    try:
        return validate_storage_state(payload)
    except ValueError as exc:
        raise InvalidSessionStateError(scope=scope, details=str(exc)) from exc


def _read_json_object(path: Path, *, scope: str) -> dict[str, Any]:
    try:
        parsed = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise InvalidSessionStateError(
            scope=scope,
            details=f"unable to parse JSON from '{path}': {exc.msg}",
        ) from exc
    except OSError as exc:
        raise InvalidSessionStateError(scope=scope, details=f"unable to read '{path}': {exc}") from exc

    if not isinstance(parsed, dict):
        raise InvalidSessionStateError(scope=scope, details=f"session payload at '{path}' must be a JSON object")
    return parsed


def _extract_storage_state_from_import_payload(
    payload: dict[str, Any],
    *,
    expected_scope: str,
) -> dict[str, Any]:
    if "storage_state" not in payload:
        try:
            return validate_storage_state(payload)
        except ValueError as exc:
            raise InvalidSessionStateError(scope=expected_scope, details=str(exc)) from exc

    try:
        transfer_payload = SessionTransferPayload.model_validate(payload)
    except ValidationError as exc:
        raise InvalidSessionStateError(
            scope=expected_scope,
            details=f"invalid session transfer payload: {exc.errors()[0]['msg']}",
        ) from exc

    if transfer_payload.scope != expected_scope:
        raise InvalidSessionStateError(
            scope=expected_scope,
            details=(
                "session transfer scope mismatch: "
                f"expected '{expected_scope}', got '{transfer_payload.scope}'"
            ),
        )

    return transfer_payload.storage_state
