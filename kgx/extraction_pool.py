from __future__ import annotations

import logging
import random
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

from kgx.extraction_config import ROTATION_STRATEGY_KEY, RotationStrategy
from kgx.extraction_repository import ExtractionRepository, RecordNotFoundError
from kgx.extraction_sessions import (
    InvalidSessionStateError,
    dump_storage_state,
    parse_storage_state_blob,
    storage_state_expiry,
    validate_storage_state,
)
from kgx.schemas import Account, KGXBaseModel, NewAccount, normalize_timestamp, utc_now

LOGGER = logging.getLogger(__name__)

_NEVER_USED = datetime.min.replace(tzinfo=UTC)


class AccountSessionStatus(KGXBaseModel):
    account_id: int
    email: str
    has_session: bool
    valid: bool
    expired: bool
    expires_at: datetime | None = None
    message: str


def parse_rotation_strategy(value: str | None) -> RotationStrategy:
    try:
        return RotationStrategy((value or "").strip().lower())
    except ValueError:
        return RotationStrategy.first


class AccountPool:
    """Availability, selection and bookkeeping for the rotating account set."""

    def __init__(
        self,
        repository: ExtractionRepository,
        *,
        cooldown_seconds: float = 3600.0,
        rng: random.Random | None = None,
    ) -> None:
        self._repository = repository
        self._cooldown = timedelta(seconds=cooldown_seconds)
        self._rng = rng or random.Random()
        self._last_assigned_id: int | None = None

    @property
    def cooldown(self) -> timedelta:
        return self._cooldown

    def strategy(self) -> RotationStrategy:
        return parse_rotation_strategy(self._repository.get_config(ROTATION_STRATEGY_KEY))

    def available(self, now: datetime | None = None) -> list[Account]:
        return self._repository.available_accounts(now or utc_now())

    def available_count(self, now: datetime | None = None) -> int:
        return len(self.available(now))

    def choose(self, accounts: Sequence[Account], strategy: RotationStrategy | None = None) -> Account | None:
        if not accounts:
            return None
        ordered = sorted(accounts, key=lambda account: account.id)
        selected = strategy or self.strategy()
        if selected == RotationStrategy.random:
            return self._rng.choice(ordered)
        if selected == RotationStrategy.round_robin:
            if self._last_assigned_id is not None:
                for account in ordered:
                    if account.id > self._last_assigned_id:
                        return account
            return ordered[0]
        if selected == RotationStrategy.least_recently_used:
            return min(
                ordered,
                key=lambda account: (normalize_timestamp(account.last_used_at) or _NEVER_USED, account.id),
            )
        return ordered[0]

    def claim(self, task_id: int, *, now: datetime | None = None) -> Account | None:
        strategy = self.strategy()
        account = self._repository.claim_account(
            task_id,
            choose=lambda accounts: self.choose(accounts, strategy),
            now=now,
        )
        if account is not None:
            self._last_assigned_id = account.id
            LOGGER.debug("claimed account %s for task %s (strategy=%s)", account.id, task_id, strategy.value)
        return account

    def release(self, account_id: int, *, task_id: int | None = None, now: datetime | None = None) -> bool:
        released = self._repository.release_account(account_id, task_id=task_id, now=now)
        if not released and task_id is not None:
            LOGGER.debug("account %s no longer held by task %s; release skipped", account_id, task_id)
        return released

    def rate_limit_deadline(self, now: datetime | None = None) -> datetime:
        return (normalize_timestamp(now) or utc_now()) + self._cooldown

    def mark_rate_limited(self, account_id: int, now: datetime | None = None) -> datetime:
        deadline = self.rate_limit_deadline(now)
        self._repository.set_rate_limited_until(account_id, deadline, now=now)
        return deadline

    def record_success(self, account_id: int, *, now: datetime | None = None) -> None:
        self._repository.record_account_success(account_id, now=now)

    def record_failure(
        self,
        account_id: int,
        error: str,
        *,
        rate_limited: bool = False,
        now: datetime | None = None,
    ) -> datetime | None:
        deadline = self.rate_limit_deadline(now) if rate_limited else None
        self._repository.record_account_failure(account_id, error, rate_limited_until=deadline, now=now)
        return deadline

    def reset_all(self, *, now: datetime | None = None) -> int:
        return self._repository.reset_all_accounts(now=now)

    def add_account(self, new_account: NewAccount) -> Account:
        return self._repository.create_account(new_account)

    def set_active(self, account_id: int, active: bool) -> Account:
        return self._repository.set_account_active(account_id, active)

    def toggle(self, account_id: int) -> Account:
        account = self._require(account_id)
        return self._repository.set_account_active(account_id, not account.is_active)

    def delete_account(self, account_id: int) -> bool:
        return self._repository.delete_account(account_id)

    def save_session(self, account_id: int, storage_state: dict[str, Any] | str) -> Account:
        account = self._require(account_id)
        if isinstance(storage_state, str):
            normalized = parse_storage_state_blob(storage_state, scope=account.email)
        else:
            try:
                normalized = validate_storage_state(storage_state)
                storage_state_expiry(normalized)
            except ValueError as exc:
                raise InvalidSessionStateError(scope=account.email, details=str(exc)) from exc
        self._repository.save_account_session(account_id, dump_storage_state(normalized))
        return self._require(account_id)

    def clear_session(self, account_id: int) -> None:
        self._require(account_id)
        self._repository.save_account_session(account_id, None)

    def session_status(self, account_id: int, *, now: datetime | None = None) -> AccountSessionStatus:
        account = self._require(account_id)
        if not account.persisted_session:
            return AccountSessionStatus(
                account_id=account.id,
                email=account.email,
                has_session=False,
                valid=False,
                expired=False,
                message="no persisted session; the worker will log in or use the shared session",
            )
        try:
            storage_state = parse_storage_state_blob(account.persisted_session, scope=account.email)
        except InvalidSessionStateError as exc:
            return AccountSessionStatus(
                account_id=account.id,
                email=account.email,
                has_session=True,
                valid=False,
                expired=False,
                message=str(exc),
            )
        expires_at = storage_state_expiry(storage_state)
        expired = expires_at is not None and expires_at <= (normalize_timestamp(now) or utc_now())
        return AccountSessionStatus(
            account_id=account.id,
            email=account.email,
            has_session=True,
            valid=not expired,
            expired=expired,
            expires_at=expires_at,
            message="session expired" if expired else "session ready",
        )

    def _require(self, account_id: int) -> Account:
        account = self._repository.get_account(account_id)
        if account is None:
            raise RecordNotFoundError(kind="account", record_id=account_id)
        return account
