from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from kgx.extraction_config import PROCESSING_ENABLED_KEY, ROTATION_STRATEGY_KEY, RotationStrategy
from kgx.schemas import (
    Account,
    EntityType,
    Industry,
    KnowledgeGraphRecord,
    LogEvent,
    LogLevel,
    NewAccount,
    NewIndustry,
    NewStock,
    NewTask,
    Stock,
    Task,
    TaskStatus,
    normalize_timestamp,
    utc_now,
)

AccountChooser = Callable[[Sequence[Account]], Account | None]

DEFAULT_CONFIG_VALUES: dict[str, str] = {
    PROCESSING_ENABLED_KEY: "true",
    ROTATION_STRATEGY_KEY: RotationStrategy.random.value,
}

_SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    display_name TEXT NOT NULL UNIQUE,
    email TEXT NOT NULL UNIQUE,
    encrypted_credential TEXT NOT NULL,
    persisted_session TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    is_in_use INTEGER NOT NULL DEFAULT 0,
    holder_task_id INTEGER,
    rate_limited_until TEXT,
    last_used_at TEXT,
    total_count INTEGER NOT NULL DEFAULT 0,
    success_count INTEGER NOT NULL DEFAULT 0,
    failure_count INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_type TEXT NOT NULL,
    entity_id INTEGER NOT NULL,
    entity_name TEXT NOT NULL,
    prompt_text TEXT NOT NULL,
    model_variant TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'queued',
    assigned_account_id INTEGER REFERENCES accounts(id) ON DELETE SET NULL,
    retry_count INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 3,
    priority INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT
);
CREATE INDEX IF NOT EXISTS ix_tasks_pending ON tasks(status, priority DESC, created_at ASC, id ASC);

CREATE TABLE IF NOT EXISTS knowledge_graphs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_type TEXT NOT NULL,
    entity_id INTEGER NOT NULL,
    entity_name TEXT NOT NULL,
    source_task_id INTEGER NOT NULL,
    raw_json TEXT NOT NULL,
    model_used TEXT NOT NULL,
    account_used INTEGER NOT NULL,
    extracted_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS log_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    level TEXT NOT NULL,
    message TEXT NOT NULL,
    task_id INTEGER,
    account_id INTEGER,
    entity_type TEXT,
    entity_id INTEGER,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS system_config (
    config_key TEXT PRIMARY KEY,
    config_value TEXT,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS stocks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    symbol TEXT NOT NULL UNIQUE,
    company_name TEXT,
    industry TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS industries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    industry_name TEXT NOT NULL UNIQUE,
    sector TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class RepositoryError(RuntimeError):
    pass


class RecordNotFoundError(RepositoryError):
    def __init__(self, *, kind: str, record_id: int) -> None:
        super().__init__(f"{kind} {record_id} not found")
        self.kind = kind
        self.record_id = record_id


@runtime_checkable
class ExtractionRepository(Protocol):
    def create_task(self, new_task: NewTask, *, now: datetime | None = None) -> Task: ...

    def get_task(self, task_id: int) -> Task | None: ...

    def list_tasks(self, *, status: TaskStatus | None = None) -> list[Task]: ...

    def pending_tasks(self, limit: int) -> list[Task]: ...

    def update_task_priority(self, task_id: int, priority: int) -> Task: ...

    def mark_task_processing(self, task_id: int, account_id: int, *, now: datetime | None = None) -> bool: ...

    def complete_task(self, task_id: int, *, now: datetime | None = None) -> bool: ...

    def record_task_failure(
        self,
        task_id: int,
        error: str,
        *,
        retryable: bool,
        now: datetime | None = None,
    ) -> Task | None: ...

    def cancel_task(self, task_id: int, *, now: datetime | None = None) -> TaskStatus | None: ...

    def delete_task(self, task_id: int) -> bool: ...

    def create_account(self, new_account: NewAccount, *, now: datetime | None = None) -> Account: ...

    def get_account(self, account_id: int) -> Account | None: ...

    def list_accounts(self) -> list[Account]: ...

    def available_accounts(self, now: datetime | None = None) -> list[Account]: ...

    def claim_account(
        self,
        task_id: int,
        *,
        choose: AccountChooser,
        now: datetime | None = None,
    ) -> Account | None: ...

    def mark_account_in_use(self, account_id: int, *, task_id: int | None = None, now: datetime | None = None) -> bool: ...

    def release_account(self, account_id: int, *, task_id: int | None = None, now: datetime | None = None) -> bool: ...

    def record_account_success(self, account_id: int, *, now: datetime | None = None) -> None: ...

    def record_account_failure(
        self,
        account_id: int,
        error: str,
        *,
        rate_limited_until: datetime | None = None,
        now: datetime | None = None,
    ) -> None: ...

    def set_rate_limited_until(self, account_id: int, deadline: datetime | None, *, now: datetime | None = None) -> None: ...

    def set_account_active(self, account_id: int, active: bool, *, now: datetime | None = None) -> Account: ...

    def save_account_session(self, account_id: int, session_blob: str | None, *, now: datetime | None = None) -> None: ...

    def reset_all_accounts(self, *, now: datetime | None = None) -> int: ...

    def delete_account(self, account_id: int) -> bool: ...

    def create_stock(self, new_stock: NewStock, *, now: datetime | None = None) -> Stock: ...

    def get_stock(self, stock_id: int) -> Stock | None: ...

    def list_stocks(self) -> list[Stock]: ...

    def create_industry(self, new_industry: NewIndustry, *, now: datetime | None = None) -> Industry: ...

    def get_industry(self, industry_id: int) -> Industry | None: ...

    def list_industries(self) -> list[Industry]: ...

    def append_knowledge_graph(
        self,
        *,
        task: Task,
        raw_json: Any,
        account_id: int,
        now: datetime | None = None,
    ) -> KnowledgeGraphRecord: ...

    def list_knowledge_graphs(self, *, limit: int = 100) -> list[KnowledgeGraphRecord]: ...

    def append_log(self, event: LogEvent) -> LogEvent: ...

    def recent_logs(self, *, limit: int = 100) -> list[LogEvent]: ...

    def get_config(self, key: str) -> str | None: ...

    def set_config(self, key: str, value: str, *, now: datetime | None = None) -> None: ...

    def list_config(self) -> dict[str, str | None]: ...


def _to_text(value: datetime | None) -> str | None:
    normalized = normalize_timestamp(value)
    if normalized is None:
        return None
    return normalized.isoformat()


def _from_text(value: str | None) -> datetime | None:
    if value is None:
        return None
    return normalize_timestamp(datetime.fromisoformat(value))


def _now_text(now: datetime | None) -> str:
    return _to_text(now or utc_now()) or ""


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        entity_type=EntityType(row["entity_type"]),
        entity_id=row["entity_id"],
        entity_name=row["entity_name"],
        prompt_text=row["prompt_text"],
        model_variant=row["model_variant"],
        status=TaskStatus(row["status"]),
        assigned_account_id=row["assigned_account_id"],
        retry_count=row["retry_count"],
        max_retries=row["max_retries"],
        priority=row["priority"],
        error_message=row["error_message"],
        created_at=_from_text(row["created_at"]),
        updated_at=_from_text(row["updated_at"]),
        started_at=_from_text(row["started_at"]),
        completed_at=_from_text(row["completed_at"]),
    )


def _row_to_account(row: sqlite3.Row) -> Account:
    return Account(
        id=row["id"],
        display_name=row["display_name"],
        email=row["email"],
        encrypted_credential=row["encrypted_credential"],
        persisted_session=row["persisted_session"],
        is_active=bool(row["is_active"]),
        is_in_use=bool(row["is_in_use"]),
        holder_task_id=row["holder_task_id"],
        rate_limited_until=_from_text(row["rate_limited_until"]),
        last_used_at=_from_text(row["last_used_at"]),
        total_count=row["total_count"],
        success_count=row["success_count"],
        failure_count=row["failure_count"],
        last_error=row["last_error"],
        created_at=_from_text(row["created_at"]),
        updated_at=_from_text(row["updated_at"]),
    )


def _row_to_stock(row: sqlite3.Row) -> Stock:
    return Stock(
        id=row["id"],
        symbol=row["symbol"],
        company_name=row["company_name"],
        industry=row["industry"],
        status=row["status"],
        created_at=_from_text(row["created_at"]),
        updated_at=_from_text(row["updated_at"]),
    )


def _row_to_industry(row: sqlite3.Row) -> Industry:
    return Industry(
        id=row["id"],
        industry_name=row["industry_name"],
        sector=row["sector"],
        status=row["status"],
        created_at=_from_text(row["created_at"]),
        updated_at=_from_text(row["updated_at"]),
    )


def _row_to_knowledge_graph(row: sqlite3.Row) -> KnowledgeGraphRecord:
    return KnowledgeGraphRecord(
        id=row["id"],
        entity_type=EntityType(row["entity_type"]),
        entity_id=row["entity_id"],
        entity_name=row["entity_name"],
        source_task_id=row["source_task_id"],
        raw_json=json.loads(row["raw_json"]),
        model_used=row["model_used"],
        account_used=row["account_used"],
        extracted_at=_from_text(row["extracted_at"]),
    )


def _row_to_log_event(row: sqlite3.Row) -> LogEvent:
    return LogEvent(
        id=row["id"],
        level=LogLevel(row["level"]),
        message=row["message"],
        task_id=row["task_id"],
        account_id=row["account_id"],
        entity_type=EntityType(row["entity_type"]) if row["entity_type"] else None,
        entity_id=row["entity_id"],
        metadata=json.loads(row["metadata"] or "{}"),
        created_at=_from_text(row["created_at"]),
    )


class SQLiteExtractionRepository(ExtractionRepository):
    """SQLite-backed repository; every state transition is one ``BEGIN IMMEDIATE`` transaction."""

    def __init__(self, database: Path | str) -> None:
        self._database = str(database)
        if self._database != ":memory:":
            Path(self._database).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self._database, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._conn.execute("PRAGMA busy_timeout=15000;")
        self._conn.execute("PRAGMA foreign_keys=ON;")
        self._conn.executescript(_SCHEMA)
        self._migrate()
        self.seed_default_config()

    def _migrate(self) -> None:
        columns = {row["name"] for row in self._conn.execute("PRAGMA table_info(accounts)").fetchall()}
        if "holder_task_id" not in columns:
            self._conn.execute("ALTER TABLE accounts ADD COLUMN holder_task_id INTEGER")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                yield cur
            except BaseException:
                cur.execute("ROLLBACK")
                raise
            cur.execute("COMMIT")

    def _query(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    # tasks

    def create_task(self, new_task: NewTask, *, now: datetime | None = None) -> Task:
        stamp = _now_text(now)
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO tasks(entity_type, entity_id, entity_name, prompt_text, model_variant,
                                  status, retry_count, max_retries, priority, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, 'queued', 0, ?, ?, ?, ?)
                """,
                (
                    new_task.entity_type.value,
                    new_task.entity_id,
                    new_task.entity_name,
                    new_task.prompt_text,
                    new_task.model_variant,
                    new_task.max_retries,
                    new_task.priority,
                    stamp,
                    stamp,
                ),
            )
            task_id = cur.lastrowid
            row = cur.execute("SELECT * FROM tasks WHERE id=?", (task_id,)).fetchone()
        return _row_to_task(row)

    def get_task(self, task_id: int) -> Task | None:
        rows = self._query("SELECT * FROM tasks WHERE id=?", (task_id,))
        return _row_to_task(rows[0]) if rows else None

    def list_tasks(self, *, status: TaskStatus | None = None) -> list[Task]:
        if status is None:
            rows = self._query("SELECT * FROM tasks ORDER BY priority DESC, created_at ASC, id ASC")
        else:
            rows = self._query(
                "SELECT * FROM tasks WHERE status=? ORDER BY priority DESC, created_at ASC, id ASC",
                (status.value,),
            )
        return [_row_to_task(row) for row in rows]

    def pending_tasks(self, limit: int) -> list[Task]:
        if limit <= 0:
            return []
        rows = self._query(
            """
            SELECT * FROM tasks
             WHERE status='queued'
          ORDER BY priority DESC, created_at ASC, id ASC
             LIMIT ?
            """,
            (limit,),
        )
        return [_row_to_task(row) for row in rows]

    def update_task_priority(self, task_id: int, priority: int) -> Task:
        with self._transaction() as cur:
            cur.execute(
                "UPDATE tasks SET priority=?, updated_at=? WHERE id=?",
                (priority, _now_text(None), task_id),
            )
            if cur.rowcount == 0:
                raise RecordNotFoundError(kind="task", record_id=task_id)
            row = cur.execute("SELECT * FROM tasks WHERE id=?", (task_id,)).fetchone()
        return _row_to_task(row)

    def mark_task_processing(self, task_id: int, account_id: int, *, now: datetime | None = None) -> bool:
        stamp = _now_text(now)
        with self._transaction() as cur:
            cur.execute(
                """
                UPDATE tasks
                   SET status='processing', assigned_account_id=?, started_at=?, updated_at=?
                 WHERE id=? AND status IN ('queued', 'processing')
                """,
                (account_id, stamp, stamp, task_id),
            )
            return cur.rowcount > 0

    def complete_task(self, task_id: int, *, now: datetime | None = None) -> bool:
        stamp = _now_text(now)
        with self._transaction() as cur:
            cur.execute(
                """
                UPDATE tasks
                   SET status='completed', completed_at=?, updated_at=?, error_message=NULL
                 WHERE id=? AND status='processing'
                """,
                (stamp, stamp, task_id),
            )
            return cur.rowcount > 0

    def record_task_failure(
        self,
        task_id: int,
        error: str,
        *,
        retryable: bool,
        now: datetime | None = None,
    ) -> Task | None:
        stamp = _now_text(now)
        with self._transaction() as cur:
            row = cur.execute(
                "SELECT * FROM tasks WHERE id=? AND status='processing'",
                (task_id,),
            ).fetchone()
            if row is None:
                return None
            max_retries = row["max_retries"]
            retry_count = min(row["retry_count"] + 1, max_retries)
            requeue = retryable and retry_count < max_retries
            cur.execute(
                """
                UPDATE tasks
                   SET status=?, retry_count=?, error_message=?, updated_at=?,
                       completed_at=?, assigned_account_id=CASE WHEN ? THEN NULL ELSE assigned_account_id END
                 WHERE id=?
                """,
                (
                    TaskStatus.queued.value if requeue else TaskStatus.failed.value,
                    retry_count,
                    error,
                    stamp,
                    None if requeue else stamp,
                    1 if requeue else 0,
                    task_id,
                ),
            )
            updated = cur.execute("SELECT * FROM tasks WHERE id=?", (task_id,)).fetchone()
        return _row_to_task(updated)

    def cancel_task(self, task_id: int, *, now: datetime | None = None) -> TaskStatus | None:
        stamp = _now_text(now)
        with self._transaction() as cur:
            row = cur.execute("SELECT status FROM tasks WHERE id=?", (task_id,)).fetchone()
            if row is None:
                return None
            previous = TaskStatus(row["status"])
            if previous in {TaskStatus.queued, TaskStatus.processing}:
                cur.execute(
                    "UPDATE tasks SET status='cancelled', completed_at=?, updated_at=? WHERE id=?",
                    (stamp, stamp, task_id),
                )
            return previous

    def delete_task(self, task_id: int) -> bool:
        with self._transaction() as cur:
            cur.execute("DELETE FROM tasks WHERE id=?", (task_id,))
            return cur.rowcount > 0

    # accounts

    def create_account(self, new_account: NewAccount, *, now: datetime | None = None) -> Account:
        stamp = _now_text(now)
        try:
            with self._transaction() as cur:
                cur.execute(
                    """
                    INSERT INTO accounts(display_name, email, encrypted_credential, is_active, is_in_use,
                                         created_at, updated_at)
                    VALUES (?, ?, ?, 1, 0, ?, ?)
                    """,
                    (new_account.display_name, new_account.email, new_account.encrypted_credential, stamp, stamp),
                )
                row = cur.execute("SELECT * FROM accounts WHERE id=?", (cur.lastrowid,)).fetchone()
        except sqlite3.IntegrityError as exc:
            raise RepositoryError(f"account '{new_account.email}' already exists") from exc
        return _row_to_account(row)

    def get_account(self, account_id: int) -> Account | None:
        rows = self._query("SELECT * FROM accounts WHERE id=?", (account_id,))
        return _row_to_account(rows[0]) if rows else None

    def list_accounts(self) -> list[Account]:
        return [_row_to_account(row) for row in self._query("SELECT * FROM accounts ORDER BY id ASC")]

    def available_accounts(self, now: datetime | None = None) -> list[Account]:
        current = now or utc_now()
        return [account for account in self.list_accounts() if account.is_available(current)]

    def claim_account(
        self,
        task_id: int,
        *,
        choose: AccountChooser,
        now: datetime | None = None,
    ) -> Account | None:
        current = now or utc_now()
        stamp = _now_text(current)
        with self._transaction() as cur:
            task_row = cur.execute("SELECT status FROM tasks WHERE id=?", (task_id,)).fetchone()
            if task_row is None or task_row["status"] != TaskStatus.queued.value:
                return None
            rows = cur.execute("SELECT * FROM accounts ORDER BY id ASC").fetchall()
            available = [account for account in map(_row_to_account, rows) if account.is_available(current)]
            if not available:
                return None
            chosen = choose(available)
            if chosen is None:
                return None
            cur.execute(
                """
                UPDATE accounts
                   SET is_in_use=1, holder_task_id=?, last_used_at=?, updated_at=?
                 WHERE id=? AND is_in_use=0 AND is_active=1
                """,
                (task_id, stamp, stamp, chosen.id),
            )
            if cur.rowcount == 0:
                return None
            cur.execute(
                """
                UPDATE tasks
                   SET status='processing', assigned_account_id=?, started_at=?, updated_at=?
                 WHERE id=? AND status='queued'
                """,
                (chosen.id, stamp, stamp, task_id),
            )
            row = cur.execute("SELECT * FROM accounts WHERE id=?", (chosen.id,)).fetchone()
        return _row_to_account(row)

    def mark_account_in_use(self, account_id: int, *, task_id: int | None = None, now: datetime | None = None) -> bool:
        """Flag ``account_id`` busy for ``task_id``; refused while another task holds it."""
        stamp = _now_text(now)
        with self._transaction() as cur:
            cur.execute(
                """
                UPDATE accounts
                   SET is_in_use=1, holder_task_id=?, last_used_at=?, updated_at=?
                 WHERE id=? AND (is_in_use=0 OR holder_task_id IS ?)
                """,
                (task_id, stamp, stamp, account_id, task_id),
            )
            return cur.rowcount > 0

    def release_account(self, account_id: int, *, task_id: int | None = None, now: datetime | None = None) -> bool:
        """Free ``account_id``. With ``task_id`` only the holder recorded at claim time may free it."""
        with self._transaction() as cur:
            if task_id is None:
                cur.execute(
                    "UPDATE accounts SET is_in_use=0, holder_task_id=NULL, updated_at=? WHERE id=?",
                    (_now_text(now), account_id),
                )
            else:
                cur.execute(
                    """
                    UPDATE accounts
                       SET is_in_use=0, holder_task_id=NULL, updated_at=?
                     WHERE id=? AND holder_task_id=?
                    """,
                    (_now_text(now), account_id, task_id),
                )
            return cur.rowcount > 0

    def record_account_success(self, account_id: int, *, now: datetime | None = None) -> None:
        with self._transaction() as cur:
            cur.execute(
                """
                UPDATE accounts
                   SET total_count=total_count + 1, success_count=success_count + 1, updated_at=?
                 WHERE id=?
                """,
                (_now_text(now), account_id),
            )

    def record_account_failure(
        self,
        account_id: int,
        error: str,
        *,
        rate_limited_until: datetime | None = None,
        now: datetime | None = None,
    ) -> None:
        with self._transaction() as cur:
            cur.execute(
                """
                UPDATE accounts
                   SET total_count=total_count + 1,
                       failure_count=failure_count + 1,
                       last_error=?,
                       rate_limited_until=COALESCE(?, rate_limited_until),
                       updated_at=?
                 WHERE id=?
                """,
                (error, _to_text(rate_limited_until), _now_text(now), account_id),
            )

    def set_rate_limited_until(self, account_id: int, deadline: datetime | None, *, now: datetime | None = None) -> None:
        with self._transaction() as cur:
            cur.execute(
                "UPDATE accounts SET rate_limited_until=?, updated_at=? WHERE id=?",
                (_to_text(deadline), _now_text(now), account_id),
            )

    def set_account_active(self, account_id: int, active: bool, *, now: datetime | None = None) -> Account:
        with self._transaction() as cur:
            cur.execute(
                "UPDATE accounts SET is_active=?, updated_at=? WHERE id=?",
                (1 if active else 0, _now_text(now), account_id),
            )
            if cur.rowcount == 0:
                raise RecordNotFoundError(kind="account", record_id=account_id)
            row = cur.execute("SELECT * FROM accounts WHERE id=?", (account_id,)).fetchone()
        return _row_to_account(row)

    def save_account_session(self, account_id: int, session_blob: str | None, *, now: datetime | None = None) -> None:
        with self._transaction() as cur:
            cur.execute(
                "UPDATE accounts SET persisted_session=?, updated_at=? WHERE id=?",
                (session_blob, _now_text(now), account_id),
            )
            if cur.rowcount == 0:
                raise RecordNotFoundError(kind="account", record_id=account_id)

    def reset_all_accounts(self, *, now: datetime | None = None) -> int:
        with self._transaction() as cur:
            cur.execute(
                """
                UPDATE accounts
                   SET is_active=1, is_in_use=0, holder_task_id=NULL, rate_limited_until=NULL, updated_at=?
                """,
                (_now_text(now),),
            )
            return cur.rowcount

    def delete_account(self, account_id: int) -> bool:
        with self._transaction() as cur:
            cur.execute("DELETE FROM accounts WHERE id=? AND is_in_use=0", (account_id,))
            return cur.rowcount > 0

    # catalogue

    def create_stock(self, new_stock: NewStock, *, now: datetime | None = None) -> Stock:
        stamp = _now_text(now)
        try:
            with self._transaction() as cur:
                cur.execute(
                    """
                    INSERT INTO stocks(symbol, company_name, industry, status, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (new_stock.symbol, new_stock.company_name, new_stock.industry, new_stock.status, stamp, stamp),
                )
                row = cur.execute("SELECT * FROM stocks WHERE id=?", (cur.lastrowid,)).fetchone()
        except sqlite3.IntegrityError as exc:
            raise RepositoryError(f"stock '{new_stock.symbol}' already exists") from exc
        return _row_to_stock(row)

    def get_stock(self, stock_id: int) -> Stock | None:
        rows = self._query("SELECT * FROM stocks WHERE id=?", (stock_id,))
        return _row_to_stock(rows[0]) if rows else None

    def list_stocks(self) -> list[Stock]:
        return [_row_to_stock(row) for row in self._query("SELECT * FROM stocks ORDER BY symbol ASC")]

    def create_industry(self, new_industry: NewIndustry, *, now: datetime | None = None) -> Industry:
        stamp = _now_text(now)
        try:
            with self._transaction() as cur:
                cur.execute(
                    """
                    INSERT INTO industries(industry_name, sector, status, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (new_industry.industry_name, new_industry.sector, new_industry.status, stamp, stamp),
                )
                row = cur.execute("SELECT * FROM industries WHERE id=?", (cur.lastrowid,)).fetchone()
        except sqlite3.IntegrityError as exc:
            raise RepositoryError(f"industry '{new_industry.industry_name}' already exists") from exc
        return _row_to_industry(row)

    def get_industry(self, industry_id: int) -> Industry | None:
        rows = self._query("SELECT * FROM industries WHERE id=?", (industry_id,))
        return _row_to_industry(rows[0]) if rows else None

    def list_industries(self) -> list[Industry]:
        return [_row_to_industry(row) for row in self._query("SELECT * FROM industries ORDER BY industry_name ASC")]

    # knowledge graphs

    def append_knowledge_graph(
        self,
        *,
        task: Task,
        raw_json: Any,
        account_id: int,
        now: datetime | None = None,
    ) -> KnowledgeGraphRecord:
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO knowledge_graphs(entity_type, entity_id, entity_name, source_task_id,
                                             raw_json, model_used, account_used, extracted_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task.entity_type.value,
                    task.entity_id,
                    task.entity_name,
                    task.id,
                    json.dumps(raw_json, ensure_ascii=False),
                    task.model_variant,
                    account_id,
                    _now_text(now),
                ),
            )
            row = cur.execute("SELECT * FROM knowledge_graphs WHERE id=?", (cur.lastrowid,)).fetchone()
        return _row_to_knowledge_graph(row)

    def list_knowledge_graphs(self, *, limit: int = 100) -> list[KnowledgeGraphRecord]:
        rows = self._query("SELECT * FROM knowledge_graphs ORDER BY id DESC LIMIT ?", (limit,))
        return [_row_to_knowledge_graph(row) for row in rows]

    # logs

    def append_log(self, event: LogEvent) -> LogEvent:
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO log_events(level, message, task_id, account_id, entity_type, entity_id,
                                       metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.level.value,
                    event.message,
                    event.task_id,
                    event.account_id,
                    event.entity_type.value if event.entity_type else None,
                    event.entity_id,
                    json.dumps(event.metadata, sort_keys=True, default=str),
                    _now_text(event.created_at),
                ),
            )
            event_id = cur.lastrowid
        return event.model_copy(update={"id": event_id})

    def recent_logs(self, *, limit: int = 100) -> list[LogEvent]:
        rows = self._query("SELECT * FROM log_events ORDER BY id DESC LIMIT ?", (limit,))
        return [_row_to_log_event(row) for row in rows]

    # config

    def seed_default_config(self) -> None:
        stamp = _now_text(None)
        with self._transaction() as cur:
            for key, value in DEFAULT_CONFIG_VALUES.items():
                cur.execute(
                    "INSERT OR IGNORE INTO system_config(config_key, config_value, updated_at) VALUES (?, ?, ?)",
                    (key, value, stamp),
                )

    def get_config(self, key: str) -> str | None:
        rows = self._query("SELECT config_value FROM system_config WHERE config_key=?", (key,))
        return rows[0]["config_value"] if rows else None

    def set_config(self, key: str, value: str, *, now: datetime | None = None) -> None:
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO system_config(config_key, config_value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(config_key) DO UPDATE SET config_value=excluded.config_value,
                                                      updated_at=excluded.updated_at
                """,
                (key, value, _now_text(now)),
            )

    def list_config(self) -> dict[str, str | None]:
        rows = self._query("SELECT config_key, config_value FROM system_config ORDER BY config_key")
        return {row["config_key"]: row["config_value"] for row in rows}


def is_processing_enabled(repository: ExtractionRepository) -> bool:
    value = repository.get_config(PROCESSING_ENABLED_KEY)
    return (value or "").strip().lower() == "true"


def resolve_entity_name(repository: ExtractionRepository, entity_type: EntityType, entity_id: int) -> str:
    """Catalogue name of a task target; raises ``RecordNotFoundError`` when it is not registered."""
    if entity_type == EntityType.stock:
        stock = repository.get_stock(entity_id)
        if stock is None:
            raise RecordNotFoundError(kind="stock", record_id=entity_id)
        return stock.symbol
    industry = repository.get_industry(entity_id)
    if industry is None:
        raise RecordNotFoundError(kind="industry", record_id=entity_id)
    return industry.industry_name
