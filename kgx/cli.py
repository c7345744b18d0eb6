from __future__ import annotations

import argparse
import asyncio
import json
import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from kgx.extraction_bootstrap import sync_session
from kgx.extraction_config import (
    PROCESSING_ENABLED_KEY,
    ROTATION_STRATEGY_KEY,
    ExtractorConfig,
    RotationStrategy,
    load_extractor_config_file,
    load_extractor_config_from_env,
    resolve_runtime_path,
)
from kgx.extraction_errors import ExtractionError
from kgx.extraction_repository import RepositoryError, SQLiteExtractionRepository, resolve_entity_name
from kgx.extraction_scheduler import QueueScheduler, build_scheduler
from kgx.extraction_sessions import (
    SHARED_SCOPE,
    export_session_state_json,
    import_session_state_json,
    load_shared_session,
    lookup_shared_session,
    parse_storage_state_blob,
    save_shared_session,
)
from kgx.schemas import Account, EntityType, NewAccount, NewIndustry, NewStock, NewTask, TaskStatus

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_CONFIG_KEYS = (PROCESSING_ENABLED_KEY, ROTATION_STRATEGY_KEY)


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--project-root",
        type=Path,
        default=Path.cwd(),
        help="Directory that runtime paths (database, sessions, diagnostics) resolve against.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional YAML config file (overrides KGX_CONFIG_FILE).",
    )
    parser.add_argument("--pretty", action="store_true", help="Pretty-print JSON output.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Knowledge-graph extraction queue")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run the queue scheduler until interrupted.")
    _add_common(run_parser)
    run_parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level for the scheduler process.",
    )

    enqueue_parser = subparsers.add_parser("enqueue", help="Add an extraction task to the queue.")
    _add_common(enqueue_parser)
    enqueue_parser.add_argument(
        "--entity-type",
        required=True,
        choices=[entity_type.value for entity_type in EntityType],
    )
    enqueue_parser.add_argument("--entity-id", type=int, required=True)
    enqueue_parser.add_argument(
        "--entity-name",
        default=None,
        help="Display name for the task (default: the catalogue symbol or industry name).",
    )
    prompt_group = enqueue_parser.add_mutually_exclusive_group(required=True)
    prompt_group.add_argument("--prompt", default=None, help="Prompt text.")
    prompt_group.add_argument("--prompt-file", type=Path, default=None, help="Read prompt text from a file.")
    enqueue_parser.add_argument("--model", default=None, help="Model variant (default: gemini-3-pro).")
    enqueue_parser.add_argument("--priority", type=int, default=0)
    enqueue_parser.add_argument("--max-retries", type=int, default=None)

    queue_parser = subparsers.add_parser("queue", help="List tasks.")
    _add_common(queue_parser)
    queue_parser.add_argument("--status", default=None, choices=[status.value for status in TaskStatus])

    cancel_parser = subparsers.add_parser("cancel", help="Cancel a queued or processing task.")
    _add_common(cancel_parser)
    cancel_parser.add_argument("task_id", type=int)

    delete_parser = subparsers.add_parser("delete", help="Cancel and delete a task.")
    _add_common(delete_parser)
    delete_parser.add_argument("task_id", type=int)

    priority_parser = subparsers.add_parser("set-priority", help="Change a task's priority.")
    _add_common(priority_parser)
    priority_parser.add_argument("task_id", type=int)
    priority_parser.add_argument("priority", type=int)

    accounts_parser = subparsers.add_parser("accounts", help="Manage the account pool.")
    accounts_sub = accounts_parser.add_subparsers(dest="accounts_command", required=True)
    accounts_add = accounts_sub.add_parser("add", help="Register an account.")
    _add_common(accounts_add)
    accounts_add.add_argument("--display-name", required=True)
    accounts_add.add_argument("--email", required=True)
    accounts_add.add_argument(
        "--credential",
        required=True,
        help="Stored credential; use 'env:VAR_NAME' to read the password from the environment at login time.",
    )
    accounts_list = accounts_sub.add_parser("list", help="List accounts.")
    _add_common(accounts_list)
    accounts_toggle = accounts_sub.add_parser("toggle", help="Flip an account's active flag.")
    _add_common(accounts_toggle)
    accounts_toggle.add_argument("account_id", type=int)
    accounts_delete = accounts_sub.add_parser("delete", help="Delete an idle account.")
    _add_common(accounts_delete)
    accounts_delete.add_argument("account_id", type=int)
    accounts_reset = accounts_sub.add_parser("reset", help="Reactivate every account and clear cooldowns.")
    _add_common(accounts_reset)

    session_parser = subparsers.add_parser("session", help="Manage persisted browser sessions.")
    session_sub = session_parser.add_subparsers(dest="session_command", required=True)
    session_status = session_sub.add_parser("status", help="Report session state for an account or the shared cache.")
    _add_common(session_status)
    session_status.add_argument("--account-id", type=int, default=None)
    session_import = session_sub.add_parser("import", help="Import a session transfer payload.")
    _add_common(session_import)
    session_import.add_argument("--import-path", type=Path, required=True)
    session_import.add_argument("--account-id", type=int, default=None)
    session_export = session_sub.add_parser("export", help="Export a session transfer payload.")
    _add_common(session_export)
    session_export.add_argument("--export-path", type=Path, required=True)
    session_export.add_argument("--account-id", type=int, default=None)
    session_sync = session_sub.add_parser("sync", help="Sign in manually in a visible browser and capture the session.")
    _add_common(session_sync)
    session_sync.add_argument("--account-id", type=int, default=None)

    config_parser = subparsers.add_parser("config", help="Read or change runtime toggles.")
    config_sub = config_parser.add_subparsers(dest="config_command", required=True)
    config_get = config_sub.add_parser("get", help="Show runtime toggles.")
    _add_common(config_get)
    config_get.add_argument("key", nargs="?", default=None, choices=_CONFIG_KEYS)
    config_set = config_sub.add_parser("set", help="Change a runtime toggle.")
    _add_common(config_set)
    config_set.add_argument("key", choices=_CONFIG_KEYS)
    config_set.add_argument("value")

    logs_parser = subparsers.add_parser("logs", help="Show recent activity log events.")
    _add_common(logs_parser)
    logs_parser.add_argument("--limit", type=int, default=50)

    stocks_parser = subparsers.add_parser("stocks", help="Manage the stock catalogue.")
    stocks_sub = stocks_parser.add_subparsers(dest="stocks_command", required=True)
    stocks_add = stocks_sub.add_parser("add", help="Register a stock.")
    _add_common(stocks_add)
    stocks_add.add_argument("symbol")
    stocks_add.add_argument("--company-name", default=None)
    stocks_add.add_argument("--industry", default=None)
    stocks_list = stocks_sub.add_parser("list", help="List stocks.")
    _add_common(stocks_list)

    industries_parser = subparsers.add_parser("industries", help="Manage the industry catalogue.")
    industries_sub = industries_parser.add_subparsers(dest="industries_command", required=True)
    industries_add = industries_sub.add_parser("add", help="Register an industry.")
    _add_common(industries_add)
    industries_add.add_argument("industry_name")
    industries_add.add_argument("--sector", default=None)
    industries_list = industries_sub.add_parser("list", help="List industries.")
    _add_common(industries_list)

    graphs_parser = subparsers.add_parser("graphs", help="Show extracted knowledge graphs.")
    _add_common(graphs_parser)
    graphs_parser.add_argument("--limit", type=int, default=20)
    graphs_parser.add_argument("--full", action="store_true", help="Include the raw JSON payload.")

    return parser


def _print_payload(payload: dict[str, Any], *, pretty: bool) -> None:
    if pretty:
        print(json.dumps(payload, indent=2, sort_keys=True, default=str))
    else:
        print(json.dumps(payload, sort_keys=True, default=str))


def _error_payload(exc: Exception) -> dict[str, Any]:
    details = getattr(exc, "details", None)
    if isinstance(exc, ValidationError):
        details = exc.errors()[0]["msg"]
    return {
        "ok": False,
        "error_type": exc.__class__.__name__,
        "message": str(exc),
        "details": details,
    }


def load_config(args: argparse.Namespace) -> ExtractorConfig:
    base_config = load_extractor_config_file(args.config) if args.config is not None else None
    return load_extractor_config_from_env(base_config=base_config)


def open_repository(config: ExtractorConfig, project_root: Path) -> SQLiteExtractionRepository:
    return SQLiteExtractionRepository(resolve_runtime_path(project_root, config.database_path))


def _account_payload(account: Account) -> dict[str, Any]:
    payload = account.model_dump(mode="json", exclude={"encrypted_credential", "persisted_session"})
    payload["has_session"] = bool(account.persisted_session)
    return payload


def run_run(args: argparse.Namespace, config: ExtractorConfig, project_root: Path) -> dict[str, Any]:
    logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT)
    repository = open_repository(config, project_root)
    scheduler = build_scheduler(config, repository, project_root=project_root)
    try:
        asyncio.run(scheduler.run_forever())
    finally:
        repository.close()
    return {"ok": True, "outcomes": [outcome.model_dump(mode="json") for outcome in scheduler.outcomes]}


def run_enqueue(args: argparse.Namespace, config: ExtractorConfig, project_root: Path) -> dict[str, Any]:
    prompt = args.prompt
    if args.prompt_file is not None:
        prompt = args.prompt_file.read_text(encoding="utf-8")
    entity_type = EntityType(args.entity_type)

    repository = open_repository(config, project_root)
    try:
        catalogue_name = resolve_entity_name(repository, entity_type, args.entity_id)
        fields: dict[str, Any] = {
            "entity_type": entity_type,
            "entity_id": args.entity_id,
            "entity_name": args.entity_name or catalogue_name,
            "prompt_text": prompt,
            "priority": args.priority,
            "max_retries": config.scheduler.default_max_retries if args.max_retries is None else args.max_retries,
        }
        if args.model:
            fields["model_variant"] = args.model
        task = _scheduler(config, repository, project_root).enqueue(NewTask(**fields))
    finally:
        repository.close()
    return {"ok": True, "task": task.model_dump(mode="json", exclude={"prompt_text"})}


def _scheduler(config: ExtractorConfig, repository: SQLiteExtractionRepository, project_root: Path) -> QueueScheduler:
    return build_scheduler(config, repository, project_root=project_root)


def run_queue(args: argparse.Namespace, config: ExtractorConfig, project_root: Path) -> dict[str, Any]:
    repository = open_repository(config, project_root)
    try:
        status = TaskStatus(args.status) if args.status else None
        tasks = repository.list_tasks(status=status)
    finally:
        repository.close()
    return {
        "ok": True,
        "count": len(tasks),
        "tasks": [task.model_dump(mode="json", exclude={"prompt_text"}) for task in tasks],
    }


def run_cancel(args: argparse.Namespace, config: ExtractorConfig, project_root: Path) -> dict[str, Any]:
    repository = open_repository(config, project_root)
    try:
        cancelled = asyncio.run(_scheduler(config, repository, project_root).cancel_task(args.task_id))
    finally:
        repository.close()
    return {"ok": cancelled, "task_id": args.task_id, "cancelled": cancelled}


def run_delete(args: argparse.Namespace, config: ExtractorConfig, project_root: Path) -> dict[str, Any]:
    repository = open_repository(config, project_root)
    try:
        deleted = asyncio.run(_scheduler(config, repository, project_root).force_delete_task(args.task_id))
    finally:
        repository.close()
    return {"ok": deleted, "task_id": args.task_id, "deleted": deleted}


def run_set_priority(args: argparse.Namespace, config: ExtractorConfig, project_root: Path) -> dict[str, Any]:
    repository = open_repository(config, project_root)
    try:
        task = repository.update_task_priority(args.task_id, args.priority)
    finally:
        repository.close()
    return {"ok": True, "task": task.model_dump(mode="json", exclude={"prompt_text"})}


def run_accounts(args: argparse.Namespace, config: ExtractorConfig, project_root: Path) -> dict[str, Any]:
    repository = open_repository(config, project_root)
    try:
        pool = _scheduler(config, repository, project_root).pool
        if args.accounts_command == "add":
            account = pool.add_account(
                NewAccount(display_name=args.display_name, email=args.email, encrypted_credential=args.credential)
            )
            return {"ok": True, "account": _account_payload(account)}
        if args.accounts_command == "list":
            accounts = repository.list_accounts()
            return {"ok": True, "count": len(accounts), "accounts": [_account_payload(item) for item in accounts]}
        if args.accounts_command == "toggle":
            return {"ok": True, "account": _account_payload(pool.toggle(args.account_id))}
        if args.accounts_command == "delete":
            deleted = pool.delete_account(args.account_id)
            return {"ok": deleted, "account_id": args.account_id, "deleted": deleted}
        reset = pool.reset_all()
        return {"ok": True, "reset": reset}
    finally:
        repository.close()


def run_session(args: argparse.Namespace, config: ExtractorConfig, project_root: Path) -> dict[str, Any]:
    repository = open_repository(config, project_root)
    try:
        pool = _scheduler(config, repository, project_root).pool
        account = None
        if args.account_id is not None:
            account = repository.get_account(args.account_id)
            if account is None:
                raise RepositoryError(f"account {args.account_id} not found")
        scope = account.email if account is not None else SHARED_SCOPE

        if args.session_command == "status":
            if account is not None:
                return {"ok": True, **pool.session_status(account.id).model_dump(mode="json")}
            diagnostics = lookup_shared_session(config=config, project_root=project_root)
            return {"ok": True, **diagnostics.model_dump(mode="json", exclude={"storage_state"})}

        if args.session_command == "import":
            storage_state = import_session_state_json(args.import_path, scope=scope, project_root=project_root)
            if account is not None:
                pool.save_session(account.id, storage_state)
                return {"ok": True, "scope": scope, "account_id": account.id}
            path = save_shared_session(storage_state, config=config, project_root=project_root)
            return {"ok": True, "scope": scope, "session_state_path": str(path)}

        if args.session_command == "export":
            if account is not None:
                if not account.persisted_session:
                    raise RepositoryError(f"account {account.id} has no persisted session")
                storage_state = parse_storage_state_blob(account.persisted_session, scope=scope)
            else:
                storage_state = load_shared_session(config=config, project_root=project_root)
            path = export_session_state_json(
                storage_state,
                args.export_path,
                scope=scope,
                project_root=project_root,
            )
            return {"ok": True, "scope": scope, "export_path": str(path)}

        storage_state = asyncio.run(sync_session(config, project_root=project_root))
        if account is not None:
            pool.save_session(account.id, storage_state)
        return {"ok": True, "scope": scope, "cookies": len(storage_state.get("cookies", []))}
    finally:
        repository.close()


def run_config(args: argparse.Namespace, config: ExtractorConfig, project_root: Path) -> dict[str, Any]:
    repository = open_repository(config, project_root)
    try:
        if args.config_command == "get":
            values = repository.list_config()
            if args.key is not None:
                return {"ok": True, "key": args.key, "value": values.get(args.key)}
            return {"ok": True, "config": values}

        value = args.value.strip().lower()
        if args.key == PROCESSING_ENABLED_KEY and value not in {"true", "false"}:
            raise ValueError(f"{PROCESSING_ENABLED_KEY} must be 'true' or 'false'")
        if args.key == ROTATION_STRATEGY_KEY:
            RotationStrategy(value)
        repository.set_config(args.key, value)
        return {"ok": True, "key": args.key, "value": value}
    finally:
        repository.close()


def run_stocks(args: argparse.Namespace, config: ExtractorConfig, project_root: Path) -> dict[str, Any]:
    repository = open_repository(config, project_root)
    try:
        if args.stocks_command == "add":
            stock = repository.create_stock(
                NewStock(symbol=args.symbol, company_name=args.company_name, industry=args.industry)
            )
            return {"ok": True, "stock": stock.model_dump(mode="json")}
        stocks = repository.list_stocks()
        return {"ok": True, "count": len(stocks), "stocks": [stock.model_dump(mode="json") for stock in stocks]}
    finally:
        repository.close()


def run_industries(args: argparse.Namespace, config: ExtractorConfig, project_root: Path) -> dict[str, Any]:
    repository = open_repository(config, project_root)
    try:
        if args.industries_command == "add":
            industry = repository.create_industry(NewIndustry(industry_name=args.industry_name, sector=args.sector))
            return {"ok": True, "industry": industry.model_dump(mode="json")}
        industries = repository.list_industries()
        return {
            "ok": True,
            "count": len(industries),
            "industries": [industry.model_dump(mode="json") for industry in industries],
        }
    finally:
        repository.close()


def run_logs(args: argparse.Namespace, config: ExtractorConfig, project_root: Path) -> dict[str, Any]:
    repository = open_repository(config, project_root)
    try:
        events = repository.recent_logs(limit=args.limit)
    finally:
        repository.close()
    return {"ok": True, "events": [event.model_dump(mode="json") for event in events]}


def run_graphs(args: argparse.Namespace, config: ExtractorConfig, project_root: Path) -> dict[str, Any]:
    repository = open_repository(config, project_root)
    try:
        records = repository.list_knowledge_graphs(limit=args.limit)
    finally:
        repository.close()
    exclude = None if args.full else {"raw_json"}
    return {"ok": True, "graphs": [record.model_dump(mode="json", exclude=exclude) for record in records]}


_HANDLERS = {
    "run": run_run,
    "enqueue": run_enqueue,
    "queue": run_queue,
    "cancel": run_cancel,
    "delete": run_delete,
    "set-priority": run_set_priority,
    "accounts": run_accounts,
    "session": run_session,
    "config": run_config,
    "stocks": run_stocks,
    "industries": run_industries,
    "logs": run_logs,
    "graphs": run_graphs,
}


def dispatch(args: argparse.Namespace) -> int:
    handler = _HANDLERS[args.command]
    project_root = args.project_root.resolve()
    try:
        config = load_config(args)
        payload = handler(args, config, project_root)
    except (ExtractionError, RepositoryError, ValidationError, ValueError, OSError) as exc:
        _print_payload(_error_payload(exc), pretty=args.pretty)
        return 1

    _print_payload(payload, pretty=args.pretty)
    return 0 if payload.get("ok") else 1


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command not in _HANDLERS:
        parser.error(f"Unknown command: {args.command}")
        return 2
    return dispatch(args)


if __name__ == "__main__":
    raise SystemExit(main())
