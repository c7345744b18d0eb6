from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
from browser_fakes import storage_state

from kgx.cli import build_parser, main
from kgx.extraction_config import ExtractorConfig


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "kgx.cli.load_extractor_config_from_env",
        lambda base_config=None: base_config or ExtractorConfig(),
    )


def _run(capsys: pytest.CaptureFixture[str], root: Path, *argv: str) -> tuple[int, dict[str, Any]]:
    args = list(argv)
    split = 2 if args[0] in {"accounts", "session", "config", "stocks", "industries"} else 1
    status_code = main([*args[:split], "--project-root", str(root), *args[split:]])
    return status_code, json.loads(capsys.readouterr().out)


def test_enqueue_parser_accepts_prompt_file() -> None:
    args = build_parser().parse_args(
        [
            "enqueue",
            "--entity-type",
            "Industry",
            "--entity-id",
            "7",
            "--entity-name",
            "Semiconductors",
            "--prompt-file",
            "prompts/industry.txt",
            "--priority",
            "4",
        ]
    )

    assert args.command == "enqueue"
    assert args.entity_type == "Industry"
    assert args.prompt is None
    assert args.prompt_file == Path("prompts/industry.txt")
    assert args.priority == 4


def test_enqueue_requires_a_prompt() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args(
            ["enqueue", "--entity-type", "Stock", "--entity-id", "1", "--entity-name", "Acme"]
        )


def test_accounts_add_and_list_hide_credentials(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    status_code, payload = _run(
        capsys,
        tmp_path,
        "accounts",
        "add",
        "--display-name",
        "Worker 1",
        "--email",
        "worker1@example.com",
        "--credential",
        "env:KGX_PW_1",
    )
    assert status_code == 0
    assert payload["account"]["email"] == "worker1@example.com"
    assert "encrypted_credential" not in payload["account"]

    status_code, payload = _run(capsys, tmp_path, "accounts", "list")
    assert status_code == 0
    assert payload["count"] == 1
    assert payload["accounts"][0]["has_session"] is False
    assert "persisted_session" not in payload["accounts"][0]

    status_code, payload = _run(capsys, tmp_path, "accounts", "toggle", "1")
    assert status_code == 0
    assert payload["account"]["is_active"] is False

    status_code, payload = _run(capsys, tmp_path, "accounts", "reset")
    assert payload == {"ok": True, "reset": 1}


def test_duplicate_account_reports_error(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    argv = ("accounts", "add", "--display-name", "W", "--email", "w@example.com", "--credential", "pw")
    _run(capsys, tmp_path, *argv)

    status_code, payload = _run(capsys, tmp_path, *argv)

    assert status_code == 1
    assert payload["ok"] is False
    assert payload["error_type"] == "RepositoryError"


def test_enqueue_queue_priority_and_cancel(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    prompt_file = tmp_path / "prompt.txt"
    prompt_file.write_text("Extract the graph for Acme.", encoding="utf-8")
    _, stock = _run(capsys, tmp_path, "stocks", "add", "ACME", "--company-name", "Acme Corp")

    status_code, payload = _run(
        capsys,
        tmp_path,
        "enqueue",
        "--entity-type",
        "Stock",
        "--entity-id",
        str(stock["stock"]["id"]),
        "--entity-name",
        "Acme",
        "--prompt-file",
        str(prompt_file),
    )
    assert status_code == 0
    task_id = payload["task"]["id"]
    assert payload["task"]["status"] == "queued"
    assert payload["task"]["max_retries"] == 3
    assert "prompt_text" not in payload["task"]

    status_code, payload = _run(capsys, tmp_path, "set-priority", str(task_id), "9")
    assert status_code == 0
    assert payload["task"]["priority"] == 9

    status_code, payload = _run(capsys, tmp_path, "queue", "--status", "queued")
    assert payload["count"] == 1
    assert payload["tasks"][0]["entity_name"] == "Acme"

    status_code, payload = _run(capsys, tmp_path, "cancel", str(task_id))
    assert status_code == 0
    assert payload["cancelled"] is True

    status_code, payload = _run(capsys, tmp_path, "cancel", str(task_id))
    assert status_code == 1
    assert payload["cancelled"] is False

    status_code, payload = _run(capsys, tmp_path, "logs", "--limit", "10")
    messages = [event["message"] for event in payload["events"]]
    assert "Task added to queue: Stock Acme" in messages
    assert "Task cancelled" in messages


def test_enqueue_rejects_entities_missing_from_the_catalogue(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    status_code, payload = _run(
        capsys, tmp_path, "enqueue", "--entity-type", "Industry", "--entity-id", "7", "--prompt", "Map the industry."
    )

    assert status_code == 1
    assert payload["error_type"] == "RecordNotFoundError"
    assert payload["message"] == "industry 7 not found"
    _, payload = _run(capsys, tmp_path, "queue")
    assert payload["count"] == 0


def test_catalogue_commands_and_enqueue_by_catalogue_name(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    status_code, payload = _run(capsys, tmp_path, "industries", "add", "Semiconductors", "--sector", "Technology")
    assert status_code == 0
    industry_id = payload["industry"]["id"]
    assert payload["industry"]["status"] == "pending"

    _run(capsys, tmp_path, "stocks", "add", "zeta")
    _run(capsys, tmp_path, "stocks", "add", "ACME", "--industry", "Semiconductors")
    status_code, payload = _run(capsys, tmp_path, "stocks", "list")
    assert [stock["symbol"] for stock in payload["stocks"]] == ["ACME", "ZETA"]

    status_code, payload = _run(capsys, tmp_path, "stocks", "add", "Acme")
    assert status_code == 1
    assert payload["error_type"] == "RepositoryError"

    status_code, payload = _run(capsys, tmp_path, "industries", "list")
    assert payload["count"] == 1
    assert payload["industries"][0]["sector"] == "Technology"

    status_code, payload = _run(
        capsys,
        tmp_path,
        "enqueue",
        "--entity-type",
        "Industry",
        "--entity-id",
        str(industry_id),
        "--prompt",
        "Map the industry.",
    )
    assert status_code == 0
    assert payload["task"]["entity_name"] == "Semiconductors"

def test_set_priority_unknown_task(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    status_code, payload = _run(capsys, tmp_path, "set-priority", "5", "1")

    assert status_code == 1
    assert payload["error_type"] == "RecordNotFoundError"


def test_config_get_and_set(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    status_code, payload = _run(capsys, tmp_path, "config", "get")
    assert payload["config"] == {"account_rotation_strategy": "random", "queue_processing_enabled": "true"}

    status_code, payload = _run(capsys, tmp_path, "config", "set", "account_rotation_strategy", "Round_Robin")
    assert status_code == 0
    assert payload["value"] == "round_robin"

    status_code, payload = _run(capsys, tmp_path, "config", "set", "queue_processing_enabled", "maybe")
    assert status_code == 1
    assert payload["error_type"] == "ValueError"

    status_code, payload = _run(capsys, tmp_path, "config", "get", "account_rotation_strategy")
    assert payload == {"ok": True, "key": "account_rotation_strategy", "value": "round_robin"}


def test_shared_session_import_status_export(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    raw_path = tmp_path / "captured.json"
    raw_path.write_text(json.dumps(storage_state()), encoding="utf-8")

    status_code, payload = _run(capsys, tmp_path, "session", "status")
    assert payload["status"] == "missing"

    status_code, payload = _run(capsys, tmp_path, "session", "import", "--import-path", str(raw_path))
    assert status_code == 0
    assert payload["scope"] == "shared"

    status_code, payload = _run(capsys, tmp_path, "session", "status")
    assert payload["status"] == "ready"
    assert "storage_state" not in payload

    status_code, payload = _run(capsys, tmp_path, "session", "export", "--export-path", "out/session.json")
    assert status_code == 0
    exported = json.loads((tmp_path / "out/session.json").read_text(encoding="utf-8"))
    assert exported["scope"] == "shared"
    assert exported["storage_state"] == storage_state()


def test_account_session_export_without_session_fails(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _run(capsys, tmp_path, "accounts", "add", "--display-name", "W", "--email", "w@example.com", "--credential", "pw")

    status_code, payload = _run(
        capsys,
        tmp_path,
        "session",
        "export",
        "--account-id",
        "1",
        "--export-path",
        "out/w.json",
    )

    assert status_code == 1
    assert "no persisted session" in payload["message"]


def test_session_sync_stores_account_session(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    observed: dict[str, object] = {}

    async def _sync_stub(config: ExtractorConfig, *, project_root: Path, **_kwargs: Any) -> dict[str, Any]:
        observed["project_root"] = project_root
        return storage_state()

    monkeypatch.setattr("kgx.cli.sync_session", _sync_stub)
    _run(capsys, tmp_path, "accounts", "add", "--display-name", "W", "--email", "w@example.com", "--credential", "pw")

    status_code, payload = _run(capsys, tmp_path, "session", "sync", "--account-id", "1")

    assert status_code == 0
    assert payload == {"ok": True, "scope": "w@example.com", "cookies": 1}
    assert observed["project_root"] == tmp_path.resolve()

    status_code, payload = _run(capsys, tmp_path, "session", "status", "--account-id", "1")
    assert payload["has_session"] is True
    assert payload["valid"] is True


def test_graphs_empty(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    status_code, payload = _run(capsys, tmp_path, "graphs")

    assert status_code == 0
    assert payload == {"ok": True, "graphs": []}
