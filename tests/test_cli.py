from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

from scopeward.__main__ import format_bytes, main
from scopeward.models import ResourceRecord, ScopeRecord
from scopeward.state_store import FileStateStore


@pytest.fixture
def state_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    root = tmp_path / "state"
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SCOPEWARD_STATE_DIR", str(root))
    monkeypatch.setenv("SCOPEWARD_DEFAULT_STAGE", "dev")
    monkeypatch.setenv("SCOPEWARD_RETRY_DELAY", "0")
    monkeypatch.delenv("SCOPEWARD_PROVISIONER", raising=False)
    return root


def _write_scope(root: Path, path: str, *resource_ids: str, nested: set[str] | None = None) -> None:
    record = ScopeRecord(
        path=path,
        resources={resource_id: ResourceRecord(id=resource_id, type="test") for resource_id in resource_ids},
        nested_scope_names=nested or set(),
    )
    FileStateStore(root).write(path, record)


def test_finalize_stage_json(state_root: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _write_scope(state_root, "acme/test", "r0", "r1", "r2")

    exit_code = main(["finalize", "--app", "acme", "--stage", "test", "--json"])

    payload = json.loads(capsys.readouterr().out)
    assert exit_code == 0
    assert payload["resources_deleted"] == 3
    assert payload["state_removed"] is True
    assert not FileStateStore(state_root).exists("acme/test")


def test_finalize_all_is_not_implemented(state_root: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["finalize", "--all"]) == 2
    assert "not implemented" in capsys.readouterr().err


def test_finalize_detects_app_and_default_stage(state_root: Path, capsys: pytest.CaptureFixture[str]) -> None:
    Path("pyproject.toml").write_text('[project]\nname = "acme"\n', encoding="utf-8")
    _write_scope(state_root, "acme/dev", "r0")
    _write_scope(state_root, "acme/pr-3", "r1")

    assert main(["finalize"]) == 0

    store = FileStateStore(state_root)
    assert not store.exists("acme/dev")
    assert store.exists("acme/pr-3")
    assert "acme/dev" in capsys.readouterr().out


def test_finalize_without_detectable_app_fails(state_root: Path) -> None:
    assert main(["finalize"]) == 2


def test_finalize_application_summary(state_root: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _write_scope(state_root, "acme/dev", "r0")
    _write_scope(state_root, "acme/pr-3", "r1", "r2")

    exit_code = main(["finalize", "--app", "acme", "--json"])

    summary = json.loads(capsys.readouterr().out)
    assert exit_code == 0
    assert summary["stages_processed"] == 2
    assert summary["resources_deleted"] == 3


def test_protected_stage_needs_force(state_root: Path) -> None:
    _write_scope(state_root, "acme/prod", "db")
    store = FileStateStore(state_root)

    assert main(["finalize", "--app", "acme", "--stage", "prod"]) == 1
    assert store.exists("acme/prod")

    assert main(["finalize", "--app", "acme", "--stage", "prod", "--dry-run"]) == 0
    assert store.exists("acme/prod")

    assert main(["finalize", "--app", "acme", "--stage", "prod", "--force", "--strategy", "aggressive"]) == 0
    assert not store.exists("acme/prod")


def test_list_reports_stages(state_root: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _write_scope(state_root, "acme/test", "r0", nested={"backend"})
    _write_scope(state_root, "acme/test/backend", "r1")
    _write_scope(state_root, "zeta/dev")

    assert main(["list", "--json"]) == 0
    rows = json.loads(capsys.readouterr().out)
    assert [row["scope_path"] for row in rows] == ["acme/test", "zeta/dev"]
    assert rows[0]["nested_scopes"] == ["backend"]

    assert main(["list", "acme"]) == 0
    assert "acme/test: 1 resources nested=backend" in capsys.readouterr().out


def test_inspect_reports_orphans_without_locking(state_root: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _write_scope(state_root, "acme/pr-9", "api", "old-cache", nested={"backend", "ghost"})
    _write_scope(state_root, "acme/pr-9/backend", "worker")

    exit_code = main(["inspect", "acme", "pr-9", "--json", "--desired", "api"])

    payload = json.loads(capsys.readouterr().out)
    assert exit_code == 0
    assert payload["orphaned_resources"] == ["old-cache"]
    assert payload["metadata"]["environment"] == "preview"
    assert payload["nested_scopes"][0]["resource_count"] == 1
    assert payload["validation"]["warnings"] == ["Nested scope ghost is registered but has no state"]
    assert any("ephemeral" in advice for advice in payload["recommendations"])
    assert not (state_root / "acme" / "pr-9" / ".lock").exists()


def test_inspect_human_output(state_root: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _write_scope(state_root, "acme/dev")

    assert main(["inspect", "acme", "dev"]) == 0
    out = capsys.readouterr().out
    assert "Environment:    development" in out
    assert "Stage appears to be empty" in out


def test_inspect_missing_stage_fails(state_root: Path) -> None:
    assert main(["inspect", "acme", "nope"]) == 1


def test_format_bytes() -> None:
    assert format_bytes(0) == "0 B"
    assert format_bytes(2048) == "2.0 KB"
    assert format_bytes(3 * 1024 * 1024) == "3.0 MB"


def test_cli_module_entry_point(state_root: Path) -> None:
    _write_scope(state_root, "acme/test", "r0")

    result = subprocess.run(
        [sys.executable, "-m", "scopeward", "finalize", "--app", "acme", "--stage", "test", "--dry-run"],
        env=os.environ.copy(),
        capture_output=True,
        text=True,
        check=False,
    )

    assert result.returncode == 0, result.stderr
    assert "acme/test: deleted=1" in result.stdout
    assert FileStateStore(state_root).exists("acme/test")


def test_dotenv_file_configures_protected_stages(state_root: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    # record the variable so teardown removes whatever the .env file sets
    monkeypatch.setenv("SCOPEWARD_PROTECTED_STAGES", "prod")
    monkeypatch.delenv("SCOPEWARD_PROTECTED_STAGES")
    Path(".env").write_text("SCOPEWARD_PROTECTED_STAGES=staging\n", encoding="utf-8")
    _write_scope(state_root, "acme/staging", "db")

    assert main(["finalize", "--app", "acme", "--stage", "staging"]) == 1
    assert FileStateStore(state_root).exists("acme/staging")


def test_invalid_retry_count_is_rejected(state_root: Path) -> None:
    _write_scope(state_root, "acme/test", "r0")
    assert main(["finalize", "--app", "acme", "--stage", "test", "--retry", "0"]) == 1
    assert FileStateStore(state_root).exists("acme/test")


def test_parallel_finalize_with_concurrency_limit(state_root: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _write_scope(state_root, "acme/test", "r0", "r1", "r2")

    assert main(["finalize", "--app", "acme", "--stage", "test", "--parallel", "--max-concurrency", "0"]) == 1
    assert FileStateStore(state_root).exists("acme/test")

    exit_code = main(["finalize", "--app", "acme", "--stage", "test", "--parallel", "--max-concurrency", "2", "--json"])

    payload = json.loads(capsys.readouterr().out)
    assert exit_code == 0
    assert payload["resources_deleted"] == 3
    assert not FileStateStore(state_root).exists("acme/test")
