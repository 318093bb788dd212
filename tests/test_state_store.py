from __future__ import annotations

import json
from pathlib import Path

import pytest

from scopeward.errors import ScopeNotFoundError, StateCorruptionError
from scopeward.models import ResourceRecord, ScopeRecord
from scopeward.state_store import FileStateStore


def _record(path: str, *resource_ids: str) -> ScopeRecord:
    return ScopeRecord(
        path=path,
        resources={resource_id: ResourceRecord(id=resource_id, type="test") for resource_id in resource_ids},
    )


def test_write_uses_path_segments_as_directories(tmp_path: Path) -> None:
    store = FileStateStore(tmp_path)
    state_file = store.write("acme/test/backend", _record("acme/test/backend", "r0"))

    assert state_file == tmp_path / "acme" / "test" / "backend" / "state.json"
    assert store.read("acme/test/backend").resources["r0"].type == "test"
    assert not [entry for entry in state_file.parent.iterdir() if entry.name.endswith(".tmp")]


def test_nested_scope_names_serialize_sorted(tmp_path: Path) -> None:
    store = FileStateStore(tmp_path)
    record = _record("acme/test")
    record.nested_scope_names.update({"frontend", "backend"})
    state_file = store.write("acme/test", record)

    payload = json.loads(state_file.read_text(encoding="utf-8"))
    assert payload["nested_scope_names"] == ["backend", "frontend"]
    assert store.read("acme/test").nested_scope_names == {"backend", "frontend"}


def test_read_missing_scope_raises_not_found(tmp_path: Path) -> None:
    store = FileStateStore(tmp_path)
    with pytest.raises(ScopeNotFoundError) as excinfo:
        store.read("acme/test")
    assert excinfo.value.destroyed is False
    assert not store.is_destroyed("acme/test")


def test_delete_leaves_tombstone_and_write_clears_it(tmp_path: Path) -> None:
    store = FileStateStore(tmp_path)
    store.write("acme/test", _record("acme/test"))
    store.delete("acme/test")

    assert not store.exists("acme/test")
    assert store.is_destroyed("acme/test")
    with pytest.raises(ScopeNotFoundError) as excinfo:
        store.read("acme/test")
    assert excinfo.value.destroyed is True

    store.write("acme/test", _record("acme/test"))
    assert not store.is_destroyed("acme/test")
    assert not store.tombstone_path("acme/test").exists()


def test_delete_missing_scope_raises(tmp_path: Path) -> None:
    with pytest.raises(ScopeNotFoundError):
        FileStateStore(tmp_path).delete("acme/test")


@pytest.mark.parametrize(
    "content",
    [b"", b"   \n", b"{not json", b"\xff\xfe\x00garbage", b'{"path": "acme/test", "resources": []}'],
)
def test_unreadable_documents_raise_state_corruption(tmp_path: Path, content: bytes) -> None:
    store = FileStateStore(tmp_path)
    state_file = store.state_path("acme/test")
    state_file.parent.mkdir(parents=True)
    state_file.write_bytes(content)

    with pytest.raises(StateCorruptionError):
        store.read("acme/test")


def test_document_for_other_path_is_rejected(tmp_path: Path) -> None:
    store = FileStateStore(tmp_path)
    state_file = store.state_path("acme/test")
    state_file.parent.mkdir(parents=True)
    state_file.write_text(_record("acme/other").model_dump_json(), encoding="utf-8")

    with pytest.raises(StateCorruptionError, match="belongs to scope"):
        store.read("acme/test")


def test_list_stages_only_yields_directories_with_documents(tmp_path: Path) -> None:
    store = FileStateStore(tmp_path)
    store.write("acme/test", _record("acme/test"))
    store.write("acme/pr-7", _record("acme/pr-7"))
    store.write("acme/test/backend", _record("acme/test/backend"))
    (tmp_path / "acme" / "abandoned").mkdir()

    stages = store.list_stages("acme")
    store.write("acme/late", _record("acme/late"))

    assert list(stages) == ["pr-7", "test"]
    assert list(store.list_stages("missing")) == []


def test_iter_scopes_is_sorted_and_complete(tmp_path: Path) -> None:
    store = FileStateStore(tmp_path)
    for path in ["zeta/dev", "acme/test/backend", "acme/test"]:
        store.write(path, _record(path))

    assert list(store.iter_scopes()) == ["acme/test", "acme/test/backend", "zeta/dev"]
    assert list(FileStateStore(tmp_path / "absent").iter_scopes()) == []


def test_versioning_keeps_bounded_backups_and_restores(tmp_path: Path) -> None:
    store = FileStateStore(tmp_path, enable_versioning=True, max_backup_versions=2)
    for count in range(1, 5):
        store.write("acme/test", _record("acme/test", *[f"r{idx}" for idx in range(count)]))

    backups = store.list_backups("acme/test")
    assert len(backups) == 2
    assert backups == sorted(backups, reverse=True)

    restored = store.restore_backup("acme/test", backups[0])
    assert sorted(restored.resources) == ["r0", "r1", "r2"]
    assert sorted(store.read("acme/test").resources) == ["r0", "r1", "r2"]


def test_restore_rejects_malformed_backup_names(tmp_path: Path) -> None:
    store = FileStateStore(tmp_path, enable_versioning=True)
    with pytest.raises(ValueError):
        store.restore_backup("acme/test", "../state.json")
