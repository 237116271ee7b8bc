import copy

from relock._src.lock import build_lock_document, write_lock_document
from relock._src.models.lock_file import LockedCell
from relock._src.staleness import (
    Fresh,
    FullyStale,
    PartiallyStale,
    StalenessKind,
    check_lock_file,
    detect_staleness,
)
from relock._src.workspace import Workspace


def _locked(workspace: Workspace):
    cells = {
        cell.key: LockedCell(fingerprint=cell.fingerprint(), channels=list(cell.channels))
        for cell in workspace.cells()
    }
    return build_lock_document(workspace.fingerprint(), cells)


def _two_environments(manifest_data):
    data = copy.deepcopy(manifest_data)
    data["feature"] = {"test": {"dependencies": {"pytest": "*"}}}
    data["environments"] = {"test": ["test"]}
    return data


def test_matching_document_is_fresh(manifest_data) -> None:
    workspace = Workspace.from_dict(manifest_data)

    state = detect_staleness(workspace, _locked(workspace))

    assert state == Fresh()
    assert state.kind == StalenessKind.FRESH


def test_missing_document_is_fully_stale(manifest_data) -> None:
    state = detect_staleness(Workspace.from_dict(manifest_data), None)

    assert isinstance(state, FullyStale)


def test_editing_one_environment_only_marks_its_cells(manifest_data) -> None:
    data = _two_environments(manifest_data)
    document = _locked(Workspace.from_dict(data))
    data["feature"]["test"]["dependencies"]["pytest"] = ">=8"

    state = detect_staleness(Workspace.from_dict(data), document)

    assert isinstance(state, PartiallyStale)
    assert state.cells == {("test", "linux-64"), ("test", "osx-arm64")}
    assert state.removed == frozenset()


def test_added_environment_is_stale_and_removed_one_is_reported(manifest_data) -> None:
    data = _two_environments(manifest_data)
    document = _locked(Workspace.from_dict(data))

    data["environments"] = {"docs": {"features": ["test"]}}
    state = detect_staleness(Workspace.from_dict(data), document)

    assert isinstance(state, PartiallyStale)
    assert state.cells == {("docs", "linux-64"), ("docs", "osx-arm64")}
    assert state.removed == {("test", "linux-64"), ("test", "osx-arm64")}


def test_check_lock_file_handles_absent_and_corrupt_files(tmp_path, manifest_data) -> None:
    workspace = Workspace.from_dict(manifest_data)
    path = tmp_path / "relock.lock"

    state, document = check_lock_file(workspace, path)
    assert isinstance(state, FullyStale) and document is None

    path.write_text("version: 1\nfingerprint: [\n")
    state, document = check_lock_file(workspace, path)
    assert isinstance(state, FullyStale) and document is None

    write_lock_document(_locked(workspace), path)
    state, document = check_lock_file(workspace, path)
    assert isinstance(state, Fresh)
    assert document.fingerprint == workspace.fingerprint()
