import asyncio
import copy
import threading
import time

import pytest

from relock._src.constants import Ecosystem
from relock._src.exceptions import IndexFetchError, SolveCancelled, SolveFailure
from relock._src.index import IndexCache, StaticIndexFetcher
from relock._src.lock import serialize_lock_document
from relock._src.models.package import ResolvedPackageRecord
from relock._src.orchestrator import (
    CancellationToken,
    lock_workspace,
    pick_canonical_graph,
    update_lock,
)
from relock._src.solve.adapters import CondaSolverAdapter
from relock._src.solve.task import ResolvedGraph
from relock._src.staleness import Fresh, PartiallyStale
from relock._src.workspace import Workspace

from tests.helpers import FakeCondaSolver, conda


def _names(document, environment, platform):
    return [(r.name, r.version) for r in document.packages_for(environment, platform)]


def test_locks_every_cell(adapters, make_index_cache, settings, manifest_data) -> None:
    workspace = Workspace.from_dict(manifest_data)

    result = asyncio.run(lock_workspace(workspace, adapters, make_index_cache(), settings))

    assert result.ok
    assert result.solved == [("default", "linux-64"), ("default", "osx-arm64")]
    assert result.document.fingerprint == workspace.fingerprint()
    for platform in ("linux-64", "osx-arm64"):
        assert _names(result.document, "default", platform) == [("foo", "1.2")]


def test_fresh_lock_never_invokes_a_solver(adapters, conda_solver, make_index_cache, settings, manifest_data) -> None:
    workspace = Workspace.from_dict(manifest_data)
    first = asyncio.run(lock_workspace(workspace, adapters, make_index_cache(), settings))
    calls = len(conda_solver.calls)

    result = asyncio.run(update_lock(workspace, first.document, adapters, make_index_cache(), settings))

    assert isinstance(result.staleness, Fresh)
    assert result.document is first.document
    assert len(conda_solver.calls) == calls


def test_only_stale_cells_are_solved_and_the_rest_carried_byte_for_byte(
    adapters, conda_solver, make_index_cache, settings, manifest_data,
) -> None:
    data = copy.deepcopy(manifest_data)
    data["feature"] = {"extra": {"dependencies": {"bar": "*"}}}
    data["environments"] = {"extra": ["extra"]}
    first = asyncio.run(lock_workspace(Workspace.from_dict(data), adapters, make_index_cache(), settings))

    data["feature"]["extra"]["dependencies"]["bar"] = ">=2"
    workspace = Workspace.from_dict(data)
    conda_solver.calls.clear()
    result = asyncio.run(update_lock(workspace, first.document, adapters, make_index_cache(), settings))

    assert isinstance(result.staleness, PartiallyStale)
    assert sorted((t.environment, t.platform) for t in conda_solver.calls) == [
        ("extra", "linux-64"), ("extra", "osx-arm64"),
    ]
    for platform in ("linux-64", "osx-arm64"):
        assert result.document.cell("default", platform) == first.document.cell("default", platform)
        assert _names(result.document, "extra", platform) == [("bar", "2.0"), ("foo", "1.2")]
    assert result.document.fingerprint == workspace.fingerprint()


def test_one_failing_cell_does_not_stop_the_others(adapters, make_index_cache, settings, manifest_data) -> None:
    failing = FakeCondaSolver(fail_cells={("default", "osx-arm64")})
    adapters = {**adapters, Ecosystem.CONDA: CondaSolverAdapter(failing)}
    workspace = Workspace.from_dict(manifest_data)

    result = asyncio.run(lock_workspace(workspace, adapters, make_index_cache(), settings))

    assert not result.ok
    [failure] = result.failures
    assert failure.key == ("default", "osx-arm64")
    assert failure.error.environment == "default"
    assert failure.error.ecosystem == "conda"
    assert failure.error.conflicts == ("missing >=1",)
    assert result.document.cell_keys() == [("default", "linux-64")]


def test_completion_order_does_not_change_the_document(adapters, make_index_cache, settings, manifest_data) -> None:
    data = copy.deepcopy(manifest_data)
    data["feature"] = {"extra": {"dependencies": {"bar": "*"}}}
    data["environments"] = {"extra": ["extra"]}
    workspace = Workspace.from_dict(data)

    documents = []
    for delays in (
        {("default", "linux-64"): 0.02, ("extra", "osx-arm64"): 0.01},
        {("extra", "linux-64"): 0.02, ("default", "osx-arm64"): 0.01},
    ):
        solver = FakeCondaSolver(delays=delays)
        run_adapters = {**adapters, Ecosystem.CONDA: CondaSolverAdapter(solver)}
        result = asyncio.run(lock_workspace(workspace, run_adapters, make_index_cache(), settings))
        documents.append(serialize_lock_document(result.document))

    assert documents[0] == documents[1]


def test_pypi_is_resolved_on_top_of_the_conda_solution(adapters, make_index_cache, settings, manifest_data) -> None:
    data = copy.deepcopy(manifest_data)
    data["dependencies"]["python"] = "3.11.*"
    data["pypi-dependencies"] = {"requests": "*"}
    workspace = Workspace.from_dict(data)

    result = asyncio.run(lock_workspace(workspace, adapters, make_index_cache(), settings))

    assert result.ok, result.failures
    records = result.document.packages_for("default", "linux-64")
    assert [(r.ecosystem.value, r.name, r.version) for r in records] == [
        ("conda", "foo", "1.2"),
        ("conda", "python", "3.11.4"),
        ("pypi", "certifi", "2023.7.22"),
        ("pypi", "idna", "3.4"),
        ("pypi", "requests", "2.31.0"),
    ]
    requests = records[-1]
    assert requests.depends == ("certifi", "idna")


def test_cancellation_discards_all_results(adapters, make_index_cache, settings, manifest_data) -> None:
    workspace = Workspace.from_dict(manifest_data)
    token = CancellationToken()
    token.cancel()

    with pytest.raises(SolveCancelled):
        asyncio.run(lock_workspace(workspace, adapters, make_index_cache(), settings, token=token))


def test_cancelling_while_cells_are_running(adapters, make_index_cache, settings, manifest_data) -> None:
    token = CancellationToken()

    class CancellingSolver(FakeCondaSolver):
        async def __call__(self, task):
            token.cancel()
            return await super().__call__(task)

    run_adapters = {**adapters, Ecosystem.CONDA: CondaSolverAdapter(CancellingSolver())}
    workspace = Workspace.from_dict(manifest_data)

    with pytest.raises(SolveCancelled):
        asyncio.run(lock_workspace(workspace, run_adapters, make_index_cache(), settings, token=token))


def test_cancelling_from_another_thread_interrupts_running_solves(adapters, make_index_cache, settings, manifest_data) -> None:
    token = CancellationToken()
    timers = []

    class SlowSolver(FakeCondaSolver):
        async def __call__(self, task):
            if not self.calls:
                timers.append(threading.Timer(0.05, token.cancel))
                timers[0].start()
            return await super().__call__(task)

    slow = SlowSolver(delays={("default", "linux-64"): 5, ("default", "osx-arm64"): 5})
    run_adapters = {**adapters, Ecosystem.CONDA: CondaSolverAdapter(slow)}
    workspace = Workspace.from_dict(manifest_data)

    started = time.monotonic()
    with pytest.raises(SolveCancelled):
        asyncio.run(lock_workspace(workspace, run_adapters, make_index_cache(), settings, token=token))

    assert time.monotonic() - started < 2
    assert slow.calls
    timers[0].join()


def test_token_run_returns_the_result_when_not_cancelled() -> None:
    async def answer():
        await asyncio.sleep(0)
        return 42

    assert asyncio.run(CancellationToken().run(answer())) == 42


class FlakyFetcher(StaticIndexFetcher):
    def __init__(self, entries, failures, retryable=True):
        super().__init__(entries)
        self.failures = failures
        self.retryable = retryable
        self.calls = 0

    async def fetch(self, ecosystem, sources, platform):
        self.calls += 1
        if self.calls <= self.failures:
            raise IndexFetchError(ecosystem.value, sources[0], "connection reset", retryable=self.retryable)
        return await super().fetch(ecosystem, sources, platform)


def test_index_is_fetched_once_per_platform_and_retried(adapters, index_entries, settings, manifest_data) -> None:
    data = copy.deepcopy(manifest_data)
    data["project"]["platforms"] = ["linux-64"]
    data["feature"] = {"extra": {"dependencies": {"bar": "*"}}}
    data["environments"] = {"extra": ["extra"], "other": ["extra"]}
    fetcher = FlakyFetcher(index_entries, failures=2)

    result = asyncio.run(lock_workspace(
        Workspace.from_dict(data), adapters, IndexCache(fetcher, settings), settings,
    ))

    assert result.ok
    assert fetcher.calls == 3
    assert result.solved == [("default", "linux-64"), ("extra", "linux-64"), ("other", "linux-64")]


def test_exhausted_index_fetch_fails_the_cell(adapters, index_entries, settings, manifest_data) -> None:
    data = copy.deepcopy(manifest_data)
    data["project"]["platforms"] = ["linux-64"]
    fetcher = FlakyFetcher(index_entries, failures=10)

    result = asyncio.run(lock_workspace(
        Workspace.from_dict(data), adapters, IndexCache(fetcher, settings), settings,
    ))

    [failure] = result.failures
    assert isinstance(failure.error, SolveFailure)
    assert "connection reset" in failure.error.diagnostic
    assert fetcher.calls == settings.max_fetch_attempts


def test_missing_package_fails_the_cell(adapters, settings, manifest_data) -> None:
    cache = IndexCache(StaticIndexFetcher([conda("bar", "2.0")]), settings)

    result = asyncio.run(lock_workspace(Workspace.from_dict(manifest_data), adapters, cache, settings))

    assert [f.key for f in result.failures] == [("default", "linux-64"), ("default", "osx-arm64")]
    assert "nothing provides `foo`" in str(result.failures[0])


def test_pick_canonical_graph_ignores_candidate_order() -> None:
    def graph(version):
        return ResolvedGraph(ecosystem=Ecosystem.CONDA, records=(
            ResolvedPackageRecord(ecosystem=Ecosystem.CONDA, name="foo", version=version),
        ))

    first, second = graph("1.1"), graph("1.2")

    assert pick_canonical_graph([first, second]) == pick_canonical_graph([second, first]) == first
    with pytest.raises(ValueError):
        pick_canonical_graph([])
