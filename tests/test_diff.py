import asyncio
import logging

import pytest

from relock._src.constants import Ecosystem
from relock._src.diff import diff_prefix, plan_environment, topological_order
from relock._src.exceptions import RelockError
from relock._src.index import AvailableIndex
from relock._src.lock import build_lock_document
from relock._src.models.lock_file import LockedCell
from relock._src.models.operation import Install, Relink, Remove
from relock._src.models.package import DependencySpec, ResolvedPackageRecord
from relock._src.models.prefix import InstalledPackage, InstalledPrefixRecord
from relock._src.solve import PypiSolverAdapter, SolverTask
from relock._src.solve.pypi_backend import ResolvelibSolver

from tests.helpers import wheel


def record(name, version, depends=(), ecosystem=Ecosystem.CONDA, sha256=None):
    return ResolvedPackageRecord(
        ecosystem=ecosystem,
        name=name,
        version=version,
        build="0" if ecosystem == Ecosystem.CONDA else "",
        sha256=sha256 or f"{name}-{version}".encode().hex(),
        depends=tuple(depends),
    )


def prefix(*records):
    return InstalledPrefixRecord(
        prefix="/envs/default",
        packages=[InstalledPackage.from_record(r) for r in records],
    )


def describe(operations):
    return [str(op) for op in operations]


def test_upgrade_is_a_remove_then_an_install() -> None:
    operations = diff_prefix([record("foo", "1.2")], prefix(record("foo", "1.1")))

    assert operations == [
        Remove(package=record("foo", "1.1").identity()),
        Install(record=record("foo", "1.2")),
    ]


def test_matching_prefix_needs_nothing() -> None:
    records = [record("foo", "1.2"), record("bar", "2.0", depends=["foo"])]

    assert diff_prefix(records, prefix(*records)) == []


def test_applying_the_plan_converges() -> None:
    installed = prefix(record("foo", "1.1"), record("old", "0.1"), record("bar", "2.0", depends=["foo"]))
    records = [record("foo", "1.2"), record("bar", "2.0", depends=["foo"]), record("new", "1.0", depends=["foo"])]

    for operation in diff_prefix(records, installed):
        installed.apply(operation)

    assert diff_prefix(records, installed) == []
    assert [(p.name, p.version) for p in installed.packages] == [("bar", "2.0"), ("foo", "1.2"), ("new", "1.0")]


def test_installs_come_after_their_dependencies() -> None:
    records = [
        record("app", "1.0", depends=["lib", "python"]),
        record("lib", "1.0", depends=["python"]),
        record("python", "3.11.4"),
        record("zlib", "1.3"),
    ]

    operations = diff_prefix(records, prefix())

    assert describe(operations) == ["+ python@3.11.4", "+ lib@1.0", "+ app@1.0", "+ zlib@1.3"]


def test_dependents_are_removed_before_their_dependencies() -> None:
    installed = prefix(
        record("python", "3.10.0"),
        record("lib", "1.0", depends=["python"]),
        record("app", "1.0", depends=["lib"]),
    )

    operations = diff_prefix([], installed)

    assert describe(operations) == ["- app@1.0", "- lib@1.0", "- python@3.10.0"]


def test_unchanged_dependents_of_replaced_packages_are_relinked() -> None:
    installed = prefix(record("foo", "1.1"), record("bar", "2.0", depends=["foo"]), record("baz", "1.0"))
    records = [record("foo", "1.2"), record("bar", "2.0", depends=["foo"]), record("baz", "1.0")]

    operations = diff_prefix(records, installed)

    assert describe(operations) == ["- foo@1.1", "+ foo@1.2", "~ bar@2.0"]
    assert isinstance(operations[-1], Relink)


def test_wheels_are_relinked_when_the_interpreter_changes() -> None:
    requests = record("requests", "2.31.0", ecosystem=Ecosystem.PYPI)
    installed = prefix(record("python", "3.11.4"), requests)

    operations = diff_prefix([record("python", "3.12.1"), requests], installed)

    assert describe(operations) == ["- python@3.11.4", "+ python@3.12.1", "~ requests@2.31.0"]


def test_wheels_follow_a_conda_dependency_spelled_differently() -> None:
    python = record("python", "3.11.4")
    typing_extensions = record("typing_extensions", "4.9.0")
    task = SolverTask(
        environment="default",
        platform="linux-64",
        ecosystem=Ecosystem.PYPI,
        sources=("https://pypi.org/simple",),
        specs=(DependencySpec(ecosystem=Ecosystem.PYPI, name="pydantic"),),
        index=AvailableIndex(
            Ecosystem.PYPI, "linux-64", entries=[wheel("pydantic", "2.5.0", requires=["typing-extensions>=4.6"])],
        ),
        installed=(python, typing_extensions),
    )
    [graph] = asyncio.run(PypiSolverAdapter(ResolvelibSolver()).solve(task))
    [pydantic] = graph.records

    installed = prefix(python, record("typing_extensions", "4.8.0"), pydantic)
    operations = diff_prefix([python, typing_extensions, pydantic], installed)

    assert operations == [
        Remove(package=record("typing_extensions", "4.8.0").identity()),
        Install(record=typing_extensions),
        Relink(package=pydantic.identity()),
    ]


def test_hash_mismatch_reinstalls_the_same_version() -> None:
    installed = prefix(record("foo", "1.2", sha256="aa" * 32))

    operations = diff_prefix([record("foo", "1.2", sha256="bb" * 32)], installed)

    assert [op.kind.value for op in operations] == ["remove", "install"]


def test_unknown_hashes_are_not_compared() -> None:
    installed = InstalledPrefixRecord(prefix="/envs/default", packages=[
        InstalledPackage(ecosystem=Ecosystem.CONDA, name="foo", version="1.2", build="0"),
    ])

    assert diff_prefix([record("foo", "1.2")], installed) == []


def test_same_name_in_both_ecosystems_is_two_packages() -> None:
    installed = prefix(record("numpy", "1.26.0"))

    operations = diff_prefix([record("numpy", "1.26.0"), record("numpy", "2.0.0", ecosystem=Ecosystem.PYPI)], installed)

    assert operations == [Install(record=record("numpy", "2.0.0", ecosystem=Ecosystem.PYPI))]


def test_cycles_are_broken_deterministically(caplog) -> None:
    items = {
        ("conda", "a"): record("a", "1", depends=["b"]),
        ("conda", "b"): record("b", "1", depends=["a"]),
        ("conda", "c"): record("c", "1", depends=["a"]),
    }

    with caplog.at_level(logging.WARNING, logger="relock"):
        first = topological_order(items, lambda r: r.depends)
    second = topological_order(dict(reversed(list(items.items()))), lambda r: r.depends)

    assert [r.name for r in first] == [r.name for r in second] == ["a", "b", "c"]
    assert "dependency cycle" in caplog.text


def test_plan_environment_uses_the_locked_cell() -> None:
    document = build_lock_document("fp", {
        ("default", "linux-64"): LockedCell(fingerprint="cell", packages=[record("foo", "1.2")]),
    })

    operations = plan_environment(document, "default", "linux-64", prefix(record("foo", "1.1")))

    assert describe(operations) == ["- foo@1.1", "+ foo@1.2"]
    with pytest.raises(RelockError, match="not locked"):
        plan_environment(document, "default", "win-64", prefix())
