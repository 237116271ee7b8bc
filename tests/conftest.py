"""Shared test fixtures."""

from __future__ import annotations

import logging

import pytest

from relock._src.config import Settings
from relock._src.constants import Ecosystem
from relock._src.index import IndexCache, StaticIndexFetcher
from relock._src.models.package import IndexEntry
from relock._src.solve.adapters import CondaSolverAdapter, PypiSolverAdapter
from relock._src.solve.pypi_backend import ResolvelibSolver

from tests.helpers import FakeCondaSolver, conda, wheel


@pytest.fixture
def settings() -> Settings:
    return Settings(concurrency=2, max_fetch_attempts=3, backoff_base=0, backoff_max=0)


@pytest.fixture
def conda_solver() -> FakeCondaSolver:
    return FakeCondaSolver()


@pytest.fixture
def adapters(conda_solver):
    return {
        Ecosystem.CONDA: CondaSolverAdapter(conda_solver),
        Ecosystem.PYPI: PypiSolverAdapter(ResolvelibSolver()),
    }


@pytest.fixture
def index_entries() -> list[IndexEntry]:
    return [
        conda("foo", "1.2"),
        conda("bar", "2.0", depends=["foo >=1.0"]),
        conda("python", "3.11.4", build="h0_cpython"),
        conda("numpy", "1.26.0", depends=["python >=3.11"]),
        wheel("requests", "2.30.0", requires=["idna>=2.5", "certifi"]),
        wheel("requests", "2.31.0", requires=["idna>=2.5", "certifi", "pysocks; extra == 'socks'"]),
        wheel("idna", "3.4"),
        wheel("certifi", "2023.7.22"),
        wheel("pysocks", "1.7.1"),
    ]


@pytest.fixture
def make_index_cache(index_entries, settings):
    def make(entries=None):
        return IndexCache(StaticIndexFetcher(index_entries if entries is None else entries), settings)
    return make


@pytest.fixture
def manifest_data() -> dict:
    return {
        "project": {
            "name": "demo",
            "channels": ["conda-forge"],
            "platforms": ["linux-64", "osx-arm64"],
        },
        "dependencies": {"foo": ">=1.0"},
    }


@pytest.fixture(autouse=True)
def _reset_relock_logger():
    yield
    # configure_logging turns propagation off
    logger = logging.getLogger("relock")
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True
