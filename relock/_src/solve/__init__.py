from relock._src.solve.adapters import (
    ADAPTER_TYPES,
    CondaSolverAdapter,
    PypiSolverAdapter,
    SolverAdapter,
    SolverBackend,
    conda_dependency_name,
    default_adapters,
    pypi_dependency_name,
)
from relock._src.solve.task import ResolvedGraph, SolverTask
