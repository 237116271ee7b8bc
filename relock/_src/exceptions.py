from typing import Optional, Sequence


class RelockError(Exception):
    def __init__(self, msg: str):
        self.msg = msg
        super().__init__(self.msg)


class ManifestError(RelockError):
    def __init__(self, msg, environment=None, feature=None, platform=None):
        self.environment = environment
        self.feature = feature
        self.platform = platform
        location = [
            f"{label} `{value}`"
            for label, value in (
                ("environment", environment),
                ("feature", feature),
                ("platform", platform),
            )
            if value is not None
        ]
        if location:
            msg = f"{msg} ({', '.join(location)})"
        super().__init__(f"Invalid manifest: {msg}")


class SolveFailure(RelockError):
    """A cell could not be solved.

    ``conflicts`` is the minimal set of conflicting requirements when the
    solver could derive one, otherwise it is empty and ``diagnostic``
    carries whatever the solver reported.
    """

    def __init__(
        self,
        diagnostic: str,
        environment: Optional[str] = None,
        platform: Optional[str] = None,
        ecosystem: Optional[str] = None,
        conflicts: Sequence[str] = (),
    ):
        self.diagnostic = diagnostic
        self.environment = environment
        self.platform = platform
        self.ecosystem = ecosystem
        self.conflicts = tuple(conflicts)
        msg = f"Failed to solve {ecosystem or 'environment'}"
        if environment is not None:
            msg += f" for `{environment}` on `{platform}`"
        msg += f": {diagnostic}"
        if self.conflicts:
            msg += "\nConflicting requirements:\n" + "\n".join(f"  - {c}" for c in self.conflicts)
        super().__init__(msg)

    def for_cell(self, environment: str, platform: str, ecosystem: str) -> "SolveFailure":
        return SolveFailure(
            self.diagnostic,
            environment=environment,
            platform=platform,
            ecosystem=self.ecosystem or ecosystem,
            conflicts=self.conflicts,
        )


class IndexFetchError(RelockError):
    def __init__(self, ecosystem, source, err, retryable: bool = True):
        self.ecosystem = ecosystem
        self.source = source
        self.retryable = retryable
        super().__init__(
            f"Failed to fetch {ecosystem} metadata from `{source}`: {err}"
        )


class LockDocumentCorruption(RelockError):
    def __init__(self, msg, path=None):
        self.path = path
        if path is not None:
            msg = f"{msg} (lock file `{path}`)"
        super().__init__(f"Corrupt lock document: {msg}")


class SolveCancelled(RelockError):
    def __init__(self):
        super().__init__("Solve was cancelled, no lock document was produced")


class ArtifactFetchError(RelockError):
    """Retryable failure to make an artifact available locally."""

    def __init__(self, url, err):
        self.url = url
        super().__init__(f"Failed to fetch artifact `{url}`: {err}")


class ChecksumMismatchError(RelockError):
    def __init__(self, path, expected, actual):
        self.path = path
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Checksum mismatch for `{path}`"
            f"\nexpected: {expected}"
            f"\nactual:   {actual}"
        )


class InstallerOperationError(RelockError):
    def __init__(self, environment, operation, applied, pending, cause):
        self.environment = environment
        self.operation = operation
        self.applied = list(applied)
        self.pending = list(pending)
        self.cause = cause
        super().__init__(
            f"Failed to apply `{operation}` in environment `{environment}`!"
            f"\nApplied operations: {len(self.applied)}"
            f"\nAborted operations: {len(self.pending)}"
            f"\nThe prefix is partially applied."
            f"\nError message: {cause}"
        )
