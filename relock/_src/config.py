import os
from typing import Mapping, Optional

from pydantic import BaseModel, Field

from relock._src import constants


def _default_concurrency() -> int:
    return max(1, min(os.cpu_count() or 1, constants.MAX_DEFAULT_CONCURRENCY))


class Settings(BaseModel):
    """Runtime configuration for solving and installing."""
    concurrency: int = Field(default_factory=_default_concurrency, ge=1)
    max_fetch_attempts: int = Field(default=constants.DEFAULT_MAX_FETCH_ATTEMPTS, ge=1)
    backoff_base: float = Field(default=constants.DEFAULT_BACKOFF_BASE, ge=0)
    backoff_max: float = Field(default=constants.DEFAULT_BACKOFF_MAX, ge=0)
    manifest_file: str = constants.DEFAULT_MANIFEST_FILE
    lock_file: str = constants.DEFAULT_LOCK_FILE

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "Settings":
        """Build settings from ``RELOCK_*`` environment variables.

        Keyword overrides that are not None win over the environment.
        """
        if environ is None:
            environ = os.environ
        values = {}
        for field in ("concurrency", "max_fetch_attempts", "backoff_base", "backoff_max"):
            raw = environ.get(f"RELOCK_{field.upper()}")
            if raw:
                values[field] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls.model_validate(values)
