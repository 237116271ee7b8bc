from enum import Enum


LOCK_FORMAT_VERSION = 1
SUPPORTED_LOCK_FORMAT_VERSIONS = (1,)

DEFAULT_MANIFEST_FILE = "relock.yaml"
DEFAULT_LOCK_FILE = "relock.lock"

DEFAULT_ENVIRONMENT = "default"
DEFAULT_FEATURE = "default"

DEFAULT_MAX_FETCH_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE = 0.5
DEFAULT_BACKOFF_MAX = 10.0
MAX_DEFAULT_CONCURRENCY = 8


class Ecosystem(str, Enum):
    """Package ecosystems, in the order they are solved within one cell."""
    CONDA = "conda"
    PYPI = "pypi"


# binary ecosystem first, the wheel ecosystem is layered on top of it
SOLVE_ORDER = (Ecosystem.CONDA, Ecosystem.PYPI)


class OperationKind(str, Enum):
    REMOVE = "remove"
    INSTALL = "install"
    RELINK = "relink"


# conda subdirs a workspace may target, with the PEP 508 marker values the
# wheel ecosystem sees on them
PLATFORM_MARKERS = {
    "linux-64": {"sys_platform": "linux", "platform_system": "Linux", "platform_machine": "x86_64", "os_name": "posix"},
    "linux-aarch64": {"sys_platform": "linux", "platform_system": "Linux", "platform_machine": "aarch64", "os_name": "posix"},
    "linux-ppc64le": {"sys_platform": "linux", "platform_system": "Linux", "platform_machine": "ppc64le", "os_name": "posix"},
    "linux-s390x": {"sys_platform": "linux", "platform_system": "Linux", "platform_machine": "s390x", "os_name": "posix"},
    "osx-64": {"sys_platform": "darwin", "platform_system": "Darwin", "platform_machine": "x86_64", "os_name": "posix"},
    "osx-arm64": {"sys_platform": "darwin", "platform_system": "Darwin", "platform_machine": "arm64", "os_name": "posix"},
    "win-64": {"sys_platform": "win32", "platform_system": "Windows", "platform_machine": "AMD64", "os_name": "nt"},
    "win-arm64": {"sys_platform": "win32", "platform_system": "Windows", "platform_machine": "ARM64", "os_name": "nt"},
}

KNOWN_PLATFORMS = tuple(PLATFORM_MARKERS)

# name of the conda record that provides the interpreter wheels are installed into
PYTHON_PACKAGE = "python"

DEFAULT_PYPI_INDEX = "https://pypi.org/simple"

# environment prefixes live under the workspace root
ENVS_DIR = ".relock/envs"
