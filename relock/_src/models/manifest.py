from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _version_string(name, spec):
    if isinstance(spec, float):
        # YAML reads `numpy: 1.10` as the float 1.1
        raise ValueError(
            f"the version of `{name}` was read as the number {spec!r}, quote it"
        )
    if isinstance(spec, int) and not isinstance(spec, bool):
        return str(spec)
    return spec


def _stringify_versions(value):
    if not isinstance(value, dict):
        return value
    return {name: _version_string(name, spec) for name, spec in value.items()}


class _ManifestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class CondaDependency(_ManifestModel):
    version: Optional[str] = None
    build: Optional[str] = None
    channel: Optional[str] = None


class PypiDependency(_ManifestModel):
    version: Optional[str] = None
    extras: List[str] = Field(default=[])
    url: Optional[str] = None
    path: Optional[str] = None
    git: Optional[str] = None


class LibcRequirement(_ManifestModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    family: str = "glibc"
    version: str


class SystemRequirements(_ManifestModel):
    """Minimum versions of what the target machines provide

    Each entry becomes a virtual package for the conda solver.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    linux: Optional[str] = None
    libc: Optional[LibcRequirement] = None
    macos: Optional[str] = None
    cuda: Optional[str] = None

    @field_validator("linux", "macos", "cuda", mode="before")
    @classmethod
    def _version_as_string(cls, value, info):
        return _version_string(info.field_name, value)

    @field_validator("libc", mode="before")
    @classmethod
    def _libc_as_requirement(cls, value):
        value = _version_string("libc", value)
        if isinstance(value, str):
            return LibcRequirement(version=value)
        return value


class TargetSpec(_ManifestModel):
    """Dependencies that only apply to one platform"""
    dependencies: Dict[str, Union[str, CondaDependency]] = Field(default={})
    pypi_dependencies: Dict[str, Union[str, PypiDependency]] = Field(
        default={}, alias="pypi-dependencies"
    )

    @field_validator("dependencies", "pypi_dependencies", mode="before")
    @classmethod
    def _versions_as_strings(cls, value):
        return _stringify_versions(value)


class FeatureSpec(TargetSpec):
    channels: List[str] = Field(default=[])
    platforms: Optional[List[str]] = None
    system_requirements: SystemRequirements = Field(
        default_factory=SystemRequirements, alias="system-requirements"
    )
    target: Dict[str, TargetSpec] = Field(default={})


class EnvironmentDeclaration(_ManifestModel):
    features: List[str] = Field(default=[])
    no_default_feature: bool = Field(default=False, alias="no-default-feature")


class ProjectSpec(_ManifestModel):
    name: str
    version: Optional[str] = None
    channels: List[str] = Field(default=[])
    platforms: List[str] = Field(default=[])


class Manifest(TargetSpec):
    """Parsed workspace manifest

    The top level ``dependencies``, ``pypi-dependencies``,
    ``system-requirements`` and ``target`` tables form the implicit default
    feature.
    """
    project: ProjectSpec
    system_requirements: SystemRequirements = Field(
        default_factory=SystemRequirements, alias="system-requirements"
    )
    target: Dict[str, TargetSpec] = Field(default={})
    feature: Dict[str, FeatureSpec] = Field(default={})
    environments: Dict[str, Union[List[str], EnvironmentDeclaration]] = Field(default={})
