"""Expands a manifest into the (environment x platform) solve matrix.

Every environment is the ordered union of its features. For each platform
the environment supports, the features' generic dependencies and their
platform specific ``target`` dependencies are merged into one
specification set: one solve cell.
"""
import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import yaml
from packaging.utils import canonicalize_name
from packaging.version import InvalidVersion, Version
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from relock._src import constants
from relock._src.constants import Ecosystem
from relock._src.exceptions import ManifestError
from relock._src.models.manifest import (
    CondaDependency,
    EnvironmentDeclaration,
    FeatureSpec,
    LibcRequirement,
    Manifest,
    PypiDependency,
    SystemRequirements,
    TargetSpec,
)
from relock._src.models.package import DependencySpec
from relock._src.utils import hash_object

logger = logging.getLogger(__name__)


class Environment(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    features: Tuple[str, ...]
    platforms: Tuple[str, ...]
    channels: Tuple[str, ...]
    system_requirements: SystemRequirements = Field(default_factory=SystemRequirements)


class SolveCell(BaseModel):
    """One (environment, platform) resolution problem"""
    model_config = ConfigDict(frozen=True)

    environment: str
    platform: str
    channels: Tuple[str, ...]
    specs: Tuple[DependencySpec, ...]
    system_requirements: SystemRequirements = Field(default_factory=SystemRequirements)

    def __str__(self):
        return f"{self.environment}/{self.platform}"

    @property
    def key(self) -> Tuple[str, str]:
        return (self.environment, self.platform)

    def specs_for(self, ecosystem: Ecosystem) -> Tuple[DependencySpec, ...]:
        return tuple(spec for spec in self.specs if spec.ecosystem == ecosystem)

    def ecosystems(self) -> List[Ecosystem]:
        """Ecosystems with at least one spec, in solve order"""
        present = {spec.ecosystem for spec in self.specs}
        return [eco for eco in constants.SOLVE_ORDER if eco in present]

    def sources_for(self, ecosystem: Ecosystem) -> Tuple[str, ...]:
        if ecosystem == Ecosystem.CONDA:
            return self.channels
        return (constants.DEFAULT_PYPI_INDEX,)

    def fingerprint(self) -> str:
        return hash_object(self.model_dump(mode="json"))


def load_manifest(path: str | Path) -> Manifest:
    path = Path(path)
    try:
        with open(path, "r") as file:
            raw_manifest = yaml.safe_load(file)
    except FileNotFoundError:
        raise ManifestError(f"`{path}` does not exist")
    except yaml.YAMLError as err:
        raise ManifestError(f"`{path}` is not valid YAML: {err}")
    return parse_manifest(raw_manifest)


def parse_manifest(raw_manifest) -> Manifest:
    if not isinstance(raw_manifest, dict):
        raise ManifestError("expected a mapping at the top level")
    try:
        return Manifest.model_validate(raw_manifest)
    except ValidationError as err:
        raise ManifestError(str(err))


class Workspace:
    """Normalized view of a manifest.

    Pure: building a workspace never touches the network or the disk.
    """

    @classmethod
    def from_path(cls, path: str | Path) -> "Workspace":
        path = Path(path)
        return cls(load_manifest(path), root=path.parent)

    @classmethod
    def from_dict(cls, data: dict, root: Optional[Path] = None) -> "Workspace":
        return cls(parse_manifest(data), root=root)

    def __init__(self, manifest: Manifest, root: Optional[Path] = None):
        self.manifest = manifest
        self.root = root
        self.features = self._collect_features()
        self._check_platforms()
        self.environments = self._resolve_environments()
        self._cells = self._build_cells()

    @property
    def name(self) -> str:
        return self.manifest.project.name

    @property
    def platforms(self) -> List[str]:
        return list(self.manifest.project.platforms)

    def _collect_features(self) -> Dict[str, FeatureSpec]:
        if constants.DEFAULT_FEATURE in self.manifest.feature:
            raise ManifestError(
                "the default feature is implicit and cannot be declared",
                feature=constants.DEFAULT_FEATURE,
            )
        default = FeatureSpec(
            channels=self.manifest.project.channels,
            dependencies=self.manifest.dependencies,
            pypi_dependencies=self.manifest.pypi_dependencies,
            system_requirements=self.manifest.system_requirements,
            target=self.manifest.target,
        )
        return {constants.DEFAULT_FEATURE: default, **self.manifest.feature}

    def _check_platforms(self):
        project_platforms = self.manifest.project.platforms
        if not project_platforms:
            raise ManifestError("the project does not declare any platforms")
        for platform in project_platforms:
            if platform not in constants.KNOWN_PLATFORMS:
                raise ManifestError("unsupported platform", platform=platform)

        for name, feature in self.features.items():
            for platform in feature.platforms or []:
                if platform not in project_platforms:
                    raise ManifestError(
                        "feature platform is not one of the project platforms",
                        feature=name, platform=platform,
                    )
            for platform in feature.target:
                if platform not in constants.KNOWN_PLATFORMS:
                    raise ManifestError(
                        "unsupported target platform", feature=name, platform=platform,
                    )

    def _resolve_environments(self) -> Dict[str, Environment]:
        declared = dict(self.manifest.environments)
        declared.setdefault(constants.DEFAULT_ENVIRONMENT, [])

        environments = {}
        for name, declaration in declared.items():
            if isinstance(declaration, list):
                declaration = EnvironmentDeclaration(features=declaration)
            environments[name] = self._resolve_environment(name, declaration)
        return environments

    def _resolve_environment(self, name: str, declaration: EnvironmentDeclaration) -> Environment:
        feature_names = []
        if not declaration.no_default_feature:
            feature_names.append(constants.DEFAULT_FEATURE)
        for feature in declaration.features:
            if feature not in self.features:
                raise ManifestError(
                    "environment references an undeclared feature",
                    environment=name, feature=feature,
                )
            if feature not in feature_names:
                feature_names.append(feature)

        # intersect the platforms of features that restrict them
        platforms = list(self.manifest.project.platforms)
        for feature in feature_names:
            restricted = self.features[feature].platforms
            if restricted:
                platforms = [p for p in platforms if p in restricted]
        if not platforms:
            raise ManifestError("no platform is supported by all features", environment=name)

        channels = []
        for feature in feature_names:
            for channel in self.features[feature].channels:
                if channel not in channels:
                    channels.append(channel)

        return Environment(
            name=name,
            features=tuple(feature_names),
            platforms=tuple(platforms),
            channels=tuple(channels),
            system_requirements=merge_system_requirements(
                [self.features[feature].system_requirements for feature in feature_names],
                environment=name,
            ),
        )

    def specs_for(self, environment: str, platform: str) -> Tuple[DependencySpec, ...]:
        """The merged specification set of one cell, sorted by (ecosystem, name).

        Later features override earlier ones and target specific entries
        override generic ones.
        """
        env = self.environment(environment)
        merged: Dict[Tuple[str, str], DependencySpec] = {}
        for feature_name in env.features:
            feature = self.features[feature_name]
            tables: List[TargetSpec] = [feature]
            if platform in feature.target:
                tables.append(feature.target[platform])
            for table in tables:
                for spec in _table_specs(table, environment, feature_name):
                    merged[spec.key()] = spec
        return tuple(merged[key] for key in sorted(merged))

    def environment(self, name: str) -> Environment:
        try:
            return self.environments[name]
        except KeyError:
            raise ManifestError("unknown environment", environment=name)

    def _build_cells(self) -> List[SolveCell]:
        cells = []
        for name in sorted(self.environments):
            env = self.environments[name]
            for platform in sorted(env.platforms):
                cells.append(SolveCell(
                    environment=name,
                    platform=platform,
                    channels=env.channels,
                    specs=self.specs_for(name, platform),
                    system_requirements=env.system_requirements,
                ))
        return cells

    def cells(self) -> List[SolveCell]:
        return list(self._cells)

    def cell(self, environment: str, platform: str) -> SolveCell:
        for cell in self._cells:
            if cell.key == (environment, platform):
                return cell
        raise ManifestError(
            "environment does not support platform",
            environment=environment, platform=platform,
        )

    def fingerprint(self) -> str:
        """The manifest fingerprint: a hash over every cell's normalized specs"""
        return hash_object({
            "version": constants.LOCK_FORMAT_VERSION,
            "cells": {str(cell): cell.fingerprint() for cell in self._cells},
        })


def _table_specs(table: TargetSpec, environment: str, feature: str) -> List[DependencySpec]:
    specs = []
    for name, value in table.dependencies.items():
        specs.append(_conda_spec(name, value))
    for name, value in table.pypi_dependencies.items():
        specs.append(_pypi_spec(name, value, environment, feature))
    return specs


def _conda_spec(name: str, value) -> DependencySpec:
    if isinstance(value, str):
        value = CondaDependency(version=value)
    return DependencySpec(
        ecosystem=Ecosystem.CONDA,
        name=name.strip().lower(),
        version=value.version,
        build=value.build,
        source=value.channel,
    )


def _pypi_spec(name: str, value, environment: str, feature: str) -> DependencySpec:
    if isinstance(value, str):
        value = PypiDependency(version=value)
    sources = [s for s in (value.url, value.path, value.git) if s]
    if len(sources) > 1:
        raise ManifestError(
            f"pypi dependency `{name}` declares more than one source",
            environment=environment, feature=feature,
        )
    if sources and value.version and value.version != "*":
        raise ManifestError(
            f"pypi dependency `{name}` cannot have both a version and a direct source",
            environment=environment, feature=feature,
        )
    if value.git:
        raise ManifestError(
            f"pypi dependency `{name}` uses a git source, only built wheels can be locked",
            environment=environment, feature=feature,
        )
    source = sources[0] if sources else None
    if source is not None and not source.split("#")[0].endswith(".whl"):
        raise ManifestError(
            f"pypi dependency `{name}` must point at a built wheel, got `{source}`",
            environment=environment, feature=feature,
        )
    return DependencySpec(
        ecosystem=Ecosystem.PYPI,
        name=canonicalize_name(name),
        version=value.version,
        source=source,
        extras=tuple(sorted(value.extras)),
    )


def _highest(name: str, versions: List[str], environment: str) -> Optional[str]:
    try:
        return max(versions, key=Version) if versions else None
    except InvalidVersion as err:
        raise ManifestError(
            f"invalid `{name}` system requirement: {err}", environment=environment
        )


def merge_system_requirements(
    requirements: List[SystemRequirements], environment: str
) -> SystemRequirements:
    """Combine the system requirements of an environment's features.

    Every field keeps the highest version any feature asks for.
    """
    merged = {}
    for field in ("linux", "macos", "cuda"):
        versions = [getattr(r, field) for r in requirements if getattr(r, field)]
        merged[field] = _highest(field, versions, environment)

    libcs = [r.libc for r in requirements if r.libc is not None]
    families = {libc.family for libc in libcs}
    if len(families) > 1:
        raise ManifestError(
            f"features require different libc families: {', '.join(sorted(families))}",
            environment=environment,
        )
    if libcs:
        merged["libc"] = LibcRequirement(
            family=libcs[0].family,
            version=_highest("libc", [libc.version for libc in libcs], environment),
        )
    return SystemRequirements(**merged)
