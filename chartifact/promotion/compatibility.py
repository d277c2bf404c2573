"""Engine version and script compatibility checks run before a promotion.

Three checks, each producing findings at ``block``, ``warn`` or ``info``
severity:

- engine version: versions inside the same known range are interchangeable;
  different known ranges may need migration; unknown versions are noted
- script syntax: constructs the target engine cannot run (E4X on 4.x engines)
- engine type: exports from the nodejs engine promoted into a java engine
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable

from chartifact.artifact.models import DecomposedArtifact
from chartifact.config import EngineInfo

COMPAT_RANGES: list[tuple[str, str]] = [
    ("3.8.0", "3.8.1"),
    ("3.9.0", "3.9.1"),
    ("3.10.0", "3.10.1"),
    ("4.0.0", "4.0.1"),
    ("4.5.0", "4.5.2"),
]

_E4X_PATTERNS = [
    re.compile(r"\bnew\s+XML(?:List)?\s*\("),
    re.compile(r"\.@[A-Za-z_*]"),
    re.compile(r"[=(,]\s*<[A-Za-z][\w.:-]*[\s/>]"),
    re.compile(r"\bdefault\s+xml\s+namespace\b"),
]
_ES6_PATTERNS = [
    re.compile(r"\b(?:let|const)\s+[A-Za-z_$]"),
    re.compile(r"=>"),
    re.compile(r"`"),
    re.compile(r"\bclass\s+[A-Za-z_$][\w$]*\s*(?:extends\b|\{)"),
]
_IMPORT_PACKAGE_RE = re.compile(r"\bimport(?:Package|Class)\s*\(")
_JAVA_ADAPTER_RE = re.compile(r"\bnew\s+JavaAdapter\s*\(")


class Severity(Enum):
    BLOCK = "block"
    WARN = "warn"
    INFO = "info"


@dataclass
class VersionWarning:
    channel_id: str
    channel_name: str
    severity: Severity
    message: str


@dataclass
class CompatibilityResult:
    warnings: list[VersionWarning] = field(default_factory=list)
    blocks: list[VersionWarning] = field(default_factory=list)

    @property
    def compatible(self) -> bool:
        return not self.blocks

    def merge(self, other: "CompatibilityResult") -> "CompatibilityResult":
        self.warnings.extend(other.warnings)
        self.blocks.extend(other.blocks)
        return self


@dataclass
class ScriptFeatures:
    uses_e4x: bool = False
    uses_es6: bool = False
    uses_import_package: bool = False
    uses_java_adapter: bool = False

    @classmethod
    def scan(cls, scripts: Iterable[str]) -> "ScriptFeatures":
        features = cls()
        for script in scripts:
            if not script:
                continue
            features.uses_e4x |= any(p.search(script) for p in _E4X_PATTERNS)
            features.uses_es6 |= any(p.search(script) for p in _ES6_PATTERNS)
            features.uses_import_package |= bool(_IMPORT_PACKAGE_RE.search(script))
            features.uses_java_adapter |= bool(_JAVA_ADAPTER_RE.search(script))
        return features

    @classmethod
    def from_artifact(cls, artifact: DecomposedArtifact) -> "ScriptFeatures":
        return cls.scan(artifact_scripts(artifact))


def artifact_scripts(artifact: DecomposedArtifact) -> list[str]:
    """Every script body in an artifact: channel scripts then connector steps."""
    scripts = [body for _, body in artifact.scripts.items() if body]
    for _, connector in artifact.connectors():
        for step_list in (connector.transformer, connector.response_transformer, connector.filter):
            if step_list is not None:
                scripts.extend(step.body for step in step_list.steps if step.body)
    return scripts


class VersionCompatibility:
    """Compatibility of a channel with the engine it is being promoted to."""

    @classmethod
    def check(
        cls,
        artifact: DecomposedArtifact,
        source_engine: EngineInfo,
        target_engine: EngineInfo,
    ) -> CompatibilityResult:
        channel_id, channel_name = artifact.metadata.id, artifact.metadata.name
        channel_version = artifact.metadata.version or source_engine.version

        result = CompatibilityResult()
        if channel_version and target_engine.version:
            result.merge(cls.check_version(channel_version, target_engine.version, channel_id, channel_name))
        result.merge(
            cls.check_script_syntax(ScriptFeatures.from_artifact(artifact), target_engine, channel_id, channel_name)
        )
        result.merge(cls.check_engine_type(source_engine.type, target_engine.type, channel_id, channel_name))
        return result

    @staticmethod
    def check_version(
        channel_version: str, target_version: str, channel_id: str = "", channel_name: str = ""
    ) -> CompatibilityResult:
        source_range = find_compat_range(channel_version)
        target_range = find_compat_range(target_version)

        if source_range and source_range == target_range:
            return CompatibilityResult()

        if source_range and target_range:
            return CompatibilityResult(
                warnings=[
                    VersionWarning(
                        channel_id,
                        channel_name,
                        Severity.WARN,
                        f"Channel version {channel_version} (range {source_range[0]}-{source_range[1]}) "
                        f"differs from target {target_version} (range {target_range[0]}-{target_range[1]}). "
                        "May need migration.",
                    )
                ]
            )

        unknown = channel_version if not source_range else target_version
        return CompatibilityResult(
            warnings=[
                VersionWarning(
                    channel_id,
                    channel_name,
                    Severity.INFO,
                    f"Version {unknown} is not in a known compatibility range.",
                )
            ]
        )

    @staticmethod
    def check_script_syntax(
        features: ScriptFeatures, target: EngineInfo, channel_id: str = "", channel_name: str = ""
    ) -> CompatibilityResult:
        result = CompatibilityResult()
        if features.uses_e4x and target.type == "java" and parse_major(target.version) >= 4:
            result.blocks.append(
                VersionWarning(
                    channel_id,
                    channel_name,
                    Severity.BLOCK,
                    "Channel uses E4X syntax which is not supported by java engines 4.0+.",
                )
            )
        if features.uses_es6 and target.type == "java":
            target_range = find_compat_range(target.version)
            if target_range and target_range[0] == "3.8.0":
                result.warnings.append(
                    VersionWarning(
                        channel_id,
                        channel_name,
                        Severity.WARN,
                        "Channel uses ES6 syntax. Java engines 3.8.x only run ES5 scripts.",
                    )
                )
        if features.uses_import_package and target.type == "nodejs":
            result.warnings.append(
                VersionWarning(
                    channel_id,
                    channel_name,
                    Severity.WARN,
                    "Channel uses importPackage() which is Rhino-specific. Verify behavior on the nodejs engine.",
                )
            )
        if features.uses_java_adapter and target.type == "nodejs":
            result.warnings.append(
                VersionWarning(
                    channel_id,
                    channel_name,
                    Severity.WARN,
                    "Channel uses JavaAdapter which is Rhino-specific. Verify compatibility with the nodejs engine.",
                )
            )
        return result

    @staticmethod
    def check_engine_type(
        source_type: str, target_type: str, channel_id: str = "", channel_name: str = ""
    ) -> CompatibilityResult:
        if source_type == "nodejs" and target_type == "java":
            return CompatibilityResult(
                warnings=[
                    VersionWarning(
                        channel_id,
                        channel_name,
                        Severity.INFO,
                        "Channel was exported from the nodejs engine. Verify it does not use nodejs-only features.",
                    )
                ]
            )
        return CompatibilityResult()


def _version_parts(version: str) -> list[int]:
    parts = []
    for piece in version.split("."):
        match = re.match(r"\d+", piece)
        parts.append(int(match.group(0)) if match else 0)
    return parts


def compare_versions(a: str, b: str) -> int:
    pa, pb = _version_parts(a), _version_parts(b)
    for i in range(max(len(pa), len(pb))):
        va = pa[i] if i < len(pa) else 0
        vb = pb[i] if i < len(pb) else 0
        if va != vb:
            return -1 if va < vb else 1
    return 0


def find_compat_range(version: str) -> tuple[str, str] | None:
    if not version:
        return None
    for low, high in COMPAT_RANGES:
        if compare_versions(version, low) >= 0 and compare_versions(version, high) <= 0:
            return low, high
    return None


def parse_major(version: str) -> int:
    parts = _version_parts(version) if version else [0]
    return parts[0]
