"""Structural diff between two decomposed channels.

Two levels of comparison:

1. configuration: deep comparison of metadata, connector settings and step
   attributes, reported as dotted paths
2. scripts: unified diffs (``diff -u`` style) per script or step body

Comparing the decomposed models rather than document text means formatting
differences never show up as drift.
"""

from __future__ import annotations

import difflib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from chartifact.artifact.models import ConnectorFiles, DecomposedArtifact, StepListKind, sanitize_name


class ChangeType(Enum):
    ADDED = "added"
    REMOVED = "removed"
    CHANGED = "changed"


@dataclass
class ConfigChange:
    path: str
    type: ChangeType
    old_value: Any = None
    new_value: Any = None


@dataclass
class ScriptChange:
    path: str
    type: ChangeType
    unified_diff: str = ""
    old_content: str | None = None
    new_content: str | None = None


@dataclass
class DiffResult:
    channel_name: str
    config_changes: list[ConfigChange] = field(default_factory=list)
    script_changes: list[ScriptChange] = field(default_factory=list)

    @property
    def change_count(self) -> int:
        return len(self.config_changes) + len(self.script_changes)

    @property
    def has_changes(self) -> bool:
        return self.change_count > 0

    @property
    def summary(self) -> str:
        parts = []
        if self.config_changes:
            n = len(self.config_changes)
            parts.append(f"{n} config change{'' if n == 1 else 's'}")
        if self.script_changes:
            n = len(self.script_changes)
            parts.append(f"{n} script change{'' if n == 1 else 's'}")
        return f"{self.channel_name}: {', '.join(parts) if parts else 'no changes'}"


@dataclass
class _FlatConnector:
    config: dict[str, Any]
    scripts: dict[str, str]


class ChannelDiff:
    """Compares a stored channel (old) against a live one (new)."""

    def __init__(self, context_lines: int = 3, ignore_whitespace: bool = False):
        self.context_lines = context_lines
        self.ignore_whitespace = ignore_whitespace

    def diff(self, old: DecomposedArtifact, new: DecomposedArtifact) -> DiffResult:
        result = DiffResult(channel_name=new.metadata.name or old.metadata.name or "Unknown Channel")

        result.config_changes.extend(
            self.diff_objects(_metadata_dict(old), _metadata_dict(new), "metadata")
        )

        old_source, new_source = _flatten(old.source), _flatten(new.source)
        result.config_changes.extend(
            self.diff_objects(old_source.config, new_source.config, "source.connector")
        )
        self._diff_scripts(old_source.scripts, new_source.scripts, "source", result)
        self._diff_scripts(_channel_scripts(old), _channel_scripts(new), "scripts", result)

        old_dests = {d.dir_name: _flatten(d) for d in old.destinations}
        new_dests = {d.dir_name: _flatten(d) for d in new.destinations}
        for key in dict.fromkeys([*old_dests, *new_dests]):
            before, after = old_dests.get(key), new_dests.get(key)
            if before is None:
                result.config_changes.append(
                    ConfigChange(f"destinations.{key}", ChangeType.ADDED, new_value=after.config)
                )
                self._diff_scripts({}, after.scripts, f"destinations/{key}", result)
            elif after is None:
                result.config_changes.append(
                    ConfigChange(f"destinations.{key}", ChangeType.REMOVED, old_value=before.config)
                )
                self._diff_scripts(before.scripts, {}, f"destinations/{key}", result)
            else:
                result.config_changes.extend(
                    self.diff_objects(before.config, after.config, f"destinations.{key}.connector")
                )
                self._diff_scripts(before.scripts, after.scripts, f"destinations/{key}", result)

        old_order = [d.dir_name for d in old.destinations]
        new_order = [d.dir_name for d in new.destinations]
        if set(old_order) == set(new_order) and old_order != new_order:
            result.config_changes.append(
                ConfigChange("destinations.order", ChangeType.CHANGED, old_order, new_order)
            )
        return result

    def diff_objects(self, old: dict[str, Any], new: dict[str, Any], prefix: str = "") -> list[ConfigChange]:
        """Deep-compare two mappings and report changed dotted paths."""
        changes: list[ConfigChange] = []
        pfx = f"{prefix}." if prefix else ""
        for key in dict.fromkeys([*old, *new]):
            path = f"{pfx}{key}"
            if key not in old:
                changes.append(ConfigChange(path, ChangeType.ADDED, new_value=new[key]))
            elif key not in new:
                changes.append(ConfigChange(path, ChangeType.REMOVED, old_value=old[key]))
            else:
                changes.extend(self._diff_values(old[key], new[key], path))
        return changes

    def _diff_values(self, before: Any, after: Any, path: str) -> list[ConfigChange]:
        if isinstance(before, dict) and isinstance(after, dict):
            return self.diff_objects(before, after, path)
        if isinstance(before, list) and isinstance(after, list):
            changes = []
            for i in range(max(len(before), len(after))):
                item_path = f"{path}[{i}]"
                if i >= len(before):
                    changes.append(ConfigChange(item_path, ChangeType.ADDED, new_value=after[i]))
                elif i >= len(after):
                    changes.append(ConfigChange(item_path, ChangeType.REMOVED, old_value=before[i]))
                else:
                    changes.extend(self._diff_values(before[i], after[i], item_path))
            return changes
        if self._equal(before, after):
            return []
        return [ConfigChange(path, ChangeType.CHANGED, before, after)]

    def _equal(self, a: Any, b: Any) -> bool:
        if self.ignore_whitespace and isinstance(a, str) and isinstance(b, str):
            return _normalize(a) == _normalize(b)
        return a == b

    def unified_diff(self, old: str, new: str, header: str = "") -> str:
        if old == new:
            return ""
        old_lines = old.split("\n") if old else []
        new_lines = new.split("\n") if new else []
        lines = difflib.unified_diff(
            old_lines,
            new_lines,
            fromfile=f"old/{header}" if header else "a",
            tofile=f"new/{header}" if header else "b",
            n=self.context_lines,
            lineterm="",
        )
        return "\n".join(lines)

    def _diff_scripts(self, old: dict[str, str], new: dict[str, str], prefix: str, result: DiffResult) -> None:
        for key in dict.fromkeys([*old, *new]):
            path = f"{prefix}/{key}"
            if key not in old:
                result.script_changes.append(
                    ScriptChange(path, ChangeType.ADDED, self.unified_diff("", new[key], path), new_content=new[key])
                )
            elif key not in new:
                result.script_changes.append(
                    ScriptChange(path, ChangeType.REMOVED, self.unified_diff(old[key], "", path), old_content=old[key])
                )
            elif not self._equal(old[key], new[key]):
                result.script_changes.append(
                    ScriptChange(
                        path,
                        ChangeType.CHANGED,
                        self.unified_diff(old[key], new[key], path),
                        old_content=old[key],
                        new_content=new[key],
                    )
                )


def new_channel_result(name: str) -> DiffResult:
    """Diff for a live channel that has no stored counterpart."""
    return DiffResult(
        channel_name=name,
        config_changes=[ConfigChange("channel", ChangeType.ADDED, new_value="(entire channel)")],
    )


def format_for_cli(result: DiffResult) -> str:
    """Human-readable rendering of a :class:`DiffResult`."""
    n = result.change_count
    if n == 0:
        return f"Channel: {result.channel_name} (no changes)"

    lines = [f"Channel: {result.channel_name} ({n} change{'' if n == 1 else 's'})", ""]
    for change in result.config_changes:
        if change.type == ChangeType.CHANGED:
            lines.append(f"  {change.path}: {_format_value(change.old_value)} -> {_format_value(change.new_value)}")
        elif change.type == ChangeType.ADDED:
            lines.append(f"  + {change.path}: {_format_value(change.new_value)}")
        else:
            lines.append(f"  - {change.path}: {_format_value(change.old_value)}")

    for change in result.script_changes:
        lines.append("")
        lines.append(f"--- {change.path} ---")
        if change.type == ChangeType.ADDED:
            lines.append("(new file)")
        elif change.type == ChangeType.REMOVED:
            lines.append("(deleted)")
        diff_lines = change.unified_diff.split("\n") if change.unified_diff else []
        hunk_start = next((i for i, line in enumerate(diff_lines) if line.startswith("@@")), None)
        if hunk_start is not None:
            lines.extend(diff_lines[hunk_start:])
    return "\n".join(lines)


def _format_value(value: Any) -> str:
    if value is None:
        return "None"
    if isinstance(value, str):
        return f'"{value[:57]}..."' if len(value) > 60 else f'"{value}"'
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return f"[{len(value)} items]"
    if isinstance(value, dict):
        return f"{{{len(value)} keys}}"
    return str(value)


def _normalize(text: str) -> str:
    return " ".join(text.split())


def _metadata_dict(artifact: DecomposedArtifact) -> dict[str, Any]:
    meta = artifact.metadata
    data: dict[str, Any] = {"id": meta.id, "name": meta.name, "revision": meta.revision}
    if meta.description is not None:
        data["description"] = meta.description
    if meta.enabled is not None:
        data["enabled"] = meta.enabled
    return data


def _channel_scripts(artifact: DecomposedArtifact) -> dict[str, str]:
    return {f"{name}.js": body for name, body in artifact.scripts.items() if body is not None}


def _flatten(connector: ConnectorFiles) -> _FlatConnector:
    config: dict[str, Any] = {
        "name": connector.name,
        "transport_kind": connector.transport_kind,
        "mode": connector.mode,
        "enabled": connector.enabled,
        "properties_kind": connector.properties_kind,
        "properties": connector.properties,
    }
    if connector.wait_for_previous is not None:
        config["wait_for_previous"] = connector.wait_for_previous

    scripts: dict[str, str] = {}
    for kind in StepListKind:
        step_list = connector.step_list(kind)
        if step_list is None:
            continue
        steps: dict[str, Any] = {}
        for step in step_list.steps:
            key = f"{kind.step_prefix}-{step.sequence_number}-{sanitize_name(step.name)}"
            attrs: dict[str, Any] = {"name": step.name, "enabled": step.enabled, "kind": step.kind}
            if step.operator is not None:
                attrs["operator"] = step.operator
            steps[key] = attrs
            scripts[f"{kind.value}/{key}.js"] = step.body
        section: dict[str, Any] = {"steps": steps}
        if step_list.inbound_data_type is not None:
            section["inbound_data_type"] = step_list.inbound_data_type
        if step_list.outbound_data_type is not None:
            section["outbound_data_type"] = step_list.outbound_data_type
        config[kind.value] = section
    return _FlatConnector(config=config, scripts=scripts)
