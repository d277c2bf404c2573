"""Map git changes between two revisions to the channels they affect.

Path classification is pure string work; the detector only touches git to
list the changed paths and to read ``channel.yaml`` for channel ids.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath

import structlog
import yaml

from chartifact.artifact.decomposer import CHANNEL_FILE
from chartifact.errors import GitOperationError
from chartifact.git.repository import ChangedPath, GitRepository
from chartifact.git.store import CHANNELS_DIR
from chartifact.variables.resolver import ENVIRONMENTS_DIR

logger = structlog.get_logger(__name__)

DEFAULT_FROM_REF = "HEAD~1"
DEFAULT_TO_REF = "HEAD"


class DeltaChangeType(Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


_STATUS_TYPES = {"A": DeltaChangeType.ADDED, "D": DeltaChangeType.DELETED}


@dataclass
class ChannelChange:
    channel_dir: str
    change_type: DeltaChangeType
    changed_files: list[str] = field(default_factory=list)
    sections: list[str] = field(default_factory=list)
    channel_id: str | None = None


@dataclass
class CascadedChannel:
    channel_dir: str
    reason: str
    channel_id: str | None = None


@dataclass
class ConfigFileChange:
    file: str
    change_type: DeltaChangeType


@dataclass
class DeltaResult:
    from_ref: str
    to_ref: str
    changed_channels: list[ChannelChange] = field(default_factory=list)
    changed_config: list[ConfigFileChange] = field(default_factory=list)
    cascaded_channels: list[CascadedChannel] = field(default_factory=list)

    @property
    def total_affected(self) -> int:
        return len(self.changed_channels) + len(self.cascaded_channels)

    @property
    def affected_ids(self) -> list[str]:
        """Ids of every affected channel (direct changes first)."""
        ids = [c.channel_id for c in self.changed_channels if c.channel_id]
        ids += [c.channel_id for c in self.cascaded_channels if c.channel_id]
        return list(dict.fromkeys(ids))

    @property
    def summary(self) -> str:
        parts = []
        if self.changed_channels:
            n = len(self.changed_channels)
            parts.append(f"{n} channel{'' if n == 1 else 's'} changed")
        if self.cascaded_channels:
            parts.append(f"{len(self.cascaded_channels)} cascaded")
        if self.changed_config:
            n = len(self.changed_config)
            parts.append(f"{n} config file{'' if n == 1 else 's'} changed")
        return f"Delta: {', '.join(parts)}" if parts else "Delta: No changes detected"


@dataclass(frozen=True)
class PathMapping:
    """What a repository path belongs to: a channel section, environment file or nothing."""

    type: str  # channel | environment | unknown
    name: str = ""
    section: str = ""


class DeltaDetector:
    """Enumerates the channels changed between two revisions of one tree."""

    def __init__(self, repository: GitRepository, tree: str = ""):
        self.repository = repository
        self.tree = tree.strip("/")

    @property
    def channels_prefix(self) -> str:
        return f"{self.tree}/{CHANNELS_DIR}/" if self.tree else f"{CHANNELS_DIR}/"

    def detect(
        self,
        from_ref: str = DEFAULT_FROM_REF,
        to_ref: str = DEFAULT_TO_REF,
        include_cascades: bool = False,
    ) -> DeltaResult:
        changes = self.repository.changed_paths(from_ref, to_ref)
        result = self.classify(changes, from_ref, to_ref)

        for change in result.changed_channels:
            ref = from_ref if change.change_type is DeltaChangeType.DELETED else to_ref
            change.channel_id = self._channel_id_at(ref, change.channel_dir)

        if include_cascades and any(c.file.startswith(f"{ENVIRONMENTS_DIR}/") for c in result.changed_config):
            direct = {c.channel_dir for c in result.changed_channels}
            try:
                every = self.repository.list_dir_at(to_ref, self.channels_prefix.rstrip("/"))
            except GitOperationError as e:
                logger.warning("cascade_listing_failed", ref=to_ref, error=str(e))
                every = []
            for channel_dir in every:
                if channel_dir in direct:
                    continue
                result.cascaded_channels.append(
                    CascadedChannel(
                        channel_dir=channel_dir,
                        reason="Environment config changed",
                        channel_id=self._channel_id_at(to_ref, channel_dir),
                    )
                )

        logger.info(
            "delta_detected",
            from_ref=from_ref,
            to_ref=to_ref,
            channels=len(result.changed_channels),
            cascaded=len(result.cascaded_channels),
        )
        return result

    def classify(self, changes: list[ChangedPath], from_ref: str = "", to_ref: str = "") -> DeltaResult:
        """Group raw path changes by channel. Pure; no git access."""
        result = DeltaResult(from_ref=from_ref, to_ref=to_ref)
        per_channel: dict[str, ChannelChange] = {}

        for change in _expand_renames(changes):
            mapping = self.map_path(change.path)
            change_type = _STATUS_TYPES.get(change.status, DeltaChangeType.MODIFIED)
            if mapping.type == "channel":
                entry = per_channel.setdefault(
                    mapping.name, ChannelChange(mapping.name, DeltaChangeType.MODIFIED)
                )
                entry.changed_files.append(change.path)
                if mapping.section and mapping.section not in entry.sections:
                    entry.sections.append(mapping.section)
                if mapping.section == "config" and PurePosixPath(change.path).name == CHANNEL_FILE:
                    entry.change_type = change_type
            elif mapping.type == "environment":
                result.changed_config.append(ConfigFileChange(change.path, change_type))

        for entry in per_channel.values():
            entry.sections.sort()
        result.changed_channels = sorted(per_channel.values(), key=lambda c: c.channel_dir)
        return result

    def map_path(self, path: str) -> PathMapping:
        normalized = path[2:] if path.startswith("./") else path.lstrip("/")
        if normalized.startswith(f"{ENVIRONMENTS_DIR}/"):
            return PathMapping(type="environment", name=normalized)
        if not normalized.startswith(self.channels_prefix):
            return PathMapping(type="unknown")

        rest = normalized[len(self.channels_prefix):]
        channel_dir, _, sub_path = rest.partition("/")
        if not channel_dir:
            return PathMapping(type="unknown")
        return PathMapping(type="channel", name=channel_dir, section=_section(sub_path))

    def _channel_id_at(self, ref: str, channel_dir: str) -> str | None:
        text = self.repository.read_file_at(ref, f"{self.channels_prefix}{channel_dir}/{CHANNEL_FILE}")
        if not text:
            return None
        data = yaml.safe_load(text)
        if isinstance(data, dict) and data.get("id"):
            return str(data["id"])
        return None


def _section(sub_path: str) -> str:
    if sub_path == "source" or sub_path.startswith("source/"):
        return "source"
    if sub_path.startswith("destinations/"):
        dest = sub_path[len("destinations/"):].split("/", 1)[0]
        return f"destinations/{dest}"
    if sub_path == "scripts" or sub_path.startswith("scripts/"):
        return "scripts"
    return "config"


def _expand_renames(changes: list[ChangedPath]) -> list[ChangedPath]:
    expanded = []
    for change in changes:
        if change.status == "R" and change.old_path:
            expanded.append(ChangedPath(status="D", path=change.old_path))
            expanded.append(ChangedPath(status="A", path=change.path))
        elif change.status == "C":
            expanded.append(ChangedPath(status="A", path=change.path))
        else:
            expanded.append(change)
    return expanded


def format_for_cli(result: DeltaResult) -> str:
    if result.total_affected == 0 and not result.changed_config:
        return result.summary

    symbols = {DeltaChangeType.ADDED: "+", DeltaChangeType.MODIFIED: "~", DeltaChangeType.DELETED: "-"}
    lines = [result.summary]
    if result.changed_channels:
        lines += ["", "Changed:"]
        for ch in result.changed_channels:
            detail = f" ({', '.join(ch.sections)})" if ch.sections else ""
            lines.append(f"  {symbols[ch.change_type]} channels/{ch.channel_dir}/{detail}")
    if result.cascaded_channels:
        lines += ["", "Cascaded:"]
        for ch in result.cascaded_channels:
            lines.append(f"  -> channels/{ch.channel_dir}/  ({ch.reason})")
    if result.changed_config:
        lines += ["", "Config:"]
        for cfg in result.changed_config:
            lines.append(f"  {symbols[cfg.change_type]} {cfg.file}")
    return "\n".join(lines)
