"""On-disk layout of channel artifacts inside one environment tree.

Layout, relative to the tree root::

    channels/<channel-dir>/channel.yaml
    channels/<channel-dir>/_raw.xml
    channels/<channel-dir>/source/...
    channels/<channel-dir>/destinations/<dest-dir>/...
    channels/<channel-dir>/scripts/*.js

The first environment's tree is the repository root; later environments
default to ``trees/<name>``.
"""

from __future__ import annotations

import shutil
from pathlib import Path, PurePosixPath

import structlog
import yaml

from chartifact.artifact.decomposer import CHANNEL_FILE, RAW_FILE
from chartifact.artifact.models import FileTreeEntry, sanitize_name
from chartifact.errors import ChannelNotFoundError

logger = structlog.get_logger(__name__)

CHANNELS_DIR = "channels"


class ChannelTreeStore:
    """Reads and writes channel directories under ``<repo>/<tree>/channels``."""

    def __init__(self, repo_path: str | Path, tree: str = ""):
        self.repo_path = Path(repo_path)
        self.tree = tree.strip("/")
        self._log = logger.bind(tree=self.tree or ".")

    @property
    def channels_rel(self) -> str:
        """Repository-relative POSIX path of the channels directory."""
        return str(PurePosixPath(self.tree, CHANNELS_DIR)) if self.tree else CHANNELS_DIR

    @property
    def channels_path(self) -> Path:
        return self.repo_path / self.channels_rel

    def channel_rel(self, channel_dir: str) -> str:
        return f"{self.channels_rel}/{channel_dir}"

    def list_channels(self) -> list[str]:
        """Channel directory names, sorted."""
        if not self.channels_path.is_dir():
            return []
        return sorted(
            p.name
            for p in self.channels_path.iterdir()
            if p.is_dir() and ((p / CHANNEL_FILE).is_file() or (p / RAW_FILE).is_file())
        )

    def exists(self, channel_dir: str) -> bool:
        return (self.channels_path / channel_dir).is_dir()

    def read_channel(self, channel_dir: str) -> dict[str, str]:
        """Every file of a channel directory, keyed by channel-relative POSIX path.

        Raises:
            ChannelNotFoundError: the directory does not exist or is empty.
        """
        root = self.channels_path / channel_dir
        files: dict[str, str] = {}
        if root.is_dir():
            for path in sorted(root.rglob("*")):
                if path.is_file():
                    files[path.relative_to(root).as_posix()] = path.read_text(encoding="utf-8")
        if not files:
            raise ChannelNotFoundError(channel_dir, self.tree)
        return files

    def write_channel(self, channel_dir: str, entries: list[FileTreeEntry]) -> list[str]:
        """Replace a channel directory with ``entries``; returns repo-relative paths written."""
        root = self.channels_path / channel_dir
        if root.exists():
            shutil.rmtree(root)
        written = []
        for entry in entries:
            target = root / PurePosixPath(entry.path)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(entry.content, encoding="utf-8")
            written.append(f"{self.channel_rel(channel_dir)}/{entry.path}")
        self._log.debug("channel_written", channel_dir=channel_dir, files=len(written))
        return written

    def delete_channel(self, channel_dir: str) -> bool:
        root = self.channels_path / channel_dir
        if not root.is_dir():
            return False
        shutil.rmtree(root)
        return True

    def read_metadata(self, channel_dir: str) -> dict:
        """Parsed ``channel.yaml``; empty when it is missing or unparseable."""
        path = self.channels_path / channel_dir / CHANNEL_FILE
        if not path.is_file():
            return {}
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            self._log.warning("channel_metadata_unreadable", channel_dir=channel_dir, error=str(e))
            return {}
        return data if isinstance(data, dict) else {}

    def channel_ids(self) -> dict[str, str]:
        """Map of channel id -> channel directory."""
        result = {}
        for channel_dir in self.list_channels():
            channel_id = str(self.read_metadata(channel_dir).get("id", "") or "")
            if channel_id:
                result[channel_id] = channel_dir
        return result

    def find_channel(self, ref: str) -> str:
        """Resolve a channel id, name or directory name to its directory.

        Raises:
            ChannelNotFoundError: nothing matches.
        """
        if self.exists(ref):
            return ref
        by_id = self.channel_ids()
        if ref in by_id:
            return by_id[ref]
        candidate = sanitize_name(ref)
        if self.exists(candidate):
            return candidate
        raise ChannelNotFoundError(ref, self.tree)
