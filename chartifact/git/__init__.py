"""Version-control collaborators: repository access, tree layout and delta detection."""

from chartifact.git.delta import DeltaDetector, DeltaResult
from chartifact.git.repository import ChangedPath, GitRepository
from chartifact.git.store import ChannelTreeStore

__all__ = ["ChangedPath", "ChannelTreeStore", "DeltaDetector", "DeltaResult", "GitRepository"]
