"""Request, state and result types for environment promotion."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class PromotionState(Enum):
    """requested -> validated -> (approved | rejected) -> applied | failed"""

    REQUESTED = "requested"
    VALIDATED = "validated"
    APPROVED = "approved"
    REJECTED = "rejected"
    APPLIED = "applied"
    FAILED = "failed"


class ChannelStatus(Enum):
    PLANNED = "planned"
    UNCHANGED = "unchanged"
    APPLIED = "applied"
    BLOCKED = "blocked"
    FAILED = "failed"


@dataclass
class PromotionRequest:
    """A request to move channels from one environment's tree into the next.

    An empty ``channel_ids`` selects every channel in the source tree.
    """

    source_env: str
    target_env: str
    channel_ids: list[str] = field(default_factory=list)
    requested_by: str = ""
    approved_by: str = ""
    force: bool = False
    dry_run: bool = False
    push: bool = False
    notes: str = ""


@dataclass
class ChannelPromotion:
    channel_id: str
    channel_name: str
    channel_dir: str
    status: ChannelStatus = ChannelStatus.PLANNED
    change_count: int = 0
    warnings: list[str] = field(default_factory=list)
    error: str = ""
    files: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status not in (ChannelStatus.FAILED, ChannelStatus.BLOCKED)


@dataclass
class PromotionResult:
    success: bool
    state: PromotionState
    source_env: str
    target_env: str
    dry_run: bool = False
    channel_results: list[ChannelPromotion] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    order: list[str] = field(default_factory=list)
    block_reasons: list[str] = field(default_factory=list)
    approval_id: str = ""
    commit_sha: str | None = None
    history: list[PromotionState] = field(default_factory=list)

    @property
    def plan(self) -> list[ChannelPromotion]:
        """Channels that would be written, in apply order."""
        return [c for c in self.channel_results if c.status is ChannelStatus.PLANNED]

    def transition(self, state: PromotionState) -> None:
        self.state = state
        self.history.append(state)
