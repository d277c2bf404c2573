"""Environment promotion: compatibility checks, policy, approvals and the pipeline."""

from chartifact.promotion.approvals import ApprovalOutcome, ApprovalRecord, ApprovalStatus, ApprovalStore
from chartifact.promotion.compatibility import CompatibilityResult, Severity, VersionCompatibility
from chartifact.promotion.gate import GateResult, PendingApprovalError, PromotionGate
from chartifact.promotion.models import (
    ChannelPromotion,
    ChannelStatus,
    PromotionRequest,
    PromotionResult,
    PromotionState,
)
from chartifact.promotion.pipeline import PromotionPipeline
from chartifact.promotion.policy import (
    PolicyAction,
    PolicyContext,
    PolicyDecision,
    PolicyRule,
    PolicyScope,
    PolicySet,
    load_policy,
)

__all__ = [
    "ApprovalOutcome",
    "ApprovalRecord",
    "ApprovalStatus",
    "ApprovalStore",
    "ChannelPromotion",
    "ChannelStatus",
    "CompatibilityResult",
    "GateResult",
    "PendingApprovalError",
    "PolicyAction",
    "PolicyContext",
    "PolicyDecision",
    "PolicyRule",
    "PolicyScope",
    "PolicySet",
    "PromotionGate",
    "PromotionPipeline",
    "PromotionRequest",
    "PromotionResult",
    "PromotionState",
    "Severity",
    "VersionCompatibility",
    "load_policy",
]
