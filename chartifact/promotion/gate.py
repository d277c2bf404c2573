"""Approval gate in front of every promotion.

Decision order:

1. a matching ``deny`` policy rule rejects, even when forced
2. ``force`` passes and is written to the approval log for audit
3. promotions that need no approval pass
4. an approver named on the request passes and is recorded
5. an approved, unconsumed record covering the channels passes
6. otherwise a pending request is recorded and the promotion is rejected
"""

from __future__ import annotations

from dataclasses import dataclass, field

import structlog

from chartifact.config import RepositoryConfig
from chartifact.errors import PromotionGateRejectedError
from chartifact.promotion.approvals import ApprovalRecord, ApprovalStore
from chartifact.promotion.models import PromotionRequest
from chartifact.promotion.policy import PolicyAction, PolicyContext, PolicySet

logger = structlog.get_logger(__name__)


@dataclass
class GateResult:
    record: ApprovalRecord | None = None
    forced: bool = False
    reasons: list[str] = field(default_factory=list)


class PendingApprovalError(PromotionGateRejectedError):
    """The promotion needs approval; a pending request was recorded."""

    def __init__(self, reasons: list[str], record: ApprovalRecord):
        self.record = record
        super().__init__(reasons)


class PromotionGate:
    def __init__(
        self,
        store: ApprovalStore,
        config: RepositoryConfig,
        policy: PolicySet | None = None,
    ):
        self.store = store
        self.config = config
        self.policy = policy or PolicySet()

    def enforce(self, request: PromotionRequest, channel_ids: list[str], channel_names: list[str]) -> GateResult:
        """Pass the promotion or raise.

        Raises:
            PromotionGateRejectedError: a policy rule denies the promotion.
            PendingApprovalError: approval is required and none is available.
        """
        log = logger.bind(source=request.source_env, target=request.target_env)
        decision = self.policy.evaluate(
            PolicyContext(
                source_env=request.source_env,
                target_env=request.target_env,
                channel_ids=list(channel_ids),
                channel_names=list(channel_names),
            )
        )
        if decision.denied:
            log.warning("gate_denied", reasons=decision.reasons)
            raise PromotionGateRejectedError(decision.reasons)

        if request.force:
            record = self.store.record_approved(
                request.source_env,
                request.target_env,
                channel_ids,
                approved_by=request.approved_by or request.requested_by or "force",
                forced=True,
                notes=request.notes,
            )
            log.warning("gate_forced", approval_id=record.id)
            return GateResult(record=record, forced=True, reasons=["forced"])

        target = self.config.get_environment(request.target_env)
        needs_approval = decision.action == PolicyAction.REQUIRE_APPROVAL or (
            target is not None and target.requires_approval
        )
        if not needs_approval:
            log.info("gate_passed", reason="no approval required")
            return GateResult(reasons=decision.reasons)

        if request.approved_by:
            record = self.store.record_approved(
                request.source_env,
                request.target_env,
                channel_ids,
                approved_by=request.approved_by,
                notes=request.notes,
            )
            log.info("gate_approved", approval_id=record.id, by=request.approved_by)
            return GateResult(record=record, reasons=decision.reasons)

        existing = self.store.find_usable(request.source_env, request.target_env, channel_ids)
        if existing is not None:
            log.info("gate_approved", approval_id=existing.id, by=existing.approved_by)
            return GateResult(record=existing, reasons=decision.reasons)

        record = self.store.create_request(
            request.source_env,
            request.target_env,
            channel_ids,
            requested_by=request.requested_by,
            notes=request.notes,
        )
        reasons = decision.reasons or [f"Promotion to '{request.target_env}' requires approval"]
        reasons.append(f"Approval request {record.id} is pending")
        log.info("gate_pending", approval_id=record.id)
        raise PendingApprovalError(reasons, record)
