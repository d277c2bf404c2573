"""Tests for promotion policy, the approval store and the gate."""

import tempfile

import pytest
import yaml

from chartifact.config import RepositoryConfig
from chartifact.errors import PromotionGateRejectedError
from chartifact.promotion import (
    ApprovalOutcome,
    ApprovalStatus,
    ApprovalStore,
    PendingApprovalError,
    PolicyAction,
    PolicyContext,
    PolicyRule,
    PolicyScope,
    PolicySet,
    PromotionGate,
    PromotionRequest,
    load_policy,
)


# --- Policy Tests ---


def test_policy_allow_by_default():
    policy = PolicySet(name="empty", rules=[])
    decision = policy.evaluate(PolicyContext(source_env="dev", target_env="staging"))
    assert decision.allowed
    assert decision.reasons == []


def test_policy_deny_channel_rule():
    policy = PolicySet(
        name="freeze",
        rules=[
            PolicyRule(
                name="freeze-billing",
                description="Billing is frozen",
                scope=PolicyScope.CHANNEL,
                action=PolicyAction.DENY,
                patterns=["Billing*"],
            ),
        ],
    )
    ctx = PolicyContext(
        source_env="dev",
        target_env="prod",
        channel_ids=["c-1"],
        channel_names=["Billing Outbound"],
    )
    decision = policy.evaluate(ctx)
    assert decision.denied
    assert decision.reasons == ["[deny] freeze-billing: Billing is frozen"]


def test_policy_environment_route_pattern():
    policy = PolicySet(
        rules=[
            PolicyRule(
                name="no-skip",
                scope=PolicyScope.ENVIRONMENT,
                action=PolicyAction.DENY,
                patterns=["dev->prod"],
            ),
        ],
    )
    assert policy.evaluate(PolicyContext(source_env="dev", target_env="prod")).denied
    assert policy.evaluate(PolicyContext(source_env="staging", target_env="prod")).allowed


def test_policy_require_approval_with_conditions():
    policy = PolicySet(
        rules=[
            PolicyRule(
                name="prod-review",
                scope=PolicyScope.ALL,
                action=PolicyAction.REQUIRE_APPROVAL,
                conditions={"target": "prod*"},
            ),
        ],
    )
    decision = policy.evaluate(PolicyContext(source_env="staging", target_env="prod-eu"))
    assert decision.action == PolicyAction.REQUIRE_APPROVAL
    assert policy.evaluate(PolicyContext(source_env="dev", target_env="staging")).allowed


def test_policy_deny_overrides_approval_and_allow():
    policy = PolicySet(
        rules=[
            PolicyRule(name="allow-all", action=PolicyAction.ALLOW),
            PolicyRule(name="review", action=PolicyAction.REQUIRE_APPROVAL),
            PolicyRule(
                name="block",
                scope=PolicyScope.CHANNEL,
                action=PolicyAction.DENY,
                patterns=["c-*"],
            ),
        ],
    )
    decision = policy.evaluate(PolicyContext(source_env="dev", target_env="staging", channel_ids=["c-9"]))
    assert decision.denied
    assert len(decision.applied_rules) == 3


def test_policy_load_from_yaml():
    data = {
        "name": "release-rules",
        "version": 2,
        "rules": [
            {
                "name": "freeze",
                "scope": "channel",
                "action": "deny",
                "patterns": ["billing-*"],
                "conditions": {"target": "prod"},
            },
        ],
    }
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
        yaml.dump(data, f)
        f.flush()
        policy = load_policy(f.name)

    assert policy.name == "release-rules"
    assert policy.version == "2"
    assert policy.rules[0].scope == PolicyScope.CHANNEL
    assert policy.rules[0].conditions == {"target": "prod"}


# --- Approval store ---


def test_approval_store_request_and_decide():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = ApprovalStore(tmpdir)
        record = store.create_request("dev", "staging", ["c-1"], requested_by="ana")
        assert store.get_pending_count() == 1
        assert store.find_usable("dev", "staging", ["c-1"]) is None

        approved = store.approve(record.id, "lead", comment="looks fine")
        assert approved.status == ApprovalStatus.APPROVED.value
        assert approved.approved_by == "lead"
        assert approved.notes == "looks fine"
        assert store.get_pending_count() == 0

        # decided records are not decided again
        assert store.reject(record.id, "someone").status == ApprovalStatus.APPROVED.value


def test_approval_store_usable_until_consumed():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = ApprovalStore(tmpdir)
        record = store.record_approved("dev", "staging", ["c-1", "c-2"], approved_by="lead")
        assert store.find_usable("dev", "staging", ["c-2"]).id == record.id
        assert store.find_usable("dev", "staging", ["c-3"]) is None
        assert store.find_usable("staging", "prod", ["c-1"]) is None

        store.set_outcome(record.id, ApprovalOutcome.APPLIED)
        assert store.find_usable("dev", "staging", ["c-1"]) is None
        assert store.get(record.id).outcome == "applied"


def test_approval_store_persists_across_instances():
    with tempfile.TemporaryDirectory() as tmpdir:
        record = ApprovalStore(tmpdir).create_request("dev", "staging", ["c-1"])
        reopened = ApprovalStore(tmpdir)
        assert reopened.get(record.id).source_env == "dev"
        assert reopened.get("missing") is None


def test_approval_store_unreadable_file_is_empty():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = ApprovalStore(tmpdir)
        store.path.write_text("{not json", encoding="utf-8")
        assert store.list_records() == []


# --- Gate ---


def _gate(tmpdir, policy=None):
    return PromotionGate(ApprovalStore(tmpdir), RepositoryConfig(), policy)


def test_gate_first_hop_without_approval_requirement():
    with tempfile.TemporaryDirectory() as tmpdir:
        config = RepositoryConfig()
        config.environments[1].requires_approval = False
        gate = PromotionGate(ApprovalStore(tmpdir), config)
        result = gate.enforce(PromotionRequest("dev", "staging"), ["c-1"], ["One"])
        assert result.record is None
        assert gate.store.list_records() == []


def test_gate_records_pending_request():
    with tempfile.TemporaryDirectory() as tmpdir:
        gate = _gate(tmpdir)
        with pytest.raises(PendingApprovalError) as exc:
            gate.enforce(PromotionRequest("dev", "staging", requested_by="ana"), ["c-1"], ["One"])
        record = exc.value.record
        assert record.status == ApprovalStatus.PENDING.value
        assert f"Approval request {record.id} is pending" in exc.value.reasons

        gate.store.approve(record.id, "lead")
        passed = gate.enforce(PromotionRequest("dev", "staging"), ["c-1"], ["One"])
        assert passed.record.id == record.id


def test_gate_inline_approver_is_recorded():
    with tempfile.TemporaryDirectory() as tmpdir:
        gate = _gate(tmpdir)
        result = gate.enforce(PromotionRequest("dev", "staging", approved_by="lead"), ["c-1"], ["One"])
        assert result.record.approved_by == "lead"
        assert not result.record.forced


def test_gate_force_is_audited_but_not_past_deny():
    with tempfile.TemporaryDirectory() as tmpdir:
        gate = _gate(tmpdir)
        forced = gate.enforce(PromotionRequest("dev", "staging", force=True, requested_by="ana"), ["c-1"], ["One"])
        assert forced.forced
        assert gate.store.get(forced.record.id).forced

        deny = PolicySet(rules=[PolicyRule(name="freeze", action=PolicyAction.DENY)])
        denied = _gate(tmpdir, deny)
        with pytest.raises(PromotionGateRejectedError) as exc:
            denied.enforce(PromotionRequest("dev", "staging", force=True), ["c-1"], ["One"])
        assert not isinstance(exc.value, PendingApprovalError)
        assert exc.value.reasons == ["[deny] freeze"]
