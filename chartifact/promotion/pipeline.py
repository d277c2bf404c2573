"""Promotion of channels from one environment's tree into the next.

The pipeline validates everything up front (environment order, channel
selection, strict variable resolution against the target environment,
compatibility) before the approval gate is consulted, so nothing is written
for a promotion that could not complete. A dry run stops once validated.

Channels are applied one at a time in dependency order; one channel failing
does not stop the others, and everything written lands in a single commit.
"""

from __future__ import annotations

import asyncio
from typing import Mapping

import structlog

from chartifact.artifact.assembler import bind_variables
from chartifact.artifact.decomposer import from_file_tree, to_file_tree
from chartifact.artifact.dependencies import DependencyGraph
from chartifact.artifact.diff import ChannelDiff
from chartifact.artifact.models import DecomposedArtifact
from chartifact.artifact.secrets import SensitiveDataDetector
from chartifact.config import RepositoryConfig
from chartifact.errors import (
    ChartifactError,
    GitOperationError,
    InvalidPromotionError,
    PromotionGateRejectedError,
)
from chartifact.git.repository import GitRepository
from chartifact.git.store import ChannelTreeStore
from chartifact.promotion.approvals import ApprovalOutcome
from chartifact.promotion.compatibility import VersionCompatibility
from chartifact.promotion.gate import GateResult, PendingApprovalError, PromotionGate
from chartifact.promotion.models import (
    ChannelPromotion,
    ChannelStatus,
    PromotionRequest,
    PromotionResult,
    PromotionState,
)
from chartifact.variables.resolver import VariableResolver

logger = structlog.get_logger(__name__)


class PromotionPipeline:
    def __init__(
        self,
        repository: GitRepository,
        config: RepositoryConfig,
        gate: PromotionGate,
        process_env: Mapping[str, str] | None = None,
    ):
        self.repository = repository
        self.config = config
        self.gate = gate
        self.process_env = dict(process_env or {})
        self.detector = SensitiveDataDetector()
        self.differ = ChannelDiff()

    async def promote(self, request: PromotionRequest) -> PromotionResult:
        result = PromotionResult(
            success=False,
            state=PromotionState.REQUESTED,
            source_env=request.source_env,
            target_env=request.target_env,
            dry_run=request.dry_run,
        )
        log = logger.bind(source=request.source_env, target=request.target_env, dry_run=request.dry_run)
        self._transition(result, PromotionState.REQUESTED, log)

        try:
            candidates = await self._validate(request, result)
        except ChartifactError as e:
            result.errors.append(str(e))
            self._transition(result, PromotionState.FAILED, log)
            return result

        self._transition(result, PromotionState.VALIDATED, log)
        if request.dry_run:
            result.success = all(c.ok for c in result.channel_results)
            return result

        pending = [c for c in result.channel_results if c.status is ChannelStatus.PLANNED]
        if not pending:
            blocked = [c for c in result.channel_results if not c.ok]
            if blocked:
                result.errors.append("No channel can be promoted; every changed channel failed or is blocked")
                self._transition(result, PromotionState.FAILED, log)
                return result
            result.warnings.append("Target environment already matches the source; nothing to promote")
            result.success = True
            self._transition(result, PromotionState.APPLIED, log)
            return result

        try:
            gate_result = self.gate.enforce(
                request,
                [c.channel_id for c in pending],
                [c.channel_name for c in pending],
            )
        except PendingApprovalError as e:
            result.block_reasons = e.reasons
            result.approval_id = e.record.id
            self._transition(result, PromotionState.REJECTED, log)
            return result
        except PromotionGateRejectedError as e:
            result.block_reasons = e.reasons
            self._transition(result, PromotionState.REJECTED, log)
            return result

        if gate_result.record is not None:
            result.approval_id = gate_result.record.id
        self._transition(result, PromotionState.APPROVED, log)

        await self._apply(request, result, candidates, gate_result)
        return result

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    async def _validate(
        self, request: PromotionRequest, result: PromotionResult
    ) -> dict[str, tuple[ChannelPromotion, DecomposedArtifact]]:
        self._check_environments(request.source_env, request.target_env)

        source = self._store(request.source_env)
        target = self._store(request.target_env)

        selected = await asyncio.to_thread(self._select_channels, source, request.channel_ids)
        if not selected:
            raise InvalidPromotionError(f"No channels to promote in environment '{request.source_env}'")

        # one unreadable channel fails on its own; the rest are still promoted
        artifacts: dict[str, DecomposedArtifact] = {}
        unreadable: list[ChannelPromotion] = []
        for channel_dir in selected:
            try:
                files = await asyncio.to_thread(source.read_channel, channel_dir)
                artifacts[channel_dir] = from_file_tree(files)
            except (ChartifactError, OSError) as e:
                unreadable.append(await asyncio.to_thread(_failed_entry, source, channel_dir, e))

        # strict: every readable channel must be fully configured for the target
        resolver = VariableResolver(process_env=self.process_env, strict=True)
        await resolver.load_environment(self.repository.path, request.target_env)
        bound: dict[str, DecomposedArtifact] = {}
        for channel_dir, artifact in artifacts.items():
            if self.config.mask_secrets:
                # literal credentials become tokens first, and tokens are never bound
                artifact, _ = self.detector.mask(artifact)
                candidate, _ = bind_variables(artifact, resolver)
                candidate = self.detector.keep_tokens(artifact, candidate)
            else:
                candidate, _ = bind_variables(artifact, resolver)
            bound[channel_dir] = candidate

        by_id = {a.metadata.id: d for d, a in bound.items()}
        sort = DependencyGraph.from_artifacts(bound.values()).sort(list(by_id))
        if sort.has_cycles:
            result.warnings.append(f"Dependency cycle between channels: {', '.join(sort.cycles)}")
        result.order = sort.order

        source_engine = self.config.engine_for(request.source_env)
        target_engine = self.config.engine_for(request.target_env)
        candidates = {}
        for channel_id in sort.order:
            channel_dir = by_id[channel_id]
            artifact = bound[channel_dir]
            entry = ChannelPromotion(
                channel_id=channel_id,
                channel_name=artifact.metadata.name,
                channel_dir=channel_dir,
            )
            result.channel_results.append(entry)

            new_files = {e.path: e.content for e in to_file_tree(artifact)}
            try:
                existing = await asyncio.to_thread(_read_existing, target, channel_dir)
                if existing == new_files:
                    entry.status = ChannelStatus.UNCHANGED
                    continue
                if existing:
                    entry.change_count = self.differ.diff(from_file_tree(existing), artifact).change_count
            except (ChartifactError, OSError) as e:
                entry.status = ChannelStatus.FAILED
                entry.error = f"Cannot compare with the target copy: {e}"
                continue

            compat = VersionCompatibility.check(artifact, source_engine, target_engine)
            entry.warnings.extend(w.message for w in compat.warnings)
            if not compat.compatible:
                messages = [b.message for b in compat.blocks]
                if request.force:
                    entry.warnings.extend(messages)
                else:
                    entry.status = ChannelStatus.BLOCKED
                    entry.error = "; ".join(messages)
                    continue
            candidates[channel_id] = (entry, artifact)

        result.channel_results.extend(unreadable)
        for entry in result.channel_results:
            result.warnings.extend(entry.warnings)
            if not entry.ok:
                result.errors.append(f"{entry.channel_name}: {entry.error}")
        return candidates

    def _check_environments(self, source_env: str, target_env: str) -> None:
        known = self.config.environment_names
        for env in (source_env, target_env):
            if env not in known:
                raise InvalidPromotionError(f"Unknown environment '{env}' (known: {', '.join(known)})")
        if source_env == target_env:
            raise InvalidPromotionError("Source and target environment must differ")
        if self.config.environment_index(target_env) < self.config.environment_index(source_env):
            raise InvalidPromotionError(
                f"Cannot promote backwards from '{source_env}' to '{target_env}'; "
                f"order is {' -> '.join(known)}"
            )

    def _store(self, environment: str) -> ChannelTreeStore:
        env = self.config.get_environment(environment)
        return ChannelTreeStore(self.repository.path, env.tree if env is not None else "")

    @staticmethod
    def _select_channels(store: ChannelTreeStore, refs: list[str]) -> list[str]:
        if not refs:
            return store.list_channels()
        return list(dict.fromkeys(store.find_channel(ref) for ref in refs))

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    async def _apply(
        self,
        request: PromotionRequest,
        result: PromotionResult,
        candidates: dict[str, tuple[ChannelPromotion, DecomposedArtifact]],
        gate_result: GateResult,
    ) -> None:
        log = logger.bind(source=request.source_env, target=request.target_env)
        target = self._store(request.target_env)

        for entry, artifact in candidates.values():
            try:
                entry.files = await asyncio.to_thread(
                    target.write_channel, entry.channel_dir, to_file_tree(artifact)
                )
                entry.status = ChannelStatus.APPLIED
                log.info("channel_promoted", channel=entry.channel_name, files=len(entry.files))
            except (ChartifactError, OSError) as e:
                entry.status = ChannelStatus.FAILED
                entry.error = str(e)
                log.warning("channel_promotion_failed", channel=entry.channel_name, error=str(e))

        applied = [c for c in result.channel_results if c.status is ChannelStatus.APPLIED]
        if applied:
            try:
                result.commit_sha = await asyncio.to_thread(
                    self.repository.commit,
                    f"Promote {len(applied)} channel(s) from {request.source_env} to {request.target_env}",
                )
            except GitOperationError as e:
                result.errors.append(str(e))
                for entry in applied:
                    entry.status = ChannelStatus.FAILED
                    entry.error = str(e)

        if request.push and result.commit_sha:
            branch = self._branch(request.target_env)
            try:
                await asyncio.to_thread(self.repository.push, "origin", branch)
            except GitOperationError as e:
                result.warnings.append(str(e))

        # failures found during validation are already reported
        for entry, _ in candidates.values():
            if entry.status is ChannelStatus.FAILED:
                result.errors.append(f"{entry.channel_name}: {entry.error}")

        result.success = all(c.ok for c in result.channel_results)
        state = PromotionState.APPLIED if result.success else PromotionState.FAILED
        if gate_result.record is not None:
            outcome = ApprovalOutcome.APPLIED if result.success else ApprovalOutcome.FAILED
            await asyncio.to_thread(self.gate.store.set_outcome, gate_result.record.id, outcome)
        self._transition(result, state, log)

    def _branch(self, environment: str) -> str | None:
        env = self.config.get_environment(environment)
        if env is None or not env.branch:
            return None
        return env.branch

    @staticmethod
    def _transition(result: PromotionResult, state: PromotionState, log) -> None:
        result.transition(state)
        log.info("promotion_state", state=state.value, channels=len(result.channel_results))


def _read_existing(store: ChannelTreeStore, channel_dir: str) -> dict[str, str]:
    if not store.exists(channel_dir):
        return {}
    return store.read_channel(channel_dir)


def _failed_entry(store: ChannelTreeStore, channel_dir: str, error: Exception) -> ChannelPromotion:
    meta = store.read_metadata(channel_dir)
    logger.warning("channel_unreadable", channel_dir=channel_dir, error=str(error))
    return ChannelPromotion(
        channel_id=str(meta.get("id", "") or ""),
        channel_name=str(meta.get("name", "") or channel_dir),
        channel_dir=channel_dir,
        status=ChannelStatus.FAILED,
        error=str(error),
    )
