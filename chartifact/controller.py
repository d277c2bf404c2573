"""ArtifactController: every operation the command line (or any other front end) calls.

The controller owns no state beyond the repository path, the process
environment snapshot taken at construction, the approval store and an
optional deployer. Blocking work (file and git I/O) runs in worker threads;
decomposition, assembly and resolution stay synchronous.
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Awaitable, Callable, Mapping

import structlog

from chartifact.artifact.assembler import assemble, bind_variables
from chartifact.artifact.decomposer import decompose, from_file_tree, to_file_tree
from chartifact.artifact.dependencies import DependencyGraph
from chartifact.artifact.diff import ChannelDiff, DiffResult, new_channel_result
from chartifact.artifact.secrets import SensitiveDataDetector, SensitiveField
from chartifact.config import CONFIG_FILENAME, RepositoryConfig, dump_config, load_config
from chartifact.errors import (
    ChannelNotFoundError,
    ConfigurationMissingError,
    StoreNotInitializedError,
)
from chartifact.git.delta import (
    DEFAULT_FROM_REF,
    DEFAULT_TO_REF,
    DeltaChangeType,
    DeltaDetector,
    DeltaResult,
)
from chartifact.git.repository import GitRepository, is_repo
from chartifact.git.store import ChannelTreeStore
from chartifact.promotion.approvals import ApprovalRecord, ApprovalStatus, ApprovalStore
from chartifact.promotion.gate import PromotionGate
from chartifact.promotion.models import PromotionRequest, PromotionResult
from chartifact.promotion.pipeline import PromotionPipeline
from chartifact.promotion.policy import PolicySet, load_policy
from chartifact.utils.batch import ItemResult, run_bounded
from chartifact.variables.resolver import ResolvedVariable, VariableResolver

logger = structlog.get_logger(__name__)

# async deploy(channel_id, document)
Deployer = Callable[[str, str], Awaitable[None]]


@dataclass
class ExportResult:
    channel_id: str
    channel_name: str
    channel_dir: str
    files: list[str] = field(default_factory=list)
    masked: list[SensitiveField] = field(default_factory=list)
    commit_sha: str | None = None


@dataclass
class ImportResult:
    channel_id: str
    channel_name: str
    channel_dir: str
    document: str
    unresolved: list[str] = field(default_factory=list)


@dataclass
class ChannelDeployment:
    channel_id: str
    channel_dir: str
    deployed: bool = False
    unresolved: list[str] = field(default_factory=list)
    error: str = ""


@dataclass
class DeployDeltaResult:
    delta: DeltaResult
    deployments: list[ChannelDeployment] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(not d.error for d in self.deployments)


class ArtifactController:
    def __init__(
        self,
        repo_path: str | Path,
        process_env: Mapping[str, str] | None = None,
        approvals_dir: str | Path | None = None,
        deployer: Deployer | None = None,
    ):
        self.repo_path = Path(repo_path)
        # one immutable snapshot per controller; resolution never reads os.environ
        self.process_env = MappingProxyType(dict(os.environ if process_env is None else process_env))
        self.approvals = ApprovalStore(approvals_dir)
        self.deployer = deployer
        self.detector = SensitiveDataDetector()
        self._log = logger.bind(repo=str(self.repo_path))

    # ------------------------------------------------------------------
    # Repository
    # ------------------------------------------------------------------

    @property
    def is_initialized(self) -> bool:
        return is_repo(self.repo_path)

    def _repository(self) -> GitRepository:
        if not self.is_initialized:
            raise StoreNotInitializedError(
                f"No artifact repository at {self.repo_path}; run 'chartifact init' first"
            )
        return GitRepository(self.repo_path)

    def _config(self) -> RepositoryConfig:
        return load_config(self.repo_path)

    def _store(self, config: RepositoryConfig, environment: str | None = None) -> ChannelTreeStore:
        """The tree for ``environment``; exports and the default live in the first one."""
        env = config.get_environment(environment) if environment else config.environments[0]
        if env is None:
            raise ConfigurationMissingError(
                str(environment), f"Unknown environment '{environment}'"
            )
        return ChannelTreeStore(self.repo_path, env.tree)

    async def initialize(self, config: RepositoryConfig | None = None) -> RepositoryConfig:
        """Create the repository and its configuration file if they do not exist yet."""
        repository = await asyncio.to_thread(GitRepository.open_or_init, self.repo_path)
        config_path = self.repo_path / CONFIG_FILENAME
        if config_path.is_file():
            return self._config()

        config = config or RepositoryConfig()
        await asyncio.to_thread(repository.write_file, CONFIG_FILENAME, dump_config(config))
        await asyncio.to_thread(repository.commit, "Initialize chartifact repository")
        self._log.info("repository_initialized", environments=config.environment_names)
        return config

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    async def export_channel(
        self,
        document: str,
        mask_secrets: bool | None = None,
        commit: bool = True,
        message: str | None = None,
    ) -> ExportResult:
        """Decompose a live channel document and write it into the export tree."""
        repository = self._repository()
        config = self._config()
        result = await self._write_export(config, document, mask_secrets)
        if commit:
            result.commit_sha = await asyncio.to_thread(
                repository.commit, message or f"Export channel {result.channel_name}"
            )
        self._log.info("channel_exported", channel=result.channel_name, files=len(result.files))
        return result

    async def export_all(
        self,
        documents: list[str],
        mask_secrets: bool | None = None,
        message: str | None = None,
    ) -> list[ItemResult[str, ExportResult]]:
        """Export many documents; one failing document never blocks the rest.

        Everything that exported lands in one commit.
        """
        repository = self._repository()
        config = self._config()
        results = await run_bounded(
            documents,
            lambda doc: self._write_export(config, doc, mask_secrets),
            limit=config.concurrency,
        )
        exported = [r.value for r in results if r.ok]
        if exported:
            sha = await asyncio.to_thread(
                repository.commit, message or f"Export {len(exported)} channel(s)"
            )
            for item in exported:
                item.commit_sha = sha
        self._log.info("channels_exported", exported=len(exported), failed=len(results) - len(exported))
        return results

    async def _write_export(
        self, config: RepositoryConfig, document: str, mask_secrets: bool | None
    ) -> ExportResult:
        artifact = decompose(document)
        masked: list[SensitiveField] = []
        if config.mask_secrets if mask_secrets is None else mask_secrets:
            artifact, masked = self.detector.mask(artifact)
        store = self._store(config)
        files = await asyncio.to_thread(store.write_channel, artifact.channel_dir, to_file_tree(artifact))
        return ExportResult(
            channel_id=artifact.metadata.id,
            channel_name=artifact.metadata.name,
            channel_dir=artifact.channel_dir,
            files=files,
            masked=masked,
        )

    # ------------------------------------------------------------------
    # Import
    # ------------------------------------------------------------------

    async def _resolver(
        self,
        environment: str | None,
        extra_variables: Mapping[str, str] | None = None,
        strict: bool = False,
    ) -> VariableResolver:
        resolver = VariableResolver(self.process_env, extra_variables, strict=strict)
        await resolver.load_environment(self.repo_path, environment)
        return resolver

    async def import_channel(
        self,
        channel: str,
        environment: str | None = None,
        extra_variables: Mapping[str, str] | None = None,
        strict: bool = False,
    ) -> ImportResult:
        """Assemble a stored channel with ``environment``'s variables bound.

        Raises:
            ChannelNotFoundError: no channel matches ``channel``.
            UnresolvedVariableError: strict mode and a variable has no value.
        """
        self._repository()
        config = self._config()
        store = self._store(config, environment)
        resolver = await self._resolver(environment, extra_variables, strict)
        return await self._import_one(store, resolver, channel)

    async def import_all(
        self,
        environment: str | None = None,
        extra_variables: Mapping[str, str] | None = None,
        strict: bool = False,
    ) -> list[ItemResult[str, ImportResult]]:
        self._repository()
        config = self._config()
        store = self._store(config, environment)
        resolver = await self._resolver(environment, extra_variables, strict)
        channels = await asyncio.to_thread(store.list_channels)
        return await run_bounded(
            channels,
            lambda channel_dir: self._import_one(store, resolver, channel_dir),
            limit=config.concurrency,
        )

    async def _import_one(self, store: ChannelTreeStore, resolver: VariableResolver, channel: str) -> ImportResult:
        channel_dir = await asyncio.to_thread(store.find_channel, channel)
        files = await asyncio.to_thread(store.read_channel, channel_dir)
        artifact = from_file_tree(files)
        bound, unresolved = bind_variables(artifact, resolver)
        return ImportResult(
            channel_id=bound.metadata.id,
            channel_name=bound.metadata.name,
            channel_dir=channel_dir,
            document=assemble(bound),
            unresolved=unresolved,
        )

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    async def diff_channel(
        self, channel: str | None, live_document: str, environment: str | None = None
    ) -> DiffResult:
        """Structural drift between a live document and its stored artifact.

        The live side is masked the same way exports are, so credentials that
        were tokenised on export do not show up as drift.
        """
        self._repository()
        config = self._config()
        store = self._store(config, environment)
        live = decompose(live_document)
        if config.mask_secrets:
            live, _ = self.detector.mask(live)

        try:
            channel_dir = await asyncio.to_thread(store.find_channel, channel or live.metadata.id)
        except ChannelNotFoundError:
            return new_channel_result(live.metadata.name)
        stored = from_file_tree(await asyncio.to_thread(store.read_channel, channel_dir))
        return ChannelDiff().diff(stored, live)

    def detect_secrets(self, document: str) -> list[SensitiveField]:
        return self.detector.detect(decompose(document))

    async def get_dependency_graph(self, environment: str | None = None) -> DependencyGraph:
        self._repository()
        store = self._store(self._config(), environment)
        artifacts = []
        for channel_dir in await asyncio.to_thread(store.list_channels):
            files = await asyncio.to_thread(store.read_channel, channel_dir)
            artifacts.append(from_file_tree(files))
        return DependencyGraph.from_artifacts(artifacts)

    async def get_variable_map(
        self, environment: str | None = None, extra_variables: Mapping[str, str] | None = None
    ) -> dict[str, ResolvedVariable]:
        resolver = await self._resolver(environment, extra_variables)
        return resolver.get_variable_map()

    # ------------------------------------------------------------------
    # Promotion
    # ------------------------------------------------------------------

    def _policy(self, config: RepositoryConfig) -> PolicySet:
        if not config.policy:
            return PolicySet()
        try:
            return load_policy(self.repo_path / config.policy)
        except ConfigurationMissingError as e:
            self._log.warning("policy_missing", path=e.path)
            return PolicySet()

    async def promote(self, request: PromotionRequest) -> PromotionResult:
        repository = self._repository()
        config = self._config()
        gate = PromotionGate(self.approvals, config, self._policy(config))
        pipeline = PromotionPipeline(repository, config, gate, self.process_env)
        return await pipeline.promote(request)

    def get_promotion_status(self, approval_id: str | None = None) -> ApprovalRecord | list[ApprovalRecord] | None:
        """One approval record by id, or every pending request."""
        if approval_id:
            return self.approvals.get(approval_id)
        return self.approvals.list_records(status=ApprovalStatus.PENDING.value)

    # ------------------------------------------------------------------
    # Delta
    # ------------------------------------------------------------------

    async def detect_delta(
        self,
        from_ref: str = DEFAULT_FROM_REF,
        to_ref: str = DEFAULT_TO_REF,
        environment: str | None = None,
        include_cascades: bool = False,
    ) -> DeltaResult:
        repository = self._repository()
        store = self._store(self._config(), environment)
        detector = DeltaDetector(repository, store.tree)
        return await asyncio.to_thread(detector.detect, from_ref, to_ref, include_cascades)

    async def deploy_delta(
        self,
        from_ref: str = DEFAULT_FROM_REF,
        to_ref: str = DEFAULT_TO_REF,
        environment: str | None = None,
        include_cascades: bool = True,
        strict: bool = False,
    ) -> DeployDeltaResult:
        """Import only the channels changed between two revisions and deploy them.

        Channels deleted in the range are reported, not deployed. Without a
        deployer the channels are still assembled, which checks they import.
        """
        delta = await self.detect_delta(from_ref, to_ref, environment, include_cascades)
        config = self._config()
        store = self._store(config, environment)
        resolver = await self._resolver(environment, strict=strict)

        result = DeployDeltaResult(delta=delta)
        ids = {c.channel_dir: c.channel_id or "" for c in [*delta.changed_channels, *delta.cascaded_channels]}
        targets = []
        for change in delta.changed_channels:
            if change.change_type is DeltaChangeType.DELETED:
                result.deleted.append(change.channel_id or change.channel_dir)
            else:
                targets.append(change.channel_dir)
        targets.extend(c.channel_dir for c in delta.cascaded_channels)

        async def _deploy(channel_dir: str) -> ImportResult:
            imported = await self._import_one(store, resolver, channel_dir)
            if self.deployer is not None:
                await self.deployer(imported.channel_id, imported.document)
            return imported

        for item in await run_bounded(targets, _deploy, limit=config.concurrency):
            if item.ok:
                result.deployments.append(
                    ChannelDeployment(
                        channel_id=item.value.channel_id,
                        channel_dir=item.item,
                        deployed=self.deployer is not None,
                        unresolved=item.value.unresolved,
                    )
                )
            else:
                result.deployments.append(
                    ChannelDeployment(channel_id=ids.get(item.item, ""), channel_dir=item.item, error=item.error)
                )
        self._log.info(
            "delta_deployed",
            deployed=sum(1 for d in result.deployments if d.deployed),
            failed=sum(1 for d in result.deployments if d.error),
            deleted=len(result.deleted),
        )
        return result
