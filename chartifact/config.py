"""Repository configuration.

Each artifact repository may carry a ``.chartifact.yaml`` at its root
describing the engine that produced the exports, the ordered list of
deployment environments (promotion order) and a few batch defaults::

    engine:
      type: java
      version: "3.9.1"
    environments:
      - name: dev
      - name: staging
        requires_approval: false
      - name: prod
        tree: releases/prod
    policy: promotion-policy.yaml
    concurrency: 4
    mask_secrets: true

A missing file yields the default configuration.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

import yaml

from chartifact.errors import ConfigurationMissingError

CONFIG_FILENAME = ".chartifact.yaml"
DEFAULT_ENVIRONMENTS = ("dev", "staging", "prod")

ENV_REPO = "CHARTIFACT_REPO"
ENV_LOG_LEVEL = "CHARTIFACT_LOG_LEVEL"


@dataclass
class EngineInfo:
    """The integration engine a tree was exported from or is deployed to."""

    type: str = "java"
    version: str = ""


@dataclass
class EnvironmentConfig:
    """One deployment environment in promotion order."""

    name: str
    tree: str = ""
    branch: str = ""
    requires_approval: bool = True
    engine: EngineInfo | None = None


@dataclass
class RepositoryConfig:
    engine: EngineInfo = field(default_factory=EngineInfo)
    environments: list[EnvironmentConfig] = field(default_factory=list)
    policy: str = ""
    concurrency: int = 4
    mask_secrets: bool = True

    def __post_init__(self) -> None:
        if not self.environments:
            self.environments = _default_environments()

    @property
    def environment_names(self) -> list[str]:
        return [e.name for e in self.environments]

    def get_environment(self, name: str) -> EnvironmentConfig | None:
        for env in self.environments:
            if env.name == name:
                return env
        return None

    def environment_index(self, name: str) -> int:
        """Position of ``name`` in promotion order, or -1 when unknown."""
        for i, env in enumerate(self.environments):
            if env.name == name:
                return i
        return -1

    def engine_for(self, name: str) -> EngineInfo:
        env = self.get_environment(name)
        if env is not None and env.engine is not None:
            return env.engine
        return self.engine


@dataclass(frozen=True)
class ProcessSettings:
    """Process-level settings read from the hosting environment (CLI only)."""

    repo: str = "."
    log_level: str = "INFO"

    @classmethod
    def from_environ(cls, environ: Mapping[str, str] | None = None) -> "ProcessSettings":
        env = os.environ if environ is None else environ
        return cls(
            repo=env.get(ENV_REPO, ".") or ".",
            log_level=(env.get(ENV_LOG_LEVEL, "INFO") or "INFO").upper(),
        )


def _default_environments() -> list[EnvironmentConfig]:
    return _finalize_environments([EnvironmentConfig(name=n) for n in DEFAULT_ENVIRONMENTS], {})


def _finalize_environments(
    envs: list[EnvironmentConfig], raw: dict[str, dict]
) -> list[EnvironmentConfig]:
    """Fill in per-position defaults for tree location and approval."""
    for i, env in enumerate(envs):
        data = raw.get(env.name, {})
        if "tree" not in data:
            env.tree = "" if i == 0 else f"trees/{env.name}"
        if "requires_approval" not in data:
            env.requires_approval = i != 0
    return envs


def _parse_engine(data: object) -> EngineInfo | None:
    if not isinstance(data, dict):
        return None
    return EngineInfo(
        type=str(data.get("type", "java")),
        version=str(data.get("version", "") or ""),
    )


def parse_config(data: dict) -> RepositoryConfig:
    """Build a :class:`RepositoryConfig` from an already-parsed mapping."""
    envs: list[EnvironmentConfig] = []
    raw: dict[str, dict] = {}
    for entry in data.get("environments") or []:
        if isinstance(entry, str):
            entry = {"name": entry}
        name = str(entry["name"])
        raw[name] = entry
        envs.append(
            EnvironmentConfig(
                name=name,
                tree=str(entry.get("tree", "") or "").strip("/"),
                branch=str(entry.get("branch", "") or ""),
                requires_approval=bool(entry.get("requires_approval", True)),
                engine=_parse_engine(entry.get("engine")),
            )
        )

    return RepositoryConfig(
        engine=_parse_engine(data.get("engine")) or EngineInfo(),
        environments=_finalize_environments(envs, raw),
        policy=str(data.get("policy", "") or ""),
        concurrency=max(1, int(data.get("concurrency", 4))),
        mask_secrets=bool(data.get("mask_secrets", True)),
    )


def read_config(repo_path: str | Path) -> RepositoryConfig:
    """Load ``.chartifact.yaml``.

    Raises:
        ConfigurationMissingError: the file does not exist.
    """
    path = Path(repo_path) / CONFIG_FILENAME
    if not path.is_file():
        raise ConfigurationMissingError(str(path))
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return parse_config(data)


def load_config(repo_path: str | Path) -> RepositoryConfig:
    """Load ``.chartifact.yaml``, falling back to defaults when absent."""
    try:
        return read_config(repo_path)
    except ConfigurationMissingError:
        return RepositoryConfig()


def dump_config(config: RepositoryConfig) -> str:
    """Serialize a configuration back to YAML."""
    envs = []
    for env in config.environments:
        entry: dict = {"name": env.name, "tree": env.tree, "requires_approval": env.requires_approval}
        if env.branch:
            entry["branch"] = env.branch
        if env.engine is not None:
            entry["engine"] = {"type": env.engine.type, "version": env.engine.version}
        envs.append(entry)
    data: dict = {
        "engine": {"type": config.engine.type, "version": config.engine.version},
        "environments": envs,
        "concurrency": config.concurrency,
        "mask_secrets": config.mask_secrets,
    }
    if config.policy:
        data["policy"] = config.policy
    return yaml.safe_dump(data, sort_keys=False)
