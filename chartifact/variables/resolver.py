"""Deploy-time variable resolver.

Resolves ``${NAME}`` and ``${NAME:default}`` placeholders through a priority
chain (highest first):

1. the process environment snapshot injected at construction
2. ``environments/<env>.yaml`` (environment-specific overrides)
3. ``environments/base.yaml`` (shared defaults)
4. the inline default carried by the token itself
5. programmatic extra variables

Defaults may contain further tokens (``${URL:proto://${HOST}:${PORT}/db}``),
so tokens are located by walking the string and tracking brace depth rather
than with a regular expression. Resolution is a pure function of the loaded
state: references that loop are rejected with the full chain, and nesting is
capped at ``MAX_NESTING_DEPTH`` regardless of cycles.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

import structlog
import yaml

from chartifact.errors import (
    CircularVariableReferenceError,
    ConfigurationMissingError,
    NestingDepthExceededError,
    UnresolvedVariableError,
)

logger = structlog.get_logger(__name__)

MAX_NESTING_DEPTH = 10
ENVIRONMENTS_DIR = "environments"
BASE_FILE = "base.yaml"

_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class VariableSource(Enum):
    """Where a variable's winning value came from."""

    PROCESS = "process"
    ENVIRONMENT = "environment"
    BASE = "base"
    DEFAULT = "default"
    EXTRA = "extra"


@dataclass(frozen=True)
class ResolvedVariable:
    name: str
    value: str
    source: VariableSource


@dataclass
class ResolveResult:
    """Output of a resolution pass.

    ``resolved`` is a string for :meth:`VariableResolver.resolve` and a deep
    copy of the input for :meth:`VariableResolver.resolve_object`.
    """

    resolved: Any
    unresolved_vars: list[str] = field(default_factory=list)


class VariableResolver:
    """Resolves variable tokens against a fixed environment snapshot."""

    def __init__(
        self,
        process_env: Mapping[str, str] | None = None,
        extra_variables: Mapping[str, str] | None = None,
        strict: bool = False,
    ):
        self._process_env = MappingProxyType(dict(process_env or {}))
        self._extra_vars: dict[str, str] = dict(extra_variables or {})
        self._env_vars: dict[str, str] = {}
        self._base_vars: dict[str, str] = {}
        self.strict = strict
        self.environment: str | None = None

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load_environment(self, tree_path: str | Path, environment: str | None = None) -> None:
        """Load the shared defaults file, then the environment's override file.

        Missing files count as empty. Any previously loaded file values are
        replaced.
        """
        env_dir = Path(tree_path) / ENVIRONMENTS_DIR
        self._base_vars = await asyncio.to_thread(_load_optional, env_dir / BASE_FILE)
        self._env_vars = {}
        if environment:
            self._env_vars = await asyncio.to_thread(
                _load_optional, env_dir / f"{environment}.yaml"
            )
        self.environment = environment
        logger.debug(
            "environment_loaded",
            environment=environment,
            base_count=len(self._base_vars),
            env_count=len(self._env_vars),
        )

    def set_layers(
        self,
        base: Mapping[str, str] | None = None,
        environment: Mapping[str, str] | None = None,
    ) -> None:
        """Install file layers directly (already-parsed maps)."""
        self._base_vars = {k: _stringify(v) for k, v in (base or {}).items()}
        self._env_vars = {k: _stringify(v) for k, v in (environment or {}).items()}

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self, text: str) -> ResolveResult:
        """Resolve every token in ``text``.

        Unresolved names stay in the output verbatim and are listed in
        ``unresolved_vars``; in strict mode they raise instead.

        Raises:
            CircularVariableReferenceError: a reference loops.
            NestingDepthExceededError: references nest too deeply.
            UnresolvedVariableError: strict mode and a name had no value.
        """
        if not self.has_variables(text):
            return ResolveResult(resolved=text)

        unresolved: list[str] = []
        resolved = self._resolve_string(text, unresolved, [], 0)
        return self._finish(resolved, unresolved)

    def resolve_object(self, value: Any) -> ResolveResult:
        """Return a deep copy of ``value`` with every string leaf resolved."""
        unresolved: list[str] = []
        resolved = self._resolve_deep(value, unresolved)
        return self._finish(resolved, unresolved)

    def lookup(self, name: str) -> ResolvedVariable | None:
        """Raw (unexpanded) winning value for ``name`` from the explicit sources."""
        if name in self._process_env:
            return ResolvedVariable(name, self._process_env[name], VariableSource.PROCESS)
        if name in self._env_vars:
            return ResolvedVariable(name, self._env_vars[name], VariableSource.ENVIRONMENT)
        if name in self._base_vars:
            return ResolvedVariable(name, self._base_vars[name], VariableSource.BASE)
        if name in self._extra_vars:
            return ResolvedVariable(name, self._extra_vars[name], VariableSource.EXTRA)
        return None

    def get_variable_map(self) -> dict[str, ResolvedVariable]:
        """Every known name with its winning value and source (debug view).

        Process-environment entries only appear for names that some file or
        extra variable also declares; the snapshot is not dumped wholesale.
        """
        known = list(dict.fromkeys([*self._extra_vars, *self._base_vars, *self._env_vars]))
        result: dict[str, ResolvedVariable] = {}
        for name in known:
            hit = self.lookup(name)
            if hit is not None:
                result[name] = hit
        return result

    @staticmethod
    def has_variables(text: str) -> bool:
        return "${" in text

    @staticmethod
    def extract_variable_names(text: str) -> list[str]:
        """All valid variable names in ``text``, including ones nested in defaults."""
        names: list[str] = []
        for inner in _scan_tokens(text):
            if inner is None:
                continue
            name, default = _split_token(inner)
            if _NAME_RE.match(name):
                names.append(name)
            if default is not None:
                names.extend(VariableResolver.extract_variable_names(default))
        return list(dict.fromkeys(names))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _finish(self, resolved: Any, unresolved: list[str]) -> ResolveResult:
        names = list(dict.fromkeys(unresolved))
        if names:
            if self.strict:
                raise UnresolvedVariableError(names)
            logger.warning("unresolved_variables", names=names, environment=self.environment)
        return ResolveResult(resolved=resolved, unresolved_vars=names)

    def _resolve_deep(self, value: Any, unresolved: list[str]) -> Any:
        if isinstance(value, str):
            if not self.has_variables(value):
                return value
            return self._resolve_string(value, unresolved, [], 0)
        if isinstance(value, list):
            return [self._resolve_deep(v, unresolved) for v in value]
        if isinstance(value, tuple):
            return tuple(self._resolve_deep(v, unresolved) for v in value)
        if isinstance(value, dict):
            return {k: self._resolve_deep(v, unresolved) for k, v in value.items()}
        return value

    def _resolve_string(self, text: str, unresolved: list[str], stack: list[str], depth: int) -> str:
        if depth > MAX_NESTING_DEPTH:
            raise NestingDepthExceededError(MAX_NESTING_DEPTH)

        out: list[str] = []
        i = 0
        n = len(text)
        while i < n:
            if text.startswith("${", i):
                end, inner = _match_token(text, i)
                if inner is None:
                    # unterminated token: keep the remainder verbatim
                    out.append(text[i:])
                    break
                out.append(self._resolve_token(inner, unresolved, stack, depth))
                i = end
            else:
                out.append(text[i])
                i += 1
        return "".join(out)

    def _resolve_token(self, inner: str, unresolved: list[str], stack: list[str], depth: int) -> str:
        name, default = _split_token(inner)
        if not _NAME_RE.match(name):
            return "${" + inner + "}"

        if name in stack:
            raise CircularVariableReferenceError([*stack, name])

        value = self._lookup_file_chain(name)
        if value is not None:
            return self._expand(name, value, unresolved, stack, depth)

        if default is not None:
            return self._resolve_string(default, unresolved, stack, depth + 1)

        if name in self._extra_vars:
            return self._expand(name, self._extra_vars[name], unresolved, stack, depth)

        unresolved.append(name)
        return "${" + name + "}"

    def _expand(self, name: str, value: str, unresolved: list[str], stack: list[str], depth: int) -> str:
        stack.append(name)
        try:
            return self._resolve_string(value, unresolved, stack, depth + 1)
        finally:
            stack.pop()

    def _lookup_file_chain(self, name: str) -> str | None:
        if name in self._process_env:
            return self._process_env[name]
        if name in self._env_vars:
            return self._env_vars[name]
        return self._base_vars.get(name)


def _match_token(text: str, start: int) -> tuple[int, str | None]:
    """Find the brace that closes the token opened at ``start``.

    Returns the index just past the closing brace and the inner text, or
    ``(len(text), None)`` when the token is never closed.
    """
    i = start + 2
    depth = 1
    n = len(text)
    while i < n:
        if text.startswith("${", i):
            depth += 1
            i += 2
        elif text[i] == "}":
            depth -= 1
            if depth == 0:
                return i + 1, text[start + 2:i]
            i += 1
        else:
            i += 1
    return n, None


def _scan_tokens(text: str):
    i = 0
    while i < len(text):
        if text.startswith("${", i):
            end, inner = _match_token(text, i)
            yield inner
            i = end
        else:
            i += 1


def _split_token(inner: str) -> tuple[str, str | None]:
    name, sep, default = inner.partition(":")
    return name.strip(), (default if sep else None)


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _read_variable_file(path: Path) -> dict[str, str]:
    if not path.is_file():
        raise ConfigurationMissingError(str(path))
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        return {}
    return {str(k): _stringify(v) for k, v in data.items()}


def _load_optional(path: Path) -> dict[str, str]:
    try:
        return _read_variable_file(path)
    except ConfigurationMissingError:
        logger.debug("variable_file_missing", path=str(path))
        return {}
