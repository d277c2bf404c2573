"""Heuristic detection and masking of credentials in connector properties."""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass
from typing import Any, Iterator

import structlog

from chartifact.artifact.models import DecomposedArtifact

logger = structlog.get_logger(__name__)

SENSITIVE_KEY_RE = re.compile(
    r"(password|passwd|pwd|secret|token|api[_-]?key|credential|private[_-]?key"
    r"|passphrase|access[_-]?key|auth[_-]?key)",
    re.IGNORECASE,
)
CREDENTIAL_URL_RE = re.compile(r"[a-z][a-z0-9+.-]*://[^/\s:@]+:[^/\s@]+@", re.IGNORECASE)
_BOOLEAN_VALUES = {"true", "false"}


@dataclass(frozen=True)
class SensitiveField:
    """A property value that looks like a credential."""

    path: str  # e.g. "destinations/send-to-lab.properties.password"
    key: str
    reason: str  # key | value


class SensitiveDataDetector:
    """Flags credential-shaped connector properties.

    Values that are already variable tokens, empty values and booleans are
    never flagged, so masking is idempotent.
    """

    def detect(self, artifact: DecomposedArtifact) -> list[SensitiveField]:
        found = []
        for base, connector in artifact.connectors():
            for path, key, value in _walk(connector.properties, f"{base}.properties"):
                reason = self._classify(key, value)
                if reason:
                    found.append(SensitiveField(path=path, key=key, reason=reason))
        return found

    def mask(
        self, artifact: DecomposedArtifact, channel_name: str | None = None
    ) -> tuple[DecomposedArtifact, list[SensitiveField]]:
        """Return a copy with every flagged value replaced by a variable token.

        The token is ``${<CHANNEL>_<KEY>}`` so the value can be supplied at
        deploy time, normally from the process environment.
        """
        masked = copy.deepcopy(artifact)
        prefix = env_name(channel_name or artifact.metadata.name)
        fields: list[SensitiveField] = []
        for base, connector in masked.connectors():
            connector.properties = self._mask_value(
                connector.properties, f"{base}.properties", "", prefix, fields
            )
        if fields:
            logger.info("secrets_masked", channel=artifact.metadata.name, count=len(fields))
        return masked, fields

    def keep_tokens(self, source: DecomposedArtifact, bound: DecomposedArtifact) -> DecomposedArtifact:
        """Copy of ``bound`` in which credential properties keep ``source``'s tokens.

        ``bound`` must be ``source`` with variables resolved, so both property
        bags have the same shape. A leaf keeps its token when its key looks
        like a credential or its resolved value is a URL with credentials.
        """
        kept = copy.deepcopy(bound)
        pairs = zip((c for _, c in source.connectors()), (c for _, c in kept.connectors()))
        for src, dst in pairs:
            dst.properties = _keep_tokens(src.properties, dst.properties, "")
        return kept

    def _classify(self, key: str, value: str) -> str:
        stripped = value.strip()
        if not stripped or "${" in stripped or stripped.lower() in _BOOLEAN_VALUES:
            return ""
        if SENSITIVE_KEY_RE.search(key):
            return "key"
        if CREDENTIAL_URL_RE.search(stripped):
            return "value"
        return ""

    def _mask_value(self, value: Any, path: str, key: str, prefix: str, fields: list[SensitiveField]) -> Any:
        if isinstance(value, dict):
            return {
                k: self._mask_value(v, f"{path}.{k}", k, prefix, fields) for k, v in value.items()
            }
        if isinstance(value, list):
            return [
                self._mask_value(v, f"{path}.{i}", key, prefix, fields) for i, v in enumerate(value)
            ]
        if isinstance(value, str):
            reason = self._classify(key, value)
            if reason:
                fields.append(SensitiveField(path=path, key=key, reason=reason))
                return "${" + f"{prefix}_{env_name(key)}" + "}"
        return value


def _walk(value: Any, path: str, key: str = "") -> Iterator[tuple[str, str, str]]:
    if isinstance(value, dict):
        for k, v in value.items():
            yield from _walk(v, f"{path}.{k}", k)
    elif isinstance(value, list):
        for i, v in enumerate(value):
            yield from _walk(v, f"{path}.{i}", key)
    elif isinstance(value, str):
        yield path, key, value


def env_name(text: str) -> str:
    """Upper-case ``text`` with every run of non-alphanumerics turned into ``_``."""
    return re.sub(r"[^A-Za-z0-9]+", "_", text).strip("_").upper() or "CHANNEL"


def _keep_tokens(source: Any, bound: Any, key: str) -> Any:
    if isinstance(bound, dict) and isinstance(source, dict):
        return {k: _keep_tokens(source.get(k), v, k) for k, v in bound.items()}
    if isinstance(bound, list) and isinstance(source, list) and len(source) == len(bound):
        return [_keep_tokens(s, b, key) for s, b in zip(source, bound)]
    if isinstance(source, str) and isinstance(bound, str) and "${" in source:
        if SENSITIVE_KEY_RE.search(key) or CREDENTIAL_URL_RE.search(bound):
            return source
    return bound
