"""Exception taxonomy for chartifact.

Recoverable conditions (missing files) and per-entry failures (malformed
documents) are distinguished from hard resolution errors (cycles, runaway
nesting) that always abort the operation that hit them.
"""

from __future__ import annotations


class ChartifactError(Exception):
    """Base class for every error raised by chartifact."""


class ConfigurationMissingError(ChartifactError):
    """A configuration file or artifact path does not exist.

    Loaders treat this as an empty result; it only surfaces when the caller
    asked for something specific that is absent.
    """

    def __init__(self, path: str, message: str = ""):
        self.path = path
        super().__init__(message or f"Not found: {path}")


class ChannelNotFoundError(ConfigurationMissingError):
    """A channel is not present in the artifact tree."""

    def __init__(self, channel: str, tree: str = ""):
        self.channel = channel
        location = f" (tree '{tree}')" if tree else ""
        super().__init__(channel, f"Channel '{channel}' not found in artifact repo{location}")


class MalformedArtifactError(ChartifactError, ValueError):
    """A document cannot be decomposed: the expected root container is missing."""


class VariableResolutionError(ChartifactError):
    """Base class for variable resolution failures."""


class UnresolvedVariableError(VariableResolutionError):
    """Strict mode: one or more variables had no value and no default."""

    def __init__(self, names: list[str]):
        self.names = list(names)
        super().__init__(f"Unresolved variables in strict mode: {', '.join(self.names)}")


class CircularVariableReferenceError(VariableResolutionError):
    """A variable refers back to itself through a chain of references."""

    def __init__(self, chain: list[str]):
        self.chain = list(chain)
        super().__init__(f"Circular variable reference detected: {' -> '.join(self.chain)}")


class NestingDepthExceededError(VariableResolutionError):
    """Variable references nest deeper than the hard cap."""

    def __init__(self, max_depth: int):
        self.max_depth = max_depth
        super().__init__(
            f"Variable resolution exceeded maximum nesting depth ({max_depth})"
        )


class PromotionGateRejectedError(ChartifactError):
    """A promotion was refused by policy or is waiting for approval."""

    def __init__(self, reasons: list[str]):
        self.reasons = list(reasons)
        super().__init__("; ".join(self.reasons) or "Promotion rejected")


class StoreNotInitializedError(ChartifactError):
    """An operation needs the artifact repository but it was never initialized."""


class GitOperationError(ChartifactError):
    """A version-control command failed."""


class InvalidPromotionError(ChartifactError):
    """A promotion request fails validation: unknown or out-of-order environments, nothing selected."""
