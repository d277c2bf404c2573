"""Deploy-time variable resolution."""

from chartifact.variables.resolver import (
    MAX_NESTING_DEPTH,
    ResolvedVariable,
    ResolveResult,
    VariableResolver,
    VariableSource,
)

__all__ = [
    "MAX_NESTING_DEPTH",
    "ResolvedVariable",
    "ResolveResult",
    "VariableResolver",
    "VariableSource",
]
