"""Channel documents as decomposed, version-controllable artifacts."""

from chartifact.artifact.assembler import AssembleOptions, assemble, bind_variables
from chartifact.artifact.decomposer import decompose, from_file_tree, to_file_tree
from chartifact.artifact.models import (
    ArtifactMetadata,
    ChannelScripts,
    ConnectorFiles,
    DecomposedArtifact,
    FileTreeEntry,
    Step,
    StepList,
    sanitize_name,
)

__all__ = [
    "ArtifactMetadata",
    "AssembleOptions",
    "ChannelScripts",
    "ConnectorFiles",
    "DecomposedArtifact",
    "FileTreeEntry",
    "Step",
    "StepList",
    "assemble",
    "bind_variables",
    "decompose",
    "from_file_tree",
    "sanitize_name",
    "to_file_tree",
]
