"""Data models for the decomposed form of a channel document.

A channel is split into independently editable parts: metadata, one source
connector, an ordered list of destination connectors, and the channel-level
scripts. The full parsed document travels alongside as ``raw_tree`` so that
anything not modelled here survives a round trip untouched.
"""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator


class StepListKind(Enum):
    """The three step lists a connector can carry."""

    TRANSFORMER = "transformer"
    RESPONSE_TRANSFORMER = "response-transformer"
    FILTER = "filter"

    @property
    def element_tag(self) -> str:
        return _STEP_LIST_TAGS[self]

    @property
    def step_prefix(self) -> str:
        return "rule" if self is StepListKind.FILTER else "step"


_STEP_LIST_TAGS = {
    StepListKind.TRANSFORMER: "transformer",
    StepListKind.RESPONSE_TRANSFORMER: "responseTransformer",
    StepListKind.FILTER: "filter",
}


@dataclass
class Step:
    """One transformer step or filter rule.

    ``kind`` is the element tag the document uses for the step's
    implementation (for example ``com.mirth.connect.plugins.javascriptstep.JavaScriptStep``).
    """

    name: str
    sequence_number: int
    enabled: bool = True
    body: str = ""
    kind: str = ""
    kind_version: str | None = None
    operator: str | None = None


@dataclass
class StepList:
    steps: list[Step] = field(default_factory=list)
    version: str | None = None
    inbound_data_type: str | None = None
    outbound_data_type: str | None = None


@dataclass
class ConnectorFiles:
    """A source or destination connector."""

    name: str
    meta_data_id: int = 0
    transport_kind: str = ""
    mode: str = ""
    enabled: bool = True
    wait_for_previous: bool | None = None
    properties_kind: str = ""
    properties_version: str | None = None
    properties: dict[str, Any] = field(default_factory=dict)
    transformer: StepList | None = None
    response_transformer: StepList | None = None
    filter: StepList | None = None
    dir_name: str = ""

    def step_list(self, kind: StepListKind) -> StepList | None:
        if kind is StepListKind.TRANSFORMER:
            return self.transformer
        if kind is StepListKind.RESPONSE_TRANSFORMER:
            return self.response_transformer
        return self.filter

    def set_step_list(self, kind: StepListKind, value: StepList | None) -> None:
        if kind is StepListKind.TRANSFORMER:
            self.transformer = value
        elif kind is StepListKind.RESPONSE_TRANSFORMER:
            self.response_transformer = value
        else:
            self.filter = value


@dataclass
class ArtifactMetadata:
    id: str
    name: str
    revision: int = 1
    version: str = ""
    description: str | None = None
    enabled: bool | None = None
    next_meta_data_id: int | None = None


@dataclass
class ChannelScripts:
    deploy: str | None = None
    undeploy: str | None = None
    preprocess: str | None = None
    postprocess: str | None = None

    def items(self) -> list[tuple[str, str | None]]:
        return [
            ("deploy", self.deploy),
            ("undeploy", self.undeploy),
            ("preprocess", self.preprocess),
            ("postprocess", self.postprocess),
        ]


@dataclass
class DecomposedArtifact:
    """Structured, editable form of one channel document."""

    metadata: ArtifactMetadata
    source: ConnectorFiles
    destinations: list[ConnectorFiles] = field(default_factory=list)
    scripts: ChannelScripts = field(default_factory=ChannelScripts)
    raw_tree: ET.Element | None = None
    prolog: str | None = None

    @property
    def channel_dir(self) -> str:
        return sanitize_name(self.metadata.name or self.metadata.id)

    def connectors(self) -> Iterator[tuple[str, ConnectorFiles]]:
        """Yield ``(relative path, connector)`` for the source then each destination."""
        yield "source", self.source
        for dest in self.destinations:
            yield f"destinations/{dest.dir_name}", dest


@dataclass
class FileTreeEntry:
    """One file of the exported tree, relative to the channel directory."""

    path: str
    content: str
    type: str  # yaml | js | xml


def sanitize_name(name: str) -> str:
    """Lower-case ``name`` and collapse every run of non-alphanumerics to ``-``."""
    cleaned = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return cleaned or "unnamed"


def assign_dir_names(destinations: list[ConnectorFiles]) -> None:
    """Give each destination a unique directory name, suffixing duplicates.

    A suffixed name may itself be another destination's name ("X", "X",
    "X 1"), so suffixes keep growing until the name is unused.
    """
    used: set[str] = set()
    for dest in destinations:
        base = sanitize_name(dest.name)
        candidate, count = base, 0
        while candidate in used:
            count += 1
            candidate = f"{base}-{count}"
        used.add(candidate)
        dest.dir_name = candidate
