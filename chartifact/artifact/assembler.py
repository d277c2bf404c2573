"""Reassemble a channel document from its decomposed model.

Assembly never re-templates text. It copies the retained ``raw_tree`` and
overwrites only the fields the model owns, so attribute order, unmodelled
elements and plugin-specific nesting come back exactly as they were exported.
"""

from __future__ import annotations

import copy
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Any, Mapping

import structlog

from chartifact.artifact.models import (
    ArtifactMetadata,
    ConnectorFiles,
    DecomposedArtifact,
    StepList,
    StepListKind,
)
from chartifact.artifact.xmltree import (
    elements,
    scalar_text,
    serialize,
    set_child_text,
    write_value,
)
from chartifact.variables.resolver import VariableResolver

logger = structlog.get_logger(__name__)

_TOKEN_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::([^}]*))?\}")

_SCRIPT_TAGS = {
    "deploy": "deployScript",
    "undeploy": "undeployScript",
    "preprocess": "preprocessingScript",
    "postprocess": "postprocessingScript",
}


@dataclass
class AssembleOptions:
    """Knobs for :func:`assemble`.

    ``variables`` enables single-pass substitution of property strings.
    ``group_steps_by_kind`` reproduces the legacy layout where steps are
    grouped by implementation kind before being flattened.
    """

    variables: Mapping[str, str] | None = None
    group_steps_by_kind: bool = False


def assemble(artifact: DecomposedArtifact, options: AssembleOptions | None = None) -> str:
    """Return the channel document for ``artifact``."""
    options = options or AssembleOptions()
    if artifact.raw_tree is None:
        root = ET.Element("channel")
        if artifact.metadata.version:
            root.set("version", artifact.metadata.version)
        for tag in ("id", "name", "revision"):
            ET.SubElement(root, tag)
        ET.SubElement(root, "sourceConnector")
    else:
        root = copy.deepcopy(artifact.raw_tree)

    _write_metadata(root, artifact.metadata)

    source_el = root.find("sourceConnector")
    if source_el is None:
        source_el = ET.SubElement(root, "sourceConnector")
    _write_connector(source_el, artifact.source, options)
    _write_destinations(root, artifact.destinations, options)

    for attr, tag in _SCRIPT_TAGS.items():
        body = getattr(artifact.scripts, attr)
        if body is not None:
            set_child_text(root, tag, body)

    logger.debug(
        "channel_assembled",
        channel=artifact.metadata.id,
        destinations=len(artifact.destinations),
    )
    return serialize(root, artifact.prolog)


def substitute_variables(text: str, variables: Mapping[str, str]) -> str:
    """Single-pass ``${NAME}`` / ``${NAME:default}`` replacement.

    Values are inserted as-is; tokens inside them are not expanded again.
    Names with neither a value nor a default stay untouched.
    """

    def _replace(match: re.Match) -> str:
        name, default = match.group(1), match.group(2)
        if name in variables:
            return variables[name]
        if default is not None:
            return default
        return match.group(0)

    return _TOKEN_RE.sub(_replace, text)


def _substitute_deep(value: Any, variables: Mapping[str, str]) -> Any:
    if isinstance(value, str):
        return substitute_variables(value, variables)
    if isinstance(value, list):
        return [_substitute_deep(v, variables) for v in value]
    if isinstance(value, dict):
        return {k: _substitute_deep(v, variables) for k, v in value.items()}
    return value


def bind_variables(artifact: DecomposedArtifact, resolver: VariableResolver) -> tuple[DecomposedArtifact, list[str]]:
    """Copy ``artifact`` with every connector property resolved through ``resolver``.

    Returns the bound copy and the names that stayed unresolved. In strict mode
    the resolver raises instead, after the whole artifact has been scanned.
    """
    bound = copy.deepcopy(artifact)
    connectors = [c for _, c in bound.connectors()]
    result = resolver.resolve_object([c.properties for c in connectors])
    for connector, props in zip(connectors, result.resolved):
        connector.properties = props
    return bound, result.unresolved_vars


# ---------------------------------------------------------------------------
# Writers
# ---------------------------------------------------------------------------


def _write_metadata(root: ET.Element, meta: ArtifactMetadata) -> None:
    # never introduce a field the original document did not have
    set_child_text(root, "id", meta.id, create=False)
    set_child_text(root, "name", meta.name, create=False)
    set_child_text(root, "revision", str(meta.revision), create=False)
    if meta.description is not None:
        set_child_text(root, "description", meta.description, create=False)
    if meta.enabled is not None:
        set_child_text(root, "enabled", scalar_text(meta.enabled), create=False)
    if meta.next_meta_data_id is not None:
        set_child_text(root, "nextMetaDataId", str(meta.next_meta_data_id), create=False)
    if meta.version and root.get("version") is not None:
        root.set("version", meta.version)


def _write_destinations(root: ET.Element, destinations: list[ConnectorFiles], options: AssembleOptions) -> None:
    """Write destinations into their original slots, in model order.

    A destination keeps the slot with its ``metaDataId``; otherwise it takes
    the next unclaimed slot, or a copy of the last one when none are left.
    """
    container = root.find("destinationConnectors")
    if container is None:
        if not destinations:
            return
        container = ET.SubElement(root, "destinationConnectors")

    slots = [c for c in elements(container) if c.tag == "connector"]
    inner_tail = slots[0].tail if slots else None
    last_tail = slots[-1].tail if slots else None
    template = slots[-1] if slots else None
    for slot in slots:
        container.remove(slot)

    by_id = {(s.findtext("metaDataId") or "").strip(): s for s in slots}
    chosen = [by_id.pop(str(dest.meta_data_id), None) for dest in destinations]
    claimed = {id(s) for s in chosen if s is not None}
    unclaimed = [s for s in slots if id(s) not in claimed]

    for i, dest in enumerate(destinations):
        el = chosen[i]
        if el is None:
            if unclaimed:
                el = unclaimed.pop(0)
            elif template is not None:
                el = copy.deepcopy(template)
            else:
                el = ET.Element("connector")
        el.tail = last_tail if i == len(destinations) - 1 else inner_tail
        container.append(el)
        _write_connector(el, dest, options)


def _write_connector(el: ET.Element, connector: ConnectorFiles, options: AssembleOptions) -> None:
    set_child_text(el, "name", connector.name)
    set_child_text(el, "metaDataId", str(connector.meta_data_id))
    set_child_text(el, "transportName", connector.transport_kind)
    set_child_text(el, "mode", connector.mode)
    set_child_text(el, "enabled", scalar_text(connector.enabled))
    if connector.wait_for_previous is not None:
        set_child_text(el, "waitForPrevious", scalar_text(connector.wait_for_previous))

    props_el = el.find("properties")
    if props_el is None:
        props_el = ET.SubElement(el, "properties")
    if connector.properties_kind:
        props_el.set("class", connector.properties_kind)
    if connector.properties_version:
        props_el.set("version", connector.properties_version)

    properties = connector.properties
    if options.variables is not None:
        properties = _substitute_deep(properties, options.variables)
    write_value(props_el, properties)

    for kind in StepListKind:
        step_list = connector.step_list(kind)
        if step_list is None:
            continue
        list_el = el.find(kind.element_tag)
        if list_el is None:
            list_el = ET.SubElement(el, kind.element_tag)
        _write_step_list(list_el, step_list, options.group_steps_by_kind)


def _write_step_list(el: ET.Element, step_list: StepList, group_by_kind: bool) -> None:
    if step_list.version:
        el.set("version", step_list.version)

    container = el.find("elements")
    if container is None:
        container = ET.Element("elements")
        el.insert(0, container)

    originals = elements(container)
    last_tail = originals[-1].tail if originals else None
    for item in originals:
        container.remove(item)

    steps = list(step_list.steps)
    if group_by_kind:
        order: dict[str, int] = {}
        for step in steps:
            order.setdefault(step.kind, len(order))
        steps.sort(key=lambda s: order[s.kind])

    for step in steps:
        item = _take_original(originals, step.kind, step.sequence_number)
        if item is None:
            item = ET.Element(step.kind or "step")
        if step.kind_version:
            item.set("version", step.kind_version)
        set_child_text(item, "name", step.name)
        set_child_text(item, "sequenceNumber", str(step.sequence_number))
        set_child_text(item, "enabled", scalar_text(step.enabled))
        set_child_text(item, "script", step.body)
        if step.operator is not None:
            set_child_text(item, "operator", step.operator)
        container.append(item)

    added = elements(container)
    if added and last_tail is not None:
        added[-1].tail = last_tail

    if step_list.inbound_data_type is not None:
        set_child_text(el, "inboundDataType", step_list.inbound_data_type)
    if step_list.outbound_data_type is not None:
        set_child_text(el, "outboundDataType", step_list.outbound_data_type)


def _take_original(pool: list[ET.Element], kind: str, sequence_number: int) -> ET.Element | None:
    """Pop the original element for a step: same kind and sequence first, else same kind."""
    same_kind = [e for e in pool if e.tag == kind]
    for candidate in same_kind:
        if (candidate.findtext("sequenceNumber") or "").strip() == str(sequence_number):
            pool.remove(candidate)
            return candidate
    if same_kind:
        pool.remove(same_kind[0])
        return same_kind[0]
    return None
