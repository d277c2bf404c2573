"""Break a channel document into its structured model and file tree.

The file tree is designed for review: scripts become ``.js`` files with a
small comment header, configuration becomes YAML, and each destination gets
its own directory. ``_raw.xml`` keeps the assembled backbone so that the tree
can be turned back into a complete document.
"""

from __future__ import annotations

import re
from pathlib import PurePosixPath
from typing import Any, Mapping

import structlog
import yaml

from chartifact.artifact.assembler import assemble
from chartifact.artifact.models import (
    ArtifactMetadata,
    ChannelScripts,
    ConnectorFiles,
    DecomposedArtifact,
    FileTreeEntry,
    Step,
    StepList,
    StepListKind,
    assign_dir_names,
    sanitize_name,
)
from chartifact.artifact.xmltree import (
    child_text,
    elements,
    parse_document,
    properties_to_dict,
)
from chartifact.errors import MalformedArtifactError

logger = structlog.get_logger(__name__)

CHANNEL_FILE = "channel.yaml"
RAW_FILE = "_raw.xml"
CONNECTOR_FILE = "connector.yaml"

SCRIPT_TAGS = {
    "deploy": "deployScript",
    "undeploy": "undeployScript",
    "preprocess": "preprocessingScript",
    "postprocess": "postprocessingScript",
}

_HEADER_RE = re.compile(r"^// @([a-z-]+)(?: (.*))?$")
_DEFAULT_SCRIPT_LINES = {"", "return;", "return message;"}


def decompose(xml: str) -> DecomposedArtifact:
    """Parse a channel document into a :class:`DecomposedArtifact`.

    Raises:
        MalformedArtifactError: the document is not a channel.
    """
    root, prolog = parse_document(xml)

    source_el = root.find("sourceConnector")
    if source_el is None:
        raise MalformedArtifactError("Invalid channel XML: missing <sourceConnector>")

    destinations: list[ConnectorFiles] = []
    container = root.find("destinationConnectors")
    if container is not None:
        for conn in elements(container):
            if conn.tag == "connector":
                destinations.append(_extract_connector(conn))
    assign_dir_names(destinations)

    scripts = ChannelScripts()
    for attr, tag in SCRIPT_TAGS.items():
        setattr(scripts, attr, child_text(root, tag))

    return DecomposedArtifact(
        metadata=_extract_metadata(root),
        source=_extract_connector(source_el),
        destinations=destinations,
        scripts=scripts,
        raw_tree=root,
        prolog=prolog,
    )


def _extract_metadata(root) -> ArtifactMetadata:
    enabled = child_text(root, "enabled")
    next_id = child_text(root, "nextMetaDataId")
    return ArtifactMetadata(
        id=child_text(root, "id") or "",
        name=child_text(root, "name") or "",
        revision=_to_int(child_text(root, "revision"), 1),
        version=root.get("version", ""),
        description=child_text(root, "description"),
        enabled=None if enabled is None else enabled.strip() != "false",
        next_meta_data_id=None if next_id is None else _to_int(next_id, 0),
    )


def _extract_connector(el) -> ConnectorFiles:
    props_el = el.find("properties")
    wait = child_text(el, "waitForPrevious")
    return ConnectorFiles(
        name=child_text(el, "name") or "",
        meta_data_id=_to_int(child_text(el, "metaDataId"), 0),
        transport_kind=child_text(el, "transportName") or "",
        mode=child_text(el, "mode") or "",
        enabled=(child_text(el, "enabled") or "").strip() != "false",
        wait_for_previous=None if wait is None else wait.strip() == "true",
        properties_kind="" if props_el is None else props_el.get("class", ""),
        properties_version=None if props_el is None else props_el.get("version"),
        properties={} if props_el is None else properties_to_dict(props_el),
        transformer=_extract_step_list(el.find("transformer")),
        response_transformer=_extract_step_list(el.find("responseTransformer")),
        filter=_extract_step_list(el.find("filter")),
    )


def _extract_step_list(el) -> StepList | None:
    if el is None:
        return None

    steps: list[Step] = []
    container = el.find("elements")
    if container is not None:
        for item in elements(container):
            steps.append(
                Step(
                    name=child_text(item, "name") or "",
                    sequence_number=_to_int(child_text(item, "sequenceNumber"), 0),
                    enabled=(child_text(item, "enabled") or "").strip() != "false",
                    body=child_text(item, "script") or "",
                    kind=item.tag,
                    kind_version=item.get("version"),
                    operator=child_text(item, "operator"),
                )
            )
    steps.sort(key=lambda s: s.sequence_number)

    return StepList(
        steps=steps,
        version=el.get("version"),
        inbound_data_type=child_text(el, "inboundDataType"),
        outbound_data_type=child_text(el, "outboundDataType"),
    )


def _to_int(value: str | None, default: int) -> int:
    try:
        return int((value or "").strip())
    except ValueError:
        return default


# ---------------------------------------------------------------------------
# File tree
# ---------------------------------------------------------------------------


def _dump(data: Any) -> str:
    return yaml.safe_dump(data, sort_keys=False, allow_unicode=True, width=10**9)


def is_default_script(script: str | None) -> bool:
    """True for empty scripts and the stock engine templates (comments plus a bare return)."""
    if script is None:
        return True
    lines = [line.strip() for line in script.splitlines()]
    return all(line in _DEFAULT_SCRIPT_LINES or line.startswith("//") for line in lines)


def to_file_tree(artifact: DecomposedArtifact) -> list[FileTreeEntry]:
    """Render an artifact as files relative to its channel directory."""
    meta = artifact.metadata
    channel: dict[str, Any] = {
        "id": meta.id,
        "name": meta.name,
        "revision": meta.revision,
        "version": meta.version,
    }
    if meta.description:
        channel["description"] = meta.description
    if meta.enabled is not None:
        channel["enabled"] = meta.enabled
    if meta.next_meta_data_id is not None:
        channel["next_meta_data_id"] = meta.next_meta_data_id
    channel["destinations"] = [d.dir_name for d in artifact.destinations]

    files = [FileTreeEntry(CHANNEL_FILE, _dump(channel), "yaml")]
    for base, connector in artifact.connectors():
        files.extend(_connector_files(base, connector))

    if artifact.raw_tree is not None:
        files.append(FileTreeEntry(RAW_FILE, assemble(artifact), "xml"))

    for name, body in artifact.scripts.items():
        if body is not None and not is_default_script(body):
            files.append(FileTreeEntry(f"scripts/{name}.js", body, "js"))
    return files


def _connector_files(base: str, connector: ConnectorFiles) -> list[FileTreeEntry]:
    data: dict[str, Any] = {
        "name": connector.name,
        "meta_data_id": connector.meta_data_id,
        "transport_kind": connector.transport_kind,
        "mode": connector.mode,
        "enabled": connector.enabled,
        "properties_kind": connector.properties_kind,
    }
    if connector.properties_version:
        data["properties_version"] = connector.properties_version
    if connector.wait_for_previous is not None:
        data["wait_for_previous"] = connector.wait_for_previous
    data["properties"] = connector.properties

    files = [FileTreeEntry(f"{base}/{CONNECTOR_FILE}", _dump(data), "yaml")]
    for kind in StepListKind:
        step_list = connector.step_list(kind)
        if step_list is not None:
            files.extend(_step_list_files(base, kind, step_list))
    return files


def _step_list_files(base: str, kind: StepListKind, step_list: StepList) -> list[FileTreeEntry]:
    meta: dict[str, Any] = {}
    if step_list.version:
        meta["version"] = step_list.version
    if step_list.inbound_data_type is not None:
        meta["inbound_data_type"] = step_list.inbound_data_type
    if step_list.outbound_data_type is not None:
        meta["outbound_data_type"] = step_list.outbound_data_type

    files = [FileTreeEntry(f"{base}/{kind.value}.yaml", _dump(meta), "yaml")]
    for step in step_list.steps:
        filename = f"{kind.step_prefix}-{step.sequence_number}-{sanitize_name(step.name)}.js"
        files.append(
            FileTreeEntry(f"{base}/{kind.value}/{filename}", step_header(step) + step.body, "js")
        )
    return files


def step_header(step: Step) -> str:
    lines = [
        f"// @name {step.name}",
        f"// @sequence {step.sequence_number}",
        f"// @enabled {'true' if step.enabled else 'false'}",
        f"// @kind {step.kind}",
    ]
    if step.kind_version:
        lines.append(f"// @kind-version {step.kind_version}")
    if step.operator is not None:
        lines.append(f"// @operator {step.operator}")
    return "\n".join(lines) + "\n\n"


def parse_step_file(content: str) -> Step:
    """Read a step file written by :func:`to_file_tree` back into a :class:`Step`."""
    header: dict[str, str] = {}
    lines = content.split("\n")
    i = 0
    while i < len(lines):
        match = _HEADER_RE.match(lines[i])
        if not match:
            break
        header[match.group(1)] = match.group(2) or ""
        i += 1
    if i < len(lines) and lines[i] == "" and header:
        i += 1
    body = "\n".join(lines[i:])

    return Step(
        name=header.get("name", ""),
        sequence_number=_to_int(header.get("sequence"), 0),
        enabled=header.get("enabled", "true") != "false",
        body=body,
        kind=header.get("kind", ""),
        kind_version=header.get("kind-version") or None,
        operator=header.get("operator"),
    )


def from_file_tree(files: Mapping[str, str]) -> DecomposedArtifact:
    """Rebuild an artifact from channel-relative files.

    ``_raw.xml`` supplies the backbone; every modelled file that is present
    overrides what the backbone holds.

    Raises:
        MalformedArtifactError: ``_raw.xml`` is missing or not a channel.
    """
    raw = files.get(RAW_FILE)
    if raw is None:
        raise MalformedArtifactError(f"Artifact tree has no {RAW_FILE} backbone")
    artifact = decompose(raw)

    channel = _load_yaml(files, CHANNEL_FILE)
    if channel:
        _overlay_metadata(artifact.metadata, channel)

    _overlay_connector(artifact.source, "source", files)

    order = channel.get("destinations") if channel else None
    if isinstance(order, list):
        by_dir = {d.dir_name: d for d in artifact.destinations}
        rebuilt: list[ConnectorFiles] = []
        for dir_name in order:
            dest = by_dir.get(str(dir_name))
            if dest is None:
                dest = ConnectorFiles(name=str(dir_name), dir_name=str(dir_name))
            rebuilt.append(dest)
        artifact.destinations = rebuilt
    for dest in artifact.destinations:
        _overlay_connector(dest, f"destinations/{dest.dir_name}", files)

    for name, _ in artifact.scripts.items():
        body = files.get(f"scripts/{name}.js")
        if body is not None:
            setattr(artifact.scripts, name, body)
    return artifact


def _load_yaml(files: Mapping[str, str], path: str) -> dict[str, Any]:
    text = files.get(path)
    if text is None:
        return {}
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise MalformedArtifactError(f"{path}: {e}") from e
    return data if isinstance(data, dict) else {}


def _overlay_metadata(meta: ArtifactMetadata, data: dict[str, Any]) -> None:
    meta.id = str(data.get("id", meta.id))
    meta.name = str(data.get("name", meta.name))
    meta.revision = int(data.get("revision", meta.revision))
    meta.version = str(data.get("version", meta.version) or "")
    if "description" in data:
        meta.description = str(data["description"])
    if "enabled" in data:
        meta.enabled = bool(data["enabled"])
    if "next_meta_data_id" in data:
        meta.next_meta_data_id = int(data["next_meta_data_id"])


def _overlay_connector(connector: ConnectorFiles, base: str, files: Mapping[str, str]) -> None:
    data = _load_yaml(files, f"{base}/{CONNECTOR_FILE}")
    if data:
        connector.name = str(data.get("name", connector.name))
        connector.meta_data_id = int(data.get("meta_data_id", connector.meta_data_id))
        connector.transport_kind = str(data.get("transport_kind", connector.transport_kind))
        connector.mode = str(data.get("mode", connector.mode))
        connector.enabled = bool(data.get("enabled", connector.enabled))
        if "wait_for_previous" in data:
            connector.wait_for_previous = bool(data["wait_for_previous"])
        connector.properties_kind = str(data.get("properties_kind", connector.properties_kind))
        if "properties_version" in data:
            connector.properties_version = str(data["properties_version"])
        if isinstance(data.get("properties"), dict):
            connector.properties = data["properties"]

    for kind in StepListKind:
        meta_path = f"{base}/{kind.value}.yaml"
        if meta_path not in files:
            continue
        meta = _load_yaml(files, meta_path)
        current = connector.step_list(kind) or StepList()
        prefix = f"{base}/{kind.value}/"
        steps = [
            parse_step_file(content)
            for path, content in sorted(files.items())
            if path.startswith(prefix) and PurePosixPath(path).suffix == ".js"
        ]
        steps.sort(key=lambda s: s.sequence_number)
        connector.set_step_list(
            kind,
            StepList(
                steps=steps,
                version=meta.get("version", current.version),
                inbound_data_type=meta.get("inbound_data_type", current.inbound_data_type),
                outbound_data_type=meta.get("outbound_data_type", current.outbound_data_type),
            ),
        )
    logger.debug("connector_overlaid", connector=connector.name, base=base)
