"""Order-preserving element tree helpers for channel documents.

Documents are parsed with :mod:`xml.etree.ElementTree`, keeping comments and
processing instructions inside the root so they are written back. Property
bags are exposed as plain values (leaf -> ``str``, element with children ->
``dict``, repeated child tag -> ``list``) and written back into the same
elements, so attributes and untouched children are preserved.
"""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from typing import Any

from chartifact.errors import MalformedArtifactError

ROOT_TAG = "channel"

_PROLOG_RE = re.compile(r"^\s*(<\?xml[^>]*\?>\s*)")


def parse_document(text: str, root_tag: str = ROOT_TAG) -> tuple[ET.Element, str | None]:
    """Parse a channel document.

    Returns the root element and the XML declaration (with the whitespace that
    followed it), or ``None`` when the document had no declaration.

    Raises:
        MalformedArtifactError: the text is not XML or the root is not ``root_tag``.
    """
    match = _PROLOG_RE.match(text)
    prolog = match.group(1) if match else None

    parser = ET.XMLParser(target=ET.TreeBuilder(insert_comments=True, insert_pis=True))
    try:
        parser.feed(text)
        root = parser.close()
    except ET.ParseError as e:
        raise MalformedArtifactError(f"Invalid channel XML: {e}") from e

    if root.tag != root_tag:
        raise MalformedArtifactError(
            f"Invalid channel XML: expected <{root_tag}> root element, found <{root.tag}>"
        )
    return root, prolog


def serialize(root: ET.Element, prolog: str | None = None) -> str:
    body = ET.tostring(root, encoding="unicode")
    return f"{prolog}{body}" if prolog else body


def elements(parent: ET.Element) -> list[ET.Element]:
    """Child elements of ``parent``, skipping comments and processing instructions."""
    return [c for c in parent if isinstance(c.tag, str)]


def child_text(parent: ET.Element, tag: str) -> str | None:
    el = parent.find(tag)
    if el is None:
        return None
    return el.text or ""


def set_child_text(parent: ET.Element, tag: str, value: str, create: bool = True) -> ET.Element | None:
    """Set the text of ``parent/tag``; create the child only when ``create``."""
    el = parent.find(tag)
    if el is None:
        if not create:
            return None
        el = ET.SubElement(parent, tag)
    if (el.text or "") != value:
        el.text = value
    return el


def element_to_value(el: ET.Element) -> Any:
    children = elements(el)
    if not children:
        return el.text or ""
    return _children_to_dict(children)


def _children_to_dict(children: list[ET.Element]) -> dict[str, Any]:
    grouped: dict[str, list[ET.Element]] = {}
    for child in children:
        grouped.setdefault(child.tag, []).append(child)
    result: dict[str, Any] = {}
    for tag, items in grouped.items():
        if len(items) == 1:
            result[tag] = element_to_value(items[0])
        else:
            result[tag] = [element_to_value(i) for i in items]
    return result


def properties_to_dict(el: ET.Element) -> dict[str, Any]:
    """Model a property bag element as an ordered dict (attributes excluded)."""
    return _children_to_dict(elements(el))


def write_value(el: ET.Element, value: Any) -> None:
    """Write ``value`` back into ``el`` in place.

    Lists map positionally onto repeated children, keys missing from a dict
    remove the matching children, and new keys are appended.
    """
    if isinstance(value, dict):
        _write_dict(el, value)
        return

    text = scalar_text(value)
    if elements(el):
        for child in elements(el):
            el.remove(child)
    if (el.text or "") != text:
        el.text = text


def _write_dict(el: ET.Element, value: dict[str, Any]) -> None:
    for child in elements(el):
        if child.tag not in value:
            el.remove(child)

    if value and not elements(el) and (el.text or "").strip() == "":
        el.text = None

    for tag, item in value.items():
        existing = [c for c in elements(el) if c.tag == tag]
        items = item if isinstance(item, list) else [item]

        for extra in existing[len(items):]:
            el.remove(extra)
        existing = existing[: len(items)]

        for i, v in enumerate(items):
            if i < len(existing):
                write_value(existing[i], v)
                continue
            new = ET.Element(tag)
            write_value(new, v)
            anchor = existing[-1] if existing else None
            if anchor is None:
                el.append(new)
            else:
                el.insert(list(el).index(anchor) + 1, new)
            existing.append(new)


def scalar_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def canonical(el: ET.Element) -> tuple:
    """Whitespace-insensitive structural key, for equality checks."""
    tag = el.tag if isinstance(el.tag, str) else f"#{getattr(el.tag, '__name__', 'node')}"
    text = (el.text or "").strip()
    return (
        tag,
        tuple(sorted(el.attrib.items())),
        text,
        tuple(canonical(c) for c in el),
    )


def trees_equal(a: ET.Element, b: ET.Element) -> bool:
    return canonical(a) == canonical(b)
