from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from typing import Any, Iterator

from plannersync.errors import ProtocolParseError

logger = logging.getLogger(__name__)

TEXT_KEY = "#text"


def _local_name(tag: str) -> str:
    if tag.startswith("{"):
        return tag.split("}", 1)[1]
    return tag.split(":", 1)[-1]


def _convert(element: ET.Element) -> Any:
    children = list(element)
    attributes = {_local_name(key): value for key, value in element.attrib.items()}
    text = (element.text or "").strip()
    if not children and not attributes:
        return text
    node: dict[str, Any] = dict(attributes)
    for child in children:
        key = _local_name(child.tag)
        value = _convert(child)
        if key not in node:
            node[key] = value
        elif isinstance(node[key], list):
            node[key].append(value)
        else:
            node[key] = [node[key], value]
    if text:
        node[TEXT_KEY] = text
    return node


def parse_xml(xml_text: str | bytes) -> dict[str, Any]:
    """Parse a WebDAV response into a namespace-free tree of dicts, lists and strings.

    Leaf elements become plain strings, elements carrying attributes keep
    their text under ``#text``, and repeated siblings collapse into a list.
    A sibling that appears only once stays a bare value, so consumers must
    go through :func:`as_list` before indexing.
    """
    if isinstance(xml_text, str):
        xml_text = xml_text.encode("utf-8")
    if not xml_text or not xml_text.strip():
        raise ProtocolParseError("Empty XML response.")
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as exc:
        raise ProtocolParseError(f"Malformed XML response: {exc}") from exc
    return {_local_name(root.tag): _convert(root)}


def as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def extract_text(node: Any) -> str:
    if node is None:
        return ""
    if isinstance(node, str):
        return node
    if isinstance(node, dict):
        value = node.get(TEXT_KEY, "")
        return value if isinstance(value, str) else ""
    if isinstance(node, list):
        return extract_text(node[0]) if node else ""
    return str(node)


def has_child(node: Any, name: str) -> bool:
    return isinstance(node, dict) and name in node


def child(node: Any, name: str) -> Any:
    if isinstance(node, list):
        node = node[0] if node else None
    if not isinstance(node, dict):
        return None
    return node.get(name)


def extract_href(node: Any) -> str:
    """Return the first ``href`` under *node*, tolerating list and text shapes."""
    return extract_text(child(node, "href")).strip()


def multistatus_responses(tree: dict[str, Any]) -> list[Any]:
    multistatus = tree.get("multistatus")
    if not isinstance(multistatus, dict):
        return []
    return as_list(multistatus.get("response"))


def response_props(response: Any) -> dict[str, Any]:
    """Pick the ``prop`` block of the 200 propstat, falling back to the first one."""
    if not isinstance(response, dict):
        raise ProtocolParseError("Multistatus response entry is not an element.")
    propstats = [item for item in as_list(response.get("propstat")) if isinstance(item, dict)]
    if not propstats:
        raise ProtocolParseError("Multistatus response has no propstat.")
    chosen = propstats[0]
    for propstat in propstats:
        if " 200 " in f" {extract_text(propstat.get('status'))} ":
            chosen = propstat
            break
    props = chosen.get("prop")
    if isinstance(props, list):
        props = props[0] if props else None
    if not isinstance(props, dict):
        return {}
    return props


def iter_response_props(tree: dict[str, Any]) -> Iterator[tuple[str, dict[str, Any]]]:
    """Yield ``(href, props)`` per multistatus response, skipping malformed entries."""
    for index, response in enumerate(multistatus_responses(tree)):
        try:
            props = response_props(response)
            href = extract_href(response)
        except ProtocolParseError as exc:
            logger.warning("Skipping multistatus response #%d: %s", index, exc)
            continue
        yield href, props
