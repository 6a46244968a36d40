"""
UI hierarchy extraction.

Turns a raw hierarchy dump (``uiautomator dump`` XML, or the equivalent JSON
tree some test hooks emit) into an immutable tree of typed nodes.
"""

from __future__ import annotations

import json
import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass

from errors import MalformedDump

logger = logging.getLogger(__name__)

KIND_CONTAINER = "container"
KIND_TEXT = "text"
KIND_IMAGE = "image"
KIND_FOCUSABLE_OTHER = "focusable-other"
KINDS = (KIND_CONTAINER, KIND_TEXT, KIND_IMAGE, KIND_FOCUSABLE_OTHER)

DEFAULT_SCREEN_TAG_RESOURCE_ID = "parity_screen_tag"

_BOUNDS_RE = re.compile(r"^\s*\[(-?\d+),(-?\d+)\]\[(-?\d+),(-?\d+)\]\s*$")


@dataclass(frozen=True)
class Bounds:
    x: int
    y: int
    width: int
    height: int

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height

    def has_area(self) -> bool:
        return self.width > 0 and self.height > 0

    def union(self, other: "Bounds") -> "Bounds":
        left = min(self.x, other.x)
        top = min(self.y, other.y)
        return Bounds(left, top, max(self.right, other.right) - left, max(self.bottom, other.bottom) - top)


@dataclass(frozen=True)
class RawUIDump:
    content: str
    format: str = "xml"


@dataclass(frozen=True)
class UITreeNode:
    path: tuple[int, ...]
    kind: str
    bounds: Bounds
    text: str | None = None
    is_focused: bool = False
    is_focusable: bool = False
    widget_class: str = ""
    resource_id: str = ""
    content_desc: str = ""
    screen_tag: str | None = None
    children: tuple["UITreeNode", ...] = ()

    def iter_preorder(self):
        yield self
        for child in self.children:
            yield from child.iter_preorder()


def parse_bounds(bounds_str: str) -> Bounds:
    """Parse uiautomator bounds "[l,t][r,b]" into (x, y, width, height)."""
    match = _BOUNDS_RE.match(bounds_str or "")
    if not match:
        raise MalformedDump(f"Unparsable bounds {bounds_str!r}")
    left, top, right, bottom = map(int, match.groups())
    return Bounds(left, top, right - left, bottom - top)


def short_class(widget_class: str) -> str:
    return widget_class.rsplit(".", 1)[-1] if widget_class else ""


def classify(widget_class: str, text: str | None, focusable: bool) -> str:
    name = short_class(widget_class)
    if "Image" in name:
        return KIND_IMAGE
    if text or "Text" in name:
        return KIND_TEXT
    if focusable:
        return KIND_FOCUSABLE_OTHER
    return KIND_CONTAINER


def _as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


class _TreeBuilder:
    """Builds one tree from attribute dicts; enforces the single-focus rule."""

    def __init__(self, screen_tag_resource_id: str) -> None:
        self.screen_tag_resource_id = screen_tag_resource_id
        self.focus_claimed = False
        self.dropped = 0

    def build(self, attrs: dict, bounds: Bounds, path: tuple[int, ...], children_src: list) -> UITreeNode | None:
        if not bounds.has_area():
            self.dropped += 1
            return None

        text = (attrs.get("text") or "").strip() or None
        content_desc = attrs.get("content_desc") or ""
        resource_id = attrs.get("resource_id") or ""
        widget_class = attrs.get("class") or ""
        focusable = _as_bool(attrs.get("focusable", False))
        focused = _as_bool(attrs.get("focused", False))
        if focused:
            if self.focus_claimed:
                logger.warning("Dump reports more than one focused node; clearing focus on %s", path)
                focused = False
            else:
                self.focus_claimed = True

        screen_tag = attrs.get("screen_tag") or None
        if not screen_tag and self.screen_tag_resource_id and resource_id.endswith(self.screen_tag_resource_id):
            screen_tag = text or content_desc or None

        children: list[UITreeNode] = []
        for child_attrs, child_bounds, grandchildren in children_src:
            child = self.build(child_attrs, child_bounds, path + (len(children),), grandchildren)
            if child is not None:
                children.append(child)

        return UITreeNode(
            path=path,
            kind=classify(widget_class, text, focusable),
            bounds=bounds,
            text=text,
            is_focused=focused,
            is_focusable=focusable,
            widget_class=widget_class,
            resource_id=resource_id,
            content_desc=content_desc,
            screen_tag=screen_tag,
            children=tuple(children),
        )

    def build_root(self, tops: list) -> UITreeNode:
        if not tops:
            raise MalformedDump("Dump contains no nodes")
        if len(tops) == 1:
            attrs, bounds, children = tops[0]
            root = self.build(attrs, bounds, (), children)
            if root is None:
                raise MalformedDump("Root node has zero area")
            return root

        # Several windows: wrap them in a synthetic container.
        union = None
        for _, bounds, _ in tops:
            if bounds.has_area():
                union = bounds if union is None else union.union(bounds)
        if union is None:
            raise MalformedDump("Every top-level node has zero area")
        return self.build({"class": ""}, union, (), tops)


def _xml_source(elem: ET.Element, where: str) -> tuple[dict, Bounds, list]:
    attrib = elem.attrib
    if "bounds" not in attrib:
        raise MalformedDump(f"Node {where} has no bounds attribute")
    attrs = {
        "class": attrib.get("class", ""),
        "text": attrib.get("text"),
        "content_desc": attrib.get("content-desc", ""),
        "resource_id": attrib.get("resource-id", ""),
        "focusable": attrib.get("focusable", "false"),
        "focused": attrib.get("focused", "false"),
        "screen_tag": attrib.get("screen-tag"),
    }
    children = [
        _xml_source(child, f"{where}/{i}")
        for i, child in enumerate(c for c in elem if c.tag == "node")
    ]
    return attrs, parse_bounds(attrib["bounds"]), children


def _parse_xml(content: str) -> list:
    try:
        root = ET.fromstring(content)
    except ET.ParseError as exc:
        raise MalformedDump(f"Failed to parse UI XML: {exc}") from exc

    if root.tag == "node":
        return [_xml_source(root, "0")]
    if root.tag != "hierarchy":
        raise MalformedDump(f"Unexpected root element <{root.tag}>")
    return [_xml_source(elem, str(i)) for i, elem in enumerate(e for e in root if e.tag == "node")]


def _json_bounds(value, where: str) -> Bounds:
    if value is None:
        raise MalformedDump(f"Node {where} has no bounds")
    if isinstance(value, str):
        return parse_bounds(value)
    if isinstance(value, dict):
        try:
            return Bounds(int(value["x"]), int(value["y"]), int(value["width"]), int(value["height"]))
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedDump(f"Node {where} has invalid bounds {value!r}") from exc
    if isinstance(value, (list, tuple)) and len(value) == 4:
        try:
            return Bounds(*(int(v) for v in value))
        except (TypeError, ValueError) as exc:
            raise MalformedDump(f"Node {where} has invalid bounds {value!r}") from exc
    raise MalformedDump(f"Node {where} has invalid bounds {value!r}")


def _json_source(node, where: str) -> tuple[dict, Bounds, list]:
    if not isinstance(node, dict):
        raise MalformedDump(f"Node {where} is not an object")
    children = node.get("children") or []
    if not isinstance(children, list):
        raise MalformedDump(f"Node {where} has a non-list children field")
    attrs = {
        "class": node.get("class") or node.get("className") or "",
        "text": node.get("text"),
        "content_desc": node.get("contentDesc") or node.get("content-desc") or "",
        "resource_id": node.get("resourceId") or node.get("resource-id") or "",
        "focusable": node.get("focusable", False),
        "focused": node.get("focused", False),
        "screen_tag": node.get("screenTag") or node.get("screen-tag"),
    }
    return (
        attrs,
        _json_bounds(node.get("bounds"), where),
        [_json_source(child, f"{where}/{i}") for i, child in enumerate(children)],
    )


def _parse_json(content: str) -> list:
    try:
        data = json.loads(content)
    except json.JSONDecodeError as exc:
        raise MalformedDump(f"Failed to parse UI JSON: {exc}") from exc

    if isinstance(data, dict) and "hierarchy" in data:
        data = data["hierarchy"]
    if isinstance(data, dict):
        return [_json_source(data, "0")]
    if isinstance(data, list):
        return [_json_source(node, str(i)) for i, node in enumerate(data)]
    raise MalformedDump("UI JSON must be an object or a list of nodes")


def _detect_format(content: str) -> str:
    head = content.lstrip()[:1]
    return "json" if head in ("{", "[") else "xml"


def extract(
    raw_dump: RawUIDump | str | bytes,
    screen_tag_resource_id: str = DEFAULT_SCREEN_TAG_RESOURCE_ID,
) -> UITreeNode:
    """
    Parse a raw hierarchy dump into a UITreeNode tree.

    Zero-area nodes are dropped together with their subtree. Paths are the
    pre-order sibling indices among the nodes that were kept, so they are only
    meaningful inside this one dump.

    Args:
        raw_dump: The dump, as produced by the device adapter or read from disk
        screen_tag_resource_id: Resource-id suffix of the view carrying a screen tag

    Returns:
        UITreeNode: The root of the tree

    Raises:
        MalformedDump: Required geometry/hierarchy is missing; nothing partial is returned
    """
    if isinstance(raw_dump, RawUIDump):
        content, fmt = raw_dump.content, raw_dump.format
    else:
        content = raw_dump.decode("utf-8", errors="replace") if isinstance(raw_dump, bytes) else raw_dump
        fmt = _detect_format(content)

    if not content or not content.strip():
        raise MalformedDump("Empty UI dump")

    tops = _parse_json(content) if fmt == "json" else _parse_xml(content)
    builder = _TreeBuilder(screen_tag_resource_id)
    root = builder.build_root(tops)
    if builder.dropped:
        logger.debug("Dropped %d zero-area nodes", builder.dropped)
    return root


def declared_screen_tag(root) -> str | None:
    """First screen tag found in pre-order, if the app exposes one."""
    for node in root.iter_preorder():
        if node.screen_tag:
            return node.screen_tag
    return None
