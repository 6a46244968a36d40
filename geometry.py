"""
Resolution-independent geometry.

Pixel bounds from one device are expressed as fractions of that target's
reference resolution so that a 1080p Leanback screen and a 720p React Native
screen can be compared directly.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from uitree import Bounds, UITreeNode

_RESOLUTION_RE = re.compile(r"^\s*(\d+)\s*[xX*,]\s*(\d+)\s*$")


@dataclass(frozen=True)
class Resolution:
    width: int
    height: int

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Resolution must be positive, got {self.width}x{self.height}")

    def __str__(self) -> str:
        return f"{self.width}x{self.height}"


def parse_resolution(value: str | list | tuple | Resolution) -> Resolution:
    """Parse "1920x1080", [1920, 1080] or an existing Resolution."""
    if isinstance(value, Resolution):
        return value
    if isinstance(value, (list, tuple)):
        if len(value) != 2:
            raise ValueError(f"Resolution needs exactly two values, got {value!r}")
        return Resolution(int(value[0]), int(value[1]))
    match = _RESOLUTION_RE.match(str(value))
    if not match:
        raise ValueError(f"Invalid resolution {value!r}, expected WIDTHxHEIGHT")
    return Resolution(int(match.group(1)), int(match.group(2)))


@dataclass(frozen=True)
class FracBounds:
    x: float
    y: float
    width: float
    height: float

    def as_tuple(self) -> tuple[float, float, float, float]:
        return (self.x, self.y, self.width, self.height)


@dataclass(frozen=True)
class NormalizedNode:
    path: tuple[int, ...]
    kind: str
    bounds: FracBounds
    text: str | None = None
    is_focused: bool = False
    is_focusable: bool = False
    widget_class: str = ""
    resource_id: str = ""
    content_desc: str = ""
    screen_tag: str | None = None
    children: tuple["NormalizedNode", ...] = ()

    def iter_preorder(self):
        yield self
        for child in self.children:
            yield from child.iter_preorder()

    def focused(self) -> "NormalizedNode | None":
        for node in self.iter_preorder():
            if node.is_focused:
                return node
        return None

    def find(self, path: tuple[int, ...]) -> "NormalizedNode | None":
        node = self
        for index in path:
            if index >= len(node.children):
                return None
            node = node.children[index]
        return node


def normalize_bounds(bounds: Bounds, resolution: Resolution) -> FracBounds:
    return FracBounds(
        x=bounds.x / resolution.width,
        y=bounds.y / resolution.height,
        width=bounds.width / resolution.width,
        height=bounds.height / resolution.height,
    )


def denormalize(frac: FracBounds, resolution: Resolution) -> Bounds:
    """Map fractional bounds back to pixels (rounded to the nearest pixel)."""
    return Bounds(
        x=int(round(frac.x * resolution.width)),
        y=int(round(frac.y * resolution.height)),
        width=int(round(frac.width * resolution.width)),
        height=int(round(frac.height * resolution.height)),
    )


def normalize(root: UITreeNode, resolution: Resolution) -> NormalizedNode:
    """
    Convert a pixel tree into a fractional tree.

    Fractions outside [0, 1] (scrolled or partially offscreen rows) are kept
    as they are; the comparator treats them as ordinary data.

    Args:
        root: Root of an extracted UI tree
        resolution: Reference resolution of the target that produced it

    Returns:
        NormalizedNode: A new tree; the input is not modified
    """
    return NormalizedNode(
        path=root.path,
        kind=root.kind,
        bounds=normalize_bounds(root.bounds, resolution),
        text=root.text,
        is_focused=root.is_focused,
        is_focusable=root.is_focusable,
        widget_class=root.widget_class,
        resource_id=root.resource_id,
        content_desc=root.content_desc,
        screen_tag=root.screen_tag,
        children=tuple(normalize(child, resolution) for child in root.children),
    )
