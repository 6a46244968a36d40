"""
Parity comparator: aligns a native and a ported snapshot and quantifies how
far each matched element drifted.

Matching is bottom-up and greedy. Candidate pairs are grouped into rounds by
``max(height(native), height(ported))`` so leaves commit before the
containers holding them; inside a round the lowest-distance pair commits
first and both nodes leave the pool. Containers then score better against
counterparts whose children were matched to their own children.
"""

from __future__ import annotations

import difflib
import itertools
import logging
from dataclasses import dataclass, field, replace

from config import ParityConfig
from errors import MatchAmbiguous
from geometry import FracBounds, NormalizedNode
from uitree import KIND_CONTAINER, short_class

logger = logging.getLogger(__name__)

SEVERITY_ORDER = {"ok": 0, "warn": 1, "fail": 2}

STATUS_MATCHED = "matched"
STATUS_MISSING = "missing"
STATUS_EXTRA = "extra"

TEXT_SNIPPET_LENGTH = 40


def normalize_text(text: str | None) -> str:
    if not text:
        return ""
    return " ".join(text.split()).casefold()


def max_severity(severities) -> str:
    worst = "ok"
    for severity in severities:
        if SEVERITY_ORDER[severity] > SEVERITY_ORDER[worst]:
            worst = severity
    return worst


@dataclass(frozen=True)
class NodeRef:
    """Enough of a node to find it again without re-running the capture."""

    path: tuple[int, ...]
    kind: str
    widget_class: str
    text: str | None
    bounds: FracBounds
    resource_id: str = ""
    is_focused: bool = False

    @classmethod
    def from_node(cls, node: NormalizedNode) -> "NodeRef":
        label = node.text or node.content_desc or None
        if label and len(label) > TEXT_SNIPPET_LENGTH:
            label = label[: TEXT_SNIPPET_LENGTH - 1] + "…"
        return cls(
            path=node.path,
            kind=node.kind,
            widget_class=node.widget_class,
            text=label,
            bounds=node.bounds,
            resource_id=node.resource_id,
            is_focused=node.is_focused,
        )

    def to_dict(self) -> dict:
        return {
            "path": list(self.path),
            "kind": self.kind,
            "widgetClass": self.widget_class,
            "text": self.text,
            "resourceId": self.resource_id,
            "focused": self.is_focused,
            "bounds": {
                "x": self.bounds.x,
                "y": self.bounds.y,
                "width": self.bounds.width,
                "height": self.bounds.height,
            },
        }


@dataclass(frozen=True)
class ElementDelta:
    status: str
    severity: str
    native: NodeRef | None = None
    ported: NodeRef | None = None
    confidence: float = 0.0
    dx: float = 0.0
    dy: float = 0.0
    dwidth: float = 0.0
    dheight: float = 0.0
    focus_agreement: bool = True
    annotations: tuple[str, ...] = ()

    @property
    def max_abs_delta(self) -> float:
        return max(abs(self.dx), abs(self.dy), abs(self.dwidth), abs(self.dheight))

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "severity": self.severity,
            "native": self.native.to_dict() if self.native else None,
            "ported": self.ported.to_dict() if self.ported else None,
            "confidence": round(self.confidence, 4),
            "dx": round(self.dx, 6),
            "dy": round(self.dy, 6),
            "dwidth": round(self.dwidth, 6),
            "dheight": round(self.dheight, 6),
            "focusAgreement": self.focus_agreement,
            "annotations": list(self.annotations),
        }


@dataclass(frozen=True)
class ComparisonResult:
    deltas: tuple[ElementDelta, ...]
    pairs: dict[tuple[int, ...], tuple[int, ...]] = field(default_factory=dict)

    def ported_for(self, native_path: tuple[int, ...]) -> tuple[int, ...] | None:
        return self.pairs.get(native_path)

    def native_for(self, ported_path: tuple[int, ...]) -> tuple[int, ...] | None:
        for native_path, ported_path_ in self.pairs.items():
            if ported_path_ == ported_path:
                return native_path
        return None

    def by_severity(self) -> dict[str, list[ElementDelta]]:
        grouped: dict[str, list[ElementDelta]] = {name: [] for name in SEVERITY_ORDER}
        for delta in self.deltas:
            grouped[delta.severity].append(delta)
        return grouped

    @property
    def max_severity(self) -> str:
        return max_severity(delta.severity for delta in self.deltas)


def geometry_severity(max_abs_delta: float, config: ParityConfig) -> str:
    if max_abs_delta <= config.tolerance_ok:
        return "ok"
    if max_abs_delta <= config.tolerance_warn:
        return "warn"
    return "fail"


def classify_severity(max_abs_delta: float, focus_agreement: bool, config: ParityConfig) -> str:
    """Geometry bucket, raised to at least warn when focus disagrees."""
    severity = geometry_severity(max_abs_delta, config)
    if not focus_agreement and severity == "ok":
        severity = "warn"
    return severity


def kind_group(node: NormalizedNode, equivalence: dict[str, str]) -> str:
    cls = short_class(node.widget_class)
    for key in (cls, node.widget_class, node.kind):
        if key and key in equivalence:
            return equivalence[key]
    return node.kind


def text_similarity(a: NormalizedNode, b: NormalizedNode) -> float:
    label_a = normalize_text(a.text) or normalize_text(a.content_desc)
    label_b = normalize_text(b.text) or normalize_text(b.content_desc)
    if not label_a and not label_b:
        return 1.0
    if not label_a or not label_b:
        return 0.0
    if label_a == label_b:
        return 1.0
    # Ordered so the ratio does not depend on which side is which.
    first, second = sorted((label_a, label_b))
    return difflib.SequenceMatcher(None, first, second).ratio()


def _heights(root: NormalizedNode) -> dict[tuple[int, ...], int]:
    heights: dict[tuple[int, ...], int] = {}

    def visit(node: NormalizedNode) -> int:
        height = 0
        for child in node.children:
            height = max(height, visit(child) + 1)
        heights[node.path] = height
        return height

    visit(root)
    return heights


def _is_layout_only(node: NormalizedNode) -> bool:
    return node.kind == KIND_CONTAINER and not node.text and not node.is_focusable


class _Matcher:
    def __init__(self, native_root: NormalizedNode, ported_root: NormalizedNode, config: ParityConfig) -> None:
        self.config = config
        self.native_nodes = list(native_root.iter_preorder())
        self.ported_nodes = list(ported_root.iter_preorder())
        self.native_heights = _heights(native_root)
        self.ported_heights = _heights(ported_root)
        self.n2p: dict[tuple[int, ...], tuple[int, ...]] = {}
        self.p2n: dict[tuple[int, ...], tuple[int, ...]] = {}
        self.notes: dict[tuple[int, ...], list[str]] = {}

    def compatible(self, a: NormalizedNode, b: NormalizedNode) -> bool:
        equivalence = self.config.kind_equivalence_map
        if kind_group(a, equivalence) != kind_group(b, equivalence):
            return False
        text_a = normalize_text(a.text)
        text_b = normalize_text(b.text)
        if text_a or text_b:
            return text_a == text_b
        return True

    def child_agreement(self, a: NormalizedNode, b: NormalizedNode) -> float:
        widest = max(len(a.children), len(b.children))
        if widest == 0:
            return 1.0
        agreeing = 0
        for child in a.children:
            counterpart = self.n2p.get(child.path)
            if counterpart is not None and counterpart[:-1] == b.path and len(counterpart) == len(b.path) + 1:
                agreeing += 1
        return agreeing / widest

    def distance(self, a: NormalizedNode, b: NormalizedNode) -> float:
        w = self.config.weight
        return (
            w("x") * abs(b.bounds.x - a.bounds.x)
            + w("y") * abs(b.bounds.y - a.bounds.y)
            + w("width") * abs(b.bounds.width - a.bounds.width)
            + w("height") * abs(b.bounds.height - a.bounds.height)
            + w("text") * (1.0 - text_similarity(a, b))
            + w("structure") * (1.0 - self.child_agreement(a, b))
        )

    def rounds(self) -> dict[int, list[tuple[NormalizedNode, NormalizedNode]]]:
        grouped: dict[int, list[tuple[NormalizedNode, NormalizedNode]]] = {}
        for a in self.native_nodes:
            for b in self.ported_nodes:
                if self.compatible(a, b):
                    level = max(self.native_heights[a.path], self.ported_heights[b.path])
                    grouped.setdefault(level, []).append((a, b))
        return grouped

    def _check_tie(self, a, b, distance: float, tied: list) -> None:
        for other_a, other_b in tied:
            if other_a.path == a.path and other_b.path == b.path:
                continue
            if other_a.path in self.n2p or other_b.path in self.p2n:
                continue
            if other_a.path == a.path or other_b.path == b.path:
                raise MatchAmbiguous(
                    f"ambiguous-match: native {list(a.path)} / ported {list(b.path)} tied at "
                    f"{distance:.6f} with native {list(other_a.path)} / ported {list(other_b.path)}; "
                    "kept earlier sibling"
                )

    def run(self) -> None:
        for level, candidates in sorted(self.rounds().items()):
            # Distances in a round only depend on matches from earlier rounds.
            scored = [
                (self.distance(a, b), tuple(sorted((a.path, b.path))), a, b)
                for a, b in candidates
            ]
            scored.sort(key=lambda item: (item[0], item[1]))
            for distance, group in itertools.groupby(scored, key=lambda item: item[0]):
                tied = [(a, b) for _, _, a, b in group]
                for a, b in tied:
                    if a.path in self.n2p or b.path in self.p2n:
                        continue
                    if len(tied) > 1:
                        try:
                            self._check_tie(a, b, distance, tied)
                        except MatchAmbiguous as exc:
                            logger.debug("%s", exc)
                            self.notes.setdefault(a.path, []).append(str(exc))
                    self.n2p[a.path] = b.path
                    self.p2n[b.path] = a.path
            logger.debug("Matching round %d committed %d pairs so far", level, len(self.n2p))


def compare(
    native_root: NormalizedNode,
    ported_root: NormalizedNode,
    config: ParityConfig | None = None,
) -> ComparisonResult:
    """
    Match two normalized snapshots and compute one ElementDelta per node.

    Every node of either tree ends up in exactly one delta: matched (both
    sides set), missing (native only) or extra (ported only). Inputs are
    never modified.

    Args:
        native_root: Snapshot of the original application
        ported_root: Snapshot of the reimplementation
        config: Tolerances, weights and kind equivalence map

    Returns:
        ComparisonResult: Deltas in native pre-order followed by extras in ported pre-order
    """
    config = config or ParityConfig()
    matcher = _Matcher(native_root, ported_root, config)
    matcher.run()

    ported_by_path = {node.path: node for node in matcher.ported_nodes}
    deltas: list[ElementDelta] = []

    for a in matcher.native_nodes:
        ported_path = matcher.n2p.get(a.path)
        if ported_path is None:
            severity = config.unmatched_container_severity if _is_layout_only(a) else config.unmatched_severity
            deltas.append(ElementDelta(status=STATUS_MISSING, severity=severity, native=NodeRef.from_node(a)))
            continue

        b = ported_by_path[ported_path]
        distance = matcher.distance(a, b)
        focus_agreement = a.is_focused == b.is_focused
        delta = ElementDelta(
            status=STATUS_MATCHED,
            severity="ok",
            native=NodeRef.from_node(a),
            ported=NodeRef.from_node(b),
            confidence=max(0.0, min(1.0, 1.0 - distance)),
            dx=b.bounds.x - a.bounds.x,
            dy=b.bounds.y - a.bounds.y,
            dwidth=b.bounds.width - a.bounds.width,
            dheight=b.bounds.height - a.bounds.height,
            focus_agreement=focus_agreement,
            annotations=tuple(matcher.notes.get(a.path, ())),
        )
        deltas.append(replace(delta, severity=classify_severity(delta.max_abs_delta, focus_agreement, config)))

    for b in matcher.ported_nodes:
        if b.path not in matcher.p2n:
            severity = config.unmatched_container_severity if _is_layout_only(b) else config.unmatched_severity
            deltas.append(ElementDelta(status=STATUS_EXTRA, severity=severity, ported=NodeRef.from_node(b)))

    return ComparisonResult(deltas=tuple(deltas), pairs=dict(matcher.n2p))
