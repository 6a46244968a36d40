import pytest

from comparator import (
    STATUS_EXTRA,
    STATUS_MATCHED,
    STATUS_MISSING,
    classify_severity,
    compare,
    normalize_text,
    text_similarity,
)
from config import ParityConfig
from conftest import browse_screen, node_xml
from geometry import FracBounds, NormalizedNode, Resolution, normalize
from uitree import KIND_CONTAINER, KIND_TEXT, extract

FHD = Resolution(1920, 1080)
HD = Resolution(1280, 720)


def tree(dump, resolution=FHD):
    return normalize(extract(dump), resolution)


def screen(*children, width=1920, height=1080):
    root = node_xml("android.widget.FrameLayout", 0, 0, width, height, children="".join(children))
    return f"<hierarchy rotation=\"0\">{root}</hierarchy>"


def button(text, left, top, right, bottom, focused=False, cls="android.widget.Button"):
    return node_xml(cls, left, top, right, bottom, text=text, focusable=True, focused=focused)


def leaf(kind, bounds, text=None, path=(0,), focused=False, widget_class=""):
    return NormalizedNode(path=path, kind=kind, bounds=FracBounds(*bounds), text=text, is_focused=focused, widget_class=widget_class)


def root_of(*children):
    return NormalizedNode(path=(), kind=KIND_CONTAINER, bounds=FracBounds(0, 0, 1, 1), children=children)


def statuses(result):
    return [(d.status, d.severity) for d in result.deltas]


class TestSeverity:
    def test_small_drift_is_ok(self):
        native = root_of(leaf(KIND_TEXT, (0.10, 0.20, 0.05, 0.03), text="Play"))
        ported = root_of(leaf(KIND_TEXT, (0.101, 0.199, 0.051, 0.031), text="Play"))

        result = compare(native, ported, ParityConfig(tolerance_ok=0.01))

        play = result.deltas[1]
        assert play.status == STATUS_MATCHED
        assert play.severity == "ok"
        assert play.dx == pytest.approx(0.001)
        assert play.dy == pytest.approx(-0.001)
        assert result.max_severity == "ok"

    @pytest.mark.parametrize("dx,expected", [(0.005, "ok"), (0.02, "warn"), (0.05, "fail")])
    def test_buckets(self, dx, expected):
        native = root_of(leaf(KIND_TEXT, (0.10, 0.20, 0.05, 0.03), text="Play"))
        ported = root_of(leaf(KIND_TEXT, (0.10 + dx, 0.20, 0.05, 0.03), text="Play"))

        assert compare(native, ported).deltas[1].severity == expected

    def test_monotonic(self):
        config = ParityConfig()
        order = {"ok": 0, "warn": 1, "fail": 2}
        previous = 0
        for step in range(0, 60):
            level = order[classify_severity(step * 0.001, True, config)]
            assert level >= previous
            previous = level

    def test_focus_mismatch_raises_to_warn(self):
        native = root_of(leaf(KIND_TEXT, (0.1, 0.2, 0.05, 0.03), text="Play", focused=True))
        ported = root_of(leaf(KIND_TEXT, (0.1, 0.2, 0.05, 0.03), text="Play", focused=False))

        delta = compare(native, ported).deltas[1]

        assert delta.focus_agreement is False
        assert delta.severity == "warn"

    def test_focus_mismatch_keeps_fail(self):
        assert classify_severity(0.2, False, ParityConfig()) == "fail"


class TestMatching:
    def test_same_screen_different_resolutions(self, native_dump, ported_dump):
        config = ParityConfig(kind_equivalence_map={"ReactTextView": "text", "TextView": "text"})

        result = compare(tree(native_dump), tree(ported_dump, HD), config)

        assert {d.status for d in result.deltas} == {STATUS_MATCHED}
        assert result.max_severity == "ok"
        assert result.ported_for((1, 2)) == (1, 2)
        assert result.native_for((1, 2, 0)) == (1, 2, 0)
        assert all(d.confidence > 0.99 for d in result.deltas)

    def test_missing_focusable_element(self):
        native = tree(screen(
            button("Play", 100, 400, 350, 550, focused=True),
            button("Search", 400, 400, 650, 550),
            button("Settings", 700, 400, 950, 550),
        ))
        ported = tree(screen(
            button("Play", 67, 267, 233, 367, focused=True, cls="com.facebook.react.views.view.ReactViewGroup"),
            button("Settings", 467, 267, 633, 367, cls="com.facebook.react.views.view.ReactViewGroup"),
            width=1280,
            height=720,
        ), HD)

        result = compare(native, ported)

        missing = [d for d in result.deltas if d.status == STATUS_MISSING]
        extra = [d for d in result.deltas if d.status == STATUS_EXTRA]
        assert len(missing) == 1
        assert missing[0].native.text == "Search"
        assert missing[0].severity == "fail"
        assert extra == []

    def test_extra_element(self):
        native = tree(screen(button("Play", 100, 400, 350, 550)))
        ported = tree(screen(button("Play", 100, 400, 350, 550), button("Trailer", 400, 400, 650, 550)))

        result = compare(native, ported)

        assert statuses(result)[-1] == (STATUS_EXTRA, "fail")
        assert result.deltas[-1].ported.text == "Trailer"
        assert result.deltas[-1].native is None

    def test_every_node_accounted_for_once(self):
        native = tree(browse_screen(titles=("Play", "Search", "Settings", "Profile")))
        ported = tree(browse_screen("ported", titles=("Play", "Settings", "Live"), shift_px=40))

        result = compare(native, ported)

        native_paths = [d.native.path for d in result.deltas if d.native]
        ported_paths = [d.ported.path for d in result.deltas if d.ported]
        assert sorted(native_paths) == sorted(n.path for n in native.iter_preorder())
        assert sorted(ported_paths) == sorted(n.path for n in ported.iter_preorder())
        assert len(set(native_paths)) == len(native_paths)
        assert len(set(ported_paths)) == len(ported_paths)

    def test_text_must_agree(self):
        native = tree(screen(button("Play", 100, 400, 350, 550)))
        ported = tree(screen(button("Pause", 100, 400, 350, 550)))

        result = compare(native, ported)

        assert (STATUS_MISSING, "fail") in statuses(result)
        assert (STATUS_EXTRA, "fail") in statuses(result)

    def test_text_normalization(self):
        native = tree(screen(button("Continue  Watching", 100, 400, 350, 550)))
        ported = tree(screen(button("continue watching", 100, 400, 350, 550)))

        assert {d.status for d in compare(native, ported).deltas} == {STATUS_MATCHED}

    def test_kind_equivalence_map(self):
        native = root_of(leaf(KIND_CONTAINER, (0.1, 0.1, 0.2, 0.2), widget_class="androidx.leanback.widget.ImageCardView"))
        ported = root_of(leaf("focusable-other", (0.1, 0.1, 0.2, 0.2), widget_class="com.example.PosterCard"))

        without = compare(native, ported)
        with_map = compare(
            native, ported, ParityConfig(kind_equivalence_map={"ImageCardView": "card", "PosterCard": "card"})
        )

        assert STATUS_MISSING in {d.status for d in without.deltas}
        assert {d.status for d in with_map.deltas} == {STATUS_MATCHED}

    def test_unmatched_layout_container_severity(self):
        native = root_of(leaf(KIND_CONTAINER, (0.0, 0.0, 1.0, 0.1)), leaf(KIND_TEXT, (0.1, 0.5, 0.1, 0.1), text="Play", path=(1,)))
        ported = root_of(leaf(KIND_TEXT, (0.1, 0.5, 0.1, 0.1), text="Play"))

        result = compare(native, ported, ParityConfig(unmatched_container_severity="ok"))

        missing = [d for d in result.deltas if d.status == STATUS_MISSING]
        assert [(d.native.path, d.severity) for d in missing] == [((0,), "ok")]

    def test_tie_resolved_and_annotated(self):
        # Two identical native cards and one ported card equidistant from both.
        native = root_of(
            leaf("focusable-other", (0.25, 0.5, 0.125, 0.125), path=(0,)),
            leaf("focusable-other", (0.75, 0.5, 0.125, 0.125), path=(1,)),
        )
        ported = root_of(leaf("focusable-other", (0.5, 0.5, 0.125, 0.125), path=(0,)))

        result = compare(native, ported)

        assert result.ported_for((0,)) == (0,)
        assert result.ported_for((1,)) is None
        first = result.deltas[1]
        assert any("ambiguous-match" in note for note in first.annotations)

    def test_inputs_not_modified(self, native_dump, ported_dump):
        native = tree(native_dump)
        ported = tree(ported_dump, HD)
        before = (native, ported)

        compare(native, ported)

        assert (native, ported) == before


class TestProperties:
    def test_symmetry(self):
        native = tree(browse_screen(titles=("Play", "Search", "Settings")))
        ported = tree(browse_screen("ported", titles=("Play", "Settings"), shift_px=25, width=1280, height=720), HD)

        forward = compare(native, ported)
        backward = compare(ported, native)

        forward_pairs = set(forward.pairs.items())
        backward_pairs = {(b, a) for a, b in backward.pairs.items()}
        assert forward_pairs == backward_pairs
        for delta in forward.deltas:
            if delta.status != STATUS_MATCHED:
                continue
            mirror = next(d for d in backward.deltas if d.native and d.native.path == delta.ported.path)
            assert mirror.dx == pytest.approx(-delta.dx)
            assert mirror.severity == delta.severity

    def test_idempotent(self, native_dump):
        a = tree(native_dump)
        b = tree(native_dump)

        result = compare(a, b)

        assert all(d.status == STATUS_MATCHED for d in result.deltas)
        assert all(d.max_abs_delta == 0 for d in result.deltas)
        assert all(d.severity == "ok" for d in result.deltas)
        assert all(d.confidence == 1.0 for d in result.deltas)

    def test_deterministic(self, native_dump, ported_dump):
        first = compare(tree(native_dump), tree(ported_dump, HD))
        second = compare(tree(native_dump), tree(ported_dump, HD))

        assert first == second


class TestText:
    def test_normalize_text(self):
        assert normalize_text("  Continue\n Watching ") == "continue watching"
        assert normalize_text(None) == ""

    def test_similarity_symmetric(self):
        a = leaf(KIND_TEXT, (0, 0, 0.1, 0.1), text="Settings")
        b = leaf(KIND_TEXT, (0, 0, 0.1, 0.1), text="Setting")

        assert text_similarity(a, b) == text_similarity(b, a)
        assert 0 < text_similarity(a, b) < 1

    def test_similarity_missing_label(self):
        a = leaf(KIND_TEXT, (0, 0, 0.1, 0.1), text="Play")
        b = leaf(KIND_CONTAINER, (0, 0, 0.1, 0.1))

        assert text_similarity(a, b) == 0.0
        assert text_similarity(b, b) == 1.0
