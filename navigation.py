"""
Navigation flow recording and trace equivalence.

A script is an ordered list of input events. Replaying it on a target yields
a NavigationTrace: one step per event with the focused element and a coarse
screen identifier observed once the UI settled.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path

import yaml
from jsonschema import Draft202012Validator

from adbdevicemanager import EVENT_TYPES, KEYCODE_NAME_PATTERN, InputEvent, Screenshot, Target
from comparator import ComparisonResult, NodeRef, compare, kind_group
from config import ParityConfig
from errors import AppNotForeground, DeviceUnreachable, MalformedDump, ScriptError
from geometry import NormalizedNode, Resolution, normalize
from uitree import declared_screen_tag, extract

logger = logging.getLogger(__name__)

_BARE_EVENTS = [name for name in EVENT_TYPES if name not in ("tap", "key", "wait")]

SCRIPT_SCHEMA = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "array",
    "items": {
        "oneOf": [
            {"type": "string", "enum": _BARE_EVENTS},
            {
                "type": "object",
                "required": ["type"],
                "additionalProperties": False,
                "properties": {
                    "type": {"enum": list(EVENT_TYPES)},
                    "x": {"type": "integer", "minimum": 0},
                    "y": {"type": "integer", "minimum": 0},
                    "code": {
                        "oneOf": [
                            {"type": "integer", "minimum": 0},
                            {"type": "string", "pattern": KEYCODE_NAME_PATTERN},
                        ]
                    },
                    "durationMs": {"type": "integer", "minimum": 0},
                },
            },
        ]
    },
}


def parse_script(data) -> list[InputEvent]:
    """Validate script data (a list, or an object with a "steps" list) into events."""
    if isinstance(data, dict) and "steps" in data:
        data = data["steps"]
    validator = Draft202012Validator(SCRIPT_SCHEMA)
    errors = sorted(validator.iter_errors(data), key=lambda e: list(e.path))
    if errors:
        msgs = []
        for e in errors[:20]:
            loc = "/".join(str(p) for p in e.path)
            msgs.append(f"- script:{loc}: {e.message}")
        if len(errors) > 20:
            msgs.append(f"... ({len(errors) - 20} more)")
        raise ScriptError("\n".join(msgs))
    events = []
    for i, item in enumerate(data):
        try:
            events.append(InputEvent(type=item) if isinstance(item, str) else InputEvent.from_dict(item))
        except ScriptError as exc:
            raise ScriptError(f"- script:{i}: {exc}") from exc
    return events


def load_script(path: str | Path) -> list[InputEvent]:
    path = Path(path)
    if not path.exists():
        raise ScriptError(f"Script file {path} not found")
    text = path.read_text(encoding="utf-8")
    try:
        data = json.loads(text) if path.suffix.lower() == ".json" else yaml.safe_load(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ScriptError(f"Cannot parse script {path}: {exc}") from exc
    return parse_script(data)


def screen_identifier(tree: NormalizedNode, kind_equivalence: dict[str, str] | None = None) -> str:
    """
    Declared screen tag when the app exposes one, else a hash of the root's
    top-level kinds, grouped through kindEquivalenceMap.
    """
    tag = declared_screen_tag(tree)
    if tag:
        return tag
    kind_equivalence = kind_equivalence or {}
    kinds = sorted({kind_group(child, kind_equivalence) for child in tree.children})
    if not kinds:
        kinds = [kind_group(tree, kind_equivalence)]
    digest = hashlib.sha1(",".join(kinds).encode("utf-8")).hexdigest()
    return f"h:{digest[:12]}"


@dataclass(frozen=True)
class Snapshot:
    tree: NormalizedNode
    screen_id: str
    possibly_unsettled: bool = False
    screenshot: Screenshot | None = None

    @property
    def focused(self) -> NormalizedNode | None:
        return self.tree.focused()


@dataclass(frozen=True)
class TraceStep:
    index: int
    event: InputEvent | None
    focused_path: tuple[int, ...] | None = None
    focused: NodeRef | None = None
    screen_id: str | None = None
    possibly_unsettled: bool = False
    error: str | None = None
    snapshot: NormalizedNode | None = None
    screenshot: Screenshot | None = None

    @property
    def skipped(self) -> bool:
        return self.error is not None

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "event": self.event.to_dict() if self.event else None,
            "focusedPath": list(self.focused_path) if self.focused_path is not None else None,
            "focused": self.focused.to_dict() if self.focused else None,
            "screenId": self.screen_id,
            "possiblyUnsettled": self.possibly_unsettled,
            "error": self.error,
        }


@dataclass(frozen=True)
class NavigationTrace:
    target_id: str
    platform: str
    steps: tuple[TraceStep, ...]
    aborted: bool = False
    abort_reason: str | None = None
    cancelled: bool = False

    def screen_ids(self) -> list[str | None]:
        return [step.screen_id for step in self.steps]

    def to_dict(self) -> dict:
        return {
            "targetId": self.target_id,
            "platform": self.platform,
            "aborted": self.aborted,
            "abortReason": self.abort_reason,
            "cancelled": self.cancelled,
            "steps": [step.to_dict() for step in self.steps],
        }


def step_from_snapshot(index: int, event: InputEvent | None, snap: Snapshot) -> TraceStep:
    focused = snap.focused
    return TraceStep(
        index=index,
        event=event,
        focused_path=focused.path if focused else None,
        focused=NodeRef.from_node(focused) if focused else None,
        screen_id=snap.screen_id,
        possibly_unsettled=snap.possibly_unsettled,
        snapshot=snap.tree,
        screenshot=snap.screenshot,
    )


class FlowRecorder:
    """Replays input events on one target and records what the UI did."""

    def __init__(self, adapter, config: ParityConfig | None = None, clock=time.monotonic, sleep=time.sleep) -> None:
        self.adapter = adapter
        self.config = config or ParityConfig()
        self._clock = clock
        self._sleep = sleep
        self._resolutions: dict[str, Resolution] = {}

    def resolution_for(self, target: Target) -> Resolution:
        if target.resolution is not None:
            return target.resolution
        if target.identifier not in self._resolutions:
            self._resolutions[target.identifier] = self.adapter.screen_resolution()
        return self._resolutions[target.identifier]

    def _build_snapshot(self, target: Target, raw_dump, screenshot, unsettled: bool) -> Snapshot:
        tree = normalize(extract(raw_dump, self.config.screen_tag_resource_id), self.resolution_for(target))
        if tree.focused() is None:
            # Single-focus D-pad UIs always have a focused view once idle.
            unsettled = True
        screen_id = screen_identifier(tree, self.config.kind_equivalence_map)
        return Snapshot(tree=tree, screen_id=screen_id, possibly_unsettled=unsettled, screenshot=screenshot)

    def snapshot(self, target: Target) -> Snapshot:
        screenshot, raw_dump = self.adapter.capture(target, with_screenshot=self.config.capture_screenshots)
        return self._build_snapshot(target, raw_dump, screenshot, unsettled=False)

    def settle(self, target: Target) -> Snapshot:
        """
        Poll captures until two consecutive dumps are identical.

        Running out of settleTimeoutMs is not an error: the latest capture is
        used and the snapshot is flagged possibly_unsettled.
        """
        timeout = self.config.settle_timeout_ms / 1000.0
        poll = self.config.settle_poll_ms / 1000.0
        screenshots = self.config.capture_screenshots

        if timeout <= 0:
            return self.snapshot(target)

        deadline = self._clock() + timeout
        _, previous = self.adapter.capture(target, with_screenshot=False)
        unsettled = False
        while True:
            if self._clock() >= deadline:
                unsettled = True
                logger.info("%s did not settle within %dms", target.identifier, self.config.settle_timeout_ms)
                break
            self._sleep(poll)
            _, current = self.adapter.capture(target, with_screenshot=False)
            if current.content == previous.content:
                break
            previous = current

        screenshot = None
        if screenshots:
            screenshot, latest = self.adapter.capture(target, with_screenshot=True)
            if latest.content != previous.content:
                logger.info("%s changed while taking the screenshot", target.identifier)
                unsettled = True
            previous = latest
        return self._build_snapshot(target, previous, screenshot, unsettled)

    def record_step(self, target: Target, event: InputEvent | None, index: int) -> TraceStep:
        """
        Dispatch one event (None just observes) and capture the settled result.

        DeviceUnreachable propagates to the caller; a malformed dump or a
        foreign foreground app only costs this step.
        """
        try:
            if event is not None:
                self.adapter.dispatch(target, event)
            snap = self.settle(target) if event is not None else self.snapshot(target)
        except (MalformedDump, AppNotForeground) as exc:
            logger.warning("%s step %d skipped: %s", target.identifier, index, exc)
            return TraceStep(index=index, event=event, error=f"{type(exc).__name__}: {exc}")
        return step_from_snapshot(index, event, snap)

    def record(
        self,
        target: Target,
        script: list[InputEvent],
        cancel_event: threading.Event | None = None,
    ) -> NavigationTrace:
        """Replay the whole script on one target."""
        steps: list[TraceStep] = []
        for index, event in enumerate(script):
            if cancel_event is not None and cancel_event.is_set():
                return NavigationTrace(target.identifier, target.platform, tuple(steps), cancelled=True)
            try:
                steps.append(self.record_step(target, event, index))
            except DeviceUnreachable as exc:
                logger.error("%s unreachable at step %d: %s", target.identifier, index, exc)
                return NavigationTrace(
                    target.identifier, target.platform, tuple(steps), aborted=True, abort_reason=str(exc)
                )
        return NavigationTrace(target.identifier, target.platform, tuple(steps))


@dataclass(frozen=True)
class StepVerdict:
    index: int
    status: str
    native_screen: str | None = None
    ported_screen: str | None = None
    native_focus: NodeRef | None = None
    ported_focus: NodeRef | None = None
    reason: str | None = None

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "status": self.status,
            "nativeScreen": self.native_screen,
            "portedScreen": self.ported_screen,
            "nativeFocus": self.native_focus.to_dict() if self.native_focus else None,
            "portedFocus": self.ported_focus.to_dict() if self.ported_focus else None,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class TraceEquivalence:
    equivalent: bool
    divergence: StepVerdict | None
    steps: tuple[StepVerdict, ...]
    skipped_steps: tuple[int, ...] = ()

    def to_dict(self) -> dict:
        return {
            "equivalent": self.equivalent,
            "divergence": self.divergence.to_dict() if self.divergence else None,
            "skippedSteps": list(self.skipped_steps),
            "steps": [step.to_dict() for step in self.steps],
        }


def _step_verdict(
    native: TraceStep,
    ported: TraceStep,
    config: ParityConfig,
    comparison: ComparisonResult | None,
) -> StepVerdict:
    observed = {
        "index": native.index,
        "native_screen": native.screen_id,
        "ported_screen": ported.screen_id,
        "native_focus": native.focused,
        "ported_focus": ported.focused,
    }
    if native.skipped or ported.skipped:
        reason = native.error or ported.error
        return StepVerdict(status="skipped", reason=reason, **observed)

    if config.canonical_screen(native.screen_id) != config.canonical_screen(ported.screen_id):
        return StepVerdict(
            status="diverged",
            reason=f"screen {native.screen_id!r} != {ported.screen_id!r}",
            **observed,
        )

    if native.focused_path is None and ported.focused_path is None:
        return StepVerdict(status="match", **observed)
    if native.focused_path is None or ported.focused_path is None:
        return StepVerdict(status="diverged", reason="focus present on one side only", **observed)

    if comparison is None:
        comparison = compare(native.snapshot, ported.snapshot, config)
    if comparison.ported_for(native.focused_path) != ported.focused_path:
        return StepVerdict(status="diverged", reason="focused elements do not match", **observed)
    return StepVerdict(status="match", **observed)


def compare_traces(
    native: NavigationTrace,
    ported: NavigationTrace,
    config: ParityConfig | None = None,
    comparisons: dict[int, ComparisonResult] | None = None,
) -> TraceEquivalence:
    """
    Check two traces for equivalence and locate the first divergence.

    Args:
        native: Trace recorded on the native target
        ported: Trace recorded on the ported target
        config: Supplies screenAliasMap and the matcher settings
        comparisons: Already computed per-step snapshot comparisons, by step index

    Returns:
        TraceEquivalence: Per-step verdicts, skipped steps and the first divergence
    """
    config = config or ParityConfig()
    comparisons = comparisons or {}
    verdicts: list[StepVerdict] = []
    divergence: StepVerdict | None = None

    for native_step, ported_step in zip(native.steps, ported.steps):
        verdict = _step_verdict(native_step, ported_step, config, comparisons.get(native_step.index))
        verdicts.append(verdict)
        if verdict.status == "diverged" and divergence is None:
            divergence = verdict

    if divergence is None and len(native.steps) != len(ported.steps):
        index = min(len(native.steps), len(ported.steps))
        longer = native.steps if len(native.steps) > len(ported.steps) else ported.steps
        extra = longer[index]
        divergence = StepVerdict(
            index=index,
            status="diverged",
            native_screen=extra.screen_id if longer is native.steps else None,
            ported_screen=extra.screen_id if longer is ported.steps else None,
            reason=f"trace length {len(native.steps)} != {len(ported.steps)}",
        )

    skipped = tuple(v.index for v in verdicts if v.status == "skipped")
    return TraceEquivalence(
        equivalent=divergence is None,
        divergence=divergence,
        steps=tuple(verdicts),
        skipped_steps=skipped,
    )
