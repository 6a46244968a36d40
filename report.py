"""
Parity report aggregation.

Everything here is bookkeeping: thresholds and policies were already applied
by the comparator and the trace check.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from adbdevicemanager import Target
from comparator import SEVERITY_ORDER, ComparisonResult, ElementDelta, max_severity
from config import ParityConfig
from navigation import NavigationTrace, TraceEquivalence

INITIAL_STEP = -1


@dataclass(frozen=True)
class StepComparison:
    """Element comparison of one logical step (INITIAL_STEP is the post-launch screen)."""

    index: int
    status: str
    reason: str | None = None
    comparison: ComparisonResult | None = None

    @property
    def deltas(self) -> tuple[ElementDelta, ...]:
        return self.comparison.deltas if self.comparison else ()

    @property
    def completed(self) -> bool:
        return self.status == "completed"

    @property
    def label(self) -> str:
        return "initial" if self.index == INITIAL_STEP else str(self.index)

    def to_dict(self) -> dict:
        return {
            "step": self.label,
            "status": self.status,
            "reason": self.reason,
            "maxSeverity": max_severity(d.severity for d in self.deltas),
            "deltas": [delta.to_dict() for delta in self.deltas],
        }


def _target_dict(target: Target) -> dict:
    return {
        "id": target.identifier,
        "platform": target.platform,
        "device": target.device_serial,
        "package": target.package,
        "resolution": str(target.resolution) if target.resolution else None,
    }


@dataclass(frozen=True)
class ParityReport:
    run_id: str
    started_at: datetime
    native_target: Target
    ported_target: Target
    steps: tuple[StepComparison, ...]
    native_trace: NavigationTrace
    ported_trace: NavigationTrace
    equivalence: TraceEquivalence
    gate_severity: str = "warn"
    planned_steps: int = 0
    cancelled: bool = False
    abort_reason: str | None = None
    tolerances: dict = field(default_factory=dict)
    artifacts: dict = field(default_factory=dict)

    @property
    def element_deltas(self) -> tuple[ElementDelta, ...]:
        return tuple(delta for step in self.steps for delta in step.deltas)

    def deltas_by_severity(self) -> dict[str, list[ElementDelta]]:
        grouped: dict[str, list[ElementDelta]] = {name: [] for name in SEVERITY_ORDER}
        for delta in self.element_deltas:
            grouped[delta.severity].append(delta)
        return grouped

    @property
    def completed_steps(self) -> list[str]:
        return [step.label for step in self.steps if step.completed]

    @property
    def skipped_steps(self) -> list[str]:
        return [step.label for step in self.steps if not step.completed]

    @property
    def incomplete(self) -> bool:
        # +1 for the post-launch comparison
        return self.cancelled or self.abort_reason is not None or len(self.steps) < self.planned_steps + 1

    @property
    def max_severity(self) -> str:
        severities = [delta.severity for delta in self.element_deltas]
        if not self.equivalence.equivalent:
            severities.append("fail")
        return max_severity(severities)

    def passes_gate(self, gate_severity: str | None = None) -> bool:
        gate = gate_severity or self.gate_severity
        if self.incomplete or not self.equivalence.equivalent:
            return False
        return SEVERITY_ORDER[self.max_severity] <= SEVERITY_ORDER[gate]

    def to_dict(self) -> dict:
        grouped = self.deltas_by_severity()
        return {
            "runId": self.run_id,
            "startedAt": self.started_at.isoformat(),
            "targets": {
                "native": _target_dict(self.native_target),
                "ported": _target_dict(self.ported_target),
            },
            "tolerances": dict(self.tolerances),
            "summary": {
                "maxSeverity": self.max_severity,
                "passed": self.passes_gate(),
                "gateSeverity": self.gate_severity,
                "incomplete": self.incomplete,
                "cancelled": self.cancelled,
                "abortReason": self.abort_reason,
                "counts": {severity: len(items) for severity, items in grouped.items()},
                "completedSteps": self.completed_steps,
                "skippedSteps": self.skipped_steps,
                "tracesEquivalent": self.equivalence.equivalent,
            },
            "steps": [step.to_dict() for step in self.steps],
            "navigation": {
                "equivalence": self.equivalence.to_dict(),
                "native": self.native_trace.to_dict(),
                "ported": self.ported_trace.to_dict(),
            },
            "artifacts": dict(self.artifacts),
        }

    def write_json(self, output_path: str | Path) -> Path:
        out = Path(output_path)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")
        return out

    def render_text(self, max_items: int = 20) -> str:
        """Human-readable summary for the terminal."""
        grouped = self.deltas_by_severity()
        lines = [
            f"Parity run {self.run_id}: {'PASS' if self.passes_gate() else 'FAIL'} "
            f"(max severity {self.max_severity}, gate {self.gate_severity})",
            f"  native: {self.native_target.identifier} ({self.native_target.package})",
            f"  ported: {self.ported_target.identifier} ({self.ported_target.package})",
            f"  elements: {len(grouped['ok'])} ok, {len(grouped['warn'])} warn, {len(grouped['fail'])} fail",
            f"  steps: {len(self.completed_steps)} completed, {len(self.skipped_steps)} skipped",
        ]
        if self.incomplete:
            reason = self.abort_reason or ("cancelled" if self.cancelled else "not all steps ran")
            lines.append(f"  INCOMPLETE: {reason}")
        for step in self.steps:
            if not step.completed:
                lines.append(f"  step {step.label} skipped: {step.reason}")

        problems = grouped["fail"] + grouped["warn"]
        if problems:
            lines.append("Element issues:")
        for delta in problems[:max_items]:
            ref = delta.native or delta.ported
            where = "/".join(str(i) for i in ref.path) or "root"
            label = f" {ref.text!r}" if ref.text else ""
            lines.append(
                f"  [{delta.severity}] {delta.status} {ref.kind}{label} at {where} "
                f"dx={delta.dx:+.3f} dy={delta.dy:+.3f} dw={delta.dwidth:+.3f} dh={delta.dheight:+.3f}"
                + ("" if delta.focus_agreement else " focus-mismatch")
            )
        if len(problems) > max_items:
            lines.append(f"  ... ({len(problems) - max_items} more)")

        if self.equivalence.equivalent:
            lines.append("Navigation: equivalent")
        else:
            div = self.equivalence.divergence
            lines.append(
                f"Navigation: diverged at step {div.index}: {div.reason} "
                f"(native screen {div.native_screen!r}, ported screen {div.ported_screen!r})"
            )
        return "\n".join(lines)


def build_report(
    run_id: str,
    started_at: datetime,
    native_target: Target,
    ported_target: Target,
    config: ParityConfig,
    steps: list[StepComparison],
    native_trace: NavigationTrace,
    ported_trace: NavigationTrace,
    equivalence: TraceEquivalence,
    planned_steps: int,
    cancelled: bool = False,
    abort_reason: str | None = None,
    artifacts: dict | None = None,
) -> ParityReport:
    return ParityReport(
        run_id=run_id,
        started_at=started_at,
        native_target=native_target,
        ported_target=ported_target,
        steps=tuple(steps),
        native_trace=native_trace,
        ported_trace=ported_trace,
        equivalence=equivalence,
        gate_severity=config.gate_severity,
        planned_steps=planned_steps,
        cancelled=cancelled,
        abort_reason=abort_reason,
        tolerances={"toleranceOk": config.tolerance_ok, "toleranceWarn": config.tolerance_warn},
        artifacts=dict(artifacts or {}),
    )
