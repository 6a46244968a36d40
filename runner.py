"""
Step orchestration for one verification run.

Both targets are driven in lockstep on their own worker thread. Each logical
step is a barrier: the comparator only runs once both sides have produced
their snapshot for that step.
"""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime, timezone
from pathlib import Path

from adbdevicemanager import InputEvent, Target
from comparator import compare
from config import ParityConfig
from errors import DeviceUnreachable
from navigation import FlowRecorder, NavigationTrace, TraceStep, compare_traces
from report import INITIAL_STEP, ParityReport, StepComparison, build_report

logger = logging.getLogger(__name__)


def compare_steps(native: TraceStep, ported: TraceStep, config: ParityConfig) -> StepComparison:
    if native.skipped or ported.skipped:
        reasons = [f"{side}: {step.error}" for side, step in (("native", native), ("ported", ported)) if step.skipped]
        return StepComparison(index=native.index, status="skipped", reason="; ".join(reasons))
    return StepComparison(
        index=native.index,
        status="completed",
        comparison=compare(native.snapshot, ported.snapshot, config),
    )


class ParityRun:
    def __init__(
        self,
        native_adapter,
        ported_adapter,
        native_target: Target,
        ported_target: Target,
        script: list[InputEvent],
        config: ParityConfig | None = None,
        launch: bool = True,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.config = config or ParityConfig()
        self.native_target = native_target
        self.ported_target = ported_target
        self.native_adapter = native_adapter
        self.ported_adapter = ported_adapter
        self.native_recorder = FlowRecorder(native_adapter, self.config)
        self.ported_recorder = FlowRecorder(ported_adapter, self.config)
        self.script = list(script)
        self.launch = launch
        self.cancel_event = cancel_event or threading.Event()
        self.run_id = datetime.now().strftime("%Y%m%d_%H%M%S") + "_" + uuid.uuid4().hex[:6]

    def cancel(self) -> None:
        """Stop after the step in progress; completed work is kept."""
        self.cancel_event.set()

    def _both(self, executor: ThreadPoolExecutor, native_fn, ported_fn):
        native_future = executor.submit(native_fn)
        ported_future = executor.submit(ported_fn)
        wait([native_future, ported_future])
        return native_future, ported_future

    def _unreachable(self, *futures) -> DeviceUnreachable | None:
        for future in futures:
            exc = future.exception()
            if isinstance(exc, DeviceUnreachable):
                return exc
            if exc is not None:
                raise exc
        return None

    def _save_artifacts(self, steps: list[tuple[TraceStep, TraceStep]]) -> dict[str, str]:
        artifacts: dict[str, str] = {}
        if not self.config.capture_screenshots:
            return artifacts
        out_dir = Path(self.config.artifacts_dir) / self.run_id
        for native_step, ported_step in steps:
            for target, step in ((self.native_target, native_step), (self.ported_target, ported_step)):
                if step.screenshot is None:
                    continue
                label = "initial" if step.index == INITIAL_STEP else f"step{step.index:03d}"
                path = step.screenshot.save_thumbnail(out_dir / f"{target.platform}_{label}.png")
                artifacts[f"{target.identifier}:{label}"] = str(path)
        return artifacts

    def execute(self) -> ParityReport:
        """
        Launch both apps, replay the script on both in lockstep and build the report.

        DeviceUnreachable on either side aborts the run; the report then
        carries everything computed so far and is marked incomplete.
        """
        started = datetime.now(timezone.utc)
        comparisons: list[StepComparison] = []
        native_steps: list[TraceStep] = []
        ported_steps: list[TraceStep] = []
        pairs_with_shots: list[tuple[TraceStep, TraceStep]] = []
        abort_reason: str | None = None
        abort_side: str | None = None
        cancelled = False

        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="parity") as executor:
            if self.launch:
                futures = self._both(
                    executor,
                    lambda: self.native_adapter.launch(self.native_target),
                    lambda: self.ported_adapter.launch(self.ported_target),
                )
                error = self._unreachable(*futures)
                if error is not None:
                    abort_reason = str(error)
                    abort_side = "native" if isinstance(futures[0].exception(), DeviceUnreachable) else "ported"
                    logger.error("Run %s aborted at launch: %s", self.run_id, error)

            plan = [(INITIAL_STEP, None)] + list(enumerate(self.script))
            if abort_reason is not None:
                plan = []
            for index, event in plan:
                if self.cancel_event.is_set():
                    logger.info("Run %s cancelled before step %d", self.run_id, index)
                    cancelled = True
                    break

                native_future, ported_future = self._both(
                    executor,
                    lambda: self.native_recorder.record_step(self.native_target, event, index),
                    lambda: self.ported_recorder.record_step(self.ported_target, event, index),
                )
                error = self._unreachable(native_future, ported_future)
                if error is not None:
                    abort_reason = str(error)
                    abort_side = "native" if isinstance(native_future.exception(), DeviceUnreachable) else "ported"
                    logger.error("Run %s aborted at step %d: %s", self.run_id, index, error)
                    break

                native_step = native_future.result()
                ported_step = ported_future.result()
                step_comparison = compare_steps(native_step, ported_step, self.config)
                comparisons.append(step_comparison)
                pairs_with_shots.append((native_step, ported_step))
                if index != INITIAL_STEP:
                    native_steps.append(native_step)
                    ported_steps.append(ported_step)
                logger.info(
                    "Step %d %s (%d deltas)", index, step_comparison.status, len(step_comparison.deltas)
                )

        native_trace = NavigationTrace(
            self.native_target.identifier,
            self.native_target.platform,
            tuple(native_steps),
            aborted=abort_side == "native",
            abort_reason=abort_reason if abort_side == "native" else None,
            cancelled=cancelled,
        )
        ported_trace = NavigationTrace(
            self.ported_target.identifier,
            self.ported_target.platform,
            tuple(ported_steps),
            aborted=abort_side == "ported",
            abort_reason=abort_reason if abort_side == "ported" else None,
            cancelled=cancelled,
        )
        equivalence = compare_traces(
            native_trace,
            ported_trace,
            self.config,
            comparisons={c.index: c.comparison for c in comparisons if c.comparison is not None},
        )

        return build_report(
            run_id=self.run_id,
            started_at=started,
            native_target=self.native_target,
            ported_target=self.ported_target,
            config=self.config,
            steps=comparisons,
            native_trace=native_trace,
            ported_trace=ported_trace,
            equivalence=equivalence,
            planned_steps=len(self.script),
            cancelled=cancelled,
            abort_reason=abort_reason,
            artifacts=self._save_artifacts(pairs_with_shots),
        )
