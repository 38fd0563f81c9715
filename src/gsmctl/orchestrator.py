"""Update workflow: stop, fetch, apply config, start, verify.

Only starting the server and verifying its health are hard gates. A failed
stop or fetch is logged and the workflow continues with whatever binaries
are installed, because keeping the server available matters more than a
complete update.
"""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from .config import LifecycleConfig
from .fetcher import FetchFailed, SteamCMDFetcher
from .health import HealthEvaluator
from .logging import OperationScope
from .process import ProcessControlError, ProcessController
from .server_config import ServerConfigError, write_server_config


class UpdateStep(str, Enum):
    """Ordered steps of the update workflow."""

    STOP_SERVER = "stop-server"
    FETCH_PACKAGE = "fetch-package"
    APPLY_CONFIG = "apply-config"
    START_SERVER = "start-server"
    VERIFY_HEALTH = "verify-health"


class StepPolicy(str, Enum):
    """What the workflow does when a step fails."""

    CONTINUE = "continue"
    ABORT = "abort"


STEP_ORDER: tuple[UpdateStep, ...] = (
    UpdateStep.STOP_SERVER,
    UpdateStep.FETCH_PACKAGE,
    UpdateStep.APPLY_CONFIG,
    UpdateStep.START_SERVER,
    UpdateStep.VERIFY_HEALTH,
)

STEP_POLICY: dict[UpdateStep, StepPolicy] = {
    UpdateStep.STOP_SERVER: StepPolicy.CONTINUE,
    UpdateStep.FETCH_PACKAGE: StepPolicy.CONTINUE,
    UpdateStep.APPLY_CONFIG: StepPolicy.CONTINUE,
    UpdateStep.START_SERVER: StepPolicy.ABORT,
    UpdateStep.VERIFY_HEALTH: StepPolicy.ABORT,
}


@dataclass(frozen=True, slots=True)
class StepOutcome:
    """Result of a single workflow step."""

    step: UpdateStep
    ok: bool
    message: str
    detail: str | None = None

    @property
    def policy(self) -> StepPolicy:
        """Return the failure policy attached to this step."""
        return STEP_POLICY[self.step]


@dataclass(slots=True)
class UpdateReport:
    """Ordered step outcomes of one update run."""

    outcomes: list[StepOutcome] = field(default_factory=list)
    aborted_at: UpdateStep | None = None

    @property
    def succeeded(self) -> bool:
        """Return ``True`` when no hard gate failed and every gate ran."""
        if self.aborted_at is not None:
            return False
        completed = {outcome.step for outcome in self.outcomes}
        return UpdateStep.VERIFY_HEALTH in completed

    @property
    def warnings(self) -> list[StepOutcome]:
        """Return the failed steps the workflow continued past."""
        return [
            outcome
            for outcome in self.outcomes
            if not outcome.ok and outcome.step is not self.aborted_at
        ]

    def outcome(self, step: UpdateStep) -> StepOutcome | None:
        """Return the outcome for *step* if it ran."""
        for outcome in self.outcomes:
            if outcome.step is step:
                return outcome
        return None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "succeeded": self.succeeded,
            "aborted_at": self.aborted_at.value if self.aborted_at else None,
            "steps": [
                {
                    "step": outcome.step.value,
                    "ok": outcome.ok,
                    "policy": outcome.policy.value,
                    "message": outcome.message,
                    "detail": outcome.detail,
                }
                for outcome in self.outcomes
            ],
        }


def _output_tail(output: str) -> str | None:
    """Return the last non-empty line of SteamCMD output."""
    for line in reversed(output.splitlines()):
        if line.strip():
            return line.strip()
    return None


class UpdateOrchestrator:
    """Compose the process controller, fetcher and health evaluator."""

    def __init__(
        self,
        config: LifecycleConfig,
        controller: ProcessController,
        fetcher: SteamCMDFetcher,
        evaluator: HealthEvaluator,
        *,
        validate: bool = True,
    ) -> None:
        """Store collaborators used by each step."""
        self.config = config
        self.controller = controller
        self.fetcher = fetcher
        self.evaluator = evaluator
        self.validate = validate

    def run(self, op: OperationScope | None = None) -> UpdateReport:
        """Execute the workflow, honouring each step's failure policy."""
        handlers: dict[UpdateStep, Callable[[], StepOutcome]] = {
            UpdateStep.STOP_SERVER: self._stop_server,
            UpdateStep.FETCH_PACKAGE: self._fetch_package,
            UpdateStep.APPLY_CONFIG: self._apply_config,
            UpdateStep.START_SERVER: self._start_server,
            UpdateStep.VERIFY_HEALTH: self._verify_health,
        }
        report = UpdateReport()
        for step in STEP_ORDER:
            outcome = handlers[step]()
            report.outcomes.append(outcome)
            if outcome.ok:
                if op is not None:
                    op.add_step(step.value, status="success", detail=outcome.message)
                continue
            if outcome.policy is StepPolicy.ABORT:
                report.aborted_at = step
                if op is not None:
                    op.add_step(step.value, status="error", detail=outcome.message)
                break
            if op is not None:
                op.add_step(step.value, status="warning", detail=outcome.message)
        return report

    # Steps -------------------------------------------------------------
    def _stop_server(self) -> StepOutcome:
        step = UpdateStep.STOP_SERVER
        try:
            result = self.controller.stop(
                timeout_seconds=self.config.lifecycle.stop_timeout_seconds
            )
        except ProcessControlError as exc:
            return StepOutcome(step, False, f"Stop failed: {exc}")
        if not result.succeeded:
            return StepOutcome(
                step, False, "Server survived forced kill; continuing.", detail=result.value
            )
        return StepOutcome(step, True, f"Stop outcome: {result.value}.", detail=result.value)

    def _fetch_package(self) -> StepOutcome:
        step = UpdateStep.FETCH_PACKAGE
        try:
            result = self.fetcher.fetch(
                self.config.install_dir,
                self.config.server.app_id,
                validate=self.validate,
            )
        except FetchFailed as exc:
            return StepOutcome(step, False, f"{exc} Continuing with existing binaries.")
        if not result.ok:
            return StepOutcome(
                step,
                False,
                f"SteamCMD exited with code {result.returncode}; "
                "continuing with existing binaries.",
                detail=_output_tail(result.output),
            )
        return StepOutcome(
            step,
            True,
            f"SteamCMD completed after {result.attempts} attempt(s).",
            detail=_output_tail(result.output),
        )

    def _apply_config(self) -> StepOutcome:
        step = UpdateStep.APPLY_CONFIG
        try:
            changed = write_server_config(self.config)
        except ServerConfigError as exc:
            return StepOutcome(step, False, str(exc))
        return StepOutcome(
            step, True, "Server config updated." if changed else "Server config unchanged."
        )

    def _start_server(self) -> StepOutcome:
        step = UpdateStep.START_SERVER
        try:
            handle, spawned = self.controller.launch(
                self.config.executable_path,
                self.config.install_dir,
                self.config.lifecycle.start_grace_seconds,
            )
        except ProcessControlError as exc:
            return StepOutcome(step, False, f"{type(exc).__name__}: {exc}")
        verb = "Started" if spawned else "Already running"
        return StepOutcome(step, True, f"{verb} (pid {handle.pid}).", detail=str(handle.pid))

    def _verify_health(self) -> StepOutcome:
        step = UpdateStep.VERIFY_HEALTH
        report = self.evaluator.run()
        if not report.healthy:
            failed = ", ".join(result.id for result in report.failures)
            return StepOutcome(step, False, f"Health check failed: {failed}.", detail=failed)
        return StepOutcome(step, True, "Server healthy.")


__all__ = [
    "STEP_ORDER",
    "STEP_POLICY",
    "StepOutcome",
    "StepPolicy",
    "UpdateOrchestrator",
    "UpdateReport",
    "UpdateStep",
]
