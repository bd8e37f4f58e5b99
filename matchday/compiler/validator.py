"""Step output validation against recorded traces.

After a troubleshoot run, each step's parsed output is available as the
``ts-parse-<step id>`` callback trace. This module checks those outputs
against the ``validation`` rules declared in the manifest, falling back
to the final-output trace when a step's diagnostic trace is absent.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any, Literal, Protocol

from pydantic import BaseModel, Field

from matchday.compiler.compiler import FINAL_STEP, diagnostic_labels
from matchday.compiler.manifest import ManifestStep, WorkflowManifest


class TraceLike(Protocol):
    action: str
    response_payload: Any


class CheckResult(BaseModel):
    check: str
    passed: bool
    detail: str = ""


class StepValidationResult(BaseModel):
    step_id: str
    step_name: str
    status: Literal["pass", "fail", "missing"]
    source: Literal["diagnostic", "final", "none"] = "none"
    checks: list[CheckResult] = Field(default_factory=list)


class ValidationReport(BaseModel):
    workflow_id: str
    manifest_version: str
    steps_checked: int
    passed: int
    failed: int
    missing: int
    steps: list[StepValidationResult]

    @property
    def ok(self) -> bool:
        return self.failed == 0 and self.missing == 0


def _is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (str, list, dict)):
        return len(value) > 0
    return True


def _run_checks(step: ManifestStep, data: dict[str, Any]) -> list[CheckResult]:
    rules = step.validation
    checks: list[CheckResult] = []
    if rules is None:
        return checks

    for key in rules.required:
        present = _is_present(data.get(key))
        checks.append(
            CheckResult(
                check=f"required:{key}",
                passed=present,
                detail="" if present else f"'{key}' is missing or empty",
            )
        )

    for key, minimum in rules.min_count.items():
        value = data.get(key)
        count = len(value) if isinstance(value, (list, dict, str)) else 0
        checks.append(
            CheckResult(
                check=f"minCount:{key}>={minimum}",
                passed=count >= minimum,
                detail=f"found {count}",
            )
        )
    return checks


def _latest_by_action(traces: Iterable[TraceLike]) -> dict[str, Any]:
    latest: dict[str, Any] = {}
    for trace in traces:
        latest[trace.action] = trace.response_payload
    return latest


def validate_step_traces(
    manifest: WorkflowManifest,
    traces: Iterable[TraceLike],
    up_to_step: str | None = None,
) -> ValidationReport:
    """Check recorded step outputs of one run against the manifest rules.

    ``traces`` should be the run's trace rows in attempt order; the last
    row per action wins. Steps without rules pass automatically.
    """
    by_action = _latest_by_action(traces)
    final_payload = by_action.get(FINAL_STEP)
    final_data = final_payload.get("data") if isinstance(final_payload, dict) else None

    steps = list(manifest.steps)
    if up_to_step is not None:
        index = manifest.step_index(up_to_step)
        if index is not None:
            steps = steps[: index + 1]

    results: list[StepValidationResult] = []
    for step in steps:
        parse_label = diagnostic_labels(step)[2]
        data: dict[str, Any] | None = None
        source: Literal["diagnostic", "final", "none"] = "none"

        payload = by_action.get(parse_label)
        if isinstance(payload, dict):
            data, source = payload, "diagnostic"
        elif isinstance(final_data, dict) and step.output_key and step.output_key in final_data:
            data, source = {step.output_key: final_data[step.output_key]}, "final"

        if step.validation is None:
            results.append(
                StepValidationResult(step_id=step.id, step_name=step.name, status="pass", source=source)
            )
            continue

        if data is None:
            results.append(StepValidationResult(step_id=step.id, step_name=step.name, status="missing"))
            continue

        checks = _run_checks(step, data)
        status = "pass" if all(c.passed for c in checks) else "fail"
        results.append(
            StepValidationResult(
                step_id=step.id, step_name=step.name, status=status, source=source, checks=checks
            )
        )

    return ValidationReport(
        workflow_id=manifest.id,
        manifest_version=manifest.version,
        steps_checked=len(results),
        passed=sum(1 for r in results if r.status == "pass"),
        failed=sum(1 for r in results if r.status == "fail"),
        missing=sum(1 for r in results if r.status == "missing"),
        steps=results,
    )
