"""Unit tests for step output validation against traces."""

from types import SimpleNamespace

from matchday.compiler import validate_step_traces


def _trace(action, payload):
    return SimpleNamespace(action=action, response_payload=payload)


def test_diagnostic_traces_pass(manifest):
    traces = [_trace("ts-parse-gather", {"stories": [1, 2, 3]})]

    report = validate_step_traces(manifest, traces)

    gather = report.steps[0]
    assert gather.status == "pass"
    assert gather.source == "diagnostic"
    assert [c.check for c in gather.checks] == ["required:stories", "minCount:stories>=2"]
    # "choose" has no rules
    assert report.steps[1].status == "pass"
    assert report.ok is True


def test_min_count_failure_reports_count(manifest):
    report = validate_step_traces(manifest, [_trace("ts-parse-gather", {"stories": [1]})])

    gather = report.steps[0]
    assert gather.status == "fail"
    assert gather.checks[1].passed is False
    assert gather.checks[1].detail == "found 1"
    assert report.failed == 1
    assert report.ok is False


def test_empty_required_value_fails(manifest):
    report = validate_step_traces(manifest, [_trace("ts-parse-gather", {"stories": []})])

    assert report.steps[0].checks[0].passed is False
    assert report.steps[0].checks[0].detail == "'stories' is missing or empty"


def test_falls_back_to_final_output(manifest):
    final = {"success": True, "data": {"stories": ["a", "b"], "pick": {}}}

    report = validate_step_traces(manifest, [_trace("final-output", final)])

    assert report.steps[0].status == "pass"
    assert report.steps[0].source == "final"


def test_no_data_is_missing(manifest):
    report = validate_step_traces(manifest, [_trace("gather-done", {"stories": [1, 2]})])

    assert report.steps[0].status == "missing"
    assert report.missing == 1


def test_latest_trace_per_action_wins(manifest):
    traces = [
        _trace("ts-parse-gather", {"stories": []}),
        _trace("ts-parse-gather", {"stories": [1, 2]}),
    ]

    assert validate_step_traces(manifest, traces).steps[0].status == "pass"


def test_up_to_step_limits_report(manifest):
    report = validate_step_traces(manifest, [], up_to_step="gather")

    assert report.steps_checked == 1
    assert [s.step_id for s in report.steps] == ["gather"]
