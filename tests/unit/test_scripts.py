"""Unit tests for the step-script interpreter."""

from datetime import UTC, datetime

from matchday.compiler.scripts import (
    CREDENTIAL_FIELD,
    REQUEST_FIELD,
    CallbackScript,
    FinalAssemblyScript,
    HeadlineRef,
    InputBinding,
    OutputRef,
    ParseScript,
    PrepareScript,
    build_callback_body,
    extract_json_object,
    format_value,
    get_path,
    run_final,
    run_parse,
    run_prepare,
    sanitize,
)


def _gemini(text: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


class TestGetPath:
    def test_nested_dicts_and_list_indexes(self):
        data = {"a": {"b": [{"c": 1}, {"c": 2}]}}

        assert get_path(data, "a.b.1.c") == 2
        assert get_path(data, "") is data

    def test_missing_segments_are_none(self):
        assert get_path({"a": {}}, "a.b.c") is None
        assert get_path({"a": [1]}, "a.5") is None
        assert get_path("text", "a") is None


class TestFormatValue:
    def test_list_items_formatted_and_joined(self):
        value = [{"title": "One"}, {"title": "Two"}]

        assert format_value(value, "{index}. {title}") == "1. One\n2. Two"

    def test_scalar_item_available_as_item(self):
        assert format_value(["x", "y"], "- {item}") == "- x\n- y"

    def test_unknown_fields_render_empty(self):
        assert format_value({"title": "T"}, "{title} ({author})") == "T ()"

    def test_broken_template_renders_empty(self):
        assert format_value(["a"], "{item.missing}") == ""
        assert format_value("a", "{0}") == ""

    def test_no_template_stringifies(self):
        assert format_value(None, None) == ""
        assert format_value(["a", "b"], None) == "a, b"
        assert format_value({"k": 1}, None) == '{"k": 1}'


def test_sanitize_strips_control_characters():
    assert sanitize("a\x00b\x07c\nd") == "a b c\nd"


class TestRunPrepare:
    def _script(self, **overrides):
        data = dict(
            step_id="gather",
            prompt="Stories about {topic}.",
            inputs=[InputBinding(name="topic", source="trigger", path="payload.topic")],
            first_step=True,
        )
        data.update(overrides)
        return PrepareScript(**data)

    def test_first_step_carries_trigger_context_and_credential(self):
        trigger = {
            "traceId": "trace_1",
            "executionId": "exec-1",
            "callbackUrl": "https://cb",
            "recentTopics": ["old"],
            "secrets": {CREDENTIAL_FIELD: "key-1"},
            "payload": {"topic": "Arsenal"},
        }

        out = run_prepare(self._script(), trigger=trigger)

        assert out["traceId"] == "trace_1"
        assert out["callbackUrl"] == "https://cb"
        assert out["recentTopics"] == ["old"]
        assert out[CREDENTIAL_FIELD] == "key-1"
        assert out[REQUEST_FIELD]["contents"][0]["parts"][0]["text"] == "Stories about Arsenal."
        assert out[REQUEST_FIELD]["generationConfig"] == {"temperature": 0.3, "maxOutputTokens": 2048}
        assert "payload" not in out

    def test_later_step_reads_earlier_node_output(self):
        script = self._script(
            prompt="Pick:\n{stories}",
            inputs=[
                InputBinding(name="stories", source="node", node="Parse Gather", path="stories", format_expr="- {title}")
            ],
            first_step=False,
        )
        previous = {"traceId": "trace_1", CREDENTIAL_FIELD: "key-1", REQUEST_FIELD: {"old": True}}
        outputs = {"Parse Gather": {"stories": [{"title": "A"}, {"title": "B"}]}}

        out = run_prepare(script, trigger={}, previous=previous, outputs=outputs)

        assert out["traceId"] == "trace_1"
        assert out[CREDENTIAL_FIELD] == "key-1"
        assert out[REQUEST_FIELD]["contents"][0]["parts"][0]["text"] == "Pick:\n- A\n- B"

    def test_missing_binding_renders_empty(self):
        out = run_prepare(self._script(), trigger={"payload": {}})

        assert out[REQUEST_FIELD]["contents"][0]["parts"][0]["text"] == "Stories about ."
        assert out[CREDENTIAL_FIELD] == ""

    def test_append_bindings_follow_the_prompt(self):
        script = self._script(
            inputs=[
                InputBinding(name="topic", source="trigger", path="payload.topic"),
                InputBinding(
                    name="recentTopics", source="trigger", path="recentTopics", format_expr="- {item}", append=True
                ),
            ]
        )
        trigger = {"payload": {"topic": "Serie A"}, "recentTopics": ["x", "y"]}

        out = run_prepare(script, trigger=trigger)

        assert out[REQUEST_FIELD]["contents"][0]["parts"][0]["text"] == "Stories about Serie A.\n\n- x\n- y"


class TestExtractJsonObject:
    def test_fenced_json(self):
        assert extract_json_object('```json\n{"a": 1}\n```') == {"a": 1}

    def test_json_surrounded_by_prose(self):
        assert extract_json_object('Here you go: {"a": {"b": 2}} hope it helps') == {"a": {"b": 2}}

    def test_skips_spans_that_do_not_decode(self):
        assert extract_json_object('{not json} then {"ok": true}') == {"ok": True}

    def test_braces_inside_strings(self):
        assert extract_json_object('{"a": "}{"}') == {"a": "}{"}

    def test_garbage_gives_empty_dict(self):
        assert extract_json_object("no json here") == {}
        assert extract_json_object("") == {}
        assert extract_json_object(None) == {}
        assert extract_json_object('{"unterminated": ') == {}


class TestRunParse:
    def test_output_key_extracted_and_sliced(self):
        script = ParseScript(step_id="gather", output_key="stories", output_slice=2)
        prepare_output = {"traceId": "t", REQUEST_FIELD: {"x": 1}}

        out = run_parse(script, prepare_output, _gemini('```json\n{"stories": [1, 2, 3], "extra": 1}\n```'))

        assert out == {"traceId": "t", "stories": [1, 2]}

    def test_missing_key_defaults_to_empty_list(self):
        script = ParseScript(step_id="gather", output_key="stories")

        assert run_parse(script, {}, _gemini("sorry, I cannot")) == {"stories": []}

    def test_without_output_key_merges_everything(self):
        script = ParseScript(step_id="s")

        assert run_parse(script, None, '{"a": 1, "b": 2}') == {"a": 1, "b": 2}

    def test_unexpected_response_shape(self):
        script = ParseScript(step_id="s", output_key="k")

        assert run_parse(script, {}, {"unexpected": True}) == {"k": []}


class TestCallbackBody:
    def test_milestone_projects_fields(self):
        script = CallbackScript(workflow_id="wf", step="gather-done", step_index=1, fields=["stories"])

        body = build_callback_body(
            script, {"stories": [1], CREDENTIAL_FIELD: "secret"}, trace_id="trace_1", execution_id="e1"
        )

        assert body == {
            "workflowId": "wf",
            "step": "gather-done",
            "stepIndex": 1,
            "traceId": "trace_1",
            "status": "in_progress",
            "output": {"stories": [1]},
            "executionId": "e1",
        }

    def test_internal_keys_never_leave(self):
        script = CallbackScript(workflow_id="wf", step="s", step_index=1)
        output = {"a": 1, CREDENTIAL_FIELD: "k", REQUEST_FIELD: {}, "secrets": {}, "callbackUrl": "u"}

        body = build_callback_body(script, output, trace_id="t")

        assert body["output"] == {"a": 1}
        assert "executionId" not in body

    def test_diagnostic_carries_details(self):
        script = CallbackScript(
            workflow_id="wf", step="ts-parse-gather", step_index=3, mode="diagnostic", step_name="Gather"
        )
        now = datetime(2026, 1, 2, tzinfo=UTC)

        body = build_callback_body(script, {}, trace_id="t", now=now)

        assert body["details"] == {
            "mode": "troubleshoot",
            "pipeline": "wf",
            "stepName": "Gather",
            "timestamp": now.isoformat(),
        }


class TestRunFinal:
    def test_collects_outputs_and_headline(self):
        script = FinalAssemblyScript(
            workflow_id="wf",
            manifest_version="1.0.0",
            steps_completed=["gather", "choose"],
            outputs=[
                OutputRef(output_key="stories", node="Parse Gather"),
                OutputRef(output_key="pick", node="Parse Choose"),
            ],
            headline=HeadlineRef(output_key="pick", node="Parse Choose", field="sourceHeadline"),
        )
        outputs = {
            "Parse Gather": {"stories": [{"title": "A"}]},
            "Parse Choose": {"pick": {"sourceHeadline": "Big news"}},
        }
        now = datetime(2026, 3, 4, tzinfo=UTC)

        result = run_final(script, outputs, now=now)

        assert result["success"] is True
        assert result["data"] == {
            "pipeline": "wf",
            "stories": [{"title": "A"}],
            "pick": {"sourceHeadline": "Big news"},
            "sourceHeadline": "Big news",
        }
        assert result["metadata"]["stepsCompleted"] == 2
        assert result["metadata"]["executedAt"] == now.isoformat()

    def test_missing_outputs_and_headline_fallback(self):
        script = FinalAssemblyScript(
            workflow_id="wf",
            manifest_version="1.0.0",
            steps_completed=["gather"],
            outputs=[OutputRef(output_key="stories", node="Parse Gather")],
            headline=HeadlineRef(output_key="stories", node="Parse Gather", fallback="none"),
        )

        result = run_final(script, {})

        assert result["data"]["stories"] == []
        assert result["data"]["sourceHeadline"] == "none"
