"""Step-script descriptors and their interpreter.

Each script node in a compiled graph (prepare, parse, callback, final
assembly) carries a declarative descriptor instead of generated code.
The descriptor is plain data: it serializes into the node's parameters at
the engine boundary, and the functions here interpret it so the same
behaviour can be exercised and verified in-process.

All interpreter functions are total over their inputs. Missing bindings
resolve to empty values and malformed model output parses to an empty
result; none of them raise on bad data.
"""

from __future__ import annotations

import json
import logging
import re
import string
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

MAX_BOUND_VALUE_CHARS = 10_000
REQUEST_FIELD = "requestBody"
CREDENTIAL_FIELD = "providerApiKey"
DEFAULT_TEXT_PATH = "candidates.0.content.parts.0.text"

# Keys that flow between nodes but never leave the graph in callbacks
INTERNAL_KEYS = frozenset({REQUEST_FIELD, CREDENTIAL_FIELD, "secrets", "callbackUrl"})

# Values copied from the trigger payload into the first prepare output
TRIGGER_CARRY_KEYS = ("traceId", "callbackUrl", "executionId", "recentTopics")

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_FENCE_OPEN = re.compile(r"^\s*```[a-zA-Z0-9_-]*\s*\n?")
_FENCE_CLOSE = re.compile(r"\n?\s*```\s*$")


class Script(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def to_params(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class InputBinding(Script):
    """Where one prompt placeholder gets its value."""

    name: str
    source: Literal["trigger", "previous", "node"]
    node: str | None = None
    path: str = ""
    format_expr: str | None = None
    append: bool = False


class PrepareScript(Script):
    kind: Literal["prepare"] = "prepare"
    step_id: str
    prompt: str
    inputs: list[InputBinding] = Field(default_factory=list)
    temperature: float = 0.3
    max_tokens: int = 2048
    first_step: bool = False


class ParseScript(Script):
    kind: Literal["parse"] = "parse"
    step_id: str
    output_key: str | None = None
    output_slice: int | None = None
    text_path: str = DEFAULT_TEXT_PATH


class CallbackScript(Script):
    kind: Literal["callback"] = "callback"
    workflow_id: str
    step: str
    step_index: int
    status: Literal["in_progress", "success", "failed"] = "in_progress"
    mode: Literal["milestone", "diagnostic", "final"] = "milestone"
    fields: list[str] | None = None
    step_name: str | None = None


class OutputRef(Script):
    output_key: str
    node: str


class HeadlineRef(OutputRef):
    field: str = "title"
    fallback: str = ""


class FinalAssemblyScript(Script):
    kind: Literal["assemble"] = "assemble"
    workflow_id: str
    manifest_version: str
    steps_completed: list[str]
    outputs: list[OutputRef] = Field(default_factory=list)
    headline: HeadlineRef | None = None


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------


def get_path(data: Any, path: str) -> Any:
    """Follow a dotted path through dicts and lists; None when absent."""
    if not path:
        return data
    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def sanitize(text: str) -> str:
    """Replace control characters with spaces and cap the length."""
    return _CONTROL_CHARS.sub(" ", text)[:MAX_BOUND_VALUE_CHARS]


def stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list) and all(isinstance(v, (str, int, float)) for v in value):
        return ", ".join(str(v) for v in value)
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


def _format_one(template: str, item: Any, index: int) -> str:
    fields: dict[str, Any] = {"item": item, "index": index}
    if isinstance(item, dict):
        fields.update(item)
    return string.Formatter().vformat(template, (), _MissingAsEmpty(fields))


class _MissingAsEmpty(dict):
    def __missing__(self, key: str) -> str:
        return ""


def format_value(value: Any, format_expr: str | None) -> str:
    """Render a resolved binding value.

    Without a template the value is stringified. With one, lists are
    formatted item by item and joined with newlines; anything else is
    formatted once. A template that cannot be applied renders as "".
    """
    if value is None:
        return ""
    if not format_expr:
        return stringify(value)
    try:
        if isinstance(value, list):
            return "\n".join(_format_one(format_expr, item, i) for i, item in enumerate(value, start=1))
        return _format_one(format_expr, value, 1)
    except (ValueError, IndexError, KeyError, AttributeError, TypeError) as e:
        logger.debug("format_expr %r failed: %s", format_expr, e)
        return ""


def without_internal(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if k not in INTERNAL_KEYS}


# ---------------------------------------------------------------------------
# Prepare
# ---------------------------------------------------------------------------


def resolve_binding(
    binding: InputBinding,
    *,
    trigger: dict[str, Any],
    previous: dict[str, Any],
    outputs: dict[str, dict[str, Any]],
) -> Any:
    if binding.source == "trigger":
        return get_path(trigger, binding.path)
    if binding.source == "previous":
        return get_path(previous, binding.path)
    if binding.node is None:
        return None
    return get_path(outputs.get(binding.node), binding.path)


def render_prompt(
    script: PrepareScript,
    *,
    trigger: dict[str, Any],
    previous: dict[str, Any],
    outputs: dict[str, dict[str, Any]],
) -> str:
    """Fill the prompt template.

    ``{name}`` placeholders are replaced where they stand; bindings marked
    ``append`` are concatenated after the template in declaration order.
    """
    prompt = script.prompt
    appended: list[str] = []
    for binding in script.inputs:
        value = resolve_binding(binding, trigger=trigger, previous=previous, outputs=outputs)
        rendered = format_value(value, binding.format_expr)
        if binding.append:
            if rendered:
                appended.append(rendered)
        else:
            prompt = prompt.replace("{" + binding.name + "}", sanitize(rendered))
    if appended:
        prompt = "\n\n".join([prompt, *appended])
    return prompt


def _resolve_credential(trigger: dict[str, Any], previous: dict[str, Any], first_step: bool) -> str:
    if first_step:
        for path in (f"secrets.{CREDENTIAL_FIELD}", CREDENTIAL_FIELD, "secrets.apiKey"):
            value = get_path(trigger, path)
            if isinstance(value, str) and value:
                return value
        return ""
    value = previous.get(CREDENTIAL_FIELD)
    return value if isinstance(value, str) else ""


def run_prepare(
    script: PrepareScript,
    *,
    trigger: dict[str, Any],
    previous: dict[str, Any] | None = None,
    outputs: dict[str, dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """Build the outbound generation request for a step."""
    previous = previous if isinstance(previous, dict) else {}
    outputs = outputs or {}
    trigger = trigger if isinstance(trigger, dict) else {}

    if script.first_step:
        carried = {k: trigger[k] for k in TRIGGER_CARRY_KEYS if k in trigger}
    else:
        carried = {k: v for k, v in previous.items() if k != REQUEST_FIELD}

    prompt = render_prompt(script, trigger=trigger, previous=previous, outputs=outputs)
    return {
        **carried,
        CREDENTIAL_FIELD: _resolve_credential(trigger, previous, script.first_step),
        REQUEST_FIELD: {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": script.temperature,
                "maxOutputTokens": script.max_tokens,
            },
        },
    }


# ---------------------------------------------------------------------------
# Parse
# ---------------------------------------------------------------------------


def strip_code_fences(text: str) -> str:
    return _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", text, count=1), count=1).strip()


def _balanced_spans(text: str):
    """Yield each top-level ``{...}`` span, honouring JSON string literals."""
    depth = 0
    start = -1
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"' and depth > 0:
            in_string = True
        elif ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                yield text[start : i + 1]


def extract_json_object(text: Any) -> dict[str, Any]:
    """Decode the first JSON object embedded in model output, or {}."""
    if not isinstance(text, str) or not text:
        return {}
    cleaned = strip_code_fences(text)
    for span in _balanced_spans(cleaned):
        try:
            decoded = json.loads(span)
        except (ValueError, RecursionError):
            continue
        if isinstance(decoded, dict):
            return decoded
    return {}


def extract_text(response: Any, text_path: str = DEFAULT_TEXT_PATH) -> str:
    if isinstance(response, str):
        return response
    text = get_path(response, text_path)
    return text if isinstance(text, str) else "{}"


def run_parse(script: ParseScript, prepare_output: dict[str, Any] | None, response: Any) -> dict[str, Any]:
    """Turn a raw generation response into the step's output."""
    parsed = extract_json_object(extract_text(response, script.text_path))

    if script.output_key:
        value = parsed.get(script.output_key)
        if value is None:
            value = []
        if isinstance(value, list) and script.output_slice is not None:
            value = value[: script.output_slice]
        extracted: dict[str, Any] = {script.output_key: value}
    else:
        extracted = parsed

    base = prepare_output if isinstance(prepare_output, dict) else {}
    return {**{k: v for k, v in base.items() if k != REQUEST_FIELD}, **extracted}


# ---------------------------------------------------------------------------
# Callbacks and final assembly
# ---------------------------------------------------------------------------


def project_output(node_output: dict[str, Any], fields: list[str] | None) -> dict[str, Any]:
    if fields is None:
        return without_internal(node_output)
    return {f: node_output[f] for f in fields if f in node_output}


def build_callback_body(
    script: CallbackScript,
    node_output: dict[str, Any] | None,
    *,
    trace_id: str,
    execution_id: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """The JSON a callback node posts back to the orchestrator."""
    node_output = node_output if isinstance(node_output, dict) else {}
    body: dict[str, Any] = {
        "workflowId": script.workflow_id,
        "step": script.step,
        "stepIndex": script.step_index,
        "traceId": trace_id,
        "status": script.status,
        "output": project_output(node_output, script.fields),
    }
    if execution_id:
        body["executionId"] = execution_id
    if script.mode == "diagnostic":
        body["details"] = {
            "mode": "troubleshoot",
            "pipeline": script.workflow_id,
            "stepName": script.step_name,
            "timestamp": (now or datetime.now(UTC)).isoformat(),
        }
    return body


def _pick_headline(ref: HeadlineRef, outputs: dict[str, dict[str, Any]]) -> str:
    value = get_path(outputs.get(ref.node), ref.output_key)
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, dict):
        value = value.get(ref.field)
    return value if isinstance(value, str) and value else ref.fallback


def run_final(
    script: FinalAssemblyScript,
    outputs: dict[str, dict[str, Any]],
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Merge every step's output into the run's final payload."""
    data: dict[str, Any] = {"pipeline": script.workflow_id}
    for ref in script.outputs:
        value = get_path(outputs.get(ref.node), ref.output_key)
        data[ref.output_key] = [] if value is None else value
    if script.headline is not None:
        data["sourceHeadline"] = _pick_headline(script.headline, outputs)

    return {
        "success": True,
        "data": data,
        "metadata": {
            "workflowId": script.workflow_id,
            "manifestVersion": script.manifest_version,
            "stepsCompleted": len(script.steps_completed),
            "steps": list(script.steps_completed),
            "executedAt": (now or datetime.now(UTC)).isoformat(),
        },
    }
