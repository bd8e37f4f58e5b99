"""Declarative step manifest schema and loader.

A manifest describes a newsletter pipeline as an ordered list of LLM
steps plus the trigger, rate-limit and provider settings needed to run
it on the automation engine. Manifests are JSON files with camelCase
keys, one per workflow, named ``<id>.json``.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from matchday.exceptions import ManifestError

logger = logging.getLogger(__name__)

BUNDLED_MANIFESTS_DIR = Path(__file__).parent / "manifests"

TRIGGER_SOURCE = "trigger"
PREVIOUS_SOURCE = "previous"

WEBHOOK_NODE = "Webhook"
SCHEDULE_NODE = "Schedule Trigger"
MERGE_NODE = "Merge Triggers"
ASSEMBLE_NODE = "Build Final Output"
FINAL_CALLBACK_NODE = "Callback Final"
RESPOND_NODE = "Respond to Webhook"
FIXED_NODES = frozenset(
    {WEBHOOK_NODE, SCHEDULE_NODE, MERGE_NODE, ASSEMBLE_NODE, FINAL_CALLBACK_NODE, RESPOND_NODE}
)


class ManifestModel(BaseModel):
    """Frozen model reading camelCase JSON into snake_case attributes."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


class ScheduleTrigger(ManifestModel):
    cron: str = Field(..., min_length=1)


class Triggers(ManifestModel):
    webhook: bool = True
    schedule: ScheduleTrigger | None = None


class BetweenSteps(ManifestModel):
    amount: float = Field(default=0, ge=0)
    unit: Literal["seconds", "minutes"] = "seconds"


class HttpRetry(ManifestModel):
    enabled: bool = False
    max_tries: int = Field(default=3, ge=1, le=10)
    wait_ms: int = Field(default=1000, ge=0)


class Batching(ManifestModel):
    batch_size: int = Field(default=0, ge=0)
    interval_ms: int = Field(default=0, ge=0)


class RateLimits(ManifestModel):
    between_steps: BetweenSteps = Field(default_factory=BetweenSteps)
    http_retry: HttpRetry = Field(default_factory=HttpRetry)
    batching: Batching = Field(default_factory=Batching)


class ProviderConfig(ManifestModel):
    """Where the call node sends generation requests."""

    url: str = Field(..., min_length=1)
    user_agent: str = "matchday-orchestrator"
    model: str | None = None


class HeadlineSource(ManifestModel):
    """Which step output supplies the run's source headline."""

    output_key: str
    field: str = "title"
    fallback: str = ""


class StepInput(ManifestModel):
    """Binding of a prompt placeholder to a value in the run.

    ``source`` is ``"trigger"`` (the trigger payload), ``"previous"``
    (the preceding node's output) or the id of an earlier step.
    """

    source: str = Field(..., min_length=1)
    path: str = ""
    format_expr: str | None = None
    append: bool = False

    @field_validator("source")
    @classmethod
    def _normalize_source(cls, value: str) -> str:
        # "webhook" predates the schedule trigger and means the same thing
        return TRIGGER_SOURCE if value == "webhook" else value


class MilestoneCallback(ManifestModel):
    name: str = Field(..., min_length=1)
    status: Literal["in_progress", "success"] = "in_progress"
    fields: list[str] | None = None


class StepValidation(ManifestModel):
    required: list[str] = Field(default_factory=list)
    min_count: dict[str, int] = Field(default_factory=dict)


class ManifestStep(ManifestModel):
    id: str = Field(..., min_length=1, max_length=100)
    name: str = Field(..., min_length=1, max_length=200)
    description: str = ""
    prompt: str
    prompt_inputs: dict[str, StepInput] = Field(default_factory=dict)
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    max_tokens: int = Field(default=2048, ge=1)
    output_key: str | None = None
    output_slice: int | None = Field(default=None, ge=0)
    milestone_callback: MilestoneCallback | None = None
    validation: StepValidation | None = None


def prepare_node_name(step: ManifestStep) -> str:
    return f"Prepare {step.name} Request"


def call_node_name(step: ManifestStep) -> str:
    return step.name


def parse_node_name(step: ManifestStep) -> str:
    return f"Parse {step.name}"


def milestone_node_name(callback_name: str) -> str:
    words = re.split(r"[-_\s]+", callback_name.strip())
    return "Callback " + " ".join(w[:1].upper() + w[1:] for w in words if w)


def diagnostic_labels(step: ManifestStep) -> tuple[str, str, str]:
    """Step names reported by the prepare, call and parse diagnostics."""
    return (f"ts-prepare-{step.id}", f"ts-{step.id}-raw", f"ts-parse-{step.id}")


def diagnostic_node_name(label: str) -> str:
    return f"CB {label}"


def step_node_names(step: ManifestStep) -> list[str]:
    """Names of every node the compiler may emit for a step."""
    names = [prepare_node_name(step), call_node_name(step), parse_node_name(step)]
    names.extend(diagnostic_node_name(label) for label in diagnostic_labels(step))
    if step.milestone_callback:
        names.append(milestone_node_name(step.milestone_callback.name))
    return names


class WorkflowManifest(ManifestModel):
    """A complete pipeline definition."""

    id: str = Field(..., min_length=1, max_length=100)
    name: str = Field(..., min_length=1, max_length=200)
    version: str = "1.0.0"
    webhook_path: str = Field(..., min_length=1)
    description: str = ""
    category: str = "general"
    triggers: Triggers = Field(default_factory=Triggers)
    rate_limits: RateLimits = Field(default_factory=RateLimits)
    provider_config: ProviderConfig
    headline: HeadlineSource | None = None
    steps: list[ManifestStep] = Field(..., min_length=1)

    @model_validator(mode="before")
    @classmethod
    def _accept_legacy_provider_key(cls, data: Any) -> Any:
        if isinstance(data, dict) and "providerConfig" not in data and "gemini" in data:
            data = {**data, "providerConfig": data["gemini"]}
        return data

    @model_validator(mode="after")
    def _check_step_ids(self) -> WorkflowManifest:
        seen_ids: set[str] = set()
        seen_names: set[str] = set()
        for step in self.steps:
            if step.id in seen_ids:
                raise ValueError(f"Duplicate step id '{step.id}'")
            if step.name in seen_names:
                raise ValueError(f"Duplicate step name '{step.name}'")
            seen_ids.add(step.id)
            seen_names.add(step.name)
        return self

    @model_validator(mode="after")
    def _check_node_names(self) -> WorkflowManifest:
        seen = set(FIXED_NODES)
        for step in self.steps:
            for name in step_node_names(step):
                if name in seen:
                    raise ValueError(f"Step '{step.id}' produces node name '{name}', which is already taken")
                seen.add(name)
        return self

    def step_index(self, step_id: str) -> int | None:
        for i, step in enumerate(self.steps):
            if step.id == step_id:
                return i
        return None

    def get_step(self, step_id: str) -> ManifestStep | None:
        index = self.step_index(step_id)
        return None if index is None else self.steps[index]


def _resolve_dir(directory: str | Path | None) -> Path:
    return Path(directory) if directory else BUNDLED_MANIFESTS_DIR


def parse_manifest(data: dict[str, Any], *, manifest_id: str | None = None) -> WorkflowManifest:
    """Validate raw manifest data, raising ManifestError on failure."""
    try:
        return WorkflowManifest.model_validate(data)
    except ValidationError as e:
        raise ManifestError(
            f"Manifest '{manifest_id or data.get('id', '?')}' is invalid: {e}",
            manifest_id=manifest_id,
        ) from e


def load_manifest(manifest_id: str, directory: str | Path | None = None) -> WorkflowManifest | None:
    """Load ``<manifest_id>.json``.

    Returns None if the file does not exist. Raises ManifestError if it
    exists but is not valid JSON or does not match the schema.
    """
    if "/" in manifest_id or "\\" in manifest_id or manifest_id.startswith("."):
        return None

    path = _resolve_dir(directory) / f"{manifest_id}.json"
    if not path.is_file():
        logger.debug("Manifest %s not found at %s", manifest_id, path)
        return None

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ManifestError(
            f"Manifest '{manifest_id}' is not valid JSON: {e}", manifest_id=manifest_id
        ) from e

    if not isinstance(data, dict):
        raise ManifestError(f"Manifest '{manifest_id}' must be a JSON object", manifest_id=manifest_id)

    return parse_manifest(data, manifest_id=manifest_id)


def list_manifests(directory: str | Path | None = None) -> list[str]:
    """Ids of all manifest files in the directory, sorted."""
    root = _resolve_dir(directory)
    if not root.is_dir():
        return []
    return sorted(p.stem for p in root.glob("*.json"))
