"""Workflow registry.

Lists every workflow the orchestrator can trigger and how: in-process
via a registered handler (``local``) or through the automation engine's
trigger webhook (``external``).
"""

from __future__ import annotations

import enum
import json
import logging
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator
from pydantic.alias_generators import to_camel

from matchday.exceptions import ConfigurationError
from matchday.settings import get_settings

logger = logging.getLogger(__name__)

BUNDLED_REGISTRY = Path(__file__).parent / "registry.json"


class WorkflowMode(str, enum.Enum):
    LOCAL = "local"
    EXTERNAL = "external"


class WorkflowDefinition(BaseModel):
    """Registry entry for one workflow."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(..., min_length=1)
    name: str
    mode: WorkflowMode
    description: str = ""
    instructions: str = ""
    category: str = "general"
    endpoint: str | None = Field(default=None, description="Environment key holding the trigger URL")
    handler: str | None = Field(default=None, description="Local handler name")
    webhook_path: str | None = None
    manifest_id: str | None = None
    dedup: bool = Field(default=False, description="Send recently used headlines with each trigger")

    @model_validator(mode="after")
    def _check_mode(self) -> WorkflowDefinition:
        if self.mode == WorkflowMode.LOCAL and not self.handler:
            raise ValueError(f"Local workflow '{self.id}' needs a handler")
        return self


_definitions_adapter = TypeAdapter(list[WorkflowDefinition])


class WorkflowRegistry:
    """Lookup over the configured workflow definitions."""

    def __init__(self, definitions: list[WorkflowDefinition] | None = None) -> None:
        self._definitions: dict[str, WorkflowDefinition] = {}
        for definition in definitions or []:
            if definition.id in self._definitions:
                raise ConfigurationError(f"Duplicate workflow id '{definition.id}' in registry")
            self._definitions[definition.id] = definition

    @classmethod
    def from_file(cls, path: str | Path) -> WorkflowRegistry:
        try:
            raw = json.loads(Path(path).read_text(encoding="utf-8"))
            return cls(_definitions_adapter.validate_python(raw))
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Cannot load workflow registry {path}: {e}") from e

    def get(self, workflow_id: str) -> WorkflowDefinition | None:
        return self._definitions.get(workflow_id)

    def list(self) -> list[WorkflowDefinition]:
        return list(self._definitions.values())

    def external(self) -> list[WorkflowDefinition]:
        return [d for d in self._definitions.values() if d.mode == WorkflowMode.EXTERNAL]

    def __contains__(self, workflow_id: object) -> bool:
        return workflow_id in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)


@lru_cache
def get_workflow_registry() -> WorkflowRegistry:
    """Registry loaded from settings.registry_path or the bundled file."""
    path = get_settings().registry_path or BUNDLED_REGISTRY
    registry = WorkflowRegistry.from_file(path)
    logger.info("Loaded %d workflows from %s", len(registry), path)
    return registry
