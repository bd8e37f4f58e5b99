"""Manifest compiler.

Turns a ``WorkflowManifest`` into a ``CompiledGraph``:

- a webhook trigger (plus a schedule trigger and merge node when the
  manifest has a cron schedule)
- per step, a prepare -> call -> parse chain
- optional milestone callbacks and, in troubleshoot mode, a diagnostic
  callback after every sub-node
- rate-limit delays between steps
- final assembly, final callback and webhook response
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from matchday.compiler.graph import CompiledGraph, GraphBuilder, Node, NodeKind
from matchday.compiler.manifest import (
    ASSEMBLE_NODE,
    FINAL_CALLBACK_NODE,
    MERGE_NODE,
    PREVIOUS_SOURCE,
    RESPOND_NODE,
    SCHEDULE_NODE,
    TRIGGER_SOURCE,
    WEBHOOK_NODE,
    ManifestStep,
    WorkflowManifest,
    call_node_name,
    diagnostic_labels,
    diagnostic_node_name,
    milestone_node_name,
    parse_node_name,
    prepare_node_name,
)
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
)

logger = logging.getLogger(__name__)

STEP_X = 250
MAIN_Y = 300
SIDE_Y = 125

FINAL_STEP = "final-output"

_PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")


@dataclass(frozen=True)
class CompileOptions:
    """Per-compile switches.

    ``up_to_step`` stops after the named step (inclusive); an unknown id
    compiles the whole manifest. ``troubleshoot`` adds diagnostic
    callbacks after every prepare, call and parse node.
    """

    up_to_step: str | None = None
    troubleshoot: bool = False


class ManifestCompiler:
    """Compiles manifests into engine-ready node graphs."""

    def __init__(self, callback_url: str, *, credential_header: str = "x-goog-api-key") -> None:
        self.callback_url = callback_url
        self.credential_header = credential_header

    def validate(self, manifest: WorkflowManifest) -> list[str]:
        """Advisory checks; compilation proceeds regardless.

        Unbound placeholders and references to unknown or later steps
        compile to bindings that render as empty strings at run time.
        """
        warnings: list[str] = []
        for i, step in enumerate(manifest.steps):
            for placeholder in _PLACEHOLDER.findall(step.prompt):
                if placeholder not in step.prompt_inputs:
                    warnings.append(f"Step '{step.id}' has no input bound to '{{{placeholder}}}'")
            for name, spec in step.prompt_inputs.items():
                if spec.source in (TRIGGER_SOURCE, PREVIOUS_SOURCE):
                    continue
                ref = manifest.step_index(spec.source)
                if ref is None:
                    warnings.append(
                        f"Step '{step.id}' input '{name}' references unknown step '{spec.source}'"
                    )
                elif ref >= i:
                    warnings.append(
                        f"Step '{step.id}' input '{name}' references step '{spec.source}' which runs later"
                    )
        return warnings

    def compile(self, manifest: WorkflowManifest, options: CompileOptions | None = None) -> CompiledGraph:
        options = options or CompileOptions()
        steps = self._select_steps(manifest, options.up_to_step)
        for warning in self.validate(manifest):
            logger.warning("Manifest %s: %s", manifest.id, warning)

        builder = GraphBuilder()
        previous = self._add_triggers(builder, manifest)
        x = STEP_X * (2 if manifest.triggers.schedule else 1)
        delay = manifest.rate_limits.between_steps

        for i, step in enumerate(steps):
            prepare = builder.add(
                Node(
                    prepare_node_name(step),
                    NodeKind.PREPARE,
                    (x, MAIN_Y),
                    script=self._prepare_script(manifest, step, first_step=i == 0),
                )
            )
            builder.connect(previous, prepare.name)

            call = builder.add(
                Node(call_node_name(step), NodeKind.CALL, (x + STEP_X, MAIN_Y), self._call_params(manifest))
            )
            builder.connect(prepare.name, call.name)

            parse = builder.add(
                Node(
                    parse_node_name(step),
                    NodeKind.PARSE,
                    (x + 2 * STEP_X, MAIN_Y),
                    script=ParseScript(
                        step_id=step.id,
                        output_key=step.output_key,
                        output_slice=step.output_slice,
                    ),
                )
            )
            builder.connect(call.name, parse.name)

            if options.troubleshoot:
                sources = (prepare, call, parse)
                for offset, (source, label) in enumerate(zip(sources, diagnostic_labels(step))):
                    index = i * 3 + offset + 1
                    self._add_diagnostic(builder, manifest, step, source, label, step_index=index)

            if step.milestone_callback is not None:
                cb = step.milestone_callback
                milestone = builder.add(
                    Node(
                        milestone_node_name(cb.name),
                        NodeKind.CALLBACK,
                        (parse.position[0], MAIN_Y - SIDE_Y),
                        self._callback_params(),
                        script=CallbackScript(
                            workflow_id=manifest.id,
                            step=cb.name,
                            step_index=i + 1,
                            status=cb.status,
                            mode="milestone",
                            fields=cb.fields,
                            step_name=step.name,
                        ),
                    )
                )
                builder.fork(parse.name, milestone.name)

            previous = parse.name
            x += 3 * STEP_X

            if i < len(steps) - 1 and delay.amount > 0:
                wait = builder.add(
                    Node(
                        f"Wait After {step.name}",
                        NodeKind.DELAY,
                        (x, MAIN_Y),
                        {"amount": delay.amount, "unit": delay.unit},
                    )
                )
                builder.connect(previous, wait.name)
                previous = wait.name
                x += STEP_X

        self._add_final(builder, manifest, steps, previous, x)
        return builder.build(
            workflow_id=manifest.id,
            manifest_version=manifest.version,
            steps_built=[s.id for s in steps],
        )

    @staticmethod
    def _select_steps(manifest: WorkflowManifest, up_to_step: str | None) -> list[ManifestStep]:
        if up_to_step is None:
            return list(manifest.steps)
        index = manifest.step_index(up_to_step)
        if index is None:
            logger.info("Manifest %s has no step '%s'; compiling all steps", manifest.id, up_to_step)
            return list(manifest.steps)
        return list(manifest.steps[: index + 1])

    @staticmethod
    def _add_triggers(builder: GraphBuilder, manifest: WorkflowManifest) -> str:
        webhook = builder.add(
            Node(
                WEBHOOK_NODE,
                NodeKind.WEBHOOK_TRIGGER,
                (0, MAIN_Y),
                {"path": manifest.webhook_path, "method": "POST", "respond": "respond_node"},
            )
        )
        if manifest.triggers.schedule is None:
            return webhook.name

        schedule = builder.add(
            Node(
                SCHEDULE_NODE,
                NodeKind.SCHEDULE_TRIGGER,
                (0, MAIN_Y - SIDE_Y),
                {"cron": manifest.triggers.schedule.cron},
            )
        )
        merge = builder.add(Node(MERGE_NODE, NodeKind.MERGE, (STEP_X, MAIN_Y), {"mode": "append"}))
        builder.connect(schedule.name, merge.name, target_port=0)
        builder.connect(webhook.name, merge.name, target_port=1)
        return merge.name

    @staticmethod
    def _prepare_script(manifest: WorkflowManifest, step: ManifestStep, *, first_step: bool) -> PrepareScript:
        bindings: list[InputBinding] = []
        for name, spec in step.prompt_inputs.items():
            if spec.source in (TRIGGER_SOURCE, PREVIOUS_SOURCE):
                source, node = spec.source, None
            else:
                ref = manifest.get_step(spec.source)
                source, node = "node", (parse_node_name(ref) if ref is not None else None)
            bindings.append(
                InputBinding(
                    name=name,
                    source=source,
                    node=node,
                    path=spec.path,
                    format_expr=spec.format_expr,
                    append=spec.append,
                )
            )
        return PrepareScript(
            step_id=step.id,
            prompt=step.prompt,
            inputs=bindings,
            temperature=step.temperature,
            max_tokens=step.max_tokens,
            first_step=first_step,
        )

    def _call_params(self, manifest: WorkflowManifest) -> dict:
        provider = manifest.provider_config
        limits = manifest.rate_limits
        params: dict = {
            "url": provider.url,
            "method": "POST",
            "headers": {"Content-Type": "application/json", "User-Agent": provider.user_agent},
            "credentialHeader": self.credential_header,
            "credentialField": CREDENTIAL_FIELD,
            "bodyField": REQUEST_FIELD,
        }
        if provider.model:
            params["model"] = provider.model
        if limits.batching.batch_size > 0:
            params["batching"] = {
                "batchSize": limits.batching.batch_size,
                "intervalMs": limits.batching.interval_ms,
            }
        if limits.http_retry.enabled:
            params["retry"] = {
                "maxTries": limits.http_retry.max_tries,
                "waitMs": limits.http_retry.wait_ms,
            }
        return params

    def _callback_params(self) -> dict:
        return {"url": self.callback_url, "method": "POST"}

    def _add_diagnostic(
        self,
        builder: GraphBuilder,
        manifest: WorkflowManifest,
        step: ManifestStep,
        source: Node,
        label: str,
        *,
        step_index: int,
    ) -> None:
        node = builder.add(
            Node(
                diagnostic_node_name(label),
                NodeKind.CALLBACK,
                (source.position[0], MAIN_Y + SIDE_Y),
                self._callback_params(),
                script=CallbackScript(
                    workflow_id=manifest.id,
                    step=label,
                    step_index=step_index,
                    status="in_progress",
                    mode="diagnostic",
                    step_name=step.name,
                ),
            )
        )
        builder.fork(source.name, node.name)

    def _add_final(
        self,
        builder: GraphBuilder,
        manifest: WorkflowManifest,
        steps: list[ManifestStep],
        previous: str,
        x: int,
    ) -> None:
        built = {s.id: s for s in steps}
        outputs = [OutputRef(output_key=s.output_key, node=parse_node_name(s)) for s in steps if s.output_key]

        headline = None
        if manifest.headline is not None:
            source = next((s for s in steps if s.output_key == manifest.headline.output_key), None)
            if source is not None and source.id in built:
                headline = HeadlineRef(
                    output_key=manifest.headline.output_key,
                    node=parse_node_name(source),
                    field=manifest.headline.field,
                    fallback=manifest.headline.fallback,
                )

        assemble = builder.add(
            Node(
                ASSEMBLE_NODE,
                NodeKind.ASSEMBLE,
                (x, MAIN_Y),
                script=FinalAssemblyScript(
                    workflow_id=manifest.id,
                    manifest_version=manifest.version,
                    steps_completed=[s.id for s in steps],
                    outputs=outputs,
                    headline=headline,
                ),
            )
        )
        builder.connect(previous, assemble.name)

        final_cb = builder.add(
            Node(
                FINAL_CALLBACK_NODE,
                NodeKind.CALLBACK,
                (x + STEP_X, MAIN_Y),
                self._callback_params(),
                script=CallbackScript(
                    workflow_id=manifest.id,
                    step=FINAL_STEP,
                    step_index=len(steps) + 1,
                    status="success",
                    mode="final",
                ),
            )
        )
        builder.connect(assemble.name, final_cb.name)

        respond = builder.add(
            Node(
                RESPOND_NODE,
                NodeKind.RESPOND,
                (x + 2 * STEP_X, MAIN_Y),
                {"respondWith": "json", "source": assemble.name},
            )
        )
        builder.connect(final_cb.name, respond.name)
