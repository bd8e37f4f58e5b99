"""Unit tests for the manifest compiler and compiled graph."""

import pytest

from matchday.compiler import CompileOptions, EdgeRole, GraphBuilder, ManifestCompiler, Node, NodeKind
from matchday.compiler.compiler import (
    ASSEMBLE_NODE,
    FINAL_CALLBACK_NODE,
    MERGE_NODE,
    RESPOND_NODE,
    SCHEDULE_NODE,
    WEBHOOK_NODE,
    milestone_node_name,
)
from tests.factories import make_manifest, three_step_manifest

CALLBACK_URL = "https://orchestrator.example.com/api/workflows/callback"


@pytest.fixture
def compiler():
    return ManifestCompiler(CALLBACK_URL)


def _main_path(graph) -> list[str]:
    """Follow continuation edges from the webhook to the end."""
    path = [WEBHOOK_NODE]
    while True:
        nxt = [e.target for e in graph.outgoing(path[-1]) if e.role == EdgeRole.CONTINUATION]
        if not nxt:
            return path
        path.append(nxt[0])


class TestCompileStructure:
    def test_main_chain_order(self, compiler, manifest):
        graph = compiler.compile(manifest)

        assert _main_path(graph) == [
            WEBHOOK_NODE,
            "Prepare Gather Request",
            "Gather",
            "Parse Gather",
            "Wait After Gather",
            "Prepare Choose Request",
            "Choose",
            "Parse Choose",
            ASSEMBLE_NODE,
            FINAL_CALLBACK_NODE,
            RESPOND_NODE,
        ]

    def test_one_delay_between_each_pair_of_steps(self, compiler):
        graph = compiler.compile(three_step_manifest())

        delays = graph.nodes_of_kind(NodeKind.DELAY)
        assert [d.name for d in delays] == ["Wait After Step 1", "Wait After Step 2"]
        assert delays[0].params == {"amount": 5, "unit": "seconds"}

    def test_no_delay_when_amount_is_zero(self, compiler):
        manifest = make_manifest(rateLimits={"betweenSteps": {"amount": 0}})

        graph = compiler.compile(manifest)

        assert graph.nodes_of_kind(NodeKind.DELAY) == []

    def test_milestone_is_a_side_branch_listed_first(self, compiler, manifest):
        graph = compiler.compile(manifest)

        ports = graph.output_ports("Parse Gather")
        assert ports[0] == [{"node": "Callback Gather Done", "port": "main", "index": 0}]
        assert ports[1] == [{"node": "Wait After Gather", "port": "main", "index": 0}]

    def test_milestone_callback_script(self, compiler, manifest):
        graph = compiler.compile(manifest)

        script = graph.node("Callback Gather Done").script
        assert script.step == "gather-done"
        assert script.step_index == 1
        assert script.mode == "milestone"
        assert graph.node("Callback Gather Done").params["url"] == CALLBACK_URL

    def test_side_branch_targets_are_dead_ends(self, compiler, manifest):
        connections = compiler.compile(manifest).connections()

        assert connections["Callback Gather Done"] == []

    def test_final_callback_index_follows_last_step(self, compiler):
        graph = compiler.compile(three_step_manifest())

        script = graph.node(FINAL_CALLBACK_NODE).script
        assert script.step == "final-output"
        assert script.step_index == 4
        assert script.status == "success"

    def test_schedule_trigger_merges_with_webhook(self, compiler):
        manifest = make_manifest(triggers={"schedule": {"cron": "0 6 * * *"}})

        graph = compiler.compile(manifest)

        assert graph.node(SCHEDULE_NODE).params == {"cron": "0 6 * * *"}
        assert graph.output_ports(SCHEDULE_NODE) == [[{"node": MERGE_NODE, "port": "main", "index": 0}]]
        assert graph.output_ports(WEBHOOK_NODE) == [[{"node": MERGE_NODE, "port": "main", "index": 1}]]
        assert graph.output_ports(MERGE_NODE)[0][0]["node"] == "Prepare Gather Request"

    def test_node_binding_points_at_parse_node(self, compiler, manifest):
        graph = compiler.compile(manifest)

        binding = graph.node("Prepare Choose Request").script.inputs[0]
        assert binding.source == "node"
        assert binding.node == "Parse Gather"
        assert binding.format_expr == "- {title}"

    def test_only_first_prepare_reads_trigger_secrets(self, compiler, manifest):
        graph = compiler.compile(manifest)

        assert graph.node("Prepare Gather Request").script.first_step is True
        assert graph.node("Prepare Choose Request").script.first_step is False

    def test_final_assembly_collects_outputs_and_headline(self, compiler, manifest):
        script = compiler.compile(manifest).node(ASSEMBLE_NODE).script

        assert [(o.output_key, o.node) for o in script.outputs] == [
            ("stories", "Parse Gather"),
            ("pick", "Parse Choose"),
        ]
        assert script.headline.node == "Parse Choose"
        assert script.headline.field == "sourceHeadline"
        assert script.steps_completed == ["gather", "choose"]


class TestUpToStep:
    def test_prefix_compiles_only_requested_steps(self, compiler, manifest):
        graph = compiler.compile(manifest, CompileOptions(up_to_step="gather"))

        assert graph.steps_built == ["gather"]
        assert graph.node("Prepare Choose Request") is None
        assert graph.node(FINAL_CALLBACK_NODE).script.step_index == 2
        assert graph.nodes_of_kind(NodeKind.DELAY) == []

    def test_prefix_drops_headline_from_unbuilt_step(self, compiler, manifest):
        graph = compiler.compile(manifest, CompileOptions(up_to_step="gather"))

        assert graph.node(ASSEMBLE_NODE).script.headline is None

    def test_prefix_is_a_subgraph_of_full_compile(self, compiler):
        manifest = three_step_manifest()
        full = compiler.compile(manifest)
        partial = compiler.compile(manifest, CompileOptions(up_to_step="s2"))

        step_nodes = {
            n.name for n in partial.nodes if n.kind in (NodeKind.PREPARE, NodeKind.CALL, NodeKind.PARSE)
        }
        assert step_nodes <= set(full.node_names)
        assert "Parse Step 3" not in partial.node_names

    def test_unknown_step_compiles_everything(self, compiler, manifest):
        graph = compiler.compile(manifest, CompileOptions(up_to_step="does-not-exist"))

        assert graph.steps_built == ["gather", "choose"]


class TestTroubleshoot:
    def test_diagnostics_after_every_sub_node(self, compiler, manifest):
        graph = compiler.compile(manifest, CompileOptions(troubleshoot=True))

        diagnostics = [n for n in graph.nodes_of_kind(NodeKind.CALLBACK) if n.script.mode == "diagnostic"]
        assert [(n.script.step, n.script.step_index) for n in diagnostics] == [
            ("ts-prepare-gather", 1),
            ("ts-gather-raw", 2),
            ("ts-parse-gather", 3),
            ("ts-prepare-choose", 4),
            ("ts-choose-raw", 5),
            ("ts-parse-choose", 6),
        ]

    def test_diagnostics_do_not_change_main_chain(self, compiler, manifest):
        plain = compiler.compile(manifest)
        traced = compiler.compile(manifest, CompileOptions(troubleshoot=True))

        assert _main_path(plain) == _main_path(traced)

    def test_diagnostic_branches_come_before_continuation(self, compiler, manifest):
        graph = compiler.compile(manifest, CompileOptions(troubleshoot=True))

        ports = graph.output_ports("Parse Gather")
        assert [p[0]["node"] for p in ports] == ["CB ts-parse-gather", "Callback Gather Done", "Wait After Gather"]


class TestValidate:
    def test_unbound_placeholder_warns(self, compiler):
        steps = [{"id": "a", "name": "A", "prompt": "Hello {who}"}]
        warnings = compiler.validate(make_manifest(steps=steps, headline=None))

        assert warnings == ["Step 'a' has no input bound to '{who}'"]

    def test_forward_reference_warns(self, compiler):
        steps = [
            {"id": "a", "name": "A", "prompt": "{x}", "promptInputs": {"x": {"source": "b"}}},
            {"id": "b", "name": "B", "prompt": "p"},
        ]
        warnings = compiler.validate(make_manifest(steps=steps, headline=None))

        assert warnings == ["Step 'a' input 'x' references step 'b' which runs later"]

    def test_unknown_reference_still_compiles(self, compiler):
        steps = [{"id": "a", "name": "A", "prompt": "{x}", "promptInputs": {"x": {"source": "ghost"}}}]
        manifest = make_manifest(steps=steps, headline=None)

        graph = compiler.compile(manifest)

        assert graph.node("Prepare A Request").script.inputs[0].node is None
        assert compiler.validate(manifest) == ["Step 'a' input 'x' references unknown step 'ghost'"]

    def test_bundled_manifest_is_clean(self, compiler):
        from matchday.compiler import load_manifest

        assert compiler.validate(load_manifest("european-football-daily")) == []


class TestSerialization:
    def test_engine_workflow_shape(self, compiler, manifest):
        workflow = compiler.compile(manifest).to_engine_workflow("Test Pipeline")

        assert workflow["name"] == "Test Pipeline"
        assert workflow["settings"] == {"executionOrder": "v1"}
        by_name = {n["name"]: n for n in workflow["nodes"]}
        assert by_name[WEBHOOK_NODE]["type"] == "n8n-nodes-base.webhook"
        assert by_name["Prepare Gather Request"]["parameters"]["script"]["kind"] == "prepare"
        assert workflow["connections"]["Parse Gather"]["main"][0] == [
            {"node": "Callback Gather Done", "type": "main", "index": 0}
        ]

    def test_to_dict_reports_steps(self, compiler, manifest):
        data = compiler.compile(manifest).to_dict()

        assert data["workflowId"] == "test-pipeline"
        assert data["manifestVersion"] == "2.0.0"
        assert data["stepsBuilt"] == ["gather", "choose"]


class TestGraphBuilder:
    def test_duplicate_node_name_rejected(self):
        builder = GraphBuilder()
        builder.add(Node("A", NodeKind.PREPARE, (0, 0)))

        with pytest.raises(ValueError, match="Duplicate node name"):
            builder.add(Node("A", NodeKind.CALL, (0, 0)))

    def test_edges_require_known_nodes(self):
        builder = GraphBuilder()
        builder.add(Node("A", NodeKind.PREPARE, (0, 0)))

        with pytest.raises(KeyError):
            builder.connect("A", "B")
        with pytest.raises(KeyError):
            builder.fork("B", "A")


def test_milestone_node_name():
    assert milestone_node_name("research-complete") == "Callback Research Complete"
    assert milestone_node_name("topic_selected") == "Callback Topic Selected"
