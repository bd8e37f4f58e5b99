"""Typed node graph produced by the manifest compiler.

The compiler works on ``Node`` and ``Edge`` values and only derives the
engine's port/branch connection map when serializing. Branch order is
decided in exactly one place, :meth:`CompiledGraph.output_ports`: every
side-effect branch of a node is listed before its continuation branch.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any

from matchday.compiler.scripts import Script


class NodeKind(str, enum.Enum):
    WEBHOOK_TRIGGER = "webhook_trigger"
    SCHEDULE_TRIGGER = "schedule_trigger"
    MERGE = "merge"
    PREPARE = "prepare"
    CALL = "call"
    PARSE = "parse"
    DELAY = "delay"
    CALLBACK = "callback"
    ASSEMBLE = "assemble"
    RESPOND = "respond"


class EdgeRole(str, enum.Enum):
    CONTINUATION = "continuation"
    SIDE_EFFECT = "side_effect"


# Engine node type and version for each kind, used only at upload time
ENGINE_NODE_TYPES: dict[NodeKind, tuple[str, float]] = {
    NodeKind.WEBHOOK_TRIGGER: ("n8n-nodes-base.webhook", 2),
    NodeKind.SCHEDULE_TRIGGER: ("n8n-nodes-base.scheduleTrigger", 1.2),
    NodeKind.MERGE: ("n8n-nodes-base.merge", 3),
    NodeKind.PREPARE: ("n8n-nodes-base.code", 2),
    NodeKind.CALL: ("n8n-nodes-base.httpRequest", 4.2),
    NodeKind.PARSE: ("n8n-nodes-base.code", 2),
    NodeKind.DELAY: ("n8n-nodes-base.wait", 1.1),
    NodeKind.CALLBACK: ("n8n-nodes-base.httpRequest", 4.2),
    NodeKind.ASSEMBLE: ("n8n-nodes-base.code", 2),
    NodeKind.RESPOND: ("n8n-nodes-base.respondToWebhook", 1.1),
}


@dataclass(frozen=True)
class Node:
    name: str
    kind: NodeKind
    position: tuple[int, int]
    params: dict[str, Any] = field(default_factory=dict)
    script: Script | None = None

    def serialized_params(self) -> dict[str, Any]:
        if self.script is None:
            return dict(self.params)
        return {**self.params, "script": self.script.to_params()}


@dataclass(frozen=True)
class Edge:
    source: str
    target: str
    role: EdgeRole = EdgeRole.CONTINUATION
    target_port: int = 0


@dataclass
class CompiledGraph:
    """Compiled workflow: nodes, edges, and the step ids that were built."""

    workflow_id: str
    manifest_version: str
    nodes: list[Node]
    edges: list[Edge]
    steps_built: list[str]

    def node(self, name: str) -> Node | None:
        for node in self.nodes:
            if node.name == name:
                return node
        return None

    @property
    def node_names(self) -> list[str]:
        return [n.name for n in self.nodes]

    def nodes_of_kind(self, kind: NodeKind) -> list[Node]:
        return [n for n in self.nodes if n.kind == kind]

    def outgoing(self, name: str) -> list[Edge]:
        return [e for e in self.edges if e.source == name]

    def output_ports(self, name: str) -> list[list[dict[str, Any]]]:
        """Branch lists for one node, side-effect branches first.

        Each side-effect edge is its own dead-end branch; all continuation
        edges share the final branch.
        """
        side_effects: list[list[dict[str, Any]]] = []
        continuation: list[dict[str, Any]] = []
        for edge in self.outgoing(name):
            ref = {"node": edge.target, "port": "main", "index": edge.target_port}
            if edge.role == EdgeRole.SIDE_EFFECT:
                side_effects.append([ref])
            else:
                continuation.append(ref)
        return side_effects + ([continuation] if continuation else [])

    def connections(self) -> dict[str, list[list[dict[str, Any]]]]:
        """Connection map keyed by source node; dead ends map to []."""
        out: dict[str, list[list[dict[str, Any]]]] = {}
        dead_ends = {e.target for e in self.edges if e.role == EdgeRole.SIDE_EFFECT}
        for node in self.nodes:
            ports = self.output_ports(node.name)
            if ports or node.name in dead_ends:
                out[node.name] = ports
        return out

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflowId": self.workflow_id,
            "manifestVersion": self.manifest_version,
            "nodes": [
                {
                    "name": n.name,
                    "kind": n.kind.value,
                    "position": list(n.position),
                    "params": n.serialized_params(),
                }
                for n in self.nodes
            ],
            "connections": self.connections(),
            "stepsBuilt": list(self.steps_built),
        }

    def to_engine_workflow(self, name: str) -> dict[str, Any]:
        """Shape the graph as an engine workflow definition for upload."""
        nodes = []
        for n in self.nodes:
            engine_type, version = ENGINE_NODE_TYPES[n.kind]
            nodes.append(
                {
                    "name": n.name,
                    "type": engine_type,
                    "typeVersion": version,
                    "position": list(n.position),
                    "parameters": n.serialized_params(),
                }
            )
        connections = {
            source: {
                "main": [
                    [{"node": ref["node"], "type": ref["port"], "index": ref["index"]} for ref in branch]
                    for branch in ports
                ]
            }
            for source, ports in self.connections().items()
        }
        return {
            "name": name,
            "nodes": nodes,
            "connections": connections,
            "settings": {"executionOrder": "v1"},
        }


class GraphBuilder:
    """Accumulates nodes and edges; rejects duplicate node names."""

    def __init__(self) -> None:
        self._nodes: dict[str, Node] = {}
        self._edges: list[Edge] = []

    def add(self, node: Node) -> Node:
        if node.name in self._nodes:
            raise ValueError(f"Duplicate node name '{node.name}'")
        self._nodes[node.name] = node
        return node

    def _require(self, *names: str) -> None:
        for name in names:
            if name not in self._nodes:
                raise KeyError(f"Unknown node '{name}'")

    def connect(self, source: str, target: str, *, target_port: int = 0) -> None:
        """Continue the main flow from ``source`` into ``target``."""
        self._require(source, target)
        self._edges.append(Edge(source, target, EdgeRole.CONTINUATION, target_port))

    def fork(self, source: str, target: str) -> None:
        """Attach a side-effect-only, dead-end branch to ``source``."""
        self._require(source, target)
        self._edges.append(Edge(source, target, EdgeRole.SIDE_EFFECT))

    def build(self, *, workflow_id: str, manifest_version: str, steps_built: list[str]) -> CompiledGraph:
        return CompiledGraph(
            workflow_id=workflow_id,
            manifest_version=manifest_version,
            nodes=list(self._nodes.values()),
            edges=list(self._edges),
            steps_built=list(steps_built),
        )
