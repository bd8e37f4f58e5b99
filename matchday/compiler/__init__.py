"""Manifest compiler: declarative step manifests to engine node graphs."""

from matchday.compiler.compiler import FINAL_STEP, CompileOptions, ManifestCompiler
from matchday.compiler.graph import CompiledGraph, Edge, EdgeRole, GraphBuilder, Node, NodeKind
from matchday.compiler.manifest import WorkflowManifest, list_manifests, load_manifest, parse_manifest
from matchday.compiler.validator import ValidationReport, validate_step_traces

__all__ = [
    "FINAL_STEP",
    "CompileOptions",
    "CompiledGraph",
    "Edge",
    "EdgeRole",
    "GraphBuilder",
    "ManifestCompiler",
    "Node",
    "NodeKind",
    "ValidationReport",
    "WorkflowManifest",
    "list_manifests",
    "load_manifest",
    "parse_manifest",
    "validate_step_traces",
]
