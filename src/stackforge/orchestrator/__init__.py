"""Orchestrator module: graph building, planning and execution."""

from stackforge.orchestrator.dependency_graph import DependencyGraph, DependencyNode, EdgeKind
from stackforge.orchestrator.references import UNKNOWN, Reference, find_references, parse_reference
from stackforge.orchestrator.resources import DesiredGraph, Output, Resource
from stackforge.orchestrator.builder import GraphBuilder
from stackforge.orchestrator.planner import AttributeDiff, Plan, PlannedAction, Planner
from stackforge.orchestrator.executor import (
    ActionResult,
    ApplyResult,
    ExecutionStatus,
    Executor,
    ProgressCallback
)
from stackforge.orchestrator.orchestrator import DriftReport, Orchestrator

__all__ = [
    # Dependency graph
    'DependencyGraph',
    'DependencyNode',
    'EdgeKind',

    # Desired state
    'UNKNOWN',
    'Reference',
    'find_references',
    'parse_reference',
    'DesiredGraph',
    'Output',
    'Resource',
    'GraphBuilder',

    # Planning
    'AttributeDiff',
    'Plan',
    'PlannedAction',
    'Planner',

    # Execution
    'ActionResult',
    'ApplyResult',
    'ExecutionStatus',
    'Executor',
    'ProgressCallback',

    # Main orchestrator
    'DriftReport',
    'Orchestrator',
]
