"""Workflow engine and background dispatch."""

from workflow_runtime.engine.dispatch import DispatchReport, SignalRouter, WorkflowDispatcher
from workflow_runtime.engine.engine import WorkflowEngine
from workflow_runtime.engine.joins import JoinCoordinator, find_join

__all__ = [
    "DispatchReport",
    "JoinCoordinator",
    "SignalRouter",
    "WorkflowDispatcher",
    "WorkflowEngine",
    "find_join",
]
