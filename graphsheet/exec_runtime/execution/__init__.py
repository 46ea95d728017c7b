"""Sheet execution: sandboxed processes, workspaces and graph extraction."""

from graphsheet.exec_runtime.execution.coordinator import ExecutionCoordinator, SheetSource
from graphsheet.exec_runtime.execution.extraction import ExtractionError, GraphExtractor, StaticAgentExtractor
from graphsheet.exec_runtime.execution.pipeline import GraphPipeline
from graphsheet.exec_runtime.execution.sandbox import ProcessHandle, SandboxRunner, SessionEndedError, SpawnError

__all__ = [
    "ExecutionCoordinator",
    "ExtractionError",
    "GraphExtractor",
    "GraphPipeline",
    "ProcessHandle",
    "SandboxRunner",
    "SessionEndedError",
    "SheetSource",
    "SpawnError",
    "StaticAgentExtractor",
]
