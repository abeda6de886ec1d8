from stagegate.pipeline.gates import Decision, GateEvaluator
from stagegate.pipeline.graph import GateSpec, PipelineGraph, StageDefinition
from stagegate.pipeline.run import Outcome, WorkflowRun

__all__ = [
    "Decision",
    "GateEvaluator",
    "GateSpec",
    "Outcome",
    "PipelineGraph",
    "StageDefinition",
    "WorkflowRun",
]
