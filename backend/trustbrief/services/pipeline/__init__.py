# Pipeline state machine: statuses, decisions, quality gates, stage handlers, orchestrator
from trustbrief.services.pipeline.decisions import (
    AdversarialResynthesis,
    Decision,
    DeepenExtraction,
    Fail,
    InvalidTransition,
    Proceed,
    Reject,
    Rediscover,
    transition,
)
from trustbrief.services.pipeline.gates import GateConfig
from trustbrief.services.pipeline.orchestrator import PipelineOrchestrator
from trustbrief.services.pipeline.stages import StageOutcome, StageRunner
from trustbrief.services.pipeline.states import STAGE_ORDER, RunStatus

__all__ = [
    "STAGE_ORDER",
    "AdversarialResynthesis",
    "Decision",
    "DeepenExtraction",
    "Fail",
    "GateConfig",
    "InvalidTransition",
    "PipelineOrchestrator",
    "Proceed",
    "Reject",
    "Rediscover",
    "RunStatus",
    "StageOutcome",
    "StageRunner",
    "transition",
]
