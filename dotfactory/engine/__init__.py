"""dotfactory execution engine.

Public surface for the engine package.  Consumers may import from
sub-modules directly; this __init__ re-exports the most commonly used names.
"""
from dotfactory.engine.callbacks import EngineCallbacks, GenerationRequest, HumanQuestion
from dotfactory.engine.checkpoint import CheckpointManager, EngineCheckpoint
from dotfactory.engine.context import PipelineContext
from dotfactory.engine.exceptions import (
    CheckpointError,
    ConditionSyntaxError,
    EngineError,
    GoalGateUnsatisfiedError,
    HandlerError,
    MaxVisitsExceededError,
    NodeFailedError,
    NoEligibleEdgeError,
    ParallelConvergenceError,
    ParseError,
    RetriesExhaustedError,
    RunCanceledError,
    StylesheetError,
    UnknownHandlerTypeError,
    ValidationError,
)
from dotfactory.engine.executor import Executor
from dotfactory.engine.graph import SHAPE_TO_HANDLER, Edge, Graph, Node
from dotfactory.engine.handlers import FunctionHandler, Handler, HandlerRegistry, HandlerRequest
from dotfactory.engine.lint import Diagnostic, Severity, classify, lint, validate
from dotfactory.engine.outcome import Outcome, OutcomeStatus, RunResult, RunStatus
from dotfactory.engine.parser import DotParser, parse_dot, parse_file
from dotfactory.engine.runner import PipelineRunner, run_pipeline
from dotfactory.engine.serializer import serialize
from dotfactory.engine.state import EngineState
from dotfactory.engine.transforms import apply_transforms

__all__ = [
    # Graph models
    "Graph",
    "Node",
    "Edge",
    "SHAPE_TO_HANDLER",
    # Parser / serializer
    "DotParser",
    "parse_dot",
    "parse_file",
    "serialize",
    # Lint and transforms
    "Diagnostic",
    "Severity",
    "lint",
    "validate",
    "classify",
    "apply_transforms",
    # Outcome and state
    "Outcome",
    "OutcomeStatus",
    "RunResult",
    "RunStatus",
    "PipelineContext",
    "EngineState",
    # Handlers
    "Handler",
    "HandlerRequest",
    "HandlerRegistry",
    "FunctionHandler",
    # Execution
    "EngineCallbacks",
    "GenerationRequest",
    "HumanQuestion",
    "Executor",
    "CheckpointManager",
    "EngineCheckpoint",
    "PipelineRunner",
    "run_pipeline",
    # Exceptions
    "EngineError",
    "ParseError",
    "ValidationError",
    "ConditionSyntaxError",
    "StylesheetError",
    "HandlerError",
    "UnknownHandlerTypeError",
    "NodeFailedError",
    "RetriesExhaustedError",
    "GoalGateUnsatisfiedError",
    "MaxVisitsExceededError",
    "NoEligibleEdgeError",
    "ParallelConvergenceError",
    "CheckpointError",
    "RunCanceledError",
]
