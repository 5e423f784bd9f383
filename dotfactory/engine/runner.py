"""PipelineRunner — file-to-RunResult orchestration around the Executor.

The runner is the layer the CLI talks to.  It:
1. Reads and parses the DOT file into a ``Graph``.
2. Validates it (ERROR diagnostics abort before anything runs) and applies
   the transform pipeline.
3. Creates the logs directory, writes ``manifest.json`` and builds the event
   emitter (``events.jsonl`` plus the caller's ``on_event``).
4. Creates fresh state, or loads ``checkpoint.json`` when resuming.
5. Wires the default callbacks (simulated generation, auto-approving human
   gate, ``<node>/status.json`` per finalized outcome) under any callbacks
   the caller supplied, and runs the ``Executor``.

The emitter is closed in a ``finally`` block regardless of the run outcome.
"""
from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from dotfactory.engine.callbacks import (
    EngineCallbacks,
    GenerationRequest,
    HumanQuestion,
    maybe_await,
)
from dotfactory.engine.checkpoint import CheckpointManager, NodeOutcomeRecord
from dotfactory.engine.events import EventBusConfig, build_emitter
from dotfactory.engine.executor import Executor
from dotfactory.engine.graph import Graph, Node
from dotfactory.engine.handlers.base import Handler
from dotfactory.engine.lint import Diagnostic, validate
from dotfactory.engine.outcome import Outcome, OutcomeStatus, RunResult, RunStatus
from dotfactory.engine.parser import parse_file
from dotfactory.engine.state import EngineState
from dotfactory.engine.transforms import apply_transforms

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

_DEFAULT_RUNS_DIR: str = ".dotfactory/runs"
"""Parent for logs directories when none is given (relative to cwd)."""

STATUS_FILENAME = "status.json"

DEFAULT_HUMAN_ANSWER = "APPROVE"

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_SKIPPED = 77


def exit_code_for(result: RunResult) -> int:
    """Process exit code for *result*: 0 success, 77 skipped exit, else 1."""
    if result.status != RunStatus.SUCCESS:
        return EXIT_FAILED
    exit_outcome = result.state.node_outcomes.get(result.exit_node_id or "")
    if exit_outcome is not None and exit_outcome.status == OutcomeStatus.SKIPPED:
        return EXIT_SKIPPED
    return EXIT_OK


def status_payload(outcome: Outcome) -> dict[str, Any]:
    """``status.json`` body: the outcome record plus lower-case status/outcome."""
    payload = NodeOutcomeRecord.from_outcome(outcome).model_dump(mode="json")
    payload["status"] = outcome.status.value
    payload["outcome"] = outcome.status.value
    return payload


def _skips_status_artifact(node: Node, outcome: Outcome) -> bool:
    # A tool whose success was synthesized from auto_status leaves no status.json.
    return node.handler_type == "tool" and bool(outcome.metadata.get("auto_status"))


# ── PipelineRunner ────────────────────────────────────────────────────────────

class PipelineRunner:
    """Runs one DOT pipeline file from disk to a ``RunResult``.

    Args:
        dot_path:        Path to the ``.dot`` pipeline file (read-only input).
        logs_dir:        Logs directory for this run.  Defaults to a fresh
                         timestamped directory under ``.dotfactory/runs/``.
                         Required when *resume* is set.
        work_dir:        Repository root tool commands run in.  Defaults to
                         the current working directory.
        callbacks:       Caller hooks.  Any hook left unset falls back to the
                         runner's default.
        simulate:        Default generation answers ``SIMULATED RESPONSE: <id>``
                         rather than ``LIVE RESPONSE: <id>``.
        auto_approve:    Answer every human gate with its first option (or
                         ``APPROVE``), even when callbacks supply ``ask_human``.
        resume:          Continue from ``checkpoint.json`` in *logs_dir*.
        custom_handlers: Extra ``{type: handler}`` entries for custom nodes.
        cancel_event:    Set it to stop the run at the next step boundary.
        event_config:    ``events.jsonl`` settings; defaults to env-driven.
    """

    def __init__(
        self,
        dot_path: str | Path,
        *,
        logs_dir: str | Path | None = None,
        work_dir: str | Path | None = None,
        callbacks: EngineCallbacks | None = None,
        simulate: bool = True,
        auto_approve: bool = False,
        resume: bool = False,
        custom_handlers: dict[str, Handler | Any] | None = None,
        cancel_event: asyncio.Event | None = None,
        event_config: EventBusConfig | None = None,
    ) -> None:
        if resume and logs_dir is None:
            raise ValueError("resume requires the logs directory of the run to continue")
        self.dot_path = Path(dot_path).resolve()
        self.logs_dir = Path(logs_dir) if logs_dir is not None else self._default_logs_dir()
        self.work_dir = Path(work_dir).resolve() if work_dir is not None else Path.cwd()
        self.simulate = simulate
        self.auto_approve = auto_approve
        self.resume = resume
        self.cancel_event = cancel_event or asyncio.Event()
        self._event_config = event_config
        self._user_callbacks = callbacks or EngineCallbacks()
        self._custom_handlers = {
            **self._user_callbacks.custom_handlers,
            **(custom_handlers or {}),
        }
        self.graph: Graph | None = None
        self.diagnostics: list[Diagnostic] = []

    # ── Public API ────────────────────────────────────────────────────────────

    def load_graph(self) -> Graph:
        """Parse, validate and transform the DOT file.

        Raises:
            FileNotFoundError: DOT file does not exist.
            ParseError:        DOT file is syntactically invalid.
            ValidationError:   Lint found ERROR-severity diagnostics.
            StylesheetError:   ``model_stylesheet`` does not parse.
        """
        graph = parse_file(self.dot_path)
        self.diagnostics = validate(graph)
        for diagnostic in self.diagnostics:
            logger.warning("%s", diagnostic)
        self.graph = apply_transforms(graph)
        return self.graph

    async def run(self) -> RunResult:
        """Execute the pipeline and return the ``RunResult``.

        Pre-execution errors (parse, validation, unreadable checkpoint)
        propagate; everything after the executor starts is reported in the
        result instead.
        """
        graph = self.load_graph()
        pipeline_id = graph.name or self.dot_path.stem
        checkpoints = CheckpointManager(self.logs_dir)

        state, start_node_id = self._initial_state(checkpoints)
        if not self.resume:
            checkpoints.write_manifest(graph, datetime.now(timezone.utc))
        logger.info("Run '%s' logs in %s", pipeline_id, self.logs_dir)

        callbacks = self._build_callbacks()
        emitter = build_emitter(
            pipeline_id=pipeline_id,
            run_dir=self.logs_dir,
            config=self._event_config,
            on_event=callbacks.on_event,
        )
        executor = Executor(
            graph,
            callbacks=callbacks,
            emitter=emitter,
            checkpoint_manager=checkpoints,
            logs_dir=self.logs_dir,
            work_dir=self.work_dir,
            cancel_event=self.cancel_event,
            pipeline_id=pipeline_id,
        )
        try:
            return await executor.run(state, start_node_id)
        finally:
            try:
                await emitter.aclose()
            except Exception as close_exc:
                logger.warning("Emitter aclose() raised: %s", close_exc)

    # ── Private helpers ───────────────────────────────────────────────────────

    def _default_logs_dir(self) -> Path:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        return Path.cwd() / _DEFAULT_RUNS_DIR / f"{self.dot_path.stem}-{stamp}"

    def _initial_state(self, checkpoints: CheckpointManager) -> tuple[EngineState, str | None]:
        if not self.resume:
            return EngineState(), None
        state, current_node = checkpoints.load_state()
        logger.info(
            "Resuming at '%s' with %d completed node(s)",
            current_node, len(state.completed_nodes),
        )
        return state, current_node

    def _build_callbacks(self) -> EngineCallbacks:
        """Caller hooks first; runner defaults fill the gaps."""
        user = self._user_callbacks

        async def on_outcome(node: Node, outcome: Outcome, stage_dir: Path | None) -> None:
            if stage_dir is not None and not _skips_status_artifact(node, outcome):
                stage_dir.mkdir(parents=True, exist_ok=True)
                (stage_dir / STATUS_FILENAME).write_text(
                    json.dumps(status_payload(outcome), indent=2), encoding="utf-8"
                )
            if user.on_outcome is not None:
                await maybe_await(user.on_outcome(node, outcome, stage_dir))

        return dataclasses.replace(
            user,
            generate=user.generate or self._default_generate,
            ask_human=self._default_ask_human if self.auto_approve else (
                user.ask_human or self._default_ask_human
            ),
            custom_handlers=self._custom_handlers,
            on_outcome=on_outcome,
        )

    def _default_generate(self, request: GenerationRequest) -> str:
        prefix = "SIMULATED RESPONSE" if self.simulate else "LIVE RESPONSE"
        return f"{prefix}: {request.node.id}"

    def _default_ask_human(self, question: HumanQuestion) -> str:
        if question.options:
            return question.options[0]
        return DEFAULT_HUMAN_ANSWER


def run_pipeline(dot_path: str | Path, **kwargs: Any) -> RunResult:
    """Synchronous wrapper: ``asyncio.run(PipelineRunner(dot_path, **kwargs).run())``."""
    return asyncio.run(PipelineRunner(dot_path, **kwargs).run())
