"""LogfireMiddleware — node lifecycle events plus one Logfire span per node.

This middleware is the primary source of node lifecycle events.  It:
1. Emits ``node.started`` via ``request.emitter`` before calling next.
2. Opens a ``logfire.span`` for the handler invocation (retries included,
   since it sits outside RetryMiddleware).
3. Sets span attributes: ``node_id``, ``handler_type``, ``visit_count``,
   ``outcome_status``, ``duration_ms``, ``attempts``, ``goal_gate``.
4. Emits ``node.completed``, or ``node.failed`` for FAIL / RETRY outcomes
   and for exceptions (which are re-raised).

Spans go nowhere unless the process called ``logfire.configure()``; the CLI
does that with ``send_to_logfire="if-token-present"``.
"""
from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

import logfire

from dotfactory.engine.events.types import EventBuilder
from dotfactory.engine.handlers.base import HandlerRequest
from dotfactory.engine.middleware.chain import NextFn

if TYPE_CHECKING:
    from dotfactory.engine.outcome import Outcome

logger = logging.getLogger(__name__)


class LogfireMiddleware:
    """Emits node lifecycle events and manages per-node Logfire spans.

    Designed to be the outermost middleware so the span covers the whole
    handler invocation including every retry.

    Args:
        span_name_template: Template for span names.  Defaults to
                            ``"node {node_id}"``.
    """

    def __init__(self, span_name_template: str = "node {node_id}") -> None:
        self._span_name_template = span_name_template

    async def __call__(self, request: HandlerRequest, next: NextFn) -> "Outcome":
        node = request.node
        emitter = request.emitter

        if emitter is not None:
            await emitter.emit(EventBuilder.node_started(
                pipeline_id=request.pipeline_id,
                node_id=node.id,
                handler_type=node.handler_type,
                visit_count=request.visit_count,
                attempt_number=request.attempt_number,
            ))

        start_time = time.monotonic()
        with logfire.span(
            self._span_name_template,
            node_id=node.id,
            handler_type=node.handler_type,
            visit_count=request.visit_count,
        ) as span:
            try:
                outcome = await next(request)
            except Exception as exc:
                span.record_exception(exc)
                if emitter is not None:
                    await emitter.emit(EventBuilder.node_failed(
                        pipeline_id=request.pipeline_id,
                        node_id=node.id,
                        error_type=type(exc).__name__,
                        message=str(exc),
                        goal_gate=node.goal_gate,
                    ))
                raise

            duration_ms = (time.monotonic() - start_time) * 1000.0
            span.set_attribute("outcome_status", outcome.status.value)
            span.set_attribute("duration_ms", duration_ms)
            span.set_attribute("attempts", int(outcome.metadata.get("attempts", 1)))
            span.set_attribute("goal_gate", node.goal_gate)

        if emitter is not None:
            if outcome.status.is_failure:
                await emitter.emit(EventBuilder.node_failed(
                    pipeline_id=request.pipeline_id,
                    node_id=node.id,
                    error_type=outcome.status.value.upper(),
                    message=outcome.failure_reason,
                    goal_gate=node.goal_gate,
                ))
            else:
                await emitter.emit(EventBuilder.node_completed(
                    pipeline_id=request.pipeline_id,
                    node_id=node.id,
                    outcome_status=outcome.status.value,
                    duration_ms=duration_ms,
                ))

        return outcome
