"""RetryMiddleware — re-runs failing outcomes with exponential back-off.

On each call:
1. Calls ``next(request)`` and checks ``Outcome.status``.
2. If the status is RETRY or FAIL and retries remain:
   - emits ``retry.triggered``;
   - sleeps ``base_delay_s * 2 ** (attempt - 1)`` seconds, capped at
     ``max_delay_s``;
   - re-invokes with ``attempt_number`` incremented.
3. Once retries are exhausted and the node still fails:
   - ``allow_partial=true`` downgrades the outcome to PARTIAL_SUCCESS;
   - a leftover RETRY becomes FAIL ("retries exhausted after N attempt(s)");
   - a FAIL is returned unchanged.
4. Exceptions from ``next()`` propagate immediately; they signal
   configuration errors, not flaky work.

The retry budget is the node's ``max_retries``, else the graph's
``default_max_retry``, else 0.  The number of attempts made is reported in
``outcome.metadata["attempts"]``; the executor records
``attempts - 1`` in ``node_retry_counts``.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import os
from typing import TYPE_CHECKING

from dotfactory.engine.events.types import EventBuilder
from dotfactory.engine.handlers.base import HandlerRequest
from dotfactory.engine.middleware.chain import NextFn
from dotfactory.engine.outcome import OutcomeStatus

if TYPE_CHECKING:
    from dotfactory.engine.outcome import Outcome

logger = logging.getLogger(__name__)

_DEFAULT_BASE_DELAY_S = 0.5
_DEFAULT_MAX_DELAY_S = 30.0


def max_retries_for(request: HandlerRequest) -> int:
    """Node ``max_retries``, else graph ``default_max_retry``; never negative."""
    declared = request.node.max_retries
    budget = declared if declared is not None else request.graph.default_max_retry
    return max(0, budget)


class RetryMiddleware:
    """Retries RETRY / FAIL outcomes up to the node's retry budget.

    Args:
        base_delay_s: Back-off base in seconds.  Defaults to
                      ``DOTFACTORY_RETRY_BASE_DELAY`` or 0.5.
        max_delay_s:  Back-off ceiling in seconds.  Defaults to
                      ``DOTFACTORY_RETRY_MAX_DELAY`` or 30.
    """

    def __init__(
        self,
        base_delay_s: float | None = None,
        max_delay_s: float | None = None,
    ) -> None:
        self._base_delay_s = base_delay_s if base_delay_s is not None else float(
            os.environ.get("DOTFACTORY_RETRY_BASE_DELAY", _DEFAULT_BASE_DELAY_S)
        )
        self._max_delay_s = max_delay_s if max_delay_s is not None else float(
            os.environ.get("DOTFACTORY_RETRY_MAX_DELAY", _DEFAULT_MAX_DELAY_S)
        )

    def delay_for(self, attempt: int) -> float:
        """Back-off before attempt ``attempt + 1`` (``attempt`` is 1-based)."""
        return min(self._base_delay_s * (2 ** (attempt - 1)), self._max_delay_s)

    async def __call__(self, request: HandlerRequest, next: NextFn) -> "Outcome":
        max_retries = max_retries_for(request)
        node = request.node
        current_request = request

        while True:
            attempt = current_request.attempt_number
            outcome = await next(current_request)

            if not outcome.status.is_failure:
                return self._annotate(outcome, attempt)

            if attempt > max_retries:
                return self._exhausted(request, outcome, attempt)

            delay_s = self.delay_for(attempt)
            if request.emitter is not None:
                await request.emitter.emit(EventBuilder.retry_triggered(
                    pipeline_id=request.pipeline_id,
                    node_id=node.id,
                    attempt_number=attempt + 1,
                    backoff_ms=delay_s * 1000.0,
                    reason=outcome.failure_reason,
                ))
            logger.info(
                "RetryMiddleware: node '%s' attempt %d/%d returned %s; retrying in %.1fs",
                node.id,
                attempt,
                max_retries + 1,
                outcome.status.value,
                delay_s,
            )
            if delay_s > 0:
                await asyncio.sleep(delay_s)
            current_request = dataclasses.replace(current_request, attempt_number=attempt + 1)

    @staticmethod
    def _annotate(outcome: "Outcome", attempts: int) -> "Outcome":
        return dataclasses.replace(outcome, metadata={**outcome.metadata, "attempts": attempts})

    def _exhausted(self, request: HandlerRequest, outcome: "Outcome", attempts: int) -> "Outcome":
        node = request.node
        if node.allow_partial:
            logger.info(
                "RetryMiddleware: node '%s' still failing after %d attempt(s); "
                "allow_partial downgrades to partial_success",
                node.id, attempts,
            )
            return self._annotate(dataclasses.replace(
                outcome,
                status=OutcomeStatus.PARTIAL_SUCCESS,
                notes=outcome.notes or f"partial success after {attempts} attempt(s)",
            ), attempts)
        if outcome.status == OutcomeStatus.RETRY:
            reason = f"retries exhausted after {attempts} attempt(s)"
            if outcome.failure_reason:
                reason = f"{reason} ({outcome.failure_reason})"
            return self._annotate(dataclasses.replace(
                outcome, status=OutcomeStatus.FAIL, failure_reason=reason,
            ), attempts)
        return self._annotate(outcome, attempts)
