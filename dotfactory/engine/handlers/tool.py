"""ToolHandler — handles parallelogram (shell tool) nodes.

Runs ``tool_command`` (or ``command``) with ``bash -lc`` in the run's work
directory, in its own process group, with a bounded timeout.

Sequence:
1. Resolve the cwd: the work dir, or the node's ``cwd`` relative to it.
   A cwd that escapes the work dir fails the node before anything runs.
2. Write ``prompt.txt`` and ``context.json`` to the stage dir and remove any
   stale ``status.json``.
3. Run ``tool_hooks.pre`` (node attribute, else graph attribute).  A
   non-zero exit fails the node and the main command never runs.
4. Run the command.  On timeout the whole process group gets SIGKILL and
   the exit code is 124.
5. Run ``tool_hooks.post`` with ``EXIT_CODE`` in its environment.
6. Decide the outcome, first match wins:
   - ``status.json`` written by the tool into the stage dir (invalid JSON
     fails the node);
   - ``auto_status=true`` → SUCCESS;
   - exit 0 → SUCCESS; timeout → FAIL; anything else → FAIL.

Environment passed to every command: ``ATTRACTOR_LOGS_ROOT``,
``ATTRACTOR_STAGE_DIR``, ``ATTRACTOR_NODE_ID``, ``ATTRACTOR_PROMPT_FILE``,
``TOOL_NAME=shell`` and ``NODE_ID``.

Timeout: ``timeout`` attribute (``30s``, ``5m``...) or ``timeout_ms``, else
``DOTFACTORY_TOOL_TIMEOUT`` seconds (default 900), capped at
``DOTFACTORY_TOOL_MAX_TIMEOUT`` (default 3600).
"""
from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import os
import signal
import subprocess
import tempfile
from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotfactory.engine.callbacks import parse_duration
from dotfactory.engine.exceptions import HandlerError
from dotfactory.engine.graph import parse_bool, parse_int
from dotfactory.engine.handlers.base import Handler, HandlerRequest, write_artifact
from dotfactory.engine.outcome import Outcome

logger = logging.getLogger(__name__)

_DEFAULT_TOOL_TIMEOUT_S = 900
_MAX_TOOL_TIMEOUT_S = 3600
TIMEOUT_EXIT_CODE = 124
OUTPUT_PREVIEW_MAX_CHARS = 4000
STATUS_FILENAME = "status.json"


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    output: str
    timed_out: bool = False


def truncate_output(text: str, max_chars: int = OUTPUT_PREVIEW_MAX_CHARS) -> str:
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}\n[truncated]"


def resolve_cwd(work_dir: Path, raw_cwd: str) -> Path | None:
    """Return the tool cwd under *work_dir*, or ``None`` if *raw_cwd* escapes it."""
    root = work_dir.resolve()
    if not raw_cwd.strip():
        return root
    candidate = (root / raw_cwd.strip()).resolve()
    if candidate == root or root in candidate.parents:
        return candidate
    return None


def outcome_from_status_file(payload: Any) -> Outcome:
    """Build an Outcome from a tool-written ``status.json`` payload."""
    if not isinstance(payload, dict):
        return Outcome.fail("invalid status.json produced by tool")
    return Outcome.from_mapping(payload, metadata={"status_file": True})


class ToolHandler:
    """Shell command executor for tool nodes (``parallelogram`` shape).

    Args:
        timeout_s:     Default timeout.  Defaults to ``DOTFACTORY_TOOL_TIMEOUT``
                       or 900s.
        max_timeout_s: Ceiling for any node timeout.  Defaults to
                       ``DOTFACTORY_TOOL_MAX_TIMEOUT`` or 3600s.
        shell:         Shell binary used as ``<shell> -lc <command>``.
    """

    def __init__(
        self,
        timeout_s: float | None = None,
        max_timeout_s: float | None = None,
        shell: str = "bash",
    ) -> None:
        self._timeout_s = timeout_s or float(
            os.environ.get("DOTFACTORY_TOOL_TIMEOUT", _DEFAULT_TOOL_TIMEOUT_S)
        )
        self._max_timeout_s = max_timeout_s or float(
            os.environ.get("DOTFACTORY_TOOL_MAX_TIMEOUT", _MAX_TOOL_TIMEOUT_S)
        )
        self._shell = shell

    # ------------------------------------------------------------------
    # Configuration helpers
    # ------------------------------------------------------------------

    def timeout_for(self, request: HandlerRequest) -> float:
        """Node timeout in seconds, capped at the configured maximum."""
        node = request.node
        timeout = parse_duration(node.timeout)
        if timeout is None:
            timeout_ms = parse_int(node.attrs.get("timeout_ms"))
            if timeout_ms is not None and timeout_ms > 0:
                timeout = timeout_ms / 1000.0
        if timeout is None:
            timeout = self._timeout_s
        return min(timeout, self._max_timeout_s)

    @staticmethod
    def _hook(request: HandlerRequest, phase: str) -> str:
        key = f"tool_hooks.{phase}"
        return (request.node.attrs.get(key) or request.graph.attrs.get(key) or "").strip()

    @staticmethod
    def _command(request: HandlerRequest) -> str:
        return (request.node.tool_command or request.node.attrs.get("command", "")).strip()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, request: HandlerRequest) -> Outcome:
        """Run the node's command and translate the result into an Outcome.

        Raises:
            HandlerError: If the shell cannot be started at all.
        """
        node = request.node
        command = self._command(request)
        if not command:
            logger.debug("ToolHandler '%s': no tool_command set; returning SUCCESS", node.id)
            return Outcome.success(output=node.attrs.get("output") or None)

        work_dir = Path(request.work_dir or os.getcwd())
        cwd = resolve_cwd(work_dir, node.attrs.get("cwd", ""))
        if cwd is None:
            return Outcome.fail(
                f"requested cwd outside repository: {node.attrs.get('cwd', '')}",
                notes=f"Tool command preflight failed for node {node.id}",
            )

        with ExitStack() as stack:
            stage_dir = request.stage_dir
            if stage_dir is None:
                stage_dir = Path(stack.enter_context(tempfile.TemporaryDirectory(prefix=f"{node.id}-")))
            logs_root = request.logs_dir or stage_dir.parent
            return await self._run_in_stage(request, command, cwd, stage_dir, logs_root)

    async def _run_in_stage(
        self,
        request: HandlerRequest,
        command: str,
        cwd: Path,
        stage_dir: Path,
        logs_root: Path,
    ) -> Outcome:
        node = request.node
        prompt_file = write_artifact(stage_dir, "prompt.txt", node.prompt or command)
        write_artifact(stage_dir, "context.json", json.dumps(request.state.context_artifact(), indent=2))
        status_path = stage_dir / STATUS_FILENAME
        status_path.unlink(missing_ok=True)

        env = {
            **os.environ,
            "ATTRACTOR_LOGS_ROOT": str(logs_root),
            "ATTRACTOR_STAGE_DIR": str(stage_dir),
            "ATTRACTOR_NODE_ID": node.id,
            "ATTRACTOR_PROMPT_FILE": str(prompt_file),
            "TOOL_NAME": "shell",
            "NODE_ID": node.id,
        }
        timeout = self.timeout_for(request)

        pre_hook = self._hook(request, "pre")
        if pre_hook:
            pre = await asyncio.to_thread(self._run_command, pre_hook, cwd, env, timeout, node.id)
            if pre.exit_code != 0:
                logger.warning("Tool pre-hook for '%s' exited %d", node.id, pre.exit_code)
                write_artifact(stage_dir, "tool_output.txt", pre.output)
                return Outcome.fail(
                    f"tool pre-hook failed ({pre.exit_code})",
                    notes=truncate_output(pre.output),
                    metadata={"exit_code": pre.exit_code, "hook": "pre"},
                )

        logger.info("Tool '%s': running %r in %s (timeout %.0fs)", node.id, command, cwd, timeout)
        result = await asyncio.to_thread(self._run_command, command, cwd, env, timeout, node.id)
        write_artifact(stage_dir, "tool_output.txt", result.output)

        post_hook = self._hook(request, "post")
        if post_hook:
            post_env = {**env, "EXIT_CODE": str(result.exit_code)}
            post = await asyncio.to_thread(self._run_command, post_hook, cwd, post_env, timeout, node.id)
            if post.exit_code != 0:
                logger.warning("Tool post-hook for '%s' exited %d", node.id, post.exit_code)
                return Outcome.fail(
                    f"tool post-hook failed ({post.exit_code})",
                    notes=truncate_output(post.output),
                    metadata={"exit_code": result.exit_code, "hook": "post"},
                )

        return self._decide(request, result, timeout, status_path)

    def _decide(
        self,
        request: HandlerRequest,
        result: CommandResult,
        timeout: float,
        status_path: Path,
    ) -> Outcome:
        node = request.node
        metadata = {"exit_code": result.exit_code, "timed_out": result.timed_out}
        output = result.output.strip() or node.attrs.get("output") or ""
        preview = truncate_output(result.output)

        if status_path.exists():
            try:
                payload = json.loads(status_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("Tool '%s' wrote unreadable status.json: %s", node.id, exc)
                return Outcome.fail("invalid status.json produced by tool", metadata=metadata)
            outcome = outcome_from_status_file(payload)
            if outcome.output is None and output:
                return dataclasses.replace(outcome, output=output)
            return outcome

        if parse_bool(node.attrs.get("auto_status")):
            return Outcome.success(
                output=output or None,
                notes="auto_status synthesized success",
                metadata={**metadata, "auto_status": True},
            )

        if result.exit_code == 0:
            return Outcome.success(output=output or None, metadata=metadata)
        if result.timed_out:
            return Outcome.fail(f"tool timed out after {timeout:g}s", notes=preview, metadata=metadata)
        return Outcome.fail(
            f"tool exited with code {result.exit_code}",
            notes=preview,
            output=output or None,
            metadata=metadata,
        )

    def _run_command(
        self,
        command: str,
        cwd: Path,
        env: dict[str, str],
        timeout: float,
        node_id: str,
    ) -> CommandResult:
        """Synchronous command execution (called in a thread via asyncio.to_thread)."""
        try:
            proc = subprocess.Popen(
                [self._shell, "-lc", command],
                cwd=str(cwd),
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                start_new_session=True,
            )
        except OSError as exc:
            raise HandlerError(
                f"Failed to run command '{command}': {exc}",
                node_id=node_id,
                cause=exc,
            ) from exc

        try:
            stdout, _ = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning("Tool '%s' timed out after %.0fs; killing process group", node_id, timeout)
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            stdout, _ = proc.communicate()
            return CommandResult(exit_code=TIMEOUT_EXIT_CODE, output=stdout or "", timed_out=True)

        return CommandResult(exit_code=proc.returncode, output=stdout or "")


assert isinstance(ToolHandler(), Handler)
