"""Subprocess-based backend for CLI agents streaming line-delimited JSON."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
from collections.abc import Iterator

from kanban_agent.config import AgentSettings
from kanban_agent.execution.backend.base import AgentRunRequest

logger = logging.getLogger(__name__)

_READ_SIZE = 65536


class AgentRunError(RuntimeError):
    """Agent launch or run error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CliAgentBackend:
    """Launch the agent command template configured in settings."""

    def __init__(self, settings: AgentSettings) -> None:
        self.settings = settings

    def launch(self, request: AgentRunRequest) -> SubprocessAgentProcess:
        template = (
            self.settings.resume_command_template
            if request.session_id
            else self.settings.command_template
        )
        run_args = _build_run_args(
            command_template=template,
            prompt=request.prompt,
            session_id=request.session_id,
            allowed_tools=self.settings.allowed_tools,
        )
        command_head = run_args[0]

        env = os.environ.copy()
        env["KANBAN_AGENT_CARD_ID"] = str(request.card_id)

        logger.info(
            "Launching agent %s in %s (resume=%s)",
            command_head,
            request.cwd,
            bool(request.session_id),
        )
        try:
            process = subprocess.Popen(  # noqa: S603
                run_args,
                cwd=request.cwd,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError as error:
            raise AgentRunError(
                f"Agent command not found: {command_head}",
                transient=False,
            ) from error
        except OSError as error:
            raise AgentRunError(
                f"Agent failed to start: {error}",
                transient=True,
            ) from error
        return SubprocessAgentProcess(
            process,
            timeout_seconds=self.settings.timeout_seconds,
            command_head=command_head,
        )


class SubprocessAgentProcess:
    """Popen wrapper: chunked stdout, stderr drained to the log, watchdog timer."""

    def __init__(
        self,
        process: subprocess.Popen[bytes],
        *,
        timeout_seconds: int,
        command_head: str,
    ) -> None:
        self._process = process
        self._command_head = command_head
        self._timed_out = False
        self._stderr_thread = threading.Thread(
            target=self._drain_stderr,
            name=f"agent-stderr-{process.pid}",
            daemon=True,
        )
        self._stderr_thread.start()
        self._watchdog = threading.Timer(timeout_seconds, self._on_timeout)
        self._watchdog.daemon = True
        self._watchdog.start()

    @property
    def timed_out(self) -> bool:
        return self._timed_out

    @property
    def pid(self) -> int:
        return self._process.pid

    def read_chunks(self) -> Iterator[bytes]:
        stdout = self._process.stdout
        if stdout is None:
            return
        while True:
            chunk = stdout.read1(_READ_SIZE)
            if not chunk:
                return
            yield chunk

    def terminate(self) -> None:
        if self._process.poll() is None:
            _terminate_process(self._process)

    def wait(self) -> int:
        returncode = self._process.wait()
        self._watchdog.cancel()
        self._stderr_thread.join(timeout=2)
        if self._process.stdout is not None:
            self._process.stdout.close()
        logger.info("Agent %s exited with code %s", self._command_head, returncode)
        return returncode

    def _on_timeout(self) -> None:
        self._timed_out = True
        logger.warning("Agent %s exceeded its timeout, terminating", self._command_head)
        self.terminate()

    def _drain_stderr(self) -> None:
        stderr = self._process.stderr
        if stderr is None:
            return
        with stderr:
            for raw_line in stderr:
                line = raw_line.decode("utf-8", errors="replace").rstrip()
                if line:
                    logger.debug("agent stderr: %s", line)


def _build_run_args(
    *,
    command_template: str,
    prompt: str,
    session_id: str | None,
    allowed_tools: str,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise AgentRunError("Agent command template is empty.", transient=False)
    if "{prompt}" not in stripped:
        raise AgentRunError(
            "Agent command template must include {prompt}.",
            transient=False,
        )
    if "{session_id}" in stripped and not session_id:
        raise AgentRunError(
            "Agent command template needs {session_id} but no session is stored.",
            transient=False,
        )

    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            session_id=shlex.quote(session_id or ""),
            allowed_tools=shlex.quote(allowed_tools),
        )
    except (KeyError, IndexError) as error:
        raise AgentRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise AgentRunError(
            "Agent command template rendered empty command.",
            transient=False,
        )
    return argv


def _terminate_process(process: subprocess.Popen[str] | subprocess.Popen[bytes]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
