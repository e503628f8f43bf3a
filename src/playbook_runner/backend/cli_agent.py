"""Subprocess-based agent spawner for CLI coding agents."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex

from playbook_runner.backend.output_parser import parse_agent_output
from playbook_runner.batch.models import AgentRunResult, SynopsisResult

logger = logging.getLogger(__name__)

_TIMEOUT_EXIT_CODE = 124
_STDERR_TAIL_CHARS = 2_000


class AgentRunError(RuntimeError):
    """Agent process could not be run, with a retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CliAgentSpawner:
    """Run one agent turn per call from a shell-style command template.

    The template must contain `{prompt}`; `{resume_args}` expands to the
    resume flag and conversation id when a conversation is continued, and to
    nothing otherwise.
    """

    def __init__(
        self,
        *,
        command_template: str,
        resume_flag: str = "--resume",
        timeout_seconds: int = 3_600,
        cwd_by_session: dict[str, str] | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        self.command_template = command_template
        self.resume_flag = resume_flag
        self.timeout_seconds = timeout_seconds
        self.cwd_by_session = dict(cwd_by_session or {})
        self.env = env

    async def spawn_agent(
        self,
        session_id: str,
        prompt: str,
        cwd_override: str | None = None,
    ) -> AgentRunResult:
        cwd = cwd_override or self.cwd_by_session.get(session_id)
        run_args = build_run_args(command_template=self.command_template, prompt=prompt)
        exit_code, stdout, stderr = await self._run(run_args, cwd=cwd)
        parsed = parse_agent_output(stdout)
        success = exit_code == 0 and not parsed.is_error
        if not success:
            logger.warning(
                "Agent exited with code %s for session %s: %s",
                exit_code,
                session_id,
                _tail(stderr) or parsed.response[-200:],
            )
        return AgentRunResult(
            success=success,
            response=parsed.response or _tail(stderr),
            agent_session_id=parsed.agent_session_id,
            usage_stats=parsed.usage_stats,
        )

    async def spawn_synopsis(
        self,
        session_id: str,
        cwd: str,
        agent_session_id: str,
        prompt: str,
    ) -> SynopsisResult:
        run_args = build_run_args(
            command_template=self.command_template,
            prompt=prompt,
            resume_args=[self.resume_flag, agent_session_id],
        )
        exit_code, stdout, _ = await self._run(run_args, cwd=cwd or None)
        parsed = parse_agent_output(stdout)
        if exit_code != 0 or parsed.is_error:
            logger.warning(
                "Synopsis request exited with code %s for session %s",
                exit_code,
                session_id,
            )
            return SynopsisResult(success=False)
        return SynopsisResult(success=True, response=parsed.response)

    async def _run(self, run_args: list[str], *, cwd: str | None) -> tuple[int, str, str]:
        env = os.environ.copy()
        if self.env:
            env.update(self.env)
        try:
            process = await asyncio.create_subprocess_exec(
                *run_args,
                cwd=cwd,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as error:
            raise AgentRunError(
                f"Agent command not found: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise AgentRunError(f"Agent failed to start: {error}", transient=True) from error

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=self.timeout_seconds,
            )
        except TimeoutError:
            await _terminate_process(process)
            logger.warning("Agent timed out after %ss: %s", self.timeout_seconds, run_args[0])
            return _TIMEOUT_EXIT_CODE, "", "Agent timed out."

        return (
            process.returncode if process.returncode is not None else 1,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )


def build_run_args(
    *,
    command_template: str,
    prompt: str,
    resume_args: list[str] | None = None,
) -> list[str]:
    """Render the command template into an argv list."""

    stripped = command_template.strip()
    if not stripped:
        raise AgentRunError("Agent command template is empty.", transient=False)
    if "{prompt}" not in stripped:
        raise AgentRunError("Agent command template must include {prompt}.", transient=False)
    if resume_args and "{resume_args}" not in stripped:
        raise AgentRunError(
            "Agent command template must include {resume_args} to resume a conversation.",
            transient=False,
        )

    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            resume_args=shlex.join(resume_args) if resume_args else "",
        )
    except KeyError as error:
        raise AgentRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise AgentRunError("Agent command template rendered empty command.", transient=False)
    return argv


async def _terminate_process(process: asyncio.subprocess.Process) -> None:
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=2)
    except TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()


def _tail(text: str) -> str:
    return text.strip()[-_STDERR_TAIL_CHARS:]
