from __future__ import annotations

import asyncio
import contextlib
import time
from pathlib import Path
from typing import IO

import structlog

from whs.runners.base import AgentRunner, RunnerError, RunnerProcessError, RunOptions, RunResult
from whs.runners.transcript import TranscriptAccumulator

logger = structlog.get_logger(__name__)

# stream-json lines carry whole tool results and file reads.
STREAM_LIMIT_BYTES = 16 * 1024 * 1024


class CLIAgentRunner(AgentRunner):
    """Runs agents through the ``claude`` CLI in stream-json print mode.

    The prompt is piped on stdin so long task descriptions never hit argv limits.
    """

    name = "cli"

    def __init__(self, binary: str = "claude", *, default_max_turns: int | None = None) -> None:
        self.binary = binary
        self.default_max_turns = default_max_turns
        self._processes: set[asyncio.subprocess.Process] = set()
        self._aborted: set[int] = set()

    def build_command(self, options: RunOptions) -> list[str]:
        command = [
            self.binary,
            "-p",
            "--output-format",
            "stream-json",
            "--dangerously-skip-permissions",
            "--verbose",
        ]
        if options.resume:
            command.extend(["--resume", options.resume])
        max_turns = options.max_turns or self.default_max_turns
        if max_turns:
            command.extend(["--max-turns", str(max_turns)])
        if options.agent_file:
            command.extend(["--agent", options.agent_file])
        if options.system_prompt:
            command.extend(["--append-system-prompt", options.system_prompt])
        if options.allowed_tools:
            command.extend(["--allowed-tools", ",".join(options.allowed_tools)])
        if options.model:
            command.extend(["--model", options.model])
        return command

    async def run(self, prompt: str, cwd: Path, options: RunOptions | None = None) -> RunResult:
        return await self._execute(prompt, cwd, options or RunOptions())

    async def resume_with_answer(
        self,
        session_id: str,
        answer: str,
        cwd: Path,
        options: RunOptions | None = None,
    ) -> RunResult:
        base = options or RunOptions()
        resumed = RunOptions(
            max_turns=base.max_turns,
            resume=session_id,
            system_prompt=base.system_prompt,
            agent_file=base.agent_file,
            allowed_tools=base.allowed_tools,
            model=base.model,
            log_file=base.log_file,
            on_output=base.on_output,
            on_tool_use=base.on_tool_use,
        )
        return await self._execute(answer, cwd, resumed)

    async def _execute(self, prompt: str, cwd: Path, options: RunOptions) -> RunResult:
        started = time.monotonic()
        command = self.build_command(options)
        accumulator = TranscriptAccumulator(
            session_id=options.resume or "",
            on_output=options.on_output,
            on_tool_use=options.on_tool_use,
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT_BYTES,
            )
        except FileNotFoundError as exc:
            raise RunnerProcessError(
                f"Claude binary not found: {self.binary}",
                runner=self.name,
                retriable=False,
            ) from exc

        if process.stdout is None or process.stdin is None:
            raise RunnerProcessError(
                "Claude process did not expose stdio pipes.", runner=self.name, retriable=False
            )

        self._processes.add(process)
        logger.debug("cli_runner_spawned", pid=process.pid, cwd=str(cwd), resume=options.resume)
        log_handle: IO[str] | None = None
        if options.log_file is not None:
            options.log_file.parent.mkdir(parents=True, exist_ok=True)
            log_handle = options.log_file.open("a", encoding="utf-8")

        stderr_task = asyncio.create_task(self._read_stderr(process))
        try:
            process.stdin.write(prompt.encode("utf-8"))
            with contextlib.suppress(BrokenPipeError, ConnectionResetError):
                await process.stdin.drain()
            process.stdin.close()

            while True:
                try:
                    raw_line = await process.stdout.readline()
                except (ValueError, asyncio.LimitOverrunError) as exc:
                    raise RunnerError(
                        f"Unreadable output from Claude process: {exc}", runner=self.name
                    ) from exc
                if not raw_line:
                    break
                line = raw_line.decode("utf-8", errors="replace")
                if log_handle is not None:
                    log_handle.write(line)
                accumulator.feed_line(line)

            exit_code = await process.wait()
            stderr_output = await stderr_task
        finally:
            self._processes.discard(process)
            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.terminate()
            if log_handle is not None:
                log_handle.close()
            if not stderr_task.done():
                stderr_task.cancel()

        aborted = process.pid in self._aborted
        self._aborted.discard(process.pid)
        if stderr_output:
            logger.debug("cli_runner_stderr", pid=process.pid, stderr=stderr_output[:400])
        return accumulator.finish(
            exit_code=exit_code,
            stderr=stderr_output,
            aborted=aborted,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    @staticmethod
    async def _read_stderr(process: asyncio.subprocess.Process) -> str:
        if process.stderr is None:
            return ""
        raw = await process.stderr.read()
        return raw.decode("utf-8", errors="replace").strip()

    def abort(self) -> None:
        for process in list(self._processes):
            if process.returncode is not None:
                continue
            self._aborted.add(process.pid)
            with contextlib.suppress(ProcessLookupError):
                process.terminate()
        logger.info("cli_runner_aborted", processes=len(self._aborted))
