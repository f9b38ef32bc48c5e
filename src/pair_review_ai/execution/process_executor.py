"""Supervised subprocess execution for provider CLIs.

``ProcessExecutor.run`` spawns one resolved invocation, writes the prompt to
stdin (always closing it), and races four completion paths against each
other: normal exit, timeout, stdin write failure, and the caller going away.
Whichever path settles the ``_SettleOnce`` cell first decides the outcome; the
rest become no-ops. The timeout timer is cleared only by the settling path.

stdout is read in arrival order and fanned out to two independent consumers:
the accumulation buffer handed back to the caller and, when a progress
callback is present, a ``StreamParser`` for live events.
"""
from __future__ import annotations

import asyncio
import codecs
import logging
import os
import shlex
import signal
import threading
from pathlib import Path
from typing import Any, List, Mapping, Optional

from pair_review_ai.config import get_bin_dir
from pair_review_ai.domain.contracts import (
    CancellationCheck,
    CommandResult,
    ExecutionOptions,
    LineParser,
    ResolvedInvocation,
)
from pair_review_ai.errors import (
    AnalysisCancelledError,
    NotInstalledError,
    ProcessFailedError,
    ProviderTimeoutError,
)
from pair_review_ai.observability.structured_log import log_json
from pair_review_ai.streaming.normalizer import StreamParser
from pair_review_ai.util import preview, redact

logger = logging.getLogger(__name__)

SIGNAL_EXIT_CODES = frozenset({143, 137})
TERMINATE_GRACE_SEC = 2.0
READ_CHUNK_BYTES = 64 * 1024


class _SettleOnce:
    """Single-assignment outcome shared by every completion path."""

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self._lock = threading.Lock()
        self._settled = False
        self._future: asyncio.Future = loop.create_future()
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def settled(self) -> bool:
        return self._settled

    def arm_timer(self, timer: asyncio.TimerHandle) -> None:
        self._timer = timer

    def resolve(self, value: Any) -> bool:
        return self._settle(value=value)

    def reject(self, error: BaseException) -> bool:
        return self._settle(error=error)

    def abandon(self) -> None:
        """Settle with no outcome when the caller stops waiting."""
        with self._lock:
            self._settled = True
        if self._timer is not None:
            self._timer.cancel()
        if not self._future.done():
            self._future.cancel()

    def _settle(self, value: Any = None, error: Optional[BaseException] = None) -> bool:
        with self._lock:
            if self._settled:
                return False
            self._settled = True
        if self._timer is not None:
            self._timer.cancel()
        if not self._future.done():
            if error is not None:
                self._future.set_exception(error)
            else:
                self._future.set_result(value)
        return True

    async def wait(self) -> Any:
        return await self._future


class ProcessGroupHandle:
    """Cancellation handle that signals the whole process group."""

    def __init__(self, process: asyncio.subprocess.Process) -> None:
        self._process = process
        self.pid = process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode

    def terminate(self) -> None:
        _signal_process(self._process, signal.SIGTERM)

    def kill(self) -> None:
        _signal_process(self._process, signal.SIGKILL)


def _signal_process(process: asyncio.subprocess.Process, signum: int) -> None:
    if process.returncode is not None:
        return
    if hasattr(os, "killpg"):
        try:
            os.killpg(process.pid, signum)
            return
        except (ProcessLookupError, PermissionError):
            pass
    try:
        process.send_signal(signum)
    except ProcessLookupError:
        return


def is_signal_exit(returncode: Optional[int]) -> bool:
    if returncode is None:
        return False
    return returncode in SIGNAL_EXIT_CODES or returncode < 0


def shell_command_line(invocation: ResolvedInvocation) -> str:
    if not invocation.args:
        return invocation.command
    return " ".join([invocation.command, *(shlex.quote(arg) for arg in invocation.args)])


class ProcessExecutor:
    def __init__(
        self,
        cancellation: Optional[CancellationCheck] = None,
        bin_dir: Optional[Path] = None,
        terminate_grace_sec: float = TERMINATE_GRACE_SEC,
    ) -> None:
        self._cancellation = cancellation
        self._bin_dir = bin_dir
        self._terminate_grace_sec = max(0.1, float(terminate_grace_sec))

    @property
    def cancellation(self) -> Optional[CancellationCheck]:
        return self._cancellation

    def build_env(self, extra_env: Mapping[str, str]) -> dict:
        env = dict(os.environ)
        env.update(extra_env or {})
        bin_dir = self._bin_dir or get_bin_dir()
        env["PATH"] = f"{bin_dir}{os.pathsep}{env.get('PATH', '')}"
        return env

    async def _spawn(
        self,
        invocation: ResolvedInvocation,
        cwd: Optional[str],
        stdin: int = asyncio.subprocess.PIPE,
    ) -> asyncio.subprocess.Process:
        kwargs = dict(
            stdin=stdin,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd or None,
            env=self.build_env(invocation.env),
            start_new_session=True,
        )
        if invocation.use_shell:
            return await asyncio.create_subprocess_shell(shell_command_line(invocation), **kwargs)
        return await asyncio.create_subprocess_exec(invocation.command, *invocation.args, **kwargs)

    async def run(
        self,
        invocation: ResolvedInvocation,
        prompt: str,
        options: ExecutionOptions,
        line_parser: Optional[LineParser] = None,
        label: str = "CLI",
        install_instructions: str = "",
        check_cancel_on_clean_exit: bool = False,
    ) -> CommandResult:
        tag = f"[Level {options.level}]"
        logger.info("%s Executing %s...", tag, label)
        logger.info("%s Writing prompt: %d bytes", tag, len(prompt.encode("utf-8")))
        try:
            process = await self._spawn(invocation, options.cwd)
        except FileNotFoundError as exc:
            logger.error("%s %s not found. Please ensure it is installed.", tag, label)
            message = f"{tag} {label} not found. {install_instructions}".strip()
            raise NotInstalledError(message, install_instructions=install_instructions, level=options.level) from exc
        except OSError as exc:
            logger.error("%s %s process error: %s", tag, label, exc)
            raise ProcessFailedError(f"{tag} {label} failed to start: {exc}", level=options.level) from exc

        handle = ProcessGroupHandle(process)
        log_json(
            logger,
            "process.spawn",
            tag=options.level,
            pid=process.pid,
            command=invocation.command,
            shell=invocation.use_shell,
        )
        loop = asyncio.get_running_loop()
        outcome = _SettleOnce(loop)
        if options.timeout_sec:
            outcome.arm_timer(
                loop.call_later(
                    options.timeout_sec,
                    self._on_timeout,
                    outcome,
                    handle,
                    options,
                    label,
                )
            )

        supervisor = asyncio.ensure_future(
            self._supervise(
                process,
                prompt if invocation.prompt_via_stdin else "",
                outcome,
                options,
                line_parser,
                label,
                check_cancel_on_clean_exit,
            )
        )
        supervisor.add_done_callback(lambda task: _forward_failure(task, outcome))
        registered_with_registry = False
        try:
            registered_with_registry = self._register(options, handle)
            return await outcome.wait()
        finally:
            outcome.abandon()
            if process.returncode is None:
                handle.terminate()
            await self._reap(handle, supervisor)
            if registered_with_registry:
                self._cancellation.unregister_process(options.analysis_id, handle)  # type: ignore[union-attr]
            log_json(logger, "process.exit", tag=options.level, pid=process.pid, returncode=process.returncode)

    def _register(self, options: ExecutionOptions, handle: ProcessGroupHandle) -> bool:
        if not options.analysis_id:
            return False
        if options.register_process is not None:
            options.register_process(options.analysis_id, handle)
            return False
        register = getattr(self._cancellation, "register_process", None)
        if register is None:
            return False
        register(options.analysis_id, handle)
        return hasattr(self._cancellation, "unregister_process")

    def _on_timeout(
        self,
        outcome: _SettleOnce,
        handle: ProcessGroupHandle,
        options: ExecutionOptions,
        label: str,
    ) -> None:
        timeout_ms = int(round(float(options.timeout_sec or 0) * 1000))
        tag = f"[Level {options.level}]"
        error = ProviderTimeoutError(
            f"{tag} {label} timed out after {timeout_ms}ms",
            timeout_sec=float(options.timeout_sec or 0),
            level=options.level,
        )
        if not outcome.reject(error):
            return
        logger.error("%s Process %s timed out after %sms", tag, handle.pid, timeout_ms)
        log_json(logger, "process.timeout", tag=options.level, pid=handle.pid, timeout_ms=timeout_ms)
        handle.terminate()

    async def _supervise(
        self,
        process: asyncio.subprocess.Process,
        prompt: str,
        outcome: _SettleOnce,
        options: ExecutionOptions,
        line_parser: Optional[LineParser],
        label: str,
        check_cancel_on_clean_exit: bool,
    ) -> None:
        stream = None
        if line_parser is not None and options.on_stream_event is not None:
            stream = StreamParser(line_parser, options.on_stream_event, cwd=options.cwd)
        stdout_parts: List[str] = []
        stderr_parts: List[str] = []
        await asyncio.gather(
            self._write_prompt(process, prompt, outcome, options),
            _pump(process.stdout, stdout_parts, stream),
            _pump(process.stderr, stderr_parts, None),
        )
        returncode = await process.wait()
        if stream is not None:
            stream.flush()
        if outcome.settled:
            return
        self._classify(
            returncode,
            "".join(stdout_parts),
            "".join(stderr_parts),
            outcome,
            options,
            label,
            check_cancel_on_clean_exit,
        )

    async def _write_prompt(
        self,
        process: asyncio.subprocess.Process,
        prompt: str,
        outcome: _SettleOnce,
        options: ExecutionOptions,
    ) -> None:
        stdin = process.stdin
        if stdin is None:
            return
        try:
            if prompt:
                stdin.write(prompt.encode("utf-8"))
                await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            tag = f"[Level {options.level}]"
            logger.error("%s Failed to write prompt to stdin: %s", tag, exc)
            error = ProcessFailedError(f"{tag} Failed to write prompt to stdin: {exc}", level=options.level)
            if outcome.reject(error):
                _signal_process(process, signal.SIGTERM)
        finally:
            stdin.close()

    def _classify(
        self,
        returncode: int,
        stdout: str,
        stderr: str,
        outcome: _SettleOnce,
        options: ExecutionOptions,
        label: str,
        check_cancel_on_clean_exit: bool,
    ) -> None:
        tag = f"[Level {options.level}]"
        cancelled = bool(
            options.analysis_id
            and self._cancellation is not None
            and self._cancellation.is_analysis_cancelled(options.analysis_id)
        )
        if cancelled and (is_signal_exit(returncode) or (check_cancel_on_clean_exit and returncode == 0)):
            logger.info("%s %s terminated due to analysis cancellation (exit code %s)", tag, label, returncode)
            outcome.reject(
                AnalysisCancelledError(
                    f"{tag} Analysis cancelled by user",
                    analysis_id=options.analysis_id or "",
                    level=options.level,
                )
            )
            return

        if stderr.strip():
            if returncode != 0:
                logger.error("%s %s stderr (exit code %s): %s", tag, label, returncode, redact(stderr))
            else:
                logger.warning("%s %s stderr (success): %s", tag, label, preview(stderr, 2000))

        if returncode != 0:
            logger.error("%s %s exited with code %s", tag, label, returncode)
            outcome.reject(
                ProcessFailedError(
                    f"{tag} {label} exited with code {returncode}: {stderr}",
                    returncode=returncode,
                    stderr=stderr,
                    level=options.level,
                )
            )
            return

        outcome.resolve(CommandResult(returncode=0, stdout=stdout, stderr=stderr))

    async def _reap(self, handle: ProcessGroupHandle, supervisor: "asyncio.Future[None]") -> None:
        done, _ = await asyncio.wait({supervisor}, timeout=self._terminate_grace_sec)
        if done:
            return
        logger.warning("Process %s ignored SIGTERM; sending SIGKILL", handle.pid)
        handle.kill()
        done, _ = await asyncio.wait({supervisor}, timeout=self._terminate_grace_sec)
        if not done:
            supervisor.cancel()

    async def probe(self, invocation: ResolvedInvocation, timeout_sec: float) -> CommandResult:
        """Short-lived run with no stdin, used for ``--version`` checks."""
        process = await self._spawn(invocation, None, stdin=asyncio.subprocess.DEVNULL)
        handle = ProcessGroupHandle(process)
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_sec)
        except asyncio.TimeoutError:
            handle.kill()
            await process.communicate()
            return CommandResult(returncode=124, stdout="", stderr="Execution timeout.")
        return CommandResult(
            returncode=process.returncode if process.returncode is not None else 0,
            stdout=stdout.decode(errors="replace") if stdout else "",
            stderr=stderr.decode(errors="replace") if stderr else "",
        )


async def _pump(
    reader: Optional[asyncio.StreamReader],
    parts: List[str],
    stream: Optional[StreamParser],
) -> None:
    if reader is None:
        return
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        chunk = await reader.read(READ_CHUNK_BYTES)
        if not chunk:
            break
        text = decoder.decode(chunk)
        if not text:
            continue
        parts.append(text)
        if stream is not None:
            stream.feed(text)
    tail = decoder.decode(b"", final=True)
    if tail:
        parts.append(tail)
        if stream is not None:
            stream.feed(tail)


def _forward_failure(task: "asyncio.Future[None]", outcome: _SettleOnce) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        outcome.reject(error)
