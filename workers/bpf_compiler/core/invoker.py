"""
Compile invoker — run clang once for one ProgramSpec.

Handles:
- Destination file creation (clang writes to stdout, we own the file)
- Process spawn in its own process group, so cancellation reaps cc1 too
- Bounded stderr capture (DiagnosticTail)
- Peak RSS sampling of the compiler process tree (psutil, best-effort)
- Cancellation via an asyncio.Event token or by cancelling the awaiting task

A cancelled compile never logs above DEBUG.  A failed one logs the pid,
peak RSS and the captured stderr so the compiler output is not lost.
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from dataclasses import dataclass
from typing import List, Tuple

import psutil

from bpf_compiler import COMPILER
from bpf_compiler.core.errors import CompileCancelled, CompileIOError, ToolchainError
from bpf_compiler.core.flags import OutputDirectories, ProgramSpec, build_flags, command_line
from bpf_compiler.core.isa import IsaLevel, detect_isa

logger = logging.getLogger(__name__)

DIAGNOSTIC_LIMIT = 1_000_000       # bytes of compiler stderr kept per run
RSS_SAMPLE_INTERVAL = 0.02         # seconds
TERMINATE_GRACE = 5.0              # seconds between SIGTERM and SIGKILL
DRAIN_GRACE = 1.0                  # seconds to finish reading stderr after exit
READ_CHUNK = 64 * 1024


@dataclass(frozen=True)
class CompilationResult:
    """Outcome of one successful compiler run."""
    output_path: str
    flags: Tuple[str, ...]
    pid: int
    peak_rss_bytes: int = 0        # sampled lower bound, 0 = not available
    duration_ms: int = 0


class DiagnosticTail:
    """Keeps the last *limit* bytes written to it."""

    def __init__(self, limit: int = DIAGNOSTIC_LIMIT):
        self.limit = limit
        self.truncated = False
        self._buf = bytearray()

    def __len__(self) -> int:
        return len(self._buf)

    def feed(self, chunk: bytes) -> None:
        self._buf.extend(chunk)
        overflow = len(self._buf) - self.limit
        if overflow > 0:
            del self._buf[:overflow]
            self.truncated = True

    async def drain(self, stream: asyncio.StreamReader) -> None:
        while True:
            chunk = await stream.read(READ_CHUNK)
            if not chunk:
                return
            self.feed(chunk)

    def text(self) -> str:
        return bytes(self._buf).decode("utf-8", errors="replace")

    def lines(self) -> List[str]:
        return self.text().splitlines()


class PeakRssSampler:
    """
    Polls the resident set size of a process and its children.

    ``peak`` is the largest sampled total, a lower bound on the true peak:
    a short spike between two polls is not seen.  0 means no sample was
    taken (the process exited before the first poll or is not visible).
    """

    def __init__(self, pid: int, interval: float = RSS_SAMPLE_INTERVAL):
        self.interval = interval
        self.peak = 0
        try:
            self._proc: psutil.Process | None = psutil.Process(pid)
        except psutil.Error:
            self._proc = None

    def sample(self) -> None:
        if self._proc is None:
            return
        try:
            rss = self._proc.memory_info().rss
            for child in self._proc.children(recursive=True):
                try:
                    rss += child.memory_info().rss
                except psutil.Error:
                    continue
        except psutil.Error:
            # Process gone (or a zombie): keep what we have.
            self._proc = None
            return
        self.peak = max(self.peak, rss)

    async def run(self) -> None:
        while self._proc is not None:
            self.sample()
            await asyncio.sleep(self.interval)


# =============================================================================
# Process lifecycle helpers
# =============================================================================

def _signal_group(pid: int, sig: int) -> None:
    try:
        os.killpg(pid, sig)
    except (ProcessLookupError, PermissionError):
        pass


async def terminate_process(proc: asyncio.subprocess.Process) -> None:
    """SIGTERM the process group, SIGKILL after a grace period, then reap."""
    if proc.returncode is None:
        _signal_group(proc.pid, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), TERMINATE_GRACE)
        except asyncio.TimeoutError:
            _signal_group(proc.pid, signal.SIGKILL)
            await proc.wait()
    # Children of the leader (clang -cc1) may still be around.
    _signal_group(proc.pid, signal.SIGKILL)


async def _stop(task: asyncio.Task | None) -> None:
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


async def wait_process(
    proc: asyncio.subprocess.Process,
    cancel: asyncio.Event | None = None,
    timeout: float | None = None,
) -> str:
    """
    Wait for *proc*, racing the cancel token and the timeout.

    Returns "exited", "cancelled" or "timeout".  The process is dead and
    reaped when this returns.  If the awaiting task itself is cancelled,
    the process is terminated and CancelledError propagates.
    """
    wait_task = asyncio.ensure_future(proc.wait())
    cancel_task = asyncio.ensure_future(cancel.wait()) if cancel is not None else None
    waiters = {wait_task} if cancel_task is None else {wait_task, cancel_task}

    try:
        done, _ = await asyncio.wait(
            waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED,
        )
    except asyncio.CancelledError:
        await terminate_process(proc)
        raise
    finally:
        await _stop(cancel_task)

    if wait_task in done:
        return "exited"

    await terminate_process(proc)
    await _stop(wait_task)
    if cancel is not None and cancel.is_set():
        return "cancelled"
    return "timeout"


def _pid_of(proc: asyncio.subprocess.Process | None) -> str:
    if proc is None:
        return "not-started"
    return str(proc.pid)


# =============================================================================
# Compile
# =============================================================================

async def compile_program(
    spec: ProgramSpec,
    dirs: OutputDirectories,
    cancel: asyncio.Event | None = None,
    *,
    compiler: str = COMPILER,
    isa: IsaLevel | None = None,
    timeout: float | None = None,
) -> CompilationResult:
    """
    Compile *spec* into ``<dirs.output>/<spec.output>``.

    Args:
        spec: Program to compile.
        dirs: Include roots and output directory.
        cancel: Optional token; setting it aborts the compile.
        compiler: Compiler executable.
        isa: ISA level override; defaults to the process-wide detected level.
        timeout: Optional wall-clock limit in seconds.

    Raises:
        CompileIOError: The destination file cannot be created.
        ToolchainError: clang failed to run, exited non-zero or timed out.
        CompileCancelled: *cancel* was set before or during the run.
    """
    flags = build_flags(spec, dirs, isa or detect_isa())
    output_path = dirs.output_path(spec)

    logger.debug(f"Launching compiler: {command_line(flags, compiler)}")

    try:
        output = open(output_path, "wb")
    except OSError as e:
        raise CompileIOError(
            f"Failed to create {spec.output}: {e}", spec.output,
        ) from e

    tail = DiagnosticTail()
    proc: asyncio.subprocess.Process | None = None
    sampler: PeakRssSampler | None = None
    t0 = time.monotonic()

    with output:
        if cancel is not None and cancel.is_set():
            raise CompileCancelled(f"Compilation of {spec.output} aborted", spec.output)

        try:
            proc = await asyncio.create_subprocess_exec(
                compiler, *flags,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=output,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            outcome, exit_code = "error", None
            failure = f"{type(e).__name__}: {e}"
        else:
            sampler = PeakRssSampler(proc.pid)
            sampler_task = asyncio.ensure_future(sampler.run())
            drain_task = asyncio.ensure_future(tail.drain(proc.stderr))
            try:
                outcome = await wait_process(proc, cancel, timeout)
            finally:
                await _stop(sampler_task)
                try:
                    await asyncio.wait_for(asyncio.shield(drain_task), DRAIN_GRACE)
                except asyncio.TimeoutError:
                    await _stop(drain_task)
            exit_code = proc.returncode
            failure = f"exit status {exit_code}"

    duration_ms = int((time.monotonic() - t0) * 1000)
    peak_rss = sampler.peak if sampler is not None else 0

    if outcome == "cancelled":
        logger.debug(f"Compilation of {spec.output} aborted (compiler-pid={_pid_of(proc)})")
        raise CompileCancelled(f"Compilation of {spec.output} aborted", spec.output)

    if outcome == "timeout":
        failure = f"timed out after {timeout}s"

    if outcome != "exited" or exit_code != 0:
        err = ToolchainError(
            f"Failed to compile {spec.output}: {failure}",
            spec.output,
            pid=_pid_of(proc),
            exit_code=exit_code,
            peak_rss_bytes=peak_rss,
            diagnostics=tail.lines(),
        )
        logger.error(f"{err} (compiler-pid={err.pid}, max-rss={peak_rss})")
        for line in err.diagnostics:
            logger.warning(line)
        if tail.truncated:
            logger.warning(f"Compiler stderr truncated to the last {tail.limit} bytes")
        raise err

    if peak_rss > 0:
        logger.debug(
            f"Compilation of {output_path} (compiler-pid={proc.pid}) "
            f"had peak RSS of {peak_rss} bytes"
        )

    return CompilationResult(
        output_path=output_path,
        flags=flags,
        pid=proc.pid,
        peak_rss_bytes=peak_rss,
        duration_ms=duration_ms,
    )


async def toolchain_version(
    compiler: str = COMPILER,
    cancel: asyncio.Event | None = None,
    timeout: float | None = None,
) -> str:
    """
    Return the combined output of ``<compiler> --version``.

    Raises:
        CompileIOError: The query could not be run or exited non-zero.
        CompileCancelled: *cancel* was set before or during the query.
    """
    if cancel is not None and cancel.is_set():
        raise CompileCancelled("Toolchain version query aborted")

    try:
        proc = await asyncio.create_subprocess_exec(
            compiler, "--version",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )
    except OSError as e:
        raise CompileIOError(f"Failed to query {compiler} version: {e}") from e

    output = DiagnosticTail()
    drain_task = asyncio.ensure_future(output.drain(proc.stdout))
    try:
        outcome = await wait_process(proc, cancel, timeout)
    finally:
        try:
            await asyncio.wait_for(asyncio.shield(drain_task), DRAIN_GRACE)
        except asyncio.TimeoutError:
            await _stop(drain_task)

    if outcome == "cancelled":
        raise CompileCancelled("Toolchain version query aborted")
    if outcome == "timeout":
        raise CompileIOError(f"{compiler} --version timed out after {timeout}s")
    if proc.returncode != 0:
        raise CompileIOError(
            f"{compiler} --version exited with status {proc.returncode}: "
            f"{output.text().strip()}"
        )
    return output.text()
