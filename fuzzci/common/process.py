from asyncio.subprocess import DEVNULL, PIPE, Process
from typing import Any, AsyncIterator, Optional, Self
import asyncio
import contextlib
import os
import signal
import textwrap

from loguru import logger

from .shield import shield_and_wait, finalize

MAX_OUTPUT_LENGTH = 32
READ_LIMIT = 64 * 1024
TERMINATE_TIMEOUT = 5.0

def trim(output: bytes):
    return textwrap.shorten(output.decode(errors='replace'), MAX_OUTPUT_LENGTH)

class ProcRes:
    def __init__(self, stdout: Optional[bytes], stderr: Optional[bytes], returncode: Optional[int] = None, timedout: bool = False) -> None:
        self.stdout = stdout or b""
        self.stderr = stderr or b""
        self.returncode = returncode
        self.timedout = timedout

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timedout

    @property
    def output(self) -> str:
        stderr = (self.stderr + b"\n" if self.stderr else b"")
        return (stderr + self.stdout).decode(errors="replace")

    def __repr__(self) -> str:
        return f"ProcRes(returncode={self.returncode}, timedout={self.timedout}, stdout={repr(trim(self.stdout))}, stderr={repr(trim(self.stderr))})"

def signal_group(proc: Process, sig: signal.Signals) -> None:
    """
    Sends `sig` to the process group led by `proc`, or to `proc` alone if it does
    not lead a group. Engines such as `cargo hfuzz run` fork workers which must not
    outlive their parent.
    """
    try:
        os.killpg(proc.pid, sig)
        return
    except ProcessLookupError:
        pass
    except PermissionError:
        logger.warning(f"not allowed to signal process group {proc.pid}")
    if proc.returncode is None:
        try:
            proc.send_signal(sig)
        except ProcessLookupError:
            pass

async def terminate(proc: Process, grace_period: float = TERMINATE_TIMEOUT) -> bool:
    """
    SIGTERM the process group, wait up to `grace_period` seconds, then SIGKILL it.
    Always returns with `proc` reaped. Returns True if SIGKILL was needed.
    """
    killed = False
    if proc.returncode is None:
        signal_group(proc, signal.SIGTERM)
        try:
            async with asyncio.timeout(grace_period):
                _ = await proc.wait()
        except TimeoutError:
            logger.debug(f"pid={proc.pid} ignored SIGTERM for {grace_period}s, killing")
            killed = True
    # sweep stragglers left behind in the group even if the leader exited
    signal_group(proc, signal.SIGKILL)
    _ = await proc.wait()
    return killed

class ProcessScope:
    """
    Owns every process started through `exec`; leaving the scope (normally, by
    exception, or by cancellation) terminates and reaps all of them.
    """
    done: bool
    processes: set[Process]
    timeout: asyncio.Timeout
    grace_period: float

    def __init__(self, timeout: float | None = None, grace_period: float = TERMINATE_TIMEOUT):
        self.done = False
        self.processes = set()
        self.timeout = asyncio.timeout(timeout)
        self.grace_period = grace_period

    @classmethod
    @contextlib.asynccontextmanager
    async def new(cls, *, timeout: Optional[float] = None, grace_period: float = TERMINATE_TIMEOUT) -> AsyncIterator[Self]:
        scope = cls(timeout=timeout, grace_period=grace_period)
        logger.trace(f"[ProcessScope] enter scope={id(scope)} timeout={timeout}")
        async def cleanup():
            return await scope._exit()
        async with finalize(cleanup()):
            async with scope.timeout:
                yield scope

    async def _exit(self):
        logger.trace(f"[ProcessScope] exit scope={id(self)}")
        self.done = True
        _ = await asyncio.gather(*(terminate(proc, self.grace_period) for proc in self.processes))
        self.processes.clear()

    def __del__(self):
        if self.processes:
            logger.error(f"[ProcessScope] leaked ({len(self.processes)}) processes: {self.processes}")

    async def exec(self, cmd: str, *args: str, **kwargs: Any) -> Process:
        cmdstr = ' '.join(([cmd] + list(args)))
        if self.done:
            raise RuntimeError(f"[ProcessScope] exec({cmdstr!r}) called after scope exit scope={id(self)}")

        logger.debug(f"[ProcessScope] exec({cmdstr!r}) scope={id(self)}")
        _ = kwargs.setdefault("start_new_session", True)
        async def launch():
            p = await asyncio.create_subprocess_exec(cmd, *args, **kwargs) # shielded, so it is always tracked
            self.processes.add(p)
            return p
        return await shield_and_wait(launch())

scope = ProcessScope.new

class Reader:
    process: Optional[Process]
    stdout_blocks: list[bytes]
    stderr_blocks: list[bytes]

    def __init__(self, process: Optional[Process] = None):
        self.process = process
        self.stdout_blocks = []
        self.stderr_blocks = []

    async def communicate(self) -> ProcRes:
        process = self.process
        if process is None:
            raise RuntimeError("process.Reader.communicate() without a process")

        async with asyncio.TaskGroup() as tg:
            async def read_stdio(f: Optional[asyncio.StreamReader], dst: list[bytes]) -> None:
                if f is None:
                    return
                while (data := await f.read(READ_LIMIT)):
                    dst.append(data)
            _ = tg.create_task(read_stdio(process.stdout, self.stdout_blocks), name=f"process.Reader.communicate():stdout pid={process.pid}")
            _ = tg.create_task(read_stdio(process.stderr, self.stderr_blocks), name=f"process.Reader.communicate():stderr pid={process.pid}")
            _ = await process.wait()

        return self.result()

    def result(self, timedout: bool=False) -> ProcRes:
        stdout = b"".join(self.stdout_blocks)
        stderr = b"".join(self.stderr_blocks)
        returncode = -1 if self.process is None else self.process.returncode
        return ProcRes(stdout, stderr, returncode, timedout=timedout)

async def run_to_res(cmd: str, *args: str, timeout: float | None = None, capture_output: bool = False, **kwargs: Any) -> ProcRes:
    """
    Runs a command to completion. Spawn failures raise OSError; a timeout returns a
    ProcRes with `timedout` set after the process has been reaped.
    """
    stdin = kwargs.pop("stdin", DEVNULL)
    pipe = PIPE if capture_output else DEVNULL
    reader = Reader()
    try:
        async with scope(timeout=timeout) as local_scope:
            proc = await local_scope.exec(cmd, *args, stdin=stdin, stdout=pipe, stderr=pipe, **kwargs)
            reader = Reader(proc)
            return await reader.communicate()
    except TimeoutError:
        return reader.result(timedout=True)
