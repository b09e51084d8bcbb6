from asyncio.subprocess import DEVNULL, PIPE, Process
from enum import StrEnum
from typing import AsyncIterator, Callable, Mapping, Optional
import asyncio
import dataclasses
import os

from loguru import logger
from pydantic.dataclasses import dataclass

from fuzzci.common import aio, process
from fuzzci.common.shield import shield_and_wait
from fuzzci.common.types import FuzzTarget, LaunchError, ProgressSample, TargetRunState
from fuzzci.config import HonggfuzzConfig, telem_tracer, samples_counter, exits_counter

from .corpus import CorpusLease, CorpusStore
from .progress import NotAProgressLine, is_crash, parse_progress, total_edges

class ExitKind(StrEnum):
    NORMAL = "normal"
    KILLED = "killed"
    CRASHED_OR_SIGNALED = "crashed_or_signaled"

@dataclass(frozen=True)
class ExitOutcome:
    kind: ExitKind
    code: Optional[int] = None

@dataclass(frozen=True)
class ProgressEvent:
    project: str
    target: str
    sample: ProgressSample
    state: TargetRunState

# called with the target and the number of seconds without progress
type TimeoutCallback = Callable[[FuzzTarget, float], None]

def path_environ(root: aio.Path, path_env: Mapping[str, str], base: Optional[Mapping[str, str]] = None) -> dict[str, str]:
    """
    Copy of `base` (the process environment by default) with every variable of
    `path_env` resolved against `root` and prepended to its existing value.
    """
    env = dict(os.environ if base is None else base)
    for var, rel in path_env.items():
        path = (root / rel).as_posix()
        env[var] = f"{path}{os.pathsep}{existing}" if (existing := env.get(var)) else path
    return env

class TargetRunner:
    """
    Runs one fuzz target of a checked out project. A runner is single use: once it
    reaches STOPPED or FAILED, a new runner is needed to fuzz the target again.
    """
    process: Optional[Process]
    outcome: Optional[ExitOutcome]

    def __init__(
        self,
        target: FuzzTarget,
        *,
        branch: str,
        workdir: aio.Path,
        root: aio.Path,
        corpus: CorpusStore,
        engine: HonggfuzzConfig,
        run_args: Optional[str] = None,
        path_env: Optional[Mapping[str, str]] = None,
        queue: Optional[asyncio.Queue[ProgressEvent]] = None,
        no_update_timeout: Optional[float] = None,
        on_timeout: Optional[TimeoutCallback] = None,
    ):
        self.target = target
        self.branch = branch
        self.workdir = workdir
        self.root = root
        self.corpus = corpus
        self.engine = engine
        self.run_args = engine.run_args if run_args is None else run_args
        self.path_env = dict(path_env or {})
        self.queue = queue
        self.no_update_timeout = no_update_timeout
        self.on_timeout = on_timeout

        self.state = TargetRunState.NOT_STARTED
        self.sample = ProgressSample.initial()
        self.outcome = None
        self.process = None
        self._lease: Optional[CorpusLease] = None
        self._stop_requested = False
        self._supervisor: Optional[asyncio.Task[ExitOutcome]] = None
        self._last_update = 0.0
        self._timeout_reported = False
        self.log = logger.bind(branch=branch, project=target.project, target=target.name)

    def __repr__(self) -> str:
        return f"TargetRunner({self.target.project}/{self.target.name}, state={self.state}, sample={self.sample})"

    @property
    def name(self) -> str:
        return self.target.name

    @property
    def total_edges(self) -> Optional[int]:
        return self.sample.total_edges

    @property
    def started(self) -> bool:
        return self._supervisor is not None

    def command(self, corpus: aio.Path) -> list[str]:
        fields = {"target": self.target.name, "project": self.target.project, "corpus": corpus.as_posix()}
        return [arg.format(**fields) for arg in self.engine.command]

    def engine_args(self, corpus: aio.Path, calibration: bool = False) -> str:
        parts = [self.engine.verbose_args]
        if calibration:
            parts.append(self.engine.calibration_args)
        parts.append(self.run_args)
        parts.append(self.engine.corpus_args.format(corpus=corpus.as_posix()))
        return " ".join(p for p in parts if p)

    def environ(self, corpus: aio.Path, calibration: bool = False) -> dict[str, str]:
        env = path_environ(self.root, self.path_env)
        env[self.engine.args_env] = self.engine_args(corpus, calibration)
        return env

    def _emit(self) -> None:
        if self.queue is not None:
            self.queue.put_nowait(ProgressEvent(self.target.project, self.target.name, self.sample, self.state))

    def _set_state(self, state: TargetRunState) -> None:
        self.log.debug(f"{self.state} -> {state}")
        self.state = state
        self._emit()

    def _apply(self, update: ProgressSample) -> bool:
        merged = self.sample.merge(update)
        if merged is None:
            self.log.debug(f"dropping regressed sample {update}, current is {self.sample}")
            return False
        self._last_update = asyncio.get_running_loop().time()
        self._timeout_reported = False
        samples_counter.add(1, {"target": self.name})
        if merged != self.sample:
            self.sample = merged
            self._emit()
        return True

    def _count_crash(self) -> None:
        crashes = (self.sample.crashes or 0) + 1
        self.log.info(f"fuzz target found a crash, {crashes} so far")
        _ = self._apply(dataclasses.replace(self.sample, crashes=crashes))

    def _feed(self, line: str) -> None:
        if is_crash(line):
            self._count_crash()
            return
        match parse_progress(line):
            case NotAProgressLine.NOT_A_PROGRESS_LINE:
                pass
            case sample:
                _ = self._apply(sample)

    async def _lines(self, stream: asyncio.StreamReader) -> AsyncIterator[str]:
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                self.log.warning(f"skipping output line longer than {process.READ_LIMIT} bytes")
                continue
            if not raw:
                return
            yield raw.decode(errors="replace").rstrip("\r\n")

    async def _collect(self, stream: asyncio.StreamReader, lines: list[str]) -> None:
        async for line in self._lines(stream):
            lines.append(line)

    async def _acquire(self) -> Optional[aio.Path]:
        if self._lease is None:
            lease = await self.corpus.acquire(self.branch, self.target)
            if self._stop_requested:
                lease.release()
                return None
            self._lease = lease
        return self._lease.path

    def _release(self) -> None:
        if self._lease is not None:
            self._lease.release()

    def _fail(self, outcome: Optional[ExitOutcome] = None) -> None:
        self.outcome = outcome
        self.process = None
        self._release()
        self._set_state(TargetRunState.FAILED)

    async def _spawn(self, corpus: aio.Path, calibration: bool = False) -> Process:
        cmd = self.command(corpus)
        env = self.environ(corpus, calibration)
        self.log.debug(f"spawning {' '.join(cmd)} in {self.workdir} with {self.engine.args_env}={env[self.engine.args_env]!r}")

        async def launch():
            p = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=self.workdir,
                env=env,
                stdin=DEVNULL,
                stdout=DEVNULL,
                stderr=PIPE,
                start_new_session=True,
                limit=process.READ_LIMIT,
            )
            self.process = p
            return p

        try:
            return await shield_and_wait(launch())
        except OSError as e:
            self.log.error(f"cannot spawn fuzz target: {e}")
            self._fail()
            raise LaunchError(f"cannot spawn fuzz target {self.name}: {e}", extra={"command": cmd, "cwd": str(self.workdir)}) from e

    async def calibrate(self, timeout: Optional[float] = None) -> Optional[int]:
        """
        Runs the engine with a minimal budget to learn the total number of edges of
        the target. Returns the total, or None if it could not be determined.
        Raises LaunchError if the engine cannot be spawned.
        """
        if self._stop_requested or self.state.terminal:
            return self.total_edges
        timeout = self.engine.calibration_timeout if timeout is None else timeout
        if (corpus := await self._acquire()) is None:
            return self.total_edges
        self._set_state(TargetRunState.CALIBRATING)

        with telem_tracer.start_as_current_span("calibrate", attributes={"target": self.name, "branch": self.branch}):
            proc = await self._spawn(corpus, calibration=True)
            lines: list[str] = []
            timedout = False
            assert proc.stderr is not None
            reader = asyncio.create_task(self._collect(proc.stderr, lines), name=f"TargetRunner._collect({self.name}) pid={proc.pid}")
            try:
                try:
                    # stop() may have run before the process existed
                    if not self._stop_requested:
                        async with asyncio.timeout(timeout):
                            _ = await asyncio.wait([reader])
                            _ = await proc.wait()
                except TimeoutError:
                    timedout = True
                finally:
                    _ = await shield_and_wait(process.terminate(proc, self.engine.grace_period))
                    if self.process is proc:
                        self.process = None
                # the engine prints its summary, guard_nb included, while exiting on SIGTERM
                _ = await asyncio.wait([reader], timeout=self.engine.grace_period)
            finally:
                _ = reader.cancel()

        if self._stop_requested:
            return self.total_edges
        if timedout:
            self.log.warning(f"calibration did not finish within {timeout}s")
        elif proc.returncode != 0:
            self.log.warning(f"calibration exited with {proc.returncode}")

        if (total := total_edges(lines)) is None:
            self.log.error("calibration did not report the number of edges, total stays unknown")
            self.log.debug("calibration output:\n" + "\n".join(lines[-20:]))
            return None

        _ = self._apply(ProgressSample(total_edges=total))
        self.log.info(f"calibrated: {self.total_edges} edges")
        return self.total_edges

    async def start(self) -> None:
        """
        Starts the full fuzzing run. Raises LaunchError if the engine cannot be spawned.
        """
        if self._stop_requested or self.state.terminal:
            self.log.debug("not starting, runner is already stopped")
            return
        if self._supervisor is not None:
            raise RuntimeError(f"{self!r} was already started")
        if (corpus := await self._acquire()) is None:
            return

        with telem_tracer.start_as_current_span("start", attributes={"target": self.name, "branch": self.branch}):
            proc = await self._spawn(corpus)
        if self._stop_requested:
            # stop() raced with the spawn and may not have seen the process
            _ = await shield_and_wait(process.terminate(proc, self.engine.grace_period))
            return

        self._last_update = asyncio.get_running_loop().time()
        self._set_state(TargetRunState.RUNNING)
        self._supervisor = asyncio.create_task(self._supervise(proc), name=f"TargetRunner._supervise({self.name}) pid={proc.pid}")
        self.log.info(f"fuzzing started, pid={proc.pid}")

    async def _watchdog(self, timeout: float) -> None:
        loop = asyncio.get_running_loop()
        while True:
            quiet = loop.time() - self._last_update
            if quiet < timeout:
                await asyncio.sleep(timeout - quiet)
                continue
            if not self._timeout_reported:
                self._timeout_reported = True
                self.log.warning(f"no progress for {quiet:.0f}s")
                if self.on_timeout is not None:
                    self.on_timeout(self.target, quiet)
            await asyncio.sleep(timeout)

    async def _supervise(self, proc: Process) -> ExitOutcome:
        watchdog = None
        if self.no_update_timeout:
            watchdog = asyncio.create_task(self._watchdog(self.no_update_timeout), name=f"TargetRunner._watchdog({self.name})")
        try:
            assert proc.stderr is not None
            async for line in self._lines(proc.stderr):
                self._feed(line)
            returncode = await proc.wait()
        finally:
            if watchdog is not None:
                _ = watchdog.cancel()
        return self._finish(returncode)

    def _finish(self, returncode: int) -> ExitOutcome:
        if self._stop_requested:
            outcome, state = ExitOutcome(ExitKind.KILLED, returncode), TargetRunState.STOPPED
        elif returncode < 0:
            # crash triage is the engine's job, we only count it
            self.sample = dataclasses.replace(self.sample, crashes=(self.sample.crashes or 0) + 1)
            self.log.warning(f"fuzz target died from signal {-returncode}")
            outcome, state = ExitOutcome(ExitKind.CRASHED_OR_SIGNALED, returncode), TargetRunState.FAILED
        else:
            outcome = ExitOutcome(ExitKind.NORMAL, returncode)
            state = TargetRunState.STOPPED if returncode == 0 else TargetRunState.FAILED
        self.log.info(f"fuzz target exited: {outcome.kind} code={returncode}")
        exits_counter.add(1, {"kind": str(outcome.kind)})
        self.outcome = outcome
        self.process = None
        self._release()
        self._set_state(state)
        return outcome

    async def stop(self, grace_period: Optional[float] = None) -> Optional[ExitOutcome]:
        """
        SIGTERM the engine, SIGKILL it after `grace_period` seconds, and wait until
        it is reaped and its corpus released. Stopping a stopped runner is a no-op.
        """
        grace = self.engine.grace_period if grace_period is None else grace_period
        if self.state.terminal:
            return self.outcome
        self._stop_requested = True
        if self.state != TargetRunState.STOPPING:
            self._set_state(TargetRunState.STOPPING)

        if (proc := self.process) is not None:
            if await shield_and_wait(process.terminate(proc, grace)):
                self.log.warning(f"fuzz target ignored SIGTERM for {grace}s and was killed")

        if self._supervisor is not None:
            return await asyncio.shield(self._supervisor)

        # never got to the full run
        if not self.state.terminal:
            self.outcome = ExitOutcome(ExitKind.KILLED)
            self.process = None
            self._release()
            self._set_state(TargetRunState.STOPPED)
        return self.outcome

    async def wait(self) -> ExitOutcome:
        if self._supervisor is None:
            raise RuntimeError(f"{self!r} was never started")
        return await asyncio.shield(self._supervisor)
