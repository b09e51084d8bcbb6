from collections import deque
from datetime import datetime, timezone
from typing import Optional
import asyncio
import dataclasses

from loguru import logger
from pydantic import BaseModel, ConfigDict
from pydantic.dataclasses import dataclass as pydantic_dataclass

from fuzzci.common import aio
from fuzzci.common.path import sanitize_path_segment
from fuzzci.common.shield import finalize, shield_and_wait
from fuzzci.common.types import (
    CoverageReport, CycleState, FuzzCIError, FuzzTarget, Ok, Err, ProgressSample, Result, TargetRunState
)
from fuzzci.common.utils import ExceptAndLogTaskGroup, require, requireable
from fuzzci.config import Config, cycles_counter
from fuzzci.modules.checkout import checkout
from fuzzci.modules.corpus import CorpusStore
from fuzzci.modules.coverage import CoverageReportGenerator
from fuzzci.modules.feedback import (
    CoverageUpdated, CycleStarted, CycleStopped, Error, FeedbackClient, Message, Notifier, ReportReady
)
from fuzzci.modules.project import ProjectCoverage, ProjectRunner
from fuzzci.modules.target import ProgressEvent

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

@pydantic_dataclass(frozen=True)
class Trigger:
    commit: str
    # repository the checkout collaborator clones
    url: str
    run_id: str

class TargetSnapshot(BaseModel):
    state: TargetRunState
    sample: ProgressSample

    model_config = ConfigDict(frozen=True)

class CycleSnapshot(BaseModel):
    branch: str
    commit: str
    run_id: str
    started_at: datetime
    state: CycleState
    projects: dict[str, dict[str, TargetSnapshot]]
    transitions: list[tuple[CycleState, datetime]]
    stop_reason: Optional[str]
    reports: list[CoverageReport]

    model_config = ConfigDict(frozen=True)

@dataclasses.dataclass
class BranchCycle:
    """
    One attempt at fuzzing `branch` at `commit`. Only the owning controller
    mutates it; everyone else reads a `snapshot()`.
    """
    branch: str
    commit: str
    run_id: str
    started_at: datetime = dataclasses.field(default_factory=utcnow)
    state: CycleState = CycleState.CHECKING_OUT
    projects: dict[str, dict[str, TargetSnapshot]] = dataclasses.field(default_factory=dict)
    transitions: list[tuple[CycleState, datetime]] = dataclasses.field(default_factory=list)
    stop_reason: Optional[str] = None
    reports: list[CoverageReport] = dataclasses.field(default_factory=list)

    def __post_init__(self):
        self.transitions.append((self.state, self.started_at))

    @property
    def active(self) -> bool:
        return not self.state.terminal

    def transition(self, state: CycleState) -> None:
        assert not self.state.terminal, f"cycle for {self.branch} is already {self.state}"
        logger.debug(f"cycle {self.branch}@{self.commit[:7]}: {self.state} -> {state}")
        self.state = state
        self.transitions.append((state, utcnow()))

    def snapshot(self) -> CycleSnapshot:
        return CycleSnapshot(
            branch=self.branch,
            commit=self.commit,
            run_id=self.run_id,
            started_at=self.started_at,
            state=self.state,
            projects={p: dict(targets) for p, targets in self.projects.items()},
            transitions=list(self.transitions),
            stop_reason=self.stop_reason,
            reports=list(self.reports),
        )

class BranchCycleController:
    """
    State machine of one branch. Every trigger retires the active cycle, with all
    of its processes reaped and its checkout removed, before the next cycle begins.
    Submissions are last-write-wins: a trigger that is overtaken by a newer one
    before it gets the lock is dropped.
    """
    def __init__(self, branch: str, config: Config, corpus: CorpusStore, coverage: CoverageReportGenerator, client: FeedbackClient):
        self.branch = branch
        self.config = config
        self.corpus = corpus
        self.coverage = coverage
        self.client = client
        self.lock = asyncio.Lock()
        self.cycle: Optional[BranchCycle] = None
        self.notifier: Optional[Notifier] = None
        self.history: deque[BranchCycle] = deque(maxlen=config.history)
        self._task: Optional[asyncio.Task[None]] = None
        self._seq = 0
        self._submissions: set[asyncio.Task[Optional[BranchCycle]]] = set()
        self.log = logger.bind(branch=branch)

    @property
    def idle(self) -> bool:
        return self.cycle is None or self.cycle.state.terminal

    def snapshot(self) -> Optional[CycleSnapshot]:
        return None if self.cycle is None else self.cycle.snapshot()

    def submit(self, trigger: Trigger) -> asyncio.Task[Optional[BranchCycle]]:
        """
        Schedules `trigger`. Its place in line is taken now, so a later submit
        wins even if this one has not started yet.
        """
        self._seq += 1
        task = asyncio.create_task(self._apply(self._seq, trigger), name=f"BranchCycleController.submit({self.branch}, {trigger.commit[:7]})")
        self._submissions.add(task)
        task.add_done_callback(self._submissions.discard)
        return task

    async def trigger(self, trigger: Trigger) -> Optional[BranchCycle]:
        self._seq += 1
        return await self._apply(self._seq, trigger)

    async def _apply(self, seq: int, trigger: Trigger) -> Optional[BranchCycle]:
        async with self.lock:
            if seq != self._seq:
                self.log.info(f"skipping {trigger.commit[:7]}, a newer commit arrived")
                return None
            await self._retire("superseded")
            return self._start(trigger)

    def _start(self, trigger: Trigger) -> BranchCycle:
        cycle = BranchCycle(branch=self.branch, commit=trigger.commit, run_id=trigger.run_id)
        notifier = Notifier(self.client, f"Branch _{self.branch}_, {trigger.run_id}", verbose=self.config.feedback.verbose)
        self.cycle = cycle
        self.notifier = notifier
        self.history.append(cycle)
        cycles_counter.add(1, {"branch": self.branch})
        self.log.info(f"new cycle at {trigger.commit[:7]}: {trigger.run_id}")
        notifier.notify(Message("Preparing for fuzzing"))
        self._task = asyncio.create_task(self._run_cycle(cycle, trigger, notifier), name=f"BranchCycle({self.branch}, {trigger.commit[:7]})")
        return cycle

    async def _retire(self, reason: str) -> None:
        cycle, task, notifier = self.cycle, self._task, self.notifier
        if cycle is None or task is None or notifier is None or cycle.state.terminal:
            return
        self.log.info(f"stopping cycle at {cycle.commit[:7]}: {reason}")
        if cycle.state != CycleState.STOPPING:
            cycle.transition(CycleState.STOPPING)
        cycle.stop_reason = reason
        _ = task.cancel()
        # the cycle task reaps its processes and removes its checkout before it ends
        _ = await shield_and_wait(asyncio.wait([task]))
        # a task cancelled before its first step never ran its own cleanup
        self._finish(cycle, notifier, CycleState.COMPLETED, reason)

    async def shutdown(self) -> None:
        async with self.lock:
            # drop queued submissions
            self._seq += 1
            await self._retire("shutdown")
        if self.notifier is not None:
            await self.notifier.drain()

    def _finish(self, cycle: BranchCycle, notifier: Notifier, state: CycleState, reason: str) -> None:
        if cycle.state.terminal:
            return
        cycle.stop_reason = cycle.stop_reason or reason
        cycle.transition(state)
        self.log.info(f"cycle at {cycle.commit[:7]} {state}: {cycle.stop_reason}")
        if state == CycleState.COMPLETED:
            notifier.notify(CycleStopped(cycle.stop_reason))

    def _on_event(self, cycle: BranchCycle, event: ProgressEvent) -> None:
        cycle.projects.setdefault(event.project, {})[event.target] = TargetSnapshot(state=event.state, sample=event.sample)

    async def _consume(self, cycle: BranchCycle, queue: asyncio.Queue[ProgressEvent]) -> None:
        while True:
            self._on_event(cycle, await queue.get())

    def _drain(self, cycle: BranchCycle, queue: asyncio.Queue[ProgressEvent]) -> None:
        while not queue.empty():
            self._on_event(cycle, queue.get_nowait())

    async def _run_cycle(self, cycle: BranchCycle, trigger: Trigger, notifier: Notifier) -> None:
        log = self.log.bind(commit=cycle.commit)
        queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()
        runners: list[ProjectRunner] = []
        consumer = asyncio.create_task(self._consume(cycle, queue), name=f"BranchCycle._consume({self.branch})")

        async def cleanup():
            _ = await asyncio.gather(*(r.stop_all(self.config.honggfuzz.grace_period) for r in runners))
            _ = consumer.cancel()
            self._drain(cycle, queue)

        failure: Optional[FuzzCIError] = None
        try:
            async with aio.tmpdir(prefix=f"fuzzci-{sanitize_path_segment(self.branch)}-") as tmp:
                async with finalize(cleanup()):
                    root = tmp / "checkout"
                    match await self._prepare(cycle, trigger, root, queue, notifier, runners):
                        case Err(e):
                            failure = e
                        case Ok(_):
                            await self._fuzz(cycle, notifier, runners, root)
        except asyncio.CancelledError:
            self._finish(cycle, notifier, CycleState.COMPLETED, cycle.stop_reason or "cancelled")
            raise
        except Exception as e:
            log.exception(f"unexpected error in cycle: {e!r}")
            failure = FuzzCIError(f"unexpected error: {e!r}")
        finally:
            # cleanup() never ran if the checkout directory could not be created
            _ = consumer.cancel()

        if failure is not None:
            log.error(f"cycle failed: {failure.error}")
            notifier.notify(Error(failure.error))
            self._finish(cycle, notifier, CycleState.FAILED, failure.error)
        else:
            self._finish(cycle, notifier, CycleState.COMPLETED, "finished")

    @requireable
    async def _prepare(
        self,
        cycle: BranchCycle,
        trigger: Trigger,
        root: aio.Path,
        queue: asyncio.Queue[ProgressEvent],
        notifier: Notifier,
        runners: list[ProjectRunner],
    ) -> Result[None]:
        require(await checkout(self.config.checkout_command, root, trigger.url, self.branch, timeout=self.config.checkout_timeout))

        cycle.transition(CycleState.BUILDING)

        def on_error(target: FuzzTarget, e: FuzzCIError) -> None:
            notifier.notify(Error(f"{target.project}/{target.name}: {e.error}"))

        def on_timeout(target: FuzzTarget, quiet: float) -> None:
            notifier.notify(Error(f"{target.project}/{target.name}: no progress for {quiet:.0f}s", timeout=True))

        for project in self.config.projects():
            runner = ProjectRunner(
                project,
                branch=self.branch,
                root=root,
                config=self.config,
                corpus=self.corpus,
                queue=queue,
                on_error=on_error,
                on_timeout=on_timeout,
            )
            runners.append(runner)
            cycle.projects[project.name] = {
                name: TargetSnapshot(state=r.state, sample=r.sample) for name, r in runner.runners.items()
            }

        for runner in runners:
            require(await runner.build())
        return Ok(None)

    async def _fuzz(self, cycle: BranchCycle, notifier: Notifier, runners: list[ProjectRunner], root: aio.Path) -> None:
        cycle.transition(CycleState.CALIBRATING)
        _ = await asyncio.gather(*(r.calibrate_all() for r in runners))
        _ = await asyncio.gather(*(r.start_all() for r in runners))

        cycle.transition(CycleState.RUNNING)
        notifier.notify(CycleStarted(cycle.commit))

        async with ExceptAndLogTaskGroup() as tg:
            ticker = tg.create_task(self._tick(cycle, notifier, runners, root), name=f"BranchCycle._tick({self.branch})")
            _ = await asyncio.gather(*(r.wait_all() for r in runners))
            _ = ticker.cancel()
        self.log.info("all fuzz targets exited")

    async def _report(self, cycle: BranchCycle, notifier: Notifier, root: aio.Path) -> None:
        reports = await self.coverage.generate(cycle.branch, cycle.commit, self.config.projects(), root)
        cycle.reports.extend(reports)
        for report in reports:
            if report.url:
                notifier.notify(ReportReady(report.url, report.line_coverage))

    async def _tick(self, cycle: BranchCycle, notifier: Notifier, runners: list[ProjectRunner], root: aio.Path) -> None:
        """
        While running: renders coverage right away and then every coverage interval,
        and posts per-project coverage every update interval if it changed.
        """
        loop = asyncio.get_running_loop()
        last: dict[str, ProjectCoverage] = {}
        next_update = loop.time() + self.config.feedback.update_timeout
        next_coverage = loop.time() if self.coverage.enabled else None

        while True:
            now = loop.time()
            if next_coverage is not None and now >= next_coverage:
                await self._report(cycle, notifier, root)
                next_coverage = loop.time() + self.config.coverage.interval
            if now >= next_update:
                for runner in runners:
                    cov = runner.aggregate()
                    if last.get(runner.name) != cov:
                        last[runner.name] = cov
                        notifier.notify(CoverageUpdated.from_coverage(cov))
                next_update = loop.time() + self.config.feedback.update_timeout
            wake = next_update if next_coverage is None else min(next_update, next_coverage)
            await asyncio.sleep(max(0.0, wake - loop.time()))
