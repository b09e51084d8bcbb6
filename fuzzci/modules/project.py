from typing import Callable, Optional
import asyncio

from loguru import logger
from pydantic.dataclasses import dataclass

from fuzzci.common import aio, process
from fuzzci.common.types import BuildError, FuzzCIError, FuzzProject, FuzzTarget, LaunchError, Ok, Err, Result
from fuzzci.config import Config, MAX_ERROR_OUTPUT, telem_tracer

from .corpus import CorpusStore
from .target import ExitOutcome, ProgressEvent, TargetRunner, TimeoutCallback

type ErrorCallback = Callable[[FuzzTarget, FuzzCIError], None]

@dataclass(frozen=True)
class TargetCoverage:
    target: str
    covered: int
    # None until calibration reported a total
    total: Optional[int]
    crashes: int

@dataclass(frozen=True)
class ProjectCoverage:
    project: str
    targets: tuple[TargetCoverage, ...]
    covered: int
    total: Optional[int]
    crashes: int

    def table(self) -> str:
        lines: list[str] = []
        for t in sorted(self.targets, key=lambda t: t.target):
            total = "?" if t.total is None else str(t.total)
            lines.append(f"- *{t.target}*: {t.covered}/{total} edges, {t.crashes} crashes")
        return "\n".join(lines)

class ProjectRunner:
    """
    Builds one fuzzing project inside a checkout and drives a TargetRunner for each
    of its targets. Targets are independent: a target that cannot be launched is
    recorded in `failures` and reported through `on_error`, the others carry on.
    """
    def __init__(
        self,
        project: FuzzProject,
        *,
        branch: str,
        root: aio.Path,
        config: Config,
        corpus: CorpusStore,
        queue: Optional[asyncio.Queue[ProgressEvent]] = None,
        on_error: Optional[ErrorCallback] = None,
        on_timeout: Optional[TimeoutCallback] = None,
    ):
        self.project = project
        self.branch = branch
        self.root = root
        self.workdir = root / project.path
        self.config = config
        self.on_error = on_error
        self.failures: dict[str, FuzzCIError] = {}
        self.runners: dict[str, TargetRunner] = {
            target.name: TargetRunner(
                target,
                branch=branch,
                workdir=self.workdir,
                root=root,
                corpus=corpus,
                engine=config.honggfuzz,
                run_args=config.run_args(project),
                path_env=config.path_env,
                queue=queue,
                no_update_timeout=config.feedback.no_update_timeout,
                on_timeout=on_timeout,
            )
            for target in project.targets
        }
        self.log = logger.bind(branch=branch, project=project.name)

    @property
    def name(self) -> str:
        return self.project.name

    async def _run_build_command(self, cmd: list[str]) -> Result[None]:
        try:
            res = await process.run_to_res(
                *cmd,
                cwd=self.workdir,
                capture_output=True,
                timeout=self.config.build.timeout,
            )
        except OSError as e:
            return Err(BuildError(f"cannot run {' '.join(cmd)}: {e}", extra={"project": self.name}))
        if res.timedout:
            return Err(BuildError(f"{' '.join(cmd)} timed out", extra={"project": self.name}))
        if not res.success:
            return Err(BuildError(
                f"{' '.join(cmd)} exited with {res.returncode}",
                extra={"project": self.name, "output": res.output[-MAX_ERROR_OUTPUT:]},
            ))
        return Ok(None)

    def build_command(self) -> list[str]:
        build = self.config.build
        cmd = list(build.command)
        for target in self.project.targets:
            cmd.extend(arg.format(target=target.name) for arg in build.target_args)
        return cmd

    async def build(self) -> Result[None]:
        self.log.info(f"building {self.name} in {self.workdir}")
        with telem_tracer.start_as_current_span("build", attributes={"project": self.name, "branch": self.branch}):
            if (clean := self.config.build.clean_command):
                match await self._run_build_command(clean):
                    case Err(e):
                        # a failed clean leaves stale artifacts at worst
                        self.log.warning(f"clean failed: {e.error}")
                    case Ok(_):
                        pass
            res = await self._run_build_command(self.build_command())
        match res:
            case Ok(_):
                self.log.info(f"built {self.name}")
            case Err(e):
                self.log.error(f"build failed: {e.error}")
        return res

    def _record(self, runner: TargetRunner, e: LaunchError) -> None:
        self.failures[runner.name] = e
        self.log.error(f"target {runner.name} failed to launch: {e.error}")
        if self.on_error is not None:
            self.on_error(runner.target, e)

    async def calibrate_all(self, timeout: Optional[float] = None) -> dict[str, Optional[int]]:
        async def calibrate(runner: TargetRunner) -> Optional[int]:
            try:
                return await runner.calibrate(timeout)
            except LaunchError as e:
                self._record(runner, e)
                return None

        async with asyncio.TaskGroup() as tg:
            tasks = {
                name: tg.create_task(calibrate(runner), name=f"calibrate({name})")
                for name, runner in self.runners.items()
            }
        return {name: task.result() for name, task in tasks.items()}

    async def start_all(self) -> dict[str, TargetRunner]:
        async def start(runner: TargetRunner) -> None:
            if runner.state.terminal:
                return
            try:
                await runner.start()
            except LaunchError as e:
                self._record(runner, e)

        async with asyncio.TaskGroup() as tg:
            for name, runner in self.runners.items():
                _ = tg.create_task(start(runner), name=f"start({name})")
        return {name: runner for name, runner in self.runners.items() if runner.started}

    async def run_all(self) -> dict[str, TargetRunner]:
        """Calibrates every target, then starts the full runs."""
        _ = await self.calibrate_all()
        return await self.start_all()

    async def stop_all(self, grace_period: Optional[float] = None) -> None:
        """Returns once every runner is terminal and its process reaped."""
        _ = await asyncio.gather(*(runner.stop(grace_period) for runner in self.runners.values()))

    async def wait_all(self) -> dict[str, ExitOutcome]:
        started = {name: runner for name, runner in self.runners.items() if runner.started}
        outcomes = await asyncio.gather(*(runner.wait() for runner in started.values()))
        return dict(zip(started.keys(), outcomes))

    def aggregate(self) -> ProjectCoverage:
        targets: list[TargetCoverage] = []
        for name, runner in self.runners.items():
            sample = runner.sample
            targets.append(TargetCoverage(
                target=name,
                covered=sample.covered_edges or 0,
                total=sample.total_edges,
                crashes=sample.crashes or 0,
            ))
        totals = [t.total for t in targets]
        return ProjectCoverage(
            project=self.name,
            targets=tuple(targets),
            covered=sum(t.covered for t in targets),
            total=None if any(t is None for t in totals) else sum(t for t in totals if t is not None),
            crashes=sum(t.crashes for t in targets),
        )
