from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Iterable, Optional
import asyncio

from loguru import logger
from pydantic import BaseModel, ValidationError
import orjson

from fuzzci.common import aio, process
from fuzzci.common.path import new_local_path, reports_url, sanitize_path_segment
from fuzzci.common.types import CoverageError, CoverageReport, FuzzProject, Ok, Err, Result
from fuzzci.common.utils import require, requireable
from fuzzci.config import Config, MAX_ERROR_OUTPUT, telem_tracer

from .target import path_environ

TIMESTAMP_FORMAT = "%Y-%m-%dT%H-%M-%SZ"
KCOV_SUMMARY = "coverage.json"

class KcovSummary(BaseModel):
    # kcov writes the percentage as a string
    percent_covered: float
    covered_lines: int
    total_lines: int

class CoverageReportGenerator:
    """
    Renders kcov HTML reports of the corpus into
    `<reports>/<branch>/<commit>-<timestamp>/<project>/`.

    One generator is shared by every branch; its lock keeps a single coverage run
    going at a time. The corpus is only ever read.
    """
    def __init__(self, config: Config):
        self.config = config
        self.reports_root = aio.Path(config.reports_path)
        self.corpus_root = aio.Path(config.corpus)
        self.lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return self.config.coverage.enabled

    @staticmethod
    def report_dir(branch: str, commit: str, stamp: datetime) -> PurePosixPath:
        return new_local_path([branch, f"{commit[:7]}-{stamp.strftime(TIMESTAMP_FORMAT)}"])

    def _env(self, root: aio.Path) -> dict[str, str]:
        env = path_environ(root, self.config.path_env)
        env["CORPUS"] = self.corpus_root.as_posix()
        return env

    async def find_binary(self, workdir: aio.Path) -> Result[aio.Path]:
        """
        First regular file in the binary directory named after the project directory,
        skipping the `.d` dependency files cargo leaves next to it.
        """
        bin_dir = workdir / self.config.coverage.binary_dir
        prefixes = (workdir.name, workdir.name.replace("-", "_"))
        try:
            entries = await bin_dir.listdir()
        except OSError as e:
            return Err(CoverageError(f"cannot list {bin_dir}: {e}"))
        for entry in entries:
            if not entry.name.startswith(prefixes) or entry.name.endswith(".d"):
                continue
            try:
                if await entry.is_file():
                    return Ok(entry)
            except OSError:
                # dangling symlink
                continue
        return Err(CoverageError(f"no test binary starting with {workdir.name!r} in {bin_dir}"))

    async def summary(self, out_dir: aio.Path, binary: aio.Path) -> Optional[KcovSummary]:
        """
        Reads the summary kcov leaves in `<out_dir>/<binary name>/coverage.json`.
        The report is still usable without it, so failures only return None.
        """
        path = out_dir / binary.name / KCOV_SUMMARY
        try:
            data = await path.read_bytes()
            return KcovSummary.model_validate(await asyncio.to_thread(orjson.loads, data))
        except (OSError, orjson.JSONDecodeError, ValidationError) as e:
            logger.debug(f"no usable kcov summary at {path}: {e!r}")
            return None

    async def _run(self, what: str, cmd: list[str], workdir: aio.Path, env: dict[str, str]) -> Result[None]:
        try:
            res = await process.run_to_res(*cmd, cwd=workdir, env=env, capture_output=True, timeout=self.config.coverage.timeout)
        except OSError as e:
            return Err(CoverageError(f"cannot run {what}: {e}"))
        if res.timedout:
            return Err(CoverageError(f"{what} timed out"))
        if not res.success:
            return Err(CoverageError(f"{what} exited with {res.returncode}", extra={"output": res.output[-MAX_ERROR_OUTPUT:]}))
        return Ok(None)

    @requireable
    async def project_report(self, branch: str, commit: str, project: FuzzProject, root: aio.Path, rel: PurePosixPath) -> Result[CoverageReport]:
        conf = self.config.coverage
        workdir = root / project.path
        env = self._env(root)
        log = logger.bind(branch=branch, project=project.name)

        if conf.test_build_command:
            log.debug(f"building tests in {workdir}")
            require(await self._run("test build", conf.test_build_command, workdir, env))

        binary = require(await self.find_binary(workdir))
        project_rel = rel / sanitize_path_segment(project.name)
        out_dir = self.reports_root / project_rel
        try:
            await out_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            return Err(CoverageError(f"cannot create {out_dir}: {e}"))

        log.info(f"running {conf.command} on {binary.name}, output in {out_dir}")
        require(await self._run(conf.command, [conf.command, out_dir.as_posix(), *conf.kcov_args, binary.as_posix()], workdir, env))
        summary = await self.summary(out_dir, binary)

        return Ok(CoverageReport(
            branch=branch,
            commit=commit,
            project=project.name,
            path=out_dir.as_posix(),
            url=reports_url(self.config.reports_url, project_rel),
            line_coverage=summary.percent_covered if summary else None,
        ))

    async def generate(self, branch: str, commit: str, projects: Iterable[FuzzProject], root: aio.Path, stamp: Optional[datetime] = None) -> list[CoverageReport]:
        """
        Produces one report per project. Failing projects are logged and skipped.
        """
        reports: list[CoverageReport] = []
        async with self.lock:
            stamp = stamp or datetime.now(timezone.utc)
            rel = self.report_dir(branch, commit, stamp)
            with telem_tracer.start_as_current_span("coverage", attributes={"branch": branch, "commit": commit}):
                for project in projects:
                    match await self.project_report(branch, commit, project, root, rel):
                        case Ok(report):
                            reports.append(report)
                        case Err(e):
                            logger.error(f"coverage report for {project.name} on {branch} failed: {e.error}")
        return reports
