from datetime import datetime, timezone
from typing import Optional
import asyncio

from loguru import logger

from fuzzci.config import Config
from fuzzci.modules.corpus import CorpusStore
from fuzzci.modules.coverage import CoverageReportGenerator
from fuzzci.modules.feedback import FeedbackClient, LoggerClient

from .cycle import BranchCycleController, CycleSnapshot, Trigger

def make_run_id(commit: str, message: Optional[str] = None, author: Optional[str] = None, now: Optional[datetime] = None) -> str:
    """`<first line of message> - <5 char commit> by <author> at <UTC time>`"""
    now = now or datetime.now(timezone.utc)
    title = (message or "").split("\n", 1)[0] or "no message"
    return f"{title} - {commit[:5]} by {author or 'unknown'} at {now:%Y-%m-%d %H:%M:%S}"

class Orchestrator:
    """
    Registry of one BranchCycleController per configured branch. Controllers are
    created on the first trigger for their branch; triggers for other branches
    are ignored.
    """
    def __init__(self, config: Config, client: Optional[FeedbackClient] = None):
        self.config = config
        self.client: FeedbackClient = client or LoggerClient()
        self.corpus = CorpusStore(config.corpus)
        self.coverage = CoverageReportGenerator(config)
        self.controllers: dict[str, BranchCycleController] = {}
        self.lock = asyncio.Lock()
        self.closed = False

    def configured(self, branch: str) -> bool:
        return branch in self.config.branches

    def _controller(self, branch: str) -> BranchCycleController:
        if (controller := self.controllers.get(branch)) is None:
            logger.debug(f"creating controller for {branch}")
            controller = BranchCycleController(branch, self.config, self.corpus, self.coverage, self.client)
            self.controllers[branch] = controller
        return controller

    async def submit(self, branch: str, commit: str, url: str, run_id: Optional[str] = None) -> bool:
        """
        Hands the trigger to the branch controller and returns without waiting
        for the cycle. False if the branch is not configured.
        """
        if not self.configured(branch):
            logger.debug(f"ignoring trigger for unconfigured branch {branch!r}")
            return False
        async with self.lock:
            if self.closed:
                logger.warning(f"ignoring trigger for {branch}, shutting down")
                return False
            controller = self._controller(branch)
            # submit() takes the place in line synchronously, under our lock
            _ = controller.submit(Trigger(commit=commit, url=url, run_id=run_id or make_run_id(commit)))
        return True

    def snapshots(self) -> dict[str, Optional[CycleSnapshot]]:
        return {branch: controller.snapshot() for branch, controller in sorted(self.controllers.items())}

    async def shutdown(self) -> None:
        async with self.lock:
            self.closed = True
            controllers = list(self.controllers.values())
        logger.info(f"shutting down {len(controllers)} branch(es)")
        _ = await asyncio.gather(*(c.shutdown() for c in controllers))
