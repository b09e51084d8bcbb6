from typing import Optional, Protocol
import asyncio

from loguru import logger
from pydantic import ValidationError
from pydantic.dataclasses import dataclass
import aiohttp

from fuzzci.common.types import FuzzCIError

from .project import ProjectCoverage, TargetCoverage

@dataclass(frozen=True)
class CycleStarted:
    commit: str

@dataclass(frozen=True)
class CycleStopped:
    reason: str

@dataclass(frozen=True)
class Error:
    detail: str
    # no progress within the configured window
    timeout: bool = False

@dataclass(frozen=True)
class CoverageUpdated:
    project: str
    covered: int
    total: Optional[int]
    targets: tuple[TargetCoverage, ...] = ()

    @classmethod
    def from_coverage(cls, cov: ProjectCoverage) -> 'CoverageUpdated':
        return cls(project=cov.project, covered=cov.covered, total=cov.total, targets=cov.targets)

@dataclass(frozen=True)
class ReportReady:
    url: str
    line_coverage: Optional[float] = None

@dataclass(frozen=True)
class Message:
    text: str

type Event = CycleStarted | CycleStopped | Error | CoverageUpdated | ReportReady | Message

def render(event: Event, description: str) -> str:
    match event:
        case CycleStarted(commit=commit):
            body = f"Fuzzing started at {commit[:7]}"
        case CycleStopped(reason=reason):
            body = f"Fuzzing stopped: {reason}"
        case Error(detail=detail, timeout=True):
            body = f"Timeout: {detail}"
        case Error(detail=detail):
            body = f"Error: {detail}"
        case CoverageUpdated(project=project, covered=covered, total=total, targets=targets):
            body = f"*{project}*: {covered}/{'?' if total is None else total} edges"
            for t in sorted(targets, key=lambda t: t.target):
                body += f"\n- *{t.target}*: {t.covered}/{'?' if t.total is None else t.total} edges, {t.crashes} crashes"
        case ReportReady(url=url, line_coverage=None):
            body = f"Coverage reports are ready: {url}"
        case ReportReady(url=url, line_coverage=float(percent)):
            body = f"Coverage reports are ready: {url} ({percent:.2f}% of lines)"
        case Message(text=text):
            body = text
    return f"{description}\n{body}"

class FeedbackClient(Protocol):
    async def send(self, text: str) -> None:
        ...

class LoggerClient:
    """Client used when no chat integration is configured."""
    def __init__(self, name: str = "feedback"):
        self.name = name

    async def send(self, text: str) -> None:
        logger.info(f"[{self.name}] {text}")

class Notifier:
    """
    Fans cycle events out to a chat client. Only errors are delivered unless
    `verbose` is set. Delivery happens in the background and its failures are
    logged and dropped, so notifying never blocks or fails the caller.
    """
    def __init__(self, client: FeedbackClient, description: str, verbose: bool = False):
        self.client = client
        self.description = description
        self.verbose = verbose
        self._pending: set[asyncio.Task[None]] = set()

    def wants(self, event: Event) -> bool:
        return self.verbose or isinstance(event, Error)

    def notify(self, event: Event) -> None:
        if not self.wants(event):
            logger.trace(f"notification filtered: {event}")
            return
        text = render(event, self.description)
        task = asyncio.create_task(self._deliver(text), name=f"Notifier._deliver({type(event).__name__})")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, text: str) -> None:
        try:
            await self.client.send(text)
        except (FuzzCIError, aiohttp.ClientError, ValidationError, TimeoutError, OSError) as e:
            logger.warning(f"cannot deliver notification: {e!r}")

    async def drain(self) -> None:
        """Waits for every delivery started so far."""
        while self._pending:
            _ = await asyncio.gather(*self._pending, return_exceptions=True)
