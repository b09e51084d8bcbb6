from enum import StrEnum
from typing import Any, Optional, Self

from pydantic.dataclasses import dataclass
from result import Ok, Err

from .shield import Coro

__all__ = [
    "Ok", "Err", "Result", "Coro",
    "FuzzCIError", "LaunchError", "CheckoutError", "BuildError", "CoverageError",
    "NotificationDeliveryError", "ConfigError",
    "TargetRunState", "CycleState", "FuzzTarget", "FuzzProject", "ProgressSample", "CoverageReport",
]

# common exception type for all of our handled exceptions
class FuzzCIError(Exception):
    def __init__(self, error: str, extra: Optional[dict[str, Any]] = None):
        super().__init__(error)
        self.error = error
        self.extra = extra

    def __repr__(self):
        return f'{self.__class__.__name__}({self.error}, extra={self.extra})'

# a fuzz target subprocess could not be spawned
class LaunchError(FuzzCIError):
    pass

class CheckoutError(FuzzCIError):
    pass

class BuildError(FuzzCIError):
    pass

class CoverageError(FuzzCIError):
    pass

class NotificationDeliveryError(FuzzCIError):
    pass

class ConfigError(FuzzCIError):
    pass

# simplify result based on fixed error type
type Result[T] = Ok[T] | Err[FuzzCIError]


class TargetRunState(StrEnum):
    NOT_STARTED = "not_started"
    CALIBRATING = "calibrating"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (TargetRunState.STOPPED, TargetRunState.FAILED)

class CycleState(StrEnum):
    CHECKING_OUT = "checking_out"
    BUILDING = "building"
    CALIBRATING = "calibrating"
    RUNNING = "running"
    STOPPING = "stopping"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (CycleState.COMPLETED, CycleState.FAILED)


@dataclass(frozen=True)
class FuzzTarget:
    name: str
    project: str

    @property
    def corpus_dir(self) -> str:
        return self.name

@dataclass(frozen=True)
class FuzzProject:
    name: str
    targets: tuple[FuzzTarget, ...]
    # directory of the project relative to the checkout root
    path: str
    # engine arguments overriding the global ones
    run_args: Optional[str] = None


@dataclass(frozen=True)
class ProgressSample:
    """
    One observation of a fuzz target. Fields set to None were not carried by the
    observation; `total_edges` stays None until calibration provides it.
    """
    covered_edges: Optional[int] = None
    total_edges: Optional[int] = None
    crashes: Optional[int] = None
    iterations: Optional[int] = None

    @classmethod
    def initial(cls) -> Self:
        return cls(covered_edges=0, total_edges=None, crashes=0, iterations=0)

    def merge(self, update: 'ProgressSample') -> Optional['ProgressSample']:
        """
        Applies `update` on top of this sample. Returns None if `update` would move
        iterations or covered edges backwards. Total edges and crashes are kept as
        high-water marks: crashes are counted live and again on the exit summary.
        """
        for field in ("iterations", "covered_edges"):
            new, cur = getattr(update, field), getattr(self, field)
            if new is not None and cur is not None and new < cur:
                return None

        def pick(new: Optional[int], cur: Optional[int]) -> Optional[int]:
            return cur if new is None else new

        def highest(new: Optional[int], cur: Optional[int]) -> Optional[int]:
            match (new, cur):
                case (None, value) | (value, None):
                    return value
                case _:
                    return max(new, cur)

        return ProgressSample(
            covered_edges=pick(update.covered_edges, self.covered_edges),
            total_edges=highest(update.total_edges, self.total_edges),
            crashes=highest(update.crashes, self.crashes),
            iterations=pick(update.iterations, self.iterations),
        )


@dataclass(frozen=True)
class CoverageReport:
    branch: str
    commit: str
    project: str
    path: str
    url: Optional[str] = None
    # line coverage summary written by kcov, if it could be read
    line_coverage: Optional[float] = None
