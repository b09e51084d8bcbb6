from collections import defaultdict
from typing import AsyncIterator
import asyncio
import contextlib

from loguru import logger

from fuzzci.common import aio
from fuzzci.common.path import sanitize_path_segment
from fuzzci.common.types import FuzzTarget

class CorpusLease:
    """
    Exclusive handle on a target's corpus directory. Released once the process
    using the directory has been reaped; releasing twice is a no-op.
    """
    def __init__(self, store: 'CorpusStore', key: tuple[str, str], path: aio.Path):
        self.store = store
        self.key = key
        self.path = path
        self.released = False

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        self.store._locks[self.key].release()
        logger.trace(f"corpus lease released: {self.key}")

    def __repr__(self) -> str:
        return f"CorpusLease({self.key}, path={self.path}, released={self.released})"

class CorpusStore:
    """
    Root directory with one subdirectory of inputs per fuzz target. Directories are
    created on demand and never removed; the engine adds to them while fuzzing.
    """
    def __init__(self, root: aio.StrPath):
        self.root = aio.Path(root)
        self._locks: defaultdict[tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)

    def target_dir(self, target: FuzzTarget) -> aio.Path:
        return self.root / sanitize_path_segment(target.corpus_dir)

    async def ensure(self, target: FuzzTarget) -> aio.Path:
        path = self.target_dir(target)
        await path.mkdir(parents=True, exist_ok=True)
        return path

    def leased(self, branch: str, target: FuzzTarget) -> bool:
        return self._locks[(branch, target.name)].locked()

    async def acquire(self, branch: str, target: FuzzTarget) -> CorpusLease:
        key = (branch, target.name)
        lock = self._locks[key]
        if lock.locked():
            logger.debug(f"waiting for the corpus of {target.name} on {branch} to be released")
        await lock.acquire()
        try:
            path = await self.ensure(target)
        except BaseException:
            lock.release()
            raise
        logger.trace(f"corpus lease acquired: {key}")
        return CorpusLease(self, key, path)

    @contextlib.asynccontextmanager
    async def lease(self, branch: str, target: FuzzTarget) -> AsyncIterator[aio.Path]:
        lease = await self.acquire(branch, target)
        try:
            yield lease.path
        finally:
            lease.release()
