from pathlib import PurePath
from typing import AsyncIterator, Self
import asyncio
import contextlib
import os
import pathlib
import shutil
import stat
import tempfile

from .shield import shield_and_wait, finalize

StrPath = os.PathLike[str] | str

class Path(PurePath):
    """
    PurePath whose filesystem accessors run in a worker thread.
    """
    async def stat(self, *, follow_symlinks: bool = True) -> os.stat_result:
        fn = os.stat if follow_symlinks else os.lstat
        return await asyncio.to_thread(fn, self)

    # NOTE: pathlib may suppress some errors on Path.is_dir and friends
    async def is_dir(self, *, follow_symlinks: bool = True) -> bool:
        st = await self.stat(follow_symlinks=follow_symlinks)
        return stat.S_ISDIR(st.st_mode)

    async def is_file(self, *, follow_symlinks: bool = True) -> bool:
        st = await self.stat(follow_symlinks=follow_symlinks)
        return stat.S_ISREG(st.st_mode)

    async def mkdir(self, mode: int = 0o777, parents: bool = False, exist_ok: bool = False) -> None:
        await asyncio.to_thread(pathlib.Path(self).mkdir, mode=mode, parents=parents, exist_ok=exist_ok)

    async def listdir(self) -> list[Self]:
        names = await asyncio.to_thread(os.listdir, self)
        return [self / name for name in sorted(names)]

    async def read_bytes(self) -> bytes:
        return await asyncio.to_thread(pathlib.Path(self).read_bytes)

    async def write_bytes(self, data: bytes) -> int:
        return await asyncio.to_thread(pathlib.Path(self).write_bytes, data)

    def sync(self) -> pathlib.Path:
        return pathlib.Path(self)

@contextlib.asynccontextmanager
async def tmpdir(suffix: str | None = None, prefix: str | None = None, dir: StrPath | None = None) -> AsyncIterator[Path]:
    path = await shield_and_wait(asyncio.to_thread(tempfile.mkdtemp, suffix=suffix, prefix=prefix, dir=dir))

    async def cleanup():
        await asyncio.to_thread(shutil.rmtree, path, ignore_errors=True)

    async with finalize(cleanup()):
        yield Path(path)
