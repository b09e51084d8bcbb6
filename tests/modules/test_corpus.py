import asyncio
import pathlib

from fuzzci.common.types import FuzzTarget
from fuzzci.modules.corpus import CorpusStore

TARGET = FuzzTarget(name="Ack/Message", project="proj")

async def test_lease_is_exclusive(tmp_path: pathlib.Path):
    store = CorpusStore(tmp_path / "corpus")
    first = await store.acquire("master", TARGET)
    assert first.path.sync() == tmp_path / "corpus" / "Ack_Message"
    assert await first.path.is_dir()
    assert store.leased("master", TARGET)

    # another branch has its own lease on the same directory
    other = await store.acquire("develop", TARGET)
    other.release()

    waiter = asyncio.create_task(store.acquire("master", TARGET))
    await asyncio.sleep(0.1)
    assert not waiter.done()

    first.release()
    first.release()
    second = await asyncio.wait_for(waiter, 5)
    assert second.path == first.path
    second.release()
    assert not store.leased("master", TARGET)

async def test_lease_context(tmp_path: pathlib.Path):
    store = CorpusStore(tmp_path / "corpus")
    async with store.lease("master", TARGET) as path:
        _ = await (path / "input").write_bytes(b"data")
        assert store.leased("master", TARGET)
    assert not store.leased("master", TARGET)
    # the corpus outlives the lease
    assert (tmp_path / "corpus" / "Ack_Message" / "input").read_bytes() == b"data"
