from asyncio.subprocess import PIPE
import asyncio
import pytest

from fuzzci.common import process

async def test_run_to_res():
    res = await process.run_to_res("sh", "-c", "echo out; echo err >&2; exit 3", capture_output=True)
    assert res.returncode == 3
    assert not res.success
    assert res.stdout == b"out\n"
    assert res.stderr == b"err\n"
    assert res.output == "err\n\nout\n"

    res = await process.run_to_res("true")
    assert res.success
    assert res.stdout == b""

async def test_run_to_res_timeout():
    loop = asyncio.get_running_loop()
    start = loop.time()
    res = await process.run_to_res("sleep", "30", timeout=0.2)
    assert res.timedout
    assert not res.success
    assert loop.time() - start < 10

async def test_run_to_res_missing_binary():
    with pytest.raises(OSError):
        _ = await process.run_to_res("/nonexistent/fuzzci-binary")

async def test_terminate_sigterm():
    proc = await asyncio.create_subprocess_exec("sleep", "100", start_new_session=True)
    killed = await process.terminate(proc, grace_period=5)
    assert not killed
    assert proc.returncode is not None and proc.returncode < 0

async def test_terminate_escalates_to_sigkill():
    proc = await asyncio.create_subprocess_exec(
        "sh", "-c", "trap '' TERM; echo ready; while true; do sleep 0.1; done",
        stdout=PIPE,
        start_new_session=True,
    )
    assert proc.stdout is not None
    assert await proc.stdout.readline() == b"ready\n"
    killed = await process.terminate(proc, grace_period=0.5)
    assert killed, "process ignoring SIGTERM should have been killed"
    assert proc.returncode == -9

async def test_terminate_exited_process():
    proc = await asyncio.create_subprocess_exec("true", start_new_session=True)
    _ = await proc.wait()
    assert not await process.terminate(proc)
    assert proc.returncode == 0

async def test_scope_reaps_processes():
    async with process.scope() as s:
        proc = await s.exec("sleep", "100")
    assert proc.returncode is not None
    assert s.done
    with pytest.raises(RuntimeError):
        _ = await s.exec("true")
