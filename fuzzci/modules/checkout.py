from typing import Optional, Sequence

from loguru import logger

from fuzzci.common import aio, process
from fuzzci.common.types import CheckoutError, Ok, Err, Result
from fuzzci.config import MAX_ERROR_OUTPUT, telem_tracer

async def checkout(command: Sequence[str], directory: aio.Path, url: str, branch: str, timeout: Optional[float] = None) -> Result[None]:
    """
    Runs the checkout collaborator as `<command...> <directory> <url> <branch>`. It is
    expected to leave a working tree ready for building in `directory`.
    """
    cmd = [*command, directory.as_posix(), url, branch]
    logger.info(f"checking out {url}@{branch} into {directory}")
    with telem_tracer.start_as_current_span("checkout", attributes={"branch": branch, "url": url}):
        try:
            res = await process.run_to_res(*cmd, capture_output=True, timeout=timeout)
        except OSError as e:
            return Err(CheckoutError(f"cannot run checkout command {command[0]!r}: {e}"))
    if res.timedout:
        return Err(CheckoutError(f"checkout of {branch} timed out after {timeout}s"))
    if not res.success:
        return Err(CheckoutError(
            f"checkout of {branch} exited with {res.returncode}",
            extra={"output": res.output[-MAX_ERROR_OUTPUT:]},
        ))
    logger.debug(f"checkout of {branch} done")
    return Ok(None)
