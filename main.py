from typing import Optional, Sequence
import argparse
import asyncio
import contextlib
import pathlib
import sys

from loguru import logger
import aiohttp
import uvicorn

from fuzzci import config
from fuzzci.app.orchestrator import Orchestrator
from fuzzci.common import aio
from fuzzci.common.shield import finalize
from fuzzci.common.types import ConfigError, NotificationDeliveryError, Ok, Err
from fuzzci.modules.checkout import checkout
from fuzzci.modules.corpus import CorpusStore
from fuzzci.modules.feedback import FeedbackClient, LoggerClient
from fuzzci.modules.project import ProjectRunner
from fuzzci.modules.slack import SlackClient
from fuzzci.modules.target import ProgressEvent
from fuzzci.server.app import create_app

LOCAL_BRANCH = "local"

def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="fuzz-ci", description="Runs fuzzing in CI")
    parser.add_argument("-c", "--config", default=config.DEFAULT_CONFIG, help="Sets a custom config file")
    parser.add_argument("-d", dest="debug", action="count", default=0, help="Sets the level of debugging information")
    sub = parser.add_subparsers(dest="command", required=True)

    server = sub.add_parser("server", help="runs CI server")
    server.add_argument("-l", "--listen", help=f"Address to listen on ({config.DEFAULT_ADDRESS} by default)")
    server.add_argument("-u", "--url", help="URL the reports are reachable at (http://ADDR/reports/ by default)")
    server.add_argument("-b", "--branch", dest="branches", action="append", help="Branches to fuzz")

    co = sub.add_parser("checkout", help="checkout fuzzing repo and target project")
    co.add_argument("dir", help="Directory to check out to")
    co.add_argument("repo", help="Target project repository")
    co.add_argument("branch", help="Target project branch")

    fuzz = sub.add_parser("fuzz", help="builds and fuzzes projects of an existing checkout until interrupted")
    fuzz.add_argument("dir", help="Checkout root")
    fuzz.add_argument("-p", "--project", dest="projects", action="append", help="Fuzzing projects to run (all by default)")

    slack = sub.add_parser("slack", help="posts a message to the configured slack channel")
    slack.add_argument("text", help="Message text")
    slack.add_argument("--channel", help="Slack channel to post to")
    slack.add_argument("--token", help="Slack authorization token")

    return parser.parse_args(argv)

async def run_server(conf: config.Config) -> None:
    host, _, port = conf.address.rpartition(":")
    async with contextlib.AsyncExitStack() as stack:
        client: FeedbackClient = LoggerClient()
        if conf.slack is not None:
            client = await stack.enter_async_context(SlackClient(conf.slack))
        orchestrator = Orchestrator(conf, client)
        app = create_app(orchestrator)
        logger.info(f"starting server on {conf.address}, fuzzing {', '.join(conf.branches)}")
        server = uvicorn.Server(uvicorn.Config(app, host=host or "0.0.0.0", port=int(port), log_config=None))
        await server.serve()

async def run_checkout(conf: config.Config, directory: str, repo: str, branch: str) -> int:
    match await checkout(conf.checkout_command, aio.Path(pathlib.Path(directory).absolute()), repo, branch, timeout=conf.checkout_timeout):
        case Ok(_):
            return 0
        case Err(e):
            logger.error(f"checkout failed: {e.error} {e.extra or ''}")
            return 1

async def run_fuzz(conf: config.Config, directory: str, names: Optional[list[str]]) -> int:
    root = aio.Path(pathlib.Path(directory).absolute())
    projects = [p for p in conf.projects() if not names or p.name in names]
    if not projects:
        logger.error(f"no fuzzing project matches {names}")
        return 1

    corpus = CorpusStore(conf.corpus)
    queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()
    runners = [ProjectRunner(p, branch=LOCAL_BRANCH, root=root, config=conf, corpus=corpus, queue=queue) for p in projects]

    async def report() -> None:
        while True:
            event = await queue.get()
            s = event.sample
            logger.info(f"[{event.project}/{event.target}] {event.state} {s.covered_edges}/{s.total_edges} edges, {s.crashes} crashes, {s.iterations} iterations")

    async def cleanup():
        _ = await asyncio.gather(*(r.stop_all() for r in runners))

    reporter = asyncio.create_task(report(), name="run_fuzz.report")
    try:
        async with finalize(cleanup()):
            for runner in runners:
                match await runner.build():
                    case Err(e):
                        logger.error(f"{e.error} {e.extra or ''}")
                        return 1
                    case Ok(_):
                        pass
            _ = await asyncio.gather(*(r.run_all() for r in runners))
            _ = await asyncio.gather(*(r.wait_all() for r in runners))
    finally:
        _ = reporter.cancel()
    for runner in runners:
        cov = runner.aggregate()
        logger.info(f"{cov.project}: {cov.covered}/{cov.total} edges\n{cov.table()}")
    return 0

async def run_slack(conf: config.Config, text: str, channel: Optional[str], token: Optional[str]) -> int:
    if conf.slack is None and channel is None:
        logger.error("no slack channel configured")
        return 1
    slack_conf = conf.slack or config.SlackConfig(channel=channel or "")
    slack_conf = slack_conf.model_copy(update={k: v for k, v in (("channel", channel), ("token", token)) if v})
    try:
        await SlackClient(slack_conf).send(text)
    except NotificationDeliveryError as e:
        logger.error(e.error)
        return 1
    except aiohttp.ClientError as e:
        logger.error(f"cannot reach slack: {e!r}")
        return 1
    return 0

def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    if args.debug:
        config.set_log_level("DEBUG" if args.debug == 1 else "TRACE")

    try:
        conf = config.load(args.config)
    except ConfigError as e:
        logger.critical(f"{e.error} {e.extra or ''}")
        return 1

    match args.command:
        case "server":
            updates = {k: v for k, v in (("address", args.listen), ("url", args.url), ("branches", args.branches)) if v}
            asyncio.run(run_server(conf.model_copy(update=updates)))
            return 0
        case "checkout":
            return asyncio.run(run_checkout(conf, args.dir, args.repo, args.branch))
        case "fuzz":
            return asyncio.run(run_fuzz(conf, args.dir, args.projects))
        case "slack":
            return asyncio.run(run_slack(conf, args.text, args.channel, args.token))
        case _:
            raise ValueError(f"unknown command {args.command}")

if __name__ == "__main__":
    sys.exit(main())
