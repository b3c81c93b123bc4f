import asyncio
import logging
import sys
from typing import Optional
import click
import httpx
from .actions import Downloader
from .channel import CommandChannel, PipeCommandChannel
from .config import AgentSettings, load_config
from .errors import ConfigurationError, ExecutorStartError, ResponseError, TransportError
from .machine import StateMachine
from .poll import PollCycle, build_request, summarize
from .state import NodeState
from .store.config_store import ConfigStore, detect_config_store
from .store.results import ResultStore


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_RESPONSE = 1
EXIT_CONFIG = 2
EXIT_EXECUTOR = 3

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def make_channel(settings: AgentSettings) -> PipeCommandChannel:
    return PipeCommandChannel(
        settings.commands_pipe,
        settings.results_path,
        timeout=settings.pipe_timeout,
        command_timeout=settings.command_timeout,
        log_path=settings.executor_log_file,
    )


async def run_tick(
    settings: AgentSettings,
    store: ConfigStore,
    client: httpx.AsyncClient,
    channel: Optional[CommandChannel] = None,
    results: Optional[ResultStore] = None,
) -> int:
    """Report, apply the controller's answer, persist. Returns the process exit status."""
    state = NodeState.load(store)
    results = results or ResultStore(settings.results_path)
    channel = channel or make_channel(settings)

    poll = PollCycle(client, state.api_url, state.node_id, timeout=settings.http_timeout)
    request = build_request(state, results)
    logger.info("reporting status %s as node %s", state.status.name, state.node_id)
    try:
        response = await poll.exchange(request)
    except TransportError as e:
        logger.warning("communication with controller unsuccessful: %s", e)
        return EXIT_OK
    except ResponseError as e:
        logger.error("%s", e)
        for key, message in e.errors.items():
            logger.error("controller error %s: %s", key, message)
        return EXIT_RESPONSE
    logger.info("controller response: %s", summarize(response) or "nothing to do")

    machine = StateMachine(
        settings,
        store,
        channel,
        results,
        Downloader(client, state.api_url, timeout=settings.download_timeout),
    )
    try:
        await machine.handle(state, response)
    except ExecutorStartError as e:
        logger.error("executor unavailable, commands left for the next tick: %s", e)
        return EXIT_EXECUTOR
    finally:
        state.save(store)
    return EXIT_OK


async def tick(settings: AgentSettings) -> int:
    store = detect_config_store(settings)
    async with httpx.AsyncClient() as client:
        return await run_tick(settings, store, client)


@click.command()
@click.option("--config", "config_path", default=None, help="Agent YAML config (default: $WIBED_CONFIG or /etc/wibed/agent.yaml)")
@click.option("--log-level", default=None, help="Override the configured log level")
def main(config_path, log_level):
    """Run one WiBed node tick: report to the controller and act on its answer."""
    try:
        settings = load_config(config_path)
    except ConfigurationError as e:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
        logger.critical("%s", e)
        sys.exit(EXIT_CONFIG)
    level = (log_level or settings.log_level).upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
    try:
        code = asyncio.run(tick(settings))
    except ConfigurationError as e:
        logger.critical("%s", e)
        code = EXIT_CONFIG
    sys.exit(code)


if __name__ == "__main__":
    main()
