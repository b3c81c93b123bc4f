import logging
from typing import Optional
from .actions import Downloader, remove_file, run_hook
from .channel import CommandChannel
from .config import AgentSettings
from .errors import ActionError, ExecutorStartError
from .schemas.protocol import Action, ExperimentInfo, ServerResponse, UpgradeInfo
from .state import NodeState, Status
from .store.config_store import ConfigStore
from .store.results import ResultStore


logger = logging.getLogger(__name__)

# ERROR accepts the IDLE lifecycle requests so a failed download is retried
ACCEPTS_LIFECYCLE = (Status.IDLE, Status.ERROR)
IN_EXPERIMENT = (Status.PREPARING, Status.READY, Status.RUNNING)
DISPATCHES = (Status.IDLE, Status.RUNNING, Status.ERROR)


class StateMachine:
    def __init__(
        self,
        settings: AgentSettings,
        store: ConfigStore,
        channel: CommandChannel,
        results: ResultStore,
        downloader: Downloader,
    ):
        self.settings = settings
        self.store = store
        self.channel = channel
        self.results = results
        self.downloader = downloader

    async def handle(self, state: NodeState, response: ServerResponse) -> None:
        """Apply one controller response to ``state``."""
        if state.status == Status.INIT:
            state.transition(Status.IDLE)

        action = response.action
        finished = False
        if state.status in ACCEPTS_LIFECYCLE:
            if response.upgrade:
                await self.do_firmware_upgrade(state, response.upgrade)
            elif action == Action.PREPARE:
                await self.do_prepare_experiment(state, response.experiment)
            elif action == Action.FINISH and state.status == Status.ERROR:
                self.do_finish_experiment(state)
                finished = True
        elif state.status in IN_EXPERIMENT:
            if action == Action.FINISH:
                self.do_finish_experiment(state)
                finished = True
            elif action == Action.RUN and state.status == Status.READY:
                self.do_start_experiment(state)
        # UPGRADING waits for the new firmware to take over

        if not finished and state.status in DISPATCHES:
            self.dispatch(state, response.all_commands())
        state.acknowledge_results(response.acknowledged_results())

    def _checkpoint(self, state: NodeState) -> None:
        state.save(self.store)

    async def do_firmware_upgrade(self, state: NodeState, upgrade: UpgradeInfo) -> bool:
        logger.info("firmware upgrade to %s requested", upgrade.version)
        path = self.settings.firmware_file
        try:
            await self.downloader.fetch(self.downloader.firmware_url(upgrade.version), path, upgrade.hash)
        except ActionError as e:
            logger.error("firmware download failed (status %s): %s", e.status_code, e)
            state.transition(Status.ERROR)
            return False
        state.version = upgrade.version
        state.upgrade_time = upgrade.utime
        state.transition(Status.UPGRADING)
        if self.settings.upgrade_hook:
            # the hook may flash and reboot
            self._checkpoint(state)
            try:
                run_hook(self.settings.upgrade_hook, {
                    "WIBED_FIRMWARE": path,
                    "WIBED_VERSION": upgrade.version,
                    "WIBED_UTIME": "" if upgrade.utime is None else str(upgrade.utime),
                })
            except ActionError as e:
                logger.error("firmware install failed: %s", e)
                state.transition(Status.ERROR)
                return False
        return True

    async def do_prepare_experiment(self, state: NodeState, experiment: ExperimentInfo) -> bool:
        logger.info("preparing experiment %s with overlay %s", experiment.id, experiment.overlay)
        state.transition(Status.PREPARING)
        path = self.settings.overlay_file
        try:
            await self.downloader.fetch(self.downloader.overlay_url(experiment.overlay), path, experiment.hash)
            run_hook(self.settings.overlay_hook, {
                "WIBED_OVERLAY": path,
                "WIBED_EXPERIMENT": experiment.id,
            })
        except ActionError as e:
            logger.error("experiment %s preparation failed (status %s): %s", experiment.id, e.status_code, e)
            state.transition(Status.ERROR)
            return False
        state.experiment_id = experiment.id
        state.transition(Status.READY)
        return True

    def do_start_experiment(self, state: NodeState) -> None:
        logger.info("starting experiment %s", state.experiment_id)
        state.transition(Status.RUNNING)

    def do_finish_experiment(self, state: NodeState) -> None:
        logger.info("finishing experiment %s", state.experiment_id)
        try:
            self.channel.send_exit()
        except ExecutorStartError as e:
            logger.warning("could not stop executor: %s", e)
        self.results.clear()
        remove_file(self.settings.overlay_file)
        state.experiment_id = None
        state.transition(Status.IDLE)

    def dispatch(self, state: NodeState, commands: dict) -> Optional[int]:
        if not commands:
            return state.command_ack
        ack = self.channel.dispatch(commands, state.command_ack)
        if ack != state.command_ack:
            logger.info("commandAck %s -> %s", state.command_ack, ack)
            state.command_ack = ack
        return ack
