import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional
from .errors import ConfigurationError
from .store.config_store import ConfigStore


logger = logging.getLogger(__name__)

API_URL = "general.api_url"
NODE_ID = "general.node_id"
STATUS = "general.status"
COMMAND_ACK = "general.commandAck"
RESULT_ACK = "general.resultAck"
MODEL = "upgrade.model"
VERSION = "upgrade.version"
UPGRADE_TIME = "upgrade.utime"
EXPERIMENT_ID = "experiment.exp_id"


class Status(IntEnum):
    INIT = 0
    IDLE = 1
    PREPARING = 2
    READY = 3
    RUNNING = 4
    UPGRADING = 5
    ERROR = 6


def _int_or_none(store: ConfigStore, key: str) -> Optional[int]:
    raw = store.get(key)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("ignoring non-integer %s=%r", key, raw)
        return None


@dataclass
class NodeState:
    node_id: str
    api_url: str
    status: Status = Status.INIT
    model: Optional[str] = None
    version: Optional[str] = None
    upgrade_time: Optional[int] = None
    experiment_id: Optional[str] = None
    command_ack: Optional[int] = None
    result_ack: Optional[int] = None

    @classmethod
    def load(cls, store: ConfigStore) -> "NodeState":
        api_url = store.get(API_URL)
        node_id = store.get(NODE_ID)
        if not api_url:
            raise ConfigurationError(f"{API_URL} is not set")
        if not node_id:
            raise ConfigurationError(f"{NODE_ID} is not set")
        raw_status = _int_or_none(store, STATUS)
        try:
            status = Status(raw_status) if raw_status is not None else Status.INIT
        except ValueError:
            logger.warning("unknown persisted status %s, starting from INIT", raw_status)
            status = Status.INIT
        return cls(
            node_id=node_id,
            api_url=api_url,
            status=status,
            model=store.get(MODEL),
            version=store.get(VERSION),
            upgrade_time=_int_or_none(store, UPGRADE_TIME),
            experiment_id=store.get(EXPERIMENT_ID),
            command_ack=_int_or_none(store, COMMAND_ACK),
            result_ack=_int_or_none(store, RESULT_ACK),
        )

    def save(self, store: ConfigStore) -> None:
        store.set(STATUS, str(int(self.status)))
        for key, value in (
            (VERSION, self.version),
            (UPGRADE_TIME, self.upgrade_time),
            (EXPERIMENT_ID, self.experiment_id),
            (COMMAND_ACK, self.command_ack),
            (RESULT_ACK, self.result_ack),
        ):
            if value is None:
                store.delete(key)
            else:
                store.set(key, str(value))
        store.commit()

    def transition(self, new: Status) -> None:
        if new != self.status:
            logger.info("status %s -> %s", self.status.name, new.name)
        self.status = new

    def acknowledge_results(self, ack: Optional[int]) -> None:
        """Raise result_ack to ``ack`` without passing command_ack or going backwards."""
        if ack is None:
            return
        ceiling = self.command_ack
        if ceiling is None:
            logger.warning("controller acknowledged result %s but no command was dispatched", ack)
            return
        if ack > ceiling:
            logger.warning("controller acknowledged result %s beyond commandAck %s", ack, ceiling)
            ack = ceiling
        if self.result_ack is None or ack > self.result_ack:
            self.result_ack = ack
