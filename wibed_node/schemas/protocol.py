from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import field_serializer
from pydantic import field_validator
from pydantic import model_validator


class Action(str, Enum):
    PREPARE = "PREPARE"
    RUN = "RUN"
    FINISH = "FINISH"


def _as_str(v: Any) -> Any:
    # ids and hashes may arrive as JSON numbers
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        return str(v)
    return v


def normalize_commands(v: Any) -> Optional[Dict[int, str]]:
    """Accept ``{"<id>": cmd}`` or ``[[id, cmd], ...]``; return an id-ordered dict."""
    if v is None:
        return None
    if isinstance(v, dict):
        items = list(v.items())
    elif isinstance(v, list):
        items = []
        for pair in v:
            if not isinstance(pair, (list, tuple)) or len(pair) != 2:
                raise ValueError(f"command entry must be [id, command], got {pair!r}")
            items.append((pair[0], pair[1]))
    else:
        raise ValueError("commands must be an object or a list of [id, command] pairs")
    out: Dict[int, str] = {}
    for k, cmd in items:
        if isinstance(k, bool) or not isinstance(cmd, str):
            raise ValueError(f"invalid command entry {k!r}: {cmd!r}")
        out[int(k)] = cmd
    return dict(sorted(out.items()))


class ResultRecord(BaseModel):
    id: int
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    def to_wire(self) -> list:
        return [self.id, self.exit_code, self.stdout, self.stderr]


class ServerRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    status: int
    model: Optional[str] = None
    version: Optional[str] = None
    command_ack: Optional[int] = Field(default=None, alias="commandAck")
    results: Optional[List[ResultRecord]] = None

    @field_serializer("results")
    def _results_wire(self, results: Optional[List[ResultRecord]]):
        if results is None:
            return None
        return [r.to_wire() for r in results]

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class UpgradeInfo(BaseModel):
    model_config = ConfigDict(extra='ignore')
    version: str
    hash: Optional[str] = None
    utime: Optional[int] = None

    @field_validator("version", "hash", mode="before")
    @classmethod
    def _numbers_as_str(cls, v: Any) -> Any:
        return _as_str(v)


class ExperimentInfo(BaseModel):
    model_config = ConfigDict(extra='ignore', populate_by_name=True)
    id: Optional[str] = None
    overlay: Optional[str] = None
    hash: Optional[str] = None
    action: Optional[Action] = None
    commands: Optional[Dict[int, str]] = None
    result_ack: Optional[int] = Field(default=None, alias="resultAck")

    @field_validator("id", "overlay", "hash", mode="before")
    @classmethod
    def _numbers_as_str(cls, v: Any) -> Any:
        return _as_str(v)

    @field_validator("action", mode="before")
    @classmethod
    def _upper_action(cls, v: Any) -> Any:
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator("commands", mode="before")
    @classmethod
    def _commands(cls, v: Any) -> Any:
        return normalize_commands(v)

    @model_validator(mode="after")
    def _prepare_needs_overlay(self):
        if self.action == Action.PREPARE and (not self.id or not self.overlay):
            raise ValueError("PREPARE requires experiment id and overlay")
        return self


class ServerResponse(BaseModel):
    model_config = ConfigDict(extra='ignore', populate_by_name=True)
    errors: Optional[Dict[str, Any]] = None
    upgrade: Optional[UpgradeInfo] = None
    experiment: Optional[ExperimentInfo] = None
    commands: Optional[Dict[int, str]] = None
    result_ack: Optional[int] = Field(default=None, alias="resultAck")

    @field_validator("errors", mode="before")
    @classmethod
    def _errors(cls, v: Any) -> Any:
        if isinstance(v, list):
            return {str(i): e for i, e in enumerate(v)}
        if isinstance(v, str):
            return {"0": v} if v else {}
        return v

    @field_validator("commands", mode="before")
    @classmethod
    def _commands(cls, v: Any) -> Any:
        return normalize_commands(v)

    @property
    def action(self) -> Optional[Action]:
        return self.experiment.action if self.experiment else None

    def all_commands(self) -> Dict[int, str]:
        merged: Dict[int, str] = {}
        if self.experiment and self.experiment.commands:
            merged.update(self.experiment.commands)
        if self.commands:
            merged.update(self.commands)
        return dict(sorted(merged.items()))

    def acknowledged_results(self) -> Optional[int]:
        if self.result_ack is not None:
            return self.result_ack
        return self.experiment.result_ack if self.experiment else None
