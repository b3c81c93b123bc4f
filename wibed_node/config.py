import os
from typing import Any, Optional
import yaml
from pydantic import BaseModel, ValidationError, field_validator
from .errors import ConfigurationError


DEFAULT_CONFIG_PATH = "/etc/wibed/agent.yaml"


class AgentSettings(BaseModel):
    base_dir: str = "/usr/lib/wibed"
    state_dir: str = "state"
    results_dir: str = "results"
    pipe_path: str = "pipes/commands"
    executor_log: str = "executor.log"
    overlay_path: str = "overlay.tar.gz"
    firmware_path: str = "firmware.bin"
    config_backend: str = "auto"  # auto|file|uci
    uci_package: str = "wibed"
    http_timeout: float = 20
    download_timeout: float = 300
    pipe_timeout: float = 10
    command_timeout: int = 600
    upgrade_hook: Optional[str] = None
    overlay_hook: Optional[str] = None
    log_level: str = "INFO"

    @field_validator("config_backend")
    @classmethod
    def _check_backend(cls, v: str) -> str:
        v = v.lower()
        if v not in ("auto", "file", "uci"):
            raise ValueError(f"unknown config backend {v!r}")
        return v

    def path(self, value: str) -> str:
        """Resolve a configured path against base_dir."""
        return value if os.path.isabs(value) else os.path.join(self.base_dir, value)

    @property
    def state_path(self) -> str:
        return self.path(self.state_dir)

    @property
    def results_path(self) -> str:
        return self.path(self.results_dir)

    @property
    def commands_pipe(self) -> str:
        return self.path(self.pipe_path)

    @property
    def executor_log_file(self) -> str:
        return self.path(self.executor_log)

    @property
    def overlay_file(self) -> str:
        return self.path(self.overlay_path)

    @property
    def firmware_file(self) -> str:
        return self.path(self.firmware_path)


def _env_overrides(environ: dict) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name in AgentSettings.model_fields:
        key = "WIBED_" + name.upper()
        if key in environ:
            out[name] = environ[key]
    return out


def load_config(path: Optional[str] = None, environ: Optional[dict] = None) -> AgentSettings:
    environ = os.environ if environ is None else environ
    path = path or environ.get("WIBED_CONFIG", DEFAULT_CONFIG_PATH)
    data: dict[str, Any] = {}
    if os.path.exists(path):
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"cannot parse {path}: {e}") from e
    a = data.get("agent") or {}
    if not isinstance(a, dict):
        raise ConfigurationError(f"{path}: 'agent' must be a mapping")
    a.update(_env_overrides(environ))
    try:
        return AgentSettings(**a)
    except ValidationError as e:
        raise ConfigurationError(f"invalid agent settings: {e}") from e
