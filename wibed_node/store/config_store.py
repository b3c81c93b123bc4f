import logging
import os
import shutil
import subprocess
import tempfile
from typing import Optional
from ..config import AgentSettings


logger = logging.getLogger(__name__)


class ConfigStore:
    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def commit(self) -> None:
        pass


def _split(key: str) -> tuple[str, str]:
    section, sep, option = key.partition(".")
    if not sep or not section or not option or "/" in key:
        raise ValueError(f"invalid config key {key!r}")
    return section, option


class FileConfigStore(ConfigStore):
    """One file per key at ``<directory>/<section>/<option>``."""

    def __init__(self, directory: str):
        self.directory = directory

    def _file(self, key: str) -> str:
        section, option = _split(key)
        return os.path.join(self.directory, section, option)

    def get(self, key: str) -> Optional[str]:
        try:
            with open(self._file(key), "r", encoding="utf-8") as f:
                value = f.read().strip()
        except FileNotFoundError:
            return None
        return value or None

    def set(self, key: str, value: str) -> None:
        target = self._file(key)
        os.makedirs(os.path.dirname(target), exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=os.path.dirname(target), prefix=".tmp-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(f"{value}\n")
            os.replace(tmp, target)
        except BaseException:
            os.unlink(tmp)
            raise

    def delete(self, key: str) -> None:
        try:
            os.unlink(self._file(key))
        except FileNotFoundError:
            pass


class UciConfigStore(ConfigStore):
    """Values stored as ``<package>.<section>.<option>`` in uci."""

    def __init__(self, package: str = "wibed", uci: str = "uci"):
        self.package = package
        self.uci = uci

    def _run(self, *args: str) -> subprocess.CompletedProcess:
        return subprocess.run([self.uci, "-q", *args], capture_output=True, text=True, timeout=10)

    def get(self, key: str) -> Optional[str]:
        _split(key)
        p = self._run("get", f"{self.package}.{key}")
        if p.returncode != 0:
            return None
        return p.stdout.strip() or None

    def set(self, key: str, value: str) -> None:
        _split(key)
        p = self._run("set", f"{self.package}.{key}={value}")
        if p.returncode != 0:
            raise OSError(f"uci set {key} failed: {p.stderr.strip()}")

    def delete(self, key: str) -> None:
        _split(key)
        # deleting a missing option is not an error
        self._run("delete", f"{self.package}.{key}")

    def commit(self) -> None:
        p = self._run("commit", self.package)
        if p.returncode != 0:
            raise OSError(f"uci commit {self.package} failed: {p.stderr.strip()}")


def uci_available(package: str, config_dir: str = "/etc/config") -> bool:
    return shutil.which("uci") is not None and os.path.exists(os.path.join(config_dir, package))


def detect_config_store(settings: AgentSettings) -> ConfigStore:
    backend = settings.config_backend
    if backend == "auto":
        backend = "uci" if uci_available(settings.uci_package) else "file"
    logger.debug("using %s config backend", backend)
    if backend == "uci":
        return UciConfigStore(settings.uci_package)
    return FileConfigStore(settings.state_path)
