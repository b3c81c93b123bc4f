import hashlib
import logging
import os
import subprocess
import tempfile
from typing import Dict, Optional
from urllib.parse import quote
import httpx
from .errors import ActionError


logger = logging.getLogger(__name__)


class Downloader:
    """Fetches firmware images and overlays from the controller's static area."""

    def __init__(self, client: httpx.AsyncClient, base_url: str, timeout: float = 300):
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def firmware_url(self, version: str) -> str:
        return f"{self.base_url}/static/firmwares/{quote(version, safe='')}"

    def overlay_url(self, overlay: str) -> str:
        return f"{self.base_url}/static/overlays/{quote(overlay, safe='')}"

    async def fetch(self, url: str, dest: str, expected_hash: Optional[str] = None) -> str:
        """Stream ``url`` into ``dest``; returns the md5 hex digest of the body."""
        folder = os.path.dirname(os.path.abspath(dest))
        try:
            os.makedirs(folder, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=folder, prefix=".download-")
        except OSError as e:
            raise ActionError(f"cannot write {dest}: {e}") from e
        digest = hashlib.md5()
        try:
            with os.fdopen(fd, "wb") as f:
                async with self.client.stream("GET", url, timeout=self.timeout) as r:
                    if r.status_code != 200:
                        raise ActionError(f"GET {url} returned {r.status_code}", status_code=r.status_code)
                    async for chunk in r.aiter_bytes():
                        f.write(chunk)
                        digest.update(chunk)
            got = digest.hexdigest()
            if expected_hash and got != expected_hash.strip().lower():
                raise ActionError(f"hash mismatch for {url}: expected {expected_hash}, got {got}")
            os.replace(tmp, dest)
        except httpx.HTTPError as e:
            raise ActionError(f"GET {url} failed: {e}") from e
        except OSError as e:
            raise ActionError(f"cannot write {dest}: {e}") from e
        finally:
            if os.path.exists(tmp):
                os.unlink(tmp)
        logger.info("downloaded %s to %s", url, dest)
        return got


def run_hook(command: Optional[str], env: Dict[str, str], timeout: int = 600) -> None:
    """Run an optional install hook; a non-zero exit is an action failure."""
    if not command:
        return
    full_env = dict(os.environ)
    full_env.update(env)
    try:
        p = subprocess.run(command, shell=True, capture_output=True, timeout=timeout, env=full_env)
    except subprocess.TimeoutExpired as e:
        raise ActionError(f"hook {command!r} timed out") from e
    except OSError as e:
        raise ActionError(f"hook {command!r} could not run: {e}") from e
    if p.returncode != 0:
        stderr = p.stderr.decode("utf-8", errors="replace").strip()
        raise ActionError(f"hook {command!r} exited with {p.returncode}: {stderr}")


def remove_file(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
