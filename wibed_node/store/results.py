import logging
import os
import shutil
import tempfile
from typing import List, Optional
from ..schemas.protocol import ResultRecord


logger = logging.getLogger(__name__)

EXIT_CODE = "exitCode"
STDOUT = "stdout"
STDERR = "stderr"


def _read(path: str) -> str:
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        return f.read()


def _write_atomic(path: str, data: str) -> None:
    fd, tmp = tempfile.mkstemp(dir=os.path.dirname(path), prefix=".tmp-")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        os.unlink(tmp)
        raise


class ResultStore:
    """Results directory shared with the executor: ``<root>/<id>/{stdout,stderr,exitCode}``.

    A record is complete once ``exitCode`` exists; it is always written last.
    """

    def __init__(self, root: str):
        self.root = root

    def _ids(self) -> List[int]:
        try:
            names = os.listdir(self.root)
        except FileNotFoundError:
            return []
        ids = []
        for name in names:
            try:
                ids.append(int(name))
            except ValueError:
                continue
        return sorted(ids)

    def read(self, command_id: int) -> Optional[ResultRecord]:
        folder = os.path.join(self.root, str(command_id))
        try:
            raw_code = _read(os.path.join(folder, EXIT_CODE)).strip()
        except FileNotFoundError:
            return None
        try:
            exit_code = int(raw_code)
        except ValueError:
            logger.warning("result %s has unreadable exit code %r", command_id, raw_code)
            return None
        out = {}
        for name in (STDOUT, STDERR):
            try:
                out[name] = _read(os.path.join(folder, name))
            except FileNotFoundError:
                out[name] = ""
        return ResultRecord(id=command_id, exit_code=exit_code, stdout=out[STDOUT], stderr=out[STDERR])

    def list_pending(self, result_ack: Optional[int]) -> List[ResultRecord]:
        pending = []
        for command_id in self._ids():
            if result_ack is not None and command_id <= result_ack:
                continue
            record = self.read(command_id)
            if record is None:
                # executor still running it; picked up on a later tick
                continue
            pending.append(record)
        return pending

    def write(self, record: ResultRecord) -> None:
        folder = os.path.join(self.root, str(record.id))
        os.makedirs(folder, exist_ok=True)
        _write_atomic(os.path.join(folder, STDOUT), record.stdout)
        _write_atomic(os.path.join(folder, STDERR), record.stderr)
        _write_atomic(os.path.join(folder, EXIT_CODE), f"{record.exit_code}\n")

    def clear(self) -> None:
        shutil.rmtree(self.root, ignore_errors=True)
