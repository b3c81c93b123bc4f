import errno
import logging
import os
import subprocess
import sys
import time
from typing import Dict, List, Optional, Tuple
from .errors import ExecutorStartError


logger = logging.getLogger(__name__)

EXIT_ID = -1
EXIT_COMMAND = "exit"

# one command per line: "<id> <command>", with backslash, newline and CR escaped
_UNESCAPE = {"\\": "\\", "n": "\n", "r": "\r"}


def escape(command: str) -> str:
    return command.replace("\\", "\\\\").replace("\n", "\\n").replace("\r", "\\r")


def unescape(text: str) -> str:
    out = []
    i = 0
    while i < len(text):
        c = text[i]
        if c == "\\" and i + 1 < len(text) and text[i + 1] in _UNESCAPE:
            out.append(_UNESCAPE[text[i + 1]])
            i += 2
            continue
        out.append(c)
        i += 1
    return "".join(out)


def encode_line(command_id: int, command: str) -> str:
    return f"{command_id} {escape(command)}\n"


def decode_line(line: str) -> Tuple[int, str]:
    head, sep, rest = line.rstrip("\r\n").partition(" ")
    if not sep:
        raise ValueError(f"malformed command line {line!r}")
    return int(head), unescape(rest)


class CommandChannel:
    def executor_running(self) -> bool:
        raise NotImplementedError

    def start_executor(self) -> None:
        raise NotImplementedError

    def write_lines(self, lines: List[str]) -> None:
        raise NotImplementedError

    def ensure_executor_running(self) -> None:
        if not self.executor_running():
            self.start_executor()

    def dispatch(self, commands: Dict[int, str], command_ack: Optional[int]) -> Optional[int]:
        """Send every command newer than ``command_ack``; return the new ack."""
        batch = []
        for command_id, command in sorted(commands.items()):
            if command_id < 0:
                logger.warning("skipping command with reserved id %s", command_id)
                continue
            if command_ack is not None and command_id <= command_ack:
                continue
            batch.append((command_id, command))
        if not batch:
            return command_ack
        self.ensure_executor_running()
        for command_id, command in batch:
            logger.info("dispatching command %s: %s", command_id, command)
        self.write_lines([encode_line(cid, cmd) for cid, cmd in batch])
        return batch[-1][0]

    def send_exit(self) -> bool:
        if not self.executor_running():
            logger.info("executor not running, nothing to stop")
            return False
        self.write_lines([encode_line(EXIT_ID, EXIT_COMMAND)])
        return True


class MemoryCommandChannel(CommandChannel):
    """In-process stand-in for the pipe; records what would be written."""

    def __init__(self, running: bool = False):
        self.running = running
        self.starts = 0
        self.lines: List[str] = []

    def executor_running(self) -> bool:
        return self.running

    def start_executor(self) -> None:
        self.starts += 1
        self.running = True

    def write_lines(self, lines: List[str]) -> None:
        if not self.running:
            raise ExecutorStartError("executor is not running")
        for line in lines:
            self.lines.append(line)
            if decode_line(line) == (EXIT_ID, EXIT_COMMAND):
                self.running = False

    @property
    def sent(self) -> List[Tuple[int, str]]:
        return [decode_line(line) for line in self.lines]


class PipeCommandChannel(CommandChannel):
    def __init__(
        self,
        pipe_path: str,
        results_path: str,
        timeout: float = 10,
        command_timeout: int = 600,
        log_path: Optional[str] = None,
    ):
        self.pipe_path = pipe_path
        self.results_path = results_path
        self.timeout = timeout
        self.command_timeout = command_timeout
        self.log_path = log_path

    def _open_writer(self) -> Optional[int]:
        try:
            return os.open(self.pipe_path, os.O_WRONLY | os.O_NONBLOCK)
        except FileNotFoundError:
            return None
        except OSError as e:
            # FIFO exists but nobody is reading it
            if e.errno == errno.ENXIO:
                return None
            raise

    def executor_running(self) -> bool:
        fd = self._open_writer()
        if fd is None:
            return False
        os.close(fd)
        return True

    def executor_command(self) -> List[str]:
        return [
            sys.executable, "-m", "wibed_node.executor",
            "--pipe", self.pipe_path,
            "--results", self.results_path,
            "--timeout", str(self.command_timeout),
        ]

    def start_executor(self) -> None:
        os.makedirs(os.path.dirname(os.path.abspath(self.pipe_path)), exist_ok=True)
        logger.info("starting executor on %s", self.pipe_path)
        log = open(self.log_path, "ab") if self.log_path else subprocess.DEVNULL
        try:
            proc = subprocess.Popen(
                self.executor_command(),
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=log,
                start_new_session=True,
                close_fds=True,
            )
        except OSError as e:
            raise ExecutorStartError(f"cannot spawn executor: {e}") from e
        finally:
            if log is not subprocess.DEVNULL:
                log.close()
        deadline = time.monotonic() + self.timeout
        while time.monotonic() < deadline:
            if self.executor_running():
                return
            if proc.poll() is not None:
                raise ExecutorStartError(f"executor exited with status {proc.returncode}")
            time.sleep(0.1)
        raise ExecutorStartError(f"pipe {self.pipe_path} not ready after {self.timeout}s")

    def write_lines(self, lines: List[str]) -> None:
        fd = self._open_writer()
        if fd is None:
            raise ExecutorStartError(f"no executor reading {self.pipe_path}")
        data = "".join(lines).encode("utf-8")
        deadline = time.monotonic() + self.timeout
        try:
            while data:
                try:
                    written = os.write(fd, data)
                except BlockingIOError:
                    # pipe buffer full behind a long-running command
                    if time.monotonic() >= deadline:
                        raise ExecutorStartError(f"executor not draining {self.pipe_path} after {self.timeout}s")
                    time.sleep(0.05)
                    continue
                data = data[written:]
        except BrokenPipeError as e:
            raise ExecutorStartError(f"executor closed {self.pipe_path}") from e
        finally:
            os.close(fd)

    def send_exit(self) -> bool:
        if not super().send_exit():
            return False
        # the executor finishes its current command before reading exit; later
        # dispatches must go to a fresh executor instead of queueing behind it
        try:
            os.unlink(self.pipe_path)
        except FileNotFoundError:
            pass
        return True
