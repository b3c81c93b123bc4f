import logging
import os
import stat
import subprocess
from typing import Iterable, Union
import click
from .channel import EXIT_COMMAND, EXIT_ID, decode_line
from .schemas.protocol import ResultRecord
from .store.results import ResultStore


logger = logging.getLogger(__name__)


def _text(data: Union[bytes, str, None]) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


def run_command(command_id: int, command: str, timeout: int = 600) -> ResultRecord:
    try:
        p = subprocess.run(command, shell=True, capture_output=True, timeout=timeout)
        return ResultRecord(id=command_id, exit_code=p.returncode, stdout=_text(p.stdout), stderr=_text(p.stderr))
    except subprocess.TimeoutExpired as e:
        return ResultRecord(
            id=command_id,
            exit_code=-1,
            stdout=_text(e.stdout),
            stderr=_text(e.stderr) + f"TIMEOUT after {timeout}s\n",
        )
    except OSError as e:
        return ResultRecord(id=command_id, exit_code=-1, stderr=f"cannot run command: {e}\n")


def process(lines: Iterable[str], store: ResultStore, timeout: int = 600) -> bool:
    # True once the exit sentinel is seen
    for line in lines:
        if not line.strip():
            continue
        try:
            command_id, command = decode_line(line)
        except ValueError:
            logger.warning("ignoring malformed line %r", line)
            continue
        if command_id == EXIT_ID and command == EXIT_COMMAND:
            logger.info("exit requested")
            return True
        if store.read(command_id) is not None:
            logger.info("command %s already has a result, skipping", command_id)
            continue
        logger.info("running command %s: %s", command_id, command)
        result = run_command(command_id, command, timeout)
        store.write(result)
        logger.info("command %s finished with exit code %s", command_id, result.exit_code)
    return False


def make_pipe(pipe_path: str) -> None:
    if os.path.exists(pipe_path):
        if not stat.S_ISFIFO(os.stat(pipe_path).st_mode):
            raise click.ClickException(f"{pipe_path} exists and is not a FIFO")
        return
    os.makedirs(os.path.dirname(os.path.abspath(pipe_path)), exist_ok=True)
    os.mkfifo(pipe_path, 0o600)


def serve(pipe_path: str, results_path: str, timeout: int = 600) -> None:
    make_pipe(pipe_path)
    store = ResultStore(results_path)
    # O_RDWR keeps a writer open so the read side never sees EOF between dispatches
    fd = os.open(pipe_path, os.O_RDWR)
    opened = os.fstat(fd)
    try:
        with os.fdopen(fd, "r", encoding="utf-8", errors="replace") as f:
            process(f, store, timeout)
    finally:
        # the agent retires the pipe when it sends exit; a newer executor may own the path now
        try:
            current = os.stat(pipe_path)
            if (current.st_dev, current.st_ino) == (opened.st_dev, opened.st_ino):
                os.unlink(pipe_path)
        except FileNotFoundError:
            pass


@click.command()
@click.option("--pipe", "pipe_path", required=True, help="Commands FIFO to read from")
@click.option("--results", "results_path", required=True, help="Directory for command results")
@click.option("--timeout", default=600, type=int, show_default=True, help="Per-command time limit in seconds")
@click.option("--log-level", default="INFO", show_default=True)
def main(pipe_path, results_path, timeout, log_level):
    """Run commands received on the WiBed commands pipe."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info("executor listening on %s", pipe_path)
    serve(pipe_path, results_path, timeout)


if __name__ == "__main__":
    main()
