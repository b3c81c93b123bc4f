import os
import sys
import threading
import time

import pytest

from wibed_node.channel import (
    MemoryCommandChannel,
    PipeCommandChannel,
    decode_line,
    encode_line,
    escape,
    unescape,
)
from wibed_node.errors import ExecutorStartError
from wibed_node.executor import serve
from wibed_node.store.results import ResultStore


posix_only = pytest.mark.skipif(not hasattr(os, "mkfifo"), reason="needs named pipes")


class TestWireFormat:
    def test_plain_line(self) -> None:
        assert encode_line(6, "ls /tmp") == "6 ls /tmp\n"
        assert decode_line("6 ls /tmp\n") == (6, "ls /tmp")

    def test_sentinel(self) -> None:
        assert encode_line(-1, "exit") == "-1 exit\n"

    @pytest.mark.parametrize(
        "command",
        ["echo a\nb", "printf 'x\\ny'", "a\\", "tr '\\r' x\r\n", "   spaced   out  "],
    )
    def test_escaping_keeps_one_line(self, command) -> None:
        line = encode_line(3, command)

        assert line.count("\n") == 1
        assert decode_line(line) == (3, command)

    def test_unknown_escapes_are_literal(self) -> None:
        assert unescape("a\\tb") == "a\\tb"
        assert escape("a\\tb") == "a\\\\tb"

    @pytest.mark.parametrize("line", ["", "12\n", "x ls\n"])
    def test_malformed(self, line) -> None:
        with pytest.raises(ValueError):
            decode_line(line)


class TestDispatch:
    def test_sends_new_commands_in_order(self, channel) -> None:
        ack = channel.dispatch({7: "echo hi", 6: "ls /tmp"}, 5)

        assert channel.lines == ["6 ls /tmp\n", "7 echo hi\n"]
        assert ack == 7
        assert channel.starts == 1

    def test_is_idempotent(self, channel) -> None:
        commands = {6: "ls /tmp", 7: "echo hi"}
        ack = channel.dispatch(commands, 5)
        ack = channel.dispatch(commands, ack)

        assert [cid for cid, _ in channel.sent] == [6, 7]
        assert ack == 7

    def test_only_newer_ids(self, channel) -> None:
        ack = channel.dispatch({3: "old", 8: "new", 5: "acked"}, 5)

        assert channel.sent == [(8, "new")]
        assert ack == 8

    def test_nothing_new_leaves_executor_alone(self, channel) -> None:
        assert channel.dispatch({1: "a", 2: "b"}, 2) == 2
        assert channel.dispatch({}, None) is None
        assert channel.starts == 0
        assert channel.lines == []

    def test_first_dispatch_without_ack(self, channel) -> None:
        assert channel.dispatch({0: "uname -a"}, None) == 0
        assert channel.sent == [(0, "uname -a")]

    def test_reserved_ids_are_never_sent(self, channel) -> None:
        assert channel.dispatch({-1: "exit", 2: "ok"}, None) == 2
        assert channel.sent == [(2, "ok")]

    def test_send_exit(self) -> None:
        channel = MemoryCommandChannel(running=True)

        assert channel.send_exit() is True
        assert channel.sent == [(-1, "exit")]
        assert channel.executor_running() is False
        assert channel.send_exit() is False


@posix_only
class TestPipeChannel:
    def wait_for(self, predicate, timeout: float = 10) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.05)
        return False

    def test_no_pipe_means_not_running(self, tmp_path) -> None:
        channel = PipeCommandChannel(str(tmp_path / "cmds"), str(tmp_path / "results"))

        assert channel.executor_running() is False
        assert channel.send_exit() is False

    def test_pipe_without_reader_means_not_running(self, tmp_path) -> None:
        os.mkfifo(tmp_path / "cmds")
        channel = PipeCommandChannel(str(tmp_path / "cmds"), str(tmp_path / "results"))

        assert channel.executor_running() is False
        with pytest.raises(ExecutorStartError):
            channel.write_lines(["1 true\n"])

    def test_executor_that_dies_is_reported(self, tmp_path) -> None:
        channel = PipeCommandChannel(str(tmp_path / "cmds"), str(tmp_path / "results"), timeout=5)
        channel.executor_command = lambda: [sys.executable, "-c", "pass"]

        with pytest.raises(ExecutorStartError):
            channel.ensure_executor_running()

    def test_bounded_wait_for_pipe(self, tmp_path) -> None:
        channel = PipeCommandChannel(str(tmp_path / "cmds"), str(tmp_path / "results"), timeout=0.3)
        channel.executor_command = lambda: [sys.executable, "-c", "import time; time.sleep(2)"]

        started = time.monotonic()
        with pytest.raises(ExecutorStartError):
            channel.ensure_executor_running()
        assert time.monotonic() - started < 2

    def test_round_trip_with_executor_thread(self, tmp_path) -> None:
        pipe = str(tmp_path / "pipes" / "cmds")
        results = ResultStore(str(tmp_path / "results"))
        worker = threading.Thread(target=serve, args=(pipe, results.root, 10), daemon=True)
        worker.start()
        channel = PipeCommandChannel(pipe, results.root)
        assert self.wait_for(channel.executor_running)

        ack = channel.dispatch({1: "echo one", 2: "echo two >&2; exit 3"}, None)

        assert ack == 2
        assert self.wait_for(lambda: len(results.list_pending(None)) == 2)
        first, second = results.list_pending(None)
        assert (first.exit_code, first.stdout) == (0, "one\n")
        assert (second.exit_code, second.stderr) == (3, "two\n")

        assert channel.send_exit() is True
        worker.join(10)
        assert not worker.is_alive()
        assert not os.path.exists(pipe)

    def test_spawns_detached_executor(self, tmp_path) -> None:
        results = ResultStore(str(tmp_path / "results"))
        channel = PipeCommandChannel(
            str(tmp_path / "pipes" / "cmds"),
            results.root,
            timeout=10,
            log_path=str(tmp_path / "executor.log"),
        )
        try:
            assert channel.dispatch({4: "echo spawned"}, 3) == 4
            assert self.wait_for(lambda: results.read(4) is not None)
            assert results.read(4).stdout == "spawned\n"
        finally:
            channel.send_exit()
        assert self.wait_for(lambda: not os.path.exists(channel.pipe_path))

    def test_dispatch_after_exit_reaches_a_fresh_executor(self, tmp_path) -> None:
        pipe = str(tmp_path / "pipes" / "cmds")
        results = ResultStore(str(tmp_path / "results"))
        workers = []
        wait_for = self.wait_for

        class ThreadedChannel(PipeCommandChannel):
            def start_executor(self) -> None:
                worker = threading.Thread(target=serve, args=(pipe, results.root, 10), daemon=True)
                worker.start()
                workers.append(worker)
                assert wait_for(self.executor_running)

        channel = ThreadedChannel(pipe, results.root)
        assert channel.dispatch({1: "sleep 1; echo first"}, None) == 1
        assert channel.send_exit() is True
        assert channel.executor_running() is False

        assert channel.dispatch({2: "echo second"}, 1) == 2

        assert len(workers) == 2
        assert self.wait_for(lambda: results.read(2) is not None)
        assert results.read(2).stdout == "second\n"
        workers[0].join(10)
        assert results.read(1).stdout == "first\n"
        # the old executor leaves the new executor's pipe in place
        assert os.path.exists(pipe)

        assert channel.send_exit() is True
        workers[1].join(10)
        assert not workers[1].is_alive()
        assert not os.path.exists(pipe)

    def test_write_to_stalled_executor_is_bounded(self, tmp_path) -> None:
        pipe = str(tmp_path / "cmds")
        os.mkfifo(pipe)
        # a reader that never drains the pipe
        reader = os.open(pipe, os.O_RDONLY | os.O_NONBLOCK)
        try:
            channel = PipeCommandChannel(pipe, str(tmp_path / "results"), timeout=0.3)

            started = time.monotonic()
            with pytest.raises(ExecutorStartError, match="not draining"):
                channel.write_lines(["1 " + "x" * 200000 + "\n"])
            assert time.monotonic() - started < 5
        finally:
            os.close(reader)
