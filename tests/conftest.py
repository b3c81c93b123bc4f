"""Shared fixtures: a node rooted in tmp_path with a file config store."""

import json

import httpx
import pytest

from wibed_node.channel import MemoryCommandChannel
from wibed_node.config import AgentSettings
from wibed_node.store.config_store import FileConfigStore
from wibed_node.store.results import ResultStore
from wibed_node.schemas.protocol import ResultRecord


API_URL = "http://controller.test"
NODE_ID = "node-7"


@pytest.fixture
def settings(tmp_path) -> AgentSettings:
    return AgentSettings(base_dir=str(tmp_path), config_backend="file", pipe_timeout=2)


@pytest.fixture
def store(settings) -> FileConfigStore:
    s = FileConfigStore(settings.state_path)
    s.set("general.api_url", API_URL)
    s.set("general.node_id", NODE_ID)
    return s


@pytest.fixture
def results(settings) -> ResultStore:
    return ResultStore(settings.results_path)


@pytest.fixture
def channel() -> MemoryCommandChannel:
    return MemoryCommandChannel()


@pytest.fixture
def add_result(results):
    def _add(command_id: int, exit_code: int = 0, stdout: str = "", stderr: str = "") -> None:
        results.write(ResultRecord(id=command_id, exit_code=exit_code, stdout=stdout, stderr=stderr))

    return _add


class FakeController:
    """Records requests and answers them like the WiBed controller would."""

    def __init__(self, body=None, status_code: int = 200, files=None):
        self.body = {} if body is None else body
        self.status_code = status_code
        self.files = files or {}
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            path = request.url.path
            if path in self.files:
                return httpx.Response(200, content=self.files[path])
            return httpx.Response(404)
        self.requests.append(request)
        if isinstance(self.body, (bytes, str)):
            return httpx.Response(self.status_code, content=self.body)
        return httpx.Response(self.status_code, json=self.body)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    @property
    def reports(self):
        return [json.loads(r.content) for r in self.requests]


@pytest.fixture
def controller() -> FakeController:
    return FakeController()
