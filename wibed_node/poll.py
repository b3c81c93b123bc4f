import json
import logging
from typing import Optional
import httpx
from pydantic import ValidationError
from .errors import ResponseError, TransportError
from .schemas.protocol import ServerRequest, ServerResponse
from .state import NodeState, Status
from .store.results import ResultStore


logger = logging.getLogger(__name__)

REPORTS_RESULTS = (Status.IDLE, Status.RUNNING, Status.ERROR)


def build_request(state: NodeState, results: ResultStore) -> ServerRequest:
    request = ServerRequest(status=int(state.status))
    if state.status == Status.INIT:
        request.model = state.model or ""
        request.version = state.version or ""
    elif state.status in REPORTS_RESULTS and state.command_ack is not None:
        request.command_ack = state.command_ack
        request.results = results.list_pending(state.result_ack)
    return request


class PollCycle:
    def __init__(self, client: httpx.AsyncClient, api_url: str, node_id: str, timeout: float = 20):
        self.client = client
        self.url = api_url.rstrip("/") + f"/api/wibednode/{node_id}"
        self.timeout = timeout

    async def exchange(self, request: ServerRequest) -> ServerResponse:
        body = json.dumps(request.to_json(), separators=(",", ":")).encode("utf-8")
        logger.debug("request: %s", body.decode("utf-8"))
        try:
            r = await self.client.post(
                self.url,
                content=body,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise TransportError(f"POST {self.url} failed: {e}") from e
        if r.status_code != 200:
            raise TransportError(f"POST {self.url} returned {r.status_code}", status_code=r.status_code)
        logger.debug("response: %s", r.text)
        return parse_response(r.content)


def parse_response(raw: bytes) -> ServerResponse:
    try:
        response = ServerResponse.model_validate_json(raw)
    except ValidationError as e:
        raise ResponseError(f"invalid response: {e}") from e
    if response.errors:
        raise ResponseError("controller reported errors", errors={k: str(v) for k, v in response.errors.items()})
    return response


def summarize(response: ServerResponse) -> Optional[str]:
    parts = []
    if response.upgrade:
        parts.append(f"upgrade={response.upgrade.version}")
    if response.action:
        parts.append(f"action={response.action.value}")
    commands = response.all_commands()
    if commands:
        parts.append(f"commands={len(commands)}")
    return ", ".join(parts) or None
