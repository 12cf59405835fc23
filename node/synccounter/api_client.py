import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from pydantic import ValidationError

from .config import REQUEST_TIMEOUT, SERVER_URL
from .errors import NetworkError, RejectedError
from .models import Counter, IncrementGroup, parse_event

logger = logging.getLogger(__name__)


class CounterApi:
    """
    Thin async client for the counter server.
    Transport failures and 5xx raise NetworkError (retry later),
    4xx raise RejectedError (the payload itself is wrong).
    """

    def __init__(
        self,
        base_url: str = SERVER_URL,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = REQUEST_TIMEOUT,
    ):
        self.timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise NetworkError(f"{method} {path}: {e!r}") from e

        if resp.status_code >= 500:
            raise NetworkError(f"{method} {path}: server answered {resp.status_code}")
        if resp.status_code >= 400:
            raise RejectedError(resp.status_code, resp.text)
        try:
            return resp.json()
        except ValueError as e:
            raise NetworkError(f"{method} {path}: unreadable response") from e

    @staticmethod
    def _counter(body: Dict[str, Any]) -> Counter:
        try:
            return Counter.model_validate(body["counter"])
        except (KeyError, ValidationError) as e:
            raise NetworkError(f"malformed counter payload: {e}") from e

    async def list_counters(self) -> List[Counter]:
        body = await self._request("GET", "/counters")
        try:
            return [Counter.model_validate(c) for c in body.get("counters", [])]
        except ValidationError as e:
            raise NetworkError(f"malformed counter list: {e}") from e

    async def create_counter(self, data: Dict[str, Any]) -> Counter:
        return self._counter(await self._request("POST", "/counters", json=data))

    async def update_counter(self, counter_id: str, data: Dict[str, Any]) -> Counter:
        return self._counter(await self._request("PUT", f"/counters/{counter_id}", json=data))

    async def delete_counter(self, counter_id: str) -> bool:
        body = await self._request("DELETE", f"/counters/{counter_id}")
        return bool(body.get("deleted"))

    async def increment(self, counter_id: str, acting_user: Optional[str], day_key: Optional[str]) -> Counter:
        payload = {"actingUser": acting_user, "dayKey": day_key}
        return self._counter(await self._request("POST", f"/counters/{counter_id}/increment", json=payload))

    async def increment_batch(self, counter_id: str, groups: List[IncrementGroup]) -> Counter:
        payload = {"increments": [g.to_wire() for g in groups]}
        return self._counter(
            await self._request("POST", f"/counters/{counter_id}/increment-batch", json=payload)
        )

    async def decrement(self, counter_id: str) -> Counter:
        return self._counter(await self._request("POST", f"/counters/{counter_id}/decrement"))

    async def stream_events(self) -> AsyncIterator[Any]:
        """
        Open GET /sync and yield parsed events until the server closes it.
        Lines that do not parse are logged and skipped.
        """
        timeout = httpx.Timeout(self.timeout, read=None)
        try:
            async with self._client.stream("GET", "/sync", timeout=timeout) as resp:
                if resp.status_code >= 400:
                    raise NetworkError(f"GET /sync: server answered {resp.status_code}")
                async for line in resp.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        yield parse_event(line)
                    except ValidationError as e:
                        logger.error("Error parsing sync event %r: %s", line, e)
        except httpx.HTTPError as e:
            raise NetworkError(f"GET /sync: {e!r}") from e
