"""Backend archive-node clients.

Every configured node is wrapped in one long-lived client that all proxy
sessions share.  ``WebSocketBackend`` multiplexes concurrent calls over a
single socket and correlates replies by request id; ``HttpBackend`` posts
each call through a pooled ``httpx.AsyncClient``.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Any, Optional, Protocol, Union

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from rpc import BACKEND_ERROR, ProxyError

LOG = logging.getLogger("archive-proxy.backends")


# ── Exceptions ────────────────────────────────────────────────────────────────────


class BackendCallError(ProxyError):
    """A forwarded call failed at the backend or on the way to it."""

    code = BACKEND_ERROR


class BackendConnectionError(BackendCallError):
    """The backend could not be reached or the connection dropped."""


class BackendRpcError(BackendCallError):
    """The backend answered with a JSON-RPC error object."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(message, data)
        self.code = code


def rpc_error(error: Any) -> BackendRpcError:
    """Build a BackendRpcError from a JSON-RPC ``error`` member."""
    if isinstance(error, dict):
        try:
            code = int(error.get("code", BACKEND_ERROR))
        except (TypeError, ValueError):
            code = BACKEND_ERROR
        return BackendRpcError(code, str(error.get("message", "backend error")), error.get("data"))
    return BackendRpcError(BACKEND_ERROR, str(error))


def _hex_quantity(value: Any, what: str) -> int:
    if not isinstance(value, str) or not value.startswith("0x"):
        raise BackendCallError(f"Unexpected {what} result: {value!r}")
    try:
        return int(value, 16)
    except ValueError as e:
        raise BackendCallError(f"Unexpected {what} result: {value!r}") from e


# ── Probe protocol ────────────────────────────────────────────────────────────────


class BackendProbe(Protocol):
    """Contract shared by all backend clients."""

    url: str

    async def block_number(self) -> int:
        """Return the backend's current chain head height."""

    async def get_balance(self, address: str, height: Optional[int] = None) -> int:
        """Return the balance of ``address`` at ``height`` (latest when None)."""

    async def send(self, method: str, params: list[Any]) -> Any:
        """Forward one call verbatim and return its ``result``."""

    async def close(self) -> None:
        """Release the underlying connection."""


class _ProbeMixin:
    """Typed queries built on top of ``send``."""

    async def block_number(self) -> int:
        return _hex_quantity(await self.send("eth_blockNumber", []), "eth_blockNumber")

    async def get_balance(self, address: str, height: Optional[int] = None) -> int:
        tag = "latest" if height is None else hex(height)
        return _hex_quantity(await self.send("eth_getBalance", [address, tag]), "eth_getBalance")


# ── WebSocket backend ─────────────────────────────────────────────────────────────


class WebSocketBackend(_ProbeMixin):
    """JSON-RPC over one shared WebSocket connection."""

    def __init__(self, url: str, max_size: Optional[int] = None) -> None:
        self.url = url
        self._max_size = max_size
        self._conn = None
        self._reader: Optional[asyncio.Task] = None
        self._pending: dict[int, asyncio.Future] = {}
        self._ids = itertools.count(1)
        self._closed_reason: Optional[str] = None

    async def connect(self) -> "WebSocketBackend":
        try:
            self._conn = await websockets.connect(self.url, max_size=self._max_size)
        except (OSError, TimeoutError, WebSocketException) as e:
            raise BackendConnectionError(f"{self.url}: connect failed: {e}") from e
        self._reader = asyncio.create_task(self._read_loop())
        LOG.info("Connected to backend %s", self.url)
        return self

    async def _read_loop(self) -> None:
        try:
            async for raw in self._conn:
                self._dispatch(raw)
            self._closed_reason = "connection closed"
        except ConnectionClosed as e:
            self._closed_reason = f"connection closed: {e}"
        finally:
            reason = self._closed_reason or "connection closed"
            LOG.warning("Backend %s %s; failing %d pending call(s)", self.url, reason, len(self._pending))
            for fut in self._pending.values():
                if not fut.done():
                    fut.set_exception(BackendConnectionError(f"{self.url}: {reason}"))
            self._pending.clear()

    def _dispatch(self, raw: Union[str, bytes]) -> None:
        try:
            msg = json.loads(raw)
        except ValueError:
            LOG.warning("Backend %s sent a non-JSON frame, ignored", self.url)
            return
        if not isinstance(msg, dict):
            LOG.warning("Backend %s sent an unexpected frame, ignored", self.url)
            return
        rid = msg.get("id")
        fut = self._pending.pop(rid, None) if isinstance(rid, int) else None
        if fut is None:
            # Subscription notifications and replies to abandoned calls.
            LOG.debug("Backend %s: uncorrelated frame ignored", self.url)
            return
        if fut.done():
            return
        if "error" in msg:
            fut.set_exception(rpc_error(msg["error"]))
        else:
            fut.set_result(msg.get("result"))

    async def send(self, method: str, params: list[Any]) -> Any:
        if self._conn is None or self._closed_reason is not None:
            raise BackendConnectionError(f"{self.url}: {self._closed_reason or 'not connected'}")
        req_id = next(self._ids)
        fut = asyncio.get_running_loop().create_future()
        self._pending[req_id] = fut
        payload = {"jsonrpc": "2.0", "id": req_id, "method": method, "params": params}
        try:
            await self._conn.send(json.dumps(payload))
        except ConnectionClosed as e:
            self._pending.pop(req_id, None)
            raise BackendConnectionError(f"{self.url}: send failed: {e}") from e
        return await fut

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
        if self._reader is not None:
            await asyncio.gather(self._reader, return_exceptions=True)


# ── HTTP backend ──────────────────────────────────────────────────────────────────


class HttpBackend(_ProbeMixin):
    """JSON-RPC over HTTP POST."""

    def __init__(
        self,
        url: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self._ids = itertools.count(1)
        self._client = httpx.AsyncClient(
            http2=True,
            timeout=None,
            transport=transport,
            limits=httpx.Limits(max_connections=500, max_keepalive_connections=100),
        )

    async def connect(self) -> "HttpBackend":
        return self

    async def send(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            r = await self._client.post(self.url, json=payload)
            r.raise_for_status()
            data = r.json()
        except httpx.HTTPError as e:
            raise BackendConnectionError(f"{self.url}: {e}") from e
        except ValueError as e:
            raise BackendConnectionError(f"{self.url}: invalid JSON response") from e
        if not isinstance(data, dict):
            raise BackendConnectionError(f"{self.url}: unexpected response shape")
        if "error" in data:
            raise rpc_error(data["error"])
        return data.get("result")

    async def close(self) -> None:
        if not self._client.is_closed:
            await self._client.aclose()


# ── Factory ───────────────────────────────────────────────────────────────────────


async def open_backend(url: str, max_size: Optional[int] = None) -> BackendProbe:
    """Open a backend client for ``url``, chosen by scheme."""
    scheme = url.split("://", 1)[0].lower() if "://" in url else ""
    if scheme in ("ws", "wss"):
        return await WebSocketBackend(url, max_size=max_size).connect()
    if scheme in ("http", "https"):
        return await HttpBackend(url).connect()
    raise ValueError(f"Unsupported backend URL (expected ws://, wss://, http:// or https://): {url}")
