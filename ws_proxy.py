"""
WebSocket JSON-RPC proxy over partial-history archive nodes.
Client → WebSocket → this server → backend holding the requested block height.

At startup every backend is bisected for the block range it still serves,
then calls carrying a block tag are routed to the backend whose range holds
that height; everything else goes to the most up-to-date backend.

    python ws_proxy.py ws://127.0.0.1:1234 ws://127.0.0.1:1235
"""
from __future__ import annotations

__version__ = "1.0.0"

import asyncio
import contextlib
import json
import logging
import signal
import sys
from typing import Any, Iterator, Optional, Sequence, Union

import uvicorn
import websockets
from websockets.exceptions import ConnectionClosed

from backends import BackendCallError, BackendProbe, open_backend
from routing import DiscoveryError, RoutingTable, discover_windows
from rpc import (
    INTERNAL_ERROR,
    MalformedRequest,
    ProxyError,
    RpcRequest,
    decode_payload,
    error_from_exception,
    error_response,
    height_selector,
    parse_request,
    request_id_of,
    result_response,
)
from settings import CHAIN_ID, PING_INTERVAL_SECONDS, ProxySettings, configure_logging, load_settings
from status_api import create_status_app

LOG = logging.getLogger("archive-proxy")


# ── Client sessions ───────────────────────────────────────────────────────────────


class ClientSession:
    """One accepted client connection and its liveness flag."""

    def __init__(self, connection: Any) -> None:
        self.connection = connection
        self.alive = True
        self.remote = getattr(connection, "remote_address", None)

    def on_pong(self, pong_waiter: asyncio.Future) -> None:
        if pong_waiter.cancelled() or pong_waiter.exception() is not None:
            return
        self.alive = True

    def terminate(self) -> None:
        """Drop the connection without a closing handshake."""
        self.connection.transport.abort()


class SessionRegistry:
    def __init__(self) -> None:
        self._sessions: set[ClientSession] = set()

    def add(self, session: ClientSession) -> None:
        self._sessions.add(session)

    def discard(self, session: ClientSession) -> None:
        self._sessions.discard(session)

    def __contains__(self, session: ClientSession) -> bool:
        return session in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[ClientSession]:
        # Snapshot, sessions come and go while callers iterate.
        return iter(list(self._sessions))


# ── Request handling ──────────────────────────────────────────────────────────────


class ProxyHandler:
    """Turns one inbound frame into exactly one reply frame."""

    def __init__(self, table: RoutingTable, chain_id: str = CHAIN_ID) -> None:
        self.table = table
        self.chain_id = chain_id

    async def handle_request(self, request: RpcRequest) -> Any:
        """Answer or forward a validated request and return its result."""
        if request.method == "eth_chainId":
            return self.chain_id
        height = height_selector(request)
        backend = self.table.route(height)
        LOG.debug("[%s] %s height=%s -> %s", request.id, request.method, height, getattr(backend, "url", backend))
        return await backend.send(request.method, list(request.params))

    async def dispatch(self, payload: Any) -> dict[str, Any]:
        rid = request_id_of(payload)
        try:
            request = parse_request(payload)
            result = await self.handle_request(request)
        except ProxyError as e:
            LOG.warning("[%s] %s: %s", rid, type(e).__name__, e.detail)
            return error_from_exception(rid, e)
        except Exception:
            LOG.exception("[%s] unexpected error", rid)
            return error_response(rid, INTERNAL_ERROR, "Internal error")
        return result_response(request.id, result)

    async def handle_raw(self, raw: Union[str, bytes]) -> str:
        try:
            payload = decode_payload(raw)
        except MalformedRequest as e:
            LOG.warning("Unparseable request: %s", e.detail)
            return json.dumps(error_from_exception(None, e))
        if isinstance(payload, list):
            if not payload:
                reply: Any = error_from_exception(None, MalformedRequest("Empty batch"))
            else:
                reply = list(await asyncio.gather(*(self.dispatch(p) for p in payload)))
        else:
            reply = await self.dispatch(payload)
        return json.dumps(reply)


# ── Liveness ──────────────────────────────────────────────────────────────────────


class LivenessSupervisor:
    """Pings every session each interval; a session that missed the previous ping is dropped."""

    def __init__(self, registry: SessionRegistry, interval: float = PING_INTERVAL_SECONDS) -> None:
        self.registry = registry
        self.interval = interval

    async def tick(self) -> None:
        for session in self.registry:
            if not session.alive:
                LOG.info("Terminating unresponsive client %s", session.remote)
                session.terminate()
                self.registry.discard(session)
                continue
            session.alive = False
            try:
                pong_waiter = await session.connection.ping()
            except ConnectionClosed:
                self.registry.discard(session)
                continue
            pong_waiter.add_done_callback(session.on_pong)

    async def run(self) -> None:
        # TODO: spread pings over the interval so large client counts do not pong in one burst.
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.tick()
            except Exception:
                LOG.exception("Liveness tick failed")


# ── Server ────────────────────────────────────────────────────────────────────────


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the proxy."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class ArchiveProxy:
    def __init__(self, settings: ProxySettings, table: RoutingTable) -> None:
        self.settings = settings
        self.table = table
        self.registry = SessionRegistry()
        self.handler = ProxyHandler(table, settings.chain_id)
        self.supervisor = LivenessSupervisor(self.registry, settings.ping_interval_seconds)
        self.ready = asyncio.Event()
        self.port: Optional[int] = None
        self._tasks: set[asyncio.Task] = set()
        self._total_connections = 0
        self._total_requests = 0

    async def _respond(self, session: ClientSession, raw: Union[str, bytes]) -> None:
        reply = await self.handler.handle_raw(raw)
        try:
            await session.connection.send(reply)
        except ConnectionClosed:
            LOG.debug("Client %s gone, response discarded", session.remote)

    async def handle_connection(self, ws: Any) -> None:
        """Serve one client connection. Each frame is handled in its own task."""
        session = ClientSession(ws)
        self.registry.add(session)
        self._total_connections += 1
        LOG.info("Client connected: %s (active=%d)", session.remote, len(self.registry))
        try:
            async for raw in ws:
                self._total_requests += 1
                # In-flight calls outlive the connection; their replies are dropped.
                task = asyncio.create_task(self._respond(session, raw))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        except ConnectionClosed:
            pass
        finally:
            self.registry.discard(session)
            LOG.info("Client disconnected: %s (active=%d)", session.remote, len(self.registry))

    async def serve(self, stop: asyncio.Event) -> None:
        cfg = self.settings
        async with websockets.serve(
            self.handle_connection,
            cfg.listen_host,
            cfg.listen_port,
            max_size=cfg.max_message_bytes,
            ping_interval=None,
        ) as server:
            self.port = server.sockets[0].getsockname()[1]
            supervisor = asyncio.create_task(self.supervisor.run())
            status: Optional[_EmbeddedServer] = None
            status_task: Optional[asyncio.Task] = None
            if cfg.status_port:
                app = create_status_app(self.table, self.registry, __version__)
                status = _EmbeddedServer(uvicorn.Config(
                    app,
                    host=cfg.listen_host,
                    port=cfg.status_port,
                    log_level=cfg.log_level.lower(),
                    lifespan="off",
                ))
                status_task = asyncio.create_task(status.serve())
            LOG.info("Archive proxy v%s ready on %s:%s (%d backends)", __version__, cfg.listen_host, self.port, len(self.table))
            self.ready.set()
            try:
                await stop.wait()
            finally:
                LOG.info("Shutting down gracefully...")
                supervisor.cancel()
                if status is not None:
                    status.should_exit = True
                await asyncio.gather(supervisor, *(t for t in (status_task,) if t), return_exceptions=True)
                server.close()
        LOG.info("Shutdown complete. Total connections: %d, requests: %d", self._total_connections, self._total_requests)


# ── Startup ───────────────────────────────────────────────────────────────────────


async def close_backends(backends: Sequence[BackendProbe]) -> None:
    await asyncio.gather(*(b.close() for b in backends), return_exceptions=True)


async def open_backends(settings: ProxySettings) -> list[BackendProbe]:
    """Connect to every backend; if any fails the others are closed again."""
    results = await asyncio.gather(
        *(open_backend(url, settings.backend_max_message_bytes) for url in settings.endpoints),
        return_exceptions=True,
    )
    opened = [r for r in results if not isinstance(r, BaseException)]
    errors = [r for r in results if isinstance(r, BaseException)]
    if errors:
        await close_backends(opened)
        raise errors[0]
    return opened


async def run(settings: ProxySettings, stop: Optional[asyncio.Event] = None) -> int:
    """Discover, build the routing table and serve until ``stop`` is set."""
    try:
        backends = await open_backends(settings)
    except (BackendCallError, ValueError) as e:
        LOG.error("Startup aborted, backend unavailable: %s", e)
        return 1
    try:
        try:
            windows = await discover_windows(backends, settings.probe_address)
        except DiscoveryError as e:
            LOG.error("Startup aborted, block range discovery failed: %s", e)
            return 1
        table = RoutingTable(windows)
        for w in table.windows:
            LOG.info("Backend %s serves blocks [%d, %d]", w.url, w.start, w.end)
        for issue in table.coverage_issues():
            LOG.warning("Routing table %s", issue)

        if stop is None:
            stop = asyncio.Event()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                try:
                    loop.add_signal_handler(sig, stop.set)
                except NotImplementedError:
                    pass  # Windows doesn't support add_signal_handler
        await ArchiveProxy(settings, table).serve(stop)
        return 0
    finally:
        await close_backends(backends)


def main(argv: Optional[Sequence[str]] = None) -> int:
    settings = load_settings(argv)
    configure_logging(settings.log_level)
    return asyncio.run(run(settings))


if __name__ == "__main__":
    sys.exit(main())
