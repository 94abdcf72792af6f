"""Lifecycle wrapper binding a gateway app to a listening socket."""

from __future__ import annotations

import asyncio
import socket
from enum import Enum

import uvicorn
from loguru import logger

from gateway.core.config import GatewayConfig
from gateway.core.db import GatewayStore
from gateway.core.handler import Handler
from gateway.core.pipeline import AdmissionPipeline, Clock
from gateway.main import create_app

STARTUP_POLL_INTERVAL = 0.01
GRACEFUL_SHUTDOWN_TIMEOUT = 5


class ServerState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    LISTENING = "listening"
    STOPPING = "stopping"


def _bind_socket(host: str, port: int) -> socket.socket:
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family=family, type=socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
    except OSError:
        sock.close()
        raise
    sock.set_inheritable(True)
    return sock


# Wildcard binds are reached through loopback.
WILDCARD_HOSTS = {"0.0.0.0": "127.0.0.1", "": "127.0.0.1", "::": "::1"}


def dial_host(host: str) -> str:
    """Return *host* as it appears in a URL clients can connect to."""

    host = WILDCARD_HOSTS.get(host, host)
    return f"[{host}]" if ":" in host else host


class GatewayServer:
    """One gateway instance: its app, its store and its socket.

    ``Stopped -> Starting -> Listening -> Stopping -> Stopped``. Instances share
    no module state, so several can run side by side in one process.
    """

    def __init__(
        self,
        config: GatewayConfig,
        handler: Handler,
        *,
        clock: Clock | None = None,
        title: str = "Gateway",
    ) -> None:
        self.config = config
        self.app = create_app(config, handler, clock=clock, title=title)
        self.state = ServerState.STOPPED
        self.base_url: str | None = None
        self._server: uvicorn.Server | None = None
        self._serve_task: asyncio.Task[None] | None = None
        self._socket: socket.socket | None = None

    @property
    def pipeline(self) -> AdmissionPipeline:
        return self.app.state.pipeline

    @property
    def store(self) -> GatewayStore:
        return self.pipeline.store

    async def start(self) -> str:
        """Open the store, bind the socket and serve; return the base URL."""

        if self.state != ServerState.STOPPED:
            raise RuntimeError(f"cannot start gateway server while {self.state.value}")
        self.state = ServerState.STARTING
        try:
            await self.store.open()
            self._socket = _bind_socket(self.config.host, self.config.port)
            uv_config = uvicorn.Config(
                self.app,
                lifespan="off",
                log_config=None,
                access_log=False,
                # Forwarded headers are honoured only via GatewayConfig.trust_proxy.
                proxy_headers=False,
                timeout_graceful_shutdown=GRACEFUL_SHUTDOWN_TIMEOUT,
            )
            self._server = uvicorn.Server(uv_config)
            self._serve_task = asyncio.create_task(self._server.serve(sockets=[self._socket]))
            while not self._server.started:
                if self._serve_task.done():
                    self._serve_task.result()
                    raise RuntimeError("gateway server exited during startup")
                await asyncio.sleep(STARTUP_POLL_INTERVAL)
        except BaseException:
            logger.bind(host=self.config.host, port=self.config.port).exception("gateway_start_failed")
            await self._teardown()
            raise

        port = self._socket.getsockname()[1]
        self.base_url = f"http://{dial_host(self.config.host)}:{port}"
        self.state = ServerState.LISTENING
        logger.bind(base_url=self.base_url, store=self.config.store_path).info("gateway_listening")
        return self.base_url

    async def stop(self) -> None:
        """Release the socket and close the store. A no-op unless listening."""

        if self.state != ServerState.LISTENING:
            logger.bind(state=self.state.value).debug("gateway_stop_ignored")
            return
        self.state = ServerState.STOPPING
        await self._teardown()
        logger.info("gateway_stopped")

    async def wait(self) -> None:
        """Block until the underlying uvicorn server exits."""

        if self._serve_task is not None and not self._serve_task.done():
            await asyncio.shield(self._serve_task)

    async def _teardown(self) -> None:
        try:
            if self._server is not None:
                self._server.should_exit = True
            if self._serve_task is not None and not self._serve_task.done():
                await self._serve_task
        finally:
            if self._socket is not None:
                self._socket.close()
            await self.store.close()
            self._server = None
            self._serve_task = None
            self._socket = None
            self.base_url = None
            self.state = ServerState.STOPPED
