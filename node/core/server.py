"""Server under test: a small FastAPI pipeline served over HTTP/1 or HTTP/2."""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse, Response
from pydantic import BaseModel, Field
from starlette.middleware.gzip import GZipMiddleware

from common.histogram import HistogramLogWriter
from common.models.params import Protocol

logger = logging.getLogger(__name__)


class PipelineVariant(str, Enum):
    """Building blocks of the request handling pipeline."""
    PLAIN = "plain"
    GZIP = "gzip"
    DELAYED_UNTIL_CONTENT = "delayed_until_content"
    SERVLET_DISPATCH = "servlet_dispatch"


class PipelineDescriptor(BaseModel):
    """What the server should look like."""
    variants: list[PipelineVariant] = Field(default_factory=lambda: [PipelineVariant.PLAIN])
    body: str = Field(default="Hi there!", description="Response body of the target resource")
    blocking: bool = Field(default=False, description="Serve from a worker thread instead of the loop")


class LatencyRecorder:
    """ASGI middleware recording request handling time in microseconds.
    
    Nothing is recorded until a histogram log is attached.
    """
    
    def __init__(self, app):
        self.app = app
        self.writer: Optional[HistogramLogWriter] = None
    
    def attach(self, writer: HistogramLogWriter) -> None:
        self.writer = writer
    
    def detach(self) -> Optional[HistogramLogWriter]:
        writer, self.writer = self.writer, None
        return writer
    
    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return
        began = time.perf_counter()
        try:
            await self.app(scope, receive, send)
        finally:
            if self.writer is not None:
                self.writer.record((time.perf_counter() - began) * 1_000_000)


class DelayedUntilContent:
    """ASGI middleware deferring dispatch until the whole request body arrived."""
    
    def __init__(self, app):
        self.app = app
    
    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return
        
        messages = []
        while True:
            message = await receive()
            messages.append(message)
            if message["type"] != "http.request" or not message.get("more_body", False):
                break
        
        async def replay():
            if messages:
                return messages.pop(0)
            return await receive()
        
        await self.app(scope, replay, send)


def _target_app(descriptor: PipelineDescriptor) -> FastAPI:
    app = FastAPI(openapi_url=None, docs_url=None, redoc_url=None)
    body = descriptor.body
    
    if descriptor.blocking:
        @app.get("/{path:path}")
        def serve_blocking(path: str = "") -> Response:
            return PlainTextResponse(body)
    else:
        @app.get("/{path:path}")
        async def serve(path: str = "") -> Response:
            return PlainTextResponse(body)
    
    return app


def _always_404_app() -> FastAPI:
    app = FastAPI(openapi_url=None, docs_url=None, redoc_url=None)
    
    @app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "DELETE"])
    async def not_found(path: str = "") -> Response:
        return PlainTextResponse("Not Found", status_code=404)
    
    return app


def build_app(descriptor: PipelineDescriptor) -> tuple[FastAPI, LatencyRecorder]:
    """Compose the pipeline; returns the ASGI app and its latency recorder."""
    variants = set(descriptor.variants)
    
    if PipelineVariant.SERVLET_DISPATCH in variants:
        app = FastAPI(openapi_url=None, docs_url=None, redoc_url=None)
        app.mount("/useless", _always_404_app())
        app.mount("/", _target_app(descriptor))
    else:
        app = _target_app(descriptor)
    
    if PipelineVariant.GZIP in variants:
        app.add_middleware(GZipMiddleware, minimum_size=0)
    if PipelineVariant.DELAYED_UNTIL_CONTENT in variants:
        app.add_middleware(DelayedUntilContent)
    
    recorder = LatencyRecorder(app)
    return app, recorder


async def ensure_self_signed_cert(directory: Path) -> tuple[Path, Path]:
    """Create a throwaway certificate with openssl unless one exists."""
    certfile = directory / "server.crt"
    keyfile = directory / "server.key"
    if certfile.exists() and keyfile.exists():
        return certfile, keyfile
    
    directory.mkdir(parents=True, exist_ok=True)
    cmd = [
        "openssl", "req", "-x509", "-newkey", "rsa:2048", "-nodes",
        "-keyout", str(keyfile), "-out", str(certfile),
        "-days", "2", "-subj", "/CN=localhost",
    ]
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    _, stderr = await proc.communicate()
    if proc.returncode != 0:
        raise RuntimeError(f"Certificate generation failed: {stderr.decode(errors='replace')}")
    return certfile, keyfile


async def wait_until_listening(host: str, port: int, timeout: float = 10.0) -> None:
    """Poll until a TCP connection to host:port succeeds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        try:
            _, writer = await asyncio.open_connection(host, port)
            writer.close()
            await writer.wait_closed()
            return
        except OSError:
            if loop.time() >= deadline:
                raise TimeoutError(f"Server did not start listening on {host}:{port} within {timeout}s")
            await asyncio.sleep(0.05)


class ServerHandle:
    """A running server: uvicorn for HTTP/1, hypercorn for HTTP/2."""
    
    def __init__(
        self,
        app,
        recorder: LatencyRecorder,
        protocol: Protocol = Protocol.HTTP,
        host: str = "0.0.0.0",
        port: Optional[int] = None,
        certfile: Optional[Path] = None,
        keyfile: Optional[Path] = None,
    ):
        self.app = app
        self.recorder = recorder
        self.protocol = protocol
        self.host = host
        self.port = port or protocol.default_port
        self.certfile = certfile
        self.keyfile = keyfile
        
        self._task: Optional[asyncio.Task] = None
        self._uvicorn: Optional[uvicorn.Server] = None
        self._shutdown: Optional[asyncio.Event] = None
    
    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()
    
    async def start(self, timeout: float = 10.0) -> None:
        if self.protocol.is_secure and not (self.certfile and self.keyfile):
            raise ValueError(f"Protocol {self.protocol.value} needs a certificate and key")
        
        if self.protocol.is_http2:
            self._task = asyncio.create_task(self._serve_hypercorn())
        else:
            config = uvicorn.Config(
                self.recorder,
                host=self.host,
                port=self.port,
                log_level="warning",
                lifespan="off",
                ssl_certfile=str(self.certfile) if self.certfile else None,
                ssl_keyfile=str(self.keyfile) if self.keyfile else None,
            )
            self._uvicorn = uvicorn.Server(config)
            self._task = asyncio.create_task(self._uvicorn.serve())
        
        probe_host = "127.0.0.1" if self.host == "0.0.0.0" else self.host
        try:
            await wait_until_listening(probe_host, self.port, timeout)
        except TimeoutError:
            await self.stop()
            raise
        if self._task.done():
            self._task.result()
        logger.info(f"Server started: {self.protocol.value} on {self.host}:{self.port}")
    
    async def _serve_hypercorn(self) -> None:
        from hypercorn.asyncio import serve
        from hypercorn.config import Config
        
        config = Config()
        config.bind = [f"{self.host}:{self.port}"]
        config.loglevel = "WARNING"
        if self.certfile and self.keyfile:
            config.certfile = str(self.certfile)
            config.keyfile = str(self.keyfile)
        self._shutdown = asyncio.Event()
        await serve(self.recorder, config, shutdown_trigger=self._shutdown.wait)
    
    async def stop(self, timeout: float = 30.0) -> None:
        """Stop accepting connections and wait for the server to wind down."""
        if self._task is None:
            return
        if self._uvicorn is not None:
            self._uvicorn.should_exit = True
        if self._shutdown is not None:
            self._shutdown.set()
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Server did not stop in time, cancelling")
            self._task.cancel()
        finally:
            self._task = None
        logger.info("Server stopped")
