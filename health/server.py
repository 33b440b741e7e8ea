import asyncio
import contextlib
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from common.contracts import Datastore
from common.errors import describe
from common.logger import get_logger


class BrokerConnection(Protocol):
    @property
    def is_connected(self) -> bool:
        ...


class HealthServer:
    """Liveness endpoint served from inside the worker process."""

    def __init__(
            self,
            broker: BrokerConnection,
            datastore: Datastore,
            host: str = "0.0.0.0",
            port: int = 3001,
    ) -> None:
        self._logger = get_logger(__name__)
        self._broker = broker
        self._datastore = datastore
        self._host = host
        self._port = port

        self._server: Optional[uvicorn.Server] = None
        self._task: Optional[asyncio.Task] = None

        self.app = FastAPI(title="Pipeline worker health")
        self.register_routes()

    async def check(self) -> Dict[str, str]:
        checks: Dict[str, str] = {}
        errors: List[str] = []

        if self._broker.is_connected:
            checks["broker"] = "connected"
        else:
            checks["broker"] = "disconnected"
            errors.append("Message broker connection is closed")

        try:
            await self._datastore.ping()
        except Exception as e:
            checks["datastore"] = "disconnected"
            errors.append(describe(e))
        else:
            checks["datastore"] = "connected"

        if errors:
            raise _CheckFailed("; ".join(errors), checks)
        return checks

    def register_routes(self) -> None:
        @self.app.get(
            "/health",
            summary="Broker and datastore connectivity",
            tags=["health"],
        )
        async def health() -> JSONResponse:
            timestamp = datetime.now(timezone.utc).isoformat()
            try:
                checks = await self.check()
            except _CheckFailed as e:
                self._logger.warning("Health check failed: %s", e.error)
                return JSONResponse(
                    status_code=503,
                    content={
                        "status": "unhealthy",
                        "timestamp": timestamp,
                        "error": e.error,
                        "checks": e.checks,
                    },
                )

            return JSONResponse(
                status_code=200,
                content={"status": "healthy", "timestamp": timestamp, "checks": checks},
            )

    async def start(self) -> None:
        config = uvicorn.Config(
            self.app,
            host=self._host,
            port=self._port,
            log_config=None,
            access_log=False,
        )
        self._server = _EmbeddedServer(config)
        self._task = asyncio.create_task(self._server.serve())
        self._logger.info("Health server listening on %s:%d", self._host, self._port)

    async def stop(self) -> None:
        if self._server is not None:
            self._server.should_exit = True
        if self._task is not None:
            await self._task
        self._server = None
        self._task = None


class _CheckFailed(Exception):
    def __init__(self, error: str, checks: Dict[str, str]) -> None:
        super().__init__(error)
        self.error = error
        self.checks = dict(checks)


class _EmbeddedServer(uvicorn.Server):
    # signals belong to the worker entrypoint, not to uvicorn

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield
