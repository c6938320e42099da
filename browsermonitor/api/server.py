"""FastAPI application and in-process server for the session control API.

The server runs on the session's own event loop so route handlers can call
the dispatcher directly. It is started after the session is attached and
stopped as one of the shutdown steps.
"""

import asyncio
import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from .. import __version__
from ..session.commands import CommandDispatcher
from .routes import router
from .schemas import ErrorResponse

logger = logging.getLogger(__name__)

APP_TITLE = "browsermonitor control API"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 60001


def create_app(dispatcher: Optional[CommandDispatcher] = None) -> FastAPI:
    """Create and configure the control application.

    Args:
        dispatcher: Command dispatcher of the running session

    Returns:
        Configured FastAPI application instance
    """
    app = FastAPI(
        title=APP_TITLE,
        version=__version__,
        docs_url="/docs",
        redoc_url=None,
    )
    app.state.dispatcher = dispatcher

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handle HTTP exceptions with consistent error format."""
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(
                error=f"http_{exc.status_code}",
                message=str(exc.detail),
            ).model_dump(mode="json")
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions."""
        logger.error(f"Unhandled exception in {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="internal_server_error",
                message="An unexpected error occurred",
            ).model_dump(mode="json")
        )

    @app.get("/", include_in_schema=False)
    async def root():
        return JSONResponse(
            content={
                "message": APP_TITLE,
                "version": __version__,
                "endpoints": [
                    "/dump", "/clear", "/status", "/tabs", "/tabs/{index}",
                    "/stop", "/start", "/computed-styles?selector=",
                ],
            }
        )

    app.include_router(router)
    return app


class ControlServer:
    """Serves a control application with uvicorn inside the running loop."""

    def __init__(self, app: FastAPI, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT):
        self.app = app
        self.host = host
        self.port = port
        self._server: Optional[uvicorn.Server] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self._task is not None:
            return
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="warning",
            access_log=False,
            lifespan="off",
        )
        self._server = uvicorn.Server(config)
        # Signals belong to the session's ShutdownCoordinator
        self._server.install_signal_handlers = lambda: None
        self._task = asyncio.create_task(self._server.serve())
        logger.info(f"Control API listening on {self.url}")

    async def stop(self) -> None:
        if self._server is None or self._task is None:
            return
        self._server.should_exit = True
        try:
            await asyncio.wait_for(self._task, timeout=5)
        except asyncio.TimeoutError:
            logger.warning("Control API did not stop in time, cancelling")
            self._task.cancel()
        except Exception as e:
            logger.warning(f"Control API stopped with error: {e}")
        finally:
            self._server = None
            self._task = None
        logger.info("Control API stopped")
