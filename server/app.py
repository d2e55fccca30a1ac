"""
FastAPI server for the Twilio <-> OpenAI Realtime bridge.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- WS /ws: Twilio Media Streams WebSocket (call SID in the `CallSid` query parameter)
"""

import asyncio
import sys

# Use uvloop for faster asyncio (Linux only)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available on Windows

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict

from fastapi import FastAPI, Request, WebSocket
from fastapi.responses import JSONResponse
import structlog
import uvicorn

from src.bridge.config import ConfigError, get_config, init_config
from src.bridge.model_link import ModelLink
from src.bridge.session import CallSession, extract_call_sid
from src.bridge.twilio_protocol import TelephonyLink


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_level != "DEBUG" else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


logger = structlog.get_logger(__name__)


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_calls: int = 0
    active_calls: int = 0
    upstream_failures: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_calls": self.total_calls,
            "active_calls": self.active_calls,
            "upstream_failures": self.upstream_failures,
            "errors": self.errors,
        }


# Global metrics
metrics = ServerMetrics()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    try:
        config = init_config()
        configure_logging(config.log_level)
    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)

    logger.info("Bridge ready", port=config.port, model=config.openai_realtime_model)

    yield

    logger.info("Shutting down bridge...")


app = FastAPI(
    title="Realtime Call Bridge",
    description="Bridges Twilio Media Streams to the OpenAI Realtime API",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": metrics.active_calls,
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict())


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    Runs one CallSession for the lifetime of the socket. A failure here only
    ends this call.
    """
    await websocket.accept()

    config = get_config()
    call_sid = extract_call_sid(websocket.query_params)

    metrics.total_calls += 1
    metrics.active_calls += 1

    logger.info("Twilio stream connected", call_sid=call_sid, active_calls=metrics.active_calls)

    session = CallSession(
        call_sid=call_sid,
        telephony=TelephonyLink(websocket, call_sid=call_sid),
        model=ModelLink(config, call_sid=call_sid),
        config=config,
    )

    try:
        await session.run()
    except Exception as e:
        logger.error("Call session failed", call_sid=call_sid, error=str(e))
        metrics.errors += 1
    finally:
        await session.close("endpoint_exit")
        if session.close_reason == "model_connect_failed":
            metrics.upstream_failures += 1
        metrics.active_calls -= 1

        logger.info(
            "Twilio stream closed",
            call_sid=call_sid,
            reason=session.close_reason,
            active_calls=metrics.active_calls,
        )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
    )
    metrics.errors += 1

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


def main() -> None:
    """Run the server."""
    config = get_config()
    configure_logging(config.log_level)

    logger.info("Starting server", port=config.port)

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
