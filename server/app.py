"""
FastAPI server for the voice mediator.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- WS /ws: caller audio in (binary frames), agent audio + control out
"""

import asyncio
import sys

# Use uvloop for faster asyncio where available (Linux/macOS)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available on Windows

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request
from fastapi.responses import JSONResponse
import structlog
import uvicorn

from src.voicedesk.config import get_config, init_config, ConfigError
from src.voicedesk.knowledge import KnowledgeBaseError, load_knowledge_base
from src.voicedesk.outbound import OutboundChannel


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
    total_sessions: int = 0
    active_sessions: int = 0
    total_turns: int = 0
    total_interruptions: int = 0
    errors: int = 0

    def record_session(self, session_metrics: Dict[str, Any]) -> None:
        self.total_turns += session_metrics.get("turns_started", 0)
        self.total_interruptions += session_metrics.get("interruptions", 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_sessions": self.total_sessions,
            "active_sessions": self.active_sessions,
            "total_turns": self.total_turns,
            "total_interruptions": self.total_interruptions,
            "errors": self.errors,
        }


# Global metrics
metrics = ServerMetrics()


def get_knowledge_base(app: FastAPI) -> Any:
    """Return the knowledge base loaded at startup, loading it on first use otherwise."""
    knowledge_base = getattr(app.state, "knowledge_base", None)
    if knowledge_base is None:
        knowledge_base = load_knowledge_base(get_config().knowledge_base_path)
        app.state.knowledge_base = knowledge_base
    return knowledge_base


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting voice mediator server...")

    try:
        config = init_config()
        configure_logging(config.log_level)

        app.state.knowledge_base = load_knowledge_base(config.knowledge_base_path)

        from src.voicedesk.llm import get_system_prompt, initialize_llm
        app.state.system_prompt = get_system_prompt(app.state.knowledge_base, config)
        await initialize_llm(config)

        logger.info("Server ready", port=config.port)

    except (ConfigError, KnowledgeBaseError) as e:
        logger.error("Startup configuration error", error=str(e))
        sys.exit(1)
    except SystemExit:
        raise
    except Exception as e:
        logger.error("Startup failed", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...")


app = FastAPI(
    title="Voice Mediator",
    description="Turn-taking voice agent: streaming STT, LLM replies, TTS playback",
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
            "active_sessions": metrics.active_sessions,
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict())


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """
    Caller WebSocket endpoint.

    Binary frames are raw caller audio, forwarded verbatim to transcription.
    Outbound binary frames are agent audio; text frames are control commands.
    """
    await websocket.accept()

    metrics.total_sessions += 1
    metrics.active_sessions += 1

    # Import here to avoid circular imports and speed up startup
    from src.voicedesk.session import create_session

    session = None
    outbound = OutboundChannel(websocket.send_bytes, websocket.send_text)

    try:
        session = create_session(
            outbound,
            get_knowledge_base(websocket.app),
            system_prompt=getattr(websocket.app.state, "system_prompt", None),
        )
        logger.info(
            "WebSocket connected",
            session_id=session.session_id,
            active_sessions=metrics.active_sessions,
        )
        await session.start()

        while True:
            try:
                message = await websocket.receive()
            except WebSocketDisconnect:
                break

            if message["type"] == "websocket.disconnect":
                break

            try:
                data = message.get("bytes")
                if data:
                    await session.feed(data)
                elif message.get("text"):
                    logger.debug("Ignoring text frame", session_id=session.session_id)
            except Exception as e:
                logger.error(
                    "Error handling WebSocket message",
                    session_id=session.session_id,
                    error=str(e),
                )
                metrics.errors += 1
                continue

    except Exception as e:
        logger.error("WebSocket handler error", error=str(e))
        metrics.errors += 1

    finally:
        outbound.close()
        if session:
            try:
                await session.close()
                metrics.record_session(session.metrics())
            except Exception as e:
                logger.error("Error closing session", error=str(e))

        metrics.active_sessions -= 1

        logger.info(
            "WebSocket closed",
            session_id=session.session_id if session else None,
            active_sessions=metrics.active_sessions,
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
