"""
FastAPI server for the call turn agent.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- GET|POST /twiml, /voice-stream: TwiML that connects the call to our WebSocket
- POST /start-call: Place an outbound call through Twilio
- WS /ws: Twilio Media Streams WebSocket
"""

import asyncio
import sys

# Use uvloop for faster asyncio (Linux only)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available on Windows

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, Any, Optional
from urllib.parse import urlencode
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request, Response
from fastapi.responses import JSONResponse
from starlette.websockets import WebSocketState
import structlog
from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client as TwilioClient
from twilio.twiml.voice_response import Connect, VoiceResponse
import uvicorn

from src.callturn.config import get_config, init_config, Config, ConfigError
from src.callturn.connection import OBJECTIVE_PARAMETER, MediaStreamConnection
from src.callturn.errors import ChannelClosedError
from src.callturn.registry import get_registry


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
    """Server-wide metrics. Call counts come from the session registry."""
    start_time: float = field(default_factory=time.time)
    total_connections: int = 0
    active_connections: int = 0
    outbound_calls: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        registry = get_registry()
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "total_calls": registry.total_sessions,
            "active_calls": registry.active_count,
            "outbound_calls": self.outbound_calls,
            "errors": self.errors,
        }


metrics = ServerMetrics()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting call turn agent server...")

    try:
        config = init_config()
        configure_logging(config.log_level)

        # Fail fast on a model the provider does not serve
        from src.callturn.llm import initialize_llm
        llm = await initialize_llm(config)
        await llm.close()

        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host,
            ws_url=config.ws_url,
        )

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)
    except SystemExit:
        raise
    except Exception as e:
        logger.error("Startup failed", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...", active_calls=get_registry().active_count)
    await get_registry().shutdown()


app = FastAPI(
    title="Call Turn Agent",
    description="Turn-based phone agent: Twilio audio in, STT, LLM, TTS, Twilio audio out",
    version="1.0.0",
    lifespan=lifespan,
)


def build_stream_twiml(config: Config, objective: Optional[str] = None) -> str:
    """Build TwiML that optionally greets the caller, then opens a media stream."""
    response = VoiceResponse()
    if config.greeting_text:
        response.say(config.greeting_text)

    connect = Connect()
    stream = connect.stream(url=config.ws_url)
    if objective:
        stream.parameter(name=OBJECTIVE_PARAMETER, value=objective)
    response.append(connect)

    return str(response)


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": get_registry().active_count,
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict())


@app.post("/twiml")
@app.get("/twiml")
@app.post("/voice-stream")
@app.get("/voice-stream")
async def generate_twiml(request: Request) -> Response:
    """
    Generate TwiML for Twilio webhook.

    An `objective` query parameter is forwarded to the stream as a custom
    parameter and overrides the configured call objective for that call.
    """
    config = get_config()
    objective = request.query_params.get(OBJECTIVE_PARAMETER) or None

    twiml = build_stream_twiml(config, objective)

    logger.info("Generated TwiML", ws_url=config.ws_url, objective_override=bool(objective))

    return Response(
        content=twiml,
        media_type="application/xml",
    )


@app.post("/start-call")
async def start_call(request: Request) -> JSONResponse:
    """
    Place an outbound call to `target_number`.

    Twilio fetches /voice-stream once the callee answers, which connects the
    call to the media stream.
    """
    config = get_config()

    try:
        body = await request.json()
    except ValueError:
        return JSONResponse(status_code=400, content={"error": "Request body must be JSON"})
    if not isinstance(body, dict):
        return JSONResponse(status_code=400, content={"error": "Request body must be a JSON object"})

    target_number = (body.get("target_number") or "").strip()
    if not target_number:
        return JSONResponse(status_code=400, content={"error": "target_number is required"})
    if not config.twilio_number:
        return JSONResponse(status_code=400, content={"error": "TWILIO_NUMBER is not configured"})

    objective = (body.get("objective") or "").strip()
    webhook_url = f"{config.base_url}/voice-stream"
    if objective:
        webhook_url = f"{webhook_url}?{urlencode({OBJECTIVE_PARAMETER: objective})}"

    client = TwilioClient(config.twilio_account_sid, config.twilio_auth_token)

    # The Twilio REST client is synchronous
    loop = asyncio.get_running_loop()
    try:
        call = await loop.run_in_executor(
            None,
            lambda: client.calls.create(
                to=target_number,
                from_=config.twilio_number,
                url=webhook_url,
            ),
        )
    except TwilioRestException as e:
        metrics.errors += 1
        logger.error("Outbound call failed", to=target_number, status=e.status, error=str(e))
        return JSONResponse(status_code=502, content={"error": f"Twilio rejected the call: {e.msg}"})

    metrics.outbound_calls += 1
    logger.info(
        "Outbound call initiated",
        call_sid=call.sid,
        to=target_number,
        objective_override=bool(objective),
    )

    return JSONResponse(content={"call_sid": call.sid, "status": "initiated"})


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    One WebSocket carries one call. The session is created on Twilio's start
    event and torn down on its stop event or when the socket closes.
    """
    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1

    logger.info("WebSocket connected", active_connections=metrics.active_connections)

    async def send_message(message: str) -> None:
        """Send a message to the WebSocket."""
        try:
            await websocket.send_text(message)
        except Exception as e:
            logger.error("Failed to send WebSocket message", error=str(e))
            raise ChannelClosedError(f"WebSocket send failed: {e}") from e

    async def close_channel() -> None:
        if (
            websocket.application_state != WebSocketState.DISCONNECTED
            and websocket.client_state != WebSocketState.DISCONNECTED
        ):
            await websocket.close()

    def on_error(error: Exception) -> None:
        metrics.errors += 1

    connection = MediaStreamConnection(
        get_registry(),
        send_message,
        close_channel=close_channel,
        on_error=on_error,
    )

    try:
        while websocket.application_state != WebSocketState.DISCONNECTED:
            try:
                message = await websocket.receive_text()
                await connection.handle_message(message)

            except WebSocketDisconnect:
                logger.info("WebSocket disconnected", stream_sid=connection.stream_sid)
                break
            except Exception as e:
                logger.error(
                    "Error handling WebSocket message",
                    stream_sid=connection.stream_sid,
                    error=str(e),
                )
                metrics.errors += 1
                # Continue processing - don't crash on single message error
                continue

    finally:
        try:
            await connection.close()
        except Exception as e:
            logger.error("Error closing call", stream_sid=connection.stream_sid, error=str(e))

        metrics.active_connections -= 1

        logger.info(
            "Call ended",
            stream_sid=connection.stream_sid,
            active_calls=get_registry().active_count,
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
