"""
FastAPI server for the ACS voice bridge.

Endpoints:
- GET /: Banner
- GET /health: Health check
- GET /metrics: JSON metrics
- POST /api/incomingCall: Event Grid incoming call webhook
- POST /api/callbacks/{context_id}: Call Automation mid-call events
- WS /ws/{context_id}: ACS bidirectional media streaming
"""

import asyncio
import sys
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import logging

from fastapi import BackgroundTasks, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, PlainTextResponse
import structlog
import uvicorn

from src.callbridge.config import ConfigError, get_config, init_config

SUBSCRIPTION_VALIDATION_EVENT = "Microsoft.EventGrid.SubscriptionValidationEvent"
CALL_CONNECTED_EVENT = "Microsoft.Communication.CallConnected"
CALL_DISCONNECTED_EVENT = "Microsoft.Communication.CallDisconnected"
MEDIA_STREAMING_STARTED_EVENT = "Microsoft.Communication.MediaStreamingStarted"
MEDIA_STREAMING_STOPPED_EVENT = "Microsoft.Communication.MediaStreamingStopped"
MEDIA_STREAMING_FAILED_EVENT = "Microsoft.Communication.MediaStreamingFailed"


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
    total_connections: int = 0
    active_connections: int = 0
    errors: int = 0

    def to_dict(self, active_sessions: int = 0) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_calls": self.total_calls,
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "active_sessions": active_sessions,
            "errors": self.errors,
        }


metrics = ServerMetrics()


def create_call_client(connection_string: str) -> Any:
    """Build the async Call Automation client."""
    from azure.communication.callautomation.aio import CallAutomationClient

    return CallAutomationClient.from_connection_string(connection_string)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting call bridge server...")

    try:
        config = init_config()
        configure_logging(config.log_level)

        call_client = create_call_client(config.acs_connection_string)
        logger.info("Initialized ACS client successfully")

        from src.callbridge.call_session import CallSessionManager
        from src.callbridge.db import DataAccessLayer
        from src.callbridge.grounding import GroundingService

        data_access = DataAccessLayer(config=config)
        grounding = GroundingService(config=config)
        app.state.data_access = data_access
        app.state.manager = CallSessionManager(call_client, data_access, grounding, config=config)

        logger.info(
            "Server ready",
            port=config.port,
            callback_uri=config.base_url,
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

    logger.info("Shutting down server...")
    await app.state.manager.close_all(1001, "Server shutting down")
    await app.state.data_access.close()
    close = getattr(call_client, "close", None)
    if close is not None:
        await close()


app = FastAPI(
    title="ACS Voice Bridge",
    description="Azure Communication Services calls answered by Azure OpenAI Realtime with SQL grounding",
    version="1.0.0",
    lifespan=lifespan,
)


def _first_event(body: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(body, list) or not body or not isinstance(body[0], dict):
        return None
    return body[0]


def _event_type(event: Dict[str, Any]) -> str:
    # Event Grid schema uses eventType, CloudEvents uses type
    return str(event.get("eventType") or event.get("type") or "")


@app.get("/")
async def root() -> PlainTextResponse:
    return PlainTextResponse("Hello ACS CallAutomation!")


@app.get("/health")
async def health_check(request: Request) -> JSONResponse:
    """Health check endpoint."""
    manager = getattr(request.app.state, "manager", None)
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_sessions": manager.active_sessions if manager else 0,
        }
    )


@app.get("/metrics")
async def get_metrics(request: Request) -> JSONResponse:
    """Metrics endpoint."""
    manager = getattr(request.app.state, "manager", None)
    return JSONResponse(content=metrics.to_dict(manager.active_sessions if manager else 0))


@app.post("/api/incomingCall")
async def incoming_call(request: Request) -> JSONResponse:
    """
    Event Grid webhook for incoming calls.

    Answers subscription validation handshakes; otherwise answers the call with
    per-call callback and media streaming URLs.
    """
    try:
        body = await request.json()
    except ValueError:
        body = None

    event = _first_event(body)
    if event is None:
        return JSONResponse(status_code=400, content={"error": "Invalid request body format"})

    event_data = event.get("data") or {}
    if _event_type(event) == SUBSCRIPTION_VALIDATION_EVENT:
        logger.info("Received SubscriptionValidation event")
        return JSONResponse(content={"validationResponse": event_data.get("validationCode")})

    incoming_call_context = event_data.get("incomingCallContext")
    caller_id = str((event_data.get("from") or {}).get("rawId") or "")
    if not incoming_call_context:
        return JSONResponse(status_code=400, content={"error": "Missing incomingCallContext"})

    manager = request.app.state.manager
    if not manager.accepting:
        return JSONResponse(status_code=503, content={"error": "Server is shutting down"})

    try:
        await manager.handle_incoming_call(incoming_call_context, caller_id)
    except Exception as e:
        logger.error("Error during the incoming call event", caller_id=caller_id, error=str(e))
        metrics.errors += 1
        return JSONResponse(
            status_code=500,
            content={"error": "Failed to process incoming call", "message": str(e)},
        )

    metrics.total_calls += 1
    return JSONResponse(content={"success": True})


async def process_callback_event(manager: Any, context_id: str, event: Dict[str, Any]) -> None:
    """Handle one Call Automation event after the webhook has been acknowledged."""
    event_type = _event_type(event)
    event_data = event.get("data") or {}
    call_connection_id = event_data.get("callConnectionId")

    logger.info(
        "Event received",
        type=event_type,
        call_connection_id=call_connection_id,
        context_id=context_id,
    )

    try:
        if event_type == CALL_CONNECTED_EVENT:
            await manager.handle_call_connected(call_connection_id, context_id)
        elif event_type == MEDIA_STREAMING_STARTED_EVENT:
            update = event_data.get("mediaStreamingUpdate") or {}
            logger.info(
                "Media streaming started",
                content_type=update.get("contentType"),
                status=update.get("mediaStreamingStatus"),
            )
        elif event_type in (MEDIA_STREAMING_STOPPED_EVENT, MEDIA_STREAMING_FAILED_EVENT):
            update = event_data.get("mediaStreamingUpdate") or {}
            logger.info("Media streaming issue", type=event_type, status=update.get("mediaStreamingStatus", "unknown"))
            if event_type == MEDIA_STREAMING_FAILED_EVENT:
                result = event_data.get("resultInformation") or {}
                logger.error(
                    "Media streaming failed",
                    message=result.get("message"),
                    code=result.get("code"),
                    subcode=result.get("subCode"),
                )
        elif event_type == CALL_DISCONNECTED_EVENT:
            await manager.handle_call_disconnected(call_connection_id, context_id)
        else:
            logger.info("Unhandled event type", type=event_type)
    except Exception as e:
        logger.error("Error processing callback", type=event_type, context_id=context_id, error=str(e))
        metrics.errors += 1


@app.post("/api/callbacks/{context_id}")
async def call_callbacks(context_id: str, request: Request, background_tasks: BackgroundTasks) -> JSONResponse:
    """Always acknowledge so Event Grid does not retry; the work runs afterwards."""
    try:
        body = await request.json()
    except ValueError:
        body = None

    event = _first_event(body)
    if event is None:
        logger.warning("Invalid callback payload", context_id=context_id)
    else:
        background_tasks.add_task(process_callback_event, request.app.state.manager, context_id, event)

    return JSONResponse(content={"received": True})


@app.websocket("/ws/{context_id}")
async def media_socket(websocket: WebSocket, context_id: str) -> None:
    """
    ACS media streaming WebSocket endpoint.

    Relays caller audio to the realtime session and AI audio back to the call.
    """
    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1

    manager = websocket.app.state.manager
    config = get_config()

    from src.callbridge.call_session import UnknownSessionError

    logger.info("WebSocket connected", context_id=context_id, active_connections=metrics.active_connections)

    try:
        try:
            session = await asyncio.wait_for(
                manager.attach_media_socket(context_id, websocket),
                timeout=config.ws_setup_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error("Connection setup timeout", context_id=context_id)
            await websocket.close(code=1013, reason="Connection timeout")
            return
        except UnknownSessionError:
            logger.warning("Media socket for unknown call", context_id=context_id)
            await websocket.close(code=1008, reason="Unknown call")
            return
        except Exception as e:
            logger.error("Media socket setup failed", context_id=context_id, error=str(e))
            metrics.errors += 1
            await websocket.close(code=1011, reason="Server error during connection setup")
            return

        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                logger.info("WebSocket disconnected", context_id=context_id, code=message.get("code"))
                break

            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes")
            if raw is None:
                continue

            try:
                await session.handle_transport_message(raw)
            except Exception as e:
                logger.error("Error handling WebSocket message", context_id=context_id, error=str(e))
                metrics.errors += 1
                # Continue processing - don't crash on single message error
                continue

    except WebSocketDisconnect:
        logger.info("WebSocket disconnected", context_id=context_id)
    except Exception as e:
        logger.error("WebSocket handler error", context_id=context_id, error=str(e))
        metrics.errors += 1
    finally:
        # A rejected duplicate socket must not end the call another socket carries.
        await manager.handle_call_disconnected(context_id=context_id, media_socket=websocket)
        metrics.active_connections -= 1
        logger.info("Call ended", context_id=context_id, active_sessions=manager.active_sessions)


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
        ws_ping_interval=config.ws_ping_interval_seconds,
        timeout_graceful_shutdown=config.shutdown_grace_seconds,
        reload=False,
    )


if __name__ == "__main__":
    main()
