"""FastAPI entry-point for the live attendance controller."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, AsyncIterator, Dict, Optional

import psutil
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import BaseModel, Field

from .config import Settings, get_settings
from .logging_config import configure_logging
from .sensors.camera import WebcamCameraManager
from .session_manager import PreconditionError, SessionManager
from .state import SelectedCourse

logger = logging.getLogger(__name__)

settings: Settings = get_settings()
configure_logging(settings.log_level, settings.log_directory, settings.log_retention_days)
camera = WebcamCameraManager(settings.camera, preview_queue_size=settings.performance.preview_queue_size)
manager = SessionManager(settings=settings, camera=camera)


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    try:
        await camera.start()
        logger.info("Application started successfully (camera preview loop running)")
    except Exception as e:
        logger.exception(f"Failed to start services: {e}")
        logger.error("Application startup failed - preview may not work")
        # Don't re-raise - allow app to start in degraded mode
    yield
    try:
        await manager.stop()
        await camera.stop()
        logger.info("Application shutdown complete")
    except Exception as e:
        logger.exception(f"Error during shutdown: {e}")


app = FastAPI(title="live-attendance-controller", version="0.1.0", lifespan=lifespan)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> PlainTextResponse:
    """Catch-all exception handler to prevent application crashes."""
    logger.exception(f"Unhandled exception in {request.url.path}: {exc}")
    return PlainTextResponse(
        f"Internal server error: {str(exc)}",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle request validation errors gracefully."""
    logger.warning(f"Validation error in {request.url.path}: {exc}")
    return JSONResponse(
        status_code=422,
        content={"detail": str(exc)}
    )

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class CourseModel(BaseModel):
    id: int
    name: str
    code: str = ""
    enrolled_count: int = Field(0, ge=0)

    def to_course(self) -> SelectedCourse:
        return SelectedCourse(id=self.id, name=self.name, code=self.code, enrolled_count=self.enrolled_count)


class StartSessionRequest(BaseModel):
    course: Optional[CourseModel] = None


def _command_response(accepted: bool) -> JSONResponse:
    return JSONResponse({
        "status": "accepted" if accepted else "ignored",
        "snapshot": manager.snapshot().as_payload(),
    })


@app.get("/healthz")
async def healthcheck() -> JSONResponse:
    return JSONResponse({"status": "ok", "phase": manager.phase.value})


@app.get("/session")
async def session_snapshot() -> JSONResponse:
    return JSONResponse(manager.snapshot().as_payload())


@app.post("/session/start")
async def start_session(payload: StartSessionRequest) -> JSONResponse:
    course = payload.course.to_course() if payload.course else None
    try:
        accepted = await manager.start_session(course)
    except PreconditionError as exc:
        logger.info(f"Session start rejected: {exc}")
        return JSONResponse({"status": "rejected", "message": exc.user_message}, status_code=422)

    if not accepted:
        return JSONResponse(
            {"status": "ignored", "message": "A session is already in progress",
             "snapshot": manager.snapshot().as_payload()},
            status_code=status.HTTP_409_CONFLICT,
        )
    return JSONResponse({"status": "accepted", "snapshot": manager.snapshot().as_payload()})


@app.post("/session/request-end")
async def request_end() -> JSONResponse:
    return _command_response(await manager.request_end())


@app.post("/session/cancel-end")
async def cancel_end() -> JSONResponse:
    return _command_response(await manager.cancel_end())


@app.post("/session/confirm-end")
async def confirm_end() -> JSONResponse:
    return _command_response(await manager.confirm_end())


@app.post("/session/close")
async def close_session() -> JSONResponse:
    return _command_response(await manager.close())


@app.get("/sessions/recent")
async def recent_sessions() -> JSONResponse:
    return JSONResponse({"sessions": [asdict(record) for record in manager.recent_sessions]})


@app.get("/debug/performance")
async def debug_performance() -> JSONResponse:
    """Get real-time CPU and memory usage."""
    try:
        cpu_percent = psutil.cpu_percent(interval=0.1)
        memory = psutil.virtual_memory()

        return JSONResponse({
            "cpu_percent": round(cpu_percent, 1),
            "memory_percent": round(memory.percent, 1),
            "memory_used_mb": round(memory.used / (1024 * 1024), 1),
            "memory_total_mb": round(memory.total / (1024 * 1024), 1)
        })
    except Exception as e:
        logger.error(f"Performance monitoring error: {e}")
        return JSONResponse(
            {"error": str(e)},
            status_code=500
        )


@app.get("/preview")
async def preview_stream() -> StreamingResponse:
    """Stream the camera preview (placeholder frames until the device is ready)."""
    boundary = "frame"

    async def frame_iterator() -> AsyncIterator[bytes]:
        try:
            async for frame in camera.preview_stream():
                header = (
                    f"--{boundary}\r\n"
                    f"Content-Type: image/jpeg\r\n"
                    f"Content-Length: {len(frame)}\r\n\r\n"
                ).encode("ascii")
                yield header + frame + b"\r\n"
        except Exception as e:
            logger.error(f"Preview stream error: {e}")
            # Stream will end gracefully

    media_type = f"multipart/x-mixed-replace; boundary={boundary}"
    return StreamingResponse(frame_iterator(), media_type=media_type)


@app.websocket("/ws/ui")
async def ui_socket(ws: WebSocket) -> None:
    await ws.accept()
    queue = manager.register_ui()
    # Client messages are ignored; reading them is how a disconnect is noticed.
    listener = asyncio.create_task(_drain_client(ws), name="ui-socket-listener")
    try:
        await ws.send_json({
            "type": "snapshot",
            "phase": manager.phase.value,
            "data": manager.snapshot().as_payload(),
        })
        while True:
            getter = asyncio.ensure_future(queue.get())
            try:
                await asyncio.wait({getter, listener}, return_when=asyncio.FIRST_COMPLETED)
            except asyncio.CancelledError:
                getter.cancel()
                break  # Clean shutdown
            if not getter.done():
                getter.cancel()
                break  # Client disconnected
            event = getter.result()

            payload: Dict[str, Any] = {
                "type": event.type,
                "phase": event.phase.value,
                "data": event.data,
            }
            if event.error:
                payload["error"] = event.error

            try:
                await ws.send_json(payload)
            except Exception as e:
                # WebSocket closed, break out of loop
                logger.debug(f"WebSocket send failed (client disconnected): {e}")
                break
    except WebSocketDisconnect:
        pass
    except asyncio.CancelledError:
        pass  # Clean shutdown
    except Exception as e:
        logger.error(f"Unexpected error in UI websocket: {e}")
    finally:
        listener.cancel()
        manager.unregister_ui(queue)
        try:
            await ws.close()
        except Exception as e:
            logger.debug(f"WebSocket close failed: {e}")


async def _drain_client(ws: WebSocket) -> None:
    while True:
        message = await ws.receive()
        if message["type"] == "websocket.disconnect":
            logger.debug("UI websocket client disconnected")
            return


def run() -> None:
    """Console entry point: serve the controller with uvicorn."""
    import uvicorn

    uvicorn.run(app, host=settings.controller_host, port=settings.controller_port, log_config=None)
