"""
Item Finder Server for Blind Assistant
Receives camera frames via Socket.IO, teaches and searches for personal items
on-device, and streams earcon/speech/haptic guidance back to the client.
"""

import asyncio
import base64
import binascii
import io
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import numpy as np
import socketio
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel

from cloud_guard import create_safe_error_message
from cloud_vision_service import CloudErrorCode, CloudResponse, CloudVisionService
from config import CloudConfig, FinderConfig
from embedding_service import EmbeddingService, ModelUnavailableError
from guidance_service import EarconPlayer, GuidanceDispatcher, HapticActuator, SpeechChannel, SpeechSink
from item_store import ItemStore, SQLiteItemStore
from models import CloudRequest, Direction, SessionMode
from rate_limiter import RATE_LIMITS, RateLimiter, RateLimiterRegistry
from regions import GridRegionProposer, RegionProposer, YoloRegionProposer
from search_session import SearchSessionController

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

finder_config = FinderConfig.from_env()
cloud_config = CloudConfig.from_env()

# Shared services (created at startup)
engine: Optional[EmbeddingService] = None
store: Optional[ItemStore] = None
proposer: Optional[RegionProposer] = None
cloud_service: Optional[CloudVisionService] = None

# Per-client abuse limits, keyed by remote address and shared by every connection
client_limits = RateLimiterRegistry()

HTTP_STATUS_BY_CODE = {
    CloudErrorCode.INVALID_REQUEST: 400,
    CloudErrorCode.PAYMENT_REQUIRED: 402,
    CloudErrorCode.RATE_LIMITED: 429,
    CloudErrorCode.INTERNAL_ERROR: 500,
    CloudErrorCode.SERVICE_ERROR: 503,
}


def _limiter(name: str) -> RateLimiter:
    limit = RATE_LIMITS[name]
    return RateLimiter(limit.max_calls, limit.window_seconds)


def decode_base64_image(base64_string: str) -> np.ndarray:
    """
    Decode Base64 JPEG/PNG (optionally a data URL) to an RGB array.

    Raises:
        ValueError: If the payload is not a decodable image
    """
    if ',' in base64_string:
        base64_string = base64_string.split(',', 1)[1]
    try:
        image_bytes = base64.b64decode(base64_string)
        pil_image = Image.open(io.BytesIO(image_bytes)).convert("RGB")
    except (binascii.Error, UnidentifiedImageError, OSError) as e:
        raise ValueError(f"Could not decode image: {e}") from e
    return np.array(pil_image)


class LatestFrameBuffer:
    """Keeps only the most recent camera frame; search ticks read from it."""

    def __init__(self, max_age_seconds: float = 2.0):
        self.max_age_seconds = max_age_seconds
        self.frame: Optional[np.ndarray] = None
        self.received_at: Optional[float] = None
        self.frames_received = 0

    def put(self, frame: np.ndarray):
        self.frame = frame
        self.received_at = time.monotonic()
        self.frames_received += 1

    def latest(self) -> Optional[np.ndarray]:
        """Most recent frame, or None when nothing fresh has arrived."""
        if self.frame is None or self.received_at is None:
            return None
        if time.monotonic() - self.received_at > self.max_age_seconds:
            return None
        return self.frame


class SocketSpeechSink(SpeechSink):
    def __init__(self, server: socketio.AsyncServer, sid: str):
        self.server = server
        self.sid = sid

    async def speak(self, utterance_id: str, text: str):
        await self.server.emit('speak', {'utterance_id': utterance_id, 'text': text}, room=self.sid)

    async def cancel_all(self):
        await self.server.emit('speech_cancel', {}, room=self.sid)


class SocketEarconPlayer(EarconPlayer):
    def __init__(self, server: socketio.AsyncServer, sid: str):
        self.server = server
        self.sid = sid

    async def play_directional_cue(self, direction: Direction, pan: float, intensity: float):
        await self.server.emit('earcon', {
            'direction': direction.value,
            'pan': pan,
            'intensity': intensity,
        }, room=self.sid)


class SocketHapticActuator(HapticActuator):
    """Vibration is off until the client reports support via device_capabilities."""

    def __init__(self, server: socketio.AsyncServer, sid: str):
        self.server = server
        self.sid = sid
        self.supports_vibration = False

    async def vibrate(self, pattern: List[int]):
        await self.server.emit('haptic', {'pattern': pattern}, room=self.sid)


@dataclass
class ClientSession:
    sid: str
    frames: LatestFrameBuffer
    speech: SpeechChannel
    haptics: SocketHapticActuator
    controller: SearchSessionController
    client_key: str


# Connected clients; at most one of them may be teaching or searching
sessions: Dict[str, ClientSession] = {}
session_start_lock = asyncio.Lock()


def create_client_session(server: socketio.AsyncServer, sid: str, client_key: Optional[str] = None) -> ClientSession:
    client_key = client_key or sid
    frames = LatestFrameBuffer()
    speech = SpeechChannel(SocketSpeechSink(server, sid), limiter=_limiter("tts_speak"))
    haptics = SocketHapticActuator(server, sid)
    dispatcher = GuidanceDispatcher(
        speech,
        SocketEarconPlayer(server, sid),
        haptics,
        voice_probability=finder_config.voice_probability,
        found_confidence=finder_config.found_confidence,
    )

    async def on_signal(name: str, payload: Dict[str, Any]):
        await server.emit(name, payload, room=sid)

    controller = SearchSessionController(
        engine=engine,
        store=store,
        dispatcher=dispatcher,
        frame_source=frames.latest,
        config=finder_config,
        proposer=proposer,
        label_limiter=client_limits.limiters["item_label"],
        label_key=client_key,
        on_signal=on_signal,
    )
    return ClientSession(sid, frames, speech, haptics, controller, client_key)


def session_busy_elsewhere(sid: str) -> bool:
    return any(
        other.controller.mode != SessionMode.IDLE
        for other_sid, other in sessions.items()
        if other_sid != sid
    )


async def close_client_session(session: ClientSession):
    controller = session.controller
    if controller.mode == SessionMode.SEARCH:
        await controller.stop_search()
    elif controller.mode == SessionMode.TEACH:
        await controller.cancel_teaching()
    await controller.drain()


async def stop_searches_for(item_id: str):
    """Stop every client's search for an item that no longer exists."""
    for session in list(sessions.values()):
        controller = session.controller
        selected = controller.selected_item
        if controller.mode == SessionMode.SEARCH and selected is not None and selected.item_id == item_id:
            await controller.stop_search()


def dispose_engine():
    if engine is None:
        return
    try:
        engine.dispose()
    except RuntimeError as e:
        # A teach_photo embed can still be running when the server stops
        logger.warning(f"Embedding engine not disposed: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    global engine, store, proposer, cloud_service

    store = SQLiteItemStore(finder_config.db_path)

    if finder_config.yolo_model:
        proposer = YoloRegionProposer(finder_config.yolo_model, fallback=GridRegionProposer(finder_config.grid_size))
    else:
        proposer = GridRegionProposer(finder_config.grid_size)

    engine = EmbeddingService(finder_config.embedding)
    try:
        await engine.load_model()
    except ModelUnavailableError as e:
        # Server stays up; teach/search report model_unavailable
        logger.error(f"✗ Embedding model failed to load: {e}")

    try:
        cloud_service = CloudVisionService(cloud_config, limiter=_limiter("cloud_request"))
        logger.info(f"✓ Cloud vision ready ({cloud_config.model})")
    except ValueError as e:
        logger.warning(f"Cloud vision disabled: {e}")

    yield

    logger.info("🛑 Shutting down server...")
    for session in list(sessions.values()):
        await close_client_session(session)
    sessions.clear()
    dispose_engine()


app = FastAPI(title="Item Finder Server", lifespan=lifespan)
sio = socketio.AsyncServer(async_mode='asgi', cors_allowed_origins='*')
socket_app = socketio.ASGIApp(socketio_server=sio, other_asgi_app=app)


@app.get("/health")
async def health():
    """Detailed health check with model status."""
    return {
        "status": "healthy",
        "model_state": engine.state.value if engine else "unloaded",
        "model_error": engine.failure_reason if engine else None,
        "backend": engine.backend_name if engine else None,
        "avg_inference_ms": round(engine.avg_inference_ms, 1) if engine else 0.0,
        "learned_items": len(store.list()) if store else 0,
        "cloud_available": cloud_service is not None,
        "active_clients": len(sessions),
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


class CloudVisionBody(BaseModel):
    task: str
    input: str = ""
    user_opted_in: bool = False
    image: Optional[str] = None


@app.post("/cloud/vision")
async def cloud_vision(body: CloudVisionBody, request: Request):
    if cloud_service is None:
        response = CloudResponse.error(CloudErrorCode.SERVICE_ERROR)
    else:
        client_key = request.client.host if request.client else "default"
        response = await cloud_service.process(
            CloudRequest(
                task=body.task,
                input=body.input,
                user_opted_in=body.user_opted_in,
                image_base64=body.image,
            ),
            client_key=client_key,
        )

    if response.ok:
        return response.to_payload()
    return JSONResponse(status_code=HTTP_STATUS_BY_CODE[response.code], content=response.to_payload())


# ============================================================================
# SOCKET EVENTS
# ============================================================================

async def emit_error(sid: str, error: Exception, context: str):
    logger.error(f"❌ {context}: {error}", exc_info=True)
    await sio.emit('error', {'message': create_safe_error_message(error)}, room=sid)


@sio.event
async def connect(sid, environ):
    logger.info(f"✓ Client connected: {sid}")
    sessions[sid] = create_client_session(sio, sid, environ.get("REMOTE_ADDR"))
    await sio.emit('connection_established', {
        'sid': sid,
        'model_ready': bool(engine and engine.is_ready),
        'items': [item.summary() for item in store.list()] if store else [],
        'max_items': finder_config.max_learned_items,
    }, room=sid)


@sio.event
async def disconnect(sid):
    logger.info(f"✗ Client disconnected: {sid}")
    session = sessions.pop(sid, None)
    if session:
        await close_client_session(session)


@sio.event
async def device_capabilities(sid, data):
    session = sessions.get(sid)
    if not session:
        return
    session.haptics.supports_vibration = bool(data.get('vibration', False))
    logger.info(f"📱 {sid} capabilities: vibration={session.haptics.supports_vibration}")


@sio.event
async def video_frame(sid, data):
    session = sessions.get(sid)
    if not session:
        return
    try:
        session.frames.put(decode_base64_image(data['frame']))
    except (KeyError, ValueError) as e:
        logger.debug(f"Dropped bad frame from {sid}: {e}")


@sio.event
async def utterance_done(sid, data):
    session = sessions.get(sid)
    if session:
        session.speech.utterance_finished(data.get('utterance_id'))


@sio.event
async def teach_start(sid, data):
    session = sessions.get(sid)
    if not session:
        return
    name = (data or {}).get('name', '')

    async with session_start_lock:
        if session_busy_elsewhere(sid):
            await sio.emit('teach_rejected', {'reason': 'session_busy'}, room=sid)
            return
        result = await session.controller.start_teaching(name)

    if result.ok:
        await sio.emit('teach_started', result.payload, room=sid)
    else:
        logger.info(f"Teach rejected for {sid}: {result.reason}")
        await sio.emit('teach_rejected', {'reason': result.reason, **result.payload}, room=sid)


@sio.event
async def teach_photo(sid, data):
    session = sessions.get(sid)
    if not session:
        return
    if not client_limits.is_allowed("camera_capture", session.client_key):
        await sio.emit('teach_rejected', {'reason': 'rate_limited'}, room=sid)
        return
    try:
        image = decode_base64_image(data['image'])
        photo_count = await session.controller.add_teaching_photo(image)
        await sio.emit('teach_progress', {'photo_count': photo_count}, room=sid)
    except (KeyError, ValueError, ModelUnavailableError) as e:
        await emit_error(sid, e, "Teaching photo failed")


@sio.event
async def teach_complete(sid, data=None):
    session = sessions.get(sid)
    if not session:
        return
    try:
        result = await session.controller.complete_teaching()
    except ValueError as e:
        await emit_error(sid, e, "Teaching failed")
        return
    if not result.ok:
        await sio.emit('teach_rejected', {'reason': result.reason, **result.payload}, room=sid)


@sio.event
async def teach_cancel(sid, data=None):
    session = sessions.get(sid)
    if not session:
        return
    result = await session.controller.cancel_teaching()
    await sio.emit('teach_cancelled', {'ok': result.ok}, room=sid)


@sio.event
async def search_start(sid, data):
    session = sessions.get(sid)
    if not session:
        return
    data = data or {}
    item_id = data.get('item_id')
    if not item_id and data.get('name'):
        item = store.get_by_name(data['name'])
        item_id = item.item_id if item else None

    async with session_start_lock:
        if session_busy_elsewhere(sid):
            await sio.emit('search_rejected', {'reason': 'session_busy'}, room=sid)
            return
        result = await session.controller.start_search(item_id)

    if not result.ok:
        logger.info(f"Search rejected for {sid}: {result.reason}")
        await sio.emit('search_rejected', {'reason': result.reason}, room=sid)


@sio.event
async def search_stop(sid, data=None):
    session = sessions.get(sid)
    if session:
        await session.controller.stop_search()


@sio.event
async def list_items(sid, data=None):
    session = sessions.get(sid)
    if not session:
        return
    await sio.emit('items', {
        'items': [item.summary() for item in session.controller.list_items()],
        'max_items': finder_config.max_learned_items,
    }, room=sid)


@sio.event
async def delete_item(sid, data):
    session = sessions.get(sid)
    if not session:
        return
    item_id = (data or {}).get('item_id')
    deleted = await session.controller.delete_item(item_id)
    if deleted:
        await stop_searches_for(item_id)
    await sio.emit('item_deleted', {'item_id': item_id, 'deleted': deleted}, room=sid)


@sio.event
async def set_guidance(sid, data):
    session = sessions.get(sid)
    if not session:
        return
    data = data or {}
    session.controller.set_guidance(
        audio_enabled=data.get('audio'),
        haptics_enabled=data.get('haptics'),
    )
    logger.info(
        f"🔊 Guidance for {sid}: audio={session.controller.audio_enabled} "
        f"haptics={session.controller.haptics_enabled}"
    )


@sio.event
async def battery_saver(sid, data):
    session = sessions.get(sid)
    if session:
        session.controller.set_low_power(bool((data or {}).get('enabled', False)))


if __name__ == "__main__":
    uvicorn.run(socket_app, host="0.0.0.0", port=8000, log_level="info")
