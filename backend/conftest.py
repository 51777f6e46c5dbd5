"""Shared test fixtures for the item finder backend."""

import asyncio
import io
import random
from typing import Callable, Dict, List, Optional

import numpy as np
import pytest
import torch
import torch.nn.functional as F

from config import FinderConfig
from embedding_service import Embedding, ModelUnavailableError
from guidance_service import EarconPlayer, GuidanceDispatcher, HapticActuator, SpeechChannel, SpeechSink
from item_store import SQLiteItemStore
from models import BoundingBox
from regions import RegionProposer
from scheduler import Scheduler, TimerHandle
from search_session import SearchSessionController


# ----------------------------------------------------------------------
# Models
# ----------------------------------------------------------------------

class PooledEmbedder(torch.nn.Module):
    """12-D embedding: 2x2 average pool per channel."""

    def forward(self, x):
        return torch.flatten(F.adaptive_avg_pool2d(x, 2), 1)


class ZeroEmbedder(torch.nn.Module):
    def forward(self, x):
        return torch.zeros(x.shape[0], 8)


def scripted_bytes(module: torch.nn.Module) -> bytes:
    buffer = io.BytesIO()
    torch.jit.save(torch.jit.script(module), buffer)
    return buffer.getvalue()


@pytest.fixture(scope="session")
def pooled_model_bytes():
    return scripted_bytes(PooledEmbedder())


@pytest.fixture(scope="session")
def zero_model_bytes():
    return scripted_bytes(ZeroEmbedder())


# ----------------------------------------------------------------------
# Images
# ----------------------------------------------------------------------

@pytest.fixture
def noise_image():
    """Generate a 200x200 random noise image."""
    rng = np.random.RandomState(42)
    return rng.randint(0, 255, (200, 200, 3), dtype=np.uint8)


@pytest.fixture
def teaching_photos():
    """12 distinct synthetic photos of the same-sized object."""
    photos = []
    for seed in range(12):
        rng = np.random.RandomState(seed)
        img = np.ones((240, 320, 3), dtype=np.uint8) * 220
        img[60:180, 100:220] = rng.randint(0, 255, 3, dtype=np.uint8)
        photos.append(img)
    return photos


def painted_frame(regions: Dict[int, BoundingBox], size: int = 100) -> np.ndarray:
    """Frame whose pixels inside each box hold the box's marker value."""
    frame = np.zeros((size, size, 3), dtype=np.uint8)
    for marker, box in regions.items():
        x1, y1 = int(round(box.x * size)), int(round(box.y * size))
        x2, y2 = int(round((box.x + box.width) * size)), int(round((box.y + box.height) * size))
        frame[y1:y2, x1:x2] = marker
    return frame


def unit(vector) -> np.ndarray:
    vector = np.asarray(vector, dtype=np.float32)
    return vector / np.linalg.norm(vector)


# ----------------------------------------------------------------------
# Fakes
# ----------------------------------------------------------------------

class MarkerEngine:
    """
    Embedding engine stand-in: the top-left pixel of a region selects its
    vector, so tests control exactly what each crop matches.
    """

    def __init__(self, vectors: Dict[int, np.ndarray], default: Optional[np.ndarray] = None, dim: int = 4):
        self.vectors = vectors
        self.default = default if default is not None else np.zeros(dim, dtype=np.float32)
        self.fail_load = False
        self.load_calls = 0
        self.embed_calls = 0
        self.gate: Optional[asyncio.Event] = None

    async def load_model(self) -> bool:
        self.load_calls += 1
        if self.fail_load:
            raise ModelUnavailableError("Model unavailable: all backends failed")
        return True

    async def embed(self, region: np.ndarray) -> Embedding:
        self.embed_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        vector = np.asarray(self.vectors.get(int(region[0, 0, 0]), self.default), dtype=np.float32)
        magnitude = float(np.linalg.norm(vector))
        if magnitude > 0:
            vector = vector / magnitude
        return Embedding(vector=vector, magnitude=magnitude)


class FixedProposer(RegionProposer):
    def __init__(self, boxes: List[BoundingBox]):
        self.boxes = boxes
        self.calls = 0

    def propose(self, frame):
        self.calls += 1
        return list(self.boxes)


class FailingProposer(RegionProposer):
    def propose(self, frame):
        raise RuntimeError("detector crashed")


class RecordingSpeechSink(SpeechSink):
    def __init__(self):
        self.spoken: List[str] = []
        self.cancels = 0

    async def speak(self, utterance_id: str, text: str):
        self.spoken.append(text)

    async def cancel_all(self):
        self.cancels += 1


class RecordingEarconPlayer(EarconPlayer):
    def __init__(self):
        self.cues = []

    async def play_directional_cue(self, direction, pan, intensity):
        self.cues.append((direction, pan, intensity))


class RecordingHaptics(HapticActuator):
    def __init__(self, supports_vibration: bool = True):
        self.supports_vibration = supports_vibration
        self.patterns: List[List[int]] = []

    async def vibrate(self, pattern):
        self.patterns.append(pattern)


# ----------------------------------------------------------------------
# Virtual scheduler
# ----------------------------------------------------------------------

class _VirtualTimer(TimerHandle):
    def __init__(self, due: float, callback: Callable[[], None], interval: Optional[float]):
        self.due = due
        self.callback = callback
        self.interval = interval
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class VirtualScheduler(Scheduler):
    """Scheduler driven by advance() instead of the wall clock."""

    def __init__(self):
        self.time = 0.0
        self.timers: List[_VirtualTimer] = []

    def now(self) -> float:
        return self.time

    def call_later(self, delay, callback):
        timer = _VirtualTimer(self.time + delay, callback, None)
        self.timers.append(timer)
        return timer

    def call_every(self, interval, callback):
        timer = _VirtualTimer(self.time + interval, callback, interval)
        self.timers.append(timer)
        return timer

    @property
    def active_timers(self) -> List[_VirtualTimer]:
        return [t for t in self.timers if not t.cancelled]

    async def advance(self, seconds: float, settle=None):
        """
        Fire every timer due within `seconds`, in time order.

        settle (an async callable) runs after each callback so work the
        callback spawned can finish before the next timer fires.
        """
        end = self.time + seconds
        while True:
            due = [t for t in self.active_timers if t.due <= end + 1e-9]
            if not due:
                break
            timer = min(due, key=lambda t: t.due)
            self.time = timer.due
            if timer.interval is None:
                timer.cancelled = True
            else:
                timer.due += timer.interval
            timer.callback()
            await asyncio.sleep(0)
            if settle is not None:
                await settle()
        self.time = end
        self.timers = self.active_timers


async def settle_controller(controller: SearchSessionController):
    """Let the in-flight tick and any follow-up transition tasks finish."""
    await controller.drain()
    await asyncio.sleep(0.01)


# ----------------------------------------------------------------------
# Controller wiring
# ----------------------------------------------------------------------

@pytest.fixture
def item_store(tmp_path):
    return SQLiteItemStore(str(tmp_path / "items.db"))


@pytest.fixture
def scheduler():
    return VirtualScheduler()


@pytest.fixture
def speech_sink():
    return RecordingSpeechSink()


@pytest.fixture
def earcons():
    return RecordingEarconPlayer()


@pytest.fixture
def haptics():
    return RecordingHaptics()


@pytest.fixture
def dispatcher(speech_sink, earcons, haptics):
    return GuidanceDispatcher(
        SpeechChannel(speech_sink),
        earcons,
        haptics,
        voice_probability=0.0,
        rng=random.Random(0),
    )


@pytest.fixture
def signals():
    return []


class FrameHolder:
    """Frame source whose current frame tests can swap."""

    def __init__(self, frame=None):
        self.frame = frame

    def __call__(self):
        return self.frame


@pytest.fixture
def frames():
    return FrameHolder()


@pytest.fixture
def make_controller(item_store, dispatcher, scheduler, signals, frames):
    """Factory for controllers sharing the recording outputs above."""

    def _make(engine, frame=None, proposer=None, config=None, label_limiter=None):
        def on_signal(name, payload):
            signals.append((name, payload))

        controller = SearchSessionController(
            engine=engine,
            store=item_store,
            dispatcher=dispatcher,
            frame_source=frames,
            config=config or FinderConfig(),
            scheduler=scheduler,
            proposer=proposer or FixedProposer([]),
            label_limiter=label_limiter,
            on_signal=on_signal,
        )
        if frame is not None:
            frames.frame = frame
        return controller

    return _make
