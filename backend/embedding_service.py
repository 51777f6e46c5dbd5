"""
On-device Embedding Engine

Loads a TorchScript feature extractor (MobileNetV2-style, 224x224 input) and
turns image regions into L2-normalized embedding vectors.

Backends are tried fastest-first (CUDA -> MPS -> CPU). The first backend
that builds a working session is adopted. If every backend fails the engine
is permanently unavailable: embed() raises instead of returning mock output.
"""

import asyncio
import io
import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import cv2
import numpy as np
import torch

from config import EmbeddingConfig

logger = logging.getLogger(__name__)


class ModelUnavailableError(RuntimeError):
    """The embedding model could not be loaded on any backend."""


class EngineState(Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


@dataclass
class Embedding:
    """Embedding vector plus the raw output magnitude before normalization."""
    vector: np.ndarray
    magnitude: float

    @property
    def is_normalized(self) -> bool:
        return self.magnitude > 0


class InferenceSession:
    """A model bound to one device."""

    def __init__(self, module: torch.jit.ScriptModule, device: str):
        self.module = module
        self.device = device

    def run(self, input_tensor: np.ndarray) -> np.ndarray:
        with torch.no_grad():
            inputs = torch.from_numpy(input_tensor).to(self.device)
            output = self.module(inputs)
            if isinstance(output, (tuple, list)):
                output = output[0]
            return output.detach().float().cpu().numpy()

    def release(self):
        self.module = None
        if self.device == "cuda":
            torch.cuda.empty_cache()


class BackendProvider:
    """Creates an inference session from serialized model bytes."""

    name: str = "base"

    def is_available(self) -> bool:
        raise NotImplementedError

    def create_session(self, model_bytes: bytes) -> InferenceSession:
        raise NotImplementedError


class TorchBackend(BackendProvider):
    """TorchScript session on a torch device ("cuda", "mps" or "cpu")."""

    def __init__(self, device: str):
        self.device = device
        self.name = device

    def is_available(self) -> bool:
        if self.device == "cuda":
            return torch.cuda.is_available()
        if self.device == "mps":
            return hasattr(torch.backends, "mps") and torch.backends.mps.is_available() and torch.backends.mps.is_built()
        return self.device == "cpu"

    def create_session(self, model_bytes: bytes) -> InferenceSession:
        module = torch.jit.load(io.BytesIO(model_bytes), map_location=self.device)
        module.eval()
        return InferenceSession(module, self.device)


def default_backends(names: Sequence[str]) -> List[BackendProvider]:
    return [TorchBackend(name) for name in names]


def file_model_loader(model_path: Optional[str]) -> Callable[[], bytes]:
    """Loader reading TorchScript bytes from disk."""
    def _load() -> bytes:
        if not model_path:
            raise FileNotFoundError("No embedding model configured (set FINDER_MODEL_PATH)")
        return Path(model_path).read_bytes()
    return _load


class EmbeddingService:
    """
    Explicitly owned embedding engine with a single-initialization guard.

    One instance is created by the server and shared by teach and search
    modes. load_model() is idempotent: concurrent callers wait on the same
    attempt, and a failed attempt is never retried.
    """

    def __init__(
        self,
        config: Optional[EmbeddingConfig] = None,
        model_loader: Optional[Callable[[], bytes]] = None,
        backends: Optional[Sequence[BackendProvider]] = None,
    ):
        self.config = config or EmbeddingConfig()
        self.model_loader = model_loader or file_model_loader(self.config.model_path)
        self.backends = list(backends) if backends is not None else default_backends(self.config.backends)

        self.state = EngineState.UNLOADED
        self.backend_name: Optional[str] = None
        self.failure_reason: Optional[str] = None

        self._session: Optional[InferenceSession] = None
        self._load_lock = asyncio.Lock()
        self._in_flight = 0

        self._mean = np.array(self.config.mean, dtype=np.float32).reshape(1, 1, 3)
        self._std = np.array(self.config.std, dtype=np.float32).reshape(1, 1, 3)

        self.inference_times: deque[float] = deque(maxlen=self.config.timing_history)

    @property
    def is_ready(self) -> bool:
        return self.state == EngineState.READY

    @property
    def avg_inference_ms(self) -> float:
        if not self.inference_times:
            return 0.0
        return sum(self.inference_times) / len(self.inference_times)

    async def load_model(self) -> bool:
        """
        Load the model on the first backend that works.

        Returns:
            True once the engine is ready

        Raises:
            ModelUnavailableError: If every backend failed (now or earlier)
        """
        async with self._load_lock:
            if self.state == EngineState.READY:
                return True
            if self.state == EngineState.FAILED:
                raise ModelUnavailableError(f"Model unavailable: {self.failure_reason}")

            self.state = EngineState.LOADING
            logger.info("Loading embedding model...")

            try:
                model_bytes = await asyncio.to_thread(self.model_loader)
            except Exception as e:
                self._fail(f"model load failed: {e}")
                raise ModelUnavailableError(f"Model unavailable: {self.failure_reason}") from e

            last_error: Optional[Exception] = None
            for backend in self.backends:
                try:
                    if not backend.is_available():
                        logger.info(f"Backend {backend.name} not available, skipping")
                        continue
                    session = await asyncio.to_thread(self._create_and_warm_up, backend, model_bytes)
                except Exception as e:
                    last_error = e
                    logger.warning(f"✗ Backend {backend.name} failed: {e}")
                    continue

                self._session = session
                self.backend_name = backend.name
                self.state = EngineState.READY
                logger.info(f"✓ Embedding model loaded with {backend.name.upper()} backend")
                return True

            self._fail(f"all backends failed (last error: {last_error})")
            raise ModelUnavailableError(f"Model unavailable: {self.failure_reason}")

    def _fail(self, reason: str):
        self.state = EngineState.FAILED
        self.failure_reason = reason
        logger.error(f"✗ CRITICAL: embedding engine {reason}")

    def _create_and_warm_up(self, backend: BackendProvider, model_bytes: bytes) -> InferenceSession:
        session = backend.create_session(model_bytes)
        size = self.config.input_size
        session.run(np.zeros((1, 3, size, size), dtype=np.float32))
        return session

    def preprocess(self, image: np.ndarray) -> np.ndarray:
        """
        Resize to the model input size, apply per-channel mean/std and
        return a (1, 3, H, W) float32 tensor.

        Args:
            image: RGB array (H x W x 3) or grayscale (H x W), uint8
        """
        if not isinstance(image, np.ndarray) or image.size == 0:
            raise ValueError("Image region must be a non-empty numpy array")

        if image.ndim == 2:
            image = np.stack([image] * 3, axis=-1)
        elif image.shape[2] == 4:
            image = image[:, :, :3]

        size = self.config.input_size
        resized = cv2.resize(image, (size, size), interpolation=cv2.INTER_AREA)
        normalized = (resized.astype(np.float32) / 255.0 - self._mean) / self._std
        return np.ascontiguousarray(normalized.transpose(2, 0, 1)[np.newaxis, ...], dtype=np.float32)

    def _infer(self, input_tensor: np.ndarray) -> np.ndarray:
        start_time = time.perf_counter()
        output = self._session.run(input_tensor)
        self.inference_times.append((time.perf_counter() - start_time) * 1000)
        return output

    async def embed(self, image_region: np.ndarray) -> Embedding:
        """
        Produce an embedding for an image region.

        Lazily loads the model on first use. The vector is L2-normalized
        unless the raw output magnitude is zero.

        Raises:
            ModelUnavailableError: If the model could not be loaded
            ValueError: If the region is empty
        """
        if self.state != EngineState.READY:
            await self.load_model()

        input_tensor = self.preprocess(image_region)

        self._in_flight += 1
        try:
            output = await asyncio.to_thread(self._infer, input_tensor)
        finally:
            self._in_flight -= 1

        vector = np.asarray(output, dtype=np.float32).ravel()
        magnitude = float(np.linalg.norm(vector))
        if magnitude > 0:
            vector = vector / magnitude

        logger.debug(f"⚡ Embedding {vector.size}D in {self.inference_times[-1]:.1f}ms (avg {self.avg_inference_ms:.1f}ms)")
        return Embedding(vector=vector, magnitude=magnitude)

    def dispose(self):
        """
        Release the inference session.

        Raises:
            RuntimeError: If an inference is still running
        """
        if self._in_flight:
            raise RuntimeError("Cannot dispose embedding engine while inference is in flight")

        if self._session is not None:
            self._session.release()
            self._session = None

        if self.state == EngineState.READY:
            self.state = EngineState.UNLOADED
            self.backend_name = None
            logger.info("Embedding engine disposed")
