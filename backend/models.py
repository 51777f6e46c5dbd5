"""
Shared data types for the item finder.

LearnedItem is what teach mode produces; SearchResult is what each search
tick produces. Both are plain dataclasses so they can be emitted to the
client with dataclasses.asdict()-style helpers.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

import numpy as np


class SessionMode(Enum):
    """Camera session modes, owned by SearchSessionController."""
    IDLE = "idle"
    TEACH = "teach"
    SEARCH = "search"


class Direction(Enum):
    LEFT = "left"
    CENTER = "center"
    RIGHT = "right"


class DistanceBand(Enum):
    """Proximity bands, ordered from nearest to farthest."""
    VERY_CLOSE = "very_close"
    CLOSE = "close"
    MEDIUM = "medium"
    FAR = "far"


class CloudTask(Enum):
    """Tasks the cloud fallback is allowed to perform."""
    DESCRIBE_SCENE = "describe-scene"
    ANSWER_QUESTION = "answer-question"
    SUMMARIZE_USAGE = "summarize-usage"


@dataclass
class LearnedItem:
    """A taught object: one embedding per teaching photo, in capture order."""
    item_id: str
    name: str
    embeddings: List[np.ndarray]
    created_at: float
    photo_count: int

    @classmethod
    def create(cls, name: str, embeddings: List[np.ndarray]) -> "LearnedItem":
        """
        Build a new item from teaching embeddings.

        Raises:
            ValueError: If no embeddings were captured or dimensions differ
        """
        if not embeddings:
            raise ValueError("A learned item needs at least one embedding")

        dims = {int(np.asarray(e).size) for e in embeddings}
        if len(dims) != 1:
            raise ValueError(f"Embeddings have mixed dimensionality: {sorted(dims)}")

        return cls(
            item_id=str(uuid.uuid4()),
            name=name,
            embeddings=[np.asarray(e, dtype=np.float32).ravel() for e in embeddings],
            created_at=time.time(),
            photo_count=len(embeddings),
        )

    @property
    def dimension(self) -> int:
        return int(self.embeddings[0].size) if self.embeddings else 0

    def summary(self) -> dict:
        """Client-safe description (no vectors)."""
        return {
            "item_id": self.item_id,
            "name": self.name,
            "photo_count": self.photo_count,
            "created_at": self.created_at,
        }


@dataclass
class BoundingBox:
    """Normalized box, all values in [0, 1]."""
    x: float
    y: float
    width: float
    height: float

    @property
    def center_x(self) -> float:
        return self.x + self.width / 2

    @property
    def center_y(self) -> float:
        return self.y + self.height / 2

    def as_list(self) -> List[float]:
        return [self.x, self.y, self.width, self.height]


@dataclass
class SearchResult:
    """Transient per-tick detection of the searched item."""
    confidence: float
    bounding_box: BoundingBox
    distance: DistanceBand
    direction: Direction

    def to_payload(self) -> dict:
        return {
            "confidence": round(self.confidence, 3),
            "bounding_box": self.bounding_box.as_list(),
            "distance": self.distance.value,
            "direction": self.direction.value,
        }


@dataclass
class CloudRequest:
    """A request to offload description/detection to the remote model."""
    task: str
    input: str
    user_opted_in: bool
    image_base64: Optional[str] = None


@dataclass
class ValidationResult:
    valid: bool
    reason: Optional[str] = None


@dataclass
class TransitionResult:
    """Outcome of a session mode transition request."""
    ok: bool
    reason: Optional[str] = None
    payload: dict = field(default_factory=dict)
