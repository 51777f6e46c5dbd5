"""
Region proposals for search ticks.

A proposer yields normalized boxes worth embedding for a frame. The grid
proposer scans an N x N grid (optionally the full frame too); the YOLO proposer uses
class-agnostic detections and falls back to the grid when nothing is found.
"""

import logging
from typing import List, Optional

import numpy as np

from models import BoundingBox

logger = logging.getLogger(__name__)

FULL_FRAME = BoundingBox(0.0, 0.0, 1.0, 1.0)


def crop_region(frame: np.ndarray, box: BoundingBox) -> np.ndarray:
    """Cut a normalized box out of a frame (at least 1x1 pixel)."""
    h, w = frame.shape[:2]
    x1 = min(max(int(round(box.x * w)), 0), w - 1)
    y1 = min(max(int(round(box.y * h)), 0), h - 1)
    x2 = min(max(int(round((box.x + box.width) * w)), x1 + 1), w)
    y2 = min(max(int(round((box.y + box.height) * h)), y1 + 1), h)
    return frame[y1:y2, x1:x2]


def center_square(image: np.ndarray) -> np.ndarray:
    """Largest centered square crop; teaching photos frame the item in the middle."""
    h, w = image.shape[:2]
    side = min(h, w)
    top = (h - side) // 2
    left = (w - side) // 2
    return image[top:top + side, left:left + side]


class RegionProposer:
    def propose(self, frame: np.ndarray) -> List[BoundingBox]:
        raise NotImplementedError


class GridRegionProposer(RegionProposer):
    """Grid cells in row-major order, optionally preceded by the full frame."""

    def __init__(self, grid_size: int = 3, include_full_frame: bool = False):
        if grid_size < 1:
            raise ValueError("grid_size must be >= 1")
        self.grid_size = grid_size
        self.include_full_frame = include_full_frame

    def propose(self, frame: np.ndarray) -> List[BoundingBox]:
        cell = 1.0 / self.grid_size
        boxes = [FULL_FRAME] if self.include_full_frame else []
        for row in range(self.grid_size):
            for col in range(self.grid_size):
                boxes.append(BoundingBox(col * cell, row * cell, cell, cell))
        return boxes


class YoloRegionProposer(RegionProposer):
    """
    Uses YOLO boxes (any class) as candidate regions.

    The model is loaded lazily on first use so importing this module stays
    cheap; ultralytics is only needed when a YOLO model is configured.
    """

    def __init__(
        self,
        model_name: str = "yolo11s.pt",
        conf: float = 0.25,
        max_regions: int = 8,
        fallback: Optional[RegionProposer] = None,
        model=None,
    ):
        self.model_name = model_name
        self.conf = conf
        self.max_regions = max_regions
        self.fallback = fallback or GridRegionProposer()
        self._model = model

    def _get_model(self):
        if self._model is None:
            from ultralytics import YOLO

            logger.info(f"Loading YOLO region model {self.model_name}...")
            self._model = YOLO(self.model_name)
            logger.info(f"✓ {self.model_name} loaded")
        return self._model

    def propose(self, frame: np.ndarray) -> List[BoundingBox]:
        results = self._get_model()(frame, verbose=False, conf=self.conf, agnostic_nms=True)

        boxes: List[BoundingBox] = []
        if results and results[0].boxes is not None:
            # Highest-confidence detections first
            detections = sorted(
                results[0].boxes,
                key=lambda b: float(b.conf[0]),
                reverse=True,
            )
            for box in detections[: self.max_regions]:
                x1, y1, x2, y2 = (float(v) for v in box.xyxyn[0].cpu().numpy())
                if x2 <= x1 or y2 <= y1:
                    continue
                boxes.append(BoundingBox(x1, y1, x2 - x1, y2 - y1))

        if not boxes:
            logger.debug("No YOLO regions, falling back to grid scan")
            return self.fallback.propose(frame)

        return boxes
