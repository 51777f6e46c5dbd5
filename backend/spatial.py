"""
Maps a horizontal detection position to direction and distance categories.

Distance here is proximity to frame center, which is what the user is
steering toward while panning the camera.
"""

from dataclasses import dataclass

from models import Direction, DistanceBand

LEFT_EDGE = 0.4
RIGHT_EDGE = 0.6


@dataclass(frozen=True)
class SpatialClassification:
    direction: Direction
    distance: DistanceBand


def classify_direction(x: float) -> Direction:
    if x < LEFT_EDGE:
        return Direction.LEFT
    if x > RIGHT_EDGE:
        return Direction.RIGHT
    return Direction.CENTER


def classify_distance(x: float) -> DistanceBand:
    # Bands are nested, tightest first
    if 0.4 <= x <= 0.6:
        return DistanceBand.VERY_CLOSE
    if 0.3 <= x <= 0.7:
        return DistanceBand.CLOSE
    if 0.2 <= x <= 0.8:
        return DistanceBand.MEDIUM
    return DistanceBand.FAR


def classify(x: float) -> SpatialClassification:
    """Classify a normalized x position (0 = left edge, 1 = right edge)."""
    return SpatialClassification(
        direction=classify_direction(x),
        distance=classify_distance(x),
    )
