"""
Guidance Dispatcher

Turns a search result into a stereo earcon, occasional spoken directions
and a haptic pattern. The actual output devices live on the client; this
module talks to them through small sink interfaces (see server.py for the
Socket.IO implementations).
"""

import logging
import random
import uuid
from typing import Dict, List, Optional

from cloud_guard import sanitize_tts_output
from models import Direction, DistanceBand, SearchResult
from rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

PAN_BY_DIRECTION: Dict[Direction, float] = {
    Direction.LEFT: -0.8,
    Direction.CENTER: 0.0,
    Direction.RIGHT: 0.8,
}

INTENSITY_BY_DISTANCE: Dict[DistanceBand, float] = {
    DistanceBand.VERY_CLOSE: 1.0,
    DistanceBand.CLOSE: 0.7,
    DistanceBand.MEDIUM: 0.4,
    DistanceBand.FAR: 0.2,
}

# Vibration patterns: alternating pulse/pause durations in ms
HAPTIC_PATTERNS: Dict[DistanceBand, List[int]] = {
    DistanceBand.VERY_CLOSE: [100, 50, 100, 50, 100],  # Rapid pulses
    DistanceBand.CLOSE: [150, 100, 150],
    DistanceBand.MEDIUM: [200, 200, 200],
    DistanceBand.FAR: [300],  # Single long pulse
}

DIRECTION_PHRASES: Dict[Direction, str] = {
    Direction.LEFT: "Turn left",
    Direction.RIGHT: "Turn right",
    Direction.CENTER: "Straight ahead",
}

DISTANCE_PHRASES: Dict[DistanceBand, str] = {
    DistanceBand.VERY_CLOSE: "Very close",
    DistanceBand.CLOSE: "Close",
    DistanceBand.MEDIUM: "Getting warmer",
    DistanceBand.FAR: "Keep searching",
}


def pan_for(direction: Direction) -> float:
    return PAN_BY_DIRECTION[direction]


def intensity_for(distance: DistanceBand) -> float:
    return INTENSITY_BY_DISTANCE[distance]


def haptic_pattern_for(distance: DistanceBand) -> List[int]:
    return list(HAPTIC_PATTERNS.get(distance, [100]))


def direction_text(direction: Direction, distance: DistanceBand) -> str:
    return f"{DIRECTION_PHRASES[direction]}. {DISTANCE_PHRASES[distance]}."


class SpeechSink:
    """Speech synthesis device."""

    async def speak(self, utterance_id: str, text: str):
        raise NotImplementedError

    async def cancel_all(self):
        raise NotImplementedError


class EarconPlayer:
    """Non-verbal directional audio cue output."""

    async def play_directional_cue(self, direction: Direction, pan: float, intensity: float):
        raise NotImplementedError


class HapticActuator:
    """Pattern vibration output; only used when supports_vibration is True."""

    supports_vibration: bool = False

    async def vibrate(self, pattern: List[int]):
        raise NotImplementedError


class SpeechChannel:
    """
    Single-utterance speech channel with cancel-and-replace semantics.

    Starting a new utterance cancels whatever is still pending, so calling
    speak() on every tick never builds up a queue.
    """

    def __init__(self, sink: SpeechSink, limiter: Optional[RateLimiter] = None):
        self.sink = sink
        self.limiter = limiter
        self.active_utterance: Optional[str] = None

    async def speak(self, text: str, essential: bool = False) -> Optional[str]:
        """
        Speak sanitized text, replacing any active utterance.

        Non-essential speech is subject to the rate limiter (if any).

        Returns:
            utterance id, or None if nothing was spoken
        """
        text = sanitize_tts_output(text)
        if not text:
            return None

        if not essential and self.limiter is not None and not self.limiter.is_allowed("tts_speak"):
            logger.debug(f"Speech rate limited: '{text}'")
            return None

        if self.active_utterance is not None:
            await self.sink.cancel_all()

        utterance_id = uuid.uuid4().hex
        self.active_utterance = utterance_id
        await self.sink.speak(utterance_id, text)
        return utterance_id

    def utterance_finished(self, utterance_id: str):
        """Release the channel when the device reports the utterance ended."""
        if self.active_utterance == utterance_id:
            self.active_utterance = None

    async def cancel_all(self):
        self.active_utterance = None
        await self.sink.cancel_all()


class GuidanceDispatcher:
    """
    Converts SearchResults into earcons, speech and haptics.

    voice_probability and rng control the occasional spoken direction; pass
    a seeded random.Random (or probability 0/1) for deterministic behavior.
    """

    def __init__(
        self,
        speech: SpeechChannel,
        earcons: EarconPlayer,
        haptics: HapticActuator,
        voice_probability: float = 0.2,
        found_confidence: float = 0.85,
        rng: Optional[random.Random] = None,
    ):
        self.speech = speech
        self.earcons = earcons
        self.haptics = haptics
        self.voice_probability = voice_probability
        self.found_confidence = found_confidence
        self.rng = rng or random.Random()
        self._found_announced = False

    def reset(self):
        """Re-arm the one-shot "found" announcement (new search session)."""
        self._found_announced = False

    async def announce(
        self,
        result: SearchResult,
        audio_enabled: bool = True,
        haptics_enabled: bool = True,
        item_name: Optional[str] = None,
    ):
        """
        Emit guidance for one search result.

        Each output is attempted independently; a failing device is logged
        and does not stop the others.
        """
        if audio_enabled:
            pan = pan_for(result.direction)
            intensity = intensity_for(result.distance)
            try:
                await self.earcons.play_directional_cue(result.direction, pan, intensity)
            except Exception as e:
                logger.error(f"Earcon output failed: {e}")

            try:
                if result.confidence > self.found_confidence and not self._found_announced:
                    self._found_announced = True
                    await self.speech.speak(f"Found {item_name or 'item'}", essential=True)
                elif self.rng.random() < self.voice_probability:
                    await self.speech.speak(direction_text(result.direction, result.distance))
            except Exception as e:
                logger.error(f"Speech output failed: {e}")

        if haptics_enabled and self.haptics.supports_vibration:
            try:
                await self.haptics.vibrate(haptic_pattern_for(result.distance))
            except Exception as e:
                logger.error(f"Haptic output failed: {e}")

    async def announce_text(self, text: str) -> Optional[str]:
        """Essential spoken announcement (search started/stopped)."""
        try:
            return await self.speech.speak(text, essential=True)
        except Exception as e:
            logger.error(f"Speech output failed: {e}")
            return None

    async def silence(self):
        try:
            await self.speech.cancel_all()
        except Exception as e:
            logger.error(f"Speech cancel failed: {e}")
