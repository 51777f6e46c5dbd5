"""
Search Session Controller

Owns the idle/teach/search state machine and the search loop:

    frame -> region proposals -> embeddings -> match -> spatial -> guidance

Search ticks fire at target_fps through an injected Scheduler. At most one
tick runs at a time (a tick that fires while the previous one is still
running is skipped), and every search session carries a generation number
so results that arrive after the session stopped are dropped.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import numpy as np

from cloud_guard import is_illegal_item_label
from config import FinderConfig
from embedding_service import EmbeddingService, ModelUnavailableError
from guidance_service import GuidanceDispatcher
from item_store import ItemStore
from models import LearnedItem, SearchResult, SessionMode, TransitionResult
from rate_limiter import RateLimiter
from regions import GridRegionProposer, RegionProposer, center_square, crop_region
from scheduler import AsyncioScheduler, Scheduler, TimerHandle
from similarity import match
from spatial import classify

logger = logging.getLogger(__name__)

FrameSource = Callable[[], Optional[np.ndarray]]
SignalHandler = Callable[[str, Dict[str, Any]], Optional[Awaitable[None]]]


class SearchSessionController:
    """
    Single owner of the camera session mode.

    Transitions return TransitionResult values instead of raising; the
    reason strings ("not_idle", "quota_exceeded", "unknown_item", ...) are
    what the server forwards to the client.
    """

    def __init__(
        self,
        engine: EmbeddingService,
        store: ItemStore,
        dispatcher: GuidanceDispatcher,
        frame_source: FrameSource,
        config: Optional[FinderConfig] = None,
        scheduler: Optional[Scheduler] = None,
        proposer: Optional[RegionProposer] = None,
        label_limiter: Optional[RateLimiter] = None,
        label_key: str = "item_label",
        on_signal: Optional[SignalHandler] = None,
    ):
        self.engine = engine
        self.store = store
        self.dispatcher = dispatcher
        self.frame_source = frame_source
        self.config = config or FinderConfig()
        self.scheduler = scheduler or AsyncioScheduler()
        self.proposer = proposer or GridRegionProposer(self.config.grid_size)
        self.label_limiter = label_limiter
        # Limiter key; a limiter shared across connections counts per client
        self.label_key = label_key
        self.on_signal = on_signal

        self.mode = SessionMode.IDLE
        self.selected_item: Optional[LearnedItem] = None
        self.current_result: Optional[SearchResult] = None

        # User toggles
        self.audio_enabled = True
        self.haptics_enabled = True
        self.low_power = False

        # Teaching state
        self._teach_name: Optional[str] = None
        self._teach_embeddings: List[np.ndarray] = []

        # Search loop state
        self.generation = 0
        self.session_started_at: Optional[float] = None
        self._tick_handle: Optional[TimerHandle] = None
        self._timeout_handle: Optional[TimerHandle] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._timeout_task: Optional[asyncio.Task] = None
        self._transition_lock = asyncio.Lock()

        # Tick statistics
        self.ticks_run = 0
        self.skipped_ticks = 0
        self.failed_ticks = 0
        self.consecutive_failures = 0

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def current_fps(self) -> float:
        return self.config.low_power_fps if self.low_power else self.config.target_fps

    @property
    def teach_progress(self) -> int:
        return len(self._teach_embeddings)

    async def _signal(self, name: str, payload: Optional[Dict[str, Any]] = None):
        if self.on_signal is None:
            return
        try:
            outcome = self.on_signal(name, payload or {})
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.error(f"Signal handler failed for '{name}': {e}", exc_info=True)

    async def _ensure_model(self) -> Optional[str]:
        """Return None when the embedding model is usable, else a reason."""
        try:
            await self.engine.load_model()
            return None
        except ModelUnavailableError as e:
            logger.error(f"✗ Model unavailable: {e}")
            return "model_unavailable"

    # ------------------------------------------------------------------
    # Teach mode
    # ------------------------------------------------------------------

    async def start_teaching(self, name: str) -> TransitionResult:
        """idle -> teach. Blocked by quota, illegal labels and a missing model."""
        async with self._transition_lock:
            if self.mode != SessionMode.IDLE:
                return TransitionResult(False, "not_idle")

            name = (name or "").strip()
            if not name:
                return TransitionResult(False, "invalid_name")

            if self.label_limiter is not None and not self.label_limiter.is_allowed(self.label_key):
                return TransitionResult(False, "rate_limited")

            if is_illegal_item_label(name):
                logger.warning(f"Rejected disallowed item label: '{name}'")
                return TransitionResult(False, "illegal_item")

            # Re-teaching an existing name replaces it, so it does not count against the quota
            existing = self.store.get_by_name(name)
            item_count = len(self.store.list())
            if existing is None and item_count >= self.config.max_learned_items:
                payload = {"limit": self.config.max_learned_items, "count": item_count}
                await self._signal("quota_exceeded", payload)
                return TransitionResult(False, "quota_exceeded", payload)

            reason = await self._ensure_model()
            if reason:
                return TransitionResult(False, reason)

            self.mode = SessionMode.TEACH
            self._teach_name = name
            self._teach_embeddings = []
            logger.info(f"📸 Teaching started: '{name}'")
            return TransitionResult(True, payload={"name": name, "replaces": existing.item_id if existing else None})

    async def add_teaching_photo(self, image: np.ndarray) -> int:
        """
        Embed one teaching photo.

        Returns:
            Number of photos captured so far

        Raises:
            ValueError: If not in teach mode or the photo is unusable
        """
        if self.mode != SessionMode.TEACH:
            raise ValueError("Not in teach mode")

        name = self._teach_name
        embedding = await self.engine.embed(center_square(image))

        # Teaching was cancelled or completed while the photo was embedding
        if self.mode != SessionMode.TEACH or self._teach_name != name:
            logger.debug("Discarding teaching photo from an ended session")
            return len(self._teach_embeddings)

        if not embedding.is_normalized:
            raise ValueError("Photo produced an empty embedding")

        if self._teach_embeddings and embedding.vector.size != self._teach_embeddings[0].size:
            raise ValueError("Photo embedding dimension does not match earlier photos")

        self._teach_embeddings.append(embedding.vector)
        logger.info(f"📸 Teaching photo {len(self._teach_embeddings)} captured for '{name}'")
        return len(self._teach_embeddings)

    async def complete_teaching(self) -> TransitionResult:
        """teach -> idle, persisting the learned item."""
        async with self._transition_lock:
            if self.mode != SessionMode.TEACH:
                return TransitionResult(False, "not_teaching")

            if len(self._teach_embeddings) < max(1, self.config.min_teaching_photos):
                return TransitionResult(False, "not_enough_photos", {"photo_count": len(self._teach_embeddings)})

            item = LearnedItem.create(self._teach_name, list(self._teach_embeddings))

            existing = self.store.get_by_name(item.name)
            if existing is not None:
                self.store.delete(existing.item_id)
                logger.info(f"Replacing previously taught '{existing.name}' ({existing.photo_count} photos)")
            self.store.save(item)

            self.mode = SessionMode.IDLE
            self._teach_name = None
            self._teach_embeddings = []

            logger.info(f"✓ Taught '{item.name}' from {item.photo_count} photos ({item.dimension}D)")
            await self._signal("teach_complete", item.summary())
            return TransitionResult(True, payload=item.summary())

    async def cancel_teaching(self) -> TransitionResult:
        """teach -> idle, discarding captured photos."""
        async with self._transition_lock:
            if self.mode != SessionMode.TEACH:
                return TransitionResult(False, "not_teaching")

            logger.info(f"Teaching cancelled for '{self._teach_name}'")
            self.mode = SessionMode.IDLE
            self._teach_name = None
            self._teach_embeddings = []
            return TransitionResult(True)

    # ------------------------------------------------------------------
    # Search mode
    # ------------------------------------------------------------------

    async def start_search(self, item_id: str) -> TransitionResult:
        """idle -> search for a known learned item."""
        async with self._transition_lock:
            if self.mode != SessionMode.IDLE:
                return TransitionResult(False, "not_idle")

            item = self.store.get(item_id) if item_id else None
            if item is None:
                return TransitionResult(False, "unknown_item")

            reason = await self._ensure_model()
            if reason:
                return TransitionResult(False, reason)

            self.mode = SessionMode.SEARCH
            self.selected_item = item
            self.current_result = None
            self.generation += 1
            self.consecutive_failures = 0
            self.session_started_at = self.scheduler.now()
            self.dispatcher.reset()

            self._arm_tick()
            self._timeout_handle = self.scheduler.call_later(
                self.config.session_timeout_seconds, self._on_timeout
            )

            logger.info(f"🔍 Search started for '{item.name}' @ {self.current_fps:g} FPS (generation {self.generation})")

            if self.audio_enabled:
                await self.dispatcher.announce_text(f"Searching for {item.name}")
            await self._signal("search_started", item.summary())
            return TransitionResult(True, payload=item.summary())

    async def stop_search(self) -> TransitionResult:
        """search -> idle on explicit user request."""
        async with self._transition_lock:
            if self.mode != SessionMode.SEARCH:
                return TransitionResult(False, "not_searching")
            await self._end_search("stopped")
            return TransitionResult(True)

    def _arm_tick(self):
        if self._tick_handle is not None:
            self._tick_handle.cancel()
        self._tick_handle = self.scheduler.call_every(1.0 / self.current_fps, self._on_tick)

    def _cancel_timers(self):
        if self._tick_handle is not None:
            self._tick_handle.cancel()
            self._tick_handle = None
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None

    async def _end_search(self, reason: str):
        self._cancel_timers()
        item = self.selected_item

        # Any tick still in flight now belongs to a stale generation
        self.generation += 1
        self.mode = SessionMode.IDLE
        self.selected_item = None
        self.current_result = None
        self.session_started_at = None

        logger.info(
            f"🛑 Search {reason} for '{item.name if item else '?'}' | "
            f"ticks={self.ticks_run} skipped={self.skipped_ticks} failed={self.failed_ticks}"
        )

        await self.dispatcher.silence()
        if self.audio_enabled:
            await self.dispatcher.announce_text("Search stopped")

        signal = "search_timeout" if reason == "timeout" else "search_stopped"
        await self._signal(signal, {"item_id": item.item_id if item else None, "reason": reason})

    def _on_timeout(self):
        # Stop ticking right away; the async part of the transition follows
        generation = self.generation
        if self._tick_handle is not None:
            self._tick_handle.cancel()
            self._tick_handle = None
        self._timeout_task = asyncio.get_running_loop().create_task(self._timeout(generation))

    async def _timeout(self, generation: int):
        async with self._transition_lock:
            if self.mode == SessionMode.SEARCH and self.generation == generation:
                await self._end_search("timeout")

    def set_low_power(self, enabled: bool):
        """Battery saver: lower the tick rate, re-arming a running session."""
        if self.low_power == enabled:
            return
        self.low_power = enabled
        logger.info(f"🔋 Low power {'on' if enabled else 'off'} -> {self.current_fps:g} FPS")
        if self.mode == SessionMode.SEARCH and self._tick_handle is not None:
            self._arm_tick()

    def set_guidance(self, audio_enabled: Optional[bool] = None, haptics_enabled: Optional[bool] = None):
        if audio_enabled is not None:
            self.audio_enabled = audio_enabled
        if haptics_enabled is not None:
            self.haptics_enabled = haptics_enabled

    # ------------------------------------------------------------------
    # Tick pipeline
    # ------------------------------------------------------------------

    def _on_tick(self):
        if self.mode != SessionMode.SEARCH or self.selected_item is None:
            return

        if self._tick_task is not None and not self._tick_task.done():
            self.skipped_ticks += 1
            return

        self._tick_task = asyncio.get_running_loop().create_task(
            self._run_tick(self.generation, self.selected_item)
        )

    async def drain(self):
        """Wait for the in-flight tick and timeout transition (if any) to finish."""
        tasks = [task for task in (self._tick_task, self._timeout_task) if task is not None]
        self._timeout_task = None
        for outcome in await asyncio.gather(*tasks, return_exceptions=True):
            if isinstance(outcome, Exception):
                logger.error(f"Background search task failed: {outcome}")

    async def _run_tick(self, generation: int, item: LearnedItem):
        self.ticks_run += 1
        try:
            result = await self._process_frame(generation, item)
        except Exception as e:
            self.failed_ticks += 1
            self.consecutive_failures += 1
            logger.error(f"Tick failed, treating as no detection: {e}", exc_info=True)
            if self.consecutive_failures % self.config.failure_warning_threshold == 0:
                logger.warning(f"⚠️ {self.consecutive_failures} consecutive search ticks failed")
            if generation == self.generation:
                self.current_result = None
            return

        self.consecutive_failures = 0

        if generation != self.generation or self.mode != SessionMode.SEARCH:
            logger.debug(f"Discarding stale tick result (generation {generation})")
            return

        self.current_result = result
        if result is None:
            return

        await self.dispatcher.announce(
            result,
            audio_enabled=self.audio_enabled,
            haptics_enabled=self.haptics_enabled,
            item_name=item.name,
        )
        await self._signal("result", result.to_payload())

    async def _process_frame(self, generation: int, item: LearnedItem) -> Optional[SearchResult]:
        frame = self.frame_source()
        if frame is None:
            return None

        boxes = await asyncio.to_thread(self.proposer.propose, frame)

        best_score = None
        best_box = None
        for box in boxes:
            embedding = await self.engine.embed(crop_region(frame, box))
            if generation != self.generation:
                return None
            if not embedding.is_normalized:
                continue

            result = match(embedding.vector, item.embeddings)
            if result.matched and (best_score is None or result.best_score > best_score):
                best_score = result.best_score
                best_box = box

        if best_box is None:
            return None

        spatial = classify(best_box.center_x)
        return SearchResult(
            confidence=min(max(best_score, 0.0), 1.0),
            bounding_box=best_box,
            distance=spatial.distance,
            direction=spatial.direction,
        )

    # ------------------------------------------------------------------
    # Item management
    # ------------------------------------------------------------------

    def list_items(self) -> List[LearnedItem]:
        return self.store.list()

    async def delete_item(self, item_id: str) -> bool:
        """Delete a learned item, stopping a search that targets it."""
        if self.mode == SessionMode.SEARCH and self.selected_item and self.selected_item.item_id == item_id:
            await self.stop_search()
        return self.store.delete(item_id)
