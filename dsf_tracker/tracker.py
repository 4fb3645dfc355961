from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional, Protocol, Sequence

from dsf_tracker import __version__
from dsf_tracker.backend_client import BackendClient, TokenStore
from dsf_tracker.config import Settings
from dsf_tracker.eventlog.classify import LineClassifier
from dsf_tracker.eventlog.dialog import parse_misty_dialog
from dsf_tracker.eventlog.matcher import FuzzyMatcher
from dsf_tracker.eventlog.models import Classification, OracleReading, Phase, now_ms
from dsf_tracker.eventlog.vocabulary import EventVocabulary
from dsf_tracker.ocr.schema import DialogText, TextLine
from dsf_tracker.reconcile import AttributionPolicy, EventTransport, ReconciliationEngine, StoreChange
from dsf_tracker.store import EventRecordStore, FileKeyValueStore, KeyValueStore, MemoryKeyValueStore
from dsf_tracker.world import WorldSensor, WorldSessionTracker

logger = logging.getLogger("dsftracker")


class CaptureSource(Protocol):
    """Screen capture collaborator: yields OCR'd text, never pixels."""

    async def read_chat(self) -> Sequence[TextLine]: ...

    async def read_dialog(self) -> Optional[DialogText]: ...

    def current_world(self) -> Optional[int]: ...


class ExpirySweep:
    """Fixed-interval scan that moves records from active to history.

    Stops itself once nothing is active and is restarted by the next new
    active record.
    """

    def __init__(self, engine: ReconciliationEngine, *, interval_seconds: float = 1.0) -> None:
        self._engine = engine
        self._interval = float(interval_seconds)
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def ensure_running(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    def on_change(self, change: StoreChange) -> None:
        if change.action in ("added", "updated") and change.record.is_active(now_ms()):
            try:
                self.ensure_running()
            except RuntimeError:
                # no running loop (synchronous caller); the next tick picks it up
                pass

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            self._engine.sweep()
            if not self._engine.has_active():
                logger.debug("Nothing active, expiry sweep stopped")
                return

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None


class Tracker:
    """Single poll-loop actor owning the classifier, world session and engine."""

    def __init__(
        self,
        classifier: LineClassifier,
        engine: ReconciliationEngine,
        capture: Optional[CaptureSource] = None,
        *,
        capture_interval_seconds: float = 2.0,
        dialog_interval_seconds: float = 1.0,
        oracle_interval_seconds: float = 60.0,
        sweep_interval_seconds: float = 1.0,
    ) -> None:
        self.classifier = classifier
        self.engine = engine
        self.capture = capture
        self.capture_interval = float(capture_interval_seconds)
        self.dialog_interval = float(dialog_interval_seconds)
        self.oracle_interval = float(oracle_interval_seconds)

        self.sweep = ExpirySweep(engine, interval_seconds=sweep_interval_seconds)
        engine.on_change(self.sweep.on_change)

        self._stop = asyncio.Event()

    @property
    def world(self) -> WorldSessionTracker:
        return self.engine.world

    # -----------------
    # One tick each
    # -----------------
    async def process_chat(self, lines: Sequence[TextLine], now: Optional[int] = None) -> List[Classification]:
        now = now_ms() if now is None else now
        if self.world.is_quiet(now):
            # still settling after a hop, lines may belong to either world
            logger.debug("Discarding %d line(s) inside the hop quiet window", len(lines))
            return []

        found = self.classifier.classify_batch(lines, now)
        for c in found:
            await self.engine.handle_classification(c, now)
        return found

    async def process_dialog(self, dialog: DialogText, now: Optional[int] = None) -> Optional[OracleReading]:
        now = now_ms() if now is None else now
        world = self.world.current_world(now)
        if world is None:
            logger.info("Misty time not updated - world not found.")
            return None
        reading = parse_misty_dialog(dialog, world, self.engine.vocabulary)
        if reading is None:
            return None
        await self.engine.apply_dialog_reading(reading, now)
        return reading

    async def reconcile(self, now: Optional[int] = None) -> None:
        world = self.world.current_world(now)
        if world is not None:
            await self.engine.reconcile_world(world, now)

    def on_start(self) -> None:
        if self.engine.has_active():
            self.sweep.ensure_running()

    # -----------------
    # Loops
    # -----------------
    async def _chat_loop(self) -> None:
        if self.capture is None:
            return
        while not self._stop.is_set():
            try:
                found = await self.process_chat(await self.capture.read_chat())
                if any(c.phase is Phase.WORLD_HOP for c in found):
                    # let the client finish loading the new world before reading again
                    await self._sleep(self.world.quiet_ms / 1000.0)
                    continue
            except Exception:
                logger.exception("Chat capture tick failed")
            await self._sleep(self.capture_interval)

    async def _dialog_loop(self) -> None:
        if self.capture is None:
            return
        while not self._stop.is_set():
            try:
                dialog = await self.capture.read_dialog()
                if dialog is not None:
                    await self.process_dialog(dialog)
            except Exception:
                logger.exception("Dialog capture tick failed")
            await self._sleep(self.dialog_interval)

    async def _oracle_loop(self) -> None:
        try:
            await self.engine.refresh_world_statuses()
        except Exception:
            logger.exception("World status refresh failed")
        while not self._stop.is_set():
            await self._sleep(self.oracle_interval)
            if self._stop.is_set():
                return
            try:
                await self.reconcile()
            except Exception:
                logger.exception("Oracle reconciliation failed")

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run(self) -> None:
        self._stop.clear()
        self.on_start()
        loops = [self._oracle_loop()]
        if self.capture is not None:
            loops += [self._chat_loop(), self._dialog_loop()]
        try:
            await asyncio.gather(*loops)
        finally:
            await self.sweep.stop()

    def stop(self) -> None:
        self._stop.set()


def build_tracker(
    settings: Settings,
    *,
    capture: Optional[CaptureSource] = None,
    transport: Optional[EventTransport] = None,
    kv: Optional[KeyValueStore] = None,
    sensor: Optional[WorldSensor] = None,
    on_notice: Optional[Callable[[str], None]] = None,
) -> Tracker:
    """Wire the whole pipeline from settings; collaborators can be swapped in."""
    if kv is None:
        kv = FileKeyValueStore(settings.store_path) if settings.store_path else MemoryKeyValueStore()
    store = EventRecordStore(kv)
    store.load()

    vocabulary = EventVocabulary(strict=settings.debug)
    matcher = FuzzyMatcher(threshold=settings.match_threshold, min_match_length=settings.min_match_length)
    classifier = LineClassifier(
        vocabulary,
        matcher,
        speaker_prefixes=settings.speaker_prefixes,
        position_tolerance_px=settings.position_tolerance_px,
        allow_debug_kind=settings.debug,
    )

    if sensor is None and capture is not None:
        sensor = capture.current_world
    world = WorldSessionTracker(sensor, quiet_seconds=settings.hop_quiet_seconds)

    if transport is None:
        transport = BackendClient(
            settings.api_url,
            TokenStore(settings.access_token, settings.refresh_token),
            reporter=settings.reporter_name,
            debug=settings.debug,
            timeout_seconds=settings.http_timeout_seconds,
        )

    engine = ReconciliationEngine(
        store,
        world,
        vocabulary,
        transport,
        reporter=settings.reporter_name,
        attribution_policy=AttributionPolicy(settings.attribution_policy),
        unknown_duration=settings.unknown_event_duration,
        oracle_drift_seconds=settings.oracle_drift_seconds,
        app_version=__version__,
        on_notice=on_notice,
    )
    return Tracker(
        classifier,
        engine,
        capture,
        capture_interval_seconds=settings.capture_interval_seconds,
        dialog_interval_seconds=settings.dialog_interval_seconds,
        oracle_interval_seconds=settings.oracle_interval_seconds,
        sweep_interval_seconds=settings.sweep_interval_seconds,
    )
