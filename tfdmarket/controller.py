"""Extraction controller: drives one market search from setup to final snapshot.

States::

    setup (3 steps) -> polling -> stable | timeout | error -> finalizing -> done
                                 \\-> stopped (at any point, via SearchManager.stop)

Each search owns one page surface and runs as one asyncio task. Nothing is
shared between searches apart from the process-wide log buffer.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from .browser import PageSurface, PageSurfaceError
from .extractors import extract_listing
from .records import ModuleRecord, RecordStore
from .scripts import MODULE_TYPE_DROPDOWN, PARSE_LISTINGS, PLATFORM_DROPDOWN, enter_search_text, select_dropdown_option

logger = logging.getLogger(__name__)

MARKET_URL = "https://tfd.nexon.com/en/market"

STAGE_ENTER_NAME = "enterName"
STAGE_SET_PLATFORM = "setPlatform"
STAGE_WAITING = "waiting"


class SearchFilters(BaseModel):
    """The page-side inputs that originate a search."""

    module_type: str = "Ancestors"
    module_name: str = ""
    platform: str = ""


class ControllerSettings(BaseModel):
    market_url: str = MARKET_URL
    settle_delay_ms: int = Field(default=8000, ge=0)
    poll_delay_ms: int = Field(default=700, ge=0)
    max_polls: int = Field(default=60, ge=1)
    stable_polls: int = Field(default=3, ge=1)
    zero_result_timeout_ms: int = Field(default=30000, ge=0)


class ControllerState(str, Enum):
    SETUP = "setup"
    POLLING = "polling"
    STABLE = "stable"
    TIMEOUT = "timeout"
    ERROR = "error"
    STOPPED = "stopped"
    FINALIZING = "finalizing"
    DONE = "done"


class SearchError(Exception):
    """Terminal failure of one search. Never affects other searches."""

    classification = "error"
    keeps_records = True


class NavigationFailure(SearchError):
    classification = "load-failed"
    keeps_records = False


class ParseFailure(SearchError):
    classification = "parse-failed"


class ZeroResultTimeout(SearchError):
    classification = "timeout"
    keeps_records = False


class GenericRuntimeError(SearchError):
    @property
    def classification(self) -> str:  # type: ignore[override]
        return str(self) or "error"


@dataclass
class SnapshotEvent:
    search_id: int
    records: List[ModuleRecord]
    finished: bool
    error: Optional[str] = None
    message: Optional[str] = None
    module_type: Optional[str] = None


@dataclass
class ProgressEvent:
    search_id: int
    stage: str


@dataclass
class StoppedEvent:
    search_id: int


SearchEvent = Union[SnapshotEvent, ProgressEvent, StoppedEvent]
Listener = Callable[[SearchEvent], None]
Clock = Callable[[], float]


@dataclass
class PollResult:
    records: List[ModuleRecord]
    visible_count: int
    loader_visible: bool


def parse_poll_payload(payload: Any) -> PollResult:
    """Turn the parse pass result into records. Raises ``ParseFailure``."""
    try:
        data = json.loads(payload) if isinstance(payload, (str, bytes)) else payload
        items = data.get("items") or []
        return PollResult(
            records=[extract_listing(item) for item in items],
            visible_count=int(data.get("itemCount") or 0),
            loader_visible=bool(data.get("loaderVisible")),
        )
    except (ValueError, TypeError, AttributeError) as exc:
        raise ParseFailure(f"unreadable parse result: {exc}") from exc


class ExtractionController:
    def __init__(
        self,
        search_id: int,
        filters: SearchFilters,
        surface: PageSurface,
        listener: Listener,
        settings: Optional[ControllerSettings] = None,
        clock: Clock = time.monotonic,
        store: Optional[RecordStore] = None,
    ) -> None:
        self.search_id = search_id
        self.filters = filters
        self.surface = surface
        self.settings = settings or ControllerSettings()
        self.store = store if store is not None else RecordStore()
        self.state = ControllerState.SETUP
        self.setup_step = 0
        self.polls = 0
        self.stable_count = 0
        self.running = True
        self._listener = listener
        self._clock = clock

    def stop(self) -> None:
        self.running = False
        self.state = ControllerState.STOPPED

    def snapshot(self) -> List[ModuleRecord]:
        return self.store.snapshot(self.filters.module_name)

    async def run(self) -> Optional[SnapshotEvent]:
        """Run setup and polling. Returns the terminal snapshot, or None if stopped."""
        try:
            await self._setup()
            await self._poll()
        except SearchError as exc:
            return self.fail(exc)
        except PageSurfaceError as exc:
            return self.fail(GenericRuntimeError(str(exc)))
        except Exception as exc:  # terminal for this search only
            logger.exception("Search %s failed unexpectedly", self.search_id)
            return self.fail(GenericRuntimeError(str(exc) or type(exc).__name__))
        if not self.running:
            return None
        return self._finalize()

    async def _setup(self) -> None:
        steps = [
            (f"selecting module type {self.filters.module_type!r}",
             select_dropdown_option(MODULE_TYPE_DROPDOWN, self.filters.module_type), None),
            (f"entering search term {self.filters.module_name!r}",
             enter_search_text(self.filters.module_name), STAGE_ENTER_NAME),
            (f"selecting platform {self.filters.platform!r}",
             select_dropdown_option(PLATFORM_DROPDOWN, self.filters.platform), STAGE_SET_PLATFORM),
        ]
        self.state = ControllerState.SETUP
        for step, (description, script, stage) in enumerate(steps, start=1):
            if not self.running:
                return
            self.setup_step = step
            logger.info("Search %s: %s", self.search_id, description)
            try:
                await self.surface.inject(script)
            except PageSurfaceError as exc:
                # Dropdowns may already show the wanted value
                logger.warning("Search %s: setup step %d failed, continuing: %s", self.search_id, step, exc)
            await self.surface.wait(self.settings.settle_delay_ms)
            if stage:
                self._emit(ProgressEvent(self.search_id, stage))
        self._emit(ProgressEvent(self.search_id, STAGE_WAITING))

    async def _poll(self) -> None:
        if not self.running:
            return
        self.state = ControllerState.POLLING
        logger.info("Search %s: running iterative scroll and parse loop", self.search_id)
        started = self._clock()
        last_count = 0
        self.stable_count = 0
        for _ in range(self.settings.max_polls):
            if not self.running:
                return
            self.polls += 1
            result = await self._parse_pass()
            added = self.store.extend(result.records)
            logger.debug(
                "Search %s poll %d: %d visible, %d new, loader=%s",
                self.search_id, self.polls, result.visible_count, added, result.loader_visible,
            )
            self._emit(SnapshotEvent(self.search_id, self.snapshot(), False, module_type=self.filters.module_type))

            if result.visible_count == last_count:
                self.stable_count += 1
            else:
                self.stable_count = 0
                last_count = result.visible_count
            if self.stable_count >= self.settings.stable_polls and not result.loader_visible:
                self.state = ControllerState.STABLE
                return

            elapsed_ms = (self._clock() - started) * 1000
            if len(self.store) == 0 and elapsed_ms > self.settings.zero_result_timeout_ms:
                raise ZeroResultTimeout(f"no results after {elapsed_ms:.0f} ms")

            await self.surface.scroll()
            await self.surface.wait(self.settings.poll_delay_ms)
        logger.info("Search %s: reached the %d poll limit", self.search_id, self.settings.max_polls)

    async def _parse_pass(self) -> PollResult:
        try:
            payload = await self.surface.inject(PARSE_LISTINGS)
        except PageSurfaceError as exc:
            raise ParseFailure(str(exc)) from exc
        return parse_poll_payload(payload)

    def _finalize(self) -> SnapshotEvent:
        self.state = ControllerState.FINALIZING
        event = SnapshotEvent(self.search_id, self.snapshot(), True, module_type=self.filters.module_type)
        logger.info("Search %s finished with %d items", self.search_id, len(self.store))
        self._emit(event)
        self.state = ControllerState.DONE
        return event

    def fail(self, exc: SearchError) -> SnapshotEvent:
        """Emit the terminal error snapshot for ``exc``."""
        self.running = False
        self.state = ControllerState.TIMEOUT if isinstance(exc, ZeroResultTimeout) else ControllerState.ERROR
        records = self.snapshot() if exc.keeps_records else []
        logger.warning("Search %s ended with %s: %s", self.search_id, exc.classification, exc)
        event = SnapshotEvent(
            self.search_id,
            records,
            True,
            error=exc.classification,
            message=str(exc) or exc.classification,
            module_type=self.filters.module_type,
        )
        self._emit(event)
        return event

    def _emit(self, event: SearchEvent) -> None:
        emit(self._listener, event)


def emit(listener: Listener, event: SearchEvent) -> None:
    try:
        listener(event)
    except Exception:
        logger.exception("Search listener failed on %s", type(event).__name__)


SurfaceFactory = Callable[[], Awaitable[PageSurface]]


@dataclass
class SearchEntry:
    search_id: int
    filters: SearchFilters
    store: RecordStore = field(default_factory=RecordStore)
    surface: Optional[PageSurface] = None
    controller: Optional[ExtractionController] = None
    task: Optional[asyncio.Task] = None
    running: bool = True
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    last_event: Optional[SnapshotEvent] = None


class SearchManager:
    """Starts, stops and retries searches, one task and page surface each."""

    def __init__(
        self,
        surface_factory: SurfaceFactory,
        listener: Listener,
        settings: Optional[ControllerSettings] = None,
        clock: Clock = time.monotonic,
        wall_clock: Clock = time.time,
    ) -> None:
        self._surface_factory = surface_factory
        self._listener = listener
        self.settings = settings or ControllerSettings()
        self._clock = clock
        self._wall_clock = wall_clock
        self._searches: Dict[int, SearchEntry] = {}
        self._ids = itertools.count(1)

    def get(self, search_id: int) -> Optional[SearchEntry]:
        return self._searches.get(search_id)

    def records(self, search_id: int) -> List[ModuleRecord]:
        entry = self._searches.get(search_id)
        return entry.store.snapshot() if entry else []

    async def start(self, filters: SearchFilters) -> int:
        search_id = next(self._ids)
        entry = SearchEntry(search_id=search_id, filters=filters)
        self._searches[search_id] = entry
        logger.info("Search %s started: %s", search_id, filters.model_dump_json())
        self._launch(entry)
        return search_id

    async def stop(self, search_id: int) -> None:
        entry = self._searches.get(search_id)
        if entry is None:
            return
        await self._halt(entry)
        logger.info("Search %s stopped with %d items", search_id, len(entry.store))
        # A run that already ended keeps its terminal outcome
        previous = entry.last_event
        event = SnapshotEvent(
            search_id,
            previous.records if previous else entry.store.snapshot(entry.filters.module_name),
            True,
            error=previous.error if previous else None,
            message=previous.message if previous else None,
            module_type=entry.filters.module_type,
        )
        entry.last_event = event
        emit(self._listener, event)
        emit(self._listener, StoppedEvent(search_id))

    async def retry(self, search_id: int) -> None:
        entry = self._searches.get(search_id)
        if entry is None:
            return
        await self._halt(entry)
        entry.store.clear()
        entry.last_event = None
        logger.info("Search %s retry initiated", search_id)
        self._launch(entry)

    async def wait(self, search_id: int) -> Optional[SnapshotEvent]:
        """Wait for the search's current run to end and return its terminal snapshot."""
        entry = self._searches.get(search_id)
        if entry is None:
            return None
        if entry.task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await entry.task
        return entry.last_event

    async def shutdown(self) -> None:
        for entry in list(self._searches.values()):
            if entry.running:
                await self.stop(entry.search_id)
            else:
                await self._release(entry)

    def metrics(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": entry.search_id,
                "running": entry.running,
                "items": len(entry.store),
                "started_at": entry.started_at,
                "finished_at": entry.finished_at,
                "filters": entry.filters.model_dump(),
                "state": entry.controller.state.value if entry.controller else None,
                "polls": entry.controller.polls if entry.controller else 0,
            }
            for entry in self._searches.values()
        ]

    def _launch(self, entry: SearchEntry) -> None:
        entry.running = True
        entry.started_at = self._wall_clock()
        entry.finished_at = None
        entry.controller = None
        entry.task = asyncio.create_task(self._run(entry), name=f"search-{entry.search_id}")

    async def _run(self, entry: SearchEntry) -> None:
        try:
            acquisition = asyncio.ensure_future(self._surface_factory())
            try:
                entry.surface = await asyncio.shield(acquisition)
            except asyncio.CancelledError:
                # The factory may still be starting a browser
                await self._discard_acquisition(entry.search_id, acquisition)
                raise
            except Exception as exc:  # terminal for this search only
                logger.exception("Search %s could not acquire a page surface", entry.search_id)
                event = SnapshotEvent(
                    entry.search_id, [], True,
                    error=NavigationFailure.classification,
                    message=str(exc) or type(exc).__name__,
                    module_type=entry.filters.module_type,
                )
                entry.last_event = event
                emit(self._listener, event)
                return

            controller = ExtractionController(
                entry.search_id, entry.filters, entry.surface, self._listener,
                settings=self.settings, clock=self._clock, store=entry.store,
            )
            entry.controller = controller
            try:
                await entry.surface.navigate(self.settings.market_url)
            except PageSurfaceError as exc:
                entry.last_event = controller.fail(NavigationFailure(str(exc)))
                return
            entry.last_event = await controller.run()
        finally:
            entry.running = False
            entry.finished_at = self._wall_clock()
            await self._release(entry)

    async def _halt(self, entry: SearchEntry) -> None:
        entry.running = False
        if entry.controller is not None:
            entry.controller.stop()
        task = entry.task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self._release(entry)
        if entry.finished_at is None:
            entry.finished_at = self._wall_clock()

    async def _release(self, entry: SearchEntry) -> None:
        surface, entry.surface = entry.surface, None
        if surface is not None:
            await self._close_surface(entry.search_id, surface)

    async def _discard_acquisition(self, search_id: int, acquisition: asyncio.Future[PageSurface]) -> None:
        """Wait for a surface requested before the search was halted and release it."""
        try:
            surface = await acquisition
        except Exception as exc:
            logger.warning("Search %s: page surface acquisition failed after halt: %s", search_id, exc)
            return
        logger.info("Search %s: releasing page surface acquired after halt", search_id)
        await self._close_surface(search_id, surface)

    async def _close_surface(self, search_id: int, surface: PageSurface) -> None:
        try:
            await surface.close()
        except PageSurfaceError as exc:
            logger.warning("Search %s: failed to release page surface: %s", search_id, exc)
