from __future__ import annotations

import argparse
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import tqdm

from ..browser import SeleniumPageSurface
from ..controller import ProgressEvent, SearchEvent, SearchFilters, SearchManager, SnapshotEvent
from ..db import db_session, initialize_schema, save_search_run
from .config import SearchConfig, load_config

logger = logging.getLogger(__name__)


def add_parser(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
    parser = subparsers.add_parser(
        "search",
        help="Run market searches and store the results",
        description="Run one or more TFD market searches concurrently and store each final snapshot.",
    )
    parser.add_argument(
        "config",
        type=Path,
        help="Path to a JSON config file listing the searches to run.",
    )
    parser.set_defaults(func=run)
    return parser


@dataclass
class SearchOutcome:
    search_id: int
    filters: SearchFilters
    started_at: datetime
    finished_at: datetime
    event: Optional[SnapshotEvent]

    @property
    def error(self) -> Optional[str]:
        return self.event.error if self.event else "stopped"

    @property
    def item_count(self) -> int:
        return len(self.event.records) if self.event else 0


def _describe(filters: SearchFilters) -> str:
    parts = [filters.module_type, filters.module_name or "*", filters.platform or "any"]
    return " / ".join(parts)


class ProgressBars:
    """Search listener that renders one tqdm bar per search."""

    def __init__(self) -> None:
        self._bars: Dict[int, tqdm.tqdm] = {}

    def add(self, search_id: int, filters: SearchFilters) -> None:
        self._bars[search_id] = tqdm.tqdm(
            desc=_describe(filters),
            unit="item",
            position=len(self._bars),
            leave=True,
        )

    def __call__(self, event: SearchEvent) -> None:
        bar = self._bars.get(event.search_id)
        if bar is None:
            return
        if isinstance(event, ProgressEvent):
            bar.set_postfix_str(event.stage)
        elif isinstance(event, SnapshotEvent):
            bar.n = len(event.records)
            if event.finished:
                bar.set_postfix_str(event.error or "done")
            bar.refresh()

    def close(self) -> None:
        for bar in self._bars.values():
            bar.close()


async def run_searches(config: SearchConfig) -> List[SearchOutcome]:
    bars = ProgressBars()

    async def open_surface() -> SeleniumPageSurface:
        return await SeleniumPageSurface.open(headless=config.headless)

    manager = SearchManager(open_surface, bars, settings=config.controller)
    started: Dict[int, tuple[SearchFilters, datetime]] = {}
    outcomes: List[SearchOutcome] = []
    try:
        for filters in config.searches:
            search_id = await manager.start(filters)
            bars.add(search_id, filters)
            started[search_id] = (filters, datetime.now())
        for search_id, (filters, started_at) in started.items():
            event = await manager.wait(search_id)
            outcomes.append(SearchOutcome(search_id, filters, started_at, datetime.now(), event))
    finally:
        await manager.shutdown()
        bars.close()
    return outcomes


def store_outcomes(config: SearchConfig, outcomes: List[SearchOutcome]) -> List[int]:
    run_ids: List[int] = []
    with db_session(config.resolved_db_path) as conn:
        initialize_schema(conn)
        for outcome in outcomes:
            event = outcome.event
            run_ids.append(
                save_search_run(
                    conn,
                    module_type=outcome.filters.module_type,
                    module_name=outcome.filters.module_name,
                    platform=outcome.filters.platform,
                    records=event.records if event else [],
                    started_at=outcome.started_at,
                    finished_at=outcome.finished_at,
                    status="error" if outcome.error else "done",
                    error=event.message if event and event.error else outcome.error,
                )
            )
    return run_ids


def run(args: argparse.Namespace) -> int:
    config = load_config(args.config, SearchConfig)
    outcomes = asyncio.run(run_searches(config))

    if config.save_results:
        run_ids = store_outcomes(config, outcomes)
        logger.info("Stored search runs %s in %s", run_ids, config.resolved_db_path)

    failed = 0
    for outcome in outcomes:
        if outcome.error:
            failed += 1
            print(f"Search {outcome.search_id} ({_describe(outcome.filters)}) failed: {outcome.error}")
        else:
            print(f"Search {outcome.search_id} ({_describe(outcome.filters)}) collected {outcome.item_count} items")
    return 1 if failed else 0
