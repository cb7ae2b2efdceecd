"""Utility package for searching, filtering, and saving TFD market module listings."""

from .browser import PageSurface, PageSurfaceError, SeleniumPageSurface, create_driver
from .cli import main as cli_main
from .controller import (
    ControllerSettings,
    ExtractionController,
    SearchFilters,
    SearchManager,
    SnapshotEvent,
)
from .db import (
    DEFAULT_DB_PATH,
    SqliteKeyValueStore,
    db_session,
    initialize_schema,
    load_records,
    load_records_dataframe,
    save_search_run,
)
from .extractors import extract_listing
from .facets import FacetState, Mode, NumericRange, SortKey
from .profiles import FilterProfileStore, ProfileSession
from .query import evaluate
from .records import ModuleRecord, RecordStore

__all__ = [
    "DEFAULT_DB_PATH",
    "ControllerSettings",
    "ExtractionController",
    "FacetState",
    "FilterProfileStore",
    "Mode",
    "ModuleRecord",
    "NumericRange",
    "PageSurface",
    "PageSurfaceError",
    "ProfileSession",
    "RecordStore",
    "SearchFilters",
    "SearchManager",
    "SeleniumPageSurface",
    "SnapshotEvent",
    "SortKey",
    "SqliteKeyValueStore",
    "cli_main",
    "create_driver",
    "db_session",
    "evaluate",
    "extract_listing",
    "initialize_schema",
    "load_records",
    "load_records_dataframe",
    "save_search_run",
]
