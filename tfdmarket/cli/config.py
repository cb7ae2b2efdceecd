from __future__ import annotations

from pathlib import Path
from typing import Type, TypeVar

from pydantic import BaseModel, Field

from ..controller import ControllerSettings, SearchFilters
from ..db import resolve_db_path

T = TypeVar("T", bound=BaseModel)

__all__ = ["AnalyzeConfig", "SearchConfig", "SearchFilters", "load_config"]


class SearchConfig(BaseModel):
    searches: list[SearchFilters] = Field(min_length=1)
    db: Path | None = None
    headless: bool = True
    save_results: bool = Field(default=True, description="Store each final snapshot as a search run")
    controller: ControllerSettings = Field(default_factory=ControllerSettings)

    @property
    def resolved_db_path(self) -> Path:
        return resolve_db_path(self.db)


class AnalyzeConfig(BaseModel):
    db: Path | None = None
    streamlit_args: list[str] = Field(default_factory=list)

    @property
    def resolved_db_path(self) -> Path | None:
        return Path(self.db) if self.db else None


def load_config(path: str | Path, model_cls: Type[T]) -> T:
    config_path = Path(path)
    raw = config_path.read_text(encoding="utf-8")
    return model_cls.model_validate_json(raw)
