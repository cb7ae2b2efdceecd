"""Named filter profiles, one collection and one default pointer per mode."""

from __future__ import annotations

import json
import logging
from typing import Dict, List, Optional, Protocol

from pydantic import ValidationError

from .facets import FacetState, Mode

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class ProfileError(Exception):
    pass


class ProfileExistsError(ProfileError):
    pass


class ProfileNotFoundError(ProfileError):
    pass


def profiles_key(mode: Mode) -> str:
    return f"tfd_{Mode(mode).value}_profiles"


def default_key(mode: Mode) -> str:
    return f"tfd_{Mode(mode).value}_default"


def _clean_name(name: str) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValueError("profile name must not be blank")
    return cleaned


class FilterProfileStore:
    def __init__(self, kv: KeyValueStore, mode: Mode = Mode.ANCESTOR) -> None:
        self.kv = kv
        self.mode = Mode(mode)

    def _read(self) -> Dict[str, dict]:
        raw = self.kv.get(profiles_key(self.mode))
        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring unreadable %s profile collection", self.mode.value)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, dict]) -> None:
        self.kv.set(profiles_key(self.mode), json.dumps(data, ensure_ascii=False))

    def profiles(self) -> Dict[str, FacetState]:
        result: Dict[str, FacetState] = {}
        for name, payload in self._read().items():
            try:
                result[name] = FacetState.model_validate(payload)
            except ValidationError as exc:
                logger.warning("Skipping invalid profile %r: %s", name, exc.errors()[:1])
        return result

    def names(self) -> List[str]:
        return sorted(self.profiles(), key=str.lower)

    def __contains__(self, name: object) -> bool:
        return name in self._read()

    def get(self, name: str) -> FacetState:
        profiles = self.profiles()
        if name not in profiles:
            raise ProfileNotFoundError(name)
        return profiles[name]

    def save(self, name: str, state: FacetState, *, overwrite: bool = False) -> str:
        """Store ``state`` under ``name``. Creating over an existing name is rejected."""
        name = _clean_name(name)
        data = self._read()
        if name in data and not overwrite:
            raise ProfileExistsError(name)
        data[name] = state.model_dump(mode="json")
        self._write(data)
        logger.info("Saved %s profile %r", self.mode.value, name)
        return name

    def rename(self, old: str, new: str) -> str:
        new = _clean_name(new)
        data = self._read()
        if old not in data:
            raise ProfileNotFoundError(old)
        if new == old:
            return new
        if new in data:
            raise ProfileExistsError(new)
        data[new] = data.pop(old)
        self._write(data)
        if self.default_name() == old:
            self.kv.set(default_key(self.mode), new)
        logger.info("Renamed %s profile %r to %r", self.mode.value, old, new)
        return new

    def delete(self, name: str) -> None:
        data = self._read()
        if name not in data:
            raise ProfileNotFoundError(name)
        del data[name]
        self._write(data)
        if self.default_name() == name:
            self.kv.delete(default_key(self.mode))
        logger.info("Deleted %s profile %r", self.mode.value, name)

    def set_default(self, name: str) -> None:
        if name not in self._read():
            raise ProfileNotFoundError(name)
        self.kv.set(default_key(self.mode), name)

    def clear_default(self) -> None:
        self.kv.delete(default_key(self.mode))

    def default_name(self) -> Optional[str]:
        return self.kv.get(default_key(self.mode)) or None

    def load(self) -> FacetState:
        """The default profile's state, or a neutral state when there is none."""
        name = self.default_name()
        if name:
            try:
                return self.get(name)
            except ProfileNotFoundError:
                logger.warning("Default %s profile %r no longer exists", self.mode.value, name)
        return FacetState()


class ProfileSession:
    """Tracks which profile a view has selected and whether saving makes sense."""

    def __init__(self, store: FilterProfileStore, selected: Optional[str] = None) -> None:
        self.store = store
        self.selected = selected

    @classmethod
    def from_default(cls, store: FilterProfileStore) -> "ProfileSession":
        name = store.default_name()
        return cls(store, name if name and name in store else None)

    def select(self, name: str) -> FacetState:
        state = self.store.get(name)
        self.selected = name
        return state

    def deselect(self) -> None:
        self.selected = None

    def saved_state(self) -> Optional[FacetState]:
        if self.selected is None:
            return None
        try:
            return self.store.get(self.selected)
        except ProfileNotFoundError:
            return None

    def save_enabled(self, live_state: FacetState) -> bool:
        saved = self.saved_state()
        if saved is not None:
            return live_state != saved
        return not live_state.is_neutral(self.store.mode)

    def save(self, live_state: FacetState, name: Optional[str] = None) -> str:
        """Overwrite the selected profile, or create ``name`` and select it."""
        if name is None and self.selected is not None:
            return self.store.save(self.selected, live_state, overwrite=True)
        if name is None:
            raise ValueError("a name is required when no profile is selected")
        self.selected = self.store.save(name, live_state)
        return self.selected
