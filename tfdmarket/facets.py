"""Facet state: the user's live filter and sort selections for one view.

A :class:`FacetState` is an immutable value. UI handlers derive a new state
with the ``with_*``/``without_*`` helpers (or ``model_copy``) and hand it to
:func:`tfdmarket.query.evaluate` again instead of mutating shared globals.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, Iterable, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class Mode(str, Enum):
    ANCESTOR = "ancestor"
    TRIGGER = "trigger"


class SortKey(str, Enum):
    PRICE_ASC = "priceAsc"
    PRICE_DESC = "priceDesc"
    NAME_ASC = "nameAsc"
    NAME_DESC = "nameDesc"


class NumericRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    min: Optional[float] = None
    max: Optional[float] = None

    @property
    def is_set(self) -> bool:
        return self.min is not None or self.max is not None

    def contains(self, value: Optional[float], *, missing_passes: bool = False) -> bool:
        """Check ``value`` against the bounds that are set.

        A missing value fails any set bound unless ``missing_passes`` is true.
        """
        if not self.is_set:
            return True
        if value is None:
            return missing_passes
        if self.min is not None and value < self.min:
            return False
        if self.max is not None and value > self.max:
            return False
        return True


def _unique(values: Iterable[str]) -> Tuple[str, ...]:
    return tuple(dict.fromkeys(values))


class FacetState(BaseModel):
    model_config = ConfigDict(frozen=True)

    price: NumericRange = Field(default_factory=NumericRange)
    rank: NumericRange = Field(default_factory=NumericRange)
    rerolls: NumericRange = Field(default_factory=NumericRange)
    age_days: NumericRange = Field(default_factory=NumericRange)
    age_hours: NumericRange = Field(default_factory=NumericRange)
    seller: str = ""
    statuses: Tuple[str, ...] = ()
    attributes: Tuple[str, ...] = ()
    attribute_ranges: Dict[str, NumericRange] = Field(default_factory=dict)
    neg_attributes: Tuple[str, ...] = ()
    module_names: Tuple[str, ...] = ()
    trigger_ranges: Dict[str, NumericRange] = Field(default_factory=dict)
    categories: Tuple[str, ...] = ()
    sockets: Tuple[str, ...] = ()
    platforms: Tuple[str, ...] = ()
    sort: SortKey = SortKey.PRICE_DESC

    def with_attribute(self, name: str, value_range: Optional[NumericRange] = None) -> "FacetState":
        ranges = dict(self.attribute_ranges)
        ranges[name] = value_range or ranges.get(name) or NumericRange()
        return self.model_copy(update={"attributes": _unique((*self.attributes, name)), "attribute_ranges": ranges})

    def without_attribute(self, name: str) -> "FacetState":
        ranges = {k: v for k, v in self.attribute_ranges.items() if k != name}
        return self.model_copy(
            update={"attributes": tuple(a for a in self.attributes if a != name), "attribute_ranges": ranges}
        )

    def with_trigger_range(self, name: str, value_range: NumericRange) -> "FacetState":
        ranges = dict(self.trigger_ranges)
        ranges[name] = value_range
        return self.model_copy(update={"trigger_ranges": ranges})

    def with_neg_attribute(self, name: str) -> "FacetState":
        return self.model_copy(update={"neg_attributes": _unique((*self.neg_attributes, name))})

    def with_module_name(self, name: str) -> "FacetState":
        return self.model_copy(update={"module_names": _unique((*self.module_names, name))})

    def replace(self, **changes) -> "FacetState":
        """Return a validated copy with ``changes`` applied."""
        data = self.model_dump()
        data.update(changes)
        return FacetState.model_validate(data)

    def is_neutral(self, mode: Mode = Mode.ANCESTOR) -> bool:
        """True when no filter is active. The sort key is not a filter."""
        ranges = [self.price, self.age_days, self.age_hours]
        if mode is Mode.ANCESTOR:
            ranges += [self.rank, self.rerolls]
        if any(r.is_set for r in ranges):
            return False
        if self.seller.strip():
            return False
        if self.statuses or self.attributes or self.neg_attributes or self.module_names:
            return False
        if self.categories or self.sockets or self.platforms:
            return False
        if mode is Mode.TRIGGER and any(r.is_set for r in self.trigger_ranges.values()):
            return False
        return True
