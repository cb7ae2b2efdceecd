"""Faceted query engine.

Everything here is a pure function of the record list and a
:class:`~tfdmarket.facets.FacetState`. The schema (attribute names, value
ranges, status list, ...) is rediscovered from the records on every call, so
a store that grew between two calls simply produces a larger schema.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .facets import FacetState, Mode, NumericRange, SortKey
from .records import ModuleRecord, split_stat_line, trigger_attribute_name

_LEADING_NUMBER = re.compile(r"^(?:\d+(?:\.\d*)?|\.\d+)")


@dataclass
class FacetSchema:
    categories: List[str] = field(default_factory=list)
    attributes: List[str] = field(default_factory=list)
    attr_ranges: Dict[str, NumericRange] = field(default_factory=dict)
    neg_attributes: List[str] = field(default_factory=list)
    module_names: List[str] = field(default_factory=list)
    statuses: List[str] = field(default_factory=list)
    sockets: List[str] = field(default_factory=list)
    platforms: List[str] = field(default_factory=list)
    price_range: NumericRange = field(default_factory=NumericRange)
    rank_range: NumericRange = field(default_factory=NumericRange)
    reroll_range: NumericRange = field(default_factory=NumericRange)
    age_days_range: NumericRange = field(default_factory=NumericRange)
    age_hours_range: NumericRange = field(default_factory=NumericRange)
    trigger_attributes: List[str] = field(default_factory=list)
    trigger_ranges: Dict[str, NumericRange] = field(default_factory=dict)


@dataclass
class QueryResult:
    records: List[ModuleRecord]
    schema: FacetSchema
    mode: Mode

    def __len__(self) -> int:
        return len(self.records)


def parse_price(price: Optional[str]) -> Optional[float]:
    cleaned = re.sub(r"[^0-9.]", "", price or "")
    match = _LEADING_NUMBER.match(cleaned)
    return float(match.group(0)) if match else None


def detect_mode(records: Sequence[ModuleRecord], override: Optional[Mode] = None) -> Mode:
    if override is not None:
        return Mode(override)
    if records and all(r.is_trigger for r in records):
        return Mode.TRIGGER
    return Mode.ANCESTOR


def _bounds(values: Iterable[Optional[float]]) -> NumericRange:
    present = [v for v in values if v is not None]
    if not present:
        return NumericRange()
    return NumericRange(min=min(present), max=max(present))


def _status_order(status: str):
    lower = status.lower()
    if lower == "online":
        return (0, "")
    if lower == "offline":
        return (2, "")
    return (1, lower)


def trigger_attribute_order(records: Iterable[ModuleRecord]) -> List[str]:
    """Trigger attribute names in first-appearance order across records."""
    order: List[str] = []
    for record in records:
        for stat in record.stats:
            label, _ = split_stat_line(stat.raw or "")
            name = trigger_attribute_name(label)
            if name and name not in order:
                order.append(name)
    return order


def discover_schema(records: Sequence[ModuleRecord]) -> FacetSchema:
    attr_values: Dict[str, List[Optional[float]]] = {}
    trigger_values: Dict[str, List[Optional[float]]] = {}
    neg_attributes = set()
    for record in records:
        for name, value in record.attr_values.items():
            attr_values.setdefault(name, []).append(value)
        for name, value in record.trigger_values.items():
            trigger_values.setdefault(name, []).append(value)
        neg_attributes.update(record.neg_attributes)

    attributes = {a for r in records for a in r.attributes}
    statuses = {r.seller_status for r in records if r.seller_status}

    return FacetSchema(
        categories=sorted({r.category for r in records if r.category}),
        attributes=sorted(attributes),
        attr_ranges={name: _bounds(values) for name, values in attr_values.items()},
        neg_attributes=sorted(neg_attributes),
        module_names=sorted({r.name for r in records if r.name}, key=_name_key),
        statuses=sorted(statuses, key=_status_order),
        sockets=sorted({r.socket_type for r in records if r.socket_type}),
        platforms=sorted({r.platform for r in records if r.platform}),
        price_range=_bounds(parse_price(r.price) for r in records),
        rank_range=_bounds(r.mr_value for r in records),
        reroll_range=_bounds(r.reroll_value for r in records),
        age_days_range=_bounds(r.age_days for r in records),
        age_hours_range=_bounds(r.age_hours for r in records),
        trigger_attributes=trigger_attribute_order(records),
        trigger_ranges={name: _bounds(values) for name, values in trigger_values.items()},
    )


def _name_key(name: Optional[str]) -> Tuple[str, str]:
    """Collation key: accents folded onto their base letter, case ignored."""
    text = (name or "").casefold()
    folded = "".join(c for c in unicodedata.normalize("NFKD", text) if not unicodedata.combining(c))
    return folded, text


def matches(record: ModuleRecord, state: FacetState, mode: Mode) -> bool:
    """True when ``record`` passes every active facet of ``state``."""
    if state.categories and record.category not in state.categories:
        return False

    for attr in state.attributes:
        if attr not in record.attributes:
            return False
        value_range = state.attribute_ranges.get(attr)
        if value_range and not value_range.contains(record.attr_values.get(attr), missing_passes=True):
            return False

    if state.sockets and record.socket_type not in state.sockets:
        return False
    if state.platforms and record.platform not in state.platforms:
        return False

    if not state.price.contains(parse_price(record.price), missing_passes=True):
        return False

    if mode is Mode.ANCESTOR:
        if not state.rank.contains(record.mr_value):
            return False
        if not state.rerolls.contains(record.reroll_value):
            return False

    if state.statuses:
        current = (record.seller_status or "").lower()
        if not any(s.lower() == current for s in state.statuses):
            return False

    if not state.age_days.contains(record.age_days):
        return False
    if not state.age_hours.contains(record.age_hours):
        return False

    needle = state.seller.strip().lower()
    if needle and needle not in (record.seller_name or "").lower():
        return False

    if any(attr in record.neg_attributes for attr in state.neg_attributes):
        return False

    if mode is Mode.ANCESTOR and state.module_names and record.name not in state.module_names:
        return False

    if mode is Mode.TRIGGER:
        for attr, value_range in state.trigger_ranges.items():
            if not value_range.contains(record.trigger_values.get(attr)):
                return False

    return True


def sort_records(records: List[ModuleRecord], sort: SortKey) -> List[ModuleRecord]:
    if sort in (SortKey.PRICE_ASC, SortKey.PRICE_DESC):
        return sorted(records, key=lambda r: parse_price(r.price) or 0.0, reverse=sort is SortKey.PRICE_DESC)
    if sort in (SortKey.NAME_ASC, SortKey.NAME_DESC):
        return sorted(records, key=lambda r: _name_key(r.name), reverse=sort is SortKey.NAME_DESC)
    return list(records)


def evaluate(records: Sequence[ModuleRecord], state: FacetState, mode: Optional[Mode] = None) -> QueryResult:
    """Filter and sort ``records`` by ``state``.

    ``records`` is copied before use, so a store may keep appending while a
    previous result is being rendered.
    """
    records = list(records)
    resolved_mode = detect_mode(records, mode)
    visible = [r for r in records if matches(r, state, resolved_mode)]
    return QueryResult(
        records=sort_records(visible, SortKey(state.sort)),
        schema=discover_schema(records),
        mode=resolved_mode,
    )


SliderWindow = Tuple[float, float, Tuple[float, float]]


def slider_window(data_range: NumericRange, current: NumericRange) -> Optional[SliderWindow]:
    """Slider edges and starting handles for ``current`` over ``data_range``.

    The edges widen to take in saved bounds outside the data, so loading a
    profile against a smaller run never clamps its bounds. Returns None when
    there is nothing to slide over.
    """
    if data_range.min is None or data_range.max is None:
        return None
    saved = [v for v in (current.min, current.max) if v is not None]
    low = min([data_range.min, *saved])
    high = max([data_range.max, *saved])
    if low >= high:
        return None
    start = (low if current.min is None else current.min, high if current.max is None else current.max)
    return float(low), float(high), (float(start[0]), float(start[1]))


def range_from_slider(handles: Tuple[float, float], window: SliderWindow, current: NumericRange) -> NumericRange:
    """Read slider handles back into a range.

    A handle still at its starting position keeps the bound it started from.
    A moved handle at an edge leaves that side unset.
    """
    low, high, start = window
    if handles[0] == start[0]:
        lower = current.min
    else:
        lower = None if handles[0] <= low else handles[0]
    if handles[1] == start[1]:
        upper = current.max
    else:
        upper = None if handles[1] >= high else handles[1]
    return NumericRange(min=lower, max=upper)
