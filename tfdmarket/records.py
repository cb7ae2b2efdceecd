from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional

ANCESTOR = "Ancestor"
TRIGGER = "Trigger"

_SIGNED_NUMBER = re.compile(r"-?[0-9]+(?:\.[0-9]+)?")
_UNSIGNED_NUMBER = re.compile(r"[0-9]+(?:\.[0-9]+)?")
_AGE_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*(day|days|hour|hours)")


@dataclass
class Stat:
    raw: str
    positive: bool = False
    negative: bool = False
    value: Optional[str] = None  # actual value when the listing shows one


@dataclass
class ModuleRecord:
    name: str
    category: str
    price: str = ""
    socket_type: Optional[str] = None
    required_rank: Optional[str] = None
    platform: Optional[str] = None
    reroll_count: Optional[str] = None
    seller_name: Optional[str] = None
    seller_status: Optional[str] = None
    seller_rank: Optional[str] = None
    reg_date: Optional[str] = None  # relative age, e.g. "3 days ago"
    attributes: List[str] = field(default_factory=list)
    stats: List[Stat] = field(default_factory=list)
    # Derived on insert into a RecordStore
    mr_value: Optional[int] = field(default=None, compare=False)
    reroll_value: Optional[int] = field(default=None, compare=False)
    age_days: Optional[float] = field(default=None, compare=False)
    age_hours: Optional[float] = field(default=None, compare=False)
    attr_values: Dict[str, Optional[float]] = field(default_factory=dict, compare=False)
    neg_attributes: List[str] = field(default_factory=list, compare=False)
    trigger_values: Dict[str, Optional[float]] = field(default_factory=dict, compare=False)

    @property
    def identity(self) -> str:
        return identity_key(self)

    @property
    def is_trigger(self) -> bool:
        return "trigger" in (self.category or "").lower()

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the extracted fields only; derived fields are recomputed on load."""
        return {
            "name": self.name,
            "category": self.category,
            "price": self.price,
            "socket_type": self.socket_type,
            "required_rank": self.required_rank,
            "platform": self.platform,
            "reroll_count": self.reroll_count,
            "seller_name": self.seller_name,
            "seller_status": self.seller_status,
            "seller_rank": self.seller_rank,
            "reg_date": self.reg_date,
            "attributes": list(self.attributes),
            "stats": [
                {"raw": s.raw, "positive": s.positive, "negative": s.negative, "value": s.value}
                for s in self.stats
            ],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ModuleRecord":
        stats = [
            Stat(
                raw=str(s.get("raw") or ""),
                positive=bool(s.get("positive")),
                negative=bool(s.get("negative")),
                value=s.get("value") or None,
            )
            for s in data.get("stats") or []
        ]
        return cls(
            name=data.get("name") or "",
            category=data.get("category") or ANCESTOR,
            price=data.get("price") or "",
            socket_type=data.get("socket_type"),
            required_rank=data.get("required_rank"),
            platform=data.get("platform"),
            reroll_count=data.get("reroll_count"),
            seller_name=data.get("seller_name"),
            seller_status=data.get("seller_status"),
            seller_rank=data.get("seller_rank"),
            reg_date=data.get("reg_date"),
            attributes=list(data.get("attributes") or []),
            stats=stats,
        )


def identity_key(record: ModuleRecord) -> str:
    # Status and rank are not part of the key: the first-seen values stick.
    return f"{record.name}|{record.price}|{record.seller_name}"


def parse_rank(value: Optional[str]) -> Optional[int]:
    if value is None or str(value) == "":
        return None
    digits = re.sub(r"[^0-9]", "", str(value))
    return int(digits) if digits else None


def parse_rerolls(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    cleaned = str(value).strip()
    if cleaned in ("", "-"):
        return 0
    digits = re.sub(r"[^0-9]", "", cleaned)
    return int(digits) if digits else None


def parse_age_days(text: Optional[str]) -> Optional[float]:
    if not text or not isinstance(text, str):
        return None
    match = _AGE_PATTERN.search(text.lower())
    if not match:
        return None
    value = float(match.group(1))
    return value if match.group(2).startswith("day") else value / 24


def parse_age_hours(text: Optional[str]) -> Optional[float]:
    if not text or not isinstance(text, str):
        return None
    match = _AGE_PATTERN.search(text.lower())
    if not match:
        return None
    value = float(match.group(1))
    return value if match.group(2).startswith("hour") else value * 24


def split_stat_line(raw: str) -> tuple[str, str]:
    """Split a stat line into its label and trailing token."""
    parts = raw.strip().split()
    if not parts:
        return "", ""
    return " ".join(parts[:-1]), parts[-1]


def strip_sign_marker(label: str) -> str:
    if label.startswith("(+)") or label.startswith("(-)"):
        return label[3:].strip()
    return label


def ancestor_attribute_name(label: str) -> str:
    return strip_sign_marker(label.strip()).split("[")[0].strip()


def trigger_attribute_name(label: str) -> str:
    return label.split("(")[0].strip()


def stat_numeric_value(stat: Stat, range_token: str) -> Optional[float]:
    if stat.value and stat.value.strip():
        match = _SIGNED_NUMBER.search(stat.value.strip())
        if match:
            return float(match.group(0))
    numbers = [float(n) for n in _SIGNED_NUMBER.findall(range_token)]
    if numbers:
        return sum(numbers) / len(numbers)
    return None


def derive_fields(record: ModuleRecord) -> ModuleRecord:
    record.mr_value = parse_rank(record.required_rank)
    record.reroll_value = parse_rerolls(record.reroll_count)
    record.age_days = parse_age_days(record.reg_date)
    record.age_hours = parse_age_hours(record.reg_date)

    attr_values: Dict[str, Optional[float]] = {}
    neg_attributes: List[str] = []
    trigger_values: Dict[str, Optional[float]] = {}
    for stat in record.stats:
        label, token = split_stat_line(stat.raw or "")
        if not label:
            continue
        attr = ancestor_attribute_name(label)
        if attr:
            attr_values[attr] = stat_numeric_value(stat, token)
            if stat.negative and attr not in neg_attributes:
                neg_attributes.append(attr)
        trigger_attr = trigger_attribute_name(label)
        if trigger_attr:
            match = _UNSIGNED_NUMBER.search(token)
            trigger_values[trigger_attr] = float(match.group(0)) if match else None

    record.attr_values = attr_values
    record.neg_attributes = neg_attributes
    record.trigger_values = trigger_values
    return record


class RecordStore:
    """Append-only, insertion-ordered record collection for one search."""

    def __init__(self, records: Iterable[ModuleRecord] = ()) -> None:
        self._lock = threading.Lock()
        self._records: List[ModuleRecord] = []
        self._keys: set[str] = set()
        self.extend(records)

    def insert(self, record: ModuleRecord) -> bool:
        key = identity_key(record)
        with self._lock:
            if key in self._keys:
                return False
            derive_fields(record)
            self._keys.add(key)
            self._records.append(record)
        return True

    def extend(self, records: Iterable[ModuleRecord]) -> int:
        return sum(1 for record in records if self.insert(record))

    def snapshot(self, name_substring: Optional[str] = None) -> List[ModuleRecord]:
        with self._lock:
            records = list(self._records)
        needle = (name_substring or "").strip().lower()
        if not needle:
            return records
        return [r for r in records if r.name and needle in r.name.lower()]

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
            self._keys.clear()

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, key: object) -> bool:
        return key in self._keys

    def __iter__(self) -> Iterator[ModuleRecord]:
        return iter(self.snapshot())
