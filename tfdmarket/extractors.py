from __future__ import annotations

import re
from typing import Any, List, Mapping, Optional

from .records import ANCESTOR, TRIGGER, ModuleRecord, Stat, ancestor_attribute_name, trigger_attribute_name

PRICE_UNIT = "Caliber"

_STATUS_WORDS = re.compile(r"\b(online|offline)\b", re.IGNORECASE)
_PRICE_UNIT_WORD = re.compile(rf"\b{PRICE_UNIT}\b", re.IGNORECASE)


def _text(element: Mapping[str, Any], key: str) -> str:
    value = element.get(key) if isinstance(element, Mapping) else None
    if not isinstance(value, str):
        return ""
    # Normalize whitespace the way textContent reads it
    normalized = value.replace("\xa0", " ").replace("\u202f", " ")
    return " ".join(normalized.split())


def _text_or_none(element: Mapping[str, Any], key: str) -> Optional[str]:
    return _text(element, key) or None


def _options(element: Mapping[str, Any]) -> List[Mapping[str, Any]]:
    options = element.get("options") if isinstance(element, Mapping) else None
    if not isinstance(options, list):
        return []
    return [opt for opt in options if isinstance(opt, Mapping)]


def clean_seller_name(text_nodes: str, full_text: str = "") -> str:
    """Seller name without any status word leaking in from the sibling indicator."""
    name = _STATUS_WORDS.sub("", text_nodes or "").strip()
    if not name:
        name = _STATUS_WORDS.sub("", full_text or "").strip()
    return " ".join(name.split())


def normalize_price(raw: str) -> str:
    return " ".join(_PRICE_UNIT_WORD.sub("", raw or "").split())


def format_price(price: str) -> str:
    price = normalize_price(price)
    return f"{price} {PRICE_UNIT}" if price else ""


def is_trigger_element(element: Mapping[str, Any]) -> bool:
    return "trigger" in _text(element, "type").lower()


def _seller_fields(element: Mapping[str, Any]) -> dict:
    return {
        "platform": _text_or_none(element, "platform"),
        "reroll_count": _text_or_none(element, "reroll"),
        "seller_name": clean_seller_name(_text(element, "seller_name_nodes"), _text(element, "seller_name_text")) or None,
        "seller_status": _text_or_none(element, "seller_status"),
        "seller_rank": _text_or_none(element, "seller_rank"),
        "reg_date": _text_or_none(element, "reg_date"),
    }


def extract_ancestor(element: Mapping[str, Any]) -> ModuleRecord:
    attributes: List[str] = []
    stats: List[Stat] = []
    for option in _options(element):
        raw = _text(option, "name")
        if not raw:
            continue
        positive = raw.startswith("(+)")
        negative = raw.startswith("(-)")
        attr = ancestor_attribute_name(raw)
        if attr and attr not in attributes:
            attributes.append(attr)
        stats.append(Stat(raw=raw, positive=positive, negative=negative, value=_text_or_none(option, "value")))

    return ModuleRecord(
        name=_text(element, "name") or _text(element, "module_name"),
        category=ANCESTOR,
        price=normalize_price(_text(element, "price")),
        socket_type=_text_or_none(element, "socket_type") or _text_or_none(element, "info_socket_type"),
        required_rank=_text_or_none(element, "required_rank"),
        attributes=attributes,
        stats=stats,
        **_seller_fields(element),
    )


def extract_trigger(element: Mapping[str, Any]) -> ModuleRecord:
    attributes: List[str] = []
    stats: List[Stat] = []
    for option in _options(element):
        label = _text(option, "name")
        value = _text(option, "value")
        attr = trigger_attribute_name(label)
        if attr and attr not in attributes:
            attributes.append(attr)
        raw = f"{label} {value}".strip()
        if raw:
            stats.append(Stat(raw=raw, value=value or None))

    return ModuleRecord(
        name=_text(element, "name") or _text(element, "module_name"),
        category=TRIGGER,
        price=normalize_price(_text(element, "price")),
        socket_type=None,
        required_rank=_text_or_none(element, "required_mastery_rank") or _text_or_none(element, "required_rank"),
        attributes=attributes,
        stats=stats,
        **_seller_fields(element),
    )


def extract_listing(element: Mapping[str, Any]) -> ModuleRecord:
    if is_trigger_element(element):
        return extract_trigger(element)
    return extract_ancestor(element)
