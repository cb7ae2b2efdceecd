"""Shared builders for the tfdmarket test suite."""

import asyncio
import json
from typing import Dict, List, Optional

import pytest

from tfdmarket.browser import PageSurfaceError
from tfdmarket.extractors import extract_listing
from tfdmarket.records import derive_fields
from tfdmarket.scripts import PARSE_LISTINGS


# ── Element snapshots ────────────────────────────────────

def make_element(
    name="Fire Catalyst",
    price="1,200 Caliber",
    seller="Alice",
    status="Online",
    kind="Ancestor Module",
    options=None,
    rank="15",
    reroll="3",
    reg_date="2 days ago",
    platform="PC",
    socket="Almandine",
):
    """Element snapshot shaped like the parse pass output for one listing."""
    if options is None:
        options = [
            {"name": "(+)Power [1.0~20.0]", "value": "10.0"},
            {"name": "(-)Cooldown [-5.0~-1.0]", "value": ""},
        ]
    return {
        "type": kind,
        "name": name,
        "module_name": "",
        "socket_type": socket if "trigger" not in kind.lower() else "",
        "info_socket_type": "",
        "required_rank": rank if "trigger" not in kind.lower() else "",
        "required_mastery_rank": rank if "trigger" in kind.lower() else "",
        "platform": platform,
        "reroll": reroll,
        "seller_name_nodes": f" {seller} ",
        "seller_name_text": f"{seller}{status}",
        "seller_status": status,
        "seller_rank": "42",
        "price": price,
        "options": options,
        "reg_date": reg_date,
    }


def make_trigger_element(name="Trigger Blaze", value="12", **kwargs):
    options = kwargs.pop("options", None) or [{"name": "Crit Rate (%)", "value": value}]
    return make_element(name=name, kind="Trigger Module", options=options, **kwargs)


def make_record(**kwargs):
    return derive_fields(extract_listing(make_element(**kwargs)))


def make_trigger_record(**kwargs):
    return derive_fields(extract_listing(make_trigger_element(**kwargs)))


def batch(count, loader=False, prefix="Module"):
    """Parse pass payload with ``count`` distinct listings."""
    return {
        "items": [make_element(name=f"{prefix} {i}", seller=f"seller{i}") for i in range(count)],
        "itemCount": count,
        "loaderVisible": loader,
    }


# ── Fake page surface ────────────────────────────────────

class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeSurface:
    """Scripted page surface. Parse passes replay ``payloads``, repeating the last one."""

    def __init__(
        self,
        payloads=None,
        clock: Optional[FakeClock] = None,
        fail_navigation=False,
        fail_setup=False,
        scroll_error: Optional[Exception] = None,
        block_after_polls: Optional[int] = None,
        block_on_parse: Optional[int] = None,
    ):
        self.payloads: List = list(payloads or [batch(0)])
        self.clock = clock
        self.fail_navigation = fail_navigation
        self.fail_setup = fail_setup
        self.scroll_error = scroll_error
        self.block_after_polls = block_after_polls
        self.block_on_parse = block_on_parse
        self.blocked = asyncio.Event()
        self.navigated: List[str] = []
        self.setup_scripts: List[str] = []
        self.parse_calls = 0
        self.scrolls = 0
        self.waits: List[int] = []
        self.closed = False
        self.close_calls = 0

    async def navigate(self, url):
        if self.fail_navigation:
            raise PageSurfaceError(f"failed to load {url}")
        self.navigated.append(url)

    async def inject(self, script):
        if self.closed:
            raise PageSurfaceError("page surface has been released")
        if script != PARSE_LISTINGS:
            self.setup_scripts.append(script)
            if self.fail_setup:
                raise PageSurfaceError("dropdown not found")
            return True
        index = min(self.parse_calls, len(self.payloads) - 1)
        self.parse_calls += 1
        if self.block_on_parse is not None and self.parse_calls >= self.block_on_parse:
            self.blocked.set()
            await asyncio.Event().wait()
        payload = self.payloads[index]
        return payload if isinstance(payload, str) else json.dumps(payload)

    async def scroll(self):
        self.scrolls += 1
        if self.scroll_error is not None:
            raise self.scroll_error

    async def wait(self, ms):
        self.waits.append(ms)
        if self.clock is not None:
            self.clock.advance(ms / 1000)
        if self.block_after_polls is not None and self.parse_calls >= self.block_after_polls:
            self.blocked.set()
            await asyncio.Event().wait()
        await asyncio.sleep(0)

    async def close(self):
        self.close_calls += 1
        self.closed = True


class EventLog:
    """Listener that keeps every event it receives."""

    def __init__(self):
        self.events = []

    def __call__(self, event):
        self.events.append(event)

    def of_type(self, cls, search_id=None) -> List:
        return [e for e in self.events if isinstance(e, cls) and (search_id is None or e.search_id == search_id)]


def surface_factory(*surfaces):
    """Async factory handing out ``surfaces`` in order."""
    pending = list(surfaces)
    handed_out: Dict[int, FakeSurface] = {}

    async def factory():
        surface = pending.pop(0)
        handed_out[len(handed_out)] = surface
        return surface

    factory.handed_out = handed_out
    return factory


# ── Fixtures ─────────────────────────────────────────────

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def events():
    return EventLog()


class MemoryKeyValueStore:
    def __init__(self):
        self.data: Dict[str, str] = {}

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value):
        self.data[key] = value

    def delete(self, key):
        self.data.pop(key, None)


@pytest.fixture
def kv():
    return MemoryKeyValueStore()
