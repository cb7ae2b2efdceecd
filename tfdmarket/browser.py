from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Protocol, runtime_checkable

from selenium import webdriver
from selenium.common.exceptions import WebDriverException
from selenium.webdriver.chrome.options import Options
from selenium.webdriver.chrome.service import Service
from webdriver_manager.chrome import ChromeDriverManager

from .scripts import SCROLL_TO_BOTTOM, wrap_async

logger = logging.getLogger(__name__)

SCRIPT_TIMEOUT_SECONDS = 30
PAGE_LOAD_TIMEOUT_SECONDS = 60


class PageSurfaceError(RuntimeError):
    """Raised by a page surface when navigation or script injection fails."""


@runtime_checkable
class PageSurface(Protocol):
    """The automated page capability a search needs: inject, scroll, wait."""

    async def navigate(self, url: str) -> None: ...

    async def inject(self, script: str) -> Any: ...

    async def scroll(self) -> None: ...

    async def wait(self, ms: int) -> None: ...

    async def close(self) -> None: ...


def create_driver(headless: bool = True) -> webdriver.Chrome:
    options = Options()
    if headless:
        options.add_argument("--headless=new")
    options.add_argument("--window-size=1920,1080")
    options.add_argument("--disable-gpu")
    options.add_argument("--no-sandbox")
    options.add_argument("--disable-dev-shm-usage")
    options.add_argument(
        "--user-agent=Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0 Safari/537.36"
    )
    driver = webdriver.Chrome(service=Service(ChromeDriverManager().install()), options=options)
    driver.set_script_timeout(SCRIPT_TIMEOUT_SECONDS)
    driver.set_page_load_timeout(PAGE_LOAD_TIMEOUT_SECONDS)
    return driver


class SeleniumPageSurface:
    """:class:`PageSurface` backed by one Chrome window.

    Selenium is blocking, so every driver call runs in a worker thread and
    only the calling search's task is suspended while it runs.
    """

    def __init__(self, driver: webdriver.Chrome) -> None:
        self._driver: Optional[webdriver.Chrome] = driver

    @classmethod
    async def open(cls, headless: bool = True) -> "SeleniumPageSurface":
        driver = await asyncio.to_thread(create_driver, headless)
        return cls(driver)

    @property
    def closed(self) -> bool:
        return self._driver is None

    def _require_driver(self) -> webdriver.Chrome:
        if self._driver is None:
            raise PageSurfaceError("page surface has been released")
        return self._driver

    async def navigate(self, url: str) -> None:
        driver = self._require_driver()
        try:
            await asyncio.to_thread(driver.get, url)
        except WebDriverException as exc:
            raise PageSurfaceError(f"failed to load {url}: {exc.msg or exc}") from exc

    async def inject(self, script: str) -> Any:
        driver = self._require_driver()
        try:
            result = await asyncio.to_thread(driver.execute_async_script, wrap_async(script))
        except WebDriverException as exc:
            raise PageSurfaceError(exc.msg or str(exc)) from exc
        if isinstance(result, dict) and "__error" in result:
            raise PageSurfaceError(str(result["__error"]))
        return result

    async def scroll(self) -> None:
        driver = self._require_driver()
        try:
            await asyncio.to_thread(driver.execute_script, SCROLL_TO_BOTTOM)
        except WebDriverException as exc:
            raise PageSurfaceError(exc.msg or str(exc)) from exc

    async def wait(self, ms: int) -> None:
        await asyncio.sleep(ms / 1000)

    async def close(self) -> None:
        driver, self._driver = self._driver, None
        if driver is None:
            return
        try:
            await asyncio.to_thread(driver.quit)
        except WebDriverException as exc:
            logger.warning("Failed to quit webdriver cleanly: %s", exc)
