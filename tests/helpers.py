"""Test helpers shared by the unit test modules.

* :func:`make_settings`: fast, single-attempt settings with an inference
  URL and a cron secret configured.
* :func:`open_memory_db`: in-memory SQLite with the full schema.
* :class:`FakeWeb`: scripted dealership websites and inference backend
  served through :class:`httpx.MockTransport`.
"""

from __future__ import annotations

import json
import re
from typing import Any

import aiosqlite
import httpx

from dealerbot.core.settings import Settings
from dealerbot.stages import prompts
from dealerbot.storage.database import create_schema

__all__ = ["GOOD_VALIDATION", "FakeWeb", "make_settings", "open_memory_db"]


def make_settings(**overrides: Any) -> Settings:
    """Return test settings; keyword arguments override the defaults."""
    values: dict[str, Any] = {
        "inference_base_url": "http://inference.test",
        "cron_secret": "s3cret",
        "database_path": ":memory:",
        "fetch_max_attempts": 1,
        "inference_max_attempts": 1,
        "year_min": 1990,
        "year_max": 2026,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)  # type: ignore[call-arg]


async def open_memory_db() -> aiosqlite.Connection:
    """Open an in-memory SQLite database with the full schema applied."""
    conn = await aiosqlite.connect(":memory:")
    conn.row_factory = aiosqlite.Row
    await conn.execute("PRAGMA foreign_keys=ON")
    await create_schema(conn)
    return conn


# ---------------------------------------------------------------------------
# Scripted websites and inference backend
# ---------------------------------------------------------------------------

_PAGE_URL_RE = re.compile(r"^Page URL: (\S+)$", re.MULTILINE)

#: Validation response that passes the default quality gate (score 90).
GOOD_VALIDATION: dict[str, Any] = {
    "is_valid": True,
    "completeness": 0.9,
    "accuracy": 0.9,
    "consistency": 0.9,
    "is_duplicate": False,
    "issues": [],
}

Scripted = dict[str, Any] | str | int


class FakeWeb:
    """Scripted HTTP world for pipeline tests.

    * ``pages`` maps a URL to the HTML served for it; unknown URLs get 404.
    * ``explore`` / ``extract`` map a page URL to the inference response for
      that page.  A ``dict`` is returned as structured ``output``, a ``str``
      as free ``text`` and an ``int`` as a bare HTTP status.  Pages with no
      scripted response get HTTP 500.
    * ``validation`` answers every validate call, unless a key of
      ``validation_by_url`` occurs in the validate prompt.
    """

    def __init__(self) -> None:
        self.pages: dict[str, str] = {}
        self.explore: dict[str, Scripted] = {}
        self.extract: dict[str, Scripted] = {}
        self.validation: Scripted = dict(GOOD_VALIDATION)
        self.validation_by_url: dict[str, Scripted] = {}
        self.fetched: list[str] = []
        self.inference_calls: list[str] = []

    def add_listing_page(self, url: str, detail_urls: list[str]) -> None:
        self.pages[url] = f"<html><body>listing {url}</body></html>"
        self.explore[url] = {"vehicle_urls": [{"url": u} for u in detail_urls]}

    def add_vehicle(self, url: str, **fields: Any) -> None:
        self.pages[url] = f"<html><body>vehicle {url}</body></html>"
        record: dict[str, Any] = {
            "brand": "Toyota",
            "model": "Corolla",
            "condition": "used",
            "year": 2019,
            "price": 15000,
            "mileage": 42000,
            "description": "Única dueña",
            "location": "Bogotá",
            "features": ["ABS", "Airbags"],
            "image_urls": ["/img/1.jpg", "/img/2.jpg"],
        }
        record.update(fields)
        self.extract[url] = record

    @property
    def fetch_transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._handle_fetch)

    @property
    def inference_transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._handle_inference)

    def _handle_fetch(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.fetched.append(url)
        if url not in self.pages:
            return httpx.Response(404, text="not found")
        return httpx.Response(200, text=self.pages[url])

    def _handle_inference(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        schema = body["response_schema"]
        prompt: str = body["prompt"]

        response: Scripted
        if schema == prompts.VALIDATE_SCHEMA:
            self.inference_calls.append("validate")
            response = next(
                (r for key, r in self.validation_by_url.items() if key in prompt),
                self.validation,
            )
        else:
            match = _PAGE_URL_RE.search(prompt)
            page_url = match.group(1) if match else ""
            if schema == prompts.EXPLORE_SCHEMA:
                self.inference_calls.append("explore")
                response = self.explore.get(page_url, 500)
            else:
                self.inference_calls.append("extract")
                response = self.extract.get(page_url, 500)

        if isinstance(response, int):
            return httpx.Response(response, text="scripted failure")
        if isinstance(response, str):
            return httpx.Response(200, json={"text": response})
        return httpx.Response(200, json={"output": response})
