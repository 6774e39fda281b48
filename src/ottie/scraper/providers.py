"""Scrape providers behind one contract: scrape_url(url, timeout_ms) -> ScrapeResult.

  scraperapi  generic HTTP renderer (GET with api_key + url)
  firecrawl   JS renderer with post-load actions; one call can return both
              the main HTML and the post-click gallery HTML
  browser     local headless Chromium via Playwright (no paid renderer needed)
  apify       structured-JSON scraper, used whenever the site adapter
              registers one for the URL's host

Every provider failure (timeout, non-2xx, malformed or empty body) surfaces as
a ScrapeError with a human-readable cause. Providers never retry; a failed
job is resumed by the caller.
"""

import logging
import os
import random
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

import httpx

from ottie import config

log = logging.getLogger(__name__)

UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"

SCRAPERAPI_URL = "http://api.scraperapi.com/"
FIRECRAWL_URL = "https://api.firecrawl.dev/v1/scrape"
APIFY_BASE = "https://api.apify.com/v2"


class ScrapeError(RuntimeError):
    """A provider could not return usable content for a URL."""

    def __init__(self, message: str, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider


@dataclass
class ScrapeResult:
    """Tagged provider result: kind is "html" or "json"."""
    provider: str
    duration_ms: int
    kind: str = "html"
    html: str | None = None
    markdown: str | None = None
    gallery_html: str | None = None
    data: Any = None
    scraper_id: str | None = None

    @property
    def is_json(self) -> bool:
        return self.kind == "json"

    @property
    def source_domain(self) -> str:
        if self.is_json and self.scraper_id:
            return f"apify_{self.scraper_id}"
        return self.provider


def _seconds(timeout_ms: int) -> int:
    return int(timeout_ms / 1000)


@contextmanager
def _session(client: httpx.Client | None, timeout_ms: int):
    """Yield the caller's client, or a short-lived one closed on exit."""
    if client is not None:
        yield client
        return
    owned = httpx.Client(timeout=timeout_ms / 1000, follow_redirects=True)
    try:
        yield owned
    finally:
        owned.close()


def _require_key(provider: str) -> str:
    env_var, _label = config.PROVIDER_KEYS[provider]
    key = os.environ.get(env_var, "")
    if not key:
        raise ScrapeError(f"{env_var} is not configured", provider)
    return key


# Response bodies are untrusted JSON; anything of the wrong shape reads as empty
def _as_dict(value) -> dict:
    return value if isinstance(value, dict) else {}


def _as_list(value) -> list:
    return value if isinstance(value, list) else []


def _as_str(value) -> str:
    return value if isinstance(value, str) else ""


# ---------------------------------------------------------------------------
# ScraperAPI
# ---------------------------------------------------------------------------

def scrape_with_scraperapi(url: str, timeout_ms: int,
                           client: httpx.Client | None = None) -> ScrapeResult:
    api_key = _require_key("scraperapi")
    log.info("[scraperapi] Scraping %s", url)
    t0 = time.time()
    try:
        with _session(client, timeout_ms) as http:
            resp = http.get(SCRAPERAPI_URL, params={"api_key": api_key, "url": url},
                            timeout=timeout_ms / 1000)
    except httpx.TimeoutException as e:
        raise ScrapeError(f"ScraperAPI timeout after {_seconds(timeout_ms)} seconds",
                          "scraperapi") from e
    except httpx.HTTPError as e:
        raise ScrapeError(f"ScraperAPI error: {e}", "scraperapi") from e

    if resp.status_code >= 400:
        raise ScrapeError(f"ScraperAPI error: {resp.status_code} {resp.reason_phrase}",
                          "scraperapi")
    html = resp.text
    if not html.strip():
        raise ScrapeError("ScraperAPI returned empty content", "scraperapi")

    duration = int((time.time() - t0) * 1000)
    log.info("[scraperapi] %d chars in %dms", len(html), duration)
    return ScrapeResult(provider="scraperapi", duration_ms=duration, html=html)


# ---------------------------------------------------------------------------
# Firecrawl
# ---------------------------------------------------------------------------

def combined_actions(adapter, with_gallery: bool) -> list[dict] | None:
    """Firecrawl action list for a site, or None for a plain single scrape.

    Without a gallery click the adapter's detail actions (if any) run before
    the final capture. With one, a single call captures twice:
    [detail actions, scrape, wait, click, wait, scrape].
    """
    if adapter is None:
        return None
    detail = [a for a in adapter.actions if a.get("type") != "scrape"]
    if not (with_gallery and adapter.gallery_click):
        return detail or None
    return detail + [
        {"type": "scrape"},
        {"type": "wait", "milliseconds": random.randint(1500, 2500)},
        {"type": "click", "selector": adapter.gallery_click},
        {"type": "wait", "milliseconds": random.randint(1000, 2000)},
        {"type": "scrape"},
    ]


def scrape_with_firecrawl(url: str, timeout_ms: int, actions: list[dict] | None = None,
                          client: httpx.Client | None = None) -> ScrapeResult:
    api_key = _require_key("firecrawl")
    payload: dict = {
        "url": url,
        "formats": ["rawHtml", "markdown"],
        "timeout": timeout_ms,
    }
    if actions:
        payload["actions"] = actions

    log.info("[firecrawl] Scraping %s (%d actions)", url, len(actions or []))
    t0 = time.time()
    try:
        with _session(client, timeout_ms) as http:
            resp = http.post(
                FIRECRAWL_URL,
                json=payload,
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=timeout_ms / 1000 + 10,
            )
    except httpx.TimeoutException as e:
        raise ScrapeError(f"Firecrawl timeout after {_seconds(timeout_ms)} seconds",
                          "firecrawl") from e
    except httpx.HTTPError as e:
        raise ScrapeError(f"Firecrawl error: {e}", "firecrawl") from e

    if resp.status_code == 408:
        raise ScrapeError(f"Firecrawl timeout after {_seconds(timeout_ms)} seconds", "firecrawl")
    try:
        body = resp.json()
    except ValueError as e:
        raise ScrapeError(f"Firecrawl error: {resp.status_code} malformed response",
                          "firecrawl") from e
    if not isinstance(body, dict):
        raise ScrapeError(f"Firecrawl error: {resp.status_code} malformed response", "firecrawl")
    if resp.status_code >= 400 or not body.get("success", False):
        detail = body.get("error") or resp.reason_phrase
        raise ScrapeError(f"Firecrawl error: {resp.status_code} {detail}", "firecrawl")

    data = _as_dict(body.get("data"))
    scrapes = [s for s in _as_list(_as_dict(data.get("actions")).get("scrapes"))
               if isinstance(s, dict)]
    html = _as_str(data.get("rawHtml")) or _as_str(data.get("html"))
    gallery_html = None
    if len(scrapes) >= 2:
        html = _as_str(scrapes[0].get("html")) or html
        gallery_html = _as_str(scrapes[-1].get("html")) or None
    markdown = _as_str(data.get("markdown")) or None

    if not html.strip() and not (markdown or "").strip():
        raise ScrapeError("Firecrawl returned empty content", "firecrawl")

    duration = int((time.time() - t0) * 1000)
    log.info("[firecrawl] %d chars html, %d chars markdown, gallery=%s in %dms",
             len(html), len(markdown or ""), bool(gallery_html), duration)
    return ScrapeResult(provider="firecrawl", duration_ms=duration, html=html,
                        markdown=markdown, gallery_html=gallery_html)


# ---------------------------------------------------------------------------
# Local browser (Playwright)
# ---------------------------------------------------------------------------

def scrape_with_browser(url: str, timeout_ms: int, adapter=None,
                        with_gallery: bool = False, headless: bool = True) -> ScrapeResult:
    """Render the page in headless Chromium and return its HTML.

    Runs the adapter's detail actions, captures the main HTML, then (gallery
    mode) clicks the gallery opener and captures again.
    """
    from playwright.sync_api import Error as PlaywrightError
    from playwright.sync_api import TimeoutError as PlaywrightTimeout
    from playwright.sync_api import sync_playwright

    log.info("[browser] Scraping %s", url)
    t0 = time.time()
    gallery_html = None
    try:
        with sync_playwright() as p:
            browser = p.chromium.launch(headless=headless)
            try:
                page = browser.new_page(user_agent=UA)
                page.goto(url, timeout=timeout_ms)
                page.wait_for_load_state("networkidle", timeout=timeout_ms)

                for action in (adapter.actions if adapter else []):
                    _run_browser_action(page, action)
                html = page.content()

                if with_gallery and adapter and adapter.gallery_click:
                    page.wait_for_timeout(random.randint(1500, 2500))
                    try:
                        page.click(adapter.gallery_click, timeout=10000)
                        page.wait_for_timeout(random.randint(1000, 2000))
                        gallery_html = page.content()
                    except PlaywrightTimeout:
                        log.warning("[browser] Gallery opener not found: %s", adapter.gallery_click)
            finally:
                browser.close()
    except PlaywrightTimeout as e:
        raise ScrapeError(f"Browser timeout after {_seconds(timeout_ms)} seconds", "browser") from e
    except PlaywrightError as e:
        raise ScrapeError(f"Browser error: {e}", "browser") from e

    if not html.strip():
        raise ScrapeError("Browser returned empty content", "browser")

    duration = int((time.time() - t0) * 1000)
    log.info("[browser] %d chars, gallery=%s in %dms", len(html), bool(gallery_html), duration)
    return ScrapeResult(provider="browser", duration_ms=duration, html=html,
                        gallery_html=gallery_html)


def _run_browser_action(page, action: dict) -> None:
    from playwright.sync_api import TimeoutError as PlaywrightTimeout

    kind = action.get("type")
    if kind == "wait":
        page.wait_for_timeout(action.get("milliseconds") or action.get("ms") or 1000)
    elif kind == "click":
        try:
            page.click(action["selector"], timeout=10000)
        except PlaywrightTimeout:
            log.warning("[browser] Click target not found: %s", action["selector"])
    elif kind == "scroll":
        page.mouse.wheel(0, -2000 if action.get("direction") == "up" else 2000)


# ---------------------------------------------------------------------------
# Apify (structured JSON)
# ---------------------------------------------------------------------------

def _apify_data(resp: httpx.Response) -> dict:
    """The run object of an Apify API response."""
    body = resp.json()
    data = body.get("data") if isinstance(body, dict) else None
    if not isinstance(data, dict):
        raise ScrapeError(f"Apify error: {resp.status_code} malformed response", "apify")
    return data


def run_apify_actor(scraper: dict, url: str, timeout_ms: int,
                    client: httpx.Client | None = None,
                    poll_interval: float | None = None) -> ScrapeResult:
    """Start an actor run, poll until it finishes, return its dataset items.

    Args:
        scraper: {"id", "actor_id", "name"} from the site adapter registry.
        url: Listing URL, passed as the actor's single start URL.
        timeout_ms: Overall budget; polling gives up after timeout / interval attempts.
    """
    token = _require_key("apify")
    if poll_interval is None:
        poll_interval = config.DEFAULTS["apify_poll_interval"]
    actor = scraper["actor_id"]
    name = scraper.get("name", scraper["id"])
    params = {"token": token}

    log.info("[apify:%s] Scraping %s", name, url)
    t0 = time.time()
    try:
        with _session(client, timeout_ms) as http:
            resp = http.post(f"{APIFY_BASE}/acts/{actor}/runs", params=params,
                             json={"startUrls": [{"url": url}]})
            if resp.status_code >= 400:
                raise ScrapeError(
                    f"Apify API error: {resp.status_code} {resp.text[:200]}", "apify")
            run = _apify_data(resp)
            run_id = run["id"]
            dataset_id = run["defaultDatasetId"]
            status = run.get("status")

            max_polls = int(timeout_ms / 1000 / poll_interval) if poll_interval else 0
            polls = 0
            while status not in ("SUCCEEDED", "FAILED", "ABORTED", "TIMED-OUT"):
                if polls >= max_polls:
                    raise ScrapeError(
                        f"Apify timeout after {_seconds(timeout_ms)} seconds", "apify")
                time.sleep(poll_interval)
                polls += 1
                resp = http.get(f"{APIFY_BASE}/acts/{actor}/runs/{run_id}", params=params)
                if resp.status_code >= 400:
                    raise ScrapeError(
                        f"Apify error: failed to check run status ({resp.status_code})", "apify")
                status = _apify_data(resp).get("status")
                log.debug("[apify:%s] Run %s status %s (%d/%d)", name, run_id, status,
                          polls, max_polls)

            if status != "SUCCEEDED":
                raise ScrapeError(f"Apify run failed: {run_id}", "apify")

            resp = http.get(f"{APIFY_BASE}/datasets/{dataset_id}/items", params=params)
            if resp.status_code >= 400:
                raise ScrapeError(
                    f"Apify error: failed to fetch dataset ({resp.status_code})", "apify")
            items = resp.json()
            if not isinstance(items, list):
                raise ScrapeError("Apify error: dataset is not a list of items", "apify")
    except httpx.TimeoutException as e:
        raise ScrapeError(f"Apify timeout after {_seconds(timeout_ms)} seconds", "apify") from e
    except (httpx.HTTPError, ValueError, KeyError) as e:
        raise ScrapeError(f"Apify error: {e}", "apify") from e

    if not items:
        raise ScrapeError("Apify returned no items", "apify")

    duration = int((time.time() - t0) * 1000)
    log.info("[apify:%s] %d item(s) in %dms", name, len(items), duration)
    return ScrapeResult(provider="apify", duration_ms=duration, kind="json",
                        data=items, scraper_id=scraper["id"])


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

def required_provider(url: str) -> str:
    """The provider a URL will be scraped with (for credential checks)."""
    from ottie.scraper.sites import find_adapter

    adapter = find_adapter(url)
    if adapter and adapter.json_scraper:
        return "apify"
    return config.get_scraper_provider()


def scrape_url(url: str, timeout_ms: int | None = None, adapter=None,
               with_gallery: bool = False, client: httpx.Client | None = None) -> ScrapeResult:
    """Scrape a URL with whichever provider applies to it.

    A host with a registered structured-JSON scraper always goes to Apify;
    everything else goes to the provider named by SCRAPER_PROVIDER.

    Raises:
        ScrapeError: On any provider failure.
    """
    if timeout_ms is None:
        timeout_ms = config.DEFAULTS["scrape_timeout_ms"]

    if adapter is not None and adapter.json_scraper:
        return run_apify_actor(adapter.json_scraper, url, timeout_ms, client=client)

    provider = config.get_scraper_provider()
    if provider == "firecrawl":
        return scrape_with_firecrawl(url, timeout_ms,
                                     actions=combined_actions(adapter, with_gallery),
                                     client=client)
    if provider == "browser":
        return scrape_with_browser(url, timeout_ms, adapter=adapter, with_gallery=with_gallery)
    return scrape_with_scraperapi(url, timeout_ms, client=client)
