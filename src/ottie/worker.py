"""Single in-process worker: drains the scrape queue one job at a time.

Per job: status scraping -> provider scrape -> site cleaning and extraction
-> gallery sub-phase -> status pending -> Call 1 -> Call 2 (status completed).
Stages with a safe fallback absorb their own errors; anything else
propagates to process_job(), the only place that marks a record as failed.

The loop blocks on the queue and is woken by push() or trigger(), with a
periodic sweep that fails claims left behind by a crashed worker.
"""

import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import httpx
from bs4 import BeautifulSoup

from ottie import config
from ottie.database import get_preview, mark_error, update_preview
from ottie.generator import run_call1, run_call2
from ottie.queue import ScrapeJob, ScrapeQueue
from ottie.scraper.extract import extract_structured_data
from ottie.scraper.normalize import (
    extract_structured_text,
    format_json_to_text,
    html_to_markdown,
)
from ottie.scraper.providers import ScrapeError, ScrapeResult, scrape_url
from ottie.scraper.sites import SiteAdapter, clean_scraped_json, collect_image_urls, find_adapter

log = logging.getLogger(__name__)

TIMEOUT_MESSAGE = ("Request timeout. The website may be too slow or unresponsive. "
                   "Please try again or use a different URL.")
NO_CONTENT_MESSAGE = "Cannot scrape this website. Please try another URL."
INTERRUPTED_MESSAGE = "Processing was interrupted. Please try again."

_MAX_MESSAGE_CHARS = 300


def user_message(exc: BaseException) -> str:
    """Short, user-facing text for a job-fatal error."""
    text = str(exc) or exc.__class__.__name__
    lowered = text.lower()
    if isinstance(exc, (httpx.TimeoutException, TimeoutError)) or (
            isinstance(exc, ScrapeError) and ("timeout" in lowered or "timed out" in lowered)):
        return TIMEOUT_MESSAGE
    if len(text) > _MAX_MESSAGE_CHARS:
        return text[:_MAX_MESSAGE_CHARS - 3] + "..."
    return text


# ---------------------------------------------------------------------------
# Scrape stage helpers (also used by the manual re-run operations)
# ---------------------------------------------------------------------------

def store_json_result(preview_id: str, result: ScrapeResult, db_path=None) -> str:
    """Clean structured-JSON items, persist them and their text rendering.

    Returns:
        The formatted text Call 1 will read.
    """
    cleaned = clean_scraped_json(result.data, result.scraper_id)
    text = format_json_to_text(cleaned)
    update_preview(
        preview_id, db_path,
        raw_html=json.dumps(result.data, ensure_ascii=False),
        markdown=text,
        scraped_data={"provider": result.provider, "scraperId": result.scraper_id,
                      "data": cleaned},
        source_domain=result.source_domain,
    )
    log.info("[%s] Stored %s JSON: %d chars of text", preview_id[:8], result.source_domain,
             len(text))
    return text


def content_text(markdown: str | None, html: str, adapter: SiteAdapter | None) -> str:
    """Markdown if it has text, else structured text of the main element, else of the page."""
    if markdown and markdown.strip():
        return markdown
    main = (adapter or SiteAdapter(id="generic", hosts=[])).main_content(html)
    text = extract_structured_text(main) if main else ""
    if text.strip():
        return text
    return extract_structured_text(html)


def readable_markdown(readable: dict) -> str | None:
    # length is 0 when readability found no text or fell back to the raw HTML
    return readable.get("markdown") if readable.get("length") else None


def extract_html(raw_html: str, adapter: SiteAdapter | None) -> tuple[str, dict, dict]:
    """Clean the page and run both extraction branches over it.

    Structured data is read from the uncleaned HTML (cleaning removes the
    script tags it lives in); markdown is built from the cleaned HTML. The
    two branches are independent and run concurrently.

    Returns:
        (cleaned_html, structured_data, readability_result)
    """
    cleaned = adapter.clean(raw_html) if adapter else raw_html
    with ThreadPoolExecutor(max_workers=2) as pool:
        structured = pool.submit(extract_structured_data, raw_html)
        readable = pool.submit(html_to_markdown, cleaned)
        return cleaned, structured.result(), readable.result()


def gallery_images(gallery_html: str, url: str, adapter: SiteAdapter | None) -> list[str]:
    if adapter is not None:
        return adapter.extract_gallery(gallery_html, base_url=url)
    return collect_image_urls(BeautifulSoup(gallery_html, "html.parser").find_all("img"), url)


def store_html_result(preview_id: str, url: str, result: ScrapeResult,
                      adapter: SiteAdapter | None, db_path=None) -> str:
    """Persist an HTML scrape, then run the gallery sub-phase.

    Returns:
        The text Call 1 will read.

    Raises:
        ScrapeError: If the page yields no text at all.
    """
    raw_html = result.html or ""
    _cleaned, structured, readable = extract_html(raw_html, adapter)
    markdown = content_text(result.markdown or readable_markdown(readable), raw_html, adapter)
    gallery_html = result.gallery_html or None

    update_preview(
        preview_id, db_path,
        raw_html=raw_html,
        markdown=markdown,
        gallery_raw_html=gallery_html,
        gallery_markdown=extract_structured_text(gallery_html) if gallery_html else None,
        structured_data=structured,
        readability={k: v for k, v in readable.items() if k != "markdown"},
        source_domain=result.source_domain,
    )
    if not markdown.strip():
        raise ScrapeError(NO_CONTENT_MESSAGE, result.provider)

    images = gallery_images(gallery_html, url, adapter) if gallery_html else []
    if gallery_html:
        log.info("[%s] Gallery: %d images", preview_id[:8], len(images))
    update_preview(preview_id, db_path, gallery_image_urls=images)
    return markdown


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------

class Worker:
    """Processes queued jobs strictly one at a time.

    Args:
        queue: An initialised ScrapeQueue.
        db_path: Database override (tests).
        scrape: Provider entry point, scrape_url(url, adapter=..., with_gallery=...).
        client: LLM client passed to both generation calls (None = module singleton).
    """

    def __init__(self, queue: ScrapeQueue, db_path=None, scrape=scrape_url, client=None) -> None:
        self.queue = queue
        self.db_path = db_path
        self.scrape = scrape
        self.client = client
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._current: str | None = None
        self._last_sweep = 0.0

    # -- pipeline -----------------------------------------------------------

    def run_pipeline(self, job: ScrapeJob) -> None:
        """All stages for one job. Raises on the first stage without a fallback."""
        pid = job.id[:8]
        update_preview(job.id, self.db_path, status="scraping")
        log.info("[%s] Scraping %s", pid, job.url)

        adapter = find_adapter(job.url)
        result = self.scrape(job.url, adapter=adapter, with_gallery=True)

        if result.is_json:
            store_json_result(job.id, result, self.db_path)
        else:
            store_html_result(job.id, job.url, result, adapter, self.db_path)

        update_preview(job.id, self.db_path, status="pending")
        run_call1(job.id, client=self.client, db_path=self.db_path)
        run_call2(job.id, client=self.client, db_path=self.db_path)

    def process_job(self, job: ScrapeJob) -> bool:
        """Run one claimed job; on any failure record status=error. Returns success."""
        pid = job.id[:8]
        record = get_preview(job.id, self.db_path)
        if record is None or record["status"] == "error":
            log.warning("[%s] Preview record %s, dropping job", pid,
                        "missing" if record is None else "already failed")
            self.queue.mark_completed(job.id, success=False)
            return False

        self._current = job.id
        t0 = time.time()
        try:
            self.run_pipeline(job)
        except Exception as e:
            message = user_message(e)
            log.error("[%s] Job failed: %s (%s)", pid, message, e)
            mark_error(job.id, message, self.db_path)
            self.queue.mark_completed(job.id, success=False)
            return False
        finally:
            self._current = None

        self.queue.mark_completed(job.id, success=True)
        log.info("[%s] Completed in %.1fs", pid, time.time() - t0)
        return True

    def process_next_job(self) -> bool | None:
        """Claim and run the oldest job. None when the queue is empty."""
        job = self.queue.pop()
        if job is None:
            return None
        return self.process_job(job)

    def drain(self) -> int:
        """Process jobs until the queue is empty. Returns the number processed."""
        processed = 0
        while not self._stop.is_set() and self.process_next_job() is not None:
            processed += 1
        return processed

    # -- stuck-claim sweep --------------------------------------------------

    def sweep(self, older_than: float | None = None) -> int:
        """Fail claims older than ``older_than`` seconds whose record never finished.

        Claims for records already completed or failed are just released.
        Nothing is re-run. Returns the number of records failed.
        """
        if older_than is None:
            older_than = config.DEFAULTS["stuck_after"]
        failed = 0
        for claim in self.queue.stuck(older_than):
            if claim["id"] == self._current:
                continue
            record = get_preview(claim["id"], self.db_path)
            status = record["status"] if record else None
            if status in ("queued", "scraping", "pending"):
                log.warning("[%s] Claimed since %s and never finished, failing it",
                            claim["id"][:8], claim["claimed_at"])
                mark_error(claim["id"], INTERRUPTED_MESSAGE, self.db_path)
                failed += 1
            self.queue.mark_completed(claim["id"], success=status == "completed")
        self._last_sweep = time.time()
        self.queue.notify()
        return failed

    # -- loop ---------------------------------------------------------------

    def trigger(self) -> None:
        """Wake the loop so it checks the queue now."""
        self.queue.notify()

    def run_forever(self) -> None:
        idle_wait = config.DEFAULTS["worker_idle_wait"]
        sweep_interval = config.DEFAULTS["sweep_interval"]
        log.info("Worker started")
        while not self._stop.is_set() and self.queue.is_open:
            if time.time() - self._last_sweep >= sweep_interval:
                self.sweep()
            job = self.queue.wait_pop(idle_wait)
            if job is None:
                continue
            self.process_job(job)
        log.info("Worker stopped")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="ottie-worker",
                                        daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        """Ask the loop to exit after the current job and wait for it."""
        self._stop.set()
        self.queue.notify()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
