"""Public operations: submission, status, claim and the manual re-run stages.

Every function here returns ``{"success": True, ...}`` or ``{"error": msg}``
and does not raise for expected failures (bad input, missing credentials,
missing stage input, LLM failure). The CLI and the HTTP server are thin
wrappers around these.
"""

import json
import logging
import re
import sqlite3
import time
from urllib.parse import urlparse

from ottie import config, generator
from ottie.database import (
    create_preview,
    create_site,
    get_preview as load_preview,
    mark_error,
    slug_exists,
    update_preview,
)
from ottie.queue import ScrapeJob, ScrapeQueue
from ottie.scraper.providers import ScrapeResult, required_provider
from ottie.scraper.sites import find_adapter
from ottie.status import get_preview_status
from ottie.worker import (
    content_text,
    extract_html,
    gallery_images,
    readable_markdown,
    store_json_result,
)

log = logging.getLogger(__name__)

INVALID_URL_MESSAGE = "Invalid URL format. Please enter a valid URL (e.g., https://example.com)"
NOT_FOUND_MESSAGE = "Preview not found"
DEFAULT_TITLE = "Imported Property"
_SLUG_MAX = 50


def is_valid_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


# ---------------------------------------------------------------------------
# Submission and status
# ---------------------------------------------------------------------------

def generate_preview(url: str, queue: ScrapeQueue, db_path=None) -> dict:
    """Create a preview record and queue its scrape.

    URL syntax and provider credentials are checked before anything is
    written.

    Returns:
        {"success": True, "previewId": str, "queuePosition": int} or {"error": str}
    """
    url = (url or "").strip()
    if not is_valid_url(url):
        return {"error": INVALID_URL_MESSAGE}

    missing = config.provider_config_error(required_provider(url))
    if missing:
        log.error("Cannot queue %s: %s", url, missing)
        return {"error": missing}

    record = create_preview(url, db_path)
    try:
        position = queue.push(ScrapeJob(record["id"], url, record["created_at"]))
    except Exception as e:
        log.error("Failed to queue preview %s: %s", record["id"][:8], e)
        mark_error(record["id"], "Failed to queue the scrape. Please try again.", db_path)
        return {"error": f"Failed to queue preview: {e}"}

    return {"success": True, "previewId": record["id"], "queuePosition": position}


def preview_status(preview_id: str, queue: ScrapeQueue, db_path=None) -> dict:
    return get_preview_status(preview_id, queue, db_path)


def get_preview(preview_id: str, db_path=None) -> dict:
    record = load_preview(preview_id, db_path)
    if record is None:
        return {"error": NOT_FOUND_MESSAGE}
    return {"success": True, "preview": record}


# ---------------------------------------------------------------------------
# Claim
# ---------------------------------------------------------------------------

def slugify(text: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (text or "").lower()).strip("-")
    return slug[:_SLUG_MAX]


def _markdown_title(markdown: str | None) -> str | None:
    match = re.search(r"^#\s+(.+)$", markdown or "", re.MULTILINE)
    return match.group(1).strip() if match else None


def final_config(record: dict) -> dict:
    """The newest config on a record, without call metadata.

    A unified_json holding only call markers falls back to the Call 1 config.
    """
    for column in ("unified_json", "generated_config"):
        cfg = record.get(column)
        if isinstance(cfg, dict):
            body = {k: v for k, v in cfg.items() if k != "_metadata"}
            if body:
                return body
    return {}


def claim_preview(preview_id: str, workspace_id: str, user_id: str, db_path=None) -> dict:
    """Turn a completed preview into a draft site in a workspace.

    Workspace membership must already have been checked by the caller.

    Returns:
        {"success": True, "siteId": str, "slug": str} or {"error": str}
    """
    record = load_preview(preview_id, db_path)
    if record is None:
        return {"error": "Preview not found or expired"}
    if record["status"] != "completed":
        return {"error": "Only completed previews can be claimed"}
    if record.get("claimed_site_id"):
        return {"error": "Preview has already been claimed"}

    site_config = final_config(record)
    title = site_config.get("title") or _markdown_title(record.get("markdown")) or DEFAULT_TITLE
    slug = slugify(title) or slugify(DEFAULT_TITLE)
    if slug_exists(workspace_id, slug, db_path):
        slug = f"{slug}-{int(time.time() * 1000)}"

    metadata = {
        "external_url": record["external_url"],
        "source_domain": record.get("source_domain"),
        "imported_from_preview": True,
        "preview_id": preview_id,
    }
    try:
        site_id = create_site(preview_id, workspace_id, user_id, title, slug,
                              site_config, metadata, db_path)
    except sqlite3.Error as e:
        log.error("Failed to create site from %s: %s", preview_id[:8], e)
        return {"error": "Failed to create site. Please try again."}

    log.info("Claimed %s as site %s (%s)", preview_id[:8], site_id[:8], slug)
    return {"success": True, "siteId": site_id, "slug": slug}


# ---------------------------------------------------------------------------
# Manual re-run operations
# ---------------------------------------------------------------------------
# Each checks only that its own input exists on the record, never the status.

def process_stored_json(preview_id: str, db_path=None) -> dict:
    """Re-clean the stored structured-JSON result and re-render its text."""
    record = load_preview(preview_id, db_path)
    if record is None:
        return {"error": NOT_FOUND_MESSAGE}
    scraped = record.get("scraped_data")
    if not isinstance(scraped, dict) or not scraped.get("data"):
        return {"error": "No stored JSON data for this preview"}

    raw = scraped["data"]
    if record.get("raw_html"):
        try:
            raw = json.loads(record["raw_html"])
        except json.JSONDecodeError:
            log.warning("[%s] raw_html is not JSON, re-cleaning the stored data", preview_id[:8])

    result = ScrapeResult(provider=scraped.get("provider") or "apify", duration_ms=0,
                          kind="json", data=raw, scraper_id=scraped.get("scraperId"))
    text = store_json_result(preview_id, result, db_path)
    return {"success": True, "textLength": len(text)}


def reprocess_html(preview_id: str, db_path=None) -> dict:
    """Re-run site cleaning and both extraction branches over the stored raw HTML."""
    record = load_preview(preview_id, db_path)
    if record is None:
        return {"error": NOT_FOUND_MESSAGE}
    raw_html = record.get("raw_html")
    if not raw_html or record.get("scraped_data"):
        return {"error": "No stored HTML for this preview"}

    adapter = find_adapter(record["external_url"])
    cleaned, structured, readable = extract_html(raw_html, adapter)
    markdown = content_text(readable_markdown(readable), raw_html, adapter)
    update_preview(
        preview_id, db_path,
        markdown=markdown,
        structured_data=structured,
        readability={k: v for k, v in readable.items() if k != "markdown"},
    )
    return {
        "success": True,
        "adapter": adapter.id if adapter else None,
        "rawLength": len(raw_html),
        "cleanedLength": len(cleaned),
        "markdownLength": len(markdown),
    }


def extract_gallery_images(preview_id: str, db_path=None) -> dict:
    """Re-extract gallery image URLs from the stored post-click HTML."""
    record = load_preview(preview_id, db_path)
    if record is None:
        return {"error": NOT_FOUND_MESSAGE}
    gallery_html = record.get("gallery_raw_html")
    if not gallery_html:
        return {"error": "No gallery HTML for this preview"}

    url = record["external_url"]
    images = gallery_images(gallery_html, url, find_adapter(url))
    update_preview(preview_id, db_path, gallery_image_urls=images)
    return {"success": True, "count": len(images), "images": images}


def _generation(step, preview_id: str, client=None, db_path=None) -> dict:
    if load_preview(preview_id, db_path) is None:
        return {"error": NOT_FOUND_MESSAGE}
    try:
        cfg = step(preview_id, client=client, db_path=db_path)
    except RuntimeError as e:
        log.error("[%s] %s failed: %s", preview_id[:8], step.__name__, e)
        return {"error": str(e)}
    return {"success": True, "config": cfg}


def run_call1(preview_id: str, client=None, db_path=None) -> dict:
    return _generation(generator.run_call1, preview_id, client, db_path)


def run_call2(preview_id: str, client=None, db_path=None) -> dict:
    return _generation(generator.run_call2, preview_id, client, db_path)


def regenerate(preview_id: str, client=None, db_path=None) -> dict:
    """Call 1 then Call 2 from the stored text, without re-scraping."""
    first = run_call1(preview_id, client, db_path)
    if "error" in first:
        return first
    return run_call2(preview_id, client, db_path)


RERUN_STAGES = {
    "json": process_stored_json,
    "html": reprocess_html,
    "gallery": extract_gallery_images,
    "call1": run_call1,
    "call2": run_call2,
    "regenerate": regenerate,
}


def rerun(stage: str, preview_id: str, client=None, db_path=None) -> dict:
    """Dispatch a manual re-run by stage name (see RERUN_STAGES)."""
    op = RERUN_STAGES.get(stage)
    if op is None:
        return {"error": f"Unknown stage '{stage}'. Valid: {', '.join(RERUN_STAGES)}"}
    if stage in ("call1", "call2", "regenerate"):
        return op(preview_id, client=client, db_path=db_path)
    return op(preview_id, db_path=db_path)
