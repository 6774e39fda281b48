"""Progress phase for a preview, derived from the stored record alone.

No phase is ever persisted. derive_phase() reads the coarse status, the
gallery fields and the ``_metadata`` timestamps written by the two LLM calls,
so a cold read of the record always gives the same answer as the worker
would.
"""

import logging
import time

from ottie import config
from ottie.database import get_preview

log = logging.getLogger(__name__)

PHASES = ("queue", "scraping", "gallery", "call1", "call2", "assembling", "completed", "error")


def call_metadata(record: dict) -> dict:
    """The ``_metadata`` of the newest config on the record (final, else Call 1)."""
    for column in ("unified_json", "generated_config"):
        value = record.get(column)
        if isinstance(value, dict) and isinstance(value.get("_metadata"), dict):
            return value["_metadata"]
    return {}


def derive_phase(record: dict, queue_position: int | None = None,
                 processing: bool = False) -> str:
    """Map (status, gallery fields, call timestamps, queue state) to a phase.

    First matching rule wins:
      queued, not claimed, waiting in line  -> queue
      scraping with gallery HTML but no extracted images -> gallery
      scraping (or queued and already claimed) -> scraping
      pending -> call1 / call2 / assembling from the call timestamps
      completed -> completed, error -> error
    """
    status = record.get("status")

    if status == "queued":
        if not processing and queue_position is not None and queue_position > 0:
            return "queue"
        # Claimed but not yet marked scraping; an unclaimed job with no
        # position is between pop and claim and still shows as queued.
        return "scraping" if processing else "queue"

    if status == "scraping":
        if record.get("gallery_raw_html") and record.get("gallery_image_urls") is None:
            return "gallery"
        return "scraping"

    if status == "pending":
        meta = call_metadata(record)
        if meta.get("call2_started_at"):
            return "assembling" if meta.get("call2_completed_at") else "call2"
        if meta.get("call1_started_at") and not meta.get("call1_completed_at"):
            return "call1"
        if meta.get("call1_completed_at"):
            return "call2"
        return "call1"

    if status == "completed":
        return "completed"
    return "error"


def get_preview_status(preview_id: str, queue, db_path=None) -> dict:
    """Polling snapshot: {success, status, phase, queuePosition, processing, errorMessage?}."""
    record = get_preview(preview_id, db_path)
    if record is None:
        return {"error": "Preview not found"}

    position = queue.position(preview_id)
    processing = queue.is_processing(preview_id)
    snapshot = {
        "success": True,
        "status": record["status"],
        "phase": derive_phase(record, position, processing),
        "queuePosition": position,
        "processing": processing,
    }
    if record["status"] == "error":
        snapshot["errorMessage"] = record.get("error_message")
    return snapshot


POLL_TIMEOUT_MESSAGE = "Request timed out. Please try again."


def poll_preview(preview_id: str, fetch, on_phase=None, sleep=time.sleep,
                 interval: float | None = None, error_interval: float | None = None,
                 max_attempts: int | None = None) -> dict:
    """Client-side polling loop until the preview completes or fails.

    Args:
        preview_id: Preview to watch.
        fetch: Callable returning a get_preview_status() style dict. A raised
            exception counts as a transient polling error.
        on_phase: Called with each snapshot whose phase differs from the last.
        sleep: Injected for tests.

    Returns:
        The final snapshot, or {"error": ...} when polling gives up.
    """
    interval = config.DEFAULTS["poll_interval"] if interval is None else interval
    error_interval = (config.DEFAULTS["poll_error_interval"]
                      if error_interval is None else error_interval)
    max_attempts = config.DEFAULTS["poll_max_attempts"] if max_attempts is None else max_attempts

    last_phase = None
    for attempt in range(1, max_attempts + 1):
        try:
            snapshot = fetch(preview_id)
        except Exception as e:
            log.warning("Status poll %d/%d failed: %s", attempt, max_attempts, e)
            sleep(error_interval)
            continue

        if "error" in snapshot and not snapshot.get("success"):
            return snapshot

        phase = snapshot.get("phase")
        if phase != last_phase:
            last_phase = phase
            if on_phase is not None:
                on_phase(snapshot)
        if phase in ("completed", "error"):
            return snapshot
        sleep(interval)

    return {"error": POLL_TIMEOUT_MESSAGE}
