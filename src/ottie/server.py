"""HTTP surface over the service layer (FastAPI).

  POST /api/previews                        submit a URL
  GET  /api/previews/{id}                   full record
  GET  /api/queue/status/{id}               polling snapshot
  POST /api/queue/process-scrape            worker trigger (internal token)
  POST /api/previews/{id}/claim             claim as a site
  POST /api/previews/{id}/rerun/{stage}     manual re-run

Handlers are plain ``def`` so FastAPI runs them in its threadpool; the
database layer keeps one SQLite connection per thread.
"""

import hmac
import logging

from fastapi import BackgroundTasks, FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ottie import __version__, config, service
from ottie.queue import ScrapeQueue
from ottie.worker import Worker

log = logging.getLogger(__name__)


class SubmitRequest(BaseModel):
    url: str


class ClaimRequest(BaseModel):
    workspaceId: str
    userId: str


class TriggerRequest(BaseModel):
    mode: str = "process"


def _result(result: dict, error_status: int = 400) -> JSONResponse:
    return JSONResponse(result, status_code=error_status if "error" in result else 200)


def _check_token(token: str | None) -> None:
    expected = config.get_internal_token()
    if not expected or not token or not hmac.compare_digest(token, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


def create_app(queue: ScrapeQueue, worker: Worker | None = None, db_path=None) -> FastAPI:
    """Build the app around an initialised queue and (optionally) an embedded worker."""
    app = FastAPI(title="Ottie", version=__version__)

    @app.post("/api/previews")
    def submit(body: SubmitRequest) -> JSONResponse:
        return _result(service.generate_preview(body.url, queue, db_path))

    @app.get("/api/previews/{preview_id}")
    def show(preview_id: str) -> JSONResponse:
        return _result(service.get_preview(preview_id, db_path), error_status=404)

    @app.get("/api/queue/status/{preview_id}")
    def status(preview_id: str) -> JSONResponse:
        return _result(service.preview_status(preview_id, queue, db_path), error_status=404)

    @app.post("/api/queue/process-scrape", status_code=202)
    def trigger(background: BackgroundTasks, body: TriggerRequest | None = None,
                x_internal_token: str | None = Header(None)) -> dict:
        _check_token(x_internal_token)
        if worker is None:
            raise HTTPException(status_code=503, detail="No worker attached to this server")
        mode = body.mode if body else "process"
        if mode == "sweep":
            background.add_task(worker.sweep)
        else:
            worker.trigger()
        log.info("Worker triggered (%s)", mode)
        return {"success": True, "mode": mode, "queued": queue.length()}

    @app.post("/api/previews/{preview_id}/claim")
    def claim(preview_id: str, body: ClaimRequest) -> JSONResponse:
        return _result(service.claim_preview(preview_id, body.workspaceId, body.userId, db_path))

    @app.post("/api/previews/{preview_id}/rerun/{stage}")
    def rerun(preview_id: str, stage: str) -> JSONResponse:
        if stage not in service.RERUN_STAGES:
            raise HTTPException(status_code=400, detail=f"Unknown stage '{stage}'")
        client = worker.client if worker is not None else None
        return _result(service.rerun(stage, preview_id, client=client, db_path=db_path))

    return app
