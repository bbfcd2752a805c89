from __future__ import annotations

import html
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from string import Template
from typing import Optional

from fastapi import FastAPI, File, HTTPException, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import HTMLResponse, RedirectResponse, Response
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

from zippr_backend.config import ARCHIVE_SUFFIX, LOG_LEVEL, Settings, load_settings
from zippr_backend.errors import ArchiveIOError, InvalidIdentifierError, NotFoundError, ZipprError, is_client_error
from zippr_backend.identifiers import IdentifierGenerator
from zippr_backend.pipeline import ArchivePipeline
from zippr_backend.security import normalize_archive_id
from zippr_backend.store import ArchiveStore, build_store
from zippr_backend.sweeper import RetentionSweeper
from zippr_backend.zip_utils import UploadedItem


BASE_DIR = Path(__file__).resolve().parent
STATIC_DIR = BASE_DIR / "static"
TEMPLATES_DIR = BASE_DIR / "templates"

# The background loop never sweeps more often than this.
MIN_SWEEP_INTERVAL_SECONDS = 30

logger = logging.getLogger(__name__)


class ArchiveCreated(BaseModel):
    archive_id: str
    download_url: str


class HealthStatus(BaseModel):
    ok: bool = True
    backend: str


def _load_template(name: str) -> Template:
    return Template((TEMPLATES_DIR / name).read_text(encoding="utf-8"))


async def _read_uploads(files: list[UploadFile], settings: Settings) -> list[UploadedItem]:
    # Browsers send one empty part when the file input is left blank.
    files = [f for f in files if f.filename]
    if len(files) > settings.max_files:
        raise HTTPException(status_code=413, detail="Too many files")

    items: list[UploadedItem] = []
    remaining = settings.max_upload_bytes
    for f in files:
        data = await f.read(remaining + 1)
        if len(data) > remaining:
            raise HTTPException(status_code=413, detail="Upload too large")
        remaining -= len(data)
        items.append(UploadedItem(name=f.filename or "", content=data))
    return items


async def _submit(request: Request, files: Optional[list[UploadFile]]) -> str:
    settings: Settings = request.app.state.settings
    pipeline: ArchivePipeline = request.app.state.pipeline

    items = await _read_uploads(files or [], settings)
    if not items:
        raise HTTPException(status_code=400, detail="No files uploaded")
    try:
        return await run_in_threadpool(pipeline.submit, items)
    except ZipprError as e:
        if is_client_error(e):
            raise HTTPException(status_code=400, detail=str(e))
        # Storage failures surface as server errors, never as a download link.
        logger.exception("Failed to store archive")
        raise HTTPException(status_code=500, detail="Could not store archive")


def create_app(
    settings: Settings | None = None,
    store: ArchiveStore | None = None,
    generator: IdentifierGenerator | None = None,
    run_sweeper: bool = True,
) -> FastAPI:
    settings = settings or load_settings()
    store = store if store is not None else build_store(settings)
    pipeline = ArchivePipeline(store, generator=generator)
    sweeper = RetentionSweeper(
        store,
        max_age_seconds=settings.max_age_seconds,
        interval_seconds=max(MIN_SWEEP_INTERVAL_SECONDS, settings.sweep_interval_seconds),
    )
    ready_page = _load_template("ready.html")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # The loop sweeps right away (archives left from a previous run of the
        # filesystem backend), then once per interval.
        if run_sweeper:
            sweeper.start()
        try:
            yield
        finally:
            await sweeper.stop()

    app = FastAPI(lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.pipeline = pipeline
    app.state.sweeper = sweeper

    @app.post("/upload")
    async def upload(request: Request, files: Optional[list[UploadFile]] = File(None)) -> Response:
        """Zip the uploaded files and redirect to their download page."""
        archive_id = await _submit(request, files)
        return RedirectResponse(url=f"/download/{archive_id}{ARCHIVE_SUFFIX}", status_code=303)

    @app.post("/api/archives", status_code=201)
    async def create_archive(request: Request, files: Optional[list[UploadFile]] = File(None)) -> ArchiveCreated:
        archive_id = await _submit(request, files)
        return ArchiveCreated(
            archive_id=archive_id,
            download_url=f"/download/{archive_id}{ARCHIVE_SUFFIX}?dl=1",
        )

    @app.get("/api/health")
    async def health() -> HealthStatus:
        return HealthStatus(backend=settings.storage_backend)

    @app.get("/download/{filename}")
    async def download(filename: str, dl: Optional[str] = None) -> Response:
        """Serve the "files are ready" page, or the ZIP itself with ?dl=1.

        Security:
        - the token must look like an id the generator could have issued
        - the store re-validates it before touching memory or disk
        """
        try:
            archive_id = normalize_archive_id(filename)
        except InvalidIdentifierError:
            raise HTTPException(status_code=404, detail="Zip file not found")

        try:
            blob = await run_in_threadpool(pipeline.retrieve, archive_id)
        except (NotFoundError, InvalidIdentifierError):
            raise HTTPException(status_code=404, detail="Zip file not found")
        except ArchiveIOError:
            logger.exception("Failed to read archive %s", archive_id)
            raise HTTPException(status_code=500, detail="Could not read archive")

        zip_name = f"{archive_id}{ARCHIVE_SUFFIX}"
        if dl == "1":
            headers = {
                "Content-Disposition": f'attachment; filename="{zip_name}"',
                "Cache-Control": "no-store",
                "X-Content-Type-Options": "nosniff",
            }
            return Response(content=blob, media_type="application/zip", headers=headers)

        page = ready_page.substitute(filename=html.escape(zip_name, quote=True))
        return HTMLResponse(page, headers={"Cache-Control": "no-store"})

    # Static file hosting for the upload page.
    # Note: define API routes above, then mount static at '/'.
    app.mount("/", StaticFiles(directory=str(STATIC_DIR), html=True), name="static")
    return app


app = create_app()


if __name__ == "__main__":
    # Convenience: python server.py
    import uvicorn

    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    port = int(os.environ.get("PORT", "8080"))
    uvicorn.run("server:app", host="127.0.0.1", port=port, reload=False)
