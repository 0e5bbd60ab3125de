"""FastAPI entrypoint for mini-note.

A minimal self-hosted notepad:
- ``GET /`` redirects to a freshly generated note ID.
- ``GET /{note}`` serves the editor page, the raw text, or a rendered preview.
- ``POST /{note}`` overwrites (or, with empty content, deletes) the note file.
- ``POST /upload`` stores a small attachment next to the notes.
- ``GET /_tmp/{file}`` serves stored attachments.

Notes and uploads live as plain files under a single save directory; the
static frontend assets are served read-only from a separate root.
"""
from __future__ import annotations

import html
import logging
import mimetypes
import os
import time
from functools import lru_cache
from pathlib import Path
from string import Template
from typing import Any, Dict, Optional

import markdown
from fastapi import FastAPI, File, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, HTMLResponse, RedirectResponse, Response
from pydantic import BaseModel

from note_store import (
    FileCountLimitExceeded,
    FileSizeLimitExceeded,
    StorageLimitExceeded,
    count_files,
    generate_excerpt,
    generate_note_id,
    is_valid_note_id,
    read_note,
    resolve_served_file,
    store_upload,
    write_note,
)


APP_ROOT = Path(__file__).resolve().parent
TEMPLATES_DIR = APP_ROOT / "templates"
APP_VERSION = "0.1.0"

logger = logging.getLogger("mini_note")

DEFAULT_PORT = 8080
DEFAULT_FILE_LIMIT = 100000
DEFAULT_SINGLE_FILE_SIZE_LIMIT = 10240

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

CLI_USER_AGENT_PREFIXES = ("curl", "Wget")

STATIC_ASSETS = (
    "styles.css",
    "script.js",
    "markdown.js",
    "history.js",
)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        logger.warning("ignoring invalid %s=%r, using %s", name, raw, default)
        return default
    if value < 0:
        logger.warning("ignoring negative %s=%r, using %s", name, raw, default)
        return default
    return value


def _resolve_dir(env_name: str, default: str) -> Path:
    candidate = Path(os.getenv(env_name) or default)
    if not candidate.is_absolute():
        candidate = (APP_ROOT / candidate).resolve()
    return candidate


class AppConfig:
    """Runtime configuration read from the environment.

    - SAVE_PATH: directory holding notes and uploads (default ``_tmp``)
    - STATIC_ROOT: directory holding the frontend assets (default ``static``)
    - FILE_LIMIT: maximum number of files allowed in SAVE_PATH
    - SINGLE_FILE_SIZE_LIMIT: maximum size in bytes of a note or upload
    - PORT: listen port for the dev entrypoint

    Relative directories are resolved against APP_ROOT. Numeric values that
    do not parse fall back to their defaults.
    """

    def __init__(self) -> None:
        self.port = _env_int("PORT", DEFAULT_PORT)
        self.file_limit = _env_int("FILE_LIMIT", DEFAULT_FILE_LIMIT)
        self.single_file_size_limit = _env_int("SINGLE_FILE_SIZE_LIMIT", DEFAULT_SINGLE_FILE_SIZE_LIMIT)
        self.static_root = _resolve_dir("STATIC_ROOT", "static")
        self.save_path = _resolve_dir("SAVE_PATH", "_tmp")

        # Handlers rely on the save directory existing.
        self.save_path.mkdir(parents=True, exist_ok=True)


@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    return AppConfig()


@lru_cache(maxsize=1)
def _load_page_template() -> Template:
    return Template((TEMPLATES_DIR / "note.html").read_text(encoding="utf8"))


def render_note_page(note_id: str, content: str) -> str:
    excerpt = generate_excerpt(content)
    return _load_page_template().safe_substitute(
        note=html.escape(note_id),
        content=html.escape(content),
        description=html.escape(excerpt),
    )


def _render_markdown_html(markdown_text: str) -> str:
    return markdown.markdown(
        markdown_text,
        extensions=["extra", "codehilite", "pymdownx.tasklist"],
        extension_configs={
            "codehilite": {
                "linenums": False,
                "guess_lang": False,
                "noclasses": True,
            }
        },
        output_format="html5",
    )


def _redirect_to_new_note() -> RedirectResponse:
    return RedirectResponse(url=f"/{generate_note_id()}", status_code=302)


def _wants_raw(request: Request) -> bool:
    if "raw" in request.query_params:
        return True
    user_agent = request.headers.get("user-agent", "")
    return user_agent.startswith(CLI_USER_AGENT_PREFIXES)


def _serve_file(path: Path) -> FileResponse:
    if not path.is_file():
        raise HTTPException(status_code=404, detail="File not found")

    content_type, _ = mimetypes.guess_type(str(path))
    return FileResponse(
        path,
        media_type=content_type or "application/octet-stream",
        headers=NO_CACHE_HEADERS,
    )


class UploadResponse(BaseModel):
    url: str
    name: str
    is_image: bool


app = FastAPI(title="mini-note", version=APP_VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def _log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - started) * 1000
    logger.info(
        "%s %s -> %s (%.1fms)",
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
    )
    return response


@app.get("/", tags=["notes"])
def index() -> RedirectResponse:
    return _redirect_to_new_note()


@app.get("/_sys/health", tags=["system"])
def health() -> Dict[str, Any]:
    """Basic health and configuration probe.

    Cheap enough to poll; it only counts the files in the save directory.
    """

    cfg = get_config()

    return {
        "status": "ok",
        "version": APP_VERSION,
        "savePath": str(cfg.save_path),
        "fileCount": count_files(cfg.save_path),
        "fileLimit": cfg.file_limit,
        "singleFileSizeLimit": cfg.single_file_size_limit,
    }


def _make_asset_route(asset_name: str):
    def serve_asset() -> FileResponse:
        cfg = get_config()
        return _serve_file(cfg.static_root / asset_name)

    serve_asset.__name__ = "serve_" + asset_name.replace(".", "_")
    return serve_asset


for _asset in STATIC_ASSETS:
    app.add_api_route(f"/{_asset}", _make_asset_route(_asset), methods=["GET"], tags=["static"])


@app.get("/js/{file_name}", tags=["static"])
def get_public_js(file_name: str) -> FileResponse:
    cfg = get_config()

    try:
        file_path = resolve_served_file(cfg.static_root / "public" / "js", file_name)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail="File not found") from exc

    return _serve_file(file_path)


@app.get("/_tmp/{file_name}", tags=["files"])
def get_uploaded_file(file_name: str) -> FileResponse:
    cfg = get_config()

    try:
        file_path = resolve_served_file(cfg.save_path, file_name)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail="File not found") from exc

    return _serve_file(file_path)


@app.post("/upload", tags=["files"], response_model=UploadResponse)
async def upload_file(file: Optional[UploadFile] = File(None)) -> UploadResponse:
    if file is None:
        raise HTTPException(status_code=400, detail="no file")

    cfg = get_config()
    raw = await file.read()

    try:
        stored = store_upload(
            cfg.save_path,
            file.filename,
            raw,
            file_limit=cfg.file_limit,
            size_limit=cfg.single_file_size_limit,
        )
    except FileCountLimitExceeded as exc:
        logger.warning("%s", exc)
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except FileSizeLimitExceeded as exc:
        logger.warning("%s", exc)
        raise HTTPException(
            status_code=413,
            detail=f"File is too large ({exc.size} bytes); maximum allowed is {exc.limit} bytes",
        ) from exc
    except OSError as exc:
        logger.exception("upload write failed")
        raise HTTPException(status_code=500, detail="upload write error") from exc

    logger.info("stored upload name=%s size=%s image=%s", stored.name, stored.size, stored.is_image)
    return UploadResponse(url=stored.url, name=stored.name, is_image=stored.is_image)


@app.get("/{note_id}", tags=["notes"])
def get_note(note_id: str, request: Request) -> Response:
    if not is_valid_note_id(note_id):
        return _redirect_to_new_note()

    cfg = get_config()

    try:
        data = read_note(cfg.save_path, note_id)
    except OSError as exc:
        logger.exception("reading note %s failed", note_id)
        raise HTTPException(status_code=500, detail="read error") from exc

    if _wants_raw(request):
        return Response(
            content=data,
            media_type="text/plain; charset=utf-8",
            headers=NO_CACHE_HEADERS,
        )

    text = data.decode("utf8", errors="replace")

    if "html" in request.query_params:
        return HTMLResponse(_render_markdown_html(text), headers=NO_CACHE_HEADERS)

    return HTMLResponse(render_note_page(note_id, text), headers=NO_CACHE_HEADERS)


async def _read_note_submission(request: Request) -> bytes:
    """Return the submitted note content.

    Browsers post the ``text`` form field; CLI clients may post the raw body
    instead. The body is read first so the form parser can reuse it.
    """

    body = await request.body()
    content_type = request.headers.get("content-type", "")

    if content_type.startswith(("application/x-www-form-urlencoded", "multipart/form-data")):
        form = await request.form()
        text = form.get("text")
        if isinstance(text, str):
            return text.encode("utf8")

    return body


@app.post("/{note_id}", tags=["notes"])
async def post_note(note_id: str, request: Request) -> Response:
    if not is_valid_note_id(note_id):
        return _redirect_to_new_note()

    cfg = get_config()
    content = await _read_note_submission(request)

    try:
        write_note(
            cfg.save_path,
            note_id,
            content,
            file_limit=cfg.file_limit,
            size_limit=cfg.single_file_size_limit,
        )
    except StorageLimitExceeded as exc:
        logger.warning("%s", exc)
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except OSError as exc:
        logger.exception("writing note %s failed", note_id)
        raise HTTPException(status_code=500, detail="write error") from exc

    return Response(status_code=200, headers=NO_CACHE_HEADERS)


if __name__ == "__main__":  # pragma: no cover - manual/dev entrypoint
    # This allows `python main.py` in addition to `uvicorn main:app`.
    import uvicorn

    uvicorn.run(
        "main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=get_config().port,
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
        reload=os.getenv("UVICORN_RELOAD", "false").lower() == "true",
    )
