from __future__ import annotations

import logging
import os
from pathlib import Path

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse


DATA_FILE = Path(os.getenv("DATA_FILE", "/volumes/data/file.txt"))

log = logging.getLogger("example")
app = FastAPI(title="splat example app")


@app.get("/data", response_class=PlainTextResponse)
def data() -> str:
    """Serve the file mounted through the `data` volume."""
    try:
        return DATA_FILE.read_text(encoding="utf-8")
    except OSError as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/", response_class=PlainTextResponse)
def root(request: Request) -> str:
    log.info("Request received method=%s path=%s", request.method, request.url.path)
    return "ok"
