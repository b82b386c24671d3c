from __future__ import annotations

import logging
from threading import Thread

import uvicorn
from fastapi import FastAPI, HTTPException

from .api_models import CommandAccepted, EventOut, ProcessOut
from .controller import Command, Orchestrator
from .errors import ProcessNotFound


log = logging.getLogger(__name__)


def create_app(orch: Orchestrator) -> FastAPI:
    """Read-mostly HTTP view of one orchestrator.

    Control requests go through the same command queue as OS signals.
    """
    app = FastAPI(title="splat")

    @app.get("/health")
    def health() -> dict:
        return {"status": "healthy", "shut_down": orch.shut_down}

    @app.get("/processes", response_model=list[ProcessOut])
    def processes() -> list[dict]:
        return [p.summary() for p in orch.registry.snapshot()]

    @app.get("/processes/{uid}", response_model=ProcessOut)
    def process(uid: str) -> dict:
        try:
            return orch.registry.get(uid).summary()
        except ProcessNotFound:
            raise HTTPException(status_code=404, detail=f"Unknown process '{uid}'.")

    @app.get("/events", response_model=list[EventOut])
    def events(limit: int = 100, uid: str | None = None) -> list[dict]:
        return orch.events.latest(limit=max(1, min(1000, limit)), uid=uid)

    @app.post("/control/{command}", response_model=CommandAccepted, status_code=202)
    def control(command: str) -> dict:
        try:
            cmd = Command(command)
        except ValueError:
            allowed = ", ".join(c.value for c in Command)
            raise HTTPException(status_code=400, detail=f"Unknown command '{command}'. Use one of: {allowed}.")
        orch.submit(cmd)
        return {"command": cmd.value, "accepted": True}

    return app


def serve_in_background(orch: Orchestrator, host: str, port: int) -> uvicorn.Server:
    """Run the API on a daemon thread. Set `server.should_exit` to stop it."""
    config = uvicorn.Config(create_app(orch), host=host, port=port, log_config=None, access_log=False)
    server = uvicorn.Server(config)
    Thread(target=server.run, name="splat-api", daemon=True).start()
    log.info("status api listening on http://%s:%s", host, port)
    return server
