from __future__ import annotations

from pydantic import BaseModel, Field


class ProcessOut(BaseModel):
    uid: str
    name: str
    environment: str
    container_id: str | None = None
    port: int | None = Field(None, description="Host port bound on the loopback address")
    status: str = Field(..., description="unknown|starting|running|failed|stopped")
    route_live: bool = Field(False, description="False when the proxy reload for this app failed")
    error: str | None = None
    updated_at: str


class EventOut(BaseModel):
    id: int
    ts: str
    level: str
    uid: str | None = None
    message: str


class CommandAccepted(BaseModel):
    command: str
    accepted: bool = True
