"""Read-only HTTP status surface for the archive proxy (``/health``, ``/routes``)."""

from __future__ import annotations

from typing import Any, Sized

from fastapi import FastAPI
from pydantic import BaseModel

from routing import RoutingTable


class WindowOut(BaseModel):
    backend: str
    start: int
    end: int


class RoutesOut(BaseModel):
    lowest: int | None
    highest: int | None
    windows: list[WindowOut]
    coverage_issues: list[str]


def create_status_app(table: RoutingTable, sessions: Sized, version: str) -> FastAPI:
    app = FastAPI(title="Archive Proxy", version=version, docs_url=None, redoc_url=None)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "version": version,
            "sessions": len(sessions),
            "backends": len(table),
        }

    @app.get("/routes", response_model=RoutesOut)
    async def routes() -> RoutesOut:
        return RoutesOut(
            lowest=table.lowest,
            highest=table.highest,
            windows=[WindowOut(**w) for w in table.describe()],
            coverage_issues=table.coverage_issues(),
        )

    return app
