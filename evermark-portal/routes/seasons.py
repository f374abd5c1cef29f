"""
Season Routes
=============
Read-only view of the weekly season new Evermarks are bucketed into.
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Request

router = APIRouter(prefix="/seasons", tags=["seasons"])


@router.get("/current")
async def current_season(request: Request):
    season = await request.state.season_oracle.current_season()
    now = datetime.now(timezone.utc)
    return {
        **season.model_dump(mode="json"),
        "seconds_remaining": max(0, int((season.end_time - now).total_seconds())),
    }
