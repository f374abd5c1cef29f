"""
Season oracle — the weekly epoch a new Evermark is bucketed into.

Seasons are counted from Monday 2024-01-01 00:00 UTC (season 1) and run
Monday 00:00 to Sunday 23:59:59.999 UTC. An operator may pin the current
season by writing ``season_state/current``; a readable override wins.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from models import Season

logger = logging.getLogger("evermark-portal.seasons")

SEASON_EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)
SEASON_LENGTH = timedelta(weeks=1)


def season_number_at(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return max(1, (moment - SEASON_EPOCH) // SEASON_LENGTH + 1)


def season_bounds(number: int) -> Season:
    start = SEASON_EPOCH + (number - 1) * SEASON_LENGTH
    return Season(
        number=number,
        start_time=start,
        end_time=start + SEASON_LENGTH - timedelta(milliseconds=1),
    )


def computed_season(moment: Optional[datetime] = None) -> Season:
    return season_bounds(season_number_at(moment or datetime.now(timezone.utc)))


def _parse_time(value) -> datetime:
    if not isinstance(value, datetime):
        value = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class SeasonOracle:
    def __init__(self, index_store=None):
        self._index = index_store

    async def current_season(self, now: Optional[datetime] = None) -> Season:
        if self._index is not None:
            try:
                override = await self._index.get_season_override()
                if override:
                    return Season(
                        number=int(override["number"]),
                        start_time=_parse_time(override["start_time"]),
                        end_time=_parse_time(override["end_time"]),
                    )
            except Exception as e:
                logger.warning("Season override unreadable, using computed season: %s", e)
        return computed_season(now)
