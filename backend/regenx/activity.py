from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, Optional

from . import config
from .familiars import familiar_key
from .models import ActivityPattern, EngineSettings
from .storage import StoreAdapter
from .timeutils import now_utc, parse_iso_to_utc

logger = logging.getLogger(__name__)


def activity_key(user_id: str) -> str:
    return config.ACTIVITY_KEY.format(user_id=user_id)


def categorize_subreddit(subreddit: str) -> str:
    lowered = subreddit.lower()
    for category, keywords in config.SUBREDDIT_KEYWORDS.items():
        if any(keyword in lowered for keyword in keywords):
            return category
    return "general"


def dominant_category(categories: Dict[str, int]) -> str:
    dominant = "general"
    best = 0
    for category, count in categories.items():
        if count > best:
            best = count
            dominant = category
    return dominant


class ActivityTracker:
    """Privacy-gated summary of a user's public posting activity.

    Nothing is stored or returned unless the user's familiar has opted in.
    """

    def __init__(
        self,
        store: StoreAdapter,
        settings: Optional[EngineSettings] = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self.store = store
        self.settings = settings or EngineSettings()
        self.clock = clock

    async def _opted_in(self, user_id: str) -> bool:
        return await self.store.hget(familiar_key(user_id), "privacy_opt_in") == "true"

    async def record_posts(self, user_id: str, subreddits: Iterable[str]) -> Optional[ActivityPattern]:
        if not await self._opted_in(user_id):
            return None

        categories: Dict[str, int] = {}
        for subreddit in subreddits:
            category = categorize_subreddit(subreddit)
            categories[category] = categories.get(category, 0) + 1

        now = self.clock()
        key = activity_key(user_id)
        await self.store.delete(key)
        await self.store.hset(key, {"categories": json.dumps(categories), "last_updated": now.isoformat()})
        await self.store.expire(key, self.settings.activity_ttl_seconds)
        return ActivityPattern(categories=categories, dominant_category=dominant_category(categories), last_updated=now)

    async def get_pattern(self, user_id: str) -> ActivityPattern:
        if not await self._opted_in(user_id):
            return ActivityPattern()

        data = await self.store.hget_all(activity_key(user_id))
        if not data:
            return ActivityPattern()

        categories = {name: int(count) for name, count in json.loads(data.get("categories", "{}")).items()}
        updated = data.get("last_updated")
        return ActivityPattern(
            categories=categories,
            dominant_category=dominant_category(categories),
            last_updated=parse_iso_to_utc(updated) if updated else None,
        )

    async def clear(self, user_id: str) -> None:
        await self.store.delete(activity_key(user_id))
        logger.info("Cleared activity summary for %s", user_id)
