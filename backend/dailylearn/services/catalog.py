"""
Topic catalog reads used by the daily flow.

Active topics change rarely, so they are served through a short-lived
TTLCache. Admin edits to topics should call ``invalidate_active_topics``.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.orm import Session

from dailylearn.models.models import Topic
from dailylearn.utils.cache import TTLCache

logger = logging.getLogger(__name__)

ACTIVE_TOPICS_KEY = "active_topics"
ACTIVE_TOPICS_TTL_SECONDS = 60


@dataclass(frozen=True)
class TopicSummary:
    id: str
    name: str
    slug: str
    sort_order: int


class TopicCatalog:
    def __init__(self, cache: Optional[TTLCache] = None, ttl: int = ACTIVE_TOPICS_TTL_SECONDS):
        self.cache = cache if cache is not None else TTLCache(maxsize=16, default_ttl=ttl)
        self.ttl = ttl

    def list_active_topics(self, db: Session) -> List[TopicSummary]:
        """Active topics ordered by display order."""
        cached = self.cache.get(ACTIVE_TOPICS_KEY)
        if cached is not None:
            return cached

        topics = db.query(Topic).filter(
            Topic.is_active == True  # noqa: E712
        ).order_by(Topic.sort_order, Topic.name).all()

        summaries = [
            TopicSummary(id=t.id, name=t.name, slug=t.slug, sort_order=t.sort_order or 0)
            for t in topics
        ]
        self.cache.set(ACTIVE_TOPICS_KEY, summaries, ttl=self.ttl)
        logger.debug(f"Active topics cached: {len(summaries)}")
        return summaries

    def invalidate_active_topics(self) -> None:
        self.cache.invalidate(ACTIVE_TOPICS_KEY)
