"""Read-through cache for engagement analytics.

Entries are grouped by tags (``story:{id}``, ``member:{id}``, ``leaderboards``,
``global``). Every tag has a version counter and the concrete cache key embeds
the current version of each of its tags, so invalidating a tag is one INCR and
every entry that carried the old version becomes unreachable at once. Entries
that were computed from pre-write state but stored after the invalidation land
under the old version and are never read.
"""

import json
import logging
from typing import Any, Callable, Iterable, List, Optional, Sequence

import redis

from ..core.config import settings
from ..core.errors import TransientStoreError
from ..core.monitoring import CACHE_REQUESTS
from .backends import MemoryCacheBackend, RedisCacheBackend

logger = logging.getLogger(__name__)

LEADERBOARDS_TAG = "leaderboards"
GLOBAL_TAG = "global"

BACKEND_ERRORS = (redis.RedisError, OSError)


def story_tag(story_id: int) -> str:
    return f"story:{story_id}"


def member_tag(member_id: int) -> str:
    return f"member:{member_id}"


class StoryCache:
    def __init__(self, backend, prefix: str = None):
        self.backend = backend
        self.prefix = prefix or settings.CACHE_PREFIX

    def _tag_key(self, tag: str) -> str:
        return f"{self.prefix}:tag:{tag}"

    def _entry_key(self, name: str, tags: Sequence[str]) -> str:
        versions = self.backend.get_many([self._tag_key(tag) for tag in tags])
        stamp = ",".join(f"{tag}@{version or 0}" for tag, version in zip(tags, versions))
        return f"{self.prefix}:entry:{name}|{stamp}"

    def remember(self, name: str, ttl: int, tags: Sequence[str], loader: Callable[[], Any]) -> Any:
        """Return the cached value for ``name`` or compute, store and return it.

        Values go through JSON on both paths so a hit and a miss return the
        same shape. Backend failures degrade to calling ``loader``.
        """
        tags = list(tags)
        try:
            key = self._entry_key(name, tags)
            cached = self.backend.get(key)
        except BACKEND_ERRORS as e:
            CACHE_REQUESTS.labels(result="error").inc()
            logger.warning(f"Cache read failed for {name}: {str(e)}")
            return json.loads(json.dumps(loader(), default=str))

        if cached is not None:
            CACHE_REQUESTS.labels(result="hit").inc()
            return json.loads(cached)

        CACHE_REQUESTS.labels(result="miss").inc()
        encoded = json.dumps(loader(), default=str)
        try:
            self.backend.set(key, encoded, ttl)
        except BACKEND_ERRORS as e:
            CACHE_REQUESTS.labels(result="error").inc()
            logger.warning(f"Cache write failed for {name}: {str(e)}")
        return json.loads(encoded)

    def invalidate(self, *tags: str) -> None:
        try:
            for tag in dict.fromkeys(tags):
                self.backend.incr(self._tag_key(tag))
        except BACKEND_ERRORS as e:
            logger.error(f"Cache invalidation failed for tags {list(tags)}: {str(e)}")
            raise TransientStoreError("Cache invalidation failed") from e

    def invalidate_story(self, story_id: int, member_ids: Iterable[Optional[int]] = ()) -> None:
        """Invalidate one story, the members involved, and the cross-story caches."""
        tags: List[str] = [story_tag(story_id)]
        tags.extend(member_tag(member_id) for member_id in member_ids if member_id is not None)
        tags.extend([LEADERBOARDS_TAG, GLOBAL_TAG])
        self.invalidate(*tags)


_default_cache: Optional[StoryCache] = None


def build_cache_backend(backend_name: str = None):
    backend_name = backend_name or settings.CACHE_BACKEND
    if backend_name == "memory":
        return MemoryCacheBackend()
    return RedisCacheBackend()


def get_cache() -> StoryCache:
    """Process-wide cache, built from settings on first use."""
    global _default_cache
    if _default_cache is None:
        _default_cache = StoryCache(build_cache_backend())
    return _default_cache
