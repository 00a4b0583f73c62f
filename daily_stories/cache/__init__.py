from .backends import MemoryCacheBackend, RedisCacheBackend
from .story_cache import (
    GLOBAL_TAG,
    LEADERBOARDS_TAG,
    StoryCache,
    get_cache,
    member_tag,
    story_tag,
)

__all__ = [
    'MemoryCacheBackend',
    'RedisCacheBackend',
    'StoryCache',
    'get_cache',
    'member_tag',
    'story_tag',
    'LEADERBOARDS_TAG',
    'GLOBAL_TAG',
]
