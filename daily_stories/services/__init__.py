from .analytics import AnalyticsService
from .ingestion import EngagementService
from .members import MemberService
from .stories import StoryService

__all__ = [
    'AnalyticsService',
    'EngagementService',
    'MemberService',
    'StoryService',
]
