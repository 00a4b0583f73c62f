from .story import Category, Tag, Story, StoryPublishingHistory, story_tags
from .member import Member, MemberStatus
from .view import StoryView
from .rating import MemberStoryRating, StoryRatingAggregate
from .interaction import MemberStoryInteraction, InteractionAction
from .reading import MemberReadingHistory

__all__ = [
    'Category',
    'Tag',
    'Story',
    'StoryPublishingHistory',
    'story_tags',
    'Member',
    'MemberStatus',
    'StoryView',
    'MemberStoryRating',
    'StoryRatingAggregate',
    'MemberStoryInteraction',
    'InteractionAction',
    'MemberReadingHistory',
]
