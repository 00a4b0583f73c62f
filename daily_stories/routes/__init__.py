from . import health, members, monitoring, ratings, stats, stories

__all__ = ['health', 'members', 'monitoring', 'ratings', 'stats', 'stories']
