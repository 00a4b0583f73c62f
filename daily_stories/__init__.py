"""
Daily Stories engagement API: views, ratings, interactions and reading progress
"""

__version__ = "1.0.0"
