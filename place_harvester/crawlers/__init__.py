"""
Browser-side collaborators: tab navigation, response capture and page scraping.
"""

from .capture import CaptureEvent, CaptureListener
from .extraction import PlaceExtractor, collect_place_urls
from .navigation import NavigationController

__all__ = [
    'CaptureEvent',
    'CaptureListener',
    'NavigationController',
    'PlaceExtractor',
    'collect_place_urls',
]
