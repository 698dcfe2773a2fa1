"""
Data layer: jobs, records, session state, place keys and export.
"""

from .models import Job, JobStatus, Coordinates, PlaceRecord, SessionSnapshot
from .job_queue import JobQueue, dedupe_urls
from .session import Session, merge
from .place_keys import (
    KeyExtractor,
    KeyStrategy,
    extract_key,
    extract_key_from_url,
    keys_match,
)

__all__ = [
    'Job',
    'JobStatus',
    'Coordinates',
    'PlaceRecord',
    'SessionSnapshot',
    'JobQueue',
    'dedupe_urls',
    'Session',
    'merge',
    'KeyExtractor',
    'KeyStrategy',
    'extract_key',
    'extract_key_from_url',
    'keys_match',
]
