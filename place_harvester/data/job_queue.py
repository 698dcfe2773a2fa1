"""
Ordered job ledger: what is left to do, what finished, and how often each job was retried.
"""

from collections import OrderedDict
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from place_harvester.data.models import Job, JobStatus
from place_harvester.utils.errors import ValidationError


def dedupe_urls(urls: Iterable[str]) -> List[str]:
    """Strip and deduplicate URLs, keeping first occurrences in order."""
    seen = OrderedDict()
    for url in urls:
        if not isinstance(url, str):
            continue
        cleaned = url.strip()
        if cleaned and cleaned not in seen:
            seen[cleaned] = None
    return list(seen.keys())


class JobQueue:
    """
    FIFO job queue keyed by URL.

    The queue never performs I/O. ``place_ids`` may be shared with the owning
    session so that a URL mapped to a place id counts as processed even when
    the mapping arrived through a snapshot rather than ``mark_completed``.
    """

    def __init__(self, max_retries: int = 3, place_ids: Optional[Dict[str, str]] = None):
        self.max_retries = max_retries
        self._jobs: "OrderedDict[str, Job]" = OrderedDict()
        self._place_ids: Dict[str, str] = place_ids if place_ids is not None else {}
        self._history: Set[str] = set()

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, url: str) -> bool:
        return url in self._jobs

    def replace(self, urls: Iterable[str]) -> List[str]:
        """
        Replace the job list with a freshly collected one.

        Retry counts and statuses of URLs already known are kept.

        Returns:
            The deduplicated URL list in queue order
        """
        ordered = dedupe_urls(urls)
        previous = self._jobs
        self._jobs = OrderedDict()
        for url in ordered:
            self._jobs[url] = previous.get(url) or Job(url=url)
            if url in self._place_ids and self._jobs[url].status != JobStatus.COMPLETED:
                self._complete(self._jobs[url], self._place_ids[url])
        return ordered

    def extend(self, urls: Iterable[str]) -> List[str]:
        """Append URLs not yet queued; returns the ones added."""
        added = []
        for url in dedupe_urls(urls):
            if url not in self._jobs:
                job = Job(url=url)
                if url in self._place_ids:
                    self._complete(job, self._place_ids[url])
                self._jobs[url] = job
                added.append(url)
        return added

    def clear(self) -> None:
        self._jobs.clear()
        self._history.clear()

    def urls(self) -> List[str]:
        return list(self._jobs.keys())

    def jobs(self) -> List[Job]:
        return list(self._jobs.values())

    def get(self, url: str) -> Optional[Job]:
        return self._jobs.get(url)

    def next_pending(self) -> Optional[Job]:
        """First pending job still inside its retry budget, in insertion order."""
        for job in self._jobs.values():
            if job.status == JobStatus.PENDING and job.retry_count < self.max_retries \
                    and not self.is_processed(job.url):
                return job
        return None

    def mark_in_flight(self, url: str) -> Job:
        job = self._require(url)
        job.status = JobStatus.IN_FLIGHT
        job.updated_at = datetime.now()
        return job

    def mark_completed(self, url: str, place_id: str) -> Job:
        job = self._jobs.get(url)
        self._place_ids[url] = place_id
        self._history.add(url)
        if job is None:
            return Job(url=url, status=JobStatus.COMPLETED, result_key=place_id)
        self._complete(job, place_id)
        return job

    def mark_failed(self, url: str, reason: Optional[str] = None) -> Job:
        job = self._require(url)
        job.status = JobStatus.FAILED
        job.last_error = reason
        job.updated_at = datetime.now()
        return job

    def revert_to_pending(self, url: str) -> Optional[Job]:
        """Undo a dispatch that never started; the retry count is untouched."""
        job = self._jobs.get(url)
        if job is not None and job.status == JobStatus.IN_FLIGHT:
            job.status = JobStatus.PENDING
            job.updated_at = datetime.now()
        return job

    def increment_retry(self, url: str, reason: Optional[str] = None, requeue: bool = True) -> int:
        """
        Count one more failed attempt.

        With ``requeue`` the job goes back to pending, or to failed once the
        budget is spent. Without it the status is left to the caller (the
        orchestrator keeps a job in flight across its own retries).

        Returns:
            The new retry count
        """
        job = self._require(url)
        job.retry_count += 1
        job.last_error = reason
        job.updated_at = datetime.now()
        if requeue and job.status != JobStatus.COMPLETED:
            job.status = JobStatus.FAILED if job.retry_count >= self.max_retries else JobStatus.PENDING
        return job.retry_count

    def reopen(self, url: str) -> Job:
        """Operator retry: put a failed job back in the queue with a fresh budget."""
        job = self._require(url)
        if job.status == JobStatus.FAILED:
            job.status = JobStatus.PENDING
            job.retry_count = 0
            job.last_error = None
            job.updated_at = datetime.now()
        return job

    def note_processed(self, url: str) -> None:
        """Record that a result for ``url`` arrived, even before it is matched to a job."""
        self._history.add(url)

    def is_processed(self, url: str) -> bool:
        return url in self._place_ids or url in self._history

    def count(self, status: JobStatus) -> int:
        return sum(1 for job in self._jobs.values() if job.status == status)

    def counts(self) -> Dict[str, int]:
        return {status.value: self.count(status) for status in JobStatus}

    def has_remaining(self) -> bool:
        return self.next_pending() is not None or self.count(JobStatus.IN_FLIGHT) > 0

    def _complete(self, job: Job, place_id: str) -> None:
        job.status = JobStatus.COMPLETED
        job.result_key = place_id
        job.last_error = None
        job.updated_at = datetime.now()

    def _require(self, url: str) -> Job:
        job = self._jobs.get(url)
        if job is None:
            raise ValidationError(f"Unknown job: {url}", {"url": url})
        return job
