"""
Replicated session state.

Each context (orchestrator, panel) owns one ``Session``. The two copies are
reconciled by exchanging snapshots and folding them in with ``merge``, which
never drops an entry the local side already had.
"""

from collections import OrderedDict
from typing import Any, Dict, Optional

from place_harvester.data.job_queue import JobQueue, dedupe_urls
from place_harvester.data.models import Job, PlaceRecord, SessionSnapshot


def merge(local: SessionSnapshot, incoming: SessionSnapshot) -> SessionSnapshot:
    """
    Fold ``incoming`` into ``local`` and return the result.

    URLs are unioned in local order, then incoming order. Result and mapping
    entries are unioned with the incoming value winning on conflicts (a
    summary present locally survives an incoming record without one).
    Activity fields are taken from ``incoming``. Neither argument is mutated.
    """
    collected = dedupe_urls(list(local.collected_urls) + list(incoming.collected_urls))

    processed: "OrderedDict[str, PlaceRecord]" = OrderedDict(local.processed_data)
    for place_id, record in incoming.processed_data:
        existing = processed.get(place_id)
        if existing is not None and existing.summary and not record.summary:
            record = PlaceRecord.from_dict({**record.to_dict(), "summary": existing.summary})
        processed[place_id] = record

    mapping: "OrderedDict[str, str]" = OrderedDict(local.url_to_place_id)
    for url, place_id in incoming.url_to_place_id:
        mapping[url] = place_id

    return SessionSnapshot(
        collected_urls=collected,
        processed_data=list(processed.items()),
        url_to_place_id=list(mapping.items()),
        is_processing=incoming.is_processing,
        current_url=incoming.current_url,
    )


class Session:
    """Jobs, results and the active job for one context."""

    def __init__(self, max_retries: int = 3):
        self.max_retries = max_retries
        self.reset()

    def reset(self) -> None:
        """Clear everything: jobs, both result maps, the active job and completion."""
        self.url_to_place_id: Dict[str, str] = OrderedDict()
        self.results_by_place_id: Dict[str, PlaceRecord] = OrderedDict()
        self.queue = JobQueue(self.max_retries, place_ids=self.url_to_place_id)
        self.active_job: Optional[str] = None
        self.session_complete = False

    @property
    def is_processing(self) -> bool:
        return self.active_job is not None

    def collected_urls(self):
        return self.queue.urls()

    def replace_jobs(self, urls) -> list:
        """Start a new session over a freshly collected URL list."""
        self.session_complete = False
        return self.queue.replace(urls)

    def record_result(self, url: str, record: PlaceRecord) -> None:
        self.results_by_place_id[record.place_id] = record
        self.queue.mark_completed(url, record.place_id)

    def record_for(self, url: str) -> Optional[PlaceRecord]:
        place_id = self.url_to_place_id.get(url)
        return self.results_by_place_id.get(place_id) if place_id else None

    def completed_records(self):
        """(url, record) pairs in collected-URL order."""
        pairs = []
        for url in self.queue.urls():
            record = self.record_for(url)
            if record is not None:
                pairs.append((url, record))
        return pairs

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            collected_urls=self.queue.urls(),
            processed_data=list(self.results_by_place_id.items()),
            url_to_place_id=list(self.url_to_place_id.items()),
            is_processing=self.is_processing,
            current_url=self.active_job,
        )

    def apply_snapshot(self, incoming: SessionSnapshot, adopt_activity: bool = False) -> SessionSnapshot:
        """
        Merge a snapshot from the other context into this session.

        Args:
            incoming: Snapshot received over the bus
            adopt_activity: Take the sender's active job as ours

        Returns:
            The merged snapshot
        """
        merged = merge(self.snapshot(), incoming)

        for place_id, record in merged.processed_data:
            self.results_by_place_id[place_id] = record
        for url, place_id in merged.url_to_place_id:
            self.url_to_place_id[url] = place_id

        self.queue.extend(merged.collected_urls)
        for url, place_id in merged.url_to_place_id:
            if url in self.queue:
                self.queue.mark_completed(url, place_id)

        if adopt_activity:
            self.active_job = merged.current_url if merged.is_processing else None

        return merged

    def to_state_dict(self) -> Dict[str, Any]:
        """Full persistable state, including job statuses and retry counts."""
        return {
            "snapshot": self.snapshot().to_wire(),
            "jobs": [job.to_dict() for job in self.queue.jobs()],
            "sessionComplete": self.session_complete,
        }

    @classmethod
    def from_state_dict(cls, data: Dict[str, Any], max_retries: int = 3) -> 'Session':
        session = cls(max_retries=max_retries)
        snapshot = SessionSnapshot.from_wire(data.get("snapshot"))
        session.apply_snapshot(snapshot, adopt_activity=True)

        for job_data in data.get("jobs") or []:
            saved = Job.from_dict(job_data)
            job = session.queue.get(saved.url)
            if job is None:
                continue
            job.retry_count = saved.retry_count
            job.last_error = saved.last_error
            if job.status != saved.status and saved.url not in session.url_to_place_id:
                job.status = saved.status

        session.session_complete = bool(data.get("sessionComplete", False))
        return session
