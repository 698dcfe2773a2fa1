"""
Property-based tests for the job queue.

**Feature: place-harvester, Property 8: Queue order and retry accounting**
"""

import pytest
from hypothesis import given, strategies as st, settings

from place_harvester.data.job_queue import JobQueue, dedupe_urls
from place_harvester.data.models import JobStatus
from place_harvester.utils.errors import ValidationError


url_strategy = st.builds(
    lambda slug, padding: f"{padding}https://www.google.com/maps/place/{slug}{padding}",
    st.text(alphabet="abcdefgh+", min_size=1, max_size=6),
    st.sampled_from(["", " ", "\t"]),
)


class TestDedupe:

    @given(urls=st.lists(url_strategy, max_size=20))
    @settings(max_examples=50)
    def test_dedupe_keeps_first_occurrences_in_order(self, urls):
        """
        Property 8: Queue order and retry accounting
        Deduplication is idempotent and preserves first-seen order.
        """
        result = dedupe_urls(urls)

        assert len(result) == len(set(result))
        assert dedupe_urls(result) == result
        stripped = [url.strip() for url in urls]
        assert result == sorted(set(stripped), key=stripped.index)

    def test_non_strings_and_blanks_are_dropped(self):
        assert dedupe_urls(["a", None, "  ", 3, "a ", "b"]) == ["a", "b"]


class TestQueueOrder:

    @given(urls=st.lists(url_strategy, min_size=1, max_size=10, unique_by=str.strip))
    @settings(max_examples=30)
    def test_next_pending_walks_in_insertion_order(self, urls):
        queue = JobQueue()
        queue.replace(urls)

        seen = []
        job = queue.next_pending()
        while job is not None:
            seen.append(job.url)
            queue.mark_in_flight(job.url)
            queue.mark_completed(job.url, f"id-{len(seen)}")
            job = queue.next_pending()

        assert seen == [url.strip() for url in urls]
        assert queue.count(JobStatus.COMPLETED) == len(urls)

    def test_replace_keeps_known_job_state(self):
        queue = JobQueue()
        queue.replace(["a", "b"])
        queue.increment_retry("a", "timeout")

        queue.replace(["c", "a"])

        assert queue.urls() == ["c", "a"]
        assert queue.get("a").retry_count == 1
        assert queue.get("b") is None

    def test_extend_appends_only_new_urls(self):
        queue = JobQueue()
        queue.replace(["a"])
        assert queue.extend(["a", "b", "b"]) == ["b"]
        assert queue.urls() == ["a", "b"]

    def test_mapped_urls_count_as_completed(self):
        place_ids = {"b": "0x1:0x2"}
        queue = JobQueue(place_ids=place_ids)
        queue.replace(["a", "b"])

        assert queue.get("b").status == JobStatus.COMPLETED
        assert queue.next_pending().url == "a"

    def test_urls_with_a_result_are_skipped(self):
        queue = JobQueue()
        queue.replace(["a", "b"])
        queue.note_processed("a")

        assert queue.is_processed("a")
        assert queue.get("a").status == JobStatus.PENDING
        assert queue.next_pending().url == "b"

        queue.clear()
        assert not queue.is_processed("a")


class TestRetryAccounting:

    @pytest.mark.parametrize("max_retries", [1, 3, 5])
    def test_requeue_until_budget_spent(self, max_retries):
        queue = JobQueue(max_retries=max_retries)
        queue.replace(["a"])

        for attempt in range(1, max_retries + 1):
            assert queue.increment_retry("a", f"failure {attempt}") == attempt

        job = queue.get("a")
        assert job.status == JobStatus.FAILED
        assert job.last_error == f"failure {max_retries}"
        assert queue.next_pending() is None

    def test_increment_without_requeue_keeps_status(self):
        queue = JobQueue()
        queue.replace(["a"])
        queue.mark_in_flight("a")

        for _ in range(5):
            queue.increment_retry("a", "timeout", requeue=False)

        assert queue.get("a").status == JobStatus.IN_FLIGHT
        assert queue.get("a").retry_count == 5

    def test_revert_only_undoes_in_flight(self):
        queue = JobQueue()
        queue.replace(["a", "b"])
        queue.mark_in_flight("a")
        queue.mark_failed("b", "gave up")

        queue.revert_to_pending("a")
        queue.revert_to_pending("b")

        assert queue.get("a").status == JobStatus.PENDING
        assert queue.get("b").status == JobStatus.FAILED

    def test_reopen_resets_failed_job(self):
        queue = JobQueue(max_retries=1)
        queue.replace(["a"])
        queue.increment_retry("a", "timeout")

        job = queue.reopen("a")

        assert (job.status, job.retry_count, job.last_error) == (JobStatus.PENDING, 0, None)

    def test_unknown_job_raises(self):
        queue = JobQueue()
        with pytest.raises(ValidationError):
            queue.mark_in_flight("missing")

    def test_counts_cover_every_status(self):
        queue = JobQueue()
        queue.replace(["a", "b", "c", "d"])
        queue.mark_in_flight("b")
        queue.mark_completed("c", "id")
        queue.mark_failed("d")

        assert queue.counts() == {"pending": 1, "in_flight": 1, "completed": 1, "failed": 1}
        assert queue.has_remaining()
