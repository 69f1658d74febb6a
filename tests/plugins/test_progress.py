"""
Tests for Progress Streaming Module

These tests validate fan-out to subscribers, bounded queues that drop the
oldest event, terminal-event iteration and SSE rendering.
"""

import json
from datetime import datetime, timezone

from pg_sync.progress import InMemoryProgressStream, NullProgressStream, ProgressEvent


def event(event_type='progress', job_id='job-1', status='running', **progress):
    return ProgressEvent(job_id=job_id, type=event_type, status=status, progress=progress)


class TestProgressEvent:
    """Test event rendering."""

    def test_to_sse(self):
        stamp = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        evt = ProgressEvent('job-1', 'progress', 'running', {'processed_rows': 10}, timestamp=stamp)

        frame = evt.to_sse()

        assert frame.startswith('event: progress\ndata: ')
        assert frame.endswith('\n\n')
        payload = json.loads(frame.split('data: ', 1)[1])
        assert payload['progress'] == {'processed_rows': 10}
        assert payload['timestamp'] == '2024-01-01T12:00:00+00:00'
        assert payload['message'] is None


class TestInMemoryProgressStream:
    """Test publish/subscribe."""

    def test_fan_out_to_all_subscribers_of_job(self):
        stream = InMemoryProgressStream()
        first = stream.subscribe('job-1')
        second = stream.subscribe('job-1')
        other = stream.subscribe('job-2')

        stream.publish('job-1', event(processed_rows=5))

        assert [e.progress for e in first.drain()] == [{'processed_rows': 5}]
        assert len(second.drain()) == 1
        assert other.drain() == []

    def test_publish_without_subscribers(self):
        InMemoryProgressStream().publish('job-1', event())

    def test_full_queue_drops_oldest(self):
        stream = InMemoryProgressStream(max_events_per_subscriber=2)
        sub = stream.subscribe('job-1')

        for i in range(5):
            stream.publish('job-1', event(processed_rows=i))

        assert [e.progress['processed_rows'] for e in sub.drain()] == [3, 4]
        assert sub.dropped == 3

    def test_events_stop_at_terminal_event(self):
        stream = InMemoryProgressStream()
        sub = stream.subscribe('job-1')
        stream.publish('job-1', event('started'))
        stream.publish('job-1', event('progress'))
        stream.publish('job-1', event('completed', status='completed'))
        stream.publish('job-1', event('progress'))

        types = [e.type for e in sub.events(timeout=0.01)]

        assert types == ['started', 'progress', 'completed']

    def test_events_stop_when_quiet(self):
        sub = InMemoryProgressStream().subscribe('job-1')
        assert list(sub.events(timeout=0.01)) == []

    def test_get_timeout_returns_none(self):
        sub = InMemoryProgressStream().subscribe('job-1')
        assert sub.get(timeout=0.01) is None

    def test_close_unsubscribes(self):
        stream = InMemoryProgressStream()
        sub = stream.subscribe('job-1')
        sub.close()

        stream.publish('job-1', event())

        assert sub.drain() == []

    def test_close_twice_is_harmless(self):
        stream = InMemoryProgressStream()
        sub = stream.subscribe('job-1')
        sub.close()
        sub.close()


class TestNullProgressStream:
    """Test the discarding stream."""

    def test_publish_discards(self):
        NullProgressStream().publish('job-1', event())
