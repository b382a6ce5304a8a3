"""Tests for job queue primitives and job envelopes.

USE THIS FILE FOR:
- push / reserve / peek / length / remove semantics
- Atomic head moves and backlog transfer
- Envelope encoding and validation
"""
import json
import logging

import pytest
from fixtures import *  # noqa: F401, F403

from fifosync.exceptions import MalformedEnvelope, NoClassError, NoQueueError
from fifosync.jobs import class_path, resolve_job_class
from fifosync.queues import JobEnvelope, JobQueue

logger = logging.getLogger(__name__)


def create_queue(engine) -> JobQueue:
    return JobQueue(create_db(engine))


class TestJobEnvelope:
    """Test envelope shape."""

    def test_encode_shape(self):
        """Verify stored JSON has class, args, fifo_key, enqueue_ts.
        """
        envelope = JobEnvelope('jobs.Charge', [1, 'a'], 'customer-1', 1700000000)
        assert json.loads(envelope.encode()) == {
            'class': 'jobs.Charge', 'args': [1, 'a'], 'fifo_key': 'customer-1', 'enqueue_ts': 1700000000}

    def test_plain_job_omits_fifo_fields(self):
        """Verify non-fifo jobs carry only class and args.
        """
        assert json.loads(JobEnvelope('jobs.Refresh', ['fifo']).encode()) == {
            'class': 'jobs.Refresh', 'args': ['fifo']}

    @pytest.mark.parametrize('payload', [
        'not json',
        '[1, 2]',
        '{"args": []}',
        '{"class": "x", "args": "nope"}',
    ])
    def test_decode_rejects_malformed(self, payload):
        """Verify malformed payloads raise MalformedEnvelope.
        """
        with pytest.raises(MalformedEnvelope):
            JobEnvelope.decode(payload)


class TestJobClasses:
    """Test dotted-path resolution."""

    def test_class_path_round_trip(self):
        """Verify class_path output resolves back to the class.
        """
        assert class_path(RecordingJob) == 'fixtures.RecordingJob'
        assert resolve_job_class('fixtures.RecordingJob') is RecordingJob

    def test_resolve_unknown_class(self):
        """Verify unknown class raises ImportError.
        """
        with pytest.raises(ImportError):
            resolve_job_class('fixtures.NoSuchJob')
        with pytest.raises(ImportError):
            resolve_job_class('NoModule')


class TestQueuePrimitives:
    """Test queue operations against the database."""

    def test_push_reserve_fifo(self, engine):
        """Verify items come out in push order.
        """
        queues = create_queue(engine)
        for i in range(5):
            queues.push('q', make_envelope('k', i))

        reserved = [JobEnvelope.decode(queues.reserve('q')).args[0] for _ in range(5)]
        assert reserved == [0, 1, 2, 3, 4]
        assert queues.reserve('q') is None

    def test_push_registers_queue_name(self, engine):
        """Verify pushed queues appear in list_queue_names.
        """
        queues = create_queue(engine)
        queues.push('b', make_envelope('k'))
        queues.push('a', make_envelope('k'))

        assert queues.list_queue_names() == ['a', 'b']

    def test_peek_and_length(self, engine):
        """Verify peek windows without removing items.
        """
        queues = create_queue(engine)
        for i in range(4):
            queues.push('q', make_envelope('k', i))

        assert queues.length('q') == 4
        assert [json.loads(p)['args'] for p in queues.peek('q', 1, 2)] == [[1], [2]]
        assert len(queues.peek('q', 0, 0)) == 4
        assert [json.loads(p)['args'] for p in queues.peek('q', 2, 0)] == [[2], [3]]
        assert queues.length('q') == 4

    def test_remove_queue(self, engine):
        """Verify remove_queue drops items and the name.
        """
        queues = create_queue(engine)
        queues.push('q', make_envelope('k'))
        queues.remove_queue('q')

        assert queues.length('q') == 0
        assert 'q' not in queues.list_queue_names()

    def test_move_head_appends_to_tail(self, engine):
        """Verify move_head takes the source head and appends behind existing items.
        """
        queues = create_queue(engine)
        queues.push('dst', make_envelope('existing'))
        queues.push('src', make_envelope('first'))
        queues.push('src', make_envelope('second'))

        payload, destination = queues.move_head('src', 'dst')

        assert destination == 'dst'
        assert json.loads(payload)['fifo_key'] == 'first'
        assert [json.loads(p)['fifo_key'] for p in queues.peek('dst', 0, 0)] == ['existing', 'first']

    def test_move_head_with_chooser(self, engine):
        """Verify destination callable sees the payload.
        """
        queues = create_queue(engine)
        queues.push('src', make_envelope('to-x'))

        _, destination = queues.move_head('src', lambda payload: json.loads(payload)['fifo_key'])

        assert destination == 'to-x'
        assert queues.length('to-x') == 1

    def test_move_head_empty_source(self, engine):
        """Verify moving from an empty queue is a no-op.
        """
        queues = create_queue(engine)
        assert queues.move_head('empty', 'dst') is None
        assert queues.length('dst') == 0

    def test_transfer_preserves_order(self, engine):
        """Verify full backlog lands in order behind existing destination items.
        """
        queues = create_queue(engine)
        queues.push('dst', make_envelope('d0'))
        for i in range(5):
            queues.push('src', make_envelope(f's{i}'))

        moved = queues.transfer('src', 'dst')

        assert moved == 5
        assert queues.length('src') == 0
        assert [json.loads(p)['fifo_key'] for p in queues.peek('dst', 0, 0)] == ['d0', 's0', 's1', 's2', 's3', 's4']

    def test_transfer_continues_after_lost_head(self, engine):
        """Verify a head taken by a concurrent reserve does not cut the transfer short.
        """
        queues = create_queue(engine)
        for i in range(5):
            queues.push('src', make_envelope(f's{i}'))
        original = queues.move_head
        attempts = []

        def move_head(from_queue, to_queue):
            attempts.append(from_queue)
            if len(attempts) == 2:
                queues.reserve(from_queue)
                return None
            return original(from_queue, to_queue)

        queues.move_head = move_head
        moved = queues.transfer('src', 'dst')

        assert len(attempts) == 5
        assert moved == 4
        assert queues.length('src') == 0
        assert [json.loads(p)['fifo_key'] for p in queues.peek('dst', 0, 0)] == ['s0', 's2', 's3', 's4']

    def test_retire_moves_everything(self, engine):
        """Verify retire drains a queue into the destination and forgets its name.
        """
        queues = create_queue(engine)
        queues.push('dst', make_envelope('d0'))
        for i in range(3):
            queues.push('old', make_envelope(f'o{i}'))

        assert queues.retire('old', 'dst') == 3

        assert queues.length('old') == 0
        assert 'old' not in queues.list_queue_names()
        assert [json.loads(p)['fifo_key'] for p in queues.peek('dst', 0, 0)] == ['d0', 'o0', 'o1', 'o2']

    def test_validate(self, engine):
        """Verify validate rejects missing queue or class.
        """
        queues = create_queue(engine)

        queues.validate(RecordingJob, 'q')
        with pytest.raises(NoQueueError):
            queues.validate(RecordingJob, '')
        with pytest.raises(NoClassError):
            queues.validate(None, 'q')
