"""
Tests for the per-session vote queue and the vote/item models.
"""
import threading

import pytest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from worldcup.errors import AccumulatorFull
from worldcup.models import Item, VoteRecord
from worldcup.votes import VoteAccumulator


class TestItem:
    def test_from_dict_collects_metadata(self):
        item = Item.from_dict({'id': 7, 'title': 'Tea', 'image_url': 'tea.png'})
        assert item.id == '7'
        assert item.title == 'Tea'
        assert item.metadata == {'image_url': 'tea.png'}

    def test_equality_by_value(self):
        assert Item('a', 'A') == Item('a', 'A')
        assert Item('a', 'A') != Item('a', 'B')
        assert Item('a', 'A') != 'BYE'

    def test_to_dict(self):
        assert Item('a', 'A', {'x': 1}).to_dict() == {'id': 'a', 'title': 'A', 'metadata': {'x': 1}}


class TestVoteRecord:
    def test_vote_id_generated(self):
        first = VoteRecord('a', 'b')
        second = VoteRecord('a', 'b')
        assert first.vote_id
        assert first.vote_id != second.vote_id

    def test_to_dict_omits_missing_loser(self):
        """Bye advancements carry no loser."""
        data = VoteRecord('a', vote_id='v1').to_dict()
        assert data == {'winnerId': 'a', 'voteId': 'v1'}

    def test_from_dict(self):
        record = VoteRecord.from_dict({'winnerId': 'a', 'loserId': 'b', 'voteId': 'v1'})
        assert record == VoteRecord('a', 'b', 'v1')


class TestVoteAccumulator:
    """Tests for VoteAccumulator."""

    def test_append_and_drain(self):
        accumulator = VoteAccumulator()
        accumulator.append(VoteRecord('a', 'b'))
        accumulator.append(VoteRecord('c', 'd'))
        assert accumulator.size() == 2

        records = accumulator.drain()
        assert [r.winner_id for r in records] == ['a', 'c']
        assert accumulator.size() == 0
        assert accumulator.drain() == []

    def test_capacity(self):
        accumulator = VoteAccumulator(capacity=2)
        accumulator.append(VoteRecord('a'))
        accumulator.append(VoteRecord('b'))
        with pytest.raises(AccumulatorFull):
            accumulator.append(VoteRecord('c'))
        assert len(accumulator) == 2

    def test_remove_last_takes_most_recent_for_winner(self):
        accumulator = VoteAccumulator()
        accumulator.append(VoteRecord('a', 'b', 'v1'))
        accumulator.append(VoteRecord('c', 'd', 'v2'))
        accumulator.append(VoteRecord('a', 'c', 'v3'))

        removed = accumulator.remove_last('a')
        assert removed.vote_id == 'v3'
        assert [r.vote_id for r in accumulator.snapshot()] == ['v1', 'v2']

    def test_remove_last_missing_winner(self):
        accumulator = VoteAccumulator()
        accumulator.append(VoteRecord('a', 'b'))
        assert accumulator.remove_last('z') is None
        assert accumulator.size() == 1

    def test_clear(self):
        accumulator = VoteAccumulator()
        accumulator.append(VoteRecord('a'))
        accumulator.clear()
        assert accumulator.size() == 0

    def test_snapshot_is_a_copy(self):
        accumulator = VoteAccumulator()
        accumulator.append(VoteRecord('a'))
        accumulator.snapshot().clear()
        assert accumulator.size() == 1

    def test_drain_from_the_thread_holding_the_lock(self):
        """A signal handler may drain while its own thread is inside the queue."""
        accumulator = VoteAccumulator()
        accumulator.append(VoteRecord('a'))
        with accumulator._lock:
            records = accumulator.drain()
        assert [r.winner_id for r in records] == ['a']
        assert accumulator.size() == 0

    def test_concurrent_drains_see_each_record_once(self):
        accumulator = VoteAccumulator(capacity=10000)
        drained = []
        lock = threading.Lock()

        def produce():
            for _ in range(500):
                accumulator.append(VoteRecord('a'))

        def consume():
            for _ in range(200):
                records = accumulator.drain()
                with lock:
                    drained.extend(records)

        threads = [threading.Thread(target=produce) for _ in range(4)]
        threads += [threading.Thread(target=consume) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        drained.extend(accumulator.drain())

        assert len(drained) == 2000
        assert len({r.vote_id for r in drained}) == 2000
