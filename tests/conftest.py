"""
Shared pytest fixtures for world cup tests.

Running tests:
    pytest tests/
"""
import pytest
import sys
import os
import time
import yaml

# Add src directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from worldcup.errors import DeliveryFailure, StatisticsUpdateFailure
from worldcup.models import Item


def make_items(count):
    """Items item-1 .. item-N, in seed order."""
    return [Item(id=f"item-{i}", title=f"Item {i}") for i in range(1, count + 1)]


class FakeVoteClient:
    """Records collector calls; failures are switched on per test."""

    def __init__(self, bulk_fails=False, failing_winner_ids=(), stats_update_fails=False, item_stats=None,
                 unreachable=False, call_delay=0.0):
        self.bulk_fails = bulk_fails
        self.failing_winner_ids = set(failing_winner_ids)
        self.unreachable = unreachable
        self.call_delay = call_delay
        self.stats_update_fails = stats_update_fails
        self.item_stats = item_stats or {}
        self.on_fetch_item_stats = None
        self.bulk_calls = []
        self.vote_calls = []
        self.stats_updates = []

    def bulk_url(self, worldcup_id):
        return f"http://collector.test/api/worldcups/{worldcup_id}/vote-bulk"

    def _network(self):
        if self.call_delay:
            time.sleep(self.call_delay)
        if self.unreachable:
            raise DeliveryFailure('connection timed out')

    def submit_bulk(self, worldcup_id, votes):
        self.bulk_calls.append(list(votes))
        self._network()
        if self.bulk_fails:
            raise DeliveryFailure('bulk endpoint unavailable', 503)
        return {'successful_votes': len(votes), 'failed_votes': 0}

    def submit_vote(self, worldcup_id, vote):
        self.vote_calls.append(vote)
        self._network()
        if vote.winner_id in self.failing_winner_ids:
            raise DeliveryFailure('vote rejected', 400)

    def update_stats(self, worldcup_id, matches, winner, session_token):
        self.stats_updates.append({'matches': matches, 'winner': winner, 'sessionToken': session_token})
        if self.call_delay:
            time.sleep(self.call_delay)
        if self.stats_update_fails:
            raise StatisticsUpdateFailure('stats endpoint unavailable', 500)

    def fetch_item_stats(self, worldcup_id):
        if self.on_fetch_item_stats is not None:
            self.on_fetch_item_stats()
        return self.item_stats


class FakeBeacon:
    def __init__(self, accept=True):
        self.accept = accept
        self.sent = []

    def send(self, url, payload):
        self.sent.append((url, payload))
        return self.accept

    def wait(self, timeout=None):
        pass


def run_now(target, *args):
    """Synchronous stand-in for the background spawner."""
    target(*args)


@pytest.fixture
def fake_client():
    return FakeVoteClient()


@pytest.fixture
def fake_beacon():
    return FakeBeacon()


@pytest.fixture
def eight_items():
    return make_items(8)


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    """Collector data directory with two world cups."""
    import app as app_module

    worldcups_file = tmp_path / 'worldcups.yaml'
    worldcups_file.write_text(yaml.dump({'worldcups': [
        {
            'id': 'snacks',
            'title': 'Best Snack',
            'items': [
                {'id': 'chips', 'title': 'Chips'},
                {'id': 'cookies', 'title': 'Cookies', 'image_url': 'https://example.com/cookies.png'},
                {'id': 'popcorn', 'title': 'Popcorn'},
                {'id': 'pretzels', 'title': 'Pretzels'},
                {'id': 'nachos', 'title': 'Nachos'},
            ],
        },
        {
            'id': 'colors',
            'title': 'Favourite Color',
            'items': [
                {'id': 'red', 'title': 'Red'},
                {'id': 'blue', 'title': 'Blue'},
            ],
        },
    ]}, default_flow_style=False))

    monkeypatch.setattr(app_module, 'WORLDCUPS_FILE', str(worldcups_file))
    monkeypatch.setattr(app_module, 'STATS_DIR', str(tmp_path / 'stats'))
    return tmp_path


@pytest.fixture
def client(data_dir):
    """Flask test client over the temporary data directory."""
    from app import app
    app.config['TESTING'] = True
    with app.test_client() as client:
        yield client
