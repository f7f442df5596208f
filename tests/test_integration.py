"""
End-to-end tests: a play session talking to the collector through VoteClient.

The requests session is replaced by a thin adapter over the Flask test client,
so the real client code and the real routes run together.
"""
import random

import requests
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from conftest import run_now
from worldcup.delivery import VoteClient, VoteDelivery
from worldcup.models import VoteRecord
from worldcup.session import PlaySession
from worldcup.votes import VoteAccumulator

BASE_URL = 'http://collector.test'


class FlaskResponse:
    def __init__(self, response):
        self._response = response
        self.status_code = response.status_code

    def json(self):
        return self._response.get_json()

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)


class FlaskSession:
    """Just enough of requests.Session for VoteClient."""

    def __init__(self, client):
        self.client = client

    def _path(self, url):
        assert url.startswith(BASE_URL)
        return url[len(BASE_URL):]

    def post(self, url, json=None, timeout=None):
        return FlaskResponse(self.client.post(self._path(url), json=json))

    def get(self, url, timeout=None):
        return FlaskResponse(self.client.get(self._path(url)))


def vote_client(client):
    return VoteClient(BASE_URL, session=FlaskSession(client))


class TestPlayAgainstCollector:
    def test_full_tournament(self, client):
        """Five items at size 8: four decisions reach the collector, plus the champion."""
        api = vote_client(client)
        worldcup = api.fetch_worldcup('snacks')
        visited = []
        session = PlaySession(
            'snacks', worldcup['items'], api, size=8, title=worldcup['title'],
            spawn=run_now, navigate=visited.append, rng=random.Random(4),
        )

        while not session.is_completed:
            session.choose(session.current_match['item_b'].id)

        assert session.last_report == {'successful_votes': 4, 'failed_votes': 0}
        assert len(visited) == 1

        stats = client.get('/api/worldcups/snacks/stats').get_json()
        assert stats['tournamentsPlayed'] == 1
        champion = session.tournament['winner'].id
        assert stats['items'][champion]['championship_wins'] == 1
        assert sum(item['win_count'] for item in stats['items'].values()) == 4
        assert sum(item['loss_count'] for item in stats['items'].values()) == 4

    def test_resent_votes_are_not_double_counted(self, client):
        api = vote_client(client)
        votes = [VoteRecord('chips', 'nachos'), VoteRecord('popcorn', 'pretzels')]

        assert api.submit_bulk('snacks', votes)['successful_votes'] == 2
        assert api.submit_bulk('snacks', votes)['successful_votes'] == 2

        items = api.fetch_item_stats('snacks')
        assert items['chips']['win_count'] == 1
        assert items['popcorn']['win_count'] == 1

    def test_rejected_bulk_falls_back_to_single_votes(self, client, monkeypatch):
        import app as app_module
        monkeypatch.setattr(app_module, 'MAX_BULK_VOTES', 1)

        accumulator = VoteAccumulator()
        accumulator.append(VoteRecord('chips', 'nachos'))
        accumulator.append(VoteRecord('caviar', 'nachos'))
        delivery = VoteDelivery(vote_client(client), accumulator, 'snacks', max_bulk_votes=2)

        report = delivery.flush()

        assert report == {'successful_votes': 1, 'failed_votes': 1}
        assert vote_client(client).fetch_item_stats('snacks')['chips']['win_count'] == 1
