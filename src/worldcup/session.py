"""
Play session controller.

A PlaySession owns one tournament and one vote queue. It serializes player
decisions through a latch, forwards lifecycle signals to the delivery layer
and runs the completion flow: flush votes, update statistics, then move on
to the results view whatever happened on the network.
"""
import logging
import secrets
import threading
import time
from typing import Dict, List, Optional
from urllib.parse import quote

import requests

from .bracket import (
    build_tournament, calculate_bracket_size, can_undo, get_available_sizes, get_current_match,
    get_round_name, get_tournament_progress, match_to_dict, seed_items, select_winner, undo_last_match,
)
from .config import get_default_settings
from .delivery import LifecycleSignals, VoteDelivery
from .errors import StatisticsUpdateFailure
from .models import Item
from .votes import VoteAccumulator

logger = logging.getLogger(__name__)


class DecisionLatch:
    """Non-blocking mutual exclusion around the decision handler."""

    def __init__(self):
        self._lock = threading.Lock()

    def acquire(self) -> bool:
        return self._lock.acquire(blocking=False)

    def release(self):
        self._lock.release()

    @property
    def locked(self) -> bool:
        return self._lock.locked()


def generate_guest_token() -> str:
    return f"guest_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def pick_default_size(num_items: int, preferred: int) -> int:
    """Largest available bracket size not above the preferred one."""
    sizes = [option['size'] for option in get_available_sizes(num_items)]
    for size in sizes:
        if size <= preferred:
            return size
    return sizes[-1] if sizes else calculate_bracket_size(num_items)


class PlaySession:
    def __init__(self, worldcup_id: str, items: List[Item], client, size: Optional[int] = None,
                 title: Optional[str] = None, settings: Optional[Dict] = None,
                 signals: Optional[LifecycleSignals] = None, beacon=None, spawn=None,
                 navigate=None, session_token: Optional[str] = None, rng=None, sleep=time.sleep):
        self.settings = {**get_default_settings(), **(settings or {})}
        self.worldcup_id = worldcup_id
        self.title = title
        self.items = list(items)
        self.size = size or pick_default_size(len(self.items), self.settings['default_size'])
        self.client = client
        self.navigate = navigate
        self.session_token = session_token or generate_guest_token()
        self.rng = rng
        self._sleep = sleep
        self._latch = DecisionLatch()

        self.accumulator = VoteAccumulator(self.settings['vote_queue_capacity'])
        self.signals = signals or LifecycleSignals()
        self.delivery = VoteDelivery(
            client, self.accumulator, worldcup_id,
            beacon=beacon, spawn=spawn, max_bulk_votes=self.settings['max_bulk_votes'],
            flush_timeout=self.settings['flush_timeout_seconds'],
        )
        self.delivery.attach(self.signals)

        self.tournament = None
        self.vote_stats = None
        self.result_url = None
        self.last_report = None
        self.started_at = None
        self._finished = False
        self.start()

    def start(self, size: Optional[int] = None):
        """
        Replace the tournament with a freshly seeded one; queued votes are discarded.

        A bracket that byes alone decide (a single item) goes straight
        through the completion flow.
        """
        if size is not None:
            self.size = size
        self.accumulator.clear()
        self.vote_stats = None
        self.result_url = None
        self.last_report = None
        self.started_at = time.time()
        self._finished = False
        self.tournament = build_tournament(
            seed_items(self.items, self.rng),
            self.size,
            title=self.title,
            tournament_id=f"{self.worldcup_id}-{int(time.time() * 1000)}",
        )
        logger.info("Started %s with %d items at size %d", self.worldcup_id, len(self.items), self.size)
        if self.tournament['is_completed']:
            self._complete()
        return self.tournament

    def restart(self, size: Optional[int] = None):
        return self.start(size)

    @property
    def current_match(self) -> Optional[Dict]:
        return get_current_match(self.tournament)

    @property
    def progress(self) -> Dict:
        return get_tournament_progress(self.tournament)

    @property
    def round_name(self) -> str:
        return get_round_name(self.tournament['current_round'], self.tournament['total_rounds'])

    @property
    def can_undo(self) -> bool:
        return not self._finished and can_undo(self.tournament)

    @property
    def is_completed(self) -> bool:
        return self.tournament['is_completed']

    def choose(self, item_id: str) -> bool:
        """
        Handle a player decision for the current match.

        Returns False when the choice was ignored: another decision is still
        being processed, or there is no match left to play.

        Raises:
            ValueError: item_id is not one of the two current items
        """
        if not self._latch.acquire():
            logger.debug("Ignoring choice of %s while a decision is pending", item_id)
            return False
        try:
            match = get_current_match(self.tournament)
            if match is None:
                return False
            winner = self._item_in_match(match, item_id)
            self.vote_stats = self._read_vote_stats(match)

            delay = self.settings['decision_delay_seconds']
            if delay > 0:
                self._sleep(delay)

            self.tournament = select_winner(self.tournament, winner, self.accumulator)
            if self.tournament['is_completed']:
                self._complete()
            return True
        finally:
            self._latch.release()

    def undo(self) -> bool:
        if self._finished or not self._latch.acquire():
            return False
        try:
            updated = undo_last_match(self.tournament, self.accumulator)
            if updated is None:
                return False
            self.tournament = updated
            self.vote_stats = None
            return True
        finally:
            self._latch.release()

    def hide(self):
        self.signals.hidden()

    def close(self):
        """Session is going away: push any queued votes out and stop listening."""
        if not self._finished:
            self.signals.unloading()
        self.delivery.detach(self.signals)

    def _item_in_match(self, match: Dict, item_id: str) -> Item:
        for item in (match['item_a'], match['item_b']):
            if isinstance(item, Item) and item.id == str(item_id):
                return item
        raise ValueError(f"Item {item_id} is not playing in {match['id']}")

    def _read_vote_stats(self, match: Dict) -> Optional[Dict]:
        """Share of past wins between the two items, for display only."""
        if not self.settings.get('show_vote_stats', True):
            return None
        try:
            stats = self.client.fetch_item_stats(self.worldcup_id)
        except (requests.RequestException, ValueError) as e:
            logger.warning("Could not read vote statistics for %s: %s", self.worldcup_id, e)
            return None

        wins_a = stats.get(match['item_a'].id, {}).get('win_count', 0)
        wins_b = stats.get(match['item_b'].id, {}).get('win_count', 0)
        total = wins_a + wins_b
        if total == 0:
            return {'left_percentage': 50.0, 'right_percentage': 50.0, 'total_votes': 0}
        return {
            'left_percentage': wins_a / total * 100,
            'right_percentage': wins_b / total * 100,
            'total_votes': total,
        }

    def _complete(self):
        self._finished = True
        winner = self.tournament['winner']
        self.last_report = self.delivery.flush()

        try:
            self.client.update_stats(
                self.worldcup_id,
                [match_to_dict(match) for match in self.tournament['matches']],
                winner.to_dict(),
                self.session_token,
            )
        except StatisticsUpdateFailure as e:
            logger.warning("Statistics update for %s failed: %s", self.worldcup_id, e)

        play_time = int((time.time() - self.started_at) * 1000)
        self.result_url = (
            f"{self.settings['results_path']}/{quote(str(self.worldcup_id), safe='')}"
            f"?playTime={play_time}&winner={quote(winner.id, safe='')}"
        )
        logger.info("%s won %s", winner.title, self.worldcup_id)
        if self.navigate is not None:
            self.navigate(self.result_url)
