"""
Vote delivery to the collector.

Two paths drain the same per-session vote queue:

- flush(): on tournament completion. Bulk submission, falling back to one
  request per vote when the bulk call fails, within an overall deadline.
- flush_on_lifecycle(): when the session is hidden or torn down. Hands the
  votes to a fire-and-forget beacon and never waits for the network.

Both drain the queue first, so whichever path runs second finds it empty.
"""
import json
import logging
import threading
import time
from typing import Dict, List, Optional
from urllib.parse import quote

import requests
from blinker import Signal

from .errors import DeliveryFailure, StatisticsUpdateFailure
from .models import Item, VoteRecord

logger = logging.getLogger(__name__)

PAGE_HIDDEN = 'page-hidden'
PAGE_UNLOADING = 'page-unloading'
BEACON_MAX_BYTES = 64 * 1024


class VoteClient:
    """HTTP client for the collector endpoints."""

    def __init__(self, base_url: str, timeout: float = 5.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

    def worldcup_url(self, worldcup_id: str, suffix: str = '') -> str:
        return f"{self.base_url}/api/worldcups/{quote(str(worldcup_id), safe='')}{suffix}"

    def bulk_url(self, worldcup_id: str) -> str:
        return self.worldcup_url(worldcup_id, '/vote-bulk')

    def _post(self, url: str, payload: Dict, error_cls):
        try:
            response = self.session.post(url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            raise error_cls(f"POST {url} returned HTTP {status}", status) from e
        except requests.RequestException as e:
            raise error_cls(f"POST {url} failed: {e}") from e
        return response

    def submit_bulk(self, worldcup_id: str, votes: List[VoteRecord]) -> Dict:
        """
        Submit several votes in one request.

        Returns:
            Dict with successful_votes and failed_votes as reported by the collector

        Raises:
            DeliveryFailure: transport error, timeout, non-2xx or unreadable answer
        """
        if not votes:
            return {'successful_votes': 0, 'failed_votes': 0}
        response = self._post(
            self.bulk_url(worldcup_id),
            {'votes': [vote.to_dict() for vote in votes]},
            DeliveryFailure,
        )
        try:
            data = response.json()
            return {
                'successful_votes': int(data.get('successfulVotes', 0)),
                'failed_votes': int(data.get('failedVotes', 0)),
            }
        except (ValueError, AttributeError, TypeError) as e:
            raise DeliveryFailure(f"Unreadable bulk vote response: {e}") from e

    def submit_vote(self, worldcup_id: str, vote: VoteRecord):
        self._post(self.worldcup_url(worldcup_id, '/vote'), vote.to_dict(), DeliveryFailure)

    def update_stats(self, worldcup_id: str, matches: List[Dict], winner: Dict, session_token: str):
        """Send the once-per-tournament statistics update."""
        self._post(
            self.worldcup_url(worldcup_id, '/stats'),
            {'matches': matches, 'winner': winner, 'sessionToken': session_token},
            StatisticsUpdateFailure,
        )

    def fetch_worldcup(self, worldcup_id: str) -> Dict:
        """Items source: returns the title and the ordered candidate items."""
        response = self.session.get(self.worldcup_url(worldcup_id), timeout=self.timeout)
        response.raise_for_status()
        data = response.json()['worldcup']
        return {
            'id': data['id'],
            'title': data.get('title', ''),
            'items': [Item.from_dict(item) for item in data.get('items', [])],
        }

    def fetch_item_stats(self, worldcup_id: str) -> Dict[str, Dict]:
        """Statistics reader: per-item win/loss counts keyed by item id."""
        response = self.session.get(self.worldcup_url(worldcup_id, '/stats'), timeout=self.timeout)
        response.raise_for_status()
        return response.json().get('items', {})


class ThreadedBeacon:
    """
    One-way POST that is queued on a daemon thread and never awaited.

    send() returns False when the payload is over the quota, mirroring a
    browser beacon refusing it; the caller then picks another path.
    """

    def __init__(self, timeout: float = 2.0, max_bytes: int = BEACON_MAX_BYTES):
        self.timeout = timeout
        self.max_bytes = max_bytes
        self._threads: List[threading.Thread] = []

    def send(self, url: str, payload: Dict) -> bool:
        body = json.dumps(payload).encode('utf-8')
        if len(body) > self.max_bytes:
            logger.warning("Beacon payload of %d bytes exceeds %d byte quota", len(body), self.max_bytes)
            return False
        thread = threading.Thread(target=self._post, args=(url, body), name='vote-beacon', daemon=True)
        thread.start()
        self._threads = [t for t in self._threads if t.is_alive()] + [thread]
        return True

    def _post(self, url: str, body: bytes):
        try:
            requests.post(url, data=body, headers={'Content-Type': 'application/json'}, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning("Beacon to %s failed: %s", url, e)

    def wait(self, timeout: Optional[float] = None):
        """Give in-flight beacons a chance to leave before the process exits."""
        for thread in self._threads:
            thread.join(timeout)


class LifecycleSignals:
    """The two session lifecycle signals a runtime emits."""

    def __init__(self):
        self.page_hidden = Signal(PAGE_HIDDEN)
        self.page_unloading = Signal(PAGE_UNLOADING)

    def connect(self, receiver):
        self.page_hidden.connect(receiver, weak=False)
        self.page_unloading.connect(receiver, weak=False)

    def disconnect(self, receiver):
        self.page_hidden.disconnect(receiver)
        self.page_unloading.disconnect(receiver)

    def hidden(self):
        self.page_hidden.send(PAGE_HIDDEN)

    def unloading(self):
        self.page_unloading.send(PAGE_UNLOADING)


def _spawn_daemon(target, *args):
    threading.Thread(target=target, args=args, name='vote-flush', daemon=True).start()


def _batches(records: List[VoteRecord], size: int):
    for start in range(0, len(records), size):
        yield records[start:start + size]


def _collector_unreachable(error: DeliveryFailure) -> bool:
    """Transport errors, timeouts and 5xx answers; a 4xx only concerns that one vote."""
    return error.status_code is None or error.status_code >= 500


def _past(deadline: Optional[float]) -> bool:
    return deadline is not None and time.monotonic() >= deadline


class VoteDelivery:
    def __init__(self, client: VoteClient, accumulator, worldcup_id: str,
                 beacon: Optional[ThreadedBeacon] = None, spawn=None, max_bulk_votes: int = 100,
                 flush_timeout: Optional[float] = None):
        self.client = client
        self.accumulator = accumulator
        self.worldcup_id = worldcup_id
        self.beacon = beacon
        self.max_bulk_votes = max_bulk_votes
        self.flush_timeout = flush_timeout
        self._spawn = spawn or _spawn_daemon

    def attach(self, signals: LifecycleSignals):
        signals.connect(self.flush_on_lifecycle)

    def detach(self, signals: LifecycleSignals):
        signals.disconnect(self.flush_on_lifecycle)

    def flush(self) -> Dict:
        """
        Drain the queue and deliver it, waiting for the answers.

        The whole flush is bounded by flush_timeout, and delivery stops as
        soon as the collector looks unreachable. Votes not delivered by then
        are counted as failed, logged and dropped; the queue is empty
        afterwards in every case.
        """
        records = self.accumulator.drain()
        if not records:
            return {'successful_votes': 0, 'failed_votes': 0}

        deadline = time.monotonic() + self.flush_timeout if self.flush_timeout is not None else None
        report = self._deliver(records, deadline)
        if report['failed_votes']:
            logger.warning(
                "Vote flush for %s: %d delivered, %d dropped",
                self.worldcup_id, report['successful_votes'], report['failed_votes'],
            )
        else:
            logger.info("Vote flush for %s: %d delivered", self.worldcup_id, report['successful_votes'])
        return report

    def _deliver(self, records: List[VoteRecord], deadline: Optional[float] = None) -> Dict:
        successful = failed = 0
        batches = list(_batches(records, self.max_bulk_votes))
        for index, batch in enumerate(batches):
            if _past(deadline):
                remaining = sum(len(b) for b in batches[index:])
                logger.warning("Vote flush deadline reached; dropping %d votes", remaining)
                failed += remaining
                break
            try:
                result = self.client.submit_bulk(self.worldcup_id, batch)
            except DeliveryFailure as e:
                logger.warning(
                    "Bulk vote submission failed (%s); submitting %d votes individually", e, len(batch)
                )
                result = self._deliver_individually(batch, deadline)
            successful += result['successful_votes']
            failed += result['failed_votes']
            if result.get('unreachable'):
                remaining = sum(len(b) for b in batches[index + 1:])
                failed += remaining
                if remaining:
                    logger.warning("Collector unreachable; dropping %d more votes", remaining)
                break
        return {'successful_votes': successful, 'failed_votes': failed}

    def _deliver_individually(self, batch: List[VoteRecord], deadline: Optional[float] = None) -> Dict:
        successful = failed = 0
        unreachable = False
        for index, record in enumerate(batch):
            if _past(deadline):
                failed += len(batch) - index
                logger.warning("Vote flush deadline reached; dropping %d votes", len(batch) - index)
                break
            try:
                self.client.submit_vote(self.worldcup_id, record)
                successful += 1
            except DeliveryFailure as e:
                if _collector_unreachable(e):
                    unreachable = True
                    failed += len(batch) - index
                    logger.warning("Dropping %d votes, collector unreachable: %s", len(batch) - index, e)
                    break
                failed += 1
                logger.warning("Dropping vote %s after individual submission failed: %s", record.vote_id, e)
        return {'successful_votes': successful, 'failed_votes': failed, 'unreachable': unreachable}

    def flush_on_lifecycle(self, signal_name: str = PAGE_UNLOADING) -> bool:
        """
        Hand the queued votes off without blocking the caller.

        Returns:
            True if something was sent, False if the queue was already empty
        """
        records = self.accumulator.drain()
        if not records:
            return False

        leftover = []
        for batch in _batches(records, self.max_bulk_votes):
            payload = {
                'votes': [record.to_dict() for record in batch],
                'worldcupId': self.worldcup_id,
                'timestamp': int(time.time() * 1000),
            }
            if self.beacon is not None and self.beacon.send(self.client.bulk_url(self.worldcup_id), payload):
                logger.info("Beaconed %d votes on %s", len(batch), signal_name)
            else:
                leftover.extend(batch)

        if leftover:
            logger.info("Beacon unavailable on %s; sending %d votes in the background", signal_name, len(leftover))
            self._spawn(self._deliver, leftover)
        return True
