"""
Flask collector service for World Cup votes and statistics.

The server never stores brackets. It serves the candidate items, counts
votes and keeps per-item aggregates in YAML files.
"""
import os
import re
import yaml
from datetime import datetime
from filelock import FileLock
from flask import Flask, request, jsonify
from worldcup.bracket import get_available_sizes
from worldcup.config import DATA_DIR

app = Flask(__name__)

WORLDCUPS_FILE = os.path.join(DATA_DIR, 'worldcups.yaml')
STATS_DIR = os.path.join(DATA_DIR, 'stats')
MAX_BULK_VOTES = 100
MAX_SEEN_VOTE_IDS = 10000
WORLDCUP_ID_PATTERN = re.compile(r'^[A-Za-z0-9_-]+$')


def load_worldcups() -> list:
    """Load world cup definitions from YAML."""
    if not os.path.exists(WORLDCUPS_FILE):
        return []
    try:
        with open(WORLDCUPS_FILE, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
        return data.get('worldcups', []) if data else []
    except yaml.YAMLError as e:
        app.logger.warning(f'Failed to parse {WORLDCUPS_FILE}: {e}')
        return []


def find_worldcup(worldcup_id: str):
    """Return the world cup with this id, or None."""
    if not WORLDCUP_ID_PATTERN.match(worldcup_id or ''):
        return None
    for worldcup in load_worldcups():
        if str(worldcup.get('id')) == worldcup_id:
            return worldcup
    return None


def _item_ids(worldcup) -> set:
    return {str(item['id']) for item in worldcup.get('items', [])}


def _stats_path(worldcup_id: str) -> str:
    return os.path.join(STATS_DIR, f'{worldcup_id}.yaml')


def _stats_lock(worldcup_id: str) -> FileLock:
    os.makedirs(STATS_DIR, exist_ok=True)
    return FileLock(_stats_path(worldcup_id) + '.lock', timeout=10)


def load_stats(worldcup_id: str) -> dict:
    """Load aggregate statistics for a world cup."""
    path = _stats_path(worldcup_id)
    stats = {'items': {}, 'tournaments_played': 0, 'seen_vote_ids': []}
    if not os.path.exists(path):
        return stats
    with open(path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f)
    if data:
        stats.update(data)
    return stats


def save_stats(worldcup_id: str, stats: dict):
    """Save aggregate statistics for a world cup."""
    os.makedirs(STATS_DIR, exist_ok=True)
    stats['updated'] = datetime.now().isoformat()
    with open(_stats_path(worldcup_id), 'w', encoding='utf-8') as f:
        yaml.dump(stats, f, default_flow_style=False)


def _item_stats(stats: dict, item_id: str) -> dict:
    return stats['items'].setdefault(item_id, {
        'win_count': 0,
        'loss_count': 0,
        'total_appearances': 0,
        'championship_wins': 0,
    })


def validate_vote(vote, item_ids: set):
    """Return an error message for an invalid vote, or None."""
    if not isinstance(vote, dict):
        return 'Vote must be an object'
    winner_id = vote.get('winnerId')
    loser_id = vote.get('loserId')
    if not isinstance(winner_id, str) or not winner_id:
        return 'winnerId is required'
    if winner_id not in item_ids:
        return f'Unknown item {winner_id}'
    if loser_id is not None:
        if not isinstance(loser_id, str) or loser_id not in item_ids:
            return f'Unknown item {loser_id}'
        if loser_id == winner_id:
            return 'winnerId and loserId must differ'
    vote_id = vote.get('voteId')
    if vote_id is not None and not isinstance(vote_id, str):
        return 'voteId must be a string'
    return None


def apply_votes(worldcup_id: str, votes: list) -> tuple:
    """
    Count validated votes into the aggregates.

    Votes whose voteId was already counted are acknowledged without being
    counted again, so a resent vote is harmless.

    Returns (counted, duplicates).
    """
    counted = 0
    duplicates = 0
    with _stats_lock(worldcup_id):
        stats = load_stats(worldcup_id)
        seen = list(stats.get('seen_vote_ids') or [])
        seen_set = set(seen)
        for vote in votes:
            vote_id = vote.get('voteId')
            if vote_id and vote_id in seen_set:
                duplicates += 1
                continue
            winner = _item_stats(stats, vote['winnerId'])
            winner['win_count'] += 1
            winner['total_appearances'] += 1
            if vote.get('loserId'):
                loser = _item_stats(stats, vote['loserId'])
                loser['loss_count'] += 1
                loser['total_appearances'] += 1
            if vote_id:
                seen.append(vote_id)
                seen_set.add(vote_id)
            counted += 1
        stats['seen_vote_ids'] = seen[-MAX_SEEN_VOTE_IDS:]
        save_stats(worldcup_id, stats)
    return counted, duplicates


def _not_found():
    return jsonify({'success': False, 'error': 'WorldCup not found'}), 404


def _bad_request(message):
    return jsonify({'success': False, 'error': message}), 400


@app.route('/api/worldcups', methods=['GET'])
def api_list_worldcups():
    """List available world cups."""
    return jsonify({'worldcups': [
        {'id': str(w['id']), 'title': w.get('title', ''), 'itemCount': len(w.get('items', []))}
        for w in load_worldcups()
    ]})


@app.route('/api/worldcups/<worldcup_id>', methods=['GET'])
def api_get_worldcup(worldcup_id):
    """Items source: ordered candidate items and the bracket sizes they allow."""
    worldcup = find_worldcup(worldcup_id)
    if worldcup is None:
        return _not_found()
    items = worldcup.get('items', [])
    return jsonify({
        'worldcup': {
            'id': str(worldcup['id']),
            'title': worldcup.get('title', ''),
            'description': worldcup.get('description', ''),
            'items': [dict(item, id=str(item['id'])) for item in items],
        },
        'availableSizes': get_available_sizes(len(items)),
    })


@app.route('/api/worldcups/<worldcup_id>/vote', methods=['POST'])
def api_vote(worldcup_id):
    """Record a single vote."""
    worldcup = find_worldcup(worldcup_id)
    if worldcup is None:
        return _not_found()
    vote = request.get_json(silent=True)
    error = validate_vote(vote, _item_ids(worldcup))
    if error:
        return _bad_request(error)

    counted, duplicates = apply_votes(worldcup_id, [vote])
    return jsonify({'success': True, 'counted': counted, 'duplicate': duplicates > 0})


@app.route('/api/worldcups/<worldcup_id>/vote-bulk', methods=['POST'])
def api_vote_bulk(worldcup_id):
    """Record several votes; also receives the lifecycle beacon payload."""
    worldcup = find_worldcup(worldcup_id)
    if worldcup is None:
        return _not_found()
    data = request.get_json(silent=True, force=True)
    if not isinstance(data, dict) or not isinstance(data.get('votes'), list):
        return _bad_request('votes must be a list')
    votes = data['votes']
    if not 1 <= len(votes) <= MAX_BULK_VOTES:
        return _bad_request(f'votes must contain between 1 and {MAX_BULK_VOTES} entries')
    if data.get('worldcupId') and data['worldcupId'] != worldcup_id:
        return _bad_request('worldcupId does not match')

    item_ids = _item_ids(worldcup)
    valid_votes = []
    failed = 0
    for vote in votes:
        error = validate_vote(vote, item_ids)
        if error:
            app.logger.warning(f'Rejected vote for {worldcup_id}: {error}')
            failed += 1
        else:
            valid_votes.append(vote)

    counted, duplicates = (0, 0)
    if valid_votes:
        counted, duplicates = apply_votes(worldcup_id, valid_votes)
    app.logger.info(f'Bulk votes for {worldcup_id}: {counted} counted, {duplicates} duplicate, {failed} rejected')
    return jsonify({
        'success': True,
        'successfulVotes': counted + duplicates,
        'failedVotes': failed,
    })


@app.route('/api/worldcups/<worldcup_id>/stats', methods=['GET'])
def api_get_stats(worldcup_id):
    """Statistics reader: per-item win/loss counts and win rates."""
    worldcup = find_worldcup(worldcup_id)
    if worldcup is None:
        return _not_found()
    stats = load_stats(worldcup_id)
    items = {}
    for item_id, counts in stats['items'].items():
        played = counts.get('win_count', 0) + counts.get('loss_count', 0)
        items[item_id] = dict(counts, win_rate=(counts.get('win_count', 0) / played * 100) if played else 0.0)
    return jsonify({
        'worldcupId': worldcup_id,
        'tournamentsPlayed': stats.get('tournaments_played', 0),
        'items': items,
    })


@app.route('/api/worldcups/<worldcup_id>/stats', methods=['POST'])
def api_update_stats(worldcup_id):
    """Record a finished tournament: champion and play count."""
    worldcup = find_worldcup(worldcup_id)
    if worldcup is None:
        return _not_found()
    data = request.get_json(silent=True)
    if not isinstance(data, dict) or not isinstance(data.get('matches'), list) or not isinstance(data.get('winner'), dict):
        return _bad_request('Missing required fields')
    winner_id = str(data['winner'].get('id', ''))
    if winner_id not in _item_ids(worldcup):
        return _bad_request(f'Unknown item {winner_id}')

    with _stats_lock(worldcup_id):
        stats = load_stats(worldcup_id)
        _item_stats(stats, winner_id)['championship_wins'] += 1
        stats['tournaments_played'] = stats.get('tournaments_played', 0) + 1
        save_stats(worldcup_id, stats)

    app.logger.info(f'Tournament finished for {worldcup_id}: winner {winner_id}, {len(data["matches"])} matches')
    return jsonify({'success': True})


if __name__ == '__main__':
    app.run(debug=True, port=5000)
