"""
Single elimination bracket engine for world cup play.

Bracket state is plain data (dicts and lists) and every transform returns a
new tournament dict, so a caller can keep the previous reference around.
"""
import logging
import math
import random
import time
from typing import List, Dict, Optional

from .errors import InvalidTournamentSize, NoActiveMatch
from .models import Item, VoteRecord

logger = logging.getLogger(__name__)

BYE = 'BYE'
MAX_BRACKET_SIZE = 1024
SUPPORTED_SIZES = [2 ** exp for exp in range(1, int(math.log2(MAX_BRACKET_SIZE)) + 1)]


def get_size_label(size: int) -> str:
    """Get the display name of a bracket size, by the number of entrants."""
    if size == 2:
        return "Final"
    elif size == 4:
        return "Semifinal"
    elif size == 8:
        return "Quarterfinal"
    else:
        return f"Round of {size}"


def get_round_name(round_number: int, total_rounds: int) -> str:
    """Get the name of a round from its distance to the final."""
    remaining = total_rounds - round_number
    if remaining == 0:
        return "Final"
    elif remaining == 1:
        return "Semifinal"
    elif remaining == 2:
        return "Quarterfinal"
    else:
        return f"Round {round_number}"


def calculate_bracket_size(num_items: int) -> int:
    """Calculate the bracket size (next power of 2)."""
    if num_items <= 0:
        return 0
    return max(2, 2 ** math.ceil(math.log2(num_items)))


def calculate_byes(num_items: int, size: Optional[int] = None) -> int:
    """Calculate number of byes needed to fill a bracket of the given size."""
    if size is None:
        size = calculate_bracket_size(num_items)
    return max(0, size - num_items)


def get_available_sizes(num_items: int) -> List[Dict]:
    """
    List the bracket sizes a player can pick for a world cup, largest first.

    Sizes go up to the next power of two that holds every item; smaller
    sizes play a subset of the items.
    """
    max_size = min(calculate_bracket_size(num_items), MAX_BRACKET_SIZE)
    sizes = []
    for size in reversed(SUPPORTED_SIZES):
        if size <= max_size:
            sizes.append({
                'size': size,
                'name': get_size_label(size),
                'byes': calculate_byes(num_items, size),
            })
    return sizes


def seed_items(items: List[Item], rng: Optional[random.Random] = None) -> List[Item]:
    """Return a shuffled copy of the items, to be used as seed order."""
    rng = rng or random.Random()
    seeded = list(items)
    rng.shuffle(seeded)
    return seeded


def _generate_bracket_order(bracket_size: int) -> List[int]:
    """
    Generate the standard tournament bracket order.
    This ensures that if all higher seeds win, they meet in the proper rounds.

    For 8 items: [1, 8, 4, 5, 2, 7, 3, 6]
    This gives matchups: 1v8, 4v5, 2v7, 3v6
    Missing seeds are byes, so they land against the top seeds first.
    """
    if bracket_size == 2:
        return [1, 2]

    half_size = bracket_size // 2
    upper_half = _generate_bracket_order(half_size)

    # Create lower half as complement
    lower_half = [bracket_size + 1 - seed for seed in upper_half]

    result = []
    for u, l in zip(upper_half, lower_half):
        result.extend([u, l])

    return result


def _new_match(round_number: int, match_number: int, item_a=None, item_b=None) -> Dict:
    return {
        'id': f"match-{round_number}-{match_number}",
        'round': round_number,
        'match_number': match_number,
        'item_a': item_a,
        'item_b': item_b,
        'winner': None,
        'is_completed': False,
        'is_bye': False,
    }


def _match_key(match: Dict):
    return (match['round'], match['match_number'])


def _is_populated(match: Dict) -> bool:
    return match['item_a'] is not None and match['item_b'] is not None


def _find_match(matches: List[Dict], round_number: int, match_number: int) -> Optional[Dict]:
    for match in matches:
        if match['round'] == round_number and match['match_number'] == match_number:
            return match
    return None


def _promotion_target(match: Dict):
    """Round, match number and slot the winner of this match moves into."""
    slot = 'item_a' if match['match_number'] % 2 == 1 else 'item_b'
    return match['round'] + 1, (match['match_number'] + 1) // 2, slot


def _settle_bye(matches: List[Dict], match: Dict, total_rounds: int):
    """Resolve a populated match that has a bye slot, then promote its winner."""
    if match['is_completed'] or not _is_populated(match):
        return
    item_a, item_b = match['item_a'], match['item_b']
    if item_a != BYE and item_b != BYE:
        return
    winner = item_b if item_a == BYE else item_a
    match['winner'] = winner
    match['is_completed'] = True
    match['is_bye'] = True
    if winner != BYE:
        logger.debug("Auto-advancing %s past a bye in %s", winner.title, match['id'])
    _promote(matches, match, total_rounds)


def _promote(matches: List[Dict], match: Dict, total_rounds: int):
    """Move a completed match's winner into the next round, creating that match lazily."""
    if match['round'] >= total_rounds:
        return
    next_round, next_number, slot = _promotion_target(match)
    next_match = _find_match(matches, next_round, next_number)
    if next_match is None:
        next_match = _new_match(next_round, next_number)
        matches.append(next_match)
        matches.sort(key=_match_key)
    next_match[slot] = match['winner']
    _settle_bye(matches, next_match, total_rounds)


def _retract(matches: List[Dict], match: Dict, total_rounds: int):
    """Undo the promotion of a match whose result was just cleared."""
    if match['round'] >= total_rounds:
        return
    next_round, next_number, slot = _promotion_target(match)
    next_match = _find_match(matches, next_round, next_number)
    if next_match is None:
        return
    next_match[slot] = None
    if next_match['is_completed'] and next_match['is_bye']:
        # It was only resolved because this slot arrived
        next_match['winner'] = None
        next_match['is_completed'] = False
        next_match['is_bye'] = False
        _retract(matches, next_match, total_rounds)
    other_slot = 'item_b' if slot == 'item_a' else 'item_a'
    if next_match[other_slot] is None:
        matches.remove(next_match)


def _refresh(tournament: Dict) -> Dict:
    """Recompute the derived fields (current round, winner, completion)."""
    total_rounds = tournament['total_rounds']
    final = _find_match(tournament['matches'], total_rounds, 1)
    if final is not None and final['is_completed']:
        tournament['winner'] = final['winner']
        tournament['is_completed'] = True
        tournament['current_round'] = total_rounds
    else:
        tournament['winner'] = None
        tournament['is_completed'] = False
        current = get_current_match(tournament)
        tournament['current_round'] = current['round'] if current else 1
    return tournament


def _copy_tournament(tournament: Dict) -> Dict:
    copied = dict(tournament)
    copied['items'] = list(tournament['items'])
    copied['matches'] = [dict(match) for match in tournament['matches']]
    return copied


def build_tournament(items: List[Item], size: int, title: Optional[str] = None,
                     tournament_id: Optional[str] = None) -> Dict:
    """
    Build a tournament and its round-1 matches.

    Items are seeded in the order given; callers shuffle first when they want
    random seeding. Extra items beyond the bracket size are dropped, missing
    ones are byes, which are resolved immediately.

    Raises:
        InvalidTournamentSize: size is not a supported power of two, or no items.
    """
    if size not in SUPPORTED_SIZES:
        raise InvalidTournamentSize(f"Unsupported bracket size: {size}")
    if not items:
        raise InvalidTournamentSize("Cannot build a bracket without items")

    entrants = list(items)[:size]
    seed_to_item = {seed: item for seed, item in enumerate(entrants, start=1)}
    bracket_order = _generate_bracket_order(size)
    total_rounds = int(math.log2(size))

    matches = []
    for i in range(0, len(bracket_order), 2):
        matches.append(_new_match(
            1,
            i // 2 + 1,
            seed_to_item.get(bracket_order[i], BYE),
            seed_to_item.get(bracket_order[i + 1], BYE),
        ))

    for match in list(matches):
        if match['round'] == 1:
            _settle_bye(matches, match, total_rounds)

    tournament = {
        'id': tournament_id or f"tournament-{int(time.time() * 1000)}",
        'title': title or 'Tournament',
        'size': size,
        'items': entrants,
        'matches': matches,
        'current_round': 1,
        'total_rounds': total_rounds,
        'winner': None,
        'is_completed': False,
    }
    return _refresh(tournament)


def get_current_match(tournament: Dict) -> Optional[Dict]:
    """Return the first incomplete, fully populated match, or None."""
    for match in sorted(tournament['matches'], key=_match_key):
        if not match['is_completed'] and _is_populated(match):
            return match
    return None


def count_bracket_matches(tournament: Dict) -> int:
    """
    Count the bracket's matches: those created so far plus the positions
    still waiting for their match to be created.

    A well-formed bracket always gives size - 1; a duplicated or
    out-of-range match makes the count larger.
    """
    created = {_match_key(match) for match in tournament['matches']}
    pending = 0
    matches_in_round = tournament['size'] // 2
    for round_number in range(1, tournament['total_rounds'] + 1):
        for match_number in range(1, matches_in_round + 1):
            if (round_number, match_number) not in created:
                pending += 1
        matches_in_round //= 2
    return len(tournament['matches']) + pending


def count_decided_matches(tournament: Dict) -> int:
    """Count matches resolved by a player decision (byes excluded)."""
    return sum(1 for m in tournament['matches'] if m['is_completed'] and not m['is_bye'])


def get_tournament_progress(tournament: Dict) -> Dict:
    """
    Progress through the bracket.

    Bye matches count as completed positions, so the percentage only grows
    as decisions are made and reaches exactly 100 on completion.
    """
    total_matches = tournament['size'] - 1
    completed_matches = sum(1 for m in tournament['matches'] if m['is_completed'])
    if tournament['is_completed']:
        current_match_index = total_matches
    else:
        current_match_index = min(completed_matches + 1, total_matches)

    return {
        'current_round': tournament['current_round'],
        'total_rounds': tournament['total_rounds'],
        'current_match_index': current_match_index,
        'total_matches': total_matches,
        'completed_matches': completed_matches,
        'percentage': completed_matches / total_matches * 100,
    }


def select_winner(tournament: Dict, winner: Item, accumulator=None) -> Dict:
    """
    Record the winner of the current match and advance it.

    Args:
        tournament: Current bracket state (left untouched)
        winner: One of the two items of the current match
        accumulator: Optional vote queue receiving the decision's VoteRecord

    Returns:
        New tournament state

    Raises:
        NoActiveMatch: the tournament has no playable match
    """
    current = get_current_match(tournament)
    if current is None:
        raise NoActiveMatch(f"No playable match in {tournament['id']}")
    if winner != current['item_a'] and winner != current['item_b']:
        raise ValueError(f"{winner!r} is not playing in {current['id']}")

    updated = _copy_tournament(tournament)
    matches = updated['matches']
    match = _find_match(matches, current['round'], current['match_number'])
    loser = match['item_b'] if winner == match['item_a'] else match['item_a']

    match['winner'] = winner
    match['is_completed'] = True
    _promote(matches, match, updated['total_rounds'])
    _refresh(updated)

    if accumulator is not None:
        loser_id = loser.id if isinstance(loser, Item) else None
        accumulator.append(VoteRecord(winner.id, loser_id))

    return updated


def can_undo(tournament: Dict) -> bool:
    """True if at least one match was decided by the player."""
    return count_decided_matches(tournament) > 0


def undo_last_match(tournament: Dict, accumulator=None) -> Optional[Dict]:
    """
    Reverse the most recent decision.

    Decisions are always made in (round, match_number) order, so the most
    recent one is the highest decided match. Next-round matches that only
    existed because of it are removed, bye resolutions it triggered are
    reopened, and its vote is taken back out of the accumulator.

    Returns:
        New tournament state, or None when nothing has been decided
    """
    decided = [m for m in tournament['matches'] if m['is_completed'] and not m['is_bye']]
    if not decided:
        return None
    last = max(decided, key=_match_key)

    updated = _copy_tournament(tournament)
    matches = updated['matches']
    match = _find_match(matches, last['round'], last['match_number'])
    winner = match['winner']

    match['winner'] = None
    match['is_completed'] = False
    _retract(matches, match, updated['total_rounds'])
    _refresh(updated)

    if accumulator is not None:
        accumulator.remove_last(winner.id)

    return updated


def match_to_dict(match: Dict) -> Dict:
    """Wire form of a match, as sent with the statistics update."""
    def _side(value):
        if value is None:
            return None
        if value == BYE:
            return {'id': BYE, 'title': BYE, 'isBye': True}
        return value.to_dict()

    return {
        'id': match['id'],
        'round': match['round'],
        'matchNumber': match['match_number'],
        'itemA': _side(match['item_a']),
        'itemB': _side(match['item_b']),
        'winner': _side(match['winner']),
        'isCompleted': match['is_completed'],
        'isBye': match['is_bye'],
    }
