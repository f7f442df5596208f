# Terminal client: play a world cup against the collector service

import argparse
import logging
import random
import signal
import sys

import requests
import yaml

from worldcup.bracket import BYE, get_available_sizes
from worldcup.config import load_settings
from worldcup.delivery import ThreadedBeacon, VoteClient
from worldcup.models import Item
from worldcup.session import PlaySession

logger = logging.getLogger('worldcup')

HELP = "[1] left  [2] right  [z] undo  [r] restart  [h] hide  [q] quit"


def load_items_file(file_path, worldcup_id):
    """Read a world cup's title and items from a worldcups.yaml style file."""
    with open(file_path, mode='r', encoding='utf-8') as file:
        data = yaml.safe_load(file) or {}
    for worldcup in data.get('worldcups', []):
        if str(worldcup.get('id')) == worldcup_id:
            return worldcup.get('title', worldcup_id), [Item.from_dict(item) for item in worldcup.get('items', [])]
    raise KeyError(f"World cup {worldcup_id} not found in {file_path}")


def _side_title(value):
    return 'BYE' if value == BYE else value.title


def print_match(session):
    match = session.current_match
    progress = session.progress
    print(f"\n{session.round_name} - match {progress['current_match_index']}/{progress['total_matches']}"
          f" ({progress['percentage']:.0f}%)")
    print(f"  [1] {_side_title(match['item_a'])}")
    print(f"  [2] {_side_title(match['item_b'])}")


def print_result(session):
    winner = session.tournament['winner']
    print(f"\nWinner: {winner.title}")
    report = session.last_report or {}
    print(f"Votes delivered: {report.get('successful_votes', 0)}, dropped: {report.get('failed_votes', 0)}")
    print(f"Results: {session.result_url}")


def play_interactive(session, read=input):
    print(HELP)
    while not session.is_completed:
        print_match(session)
        try:
            command = read('> ').strip().lower()
        except EOFError:
            command = 'q'
        match = session.current_match
        if command in ('1', '2'):
            chosen = match['item_a'] if command == '1' else match['item_b']
            session.choose(chosen.id)
            if session.vote_stats and session.vote_stats['total_votes']:
                print(f"  Others chose: {session.vote_stats['left_percentage']:.0f}% / "
                      f"{session.vote_stats['right_percentage']:.0f}%")
        elif command == 'z':
            if not session.undo():
                print("Nothing to undo.")
        elif command == 'r':
            session.restart()
        elif command == 'h':
            session.hide()
        elif command == 'q':
            return False
        else:
            print(HELP)
    return True


def play_auto(session, rng):
    while not session.is_completed:
        match = session.current_match
        session.choose(rng.choice([match['item_a'], match['item_b']]).id)
    return True


def make_terminate_handler(session, beacon, wait_seconds):
    """SIGTERM/SIGHUP: send queued votes on their way, then exit."""
    def _terminate(signum, frame):
        session.close()
        beacon.wait(wait_seconds)
        sys.exit(128 + signum)
    return _terminate


def main(argv=None):
    parser = argparse.ArgumentParser(description='Play a world cup tournament in the terminal')
    parser.add_argument('worldcup_id', help='World cup to play')
    parser.add_argument('--size', type=int, help='Bracket size (power of two)')
    parser.add_argument('--items', help='Read items from a worldcups.yaml file instead of the collector')
    parser.add_argument('--api', help='Collector base URL')
    parser.add_argument('--auto', action='store_true', help='Pick winners at random')
    parser.add_argument('--seed', type=int, help='Random seed for seeding and --auto')
    parser.add_argument('--config', help='Settings YAML file')
    parser.add_argument('--verbose', action='store_true')
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    settings = load_settings(args.config)
    if args.api:
        settings['api_base_url'] = args.api
    client = VoteClient(settings['api_base_url'], timeout=settings['http_timeout_seconds'])

    try:
        if args.items:
            title, items = load_items_file(args.items, args.worldcup_id)
        else:
            worldcup = client.fetch_worldcup(args.worldcup_id)
            title, items = worldcup['title'], worldcup['items']
    except (OSError, KeyError, requests.RequestException) as e:
        print(f"Could not load world cup {args.worldcup_id}: {e}", file=sys.stderr)
        return 1

    if not items:
        print(f"World cup {args.worldcup_id} has no items.", file=sys.stderr)
        return 1

    sizes = [option['size'] for option in get_available_sizes(len(items))]
    if args.size is not None and args.size not in sizes:
        print(f"Size must be one of {sizes}", file=sys.stderr)
        return 1

    rng = random.Random(args.seed)
    beacon = ThreadedBeacon(timeout=settings['beacon_timeout_seconds'], max_bytes=settings['beacon_max_bytes'])
    session = PlaySession(
        args.worldcup_id, items, client,
        size=args.size, title=title, settings=settings, beacon=beacon, rng=rng,
    )

    _terminate = make_terminate_handler(session, beacon, settings['beacon_timeout_seconds'])
    signal.signal(signal.SIGTERM, _terminate)
    if hasattr(signal, 'SIGHUP'):
        signal.signal(signal.SIGHUP, _terminate)

    print(f"--- {title}: {len(items)} items, bracket of {session.size} ---")
    try:
        finished = play_auto(session, rng) if args.auto else play_interactive(session)
    except KeyboardInterrupt:
        finished = False

    if finished:
        print_result(session)
    session.close()
    beacon.wait(settings['beacon_timeout_seconds'])
    return 0


if __name__ == '__main__':
    sys.exit(main())
