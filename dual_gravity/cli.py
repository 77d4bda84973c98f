"""
Command-Line Interface for the Dual Gravity engine
==================================================

Usage:
    python -m dual_gravity.cli <track_id> --p1-target NAME --p2-target NAME [options]

    or, once installed:

    dual-gravity <track_id> --p1-target NAME --p2-target NAME [options]

Options:
    --round, -r         Round number (default: 1)
    --player            Active player: player1 or player2 (default: player1)
    --p1-gravity        Player 1 gravity (default: 0.32)
    --p2-gravity        Player 2 gravity (default: 0.32)
    --played            Comma-separated track ids already played
    --format            Output format: json or simple (default: json)
    --output, -o        Output file path (default: stdout)
    --store             SQLite store path (default: DGS_STORE_PATH)
    --store-stats       Print store genre statistics and exit
    --seed              Random seed for reproducible selections
    --verbose, -v       Verbose logging with progress details

Examples:
    dual-gravity 4uLU6hMCjMI75M1A2tKUQC --p1-target "Metallica" --p2-target "Adele"
    dual-gravity 4uLU6hMCjMI75M1A2tKUQC --p1-target "Metallica" --p2-target "Adele" -r 6 --format simple
    dual-gravity --store-stats
"""

import argparse
import logging
import os
import sys

from .config import DEFAULT_GRAVITY_CONFIG, PLAYER_IDS, STORE_PATH
from .errors import DualGravityError
from .logging_utils import configure_logging
from .pipeline import DualGravityEngine, SelectionOutput
from .store import CatalogStore

logger = logging.getLogger(__name__)


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser for CLI."""
    parser = argparse.ArgumentParser(
        prog='dual-gravity',
        description='Dual Gravity Selection - next-track options for a two-player music game',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s <track_id> --p1-target "Metallica" --p2-target "Adele"
  %(prog)s <track_id> --p1-target "Metallica" --p2-target "Adele" -r 6 --player player2
  %(prog)s --store-stats

Environment Variables:
  SPOTIFY_CLIENT_ID      Your Spotify API client ID
  SPOTIFY_CLIENT_SECRET  Your Spotify API client secret
  DGS_STORE_PATH         SQLite catalog store (default: ~/.cache/dual_gravity)
  DGS_STORE_TTL_DAYS     Days before stored catalog data is refetched (100)
        """
    )

    parser.add_argument(
        'track',
        type=str,
        nargs='?',
        help='Catalog id of the currently playing track'
    )

    parser.add_argument('--p1-target', type=str, default=None, help='Player 1 target artist name')
    parser.add_argument('--p2-target', type=str, default=None, help='Player 2 target artist name')

    parser.add_argument(
        '-r', '--round',
        type=int,
        default=1,
        help='Round number (default: 1)'
    )

    parser.add_argument(
        '--player',
        type=str,
        choices=list(PLAYER_IDS),
        default=PLAYER_IDS[0],
        help='Active player (default: player1)'
    )

    parser.add_argument(
        '--p1-gravity',
        type=float,
        default=DEFAULT_GRAVITY_CONFIG.baseline,
        help=f'Player 1 gravity (default: {DEFAULT_GRAVITY_CONFIG.baseline})'
    )

    parser.add_argument(
        '--p2-gravity',
        type=float,
        default=DEFAULT_GRAVITY_CONFIG.baseline,
        help=f'Player 2 gravity (default: {DEFAULT_GRAVITY_CONFIG.baseline})'
    )

    parser.add_argument(
        '--played',
        type=str,
        default='',
        help='Comma-separated ids of tracks already played this game'
    )

    parser.add_argument(
        '-o', '--output',
        type=str,
        default=None,
        help='Output file path (default: print to stdout)'
    )

    parser.add_argument(
        '--format',
        type=str,
        choices=['json', 'simple'],
        default='json',
        help='Output format (default: json)'
    )

    parser.add_argument(
        '--store',
        type=str,
        default=STORE_PATH,
        help='SQLite store path'
    )

    parser.add_argument(
        '--store-stats',
        action='store_true',
        help='Print genre statistics of the store and exit'
    )

    parser.add_argument('--seed', type=int, default=None, help='Random seed')

    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose output'
    )

    return parser


def build_request(args: argparse.Namespace) -> dict:
    """Stage-1 request for the parsed arguments."""
    played = [t.strip() for t in args.played.split(',') if t.strip()]
    return {
        "playbackState": {"item": {"id": args.track}},
        "roundNumber": args.round,
        "turnNumber": 1,
        "activePlayerId": args.player,
        "playerTargets": {
            "player1": {"name": args.p1_target} if args.p1_target else None,
            "player2": {"name": args.p2_target} if args.p2_target else None,
        },
        "playerGravities": {"player1": args.p1_gravity, "player2": args.p2_gravity},
        "playedTrackIds": played,
    }


def format_output(result: SelectionOutput, fmt: str) -> str:
    """Format selection output based on requested format."""
    if fmt == 'simple':
        gravities = result.updated_gravities
        lines = [
            f"Round phase: {result.exploration_phase['level']} "
            f"(ogDrift={result.exploration_phase['ogDrift']})",
            f"Gravities: player1={gravities['player1']:.3f} player2={gravities['player2']:.3f}",
            "",
            f"{len(result.option_tracks)} options:",
            "-" * 50,
        ]
        for i, option in enumerate(result.option_tracks, 1):
            metrics = option['metrics']
            lines.append(f"{i:2}. [{metrics['selectionCategory']}] {option['track'].get('name')}")
            lines.append(f"    Artist: {option['artist'].get('name')}")
            lines.append(
                f"    Score: {option['finalScore']:.4f} "
                f"(sim={metrics['simScore']:.3f}, A={metrics['aAttraction']:.3f}, B={metrics['bAttraction']:.3f})"
            )
            lines.append(f"    Track ID: {option['track'].get('id')}")
            lines.append("")
        return '\n'.join(lines)

    return result.to_json(indent=2)


def format_store_stats(stats: dict) -> str:
    lines = [
        f"Tracks:  {stats['totalTracks']}",
        f"Artists: {stats['totalArtists']} ({stats['artistsWithoutGenres']} without genres)",
        "Top genres:",
    ]
    lines.extend(f"  {genre:<30} {count}" for genre, count in stats['topGenres'])
    return '\n'.join(lines)


def validate_environment() -> bool:
    """Check if required environment variables are set."""
    client_id = os.environ.get('SPOTIFY_CLIENT_ID') or os.environ.get('SPOTIPY_CLIENT_ID')
    client_secret = os.environ.get('SPOTIFY_CLIENT_SECRET') or os.environ.get('SPOTIPY_CLIENT_SECRET')

    if not client_id or not client_secret:
        print("Error: Spotify API credentials not found!", file=sys.stderr)
        print("", file=sys.stderr)
        print("Please set the following environment variables:", file=sys.stderr)
        print("  SPOTIFY_CLIENT_ID=your_client_id", file=sys.stderr)
        print("  SPOTIFY_CLIENT_SECRET=your_client_secret", file=sys.stderr)
        return False

    return True


def main(argv=None) -> int:
    """Main entry point for CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    configure_logging(level='DEBUG' if args.verbose else 'WARNING')

    if args.store_stats:
        store = CatalogStore(args.store)
        try:
            print(format_store_stats(store.genre_statistics()))
        finally:
            store.close()
        return 0

    if not args.track:
        parser.error('track is required unless --store-stats is given')

    if not validate_environment():
        return 1

    def progress(label: str, pct: int) -> None:
        if args.verbose:
            print(f"[{pct:3d}%] {label}", file=sys.stderr)

    store = CatalogStore(args.store)
    try:
        # The engine drains its background writes into the store on exit
        with DualGravityEngine(store=store, seed=args.seed) as engine:
            result = engine.run_selection(build_request(args), progress=progress)

        output = format_output(result, args.format)

        if args.output:
            with open(args.output, 'w', encoding='utf-8') as f:
                f.write(output)
            print(f"Options saved to: {args.output}", file=sys.stderr)
        else:
            print(output)

        return 0

    except DualGravityError as e:
        logger.error(f"Selection failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        store.close()


if __name__ == '__main__':
    sys.exit(main())
