"""
Spotify API Client Wrapper
==========================

Tier 3 of every lookup: the external catalog. Handles:
- Authentication (client credentials)
- Artist, related-artist, top-track and track metadata
- Artist and genre search
- Request throttling and retry with backoff

Failures surface as exceptions; the engine decides per call whether an
artist or track is dropped.
"""

import os
import threading
import time
import logging
from typing import List, Dict, Optional, Callable, Any

import requests
import spotipy
from spotipy.oauth2 import SpotifyClientCredentials

from .config import (
    SPOTIFY_CLIENT_ID,
    SPOTIFY_CLIENT_SECRET,
    SPOTIFY_MARKET,
    MIN_REQUEST_INTERVAL,
)
from .errors import RateLimitError, ServerError, NetworkError
from .retry_helper import retry_with_backoff
from .utils import chunked

logger = logging.getLogger(__name__)


def _translate(e: Exception) -> Exception:
    """Map transport errors onto the retryable family; anything else is returned as is."""
    if isinstance(e, spotipy.SpotifyException):
        if e.http_status == 429:
            headers = e.headers or {}
            retry_after = float(headers.get("Retry-After", 0) or 0)
            return RateLimitError(str(e), retry_after=retry_after)
        if e.http_status is not None and e.http_status >= 500:
            return ServerError(str(e))
        return e
    if isinstance(e, requests.exceptions.RequestException):
        return NetworkError(str(e))
    return e


class SpotifyClient:
    """
    Wrapper around Spotipy with throttling and retrying batch operations.

    Attributes:
        sp: Spotipy client instance
        market: Market used for playability of top tracks
    """

    def __init__(
        self,
        sp: Optional[spotipy.Spotify] = None,
        market: str = SPOTIFY_MARKET,
        requests_timeout: float = 5.0,
    ):
        """
        Initialize Spotify client with credentials.

        Args:
            sp: Pre-built Spotipy client (built from env credentials if None)
            market: Market country code
            requests_timeout: Per-request timeout in seconds
        """
        if sp is None:
            # Read credentials at runtime (not import time)
            client_id = os.environ.get("SPOTIFY_CLIENT_ID") or os.environ.get("SPOTIPY_CLIENT_ID") or SPOTIFY_CLIENT_ID
            client_secret = os.environ.get("SPOTIFY_CLIENT_SECRET") or os.environ.get("SPOTIPY_CLIENT_SECRET") or SPOTIFY_CLIENT_SECRET
            auth_manager = SpotifyClientCredentials(
                client_id=client_id,
                client_secret=client_secret,
            )
            # Retries are ours; spotipy's would sleep through the request deadline
            sp = spotipy.Spotify(
                auth_manager=auth_manager,
                requests_timeout=requests_timeout,
                retries=0,
                status_retries=0,
            )
        self.sp = sp
        self.market = market

        self._throttle_lock = threading.Lock()
        self._last_request_time = 0.0
        self._min_request_interval = MIN_REQUEST_INTERVAL
        self.api_calls = 0

    def _throttle(self):
        """Ensure minimum time between requests."""
        with self._throttle_lock:
            elapsed = time.time() - self._last_request_time
            if elapsed < self._min_request_interval:
                time.sleep(self._min_request_interval - elapsed)
            self._last_request_time = time.time()

    @retry_with_backoff(max_retries=2)
    def _call(self, func: Callable, *args, **kwargs) -> Any:
        self._throttle()
        self.api_calls += 1
        try:
            return func(*args, **kwargs)
        except (spotipy.SpotifyException, requests.exceptions.RequestException) as e:
            translated = _translate(e)
            if translated is e:
                raise
            raise translated from e

    # =========================================================================
    # ARTIST OPERATIONS
    # =========================================================================

    def get_artists(self, artist_ids: List[str]) -> List[Dict]:
        """
        Fetch artist metadata in batches.

        Args:
            artist_ids: List of Spotify artist IDs

        Returns:
            List of artist metadata dictionaries
        """
        artist_ids = list(dict.fromkeys(a for a in artist_ids if a))
        artists = []
        # Spotify API limit: 50 artists per request
        for batch in chunked(artist_ids, 50):
            result = self._call(self.sp.artists, batch)
            artists.extend(a for a in result.get("artists", []) if a)
        return artists

    def get_related_artists(self, artist_id: str) -> List[Dict]:
        """
        Fetch related artists for a given artist.

        Args:
            artist_id: Spotify artist ID

        Returns:
            List of related artist dictionaries
        """
        result = self._call(self.sp.artist_related_artists, artist_id)
        return result.get("artists", [])

    def get_artist_top_tracks(self, artist_id: str) -> List[Dict]:
        """
        Fetch top tracks for an artist in the client's market.

        Args:
            artist_id: Spotify artist ID

        Returns:
            List of top track dictionaries, catalog rank order
        """
        result = self._call(self.sp.artist_top_tracks, artist_id, country=self.market)
        return result.get("tracks", [])

    # =========================================================================
    # TRACK OPERATIONS
    # =========================================================================

    def get_track(self, track_id: str) -> Optional[Dict]:
        """
        Fetch one track.

        Args:
            track_id: Spotify track ID

        Returns:
            Track dictionary, or None if the catalog has no such track
        """
        try:
            return self._call(self.sp.track, track_id, market=self.market)
        except spotipy.SpotifyException as e:
            if e.http_status in (400, 404):
                return None
            raise

    # =========================================================================
    # SEARCH OPERATIONS
    # =========================================================================

    def search_artists(self, name: str, limit: int = 5) -> List[Dict]:
        """
        Search artists by name.

        Args:
            name: Artist name as typed
            limit: Maximum results

        Returns:
            List of artist dictionaries, most relevant first
        """
        result = self._call(self.sp.search, q=name, type="artist", limit=min(limit, 50))
        return result.get("artists", {}).get("items", [])

    def search_tracks_by_genre(self, genre: str, limit: int = 50) -> List[Dict]:
        """
        Search for tracks by genre.

        Args:
            genre: Genre name to search
            limit: Maximum tracks to return

        Returns:
            List of track dictionaries
        """
        result = self._call(
            self.sp.search,
            q=f'genre:"{genre}"',
            type="track",
            limit=min(limit, 50),
            market=self.market,
        )
        return result.get("tracks", {}).get("items", [])
