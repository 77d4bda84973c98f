"""
Artist Profile Cache/Resolver
=============================

Three-tier lookup for catalog data:

    1. process-local TTL cache     (~5 min)
    2. durable store               (SQLite)
    3. catalog API                 (last resort)

Everything fetched from the API is written back to the store in the
background, so the next request is a tier-1/2 hit. Profiles missing genres or
popularity get a background backfill; a request never waits on enrichment.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Sequence

import spotipy

from .backfill import Backfiller
from .cache import TTLCache
from .errors import RetryableError
from .models import ArtistProfile, TargetArtist, TargetProfile
from .stats import ApiStatisticsTracker
from .utils import Deadline, is_valid_spotify_id, normalize_name

logger = logging.getLogger(__name__)

# Errors that cost one artist or track, never the request
CATALOG_ERRORS = (RetryableError, spotipy.SpotifyException)


class ArtistResolver:
    """
    Resolves artist profiles, related artists and top tracks across tiers.

    Attributes:
        catalog: Catalog API client (SpotifyClient or a test double)
        store: Durable CatalogStore
        cache: Shared TTLCache
        backfiller: Background write-back/backfill scheduler
    """

    def __init__(self, catalog, store, cache: TTLCache, backfiller: Backfiller, max_workers: int = 4):
        self.catalog = catalog
        self.store = store
        self.cache = cache
        self.backfiller = backfiller
        self.max_workers = max_workers

    # =========================================================================
    # ARTIST PROFILES
    # =========================================================================

    def get_profiles(
        self,
        artist_ids: Sequence[str],
        stats: ApiStatisticsTracker,
        deadline: Optional[Deadline] = None,
    ) -> Dict[str, ArtistProfile]:
        """
        Bulk profile lookup, memory then store then catalog.

        Ids that are not valid catalog ids, or that fail at the catalog, are
        absent from the result.
        """
        deadline = deadline or Deadline.unbounded()
        ids = [a for a in dict.fromkeys(artist_ids) if is_valid_spotify_id(a)]
        if not ids:
            return {}
        stats.record_request("artistProfiles", len(ids))

        profiles: Dict[str, ArtistProfile] = {}
        for key, profile in self.cache.get_many(("artist", a) for a in ids).items():
            profiles[key[1]] = profile
        if profiles:
            stats.record_cache_hit("artistProfiles", "memory", len(profiles))

        missing = [a for a in ids if a not in profiles]
        if missing:
            stored = self.store.get_artist_profiles(missing)
            for artist_id, profile in stored.items():
                profiles[artist_id] = profile
                self.cache.set(("artist", artist_id), profile)
            if stored:
                stats.record_cache_hit("artistProfiles", "database", len(stored))

        missing = [a for a in ids if a not in profiles]
        if missing:
            deadline.check_cancelled()
            if deadline.expired:
                logger.warning(f"Deadline passed, skipping catalog fetch of {len(missing)} artist profiles")
            else:
                for profile in self._fetch_profiles(missing, stats):
                    profiles[profile.id] = profile

        for profile in profiles.values():
            if profile.needs_backfill:
                self.backfiller.request_genre_backfill(profile)

        return profiles

    def _fetch_profiles(self, artist_ids: List[str], stats: ApiStatisticsTracker) -> List[ArtistProfile]:
        try:
            with stats.timed_call("artistProfiles"):
                raw = self.catalog.get_artists(artist_ids)
        except CATALOG_ERRORS as e:
            logger.warning(f"Catalog profile fetch failed for {len(artist_ids)} artists: {e}")
            return []
        fetched = [ArtistProfile.from_spotify(a) for a in raw if a and a.get("id")]
        stats.record_from_spotify("artistProfiles", len(fetched))
        for profile in fetched:
            self.cache.set(("artist", profile.id), profile)
        self.backfiller.write_profiles(fetched)
        return fetched

    def _find_name_locally(self, name: str, stats: ApiStatisticsTracker) -> Optional[ArtistProfile]:
        stats.record_request("artistSearches")
        key = ("artist_name", normalize_name(name))
        cached = self.cache.get(key)
        if cached is not None:
            stats.record_cache_hit("artistSearches", "memory")
            return cached

        stored = self.store.find_artist_by_name(name)
        if stored is not None:
            stats.record_cache_hit("artistSearches", "database")
            self.cache.set(key, stored)
        return stored

    def _search_name(self, name: str, stats: ApiStatisticsTracker) -> Optional[ArtistProfile]:
        try:
            with stats.timed_call("artistSearches"):
                results = self.catalog.search_artists(name, limit=5)
        except CATALOG_ERRORS as e:
            logger.warning(f"Artist search failed for '{name}': {e}")
            return None
        stats.record_from_spotify("artistSearches", len(results))

        if not results:
            logger.warning(f"No catalog match for artist '{name}'")
            return None

        wanted = normalize_name(name)
        match = next((r for r in results if normalize_name(r.get("name")) == wanted), None)
        if match is None:
            match = results[0]
            logger.warning(f"No exact match for '{name}', using closest match '{match.get('name')}'")

        profile = ArtistProfile.from_spotify(match)
        self.cache.set(("artist", profile.id), profile)
        self.cache.set(("artist_name", wanted), profile)
        self.backfiller.write_profiles([profile])
        if profile.needs_backfill:
            self.backfiller.request_genre_backfill(profile)
        return profile

    def resolve_by_name(
        self,
        name: str,
        stats: ApiStatisticsTracker,
        deadline: Optional[Deadline] = None,
    ) -> Optional[ArtistProfile]:
        """
        Resolve an artist from its name alone.

        Store first (case-insensitive), then catalog search preferring an
        exact case-insensitive name match over the top result. Returns None
        when nothing matches, the catalog is unreachable or the deadline has
        passed before the search.
        """
        if not name or not name.strip():
            return None
        local = self._find_name_locally(name, stats)
        if local is not None:
            return local

        deadline = deadline or Deadline.unbounded()
        deadline.check_cancelled()
        if deadline.expired:
            logger.warning(f"Deadline passed, skipping catalog search for '{name}'")
            return None
        return self._search_name(name, stats)

    def resolve_names(
        self,
        names: Sequence[str],
        stats: ApiStatisticsTracker,
        deadline: Optional[Deadline] = None,
        max_api_searches: int = 5,
    ) -> Dict[str, ArtistProfile]:
        """
        Resolve many artist names, keyed by normalized name.

        Names are deduplicated first. Every name is tried against cache and
        store; at most max_api_searches of the rest are searched in the
        catalog, in parallel, and none once the deadline has passed.
        """
        deadline = deadline or Deadline.unbounded()
        originals: Dict[str, str] = {}
        for name in names:
            if name and name.strip():
                originals.setdefault(normalize_name(name), name)

        found: Dict[str, ArtistProfile] = {}
        for key, name in originals.items():
            profile = self._find_name_locally(name, stats)
            if profile is not None:
                found[key] = profile

        missing = [key for key in originals if key not in found]
        if not missing:
            return found

        deadline.check_cancelled()
        if deadline.expired:
            logger.warning(f"Deadline passed, skipping catalog search for {len(missing)} artist names")
            return found

        to_search = missing[:max(0, max_api_searches)]
        if len(missing) > len(to_search):
            logger.debug(f"Capping catalog name searches at {len(to_search)} of {len(missing)}")
        if not to_search:
            return found

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(to_search))) as pool:
            results = list(pool.map(lambda k: (k, self._search_name(originals[k], stats)), to_search))
        for key, profile in results:
            if profile is not None:
                found[key] = profile
        return found

    def resolve_target(
        self,
        target: Optional[TargetArtist],
        stats: ApiStatisticsTracker,
        deadline: Optional[Deadline] = None,
    ) -> Optional[TargetProfile]:
        """Resolve a player's target; None means the target is unresolved."""
        if target is None or not target.name:
            return None

        if target.id and not is_valid_spotify_id(target.id):
            logger.warning(f"Invalid catalog id for target '{target.name}' ({target.id}), searching by name")
        elif target.id:
            profile = self.get_profiles([target.id], stats, deadline).get(target.id)
            if profile is not None:
                return TargetProfile.from_profile(target, profile)
            logger.warning(f"Target id {target.id} not found, searching by name '{target.name}'")

        profile = self.resolve_by_name(target.name, stats, deadline)
        if profile is None:
            logger.warning(f"Target unresolved: '{target.name}'")
            return None
        return TargetProfile.from_profile(target, profile)

    def resolve_targets(
        self,
        targets: Dict[str, Optional[TargetArtist]],
        stats: ApiStatisticsTracker,
        deadline: Optional[Deadline] = None,
    ) -> Dict[str, Optional[TargetProfile]]:
        """Resolve both players' targets in parallel."""
        with ThreadPoolExecutor(max_workers=max(1, len(targets))) as pool:
            futures = {
                player_id: pool.submit(self.resolve_target, target, stats, deadline)
                for player_id, target in targets.items()
            }
            resolved = {player_id: future.result() for player_id, future in futures.items()}
        count = sum(1 for p in resolved.values() if p is not None)
        logger.info(f"Target resolution complete: {count}/{len(resolved)} resolved")
        return resolved

    # =========================================================================
    # RELATED ARTISTS AND TOP TRACKS
    # =========================================================================

    def get_related_artists(self, artist_id: str, stats: ApiStatisticsTracker) -> List[Dict]:
        """Related artists as [{id, name}], memory then store then catalog; [] on failure."""
        stats.record_request("relatedArtists")
        cached = self.cache.get(("related", artist_id))
        if cached is not None:
            stats.record_cache_hit("relatedArtists", "memory")
            return cached

        stored = self.store.get_related_artists(artist_id)
        if stored is not None:
            stats.record_cache_hit("relatedArtists", "database")
            self.cache.set(("related", artist_id), stored)
            return stored

        try:
            with stats.timed_call("relatedArtists"):
                raw = self.catalog.get_related_artists(artist_id)
        except CATALOG_ERRORS as e:
            logger.warning(f"Related artists unavailable for {artist_id}: {e}")
            return []
        stats.record_from_spotify("relatedArtists", len(raw))

        profiles = [ArtistProfile.from_spotify(a) for a in raw if a and a.get("id")]
        for profile in profiles:
            self.cache.set(("artist", profile.id), profile)
        self.backfiller.write_profiles(profiles)

        related = [{"id": p.id, "name": p.name} for p in profiles]
        self.cache.set(("related", artist_id), related)
        self.backfiller.write_related_artists(artist_id, related)
        return related

    def get_top_tracks(
        self,
        artist_ids: Sequence[str],
        stats: ApiStatisticsTracker,
        deadline: Optional[Deadline] = None,
        max_api_fetches: int = 5,
    ) -> Dict[str, List[Dict]]:
        """
        Top tracks per artist, memory then store then catalog.

        At most max_api_fetches artists missing from both cache tiers are
        fetched from the catalog, in parallel; the rest are left out of this
        request. Artists whose fetch fails are absent from the result.
        """
        deadline = deadline or Deadline.unbounded()
        ids = [a for a in dict.fromkeys(artist_ids) if a]
        if not ids:
            return {}
        stats.record_request("topTracks", len(ids))

        found: Dict[str, List[Dict]] = {}
        for key, tracks in self.cache.get_many(("top_tracks", a) for a in ids).items():
            found[key[1]] = tracks
        if found:
            stats.record_cache_hit("topTracks", "memory", len(found))

        missing = [a for a in ids if a not in found]
        if missing:
            stored = self.store.get_top_tracks(missing)
            for artist_id, tracks in stored.items():
                found[artist_id] = tracks
                self.cache.set(("top_tracks", artist_id), tracks)
            if stored:
                stats.record_cache_hit("topTracks", "database", len(stored))

        missing = [a for a in ids if a not in found and is_valid_spotify_id(a)]
        if not missing:
            return found

        deadline.check_cancelled()
        if deadline.expired:
            logger.warning(f"Deadline passed, skipping catalog top tracks for {len(missing)} artists")
            return found

        to_fetch = missing[:max(0, max_api_fetches)]
        if len(missing) > len(to_fetch):
            logger.debug(f"Capping catalog top-track fetches at {len(to_fetch)} of {len(missing)}")
        if not to_fetch:
            return found

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(to_fetch))) as pool:
            results = list(pool.map(lambda a: (a, self._fetch_top_tracks(a, stats)), to_fetch))
        for artist_id, tracks in results:
            if tracks is not None:
                found[artist_id] = tracks
        return found

    def _fetch_top_tracks(self, artist_id: str, stats: ApiStatisticsTracker) -> Optional[List[Dict]]:
        try:
            with stats.timed_call("topTracks"):
                tracks = self.catalog.get_artist_top_tracks(artist_id)
        except CATALOG_ERRORS as e:
            logger.warning(f"Top tracks unavailable for {artist_id}: {e}")
            return None
        stats.record_from_spotify("topTracks", len(tracks))
        self.cache.set(("top_tracks", artist_id), tracks)
        self.backfiller.write_top_tracks(artist_id, tracks)
        return tracks

    def get_track(self, track_id: str, stats: ApiStatisticsTracker) -> Optional[Dict]:
        """Track details, store first then catalog."""
        stats.record_request("trackDetails")
        cached = self.cache.get(("track", track_id))
        if cached is not None:
            stats.record_cache_hit("trackDetails", "memory")
            return cached
        stored = self.store.get_tracks([track_id]).get(track_id)
        if stored is not None:
            stats.record_cache_hit("trackDetails", "database")
            self.cache.set(("track", track_id), stored)
            return stored
        try:
            with stats.timed_call("trackDetails"):
                track = self.catalog.get_track(track_id)
        except CATALOG_ERRORS as e:
            logger.warning(f"Track {track_id} unavailable: {e}")
            return None
        if track:
            stats.record_from_spotify("trackDetails", 1)
            self.cache.set(("track", track_id), track)
            self.backfiller.write_tracks([track])
        return track
