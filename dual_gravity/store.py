"""
Durable catalog store (tier 2 of every lookup).

SQLite tables for artist profiles, per-artist top-track and related-artist
lists and track details. Profiles and lists older than the store TTL read as
missing, so the resolver refetches them from the catalog. The engine treats the store as eventually consistent: writes come
in through the background queue, reads never wait on them.
"""
from __future__ import annotations

import json
import logging
import random
import sqlite3
import threading
import time
from collections import Counter
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from .config import DEFAULT_CACHE_CONFIG
from .models import ArtistProfile, is_playable, primary_artist_id, primary_artist_name
from .utils import normalize_name

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS artists (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    name_lower TEXT NOT NULL,
    genres TEXT NOT NULL DEFAULT '[]',
    popularity INTEGER,
    followers INTEGER,
    updated_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_artists_name_lower ON artists(name_lower);

CREATE TABLE IF NOT EXISTS top_tracks (
    artist_id TEXT PRIMARY KEY,
    track_ids TEXT NOT NULL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS related_artists (
    artist_id TEXT PRIMARY KEY,
    related TEXT NOT NULL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS tracks (
    id TEXT PRIMARY KEY,
    artist_id TEXT,
    artist_name_lower TEXT,
    name TEXT,
    popularity INTEGER,
    release_date TEXT,
    is_playable INTEGER NOT NULL DEFAULT 1,
    data TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_tracks_artist_id ON tracks(artist_id);
"""


class CatalogStore:
    """SQLite-backed store shared by all requests in the process."""

    def __init__(
        self,
        path: str = ":memory:",
        ttl_days: Optional[float] = DEFAULT_CACHE_CONFIG.store_ttl_days,
        clock=time.time,
    ):
        """
        Args:
            path: Database file, or ":memory:" for a throwaway store
            ttl_days: Age after which profiles and lists read as missing, None to keep forever
            clock: Wall clock for row timestamps (swapped out in tests)
        """
        self.ttl_seconds = ttl_days * 86400.0 if ttl_days is not None else None
        self._clock = clock
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self.path = path
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        with self._lock:
            self._conn.executescript(_SCHEMA)
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _fresh_after(self) -> float:
        """Oldest updated_at still served."""
        if self.ttl_seconds is None:
            return float("-inf")
        return self._clock() - self.ttl_seconds

    # =========================================================================
    # ARTISTS
    # =========================================================================

    @staticmethod
    def _row_to_profile(row: sqlite3.Row) -> ArtistProfile:
        return ArtistProfile(
            id=row["id"],
            name=row["name"],
            genres=tuple(json.loads(row["genres"])),
            popularity=row["popularity"],
            followers=row["followers"],
        )

    def get_artist_profiles(self, artist_ids: Sequence[str]) -> Dict[str, ArtistProfile]:
        ids = list(dict.fromkeys(a for a in artist_ids if a))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT * FROM artists WHERE id IN ({placeholders}) AND updated_at >= ?",
                [*ids, self._fresh_after()],
            ).fetchall()
        return {row["id"]: self._row_to_profile(row) for row in rows}

    def find_artist_by_name(self, name: str) -> Optional[ArtistProfile]:
        """Case-insensitive exact name lookup."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM artists WHERE name_lower = ? AND updated_at >= ? "
                "ORDER BY followers DESC LIMIT 1",
                (normalize_name(name), self._fresh_after()),
            ).fetchone()
        return self._row_to_profile(row) if row else None

    def upsert_artist_profiles(self, profiles: Iterable[ArtistProfile]) -> int:
        rows = [
            (
                p.id,
                p.name,
                normalize_name(p.name),
                json.dumps(list(p.genres)),
                p.popularity,
                p.followers,
                self._clock(),
            )
            for p in profiles
        ]
        if not rows:
            return 0
        with self._lock:
            self._conn.executemany(
                """
                INSERT INTO artists (id, name, name_lower, genres, popularity, followers, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    name_lower = excluded.name_lower,
                    genres = CASE WHEN excluded.genres = '[]' THEN artists.genres ELSE excluded.genres END,
                    popularity = COALESCE(excluded.popularity, artists.popularity),
                    followers = COALESCE(excluded.followers, artists.followers),
                    updated_at = excluded.updated_at
                """,
                rows,
            )
            self._conn.commit()
        return len(rows)

    def upsert_artist_profile(self, profile: ArtistProfile) -> None:
        self.upsert_artist_profiles([profile])

    # =========================================================================
    # TRACKS
    # =========================================================================

    def upsert_tracks(self, tracks: Iterable[Dict]) -> int:
        rows = []
        for track in tracks:
            if not track or not track.get("id"):
                continue
            rows.append((
                track["id"],
                primary_artist_id(track),
                normalize_name(primary_artist_name(track)),
                track.get("name"),
                track.get("popularity"),
                (track.get("album") or {}).get("release_date"),
                1 if is_playable(track) else 0,
                json.dumps(track),
            ))
        if not rows:
            return 0
        with self._lock:
            self._conn.executemany(
                """
                INSERT OR REPLACE INTO tracks
                    (id, artist_id, artist_name_lower, name, popularity, release_date, is_playable, data)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
            self._conn.commit()
        return len(rows)

    def get_tracks(self, track_ids: Sequence[str]) -> Dict[str, Dict]:
        ids = list(dict.fromkeys(t for t in track_ids if t))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT id, data FROM tracks WHERE id IN ({placeholders})", ids
            ).fetchall()
        return {row["id"]: json.loads(row["data"]) for row in rows}

    def upsert_top_tracks(self, artist_id: str, tracks: Sequence[Dict]) -> None:
        self.upsert_tracks(tracks)
        track_ids = [t["id"] for t in tracks if t and t.get("id")]
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO top_tracks (artist_id, track_ids, updated_at) VALUES (?, ?, ?)",
                (artist_id, json.dumps(track_ids), self._clock()),
            )
            self._conn.commit()

    def get_top_tracks(self, artist_ids: Sequence[str]) -> Dict[str, List[Dict]]:
        """
        Stored top-track lists, in catalog rank order.

        Artists without a stored list are absent from the result; an artist
        whose stored list is empty maps to [].
        """
        ids = list(dict.fromkeys(a for a in artist_ids if a))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT artist_id, track_ids FROM top_tracks "
                f"WHERE artist_id IN ({placeholders}) AND updated_at >= ?",
                [*ids, self._fresh_after()],
            ).fetchall()
        lists = {row["artist_id"]: json.loads(row["track_ids"]) for row in rows}
        details = self.get_tracks([tid for tids in lists.values() for tid in tids])
        return {
            artist_id: [details[tid] for tid in tids if tid in details]
            for artist_id, tids in lists.items()
        }

    # =========================================================================
    # RELATED ARTISTS
    # =========================================================================

    def upsert_related_artists(self, artist_id: str, related: Sequence[Dict]) -> None:
        """Store an artist's related list as [{id, name}] in catalog order."""
        entries = [{"id": r["id"], "name": r.get("name")} for r in related if r and r.get("id")]
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO related_artists (artist_id, related, updated_at) VALUES (?, ?, ?)",
                (artist_id, json.dumps(entries), self._clock()),
            )
            self._conn.commit()

    def get_related_artists(self, artist_id: str) -> Optional[List[Dict]]:
        """Fresh stored related list, None when absent or stale."""
        with self._lock:
            row = self._conn.execute(
                "SELECT related FROM related_artists WHERE artist_id = ? AND updated_at >= ?",
                (artist_id, self._fresh_after()),
            ).fetchone()
        return json.loads(row["related"]) if row else None

    def sample_tracks(
        self,
        limit: int,
        exclude_track_ids: Iterable[str] = (),
        exclude_artist_ids: Iterable[str] = (),
        exclude_artist_names: Iterable[str] = (),
        tracks_per_artist: Optional[int] = None,
        rng: Optional[random.Random] = None,
    ) -> List[Dict]:
        """
        Random playable tracks, honouring exclusions.

        Args:
            limit: Maximum number of tracks returned
            exclude_track_ids: Track ids never returned
            exclude_artist_ids: Primary-artist ids never returned
            exclude_artist_names: Primary-artist names (any case) never returned
            tracks_per_artist: Cap per primary artist, None for no cap
            rng: Random source (seeded in tests)

        Returns:
            Up to limit track dicts
        """
        if limit <= 0:
            return []
        rng = rng or random.Random()
        excluded_tracks = set(exclude_track_ids)
        excluded_artists = set(a for a in exclude_artist_ids if a)
        excluded_names = set(normalize_name(n) for n in exclude_artist_names if n)

        with self._lock:
            rows = self._conn.execute(
                "SELECT id, artist_id, artist_name_lower FROM tracks WHERE is_playable = 1"
            ).fetchall()

        eligible = [
            row for row in rows
            if row["id"] not in excluded_tracks
            and row["artist_id"] not in excluded_artists
            and (row["artist_name_lower"] or "") not in excluded_names
        ]
        rng.shuffle(eligible)

        picked: List[str] = []
        per_artist: Counter = Counter()
        for row in eligible:
            if len(picked) >= limit:
                break
            artist_key = row["artist_id"] or row["artist_name_lower"] or row["id"]
            if tracks_per_artist is not None and per_artist[artist_key] >= tracks_per_artist:
                continue
            per_artist[artist_key] += 1
            picked.append(row["id"])

        details = self.get_tracks(picked)
        return [details[tid] for tid in picked if tid in details]

    def count_tracks(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM tracks").fetchone()[0]

    def genre_statistics(self, top_n: int = 10) -> Dict:
        """Track/artist counts and the most common artist genres."""
        with self._lock:
            track_count = self._conn.execute("SELECT COUNT(*) FROM tracks").fetchone()[0]
            genre_rows = self._conn.execute("SELECT genres FROM artists").fetchall()
        genre_counts: Counter = Counter()
        without_genres = 0
        for row in genre_rows:
            genres = json.loads(row["genres"])
            if not genres:
                without_genres += 1
            genre_counts.update(genres)
        return {
            "totalTracks": track_count,
            "totalArtists": len(genre_rows),
            "artistsWithoutGenres": without_genres,
            "topGenres": genre_counts.most_common(top_n),
        }
