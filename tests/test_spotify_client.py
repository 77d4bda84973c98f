from unittest.mock import MagicMock

import pytest
import requests
from spotipy import SpotifyException

from dual_gravity.errors import NetworkError, RateLimitError, ServerError
from dual_gravity.retry_helper import retry_with_backoff
from dual_gravity.spotify_client import SpotifyClient, _translate


# =============================================================================
# ERROR TRANSLATION
# =============================================================================

def test_translate_rate_limit_keeps_retry_after():
    e = SpotifyException(http_status=429, code=-1, msg="rate limited", headers={"Retry-After": "3"})
    translated = _translate(e)
    assert isinstance(translated, RateLimitError)
    assert translated.retry_after == 3.0


def test_translate_server_and_network_errors():
    assert isinstance(_translate(SpotifyException(http_status=503, code=-1, msg="down")), ServerError)
    assert isinstance(_translate(requests.exceptions.ConnectionError("reset")), NetworkError)


def test_translate_leaves_client_errors_alone():
    e = SpotifyException(http_status=404, code=-1, msg="not found")
    assert _translate(e) is e


# =============================================================================
# RETRY
# =============================================================================

def test_retry_until_success():
    sleeps = []
    attempts = []

    @retry_with_backoff(max_retries=3, initial_delay=0.25, sleep=sleeps.append)
    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise ServerError("502")
        return "ok"

    assert flaky() == "ok"
    assert sleeps == [0.25, 0.5]


def test_retry_gives_up_and_reraises():
    sleeps = []

    @retry_with_backoff(max_retries=2, sleep=sleeps.append)
    def broken():
        raise NetworkError("unreachable")

    with pytest.raises(NetworkError):
        broken()
    assert len(sleeps) == 2


def test_retry_honours_retry_after_within_cap():
    sleeps = []

    @retry_with_backoff(max_retries=1, max_delay=2.0, sleep=sleeps.append)
    def limited():
        raise RateLimitError("429", retry_after=30)

    with pytest.raises(RateLimitError):
        limited()
    assert sleeps == [2.0]


def test_non_retryable_errors_propagate_immediately():
    sleeps = []

    @retry_with_backoff(sleep=sleeps.append)
    def bad():
        raise ValueError("bad input")

    with pytest.raises(ValueError):
        bad()
    assert sleeps == []


# =============================================================================
# CLIENT
# =============================================================================

@pytest.fixture
def client():
    sp = MagicMock()
    c = SpotifyClient(sp=sp, market="GB")
    c._min_request_interval = 0
    return c


def test_get_artists_batches_by_fifty(client):
    ids = [f"{n:022d}" for n in range(120)]
    client.sp.artists.side_effect = lambda batch: {"artists": [{"id": a} for a in batch] + [None]}
    artists = client.get_artists(ids + ids[:5])
    assert len(artists) == 120
    assert client.sp.artists.call_count == 3


def test_top_tracks_use_market(client):
    client.sp.artist_top_tracks.return_value = {"tracks": [{"id": "t1"}]}
    assert client.get_artist_top_tracks("a1") == [{"id": "t1"}]
    client.sp.artist_top_tracks.assert_called_once_with("a1", country="GB")


def test_get_track_not_found_returns_none(client):
    client.sp.track.side_effect = SpotifyException(http_status=404, code=-1, msg="not found")
    assert client.get_track("missing") is None
    assert client.sp.track.call_count == 1


def test_search_helpers(client):
    client.sp.search.return_value = {"artists": {"items": [{"id": "a", "name": "Adele"}]}}
    assert client.search_artists("Adele") == [{"id": "a", "name": "Adele"}]
    client.sp.search.return_value = {"tracks": {"items": [{"id": "t"}]}}
    assert client.search_tracks_by_genre("nu metal", limit=80) == [{"id": "t"}]
    _, kwargs = client.sp.search.call_args
    assert kwargs["q"] == 'genre:"nu metal"'
    assert kwargs["limit"] == 50
