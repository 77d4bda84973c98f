import json
import os

import pytest

from dual_gravity import cli, config
from dual_gravity.models import ArtistProfile
from dual_gravity.pipeline import SelectionOutput
from dual_gravity.store import CatalogStore

from fakes import make_artist


def parse(*argv):
    return cli.create_parser().parse_args(list(argv))


def test_build_request_from_arguments():
    args = parse(
        "4uLU6hMCjMI75M1A2tKUQC",
        "--p1-target", "Metallica",
        "-r", "4",
        "--player", "player2",
        "--p2-gravity", "0.6",
        "--played", "a, b,,c",
    )
    request = cli.build_request(args)
    assert request["playbackState"] == {"item": {"id": "4uLU6hMCjMI75M1A2tKUQC"}}
    assert request["roundNumber"] == 4
    assert request["activePlayerId"] == "player2"
    assert request["playerTargets"] == {"player1": {"name": "Metallica"}, "player2": None}
    assert request["playerGravities"] == {"player1": 0.32, "player2": 0.6}
    assert request["playedTrackIds"] == ["a", "b", "c"]


def sample_output():
    option = {
        "track": {"id": "t1", "name": "Song"},
        "artist": {"id": "a1", "name": "Band"},
        "finalScore": 0.8123,
        "metrics": {"selectionCategory": "closer", "simScore": 0.5, "aAttraction": 0.7, "bAttraction": 0.1},
    }
    return SelectionOutput(
        option_tracks=[option],
        updated_gravities={"player1": 0.42, "player2": 0.32},
        target_profiles={"player1": None, "player2": None},
        exploration_phase={"level": "high", "ogDrift": 0.2, "rounds": [1, 2]},
        hard_convergence_active=False,
    )


def test_format_output_simple():
    text = cli.format_output(sample_output(), "simple")
    assert "Round phase: high (ogDrift=0.2)" in text
    assert " 1. [closer] Song" in text
    assert "Score: 0.8123" in text


def test_format_output_json():
    data = json.loads(cli.format_output(sample_output(), "json"))
    assert data["updatedGravities"]["player1"] == 0.42


def test_store_stats_command(tmp_path, capsys):
    path = str(tmp_path / "catalog.sqlite3")
    store = CatalogStore(path)
    store.upsert_artist_profile(ArtistProfile.from_spotify(make_artist(1, genres=["nu metal"])))
    store.close()

    assert cli.main(["--store-stats", "--store", path]) == 0
    out = capsys.readouterr().out
    assert "Artists: 1 (0 without genres)" in out
    assert "nu metal" in out


def test_track_required_without_store_stats():
    with pytest.raises(SystemExit):
        cli.main([])


def test_missing_credentials(monkeypatch, tmp_path):
    for name in ("SPOTIFY_CLIENT_ID", "SPOTIFY_CLIENT_SECRET", "SPOTIPY_CLIENT_ID", "SPOTIPY_CLIENT_SECRET"):
        monkeypatch.delenv(name, raising=False)
    assert not cli.validate_environment()
    assert cli.main(["4uLU6hMCjMI75M1A2tKUQC", "--store", str(tmp_path / "s.sqlite3")]) == 1


def test_default_store_lives_in_user_cache():
    package_dir = os.path.dirname(os.path.abspath(config.__file__))
    assert not os.path.abspath(config.CACHE_DIR).startswith(package_dir)
    assert parse("4uLU6hMCjMI75M1A2tKUQC").store == config.STORE_PATH
