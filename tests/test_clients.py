"""Tests for the Last.fm and Spotify item sources."""

import pytest

import color_collage
from color_collage import (
    LASTFM_API_URL,
    LASTFM_MAX_LIMIT,
    InvalidInputError,
    LastFMClient,
    LastFMError,
    SourceItem,
    SpotifyClient,
    SpotifyError,
    parse_top_albums,
    parse_top_tracks,
    pick_cover_url,
)
from tests.helpers import FakeResponse, FakeSession


def lastfm_album(name, artist, images):
    return {"name": name, "artist": {"name": artist}, "image": images}


class TestPickCoverUrl:
    def test_prefers_largest_available(self):
        images = [
            {"size": "small", "#text": "s.png"},
            {"size": "medium", "#text": "m.png"},
            {"size": "large", "#text": "l.png"},
            {"size": "extralarge", "#text": "   "},
        ]

        assert pick_cover_url(images) == "l.png"

    def test_third_entry_used_when_unsized(self):
        images = [{"#text": ""}, {"#text": ""}, {"#text": "third.png"}]

        assert pick_cover_url(images) == "third.png"

    def test_nothing_usable(self):
        assert pick_cover_url([]) is None
        assert pick_cover_url(None) is None
        assert pick_cover_url([{"size": "large", "#text": ""}]) is None


class TestParseTopAlbums:
    def test_items_keep_chart_order(self):
        payload = {
            "topalbums": {
                "album": [
                    lastfm_album("One", "A", [{"size": "extralarge", "#text": "one.png"}]),
                    lastfm_album("Two", "B", []),
                    {"name": "Three", "artist": {"#text": "C"}, "image": []},
                ]
            }
        }

        assert parse_top_albums(payload) == [
            SourceItem("One", "A", "one.png"),
            SourceItem("Two", "B", None),
            SourceItem("Three", "C", None),
        ]

    def test_single_album_object(self):
        payload = {"topalbums": {"album": lastfm_album("Solo", "D", [])}}

        assert parse_top_albums(payload) == [SourceItem("Solo", "D", None)]

    def test_empty_payload(self):
        assert parse_top_albums({}) == []


class TestLastFMClient:
    """Tests for request parameters and error handling."""

    @pytest.fixture(autouse=True)
    def no_sleep(self, monkeypatch):
        monkeypatch.setattr(color_collage.time, "sleep", lambda seconds: None)

    def make_client(self, monkeypatch, session):
        client = LastFMClient(api_key="KEY")
        monkeypatch.setattr(client, "_get_session", lambda: session)
        return client

    def test_user_top_albums_params(self, monkeypatch):
        session = FakeSession(routes={LASTFM_API_URL: FakeResponse(json_data={"topalbums": {"album": []}})})
        client = self.make_client(monkeypatch, session)

        client.user_top_albums("someone", limit=10_000, period="7day")

        _, url, params = session.calls[0]
        assert url == LASTFM_API_URL
        assert params["method"] == "user.getTopAlbums"
        assert params["user"] == "someone"
        assert params["limit"] == str(LASTFM_MAX_LIMIT)
        assert params["period"] == "7day"
        assert params["api_key"] == "KEY"
        assert params["format"] == "json"

    def test_api_error_raises_after_retries(self, monkeypatch):
        session = FakeSession(routes={LASTFM_API_URL: FakeResponse(json_data={"error": 6, "message": "User not found"})})
        client = self.make_client(monkeypatch, session)

        with pytest.raises(LastFMError, match="User not found"):
            client.user_top_albums("nobody")

        assert len(session.calls) == color_collage.MAX_RETRIES

    def test_unknown_period_rejected(self, monkeypatch):
        client = self.make_client(monkeypatch, FakeSession())

        with pytest.raises(InvalidInputError):
            client.user_top_albums("someone", period="forever")


def spotify_track(album, artist, url):
    return {
        "name": f"{album} track",
        "artists": [{"name": artist}] if artist else [],
        "album": {"name": album, "images": [{"url": url}] if url else []},
    }


class TestSpotify:
    """Tests for top-track paging and item conversion."""

    def test_parse_top_tracks(self):
        tracks = [spotify_track("Blonde", "Frank Ocean", "https://i.scdn.co/a"), spotify_track("Loose", "", None)]

        assert parse_top_tracks(tracks) == [
            SourceItem("Blonde", "Frank Ocean", "https://i.scdn.co/a"),
            SourceItem("Loose", "Unknown Artist", None),
        ]

    def test_pages_until_limit(self, monkeypatch):
        pages = [[spotify_track(f"a{i}", "x", None) for i in range(50)], [spotify_track(f"b{i}", "x", None) for i in range(50)]]
        seen = []

        def fake_get(path, params):
            seen.append(params["offset"])
            return {"items": pages[len(seen) - 1]}

        client = SpotifyClient("token")
        monkeypatch.setattr(client, "_get", fake_get)

        tracks = client.top_tracks(limit=70, time_range="short_term")

        assert seen == ["0", "50"]
        assert len(tracks) == 70

    def test_short_first_page_stops(self, monkeypatch):
        client = SpotifyClient("token")
        calls = []
        monkeypatch.setattr(client, "_get", lambda path, params: calls.append(params) or {"items": [spotify_track("a", "x", None)]})

        assert len(client.top_tracks(limit=100)) == 1
        assert len(calls) == 1

    def test_error_message_surfaced(self, monkeypatch):
        client = SpotifyClient("token")
        session = FakeSession(
            routes={
                f"{color_collage.SPOTIFY_API_URL}/me/top/tracks": FakeResponse(
                    401, json_data={"error": {"status": 401, "message": "The access token expired"}}
                )
            }
        )
        monkeypatch.setattr(client, "session", session)

        with pytest.raises(SpotifyError, match="access token expired"):
            client.top_tracks()

    def test_bad_time_range(self):
        with pytest.raises(InvalidInputError):
            SpotifyClient("token").top_tracks(time_range="forever")
