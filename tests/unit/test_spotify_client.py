import json

import pytest
import requests

from moodify.errors import AuthenticationError, NoActiveDeviceError, NotFoundError, TransientError
from moodify.spotify_client import SpotifyClient


class FakeResponse:
    def __init__(self, status_code=200, body=None, headers=None):
        self.status_code = status_code
        self.headers = headers or {}
        self.text = json.dumps(body) if body is not None else ""
        self.content = self.text.encode("utf-8")

    def json(self):
        return json.loads(self.text)


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, params=None, json=None, headers=None, timeout=None):
        self.calls.append({"method": method, "url": url, "params": params, "json": json, "headers": headers})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _client(responses, token="tok", **kwargs):
    session = FakeSession(responses)
    client = SpotifyClient(
        token_provider=lambda: token,
        calls_per_second=1000,
        initial_delay=0,
        session=session,
        **kwargs,
    )
    return client, session


def test_search_sends_bearer_and_market():
    body = {"tracks": {"items": [{"name": "Song", "uri": "spotify:track:1"}]}}
    client, session = _client([FakeResponse(200, body)], market="US")
    items = client.search_tracks('track:"Song"', limit=3)
    assert items == [{"name": "Song", "uri": "spotify:track:1"}]
    call = session.calls[0]
    assert call["url"] == "https://api.spotify.com/v1/search"
    assert call["params"] == {"q": 'track:"Song"', "type": "track", "limit": 3, "market": "US"}
    assert call["headers"] == {"Authorization": "Bearer tok"}


def test_no_content_returns_none():
    client, _ = _client([FakeResponse(204)])
    assert client.get_playback_state() is None


def test_server_error_is_retried():
    client, session = _client([FakeResponse(502), FakeResponse(200, {"is_playing": True})])
    assert client.get_playback_state() == {"is_playing": True}
    assert len(session.calls) == 2


def test_server_error_exhausts_retries():
    client, session = _client([FakeResponse(503)] * 3)
    with pytest.raises(TransientError) as exc_info:
        client.get_playback_state()
    assert exc_info.value.code == "SERVER_ERROR"
    assert len(session.calls) == 3


def test_throttle_honours_retry_after():
    client, session = _client([FakeResponse(429, headers={"Retry-After": "0"}), FakeResponse(200, {"queue": []})])
    assert client.get_queue() == {"queue": []}
    assert len(session.calls) == 2


def test_timeout_maps_to_transient_timeout():
    client, _ = _client([requests.exceptions.Timeout()] * 3)
    with pytest.raises(TransientError) as exc_info:
        client.pause()
    assert exc_info.value.code == "TIMEOUT"


def test_connection_failure_recovers():
    client, session = _client([requests.exceptions.ConnectionError("reset"), FakeResponse(204)])
    client.next_track()
    assert len(session.calls) == 2


def test_unauthorized_is_not_retried():
    client, session = _client([FakeResponse(401, {"error": "expired"})])
    with pytest.raises(AuthenticationError) as exc_info:
        client.get_saved_tracks()
    assert exc_info.value.code == "AUTH_EXPIRED"
    assert len(session.calls) == 1


def test_player_forbidden_means_premium_required():
    client, _ = _client([FakeResponse(403)])
    with pytest.raises(AuthenticationError) as exc_info:
        client.play(["spotify:track:1"])
    assert exc_info.value.code == "PREMIUM_REQUIRED"


def test_player_not_found_means_no_device():
    client, _ = _client([FakeResponse(404)])
    with pytest.raises(NoActiveDeviceError):
        client.add_to_queue("spotify:track:1")


def test_catalog_not_found():
    client, _ = _client([FakeResponse(404)])
    with pytest.raises(NotFoundError) as exc_info:
        client.get_artists(["a1"])
    assert not isinstance(exc_info.value, NoActiveDeviceError)


def test_missing_token_fails_before_request():
    client, session = _client([], token=None)
    with pytest.raises(AuthenticationError) as exc_info:
        client.get_playback_state()
    assert exc_info.value.code == "NOT_AUTHENTICATED"
    assert session.calls == []


def test_play_body_and_queue_params():
    client, session = _client([FakeResponse(204), FakeResponse(204)])
    client.play(["spotify:track:1", "spotify:track:2"])
    client.add_to_queue("spotify:track:3")
    assert session.calls[0]["json"] == {"uris": ["spotify:track:1", "spotify:track:2"]}
    assert session.calls[1]["params"] == {"uri": "spotify:track:3"}


def test_get_artists_chunks_requests():
    ids = [f"a{i}" for i in range(120)]
    responses = [
        FakeResponse(200, {"artists": [{"id": i} for i in ids[0:50]]}),
        FakeResponse(200, {"artists": [{"id": i} for i in ids[50:100]]}),
        FakeResponse(200, {"artists": [{"id": i} for i in ids[100:]]}),
    ]
    client, session = _client(responses)
    artists = client.get_artists(ids)
    assert [a["id"] for a in artists] == ids
    assert len(session.calls) == 3
    assert session.calls[2]["params"]["ids"].split(",")[0] == "a100"


def test_audio_features_pad_missing_entries():
    client, _ = _client([FakeResponse(200, {})])
    assert client.get_audio_features(["t1", "t2"]) == [None, None]
