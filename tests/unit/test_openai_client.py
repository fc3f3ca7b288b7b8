from types import SimpleNamespace

import httpx
import openai
import pytest

from moodify.errors import AuthenticationError, OracleError
from moodify.openai_client import OpenAIClient, parse_json_response, strip_code_fences


class FakeCompletions:
    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        message = SimpleNamespace(content=reply)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _client(*replies):
    completions = FakeCompletions(replies)
    fake = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return OpenAIClient(api_key="sk-test", model="gpt-test", client=fake), completions


def test_strip_code_fences():
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fences('  {"a": 1} ') == '{"a": 1}'


def test_parse_json_response_errors():
    with pytest.raises(OracleError) as exc_info:
        parse_json_response("")
    assert exc_info.value.code == "PARSE_ERROR"
    with pytest.raises(OracleError):
        parse_json_response("not json")
    with pytest.raises(OracleError):
        parse_json_response("[1, 2]")


def test_complete_json_requests_json_object():
    client, completions = _client('```json\n{"ok": true}\n```')
    assert client.complete_json("hello") == {"ok": True}
    call = completions.calls[0]
    assert call["model"] == "gpt-test"
    assert call["response_format"] == {"type": "json_object"}
    assert call["messages"][1] == {"role": "user", "content": "hello"}


def test_malformed_reply_is_not_retried():
    client, completions = _client("oops")
    with pytest.raises(OracleError) as exc_info:
        client.complete_json("hello")
    assert exc_info.value.code == "PARSE_ERROR"
    assert len(completions.calls) == 1


def test_rejected_key_maps_to_invalid_key():
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    response = httpx.Response(401, request=request)
    client, completions = _client(openai.AuthenticationError("bad key", response=response, body=None))
    with pytest.raises(AuthenticationError) as exc_info:
        client.complete_json("hello")
    assert exc_info.value.code == "INVALID_KEY"
    assert len(completions.calls) == 1


def test_vibe_options_drops_non_objects():
    client, completions = _client(
        '{"options": [{"id": "v1", "title": "Dusk", "track": {"title": "A", "artist": "B"}}, "junk"]}'
    )
    options = client.vibe_options("something mellow", ["X - Y"], exclude=["Q - R"], count=4)
    assert [o["id"] for o in options] == ["v1"]
    prompt = completions.calls[0]["messages"][1]["content"]
    assert "Hint: something mellow" in prompt
    assert "Q - R" in prompt


def test_expand_vibe_reads_mood():
    client, _ = _client('{"mood_description": "hazy", "items": [{"title": "A", "artist": "B"}]}')
    result = client.expand_vibe("Seed", "Artist", mood_hint="Dusk")
    assert result == {"mood": "hazy", "items": [{"title": "A", "artist": "B"}]}


def test_rescue_vibe_defaults():
    client, completions = _client('{"items": [{"title": "A", "artist": "B"}]}')
    result = client.rescue_vibe(["X - Y"], "exploratory")
    assert result["vibe"] == "New Vibe"
    assert result["reasoning"] == "Switching it up!"
    assert "EXPLORATORY" in completions.calls[0]["messages"][1]["content"]


def test_backfill_accepts_short_keys():
    client, _ = _client('{"items": [{"t": "A", "a": "B"}, {"title": "C", "artist": "D", "reason": "r"}]}')
    items = client.backfill(2, "ctx", ["F - G"], [])
    assert items == [
        {"title": "A", "artist": "B", "reason": "Backfill suggestion"},
        {"title": "C", "artist": "D", "reason": "r"},
    ]


def test_taste_context_appears_in_prompt():
    client, completions = _client('{"items": []}')
    taste = {
        "favorite_songs": [{"name": "Fav", "artist": "One", "play_count": 3}],
        "top_genres": ["indie"],
        "recent_vibes": ["Dusk"],
        "audio_profile": {"energy": 0.5, "valence": 0.4, "danceability": 0.3},
    }
    client.expand_vibe("Seed", "Artist", taste=taste)
    prompt = completions.calls[0]["messages"][1]["content"]
    assert "Fav - One" in prompt
    assert "Top genres: indie" in prompt
    assert "energy 0.5" in prompt
