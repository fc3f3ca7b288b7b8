"""
OpenAI API Client - vibe options, vibe expansion and rescue suggestions

Every request asks for a JSON object. Responses wrapped in markdown code
fences are unwrapped before parsing. SDK exceptions are translated into the
Moodify error taxonomy so the retry decorator and the error surface can
branch on them.
"""
from openai import OpenAI
import openai
from typing import Any, Dict, List, Optional
import json
import logging

from .errors import AuthenticationError, OracleError, OracleRateLimitedError, TransientError
from .retry_helper import retry_with_backoff

logger = logging.getLogger(__name__)

EXCLUDE_LIMIT = 50


def strip_code_fences(text: str) -> str:
    """Remove ```json ... ``` wrappers the model sometimes adds"""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.split("\n", 1)[1] if "\n" in cleaned else cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.replace("```json", "").replace("```", "").strip()


def parse_json_response(text: Optional[str]) -> Dict[str, Any]:
    """
    Parse a model reply as a JSON object

    Raises:
        OracleError: Reply is empty, not JSON, or not an object
    """
    if not text:
        raise OracleError("Empty response from model", code="PARSE_ERROR")
    try:
        parsed = json.loads(strip_code_fences(text))
    except json.JSONDecodeError as e:
        raise OracleError(f"Model returned invalid JSON: {e}", code="PARSE_ERROR", details=text[:200])
    if not isinstance(parsed, dict):
        raise OracleError("Model returned JSON that is not an object", code="PARSE_ERROR")
    return parsed


def _exclude_text(exclude: List[str]) -> str:
    if not exclude:
        return "None"
    return f"DO NOT suggest these songs (heard today): {'; '.join(exclude[:EXCLUDE_LIMIT])}"


def _taste_text(taste: Optional[Dict[str, Any]]) -> str:
    if not taste:
        return "Unknown"
    favorites = "; ".join(f"{s['name']} - {s['artist']}" for s in taste.get("favorite_songs", [])[:7])
    parts = [f"Favorites: {favorites or 'None'}"]
    if taste.get("top_genres"):
        parts.append(f"Top genres: {', '.join(taste['top_genres'])}")
    if taste.get("recent_vibes"):
        parts.append(f"Recent vibes: {', '.join(taste['recent_vibes'])}")
    if taste.get("audio_profile"):
        profile = taste["audio_profile"]
        parts.append(
            f"Audio profile: energy {profile['energy']}, valence {profile['valence']}, "
            f"danceability {profile['danceability']}"
        )
    return "\n".join(parts)


class OpenAIClient:
    """Client for recommendation prompts using the OpenAI API"""

    def __init__(self, api_key: str, model: str = "gpt-4o-mini", timeout: float = 60.0, client=None):
        """
        Args:
            api_key: OpenAI API key
            model: Chat model name
            timeout: Per-request timeout in seconds
            client: Pre-built OpenAI client (tests)
        """
        self.client = client or OpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        self.model = model

    @retry_with_backoff(max_retries=2, initial_delay=2.0)
    def complete_json(self, prompt: str, max_tokens: int = 2000, temperature: float = 0.7) -> Dict[str, Any]:
        """
        Send one prompt and parse the JSON object it returns

        Raises:
            OracleRateLimitedError: Model is throttling (retried first)
            TransientError: Timeout or connection failure (retried first)
            AuthenticationError: API key rejected
            OracleError: Any other API failure or unparseable reply
        """
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": "You are Moodify, an expert AI DJ. Respond with valid JSON only."},
                    {"role": "user", "content": prompt},
                ],
                max_tokens=max_tokens,
                temperature=temperature,
                response_format={"type": "json_object"},
            )
        except openai.RateLimitError as e:
            retry_after = None
            headers = getattr(getattr(e, "response", None), "headers", None)
            if headers and headers.get("retry-after"):
                try:
                    retry_after = float(headers.get("retry-after"))
                except ValueError:
                    retry_after = None
            raise OracleRateLimitedError(f"OpenAI rate limit: {e}", retry_after=retry_after) from e
        except openai.APITimeoutError as e:
            raise TransientError(f"OpenAI request timed out: {e}", code="TIMEOUT") from e
        except openai.APIConnectionError as e:
            raise TransientError(f"Cannot reach OpenAI: {e}") from e
        except openai.AuthenticationError as e:
            raise AuthenticationError(f"OpenAI rejected the API key: {e}", code="INVALID_KEY") from e
        except openai.APIError as e:
            raise OracleError(f"OpenAI request failed: {e}") from e

        content = response.choices[0].message.content
        return parse_json_response(content)

    def vibe_options(
        self,
        instruction: str,
        recent: List[str],
        taste: Optional[Dict[str, Any]] = None,
        exclude: Optional[List[str]] = None,
        count: int = 12,
    ) -> List[Dict[str, Any]]:
        """
        Ask for vibe choices, each with one seed track

        Args:
            instruction: Free-text hint from the listener (may be empty)
            recent: Recently played "Title - Artist" strings
            taste: TasteProfile.as_prompt_context() output
            exclude: Tracks already heard today
            count: Number of options to request

        Returns:
            Raw option dicts: id, title, description, track{title, artist}, reason
        """
        prompt = f"""{count} vibe options, each with one seed track. Pick popular tracks that exist on Spotify.

Recent: {'; '.join(recent[:10]) or 'None'}
{_taste_text(taste)}
{f'Hint: {instruction}' if instruction else ''}
{_exclude_text(exclude or [])}

Rules: Diverse genres and eras. 2-4 word titles. Include a short description.

{{"options":[{{"id":"v1","title":"Vibe Name","description":"Short mood description","track":{{"title":"Song Title","artist":"Artist Name"}},"reason":"Why"}}]}}"""

        logger.info(f"Requesting {count} vibe options")
        parsed = self.complete_json(prompt, max_tokens=4000)
        return [o for o in parsed.get("options") or [] if isinstance(o, dict)]

    def expand_vibe(
        self,
        seed_title: str,
        seed_artist: str,
        mood_hint: Optional[str] = None,
        taste: Optional[Dict[str, Any]] = None,
        exclude: Optional[List[str]] = None,
        count: int = 12,
    ) -> Dict[str, Any]:
        """Tracks that keep the current vibe going; returns {"mood", "items"}"""
        prompt = f"""{count} tracks matching the vibe of: {seed_title} - {seed_artist}
{f'Current mood: {mood_hint}' if mood_hint else ''}
{_taste_text(taste)}
{_exclude_text(exclude or [])}

Rules: Match energy and mood. Popular tracks on Spotify. Do not include the seed track.

{{"mood":"short vibe description","items":[{{"title":"Song","artist":"Artist"}}]}}"""

        logger.info(f"Requesting expansion from '{seed_title}' by {seed_artist}")
        parsed = self.complete_json(prompt, max_tokens=3000)
        return {
            "mood": parsed.get("mood") or parsed.get("mood_description"),
            "items": [i for i in parsed.get("items") or [] if isinstance(i, dict)],
        }

    def rescue_vibe(
        self,
        skipped: List[str],
        strategy: str,
        taste: Optional[Dict[str, Any]] = None,
        exclude: Optional[List[str]] = None,
        count: int = 12,
    ) -> Dict[str, Any]:
        """New direction after repeated skips; returns {"vibe", "reasoning", "items"}"""
        guidance = {
            "conservative": "Stay close to the listener's usual style. Fresh but safe.",
            "exploratory": "Take calculated risks. Same energy, different genre or era.",
            "refined": "Study the skip pattern and find the sweet spot.",
        }.get(strategy, "")

        prompt = f"""The listener keeps skipping these tracks. Change direction. {count} popular tracks on Spotify.

Skipped: {'; '.join(skipped) or 'None'}
Strategy: {strategy.upper()}. {guidance}
{_taste_text(taste)}
{_exclude_text(exclude or [])}

Avoid anything similar to the skipped tracks. Pick a new genre or energy.

{{"vibe":"2-4 word name","why":"1 sentence strategy","items":[{{"title":"Song","artist":"Artist"}}]}}"""

        logger.info(f"Requesting rescue vibe ({strategy}) after {len(skipped)} skips")
        parsed = self.complete_json(prompt, max_tokens=3000)
        return {
            "vibe": parsed.get("vibe") or parsed.get("new_vibe_name") or "New Vibe",
            "reasoning": parsed.get("why") or parsed.get("reasoning") or "Switching it up!",
            "items": [i for i in parsed.get("items") or [] if isinstance(i, dict)],
        }

    def backfill(
        self,
        count: int,
        context: str,
        failed: List[str],
        existing: List[str],
        exclude: Optional[List[str]] = None,
    ) -> List[Dict[str, Any]]:
        """Alternatives for suggestions that could not be found on Spotify"""
        prompt = f"""Need {count} more tracks. These failed Spotify search, suggest alternatives (different songs, same vibe).

Failed: {'; '.join(failed[:10])}
Already have: {'; '.join(existing[:10])}
Context: {context}
Skip: {', '.join((exclude or [])[:30])}

Pick well-known tracks that definitely exist on Spotify.

{{"items":[{{"title":"Title","artist":"Artist"}}]}}"""

        logger.info(f"Requesting {count} backfill tracks")
        parsed = self.complete_json(prompt, max_tokens=1500)
        items = []
        for item in parsed.get("items") or []:
            if not isinstance(item, dict):
                continue
            items.append({
                "title": item.get("title") or item.get("t"),
                "artist": item.get("artist") or item.get("a"),
                "reason": item.get("reason") or "Backfill suggestion",
            })
        return items
