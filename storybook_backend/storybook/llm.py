import os, json, logging
from typing import List, Optional

from . import settings
from .errors import ConfigurationError, UpstreamProviderError
from .models import Character, NarrationBeat, Page, Story, StoryMetadata, StoryRequest
from .prompts import (
    EMOTION_TABLE,
    STORY_SCHEMA,
    STRUCTURE_GUIDES,
    SYSTEM_PROMPT,
    USER_PROMPT_TEMPLATE,
    VOICE_TABLE,
)
from .timeline import normalize_timeline, timeline_dialogue_text

logger = logging.getLogger(__name__)

_client = None


def _get_client():
    global _client
    if _client is None:
        from openai import OpenAI
        api_key = os.getenv("OPENAI_API_KEY", "")
        if not api_key:
            raise ConfigurationError("OPENAI_API_KEY is not configured.")
        _client = OpenAI(api_key=api_key, timeout=settings.OPENAI_TIMEOUT_S)
    return _client


def _describe(character: Optional[Character]) -> str:
    if character is None:
        return "Alex (male) - brave, curious"
    traits = ", ".join(character.traits) or "kind"
    return f"{character.name} ({character.gender}) - {traits}"


def structure_guide(story_length: int) -> str:
    for limit, guide in STRUCTURE_GUIDES:
        if limit is None or story_length <= limit:
            return guide
    return STRUCTURE_GUIDES[-1][1]


def build_user_prompt(req: StoryRequest) -> str:
    supporting = "\n".join(f"  - {_describe(c)}" for c in req.supporting_characters) or "  - Sam (female) - loyal, inventive"
    return USER_PROMPT_TEMPLATE.format(
        theme=req.theme,
        genre=req.genre,
        target_age_group=req.target_age_group,
        art_style=req.art_style or "storybook",
        narration_tone=req.narration_tone or "warm",
        main_character=_describe(req.main_character),
        supporting_characters=supporting,
        voice_table=VOICE_TABLE,
        emotion_table=EMOTION_TABLE,
        structure_guide=structure_guide(req.page_count),
        schema=STORY_SCHEMA,
        story_length=req.page_count,
    )


def get_story_payload(req: StoryRequest, narrator_voice_id: str) -> dict:
    """One blocking chat completion in JSON mode; returns the decoded payload."""
    from openai import APIConnectionError, APIStatusError, APITimeoutError

    logger.info("Calling OpenAI API to generate story")
    messages = [
        {"role": "system", "content": SYSTEM_PROMPT.format(narrator_voice_id=narrator_voice_id)},
        {"role": "user", "content": build_user_prompt(req)},
    ]
    client = _get_client()
    try:
        resp = client.chat.completions.create(
            model=settings.OPENAI_MODEL,
            messages=messages,
            temperature=0.8,
            response_format={"type": "json_object"},
        )
    except APIStatusError as e:
        logger.error(f"OpenAI API error {e.status_code}: {e.body}")
        raise UpstreamProviderError("openai", "API error", status_code=e.status_code, body=e.body)
    except APITimeoutError:
        logger.error("OpenAI API call timed out")
        raise UpstreamProviderError("openai", "request timed out", status_code=504)
    except APIConnectionError as e:
        logger.error(f"OpenAI API connection failed: {e}")
        raise UpstreamProviderError("openai", "connection failed", status_code=502)

    content = resp.choices[0].message.content if resp.choices else None
    if not content:
        raise UpstreamProviderError("openai", "returned an empty response")
    logger.info("Successfully received response from OpenAI")
    try:
        return json.loads(content)
    except json.JSONDecodeError:
        logger.error(f"OpenAI returned non-JSON content: {content[:500]}")
        raise UpstreamProviderError("openai", "returned non-JSON content", body={"content": content})


def _scene_entries(scene: dict) -> list:
    entries = []
    narration = scene.get("narration")
    if isinstance(narration, dict):
        entries.append({"type": "narration", "text": narration.get("text"), "voice_id": narration.get("voice_id")})
    elif isinstance(narration, str):
        entries.append({"type": "narration", "text": narration})
    for line in scene.get("characters") or []:
        if isinstance(line, dict):
            entries.append({"type": "character", **line})
    for effect in scene.get("sfx") or []:
        entries.append({"type": "sfx", "description": effect} if isinstance(effect, str) else {"type": "sfx", **effect})
    return entries


def _build_page(raw: dict, index: int) -> Page:
    page_number = raw.get("page") or raw.get("page_number") or raw.get("scene_number") or index + 1
    try:
        page_number = int(page_number)
    except (TypeError, ValueError):
        page_number = index + 1

    entries = raw["timeline"] if isinstance(raw.get("timeline"), list) else _scene_entries(raw)
    beats, warnings = normalize_timeline(entries)
    title = raw.get("scene_title") or raw.get("title") or f"Scene {page_number}"
    first_narration = next((b.text for b in beats if isinstance(b, NarrationBeat)), None)
    return Page(
        page_number=page_number,
        title=title,
        image_prompt=raw.get("image_prompt") or raw.get("imagePrompt"),
        timeline=beats,
        summary=first_narration or title,
        dialogue_text=timeline_dialogue_text(beats),
        warnings=warnings,
    )


def _renumber_if_needed(pages: List[Page]) -> List[Page]:
    numbers = [p.page_number for p in pages]
    if len(set(numbers)) == len(numbers) and all(n >= 1 for n in numbers):
        return sorted(pages, key=lambda p: p.page_number)
    logger.warning(f"Story pages carry duplicate or invalid numbers {numbers}; renumbering by position")
    return [p.model_copy(update={"page_number": i + 1}) for i, p in enumerate(pages)]


def parse_story(parsed: dict, req: Optional[StoryRequest] = None) -> Story:
    """Turn a decoded completion (pages[] or legacy scenes[]) into a Story."""
    if not isinstance(parsed, dict):
        raise UpstreamProviderError("openai", "story payload is not a JSON object", body=parsed)
    raw_pages = parsed.get("pages")
    if not isinstance(raw_pages, list):
        raw_pages = parsed.get("scenes")
    if not isinstance(raw_pages, list) or not raw_pages:
        raise UpstreamProviderError("openai", "story payload missing pages or scenes array", body=parsed)

    pages = _renumber_if_needed([
        _build_page(raw if isinstance(raw, dict) else {}, i) for i, raw in enumerate(raw_pages)
    ])
    for page in pages:
        for warning in page.warnings:
            logger.warning(f"Page {page.page_number}: {warning}")

    characters = req.characters() if req is not None else []
    if not characters:
        characters = [c for c in (Character.parse(c) for c in parsed.get("characters") or []) if c]

    genre = parsed.get("genre") or (req.genre if req else None)
    audience = parsed.get("target_audience") or (req.target_age_group if req else None)
    return Story(
        title=parsed.get("title") or "Untitled Adventure",
        logline=f"{genre} - {audience}" if genre else "Untitled Story",
        characters=characters,
        pages=pages,
        full_text="\n\n".join(p.dialogue_text for p in pages),
        metadata=StoryMetadata(
            genre=genre,
            target_audience=audience,
            theme=parsed.get("theme") or (req.theme if req else None) or pages[0].summary,
        ),
    )


def generate_story(req: StoryRequest, narrator_voice_id: str) -> Story:
    return parse_story(get_story_payload(req, narrator_voice_id), req)
