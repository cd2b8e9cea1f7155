"""
Timeline normalisation and display formatting.

A page timeline arrives from the text model as loosely typed dicts; it
leaves here as an ordered list of NarrationBeat / CharacterBeat / SfxBeat.
"""
from typing import Iterable, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from .models import Beat, CharacterBeat, NarrationBeat, SfxBeat, VoiceSettings

NARRATION_TYPES = ("narration", "narrator")
SFX_TYPES = ("sfx", "sound_effect")

# seconds of generated sound per kind of effect
SFX_DURATIONS = (
    (1.5, ("click", "snap", "pop", "beep", "ding", "tick", "tap", "knock")),
    (2.5, ("crash", "bang", "explosion", "crack", "slam", "thud", "splash", "whoosh", "clash", "shatter")),
    (3.0, ("footstep", "walking", "running", "rustl", "creak", "door", "gate", "hooves", "flap")),
    (2.5, ("laugh", "whisper", "murmur", "chatter", "giggle", "sigh", "gasp")),
    (4.0, ("thunder", "engine", "motor", "bell", "alarm", "siren", "horn", "chime", "hum")),
    (4.0, ("wind", "rain", "forest", "ocean", "wave", "bird", "cricket", "atmosphere", "campfire")),
)
DEFAULT_SFX_DURATION = 3.0


def _voice_settings(raw) -> Optional[VoiceSettings]:
    if not isinstance(raw, dict):
        return None
    try:
        return VoiceSettings.model_validate(raw)
    except PydanticValidationError:
        return None


def _text(entry: dict) -> str:
    # spoken text is kept verbatim; only emptiness is judged on the stripped form
    text = entry.get("text")
    return text if isinstance(text, str) and text.strip() else ""


def normalize_entry(entry: dict, position: int, warnings: List[str]) -> Optional[Beat]:
    raw_type = entry.get("type") or "narration"
    kind = str(raw_type).strip().lower()
    voice_id = entry.get("voice_id") or entry.get("voiceId")
    settings = _voice_settings(entry.get("voice_settings") or entry.get("voiceSettings"))

    if kind in NARRATION_TYPES:
        text = _text(entry)
        if not text:
            warnings.append(f"Beat {position}: narration without text was dropped")
            return None
        return NarrationBeat(text=text, voice_id=voice_id, voice_settings=settings)

    if kind == "character":
        text = _text(entry)
        if not text:
            warnings.append(f"Beat {position}: character line without text was dropped")
            return None
        return CharacterBeat(
            name=str(entry.get("name") or "Character").strip(),
            text=text,
            emotion=entry.get("emotion"),
            voice_id=voice_id,
            voice_settings=settings,
        )

    if kind in SFX_TYPES:
        description = str(entry.get("description") or entry.get("text") or "Ambient sound").strip()
        return SfxBeat(description=description, placeholder=entry.get("placeholder") or None)

    text = _text(entry)
    if text:
        warnings.append(f"Beat {position}: unknown type {raw_type!r} read as narration")
        return NarrationBeat(text=text, voice_id=voice_id, voice_settings=settings)
    warnings.append(f"Beat {position}: unknown type {raw_type!r} without text was dropped")
    return None


def normalize_timeline(entries: Iterable) -> Tuple[List[Beat], List[str]]:
    """Return (beats, warnings). Problems are reported as warnings, never raised."""
    beats: List[Beat] = []
    warnings: List[str] = []
    spoken_so_far = False
    for position, entry in enumerate(entries or [], start=1):
        if not isinstance(entry, dict):
            warnings.append(f"Beat {position}: expected an object, got {type(entry).__name__}")
            continue
        beat = normalize_entry(entry, position, warnings)
        if beat is None:
            continue
        if isinstance(beat, SfxBeat) and not spoken_so_far:
            warnings.append(
                f"Beat {position}: sound effect {beat.description!r} has no narration or dialogue before it"
            )
        if isinstance(beat, (NarrationBeat, CharacterBeat)):
            spoken_so_far = True
        beats.append(beat)
    return beats, warnings


def beat_to_markdown(beat: Beat) -> str:
    if isinstance(beat, NarrationBeat):
        return beat.text
    if isinstance(beat, CharacterBeat):
        return f"**{beat.name or 'Character'}:** {beat.text}"
    if isinstance(beat, SfxBeat):
        if beat.placeholder:
            return f"**{beat.placeholder}** ({beat.description or 'sound effect'})"
        return f"*Sound effect:* {beat.description}"
    raise TypeError(f"Unsupported beat type: {type(beat).__name__}")


def timeline_to_markdown(beats: Iterable[Beat]) -> str:
    return "\n\n".join(beat_to_markdown(b) for b in beats)


def timeline_dialogue_text(beats: Iterable[Beat]) -> str:
    parts = []
    for beat in beats:
        if isinstance(beat, NarrationBeat):
            parts.append(beat.text)
        elif isinstance(beat, CharacterBeat):
            parts.append(f"{beat.name or 'Character'} says {beat.text}")
    return " ".join(parts)


def estimate_sfx_duration(description: str) -> float:
    text = (description or "").lower()
    for seconds, keywords in SFX_DURATIONS:
        if any(k in text for k in keywords):
            return seconds
    return DEFAULT_SFX_DURATION
