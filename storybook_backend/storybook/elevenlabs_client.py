import os, httpx, asyncio, logging
from typing import Optional

from . import settings
from .errors import ConfigurationError, UpstreamProviderError
from .models import VoiceSettings

logger = logging.getLogger(__name__)

API_BASE = "https://api.elevenlabs.io"


def _api_key() -> str:
    api_key = os.getenv("ELEVENLABS_API_KEY", "")
    if not api_key:
        raise ConfigurationError("ELEVENLABS_API_KEY is not configured.")
    return api_key


def _headers(content_type: Optional[str] = "application/json"):
    headers = {"xi-api-key": _api_key()}
    if content_type:
        headers["Content-Type"] = content_type
    return headers


def _upstream_error(e: httpx.HTTPStatusError, what: str) -> UpstreamProviderError:
    body = e.response.text
    logger.error(f"ElevenLabs {what} failed {e.response.status_code}: {body}")
    return UpstreamProviderError("elevenlabs", f"{what} failed", status_code=e.response.status_code, body=body)


async def _post_audio(url: str, payload: dict, what: str, max_retries: int) -> bytes:
    for attempt in range(max_retries + 1):
        try:
            async with httpx.AsyncClient(timeout=settings.ELEVENLABS_TIMEOUT_S) as client:
                r = await client.post(url, headers=_headers(), json=payload)
                r.raise_for_status()
                return r.content
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 429 and attempt < max_retries:
                # Exponential backoff: wait 2^attempt seconds
                wait_time = 2 ** attempt
                logger.warning(
                    f"ElevenLabs rate limited (429). Retrying in {wait_time} seconds... "
                    f"(attempt {attempt + 1}/{max_retries + 1})"
                )
                await asyncio.sleep(wait_time)
                continue
            raise _upstream_error(e, what)
        except httpx.TimeoutException:
            logger.error(f"ElevenLabs {what} timed out after {settings.ELEVENLABS_TIMEOUT_S}s")
            raise UpstreamProviderError("elevenlabs", f"{what} timed out", status_code=504)
        except httpx.HTTPError as e:
            logger.error(f"ElevenLabs {what} request failed: {e}")
            raise UpstreamProviderError("elevenlabs", f"{what} request failed")
    raise UpstreamProviderError("elevenlabs", f"{what} rate limited", status_code=429)


async def tts_to_bytes(text: str, voice_id: str, voice_settings: Optional[VoiceSettings] = None,
                       max_retries: int = 3) -> bytes:
    if not voice_id:
        raise ConfigurationError("No ElevenLabs voice id was resolved for this line.")
    payload = {
        "text": text,
        "model_id": settings.ELEVENLABS_MODEL_ID,
        "voice_settings": (voice_settings or VoiceSettings()).to_provider(),
        "output_format": "mp3_44100_128",
    }
    return await _post_audio(f"{API_BASE}/v1/text-to-speech/{voice_id}", payload, "text-to-speech", max_retries)


async def sound_effect_to_bytes(description: str, duration_seconds: Optional[float] = None,
                                max_retries: int = 3) -> bytes:
    payload = {"text": description, "prompt_influence": 0.5}
    if duration_seconds:
        payload["duration_seconds"] = duration_seconds
    return await _post_audio(f"{API_BASE}/v1/sound-generation", payload, "sound generation", max_retries)


async def clone_voice(sample: bytes, sample_format: str = "mp3", name: str = "User Narrator") -> str:
    """Instant voice clone from one sample; returns the new voice id."""
    files = {"files": (f"sample.{sample_format}", sample, f"audio/{sample_format}")}
    try:
        async with httpx.AsyncClient(timeout=settings.ELEVENLABS_TIMEOUT_S) as client:
            r = await client.post(f"{API_BASE}/v1/voices/add", headers=_headers(None), data={"name": name}, files=files)
            r.raise_for_status()
            voice_id = r.json().get("voice_id")
    except httpx.HTTPStatusError as e:
        raise _upstream_error(e, "voice cloning")
    except httpx.HTTPError as e:
        logger.error(f"ElevenLabs voice cloning request failed: {e}")
        raise UpstreamProviderError("elevenlabs", "voice cloning request failed")
    if not voice_id:
        raise UpstreamProviderError("elevenlabs", "voice cloning completed without returning a voice ID")
    logger.info(f"Cloned narrator voice {voice_id}")
    return voice_id


async def list_voices(page_size: int = 100) -> list:
    try:
        async with httpx.AsyncClient(timeout=settings.ELEVENLABS_TIMEOUT_S) as client:
            r = await client.get(
                f"{API_BASE}/v2/voices",
                headers=_headers(None),
                params={"page_size": page_size, "include_total_count": "true"},
            )
            r.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise _upstream_error(e, "voice listing")
    except httpx.HTTPError as e:
        logger.error(f"ElevenLabs voice listing request failed: {e}")
        raise UpstreamProviderError("elevenlabs", "voice listing request failed")
    return [
        {
            "voiceId": v.get("voice_id"),
            "name": v.get("name"),
            "category": v.get("category"),
            "description": v.get("description"),
            "labels": v.get("labels") or {},
            "previewUrl": v.get("preview_url"),
        }
        for v in r.json().get("voices", [])
    ]


class ElevenLabsSpeech:
    """Speech adapter handed to the pipeline; thin wrapper over the functions above."""

    async def synthesize(self, text: str, voice_id: str, voice_settings: Optional[VoiceSettings] = None) -> bytes:
        return await tts_to_bytes(text, voice_id, voice_settings)

    async def sound_effect(self, description: str, duration_seconds: Optional[float] = None) -> bytes:
        return await sound_effect_to_bytes(description, duration_seconds)

    async def clone_voice(self, sample: bytes, sample_format: str = "mp3", name: str = "User Narrator") -> str:
        return await clone_voice(sample, sample_format, name)

    async def list_voices(self) -> list:
        return await list_voices()
