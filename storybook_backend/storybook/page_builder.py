import asyncio, logging
from dataclasses import dataclass
from typing import List, Optional

from .errors import StorybookError, UpstreamProviderError
from .models import (
    Beat,
    CharacterBeat,
    NarrationBeat,
    Page,
    PageAssets,
    PageBuildResult,
    PageError,
    SfxBeat,
    StoredAsset,
    VoiceProfile,
)
from .timeline import estimate_sfx_duration
from .voices import CharacterVoiceCache, settings_for_emotion

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImageConfig:
    enabled: bool = True
    art_style: str = "storybook"
    aspect_ratio: str = "3:2"
    # one seed per story keeps the illustrations stylistically consistent
    seed: Optional[int] = None


def page_error(exc: BaseException, stage: str) -> PageError:
    if isinstance(exc, UpstreamProviderError):
        return PageError(message=exc.message, stage=stage, provider=exc.provider, status_code=exc.status_code)
    if isinstance(exc, StorybookError):
        return PageError(message=exc.message, stage=stage, status_code=exc.status_code)
    return PageError(message=str(exc) or type(exc).__name__, stage=stage)


class PageAssetBuilder:
    """
    Produces the audio and illustration of one page.

    Beats are synthesized one after another in timeline order, the
    illustration is requested alongside. A failing beat, mix or image is
    recorded on the result and the rest of the page carries on; build_page
    itself never raises for a page-level failure.
    """

    def __init__(self, speech, images, mixer, storage):
        self.speech = speech
        self.images = images
        self.mixer = mixer
        self.storage = storage

    async def build_page(self, page: Page, narrator: VoiceProfile, voices: CharacterVoiceCache,
                         image_config: ImageConfig, audio_enabled: bool = True,
                         asset_prefix: str = "") -> PageBuildResult:
        audio_errors: List[PageError] = []
        image_errors: List[PageError] = []
        try:
            audio, image = await asyncio.gather(
                self._build_audio(page, narrator, voices, asset_prefix, audio_errors) if audio_enabled else _nothing(),
                self._build_image(page, image_config, asset_prefix, image_errors),
            )
        except Exception as e:
            logger.exception(f"Page {page.page_number}: asset build crashed")
            return PageBuildResult(errors=audio_errors + image_errors + [page_error(e, "page")], failed=True)

        assets = PageAssets(
            audio=audio.public_path if audio else None,
            audio_url=audio.public_url if audio else None,
            image=image.public_path if image else None,
            image_url=image.public_url if image else None,
        )
        # an illustration failure degrades the page, missing audio fails it
        failed = audio_enabled and bool(page.timeline) and audio is None
        return PageBuildResult(assets=assets, errors=audio_errors + image_errors, failed=failed)

    async def synthesize_beat(self, beat: Beat, narrator: VoiceProfile, voices: CharacterVoiceCache) -> bytes:
        if isinstance(beat, NarrationBeat):
            return await self.speech.synthesize(beat.text, narrator.voice_id, narrator.voice_settings)
        if isinstance(beat, CharacterBeat):
            profile = voices.profile_for(beat)
            # voice id is fixed per character, delivery follows each line's emotion
            voice_settings = beat.voice_settings or settings_for_emotion(
                beat.emotion, voices.catalog.character_settings, voices.catalog
            )
            return await self.speech.synthesize(beat.text, profile.voice_id, voice_settings)
        if isinstance(beat, SfxBeat):
            return await self.speech.sound_effect(beat.description, estimate_sfx_duration(beat.description))
        raise TypeError(f"Unsupported beat type: {type(beat).__name__}")

    async def _build_audio(self, page: Page, narrator: VoiceProfile, voices: CharacterVoiceCache,
                           prefix: str, errors: List[PageError]) -> Optional[StoredAsset]:
        segments: List[bytes] = []
        for index, beat in enumerate(page.timeline, start=1):
            try:
                segments.append(await self.synthesize_beat(beat, narrator, voices))
            except Exception as e:
                logger.warning(f"Page {page.page_number} beat {index} ({beat.type}) failed: {e}")
                errors.append(page_error(e, beat.type))

        if not segments:
            return None

        directory = _join("audio", prefix)
        filename = f"page-{page.page_number}.mp3"
        try:
            return await self.mixer.mix(segments, directory, filename)
        except Exception as e:
            logger.warning(f"Page {page.page_number}: mixing {len(segments)} segments failed ({e}), keeping first segment")
            errors.append(page_error(e, "mix"))
        try:
            return await self.storage.save_bytes(segments[0], directory, filename)
        except Exception as e:
            logger.error(f"Page {page.page_number}: could not store fallback audio: {e}")
            errors.append(page_error(e, "mix"))
            return None

    async def _build_image(self, page: Page, image_config: ImageConfig, prefix: str,
                           errors: List[PageError]) -> Optional[StoredAsset]:
        if not image_config.enabled or not page.image_prompt:
            return None
        try:
            illustration = await self.images.illustrate(
                page.image_prompt,
                seed=image_config.seed,
                art_style=image_config.art_style,
                aspect_ratio=image_config.aspect_ratio,
            )
            return await self.storage.save_bytes(
                illustration.image, _join("images", prefix), f"page-{page.page_number}.png"
            )
        except Exception as e:
            logger.warning(f"Page {page.page_number}: illustration failed: {e}")
            errors.append(page_error(e, "image"))
            return None


async def _nothing():
    return None


def _join(directory: str, prefix: str) -> str:
    return f"{directory}/{prefix.strip('/')}" if prefix else directory
