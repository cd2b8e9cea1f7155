import uuid, base64, random, asyncio, binascii, logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from langgraph.graph import StateGraph, END
from pydantic import BaseModel, Field

from . import settings
from .errors import StorybookError, UpstreamProviderError, ValidationError
from .models import (
    BundleRequest,
    GenerateImagesRequest,
    IllustrateRequest,
    NarrateRequest,
    NarratePagesRequest,
    NarrationBeat,
    Page,
    Story,
    StoryRequest,
    VoiceProfile,
)
from .page_builder import ImageConfig, PageAssetBuilder, page_error
from .state_store import InMemoryStoryStore, StoryStateStore
from .tasks import TaskSupervisor
from .timeline import normalize_timeline, timeline_to_markdown
from .voices import (
    DEFAULT_CATALOG,
    NARRATOR,
    CharacterVoiceCache,
    VoiceCatalog,
    explicit_narrator_profile,
    match_narrator_tone,
    narrator_profile,
    resolve_voice_id,
)

logger = logging.getLogger(__name__)

SEED_RANGE = 10_000_000


def new_seed() -> int:
    return random.randrange(SEED_RANGE)


@dataclass
class BuildHandle:
    story_id: str
    story: Story
    task: asyncio.Task


class BundleState(BaseModel):
    request: BundleRequest
    bundle_id: str
    narrator: Optional[VoiceProfile] = None
    story: Optional[Story] = None
    pages: List[dict] = Field(default_factory=list)


def request_page_number(raw: dict, position: int) -> int:
    """Page number from a loose page payload; anything but a positive integer falls back to position."""
    value = raw.get("pageNumber", raw.get("page"))
    if isinstance(value, bool):
        return position
    if isinstance(value, str) and value.strip().isdecimal():
        value = int(value.strip())
    if isinstance(value, int) and value >= 1:
        return value
    return position


def validate_story_request(req: StoryRequest):
    missing = req.missing_fields()
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


class StoryPipeline:
    """
    Drives a story from request to finished pages.

    start_build() generates the story text, registers the job and hands the
    page loop to the supervisor; the HTTP caller gets the story id back
    before any audio or illustration exists. build_bundle() runs the same
    steps inline through a langgraph graph.
    """

    def __init__(self, speech, images, mixer, storage,
                 store: Optional[StoryStateStore] = None,
                 text_generator: Optional[Callable[[StoryRequest, str], Story]] = None,
                 catalog: VoiceCatalog = DEFAULT_CATALOG,
                 supervisor: Optional[TaskSupervisor] = None,
                 concurrency: Optional[int] = None,
                 seed_factory: Callable[[], int] = new_seed):
        if text_generator is None:
            from .llm import generate_story
            text_generator = generate_story
        self.speech = speech
        self.images = images
        self.storage = storage
        self.store = store if store is not None else InMemoryStoryStore()
        self.text_generator = text_generator
        self.catalog = catalog
        self.supervisor = supervisor or TaskSupervisor()
        self.concurrency = max(concurrency or settings.PIPELINE_PAGE_CONCURRENCY, 1)
        self.seed_factory = seed_factory
        self.builder = PageAssetBuilder(speech, images, mixer, storage)
        self._bundle_graph = self._build_bundle_graph()

    @classmethod
    def default(cls) -> "StoryPipeline":
        from .elevenlabs_client import ElevenLabsSpeech
        from .media import AssetStorage, AudioMixer
        from .replicate_client import ReplicateImages

        storage = AssetStorage()
        return cls(
            speech=ElevenLabsSpeech(),
            images=ReplicateImages(),
            mixer=AudioMixer(storage),
            storage=storage,
        )

    # --- story text and narrator ---

    async def generate_story(self, req: StoryRequest, narrator_voice_id: Optional[str] = None) -> Story:
        validate_story_request(req)
        voice_id = narrator_voice_id or narrator_profile(req.narration_tone, self.catalog).voice_id
        logger.info(f"Generating {req.page_count}-page {req.genre} story about {req.theme!r}")
        # the OpenAI client is synchronous
        story = await asyncio.to_thread(self.text_generator, req, voice_id)
        logger.info(f"Story {story.title!r} generated with {len(story.pages)} pages")
        return story

    async def resolve_narrator(self, req: StoryRequest) -> VoiceProfile:
        if req.use_user_voice_for_narration and req.voice_sample_base64:
            try:
                sample = base64.b64decode(req.voice_sample_base64, validate=True)
            except (binascii.Error, ValueError):
                raise ValidationError("voiceSampleBase64 is not valid base64.")
            voice_id = await self.speech.clone_voice(sample, req.voice_sample_format or "mp3", "User Narrator")
            if not voice_id:
                raise UpstreamProviderError("elevenlabs", "voice cloning completed without returning a voice ID")
            logger.info(f"Narrating with cloned voice {voice_id}")
            return VoiceProfile(voice_id=voice_id, voice_settings=self.catalog.cloned_narrator_settings)

        if not req.use_user_voice_for_narration:
            explicit = req.narration_voice_id or req.narration_voice_alias
            if explicit:
                profile = explicit_narrator_profile(explicit, self.catalog)
                logger.info(f"Narrating with requested voice {profile.voice_id}")
                return profile

        toned = match_narrator_tone(req.narration_tone, self.catalog)
        if toned:
            return VoiceProfile(voice_id=toned, voice_settings=self.catalog.emotion_presets["narrative"])
        if settings.ELEVENLABS_NARRATOR_VOICE_ID:
            return explicit_narrator_profile(settings.ELEVENLABS_NARRATOR_VOICE_ID, self.catalog)
        return narrator_profile(None, self.catalog)

    # --- asynchronous build ---

    async def start_build(self, req: StoryRequest, audio_enabled: bool = True,
                          images_enabled: bool = True) -> BuildHandle:
        validate_story_request(req)
        narrator = await self.resolve_narrator(req)
        story = await self.generate_story(req, narrator.voice_id)
        story_id = self.store.create(story, session_id=req.session_id)
        logger.info(f"[pipeline] Story {story_id}: received {len(story.pages)} pages, narrator {narrator.voice_id}")

        image_config = ImageConfig(
            enabled=images_enabled,
            art_style=req.art_style or "storybook",
            seed=self.seed_factory(),
        )
        task = self.supervisor.spawn(
            self.process_story(story_id, story, narrator, image_config, audio_enabled),
            name=f"story-{story_id}",
        )
        return BuildHandle(story_id=story_id, story=story, task=task)

    async def process_story(self, story_id: str, story: Story, narrator: VoiceProfile,
                            image_config: ImageConfig, audio_enabled: bool = True):
        voices = CharacterVoiceCache(story.characters, self.catalog)
        if self.concurrency > 1:
            # fan-out: every character voice is fixed before the first page starts
            voices.prime(story.pages)
            semaphore = asyncio.Semaphore(self.concurrency)

            async def bounded(page: Page):
                async with semaphore:
                    await self._process_page(story_id, page, narrator, voices, image_config, audio_enabled)

            await asyncio.gather(*(bounded(p) for p in story.pages))
        else:
            for page in story.pages:
                await self._process_page(story_id, page, narrator, voices, image_config, audio_enabled)

        job = self.store.get(story_id)
        if job is not None:
            failed = sum(1 for p in job.pages if p.status == "failed")
            logger.info(f"[pipeline] Story {story_id}: finished, {len(job.pages) - failed} completed, {failed} failed")

    async def _process_page(self, story_id: str, page: Page, narrator: VoiceProfile,
                            voices: CharacterVoiceCache, image_config: ImageConfig, audio_enabled: bool):
        n = page.page_number
        try:
            self.store.update_page(story_id, n, status="processing")
            self._log(story_id, n, f"Page {n}: processing started")
            result = await self.builder.build_page(
                page, narrator, voices, image_config,
                audio_enabled=audio_enabled, asset_prefix=story_id,
            )
            status = "failed" if result.failed else "completed"
            self.store.update_page(story_id, n, status=status, assets=result.assets, errors=result.errors)
            suffix = f" with {len(result.errors)} error(s)" if result.errors else ""
            self._log(story_id, n, f"Page {n}: {status}{suffix}")
        except Exception as e:
            logger.exception(f"[pipeline] Story {story_id}: page {n} crashed")
            self._mark_failed(story_id, n, e)

    def _log(self, story_id: str, page_number: int, message: str):
        logger.info(f"[pipeline] Story {story_id}: {message}")
        self.store.append_log(story_id, page_number, message)

    def _mark_failed(self, story_id: str, page_number: int, exc: Exception):
        try:
            self.store.update_page(story_id, page_number, status="failed", errors=[page_error(exc, "page")])
            self.store.append_log(story_id, page_number, f"Page {page_number}: failed ({exc})")
        except (StorybookError, ValueError) as e:
            # job evicted or page already terminal
            logger.error(f"[pipeline] Story {story_id}: could not record failure of page {page_number}: {e}")

    # --- synchronous bundle ---

    def _build_bundle_graph(self):
        g = StateGraph(BundleState)
        g.add_node("narrator", self._node_narrator)
        g.add_node("story", self._node_story)
        g.add_node("assets", self._node_assets)
        g.set_entry_point("narrator")
        g.add_edge("narrator", "story")
        g.add_edge("story", "assets")
        g.add_edge("assets", END)
        return g.compile()

    async def _node_narrator(self, state: BundleState) -> dict:
        narrator = await self.resolve_narrator(state.request)
        logger.info(f"[bundle] {state.bundle_id}: narrator voice {narrator.voice_id}")
        return {"narrator": narrator}

    async def _node_story(self, state: BundleState) -> dict:
        story = await self.generate_story(state.request, state.narrator.voice_id)
        return {"story": story}

    async def _node_assets(self, state: BundleState) -> dict:
        req = state.request
        voices = CharacterVoiceCache(state.story.characters, self.catalog)
        image_config = ImageConfig(
            enabled=req.create_images,
            art_style=req.art_style or "storybook",
            aspect_ratio=req.aspect_ratio,
            seed=self.seed_factory(),
        )
        pages = []
        for page in state.story.pages:
            logger.info(f"[bundle] {state.bundle_id}: page {page.page_number} start")
            result = await self.builder.build_page(
                page, state.narrator, voices, image_config,
                audio_enabled=req.create_audio, asset_prefix=state.bundle_id,
            )
            pages.append({
                "page": page.page_number,
                "status": "failed" if result.failed else "completed",
                **result.assets.model_dump(by_alias=True),
                "errors": [e.model_dump(by_alias=True, exclude_none=True) for e in result.errors],
                "textMd": timeline_to_markdown(page.timeline),
                "timeline": [b.model_dump(by_alias=True, exclude_none=True) for b in page.timeline],
            })
        logger.info(f"[bundle] {state.bundle_id}: completed {len(pages)} pages")
        return {"pages": pages}

    async def build_bundle(self, req: BundleRequest) -> dict:
        validate_story_request(req)
        final_state = await self._bundle_graph.ainvoke(BundleState(request=req, bundle_id=str(uuid.uuid4())))
        # langgraph hands back the channel values as a plain dict
        story = final_state["story"]
        if isinstance(story, dict):
            story = Story.model_validate(story)
        return {"story": story.summary(), "pages": final_state["pages"]}

    # --- standalone endpoints ---

    async def narrate(self, req: NarrateRequest) -> dict:
        if not req.text or not req.text.strip():
            raise ValidationError("Text is required for narration.")
        voice_id = resolve_voice_id(req.voice_id or settings.ELEVENLABS_NARRATOR_VOICE_ID, NARRATOR, self.catalog)
        audio = await self.speech.synthesize(req.text, voice_id, req.voice_settings)
        return {"voiceId": voice_id, "audioBase64": base64.b64encode(audio).decode("ascii")}

    async def narrate_pages(self, req: NarratePagesRequest) -> List[dict]:
        """Narration-only audio per page, all pages in one fixed voice."""
        if not req.pages:
            raise ValidationError("pages array is required.")
        if req.voice_alias:
            voice_id = resolve_voice_id(req.voice_alias, NARRATOR, self.catalog)
        else:
            voice_id = req.voice_id or resolve_voice_id(settings.ELEVENLABS_NARRATOR_VOICE_ID, NARRATOR, self.catalog)
        directory = f"audio/narration-{uuid.uuid4()}"

        results = []
        for raw in req.pages:
            page_number = request_page_number(raw, len(results) + 1)
            beats, _ = normalize_timeline(raw.get("timeline") or [])
            narration = [b for b in beats if isinstance(b, NarrationBeat)]
            text = " ".join(b.text for b in narration if b.text)
            if not text:
                results.append({"page": page_number, "audio": None, "audioUrl": None})
                continue
            voice_settings = narration[0].voice_settings or self.catalog.emotion_presets["calm"]
            audio = await self.speech.synthesize(text, voice_id, voice_settings)
            asset = await self.storage.save_bytes(audio, directory, f"page-{page_number}.mp3")
            results.append({"page": page_number, "audio": asset.public_path, "audioUrl": asset.public_url})
        return results

    async def illustrate(self, req: IllustrateRequest) -> dict:
        if not req.prompt or not req.prompt.strip():
            raise ValidationError("Prompt is required to generate an illustration.")
        seed = req.seed if req.seed is not None else self.seed_factory()
        illustration = await self.images.illustrate(
            req.prompt, seed=seed, art_style=req.art_style, aspect_ratio=req.aspect_ratio,
        )
        return {
            "pageNumber": req.page_number,
            "seed": illustration.seed,
            "imageBase64": base64.b64encode(illustration.image).decode("ascii"),
            "meta": illustration.meta,
        }

    async def generate_images(self, req: GenerateImagesRequest) -> List[dict]:
        """One illustration per page with a seed shared by the whole batch; failures become nulls."""
        if not req.pages:
            raise ValidationError("pages array is required.")
        seed = self.seed_factory()
        directory = f"images/batch-{uuid.uuid4()}"
        logger.info(f"Generating {len(req.pages)} illustrations with seed {seed}")

        results = []
        for raw in req.pages:
            page_number = request_page_number(raw, len(results) + 1)
            prompt = raw.get("imagePrompt") or raw.get("image_prompt")
            if not prompt:
                logger.warning(f"No image prompt for page {page_number}")
                results.append({"page": page_number, "image": None, "imageUrl": None})
                continue
            try:
                illustration = await self.images.illustrate(
                    prompt, seed=seed, art_style=req.art_style, aspect_ratio=req.aspect_ratio,
                )
                asset = await self.storage.save_bytes(illustration.image, directory, f"page-{page_number}.png")
            except Exception as e:
                logger.error(f"Failed to generate image for page {page_number}: {e}")
                results.append({"page": page_number, "image": None, "imageUrl": None})
                continue
            results.append({"page": page_number, "image": asset.public_path, "imageUrl": asset.public_url})
        return results
