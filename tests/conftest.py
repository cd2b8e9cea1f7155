"""
Pytest fixtures shared by the storybook backend tests.

Providers are replaced by in-process fakes; nothing here touches the network.
"""
import os
import tempfile

# Must be set before storybook.settings is imported
os.environ.setdefault("ASSET_ROOT", tempfile.mkdtemp(prefix="storybook-test-assets-"))
os.environ.setdefault("PUBLIC_BASE_URL", "http://testserver")

import httpx
import pytest

from storybook.errors import UpstreamProviderError
from storybook.llm import parse_story
from storybook.media import AssetStorage
from storybook.models import StoryRequest
from storybook.orchestrator import StoryPipeline
from storybook.replicate_client import Illustration
from storybook.state_store import InMemoryStoryStore
from storybook.tasks import TaskSupervisor


class FakeSpeech:
    """Records every call; fails for texts listed in fail_on."""

    def __init__(self, fail_on=(), fail_sfx=False, clone_id="cloned-voice-0001"):
        self.fail_on = set(fail_on)
        self.fail_sfx = fail_sfx
        self.clone_id = clone_id
        self.calls = []
        self.sfx_calls = []
        self.clones = []

    async def synthesize(self, text, voice_id, voice_settings=None):
        self.calls.append({"text": text, "voice_id": voice_id, "voice_settings": voice_settings})
        if text in self.fail_on:
            raise UpstreamProviderError("elevenlabs", "text-to-speech failed", status_code=500)
        return f"audio:{voice_id}:{text}".encode()

    async def sound_effect(self, description, duration_seconds=None):
        self.sfx_calls.append({"description": description, "duration_seconds": duration_seconds})
        if self.fail_sfx:
            raise UpstreamProviderError("elevenlabs", "sound generation failed", status_code=500)
        return f"sfx:{description}".encode()

    async def clone_voice(self, sample, sample_format="mp3", name="User Narrator"):
        self.clones.append({"sample": sample, "format": sample_format, "name": name})
        return self.clone_id

    async def list_voices(self):
        return [{"voiceId": "voice-1", "name": "Test Voice"}]


class FakeImages:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    async def illustrate(self, prompt, seed=None, art_style=None, aspect_ratio="3:2"):
        self.calls.append({"prompt": prompt, "seed": seed, "art_style": art_style, "aspect_ratio": aspect_ratio})
        if self.fail:
            raise UpstreamProviderError("replicate", "prediction failed")
        return Illustration(image=b"png:" + prompt.encode(), seed=seed)


class FakeMixer:
    """Concatenates bytes instead of running ffmpeg."""

    def __init__(self, storage, fail=False):
        self.storage = storage
        self.fail = fail
        self.calls = []

    async def mix(self, segments, directory, filename):
        self.calls.append(list(segments))
        if self.fail:
            raise RuntimeError("FFmpeg failed: boom")
        return await self.storage.save_bytes(b"".join(segments), directory, filename)


def story_payload(page_count=2):
    pages = []
    for n in range(1, page_count + 1):
        pages.append({
            "page_number": n,
            "title": f"Page {n}",
            "image_prompt": f"Alex and Sam in scene {n}",
            "timeline": [
                {"type": "narration", "text": f"Narration for page {n}."},
                {"type": "character", "name": "Alex", "text": f"Alex line {n}", "emotion": "joy"},
                {"type": "sfx", "description": "birds chirping"},
                {"type": "character", "name": "Sam", "text": f"Sam line {n}", "emotion": "curious"},
            ],
        })
    return {"title": "The Lost Kite", "genre": "adventure", "target_audience": "5-7", "pages": pages}


def story_body(**overrides):
    body = {
        "theme": "friendship",
        "genre": "adventure",
        "targetAgeGroup": "5-7",
        "storyLength": 2,
        "artStyle": "watercolor",
        "mainCharacter": {"name": "Alex", "gender": "male", "traits": ["brave", "curious"]},
        "supportingCharacters": [{"name": "Sam", "gender": "female", "traits": "loyal, inventive"}],
    }
    body.update(overrides)
    return body


_RealAsyncClient = httpx.AsyncClient


def serve_httpx(monkeypatch, module, handler):
    """Route every httpx.AsyncClient the module opens through handler."""
    requests = []

    def record(request):
        requests.append(request)
        return handler(request)

    def factory(*args, **kwargs):
        return _RealAsyncClient(*args, transport=httpx.MockTransport(record), **kwargs)

    monkeypatch.setattr(module.httpx, "AsyncClient", factory)
    return requests


class FakeTextGenerator:
    def __init__(self, payload=None):
        self.payload = payload
        self.calls = []

    def __call__(self, req: StoryRequest, narrator_voice_id: str):
        self.calls.append({"request": req, "narrator_voice_id": narrator_voice_id})
        return parse_story(self.payload or story_payload(req.page_count), req)


@pytest.fixture
def storage(tmp_path):
    return AssetStorage(root=str(tmp_path), public_base_url="http://testserver")


@pytest.fixture
def speech():
    return FakeSpeech()


@pytest.fixture
def images():
    return FakeImages()


@pytest.fixture
def mixer(storage):
    return FakeMixer(storage)


@pytest.fixture
def store():
    return InMemoryStoryStore(max_jobs=10)


@pytest.fixture
def text_generator():
    return FakeTextGenerator()


@pytest.fixture
def make_pipeline(speech, images, mixer, storage, store, text_generator):
    def _make(**overrides):
        kwargs = dict(
            speech=speech,
            images=images,
            mixer=mixer,
            storage=storage,
            store=store,
            text_generator=text_generator,
            supervisor=TaskSupervisor(),
            concurrency=1,
            seed_factory=lambda: 424242,
        )
        kwargs.update(overrides)
        return StoryPipeline(**kwargs)
    return _make


@pytest.fixture
def pipeline(make_pipeline):
    return make_pipeline()
