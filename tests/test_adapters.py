"""
Tests for the provider adapters and media helpers, with httpx served by a
MockTransport and ffmpeg replaced by a patched subprocess call.
"""
import io
import json
import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from PIL import Image

from storybook import elevenlabs_client, media, replicate_client, settings
from storybook.errors import ConfigurationError, UpstreamProviderError, ValidationError
from storybook.media import AssetStorage, AudioMixer
from storybook.models import VoiceSettings

from conftest import serve_httpx


def _image_bytes(fmt="WEBP", mode="RGB"):
    buf = io.BytesIO()
    Image.new(mode, (4, 4), (10, 20, 30, 128) if mode == "RGBA" else (10, 20, 30)).save(buf, format=fmt)
    return buf.getvalue()


# --- ElevenLabs ---

@pytest.fixture
def eleven_key(monkeypatch):
    monkeypatch.setenv("ELEVENLABS_API_KEY", "el-test")


@pytest.mark.asyncio
async def test_tts_posts_text_voice_and_settings(monkeypatch, eleven_key):
    requests = serve_httpx(monkeypatch, elevenlabs_client, lambda r: httpx.Response(200, content=b"mp3"))

    audio = await elevenlabs_client.tts_to_bytes("Hello", "voice123456789", VoiceSettings(stability=0.9, speed=1.1))

    assert audio == b"mp3"
    request = requests[0]
    assert request.url.path == "/v1/text-to-speech/voice123456789"
    assert request.headers["xi-api-key"] == "el-test"
    body = json.loads(request.content)
    assert body["text"] == "Hello"
    assert body["model_id"] == settings.ELEVENLABS_MODEL_ID
    assert body["voice_settings"] == {"stability": 0.9, "similarity_boost": 0.75, "style": 0.0, "speed": 1.1}


@pytest.mark.asyncio
async def test_tts_retries_rate_limits(monkeypatch, eleven_key):
    responses = iter([httpx.Response(429), httpx.Response(429), httpx.Response(200, content=b"ok")])
    serve_httpx(monkeypatch, elevenlabs_client, lambda r: next(responses))
    sleep = AsyncMock()
    monkeypatch.setattr(elevenlabs_client.asyncio, "sleep", sleep)

    assert await elevenlabs_client.tts_to_bytes("Hi", "voice123456789") == b"ok"
    assert [c.args[0] for c in sleep.call_args_list] == [1, 2]


@pytest.mark.asyncio
async def test_tts_error_carries_provider_status_and_body(monkeypatch, eleven_key):
    serve_httpx(monkeypatch, elevenlabs_client, lambda r: httpx.Response(401, text="bad key"))

    with pytest.raises(UpstreamProviderError) as exc:
        await elevenlabs_client.tts_to_bytes("Hi", "voice123456789")

    assert exc.value.provider == "elevenlabs"
    assert exc.value.status_code == 401
    assert exc.value.detail == "bad key"


@pytest.mark.asyncio
async def test_tts_timeout_is_504(monkeypatch, eleven_key):
    def timeout(request):
        raise httpx.ReadTimeout("slow", request=request)

    serve_httpx(monkeypatch, elevenlabs_client, timeout)
    with pytest.raises(UpstreamProviderError) as exc:
        await elevenlabs_client.tts_to_bytes("Hi", "voice123456789")
    assert exc.value.status_code == 504


@pytest.mark.asyncio
async def test_missing_eleven_key_is_a_configuration_error(monkeypatch):
    monkeypatch.delenv("ELEVENLABS_API_KEY", raising=False)
    with pytest.raises(ConfigurationError):
        await elevenlabs_client.tts_to_bytes("Hi", "voice123456789")


@pytest.mark.asyncio
async def test_sound_effect_and_clone(monkeypatch, eleven_key):
    def handler(request):
        if request.url.path == "/v1/voices/add":
            return httpx.Response(200, json={"voice_id": "clonedvoice0001"})
        return httpx.Response(200, content=b"sfx")

    requests = serve_httpx(monkeypatch, elevenlabs_client, handler)

    assert await elevenlabs_client.sound_effect_to_bytes("rain", 4.0) == b"sfx"
    assert json.loads(requests[0].content) == {"text": "rain", "prompt_influence": 0.5, "duration_seconds": 4.0}
    assert await elevenlabs_client.clone_voice(b"sample") == "clonedvoice0001"
    assert b'name="files"' in requests[1].content


@pytest.mark.asyncio
async def test_list_voices_is_camel_cased(monkeypatch, eleven_key):
    payload = {"voices": [{"voice_id": "abc", "name": "Ann", "category": "premade", "preview_url": "u"}]}
    serve_httpx(monkeypatch, elevenlabs_client, lambda r: httpx.Response(200, json=payload))

    voices = await elevenlabs_client.list_voices()
    assert voices == [{
        "voiceId": "abc", "name": "Ann", "category": "premade",
        "description": None, "labels": {}, "previewUrl": "u",
    }]


# --- Replicate ---

@pytest.fixture
def replicate_env(monkeypatch):
    monkeypatch.setenv("REPLICATE_API_TOKEN", "r8-test")
    monkeypatch.setattr(settings, "REPLICATE_MODEL_VERSION", "")
    monkeypatch.setattr(settings, "REPLICATE_POLL_INTERVAL_MS", 0)


@pytest.mark.asyncio
async def test_illustration_is_polled_downloaded_and_converted(monkeypatch, replicate_env):
    statuses = iter(["starting", "processing", "succeeded"])

    def handler(request):
        path = request.url.path
        if request.method == "POST":
            return httpx.Response(201, json={"id": "pred-1"})
        if path == "/v1/predictions/pred-1":
            status = next(statuses)
            return httpx.Response(200, json={"status": status, "output": ["https://cdn.example/out.webp"]})
        if path == "/out.webp":
            return httpx.Response(200, content=_image_bytes("WEBP"))
        return httpx.Response(404)

    requests = serve_httpx(monkeypatch, replicate_client, handler)

    illustration = await replicate_client.generate_illustration("A fox", seed=11, art_style="watercolor", aspect_ratio="1:1")

    create = requests[0]
    assert create.url.path == "/v1/models/black-forest-labs/flux-schnell/predictions"
    body = json.loads(create.content)["input"]
    assert body["seed"] == 11
    assert body["aspect_ratio"] == "1:1"
    assert body["prompt"].startswith("A fox, watercolor illustration style")
    assert illustration.image.startswith(b"\x89PNG")
    assert illustration.seed == 11
    assert illustration.meta["predictionId"] == "pred-1"
    assert illustration.meta["sourceUrl"] == "https://cdn.example/out.webp"


@pytest.mark.asyncio
async def test_failed_prediction_is_an_upstream_error(monkeypatch, replicate_env):
    def handler(request):
        if request.method == "POST":
            return httpx.Response(201, json={"id": "pred-2"})
        return httpx.Response(200, json={"status": "failed", "error": "NSFW"})

    serve_httpx(monkeypatch, replicate_client, handler)
    with pytest.raises(UpstreamProviderError) as exc:
        await replicate_client.generate_illustration("A fox")
    assert exc.value.provider == "replicate"
    assert exc.value.detail == {"error": "NSFW"}


@pytest.mark.asyncio
async def test_explicit_version_uses_the_predictions_endpoint(monkeypatch, replicate_env):
    monkeypatch.setattr(settings, "REPLICATE_MODEL_VERSION", "abc123version")

    def handler(request):
        if request.method == "POST":
            return httpx.Response(422, text="invalid version")
        return httpx.Response(404)

    requests = serve_httpx(monkeypatch, replicate_client, handler)
    with pytest.raises(UpstreamProviderError) as exc:
        await replicate_client.generate_illustration("A fox")

    assert requests[0].url.path == "/v1/predictions"
    assert json.loads(requests[0].content)["version"] == "abc123version"
    assert exc.value.status_code == 422


@pytest.mark.asyncio
async def test_stalled_prediction_times_out_with_504(monkeypatch, replicate_env):
    monkeypatch.setattr(settings, "REPLICATE_POLL_TIMEOUT_S", 0)
    monkeypatch.setattr(settings, "REPLICATE_POLL_INTERVAL_MS", 1)

    def handler(request):
        if request.method == "POST":
            return httpx.Response(201, json={"id": "pred-3"})
        return httpx.Response(200, json={"status": "processing"})

    requests = serve_httpx(monkeypatch, replicate_client, handler)
    with pytest.raises(UpstreamProviderError) as exc:
        await replicate_client.generate_illustration("A fox")

    assert exc.value.status_code == 504
    assert exc.value.provider == "replicate"
    assert any(r.url.path == "/v1/predictions/pred-3" for r in requests)


def test_to_png_flattens_transparency():
    png = replicate_client.to_png(_image_bytes("WEBP", mode="RGBA"))
    with Image.open(io.BytesIO(png)) as img:
        assert img.format == "PNG"
        assert img.mode == "RGB"

    already = _image_bytes("PNG")
    assert replicate_client.to_png(already) is already


# --- media ---

@pytest.mark.asyncio
async def test_storage_writes_and_names_public_paths(tmp_path):
    storage = AssetStorage(root=str(tmp_path), public_base_url="https://cdn.example/")

    asset = await storage.save_bytes(b"data", "audio/story-1", "page-1.mp3")

    assert asset.public_path == "/audio/story-1/page-1.mp3"
    assert asset.public_url == "https://cdn.example/audio/story-1/page-1.mp3"
    assert (tmp_path / "audio" / "story-1" / "page-1.mp3").read_bytes() == b"data"

    asset = await storage.save_base64("aGk=", "images", "x.png")
    assert (tmp_path / "images" / "x.png").read_bytes() == b"hi"


@pytest.mark.asyncio
async def test_mixer_stores_a_single_segment_as_is(tmp_path):
    storage = AssetStorage(root=str(tmp_path), public_base_url="")
    with patch.object(media.subprocess, "run") as run:
        asset = await AudioMixer(storage).mix([b"only"], "audio/s", "page-1.mp3")

    run.assert_not_called()
    assert asset.public_url == "/audio/s/page-1.mp3"
    assert (tmp_path / "audio" / "s" / "page-1.mp3").read_bytes() == b"only"


@pytest.mark.asyncio
async def test_mixer_concatenates_with_ffmpeg(tmp_path):
    storage = AssetStorage(root=str(tmp_path), public_base_url="")

    def fake_ffmpeg(cmd, **kwargs):
        out_path = cmd.rsplit(" ", 1)[-1].strip("'")
        with open(out_path, "wb") as f:
            f.write(b"mixed")
        return MagicMock(returncode=0)

    with patch.object(media.subprocess, "run", side_effect=fake_ffmpeg) as run:
        await AudioMixer(storage).mix([b"a", b"b", b"c"], "audio/s", "page-2.mp3")

    cmd = run.call_args.args[0]
    assert "concat=n=3:v=0:a=1" in cmd
    assert cmd.count(" -i ") == 3
    assert (tmp_path / "audio" / "s" / "page-2.mp3").read_bytes() == b"mixed"


@pytest.mark.asyncio
async def test_mixer_failure_is_raised(tmp_path):
    storage = AssetStorage(root=str(tmp_path), public_base_url="")
    failed = MagicMock(returncode=1, stderr=b"Invalid data found")

    with patch.object(media.subprocess, "run", return_value=failed):
        with pytest.raises(RuntimeError, match="Invalid data found"):
            await AudioMixer(storage).mix([b"a", b"b"], "audio/s", "page-3.mp3")

    with pytest.raises(ValueError):
        await AudioMixer(storage).mix([], "audio/s", "page-4.mp3")


@pytest.mark.asyncio
async def test_storage_refuses_paths_outside_its_root(tmp_path):
    root = tmp_path / "assets"
    storage = AssetStorage(root=str(root), public_base_url="")

    with pytest.raises(ValidationError):
        await storage.save_bytes(b"x", "audio/s", "../../../outside.mp3")
    with pytest.raises(ValidationError):
        storage.path_for("../images", "page-1.png")

    assert not (tmp_path / "outside.mp3").exists()
    assert not (tmp_path / "images").exists()
