import os, asyncio, base64, logging, shlex, shutil, subprocess, tempfile
from typing import List, Optional

from . import settings
from .errors import ValidationError
from .models import StoredAsset

logger = logging.getLogger(__name__)


def write_bytes(path: str, data: bytes):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)


class AssetStorage:
    """Writes generated media under `root` and names them by their public path."""

    def __init__(self, root: Optional[str] = None, public_base_url: Optional[str] = None):
        self.root = root or settings.ASSET_ROOT
        self.public_base_url = (settings.PUBLIC_BASE_URL if public_base_url is None else public_base_url).rstrip("/")

    def path_for(self, directory: str, filename: str) -> str:
        root = os.path.realpath(self.root)
        path = os.path.realpath(os.path.join(root, *directory.strip("/").split("/"), filename))
        if os.path.commonpath([root, path]) != root or path == root:
            raise ValidationError(f"Asset path escapes the asset root: {directory}/{filename}")
        return path

    async def save_bytes(self, data: bytes, directory: str, filename: str) -> StoredAsset:
        path = self.path_for(directory, filename)
        await asyncio.to_thread(write_bytes, path, data)
        public_path = f"/{directory.strip('/')}/{filename}"
        logger.info(f"Saved {len(data)} bytes to {path}")
        return StoredAsset(public_path=public_path, public_url=f"{self.public_base_url}{public_path}")

    async def save_base64(self, data: str, directory: str, filename: str) -> StoredAsset:
        return await self.save_bytes(base64.b64decode(data), directory, filename)


def ffmpeg_concat_audio(inputs: List[str], out_path: str):
    sources = " ".join(f"-i {shlex.quote(p)}" for p in inputs)
    cmd = (
        f'ffmpeg -y {sources} -filter_complex "concat=n={len(inputs)}:v=0:a=1[out]" '
        f'-map "[out]" -c:a libmp3lame -q:a 4 {shlex.quote(out_path)}'
    )
    _run(cmd)


def _run(cmd: str):
    logger.info(f"Running FFmpeg command: {cmd}")
    proc = subprocess.run(cmd, shell=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    if proc.returncode != 0:
        error_msg = proc.stderr.decode("utf-8", errors="ignore")
        logger.error(f"FFmpeg command failed with return code {proc.returncode}: {error_msg[-2000:]}")
        raise RuntimeError(f"FFmpeg failed: {error_msg[-500:]}")


def _concat_to_bytes(segments: List[bytes]) -> bytes:
    tmp_dir = tempfile.mkdtemp(prefix="storybook-mix-")
    try:
        inputs = []
        for i, segment in enumerate(segments):
            path = os.path.join(tmp_dir, f"segment_{i:03d}.mp3")
            write_bytes(path, segment)
            inputs.append(path)
        out_path = os.path.join(tmp_dir, "mixed.mp3")
        ffmpeg_concat_audio(inputs, out_path)
        with open(out_path, "rb") as f:
            return f.read()
    finally:
        shutil.rmtree(tmp_dir, ignore_errors=True)


class AudioMixer:
    """Joins a page's audio segments, in order, into one MP3 asset."""

    def __init__(self, storage: AssetStorage):
        self.storage = storage

    async def mix(self, segments: List[bytes], directory: str, filename: str) -> StoredAsset:
        if not segments:
            raise ValueError("no audio segments to mix")
        if len(segments) == 1:
            mixed = segments[0]
        else:
            mixed = await asyncio.to_thread(_concat_to_bytes, segments)
        return await self.storage.save_bytes(mixed, directory, filename)
