import os
from dotenv import load_dotenv
import logging

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Load .env file if it exists (for local development)
env_path = os.path.join(os.path.dirname(__file__), "..", ".env")
if os.path.exists(env_path):
    load_dotenv(env_path)
    logger.info("Loaded .env file for local development")
else:
    logger.info("No .env file found, using environment variables")


def _flag(name: str, default: bool = True) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() not in ("0", "false", "no", "off")


OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
OPENAI_TIMEOUT_S = float(os.getenv("OPENAI_TIMEOUT_S", "60"))

ELEVENLABS_MODEL_ID = os.getenv("ELEVENLABS_MODEL_ID", "eleven_multilingual_v2")
ELEVENLABS_TIMEOUT_S = float(os.getenv("ELEVENLABS_TIMEOUT_S", "60"))
ELEVENLABS_NARRATOR_VOICE_ID = os.getenv("ELEVENLABS_NARRATOR_VOICE_ID", "").strip()

REPLICATE_MODEL_VERSION = os.getenv("REPLICATE_MODEL_VERSION", "")
REPLICATE_POLL_INTERVAL_MS = int(os.getenv("REPLICATE_POLL_INTERVAL_MS", "1500"))
# Image generation is slow; never poll for less than two minutes
REPLICATE_POLL_TIMEOUT_S = max(int(os.getenv("REPLICATE_POLL_TIMEOUT_S", "180")), 120)

ASSET_ROOT = os.getenv("ASSET_ROOT", os.path.join(os.getcwd(), "public"))
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "").strip().rstrip("/")

PIPELINE_PAGE_CONCURRENCY = max(int(os.getenv("PIPELINE_PAGE_CONCURRENCY", "1")), 1)
STORY_STATE_MAX_JOBS = max(int(os.getenv("STORY_STATE_MAX_JOBS", "500")), 1)

ENABLE_AUDIO = _flag("ENABLE_AUDIO")
ENABLE_IMAGES = _flag("ENABLE_IMAGES")
ENABLE_BUNDLE = _flag("ENABLE_BUNDLE")
ENABLE_ELEVEN_ENDPOINTS = _flag("ENABLE_ELEVEN_ENDPOINTS")

# Comma-separated list of allowed origins for CORS (e.g., "https://app.vercel.app,https://www.example.com").
_allowed_origins_env = os.getenv("ALLOWED_ORIGINS", "").strip()
if _allowed_origins_env:
    ALLOWED_ORIGINS = [o.strip() for o in _allowed_origins_env.split(",") if o.strip()]
else:
    ALLOWED_ORIGINS = ["*"]


def missing_keys(audio: bool = True, images: bool = True) -> list:
    """Names of provider credentials a build with these features still needs."""
    missing = []
    if not os.getenv("OPENAI_API_KEY", ""):
        missing.append("OPENAI_API_KEY")
    if audio and not os.getenv("ELEVENLABS_API_KEY", ""):
        missing.append("ELEVENLABS_API_KEY")
    if images and not os.getenv("REPLICATE_API_TOKEN", ""):
        missing.append("REPLICATE_API_TOKEN")
    return missing


def has_all_keys() -> bool:
    missing = missing_keys()
    if missing:
        logger.warning(f"Missing API keys: {', '.join(missing)}")
    return not missing
