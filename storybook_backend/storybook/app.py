import os
import logging
from datetime import datetime, timedelta, timezone
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

# Ensure .env is loaded before importing modules that initialize API clients
from . import settings
from .errors import ConfigurationError, FeatureDisabledError, NotFoundError, StorybookError
from .models import (
    BundleRequest,
    GenerateImagesRequest,
    IllustrateRequest,
    NarrateRequest,
    NarratePagesRequest,
    StoryRequest,
)
from .orchestrator import StoryPipeline, validate_story_request

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Storybook Backend")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS or ["*"],
    allow_credentials=True,
    allow_methods=["POST", "GET", "OPTIONS"],
    allow_headers=["*"],
)

_pipeline = None


def get_pipeline() -> StoryPipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = StoryPipeline.default()
    return _pipeline


@app.exception_handler(StorybookError)
async def storybook_error_handler(request: Request, exc: StorybookError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"message": "Invalid request body", "detail": jsonable_encoder(exc.errors())})


def _require(enabled: bool, feature: str):
    if not enabled:
        raise FeatureDisabledError(feature)


def _require_keys(audio: bool = True, images: bool = True):
    missing = settings.missing_keys(audio=audio, images=images)
    if missing:
        logger.error(f"API keys missing, cannot start: {', '.join(missing)}")
        raise ConfigurationError(f"Server configuration error: missing {', '.join(missing)}")


@app.get("/health")
def health():
    keys_ok = settings.has_all_keys()
    logger.info(f"Health check: API keys present = {keys_ok}")
    return {"ok": True, "hasKeys": keys_ok}


router = APIRouter(prefix="/api/story")


@router.post("/generate", status_code=201)
async def generate_story(req: StoryRequest, pipeline: StoryPipeline = Depends(get_pipeline)):
    validate_story_request(req)
    _require_keys(audio=False, images=False)
    story = await pipeline.generate_story(req)
    return story.model_dump(by_alias=True)


@router.post("/build", status_code=202)
async def build_story(req: StoryRequest, pipeline: StoryPipeline = Depends(get_pipeline)):
    validate_story_request(req)
    _require_keys(audio=settings.ENABLE_AUDIO, images=settings.ENABLE_IMAGES)
    handle = await pipeline.start_build(
        req, audio_enabled=settings.ENABLE_AUDIO, images_enabled=settings.ENABLE_IMAGES,
    )
    return {"storyId": handle.story_id, "story": handle.story.model_dump(by_alias=True)}


# Fixed paths are registered before the /{story_id}/... routes

@router.post("/narrate", status_code=201)
async def narrate(req: NarrateRequest, pipeline: StoryPipeline = Depends(get_pipeline)):
    _require(settings.ENABLE_AUDIO and settings.ENABLE_ELEVEN_ENDPOINTS, "Narration")
    return await pipeline.narrate(req)


@router.post("/narrate-pages", status_code=201)
async def narrate_pages(req: NarratePagesRequest, pipeline: StoryPipeline = Depends(get_pipeline)):
    _require(settings.ENABLE_AUDIO and settings.ENABLE_ELEVEN_ENDPOINTS, "Narrate pages")
    return {"audios": await pipeline.narrate_pages(req)}


@router.post("/illustrate", status_code=201)
async def illustrate(req: IllustrateRequest, pipeline: StoryPipeline = Depends(get_pipeline)):
    _require(settings.ENABLE_IMAGES, "Illustration")
    return await pipeline.illustrate(req)


@router.post("/generate-images", status_code=201)
async def generate_images(req: GenerateImagesRequest, pipeline: StoryPipeline = Depends(get_pipeline)):
    _require(settings.ENABLE_IMAGES, "Generate Images")
    return {"images": await pipeline.generate_images(req)}


@router.post("/bundle", status_code=201)
async def bundle(req: BundleRequest, pipeline: StoryPipeline = Depends(get_pipeline)):
    _require(settings.ENABLE_BUNDLE, "Bundle")
    validate_story_request(req)
    req = req.model_copy(update={
        "create_audio": req.create_audio and settings.ENABLE_AUDIO,
        "create_images": req.create_images and settings.ENABLE_IMAGES,
    })
    _require_keys(audio=req.create_audio, images=req.create_images)
    return await pipeline.build_bundle(req)


@router.get("/voices")
async def list_voices(pipeline: StoryPipeline = Depends(get_pipeline)):
    _require(settings.ENABLE_ELEVEN_ENDPOINTS, "Voices")
    return {"voices": await pipeline.speech.list_voices()}


@router.get("/narrator-voices")
def list_narrator_voices(pipeline: StoryPipeline = Depends(get_pipeline)):
    voices = [dict(v) for v in pipeline.catalog.narrator_voices]
    return {"voices": voices, "total": len(voices)}


@router.post("/session", status_code=201)
def create_session(pipeline: StoryPipeline = Depends(get_pipeline)):
    session = pipeline.store.create_session()
    return {"sessionId": session.session_id, "createdAt": session.created_at.isoformat()}


@router.get("/session/{session_id}/stories")
def session_stories(session_id: str, pipeline: StoryPipeline = Depends(get_pipeline)):
    stories = [job.listing() for job in reversed(pipeline.store.session_stories(session_id))]
    return {"sessionId": session_id, "stories": stories, "total": len(stories)}


@router.get("/session/{session_id}/stats")
def session_stats(session_id: str, pipeline: StoryPipeline = Depends(get_pipeline)):
    jobs = pipeline.store.session_stories(session_id)
    day_ago = datetime.now(timezone.utc) - timedelta(days=1)
    return {
        "sessionId": session_id,
        "totalStories": len(jobs),
        "completedStories": sum(1 for j in jobs if j.status == "completed"),
        "failedStories": sum(1 for j in jobs if j.status == "failed"),
        "inProgressStories": sum(1 for j in jobs if j.status == "processing"),
        "totalPages": sum(len(j.pages) for j in jobs),
        "newToday": sum(1 for j in jobs if j.created_at > day_ago),
    }


def _job(pipeline: StoryPipeline, story_id: str):
    job = pipeline.store.get(story_id)
    if job is None:
        raise NotFoundError("Story not found")
    return job


@router.get("/{story_id}/status")
def story_status(story_id: str, pipeline: StoryPipeline = Depends(get_pipeline)):
    job = _job(pipeline, story_id)
    return {
        "story": job.story.summary(),
        "pages": [p.model_dump(mode="json", by_alias=True) for p in job.pages],
        "progress": job.progress,
        "status": job.status,
        "createdAt": job.created_at.isoformat(),
        "completedAt": job.completed_at.isoformat() if job.completed_at else None,
    }


@router.get("/{story_id}/logs")
def story_logs(story_id: str, pipeline: StoryPipeline = Depends(get_pipeline)):
    job = _job(pipeline, story_id)
    return {
        "storyId": job.story_id,
        "progress": job.progress,
        "pages": [
            {
                "pageNumber": p.page_number,
                "status": p.status,
                "logs": [log.model_dump(mode="json", by_alias=True) for log in p.logs],
                "errors": [e.model_dump(mode="json", by_alias=True) for e in p.errors],
            }
            for p in job.pages
        ],
    }


@router.get("/{story_id}/page/{page_number}")
def story_page(story_id: str, page_number: int, pipeline: StoryPipeline = Depends(get_pipeline)):
    job = _job(pipeline, story_id)
    state = job.page(page_number)
    content = next((p for p in job.story.pages if p.page_number == page_number), None)
    if state is None or content is None:
        raise NotFoundError("Page not found")
    return {
        "pageNumber": page_number,
        "status": state.status,
        "assets": state.assets.model_dump(by_alias=True),
        "errors": [e.model_dump(mode="json", by_alias=True) for e in state.errors],
        "content": content.model_dump(by_alias=True),
    }


@router.get("/{story_id}")
def story_detail(story_id: str, pipeline: StoryPipeline = Depends(get_pipeline)):
    job = _job(pipeline, story_id)
    return {
        **job.listing(),
        "sessionId": job.session_id,
        "story": job.story.model_dump(by_alias=True),
        "pages": [p.model_dump(mode="json", by_alias=True) for p in job.pages],
    }


app.include_router(router)

for _directory in ("audio", "images"):
    _path = os.path.join(settings.ASSET_ROOT, _directory)
    os.makedirs(_path, exist_ok=True)
    app.mount(f"/{_directory}", StaticFiles(directory=_path), name=_directory)
