"""
Job state for story builds.

The pipeline writes through the StoryStateStore interface; the in-memory
implementation is the only one shipped. Nothing survives a restart.
"""
import abc
import logging
import threading
import uuid
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from . import settings
from .errors import NotFoundError
from .models import (
    TERMINAL_STATUSES,
    PageAssets,
    PageError,
    PageLog,
    PageState,
    PipelineJob,
    Story,
    StorySession,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    "pending": ("processing", "failed"),
    "processing": ("completed", "failed"),
    "completed": (),
    "failed": (),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StoryStateStore(abc.ABC):
    @abc.abstractmethod
    def create(self, story: Story, session_id: Optional[str] = None) -> str:
        """Register a job with every page pending; return its id."""

    @abc.abstractmethod
    def get(self, story_id: str) -> Optional[PipelineJob]:
        """A consistent snapshot of the job, or None."""

    @abc.abstractmethod
    def update_page(self, story_id: str, page_number: int, *, status: Optional[str] = None,
                    assets: Optional[PageAssets] = None, errors: Iterable[PageError] = ()) -> PageState:
        """Apply a patch to one page; errors are appended, progress recomputed."""

    @abc.abstractmethod
    def append_log(self, story_id: str, page_number: int, message: str) -> None:
        ...

    @abc.abstractmethod
    def create_session(self) -> StorySession:
        ...

    @abc.abstractmethod
    def session_stories(self, session_id: str) -> List[PipelineJob]:
        """Snapshots of the session's stories still held, oldest first."""


class InMemoryStoryStore(StoryStateStore):
    def __init__(self, max_jobs: Optional[int] = None):
        self.max_jobs = max_jobs or settings.STORY_STATE_MAX_JOBS
        self._jobs: "OrderedDict[str, PipelineJob]" = OrderedDict()
        self._sessions: "OrderedDict[str, StorySession]" = OrderedDict()
        self._lock = threading.RLock()

    def create(self, story: Story, session_id: Optional[str] = None) -> str:
        story_id = str(uuid.uuid4())
        job = PipelineJob(
            story_id=story_id,
            story=story,
            pages=[PageState(page_number=p.page_number) for p in story.pages],
            progress=0.0,
            created_at=utcnow(),
            session_id=session_id,
        )
        with self._lock:
            self._jobs[story_id] = job
            while len(self._jobs) > self.max_jobs:
                evicted, old = self._jobs.popitem(last=False)
                owner = self._sessions.get(old.session_id) if old.session_id else None
                if owner is not None and evicted in owner.story_ids:
                    owner.story_ids.remove(evicted)
                logger.info(f"Evicted story {evicted} from state store (limit {self.max_jobs})")
            if session_id:
                # sessions minted before a restart are adopted rather than rejected
                self._session(session_id).story_ids.append(story_id)
        logger.info(f"Created story state {story_id} with {len(job.pages)} pages")
        return story_id

    def _session(self, session_id: str) -> StorySession:
        session = self._sessions.get(session_id)
        if session is None:
            session = StorySession(session_id=session_id, created_at=utcnow())
            self._sessions[session_id] = session
            while len(self._sessions) > self.max_jobs:
                self._sessions.popitem(last=False)
        return session

    def create_session(self) -> StorySession:
        with self._lock:
            session = self._session(str(uuid.uuid4()))
            logger.info(f"Created session {session.session_id}")
            return session.model_copy(deep=True)

    def session_stories(self, session_id: str) -> List[PipelineJob]:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return []
            return [self._jobs[i].model_copy(deep=True) for i in session.story_ids if i in self._jobs]

    def get(self, story_id: str) -> Optional[PipelineJob]:
        with self._lock:
            job = self._jobs.get(story_id)
            return job.model_copy(deep=True) if job is not None else None

    def _page(self, story_id: str, page_number: int):
        job = self._jobs.get(story_id)
        if job is None:
            raise NotFoundError(f"Story {story_id} not found")
        page = job.page(page_number)
        if page is None:
            raise NotFoundError(f"Page {page_number} not found in story {story_id}")
        return job, page

    def update_page(self, story_id: str, page_number: int, *, status: Optional[str] = None,
                    assets: Optional[PageAssets] = None, errors: Iterable[PageError] = ()) -> PageState:
        with self._lock:
            job, page = self._page(story_id, page_number)
            if status is not None and status != page.status:
                if status not in ALLOWED_TRANSITIONS[page.status]:
                    raise ValueError(f"Page {page_number} cannot move from {page.status} to {status}")
                page.status = status
            if assets is not None:
                page.assets = assets
            page.errors.extend(errors)
            done = sum(1 for p in job.pages if p.status in TERMINAL_STATUSES)
            job.progress = done / len(job.pages) if job.pages else 1.0
            if job.finished and job.completed_at is None:
                job.completed_at = utcnow()
            return page.model_copy(deep=True)

    def append_log(self, story_id: str, page_number: int, message: str) -> None:
        with self._lock:
            _, page = self._page(story_id, page_number)
            page.logs.append(PageLog(timestamp=utcnow(), message=message))

    def __len__(self) -> int:
        return len(self._jobs)
