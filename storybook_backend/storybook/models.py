from datetime import datetime
from typing import Annotated, Any, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

GENDERS = ("male", "female", "non-binary")


class CamelModel(BaseModel):
    # snake_case in Python, camelCase on the wire
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def parse_traits(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, (list, tuple)):
        return [str(t).strip() for t in value if str(t).strip()]
    return [t.strip() for t in str(value).split(",") if t.strip()]


# --- Voices ---

class VoiceSettings(CamelModel):
    model_config = ConfigDict(frozen=True)

    stability: float = 0.5
    similarity_boost: float = 0.75
    style: float = 0.0
    speed: float = 1.0

    def to_provider(self) -> dict:
        return self.model_dump()


class VoiceProfile(CamelModel):
    model_config = ConfigDict(frozen=True)

    voice_id: str
    voice_settings: VoiceSettings


# --- Story content ---

class Character(CamelModel):
    model_config = ConfigDict(frozen=True)

    name: str
    gender: str = "non-binary"
    traits: List[str] = Field(default_factory=list)
    description: Optional[str] = None

    @field_validator("gender", mode="before")
    @classmethod
    def _gender(cls, value):
        value = str(value or "").strip().lower()
        return value if value in GENDERS else "non-binary"

    @field_validator("traits", mode="before")
    @classmethod
    def _traits(cls, value):
        return parse_traits(value)

    @classmethod
    def parse(cls, value: Any) -> Optional["Character"]:
        """Accept a character object or the form shorthand "Name|gender|traits"."""
        if not value:
            return None
        if isinstance(value, Character):
            return value
        if isinstance(value, str):
            parts = [p.strip() for p in value.split("|")]
            name = parts[0]
            if not name:
                return None
            gender = parts[1] if len(parts) > 1 else ""
            traits = parts[2] if len(parts) > 2 and parts[2] else (parts[1] if len(parts) > 1 else "")
            if traits and traits.lower() == gender.lower():
                traits = ""
            return cls(name=name, gender=gender, traits=traits)
        if isinstance(value, dict):
            if not value.get("name"):
                return None
            return cls.model_validate(value)
        return None


class NarrationBeat(CamelModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["narration"] = "narration"
    text: str
    voice_id: Optional[str] = None
    voice_settings: Optional[VoiceSettings] = None


class CharacterBeat(CamelModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["character"] = "character"
    name: str = "Character"
    text: str
    emotion: Optional[str] = None
    voice_id: Optional[str] = None
    voice_settings: Optional[VoiceSettings] = None


class SfxBeat(CamelModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["sfx"] = "sfx"
    description: str
    placeholder: Optional[str] = None


Beat = Annotated[Union[NarrationBeat, CharacterBeat, SfxBeat], Field(discriminator="type")]


class Page(CamelModel):
    model_config = ConfigDict(frozen=True)

    page_number: int
    title: str
    image_prompt: Optional[str] = None
    timeline: List[Beat] = Field(default_factory=list)
    summary: Optional[str] = None
    dialogue_text: str = ""
    warnings: List[str] = Field(default_factory=list)


class StoryMetadata(CamelModel):
    model_config = ConfigDict(frozen=True)

    genre: Optional[str] = None
    target_audience: Optional[str] = None
    theme: Optional[str] = None


class Story(CamelModel):
    model_config = ConfigDict(frozen=True)

    title: str
    logline: str
    characters: List[Character] = Field(default_factory=list)
    pages: List[Page]
    full_text: str = ""
    metadata: StoryMetadata = Field(default_factory=StoryMetadata)

    def summary(self) -> dict:
        return {
            "title": self.title,
            "logline": self.logline,
            "characters": [c.model_dump(by_alias=True) for c in self.characters],
        }


# --- Pipeline state ---

PageStatus = Literal["pending", "processing", "completed", "failed"]
TERMINAL_STATUSES = ("completed", "failed")
ErrorStage = Literal["narration", "character", "sfx", "mix", "image", "page"]


class StoredAsset(CamelModel):
    public_path: str
    public_url: str


class PageAssets(CamelModel):
    image: Optional[str] = None
    image_url: Optional[str] = None
    audio: Optional[str] = None
    audio_url: Optional[str] = None


class PageError(CamelModel):
    message: str
    stage: ErrorStage
    provider: Optional[str] = None
    status_code: Optional[int] = None


class PageLog(CamelModel):
    timestamp: datetime
    message: str


class PageState(CamelModel):
    page_number: int
    status: PageStatus = "pending"
    assets: PageAssets = Field(default_factory=PageAssets)
    logs: List[PageLog] = Field(default_factory=list)
    errors: List[PageError] = Field(default_factory=list)


class PageBuildResult(CamelModel):
    assets: PageAssets = Field(default_factory=PageAssets)
    errors: List[PageError] = Field(default_factory=list)
    failed: bool = False


class PipelineJob(CamelModel):
    story_id: str
    story: Story
    pages: List[PageState]
    progress: float = 0.0
    created_at: datetime
    completed_at: Optional[datetime] = None
    session_id: Optional[str] = None

    def page(self, page_number: int) -> Optional[PageState]:
        return next((p for p in self.pages if p.page_number == page_number), None)

    @property
    def finished(self) -> bool:
        return all(p.status in TERMINAL_STATUSES for p in self.pages)

    @property
    def status(self) -> str:
        """processing until every page is terminal; failed only when no page completed."""
        if not self.finished:
            return "processing"
        if self.pages and all(p.status == "failed" for p in self.pages):
            return "failed"
        return "completed"

    def listing(self) -> dict:
        first_image = next((p.assets.image_url for p in self.pages if p.assets.image_url), None)
        return {
            "id": self.story_id,
            "title": self.story.title,
            "genre": self.story.metadata.genre,
            "storyLength": len(self.pages),
            "status": self.status,
            "progress": self.progress,
            "thumbnail": first_image,
            "createdAt": self.created_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }


class StorySession(CamelModel):
    session_id: str
    created_at: datetime
    story_ids: List[str] = Field(default_factory=list)


# --- Requests ---

class StoryRequest(CamelModel):
    theme: Optional[str] = None
    genre: Optional[str] = None
    target_age_group: Optional[str] = None
    story_length: Optional[int] = None
    art_style: Optional[str] = None
    narration_tone: Optional[str] = None
    main_character: Optional[Character] = None
    supporting_characters: List[Character] = Field(default_factory=list)
    narration_voice_id: Optional[str] = None
    narration_voice_alias: Optional[str] = None
    use_user_voice_for_narration: bool = False
    voice_sample_base64: Optional[str] = None
    voice_sample_format: str = "mp3"
    session_id: Optional[str] = None

    @field_validator("main_character", mode="before")
    @classmethod
    def _main_character(cls, value):
        return Character.parse(value)

    @field_validator("supporting_characters", mode="before")
    @classmethod
    def _supporting_characters(cls, value):
        if not isinstance(value, list):
            return []
        return [c for c in (Character.parse(v) for v in value) if c is not None]

    @field_validator("story_length", mode="before")
    @classmethod
    def _story_length(cls, value):
        if value in (None, ""):
            return None
        return value

    def missing_fields(self) -> List[str]:
        required = [
            ("theme", self.theme),
            ("genre", self.genre),
            ("targetAgeGroup", self.target_age_group),
            ("storyLength", self.story_length),
        ]
        return [name for name, value in required if not value]

    @property
    def page_count(self) -> int:
        return self.story_length or 6

    def characters(self) -> List[Character]:
        main = [self.main_character] if self.main_character else []
        return main + list(self.supporting_characters)


class BundleRequest(StoryRequest):
    create_audio: bool = True
    create_images: bool = True
    aspect_ratio: str = "3:2"


class NarrateRequest(CamelModel):
    text: Optional[str] = None
    voice_id: Optional[str] = None
    voice_settings: Optional[VoiceSettings] = None


class NarratePagesRequest(CamelModel):
    pages: List[dict] = Field(default_factory=list)
    voice_id: Optional[str] = None
    voice_alias: Optional[str] = None


class IllustrateRequest(CamelModel):
    prompt: Optional[str] = None
    page_number: Optional[int] = None
    art_style: str = "storybook"
    aspect_ratio: str = "3:2"
    seed: Optional[int] = None


class GenerateImagesRequest(CamelModel):
    pages: List[dict] = Field(default_factory=list)
    art_style: str = "storybook"
    aspect_ratio: str = "3:2"
