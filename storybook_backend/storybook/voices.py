"""
Voice resolution for narration and character lines.

Everything here is a pure function of its arguments and a VoiceCatalog;
no network calls. The catalog is an immutable value so tests and callers
can pass their own instead of mutating a module global.
"""
import re
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional, Tuple

from .models import Character, CharacterBeat, Page, VoiceProfile, VoiceSettings

NARRATOR = "narrator"
CHARACTER = "character"


def _frozen(mapping: dict) -> Mapping:
    return MappingProxyType({
        k: _frozen(v) if isinstance(v, dict) else v for k, v in mapping.items()
    })


def normalize_key(value: str) -> str:
    key = re.sub(r"[^a-z0-9]+", "_", str(value).strip().lower())
    return key.strip("_")


def looks_like_voice_id(value) -> bool:
    return isinstance(value, str) and len(value) >= 12 and not re.search(r"\s", value)


@dataclass(frozen=True)
class VoiceCatalog:
    narrator_aliases: Mapping[str, str]
    character_aliases: Mapping[str, str]
    roles: Mapping[str, Mapping[str, str]]
    narrator_tones: Mapping[str, str]
    emotion_presets: Mapping[str, VoiceSettings]
    defaults: Mapping[str, str]
    narrator_voices: Tuple[Mapping[str, str], ...] = field(default=())
    explicit_narrator_settings: VoiceSettings = VoiceSettings(stability=0.5, similarity_boost=0.85, style=0.2)
    cloned_narrator_settings: VoiceSettings = VoiceSettings(stability=0.55, similarity_boost=0.85, style=0.2)
    character_settings: VoiceSettings = VoiceSettings(stability=0.5, similarity_boost=0.75, style=0.5)

    @classmethod
    def build(cls, **tables) -> "VoiceCatalog":
        frozen = {}
        for name, value in tables.items():
            if isinstance(value, dict):
                value = _frozen({normalize_key(k) if name.endswith("aliases") else k: v for k, v in value.items()})
            elif isinstance(value, list):
                value = tuple(_frozen(v) for v in value)
            frozen[name] = value
        return cls(**frozen)


def _preset(stability, similarity_boost, style, speed) -> VoiceSettings:
    return VoiceSettings(stability=stability, similarity_boost=similarity_boost, style=style, speed=speed)


DEFAULT_CATALOG = VoiceCatalog.build(
    narrator_aliases={
        "narrator_01": "EkK5I93UQWFDigLMpZcX",
        "warm_narrator": "EkK5I93UQWFDigLMpZcX",
        "james_husky_engaging": "EkK5I93UQWFDigLMpZcX",
        "rebekah_nemethy_pro_narration": "ESELSAYNsoxwNZeqEklA",
        "jameson_guided_meditation_narration": "Mu5jxyqZOLIGltFpfalg",
        "hope_soothing_narrator": "iCrDUkL56s3C8sCRl7wb",
        "w_storytime_oxley": "iUqOXhMfiOIbBejNtfLR",
        "rachel": "21m00Tcm4TlvDq8ikWAM",
        "sarah": "EXAVITQu4vr4xnSDxMaL",
        "alice": "Xb7hH8MSUJpSbSDYk0k2",
        "lily": "pFZP5JQG7iQjIQuC4Bku",
        "daniel": "onwK4e9ZLuTAKqWW03F9",
    },
    character_aliases={
        "hero_01": "ZF6FPAbjXT4488VcRRnw",
        "sidekick_01": "Crm8VULvkVs5ZBDa1Ixm",
        "villain_01": "2EiwWnXFnvU5JabPnv8n",
        "liam": "TX3LPaxmHKxFdv7VOQHJ",
        "amelia": "ZF6FPAbjXT4488VcRRnw",
        "drew": "29vD33N1CtxCmqQRPOHJ",
        "clyde": "2EiwWnXFnvU5JabPnv8n",
        "charlotte": "XB0fDUnXU5powFXDhCwa",
        "john_doe_deep": "EiNlNiXeDU1pqqOPrYMO",
        "oracle_x": "1hlpeD1ydbI2ow0Tt3EW",
        "johnny_kid_serious": "8JVbfL6oEdmuxKn5DK2C",
        "andrea_wolff": "Crm8VULvkVs5ZBDa1Ixm",
    },
    roles={
        "male": {
            "hero": "TX3LPaxmHKxFdv7VOQHJ",
            "sidekick": "29vD33N1CtxCmqQRPOHJ",
            "villain": "2EiwWnXFnvU5JabPnv8n",
            "mentor": "EiNlNiXeDU1pqqOPrYMO",
            "mystical": "1hlpeD1ydbI2ow0Tt3EW",
        },
        "female": {
            "hero": "ZF6FPAbjXT4488VcRRnw",
            "sidekick": "Crm8VULvkVs5ZBDa1Ixm",
            "villain": "XB0fDUnXU5powFXDhCwa",
            "mentor": "Xb7hH8MSUJpSbSDYk0k2",
            "mystical": "1hlpeD1ydbI2ow0Tt3EW",
        },
        "non-binary": {
            "hero": "Mu5jxyqZOLIGltFpfalg",
            "mystical": "1hlpeD1ydbI2ow0Tt3EW",
        },
    },
    narrator_tones={
        "children": "iCrDUkL56s3C8sCRl7wb",
        "gentle": "iCrDUkL56s3C8sCRl7wb",
        "bedtime": "iCrDUkL56s3C8sCRl7wb",
        "adventure": "iUqOXhMfiOIbBejNtfLR",
        "classic": "iUqOXhMfiOIbBejNtfLR",
        "meditation": "Mu5jxyqZOLIGltFpfalg",
        "calm": "Mu5jxyqZOLIGltFpfalg",
        "professional": "ESELSAYNsoxwNZeqEklA",
    },
    emotion_presets={
        "calm": _preset(0.85, 0.8, 0.2, 1.0),
        "narrative": _preset(0.9, 0.9, 0.15, 1.0),
        "curious": _preset(0.6, 0.7, 0.7, 1.05),
        "anger": _preset(0.4, 0.7, 0.9, 0.95),
        "fear": _preset(0.5, 0.6, 0.8, 1.05),
        "sadness": _preset(0.5, 0.7, 0.7, 0.9),
        "joy": _preset(0.6, 0.6, 0.8, 1.1),
        "determined": _preset(0.5, 0.7, 0.8, 1.0),
        "mysterious": _preset(0.7, 0.8, 0.4, 0.95),
        "villainous": _preset(0.45, 0.7, 0.85, 0.95),
    },
    defaults={
        NARRATOR: "EkK5I93UQWFDigLMpZcX",
        CHARACTER: "ZF6FPAbjXT4488VcRRnw",
    },
    narrator_voices=[
        {"id": "EkK5I93UQWFDigLMpZcX", "name": "James - Husky & Engaging", "gender": "male", "style": "professional", "accent": "american"},
        {"id": "ESELSAYNsoxwNZeqEklA", "name": "Rebekah Nemethy - Pro Narration", "gender": "female", "style": "professional", "accent": "american"},
        {"id": "Mu5jxyqZOLIGltFpfalg", "name": "Jameson - Guided Meditation & Narration", "gender": "male", "style": "meditative", "accent": "american"},
        {"id": "iCrDUkL56s3C8sCRl7wb", "name": "Hope - Soothing Narrator", "gender": "female", "style": "soothing", "accent": "american"},
        {"id": "iUqOXhMfiOIbBejNtfLR", "name": "W. Storytime Oxley", "gender": "male", "style": "storytelling", "accent": "british"},
        {"id": "21m00Tcm4TlvDq8ikWAM", "name": "Rachel", "gender": "female", "style": "conversational", "accent": "american"},
        {"id": "EXAVITQu4vr4xnSDxMaL", "name": "Sarah", "gender": "female", "style": "professional", "accent": "american"},
        {"id": "Xb7hH8MSUJpSbSDYk0k2", "name": "Alice", "gender": "female", "style": "educational", "accent": "british"},
        {"id": "pFZP5JQG7iQjIQuC4Bku", "name": "Lily", "gender": "female", "style": "narrative", "accent": "british"},
        {"id": "onwK4e9ZLuTAKqWW03F9", "name": "Daniel", "gender": "male", "style": "broadcast", "accent": "british"},
    ],
)

ROLE_KEYWORDS = (
    ("villain", ("villain", "evil", "wicked", "sinister", "menacing", "cruel", "greedy", "antagonist")),
    ("mentor", ("mentor", "wise", "elder", "old", "teacher", "grandfather", "grandmother", "guide")),
    ("mystical", ("mystical", "magical", "mysterious", "ancient", "spirit", "oracle", "ethereal")),
    ("sidekick", ("sidekick", "loyal", "funny", "playful", "friend", "inventive", "cheerful")),
)


def resolve_voice_id(name_or_id: Optional[str], category: str = NARRATOR,
                     catalog: VoiceCatalog = DEFAULT_CATALOG) -> str:
    """
    Alias -> voice id, already-resolved ids pass through, else the category default.

    Aliases are checked before the id heuristic because an alias such as "warm_narrator"
    would also pass looks_like_voice_id(). Alias keys are short
    snake_case words, so a real provider id never matches one.
    """
    default = catalog.defaults.get(category) or catalog.defaults[NARRATOR]
    if not name_or_id:
        return default
    key = normalize_key(name_or_id)
    own, other = (
        (catalog.narrator_aliases, catalog.character_aliases)
        if category == NARRATOR
        else (catalog.character_aliases, catalog.narrator_aliases)
    )
    if key in own:
        return own[key]
    if key in other:
        return other[key]
    if looks_like_voice_id(name_or_id):
        return name_or_id
    return default


def infer_role(traits: Iterable[str]) -> str:
    words = " ".join(traits or ()).lower()
    for role, keywords in ROLE_KEYWORDS:
        if any(k in words for k in keywords):
            return role
    return "hero"


def voice_for_traits(gender: str, traits: Iterable[str], catalog: VoiceCatalog = DEFAULT_CATALOG) -> str:
    by_role = catalog.roles.get(gender) or catalog.roles.get("non-binary") or {}
    role = infer_role(traits)
    return by_role.get(role) or by_role.get("hero") or catalog.defaults[CHARACTER]


def settings_for_emotion(emotion: Optional[str], fallback: VoiceSettings,
                         catalog: VoiceCatalog = DEFAULT_CATALOG) -> VoiceSettings:
    if not emotion:
        return fallback
    return catalog.emotion_presets.get(normalize_key(emotion), fallback)


def match_narrator_tone(tone: Optional[str], catalog: VoiceCatalog = DEFAULT_CATALOG) -> Optional[str]:
    key = normalize_key(tone or "")
    if not key:
        return None
    for keyword, voice_id in catalog.narrator_tones.items():
        if keyword in key:
            return voice_id
    return None


def narrator_profile(tone: Optional[str], catalog: VoiceCatalog = DEFAULT_CATALOG) -> VoiceProfile:
    voice_id = match_narrator_tone(tone, catalog) or catalog.defaults[NARRATOR]
    return VoiceProfile(voice_id=voice_id, voice_settings=catalog.emotion_presets["narrative"])


def explicit_narrator_profile(voice_id: str, catalog: VoiceCatalog = DEFAULT_CATALOG) -> VoiceProfile:
    return VoiceProfile(
        voice_id=resolve_voice_id(voice_id, NARRATOR, catalog),
        voice_settings=catalog.explicit_narrator_settings,
    )


def character_profile(character: Optional[Character], beat: Optional[CharacterBeat] = None,
                      catalog: VoiceCatalog = DEFAULT_CATALOG) -> VoiceProfile:
    """
    Voice for a character line.

    A voice id written on the beat wins; otherwise the declared gender and
    traits pick a role voice; otherwise the character default is used.
    """
    if beat is not None and beat.voice_id:
        voice_id = resolve_voice_id(beat.voice_id, CHARACTER, catalog)
    elif character is not None:
        voice_id = voice_for_traits(character.gender, character.traits, catalog)
    else:
        voice_id = catalog.defaults[CHARACTER]

    settings = catalog.character_settings
    if beat is not None:
        settings = beat.voice_settings or settings_for_emotion(beat.emotion, settings, catalog)
    return VoiceProfile(voice_id=voice_id, voice_settings=settings)


class CharacterVoiceCache:
    """
    Per-build memo of character voices keyed by lower-cased name.

    The first line spoken by a character fixes its voice for the rest of
    the story. Safe to share between concurrently built pages.
    """

    def __init__(self, characters: Iterable[Character] = (), catalog: VoiceCatalog = DEFAULT_CATALOG):
        self.catalog = catalog
        self._characters: Dict[str, Character] = {c.name.strip().lower(): c for c in characters}
        self._profiles: Dict[str, VoiceProfile] = {}
        self._lock = threading.Lock()

    @staticmethod
    def key(name: Optional[str]) -> str:
        return (name or "character").strip().lower() or "character"

    def profile_for(self, beat: CharacterBeat) -> VoiceProfile:
        key = self.key(beat.name)
        with self._lock:
            profile = self._profiles.get(key)
            if profile is None:
                profile = character_profile(self._characters.get(key), beat, self.catalog)
                self._profiles[key] = profile
            return profile

    def prime(self, pages: Iterable[Page]) -> None:
        """Resolve every speaking character up front, in story order."""
        for page in pages:
            for beat in page.timeline:
                if isinstance(beat, CharacterBeat):
                    self.profile_for(beat)

    def snapshot(self) -> Dict[str, VoiceProfile]:
        with self._lock:
            return dict(self._profiles)

    def __len__(self) -> int:
        return len(self._profiles)
