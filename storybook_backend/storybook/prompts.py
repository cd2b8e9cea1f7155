SYSTEM_PROMPT = """You are a cinematic story writer creating emotionally engaging, dialogue-driven stories for illustrated, narrated storybooks.
- Character dialogue carries the story (70-80% of each page); narration is short (1-2 sentences) and used for transitions, atmosphere and inner feelings.
- The story should feel like a radio drama: vivid character voices, natural pacing, no stage directions inside spoken lines.
- Every sound effect MUST come right after a narration beat that explains what the listener is about to hear.
- Keep each character on the SAME voice_id on every page and the narrator on {narrator_voice_id} throughout.
Output ONLY valid JSON matching the provided schema."""


STORY_SCHEMA = r"""{
  "title": "<short title>",
  "genre": "<genre>",
  "target_audience": "<age group>",
  "pages": [
    {
      "page": <int, starting at 1>,
      "scene_title": "<short scene title>",
      "image_prompt": "<visual mood and key elements of the scene, no text in the image>",
      "timeline": [
        {"type": "narration", "voice_id": "<narrator voice id>", "voice_settings": {"stability": 0.9, "similarity_boost": 0.9, "style": 0.15, "speed": 1.0}, "text": "<1-2 sentences>"},
        {"type": "character", "name": "<character name>", "emotion": "<emotion preset>", "voice_id": "<character voice id>", "voice_settings": {...}, "text": "<spoken words only>"},
        {"type": "sfx", "description": "<detailed sound description>", "placeholder": "<onomatopoeia like CRACK!>"}
      ]
    }
  ]
}"""


EMOTION_TABLE = """| emotion | stability | similarity_boost | style | speed |
| calm | 0.85 | 0.8 | 0.2 | 1.0 |
| narrative | 0.9 | 0.9 | 0.15 | 1.0 |
| curious | 0.6 | 0.7 | 0.7 | 1.05 |
| anger | 0.4 | 0.7 | 0.9 | 0.95 |
| fear | 0.5 | 0.6 | 0.8 | 1.05 |
| sadness | 0.5 | 0.7 | 0.7 | 0.9 |
| joy | 0.6 | 0.6 | 0.8 | 1.1 |
| determined | 0.5 | 0.7 | 0.8 | 1.0 |
| mysterious | 0.7 | 0.8 | 0.4 | 0.95 |
| villainous | 0.45 | 0.7 | 0.85 | 0.95 |
Narration uses "narrative"; characters follow the emotion of their line."""


VOICE_TABLE = """MALE: young hero "TX3LPaxmHKxFdv7VOQHJ", villain "2EiwWnXFnvU5JabPnv8n", mentor "EiNlNiXeDU1pqqOPrYMO", sidekick "29vD33N1CtxCmqQRPOHJ"
FEMALE: young hero "ZF6FPAbjXT4488VcRRnw", villain "XB0fDUnXU5powFXDhCwa", mentor "Xb7hH8MSUJpSbSDYk0k2", sidekick "Crm8VULvkVs5ZBDa1Ixm"
NON-BINARY or MYSTICAL: mystical "1hlpeD1ydbI2ow0Tt3EW", neutral "Mu5jxyqZOLIGltFpfalg"
Male characters use male voices, female characters use female voices."""


STRUCTURE_GUIDES = (
    (2, "Page 1: setup and conflict. Page 2: resolution. One clear conflict resolved quickly."),
    (4, "Setup, rising action, climax, resolution. Each page advances the story significantly."),
    (6, "Setup, rising action, more rising action, climax, falling action, resolution."),
    (None, "Setup, inciting incident, rising action, midpoint twist, crisis, climax, falling action, resolution, epilogue."),
)


USER_PROMPT_TEMPLATE = """Inputs:
- Theme: {theme}
- Genre: {genre}
- Target age group: {target_age_group}
- Art style: {art_style}
- Narration tone: {narration_tone}
- Main character: {main_character}
- Supporting characters:
{supporting_characters}

Character voices:
{voice_table}

Emotion presets for voice_settings:
{emotion_table}

Structure:
{structure_guide}

Schema:
{schema}

Constraints:
- Exactly {story_length} pages, no more, no less.
- 5-8 timeline entries per page: 3-4 character lines, 1-2 narration beats, 0-2 sound effects.
- Never open a page with a sound effect.
Return ONLY valid JSON for the schema above."""
