"""
Tests for story text generation: prompt building and payload parsing.
"""
import json
import pytest
from unittest.mock import MagicMock, patch

from storybook import llm
from storybook.errors import ConfigurationError, UpstreamProviderError
from storybook.models import CharacterBeat, NarrationBeat, SfxBeat, StoryRequest

from conftest import story_body, story_payload


def _request(**overrides):
    return StoryRequest.model_validate(story_body(**overrides))


def _completion(content):
    resp = MagicMock()
    resp.choices = [MagicMock()]
    resp.choices[0].message.content = content
    return resp


def test_parse_pages_payload():
    story = llm.parse_story(story_payload(2), _request())

    assert story.title == "The Lost Kite"
    assert story.logline == "adventure - 5-7"
    assert [p.page_number for p in story.pages] == [1, 2]
    assert [type(b) for b in story.pages[0].timeline] == [NarrationBeat, CharacterBeat, SfxBeat, CharacterBeat]
    assert story.pages[0].summary == "Narration for page 1."
    assert story.pages[0].dialogue_text == "Narration for page 1. Alex says Alex line 1 Sam says Sam line 1"
    assert story.metadata.theme == "friendship"
    assert story.full_text.count("\n\n") == 1


def test_parse_legacy_scenes_payload():
    payload = {
        "title": "Old Format",
        "scenes": [
            {
                "scene_number": 1,
                "scene_title": "Start",
                "image_prompt": "A meadow",
                "narration": {"text": "It began.", "voice_id": "EkK5I93UQWFDigLMpZcX"},
                "characters": [{"name": "Alex", "text": "Hi!", "emotion": "joy"}],
                "sfx": ["birds chirping"],
            },
            {"scene_number": 2, "narration": "It ended."},
        ],
    }

    story = llm.parse_story(payload, _request())

    first, second = story.pages
    assert first.title == "Start"
    assert first.image_prompt == "A meadow"
    assert [b.type for b in first.timeline] == ["narration", "character", "sfx"]
    assert first.timeline[0].voice_id == "EkK5I93UQWFDigLMpZcX"
    assert second.title == "Scene 2"
    assert second.timeline[0].text == "It ended."


def test_duplicate_page_numbers_are_renumbered():
    payload = {"pages": [
        {"page": 1, "timeline": [{"type": "narration", "text": "a"}]},
        {"page": 1, "timeline": [{"type": "narration", "text": "b"}]},
    ]}

    story = llm.parse_story(payload)
    assert [p.page_number for p in story.pages] == [1, 2]
    assert story.pages[1].summary == "b"


@pytest.mark.parametrize("payload", [
    {"title": "No pages"},
    {"pages": []},
    {"pages": "not a list"},
    ["not", "an", "object"],
])
def test_payload_without_pages_is_an_upstream_error(payload):
    with pytest.raises(UpstreamProviderError) as exc:
        llm.parse_story(payload)
    assert exc.value.status_code == 502


def test_characters_fall_back_to_the_payload():
    payload = {**story_payload(1), "characters": [{"name": "Pip", "gender": "female"}, "Rex|male|grumpy"]}
    story = llm.parse_story(payload)

    assert [(c.name, c.gender) for c in story.characters] == [("Pip", "female"), ("Rex", "male")]
    assert story.characters[1].traits == ["grumpy"]


@pytest.mark.parametrize("length,marker", [
    (1, "resolved quickly"),
    (2, "resolved quickly"),
    (3, "Each page advances"),
    (6, "more rising action"),
    (10, "epilogue"),
])
def test_structure_guide_depends_on_length(length, marker):
    assert marker in llm.structure_guide(length)


def test_user_prompt_mentions_the_inputs():
    prompt = llm.build_user_prompt(_request(narrationTone="bedtime"))

    assert "friendship" in prompt
    assert "Alex (male) - brave, curious" in prompt
    assert "Sam (female) - loyal, inventive" in prompt
    assert "bedtime" in prompt


def test_generate_story_parses_the_completion():
    client = MagicMock()
    client.chat.completions.create.return_value = _completion(json.dumps(story_payload(2)))

    with patch.object(llm, "_get_client", return_value=client):
        story = llm.generate_story(_request(), "EkK5I93UQWFDigLMpZcX")

    assert len(story.pages) == 2
    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["response_format"] == {"type": "json_object"}
    assert "EkK5I93UQWFDigLMpZcX" in kwargs["messages"][0]["content"]


@pytest.mark.parametrize("content", ["this is not json", "", None])
def test_bad_completion_content_is_an_upstream_error(content):
    client = MagicMock()
    client.chat.completions.create.return_value = _completion(content)

    with patch.object(llm, "_get_client", return_value=client):
        with pytest.raises(UpstreamProviderError) as exc:
            llm.get_story_payload(_request(), "EkK5I93UQWFDigLMpZcX")
    assert exc.value.provider == "openai"
    assert exc.value.status_code == 502


def test_missing_api_key_is_a_configuration_error(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.setattr(llm, "_client", None)

    with pytest.raises(ConfigurationError):
        llm._get_client()
