from __future__ import annotations

import json

import pytest

from picturebook.common import ChatResult, parse_json_reply
from picturebook.errors import ProviderRequestFailed, ValidationError
from picturebook.story_generation import StoryTextGenerator

from fakes import SETTINGS, FakeCompletion, make_story, replicate_user, run


class ReplyWith:
    def __init__(self, text=None, error=None):
        self.text = text
        self.error = error

    async def __call__(self, **kwargs):
        if self.error is not None:
            raise self.error
        return ChatResult(text=self.text, raw=None)


def test_generate_pages_returns_exact_page_count():
    completion = FakeCompletion()
    generator = StoryTextGenerator(settings=SETTINGS, completion_fn=completion)
    story = make_story(total_pages=7, pages=[])

    generated = run(generator.generate_pages(story, story.extracted_characters, replicate_user()))

    assert generated.title == "Milo and the Lantern"
    assert [page.page_number for page in generated.pages] == list(range(1, 8))
    call = completion.calls[0]
    assert call["model"] == SETTINGS.text_model
    assert call["api_key"] == "sk-test"
    assert call["response_format"] == {"type": "json_object"}
    assert "Milo: A small fox with a red scarf." in call["messages"][-1]["content"]


def test_wrong_page_count_is_rejected():
    reply = json.dumps({"title": "Short", "pages": [{"pageNumber": 1, "text": "Only one."}]})
    generator = StoryTextGenerator(settings=SETTINGS, completion_fn=ReplyWith(reply))

    with pytest.raises(ValidationError):
        run(generator.generate_pages(make_story(), [], replicate_user()))


def test_fenced_json_reply_is_accepted():
    reply = '```json\n{"expandedSetting": "A sunny meadow."}\n```'
    generator = StoryTextGenerator(settings=SETTINGS, completion_fn=ReplyWith(reply))

    assert run(generator.expand_setting(make_story(), replicate_user())) == "A sunny meadow."


def test_duplicate_characters_are_rejected():
    reply = json.dumps(
        {"characters": [{"name": "Milo", "description": "A fox."}, {"name": "MILO", "description": "A fox."}]}
    )
    generator = StoryTextGenerator(settings=SETTINGS, completion_fn=ReplyWith(reply))

    with pytest.raises(ValidationError):
        run(generator.extract_characters(make_story(), replicate_user()))


def test_provider_errors_are_wrapped():
    generator = StoryTextGenerator(settings=SETTINGS, completion_fn=ReplyWith(error=RuntimeError("timeout")))

    with pytest.raises(ProviderRequestFailed) as excinfo:
        run(generator.expand_setting(make_story(), replicate_user()))

    assert excinfo.value.provider == "OpenAI"


def test_non_json_reply_is_a_validation_error():
    generator = StoryTextGenerator(settings=SETTINGS, completion_fn=ReplyWith("Once upon a time"))

    with pytest.raises(ValidationError):
        run(generator.expand_setting(make_story(), replicate_user()))
    with pytest.raises(ValueError):
        parse_json_reply("[1, 2]", what="story text")
