"""
Tests for the generation client: parsing, post-processing and streaming.
"""

import pytest

from adaptive_tutor.agents.base.state import AgentName
from adaptive_tutor.agents.context_cache import ContextCacheManager
from adaptive_tutor.agents.generation import (
    GenerationClient,
    extract_svg_blocks,
    first_sentence_from_buffer,
    unescape_newlines,
)
from adaptive_tutor.agents.prompts import SAFE_FALLBACK_TEXT
from adaptive_tutor.agents.registry import AgentRegistry
from adaptive_tutor.core.errors import TransientUpstreamError, UpstreamUnavailableError

from scripted_llm import LESSON_ID, teaching_reply


@pytest.fixture
def generator(store, llm_factory, test_settings) -> GenerationClient:
    registry = AgentRegistry(store, test_settings)
    return GenerationClient(registry, ContextCacheManager(store, registry, settings=test_settings), llm_factory)


class TestFirstSentence:
    def test_waits_for_terminal_punctuation(self):
        assert first_sentence_from_buffer('{"audioText": "Great jo') is None
        assert first_sentence_from_buffer('{"audioText": "Great job.') is None
        assert first_sentence_from_buffer('{"audioText": "Great job. No') == "Great job."

    def test_decimals_do_not_end_a_sentence(self):
        assert first_sentence_from_buffer('{"audioText": "Half of 3.5 is 1.75') is None
        assert first_sentence_from_buffer('{"audioText": "Half of 3.5 is 1.75. Next') == "Half of 3.5 is 1.75."

    def test_closed_string_without_punctuation(self):
        assert first_sentence_from_buffer('{"audioText": "Hello there", "displayText"') == "Hello there"

    def test_questions_and_exclamations(self):
        assert first_sentence_from_buffer('{"audioText": "Ready?! Let us') == "Ready?!"

    def test_no_audio_text_yet(self):
        assert first_sentence_from_buffer('{"displayText": "Some text. More') is None


class TestPostProcessing:
    def test_literal_newlines_become_real(self):
        assert unescape_newlines("Step 1\\nStep 2") == "Step 1\nStep 2"

    def test_latex_commands_keep_backslash(self):
        assert unescape_newlines("$a \\neq b$ and $\\nabla f$") == "$a \\neq b$ and $\\nabla f$"

    def test_svg_blocks_are_extracted(self):
        text, svg = extract_svg_blocks("Look at this [SVG]<svg><circle r='4'/></svg>[/SVG] diagram.")
        assert svg == "<svg><circle r='4'/></svg>"
        assert "[SVG]" not in text
        assert text.startswith("Look at this")

    def test_text_without_svg(self):
        assert extract_svg_blocks("plain") == ("plain", None)


@pytest.mark.asyncio
class TestGenerationClient:
    async def test_generate_parses_schema(self, generator, llm_factory, lesson):
        llm_factory.script(AgentName.MATH_SPECIALIST, responses=[
            "```json\n" + teaching_reply("One half plus one quarter.", "1/2 + 1/4", teachingPhase=2) + "\n```"
        ])

        result = await generator.generate(AgentName.MATH_SPECIALIST, "What is 1/2 + 1/4?", LESSON_ID, "CONTEXT")

        assert result.schema_fallback is False
        assert result.response.audio_text == "One half plus one quarter."
        assert result.response.display_text == "1/2 + 1/4"
        assert result.response.teaching_phase == 2

        model = llm_factory.model(AgentName.MATH_SPECIALIST)
        system, human = model.received[0]
        assert "Adding fractions" in system.content
        assert human.content == "CONTEXT\n\nSTUDENT: What is 1/2 + 1/4?"
        assert llm_factory.calls[-1]["prompt_cache_key"].startswith("math_specialist:lesson-fractions:")

    async def test_model_completion_claim_is_cleared(self, generator, llm_factory, lesson):
        llm_factory.script(AgentName.MATH_SPECIALIST, responses=[teaching_reply("All done!", lessonComplete=True)])

        result = await generator.generate(AgentName.MATH_SPECIALIST, "done?", LESSON_ID)

        assert result.response.lesson_complete is False
        assert result.model_claimed_complete is True

    async def test_unparseable_reply_uses_fallback(self, generator, llm_factory, lesson):
        llm_factory.script(AgentName.MATH_SPECIALIST, responses=["{ this is not json"])

        result = await generator.generate(AgentName.MATH_SPECIALIST, "hi", LESSON_ID)

        assert result.schema_fallback is True
        assert result.response.audio_text == SAFE_FALLBACK_TEXT

    async def test_plain_text_reply_is_kept(self, generator, llm_factory, lesson):
        llm_factory.script(AgentName.MATH_SPECIALIST, responses=["Let's count the pieces together."])

        result = await generator.generate(AgentName.MATH_SPECIALIST, "hi", LESSON_ID)

        assert result.schema_fallback is True
        assert result.response.display_text == "Let's count the pieces together."

    async def test_svg_moves_out_of_display_text(self, generator, llm_factory, lesson):
        llm_factory.script(AgentName.MATH_SPECIALIST, responses=[
            teaching_reply("Look at the circle.", "Look:\\n[SVG]<svg></svg>[/SVG]")
        ])

        result = await generator.generate(AgentName.MATH_SPECIALIST, "show me", LESSON_ID)

        assert result.response.svg == "<svg></svg>"
        assert result.response.display_text == "Look:"

    async def test_stream_fires_first_sentence_once(self, generator, llm_factory, lesson):
        llm_factory.script(AgentName.MATH_SPECIALIST, responses=[
            teaching_reply("Great job. Now add 1/4 and 1/2. What do you get?")
        ])
        sentences = []

        async def on_first_sentence(sentence):
            sentences.append(sentence)

        result = await generator.stream(
            AgentName.MATH_SPECIALIST, "I got 3/4", LESSON_ID, on_first_sentence=on_first_sentence
        )

        assert sentences == ["Great job."]
        assert result.first_sentence == "Great job."
        assert result.response.audio_text.endswith("What do you get?")
        assert llm_factory.calls[-1]["streaming"] is True

    async def test_stream_accepts_sync_callback(self, generator, llm_factory, lesson):
        llm_factory.script(AgentName.MATH_SPECIALIST, responses=[teaching_reply("Yes! That is right.")])
        sentences = []

        await generator.stream(AgentName.MATH_SPECIALIST, "3/4", LESSON_ID, on_first_sentence=sentences.append)

        assert sentences == ["Yes!"]

    async def test_media_is_attached(self, generator, llm_factory, lesson):
        await generator.generate(
            AgentName.MATH_SPECIALIST,
            "what is this?",
            LESSON_ID,
            media={"data": b"\x89PNG", "mime_type": "image/png"},
        )

        human = llm_factory.model(AgentName.MATH_SPECIALIST).received[0][-1]
        assert isinstance(human.content, list)
        assert human.content[1]["type"] == "image_url"
        assert human.content[1]["image_url"]["url"].startswith("data:image/png;base64,")

    async def test_transient_errors_exhaust_into_unavailable(self, generator, llm_factory, lesson):
        model = llm_factory.script(AgentName.MATH_SPECIALIST, error=TransientUpstreamError("overloaded", 503))

        with pytest.raises(UpstreamUnavailableError):
            await generator.generate(AgentName.MATH_SPECIALIST, "hi", LESSON_ID)

        # First attempt plus LLM_RETRY_MAX_RETRIES
        assert len(model.received) == 3
