"""
SnapNote — Note Synthesizer Unit Tests
=======================================

What:  Tests for NoteSynthesizer's degradation ladder, the enhancement
       providers and the heuristic note helpers.
How:   The remote provider wraps a mocked Gemini client; the local
       provider runs against a real ModelLifecycleManager whose fake
       engine answers with canned text.

What we test:
    ✅ Provider success → merged note, gaps filled from heuristics
    ✅ Local non-JSON answer → fallback at 75 with tags
    ✅ Provider errors / unavailability → fallback at 60
    ✅ synthesize() never raises
    ✅ parse_note_payload edge cases (fences, arrays, empty objects)
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from snapnote.exceptions import CircuitBreakerOpenError, LLMServiceError
from snapnote.schemas.note import NoteDraft, ProviderName, SynthesisOptions
from snapnote.services.enhancement import (
    EnhancementProvider,
    LocalEnhancementProvider,
    MalformedPayload,
    RemoteEnhancementProvider,
    build_enhancement_prompt,
    parse_note_payload,
)
from snapnote.services.note_synthesizer import (
    DEFAULT_TITLE,
    NoteSynthesizer,
    extract_title,
    format_as_markdown,
    generate_tags,
    summarize,
)

RAW_TEXT = "Meeting Notes\nDiscuss the quarterly budget review."
LOCAL = SynthesisOptions(provider_preference=ProviderName.LOCAL)
REMOTE = SynthesisOptions(provider_preference=ProviderName.REMOTE)


def gemini_client(configured=True, answer=None, error=None):
    client = MagicMock()
    client.is_configured = configured
    client.generate = AsyncMock(return_value=answer, side_effect=error)
    return client


class ExplodingProvider(EnhancementProvider):
    name = ProviderName.REMOTE

    async def enhance(self, prompt):
        raise RuntimeError("provider bug")


class TestRemoteEnhancement:
    @pytest.mark.asyncio
    async def test_partial_answer_filled_from_heuristics(self):
        client = gemini_client(answer={"title": "Q3 Budget Review", "tags": ["finance"]})
        synthesizer = NoteSynthesizer(remote_provider=RemoteEnhancementProvider(client))

        note = await synthesizer.synthesize(RAW_TEXT, REMOTE)

        assert note.provider_used == ProviderName.REMOTE
        assert note.title == "Q3 Budget Review"
        assert note.tags == ["finance"]
        assert note.summary == summarize(RAW_TEXT)
        assert note.content.startswith("# Meeting Notes")
        assert note.confidence == 90.0

    @pytest.mark.asyncio
    async def test_provider_confidence_wins(self):
        client = gemini_client(answer={"title": "Budget", "confidence": 97})
        synthesizer = NoteSynthesizer(remote_provider=RemoteEnhancementProvider(client))

        note = await synthesizer.synthesize(RAW_TEXT, REMOTE)

        assert note.confidence == 97.0

    @pytest.mark.asyncio
    async def test_prompt_embeds_raw_text(self):
        client = gemini_client(answer={"title": "Budget"})
        synthesizer = NoteSynthesizer(remote_provider=RemoteEnhancementProvider(client))

        await synthesizer.synthesize(RAW_TEXT, REMOTE)

        client.generate.assert_awaited_once_with(build_enhancement_prompt(RAW_TEXT))

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [LLMServiceError("Gemini down"), CircuitBreakerOpenError(recovery_time=30)],
    )
    async def test_remote_errors_fall_back(self, error):
        synthesizer = NoteSynthesizer(
            remote_provider=RemoteEnhancementProvider(gemini_client(error=error))
        )

        note = await synthesizer.synthesize(RAW_TEXT, REMOTE)

        assert note.provider_used == ProviderName.FALLBACK
        assert note.confidence == 60.0

    @pytest.mark.asyncio
    async def test_remote_answer_without_note_fields_gets_error_rung(self):
        client = gemini_client(answer={"confidence": 50})
        synthesizer = NoteSynthesizer(remote_provider=RemoteEnhancementProvider(client))

        note = await synthesizer.synthesize(RAW_TEXT, REMOTE)

        assert note.provider_used == ProviderName.FALLBACK
        assert note.confidence == 60.0

    @pytest.mark.asyncio
    async def test_unconfigured_remote_falls_back_without_calling(self):
        client = gemini_client(configured=False)
        synthesizer = NoteSynthesizer(remote_provider=RemoteEnhancementProvider(client))

        note = await synthesizer.synthesize(RAW_TEXT, REMOTE)

        assert note.provider_used == ProviderName.FALLBACK
        client.generate.assert_not_called()


class TestLocalEnhancement:
    @pytest.mark.asyncio
    async def test_non_json_answer_degrades_to_fallback(self, manager, loader):
        """The local model answered, just not with JSON."""
        loader.engine_response = "not json"
        await manager.initialize_model("Qwen2-0.5B-Instruct-q4")
        synthesizer = NoteSynthesizer(local_provider=LocalEnhancementProvider(manager))

        note = await synthesizer.synthesize(RAW_TEXT, LOCAL)

        assert note.provider_used == ProviderName.FALLBACK
        assert 60.0 <= note.confidence <= 75.0
        assert note.confidence == 75.0
        assert note.title == "Meeting Notes"
        assert note.tags

    @pytest.mark.asyncio
    async def test_fenced_json_answer(self, manager, loader):
        loader.engine_response = "```json\n" + json.dumps(
            {"title": "Budget Review", "summary": "Quarterly budget.", "tags": "budget, #finance"}
        ) + "\n```"
        await manager.initialize_model("Qwen2-0.5B-Instruct-q4")
        synthesizer = NoteSynthesizer(local_provider=LocalEnhancementProvider(manager))

        note = await synthesizer.synthesize(RAW_TEXT, LOCAL)

        assert note.provider_used == ProviderName.LOCAL
        assert note.summary == "Quarterly budget."
        assert note.tags == ["budget", "finance"]
        assert note.confidence == 85.0

    @pytest.mark.asyncio
    async def test_no_model_loaded_falls_back(self, manager):
        synthesizer = NoteSynthesizer(local_provider=LocalEnhancementProvider(manager))

        note = await synthesizer.synthesize(RAW_TEXT, LOCAL)

        assert note.provider_used == ProviderName.FALLBACK
        assert note.confidence == 60.0

    @pytest.mark.asyncio
    async def test_engine_failure_falls_back(self, manager, loader):
        await manager.initialize_model("Qwen2-0.5B-Instruct-q4")
        loader.engines[0].error = RuntimeError("out of memory")
        synthesizer = NoteSynthesizer(local_provider=LocalEnhancementProvider(manager))

        note = await synthesizer.synthesize(RAW_TEXT, LOCAL)

        assert note.provider_used == ProviderName.FALLBACK
        assert note.confidence == 60.0
        assert not manager.is_ready()


class TestSynthesizerFallbacks:
    @pytest.mark.asyncio
    async def test_enhance_disabled_skips_providers(self):
        client = gemini_client(answer={"title": "unused"})
        synthesizer = NoteSynthesizer(remote_provider=RemoteEnhancementProvider(client))

        note = await synthesizer.synthesize(RAW_TEXT, SynthesisOptions(enhance=False))

        assert note.provider_used == ProviderName.FALLBACK
        assert note.confidence == 60.0
        client.generate.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_provider_falls_back(self):
        note = await NoteSynthesizer().synthesize(RAW_TEXT, LOCAL)
        assert note.provider_used == ProviderName.FALLBACK

    @pytest.mark.asyncio
    async def test_provider_bug_never_escapes(self):
        synthesizer = NoteSynthesizer(remote_provider=ExplodingProvider())

        note = await synthesizer.synthesize(RAW_TEXT, REMOTE)

        assert note.provider_used == ProviderName.FALLBACK
        assert note.title == "Meeting Notes"

    @pytest.mark.asyncio
    async def test_empty_text_still_builds_a_note(self):
        note = await NoteSynthesizer().synthesize("", SynthesisOptions(enhance=False))
        assert note.title == DEFAULT_TITLE
        assert note.tags == []


class TestParseNotePayload:
    def test_plain_json(self):
        draft = parse_note_payload('{"title": "Groceries", "tags": ["home"]}')
        assert draft.title == "Groceries"
        assert draft.tags == ["home"]

    def test_fence_without_language(self):
        draft = parse_note_payload('```\n{"summary": "Short"}\n```')
        assert draft.summary == "Short"

    def test_mapping_validated_as_is(self):
        draft = parse_note_payload({"content": "  # Body  ", "confidence": 140})
        assert draft.content == "# Body"
        assert draft.confidence == 100.0

    @pytest.mark.parametrize(
        "payload",
        ["not json", "[1, 2]", '{"confidence": 50}', '{"title": "   "}', {}],
    )
    def test_malformed(self, payload):
        with pytest.raises(MalformedPayload):
            parse_note_payload(payload)

    def test_tags_deduplicated(self):
        assert NoteDraft(tags=["a", "#a", "b", " "]).tags == ["a", "b"]


class TestHeuristics:
    def test_title_is_first_short_line(self):
        assert extract_title("\n\n  Shopping List \nmilk") == "Shopping List"

    def test_long_first_line_truncated_to_six_words(self):
        line = "This first line keeps going well past the fifty character limit"
        assert extract_title(line) == "This first line keeps going well..."

    def test_blank_text_gets_default_title(self):
        assert extract_title("   \n ") == DEFAULT_TITLE

    def test_summary_truncates_with_ellipsis(self):
        text = "word " * 60
        result = summarize(text)
        assert result.endswith("...")
        assert len(result) <= 153

    def test_summary_keeps_short_text(self):
        assert summarize("  Short note.  ") == "Short note."

    def test_markdown_promotes_short_lines(self):
        content = format_as_markdown("Meeting Notes\nAgenda\nDiscuss the quarterly budget review.")
        blocks = content.strip().split("\n\n")

        assert blocks[0] == "# Meeting Notes"
        assert "## Summary" in blocks
        assert "### Agenda" in blocks
        assert blocks[-1] == "Discuss the quarterly budget review."

    def test_tags_by_frequency(self):
        text = "review budget review meeting budget review the and"
        assert generate_tags(text) == ["review", "budget", "meeting"]

    def test_tags_skip_stop_words_and_short_words(self):
        assert generate_tags("this that with from have cat dog") == []

    def test_tags_limited_to_five(self):
        text = "alpha bravo charlie delta echoes foxtrot"
        assert len(generate_tags(text)) == 5
