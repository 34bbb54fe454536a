"""
SnapNote — OCR Extraction Unit Tests
=====================================

What:  Tests for OCRExtractionEngine, the strategy table, text cleaning and
       the Tesseract recognizer's result assembly.
How:   A scripted FakeRecognizer stands in for Tesseract; the real
       TesseractRecognizer is exercised with pytesseract.image_to_data
       patched and a Pillow-generated PNG.

What we test:
    ✅ Policy validation happens before any recognition pass
    ✅ Early exit on a high-confidence first strategy
    ✅ Best-confidence selection across strategies
    ✅ Per-strategy failures are skipped, total exhaustion → NoTextDetected
    ✅ Cleaning rules (confusions, whitespace, punctuation spacing)
    ❌ Real Tesseract accuracy (needs the binary and real images)
"""

import io
from unittest.mock import patch

import pytest
import pytesseract
from PIL import Image

from conftest import FakeRecognizer, output
from snapnote.exceptions import (
    InvalidImageFormat,
    NoTextDetected,
    RecognitionEngineError,
    RecognitionFailure,
)
from snapnote.schemas.capture import ExtractionOptions, ImagePayload
from snapnote.services.ocr_service import OCRExtractionEngine, clean_text
from snapnote.services.recognizer import (
    DEFAULT_STRATEGIES,
    OCRStrategy,
    TesseractRecognizer,
    _assemble,
)

STRATEGY_NAMES = [s.name for s in DEFAULT_STRATEGIES]


def make_engine(recognizer, **kwargs) -> OCRExtractionEngine:
    kwargs.setdefault("confidence_threshold", 80.0)
    kwargs.setdefault("max_strategies", 5)
    kwargs.setdefault("max_size", 10 * 1024 * 1024)
    return OCRExtractionEngine(recognizer, **kwargs)


class TestImageValidation:
    """Declared MIME type and size are checked before recognition."""

    def setup_method(self):
        self.recognizer = FakeRecognizer(default=output("text", 95.0))
        self.engine = make_engine(self.recognizer)

    @pytest.mark.parametrize(
        "content_type",
        ["image/jpeg", "image/png", "image/gif", "image/bmp", "image/webp", "IMAGE/PNG"],
    )
    def test_allowed_types_pass(self, content_type):
        self.engine.validate_image(ImagePayload(content=b"abc", content_type=content_type))

    @pytest.mark.parametrize("content_type", ["application/pdf", "text/plain", "image/svg+xml", ""])
    @pytest.mark.asyncio
    async def test_disallowed_type_rejected_without_recognition(self, content_type):
        image = ImagePayload(content=b"abc", content_type=content_type)
        with pytest.raises(InvalidImageFormat):
            await self.engine.extract_text(image)
        assert self.recognizer.calls == []

    @pytest.mark.asyncio
    async def test_oversized_image_rejected(self):
        image = ImagePayload(content=b"abc", content_type="image/png", size=11 * 1024 * 1024)
        with pytest.raises(InvalidImageFormat, match="exceeds maximum"):
            await self.engine.extract_text(image)
        assert self.recognizer.calls == []

    def test_under_declared_size_still_rejected(self):
        """The actual byte count wins over a smaller declared size."""
        image = ImagePayload(
            content=b"\x00" * (10 * 1024 * 1024 + 1),
            content_type="image/png",
            size=1024,
        )
        with pytest.raises(InvalidImageFormat, match="exceeds maximum"):
            self.engine.validate_image(image)

    def test_size_at_limit_accepted(self):
        image = ImagePayload(content=b"abc", content_type="image/png", size=10 * 1024 * 1024)
        self.engine.validate_image(image)

    def test_empty_image_rejected(self):
        with pytest.raises(InvalidImageFormat, match="empty"):
            self.engine.validate_image(ImagePayload(content=b"", content_type="image/png"))

    def test_invalid_image_is_invalid_input(self):
        """The HTTP layer maps the InvalidInput family to 400."""
        from snapnote.exceptions import InvalidInput

        with pytest.raises(InvalidInput):
            self.engine.validate_image(ImagePayload(content=b"x", content_type="text/html"))


class TestStrategyLoop:
    """Priority order, best-result tracking and early exit."""

    @pytest.mark.asyncio
    async def test_high_confidence_first_strategy_stops_loop(self, sample_image):
        """A clear printed page scores ≥ 80 on Premium Accuracy; nothing else runs."""
        recognizer = FakeRecognizer(
            script={"Premium Accuracy": output("Chapter 1\nThe quick brown fox.", 93.5)},
            default=output("should not be used", 99.0),
        )
        result = await make_engine(recognizer).extract_text(sample_image)

        assert recognizer.calls == ["Premium Accuracy"]
        assert result.strategy_used == "Premium Accuracy"
        assert result.confidence == 93.5

    @pytest.mark.asyncio
    async def test_strategies_run_in_priority_order(self, sample_image):
        recognizer = FakeRecognizer(default=output("faint text", 40.0))
        await make_engine(recognizer).extract_text(sample_image)
        assert recognizer.calls == STRATEGY_NAMES

    @pytest.mark.asyncio
    async def test_best_confidence_wins(self, sample_image):
        recognizer = FakeRecognizer(
            script={
                "Premium Accuracy": output("first", 50.0),
                "Document Scanner": output("second", 72.0),
                "Text Line Focus": output("third", 65.0),
                "Auto Detect": output("fourth", 30.0),
                "Raw Text": output("fifth", 71.9),
            }
        )
        result = await make_engine(recognizer).extract_text(sample_image)
        assert result.text == "second"
        assert result.strategy_used == "Document Scanner"
        assert len(recognizer.calls) == 5

    @pytest.mark.asyncio
    async def test_early_exit_after_later_strategy_crosses_threshold(self, sample_image):
        recognizer = FakeRecognizer(
            script={
                "Premium Accuracy": output("blurry", 45.0),
                "Document Scanner": output("crisp", 88.0),
            },
            default=output("unused", 99.0),
        )
        result = await make_engine(recognizer).extract_text(sample_image)
        assert recognizer.calls == ["Premium Accuracy", "Document Scanner"]
        assert result.text == "crisp"

    @pytest.mark.asyncio
    async def test_high_confidence_blank_result_does_not_stop_loop(self, sample_image):
        recognizer = FakeRecognizer(
            script={"Premium Accuracy": output("   ", 97.0)},
            default=output("real text", 55.0),
        )
        result = await make_engine(recognizer).extract_text(sample_image)
        assert result.text == "real text"
        assert len(recognizer.calls) == 5

    @pytest.mark.asyncio
    async def test_failing_strategies_are_skipped(self, sample_image):
        recognizer = FakeRecognizer(
            script={
                "Premium Accuracy": RecognitionEngineError("Premium Accuracy"),
                "Document Scanner": RuntimeError("tesseract crashed"),
                "Text Line Focus": output("recovered text", 85.0),
            }
        )
        result = await make_engine(recognizer).extract_text(sample_image)
        assert result.strategy_used == "Text Line Focus"
        assert recognizer.calls == STRATEGY_NAMES[:3]

    @pytest.mark.asyncio
    async def test_threshold_is_configurable(self, sample_image):
        recognizer = FakeRecognizer(default=output("text", 70.0))
        await make_engine(recognizer, confidence_threshold=60.0).extract_text(sample_image)
        assert len(recognizer.calls) == 1

    @pytest.mark.asyncio
    async def test_per_call_options_override_defaults(self, sample_image):
        recognizer = FakeRecognizer(default=output("text", 50.0))
        options = ExtractionOptions(max_strategies=2)
        await make_engine(recognizer).extract_text(sample_image, options)
        assert recognizer.calls == STRATEGY_NAMES[:2]

    @pytest.mark.asyncio
    async def test_result_counts_come_from_winning_pass(self, sample_image):
        recognizer = FakeRecognizer(default=output("one two three\nfour five", 90.0))
        result = await make_engine(recognizer).extract_text(sample_image)
        assert result.word_count == 5
        assert result.line_count == 2

    def test_engine_requires_a_strategy(self):
        with pytest.raises(ValueError):
            OCRExtractionEngine(FakeRecognizer(), strategies=())


class TestNoTextDetected:
    """Total exhaustion is the only recognition error callers see."""

    @pytest.mark.asyncio
    async def test_all_blank_results_raise_no_text_detected(self, sample_image):
        recognizer = FakeRecognizer(default=output(" \n\t \n", 88.0))
        with pytest.raises(NoTextDetected):
            await make_engine(recognizer).extract_text(sample_image)
        assert recognizer.calls == STRATEGY_NAMES

    @pytest.mark.asyncio
    async def test_all_strategies_failing_raises_no_text_detected(self, sample_image):
        recognizer = FakeRecognizer(default=OSError("cannot identify image file"))
        with pytest.raises(NoTextDetected) as exc_info:
            await make_engine(recognizer).extract_text(sample_image)
        assert exc_info.value.context["strategies_failed"] == 5

    @pytest.mark.asyncio
    async def test_arbitrary_recognizer_errors_surface_as_recognition_failure(self, sample_image):
        recognizer = FakeRecognizer(default=KeyError("conf"))
        with pytest.raises(RecognitionFailure):
            await make_engine(recognizer).extract_text(sample_image)


class TestBatchExtraction:
    @pytest.mark.asyncio
    async def test_failed_image_does_not_abort_batch(self, sample_image):
        recognizer = FakeRecognizer(default=output("page text", 90.0))
        engine = make_engine(recognizer)
        bad = ImagePayload(content=b"%PDF", content_type="application/pdf", filename="doc.pdf")

        items = await engine.extract_from_many([sample_image, bad, sample_image])

        assert [item.ok for item in items] == [True, False, True]
        assert items[0].text == "page text"
        assert items[1].filename == "doc.pdf"
        assert "Invalid file type" in items[1].error
        assert items[1].text == ""


class TestCleanText:
    """Deterministic post-processing of the winning text."""

    def test_pipe_becomes_capital_i(self):
        assert clean_text("| think so") == "I think so"

    def test_zero_next_to_letters_becomes_o(self):
        assert clean_text("B0OK and 0ne") == "BOOK and One"

    def test_standalone_numbers_keep_zeros(self):
        assert clean_text("Total 2040 in 10.05 hours") == "Total 2040 in 10.05 hours"

    def test_rn_becomes_m(self):
        assert clean_text("rnodern") == "modem"

    def test_bracket_artifact_becomes_l(self):
        assert clean_text("he[][]o") == "hello"

    def test_excess_newlines_collapse_to_one_blank_line(self):
        assert clean_text("first\n\n\n\n\nsecond") == "first\n\nsecond"

    def test_whitespace_runs_collapse_and_lines_are_trimmed(self):
        assert clean_text("   a    b\t\tc   \n   d  ") == "a b c\nd"

    def test_no_space_before_punctuation(self):
        assert clean_text("Hello , world !") == "Hello, world!"

    def test_single_space_after_punctuation(self):
        assert clean_text("End.   Next;  more") == "End. Next; more"


class TestStrategyTable:
    def test_default_strategy_order(self):
        assert STRATEGY_NAMES == [
            "Premium Accuracy",
            "Document Scanner",
            "Text Line Focus",
            "Auto Detect",
            "Raw Text",
        ]

    def test_tesseract_config_renders_all_options(self):
        config = DEFAULT_STRATEGIES[0].tesseract_config()
        assert "--psm 1" in config
        assert "--oem 1" in config
        assert "--dpi 300" in config
        assert "preserve_interword_spaces=1" in config
        assert "tessedit_char_whitelist=" in config

    def test_minimal_strategy_config(self):
        assert OCRStrategy(name="Raw", page_segmentation_mode=8).tesseract_config() == "--psm 8 --oem 1"


class TestTesseractRecognizer:
    """Result assembly from image_to_data's word table."""

    WORD_TABLE = {
        "text": ["", "Shopping", "list", "", "eggs", "milk"],
        "conf": ["-1", "96.5", "91.5", "-1", 88, 84],
        "page_num": [1, 1, 1, 1, 1, 1],
        "block_num": [0, 1, 1, 1, 1, 1],
        "par_num": [0, 1, 1, 1, 1, 1],
        "line_num": [0, 1, 1, 2, 2, 2],
    }

    def test_assemble_groups_words_into_lines(self):
        result = _assemble(self.WORD_TABLE)
        assert result.text == "Shopping list\neggs milk"
        assert result.word_count == 4
        assert result.line_count == 2
        assert result.confidence == pytest.approx(90.0)

    def test_assemble_empty_table(self):
        result = _assemble({"text": [], "conf": []})
        assert result.text == ""
        assert result.confidence == 0.0

    @staticmethod
    def _png_bytes() -> bytes:
        buffer = io.BytesIO()
        Image.new("RGB", (40, 20), "white").save(buffer, format="PNG")
        return buffer.getvalue()

    @pytest.mark.asyncio
    async def test_recognize_passes_strategy_config(self):
        recognizer = TesseractRecognizer(language="eng")
        with patch.object(pytesseract, "image_to_data", return_value=self.WORD_TABLE) as mock_data:
            result = await recognizer.recognize(self._png_bytes(), DEFAULT_STRATEGIES[1])

        assert result.text == "Shopping list\neggs milk"
        kwargs = mock_data.call_args.kwargs
        assert kwargs["lang"] == "eng"
        assert "--psm 6" in kwargs["config"]

    @pytest.mark.asyncio
    async def test_tesseract_error_becomes_recognition_engine_error(self):
        recognizer = TesseractRecognizer()
        with patch.object(
            pytesseract, "image_to_data", side_effect=pytesseract.TesseractError(1, "boom")
        ):
            with pytest.raises(RecognitionEngineError) as exc_info:
                await recognizer.recognize(self._png_bytes(), DEFAULT_STRATEGIES[0])
        assert exc_info.value.strategy == "Premium Accuracy"

    @pytest.mark.asyncio
    async def test_undecodable_image_becomes_recognition_engine_error(self):
        with pytest.raises(RecognitionEngineError):
            await TesseractRecognizer().recognize(b"not an image", DEFAULT_STRATEGIES[0])
