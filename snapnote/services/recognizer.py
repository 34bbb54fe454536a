"""
SnapNote — OCR Strategies & Recognizer
=======================================

What:  The ordered table of named OCR strategies and the Tesseract-backed
       recognizer that runs one strategy against one image.
How:   Each strategy is a frozen record that renders to a Tesseract
       command-line config. TesseractRecognizer decodes the image with
       Pillow and calls pytesseract.image_to_data in a worker thread, then
       rebuilds the text line by line and averages word confidences.
Who:   OCRExtractionEngine iterates DEFAULT_STRATEGIES and calls
       Recognizer.recognize() once per strategy.

Strategy Table (priority order):
    Premium Accuracy   psm 1 (auto + OSD), LSTM, whitelist, 300 dpi
    Document Scanner   psm 6 (single uniform block), LSTM, 300 dpi
    Text Line Focus    psm 7 (single text line), LSTM
    Auto Detect        psm 3 (fully automatic), legacy + LSTM
    Raw Text           psm 8 (single word), LSTM
"""

import asyncio
import io
import logging
import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import pytesseract
from PIL import Image, UnidentifiedImageError

from snapnote.exceptions import RecognitionEngineError

logger = logging.getLogger(__name__)

PRINTABLE_WHITELIST = (
    "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789 "
    ".,!?;:()-[]{}\"'/\\@#$%^&*+=<>~`|"
)


@dataclass(frozen=True)
class OCRStrategy:
    """One fixed recognition profile."""

    name: str
    page_segmentation_mode: int
    engine_mode: int = 1
    char_whitelist: Optional[str] = None
    dpi: Optional[int] = None
    preserve_interword_spaces: bool = False

    def tesseract_config(self) -> str:
        parts = [f"--psm {self.page_segmentation_mode}", f"--oem {self.engine_mode}"]
        if self.dpi:
            parts.append(f"--dpi {self.dpi}")
        if self.preserve_interword_spaces:
            parts.append("-c preserve_interword_spaces=1")
        if self.char_whitelist:
            # pytesseract shlex-splits the config string
            parts.append("-c " + shlex.quote(f"tessedit_char_whitelist={self.char_whitelist}"))
        return " ".join(parts)


DEFAULT_STRATEGIES: Tuple[OCRStrategy, ...] = (
    OCRStrategy(
        name="Premium Accuracy",
        page_segmentation_mode=1,
        engine_mode=1,
        char_whitelist=PRINTABLE_WHITELIST,
        dpi=300,
        preserve_interword_spaces=True,
    ),
    OCRStrategy(
        name="Document Scanner",
        page_segmentation_mode=6,
        engine_mode=1,
        dpi=300,
        preserve_interword_spaces=True,
    ),
    OCRStrategy(
        name="Text Line Focus",
        page_segmentation_mode=7,
        engine_mode=1,
        preserve_interword_spaces=True,
    ),
    OCRStrategy(
        name="Auto Detect",
        page_segmentation_mode=3,
        engine_mode=3,
        preserve_interword_spaces=True,
    ),
    OCRStrategy(
        name="Raw Text",
        page_segmentation_mode=8,
        engine_mode=1,
    ),
)


@dataclass(frozen=True)
class RecognitionOutput:
    """Raw (uncleaned) output of a single recognition pass."""

    text: str
    confidence: float
    word_count: int
    line_count: int


class Recognizer(ABC):
    """Runs one strategy against one image."""

    @abstractmethod
    async def recognize(self, image: bytes, strategy: OCRStrategy) -> RecognitionOutput:
        ...


class TesseractRecognizer(Recognizer):
    """Recognizer backed by the Tesseract binary through pytesseract."""

    def __init__(self, language: str = "eng", tesseract_cmd: Optional[str] = None):
        self.language = language
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd

    async def recognize(self, image: bytes, strategy: OCRStrategy) -> RecognitionOutput:
        try:
            return await asyncio.to_thread(self._recognize_sync, image, strategy)
        except RecognitionEngineError:
            raise
        except (
            pytesseract.TesseractError,
            pytesseract.TesseractNotFoundError,
            UnidentifiedImageError,
            OSError,
            ValueError,
        ) as e:
            raise RecognitionEngineError(
                strategy=strategy.name,
                message=f"{strategy.name} pass failed: {e}",
                context={"error_type": type(e).__name__},
            ) from e

    def _recognize_sync(self, image: bytes, strategy: OCRStrategy) -> RecognitionOutput:
        with Image.open(io.BytesIO(image)) as img:
            img.load()
            if img.mode not in ("RGB", "L"):
                img = img.convert("RGB")
            data = pytesseract.image_to_data(
                img,
                lang=self.language,
                config=strategy.tesseract_config(),
                output_type=pytesseract.Output.DICT,
            )
        return _assemble(data)


def _assemble(data: Dict[str, List]) -> RecognitionOutput:
    """Rebuild text and confidence from image_to_data's word table."""
    lines: Dict[Tuple[int, int, int, int], List[str]] = {}
    confidences: List[float] = []

    for i, word in enumerate(data.get("text", [])):
        word = (word or "").strip()
        if not word:
            continue
        key = (
            int(data["page_num"][i]),
            int(data["block_num"][i]),
            int(data["par_num"][i]),
            int(data["line_num"][i]),
        )
        lines.setdefault(key, []).append(word)
        conf = float(data["conf"][i])
        # Tesseract reports -1 for non-word boxes
        if conf >= 0:
            confidences.append(conf)

    text_lines = [" ".join(words) for _, words in sorted(lines.items())]
    confidence = sum(confidences) / len(confidences) if confidences else 0.0
    return RecognitionOutput(
        text="\n".join(text_lines),
        confidence=max(0.0, min(100.0, confidence)),
        word_count=sum(len(words) for words in lines.values()),
        line_count=len(text_lines),
    )
