"""
SnapNote — Note Synthesizer
============================

What:  Turns raw OCR text into a fully populated EnhancedNote.
How:   enhance=False  → heuristic passthrough note
       enhance=True   → one structured prompt to the preferred provider;
                        gaps in its answer are filled from the heuristic
       any failure    → heuristic note marked provider_used="fallback"
Who:   CaptureService, after OCR.

Degradation Ladder (confidence):
    remote success            provider value, else 90
    local success             provider value, else 85
    local answered non-JSON   75 (fallback)
    remote answered no note   60 (fallback)
    provider error / missing  60 (fallback)
    enhancement disabled      60 (fallback)

synthesize() never raises. Enhancement is additive and must never block
note capture.
"""

import logging
import re
from collections import Counter
from typing import List, Optional

from snapnote.config import settings
from snapnote.schemas.note import EnhancedNote, NoteDraft, ProviderName, SynthesisOptions
from snapnote.services.enhancement import (
    EnhancementFailure,
    EnhancementProvider,
    FailureKind,
    build_enhancement_prompt,
)

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Extracted Note"

STOP_WORDS = frozenset({
    "the", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with",
    "by", "is", "are", "was", "were", "be", "been", "have", "has", "had",
    "do", "does", "did", "will", "would", "could", "should",
    "this", "that", "these", "those", "from", "into", "than", "then",
    "there", "their", "they", "them", "what", "when", "which", "while",
    "about", "also", "some", "such", "only", "very", "just", "your",
})

_NON_WORD = re.compile(r"[^\w\s]")


# ── Heuristics ────────────────────────────────────────────────────────────


def _non_empty_lines(text: str) -> List[str]:
    return [line.strip() for line in text.split("\n") if line.strip()]


def extract_title(text: str) -> str:
    lines = _non_empty_lines(text)
    if not lines:
        return DEFAULT_TITLE
    first = lines[0]
    if len(first) <= 50:
        return first
    words = first.split()
    return " ".join(words[:6]) + ("..." if len(words) > 6 else "")


def summarize(text: str, limit: int = 150) -> str:
    text = text.strip()
    if len(text) <= limit:
        return text
    return text[:limit].rstrip() + "..."


def format_as_markdown(text: str) -> str:
    """
    Minimal markdown: title heading, summary excerpt, then the body with
    short unterminated lines promoted to sub-headings.
    """
    lines = _non_empty_lines(text)
    if not lines:
        return text

    parts = [f"# {extract_title(text)}", "## Summary", summarize(text, 200), "## Content"]
    for line in lines[1:]:
        if len(line) < 50 and not line.endswith((".", ",")):
            parts.append(f"### {line}")
        else:
            parts.append(line)
    return "\n\n".join(parts) + "\n"


def generate_tags(text: str, limit: int = 5) -> List[str]:
    """Most frequent words longer than three characters, ties in order of appearance."""
    words = _NON_WORD.sub(" ", text.lower()).split()
    counts = Counter(w for w in words if len(w) > 3 and w not in STOP_WORDS)
    return [word for word, _ in counts.most_common(limit)]


# ── Synthesizer ───────────────────────────────────────────────────────────


class NoteSynthesizer:
    def __init__(
        self,
        remote_provider: Optional[EnhancementProvider] = None,
        local_provider: Optional[EnhancementProvider] = None,
    ):
        self.providers = {
            ProviderName.REMOTE: remote_provider,
            ProviderName.LOCAL: local_provider,
        }

    async def synthesize(self, raw_text: str, options: Optional[SynthesisOptions] = None) -> EnhancedNote:
        options = options or SynthesisOptions()
        try:
            if not options.enhance:
                return self.heuristic_note(raw_text, settings.fallback_confidence)
            return await self._enhance(raw_text, options.provider_preference)
        except Exception:
            logger.exception("Note synthesis failed, using heuristic note")
            return self.heuristic_note(raw_text, settings.fallback_confidence)

    async def _enhance(self, raw_text: str, preference: ProviderName) -> EnhancedNote:
        provider = self.providers.get(preference)
        if provider is None:
            logger.warning("No %s enhancement provider configured", preference.value)
            return self.heuristic_note(raw_text, settings.fallback_confidence)

        outcome = await provider.enhance(build_enhancement_prompt(raw_text))

        if isinstance(outcome, EnhancementFailure):
            logger.warning(
                "%s enhancement unavailable (%s): %s",
                outcome.provider.value,
                outcome.kind.value,
                outcome.reason,
            )
            # Gemini runs in JSON mode, so only the local model earns the malformed rung
            if outcome.kind == FailureKind.MALFORMED and outcome.provider == ProviderName.LOCAL:
                return self.heuristic_note(raw_text, settings.malformed_fallback_confidence)
            return self.heuristic_note(raw_text, settings.fallback_confidence)

        default_confidence = (
            settings.remote_default_confidence
            if outcome.provider == ProviderName.REMOTE
            else settings.local_default_confidence
        )
        return self._merge(raw_text, outcome.draft, outcome.provider, default_confidence)

    def _merge(
        self,
        raw_text: str,
        draft: NoteDraft,
        provider: ProviderName,
        default_confidence: float,
    ) -> EnhancedNote:
        note = EnhancedNote(
            title=draft.title or extract_title(raw_text),
            summary=draft.summary or summarize(raw_text),
            content=draft.content or format_as_markdown(raw_text),
            tags=draft.tags or generate_tags(raw_text),
            confidence=default_confidence if draft.confidence is None else draft.confidence,
            provider_used=provider,
        )
        logger.info(
            "Note enhanced by %s provider: title=%r tags=%d",
            provider.value,
            note.title,
            len(note.tags),
        )
        return note

    @staticmethod
    def heuristic_note(raw_text: str, confidence: float) -> EnhancedNote:
        text = raw_text or ""
        return EnhancedNote(
            title=extract_title(text),
            summary=summarize(text),
            content=format_as_markdown(text),
            tags=generate_tags(text),
            confidence=confidence,
            provider_used=ProviderName.FALLBACK,
        )
