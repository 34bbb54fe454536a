"""
SnapNote — Enhancement Providers
=================================

What:  One interface over the two AI backends that can turn raw OCR text
       into a note: Gemini (remote) and the resident local model.
How:   Every provider answers enhance(prompt) with either an
       EnhancementResult (a validated NoteDraft) or an EnhancementFailure
       (error / malformed / unavailable). Providers never raise for
       provider-side problems. parse_note_payload() is the single
       parse-or-fail adapter shared by both providers.
Who:   NoteSynthesizer picks a provider by preference and never needs to
       know which backend answered.

Response Shapes:
    remote  → dict already decoded by GeminiNoteClient
    local   → free text that should contain a JSON object
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional, Union

from pydantic import ValidationError

from snapnote.exceptions import (
    CircuitBreakerOpenError,
    LLMServiceError,
    ModelLifecycleError,
)
from snapnote.schemas.note import NoteDraft, ProviderName

logger = logging.getLogger(__name__)


ENHANCEMENT_PROMPT = '''Transform this extracted text into a well-structured, comprehensive note with the following requirements:

EXTRACTED TEXT:
"""
{text}
"""

Please create a formatted note with:

1. **Title**: Generate a clear, descriptive title (2-8 words)
2. **Summary**: Brief 1-2 sentence overview
3. **Key Points**: Main ideas as bullet points
4. **Details**: Organize content with proper headings and subheadings
5. **Tags**: Relevant tags for categorization

Format the response as JSON:
{{
  "title": "Clear descriptive title",
  "summary": "Brief overview of the content",
  "content": "# Title\\n\\n## Summary\\n[summary]\\n\\n## Key Points\\n- Point 1\\n- Point 2\\n\\n## Details\\n### Section 1\\nContent...",
  "tags": ["tag1", "tag2", "tag3"],
  "confidence": 95
}}

Respond with the JSON object only. Make sure the content is well-organized with proper Markdown formatting, clear headings, and logical structure.'''


def build_enhancement_prompt(text: str) -> str:
    return ENHANCEMENT_PROMPT.format(text=text)


# ── Result Types ──────────────────────────────────────────────────────────


class FailureKind(str, Enum):
    ERROR = "error"              # provider raised (network, engine, circuit open)
    MALFORMED = "malformed"      # provider answered, but not with a note
    UNAVAILABLE = "unavailable"  # provider not configured / no model ready


@dataclass(frozen=True)
class EnhancementResult:
    draft: NoteDraft
    provider: ProviderName


@dataclass(frozen=True)
class EnhancementFailure:
    kind: FailureKind
    provider: ProviderName
    reason: str


EnhancementOutcome = Union[EnhancementResult, EnhancementFailure]


class MalformedPayload(ValueError):
    """Raised by parse_note_payload when a response is not a note object."""


_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)


def parse_note_payload(payload: Union[str, Mapping[str, Any]]) -> NoteDraft:
    """
    Turn a provider response into a NoteDraft.

    Strings must be a single JSON object, optionally wrapped in a
    Markdown code fence. Mappings are validated as-is.

    Raises:
        MalformedPayload: not JSON, not an object, or no usable field
    """
    if isinstance(payload, str):
        text = payload.strip()
        fenced = _FENCE.match(text)
        if fenced:
            text = fenced.group(1)
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as e:
            raise MalformedPayload(f"response is not valid JSON: {e.msg}") from e

    if not isinstance(payload, Mapping):
        raise MalformedPayload(f"expected a JSON object, got {type(payload).__name__}")

    try:
        draft = NoteDraft.model_validate(dict(payload))
    except ValidationError as e:
        raise MalformedPayload(f"note fields failed validation: {e.error_count()} errors") from e

    if not (draft.title or draft.summary or draft.content or draft.tags):
        raise MalformedPayload("response contains no note fields")
    return draft


# ── Providers ─────────────────────────────────────────────────────────────


class EnhancementProvider(ABC):
    name: ProviderName

    @abstractmethod
    async def enhance(self, prompt: str) -> EnhancementOutcome:
        """Return a result or a typed failure. Never raises for provider errors."""
        ...

    def _parse(self, payload: Union[str, Mapping[str, Any]]) -> EnhancementOutcome:
        try:
            return EnhancementResult(draft=parse_note_payload(payload), provider=self.name)
        except MalformedPayload as e:
            logger.warning("%s provider returned a malformed note: %s", self.name.value, str(e))
            return EnhancementFailure(FailureKind.MALFORMED, self.name, str(e))


class RemoteEnhancementProvider(EnhancementProvider):
    """Gemini-backed provider. Responses arrive already structured."""

    name = ProviderName.REMOTE

    def __init__(self, client):
        self.client = client

    async def enhance(self, prompt: str) -> EnhancementOutcome:
        if not self.client.is_configured:
            return EnhancementFailure(
                FailureKind.UNAVAILABLE, self.name, "Gemini API key is not configured"
            )
        try:
            payload = await self.client.generate(prompt)
        except (LLMServiceError, CircuitBreakerOpenError) as e:
            return EnhancementFailure(FailureKind.ERROR, self.name, e.message)
        return self._parse(payload)


class LocalEnhancementProvider(EnhancementProvider):
    """Resident-model provider. Responses are free text needing a JSON parse."""

    name = ProviderName.LOCAL

    def __init__(self, manager, max_tokens: Optional[int] = None):
        self.manager = manager
        self.max_tokens = max_tokens

    async def enhance(self, prompt: str) -> EnhancementOutcome:
        if not self.manager.is_ready():
            return EnhancementFailure(
                FailureKind.UNAVAILABLE, self.name, "No local model is loaded"
            )
        try:
            text = await self.manager.generate_text(prompt, max_tokens=self.max_tokens)
        except ModelLifecycleError as e:
            return EnhancementFailure(FailureKind.ERROR, self.name, e.message)
        return self._parse(text)
