"""Translation and scoring capabilities.

The orchestrator only sees the ``Translator`` and ``Scorer`` protocols. HTTP
backed implementations talk to the configured providers; the demo ones are
deterministic stand-ins used when ``DEMO_MODE`` is on or no provider is
configured.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Optional, Protocol

import httpx

from langloop.schemas.domain import EditorialGuidelines
from langloop.services.errors import CapabilityError

logger = logging.getLogger(__name__)

SCORE_PATTERN = re.compile(r"editorialComplianceScore:\s*(\d+(?:\.\d+)?)", re.IGNORECASE)
DEFAULT_RAW_SCORE = 50.0
SCORE_SCALE = 20.0  # raw 1-100 -> 0.05-5


@dataclass
class ScoreResult:
    """Raw compliance score (1-100) with the reviewer's findings."""

    score: float
    findings: list[str] = field(default_factory=list)

    @property
    def normalized(self) -> float:
        return normalize_score(self.score)


class Translator(Protocol):
    async def translate(self, text: str, guidelines: EditorialGuidelines, language: str) -> str:
        ...


class Scorer(Protocol):
    async def score(self, text: str, guidelines: EditorialGuidelines, context: Optional[str] = None) -> ScoreResult:
        ...


def normalize_score(raw: float) -> float:
    """Map a 1-100 compliance score onto the 1-5 review scale."""
    return round(raw / SCORE_SCALE, 4)


def build_review_prompt(text: str, guidelines: EditorialGuidelines, context: Optional[str] = None) -> str:
    """Prompt asking the model to review ``text`` and end with a compliance score."""
    parts = [
        "Please review the following translated text against the editorial guidelines provided. "
        "Provide specific feedback on compliance and areas for improvement.",
        "",
        "Text to review:",
        text,
    ]
    if context:
        parts += ["", "Context:", context]

    parts += ["", "Editorial Guidelines:"]
    if guidelines.tone:
        parts.append(f"- Tone: {guidelines.tone}")
    if guidelines.style:
        parts.append(f"- Style: {guidelines.style}")
    if guidelines.target_audience:
        parts.append(f"- Target Audience: {guidelines.target_audience}")
    if guidelines.restrictions:
        parts.append(f"- Restrictions: {', '.join(guidelines.restrictions)}")
    if guidelines.requirements:
        parts.append(f"- Requirements: {', '.join(guidelines.requirements)}")

    parts += [
        "",
        "Please provide your review as a numbered list of specific observations, each on a new line "
        'starting with a number and period (e.g., "1. The tone is...").',
        "",
        "At the end of your review, provide an editorialComplianceScore as a number between 1 and 100, "
        "where 1 indicates very poor compliance and 100 perfect compliance. "
        'Format this as: "editorialComplianceScore: [number]"',
    ]
    return "\n".join(parts)


def parse_review_response(review_text: str) -> ScoreResult:
    """Extract numbered findings and the compliance score (clamped to 1-100)."""
    findings = []
    score = DEFAULT_RAW_SCORE

    for line in review_text.splitlines():
        line = line.strip()
        if not line:
            continue

        match = SCORE_PATTERN.search(line)
        if match:
            score = min(max(float(match.group(1)), 1.0), 100.0)
            continue

        numbered = re.match(r"^\d+\.\s*(.*)$", line)
        if numbered:
            findings.append(numbered.group(1))
        elif not re.match(r"^(please|here|the following)", line, re.IGNORECASE):
            findings.append(line)

    return ScoreResult(score=score, findings=findings or ["Review completed successfully"])


class HttpTranslator:
    """Translation provider reached over HTTP."""

    def __init__(self, url: str, api_key: Optional[str] = None, timeout: float = 120.0):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout

    async def translate(self, text: str, guidelines: EditorialGuidelines, language: str) -> str:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        payload = {
            "text": text,
            "target_language": language,
            "guidelines": guidelines.model_dump(mode="json", exclude_none=True),
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=payload, headers=headers)
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPError as e:
            raise CapabilityError("translation", str(e)) from e

        translated = body.get("translated_text") or body.get("translatedText")
        if not translated:
            raise CapabilityError("translation", "provider returned no translated text")
        return translated


class AnthropicScorer:
    """Scores translations with the Anthropic Messages API."""

    def __init__(
        self,
        api_key: str,
        url: str = "https://api.anthropic.com/v1/messages",
        model: str = "claude-sonnet-4-20250514",
        max_tokens: int = 1024,
        timeout: float = 120.0,
    ):
        self.api_key = api_key
        self.url = url
        self.model = model
        self.max_tokens = max_tokens
        self.timeout = timeout

    async def score(self, text: str, guidelines: EditorialGuidelines, context: Optional[str] = None) -> ScoreResult:
        """
        Ask the model for a review and parse its compliance score.

        Args:
            text: Translated text to score
            guidelines: Editorial guidelines to score against
            context: Source article, optionally followed by human feedback

        Returns:
            ScoreResult with the raw 1-100 score
        """
        payload = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": [{"role": "user", "content": build_review_prompt(text, guidelines, context)}],
        }
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": "2023-06-01",
            "content-type": "application/json",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=payload, headers=headers)
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPError as e:
            raise CapabilityError("scoring", str(e)) from e

        review_text = "\n".join(
            block.get("text", "") for block in body.get("content", []) if block.get("type") == "text"
        )
        if not review_text:
            raise CapabilityError("scoring", "model returned no text content")
        return parse_review_response(review_text)


class DemoTranslator:
    """Marks the text with the target language instead of translating it."""

    async def translate(self, text: str, guidelines: EditorialGuidelines, language: str) -> str:
        return f"[TRANSLATED TO {language.upper()}] {text}"


class DemoScorer:
    """Always reports the same high compliance score."""

    def __init__(self, score: float = 92.0):
        self._score = score

    async def score(self, text: str, guidelines: EditorialGuidelines, context: Optional[str] = None) -> ScoreResult:
        findings = []
        if guidelines.tone:
            findings.append(f"Tone compliance: verified against {guidelines.tone} tone")
        if guidelines.style:
            findings.append(f"Style compliance: verified against {guidelines.style} style")
        if guidelines.target_audience:
            findings.append(f"Audience alignment: verified for {guidelines.target_audience}")
        return ScoreResult(score=self._score, findings=findings or ["Review completed successfully"])
