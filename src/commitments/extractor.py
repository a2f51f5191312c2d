"""Candidate extractors: journal text to raw event candidates.

Deciding what counts as a real commitment (as opposed to a wish, a finished
action, or a vague mention) is the extractor's job.  The lifecycle manager
still re-validates date parseability and future-ness of every candidate.

``OllamaCandidateExtractor`` asks a local Ollama chat model for a JSON array
of events.  Transport failures raise ``UpstreamUnavailableError``; a reply
that is not usable JSON yields zero candidates.
"""

from __future__ import annotations

import abc
import json
import logging
import re
from typing import Any

import httpx
from pydantic import ValidationError

from commitments.errors import UpstreamUnavailableError
from commitments.models import CandidateEvent

logger = logging.getLogger(__name__)

DEFAULT_OLLAMA_BASE_URL = "http://localhost:11434"
DEFAULT_OLLAMA_MODEL = "llama3"
DEFAULT_EXTRACTOR_TEMPERATURE = 0.1

_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")

EXTRACTION_PROMPT = """You extract calendar commitments from a personal journal entry.

TODAY'S DATE: {reference_date}

Extract ONLY meetings, appointments, deadlines, and scheduled events that
have a specific date or a clear relative day ("tomorrow", "next Monday",
"December 12", "on the 19th").

Skip:
- wishes and intentions ("I want to", "I should")
- things that already happened ("I went to", "I had")
- mentions with no usable date ("I have a test")

JOURNAL:
{journal_text}

Respond with ONLY a JSON array, [] when nothing qualifies:
[
  {{
    "title": "Short event name",
    "date": "the date words exactly as written, or YYYY-MM-DD",
    "time": "the time words as written, or null",
    "context": "the exact sentence from the journal"
  }}
]"""


class CandidateExtractor(abc.ABC):
    """Turns journal text into raw event candidates."""

    @abc.abstractmethod
    async def extract(self, journal_text: str, reference_date: str) -> list[CandidateEvent]:
        """Return candidates mentioned in *journal_text*.

        *reference_date* is today's date as ``YYYY-MM-DD`` so the extractor can
        tell past from future mentions.
        """
        ...


def _strip_fences(content: str) -> str:
    match = _FENCED_JSON_RE.search(content)
    if match is not None:
        return match.group(1)
    return content


def parse_candidates(content: str) -> list[CandidateEvent]:
    """Parse a model reply into candidates, skipping items that fail validation."""
    try:
        payload = json.loads(_strip_fences(content.strip()))
    except json.JSONDecodeError:
        logger.warning("Extractor reply is not valid JSON; treating as zero candidates")
        return []

    if isinstance(payload, dict):
        payload = [payload] if "title" in payload else payload.get("events")
    if not isinstance(payload, list):
        logger.warning("Extractor reply has an unexpected shape; treating as zero candidates")
        return []

    candidates: list[CandidateEvent] = []
    for item in payload:
        if not isinstance(item, dict):
            continue
        try:
            candidates.append(
                CandidateEvent(
                    title=item.get("title") or "",
                    raw_date_expression=item.get("date") or "",
                    raw_time_expression=item.get("time"),
                    context_sentence=item.get("context") or item.get("sentence"),
                )
            )
        except ValidationError as exc:
            logger.info("Skipping invalid extractor item %r: %s", item, exc.errors()[0]["msg"])
    return candidates


class OllamaCandidateExtractor(CandidateExtractor):
    """Extractor backed by an Ollama ``/api/chat`` endpoint."""

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_OLLAMA_BASE_URL,
        model: str = DEFAULT_OLLAMA_MODEL,
        timeout_seconds: float = 60.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout_seconds)

    def _build_request(self, journal_text: str, reference_date: str) -> dict[str, Any]:
        prompt = EXTRACTION_PROMPT.format(
            reference_date=reference_date,
            journal_text=journal_text,
        )
        return {
            "model": self._model,
            "messages": [{"role": "user", "content": prompt}],
            "stream": False,
            "format": "json",
            "options": {"temperature": DEFAULT_EXTRACTOR_TEMPERATURE},
        }

    async def extract(self, journal_text: str, reference_date: str) -> list[CandidateEvent]:
        if not journal_text.strip():
            return []
        try:
            response = await self._http_client.post(
                f"{self._base_url}/api/chat",
                json=self._build_request(journal_text, reference_date),
            )
        except httpx.HTTPError as exc:
            raise UpstreamUnavailableError("extractor", f"Ollama request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise UpstreamUnavailableError(
                "extractor",
                f"Ollama returned HTTP {response.status_code}: {' '.join(response.text.split())[:200]}",
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamUnavailableError("extractor", "Ollama returned invalid JSON") from exc

        message = payload.get("message") if isinstance(payload, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            logger.warning("Ollama reply has no message content; treating as zero candidates")
            return []

        candidates = parse_candidates(content)
        logger.info("Extractor produced %d candidate(s)", len(candidates))
        return candidates

    async def shutdown(self) -> None:
        """Close the HTTP client when this extractor created it."""
        if self._owns_http_client:
            await self._http_client.aclose()
