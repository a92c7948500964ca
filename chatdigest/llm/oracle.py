"""Oracle: the typed LLM operations the pipeline relies on."""

from __future__ import annotations

import json
import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

from chatdigest import metrics
from chatdigest.errors import OracleError, OracleResponseError
from chatdigest.llm import get_provider_for_task
from chatdigest.llm import prompts
from chatdigest.llm.base import LLMResponse
from chatdigest.models import BatchResult, Candidate, ExtractedBullet
from chatdigest.process.scoring import clamp_score

logger = logging.getLogger(__name__)

TASK_SUMMARIZE = "summarize"
TASK_SUMMARIZE_TIERED = "summarize_tiered"
TASK_TRANSLATE = "translate"
TASK_RELEVANCE_GATE = "relevance_gate"
TASK_BULLETS = "bullets"

MAX_MESSAGE_CHARS = 4000
MAX_CONTEXT_CHARS = 600
MAX_LINK_CHARS = 1500


@dataclass
class GateVerdict:
    """Raw answer of the relevance gate classifier."""

    decision: str
    confidence: float
    reason: str
    model: str = ""


@dataclass
class BulletInput:
    text: str
    preview: str = ""
    summary: str = ""
    relevance_score: float = 0.0
    importance_score: float = 0.0
    max_bullets: int = 3


def _normalize_quotes(text: str) -> str:
    """Replace smart/curly quotes with straight quotes for JSON parsing."""
    return (
        text
        .replace("“", '"')
        .replace("”", '"')
        .replace("‘", "'")
        .replace("’", "'")
    )


def _try_parse(text: str):
    for candidate in (text, _normalize_quotes(text)):
        try:
            return json.loads(candidate)
        except (json.JSONDecodeError, ValueError):
            continue
    return None


def extract_json(text: str):
    """Pull a JSON object or array out of LLM output with fences or chatter."""
    result = _try_parse(text)
    if result is not None:
        return result

    fenced = re.search(r"```(?:json)?\s*\n?(.*?)\n?```", text, re.DOTALL)
    if fenced:
        result = _try_parse(fenced.group(1))
        if result is not None:
            return result

    for pattern in (r"\{.*\}", r"\[.*\]"):
        block = re.search(pattern, text, re.DOTALL)
        if block:
            result = _try_parse(block.group(0))
            if result is not None:
                return result
    return None


def _as_float(value) -> float:
    try:
        return clamp_score(float(value))
    except (TypeError, ValueError):
        return 0.0


def _clip(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "…"


class BaseOracle(ABC):
    """LLM-backed classification, summarization and extraction."""

    @abstractmethod
    async def process_batch(
        self,
        messages: list[Candidate],
        digest_language: str,
        model_hint: str = "",
        tone: str = "",
        task: str = TASK_SUMMARIZE,
    ) -> list[BatchResult]: ...

    @abstractmethod
    async def translate_text(self, text: str, target_lang: str, model_hint: str = "") -> str: ...

    @abstractmethod
    async def relevance_gate(self, text: str, model_hint: str, prompt: str) -> GateVerdict: ...

    @abstractmethod
    async def extract_bullets(
        self, data: BulletInput, digest_language: str, model_hint: str = ""
    ) -> list[ExtractedBullet]: ...


class LLMOracle(BaseOracle):
    """BaseOracle over the configured LLM providers, routed per task."""

    def __init__(self, config: dict):
        self.config = config

    async def _complete(
        self,
        task: str,
        prompt: str,
        system: str = "",
        model_hint: str = "",
        temperature: float = 0.3,
        max_tokens: int = 2000,
    ) -> LLMResponse:
        provider, model = get_provider_for_task(self.config, task)
        started = time.monotonic()
        try:
            response = await provider.complete(
                prompt,
                system=system,
                model=model_hint or model,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except OracleError:
            raise
        except Exception as exc:
            raise OracleError(f"{task} call to {provider.provider_name} failed: {exc}") from exc
        finally:
            metrics.oracle_latency_seconds.labels(task=task).observe(time.monotonic() - started)
        return response

    def build_batch_prompt(self, messages: list[Candidate], digest_language: str, tone: str) -> str:
        blocks = []
        for index, cand in enumerate(messages):
            context = ""
            if cand.channel_context:
                joined = "\n---\n".join(_clip(c, MAX_CONTEXT_CHARS) for c in cand.channel_context)
                context = prompts.CONTEXT_BLOCK.format(context=joined)
            links = ""
            if cand.links and cand.links_in_prompt:
                lines = [
                    f"- {link.title or link.url}: {_clip(link.content, MAX_LINK_CHARS)}"
                    for link in cand.links
                ]
                links = prompts.LINKS_BLOCK.format(links="\n".join(lines))
            blocks.append(prompts.MESSAGE_BLOCK.format(
                index=index,
                channel=cand.raw.channel_title or cand.raw.channel_username or cand.raw.channel_id,
                context=context,
                text=_clip(cand.text, MAX_MESSAGE_CHARS),
                links=links,
            ))
        return prompts.SUMMARIZE_BATCH.format(
            language=prompts.language_name(digest_language),
            tone=prompts.TONE_LINE.format(tone=tone) if tone else "",
            count=len(messages),
            messages="\n".join(blocks),
        )

    async def process_batch(
        self, messages, digest_language, model_hint="", tone="", task=TASK_SUMMARIZE,
    ):
        if not messages:
            return []
        response = await self._complete(
            task,
            self.build_batch_prompt(messages, digest_language, tone),
            system=prompts.SUMMARIZE_SYSTEM,
            model_hint=model_hint,
            max_tokens=400 * len(messages) + 200,
        )
        text = response.text
        data = extract_json(text)
        if isinstance(data, dict):
            data = data.get("results")
        if not isinstance(data, list):
            raise OracleResponseError(f"batch response is not a result list: {text[:200]!r}")

        results = []
        for position, entry in enumerate(data):
            if not isinstance(entry, dict):
                raise OracleResponseError(f"batch result {position} is not an object")
            index = entry.get("index", position)
            results.append(BatchResult(
                index=index if isinstance(index, int) else position,
                relevance_score=_as_float(entry.get("relevance_score")),
                importance_score=_as_float(entry.get("importance_score")),
                topic=str(entry.get("topic") or "").strip(),
                summary=str(entry.get("summary") or "").strip(),
                language=str(entry.get("language") or "").strip(),
                source_channel=str(entry.get("source_channel") or "").strip(),
            ))
        return results

    async def translate_text(self, text, target_lang, model_hint=""):
        if not text.strip():
            return text
        response = await self._complete(
            TASK_TRANSLATE,
            prompts.TRANSLATE.format(language=prompts.language_name(target_lang), text=text),
            system=prompts.TRANSLATE_SYSTEM,
            model_hint=model_hint,
            temperature=0.1,
            max_tokens=800,
        )
        translated = response.text.strip().strip('"').strip()
        if not translated:
            raise OracleResponseError("empty translation")
        return translated

    async def relevance_gate(self, text, model_hint, prompt):
        response = await self._complete(
            TASK_RELEVANCE_GATE,
            prompt + prompts.RELEVANCE_GATE_MESSAGE.format(text=_clip(text, MAX_MESSAGE_CHARS)),
            model_hint=model_hint,
            temperature=0.0,
            max_tokens=120,
        )
        raw = response.text
        data = extract_json(raw)
        if not isinstance(data, dict):
            raise OracleResponseError(f"gate response is not an object: {raw[:200]!r}")
        try:
            confidence = float(data.get("confidence", 0.0))
        except (TypeError, ValueError):
            confidence = 0.0
        return GateVerdict(
            decision=str(data.get("decision") or "").strip().lower(),
            confidence=confidence,
            reason=str(data.get("reason") or "").strip(),
            model=response.model,
        )

    async def extract_bullets(self, data, digest_language, model_hint=""):
        preview = f"Link preview: {data.preview}\n" if data.preview else ""
        response = await self._complete(
            TASK_BULLETS,
            prompts.BULLETS.format(
                max_bullets=data.max_bullets,
                language=prompts.language_name(digest_language),
                text=_clip(data.text, MAX_MESSAGE_CHARS),
                preview=preview,
                summary=data.summary,
            ),
            system=prompts.BULLETS_SYSTEM,
            model_hint=model_hint,
            max_tokens=600,
        )
        parsed = extract_json(response.text)
        if isinstance(parsed, dict):
            parsed = parsed.get("bullets")
        if not isinstance(parsed, list):
            logger.warning("Unparsable bullet response, using summary as the only bullet")
            return self._fallback_bullets(data)

        bullets = []
        for entry in parsed[: data.max_bullets]:
            if isinstance(entry, str):
                entry = {"text": entry}
            if not isinstance(entry, dict):
                continue
            text = str(entry.get("text") or "").strip()
            if not text:
                continue
            bullets.append(ExtractedBullet(
                text=text,
                topic=str(entry.get("topic") or "").strip(),
                relevance_score=_as_float(entry.get("relevance_score", data.relevance_score)),
                importance_score=_as_float(entry.get("importance_score", data.importance_score)),
            ))
        return bullets

    @staticmethod
    def _fallback_bullets(data: BulletInput) -> list[ExtractedBullet]:
        if not data.summary:
            return []
        return [ExtractedBullet(
            text=data.summary,
            relevance_score=data.relevance_score,
            importance_score=data.importance_score,
        )]
