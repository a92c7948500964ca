"""Relevance gate: a cheap heuristic, optionally backed by an LLM classifier."""

from __future__ import annotations

import asyncio
import logging

from chatdigest.errors import OracleError
from chatdigest.llm.prompts import RELEVANCE_GATE_DEFAULT
from chatdigest.models import GateDecision
from chatdigest.process.scoring import clamp_score
from chatdigest.process.text import URL_RE
from chatdigest.settings import STR, PipelineSettings, SettingsReader

logger = logging.getLogger(__name__)

MODE_HEURISTIC = "heuristic"
MODE_LLM = "llm"
MODE_HYBRID = "hybrid"

GATE_TIMEOUT = 1.2
DEFAULT_PROMPT_VERSION = "v1"
HEURISTIC_MODEL = "heuristic"
PROMPT_ACTIVE_KEY = "prompt:relevance_gate:active"
PROMPT_KEY_TEMPLATE = "prompt:relevance_gate:{version}"

DECISION_RELEVANT = "relevant"
DECISION_IRRELEVANT = "irrelevant"


def heuristic_gate(text: str, version: str = DEFAULT_PROMPT_VERSION) -> GateDecision:
    """Deterministic first-stage verdict."""

    def decide(decision: str, confidence: float, reason: str) -> GateDecision:
        return GateDecision(decision, confidence, reason, HEURISTIC_MODEL, version)

    stripped = text.strip()
    if not stripped:
        return decide(DECISION_IRRELEVANT, 1.0, "empty")
    if not URL_RE.sub("", stripped).strip():
        return decide(DECISION_IRRELEVANT, 0.9, "link_only")
    if not any(ch.isalnum() for ch in stripped):
        return decide(DECISION_IRRELEVANT, 0.8, "no_text")
    return decide(DECISION_RELEVANT, 0.6, "passed")


async def load_gate_prompt(reader: SettingsReader) -> tuple[str, str]:
    """Active (prompt, version); falls back to the built-in v1 prompt."""
    version = (await reader.get(PROMPT_ACTIVE_KEY, STR) or "").strip() or DEFAULT_PROMPT_VERSION
    prompt = await reader.get(PROMPT_KEY_TEMPLATE.format(version=version), STR)
    if prompt and prompt.strip():
        return prompt, version
    if version != DEFAULT_PROMPT_VERSION:
        logger.warning("Relevance gate prompt %s not found, using built-in prompt", version)
    return RELEVANCE_GATE_DEFAULT, version


class RelevanceGate:
    """Evaluates messages according to the configured gate mode."""

    def __init__(self, oracle, prompt: str, version: str, timeout: float = GATE_TIMEOUT):
        self.oracle = oracle
        self.prompt = prompt
        self.version = version
        self.timeout = timeout

    async def evaluate(self, text: str, settings: PipelineSettings) -> GateDecision:
        mode = (settings.relevance_gate_mode or MODE_HEURISTIC).strip().lower()
        heuristic = heuristic_gate(text, self.version)
        if mode not in (MODE_LLM, MODE_HYBRID) or self.oracle is None:
            return heuristic
        if mode == MODE_HYBRID and not heuristic.relevant:
            return heuristic
        return await self._ask_oracle(text, settings.relevance_gate_model, heuristic)

    async def _ask_oracle(self, text: str, model_hint: str, fallback: GateDecision) -> GateDecision:
        try:
            verdict = await asyncio.wait_for(
                self.oracle.relevance_gate(text, model_hint, self.prompt),
                timeout=self.timeout,
            )
        except (OracleError, asyncio.TimeoutError) as exc:
            logger.warning("Relevance gate oracle failed, using heuristic: %s", exc)
            return fallback

        if verdict.decision not in (DECISION_RELEVANT, DECISION_IRRELEVANT):
            logger.warning("Relevance gate returned invalid decision %r, using heuristic", verdict.decision)
            return fallback
        return GateDecision(
            decision=verdict.decision,
            confidence=clamp_score(verdict.confidence),
            reason=verdict.reason or "llm",
            model=verdict.model or model_hint or "llm",
            version=self.version,
        )
