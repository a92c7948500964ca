"""Prompt templates for every oracle task."""

from __future__ import annotations

LANGUAGE_NAMES = {"en": "English", "ru": "Russian", "uk": "Ukrainian"}


def language_name(code: str) -> str:
    return LANGUAGE_NAMES.get(code, code or "English")


SUMMARIZE_SYSTEM = """\
You are an editor preparing a news digest from Telegram channel posts.
You score and summarize each post independently and answer with JSON only."""

SUMMARIZE_BATCH = """\
Analyze each message below. For every message return an object with:
- "index": the number shown in [brackets]
- "relevance_score": 0.0-1.0, how much the message contains real news or useful information
- "importance_score": 0.0-1.0, how significant the information is for a general reader
- "topic": a short topic label (1-3 words)
- "summary": one or two sentences in {language}, stating the concrete facts (who, what, numbers, dates)
- "language": ISO 639-1 code of the ORIGINAL message
- "source_channel": the channel name shown for the message

Only the text under ">>> MESSAGE TO SUMMARIZE <<<" is summarized. BACKGROUND CONTEXT
and LINK CONTENT sections are there to help you understand it; do not summarize them.
Do not start summaries with labels like "Summary:".{tone}

Return exactly {count} results, in the same order as the messages:
{{"results": [{{"index": 0, "relevance_score": 0.0, "importance_score": 0.0, "topic": "", "summary": "", "language": "", "source_channel": ""}}]}}

{messages}"""

TONE_LINE = "\nWrite in a {tone} tone."

MESSAGE_BLOCK = """\
[{index}] Source channel: {channel}
{context}>>> MESSAGE TO SUMMARIZE <<<
{text}
{links}"""

CONTEXT_BLOCK = """\
BACKGROUND CONTEXT (earlier posts from the same channel):
{context}
"""

LINKS_BLOCK = """\
LINK CONTENT:
{links}
"""

TRANSLATE_SYSTEM = "You are a professional news translator. Reply with the translation only."

TRANSLATE = """\
Translate the following text into {language}. Keep names, numbers and links intact.
Do not add explanations or quotes.

{text}"""

RELEVANCE_GATE_DEFAULT = """\
You are a relevance gate for a Telegram digest pipeline.
Decide if the message should be summarized for a news digest.
Return ONLY JSON with keys: decision ("relevant" or "irrelevant"), confidence (0-1), reason (short_snake_case).

Rubric:
- Relevant if it contains a factual update, news, or meaningful information likely to matter to readers.
- Irrelevant if it is spam, pure promotion, link-only, empty, or non-informational chatter.
- If unsure, choose "relevant" with low confidence.
"""

RELEVANCE_GATE_MESSAGE = """\

Message:
{text}"""

BULLETS_SYSTEM = "You split news posts into short standalone facts and answer with JSON only."

BULLETS = """\
Extract up to {max_bullets} key facts from the message as short bullets in {language}.
Each bullet must be one standalone sentence with a concrete fact, shorter than the message itself.
Skip promotion, greetings and calls to action.

Return JSON: {{"bullets": [{{"text": "", "topic": "", "relevance_score": 0.0, "importance_score": 0.0}}]}}

Message:
{text}
{preview}
Existing summary: {summary}"""
