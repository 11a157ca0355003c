"""
Auto-tagger: derives domain / action / status / entities / summary /
importance from raw content with one JSON-mode LLM call.

Tagging never blocks ingestion: any failure (provider error, malformed JSON,
out-of-vocabulary values) falls back to field-level defaults.
"""
from __future__ import annotations

from typing import Any, Optional

from loguru import logger

from memrag.query.llm import JsonLLM
from memrag.schemas import Importance, TaggingResult

MAX_TAG_INPUT_CHARS = 4000
MAX_ENTITIES = 10
MAX_SUMMARY_CHARS = 100

TAGGING_SYSTEM_PROMPT = """\
You analyse development activity records and extract metadata tags.

Extract the following in JSON format:
1. domain: one of [frontend, backend, database, infrastructure, design, research, debugging, testing, security, performance]
2. action: one of [create, update, delete, fix, research, deploy, configure, troubleshoot, document, refactor]
3. status: one of [success, failure, in_progress, abandoned, partial]
4. entities: array of specific names mentioned (files, functions, tables, features, technologies) - max 10 items
5. summary: one sentence summary (max 100 characters)
6. importance: one of [low, medium, high]

Return ONLY valid JSON, no other text. Example:
{"domain":"database","action":"fix","status":"success","entities":["user_sessions","RLS","policy"],"summary":"Fixed session lookups by adding an RLS policy","importance":"medium"}"""

TAGGING_USER_TEMPLATE = """\
Content to analyse:
<content>
{content}
</content>

Source: {source}
Data Type: {data_type}"""


def default_tags(content: str) -> TaggingResult:
    return TaggingResult(summary=content[:MAX_SUMMARY_CHARS])


def _importance(value: Any) -> Importance:
    try:
        return Importance(str(value).lower())
    except ValueError:
        return Importance.MEDIUM


def parse_tags(payload: dict[str, Any], content: str) -> TaggingResult:
    """Coerce an LLM payload into a TaggingResult, defaulting field by field."""
    entities = payload.get("entities")
    summary = payload.get("summary") or content[:MAX_SUMMARY_CHARS]
    return TaggingResult(
        domain=str(payload.get("domain") or "research"),
        action=str(payload.get("action") or "update"),
        status=str(payload.get("status") or "success"),
        entities=[str(e) for e in entities[:MAX_ENTITIES]] if isinstance(entities, list) else [],
        summary=str(summary)[:MAX_SUMMARY_CHARS],
        importance=_importance(payload.get("importance")),
    )


class AutoTagger:
    def __init__(self, llm: JsonLLM, max_tokens: int = 500) -> None:
        self.llm = llm
        self.max_tokens = max_tokens

    async def tag(self, content: str, source: str, data_type: str) -> TaggingResult:
        prompt = TAGGING_USER_TEMPLATE.format(
            content=content[:MAX_TAG_INPUT_CHARS], source=source, data_type=data_type
        )
        try:
            payload = await self.llm.complete_json(TAGGING_SYSTEM_PROMPT, prompt, max_tokens=self.max_tokens)
        except Exception as exc:
            logger.warning(f"[AutoTagger] Tagging failed, using defaults: {exc}")
            return default_tags(content)

        tags = parse_tags(payload, content)
        logger.debug(
            f"[AutoTagger] {source} | domain={tags.domain} action={tags.action} "
            f"importance={tags.importance.value} entities={len(tags.entities)}"
        )
        return tags


async def tag_or_default(
    tagger: Optional[AutoTagger], content: str, source: str, data_type: str
) -> TaggingResult:
    if tagger is None:
        return default_tags(content)
    return await tagger.tag(content, source, data_type)
