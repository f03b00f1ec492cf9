"""Near-duplicate detection over nearest-neighbour search results.

A candidate document is compared against the chunks returned by a
similarity query. Neighbours whose effective score reaches the configured
threshold are reported as similar documents; when any exist, the decision
model is asked once whether to ``skip``, ``update`` or ``add``. Any failure
of that call, or an answer that cannot be read as a decision, resolves to
:data:`FALLBACK_DECISION` so that ingestion is never blocked by the model.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from pydantic import ValidationError

from rag_docstore.duplicates.llm import TextGenerator
from rag_docstore.duplicates.prompts import build_decision_prompt
from rag_docstore.exceptions import DecisionParseError
from rag_docstore.models import (
    AIDecision,
    DuplicateCheckConfig,
    DuplicateCheckResult,
    SearchResult,
    SimilarDocument,
)

logger = logging.getLogger(__name__)

FALLBACK_DECISION = AIDecision(
    action="add",
    reason="decision engine failed, conservatively adding",
    confidence=0.5,
)

DEFAULT_CONFIDENCE = 0.7

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def parse_decision(text: str) -> AIDecision:
    """Read the decision model's answer as an :class:`AIDecision`.

    Markdown fences and surrounding commentary are tolerated; anything else
    (no JSON object, invalid JSON, unknown action) raises
    :class:`DecisionParseError`.
    """
    cleaned = text.strip()
    # Strip ```json … ``` wrappers
    if cleaned.startswith("```"):
        first_newline = cleaned.index("\n") if "\n" in cleaned else 3
        cleaned = cleaned[first_newline + 1 :]
        if cleaned.endswith("```"):
            cleaned = cleaned[:-3]
        cleaned = cleaned.strip()

    match = _JSON_OBJECT.search(cleaned)
    if match is None:
        raise DecisionParseError("No JSON object in decision response", details={"response": text[:200]})
    try:
        payload = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise DecisionParseError(f"Invalid JSON in decision response: {exc}", details={"response": text[:200]}) from exc
    if not isinstance(payload, dict):
        raise DecisionParseError("Decision response is not a JSON object", details={"response": text[:200]})

    confidence = payload.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        payload["confidence"] = DEFAULT_CONFIDENCE
    if not payload.get("reason"):
        payload.pop("reason", None)

    try:
        return AIDecision.model_validate(payload)
    except ValidationError as exc:
        raise DecisionParseError(
            f"Decision response does not match the expected shape: {exc.error_count()} error(s)",
            details={"response": text[:200], "errors": exc.errors(include_url=False)},
        ) from exc


def _tag_set(tags: Any) -> set[Any]:
    # A bare string is one tag, not a sequence of characters.
    if isinstance(tags, str):
        return {tags}
    return set(tags)


def metadata_similarity(new: dict[str, Any], existing: dict[str, Any]) -> float:
    """Score two metadata records in ``[0, 1]``.

    Factors (only counted when both sides carry them): title (exact 1.0,
    case-insensitive 0.9, substring 0.7), author and category (exact match),
    tags (Jaccard). Returns the mean over present factors, 0 when none.
    """
    score = 0.0
    factors = 0

    new_title, old_title = new.get("title"), existing.get("title")
    if new_title and old_title:
        factors += 1
        a, b = str(new_title), str(old_title)
        if a == b:
            score += 1.0
        elif a.lower() == b.lower():
            score += 0.9
        elif a.lower() in b.lower() or b.lower() in a.lower():
            score += 0.7

    for key in ("author", "category"):
        if new.get(key) and existing.get(key):
            factors += 1
            if new[key] == existing[key]:
                score += 1.0

    new_tags, old_tags = new.get("tags"), existing.get("tags")
    if new_tags and old_tags:
        factors += 1
        a_tags, b_tags = _tag_set(new_tags), _tag_set(old_tags)
        score += len(a_tags & b_tags) / len(a_tags | b_tags)

    return score / factors if factors else 0.0


def _has_metadata_factors(new: dict[str, Any], existing: dict[str, Any]) -> bool:
    return any(new.get(key) and existing.get(key) for key in ("title", "author", "category", "tags"))


class DuplicateDetector:
    """Decide whether new content duplicates what is already stored.

    Parameters
    ----------
    generator:
        Text-generation backend for the resolution decision. ``None``
        disables the model call and every duplicate resolves to the
        fallback decision.
    preview_chars:
        Characters of each document included in the decision prompt.
    """

    def __init__(self, generator: TextGenerator | None = None, preview_chars: int = 500) -> None:
        self._generator = generator
        self._preview_chars = preview_chars

    def _score(self, result: SearchResult, new_metadata: dict[str, Any], strategy: str) -> float:
        if strategy == "semantic":
            return result.score
        meta_score = metadata_similarity(new_metadata, result.metadata)
        if strategy == "metadata":
            return meta_score
        # hybrid
        if _has_metadata_factors(new_metadata, result.metadata):
            return (result.score + meta_score) / 2
        return result.score

    async def check(
        self,
        new_content: str,
        new_metadata: dict[str, Any],
        neighbors: list[SearchResult],
        config: DuplicateCheckConfig,
    ) -> DuplicateCheckResult:
        """Filter *neighbors* against ``config.threshold`` and resolve duplicates."""
        if not config.enabled:
            return DuplicateCheckResult(is_duplicate=False, threshold=config.threshold)

        similar: list[SimilarDocument] = []
        for result in neighbors:
            score = self._score(result, new_metadata, config.strategy)
            if score >= config.threshold:
                similar.append(
                    SimilarDocument(
                        document_id=result.document_id,
                        content=result.content,
                        metadata=result.metadata,
                        score=score,
                        chunk_id=result.id,
                    )
                )
        similar.sort(key=lambda doc: doc.score, reverse=True)

        if not similar:
            return DuplicateCheckResult(is_duplicate=False, threshold=config.threshold)

        logger.info(
            "Found %d similar chunk(s) at or above threshold %.2f (best %.3f)",
            len(similar),
            config.threshold,
            similar[0].score,
        )

        decision = None
        if config.ai_decision_enabled:
            decision = await self._decide(new_content, new_metadata, similar[: config.top_k], config.threshold)

        return DuplicateCheckResult(
            is_duplicate=True,
            similar_documents=similar,
            decision=decision,
            threshold=config.threshold,
        )

    async def _decide(
        self,
        new_content: str,
        new_metadata: dict[str, Any],
        similar: list[SimilarDocument],
        threshold: float,
    ) -> AIDecision:
        if self._generator is None:
            logger.warning("No decision model configured; using fallback decision")
            return FALLBACK_DECISION

        prompt = build_decision_prompt(new_content, new_metadata, similar, threshold, self._preview_chars)
        try:
            text = await self._generator.generate(prompt)
            decision = parse_decision(text)
        except Exception:
            logger.warning("Duplicate decision failed; using fallback decision", exc_info=True)
            return FALLBACK_DECISION

        if decision.action == "update" and decision.target_document_id:
            known = {doc.document_id for doc in similar}
            if decision.target_document_id not in known:
                logger.warning(
                    "Decision targets %s, which is not among the similar documents", decision.target_document_id
                )
        logger.info("Duplicate decision: %s (confidence %.2f)", decision.action, decision.confidence)
        return decision
