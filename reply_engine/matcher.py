"""
Knowledge base matching for customer questions.

Strategies run from cheapest to most expensive:
1. Exact - normalized equality, containment, then token Jaccard for short strings
2. Keyword - overlap between query tokens and each item's keywords
3. Semantic - one backend call, only for small knowledge bases when the
   keyword stage is plausible but inconclusive

Stage 1 returns the first item in input order scoring at least 0.9, not the
best-scoring one. Callers that care about precedence order their knowledge
base accordingly.

Usage:
    matcher = KnowledgeMatcher()
    result = await matcher.match("Quels sont vos horaires ?", items)
    suggestions = find_top_matches("tarifs", items, limit=3)
"""

import re
import unicodedata
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple
from loguru import logger

from .llm import ChatBackend, LLMError, complete_json, get_llm_client
from .models import KnowledgeItem, KnowledgeReference, MatchResult, MatchStrategy
from .utils import get_config, sanitize_for_logging, sanitize_for_prompt, Timer


@dataclass
class MatcherConfig:
    """Thresholds for the three matching stages."""

    threshold: float = 0.6
    exact_accept: float = 0.9
    jaccard_accept: float = 0.7
    jaccard_max_length: int = 50
    semantic_max_candidates: int = 20
    semantic_floor: float = 0.3
    fallback_ratio: float = 0.7
    suggestion_floor: float = 0.3
    model: Optional[str] = None

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None) -> "MatcherConfig":
        config = config or get_config()
        return cls(
            threshold=config.get("FAQ_MATCH_THRESHOLD", 0.6),
            model=config.get("MATCHER_MODEL"),
        )


SEMANTIC_SYSTEM_PROMPT = """You are a semantic matching expert for a business messaging assistant.

TASK: Compare the customer's question with the numbered FAQ questions.

RULES:
- Only match when the question truly means the same thing
- Judge by intent, not by shared words
- Be strict: 0.9+ = nearly identical, 0.7-0.9 = very similar, 0.5-0.7 = similar, <0.5 = no match

Return ONLY a JSON object:
{
  "matched_index": number | null,
  "similarity": number,
  "reasoning": "short explanation"
}
matched_index is the 1-based FAQ number, or null when nothing matches."""


def normalize_text(text: str) -> str:
    """Lowercase, strip accents and punctuation, collapse whitespace."""
    if not text:
        return ""
    decomposed = unicodedata.normalize("NFD", text.lower())
    stripped = "".join(char for char in decomposed if not unicodedata.combining(char))
    stripped = re.sub(r"[^\w\s]", " ", stripped)
    return re.sub(r"\s+", " ", stripped).strip()


def exact_match_score(query: str, question: str, config: Optional[MatcherConfig] = None) -> float:
    """
    Score a query against one knowledge question.

    Returns 1.0 on normalized equality, 0.95 when the question contains the
    query, 0.9 when the query contains the question, the token Jaccard index
    when both are short and it clears the accept bar, else 0.
    """
    config = config or MatcherConfig()
    normalized_query = normalize_text(query)
    normalized_question = normalize_text(question)

    # Empty strings are contained in everything
    if not normalized_query or not normalized_question:
        return 0.0

    if normalized_query == normalized_question:
        return 1.0
    if normalized_query in normalized_question:
        return 0.95
    if normalized_question in normalized_query:
        return 0.9

    if len(normalized_query) < config.jaccard_max_length and len(normalized_question) < config.jaccard_max_length:
        query_words = set(normalized_query.split(" "))
        question_words = set(normalized_question.split(" "))
        jaccard = len(query_words & question_words) / len(query_words | question_words)
        if jaccard > config.jaccard_accept:
            return jaccard

    return 0.0


def keyword_overlap_score(query: str, keywords: Sequence[str]) -> float:
    """
    Score how well a query covers an item's keywords.

    Each keyword counts once: 1 for an exact query token, else 0.5 when it
    appears inside the query, else 0.3 when it overlaps a query token. The
    sum is scaled by max(3, 0.3 * keyword count) and capped at 1.
    """
    normalized_keywords = []
    for keyword in keywords:
        normalized = normalize_text(keyword)
        if normalized and normalized not in normalized_keywords:
            normalized_keywords.append(normalized)

    if not normalized_keywords:
        return 0.0

    normalized_query = normalize_text(query)
    query_words = {word for word in normalized_query.split(" ") if len(word) > 2}

    exact_hits = 0
    contained_hits = 0
    overlap_hits = 0

    for keyword in normalized_keywords:
        if keyword in query_words:
            exact_hits += 1
        elif keyword in normalized_query:
            contained_hits += 1
        elif any(word in keyword or keyword in word for word in query_words):
            overlap_hits += 1

    total = exact_hits + 0.5 * contained_hits + 0.3 * overlap_hits
    return min(1.0, total / max(3.0, len(normalized_keywords) * 0.3))


def _best_keyword_candidate(query: str, items: Sequence[KnowledgeItem]) -> Tuple[Optional[KnowledgeItem], float]:
    best_item: Optional[KnowledgeItem] = None
    best_score = 0.0
    for item in items:
        score = keyword_overlap_score(query, item.keywords)
        # Ties keep the earlier item
        if best_item is None or score > best_score:
            best_item = item
            best_score = score
    return best_item, best_score


def _result(item: KnowledgeItem, similarity: float, strategy: MatchStrategy) -> MatchResult:
    return MatchResult(
        item=KnowledgeReference.from_item(item),
        similarity=max(0.0, min(1.0, similarity)),
        strategy=strategy,
    )


class KnowledgeMatcher:
    """Multi-stage matcher over a knowledge base."""

    def __init__(self, backend: Optional[ChatBackend] = None, config: Optional[MatcherConfig] = None):
        self._backend = backend
        self.config = config or MatcherConfig.from_config()

    @property
    def backend(self) -> ChatBackend:
        if self._backend is None:
            self._backend = get_llm_client()
        return self._backend

    @property
    def model(self) -> str:
        return self.config.model or get_config()["MATCHER_MODEL"]

    async def match(
        self,
        query: str,
        items: Sequence[KnowledgeItem],
        threshold: Optional[float] = None,
    ) -> Optional[MatchResult]:
        """
        Match a query against the knowledge base.

        Args:
            query: Customer question
            items: Knowledge items, in precedence order
            threshold: Acceptance bar for keyword and semantic stages

        Returns:
            Optional[MatchResult]: Best match, or None
        """
        if not isinstance(query, str):
            raise TypeError("query must be a string")
        if not items:
            return None
        if threshold is None:
            threshold = self.config.threshold

        # 1. Exact
        for item in items:
            score = exact_match_score(query, item.question, self.config)
            if score >= self.config.exact_accept:
                logger.debug("Exact knowledge match", item_id=item.id, similarity=score)
                return _result(item, score, MatchStrategy.EXACT)

        # 2. Keyword
        best_item, best_score = _best_keyword_candidate(query, items)
        if best_item is not None and best_score >= threshold:
            logger.debug("Keyword knowledge match", item_id=best_item.id, similarity=best_score)
            return _result(best_item, best_score, MatchStrategy.KEYWORD)

        # 3. Semantic, only for small sets and plausible keyword scores
        if len(items) <= self.config.semantic_max_candidates and self.config.semantic_floor < best_score < threshold:
            semantic = await self._semantic_match(query, items, threshold)
            if semantic is not None:
                return semantic

        # Near miss on keywords still beats no answer
        if best_item is not None and best_score > 0 and best_score >= threshold * self.config.fallback_ratio:
            logger.debug("Keyword fallback match", item_id=best_item.id, similarity=best_score)
            return _result(best_item, best_score, MatchStrategy.KEYWORD)

        logger.debug("No knowledge match", query=sanitize_for_logging(query, 80), best_keyword_score=best_score)
        return None

    async def _semantic_match(
        self,
        query: str,
        items: Sequence[KnowledgeItem],
        threshold: float,
    ) -> Optional[MatchResult]:
        """Ask the backend to pick the item that means the same as the query."""
        faq_list = "\n".join(f"{index}. {item.question}" for index, item in enumerate(items, start=1))
        messages = [
            {"role": "system", "content": SEMANTIC_SYSTEM_PROMPT},
            {"role": "user", "content": f'Customer question: "{sanitize_for_prompt(query, 500)}"\n\nFAQs:\n{faq_list}'},
        ]

        try:
            with Timer("semantic_match"):
                verdict = await complete_json(
                    self.backend,
                    model=self.model,
                    messages=messages,
                    temperature=0,
                    max_tokens=200,
                )
        except LLMError as e:
            logger.warning("Semantic match failed", error=str(e))
            return None

        index = verdict.get("matched_index")
        similarity = verdict.get("similarity")
        if isinstance(index, bool) or not isinstance(index, int):
            return None
        if isinstance(similarity, bool) or not isinstance(similarity, (int, float)):
            return None
        try:
            similarity = float(similarity)
        except OverflowError:
            return None
        # NaN fails every comparison, so reject it explicitly
        if similarity != similarity:
            return None
        if not 1 <= index <= len(items) or similarity < threshold:
            return None

        item = items[index - 1]
        logger.debug("Semantic knowledge match", item_id=item.id, similarity=similarity)
        return _result(item, similarity, MatchStrategy.SEMANTIC)


def find_top_matches(
    query: str,
    items: Sequence[KnowledgeItem],
    limit: int = 3,
    min_score: float = 0.3,
    config: Optional[MatcherConfig] = None,
) -> List[MatchResult]:
    """
    Rank knowledge items for suggestion surfaces. Never calls the backend.

    Each item scores the max of its exact and keyword scores; items scoring
    above ``min_score`` are returned best first, at most ``limit`` of them.
    """
    config = config or MatcherConfig()
    scored: List[MatchResult] = []

    for item in items:
        exact_score = exact_match_score(query, item.question, config)
        keyword_score = keyword_overlap_score(query, item.keywords)
        best_score = max(exact_score, keyword_score)
        if best_score > min_score:
            strategy = MatchStrategy.EXACT if exact_score > keyword_score else MatchStrategy.KEYWORD
            scored.append(_result(item, best_score, strategy))

    # sorted() is stable, so equal scores keep knowledge base order
    scored = sorted(scored, key=lambda result: result.similarity, reverse=True)
    return scored[:max(0, limit)]
