"""
Keyword extraction for knowledge base items.

Keywords feed the matcher's keyword stage. The backend proposes synonyms and
spelling variants a customer might use; when it is unavailable or answers
with something unusable, a local tokenizer takes over so importing a
knowledge base never fails because of the model.
"""

import asyncio
from typing import List, Optional, Sequence
from loguru import logger

from .llm import ChatBackend, LLMError, complete_json, get_llm_client
from .matcher import normalize_text
from .models import KnowledgeItem
from .utils import get_config, sanitize_for_prompt, Timer


MAX_LOCAL_KEYWORDS = 15
MAX_KEYWORDS = 20
DEFAULT_BATCH_SIZE = 5


STOP_WORDS = frozenset(normalize_text(word) for word in (
    # French
    "le", "la", "les", "un", "une", "des", "du", "de", "à", "au", "aux",
    "et", "ou", "mais", "donc", "car", "ni", "que", "qui", "quoi",
    "ce", "ces", "cette", "cet", "mon", "ma", "mes", "ton", "ta", "tes",
    "son", "sa", "ses", "notre", "votre", "leur", "nous", "vous", "ils",
    "je", "tu", "il", "elle", "on", "elles", "en", "y", "ne", "pas",
    "plus", "moins", "très", "bien", "mal", "peu", "beaucoup", "trop",
    "pour", "par", "sur", "sous", "dans", "avec", "sans", "entre",
    "est", "sont", "être", "avoir", "fait", "faire", "peut", "pouvoir",
    "comment", "pourquoi", "quand", "combien", "quel", "quelle", "quels", "quelles",
    "vos", "nos", "leurs",
    # English
    "the", "and", "for", "are", "but", "not", "you", "your", "our", "can",
    "what", "when", "where", "which", "who", "how", "why", "does", "this",
    "that", "with", "from", "have", "has", "was", "were", "will", "would",
    "there", "their", "they", "them", "any", "all",
))


KEYWORD_SYSTEM_PROMPT = """You extract keywords used to match customer questions against a business FAQ.

TASK: Extract the relevant keywords from the FAQ question and answer.

INCLUDE:
- The main words of the question
- Common synonyms in the FAQ's language
- Spelling variants (with and without accents)
- Business domain terms
- Alternative phrasings customers might use

EXCLUDE:
- Stop words (le, la, de, the, of...)
- Overly generic words (thing, stuff, chose, truc...)

Return ONLY a JSON object with a "keywords" array of 10-15 unique keywords.

EXAMPLE:
Q: Quels sont vos horaires d'ouverture ?
A: Nous sommes ouverts du lundi au vendredi de 9h à 18h.

{"keywords": ["horaires", "ouverture", "heure", "ouvrir", "fermer", "fermeture", "quand", "lundi", "vendredi", "semaine", "jours", "heures", "disponible"]}"""


def extract_keywords_local(question: str, answer: str, limit: int = MAX_LOCAL_KEYWORDS) -> List[str]:
    """
    Tokenize a question/answer pair without calling the backend.

    Text is normalized the same way the matcher normalizes queries; stop
    words and tokens of two characters or fewer are dropped, first
    occurrence order is kept.
    """
    normalized = normalize_text(f"{question} {answer}")

    keywords: List[str] = []
    for word in normalized.split(" "):
        if len(word) > 2 and word not in STOP_WORDS and word not in keywords:
            keywords.append(word)

    return keywords[:max(0, limit)]


def _dedupe(keywords: Sequence[str], limit: int = MAX_KEYWORDS) -> List[str]:
    unique: List[str] = []
    for keyword in keywords:
        if keyword not in unique:
            unique.append(keyword)
    return unique[:limit]


async def extract_keywords(
    question: str,
    answer: str,
    backend: Optional[ChatBackend] = None,
    model: Optional[str] = None,
) -> List[str]:
    """
    Extract matching keywords for one knowledge item.

    Args:
        question: Knowledge item question
        answer: Knowledge item answer
        backend: Chat backend, defaults to the global OpenRouter client
        model: Model id, defaults to the tier 1 model

    Returns:
        List[str]: Lowercased keywords, at most 20; the local extraction when
        the backend call fails or returns no usable list
    """
    messages = [
        {"role": "system", "content": KEYWORD_SYSTEM_PROMPT},
        {
            "role": "user",
            "content": f"Question: {sanitize_for_prompt(question, 500)}\nAnswer: {sanitize_for_prompt(answer, 1500)}",
        },
    ]

    try:
        with Timer("keyword_extraction"):
            payload = await complete_json(
                backend or get_llm_client(),
                model=model or get_config()["AI_TIER_1_MODEL"],
                messages=messages,
                temperature=0,
                max_tokens=300,
            )
    except LLMError as e:
        logger.warning("Keyword extraction failed, using local extraction", error=str(e))
        return extract_keywords_local(question, answer)

    raw_keywords = payload.get("keywords")
    if not isinstance(raw_keywords, list):
        logger.warning("Keyword extraction returned no list, using local extraction")
        return extract_keywords_local(question, answer)

    keywords = _dedupe([
        keyword.strip().lower()
        for keyword in raw_keywords
        if isinstance(keyword, str) and len(keyword.strip()) > 1
    ])

    logger.debug("Keywords extracted", keyword_count=len(keywords))
    return keywords


async def enrich_knowledge_item(
    item: KnowledgeItem,
    backend: Optional[ChatBackend] = None,
    model: Optional[str] = None,
) -> KnowledgeItem:
    """Return a copy of ``item`` with extracted keywords merged after its own."""
    extracted = await extract_keywords(item.question, item.answer, backend=backend, model=model)
    existing = [keyword.lower() for keyword in item.keywords]
    return item.model_copy(update={"keywords": _dedupe(existing + extracted)})


async def batch_extract_keywords(
    items: Sequence[KnowledgeItem],
    batch_size: int = DEFAULT_BATCH_SIZE,
    backend: Optional[ChatBackend] = None,
    model: Optional[str] = None,
) -> List[List[str]]:
    """
    Extract keywords for many items, ``batch_size`` backend calls at a time.

    Returns:
        List[List[str]]: One keyword list per item, in input order
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")

    results: List[List[str]] = []
    for start in range(0, len(items), batch_size):
        batch = items[start:start + batch_size]
        batch_results = await asyncio.gather(*[
            extract_keywords(item.question, item.answer, backend=backend, model=model)
            for item in batch
        ])
        results.extend(batch_results)

    logger.info("Batch keyword extraction complete", item_count=len(items), batch_size=batch_size)
    return results
