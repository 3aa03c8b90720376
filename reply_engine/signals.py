"""
Lexical signal heuristics feeding tier selection.

Both functions are pure and cheap enough to run on every message. Word lists
cover French and English customers and live in an injectable SignalLexicon so
tests and tenants can substitute their own.
"""

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import FrozenSet, Optional, Pattern


@dataclass(frozen=True)
class SignalLexicon:
    """Word lists and weights used by the sentiment and complexity heuristics."""

    # Matched as word prefixes so stems like "rembours" catch "remboursement"
    NEGATIVE_WORDS: FrozenSet[str] = frozenset({
        # French
        "problème", "probleme", "bug", "erreur", "marche pas", "fonctionne pas",
        "déçu", "decu", "nul", "horrible", "pire", "jamais", "plainte",
        "rembours", "colère", "colere", "inacceptable", "inadmissible", "scandale",
        "marre", "ras le bol", "furieux", "énervé", "enerve",
        # English
        "problem", "broken", "doesn't work", "not working", "disappointed",
        "terrible", "awful", "worst", "never", "complaint", "refund",
        "angry", "unacceptable", "ridiculous", "furious", "fed up", "hate",
    })

    POSITIVE_WORDS: FrozenSet[str] = frozenset({
        # French
        "merci", "super", "génial", "genial", "parfait", "excellent",
        "bravo", "top", "cool", "bien", "content", "satisfait",
        "ravie", "ravi", "formidable", "incroyable",
        # English
        "thanks", "thank you", "great", "awesome", "perfect", "love",
        "amazing", "wonderful", "happy", "pleased", "fantastic",
    })

    # Matched as whole words
    CONDITIONAL_WORDS: FrozenSet[str] = frozenset({
        "si", "mais", "cependant", "toutefois", "sauf", "à condition", "dans le cas",
        "if", "but", "however", "except", "unless", "provided that", "in case",
    })

    COMPARISON_WORDS: FrozenSet[str] = frozenset({
        "différence", "difference", "comparer", "comparaison", "versus", "vs",
        "mieux", "meilleur", "meilleure",
        "compare", "comparison", "better", "best",
    })

    EXPLANATORY_WORDS: FrozenSet[str] = frozenset({
        "comment fonctionne", "comment ça marche", "expliquer", "expliquez",
        "détail", "détails", "detail", "details", "pourquoi", "technique",
        "how does it work", "how does", "explain", "why", "technical",
    })

    baseline: float = 0.5
    negative_penalty: float = 0.15
    positive_bonus: float = 0.1
    shouting_penalty: float = 0.2
    shouting_ratio: float = 0.5
    shouting_min_length: int = 10
    exclamation_penalty: float = 0.1
    exclamation_limit: int = 2

    conditional_min_length: int = 100
    explanatory_min_length: int = 50


DEFAULT_LEXICON = SignalLexicon()


@lru_cache(maxsize=256)
def _prefix_pattern(term: str) -> Pattern[str]:
    return re.compile(rf"(?<!\w){re.escape(term)}")


@lru_cache(maxsize=256)
def _word_pattern(term: str) -> Pattern[str]:
    return re.compile(rf"(?<!\w){re.escape(term)}(?!\w)")


def _count_prefix_hits(lowered: str, terms: FrozenSet[str]) -> int:
    return sum(1 for term in terms if _prefix_pattern(term).search(lowered))


def _has_word(lowered: str, terms: FrozenSet[str]) -> bool:
    return any(_word_pattern(term).search(lowered) for term in terms)


def analyze_sentiment(message: str, lexicon: Optional[SignalLexicon] = None) -> float:
    """
    Estimate customer positivity from the message text.

    Returns:
        float: 0 very negative, 0.5 neutral, 1 very positive
    """
    lexicon = lexicon or DEFAULT_LEXICON
    if not message:
        return lexicon.baseline

    lowered = message.lower()
    score = lexicon.baseline
    score -= lexicon.negative_penalty * _count_prefix_hits(lowered, lexicon.NEGATIVE_WORDS)
    score += lexicon.positive_bonus * _count_prefix_hits(lowered, lexicon.POSITIVE_WORDS)

    # Shouting
    caps_ratio = sum(1 for char in message if char.isupper()) / len(message)
    if caps_ratio > lexicon.shouting_ratio and len(message) > lexicon.shouting_min_length:
        score -= lexicon.shouting_penalty

    if message.count("!") > lexicon.exclamation_limit:
        score -= lexicon.exclamation_penalty

    return max(0.0, min(1.0, score))


def is_complex_query(message: str, lexicon: Optional[SignalLexicon] = None) -> bool:
    """
    Detect a message that likely needs deeper reasoning than a canned answer.
    """
    lexicon = lexicon or DEFAULT_LEXICON
    if not message:
        return False

    lowered = message.lower()
    length = len(message)

    if message.count("?") > 1:
        return True

    if length > lexicon.conditional_min_length and _has_word(lowered, lexicon.CONDITIONAL_WORDS):
        return True

    if _has_word(lowered, lexicon.COMPARISON_WORDS):
        return True

    if length > lexicon.explanatory_min_length and _has_word(lowered, lexicon.EXPLANATORY_WORDS):
        return True

    return False
