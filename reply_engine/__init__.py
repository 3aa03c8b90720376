"""
Reply Engine
Intent routing, cost-aware tier selection and FAQ matching for business messaging
"""

__version__ = "1.0.0"

# Pipeline entry point
from .pipeline import route_and_respond

# Intent Router
from .router import (
    IntentRouter,
    get_intent_router,
    fallback_decision,
    coerce_entities,
)

# Tier Selector and signal heuristics
from .tier_selector import (
    TierConfig,
    select_tier,
    build_tier_context,
    get_tier_model,
    get_tier_cost,
    calculate_cost,
)
from .signals import SignalLexicon, analyze_sentiment, is_complex_query

# Knowledge Matcher and keyword extraction
from .matcher import (
    KnowledgeMatcher,
    MatcherConfig,
    find_top_matches,
    normalize_text,
    exact_match_score,
    keyword_overlap_score,
)
from .keywords import (
    extract_keywords,
    extract_keywords_local,
    enrich_knowledge_item,
    batch_extract_keywords,
)

# Responder
from .responder import Responder, get_fallback_response, get_suggested_actions

# Backend
from .llm import (
    ChatBackend,
    OpenRouterClient,
    get_llm_client,
    LLMError,
    BackendUnavailable,
    MalformedOutput,
)

from .models import (
    Intent, SuggestedFlow, MatchStrategy, MessageRole, HistoryTurn, BusinessContext,
    InboundMessage, ExtractedEntities, KnowledgeItem, KnowledgeReference, MatchResult,
    RoutingDecision, TierContext, ResponsePlan, PipelineTimings, ProcessedMessage
)
from .utils import ConfigurationError, get_config, setup_logging

__all__ = [
    # Pipeline
    "route_and_respond",

    # Intent Router
    "IntentRouter",
    "get_intent_router",
    "fallback_decision",
    "coerce_entities",

    # Tier Selector
    "TierConfig",
    "select_tier",
    "build_tier_context",
    "get_tier_model",
    "get_tier_cost",
    "calculate_cost",
    "SignalLexicon",
    "analyze_sentiment",
    "is_complex_query",

    # Knowledge Matcher
    "KnowledgeMatcher",
    "MatcherConfig",
    "find_top_matches",
    "normalize_text",
    "exact_match_score",
    "keyword_overlap_score",
    "extract_keywords",
    "extract_keywords_local",
    "enrich_knowledge_item",
    "batch_extract_keywords",

    # Responder
    "Responder",
    "get_fallback_response",
    "get_suggested_actions",

    # Backend
    "ChatBackend",
    "OpenRouterClient",
    "get_llm_client",
    "LLMError",
    "BackendUnavailable",
    "MalformedOutput",

    # Models and Utils
    "Intent",
    "SuggestedFlow",
    "MatchStrategy",
    "MessageRole",
    "HistoryTurn",
    "BusinessContext",
    "InboundMessage",
    "ExtractedEntities",
    "KnowledgeItem",
    "KnowledgeReference",
    "MatchResult",
    "RoutingDecision",
    "TierContext",
    "ResponsePlan",
    "PipelineTimings",
    "ProcessedMessage",
    "ConfigurationError",
    "get_config",
    "setup_logging",
]
