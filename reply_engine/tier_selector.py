"""
Cost-aware tier selection.

TIER 1 (fast, cheap): greetings, thanks, opt-outs, confident FAQ hits.
TIER 2 (balanced): bookings, lead capture, uncertain FAQ, everything else.
TIER 3 (premium): escalations, unhappy customers, support issues, long
stalled flows and complex questions.

select_tier() is a pure function of a TierContext; model names and prices are
configuration and never influence the decision.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .models import Intent, InboundMessage, RoutingDecision, TierContext
from .signals import SignalLexicon, analyze_sentiment, is_complex_query
from .utils import DEFAULT_TIER_MODELS, get_config


TIER_1_INTENTS = frozenset({Intent.GREETING, Intent.THANKS, Intent.OPT_OUT})

FAQ_CONFIDENCE_FLOOR = 0.85
FRUSTRATION_THRESHOLD = 0.3
LONG_FLOW_TURNS = 10


@dataclass
class TierConfig:
    """Tier to model and price tables."""

    models: Dict[int, str] = field(default_factory=lambda: dict(DEFAULT_TIER_MODELS))
    # Approximate blended price per 1K tokens, for dashboards
    cost_per_1k: Dict[int, float] = field(default_factory=lambda: {1: 0.0001, 2: 0.003, 3: 0.015})
    # Price per 1M tokens as (input, output)
    cost_per_1m: Dict[int, tuple] = field(default_factory=lambda: {
        1: (0.2, 0.5),
        2: (3.0, 15.0),
        3: (15.0, 75.0),
    })

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None) -> "TierConfig":
        config = config or get_config()
        return cls(models={
            1: config.get("AI_TIER_1_MODEL") or DEFAULT_TIER_MODELS[1],
            2: config.get("AI_TIER_2_MODEL") or DEFAULT_TIER_MODELS[2],
            3: config.get("AI_TIER_3_MODEL") or DEFAULT_TIER_MODELS[3],
        })


def _check_tier(tier: int) -> int:
    if tier not in (1, 2, 3):
        raise ValueError(f"Invalid tier: {tier}")
    return tier


def select_tier(context: TierContext) -> int:
    """
    Pick the cheapest tier that can handle the message.

    Rules are evaluated in order and the first match wins, so a greeting from
    an angry customer still goes to tier 1.
    """
    if context.intent in TIER_1_INTENTS:
        return 1

    if context.intent == Intent.FAQ and context.confidence > FAQ_CONFIDENCE_FLOOR:
        return 1

    if context.intent == Intent.ESCALATE:
        return 3

    if context.sentiment < FRUSTRATION_THRESHOLD:
        return 3

    if context.intent == Intent.SUPPORT:
        return 3

    if context.conversation_length > LONG_FLOW_TURNS and context.has_active_flow:
        return 3

    if context.is_complex:
        return 3

    return 2


def build_tier_context(
    message: InboundMessage,
    decision: RoutingDecision,
    lexicon: Optional[SignalLexicon] = None,
) -> TierContext:
    """Derive the selector's input from a message and its routing decision."""
    return TierContext(
        intent=decision.intent,
        confidence=decision.confidence,
        conversation_length=message.conversation_length,
        has_active_flow=message.has_active_flow,
        previous_tier=message.previous_tier,
        sentiment=analyze_sentiment(message.text, lexicon),
        is_complex=is_complex_query(message.text, lexicon),
    )


def get_tier_model(tier: int, config: Optional[TierConfig] = None) -> str:
    """Get the model id for a tier."""
    config = config or TierConfig.from_config()
    return config.models[_check_tier(tier)]


def get_tier_cost(tier: int, config: Optional[TierConfig] = None) -> float:
    """Get the approximate cost per 1K tokens for a tier."""
    config = config or TierConfig()
    return config.cost_per_1k[_check_tier(tier)]


def calculate_cost(
    tier: int,
    input_tokens: int,
    output_tokens: int,
    config: Optional[TierConfig] = None,
) -> float:
    """
    Calculate the cost of one request in dollars.

    Raises:
        ValueError: If the tier is not 1, 2 or 3
    """
    config = config or TierConfig()
    input_price, output_price = config.cost_per_1m[_check_tier(tier)]
    return (input_tokens * input_price + output_tokens * output_price) / 1_000_000
