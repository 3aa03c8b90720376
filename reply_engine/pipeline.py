"""
One full pass from an inbound message to a sendable reply.

    match -> route -> signals -> tier -> respond

Every stage owns its own fallback, so a pass degrades instead of failing:
an unreachable backend still yields a canned reply flagged for escalation.

Usage:
    result = await route_and_respond(message, knowledge_base)
    send(result.plan.text)
"""

import uuid
from typing import Optional, Sequence
from loguru import logger

from .matcher import KnowledgeMatcher
from .models import InboundMessage, KnowledgeItem, PipelineTimings, ProcessedMessage
from .responder import Responder
from .router import IntentRouter
from .signals import SignalLexicon
from .tier_selector import build_tier_context, select_tier
from .utils import sanitize_for_logging, Timer


async def route_and_respond(
    message: InboundMessage,
    knowledge_base: Sequence[KnowledgeItem] = (),
    matcher: Optional[KnowledgeMatcher] = None,
    router: Optional[IntentRouter] = None,
    responder: Optional[Responder] = None,
    lexicon: Optional[SignalLexicon] = None,
    request_id: Optional[str] = None,
) -> ProcessedMessage:
    """
    Process one inbound message.

    Args:
        message: Inbound message with conversation context
        knowledge_base: Business knowledge items, in precedence order
        matcher: Knowledge matcher, defaults to one over the global backend
        router: Intent router, defaults to one over the global backend
        responder: Responder, defaults to one over the global backend
        lexicon: Word lists for the sentiment and complexity signals
        request_id: Identifier used in logs (generated if not provided)

    Returns:
        ProcessedMessage: Decision, match, tier, reply and per-stage timings

    Raises:
        TypeError: If message is not an InboundMessage
        ConfigurationError: If a default backend is needed but no API key is set
    """
    if not isinstance(message, InboundMessage):
        raise TypeError("message must be an InboundMessage")

    if request_id is None:
        request_id = f"req_{uuid.uuid4().hex[:8]}"

    matcher = matcher or KnowledgeMatcher()
    router = router or IntentRouter()
    responder = responder or Responder()
    timings = PipelineTimings()

    logger.info(
        "Starting route and respond pipeline",
        request_id=request_id,
        message_preview=sanitize_for_logging(message.text, 100),
        knowledge_items=len(knowledge_base),
        conversation_turns=message.conversation_length,
    )

    with Timer("route_and_respond") as total_timer:
        # Step 1: Knowledge matching
        with Timer("knowledge_matching") as timer:
            match = await matcher.match(message.text, knowledge_base)
        timings.matching_time_ms = timer.duration_ms

        # Step 2: Intent routing, with the match surfaced as a hint
        with Timer("routing") as timer:
            decision = await router.route(message, knowledge_base, match_hint=match)
        timings.routing_time_ms = timer.duration_ms

        # Step 3: Signals and tier selection
        with Timer("tier_selection") as timer:
            tier_context = build_tier_context(message, decision, lexicon)
            tier = select_tier(tier_context)
        timings.tier_selection_time_ms = timer.duration_ms

        # Step 4: Reply generation
        with Timer("response_generation") as timer:
            plan = await responder.respond(message, decision, tier, knowledge_base)
        timings.response_time_ms = timer.duration_ms

    timings.total_time_ms = total_timer.duration_ms

    logger.info(
        "Route and respond pipeline completed",
        request_id=request_id,
        intent=decision.intent.value,
        confidence=decision.confidence,
        match_id=match.item.id if match else None,
        match_strategy=match.strategy.value if match else None,
        tier=tier,
        sentiment=tier_context.sentiment,
        escalate=plan.escalate,
        router_fallback=decision.is_fallback,
        response_fallback=plan.is_fallback,
        total_time_ms=timings.total_time_ms,
    )

    return ProcessedMessage(
        decision=decision,
        match=match,
        tier=tier,
        tier_context=tier_context,
        plan=plan,
        timings=timings,
    )
