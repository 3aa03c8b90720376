"""
Reply generation for routed messages.

The responder turns a RoutingDecision and the selected tier into the text
sent back to the customer. Escalation and suggested actions come from static
tables keyed by intent, never from the generated text. When the backend
fails the customer still gets a canned, intent-specific sentence and the
reply is flagged for human follow-up.
"""

import re
from typing import Dict, List, Optional, Sequence
from loguru import logger

from .llm import ChatBackend, LLMError, complete_text, get_llm_client
from .models import (
    InboundMessage,
    Intent,
    KnowledgeItem,
    MessageRole,
    ResponsePlan,
    RoutingDecision,
)
from .tier_selector import TierConfig, get_tier_model
from .utils import sanitize_for_prompt, Timer


MAX_RESPONSE_HISTORY_TURNS = 4
MAX_SAMPLE_KNOWLEDGE_ITEMS = 5
FALLBACK_MODEL = "fallback"


RESPONDER_SYSTEM_PROMPT = """You are a friendly, professional messaging assistant for {business_name} ({business_type}).

COMMUNICATION RULES:
1. Be concise: chat messages must be short (2-3 sentences max)
2. Friendly but professional tone
3. Reply in the customer's language
4. No emojis unless the customer uses them
5. Never sign your messages
6. Never say you are an AI

CONTEXT:
- You represent {business_name}
- Business type: {business_type}
{knowledge_context}

Reply naturally and helpfully to the customer's message."""


INTENT_INSTRUCTIONS: Dict[Intent, str] = {
    Intent.FAQ: "The customer is asking a question. Use the matching FAQ to answer naturally.",
    Intent.BOOKING: "The customer wants to book. Guide them towards booking or ask for their availability.",
    Intent.LEAD_CAPTURE: "The customer is interested. Collect their contact details or offer to discuss further.",
    Intent.SUPPORT: "The customer has a problem. Acknowledge it, ask for the details needed and reassure them it will be handled.",
    Intent.ESCALATE: "The customer needs a human. Tell them a team member will get back to them shortly.",
    Intent.OPT_OUT: "The customer wants to unsubscribe. Confirm the request is noted and apologise for the inconvenience.",
    Intent.GREETING: "A simple greeting. Reply warmly and offer your help.",
    Intent.THANKS: "The customer is saying thanks. Reply warmly and briefly, and offer further help.",
    Intent.UNKNOWN: "The message is unclear. Politely ask what the customer is looking for.",
}


SUGGESTED_ACTIONS: Dict[Intent, List[str]] = {
    Intent.BOOKING: ["show_calendar", "create_booking"],
    Intent.LEAD_CAPTURE: ["add_to_crm", "send_catalog"],
    Intent.SUPPORT: ["create_ticket"],
    Intent.ESCALATE: ["notify_team", "create_ticket"],
    Intent.OPT_OUT: ["update_preferences", "confirm_optout"],
}

FALLBACK_ACTIONS = ["review_error", "manual_response"]


FALLBACK_RESPONSES: Dict[Intent, str] = {
    Intent.GREETING: "Hello! Welcome to {business_name}. How can I help you?",
    Intent.THANKS: "You're welcome! Let us know if there is anything else we can do.",
    Intent.ESCALATE: "I understand. A member of our team will get back to you very shortly.",
    Intent.OPT_OUT: "Noted, you won't receive any more messages from us. Sorry for the inconvenience.",
}

DEFAULT_FALLBACK_RESPONSE = "Thanks for your message. A member of the team will reply shortly."


def get_suggested_actions(intent: Intent) -> List[str]:
    return list(SUGGESTED_ACTIONS.get(intent, []))


def get_fallback_response(intent: Intent, business_name: str) -> str:
    template = FALLBACK_RESPONSES.get(intent, DEFAULT_FALLBACK_RESPONSE)
    return template.format(business_name=business_name)


def clean_response(text: str) -> str:
    """Strip wrapping quotes and collapse runs of blank lines."""
    cleaned = text.strip()
    cleaned = re.sub(r'^["\'“«]+|["\'”»]+$', "", cleaned).strip()
    return re.sub(r"\n{3,}", "\n\n", cleaned)


def build_knowledge_context(decision: RoutingDecision, knowledge: Sequence[KnowledgeItem]) -> str:
    """The matched FAQ verbatim, or a sample of the knowledge base."""
    if decision.faq_match is not None:
        item = decision.faq_match.item
        return f"\nMATCHING FAQ:\nQ: {item.question}\nA: {item.answer}"
    if knowledge:
        sample = "\n".join(
            f"- {item.question}: {item.answer}" for item in knowledge[:MAX_SAMPLE_KNOWLEDGE_ITEMS]
        )
        return f"\nAVAILABLE FAQS:\n{sample}"
    return ""


def _fallback_plan(message: InboundMessage, decision: RoutingDecision, tier: int) -> ResponsePlan:
    return ResponsePlan(
        text=get_fallback_response(decision.intent, message.business.name),
        model_used=FALLBACK_MODEL,
        tier=tier,
        escalate=True,
        suggested_actions=list(FALLBACK_ACTIONS),
    )


class Responder:
    """Generates the outbound reply for a routed message."""

    def __init__(
        self,
        backend: Optional[ChatBackend] = None,
        tier_config: Optional[TierConfig] = None,
        temperature: float = 0.7,
        max_tokens: int = 300,
    ):
        self._backend = backend
        self.tier_config = tier_config or TierConfig.from_config()
        self.temperature = temperature
        self.max_tokens = max_tokens

    @property
    def backend(self) -> ChatBackend:
        if self._backend is None:
            self._backend = get_llm_client()
        return self._backend

    def build_messages(
        self,
        message: InboundMessage,
        decision: RoutingDecision,
        knowledge: Sequence[KnowledgeItem],
    ) -> List[Dict[str, str]]:
        system_prompt = RESPONDER_SYSTEM_PROMPT.format(
            business_name=message.business.name,
            business_type=message.business.business_type,
            knowledge_context=build_knowledge_context(decision, knowledge),
        )

        messages = [{"role": "system", "content": system_prompt}]

        for turn in message.history[-MAX_RESPONSE_HISTORY_TURNS:]:
            messages.append({
                "role": "user" if turn.role == MessageRole.CUSTOMER else "assistant",
                "content": turn.text,
            })

        customer_prefix = ""
        if message.customer_name:
            customer_prefix = f"The customer's name is {sanitize_for_prompt(message.customer_name, 80)}. "

        instruction = INTENT_INSTRUCTIONS[decision.intent]
        messages.append({
            "role": "user",
            "content": f'{customer_prefix}{instruction}\n\nCustomer message: "{sanitize_for_prompt(message.text)}"',
        })
        return messages

    async def respond(
        self,
        message: InboundMessage,
        decision: RoutingDecision,
        tier: int,
        knowledge: Sequence[KnowledgeItem] = (),
    ) -> ResponsePlan:
        """
        Generate the reply for a routed message.

        Args:
            message: Inbound message with conversation context
            decision: Router output
            tier: Tier chosen by the tier selector
            knowledge: Knowledge base, sampled when no FAQ matched

        Returns:
            ResponsePlan: Always sendable; model_used is "fallback" when generation failed
        """
        model = get_tier_model(tier, self.tier_config)
        messages = self.build_messages(message, decision, knowledge)

        try:
            with Timer("response_generation"):
                completion = await complete_text(
                    self.backend,
                    model=model,
                    messages=messages,
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                )
        except LLMError as e:
            logger.error("Response generation failed", error=str(e), intent=decision.intent.value, model=model)
            return _fallback_plan(message, decision, tier)

        text = clean_response(completion)
        if not text:
            # Nothing left after cleaning, e.g. a bare pair of quotes
            logger.warning("Response empty after cleaning", intent=decision.intent.value, model=model)
            return _fallback_plan(message, decision, tier)

        logger.info(
            "Response generated",
            intent=decision.intent.value,
            model=model,
            tier=tier,
            response_length=len(text),
        )

        return ResponsePlan(
            text=text,
            model_used=model,
            tier=tier,
            escalate=decision.intent == Intent.ESCALATE,
            suggested_actions=get_suggested_actions(decision.intent),
        )
