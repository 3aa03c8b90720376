"""
Pydantic data models for the reply engine.

Every model here lives for a single message-processing pass: it is built from
caller input or from validated backend output and handed back to the caller.
Nothing is persisted by the engine.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Literal
from pydantic import BaseModel, Field
from enum import Enum

from .utils import get_utc_datetime


class Intent(str, Enum):
    """Closed set of customer intents."""
    FAQ = "FAQ"
    BOOKING = "BOOKING"
    LEAD_CAPTURE = "LEAD_CAPTURE"
    SUPPORT = "SUPPORT"
    ESCALATE = "ESCALATE"
    OPT_OUT = "OPT_OUT"
    GREETING = "GREETING"
    THANKS = "THANKS"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def normalize(cls, value: object) -> "Intent":
        """Map any external value onto the enum, UNKNOWN when unrecognized."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().upper())
            except ValueError:
                return cls.UNKNOWN
        return cls.UNKNOWN


class SuggestedFlow(str, Enum):
    """Structured multi-turn flows a message may start."""
    BOOKING = "booking"
    LEAD_CAPTURE = "lead_capture"


class MatchStrategy(str, Enum):
    """Stage of the knowledge matcher that produced a match."""
    EXACT = "exact"
    KEYWORD = "keyword"
    SEMANTIC = "semantic"


class MessageRole(str, Enum):
    """Author of a conversation turn."""
    CUSTOMER = "customer"
    ASSISTANT = "assistant"


Tier = Literal[1, 2, 3]


class HistoryTurn(BaseModel):
    """One earlier turn of the conversation."""
    role: MessageRole = Field(..., description="Who wrote the turn")
    text: str = Field(..., description="Turn content")


class BusinessContext(BaseModel):
    """The business the assistant speaks for."""
    name: str = Field(..., description="Display name used in replies")
    business_type: str = Field(..., description="Activity type, e.g. restaurant or hair salon")


class InboundMessage(BaseModel):
    """A customer message plus the conversation context supplied by the caller."""
    text: str = Field(..., description="Raw message text")
    sender: str = Field(..., description="Sender phone number or channel id")
    business: BusinessContext = Field(..., description="Business context")
    history: List[HistoryTurn] = Field(default_factory=list, description="Recent turns, oldest first")
    customer_name: Optional[str] = Field(None, description="Customer display name if known")
    active_flow: Optional[str] = Field(None, description="Name of the flow the conversation is in")
    flow_data: Dict[str, Any] = Field(default_factory=dict, description="Data collected by the active flow")
    turn_count: Optional[int] = Field(None, ge=0, description="Total turns so far, defaults to len(history)")
    previous_tier: Optional[int] = Field(None, ge=1, le=3, description="Tier used for the previous reply")
    received_at: datetime = Field(default_factory=get_utc_datetime, description="Reference time for relative dates")

    @property
    def conversation_length(self) -> int:
        if self.turn_count is not None:
            return self.turn_count
        return len(self.history)

    @property
    def has_active_flow(self) -> bool:
        return bool(self.active_flow)


class ExtractedEntities(BaseModel):
    """Structured values pulled out of a message. Absent unless recognized."""
    date: Optional[str] = Field(None, description="ISO calendar date YYYY-MM-DD")
    time: Optional[str] = Field(None, description="24h time HH:MM")
    service: Optional[str] = Field(None, description="Requested service name")
    name: Optional[str] = Field(None, description="Person name")
    phone: Optional[str] = Field(None, description="Phone number")
    email: Optional[str] = Field(None, description="Email address")
    quantity: Optional[int] = Field(None, description="Integer quantity, e.g. party size")

    def present(self) -> Dict[str, Any]:
        """Return only the recognized fields."""
        return self.model_dump(exclude_none=True)


class KnowledgeItem(BaseModel):
    """A question/answer record from the business knowledge base."""
    id: str = Field(..., description="Stable identifier")
    question: str = Field(..., description="Canonical question")
    answer: str = Field(..., description="Answer sent to customers")
    category: Optional[str] = Field(None, description="Free-form category")
    keywords: List[str] = Field(default_factory=list, description="Matching keywords, order-insignificant")


class KnowledgeReference(BaseModel):
    """The part of a knowledge item carried by a match."""
    id: str
    question: str
    answer: str

    @classmethod
    def from_item(cls, item: KnowledgeItem) -> "KnowledgeReference":
        return cls(id=item.id, question=item.question, answer=item.answer)


class MatchResult(BaseModel):
    """A knowledge base hit."""
    item: KnowledgeReference = Field(..., description="Matched item")
    similarity: float = Field(..., ge=0.0, le=1.0, description="Similarity score [0,1]")
    strategy: MatchStrategy = Field(..., description="Matcher stage that produced the hit")


class RoutingDecision(BaseModel):
    """Classification of one inbound message."""
    intent: Intent = Field(..., description="Classified intent")
    confidence: float = Field(..., ge=0.0, le=1.0, description="Classifier confidence [0,1]")
    tier: Tier = Field(2, description="Tier suggested by the classifier")
    entities: ExtractedEntities = Field(default_factory=ExtractedEntities)
    faq_match: Optional[MatchResult] = Field(None, description="Knowledge item the message refers to")
    continue_flow: bool = Field(False, description="Whether the message continues the active flow")
    suggested_flow: Optional[SuggestedFlow] = Field(None, description="Flow to start, if any")
    reasoning: Optional[str] = Field(None, description="Short classifier explanation")
    is_fallback: bool = Field(False, description="True when the classifier call failed")


class TierContext(BaseModel):
    """Signals the tier selector decides on."""
    intent: Intent
    confidence: float = Field(..., ge=0.0, le=1.0)
    conversation_length: int = Field(0, ge=0)
    has_active_flow: bool = False
    previous_tier: Optional[int] = Field(None, ge=1, le=3)
    sentiment: float = Field(0.7, ge=0.0, le=1.0, description="0 very negative, 1 very positive")
    is_complex: bool = False


class ResponsePlan(BaseModel):
    """The outbound reply and what the caller should do with it."""
    text: str = Field(..., description="Reply to send")
    model_used: str = Field(..., description="Model id, or 'fallback'")
    tier: Optional[int] = Field(None, ge=1, le=3, description="Tier the reply was generated at")
    escalate: bool = Field(False, description="Whether a human should follow up")
    suggested_actions: List[str] = Field(default_factory=list)

    @property
    def is_fallback(self) -> bool:
        return self.model_used == "fallback"


class PipelineTimings(BaseModel):
    """Per-stage durations of one pass."""
    total_time_ms: float = 0.0
    matching_time_ms: float = 0.0
    routing_time_ms: float = 0.0
    tier_selection_time_ms: float = 0.0
    response_time_ms: float = 0.0


class ProcessedMessage(BaseModel):
    """Everything one pass produced."""
    decision: RoutingDecision
    match: Optional[MatchResult] = None
    tier: int = Field(..., ge=1, le=3)
    tier_context: TierContext
    plan: ResponsePlan
    timings: PipelineTimings = Field(default_factory=PipelineTimings)
