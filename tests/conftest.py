"""Shared pytest fixtures for reply engine tests.

Nothing here talks to OpenRouter: every stage under test gets a scripted
FakeBackend that replays queued completions and records each call.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Union

import pytest

from reply_engine.llm import BackendUnavailable
from reply_engine.models import BusinessContext, HistoryTurn, InboundMessage, KnowledgeItem
from reply_engine.utils import reset_config


class FakeBackend:
    """Scripted ChatBackend.

    Queue strings (returned as completions), dicts (returned as JSON text) or
    exceptions (raised). An exhausted queue behaves like an outage.
    """

    def __init__(self, *responses: Union[str, Dict[str, Any], Exception]):
        self.responses = list(responses)
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, model, messages, temperature=0.7, max_tokens=500):
        self.calls.append({
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        })
        if not self.responses:
            raise BackendUnavailable("No scripted response left")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if isinstance(response, dict):
            return json.dumps(response)
        return response

    @property
    def prompts(self) -> List[str]:
        """User turn of every recorded call."""
        return [call["messages"][-1]["content"] for call in self.calls]


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch):
    """Fresh configuration for every test, independent of any local .env."""
    monkeypatch.setenv("OPENROUTER_API_KEY", "sk-test-key")
    monkeypatch.setenv("FAQ_MATCH_THRESHOLD", "0.6")
    monkeypatch.delenv("ROUTER_MODEL", raising=False)
    monkeypatch.delenv("MATCHER_MODEL", raising=False)
    monkeypatch.delenv("AI_TIER_1_MODEL", raising=False)
    monkeypatch.delenv("AI_TIER_2_MODEL", raising=False)
    monkeypatch.delenv("AI_TIER_3_MODEL", raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def knowledge_base() -> List[KnowledgeItem]:
    return [
        KnowledgeItem(
            id="faq1",
            question="Quels sont vos horaires d'ouverture ?",
            answer="Nous sommes ouverts du lundi au samedi de 9h à 19h.",
            category="infos",
            keywords=["horaires", "heures", "ouverture", "ouvert"],
        ),
        KnowledgeItem(
            id="faq2",
            question="Où êtes-vous situés ?",
            answer="Au 12 rue de la Paix, Paris 2e.",
            category="infos",
            keywords=["adresse", "situés", "où", "localisation"],
        ),
        KnowledgeItem(
            id="faq3",
            question="Quels sont vos tarifs ?",
            answer="Coupe femme 45€, coupe homme 25€.",
            category="prix",
            keywords=["tarifs", "prix", "coût", "combien"],
        ),
    ]


@pytest.fixture
def business() -> BusinessContext:
    return BusinessContext(name="Salon Élodie", business_type="hair salon")


@pytest.fixture
def make_message(business):
    """Factory for inbound messages with a fixed reference date."""

    def _make(text: str, **overrides) -> InboundMessage:
        fields: Dict[str, Any] = {
            "text": text,
            "sender": "+33600000000",
            "business": business,
            "received_at": datetime(2025, 3, 14, 10, 30, tzinfo=timezone.utc),
        }
        fields.update(overrides)
        return InboundMessage(**fields)

    return _make


@pytest.fixture
def history() -> List[HistoryTurn]:
    return [
        HistoryTurn(role="customer", text="Bonjour"),
        HistoryTurn(role="assistant", text="Bonjour ! Comment puis-je vous aider ?"),
    ]
