import asyncio

import pytest

from conftest import FakeBackend
from reply_engine.keywords import (
    batch_extract_keywords,
    enrich_knowledge_item,
    extract_keywords,
    extract_keywords_local,
)
from reply_engine.models import KnowledgeItem


QUESTION = "Quels sont vos horaires d'ouverture ?"
ANSWER = "Nous sommes ouverts du lundi au samedi."


def test_local_extraction_drops_stop_words_and_short_tokens():
    assert extract_keywords_local(QUESTION, ANSWER) == [
        "horaires", "ouverture", "sommes", "ouverts", "lundi", "samedi",
    ]


def test_local_extraction_strips_accents_and_dedupes():
    assert extract_keywords_local("Où êtes-vous situés ?", "Situés près de la gare") == [
        "etes", "situes", "pres", "gare",
    ]


def test_local_extraction_limit():
    assert extract_keywords_local(QUESTION, ANSWER, limit=2) == ["horaires", "ouverture"]


class TestExtractKeywords:
    def test_backend_keywords_are_cleaned(self):
        backend = FakeBackend({"keywords": ["Horaires", " heures ", "h", 3, "horaires", "Ouverture"]})
        keywords = asyncio.run(extract_keywords(QUESTION, ANSWER, backend=backend))

        assert keywords == ["horaires", "heures", "ouverture"]
        assert backend.calls[0]["temperature"] == 0
        assert backend.calls[0]["model"] == "x-ai/grok-4.1-fast"
        assert QUESTION in backend.prompts[0]

    def test_backend_keywords_are_capped(self):
        backend = FakeBackend({"keywords": [f"mot{i}" for i in range(30)]})
        keywords = asyncio.run(extract_keywords(QUESTION, ANSWER, backend=backend))

        assert len(keywords) == 20

    @pytest.mark.parametrize("response", [
        RuntimeError("timeout"),
        "Here are some keywords: horaires, heures",
        {"keywords": "horaires"},
        {"tags": ["horaires"]},
    ])
    def test_falls_back_to_local_extraction(self, response):
        backend = FakeBackend(response)
        keywords = asyncio.run(extract_keywords(QUESTION, ANSWER, backend=backend))

        assert keywords == extract_keywords_local(QUESTION, ANSWER)


def test_enrich_knowledge_item_merges_existing_keywords():
    item = KnowledgeItem(id="faq1", question=QUESTION, answer=ANSWER, keywords=["Horaires", "ouvert"])
    backend = FakeBackend({"keywords": ["horaires", "heures"]})

    enriched = asyncio.run(enrich_knowledge_item(item, backend=backend))

    assert enriched.keywords == ["horaires", "ouvert", "heures"]
    assert enriched.id == "faq1"
    assert item.keywords == ["Horaires", "ouvert"]


class TestBatchExtractKeywords:
    def test_preserves_order_across_batches(self, knowledge_base):
        items = knowledge_base * 3
        backend = FakeBackend()

        results = asyncio.run(batch_extract_keywords(items, batch_size=2, backend=backend))

        assert results == [extract_keywords_local(item.question, item.answer) for item in items]
        assert len(backend.calls) == len(items)

    def test_empty_input(self):
        assert asyncio.run(batch_extract_keywords([], backend=FakeBackend())) == []

    def test_invalid_batch_size(self, knowledge_base):
        with pytest.raises(ValueError):
            asyncio.run(batch_extract_keywords(knowledge_base, batch_size=0, backend=FakeBackend()))
