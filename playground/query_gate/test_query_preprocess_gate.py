# playground/query_gate/test_query_preprocess_gate.py

"""
[职责] query gate：验证 QueryPreprocessor 的规范化、纠错、改写、同义词扩展、意图与置信度。
[边界] 纯 CPU；不触发检索。
[上游关系] pipelines/query/preprocess.py。
[下游关系] Stage 1 以 variants 作为检索查询。
"""

from __future__ import annotations

import pytest

from rag_lab.backend.pipelines.query.preprocess import (
    PreprocessOptions,
    QueryPreprocessor,
    classify_intent,
    edit_distance,
    extract_entities,
    normalize_query,
)
from rag_lab.backend.utils.errors import ValidationError


pytestmark = pytest.mark.query_gate


def test_definitional_query_expectations() -> None:
    pq = QueryPreprocessor().preprocess("What is machine learning?")

    assert pq.normalized == "what is machine learning"
    assert pq.corrected == "what is machine learning"  # docstring: 已知词不被改写
    assert pq.reformulated == ("what is machine learning", "machine learning")
    assert pq.variants[0] == "what is machine learning"
    assert "machine learning" in pq.variants
    assert pq.entities == ()  # docstring: 句首疑问词不算实体
    assert pq.intent == "definitional"
    assert pq.confidence == pytest.approx(0.8)


def test_preprocess_is_idempotent() -> None:
    pre = QueryPreprocessor()
    a = pre.preprocess("Compare GPT and BERT for nlp")
    b = pre.preprocess("Compare GPT and BERT for nlp")
    assert a == b


@pytest.mark.parametrize("query", ["", "   ", "???"])
def test_empty_query_rejected(query: str) -> None:
    with pytest.raises(ValidationError) as info:
        QueryPreprocessor().preprocess(query)
    assert info.value.error_code == "validation_error"
    assert info.value.http_status == 400


def test_spell_correction_uses_vocabulary() -> None:
    pq = QueryPreprocessor().preprocess("machne lerning")
    assert pq.corrected == "machine learning"
    assert pq.stats()["spell_correction_applied"] is True


def test_entities_are_protected_from_correction() -> None:
    pre = QueryPreprocessor()
    kept = pre.preprocess("compare GPT and BERT")
    assert kept.entities == ("GPT", "BERT")
    assert kept.corrected.split() == ["compare", "gpt", "and", "bert"]
    assert kept.intent == "comparative"

    unprotected = pre.preprocess("compare GPT and BERT", PreprocessOptions(preserve_entities=False))
    assert unprotected.entities == ()
    assert "bert" not in unprotected.corrected.split()  # docstring: 无保护时被纠正为领域词


def test_synonym_expansion_respects_max_synonyms() -> None:
    pre = QueryPreprocessor()
    full = pre.preprocess("ml model")
    assert "machine learning model" in full.variants
    assert "automated learning model" in full.variants

    one = pre.preprocess("ml model", PreprocessOptions(max_synonyms=1))
    assert "machine learning model" in one.variants
    assert "automated learning model" not in one.variants


def test_all_stages_disabled_yields_single_variant() -> None:
    opts = PreprocessOptions(
        enable_spell_correction=False,
        enable_synonym_expansion=False,
        enable_query_reformulation=False,
    )
    pq = QueryPreprocessor().preprocess("  What is   ML?? ", opts)
    assert pq.variants == ("what is ml",)
    assert pq.corrected == pq.normalized


def test_edit_distance_properties() -> None:
    pairs = [("kitten", "sitting"), ("", "abc"), ("flaw", "lawn"), ("same", "same")]
    assert edit_distance("kitten", "sitting") == 3
    for a, b in pairs:
        d = edit_distance(a, b)
        assert d == edit_distance(b, a)  # docstring: 对称
        assert d <= len(a) + len(b)
    assert edit_distance("same", "same") == 0


def test_normalize_and_intent_rules() -> None:
    assert normalize_query("Hello,   World!") == "hello world"
    assert classify_intent("how to train a model") == "procedural"
    assert classify_intent("why do models overfit") == "causal"
    assert classify_intent("when was BERT released") == "temporal"
    assert classify_intent("where is the data") == "spatial"
    assert classify_intent("who invented backprop") == "entity"
    assert classify_intent("transformer attention") == "factual"
    assert extract_entities("Paris in 2024 and NASA") == ("Paris", "2024", "NASA")
