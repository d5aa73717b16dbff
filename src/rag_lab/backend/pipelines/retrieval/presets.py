# src/rag_lab/backend/pipelines/retrieval/presets.py

"""
[职责] presets：基于启发式查询复杂度生成 speed/accuracy/balanced 三种 RetrievalConfig。
[边界] 仅为便捷入口，不是正确性边界；复杂度只看 token 数、技术词、疑问词、否定词。
[上游关系] POST /retrieval/presets/{goal}；调用方也可直接使用。
[下游关系] 生成的 RetrievalConfig 交给 TwoStagePipeline.run。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Literal, Mapping, Optional

from rag_lab.backend.schemas.retrieval import RetrievalConfig
from rag_lab.backend.utils.errors import ValidationError


PresetGoal = Literal["speed", "accuracy", "balanced"]

TECHNICAL_TERMS = (
    "algorithm",
    "machine learning",
    "neural network",
    "deep learning",
    "artificial intelligence",
    "nlp",
    "computer vision",
)  # docstring: 技术词（子串匹配）
QUESTION_WORDS = frozenset({"what", "how", "why", "when", "where", "which"})
NEGATION_WORDS = frozenset({"not", "no", "never", "none", "without"})


@dataclass(frozen=True)
class QueryComplexity:
    length: int  # docstring: 空白切分后的 token 数
    complexity: float
    has_technical_terms: bool
    has_questions: bool
    has_negation: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "length": self.length,
            "complexity": self.complexity,
            "has_technical_terms": self.has_technical_terms,
            "has_questions": self.has_questions,
            "has_negation": self.has_negation,
        }


def analyze_query(query: str) -> QueryComplexity:
    """complexity = min(1, tokens/20 + 0.3·technical + 0.2·question + 0.1·negation)."""
    lowered = str(query).lower()
    words = lowered.split()
    technical = any(term in lowered for term in TECHNICAL_TERMS)
    questions = "?" in query or any(w in QUESTION_WORDS for w in words)
    negation = any(w in NEGATION_WORDS for w in words)
    score = len(words) / 20.0 + (0.3 if technical else 0.0) + (0.2 if questions else 0.0) + (0.1 if negation else 0.0)
    return QueryComplexity(
        length=len(words),
        complexity=min(1.0, score),
        has_technical_terms=technical,
        has_questions=questions,
        has_negation=negation,
    )


def _strategy(goal: str, analysis: QueryComplexity) -> Dict[str, Any]:
    if goal == "speed":
        return {
            "top_k_initial": 50,
            "semantic_limit": 30,
            "lexical_limit": 30,
            "final_limit": 10,
            "enable_stage2": analysis.complexity > 0.7,
        }
    if goal == "accuracy":
        return {
            "top_k_initial": 200,
            "semantic_limit": 100,
            "lexical_limit": 100,
            "final_limit": 30,
            "enable_stage2": True,
            "enable_synonym_expansion": True,
            "normalize_scores": True,
        }
    if goal == "balanced":
        return {
            "top_k_initial": 100,
            "semantic_limit": 60,
            "lexical_limit": 60,
            "final_limit": 20,
            "enable_stage2": analysis.complexity > 0.5,
            "enable_synonym_expansion": analysis.length > 10,
            "normalize_scores": True,
        }
    raise ValidationError(
        message=f"unknown preset goal: {goal}",
        detail={"goal": goal, "allowed": ["speed", "accuracy", "balanced"]},
    )


def preset_config(
    goal: str,
    query: str,
    *,
    overrides: Optional[Mapping[str, Any]] = None,
) -> RetrievalConfig:
    """
    [职责] 生成预设配置：只写入目标相关的 limit、Stage 2 开关与预处理开关，融合参数等沿用 RetrievalConfig 默认值。
    [边界] overrides 最后应用（snake_case 字段名）；未知 goal 抛 ValidationError。
    """
    analysis = analyze_query(query)
    fields: Dict[str, Any] = _strategy(goal, analysis)  # docstring: 其余字段取 RetrievalConfig 默认值
    fields.update(dict(overrides or {}))
    return RetrievalConfig(**fields)
