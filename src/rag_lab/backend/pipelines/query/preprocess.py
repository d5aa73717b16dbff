# src/rag_lab/backend/pipelines/query/preprocess.py

"""
[职责] QueryPreprocessor：规范化、实体抽取、拼写纠正、问句改写、同义词扩展、意图分类与置信度评分，产出不可变 PreprocessedQuery。
[边界] 纯 CPU、确定性、幂等；不调用外部服务；实体抽取是大小写/数字启发式而非 NER。
[上游关系] orchestrator 在 Stage 1 之前调用；/retrieval/preprocess 路由直接暴露。
[下游关系] HybridScorer 以 variants 为检索查询；PipelineMetadata 记录 intent/confidence。
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Literal, Mapping, Optional, Sequence, Tuple

from rag_lab.backend.utils.errors import ValidationError


QueryIntent = Literal[
    "definitional",
    "procedural",
    "causal",
    "comparative",
    "temporal",
    "spatial",
    "entity",
    "factual",
]  # docstring: 意图枚举

MAX_EDIT_DISTANCE = 2  # docstring: 拼写纠正允许的最大编辑距离

_PUNCT_RE = re.compile(r"[^\w\s]", flags=re.UNICODE)
_SPACE_RE = re.compile(r"\s+")

DOMAIN_VOCABULARY: Tuple[str, ...] = (
    "artificial", "intelligence", "machine", "learning", "deep", "neural", "network",
    "algorithm", "data", "model", "training", "prediction", "classification",
    "regression", "clustering", "natural", "language", "processing", "computer",
    "vision", "robotics", "automation", "technology", "software", "hardware",
    "database", "query", "search", "retrieval", "embedding", "vector", "similarity",
    "document", "text", "content", "information", "knowledge", "system", "application",
)  # docstring: 领域词表（顺序决定纠错平局时的优先级）

FUNCTION_WORDS: Tuple[str, ...] = (
    "what", "how", "why", "when", "where", "who", "which", "whom", "whose",
    "is", "are", "was", "were", "be", "been", "do", "does", "did", "can", "could",
    "should", "would", "will", "to", "of", "in", "on", "for", "with", "without",
    "and", "or", "not", "no", "the", "a", "an", "it", "its", "this", "that",
    "these", "those", "vs", "versus", "between", "difference", "compare", "about",
    "from", "by", "as", "at", "into", "use", "used", "work", "works", "i", "we",
    "you", "my", "our", "your", "time", "reason", "location", "person",
)  # docstring: 功能词/疑问词（避免被"纠正"成领域词）
_FUNCTION_WORD_SET = frozenset(FUNCTION_WORDS)

DOMAIN_SYNONYMS: Dict[str, Tuple[str, ...]] = {
    "ai": ("artificial intelligence", "machine intelligence"),
    "ml": ("machine learning", "automated learning"),
    "nlp": ("natural language processing", "text processing"),
    "cv": ("computer vision", "image recognition"),
    "db": ("database", "data store"),
    "api": ("application programming interface", "service interface"),
    "ui": ("user interface", "interface"),
    "ux": ("user experience", "experience design"),
}  # docstring: 领域同义词（缩写 -> 全称）

GENERIC_SYNONYMS: Dict[str, Tuple[str, ...]] = {
    "big": ("large", "huge", "enormous"),
    "small": ("tiny", "little", "miniature"),
    "fast": ("quick", "rapid", "swift"),
    "slow": ("sluggish", "gradual", "delayed"),
    "good": ("excellent", "great", "wonderful"),
    "bad": ("terrible", "awful", "poor"),
    "help": ("assist", "aid", "support"),
    "problem": ("issue", "trouble", "difficulty"),
    "solution": ("answer", "fix", "resolution"),
    "method": ("approach", "technique", "way"),
}  # docstring: 通用同义词兜底表

REFORMULATION_PATTERNS: Tuple[Tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"^what is (.+?)\??$"), r"\1"),
    (re.compile(r"^what are (.+?)\??$"), r"\1"),
    (re.compile(r"^how to (.+?)\??$"), r"\1"),
    (re.compile(r"^how do (.+?)\??$"), r"\1"),
    (re.compile(r"^why (.+?)\??$"), r"reason for \1"),
    (re.compile(r"^when (.+?)\??$"), r"time of \1"),
    (re.compile(r"^where (.+?)\??$"), r"location of \1"),
    (re.compile(r"^who (.+?)\??$"), r"person \1"),
    (re.compile(r"^which (.+?)\??$"), r"\1"),
)  # docstring: 问句 -> 规范形式；normalize 后已无 "?"，故问号可选

_INTENT_PREFIXES: Tuple[Tuple[Tuple[str, ...], QueryIntent], ...] = (
    (("what is", "what are"), "definitional"),
    (("how to", "how do"), "procedural"),
    (("why", "what causes"), "causal"),
)
_COMPARATIVE_MARKERS = ("compare", "vs", "difference")
_LATE_INTENT_PREFIXES: Tuple[Tuple[Tuple[str, ...], QueryIntent], ...] = (
    (("when", "what time"), "temporal"),
    (("where", "what location"), "spatial"),
    (("who", "which person"), "entity"),
)


def _build_synonym_index(base: Mapping[str, Sequence[str]]) -> Dict[str, Tuple[str, ...]]:
    """Add reverse entries (full form -> abbreviation) for single-token synonyms."""
    index: Dict[str, List[str]] = {k.lower(): list(v) for k, v in base.items()}
    for term, synonyms in base.items():
        for syn in synonyms:
            key = syn.lower()
            bucket = index.setdefault(key, [])
            if term not in bucket:
                bucket.append(term)
    return {k: tuple(v) for k, v in index.items()}


@dataclass(frozen=True)
class PreprocessOptions:
    enable_spell_correction: bool = True
    enable_synonym_expansion: bool = True
    enable_query_reformulation: bool = True
    max_synonyms: int = 3
    preserve_entities: bool = True


@dataclass(frozen=True)
class PreprocessedQuery:
    """
    [职责] 预处理结果（不可变）：各中间形态、变体集合、实体、意图与置信度。
    [边界] variants 去重且保持插入顺序，总是包含 corrected。
    """

    original: str
    normalized: str
    corrected: str
    reformulated: Tuple[str, ...]
    variants: Tuple[str, ...]
    entities: Tuple[str, ...]
    intent: QueryIntent
    confidence: float
    semantic_query: str

    def stats(self) -> Dict[str, object]:
        return {
            "original_length": len(self.original),
            "normalized_length": len(self.normalized),
            "corrected_length": len(self.corrected),
            "reformulated_count": len(self.reformulated),
            "expanded_count": len(self.variants),
            "entities_count": len(self.entities),
            "intent": self.intent,
            "confidence": self.confidence,
            "spell_correction_applied": self.normalized != self.corrected,
            "synonym_expansion_applied": len(self.variants) > len(self.reformulated),
        }


def edit_distance(a: str, b: str) -> int:
    """
    [职责] 经典动态规划 Levenshtein 距离（插入/删除/替换代价均为 1）。
    [边界] 对称；identical -> 0；结果 <= len(a) + len(b)。
    """
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    prev = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        cur = [i] + [0] * len(b)
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            cur[j] = min(prev[j] + 1, cur[j - 1] + 1, prev[j - 1] + cost)
        prev = cur
    return prev[len(b)]


def normalize_query(text: str) -> str:
    """Lowercase, punctuation to space, collapse whitespace."""
    s = _PUNCT_RE.sub(" ", str(text).lower())
    return _SPACE_RE.sub(" ", s).strip()


def extract_entities(text: str) -> Tuple[str, ...]:
    """
    [职责] 从原始查询（保留大小写）中抽取实体 token：首字母大写、全大写或纯数字。
    [边界] 标点先替换为空格；单字符字母 token 不计；首字母大写的功能词不计；去重保持首次出现顺序。
    """
    seen: Dict[str, None] = {}
    for token in _PUNCT_RE.sub(" ", str(text)).split():
        if token.isdigit():
            seen.setdefault(token, None)
            continue
        if len(token) < 2 or not token[0].isalpha():
            continue
        if token.lower() in _FUNCTION_WORD_SET and not token.isupper():
            continue  # docstring: 句首疑问词/功能词不算实体
        if token[0].isupper() or token.isupper():
            seen.setdefault(token, None)
    return tuple(seen)


def classify_intent(query: str) -> QueryIntent:
    """Rule-based prefix/keyword intent classification."""  # docstring: 规则顺序即优先级
    q = normalize_query(query)
    tokens = set(q.split())
    for prefixes, intent in _INTENT_PREFIXES:
        if any(q.startswith(p) for p in prefixes):
            return intent
    if any(m in tokens for m in _COMPARATIVE_MARKERS) or "differences" in tokens or "comparison" in tokens:
        return "comparative"
    for prefixes, intent in _LATE_INTENT_PREFIXES:
        if any(q.startswith(p) for p in prefixes):
            return intent
    return "factual"


def score_confidence(query: str, entities: Sequence[str], intent: QueryIntent) -> float:
    confidence = 0.5
    if len(query) > 10:
        confidence += 0.1
    if len(query) > 20:
        confidence += 0.1
    if entities:
        confidence += 0.1
    if intent in ("definitional", "procedural", "comparative"):
        confidence += 0.1
    return round(min(confidence, 1.0), 4)


def _dedupe(items: Sequence[str]) -> Tuple[str, ...]:
    seen: Dict[str, None] = {}
    for it in items:
        s = str(it).strip()
        if s:
            seen.setdefault(s, None)
    return tuple(seen)


class QueryPreprocessor:
    """
    [职责] 查询预处理器：持有词表/同义词/改写规则，preprocess() 为纯函数。
    [边界] 词表与同义词表在构造时固定；同一输入与选项多次调用结果完全一致。
    [上游关系] orchestrator / routers/retrieval.py。
    [下游关系] PreprocessedQuery。
    """

    def __init__(
        self,
        *,
        vocabulary: Optional[Sequence[str]] = None,
        domain_synonyms: Optional[Mapping[str, Sequence[str]]] = None,
        generic_synonyms: Optional[Mapping[str, Sequence[str]]] = None,
    ) -> None:
        vocab = list(vocabulary) if vocabulary is not None else list(DOMAIN_VOCABULARY) + list(FUNCTION_WORDS)
        domain = dict(domain_synonyms if domain_synonyms is not None else DOMAIN_SYNONYMS)
        vocab.extend(k for k in domain if k not in vocab)  # docstring: 缩写本身视为已知词
        self._vocabulary: Tuple[str, ...] = _dedupe([w.lower() for w in vocab])
        self._known = frozenset(self._vocabulary)
        self._domain_synonyms = _build_synonym_index(domain)
        self._generic_synonyms = {
            k.lower(): tuple(v) for k, v in (generic_synonyms if generic_synonyms is not None else GENERIC_SYNONYMS).items()
        }

    def correct_token(self, token: str) -> str:
        """Closest vocabulary word within MAX_EDIT_DISTANCE; first minimal match wins."""
        if token in self._known or token.isdigit():
            return token
        best, best_dist = token, MAX_EDIT_DISTANCE + 1
        for word in self._vocabulary:
            d = edit_distance(token, word)
            if d < best_dist:
                best, best_dist = word, d
        return best if best_dist <= MAX_EDIT_DISTANCE else token

    def correct_spelling(self, normalized: str, *, protected: Sequence[str] = ()) -> str:
        keep = {p.lower() for p in protected}
        return " ".join(t if t in keep else self.correct_token(t) for t in normalized.split())

    @staticmethod
    def reformulate(query: str) -> Tuple[str, ...]:
        out: List[str] = [query]
        for pattern, template in REFORMULATION_PATTERNS:
            if pattern.match(query):
                out.append(pattern.sub(template, query))
        return _dedupe(out)

    def synonyms_for(self, token: str, max_synonyms: int) -> Tuple[str, ...]:
        """Domain synonyms first; generic map only when the domain map has none."""
        t = token.lower()
        found = self._domain_synonyms.get(t) or self._generic_synonyms.get(t) or ()
        return tuple(found[: max(0, int(max_synonyms))])

    def expand_synonyms(self, variants: Sequence[str], max_synonyms: int) -> Tuple[str, ...]:
        out: List[str] = list(variants)
        for variant in variants:
            words = variant.split()
            for i, word in enumerate(words):
                for syn in self.synonyms_for(word, max_synonyms):
                    out.append(" ".join(words[:i] + [syn] + words[i + 1 :]))  # docstring: 单 token 替换
        return _dedupe(out)

    def preprocess(self, query: str, options: Optional[PreprocessOptions] = None) -> PreprocessedQuery:
        """
        [职责] 执行完整预处理流程。
        [边界] 空/纯空白（或规范化后为空）输入抛 ValidationError。
        [上游关系] orchestrator.run / preprocess 路由。
        [下游关系] PreprocessedQuery.variants 进入 Stage 1。
        """
        opts = options or PreprocessOptions()
        if query is None or not str(query).strip():
            raise ValidationError(message="query is required", detail={"field": "query"})
        normalized = normalize_query(query)
        if not normalized:
            raise ValidationError(message="query has no searchable terms", detail={"field": "query"})

        entities = extract_entities(query) if opts.preserve_entities else ()
        corrected = (
            self.correct_spelling(normalized, protected=entities) if opts.enable_spell_correction else normalized
        )
        reformulated = self.reformulate(corrected) if opts.enable_query_reformulation else (corrected,)
        variants = (
            self.expand_synonyms(reformulated, opts.max_synonyms) if opts.enable_synonym_expansion else reformulated
        )
        intent = classify_intent(corrected)
        semantic_query = " ".join([corrected, *entities]) if entities else corrected

        return PreprocessedQuery(
            original=str(query),
            normalized=normalized,
            corrected=corrected,
            reformulated=reformulated,
            variants=variants,
            entities=entities,
            intent=intent,
            confidence=score_confidence(corrected, entities, intent),
            semantic_query=semantic_query,
        )
