# src/rag_lab/backend/pipelines/retrieval/normalize.py

"""
[职责] 分数归一化：min_max / z_score（logistic 压缩到 (0,1)）/ rank_based（1 - rank/N）。
[边界] 纯函数；输入为单通道的原始分列表，输出与输入按位置对齐；空列表返回空列表。
[上游关系] fusion.normalize_channels 对 semantic/lexical 分别调用。
[下游关系] weighted_sum/comb_sum 消费归一化分数。
"""

from __future__ import annotations

import math
from typing import Callable, Dict, List, Sequence

from .types import Candidate


def min_max(scores: Sequence[float]) -> List[float]:
    """Rescale to [0,1]; a constant list maps to 1.0 (every candidate ties at the top)."""
    if not scores:
        return []
    lo, hi = min(scores), max(scores)
    if hi - lo <= 0:
        return [1.0 for _ in scores]
    return [(float(s) - lo) / (hi - lo) for s in scores]


def _logistic(z: float) -> float:
    if z >= 0:
        return 1.0 / (1.0 + math.exp(-z))
    e = math.exp(z)
    return e / (1.0 + e)


def z_score(scores: Sequence[float]) -> List[float]:
    """Standardize (population std) then squash through the logistic function into (0,1)."""
    if not scores:
        return []
    n = len(scores)
    mean = sum(scores) / n
    std = math.sqrt(sum((float(s) - mean) ** 2 for s in scores) / n)
    if std <= 0:
        return [0.5 for _ in scores]
    return [_logistic((float(s) - mean) / std) for s in scores]


def rank_based(scores: Sequence[float]) -> List[float]:
    """
    [职责] 按分数降序取 0-based rank，输出 1 - rank/N（首位 1.0，末位 1/N）。
    [边界] 同分按原位置先后定 rank，保证确定性。
    """
    n = len(scores)
    if n == 0:
        return []
    order = sorted(range(n), key=lambda i: (-float(scores[i]), i))
    out = [0.0] * n
    for rank, idx in enumerate(order):
        out[idx] = 1.0 - rank / n
    return out


NORMALIZERS: Dict[str, Callable[[Sequence[float]], List[float]]] = {
    "min_max": min_max,
    "z_score": z_score,
    "rank_based": rank_based,
}  # docstring: 方法名 -> 归一化函数


def normalize_channels(candidates: Sequence[Candidate], *, method: str, enabled: bool = True) -> None:
    """
    [职责] 为每个通道独立归一化：只对在该通道出现过的候选计算，缺席者保持 0。
    [边界] enabled=False 时直接拷贝原始分；原地写 semantic_norm/lexical_norm。
    """
    fn = NORMALIZERS.get(method)
    if fn is None:
        raise ValueError(f"unknown normalization method: {method}")

    sem = [c for c in candidates if c.semantic_rank is not None]
    lex = [c for c in candidates if c.lexical_rank is not None]
    sem_norm = fn([c.semantic_score for c in sem]) if enabled else [c.semantic_score for c in sem]
    lex_norm = fn([c.lexical_score for c in lex]) if enabled else [c.lexical_score for c in lex]

    for c in candidates:
        c.semantic_norm = 0.0
        c.lexical_norm = 0.0
    for c, v in zip(sem, sem_norm):
        c.semantic_norm = float(v)
    for c, v in zip(lex, lex_norm):
        c.lexical_norm = float(v)
