# src/rag_lab/backend/pipelines/retrieval/diversify.py

"""
[职责] Diversifier：按 document_id 限制每个来源文档的候选数，保持相对顺序并重排 1..N。
[边界] 单次线性扫描；不重新打分；关闭时原样返回（仍保证 rank 连续）。
[上游关系] HybridScorer 输出的排序候选。
[下游关系] ReRanker 输入；降级时直接截断为最终结果。
"""

from __future__ import annotations

from typing import Dict, List, Sequence

from .types import Candidate


def diversify_candidates(
    candidates: Sequence[Candidate],
    *,
    max_per_document: int,
    enabled: bool = True,
) -> List[Candidate]:
    """Keep the first `max_per_document` candidates of each source document, in order."""
    if not enabled:
        kept = list(candidates)
    else:
        cap = max(1, int(max_per_document))
        seen: Dict[str, int] = {}
        kept = []
        for c in candidates:
            n = seen.get(c.document_id, 0)
            if n >= cap:
                continue
            seen[c.document_id] = n + 1
            kept.append(c)

    for idx, c in enumerate(kept, start=1):
        c.initial_rank = idx
    return kept


def distinct_documents(candidates: Sequence[Candidate]) -> int:
    return len({c.document_id for c in candidates})
