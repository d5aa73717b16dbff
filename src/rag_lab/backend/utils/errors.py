# src/rag_lab/backend/utils/errors.py

"""
[职责] 统一领域错误合同（error_code/message/detail/cause）与 HTTP 映射策略（http_status/retryable）。
[边界] 不依赖 FastAPI；不记录日志；只表达 validation/retrieval/reranking/timeout/internal 五类语义。
[上游关系] pipelines/services/providers 抛出 DomainError 子类；retry helper 读取 retryable 判断是否重试。
[下游关系] api/errors.py 使用 to_http_error 映射为 {error, kind, details, trace_id} 与 HTTP status。
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional, Tuple


ErrorDetail = Dict[str, Any]  # docstring: 错误细节类型（必须 JSON-safe）

VALIDATION_ERROR_CODE = "validation_error"  # docstring: 入参/配置非法
RETRIEVAL_ERROR_CODE = "retrieval_error"  # docstring: Stage 1 候选源失败
RERANKING_ERROR_CODE = "reranking_error"  # docstring: Stage 2 重排失败（通常降级）
PROVIDER_TIMEOUT_CODE = "provider_timeout"  # docstring: 任一外部调用超时
INTERNAL_ERROR_CODE = "internal_error"  # docstring: 未知异常统一错误码
INTERNAL_ERROR_MESSAGE = "internal error"  # docstring: 未知异常统一消息

STANDARD_ERROR_CODES = {
    VALIDATION_ERROR_CODE,
    RETRIEVAL_ERROR_CODE,
    RERANKING_ERROR_CODE,
    PROVIDER_TIMEOUT_CODE,
    INTERNAL_ERROR_CODE,
}  # docstring: 对外可见的 error kind 集合

ERROR_HTTP_STATUS_BY_CODE = {
    VALIDATION_ERROR_CODE: 400,
    RETRIEVAL_ERROR_CODE: 500,
    RERANKING_ERROR_CODE: 500,
    PROVIDER_TIMEOUT_CODE: 500,
    INTERNAL_ERROR_CODE: 500,
}  # docstring: error kind -> HTTP status

ERROR_RETRYABLE_BY_CODE = {
    VALIDATION_ERROR_CODE: False,
    RETRIEVAL_ERROR_CODE: True,
    RERANKING_ERROR_CODE: False,
    PROVIDER_TIMEOUT_CODE: True,
    INTERNAL_ERROR_CODE: False,
}  # docstring: error kind -> retryable 默认值


def ensure_json_safe_detail(detail: ErrorDetail) -> ErrorDetail:
    """
    [职责] 校验 detail 是否可 JSON 序列化。
    [边界] detail 必须是 dict；不做裁剪。
    [上游关系] DomainError 初始化时调用。
    [下游关系] to_http_error 将 detail 序列化为 details 字符串。
    """

    if not isinstance(detail, dict):
        raise ValueError("detail must be a dict")  # docstring: 强制 detail 为 dict 结构
    try:
        json.dumps(detail)  # docstring: JSON 序列化校验
    except TypeError as exc:
        raise ValueError("detail must be JSON-serializable") from exc
    return detail


class DomainError(Exception):
    """
    [职责] 领域错误最小合同：统一 error_code/message/detail/cause，并提供 http_status/retryable 提示。
    [边界] 仅表达语义，不承担日志与 HTTP 输出。
    [上游关系] pipelines/providers 抛出本错误；必要时携带 cause。
    [下游关系] retry helper 读取 retryable；api/errors.py 读取 http_status。
    """

    def __init__(
        self,
        *,
        error_code: str,
        message: str,
        detail: Optional[ErrorDetail] = None,
        cause: Optional[Exception] = None,
        http_status: Optional[int] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        if error_code not in STANDARD_ERROR_CODES:
            raise ValueError(f"invalid error_code: {error_code}")  # docstring: 防止不规范 kind 泄露
        normalized_detail = detail or {}
        ensure_json_safe_detail(normalized_detail)

        super().__init__(message)
        self.error_code = error_code  # docstring: 稳定错误码（对外 kind）
        self.message = message  # docstring: 用户可读错误信息
        self.detail = normalized_detail  # docstring: JSON-safe 细节
        self.cause = cause  # docstring: 上游异常引用
        self.http_status = (
            http_status if http_status is not None else ERROR_HTTP_STATUS_BY_CODE.get(error_code, 500)
        )  # docstring: HTTP 映射提示（优先显式值）
        self.retryable = (
            retryable if retryable is not None else ERROR_RETRYABLE_BY_CODE.get(error_code, False)
        )  # docstring: 可重试提示（优先显式值）

        if cause is not None:
            self.__cause__ = cause  # docstring: 保留异常链路

    @property
    def kind(self) -> str:
        return self.error_code

    def details_text(self) -> Optional[str]:
        """Render detail as a compact deterministic string."""  # docstring: 对外 details 字段
        if not self.detail:
            return None
        return json.dumps(self.detail, sort_keys=True, ensure_ascii=False, separators=(",", ":"))

    def to_dict(self) -> Dict[str, Any]:
        """
        [职责] 输出错误响应结构（不包含 trace_id）。
        [边界] 不包含 cause；details 缺省时省略。
        [上游关系] to_http_error 调用。
        [下游关系] HTTP 错误体与 PipelineMetadata.errors。
        """

        payload: Dict[str, Any] = {"error": self.message, "kind": self.error_code}
        details = self.details_text()
        if details:
            payload["details"] = details  # docstring: 可选 details
        return payload


class ValidationError(DomainError):
    """
    [职责] 入参/配置非法（400，不重试）。
    [边界] 只携带字段级说明，不做修正。
    [上游关系] QueryPreprocessor 空查询、orchestrator 配置校验、HTTP body 校验失败时抛出。
    [下游关系] api 层映射为 400。
    """

    def __init__(
        self,
        *,
        message: str = "validation error",
        detail: Optional[ErrorDetail] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(
            error_code=VALIDATION_ERROR_CODE,
            message=message,
            detail=detail,
            cause=cause,
            http_status=400,
            retryable=False,
        )


class RetrievalError(DomainError):
    """
    [职责] Stage 1 候选源/向量化失败（500，预算内可重试）。
    [边界] 不区分具体 provider；detail 中记录 stage/channel。
    [上游关系] CandidateSource/EmbeddingProvider 适配器或 HybridScorer 抛出。
    [下游关系] 重试耗尽后中止请求并映射为 500。
    """

    def __init__(
        self,
        *,
        message: str = "retrieval error",
        detail: Optional[ErrorDetail] = None,
        cause: Optional[Exception] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(
            error_code=RETRIEVAL_ERROR_CODE,
            message=message,
            detail=detail,
            cause=cause,
            http_status=500,
            retryable=True if retryable is None else retryable,
        )


class ReRankingError(DomainError):
    """
    [职责] Stage 2 重排失败。
    [边界] 默认不重试；provider 可对 429/5xx 显式标记 retryable=True。
    [上游关系] RerankingProvider 适配器与 circuit breaker 抛出。
    [下游关系] orchestrator 捕获后降级为 Stage 1 结果，不对外暴露为请求失败。
    """

    def __init__(
        self,
        *,
        message: str = "reranking error",
        detail: Optional[ErrorDetail] = None,
        cause: Optional[Exception] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(
            error_code=RERANKING_ERROR_CODE,
            message=message,
            detail=detail,
            cause=cause,
            http_status=500,
            retryable=False if retryable is None else retryable,
        )


class ProviderTimeout(DomainError):
    """
    [职责] 外部调用超时（可重试）。
    [边界] detail 记录 stage 与 timeout_ms。
    [上游关系] orchestrator 使用 asyncio.wait_for 包裹外部调用，超时时抛出。
    [下游关系] Stage 1 重试耗尽后包装为 RetrievalError；Stage 2 降级。
    """

    def __init__(
        self,
        *,
        message: str = "provider timeout",
        detail: Optional[ErrorDetail] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(
            error_code=PROVIDER_TIMEOUT_CODE,
            message=message,
            detail=detail,
            cause=cause,
            http_status=500,
            retryable=True,
        )


class InternalError(DomainError):
    """未知异常的内部错误（500）。"""  # docstring: 不暴露原始堆栈

    def __init__(
        self,
        *,
        message: str = INTERNAL_ERROR_MESSAGE,
        detail: Optional[ErrorDetail] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(
            error_code=INTERNAL_ERROR_CODE,
            message=message,
            detail=detail,
            cause=cause,
            http_status=500,
            retryable=False,
        )


def is_transient(error: BaseException) -> bool:
    """
    [职责] 判断异常是否为可重试的瞬时 provider 故障。
    [边界] 只认 DomainError.retryable；ValidationError 永不重试；未知异常不重试。
    [上游关系] pipelines/base/retry.py 调用。
    [下游关系] 决定是否进入下一次退避重试。
    """

    if isinstance(error, ValidationError):
        return False
    return isinstance(error, DomainError) and bool(error.retryable)


def to_http_error(
    error: Exception,
    *,
    trace_id: Optional[str] = None,
) -> Tuple[int, Dict[str, Any]]:
    """
    [职责] 将异常转换为 HTTP status + 错误 payload（不耦合 FastAPI）。
    [边界] 不注入 request_id；不做日志记录。
    [上游关系] api/errors.py 捕获异常后调用。
    [下游关系] routers 返回统一 ErrorResponse。
    """

    if isinstance(error, DomainError):
        status_code = error.http_status
        payload = error.to_dict()
    else:
        status_code = ERROR_HTTP_STATUS_BY_CODE[INTERNAL_ERROR_CODE]  # docstring: 未知异常统一 500
        payload = {"error": INTERNAL_ERROR_MESSAGE, "kind": INTERNAL_ERROR_CODE}

    if trace_id:
        payload["trace_id"] = trace_id  # docstring: API 层注入 trace_id

    return status_code, payload
