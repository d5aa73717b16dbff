# src/rag_lab/backend/utils/logging_.py

"""
[职责] 结构化日志：JSON formatter、项目 logger 获取方式，以及查询文本的安全预览/摘要 helper。
[边界] 不绑定日志后端；不强制 trace_id 注入，仅提供工具。
[上游关系] services/pipelines/api 通过 get_logger/log_event 记录关键节点。
[下游关系] stdout 收集系统解析 JSON 字段（trace_id/execution_id/stage 等）做检索与排障。
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional


DEFAULT_LOGGER_NAME = "rag_lab"  # docstring: 统一 logger 根名称
DEFAULT_LOG_LEVEL = logging.INFO
DEFAULT_MAX_TEXT_LEN = 160  # docstring: 查询文本预览长度

TRACE_FIELD_KEYS = (
    "trace_id",
    "request_id",
    "execution_id",
    "user_id",
)  # docstring: 从上下文自动提取的结构化字段

_LOG_RECORD_RESERVED = set(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__.keys()
) | {"message", "asctime"}  # docstring: LogRecord 内置字段（不作为 extra 输出）


class StructuredLogFormatter(logging.Formatter):
    """
    [职责] 将 LogRecord 转换为单行 JSON（基础字段 + extra）。
    [边界] 不识别敏感字段；调用方负责使用 truncate_text/hash_text。
    [上游关系] configure_logging 挂载到 handler。
    [下游关系] 日志收集系统解析 JSON。
    """

    def __init__(self, *, ensure_ascii: bool = True) -> None:
        super().__init__()
        self._ensure_ascii = ensure_ascii

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(
            {k: v for k, v in record.__dict__.items() if k not in _LOG_RECORD_RESERVED and v is not None}
        )  # docstring: 合并非空 extra 字段

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack_info"] = record.stack_info

        return json.dumps(payload, ensure_ascii=self._ensure_ascii, default=str)


def configure_logging(
    *,
    logger_name: str = DEFAULT_LOGGER_NAME,
    level: int = DEFAULT_LOG_LEVEL,
    ensure_ascii: bool = True,
) -> logging.Logger:
    """
    [职责] 配置项目 base logger（JSON handler，只挂载一次）。
    [边界] 不触碰 root logger。
    [上游关系] app factory / 测试初始化调用。
    [下游关系] get_logger 复用 base logger。
    """

    logger = logging.getLogger(logger_name)
    logger.setLevel(level)

    if not any(getattr(h, "name", "") == "structured_json" for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.name = "structured_json"  # docstring: 标记 handler，避免重复挂载
        handler.setLevel(level)
        handler.setFormatter(StructuredLogFormatter(ensure_ascii=ensure_ascii))
        logger.addHandler(handler)

    logger.propagate = False
    return logger


def get_logger(name: Optional[str] = None, *, level: Optional[int] = None) -> logging.Logger:
    """Return a project logger mounted under the rag_lab root."""  # docstring: 统一挂载在项目根 logger 下
    configure_logging()
    full_name = name or DEFAULT_LOGGER_NAME
    if name and not name.startswith(DEFAULT_LOGGER_NAME):
        full_name = f"{DEFAULT_LOGGER_NAME}.{name}"
    logger = logging.getLogger(full_name)
    if level is not None:
        logger.setLevel(level)
    return logger


def build_log_fields(
    *,
    context: Optional[Any] = None,
    extra: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """
    [职责] 合成结构化日志字段：上下文 trace 字段 + 调用方扩展字段。
    [边界] 不生成缺失 ID；None 值丢弃。
    [上游关系] log_event 调用。
    [下游关系] logger.extra。
    """

    fields: Dict[str, Any] = {}
    if context is not None:
        for key in TRACE_FIELD_KEYS:
            value = context.get(key) if isinstance(context, Mapping) else getattr(context, key, None)
            if value is not None:
                fields[key] = str(value)  # docstring: ID 统一转为字符串
    for key, value in (extra or {}).items():
        if value is not None:
            fields[key] = value
    return fields


def log_event(
    logger: logging.Logger,
    level: int,
    message: str,
    *,
    context: Optional[Any] = None,
    fields: Optional[Mapping[str, Any]] = None,
    exc_info: Optional[Any] = None,
) -> None:
    """
    [职责] 统一记录结构化日志（自动附加 trace 字段）。
    [边界] 不处理业务语义。
    [上游关系] pipelines/services 在 stage 开始/结束、降级、重试时调用。
    [下游关系] StructuredLogFormatter 输出 JSON。
    """

    logger.log(level, message, extra=build_log_fields(context=context, extra=fields), exc_info=exc_info)


def truncate_text(text: Optional[str], *, max_len: int = DEFAULT_MAX_TEXT_LEN) -> Optional[str]:
    """Truncate long text for log previews."""  # docstring: 避免记录原始查询全文
    if text is None:
        return None
    s = str(text)
    if len(s) <= max_len:
        return s
    return f"{s[:max_len]}...(truncated)"


def hash_text(text: Optional[str]) -> Optional[str]:
    """sha256 hex digest of text; used for cache keys and query fingerprints."""
    if text is None:
        return None
    s = str(text)
    if not s:
        return ""
    return hashlib.sha256(s.encode("utf-8")).hexdigest()
