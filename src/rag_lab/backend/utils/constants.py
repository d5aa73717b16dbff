# src/rag_lab/backend/utils/constants.py

"""
[职责] 集中定义检索默认值、stage key 与协议字段名，降低跨模块硬编码。
[边界] 不读取环境变量；运行时可变配置见 config.py 与 RetrievalConfig。
[上游关系] schemas/pipelines/api 引用。
[下游关系] timing_ms、PipelineMetadata、HTTP 响应使用一致的字段名。
"""

from __future__ import annotations


TRACE_HEADER = "x-trace-id"  # docstring: trace header 约定
REQUEST_HEADER = "x-request-id"  # docstring: request header 约定

STAGE_PREPROCESS = "preprocess"  # docstring: 查询预处理阶段
STAGE_STAGE1 = "stage1"  # docstring: 混合召回 + 融合阶段
STAGE_DIVERSIFY = "diversify"  # docstring: 按文档去重阶段
STAGE_STAGE2 = "stage2"  # docstring: 重排阶段

TIMING_TOTAL_MS_KEY = "total_ms"  # docstring: timing_ms 的总耗时 key（含单位）

DEFAULT_RRF_K = 60  # docstring: RRF 常量
DEFAULT_RERANK_WEIGHT = 0.7  # docstring: confidence 中 rerank 分数占比
WEIGHT_SUM_TOLERANCE = 1e-6  # docstring: 权重和偏离 1 的容差
ADAPTIVE_SKEW_THRESHOLD = 1.0  # docstring: adaptive 融合切换到 RRF 的偏度阈值
ADAPTIVE_MIN_SAMPLES = 3  # docstring: adaptive 计算偏度所需最少样本

COHERE_COST_PER_1K_DOCS = 0.001  # docstring: Cohere rerank 单价（USD/1k docs）
CROSS_ENCODER_COST_PER_1K_DOCS = 0.005  # docstring: HF inference 估算单价（USD/1k docs）
COHERE_MAX_DOC_CHARS = 1000  # docstring: 发送给 Cohere 的单文档字符上限
CROSS_ENCODER_MAX_DOC_CHARS = 512  # docstring: 发送给 cross-encoder 的单文档字符上限

OUTLIER_Z_THRESHOLD = 2.0  # docstring: z-score 离群阈值
LATENCY_SPIKE_MIN_SAMPLES = 5  # docstring: 延迟尖刺检测最少历史样本
QUALITY_FLOOR = 0.5  # docstring: 最终分数均值低于此值视为质量退化
RECENT_WINDOW = 200  # docstring: tracker 保留最近记录数（用于报告）
