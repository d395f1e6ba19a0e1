"""トークン log-prob からトレース信頼度を求める純関数群。

値は「負の平均 log-prob」なので大きいほど確信度が高い。分布が無い位置は
``+inf`` (最大確信) として扱い、ジャッジ採点トレースでも破綻しないようにする。
"""
from __future__ import annotations

from collections.abc import Sequence
from enum import Enum
import math

from ..provider_spi import TokenLogprob

__all__ = [
    "ConfidenceMetric",
    "token_confidence",
    "group_confidence",
    "group_confidences",
    "lowest_group_confidence",
    "tail_confidence",
    "bottom_percent_group_confidence",
    "trace_confidence",
]


class ConfidenceMetric(str, Enum):
    MEAN = "mean"
    TAIL = "tail"
    BOTTOM10 = "bottom10"
    LOWEST_GROUP = "lowest_group"


def _mean(values: Sequence[float]) -> float:
    if not values:
        return math.inf
    return math.fsum(values) / len(values)


def token_confidence(top_k: Sequence[TokenLogprob], k: int = 5) -> float:
    used = list(top_k[: max(1, k)])
    if not used:
        return math.inf
    return -_mean([candidate.logprob for candidate in used])


def group_confidence(conf: Sequence[float], end_idx: int, window: int) -> float:
    if window < 1:
        raise ValueError("window must be >= 1")
    start = max(0, end_idx - window + 1)
    return _mean(conf[start : end_idx + 1])


def group_confidences(conf: Sequence[float], window: int) -> list[float]:
    return [group_confidence(conf, index, window) for index in range(len(conf))]


def lowest_group_confidence(conf: Sequence[float], window: int) -> float:
    groups = group_confidences(conf, window)
    return min(groups) if groups else math.inf


def tail_confidence(conf: Sequence[float], tail_window: int) -> float:
    if tail_window < 1:
        raise ValueError("tail_window must be >= 1")
    return _mean(conf[-tail_window:])


def bottom_percent_group_confidence(
    conf: Sequence[float], window: int, percent: float
) -> float:
    groups = sorted(group_confidences(conf, window))
    if not groups:
        return math.inf
    keep = max(1, math.floor(percent / 100 * len(groups)))
    return _mean(groups[:keep])


def trace_confidence(
    conf: Sequence[float],
    metric: ConfidenceMetric,
    *,
    group_window: int = 2048,
    tail_window: int = 2048,
) -> float:
    if not conf:
        return math.inf
    match ConfidenceMetric(metric):
        case ConfidenceMetric.MEAN:
            return _mean(conf)
        case ConfidenceMetric.TAIL:
            return tail_confidence(conf, tail_window)
        case ConfidenceMetric.BOTTOM10:
            return bottom_percent_group_confidence(conf, group_window, 10)
        case ConfidenceMetric.LOWEST_GROUP:
            return lowest_group_confidence(conf, group_window)
    raise ValueError(f"unknown confidence metric: {metric!r}")
