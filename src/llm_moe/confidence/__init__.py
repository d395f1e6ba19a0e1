"""Confidence engine: primitives, voting, trace sources and sampling algorithms."""
from __future__ import annotations

from .engine import (
    NO_WINNING_TRACE,
    DeepConfEngine,
    DeepConfOptions,
    DeepConfResult,
    JudgeScorer,
    LogprobScorer,
    TraceScorer,
    extract_answer,
    stopping_threshold,
)
from .judge import JUDGE_SYSTEM_PROMPT, Judge, JudgeResult, parse_judge_reply
from .primitives import (
    ConfidenceMetric,
    bottom_percent_group_confidence,
    group_confidence,
    lowest_group_confidence,
    tail_confidence,
    token_confidence,
    trace_confidence,
)
from .traces import (
    JudgedTraceProvider,
    StepMonitor,
    StreamingTraceProvider,
    Trace,
    TraceProvider,
    select_trace_source,
)
from .voting import VoteResult, filter_top_eta, weighted_vote

__all__ = [
    "NO_WINNING_TRACE",
    "DeepConfEngine",
    "DeepConfOptions",
    "DeepConfResult",
    "JudgeScorer",
    "LogprobScorer",
    "TraceScorer",
    "extract_answer",
    "stopping_threshold",
    "JUDGE_SYSTEM_PROMPT",
    "Judge",
    "JudgeResult",
    "parse_judge_reply",
    "ConfidenceMetric",
    "bottom_percent_group_confidence",
    "group_confidence",
    "lowest_group_confidence",
    "tail_confidence",
    "token_confidence",
    "trace_confidence",
    "JudgedTraceProvider",
    "StepMonitor",
    "StreamingTraceProvider",
    "Trace",
    "TraceProvider",
    "select_trace_source",
    "VoteResult",
    "filter_top_eta",
    "weighted_vote",
]
