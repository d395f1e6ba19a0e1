"""重み付き投票と上位 eta% フィルタ。"""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
import math
from typing import TypeVar

T = TypeVar("T")

__all__ = ["VoteResult", "weighted_vote", "filter_top_eta"]


@dataclass(frozen=True, slots=True)
class VoteResult:
    answer: str
    consensus: float
    tally: Mapping[str, float] = field(default_factory=dict)


def weighted_vote(answers: Sequence[str], weights: Sequence[float]) -> VoteResult:
    """同一回答の重みを合算し、最大重みの回答を返す。

    同点は最初に現れた回答を優先する。``+inf`` の重みが含まれる場合は極限として
    扱い、無限大の票だけを 1 票ずつ数える。
    """
    if len(answers) != len(weights):
        raise ValueError("answers and weights must have the same length")
    if not answers:
        return VoteResult(answer="", consensus=0.0)

    values = [float(weight) for weight in weights]
    if any(math.isinf(value) and value > 0 for value in values):
        values = [1.0 if math.isinf(value) and value > 0 else 0.0 for value in values]

    tally: dict[str, float] = {}
    first_seen: dict[str, int] = {}
    for index, (answer, value) in enumerate(zip(answers, values, strict=True)):
        if answer not in tally:
            tally[answer] = 0.0
            first_seen[answer] = index
        tally[answer] += value

    winner = min(tally, key=lambda answer: (-tally[answer], first_seen[answer]))
    best = tally[winner]
    total = math.fsum(tally.values())
    if total <= 0 or best <= 0:
        consensus = 0.0
    else:
        consensus = min(1.0, best / total)
    return VoteResult(answer=winner, consensus=consensus, tally=dict(tally))


def filter_top_eta(
    items: Sequence[T], scores: Sequence[float], eta_percent: float
) -> tuple[list[T], list[float]]:
    """スコア上位 ``max(1, floor(eta/100 * N))`` 件を元の並び順で残す。"""
    if len(items) != len(scores):
        raise ValueError("items and scores must have the same length")
    if not items:
        return [], []
    keep = max(1, math.floor(eta_percent / 100 * len(items)))
    ranked = sorted(range(len(items)), key=lambda index: -scores[index])
    kept = sorted(ranked[:keep])
    return [items[index] for index in kept], [scores[index] for index in kept]
