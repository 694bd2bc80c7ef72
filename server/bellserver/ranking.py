from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np

from bellserver.class_map import ClassificationIndex
from bellserver.protocol import ProbabilityRecord


@dataclass(frozen=True, slots=True)
class RankedRecord:
    index: int
    label: str
    probability: float


def rank(records: Sequence[ProbabilityRecord | RankedRecord], index: ClassificationIndex) -> list[RankedRecord]:
    """Label every record and order by probability, highest first.

    Equal probabilities keep their arrival order. Nothing is thresholded or dropped.
    """
    if not records:
        return []
    scores = np.fromiter((r.probability for r in records), dtype=np.float64, count=len(records))
    # Stable argsort on the negated scores keeps ties in input order.
    order = np.argsort(-scores, kind="stable")
    ranked: list[RankedRecord] = []
    for i in order:
        r = records[int(i)]
        ranked.append(RankedRecord(index=r.index, label=index.resolve(r.index), probability=r.probability))
    return ranked


def top_labels(ranked: Sequence[RankedRecord], k: int = 3) -> list[tuple[str, float]]:
    return [(r.label, round(float(r.probability), 3)) for r in ranked[: max(0, int(k))]]
