from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence
import math

SINGLE_BAND_MAX_ITEMS = 20
DOUBLE_BAND_MAX_ITEMS = 50
TRIPLE_BAND_LEAD_ITEMS = 20

DOUBLE_BAND_OVERLAP_PX = 50
TRIPLE_BAND_OVERLAP_PX = 40


@dataclass(frozen=True)
class BandPlan:
    index: int
    x0: int
    x1: int
    first_item: int
    count: int

    @property
    def width(self) -> int:
        return self.x1 - self.x0


def band_counts(total_items: int) -> List[int]:
    if total_items <= SINGLE_BAND_MAX_ITEMS:
        return [total_items]
    if total_items <= DOUBLE_BAND_MAX_ITEMS:
        first = math.ceil(total_items / 2)
        return [first, total_items - first]
    lead = TRIPLE_BAND_LEAD_ITEMS
    return [lead, lead, total_items - 2 * lead]


def _band_edges(bands: int, width: int) -> List[tuple[int, int]]:
    if bands == 1:
        return [(0, width)]
    overlap = DOUBLE_BAND_OVERLAP_PX if bands == 2 else TRIPLE_BAND_OVERLAP_PX
    seams = [width * i // bands for i in range(1, bands)]
    starts = [0] + [max(0, s - overlap) for s in seams]
    ends = [min(width, s + overlap) for s in seams] + [width]
    return list(zip(starts, ends))


def plan_bands(total_items: int, width: int) -> List[BandPlan]:
    """
    Split the canonical sheet into 1-3 vertical bands that overlap at each
    seam, so an anchor sitting on a seam is whole in at least one band.
    """
    if total_items < 1:
        raise ValueError("total_items must be a positive integer")
    counts = band_counts(total_items)
    plans: List[BandPlan] = []
    first_item = 1
    for index, ((x0, x1), count) in enumerate(zip(_band_edges(len(counts), width), counts)):
        plans.append(BandPlan(index=index, x0=x0, x1=x1, first_item=first_item, count=count))
        first_item += count
    return plans


def merge_answers(columns: Sequence[Sequence[str]], total_items: int) -> List[str]:
    merged: List[str] = []
    for answers in columns:
        merged.extend(answers)
    merged = merged[:total_items]
    merged.extend([""] * (total_items - len(merged)))
    return merged
