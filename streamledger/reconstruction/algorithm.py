"""Daily cumulative snapshot reconstruction.

Items are folded into per-day deltas in one pass, then a single forward
prefix sum over the contiguous day range produces the running totals, so the
cost is O(items + days) instead of rescanning every item for every output day.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import date, timedelta
from typing import Iterable, Iterator, Mapping

from streamledger.reconstruction.classify import (
    CodecFamily,
    MediaCategory,
    ResolutionTier,
    classify_codec,
    classify_media_type,
    classify_resolution,
)

INT64_MAX = 2**63 - 1

_MEDIA_FIELD = {
    MediaCategory.MOVIE: "movie_count",
    MediaCategory.EPISODE: "episode_count",
    MediaCategory.SEASON: "season_count",
    MediaCategory.SHOW: "show_count",
    MediaCategory.MUSIC: "music_count",
    MediaCategory.OTHER: "other_media_count",
}

_RESOLUTION_FIELD = {
    ResolutionTier.UHD_4K: "count_4k",
    ResolutionTier.FHD_1080P: "count_1080p",
    ResolutionTier.HD_720P: "count_720p",
    ResolutionTier.SD: "count_sd",
    ResolutionTier.UNKNOWN: "count_unknown_resolution",
}

_CODEC_FIELD = {
    CodecFamily.HEVC: "hevc_count",
    CodecFamily.H264: "h264_count",
    CodecFamily.AV1: "av1_count",
    CodecFamily.OTHER: "other_codec_count",
}


@dataclass(frozen=True, slots=True)
class CollectionKey:
    server_id: str
    library_id: str

    def __str__(self) -> str:
        return f"{self.server_id}/{self.library_id}"


@dataclass(slots=True)
class MetricVector:
    item_count: int = 0
    total_size: int = 0
    movie_count: int = 0
    episode_count: int = 0
    season_count: int = 0
    show_count: int = 0
    music_count: int = 0
    other_media_count: int = 0
    count_4k: int = 0
    count_1080p: int = 0
    count_720p: int = 0
    count_sd: int = 0
    count_unknown_resolution: int = 0
    hevc_count: int = 0
    h264_count: int = 0
    av1_count: int = 0
    other_codec_count: int = 0

    def add(self, other: "MetricVector") -> None:
        for name in METRIC_FIELDS:
            setattr(self, name, getattr(self, name) + getattr(other, name))
        if self.total_size > INT64_MAX:
            raise OverflowError(f"Cumulative size {self.total_size} exceeds the 64-bit range")

    def copy(self) -> "MetricVector":
        return MetricVector(**self.to_dict())

    def category_total(self) -> int:
        return sum(getattr(self, name) for name in COUNT_FIELDS)

    def is_valid(self, *, require_size: bool = True) -> bool:
        if self.category_total() <= 0:
            return False
        return self.total_size > 0 or not require_size

    def to_dict(self) -> dict[str, int]:
        return {name: getattr(self, name) for name in METRIC_FIELDS}


METRIC_FIELDS: tuple[str, ...] = tuple(f.name for f in fields(MetricVector))
COUNT_FIELDS: tuple[str, ...] = tuple(name for name in METRIC_FIELDS if name != "total_size")


@dataclass(frozen=True, slots=True)
class ItemRecord:
    created_day: date
    media_type: str | None
    video_resolution: str | None
    video_codec: str | None
    file_size: int | None


@dataclass(frozen=True, slots=True)
class CumulativeRow:
    day: date
    metrics: MetricVector


def item_contribution(item: ItemRecord, *, require_size: bool = True) -> MetricVector | None:
    size = item.file_size or 0
    if size < 0:
        size = 0
    if require_size and size <= 0:
        return None
    delta = MetricVector(item_count=1, total_size=size)
    for name in (
        _MEDIA_FIELD[classify_media_type(item.media_type)],
        _RESOLUTION_FIELD[classify_resolution(item.video_resolution)],
        _CODEC_FIELD[classify_codec(item.video_codec)],
    ):
        setattr(delta, name, 1)
    return delta


class DailyDeltaAccumulator:
    """Folds items into per-creation-day metric deltas."""

    def __init__(self, *, require_size: bool = True):
        self._require_size = require_size
        self._deltas: dict[date, MetricVector] = {}
        self.counted = 0
        self.ignored = 0

    def add(self, item: ItemRecord) -> bool:
        contribution = item_contribution(item, require_size=self._require_size)
        if contribution is None:
            self.ignored += 1
            return False
        bucket = self._deltas.get(item.created_day)
        if bucket is None:
            self._deltas[item.created_day] = contribution
        else:
            bucket.add(contribution)
        self.counted += 1
        return True

    def add_many(self, items: Iterable[ItemRecord]) -> None:
        for item in items:
            self.add(item)

    @property
    def first_day(self) -> date | None:
        return min(self._deltas) if self._deltas else None

    @property
    def deltas(self) -> Mapping[date, MetricVector]:
        return self._deltas


def cumulative_series(
    deltas: Mapping[date, MetricVector],
    *,
    end_day: date,
    require_size: bool = True,
) -> Iterator[CumulativeRow]:
    """Yield one running-total row per day from the first delta through ``end_day``.

    Days without additions carry the previous total forward. Leading days whose
    total has no items (or, with ``require_size``, no bytes) are not emitted.
    Deltas dated after ``end_day`` are ignored.
    """
    if not deltas:
        return
    day = min(deltas)
    running = MetricVector()
    one_day = timedelta(days=1)
    while day <= end_day:
        delta = deltas.get(day)
        if delta is not None:
            running.add(delta)
        if running.item_count > 0 and (running.total_size > 0 or not require_size):
            yield CumulativeRow(day=day, metrics=running.copy())
        day += one_day

