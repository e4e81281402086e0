from __future__ import annotations

from enum import Enum


class ResolutionTier(str, Enum):
    UHD_4K = "4k"
    FHD_1080P = "1080p"
    HD_720P = "720p"
    SD = "sd"
    UNKNOWN = "unknown"


class CodecFamily(str, Enum):
    HEVC = "hevc"
    H264 = "h264"
    AV1 = "av1"
    OTHER = "other"


class MediaCategory(str, Enum):
    MOVIE = "movie"
    EPISODE = "episode"
    SEASON = "season"
    SHOW = "show"
    MUSIC = "music"
    OTHER = "other"


_RESOLUTION_LOOKUP: dict[str, ResolutionTier] = {
    "4k": ResolutionTier.UHD_4K,
    "2160": ResolutionTier.UHD_4K,
    "2160p": ResolutionTier.UHD_4K,
    "uhd": ResolutionTier.UHD_4K,
    "1080": ResolutionTier.FHD_1080P,
    "1080p": ResolutionTier.FHD_1080P,
    "fhd": ResolutionTier.FHD_1080P,
    "720": ResolutionTier.HD_720P,
    "720p": ResolutionTier.HD_720P,
    "hd": ResolutionTier.HD_720P,
}

_CODEC_LOOKUP: dict[str, CodecFamily] = {
    "hevc": CodecFamily.HEVC,
    "h265": CodecFamily.HEVC,
    "h.265": CodecFamily.HEVC,
    "x265": CodecFamily.HEVC,
    "hev1": CodecFamily.HEVC,
    "hvc1": CodecFamily.HEVC,
    "h264": CodecFamily.H264,
    "h.264": CodecFamily.H264,
    "avc": CodecFamily.H264,
    "avc1": CodecFamily.H264,
    "x264": CodecFamily.H264,
    "av1": CodecFamily.AV1,
    "av01": CodecFamily.AV1,
}

_MEDIA_LOOKUP: dict[str, MediaCategory] = {
    "movie": MediaCategory.MOVIE,
    "episode": MediaCategory.EPISODE,
    "season": MediaCategory.SEASON,
    "show": MediaCategory.SHOW,
    "artist": MediaCategory.MUSIC,
    "album": MediaCategory.MUSIC,
    "track": MediaCategory.MUSIC,
}


def _token(value: str | None) -> str:
    return (value or "").strip().lower()


def classify_resolution(value: str | None) -> ResolutionTier:
    token = _token(value)
    if not token:
        return ResolutionTier.UNKNOWN
    # Anything reported but not HD or better (480p, 576, "sd", ...) is SD.
    return _RESOLUTION_LOOKUP.get(token, ResolutionTier.SD)


def classify_codec(value: str | None) -> CodecFamily:
    return _CODEC_LOOKUP.get(_token(value), CodecFamily.OTHER)


def classify_media_type(value: str | None) -> MediaCategory:
    return _MEDIA_LOOKUP.get(_token(value), MediaCategory.OTHER)
