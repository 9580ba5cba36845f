from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, cast

from fluxfilter.repositories.response_cache_repository import (
    DEFAULT_ARTIFACT_TTL_SECONDS,
    ResponseCacheRepository,
)
from fluxfilter.services.bilibili_dispatcher import BilibiliDispatcher
from fluxfilter.services.bilibili_errors import (
    NO_ARTIFACT,
    MalformedResponseError,
    NoArtifactAvailable,
    UpstreamBusinessError,
)


@dataclass(frozen=True)
class UploaderProfile:
    mid: int
    display_name: str
    avatar_url: str
    bio: str


@dataclass(frozen=True)
class VideoStats:
    view: int = 0
    danmaku: int = 0


@dataclass(frozen=True)
class BilibiliVideo:
    aid: int
    bvid: str
    title: str
    cover_url: str
    description: str
    duration_seconds: int
    published_at: int
    stats: VideoStats


@dataclass(frozen=True)
class VideoIdentity:
    bvid: str
    aid: int
    cid: int
    owner_mid: int
    title: str


@dataclass(frozen=True)
class OutlinePoint:
    timestamp: int
    content: str


@dataclass(frozen=True)
class OutlineSection:
    title: str
    timestamp: int
    points: tuple[OutlinePoint, ...] = ()


@dataclass(frozen=True)
class VideoSummary:
    bvid: str
    summary: str
    outline: tuple[OutlineSection, ...] = ()


@dataclass(frozen=True)
class SubtitleSegment:
    start: float
    end: float
    content: str


@dataclass(frozen=True)
class SubtitleTrack:
    bvid: str
    language: str
    language_label: str
    segments: tuple[SubtitleSegment, ...]

    @property
    def full_text(self) -> str:
        return "\n".join(segment.content for segment in self.segments)


LOGGER = logging.getLogger("fluxfilter.bilibili.service")

PROFILE_PATH = "/x/space/wbi/acc/info"
DYNAMIC_FEED_PATH = "/x/polymer/web-dynamic/v1/feed/space"
VIDEO_VIEW_PATH = "/x/web-interface/view"
SUMMARY_PATH = "/x/web-interface/view/conclusion/get"
PLAYER_PATH = "/x/player/wbi/v2"

VIDEO_DYNAMIC_TYPE = "DYNAMIC_TYPE_AV"
DEFAULT_PAGE_SIZE = 30
MAX_PAGE_SIZE = 50
SUMMARY_CACHE_PREFIX = "bilibili:summary:"
SUBTITLES_CACHE_PREFIX = "bilibili:subtitles:"
DEFAULT_SUBTITLE_LANGUAGES: tuple[str, ...] = ("zh-CN", "zh-Hans", "ai-zh")
# Inner summary statuses: -1 means the video is not supported, 1 means nothing was recognized.
SUMMARY_UNAVAILABLE_CODES: frozenset[int] = frozenset({-1, 1})

COUNT_MULTIPLIERS: tuple[tuple[str, int], ...] = (
    ("亿", 100_000_000),
    ("万", 10_000),
)
_LEADING_NUMBER_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)")
_LEADING_INTEGER_PATTERN = re.compile(r"^\s*(\d+)")


class BilibiliService:
    def __init__(
        self,
        dispatcher: BilibiliDispatcher,
        *,
        cache_repository: ResponseCacheRepository | None = None,
        artifact_cache_ttl_seconds: int = DEFAULT_ARTIFACT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._dispatcher = dispatcher
        self._cache_repository = cache_repository
        self._artifact_cache_ttl_seconds = max(0, artifact_cache_ttl_seconds)
        self._clock = clock

    def get_uploader_profile(self, mid: int) -> UploaderProfile:
        envelope = self._dispatcher.dispatch(PROFILE_PATH, {"mid": mid}, signed=True)
        data = _require_dict(envelope.data, what="uploader profile")
        return UploaderProfile(
            mid=_to_int(data.get("mid"), default=mid),
            display_name=_to_str(data.get("name")),
            avatar_url=normalize_cover_url(_to_str(data.get("face"))),
            bio=_to_str(data.get("sign")),
        )

    def list_recent_videos(
        self,
        mid: int,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
        published_after: int | None = None,
    ) -> list[BilibiliVideo]:
        normalized_page_size = max(1, min(MAX_PAGE_SIZE, page_size))
        envelope = self._dispatcher.dispatch(DYNAMIC_FEED_PATH, {"host_mid": mid})
        data = _as_dict(envelope.data)
        items = data.get("items")
        if not isinstance(items, list):
            return []

        videos: list[BilibiliVideo] = []
        skipped = 0
        for raw_item in cast(list[object], items):
            video = self._video_from_feed_item(raw_item)
            if video is None:
                skipped += 1
                continue
            if published_after is not None and video.published_at < published_after:
                continue
            videos.append(video)
            if len(videos) >= normalized_page_size:
                break

        LOGGER.info(
            "bilibili recent videos mid=%s count=%s skipped_non_video=%s",
            mid,
            len(videos),
            skipped,
        )
        return videos

    def resolve_video(self, bvid: str) -> VideoIdentity | None:
        envelope = self._dispatcher.dispatch(VIDEO_VIEW_PATH, {"bvid": bvid})
        data = _as_dict(envelope.data)
        aid = _to_int(data.get("aid"))
        cid = _to_int(data.get("cid"))
        if aid <= 0 or cid <= 0:
            LOGGER.info("bilibili video unresolved bvid=%s", bvid)
            return None

        owner = _as_dict(data.get("owner"))
        return VideoIdentity(
            bvid=_to_str(data.get("bvid")) or bvid,
            aid=aid,
            cid=cid,
            owner_mid=_to_int(owner.get("mid")),
            title=_to_str(data.get("title")),
        )

    def get_video_summary(self, bvid: str) -> VideoSummary | NoArtifactAvailable:
        identity = self.resolve_video(bvid)
        if identity is None:
            return NO_ARTIFACT

        cache_key = f"{SUMMARY_CACHE_PREFIX}{bvid}"
        cache_identity = f"{identity.aid}:{identity.cid}"
        if self._cache_repository is not None:
            entry = self._cache_repository.get(cache_key, cache_identity)
            cached_summary = _decode_summary(entry.value) if entry is not None else None
            if cached_summary is not None:
                LOGGER.info("bilibili summary cache_hit bvid=%s", bvid)
                return cached_summary

        envelope = self._dispatcher.dispatch(
            SUMMARY_PATH,
            {"bvid": bvid, "cid": identity.cid, "up_mid": identity.owner_mid},
            signed=True,
        )
        summary = _parse_summary(bvid, envelope.data)
        if isinstance(summary, NoArtifactAvailable):
            LOGGER.info("bilibili summary unavailable bvid=%s", bvid)
            return summary

        if self._cache_repository is not None:
            self._cache_repository.put(
                cache_key,
                _encode_summary(summary),
                identity=cache_identity,
                ttl_seconds=self._artifact_cache_ttl_seconds,
            )
            LOGGER.info("bilibili summary cache_store bvid=%s", bvid)
        return summary

    def get_video_subtitles(
        self,
        bvid: str,
        *,
        preferred_languages: Sequence[str] = DEFAULT_SUBTITLE_LANGUAGES,
    ) -> SubtitleTrack | NoArtifactAvailable:
        identity = self.resolve_video(bvid)
        if identity is None:
            return NO_ARTIFACT

        cache_key = f"{SUBTITLES_CACHE_PREFIX}{bvid}"
        cache_identity = f"{identity.aid}:{identity.cid}:{','.join(preferred_languages)}"
        if self._cache_repository is not None:
            entry = self._cache_repository.get(cache_key, cache_identity)
            cached_track = _decode_subtitle_track(entry.value) if entry is not None else None
            if cached_track is not None:
                LOGGER.info("bilibili subtitles cache_hit bvid=%s", bvid)
                return cached_track

        envelope = self._dispatcher.dispatch(
            PLAYER_PATH,
            {"aid": identity.aid, "cid": identity.cid},
            signed=True,
        )
        track_info = _select_subtitle_track(envelope.data, preferred_languages)
        if track_info is None:
            LOGGER.info("bilibili subtitles unavailable bvid=%s", bvid)
            return NO_ARTIFACT

        language, language_label, subtitle_url = track_info
        body = self._dispatcher.fetch_json(subtitle_url)
        track = SubtitleTrack(
            bvid=bvid,
            language=language,
            language_label=language_label,
            segments=_parse_subtitle_body(body),
        )
        if not track.segments:
            LOGGER.info("bilibili subtitles empty bvid=%s language=%s", bvid, language)
            return NO_ARTIFACT

        if self._cache_repository is not None:
            self._cache_repository.put(
                cache_key,
                _encode_subtitle_track(track),
                identity=cache_identity,
                ttl_seconds=self._artifact_cache_ttl_seconds,
            )
            LOGGER.info("bilibili subtitles cache_store bvid=%s language=%s", bvid, language)
        return track

    def _video_from_feed_item(self, raw_item: object) -> BilibiliVideo | None:
        item = _as_dict(raw_item)
        if item.get("type") != VIDEO_DYNAMIC_TYPE:
            return None
        modules = _as_dict(item.get("modules"))
        major = _as_dict(_as_dict(modules.get("module_dynamic")).get("major"))
        archive = _as_dict(major.get("archive"))
        if not archive:
            return None

        stat = _as_dict(archive.get("stat"))
        published_at = _to_int(_as_dict(modules.get("module_author")).get("pub_ts"))
        return BilibiliVideo(
            aid=_to_int(archive.get("aid")),
            bvid=_to_str(archive.get("bvid")),
            title=_to_str(archive.get("title")),
            cover_url=normalize_cover_url(_to_str(archive.get("cover"))),
            description=_to_str(archive.get("desc")),
            duration_seconds=parse_duration(archive.get("duration_text")),
            published_at=published_at or int(self._clock()),
            stats=VideoStats(
                view=parse_count(stat.get("play")),
                danmaku=parse_count(stat.get("danmaku")),
            ),
        )


def parse_duration(value: object) -> int:
    """Parse `"MM:SS"` or `"HH:MM:SS"` into seconds; anything else yields 0."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if not isinstance(value, str) or not value.strip():
        return 0

    parts = value.strip().split(":")
    if not all(part.strip().isdigit() for part in parts):
        return 0
    numbers = [int(part) for part in parts]
    if len(numbers) == 2:
        return numbers[0] * 60 + numbers[1]
    if len(numbers) == 3:
        return numbers[0] * 3600 + numbers[1] * 60 + numbers[2]
    return 0


def parse_count(value: object) -> int:
    """Parse localized counts such as `"1.2万"` (x10^4) or `"3亿"` (x10^8)."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if not isinstance(value, str) or not value.strip():
        return 0

    for suffix, multiplier in COUNT_MULTIPLIERS:
        if suffix in value:
            match = _LEADING_NUMBER_PATTERN.match(value)
            if match is None:
                return 0
            try:
                return int(Decimal(match.group(1)) * multiplier)
            except InvalidOperation:
                return 0

    match = _LEADING_INTEGER_PATTERN.match(value)
    if match is None:
        return 0
    return int(match.group(1))


def format_duration(seconds: int) -> str:
    minutes, remainder = divmod(max(0, seconds), 60)
    return f"{minutes:02d}:{remainder:02d}"


def format_view_count(count: int) -> str:
    if count >= 100_000_000:
        return f"{count / 100_000_000:.1f}亿"
    if count >= 10_000:
        return f"{count / 10_000:.1f}万"
    return str(count)


def format_timestamp(seconds: float) -> str:
    total = max(0, int(seconds))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def normalize_cover_url(url: str) -> str:
    if url.startswith("//"):
        return f"https:{url}"
    if url and not url.startswith("http"):
        return f"https://{url}"
    return url


def video_url(bvid: str) -> str:
    return f"https://www.bilibili.com/video/{bvid}"


def app_deep_link(bvid: str) -> str:
    return f"bilibili://video/{bvid}"


def to_video_record(video: BilibiliVideo, mid: int) -> dict[str, Any]:
    return {
        "bvid": video.bvid,
        "aid": video.aid,
        "mid": mid,
        "title": video.title,
        "pic": normalize_cover_url(video.cover_url),
        "description": video.description,
        "duration": video.duration_seconds,
        "view_count": video.stats.view,
        "danmaku_count": video.stats.danmaku,
        "reply_count": 0,
        "favorite_count": 0,
        "coin_count": 0,
        "share_count": 0,
        "like_count": 0,
        "pubdate": datetime.fromtimestamp(video.published_at, UTC).isoformat(),
    }


def _parse_summary(bvid: str, payload: Any) -> VideoSummary | NoArtifactAvailable:
    data = _require_dict(payload, what="summary")
    inner_code = data.get("code")
    if isinstance(inner_code, int) and not isinstance(inner_code, bool):
        if inner_code in SUMMARY_UNAVAILABLE_CODES:
            return NO_ARTIFACT
        if inner_code != 0:
            raise UpstreamBusinessError(inner_code, "summary request rejected")

    model_result = _as_dict(data.get("model_result"))
    if _to_int(model_result.get("result_type")) == 0:
        return NO_ARTIFACT

    summary_text = _to_str(model_result.get("summary")).strip()
    outline = _parse_outline(model_result.get("outline"))
    if not summary_text and not outline:
        return NO_ARTIFACT
    return VideoSummary(bvid=bvid, summary=summary_text, outline=outline)


def _parse_outline(raw_outline: object) -> tuple[OutlineSection, ...]:
    if not isinstance(raw_outline, list):
        return ()

    sections: list[OutlineSection] = []
    for raw_section in cast(list[object], raw_outline):
        section = _as_dict(raw_section)
        title = _to_str(section.get("title")).strip()
        if not title:
            continue
        points: list[OutlinePoint] = []
        raw_points = section.get("part_outline", section.get("points"))
        if isinstance(raw_points, list):
            for raw_point in cast(list[object], raw_points):
                point = _as_dict(raw_point)
                content = _to_str(point.get("content")).strip()
                if content:
                    points.append(
                        OutlinePoint(timestamp=_to_int(point.get("timestamp")), content=content)
                    )
        sections.append(
            OutlineSection(
                title=title,
                timestamp=_to_int(section.get("timestamp")),
                points=tuple(points),
            )
        )
    return tuple(sections)


def _encode_summary(summary: VideoSummary) -> dict[str, object]:
    return {
        "bvid": summary.bvid,
        "summary": summary.summary,
        "outline": [
            {
                "title": section.title,
                "timestamp": section.timestamp,
                "points": [
                    {"timestamp": point.timestamp, "content": point.content}
                    for point in section.points
                ],
            }
            for section in summary.outline
        ],
    }


def _decode_summary(raw_value: object) -> VideoSummary | None:
    value = _as_dict(raw_value)
    bvid = value.get("bvid")
    summary = value.get("summary")
    if not isinstance(bvid, str) or not isinstance(summary, str):
        return None
    return VideoSummary(bvid=bvid, summary=summary, outline=_parse_outline(value.get("outline")))


def _select_subtitle_track(
    payload: Any,
    preferred_languages: Sequence[str],
) -> tuple[str, str, str] | None:
    data = _as_dict(payload)
    subtitles = _as_dict(data.get("subtitle")).get("subtitles")
    if not isinstance(subtitles, list):
        return None

    candidates: list[tuple[str, str, str]] = []
    for raw_track in cast(list[object], subtitles):
        track = _as_dict(raw_track)
        subtitle_url = _to_str(track.get("subtitle_url")).strip()
        if not subtitle_url:
            continue
        candidates.append(
            (_to_str(track.get("lan")), _to_str(track.get("lan_doc")), subtitle_url)
        )
    if not candidates:
        return None

    for language in preferred_languages:
        for candidate in candidates:
            if candidate[0] == language:
                return candidate
    return candidates[0]


def _parse_subtitle_body(payload: object) -> tuple[SubtitleSegment, ...]:
    if not isinstance(payload, dict):
        raise MalformedResponseError("Subtitle document is not a JSON object.")
    body = cast(dict[str, object], payload).get("body")
    if not isinstance(body, list):
        raise MalformedResponseError("Subtitle document has no body list.")
    return _segments_from_list(cast(list[object], body))


def _segments_from_list(raw_segments: list[object]) -> tuple[SubtitleSegment, ...]:
    segments: list[SubtitleSegment] = []
    for raw_segment in raw_segments:
        segment = _as_dict(raw_segment)
        content = segment.get("content")
        start = segment.get("from")
        end = segment.get("to")
        if not isinstance(content, str):
            continue
        if not _is_number(start) or not _is_number(end):
            continue
        segments.append(
            SubtitleSegment(start=float(cast(float, start)), end=float(cast(float, end)), content=content)
        )
    return tuple(segments)


def _encode_subtitle_track(track: SubtitleTrack) -> dict[str, object]:
    return {
        "bvid": track.bvid,
        "language": track.language,
        "language_label": track.language_label,
        "body": [
            {"from": segment.start, "to": segment.end, "content": segment.content}
            for segment in track.segments
        ],
    }


def _decode_subtitle_track(raw_value: object) -> SubtitleTrack | None:
    value = _as_dict(raw_value)
    bvid = value.get("bvid")
    language = value.get("language")
    language_label = value.get("language_label")
    body = value.get("body")
    if not isinstance(bvid, str) or not isinstance(language, str):
        return None
    if not isinstance(language_label, str) or not isinstance(body, list):
        return None
    segments = _segments_from_list(cast(list[object], body))
    if not segments:
        return None
    return SubtitleTrack(
        bvid=bvid,
        language=language,
        language_label=language_label,
        segments=segments,
    )


def _require_dict(value: Any, *, what: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise MalformedResponseError(f"Bilibili {what} response has no data object.")
    return cast(dict[str, Any], value)


def _as_dict(value: object) -> dict[str, Any]:
    if isinstance(value, dict):
        return cast(dict[str, Any], value)
    return {}


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _to_int(value: object, *, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return default
    return default


def _to_str(value: object) -> str:
    if isinstance(value, str):
        return value
    return ""
