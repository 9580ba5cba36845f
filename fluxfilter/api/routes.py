from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Annotated, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Query
from structlog.contextvars import bind_contextvars, reset_contextvars

from fluxfilter.dependencies import get_bilibili_service
from fluxfilter.models.bilibili_contracts import (
    OutlinePointResponse,
    OutlineSectionResponse,
    SubtitleSegmentResponse,
    UploaderProfileResponse,
    VideoIdentityResponse,
    VideoListResponse,
    VideoResponse,
    VideoStatsResponse,
    VideoSubtitlesResponse,
    VideoSummaryResponse,
)
from fluxfilter.services.bilibili_errors import (
    AuthRequiredError,
    BilibiliClientError,
    MalformedResponseError,
    NoArtifactAvailable,
    TransportError,
    UpstreamBusinessError,
)
from fluxfilter.services.bilibili_service import (
    DEFAULT_PAGE_SIZE,
    DEFAULT_SUBTITLE_LANGUAGES,
    MAX_PAGE_SIZE,
    BilibiliService,
    BilibiliVideo,
    video_url,
)

LOGGER = logging.getLogger("fluxfilter.api")

router = APIRouter(prefix="/bilibili", tags=["bilibili"])

_T = TypeVar("_T")


@contextmanager
def _bound_operation(operation: str, **context: object) -> Iterator[None]:
    context_tokens = bind_contextvars(bilibili_operation=operation, **context)
    try:
        yield
    finally:
        reset_contextvars(**context_tokens)


def _call_upstream(operation: str, call: Callable[[], _T], **context: object) -> _T:
    with _bound_operation(operation, **context):
        try:
            return call()
        except AuthRequiredError as exc:
            raise HTTPException(
                status_code=401,
                detail={"error": "auth_required", "code": exc.code, "message": exc.upstream_message},
            ) from exc
        except UpstreamBusinessError as exc:
            raise HTTPException(
                status_code=502,
                detail={"error": "upstream_error", "code": exc.code, "message": exc.upstream_message},
            ) from exc
        except MalformedResponseError as exc:
            raise HTTPException(
                status_code=502,
                detail={"error": "malformed_response", "message": str(exc)},
            ) from exc
        except TransportError as exc:
            raise HTTPException(
                status_code=503,
                detail={"error": "upstream_unavailable", "message": str(exc)},
            ) from exc
        except BilibiliClientError as exc:
            LOGGER.exception("bilibili unexpected client error operation=%s", operation)
            raise HTTPException(status_code=502, detail={"error": "upstream_error"}) from exc


def _video_response(video: BilibiliVideo) -> VideoResponse:
    return VideoResponse(
        aid=video.aid,
        bvid=video.bvid,
        title=video.title,
        cover_url=video.cover_url,
        description=video.description,
        duration_seconds=video.duration_seconds,
        published_at=video.published_at,
        stats=VideoStatsResponse(view=video.stats.view, danmaku=video.stats.danmaku),
        url=video_url(video.bvid),
    )


@router.get(
    "/uploaders/{mid}",
    response_model=UploaderProfileResponse,
    operation_id="bilibili_uploader_profile",
)
def get_uploader_profile(
    mid: int,
    service: Annotated[BilibiliService, Depends(get_bilibili_service)],
) -> UploaderProfileResponse:
    profile = _call_upstream("uploader.profile", lambda: service.get_uploader_profile(mid), mid=mid)
    return UploaderProfileResponse(
        mid=profile.mid,
        display_name=profile.display_name,
        avatar_url=profile.avatar_url,
        bio=profile.bio,
    )


@router.get(
    "/uploaders/{mid}/videos",
    response_model=VideoListResponse,
    operation_id="bilibili_uploader_recent_videos",
)
def list_recent_videos(
    mid: int,
    service: Annotated[BilibiliService, Depends(get_bilibili_service)],
    page_size: Annotated[int, Query(ge=1, le=MAX_PAGE_SIZE)] = DEFAULT_PAGE_SIZE,
    published_after: Annotated[int | None, Query(ge=0)] = None,
) -> VideoListResponse:
    videos = _call_upstream(
        "uploader.recent_videos",
        lambda: service.list_recent_videos(
            mid,
            page_size=page_size,
            published_after=published_after,
        ),
        mid=mid,
    )
    return VideoListResponse(mid=mid, videos=[_video_response(video) for video in videos])


@router.get(
    "/videos/{bvid}",
    response_model=VideoIdentityResponse,
    operation_id="bilibili_resolve_video",
)
def resolve_video(
    bvid: str,
    service: Annotated[BilibiliService, Depends(get_bilibili_service)],
) -> VideoIdentityResponse:
    identity = _call_upstream("video.resolve", lambda: service.resolve_video(bvid), bvid=bvid)
    if identity is None:
        raise HTTPException(status_code=404, detail=f"Video not found: {bvid}")
    return VideoIdentityResponse(
        bvid=identity.bvid,
        aid=identity.aid,
        cid=identity.cid,
        owner_mid=identity.owner_mid,
        title=identity.title,
    )


@router.get(
    "/videos/{bvid}/summary",
    response_model=VideoSummaryResponse,
    operation_id="bilibili_video_summary",
)
def get_video_summary(
    bvid: str,
    service: Annotated[BilibiliService, Depends(get_bilibili_service)],
) -> VideoSummaryResponse:
    summary = _call_upstream("video.summary", lambda: service.get_video_summary(bvid), bvid=bvid)
    if isinstance(summary, NoArtifactAvailable):
        return VideoSummaryResponse(bvid=bvid, available=False)
    return VideoSummaryResponse(
        bvid=bvid,
        available=True,
        summary=summary.summary,
        outline=[
            OutlineSectionResponse(
                title=section.title,
                timestamp=section.timestamp,
                points=[
                    OutlinePointResponse(timestamp=point.timestamp, content=point.content)
                    for point in section.points
                ],
            )
            for section in summary.outline
        ],
    )


@router.get(
    "/videos/{bvid}/subtitles",
    response_model=VideoSubtitlesResponse,
    response_model_by_alias=True,
    operation_id="bilibili_video_subtitles",
)
def get_video_subtitles(
    bvid: str,
    service: Annotated[BilibiliService, Depends(get_bilibili_service)],
    lang: Annotated[list[str] | None, Query()] = None,
) -> VideoSubtitlesResponse:
    preferred_languages = tuple(lang) if lang else DEFAULT_SUBTITLE_LANGUAGES
    track = _call_upstream(
        "video.subtitles",
        lambda: service.get_video_subtitles(bvid, preferred_languages=preferred_languages),
        bvid=bvid,
    )
    if isinstance(track, NoArtifactAvailable):
        return VideoSubtitlesResponse(bvid=bvid, available=False)
    return VideoSubtitlesResponse(
        bvid=bvid,
        available=True,
        language=track.language,
        language_label=track.language_label,
        segments=[
            SubtitleSegmentResponse(start=segment.start, end=segment.end, content=segment.content)
            for segment in track.segments
        ],
    )
