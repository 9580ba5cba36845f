from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictInt, model_validator


class BilibiliEnvelope(BaseModel):
    """`{code, message, data}` wrapper returned by every Bilibili web API endpoint."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    code: StrictInt
    message: str = ""
    data: Any = None

    @model_validator(mode="before")
    @classmethod
    def _accept_msg_alias(cls, value: Any) -> Any:
        # A few endpoints answer with `msg` instead of `message`.
        if isinstance(value, dict) and "message" not in value and "msg" in value:
            patched = dict(value)
            patched["message"] = patched.pop("msg")
            return patched
        return value

    @property
    def ok(self) -> bool:
        return self.code == 0


class UploaderProfileResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    mid: int
    display_name: str
    avatar_url: str
    bio: str


class VideoStatsResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    view: int = 0
    danmaku: int = 0


class VideoResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    aid: int
    bvid: str
    title: str
    cover_url: str
    description: str
    duration_seconds: int
    published_at: int
    stats: VideoStatsResponse
    url: str


class VideoListResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    mid: int
    videos: list[VideoResponse] = Field(default_factory=list)


class VideoIdentityResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    bvid: str
    aid: int
    cid: int
    owner_mid: int
    title: str


class OutlinePointResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    timestamp: int
    content: str


class OutlineSectionResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str
    timestamp: int
    points: list[OutlinePointResponse] = Field(default_factory=list)


class VideoSummaryResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    bvid: str
    available: bool
    summary: str | None = None
    outline: list[OutlineSectionResponse] = Field(default_factory=list)


class SubtitleSegmentResponse(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    start: float = Field(alias="from")
    end: float = Field(alias="to")
    content: str


class VideoSubtitlesResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    bvid: str
    available: bool
    language: str | None = None
    language_label: str | None = None
    segments: list[SubtitleSegmentResponse] = Field(default_factory=list)
