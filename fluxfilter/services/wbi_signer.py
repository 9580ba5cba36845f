"""WBI request signing for the Bilibili web API.

Signed endpoints expect the sorted query string plus a `w_rid` field equal to
`md5(query + mixin_key)`. The mixin key is derived from two key fragments the
upstream publishes through its session-info endpoint; they rotate, so the pair
is cached for a limited time only.
"""

from __future__ import annotations

import hashlib
import logging
import re
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from threading import Lock
from typing import Any
from urllib.parse import quote

from fluxfilter.services.bilibili_errors import MalformedResponseError

SESSION_INFO_PATH = "/x/web-interface/nav"
SIGNING_KEY_LENGTH = 32
DEFAULT_SIGNING_KEYS_TTL_SECONDS = 3_600

MIXIN_KEY_ENC_TAB: tuple[int, ...] = (
    46, 47, 18, 2, 53, 8, 23, 32, 15, 50, 10, 31, 58, 3, 45, 35,
    27, 43, 5, 49, 33, 9, 42, 19, 29, 28, 14, 39, 12, 38, 41, 13,
    37, 48, 7, 16, 24, 55, 40, 61, 26, 17, 0, 1, 60, 51, 30, 4,
    22, 25, 54, 21, 56, 59, 6, 63, 57, 62, 11, 36, 20, 34, 44, 52,
)  # fmt: skip

# Literal fields the upstream expects on every signed web request.
ANTI_AUTOMATION_FIELDS: Mapping[str, str | int] = {
    "web_location": 1550101,
    "dm_img_list": "[]",
    "dm_img_str": "V2ViR0wgMS4wIChPcGVuR0wgRVMgMi4wIENocm9taXVtKQ",
    "dm_cover_img_str": (
        "QU5HTEUgKEludGVsLCBJbnRlbChSKSBVSEQgR3JhcGhpY3MgNjMwICgweDAwMDAzRTky"
        "KSBEaXJlY3QzRDExIHZzXzVfMCBwc181XzAsIEQzRDExKQ"
    ),
}

_STRIPPED_VALUE_PATTERN = re.compile(r"[!'()*]")
# Same unreserved set as JavaScript's encodeURIComponent.
_URI_COMPONENT_SAFE = "!~*'()"

LOGGER = logging.getLogger("fluxfilter.bilibili.wbi")

QueryScalar = str | int | float | bool


@dataclass(frozen=True)
class SigningKeyPair:
    img_key: str
    sub_key: str
    fetched_at: float

    @property
    def mixin_key(self) -> str:
        return derive_mixin_key(self.img_key, self.sub_key)


def derive_mixin_key(img_key: str, sub_key: str) -> str:
    if len(img_key) != SIGNING_KEY_LENGTH or len(sub_key) != SIGNING_KEY_LENGTH:
        raise ValueError(
            f"signing keys must be {SIGNING_KEY_LENGTH} characters each "
            f"(got {len(img_key)} and {len(sub_key)})"
        )
    combined = img_key + sub_key
    return "".join(combined[index] for index in MIXIN_KEY_ENC_TAB)[:SIGNING_KEY_LENGTH]


def extract_key_from_url(url: str) -> str:
    return url[url.rfind("/") + 1 : url.rfind(".")]


def encode_uri_component(value: str) -> str:
    return quote(value, safe=_URI_COMPONENT_SAFE)


def build_signed_query(
    params: Mapping[str, QueryScalar],
    mixin_key: str,
    *,
    wts: int,
) -> str:
    merged: dict[str, QueryScalar] = dict(params)
    merged["wts"] = wts
    merged.update(ANTI_AUTOMATION_FIELDS)

    pairs: list[str] = []
    for key in sorted(merged):
        value = _STRIPPED_VALUE_PATTERN.sub("", _stringify(merged[key]))
        pairs.append(f"{encode_uri_component(key)}={encode_uri_component(value)}")
    query = "&".join(pairs)

    w_rid = hashlib.md5((query + mixin_key).encode("utf-8")).hexdigest()
    return f"{query}&w_rid={w_rid}"


def _stringify(value: QueryScalar) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class WbiSigner:
    def __init__(
        self,
        key_source: Callable[[], Any],
        *,
        ttl_seconds: int = DEFAULT_SIGNING_KEYS_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._key_source = key_source
        self._ttl_seconds = max(1, ttl_seconds)
        self._clock = clock
        self._lock = Lock()
        self._keys: SigningKeyPair | None = None

    def get_signing_keys(self) -> SigningKeyPair:
        with self._lock:
            cached = self._keys
            if cached is not None and self._clock() - cached.fetched_at < self._ttl_seconds:
                return cached

            img_url, sub_url = _extract_wbi_urls(self._key_source())
            keys = SigningKeyPair(
                img_key=extract_key_from_url(img_url),
                sub_key=extract_key_from_url(sub_url),
                fetched_at=self._clock(),
            )
            if len(keys.img_key) != SIGNING_KEY_LENGTH or len(keys.sub_key) != SIGNING_KEY_LENGTH:
                raise MalformedResponseError(
                    "Session info returned signing keys of unexpected length."
                )
            self._keys = keys
            LOGGER.info("wbi signing keys refreshed")
            return keys

    def invalidate(self) -> None:
        with self._lock:
            self._keys = None

    def sign(self, params: Mapping[str, QueryScalar], *, wts: int | None = None) -> str:
        keys = self.get_signing_keys()
        timestamp = wts if wts is not None else int(round(self._clock()))
        return build_signed_query(params, keys.mixin_key, wts=timestamp)


def _extract_wbi_urls(payload: Any) -> tuple[str, str]:
    if not isinstance(payload, Mapping):
        raise MalformedResponseError("Session info response has no data object.")
    wbi_img = payload.get("wbi_img")
    if not isinstance(wbi_img, Mapping):
        raise MalformedResponseError("Session info response has no wbi_img object.")
    img_url = wbi_img.get("img_url")
    sub_url = wbi_img.get("sub_url")
    if not isinstance(img_url, str) or not isinstance(sub_url, str):
        raise MalformedResponseError("Session info response is missing signing key URLs.")
    return img_url, sub_url
