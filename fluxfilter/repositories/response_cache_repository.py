from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import cast

from fluxfilter.repositories.common import parse_utc_timestamp, utc_now
from fluxfilter.repositories.database import Database

DEFAULT_ARTIFACT_TTL_SECONDS = 86_400

LOGGER = logging.getLogger("fluxfilter.cache")


@dataclass(frozen=True)
class CacheEntry:
    key: str
    identity: str
    value: object
    cached_at: datetime
    ttl_seconds: int


class ResponseCacheRepository:
    """Durable TTL-bounded key/value store for expensive upstream artifacts.

    Every entry carries an identity string (for example the canonical content
    id) next to its key. Lookups must present the same identity; a mismatch is
    a miss, so a reused or colliding key never serves another item's data.
    """

    def __init__(self, db: Database, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._db = db
        self._clock = clock

    def get(self, key: str, identity: str) -> CacheEntry | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT cache_key, identity, value_json, cached_at, ttl_seconds
                FROM response_cache
                WHERE cache_key = ?
                """,
                (key,),
            ).fetchone()

        if row is None:
            return None

        stored_identity = str(row["identity"])
        if stored_identity != identity:
            LOGGER.info(
                "cache identity_mismatch key=%s expected=%s stored=%s",
                key,
                identity,
                stored_identity,
            )
            return None

        cached_at = parse_utc_timestamp(row["cached_at"])
        if cached_at is None:
            return None

        ttl_seconds = max(0, int(row["ttl_seconds"]))
        if self._clock() - cached_at > timedelta(seconds=ttl_seconds):
            return None

        try:
            value = cast(object, json.loads(str(row["value_json"])))
        except json.JSONDecodeError:
            LOGGER.warning("cache undecodable_value key=%s", key)
            return None

        return CacheEntry(
            key=str(row["cache_key"]),
            identity=stored_identity,
            value=value,
            cached_at=cached_at,
            ttl_seconds=ttl_seconds,
        )

    def put(
        self,
        key: str,
        value: object,
        *,
        identity: str,
        ttl_seconds: int = DEFAULT_ARTIFACT_TTL_SECONDS,
    ) -> None:
        now_iso = self._clock().isoformat()
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO response_cache
                (cache_key, identity, value_json, cached_at, ttl_seconds)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(cache_key) DO UPDATE SET
                    identity = excluded.identity,
                    value_json = excluded.value_json,
                    cached_at = excluded.cached_at,
                    ttl_seconds = excluded.ttl_seconds
                """,
                (
                    key,
                    identity,
                    json.dumps(value, ensure_ascii=False, sort_keys=True),
                    now_iso,
                    max(0, ttl_seconds),
                ),
            )

    def sweep(self, prefix: str) -> int:
        # substr() comparison keeps `%` and `_` in prefixes literal.
        with self._db.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM response_cache WHERE substr(cache_key, 1, ?) = ?",
                (len(prefix), prefix),
            )
            removed = max(0, cursor.rowcount)

        LOGGER.info("cache sweep prefix=%s removed=%s", prefix, removed)
        return removed

    def count_by_namespace(self) -> dict[str, int]:
        with self._db.connection() as conn:
            rows = conn.execute("SELECT cache_key FROM response_cache").fetchall()

        counts: dict[str, int] = {}
        for row in rows:
            namespace = _namespace_of(str(row["cache_key"]))
            counts[namespace] = counts.get(namespace, 0) + 1
        return dict(sorted(counts.items()))


def _namespace_of(key: str) -> str:
    head, separator, _ = key.rpartition(":")
    if not separator:
        return key
    return f"{head}:"
