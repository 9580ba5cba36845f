from __future__ import annotations

from functools import lru_cache

from fluxfilter.config import AppSettings, load_settings
from fluxfilter.repositories.database import Database
from fluxfilter.repositories.response_cache_repository import ResponseCacheRepository
from fluxfilter.services.bilibili_dispatcher import BilibiliDispatcher
from fluxfilter.services.bilibili_service import BilibiliService
from fluxfilter.services.rate_gate import MinimumIntervalGate
from fluxfilter.telemetry import TelemetryClient, build_telemetry_client


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_database() -> Database:
    database = Database(get_settings().db_path)
    database.initialize()
    return database


@lru_cache(maxsize=1)
def get_rate_gate() -> MinimumIntervalGate:
    return MinimumIntervalGate(min_interval_seconds=get_settings().bilibili_min_interval_seconds)


@lru_cache(maxsize=1)
def get_dispatcher() -> BilibiliDispatcher:
    settings = get_settings()
    return BilibiliDispatcher(
        gate=get_rate_gate(),
        base_url=settings.bilibili_api_base_url,
        credential=settings.bilibili_credential,
        user_agent=settings.bilibili_user_agent,
        referer=settings.bilibili_referer,
        max_retries=settings.bilibili_max_retries,
        retry_base_delay_seconds=settings.bilibili_retry_base_delay_seconds,
        http_timeout_seconds=settings.bilibili_http_timeout_seconds,
        retryable_codes=settings.bilibili_retryable_codes,
        auth_required_codes=settings.bilibili_auth_required_codes,
        signing_keys_ttl_seconds=settings.bilibili_signing_keys_ttl_seconds,
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_bilibili_service() -> BilibiliService:
    settings = get_settings()
    return BilibiliService(
        get_dispatcher(),
        cache_repository=ResponseCacheRepository(get_database()),
        artifact_cache_ttl_seconds=settings.bilibili_artifact_cache_ttl_seconds,
    )


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


def reset_cached_dependencies() -> None:
    get_bilibili_service.cache_clear()
    get_dispatcher.cache_clear()
    get_rate_gate.cache_clear()
    get_database.cache_clear()
    get_telemetry.cache_clear()
    get_settings.cache_clear()
