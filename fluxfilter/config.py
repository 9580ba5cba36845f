from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from fluxfilter.services.bilibili_dispatcher import DEFAULT_USER_AGENT

DEFAULT_DATA_DIR = ".fluxfilter"
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (
    ("db_path", Path("state.db")),
    ("log_dir", Path("logs")),
)
_PATH_FIELDS: tuple[str, ...] = (
    "data_dir",
    *(field_name for field_name, _ in _DATA_DIR_RELATIVE_DEFAULTS),
)
_BOOLEAN_COERCION_FIELDS: tuple[str, ...] = ("telemetry_enabled",)
_CODE_SET_FIELDS: tuple[str, ...] = (
    "bilibili_retryable_codes",
    "bilibili_auth_required_codes",
)


def _default_in_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _data_dir_default_note(relative_path: Path) -> str:
    return f"Defaults to `${{FLUXFILTER_DATA_DIR}}/{relative_path}` when not explicitly set."


def _resolve_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


def _parse_bool_with_default(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value == 1:
            return True
        if value == 0:
            return False
        return default
    if not isinstance(value, str):
        return default

    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _normalize_optional_text(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    if normalized:
        return normalized
    return None


def _parse_code_set(value: Any) -> tuple[int, ...]:
    # Accepts "-799,-352", "[-799, -352]" or an already parsed sequence.
    raw_items: list[object]
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.startswith("["):
            try:
                parsed = json.loads(stripped)
            except json.JSONDecodeError as exc:
                raise ValueError(f"invalid code list: {value}") from exc
            if not isinstance(parsed, list):
                raise ValueError(f"invalid code list: {value}")
            raw_items = list(parsed)
        else:
            raw_items = [item for item in stripped.split(",") if item.strip()]
    elif isinstance(value, (list, tuple, set, frozenset)):
        raw_items = list(value)
    else:
        raise ValueError("code list must be a string or a sequence of integers")

    codes: list[int] = []
    for item in raw_items:
        if isinstance(item, bool):
            raise ValueError("code list entries must be integers")
        try:
            code = int(str(item).strip())
        except ValueError as exc:
            raise ValueError(f"code list entries must be integers: {item!r}") from exc
        if code not in codes:
            codes.append(code)
    return tuple(codes)


class AppSettings(BaseSettings):
    """
    Canonical runtime configuration.

    Every option is read from `FLUXFILTER_*` environment variables (or `.env`).
    The retryable and auth-required code sets are empirical lists of upstream
    business codes; override them here when the upstream adds new ones.
    """

    model_config = SettingsConfigDict(
        env_prefix="FLUXFILTER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Core paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for local state and logs.",
    )
    db_path: Path = Field(
        default=_default_in_data_dir(Path("state.db")),
        description=f"SQLite database path. {_data_dir_default_note(Path('state.db'))}",
    )

    # Upstream endpoint and identity.
    bilibili_api_base_url: str = Field(
        default="https://api.bilibili.com",
        description="Base URL of the Bilibili web API.",
    )
    bilibili_credential: str | None = Field(
        default=None,
        description=(
            "Opaque credential (cookie string) attached to upstream requests. "
            "Anonymous mode is used when unset."
        ),
    )
    bilibili_user_agent: str = Field(
        default=DEFAULT_USER_AGENT,
        description="User-Agent sent with every upstream request.",
    )
    bilibili_referer: str = Field(
        default="https://www.bilibili.com",
        description="Referer sent with every upstream request.",
    )

    # Dispatcher pacing and retries.
    bilibili_min_interval_seconds: float = Field(
        default=0.5,
        ge=0.0,
        description="Minimum spacing between two outbound upstream requests.",
    )
    bilibili_max_retries: int = Field(
        default=2,
        ge=0,
        le=10,
        description="Retries after the first attempt for transient failures.",
    )
    bilibili_retry_base_delay_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="Base delay for exponential retry backoff (base * 2**attempt).",
    )
    bilibili_http_timeout_seconds: float = Field(
        default=10.0,
        gt=0.0,
        description="Socket timeout applied to each upstream HTTP request.",
    )
    bilibili_retryable_codes: Annotated[tuple[int, ...], NoDecode] = Field(
        default=(-799, -352, -503, -412),
        description="Business codes treated as transient (rate limited / server busy).",
    )
    bilibili_auth_required_codes: Annotated[tuple[int, ...], NoDecode] = Field(
        default=(-101, -111),
        description="Business codes meaning the credential is missing or rejected.",
    )

    # Signing and caching.
    bilibili_signing_keys_ttl_seconds: int = Field(
        default=3_600,
        ge=1,
        description="Lifetime of the in-memory WBI signing key pair.",
    )
    bilibili_artifact_cache_ttl_seconds: int = Field(
        default=86_400,
        ge=0,
        description="TTL for cached derived artifacts (summaries, subtitles).",
    )

    # Logging.
    log_dir: Path = Field(
        default=_default_in_data_dir(Path("logs")),
        description=f"Directory for log files. {_data_dir_default_note(Path('logs'))}",
    )
    log_level: str = Field(
        default="INFO",
        description="Console log level (stdout).",
    )

    # Telemetry.
    telemetry_enabled: bool = Field(
        default=True,
        description="Enable lightweight internal telemetry events.",
    )
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description=(
            "Telemetry sink backend. `log` emits structured telemetry locally; "
            "`none` disables sink output."
        ),
    )

    @field_validator("bilibili_api_base_url", mode="before")
    @classmethod
    def _normalize_base_url(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("FLUXFILTER_BILIBILI_API_BASE_URL must be a string.")
        normalized = value.strip().rstrip("/")
        if not normalized:
            raise ValueError("FLUXFILTER_BILIBILI_API_BASE_URL must not be empty.")
        return normalized

    @field_validator("bilibili_user_agent", "bilibili_referer", mode="before")
    @classmethod
    def _normalize_required_text(cls, value: Any, info: ValidationInfo) -> str:
        env_name = f"FLUXFILTER_{(info.field_name or '').upper()}"
        if not isinstance(value, str):
            raise ValueError(f"{env_name} must be a string.")
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{env_name} must not be empty.")
        return normalized

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _normalize_telemetry_sink(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("FLUXFILTER_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("FLUXFILTER_TELEMETRY_SINK must be set to: none, log.")

    @field_validator(*_CODE_SET_FIELDS, mode="before")
    @classmethod
    def _normalize_code_sets(cls, value: Any) -> tuple[int, ...]:
        return _parse_code_set(value)

    @field_validator(*_PATH_FIELDS, mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None:
            return None
        return _resolve_path(value)

    @field_validator(*_BOOLEAN_COERCION_FIELDS, mode="before")
    @classmethod
    def _normalize_booleans(cls, value: Any, info: ValidationInfo) -> bool:
        field_name = info.field_name
        assert field_name is not None
        default_value = cls.model_fields[field_name].default
        assert isinstance(default_value, bool)
        return _parse_bool_with_default(value, default=default_value)

    @field_validator("bilibili_credential", mode="before")
    @classmethod
    def _normalize_optional_strings(cls, value: Any) -> str | None:
        return _normalize_optional_text(value)


def _apply_path_defaults(settings: AppSettings) -> AppSettings:
    updates: dict[str, Path] = {}
    for field_name, relative_default in _DATA_DIR_RELATIVE_DEFAULTS:
        if field_name in settings.model_fields_set:
            continue
        updates[field_name] = settings.data_dir / relative_default
    if not updates:
        return settings
    return settings.model_copy(update=updates)


def _resolve_path_fields(settings: AppSettings) -> AppSettings:
    resolved_updates = {
        field_name: _resolve_path(getattr(settings, field_name))
        for field_name in _PATH_FIELDS
    }
    return settings.model_copy(update=resolved_updates)


def _validate_code_sets(settings: AppSettings) -> None:
    overlap = set(settings.bilibili_retryable_codes) & set(settings.bilibili_auth_required_codes)
    if overlap:
        codes = ", ".join(str(code) for code in sorted(overlap))
        raise ValueError(
            "Business codes cannot be both retryable and auth-required: "
            f"{codes}"
        )
    if 0 in settings.bilibili_retryable_codes or 0 in settings.bilibili_auth_required_codes:
        raise ValueError("Business code 0 means success and cannot be configured as a failure.")


def load_settings() -> AppSettings:
    settings = AppSettings()
    settings = _apply_path_defaults(settings)
    settings = _resolve_path_fields(settings)
    _validate_code_sets(settings)
    return settings
