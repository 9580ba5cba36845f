from __future__ import annotations

import logging
import re
import sys
from collections.abc import Iterable
from pathlib import Path
from typing import TextIO

import structlog
from structlog.typing import EventDict, Processor

from fluxfilter.config import AppSettings

LOG_FILE_NAME = "fluxfilter.log"
TELEMETRY_LOG_FILE_NAME = "fluxfilter-telemetry.log"
ROOT_LOGGER_NAME = "fluxfilter"
TELEMETRY_LOGGER_NAME = f"{ROOT_LOGGER_NAME}.telemetry"

# Cookie fields and request signatures are masked before any renderer sees them.
_SECRET_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(SESSDATA=)[^;&\s]+"),
    re.compile(r"(bili_jct=)[^;&\s]+"),
    re.compile(r"(DedeUserID__ckMd5=)[^;&\s]+"),
    re.compile(r"(w_rid=)[0-9a-fA-F]+"),
)
_REDACTED = r"\1[redacted]"

LOGGER = logging.getLogger(f"{ROOT_LOGGER_NAME}.logging")


def configure_application_logging(settings: AppSettings) -> Path:
    settings.log_dir.mkdir(parents=True, exist_ok=True)
    log_file = settings.log_dir / LOG_FILE_NAME
    telemetry_log_file = settings.log_dir / TELEMETRY_LOG_FILE_NAME
    console_level = _resolve_log_level(settings.log_level)

    _configure_structlog()
    _install_handlers(
        logging.getLogger(ROOT_LOGGER_NAME),
        level=logging.DEBUG,
        handlers=(
            _console_handler(sys.stdout, level=console_level),
            _file_handler(log_file, level=logging.DEBUG),
        ),
    )
    _install_handlers(
        logging.getLogger(TELEMETRY_LOGGER_NAME),
        level=logging.INFO,
        handlers=(_file_handler(telemetry_log_file, level=logging.INFO),),
    )

    LOGGER.info(
        "logging configured console_level=%s path=%s telemetry_path=%s",
        logging.getLevelName(console_level),
        log_file,
        telemetry_log_file,
    )
    return log_file


def redact_secrets(text: str) -> str:
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(_REDACTED, text)
    return text


def _resolve_log_level(raw_level: str) -> int:
    resolved = logging.getLevelName(raw_level.strip().upper())
    if isinstance(resolved, int):
        return resolved
    return logging.INFO


def _install_handlers(
    logger: logging.Logger,
    *,
    level: int,
    handlers: Iterable[logging.Handler],
) -> None:
    logger.setLevel(level)
    logger.propagate = False
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()
    for handler in handlers:
        logger.addHandler(handler)


def _console_handler(stream: TextIO, *, level: int) -> logging.Handler:
    handler = logging.StreamHandler(stream=stream)
    handler.setLevel(level)
    handler.setFormatter(
        _build_formatter(structlog.dev.ConsoleRenderer(colors=_stream_supports_color(stream)))
    )
    return handler


def _file_handler(path: Path, *, level: int) -> logging.Handler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(
        _build_formatter(
            structlog.processors.JSONRenderer(sort_keys=True, ensure_ascii=False),
            _add_record_metadata,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
        )
    )
    return handler


def _configure_structlog() -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def _build_formatter(
    renderer: Processor,
    *extra_processors: Processor,
) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
        ],
        processors=[
            *extra_processors,
            _redact_event_dict,
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )


def _redact_event_dict(
    _logger: logging.Logger,
    _method_name: str,
    event_dict: EventDict,
) -> EventDict:
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = redact_secrets(value)
    return event_dict


def _add_record_metadata(
    _logger: logging.Logger,
    _method_name: str,
    event_dict: EventDict,
) -> EventDict:
    record = event_dict.get("_record")
    if isinstance(record, logging.LogRecord):
        event_dict["pathname"] = record.pathname
        event_dict["lineno"] = record.lineno
        event_dict["func_name"] = record.funcName
        event_dict["thread_name"] = record.threadName
    return event_dict


def _stream_supports_color(stream: object) -> bool:
    isatty = getattr(stream, "isatty", None)
    if callable(isatty):
        try:
            return bool(isatty())
        except Exception:
            return False
    return False
