from __future__ import annotations

import http.client
import json
import logging
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any, cast
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode, urlsplit
from urllib.request import Request, urlopen

from pydantic import ValidationError

from fluxfilter.models.bilibili_contracts import BilibiliEnvelope
from fluxfilter.services.bilibili_errors import (
    AuthRequiredError,
    MalformedResponseError,
    TransportError,
    UpstreamBusinessError,
)
from fluxfilter.services.rate_gate import MinimumIntervalGate
from fluxfilter.services.wbi_signer import (
    DEFAULT_SIGNING_KEYS_TTL_SECONDS,
    SESSION_INFO_PATH,
    QueryScalar,
    WbiSigner,
)
from fluxfilter.telemetry import TelemetryClient

DEFAULT_BASE_URL = "https://api.bilibili.com"
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
DEFAULT_REFERER = "https://www.bilibili.com"
DEFAULT_MAX_RETRIES = 2
DEFAULT_RETRY_BASE_DELAY_SECONDS = 1.0
DEFAULT_HTTP_TIMEOUT_SECONDS = 10.0
DEFAULT_RETRYABLE_CODES: frozenset[int] = frozenset({-799, -352, -503, -412})
DEFAULT_AUTH_REQUIRED_CODES: frozenset[int] = frozenset({-101, -111})
NOT_LOGGED_IN_CODE = -101

LOGGER = logging.getLogger("fluxfilter.bilibili")


@dataclass(frozen=True)
class HttpResponse:
    status_code: int
    body: str


HttpTransport = Callable[[str, Mapping[str, str], float], HttpResponse]


@dataclass(frozen=True)
class DispatchAttempt:
    url: str
    attempt_index: int
    started_at: float

    @property
    def path(self) -> str:
        return urlsplit(self.url).path


def urllib_transport(url: str, headers: Mapping[str, str], timeout_seconds: float) -> HttpResponse:
    request = Request(url, headers=dict(headers), method="GET")
    try:
        with urlopen(request, timeout=timeout_seconds) as response:
            status_code = int(response.getcode() or 0)
            body = response.read().decode("utf-8", errors="replace")
    except HTTPError as exc:
        status_code = int(exc.code)
        body = exc.read().decode("utf-8", errors="replace")
    except (URLError, TimeoutError, OSError, http.client.HTTPException) as exc:
        raise TransportError(f"Bilibili request failed: {exc}") from exc
    return HttpResponse(status_code=status_code, body=body)


class BilibiliDispatcher:
    """Single gate for every HTTP call made to the Bilibili API.

    Every attempt passes the shared `MinimumIntervalGate`, and a call runs up
    to `max_retries + 1` attempts. Connection failures, non-2xx statuses and
    retryable business codes back off for `retry_base_delay * 2**attempt`;
    auth-required codes raise `AuthRequiredError` and every other non-zero
    code raises `UpstreamBusinessError` without a second attempt.
    """

    def __init__(
        self,
        *,
        gate: MinimumIntervalGate,
        base_url: str = DEFAULT_BASE_URL,
        credential: str | None = None,
        user_agent: str = DEFAULT_USER_AGENT,
        referer: str = DEFAULT_REFERER,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay_seconds: float = DEFAULT_RETRY_BASE_DELAY_SECONDS,
        http_timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
        retryable_codes: Iterable[int] = DEFAULT_RETRYABLE_CODES,
        auth_required_codes: Iterable[int] = DEFAULT_AUTH_REQUIRED_CODES,
        signing_keys_ttl_seconds: int = DEFAULT_SIGNING_KEYS_TTL_SECONDS,
        signer: WbiSigner | None = None,
        transport: HttpTransport = urllib_transport,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._gate = gate
        self._base_url = base_url.rstrip("/")
        self._credential = credential.strip() if credential and credential.strip() else None
        self._user_agent = user_agent
        self._referer = referer
        self._max_retries = max(0, max_retries)
        self._retry_base_delay_seconds = max(0.0, retry_base_delay_seconds)
        self._http_timeout_seconds = max(0.1, http_timeout_seconds)
        self._retryable_codes = frozenset(retryable_codes)
        self._auth_required_codes = frozenset(auth_required_codes)
        self._transport = transport
        self._sleep = sleep
        self._clock = clock
        self._telemetry = telemetry or TelemetryClient.disabled()
        self._signer = signer or WbiSigner(
            self.fetch_session_info,
            ttl_seconds=signing_keys_ttl_seconds,
            clock=clock,
        )
        self._last_success_at: float | None = None

    @property
    def signer(self) -> WbiSigner:
        return self._signer

    @property
    def has_credential(self) -> bool:
        return self._credential is not None

    @property
    def last_success_at(self) -> float | None:
        return self._last_success_at

    def fetch_session_info(self) -> Any:
        # Anonymous sessions answer "not logged in" but still publish the signing keys.
        envelope = self.dispatch(SESSION_INFO_PATH, accept_codes=(NOT_LOGGED_IN_CODE,))
        return envelope.data

    def dispatch(
        self,
        path: str,
        params: Mapping[str, QueryScalar] | None = None,
        *,
        signed: bool = False,
        retryable: bool = True,
        accept_codes: Iterable[int] = (),
    ) -> BilibiliEnvelope:
        url = self._build_url(path, params or {}, signed=signed)
        max_retries = self._max_retries if retryable else 0
        accepted_codes = frozenset(accept_codes)

        self._gate.wait()
        last_envelope: BilibiliEnvelope | None = None
        for attempt_index in range(max_retries + 1):
            attempt = DispatchAttempt(
                url=url,
                attempt_index=attempt_index,
                started_at=self._clock(),
            )
            has_retry_budget = attempt_index < max_retries
            response = self._send_or_backoff(attempt, has_retry_budget=has_retry_budget)
            if response is None:
                continue

            envelope = _parse_envelope(response.body, path=attempt.path)
            if envelope.code == 0 or envelope.code in accepted_codes:
                self._record_success(attempt)
                return envelope

            if envelope.code in self._retryable_codes:
                last_envelope = envelope
                if has_retry_budget:
                    self._backoff(attempt, reason=f"code={envelope.code}")
                    continue
                break

            self._record_failure(attempt, code=envelope.code)
            if envelope.code in self._auth_required_codes:
                raise AuthRequiredError(envelope.code, envelope.message)
            raise UpstreamBusinessError(envelope.code, envelope.message)

        assert last_envelope is not None
        if signed:
            # Rotated keys surface as risk-control codes; refetch them on the next call.
            self._signer.invalidate()
        LOGGER.warning(
            "bilibili dispatch retries_exhausted path=%s attempts=%s code=%s",
            urlsplit(url).path,
            max_retries + 1,
            last_envelope.code,
        )
        self._telemetry.emit(
            "bilibili.dispatch.failure",
            path=urlsplit(url).path,
            attempts=max_retries + 1,
            code=last_envelope.code,
            reason="retries_exhausted",
        )
        raise UpstreamBusinessError(last_envelope.code, last_envelope.message)

    def fetch_json(self, url: str, *, retryable: bool = True) -> object:
        """GET a plain JSON document (no envelope) through the same gate and retry policy."""
        absolute_url = _absolute_url(url)
        max_retries = self._max_retries if retryable else 0

        self._gate.wait()
        for attempt_index in range(max_retries + 1):
            attempt = DispatchAttempt(
                url=absolute_url,
                attempt_index=attempt_index,
                started_at=self._clock(),
            )
            response = self._send_or_backoff(
                attempt,
                has_retry_budget=attempt_index < max_retries,
            )
            if response is None:
                continue
            payload = _parse_json(response.body, path=attempt.path)
            self._record_success(attempt)
            return payload

        raise TransportError(f"Bilibili request failed after {max_retries + 1} attempts.")

    def _build_url(
        self,
        path: str,
        params: Mapping[str, QueryScalar],
        *,
        signed: bool,
    ) -> str:
        if path.startswith(("http://", "https://")):
            base = path
        else:
            base = f"{self._base_url}/{path.lstrip('/')}"

        if signed:
            query = self._signer.sign(params)
        else:
            query = urlencode({key: _stringify(value) for key, value in params.items()})
        if not query:
            return base
        return f"{base}?{query}"

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/json, text/plain, */*",
            "User-Agent": self._user_agent,
            "Referer": self._referer,
        }
        if self._credential is not None:
            headers["Cookie"] = self._credential
        return headers

    def _send_or_backoff(
        self,
        attempt: DispatchAttempt,
        *,
        has_retry_budget: bool,
    ) -> HttpResponse | None:
        LOGGER.debug(
            "bilibili dispatch attempt path=%s attempt=%s authenticated=%s",
            attempt.path,
            attempt.attempt_index + 1,
            self.has_credential,
        )
        try:
            response = self._transport(attempt.url, self._headers(), self._http_timeout_seconds)
            if not 200 <= response.status_code < 300:
                raise TransportError(
                    f"Bilibili responded with HTTP {response.status_code}.",
                    status_code=response.status_code,
                )
        except TransportError as exc:
            if has_retry_budget:
                self._backoff(attempt, reason=str(exc))
                return None
            self._record_failure(attempt, code=None, status_code=exc.status_code)
            raise
        return response

    def _backoff(self, attempt: DispatchAttempt, *, reason: str) -> None:
        delay = self._retry_base_delay_seconds * (2**attempt.attempt_index)
        LOGGER.warning(
            "bilibili dispatch retry path=%s attempt=%s max_attempts=%s delay_seconds=%s reason=%s",
            attempt.path,
            attempt.attempt_index + 1,
            self._max_retries + 1,
            delay,
            reason,
        )
        self._telemetry.emit(
            "bilibili.dispatch.retry",
            path=attempt.path,
            attempt=attempt.attempt_index + 1,
            delay_seconds=delay,
            reason=reason,
        )
        self._sleep(delay)
        # Retries are outbound requests too; other callers may have dispatched during the sleep.
        self._gate.wait()

    def _record_success(self, attempt: DispatchAttempt) -> None:
        self._last_success_at = self._clock()
        self._telemetry.emit(
            "bilibili.dispatch.success",
            path=attempt.path,
            attempts=attempt.attempt_index + 1,
            duration_ms=int((self._last_success_at - attempt.started_at) * 1000),
        )

    def _record_failure(
        self,
        attempt: DispatchAttempt,
        *,
        code: int | None,
        status_code: int | None = None,
    ) -> None:
        LOGGER.warning(
            "bilibili dispatch failed path=%s attempt=%s code=%s status_code=%s",
            attempt.path,
            attempt.attempt_index + 1,
            code,
            status_code,
        )
        self._telemetry.emit(
            "bilibili.dispatch.failure",
            path=attempt.path,
            attempts=attempt.attempt_index + 1,
            code=code,
            status_code=status_code,
        )


def _stringify(value: QueryScalar) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _absolute_url(url: str) -> str:
    if url.startswith("//"):
        return f"https:{url}"
    return url


def _parse_json(raw_body: str, *, path: str) -> object:
    try:
        return cast(object, json.loads(raw_body))
    except json.JSONDecodeError as exc:
        raise MalformedResponseError(f"Response from {path} is not valid JSON.") from exc


def _parse_envelope(raw_body: str, *, path: str) -> BilibiliEnvelope:
    payload = _parse_json(raw_body, path=path)
    try:
        return BilibiliEnvelope.model_validate(payload)
    except ValidationError as exc:
        raise MalformedResponseError(
            f"Response from {path} is not a {{code, message, data}} envelope."
        ) from exc
