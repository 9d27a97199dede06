"""
HTTP client for a local Ollama-style inference server.

Each call is gated by a CircuitBreaker, checked against a payload ceiling before anything is
sent, then retried with exponential backoff. HTTP 400/401/403 are fatal and never retried.
The server wraps the model output in ``{"response": "<json string>"}``; the inner string is
parsed again and returned.
"""

import json
import time
from collections.abc import Callable
from http import HTTPStatus
from typing import Any, Self

import httpx
from loguru import logger

from .circuit_breaker import CircuitBreaker
from .config import RenamerConfig
from .errors import (
    CircuitOpenError,
    FatalAPIError,
    PayloadTooLargeError,
    RetriesExhaustedError,
)

log = logger.bind(component="inference")

FATAL_STATUS_CODES = frozenset(
    {HTTPStatus.BAD_REQUEST, HTTPStatus.UNAUTHORIZED, HTTPStatus.FORBIDDEN},
)
SAMPLING_PARAMS: dict[str, Any] = {"temperature": 0.7, "max_tokens": 500, "top_p": 0.9}
REQUEST_HEADERS = {"Content-Type": "application/json", "Accept": "application/json"}


class MalformedResponseError(ValueError):
    """The server answered but the body is empty or not the expected JSON."""


def build_request_body(
    model: str,
    prompt: str,
    additional_payload: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Assemble the generate request; ``additional_payload`` is merged last and wins on conflicts.

    Examples:
        >>> body = build_request_body("llava", "hi", {"images": ["..."], "temperature": 0.1})
        >>> body["stream"], body["temperature"], body["images"]
        (False, 0.1, ['...'])

    """
    body: dict[str, Any] = {
        "model": model,
        "format": "json",
        "prompt": prompt,
        "stream": False,
        **SAMPLING_PARAMS,
        "keep_alive": -1,
    }
    if additional_payload:
        body.update(additional_payload)
    return body


def backoff_delay(retry_delay_seconds: float, attempt: int) -> float:
    """
    Seconds to wait after a failed ``attempt`` (1-based).

    Examples:
        >>> [backoff_delay(3, n) for n in (1, 2, 3)]
        [3, 6, 12]

    """
    return retry_delay_seconds * 2 ** (attempt - 1)


def parse_generate_response(response: httpx.Response) -> Any:  # noqa: ANN401
    """Extract and decode the JSON document carried in the ``response`` field."""
    if not response.content:
        msg = "Empty response body"
        raise MalformedResponseError(msg)
    try:
        outer = response.json()
    except ValueError as exc:
        msg = f"Response body is not JSON: {exc}"
        raise MalformedResponseError(msg) from exc
    inner = outer.get("response") if isinstance(outer, dict) else None
    if not isinstance(inner, str) or not inner.strip():
        msg = "Response has no 'response' field"
        raise MalformedResponseError(msg)
    try:
        return json.loads(inner)
    except ValueError as exc:
        msg = f"Model output is not valid JSON: {exc}"
        raise MalformedResponseError(msg) from exc


class InferenceClient:
    """
    Reliable caller for the inference server.

    Args:
        api_url: Full URL of the generate endpoint
        breaker: Circuit breaker owned by this client
        timeout: Per-attempt timeout in seconds
        max_retries: Maximum number of attempts per call
        retry_delay_seconds: Base delay for the exponential backoff
        max_payload_bytes: Largest serialized request accepted
        http_client: Optional preconfigured ``httpx.Client`` (tests pass a MockTransport)
        sleep: Function used to wait between attempts

    """

    def __init__(
        self,
        api_url: str,
        breaker: CircuitBreaker,
        *,
        timeout: float,
        max_retries: int,
        retry_delay_seconds: float,
        max_payload_bytes: int,
        http_client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.api_url = api_url
        self.breaker = breaker
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay_seconds = retry_delay_seconds
        self.max_payload_bytes = max_payload_bytes
        self._http = http_client or httpx.Client(timeout=timeout)
        self._sleep = sleep

    @classmethod
    def from_config(
        cls,
        config: RenamerConfig,
        *,
        http_client: httpx.Client | None = None,
    ) -> Self:
        breaker = CircuitBreaker(
            max_failures=config.circuit_max_failures,
            cooldown_seconds=config.circuit_cooldown_seconds,
        )
        return cls(
            config.api_url,
            breaker,
            timeout=config.api_timeout_seconds,
            max_retries=config.max_retries,
            retry_delay_seconds=config.retry_delay_seconds,
            max_payload_bytes=config.max_payload_bytes,
            http_client=http_client,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def invoke(
        self,
        model: str,
        prompt: str,
        additional_payload: dict[str, Any] | None = None,
    ) -> Any:  # noqa: ANN401
        """
        Send one generate request and return the parsed model output.

        Raises:
            CircuitOpenError: breaker is open, before or during the retry loop
            PayloadTooLargeError: serialized body is over the ceiling; nothing was sent
            FatalAPIError: server answered 400, 401 or 403
            RetriesExhaustedError: every attempt failed with a retryable error

        """
        if not self.breaker.permit():
            msg = "Circuit breaker is open; inference server is cooling down"
            raise CircuitOpenError(msg)

        payload = json.dumps(build_request_body(model, prompt, additional_payload)).encode("utf-8")
        if len(payload) > self.max_payload_bytes:
            log.error(
                "payload_too_large",
                model=model,
                size_mb=round(len(payload) / (1024 * 1024), 2),
                limit_mb=round(self.max_payload_bytes / (1024 * 1024), 2),
            )
            raise PayloadTooLargeError(len(payload), self.max_payload_bytes)

        last_error: Exception | None = None
        for attempt in range(1, self.max_retries + 1):
            _t0 = time.perf_counter()
            try:
                response = self._http.post(
                    self.api_url,
                    content=payload,
                    headers=REQUEST_HEADERS,
                    timeout=self.timeout,
                )
                response.raise_for_status()
                result = parse_generate_response(response)
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                self.breaker.record_failure()
                if status in FATAL_STATUS_CODES:
                    log.error("inference_fatal_status", model=model, status=status)
                    raise FatalAPIError(status, exc.response.text) from exc
                log.warning(
                    "inference_http_error",
                    model=model,
                    status=status,
                    attempt=attempt,
                    max_retries=self.max_retries,
                )
                last_error = exc
                self._abort_if_circuit_open(exc)
            except httpx.TransportError as exc:
                self.breaker.record_failure()
                log.warning(
                    "inference_transport_error",
                    model=model,
                    error=str(exc) or type(exc).__name__,
                    attempt=attempt,
                    max_retries=self.max_retries,
                )
                last_error = exc
                self._abort_if_circuit_open(exc)
            except MalformedResponseError as exc:
                log.warning(
                    "inference_malformed_response",
                    model=model,
                    error=str(exc),
                    attempt=attempt,
                    max_retries=self.max_retries,
                )
                last_error = exc
            else:
                self.breaker.record_success()
                log.info(
                    "inference_succeeded",
                    model=model,
                    attempt=attempt,
                    seconds=round(time.perf_counter() - _t0, 3),
                )
                return result

            if attempt < self.max_retries:
                delay = backoff_delay(self.retry_delay_seconds, attempt)
                log.debug("inference_backoff", seconds=delay, next_attempt=attempt + 1)
                self._sleep(delay)

        log.error("inference_retries_exhausted", model=model, attempts=self.max_retries)
        raise RetriesExhaustedError(self.max_retries, last_error) from last_error

    def _abort_if_circuit_open(self, cause: Exception) -> None:
        if self.breaker.is_open:
            log.error("inference_aborted_circuit_open", failures=self.breaker.consecutive_failures)
            msg = "Circuit breaker opened after repeated inference failures"
            raise CircuitOpenError(msg) from cause
