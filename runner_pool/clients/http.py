import logging
import time
from typing import Any

import httpx

from runner_pool.context import Context
from runner_pool.errors import RunnerError


logger = logging.getLogger(__name__)


class RetryPolicy:
    def __init__(self, attempts: int, sleep_sec: float):
        self.attempts = attempts
        self.sleep_sec = sleep_sec


class RequestFailure(RunnerError):
    def __init__(
        self,
        *,
        method: str,
        url: str,
        attempts: int,
        error_type: str,
        detail: str,
        status_code: int | None = None,
        response_text: str | None = None,
    ):
        self.method = method
        self.url = url
        self.attempts = attempts
        self.error_type = error_type
        self.detail = detail
        self.status_code = status_code
        self.response_text = response_text
        super().__init__(
            f"request failed after {attempts} attempts: {method} {url} ({error_type}: {detail})"
        )


def request_with_retry(
    client: httpx.Client,
    method: str,
    url: str,
    retry: RetryPolicy,
    ctx: Context | None = None,
    **kwargs: Any,
) -> httpx.Response:
    """Send one request, retrying transport errors and error statuses.

    Sleeps between attempts go through ``ctx`` when given, so a cancelled
    caller stops retrying at once.
    """
    error: Exception | None = None
    status_code: int | None = None
    response_text: str | None = None
    detail = "unknown error"
    error_type = "RuntimeError"
    attempts = 0
    for attempt in range(1, retry.attempts + 1):
        if ctx is not None:
            ctx.check()
        attempts = attempt
        try:
            response = client.request(method, url, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as exc:
            error = exc
            status_code = exc.response.status_code
            response_text = exc.response.text
            body = (exc.response.text or "").strip()
            detail = (
                f"HTTP {status_code}: {body[:240]}" if body else f"HTTP {status_code}"
            )
            error_type = exc.__class__.__name__
        except httpx.RequestError as exc:
            error = exc
            detail = str(exc)
            error_type = exc.__class__.__name__
        logger.debug(
            "request attempt failed method=%s url=%s attempt=%s/%s error=%s",
            method,
            url,
            attempt,
            retry.attempts,
            detail,
        )
        if attempt < retry.attempts:
            if ctx is None:
                time.sleep(retry.sleep_sec)
            elif ctx.wait(retry.sleep_sec):
                break
    raise RequestFailure(
        method=method,
        url=url,
        attempts=attempts,
        error_type=error_type,
        detail=detail,
        status_code=status_code,
        response_text=response_text,
    ) from error
