import logging
import ssl
from typing import Any

import httpx

from runner_pool.clients.http import RequestFailure, RetryPolicy, request_with_retry
from runner_pool.context import Context
from runner_pool.errors import AgentUnreachable


logger = logging.getLogger(__name__)

AGENT_PORT = 9079
POLL_RETRY_SEC = 1.0


def build_ssl_context(
    ca_cert_file: str | None, cert_file: str | None, key_file: str | None
) -> ssl.SSLContext:
    context = ssl.create_default_context(cafile=ca_cert_file or None)
    # agents are reached by IP, their certificate names the runner instead
    context.check_hostname = False
    if cert_file and key_file:
        context.load_cert_chain(certfile=cert_file, keyfile=key_file)
    return context


class AgentClient:
    """HTTPS client for the lite-engine agent running inside a pool VM."""

    def __init__(
        self,
        address: str,
        retry: RetryPolicy,
        *,
        port: int = AGENT_PORT,
        ca_cert_file: str | None = None,
        cert_file: str | None = None,
        key_file: str | None = None,
        transport: httpx.BaseTransport | None = None,
        timeout: float = 10.0,
    ):
        self.address = address
        self.retry = retry
        self.base_url = f"https://{address}:{port}"
        verify: ssl.SSLContext | bool = True
        if transport is None:
            verify = build_ssl_context(ca_cert_file, cert_file, key_file)
        self.client = httpx.Client(
            base_url=self.base_url, timeout=timeout, verify=verify, transport=transport
        )

    def close(self) -> None:
        self.client.close()

    def _call(
        self,
        ctx: Context | None,
        method: str,
        path: str,
        retry: RetryPolicy | None = None,
        **kwargs: Any,
    ) -> dict:
        try:
            response = request_with_retry(
                self.client, method, path, retry or self.retry, ctx, **kwargs
            )
        except RequestFailure as exc:
            raise AgentUnreachable(address=self.address, detail=exc.detail) from exc
        if not response.content:
            return {}
        return response.json()

    def health(self, ctx: Context | None = None) -> dict:
        data = self._call(ctx, "GET", "/healthz", RetryPolicy(1, 0))
        if not data.get("ok"):
            raise AgentUnreachable(address=self.address, detail=f"agent not healthy: {data}")
        return data

    def retry_health(self, ctx: Context, timeout: float, interval: float) -> dict:
        """Probe ``/healthz`` until it answers ok; first probe is immediate."""
        deadline = ctx.child(timeout)
        wait = 0.0
        attempts = 0
        last_error = "no attempt made"
        while True:
            if deadline.wait(wait):
                ctx.check()
                raise AgentUnreachable(
                    address=self.address,
                    detail=f"health check timed out after {timeout}s attempts={attempts}: {last_error}",
                )
            wait = interval
            attempts += 1
            try:
                data = self.health(deadline)
                logger.debug("agent healthy address=%s attempts=%s", self.address, attempts)
                return data
            except AgentUnreachable as exc:
                last_error = exc.detail
                logger.debug(
                    "agent health check failed address=%s attempt=%s error=%s",
                    self.address,
                    attempts,
                    exc.detail,
                )

    def setup(self, ctx: Context, payload: dict) -> dict:
        return self._call(ctx, "POST", "/setup", json=payload)

    def start_step(self, ctx: Context, payload: dict) -> dict:
        return self._call(ctx, "POST", "/start_step", json=payload)

    def poll_step(self, ctx: Context, step_id: str) -> dict:
        # the agent answers once the step exits, so reads may block for long
        remaining = ctx.remaining()
        timeout = httpx.Timeout(10.0, read=remaining)
        return self._call(
            ctx, "POST", "/poll_step", RetryPolicy(1, 0), json={"id": step_id}, timeout=timeout
        )

    def retry_poll_step(
        self, ctx: Context, step_id: str, timeout: float, interval: float = POLL_RETRY_SEC
    ) -> dict:
        deadline = ctx.child(timeout)
        wait = 0.0
        last_error = "no attempt made"
        while True:
            if deadline.wait(wait):
                ctx.check()
                raise AgentUnreachable(
                    address=self.address,
                    detail=f"step {step_id} did not finish within {timeout}s: {last_error}",
                )
            wait = interval
            try:
                return self.poll_step(deadline, step_id)
            except AgentUnreachable as exc:
                last_error = exc.detail
                logger.debug(
                    "poll step failed address=%s step_id=%s error=%s",
                    self.address,
                    step_id,
                    exc.detail,
                )
