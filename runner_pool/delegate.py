"""Delegate operations: hand pool instances to builds and drive their agent."""

import logging
from collections.abc import Callable

from runner_pool.clients.agent import AgentClient
from runner_pool.clients.http import RetryPolicy
from runner_pool.config import Settings
from runner_pool.context import Context
from runner_pool.errors import InstanceNotFound, PoolUnknown
from runner_pool.manager import Manager
from runner_pool.metrics import metrics
from runner_pool.models import RESERVED_TAGS, TAG_STAGE_ID, Instance
from runner_pool.schemas import (
    DestroyRequest,
    ExecStepRequest,
    SetupRequest,
    SetupResponse,
)


logger = logging.getLogger(__name__)

AgentFactory = Callable[[str], AgentClient]


class Delegate:
    def __init__(
        self,
        manager: Manager,
        settings: Settings,
        agent_factory: AgentFactory | None = None,
    ):
        self.manager = manager
        self.settings = settings
        self.agent_factory = agent_factory or self._default_agent

    def _default_agent(self, address: str) -> AgentClient:
        return AgentClient(
            address,
            RetryPolicy(self.settings.retry_attempts, self.settings.retry_sleep_sec),
            port=self.settings.lite_engine_port,
            ca_cert_file=self.settings.ca_cert_file,
            cert_file=self.settings.cert_file,
            key_file=self.settings.key_file,
        )

    def _require_pool(self, pool: str) -> None:
        if not self.manager.exists(pool):
            raise PoolUnknown(pool)

    def _by_stage(self, ctx: Context, pool: str, stage_id: str) -> Instance:
        instance = self.manager.find_by_stage(ctx, pool, stage_id)
        if instance is None:
            raise InstanceNotFound(pool=pool, key=TAG_STAGE_ID, value=stage_id)
        return instance

    def pool_owner(self, ctx: Context, pool: str, stage_id: str | None = None) -> bool:
        if not self.manager.exists(pool):
            return False
        if stage_id:
            return self.manager.find_by_stage(ctx, pool, stage_id) is not None
        return True

    def setup(self, ctx: Context, request: SetupRequest) -> SetupResponse:
        self._require_pool(request.pool_id)
        dropped = sorted(key for key in request.tags if key in RESERVED_TAGS)
        if dropped:
            logger.warning(
                "setup ignoring reserved tags stage_id=%s keys=%s", request.id, dropped
            )
        tags = {k: v for k, v in request.tags.items() if k not in RESERVED_TAGS}
        tags[TAG_STAGE_ID] = request.id
        instance = self.manager.acquire(ctx, request.pool_id, tags)
        logger.info(
            "setup acquired instance stage_id=%s pool=%s id=%s ip=%s correlation_id=%s",
            request.id,
            request.pool_id,
            instance.id,
            instance.ip,
            request.correlation_id,
        )

        agent = self.agent_factory(instance.ip)
        try:
            agent.retry_health(
                ctx,
                self.settings.setup_timeout_sec,
                self.settings.health_retry_interval_sec,
            )
            agent.setup(ctx, request.setup_request)
        except Exception as exc:
            metrics.inc("delegate_setup_failures_total")
            logger.error(
                "setup failed, releasing instance stage_id=%s pool=%s id=%s error=%s",
                request.id,
                request.pool_id,
                instance.id,
                exc,
            )
            self._release_failed(request.pool_id, instance.id)
            raise
        finally:
            agent.close()

        metrics.inc("delegate_setup_total")
        return SetupResponse(instance_id=instance.id, ip_address=instance.ip)

    def _release_failed(self, pool: str, instance_id: str) -> None:
        # the request context may already be cancelled, use a fresh deadline
        ctx = Context(timeout=self.settings.shutdown_clean_timeout_sec)
        try:
            self.manager.release(ctx, pool, instance_id)
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "failed to release instance pool=%s id=%s: %s", pool, instance_id, exc
            )

    def step(self, ctx: Context, request: ExecStepRequest) -> dict:
        self._require_pool(request.pool_id)
        address = request.ip_address
        if not address:
            address = self._by_stage(ctx, request.pool_id, request.id).ip
        step_id = request.start_step_request["id"]

        agent = self.agent_factory(address)
        try:
            agent.start_step(ctx, request.start_step_request)
            logger.debug("step started step_id=%s ip=%s", step_id, address)
            response = agent.retry_poll_step(ctx, step_id, self.settings.step_timeout_sec)
        finally:
            agent.close()
        metrics.inc("delegate_steps_total")
        logger.info(
            "step finished step_id=%s pool=%s ip=%s exit_code=%s correlation_id=%s",
            step_id,
            request.pool_id,
            address,
            response.get("exit_code"),
            request.correlation_id,
        )
        return response

    def destroy(self, ctx: Context, request: DestroyRequest) -> None:
        self._require_pool(request.pool_id)
        instance_id = request.instance_id
        if not instance_id:
            instance_id = self._by_stage(ctx, request.pool_id, request.id).id
        self.manager.release(ctx, request.pool_id, instance_id)
        metrics.inc("delegate_destroy_total")
        logger.info(
            "destroyed instance stage_id=%s pool=%s id=%s correlation_id=%s",
            request.id,
            request.pool_id,
            instance_id,
            request.correlation_id,
        )
