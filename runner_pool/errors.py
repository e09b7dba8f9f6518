class RunnerError(RuntimeError):
    """Base class for every error kind raised by the pool runner."""


class ConfigInvalid(RunnerError):
    pass


class CloudUnreachable(RunnerError):
    def __init__(self, *, provider: str, detail: str):
        self.provider = provider
        self.detail = detail
        super().__init__(f"cloud provider {provider} unreachable: {detail}")


class PoolUnknown(RunnerError):
    def __init__(self, pool: str):
        self.pool = pool
        super().__init__(f"pool {pool!r} not defined")


class PoolExhausted(RunnerError):
    def __init__(self, *, pool: str, busy: int, free: int, max_size: int):
        self.pool = pool
        self.busy = busy
        self.free = free
        self.max_size = max_size
        super().__init__(
            f"pool {pool!r} exhausted busy={busy} free={free} max={max_size}"
        )


class ProvisionFailed(RunnerError):
    def __init__(
        self,
        *,
        pool: str,
        provider: str,
        stage: str,
        detail: str,
        instance_id: str | None = None,
    ):
        self.pool = pool
        self.provider = provider
        self.stage = stage
        self.detail = detail
        self.instance_id = instance_id
        super().__init__(
            f"provisioning failed pool={pool} provider={provider} "
            f"instance_id={instance_id} stage={stage}: {detail}"
        )


class TagConflict(RunnerError):
    def __init__(self, *, instance_id: str, expected: dict[str, str | None]):
        self.instance_id = instance_id
        self.expected = expected
        super().__init__(
            f"instance {instance_id} tags changed concurrently, expected {expected}"
        )


class AgentUnreachable(RunnerError):
    def __init__(self, *, address: str, detail: str):
        self.address = address
        self.detail = detail
        super().__init__(f"agent at {address} unreachable: {detail}")


class InstanceNotFound(RunnerError):
    def __init__(self, *, pool: str, key: str, value: str):
        self.pool = pool
        self.key = key
        self.value = value
        super().__init__(f"instance with {key}={value} not found in pool {pool!r}")


class OperationCancelled(RunnerError):
    pass
