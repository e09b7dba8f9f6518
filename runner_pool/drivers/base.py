from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping

from runner_pool.context import Context
from runner_pool.models import Instance, PoolSpec


DEFAULT_STATES = ("running",)


class Driver(ABC):
    """Cloud capability a pool depends on; one implementation per provider.

    Drivers hold their credentials and region, never pool state: every query
    goes to the cloud, which stays the source of truth.
    """

    provider: str = ""

    @abstractmethod
    def provision(
        self, ctx: Context, spec: PoolSpec, tags: Mapping[str, str]
    ) -> Instance:
        """Create one VM carrying ``tags`` and block until it has an address."""

    @abstractmethod
    def destroy(self, ctx: Context, *instance_ids: str) -> None:
        """Terminate instances; ids the cloud no longer knows count as success."""

    @abstractmethod
    def list(
        self,
        ctx: Context,
        tags: Mapping[str, str],
        states: Iterable[str] = DEFAULT_STATES,
    ) -> list[Instance]:
        """Return instances carrying every tag in ``tags`` and in one of ``states``."""

    @abstractmethod
    def tag(
        self,
        ctx: Context,
        instance_id: str,
        tags: Mapping[str, str],
        remove: Iterable[str] = (),
        expect: Mapping[str, str | None] | None = None,
    ) -> None:
        """Set ``tags`` and drop ``remove`` keys.

        With ``expect`` the mutation only happens when the current tags match
        it (``None`` meaning the key must be absent); otherwise ``TagConflict``
        is raised and nothing changes.
        """

    def stored_tags(self, tags: Mapping[str, str]) -> dict[str, str]:
        """Return ``tags`` the way the cloud stores and reports them."""
        return dict(tags)

    @abstractmethod
    def get(self, ctx: Context, instance_id: str) -> Instance | None:
        ...

    @abstractmethod
    def ping(self, ctx: Context) -> None:
        ...


def tags_match(current: Mapping[str, str], expect: Mapping[str, str | None]) -> bool:
    for key, value in expect.items():
        if value is None:
            if key in current:
                return False
        elif current.get(key) != value:
            return False
    return True
