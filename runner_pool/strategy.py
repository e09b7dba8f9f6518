"""Pool sizing policies.

A strategy only does arithmetic over counts; the pool owns the lock and the
cloud calls. ``free`` and ``busy`` passed in already include instances that are
being provisioned for the respective role.
"""

from runner_pool.errors import ConfigInvalid


class MinMax:
    name = "minmax"

    def count_create_remove(
        self, min_size: int, max_size: int, busy: int, free: int
    ) -> tuple[int, int]:
        total = busy + free
        create = 0
        remove = 0
        if free < min_size:
            create = max(min(min_size - free, max_size - total), 0)
        if total > max_size:
            remove = min(total - max_size, free)
        return create, remove

    def can_create(self, min_size: int, max_size: int, busy: int, free: int) -> bool:
        return busy + free < max_size


class Greedy:
    name = "greedy"

    def count_create_remove(
        self, min_size: int, max_size: int, busy: int, free: int
    ) -> tuple[int, int]:
        if free < min_size:
            return min_size - free, 0
        return 0, 0

    def can_create(self, min_size: int, max_size: int, busy: int, free: int) -> bool:
        return True


Strategy = MinMax | Greedy

_STRATEGIES: dict[str, type[MinMax] | type[Greedy]] = {
    MinMax.name: MinMax,
    Greedy.name: Greedy,
}


def get_strategy(name: str) -> Strategy:
    try:
        return _STRATEGIES[name.lower()]()
    except KeyError as exc:
        raise ConfigInvalid(
            f"unknown pool strategy {name!r}, expected one of {sorted(_STRATEGIES)}"
        ) from exc
