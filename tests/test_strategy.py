import pytest

from runner_pool.errors import ConfigInvalid
from runner_pool.strategy import Greedy, MinMax, get_strategy


def test_minmax_fills_to_floor_within_ceiling():
    strategy = MinMax()
    assert strategy.count_create_remove(2, 4, busy=0, free=0) == (2, 0)
    assert strategy.count_create_remove(2, 4, busy=3, free=0) == (1, 0)
    assert strategy.count_create_remove(2, 4, busy=4, free=0) == (0, 0)
    assert strategy.count_create_remove(2, 4, busy=1, free=2) == (0, 0)


def test_minmax_removes_free_above_ceiling():
    strategy = MinMax()
    assert strategy.count_create_remove(1, 4, busy=3, free=3) == (0, 2)
    assert strategy.count_create_remove(0, 2, busy=5, free=1) == (0, 1)


def test_minmax_can_create_only_below_max():
    strategy = MinMax()
    assert strategy.can_create(2, 4, busy=3, free=0)
    assert not strategy.can_create(2, 4, busy=4, free=0)


def test_greedy_keeps_floor_and_never_removes():
    strategy = Greedy()
    assert strategy.count_create_remove(2, 4, busy=10, free=0) == (2, 0)
    assert strategy.count_create_remove(2, 4, busy=10, free=7) == (0, 0)
    assert strategy.can_create(2, 4, busy=10, free=0)


def test_get_strategy_by_name():
    assert isinstance(get_strategy("minmax"), MinMax)
    assert isinstance(get_strategy("Greedy"), Greedy)
    with pytest.raises(ConfigInvalid):
        get_strategy("random")
