import pytest

from pulse.shared.numbers import round_half_up


@pytest.mark.parametrize(
    "value,expected",
    [(2.5, 3), (8.5, 9), (0.5, 1), (1.5, 2), (2.4999, 2), (-2.5, -2), (0.0, 0)],
)
def test_round_half_up_whole_numbers(value, expected):
    assert round_half_up(value) == expected


def test_round_half_up_to_two_places():
    assert round_half_up(1.125, 2) == 1.13
    assert round_half_up(5.5, 2) == 5.5
