from math import inf, log, exp
import numpy as np
import pytest
import hmcbridge

SEED = 3046987125


@pytest.fixture
def rng():
    return np.random.default_rng(SEED)


@pytest.fixture(params=(-1e3, -10., -1., 0., 1., 10., 1e3))
def val(request):
    return request.param


def test_log1p_exp(val):
    assert np.isclose(hmcbridge.utils.log1p_exp(val), np.logaddexp(0, val))


def test_log_sum_exp(rng):
    for _ in range(20):
        val1, val2 = rng.standard_normal(2) * 10
        assert np.isclose(
            hmcbridge.utils.log_sum_exp(val1, val2), np.logaddexp(val1, val2))


def test_log_sum_exp_with_infinite_values():
    assert hmcbridge.utils.log_sum_exp(-inf, -inf) == -inf
    assert hmcbridge.utils.log_sum_exp(-inf, 1.) == 1.
    assert hmcbridge.utils.log_sum_exp(2., -inf) == 2.


def test_log_sum_exp_large_values():
    assert np.isclose(
        hmcbridge.utils.log_sum_exp(1e4, 1e4), 1e4 + log(2))


@pytest.mark.parametrize(
    'log_num,log_denom,expected', (
        (0., 0., 1.),
        (1., 0., 1.),
        (0., 1., exp(-1.)),
        (-inf, 0., 0.),
        (0., -inf, 0.),
        (-inf, -inf, 0.),
    ))
def test_log_ratio_to_prob(log_num, log_denom, expected):
    assert np.isclose(
        hmcbridge.utils.log_ratio_to_prob(log_num, log_denom), expected)
