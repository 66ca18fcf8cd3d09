"""Utility functions."""

from math import exp, inf, log1p


def log1p_exp(val):
    """Numerically stable implementation of `log(1 + exp(val))`."""
    if val > 0.:
        return val + log1p(exp(-val))
    else:
        return log1p(exp(val))


def log_sum_exp(val1, val2):
    """Numerically stable implementation of `log(exp(val1) + exp(val2))`."""
    if val1 == -inf and val2 == -inf:
        return -inf
    elif val1 > val2:
        return val1 + log1p_exp(val2 - val1)
    else:
        return val2 + log1p_exp(val1 - val2)


def log_ratio_to_prob(log_numerator, log_denominator):
    """Probability `min(1, exp(log_numerator - log_denominator))`.

    A zero denominator (i.e. `log_denominator == -inf`) gives probability zero.
    """
    if log_denominator == -inf or log_numerator == -inf:
        return 0.
    log_ratio = log_numerator - log_denominator
    return 1. if log_ratio >= 0 else exp(log_ratio)
