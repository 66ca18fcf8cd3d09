"""Autograd differential operators."""

AUTOGRAD_AVAILABLE = True
try:
    import autograd.numpy as np
    from autograd.core import make_vjp
    from autograd.extend import vspace
except ImportError:
    AUTOGRAD_AVAILABLE = False
    np = None


def grad_and_value(func):
    """Makes a function that returns both gradient and value of a function."""
    def grad_and_value_func(x):
        vjp, val = make_vjp(func, x)
        if vspace(val).size != 1:
            raise TypeError('grad_and_value only applies to real scalar-output '
                            'functions.')
        return vjp(vspace(val).ones()), val
    return grad_and_value_func
