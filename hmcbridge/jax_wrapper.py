"""JAX differential operators and helper functions."""

import numpy

JAX_AVAILABLE = True
try:
    import jax
    import jax.numpy as np
except ImportError:
    JAX_AVAILABLE = False
    np = None


def jit_and_return_numpy_arrays(function):
    """Wrap a JIT compiled function returning JAX arrays to return NumPy arrays.

    Args:
        function (Callable): Function to JIT compile and wrap. Should return a
            single JAX array or a tuple of JAX arrays.

    Returns:
        Callable: Wrapped function, with any JAX arrays in its return value
            converted to NumPy arrays.
    """
    return return_numpy_arrays(jax.jit(function))


def return_numpy_arrays(function):
    """Wrap a function returning JAX arrays to instead return NumPy arrays.

    Args:
        function (Callable): Function to wrap. Should return a single JAX
            array or a tuple of JAX arrays.

    Returns:
        Callable: Wrapped function, with any JAX arrays in its return value
            converted to NumPy arrays.
    """
    def as_numpy_array(value):
        return numpy.asarray(value) if isinstance(value, jax.Array) else value

    def function_returning_numpy_arrays(*args, **kwargs):
        return_value = function(*args, **kwargs)
        if isinstance(return_value, tuple):
            return tuple(as_numpy_array(value) for value in return_value)
        return as_numpy_array(return_value)

    return function_returning_numpy_arrays


def grad_and_value(func):
    """Makes a function that returns both the gradient and value of a function."""
    def grad_and_value_func(x):
        value, grad = jax.value_and_grad(func)(x)
        return grad, value
    return grad_and_value_func
