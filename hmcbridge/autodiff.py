"""Automatic differentiation backends for constructing gradient functions.

Backends are selected explicitly by passing either an `AutodiffBackend` handle
or the name of a registered backend. There is no process wide default: each
log density oracle holds the handle it was constructed with.

Registered backends:

* `autograd`: Autograd differentiates native Python and NumPy code. Functions
  to differentiate should be written using the `autograd.numpy` API.
* `jax`: JAX, with the gradient functions just-in-time (JIT) compiled.
  Functions to differentiate should be written using the `jax.numpy` API.
* `jax_nojit`: As `jax` but without JIT compilation, for functions not
  compatible with it.
"""

from collections import namedtuple
import numpy
import hmcbridge.autograd_wrapper as autograd_wrapper
import hmcbridge.jax_wrapper as jax_wrapper


AutodiffBackend = namedtuple(
    'AutodiffBackend', ['name', 'module', 'available', 'function_wrapper'],
    defaults=(None,))
AutodiffBackend.__doc__ = """Automatic differentiation backend framework.

Consists of the name of the backend, a wrapper module defining the
differential operators and the NumPy compatible API `np` functions to
differentiate are written with, a flag indicating if the framework is
available in the current environment and optionally a function wrapper which
applies any post processing required to the derivative functions.
"""


_REGISTERED_BACKENDS = {
    'autograd': AutodiffBackend(
        'autograd', autograd_wrapper, autograd_wrapper.AUTOGRAD_AVAILABLE),
    'jax': AutodiffBackend(
        'jax', jax_wrapper, jax_wrapper.JAX_AVAILABLE,
        jax_wrapper.jit_and_return_numpy_arrays),
    'jax_nojit': AutodiffBackend(
        'jax_nojit', jax_wrapper, jax_wrapper.JAX_AVAILABLE,
        jax_wrapper.return_numpy_arrays),
}


def get_backend(backend):
    """Resolve a backend name or handle to a registered backend handle.

    Args:
        backend (str or AutodiffBackend): Name of registered backend (case
            insensitive) or a backend handle, which is returned unchanged.

    Returns:
        AutodiffBackend: Backend handle.

    Raises:
        ValueError: If `backend` is not the name of a registered backend.
    """
    if isinstance(backend, AutodiffBackend):
        return backend
    name = str(backend).lower()
    if name not in _REGISTERED_BACKENDS:
        raise ValueError(
            f'Selected autodiff backend {backend} not recognised: available '
            f'options are {tuple(_REGISTERED_BACKENDS)}.')
    return _REGISTERED_BACKENDS[name]


def _check_available(backend):
    if not backend.available:
        raise ValueError(
            f'{backend.name} selected as autodiff backend but is not '
            f'available in current environment.')


def numpy_module(backend):
    """NumPy compatible module to write functions differentiated by a backend.

    Args:
        backend (None or str or AutodiffBackend): Backend handle or name. If
            `None` the `numpy` module itself is returned.

    Returns:
        module: NumPy API module.
    """
    if backend is None:
        return numpy
    backend = get_backend(backend)
    _check_available(backend)
    return backend.module.np


def grad_and_value(backend, func):
    """Construct function returning gradient and value of a scalar function.

    Args:
        backend (str or AutodiffBackend): Backend handle or name.
        func (Callable[[array], float]): Function to differentiate.

    Returns:
        Callable[[array], Tuple[array, float]]: Function returning the
            gradient of `func` and its value at an array argument.

    Raises:
        ValueError: If the backend is not recognised or not available.
    """
    backend = get_backend(backend)
    _check_available(backend)
    diff_func = backend.module.grad_and_value(func)
    if backend.function_wrapper is not None:
        return backend.function_wrapper(diff_func)
    return diff_func


def backend_or_fallback(backend, explicit_gradient):
    """Backend used to compute gradients, falling back to autograd if needed.

    An explicitly selected backend is always used. Otherwise the explicit
    gradient is used if one was provided, and autograd only if not.

    Args:
        backend (None or str or AutodiffBackend): Selected backend handle or
            name, or `None` if no backend was selected.
        explicit_gradient (bool): Whether an explicit gradient function is
            available.

    Returns:
        None or AutodiffBackend: Backend handle, or `None` if the explicit
            gradient is to be used.

    Raises:
        ValueError: If no backend was selected, no explicit gradient is
            available and autograd is not available.
    """
    if backend is not None:
        return get_backend(backend)
    elif explicit_gradient:
        return None
    elif _REGISTERED_BACKENDS['autograd'].available:
        return _REGISTERED_BACKENDS['autograd']
    else:
        raise ValueError(
            'Autograd not available therefore grad_log_joint must be '
            'provided.')
