"""Chain state objects which memoise derived quantities between engine calls."""

import copy
from functools import wraps
from hmcbridge.errors import ReadOnlyStateError


def _cache_key(system, method_name):
    """Key identifying a system method output in a state cache.

    Keyed on the system's `cache_token` rather than the system object itself
    so that a state produced by one system instance can have its cached
    values reused by another instance wrapping the same log density.
    """
    return (f'{type(system).__name__}.{method_name}', system.cache_token)


def _register(state, key, depends_on):
    if key not in state._cache:
        for dep in depends_on:
            state._dependencies[dep].add(key)


def cache_in_state(*depends_on):
    """Memoizing decorator for system methods.

    The decorated method computes a function of one or more state variables.
    The value is stored in the state object on first call and reused until
    one of the variables named in `depends_on` is reassigned.

    Args:
       *depends_on: Names of the state variables (e.g. `'pos'`, `'mom'`) the
           value returned by the method depends on.
    """
    def cache_in_state_decorator(method):
        @wraps(method)
        def wrapper(self, state):
            key = _cache_key(self, method.__name__)
            _register(state, key, depends_on)
            if state._cache.get(key) is None:
                state._cache[key] = method(self, state)
            return state._cache[key]
        return wrapper
    return cache_in_state_decorator


def cache_in_state_with_aux(depends_on, auxiliary_outputs):
    """Memoizing decorator for system methods which also return other outputs.

    Variant of `cache_in_state` for methods which compute the output of another
    memoised method as a by-product, for example a gradient computed by
    reverse-mode automatic differentiation which also yields the value being
    differentiated. The wrapped method should return a tuple with the primary
    output first followed by the auxiliary outputs in the order given in
    `auxiliary_outputs`; each auxiliary output is then stored under the cache
    key of the method with the same name.

    Args:
        depends_on (str or Tuple[str]): Names of state variables the outputs
            depend on.
        auxiliary_outputs (str or Tuple[str]): Names of the memoised methods
            whose values are returned as auxiliary outputs.
    """
    if isinstance(depends_on, str):
        depends_on = (depends_on,)
    if isinstance(auxiliary_outputs, str):
        auxiliary_outputs = (auxiliary_outputs,)

    def cache_in_state_with_aux_decorator(method):
        @wraps(method)
        def wrapper(self, state):
            prim_key = _cache_key(self, method.__name__)
            keys = [prim_key] + [
                _cache_key(self, name) for name in auxiliary_outputs]
            for key in keys:
                _register(state, key, depends_on)
            if state._cache.get(prim_key) is None:
                for key, val in zip(keys, method(self, state)):
                    state._cache[key] = val
            return state._cache[prim_key]
        return wrapper

    return cache_in_state_with_aux_decorator


class ChainState(object):
    """Engine state of a Markov chain.

    Records the state variables (position `pos`, momentum `mom` and
    integration direction `dir`) together with a cache of quantities derived
    from them, such as the log density and its gradient at `pos`. Assigning to
    a variable invalidates the cached values which depend on it.

    States handed out of the engine are read-only; they are copied before
    being advanced so a state is never modified once another component holds
    a reference to it.
    """

    def __init__(self, *, _read_only=False, _dependencies=None, _cache=None,
                 **variables):
        """Create a new `ChainState` instance.

        Kwargs:
            **variables: State variables, e.g. `pos=..., mom=..., dir=1`.
                Names must not begin with an underscore and `copy` is
                reserved.
            _read_only (bool): If `True` assigning to any state variable
                raises `hmcbridge.errors.ReadOnlyStateError`.
            _dependencies (None or Dict[str, Set]): Internal. Mapping from
                variable names to the cache keys depending on that variable.
            _cache (None or Dict): Internal. Cached method outputs.
        """
        # Write directly to __dict__ as __setattr__ depends on these entries
        self.__dict__['_variables'] = variables
        if _dependencies is None:
            _dependencies = {name: set() for name in variables}
        self.__dict__['_dependencies'] = _dependencies
        self.__dict__['_cache'] = {} if _cache is None else _cache
        self.__dict__['_read_only'] = _read_only

    def __getattr__(self, name):
        if name in self._variables:
            return self._variables[name]
        else:
            raise AttributeError(
                f"'{type(self).__name__}' object has no attribute '{name}'")

    def __setattr__(self, name, value):
        if self._read_only:
            raise ReadOnlyStateError('ChainState instance is read-only.')
        if name in self._variables:
            self._variables[name] = value
            for key in self._dependencies[name]:
                self._cache[key] = None
        else:
            return super().__setattr__(name, value)

    def __contains__(self, name):
        return name in self._variables

    @property
    def read_only(self):
        """Whether assigning to state variables is disallowed."""
        return self._read_only

    def copy(self, read_only=False):
        """Create a copy of the state with independent variable values.

        Cached values are carried over to the copy so no derived quantity
        is recomputed for an unchanged position.

        Args:
            read_only (bool): Whether the copy should be read-only.

        Returns:
            state_copy (ChainState): The copied state.
        """
        return type(self)(
            _dependencies=self._dependencies, _cache=self._cache.copy(),
            _read_only=read_only,
            **{name: copy.copy(val) for name, val in self._variables.items()})

    def __str__(self):
        return (
            '(\n ' +
            ',\n '.join([f'{k}={v}' for k, v in self._variables.items()]) +
            ')'
        )

    def __repr__(self):
        return type(self).__name__ + str(self)

    def __getstate__(self):
        return {
            'variables': self._variables,
            'dependencies': self._dependencies,
            'cache': {k: v for k, v in self._cache.items() if not callable(v)},
            'read_only': self._read_only}

    def __setstate__(self, state):
        self.__dict__['_variables'] = state['variables']
        self.__dict__['_dependencies'] = state['dependencies']
        self.__dict__['_cache'] = state['cache']
        self.__dict__['_read_only'] = state['read_only']
