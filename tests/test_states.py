import pytest
from unittest.mock import Mock
from itertools import combinations
import pickle
import numpy as np
import hmcbridge


def _bind_with_decorator(instance, name, func, decorator):
    """Bind func decorated with decorator as a method of instance and return.

    Based on https://stackoverflow.com/a/1015405
    """
    func.__name__ = name
    decorated_func = decorator(func)
    bound_method = decorated_func.__get__(instance, instance.__class__)
    setattr(instance, name, bound_method)
    return bound_method


@pytest.fixture
def state_vars():
    return {'spam': np.array([0.5, -1.]), 'ham': np.array(1.), 'eggs': -2.}


def test_state_construction(state_vars):
    state = hmcbridge.states.ChainState(**state_vars)
    for key, val in state_vars.items():
        assert hasattr(state, key)
        assert getattr(state, key) is val


def test_state_missing_attribute_raises(state_vars):
    state = hmcbridge.states.ChainState(**state_vars)
    with pytest.raises(AttributeError):
        state.bacon


def test_state_copy(state_vars):
    state = hmcbridge.states.ChainState(**state_vars)
    state_copy = state.copy()
    for key, val in state_vars.items():
        assert hasattr(state_copy, key)
        assert np.all(getattr(state_copy, key) == val)


def test_state_copy_independent(state_vars):
    state = hmcbridge.states.ChainState(**state_vars)
    state_copy = state.copy()
    for key, val in state_vars.items():
        attr = getattr(state_copy, key)
        attr *= 2
        assert np.all(getattr(state, key) == val)


def test_state_copy_independent_cache(state_vars):
    state = hmcbridge.states.ChainState(**state_vars)
    state._cache['key'] = 1
    state_copy = state.copy()
    assert state_copy._cache['key'] == 1
    state_copy._cache['key'] = 2
    assert state._cache['key'] == 1


def test_state_contains(state_vars):
    state = hmcbridge.states.ChainState(**state_vars)
    for key in state_vars.keys():
        assert key in state
    assert 'bacon' not in state


def test_state_read_only(state_vars):
    state = hmcbridge.states.ChainState(**state_vars, _read_only=True)
    assert state.read_only
    for key in state_vars.keys():
        with pytest.raises(hmcbridge.errors.ReadOnlyStateError):
            setattr(state, key, None)


def test_state_copy_read_only(state_vars):
    state = hmcbridge.states.ChainState(**state_vars)
    state_copy = state.copy(read_only=True)
    for key in state_vars.keys():
        with pytest.raises(hmcbridge.errors.ReadOnlyStateError):
            setattr(state_copy, key, None)


def test_state_copy_of_read_only_is_writable(state_vars):
    state = hmcbridge.states.ChainState(**state_vars, _read_only=True)
    state_copy = state.copy()
    assert not state_copy.read_only
    state_copy.eggs = 1.
    assert state.eggs == state_vars['eggs']


def test_state_pickling(state_vars):
    state = hmcbridge.states.ChainState(**state_vars)
    pickled_state = pickle.dumps(state)
    unpickled_state = pickle.loads(pickled_state)
    assert isinstance(unpickled_state, hmcbridge.states.ChainState)
    for key, val in state_vars.items():
        assert hasattr(unpickled_state, key)
        assert np.all(getattr(unpickled_state, key) == val)


def test_state_to_string(state_vars):
    state = hmcbridge.states.ChainState(**state_vars)
    assert isinstance(str(state), str)


def test_state_representation(state_vars):
    state = hmcbridge.states.ChainState(**state_vars)
    assert isinstance(repr(state), str)


def _mock_memoized_system_methods(system, state_vars):
    for var_name in state_vars.keys():
        name = f'{var_name}_method'
        func = lambda state, var_name=var_name: 2 * getattr(state, var_name)
        mocked_method = Mock(
            wraps=lambda self, state, func=func: func(state), name=name)
        bound_memoized_method = _bind_with_decorator(
            system, name, mocked_method,
            hmcbridge.states.cache_in_state(var_name))
        yield (var_name,), name, func, mocked_method, bound_memoized_method
    for var_names in combinations(state_vars.keys(), 2):
        name = f'{var_names[0]}_{var_names[1]}_method'
        func = lambda state, var_names=var_names: (
            getattr(state, var_names[0]) + getattr(state, var_names[1]))
        mocked_method = Mock(
            wraps=lambda self, state, func=func: func(state), name=name)
        bound_memoized_method = _bind_with_decorator(
            system, name, mocked_method,
            hmcbridge.states.cache_in_state(*var_names))
        yield var_names, name, func, mocked_method, bound_memoized_method


def test_cache_in_state(state_vars):
    system = Mock(name='MockSystem')
    state = hmcbridge.states.ChainState(**state_vars)
    for var_names, name, func, mocked_method, bound_memoized_method in (
            _mock_memoized_system_methods(system, state_vars)):
        assert mocked_method.call_count == 0, (
            'method to be memoized should not be called by decorator')
        ret_val_1 = bound_memoized_method(state)
        assert np.all(ret_val_1 == func(state)), (
            'return value of memoized method should be same as func')
        assert mocked_method.call_count == 1, (
            'memoized method should be executed once on initial call')
        cache_key = hmcbridge.states._cache_key(system, name)
        assert cache_key in state._cache, (
            f'state cache dict should contain {cache_key}')
        assert state._cache[cache_key] is ret_val_1, (
            f'cached value for key {cache_key} is incorrect')
        ret_val_2 = bound_memoized_method(state)
        assert mocked_method.call_count == 1, (
            'memoized method should not be executed again on second call')
        assert ret_val_1 is ret_val_2, (
            'state cache should return same value when state unchanged')
        for var_name in var_names:
            setattr(state, var_name, state_vars[var_name])
            assert state._cache[cache_key] is None, (
                f'cached value for key {cache_key} should be None')
        ret_val_3 = bound_memoized_method(state)
        assert mocked_method.call_count == 2, (
            f'memoized method should be recalled after {var_names} update')
        assert np.all(ret_val_3 == func(state)), (
            'return value of memoized method should be same as unmemoized')


def test_cache_in_state_with_aux(state_vars):
    system = Mock(name='MockSystem')
    state = hmcbridge.states.ChainState(**state_vars)
    prim_method = Mock(
        wraps=lambda self, state: (2 * state.spam, -state.spam),
        name='prim_method')
    aux_method = Mock(
        wraps=lambda self, state: -state.spam, name='aux_method')
    bound_prim_method = _bind_with_decorator(
        system, 'prim_method', prim_method,
        hmcbridge.states.cache_in_state_with_aux('spam', 'aux_method'))
    bound_aux_method = _bind_with_decorator(
        system, 'aux_method', aux_method,
        hmcbridge.states.cache_in_state('spam'))
    ret_val = bound_prim_method(state)
    assert np.all(ret_val == 2 * state_vars['spam'])
    assert prim_method.call_count == 1
    aux_ret_val = bound_aux_method(state)
    assert aux_method.call_count == 0, (
        'auxiliary output should be taken from cache')
    assert np.all(aux_ret_val == -state_vars['spam'])
    state.spam = state_vars['spam'] * 2
    assert state._cache[hmcbridge.states._cache_key(system, 'prim_method')] is None
    assert state._cache[hmcbridge.states._cache_key(system, 'aux_method')] is None
    aux_ret_val = bound_aux_method(state)
    assert aux_method.call_count == 1
    assert np.all(aux_ret_val == -2 * state_vars['spam'])


def test_cache_shared_between_systems_with_same_token(state_vars):
    system_1 = Mock(name='MockSystem', cache_token=1)
    system_2 = Mock(name='MockSystem', cache_token=1)
    system_3 = Mock(name='MockSystem', cache_token=2)
    method = Mock(wraps=lambda self, state: 2 * state.spam, name='method')
    state = hmcbridge.states.ChainState(**state_vars)
    bound_methods = [
        _bind_with_decorator(
            system, 'method', method, hmcbridge.states.cache_in_state('spam'))
        for system in (system_1, system_2, system_3)]
    bound_methods[0](state)
    bound_methods[1](state)
    assert method.call_count == 1
    bound_methods[2](state)
    assert method.call_count == 2
