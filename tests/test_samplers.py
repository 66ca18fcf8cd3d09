import logging
import numpy as np
import numpy.testing as npt
import pytest
import hmcbridge
from hmcbridge.engine import NUTS, StaticHMC, WarmUpResults, WarmUpState
from hmcbridge.errors import TransformError, WarmupDivergence
from hmcbridge.models import Model, Variable
from hmcbridge.parameters import ParameterSpace
from hmcbridge.samplers import (
    DynamicNUTS, DynamicNUTSState, Transition, externalsampler, sample_chain,
    sample_chains, _state_from_warm_up)
from hmcbridge.transforms import LogTransform

SEED = 3046987125
N_WARM_UP_ITER = 100


def standard_normal_log_joint(values):
    return -values['x']**2 / 2


def standard_normal_grad_log_joint(values):
    return {'x': -values['x']}


def exponential_log_joint(values):
    return -values['rate']


def exponential_grad_log_joint(values):
    return {'rate': -np.ones_like(values['rate'])}


@pytest.fixture
def rng():
    return np.random.default_rng(SEED)


@pytest.fixture(params=('Generator(PCG64)', 'Generator(SFC64)', 'RandomState'))
def base_rng(request):
    if request.param == 'Generator(PCG64)':
        return np.random.Generator(np.random.PCG64(SEED))
    elif request.param == 'Generator(SFC64)':
        return np.random.Generator(np.random.SFC64(SEED))
    else:
        return np.random.RandomState(SEED)


@pytest.fixture
def normal_model():
    return Model(
        [('x', Variable())], standard_normal_log_joint,
        standard_normal_grad_log_joint)


@pytest.fixture
def exponential_model():
    return Model(
        [('rate', Variable((), LogTransform()))], exponential_log_joint,
        exponential_grad_log_joint)


@pytest.fixture
def two_variable_model():
    return Model(
        [('x', Variable()), ('y', Variable((2,)))],
        lambda values: -values['x']**2 / 2 - np.sum(values['y']**2) / 2,
        lambda values: {'x': -values['x'], 'y': -values['y']})


@pytest.fixture(params=(NUTS(), StaticHMC(5)))
def algorithm(request):
    return request.param


@pytest.fixture
def config(algorithm):
    return DynamicNUTS(algorithm, backend=None, n_warm_up_iter=N_WARM_UP_ITER)


def test_get_per_chain_rngs(base_rng):
    rngs = hmcbridge.samplers._get_per_chain_rngs(base_rng, 4)
    for i, rng in enumerate(rngs):
        assert isinstance(rng, np.random.Generator)
        if i != 0:
            assert rng is not rngs[i - 1]


def test_get_per_chain_rngs_raises():
    with pytest.raises(ValueError, match='Unsupported random number generator'):
        hmcbridge.samplers._get_per_chain_rngs(None, 4)


class TestDynamicNUTSConfig:

    def test_defaults(self):
        config = DynamicNUTS()
        assert config.sampler == NUTS()
        assert config.space == ()
        assert config.backend is None
        assert config.adapt_stat_target == 0.8
        assert config.n_warm_up_iter == 900
        assert config.metric_kind == 'diagonal'

    def test_warm_up_config(self):
        config = DynamicNUTS(
            adapt_stat_target=0.65, n_warm_up_iter=200, metric_kind='dense')
        warm_up_config = config.warm_up_config
        assert warm_up_config.n_iter == 200
        assert warm_up_config.adapt_stat_target == 0.65
        assert warm_up_config.metric_kind == 'dense'

    def test_externalsampler(self):
        config = externalsampler(StaticHMC(3), backend=None, space=['x'])
        assert isinstance(config, DynamicNUTS)
        assert config.sampler == StaticHMC(3)
        assert config.space == ('x',)
        assert config.backend is None

    @pytest.mark.parametrize('kwargs', (
        {'sampler': 'nuts'},
        {'adapt_stat_target': 1.5},
        {'adapt_stat_target': 0.},
        {'n_warm_up_iter': 0},
        {'metric_kind': 'spam'},
        {'backend': 'spam'},
        {'max_init_attempts': 0},
    ))
    def test_invalid_arguments_raise(self, kwargs):
        with pytest.raises(ValueError):
            DynamicNUTS(**kwargs)

    def test_repr(self):
        assert repr(DynamicNUTS()).startswith('DynamicNUTS(')

    def test_repr_distinguishes_configs(self):
        config_1 = DynamicNUTS(max_init_attempts=3)
        config_2 = DynamicNUTS(max_init_attempts=5)
        assert 'max_init_attempts=3' in repr(config_1)
        assert repr(config_1) != repr(config_2)


def test_initial_step(rng, normal_model, config):
    transition, state = config.initial_step(rng, normal_model)
    assert isinstance(transition, Transition)
    assert isinstance(state, DynamicNUTSState)
    assert set(transition.params) == {'x'}
    assert np.isfinite(transition.log_density)
    assert isinstance(
        state.log_density, hmcbridge.logdensity.LogDensityOracle)
    assert isinstance(
        state.metric, hmcbridge.metrics.PositiveDiagonalMatrix)
    assert state.step_size > 0
    assert state.params.is_linked()
    assert state.params.logp == transition.log_density
    npt.assert_array_equal(state.cache.pos, state.params.vector())


def test_initial_step_with_initial_draw(rng, normal_model, config):
    transition, state = config.initial_step(rng, normal_model, {'x': 0.5})
    assert np.isfinite(transition.log_density)
    params = ParameterSpace.from_values(normal_model, {'x': 0.5})
    transition, state = config.initial_step(rng, normal_model, params)
    assert np.isfinite(transition.log_density)


def test_step_shares_calibrated_values(rng, normal_model, config):
    _, state = config.initial_step(rng, normal_model)
    init_state = state
    for _ in range(5):
        transition, state = config.step(rng, normal_model, state)
        assert state.log_density is init_state.log_density
        assert state.metric is init_state.metric
        assert state.step_size == init_state.step_size
        assert np.isfinite(transition.log_density)
        assert not np.isnan(transition.log_density)


def test_step_does_not_modify_state(rng, normal_model, config):
    _, state = config.initial_step(rng, normal_model)
    params = state.params
    cache = state.cache
    x = params.values['x'].copy()
    for _ in range(5):
        config.step(rng, normal_model, state)
    assert state.params is params
    assert state.cache is cache
    npt.assert_array_equal(state.params.values['x'], x)


def test_transition_stats(rng, normal_model, config, algorithm):
    transition, _ = config.initial_step(rng, normal_model)
    assert 'accept_stat' in transition.stats
    assert 'diverging' in transition.stats
    if isinstance(algorithm, StaticHMC):
        assert transition.stats['n_step'] == algorithm.n_step
    else:
        assert 'tree_depth' in transition.stats


def test_sample_chain_deterministic(normal_model, config):
    transitions = [
        sample_chain(np.random.default_rng(SEED), normal_model, config, 10)
        for _ in range(2)]
    for t_0, t_1 in zip(*transitions):
        assert t_0.params['x'] == t_1.params['x']
        assert t_0.log_density == t_1.log_density


def test_sample_chain_n_draw(rng, normal_model, config):
    assert len(sample_chain(rng, normal_model, config, 7)) == 7
    with pytest.raises(ValueError):
        sample_chain(rng, normal_model, config, 0)


def test_initial_step_deterministic(normal_model, config):
    results = [
        config.initial_step(np.random.default_rng(SEED), normal_model)
        for _ in range(2)]
    (transition_0, state_0), (transition_1, state_1) = results
    assert transition_0.params['x'] == transition_1.params['x']
    assert transition_0.log_density == transition_1.log_density
    assert state_0.step_size == state_1.step_size
    npt.assert_array_equal(state_0.metric.array, state_1.metric.array)
    npt.assert_array_equal(state_0.cache.pos, state_1.cache.pos)
    assert state_0.cache.log_dens == state_1.cache.log_dens


def test_standard_normal_moments(rng, normal_model):
    config = DynamicNUTS()
    _, state = config.initial_step(rng, normal_model)
    x = []
    for _ in range(500):
        transition, state = config.step(rng, normal_model, state)
        x.append(transition.params['x'])
    x = np.array(x)
    assert abs(x.mean()) < 0.1
    assert abs(x.var() - 1) < 0.2


@pytest.fixture
def autograd_unavailable(monkeypatch):
    backends = hmcbridge.autodiff._REGISTERED_BACKENDS
    monkeypatch.setitem(
        backends, 'autograd', backends['autograd']._replace(available=False))


def test_default_backend_uses_model_gradient(
        rng, normal_model, autograd_unavailable):
    config = DynamicNUTS(n_warm_up_iter=N_WARM_UP_ITER)
    transition, state = config.initial_step(rng, normal_model)
    assert state.log_density.backend is None
    assert np.isfinite(transition.log_density)
    transition, state = config.step(rng, normal_model, state)
    assert np.isfinite(transition.log_density)


def test_default_backend_without_gradient_or_autograd_raises(
        rng, autograd_unavailable):
    model = Model([('x', Variable())], standard_normal_log_joint)
    config = DynamicNUTS(n_warm_up_iter=N_WARM_UP_ITER)
    with pytest.raises(ValueError, match='grad_log_joint'):
        config.initial_step(rng, model)


@pytest.mark.skipif(
    not hmcbridge.autograd_wrapper.AUTOGRAD_AVAILABLE,
    reason='autograd not available')
def test_default_backend_without_gradient_uses_autograd(rng):
    model = Model([('x', Variable())], standard_normal_log_joint)
    config = DynamicNUTS(n_warm_up_iter=N_WARM_UP_ITER)
    transition, state = config.initial_step(rng, model)
    assert state.log_density.backend.name == 'autograd'
    assert np.isfinite(transition.log_density)


def test_constrained_variable_draws(rng, exponential_model):
    config = DynamicNUTS(backend=None, n_warm_up_iter=300)
    transitions = sample_chain(rng, exponential_model, config, 500)
    rate = np.array([t.params['rate'] for t in transitions])
    assert np.all(rate > 0)
    assert abs(rate.mean() - 1) < 0.3


@pytest.mark.parametrize('metric_kind,metric_type', (
    ('diagonal', hmcbridge.metrics.PositiveDiagonalMatrix),
    ('dense', hmcbridge.metrics.DensePositiveDefiniteMatrix),
    ('identity', hmcbridge.metrics.IdentityMatrix),
))
def test_metric_kind(rng, two_variable_model, metric_kind, metric_type):
    config = DynamicNUTS(
        backend=None, n_warm_up_iter=N_WARM_UP_ITER, metric_kind=metric_kind)
    _, state = config.initial_step(rng, two_variable_model)
    assert isinstance(state.metric, metric_type)
    assert state.metric.shape == (3, 3)
    assert np.all(np.linalg.eigvalsh(state.metric.array) > 0)


def test_subset_sampling_leaves_other_variables_fixed(rng, two_variable_model):
    config = DynamicNUTS(
        space=['x'], backend=None, n_warm_up_iter=N_WARM_UP_ITER)
    initial_draw = {'x': 0.5, 'y': np.array([3., -1.])}
    transition, state = config.initial_step(
        rng, two_variable_model, initial_draw)
    assert state.params.linked == frozenset(['x'])
    assert state.log_density.dimension == 1
    xs = [transition.params['x']]
    for _ in range(10):
        transition, state = config.step(rng, two_variable_model, state)
        npt.assert_array_equal(transition.params['y'], initial_draw['y'])
        xs.append(transition.params['x'])
    assert len(set(float(x) for x in xs)) > 1


def test_out_of_support_initial_draw_raises(rng, exponential_model, config):
    with pytest.raises(TransformError):
        config.initial_step(rng, exponential_model, {'rate': -1.})


def test_isolated_point_density_raises(rng, config):
    model = Model(
        [('x', Variable())],
        lambda values: 0. if values['x'] == 1. else -np.inf,
        lambda values: {'x': np.zeros_like(values['x'])})
    with pytest.raises(WarmupDivergence):
        config.initial_step(rng, model, {'x': 1.})


def test_uniform_initialisation_retries(rng):
    model = Model(
        [('x', Variable())],
        lambda values: -values['x']**2 / 2 if values['x'] > 0 else -np.inf,
        lambda values: {'x': -values['x']})
    config = DynamicNUTS(backend=None, n_warm_up_iter=N_WARM_UP_ITER)
    transition, _ = config.initial_step(rng, model)
    assert transition.params['x'] > 0
    assert np.isfinite(transition.log_density)


def test_uniform_initialisation_exhausted_raises(rng, caplog):
    model = Model(
        [('x', Variable())], lambda values: -np.inf,
        lambda values: {'x': np.zeros_like(values['x'])})
    config = DynamicNUTS(
        backend=None, n_warm_up_iter=N_WARM_UP_ITER, max_init_attempts=3)
    with caplog.at_level(logging.WARNING, logger='hmcbridge.samplers'):
        with pytest.raises(WarmupDivergence):
            config.initial_step(rng, model)
    assert sum(
        record.levelno == logging.WARNING for record in caplog.records) == 3


def test_state_from_warm_up():
    q = object()
    metric = hmcbridge.metrics.IdentityMatrix(2)
    log_density = object()
    params = object()
    cache = object()
    warm_up_results = WarmUpResults(
        final_warm_up_state=WarmUpState(q=q, metric=metric, step_size=0.25),
        sampling_log_density=log_density, draws=[], warm_up_stats={})
    state = _state_from_warm_up(warm_up_results, params, cache)
    assert state == DynamicNUTSState(
        log_density=log_density, params=params, cache=cache, metric=metric,
        step_size=0.25)


@pytest.mark.skipif(
    not hmcbridge.autograd_wrapper.AUTOGRAD_AVAILABLE,
    reason='autograd not available')
def test_autograd_backend(rng):
    model = Model(
        [('x', Variable()), ('rate', Variable((), LogTransform()))],
        lambda values: -values['x']**2 / 2 - values['rate'])
    config = DynamicNUTS(backend='autograd', n_warm_up_iter=N_WARM_UP_ITER)
    transitions = sample_chain(rng, model, config, 20)
    for transition in transitions:
        assert transition.params['rate'] > 0
        assert np.isfinite(transition.log_density)


@pytest.mark.parametrize('n_process', (1, 2))
def test_sample_chains(rng, normal_model, config, n_process):
    chains = sample_chains(
        rng, normal_model, config, 5, 2, n_process=n_process)
    assert len(chains) == 2
    for chain in chains:
        assert len(chain) == 5
        for transition in chain:
            assert np.isfinite(transition.log_density)


def test_sample_chains_reproducible(normal_model, config):
    chains = [
        sample_chains(np.random.default_rng(SEED), normal_model, config, 5, 2)
        for _ in range(2)]
    for chain_0, chain_1 in zip(*chains):
        for t_0, t_1 in zip(chain_0, chain_1):
            assert t_0.params['x'] == t_1.params['x']


def test_sample_chains_initial_draws_length_mismatch_raises(
        rng, normal_model, config):
    with pytest.raises(ValueError):
        sample_chains(
            rng, normal_model, config, 5, 2, initial_draws=[{'x': 0.}])
