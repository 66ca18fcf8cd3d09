"""Step-wise sampler interface to the adaptive Hamiltonian Monte Carlo engine.

A chain is started by `initial_step`, which links the sampled variables to
unconstrained space, builds the log density oracle, runs the complete
adaptive warm up once and takes a first transition with the calibrated metric
and step size. The chain is then advanced one transition at a time by `step`,
with the oracle, metric, step size and the evaluation cache of the current
position threaded between calls in a `DynamicNUTSState`.
"""

from collections import namedtuple
from contextlib import contextmanager, nullcontext
from pickle import PicklingError
import logging
import numpy as np
from numpy.random import default_rng
from hmcbridge.engine import (
    NUTS, StaticHMC, WarmUpConfig, METRIC_KINDS, mcmc_keep_warm_up, mcmc_steps,
    mcmc_next_step)
from hmcbridge.parameters import ParameterSpace
from hmcbridge.logdensity import LogDensityFunction, LogDensityOracle
import hmcbridge.autodiff as autodiff

# Preferentially import from multiprocess library if available as able to
# serialize much wider range of types including autograd functions
try:
    from multiprocess import Pool
    MULTIPROCESS_AVAILABLE = True
except ImportError:
    from multiprocessing import Pool
    MULTIPROCESS_AVAILABLE = False

try:
    from threadpoolctl import threadpool_limits
    THREADPOOLCTL_AVAILABLE = True
except ImportError:
    THREADPOOLCTL_AVAILABLE = False

logger = logging.getLogger(__name__)


DynamicNUTSState = namedtuple(
    'DynamicNUTSState',
    ['log_density', 'params', 'cache', 'metric', 'step_size'])
DynamicNUTSState.__doc__ = """State of a chain between sampler calls.

`log_density` is the chain's `hmcbridge.logdensity.LogDensityOracle`,
`params` the current `hmcbridge.parameters.ParameterSpace`, `cache` the
`hmcbridge.engine.EvaluatedPosition` of the current position and `metric`
and `step_size` the values calibrated during warm up. The oracle, metric and
step size objects are shared by every state of a chain.
"""

Transition = namedtuple('Transition', ['params', 'log_density', 'stats'])
Transition.__doc__ = """Draw reported to the caller for recording.

`params` is a dictionary of constrained variable values, `log_density` the
log density at the unconstrained position and `stats` the statistics of the
transition which produced the draw.
"""


class DynamicNUTS(object):
    """Configuration of an adaptive Hamiltonian Monte Carlo sampler.

    Instances are immutable descriptions of how to sample. All chain
    specific values live in the `DynamicNUTSState` objects returned by the
    `initial_step` and `step` methods.
    """

    def __init__(self, sampler=NUTS(), space=(), backend=None,
                 adapt_stat_target=0.8, n_warm_up_iter=900,
                 metric_kind='diagonal', max_init_attempts=10):
        """
        Args:
            sampler (hmcbridge.engine.NUTS or hmcbridge.engine.StaticHMC):
                Engine algorithm used for each transition.
            space (Iterable[str]): Names of the variables to sample. If empty
                all model variables are sampled; otherwise the other variables
                are held fixed at their initial values.
            backend (None or str or hmcbridge.autodiff.AutodiffBackend):
                Automatic differentiation backend handle or name. If `None` the
                model's `grad_log_joint` is used when defined, and autograd
                otherwise.
            adapt_stat_target (float): Target acceptance statistic of the step
                size adaptation, in (0, 1).
            n_warm_up_iter (int): Number of adaptive warm up iterations.
            metric_kind (str): One of `'diagonal'`, `'dense'` or `'identity'`.
            max_init_attempts (int): Maximum number of initial draws sampled
                when no initial draw is given, stopping at the first with a
                finite log density.
        """
        if not isinstance(sampler, (NUTS, StaticHMC)):
            raise ValueError(
                f'sampler must be NUTS or StaticHMC instance, got {sampler!r}.')
        if not 0 < adapt_stat_target < 1:
            raise ValueError('adapt_stat_target must be in (0, 1).')
        if n_warm_up_iter <= 0:
            raise ValueError('Number of warm up iterations must be positive.')
        if metric_kind not in METRIC_KINDS:
            raise ValueError(
                f'Unknown metric kind {metric_kind!r}, must be one of '
                f'{METRIC_KINDS}.')
        if max_init_attempts < 1:
            raise ValueError('max_init_attempts must be at least 1.')
        self.sampler = sampler
        self.space = tuple(space)
        if backend is not None:
            autodiff.get_backend(backend)
        self.backend = backend
        self.adapt_stat_target = adapt_stat_target
        self.n_warm_up_iter = n_warm_up_iter
        self.metric_kind = metric_kind
        self.max_init_attempts = max_init_attempts

    @property
    def warm_up_config(self):
        return WarmUpConfig(
            n_iter=self.n_warm_up_iter,
            adapt_stat_target=self.adapt_stat_target,
            metric_kind=self.metric_kind)

    def initial_step(self, rng, model, initial_draw=None):
        """Start a chain. See `hmcbridge.samplers.initial_step`."""
        return initial_step(rng, model, initial_draw, self)

    def step(self, rng, model, state):
        """Advance a chain. See `hmcbridge.samplers.step`."""
        return step(rng, model, state, self)

    def __repr__(self):
        return (
            f'{type(self).__name__}(sampler={self.sampler!r}, '
            f'space={self.space}, backend={self.backend!r}, '
            f'adapt_stat_target={self.adapt_stat_target}, '
            f'n_warm_up_iter={self.n_warm_up_iter}, '
            f'metric_kind={self.metric_kind!r}, '
            f'max_init_attempts={self.max_init_attempts})')


def externalsampler(sampler, **kwargs):
    """Wrap an engine algorithm in a sampler configuration.

    Args:
        sampler (hmcbridge.engine.NUTS or hmcbridge.engine.StaticHMC): Engine
            algorithm.
        **kwargs: Any other keyword arguments to `DynamicNUTS`.

    Returns:
        DynamicNUTS: Sampler configuration.
    """
    return DynamicNUTS(sampler=sampler, **kwargs)


def _build_log_density(model, params, config):
    backend = autodiff.backend_or_fallback(
        config.backend, model.grad_log_joint is not None)
    log_density_function = LogDensityFunction(
        model, params, config.space, autodiff.numpy_module(backend))
    return LogDensityOracle(log_density_function, backend)


def _link_and_evaluate(model, params, config):
    """Link the sampled variables and refresh the recorded log density."""
    if not params.is_linked(config.space):
        params = params.link(model, config.space)
    log_density = _build_log_density(model, params, config)
    logp = log_density.logdensity(params.vector(config.space))
    return params.with_logp(logp), log_density


def _init_params(rng, model, initial_draw, config):
    if initial_draw is not None:
        if not isinstance(initial_draw, ParameterSpace):
            initial_draw = ParameterSpace.from_values(model, initial_draw)
        return _link_and_evaluate(model, initial_draw, config)
    for attempt in range(config.max_init_attempts):
        params, log_density = _link_and_evaluate(
            model, ParameterSpace.sample_uniform(rng, model), config)
        if np.isfinite(params.logp):
            break
        logger.warning(
            f'Rejected initial draw {attempt + 1} of '
            f'{config.max_init_attempts} with log density {params.logp}.')
    return params, log_density


def run_warm_up(rng, log_density, init_pos, config):
    """Run the adaptive warm up of a chain with no post warm up draws.

    Args:
        rng (numpy.random.Generator): Numpy random number generator.
        log_density (hmcbridge.logdensity.LogDensityOracle): Chain oracle.
        init_pos (array): Initial unconstrained position.
        config (DynamicNUTS): Sampler configuration.

    Returns:
        hmcbridge.engine.WarmUpResults: Warm up results.

    Raises:
        hmcbridge.errors.WarmupDivergence: If the warm up fails.
    """
    return mcmc_keep_warm_up(
        rng, log_density, 0, init_pos, algorithm=config.sampler,
        warm_up=config.warm_up_config)


def _state_from_warm_up(warm_up_results, params, cache):
    """Translate warm up results and a first cache into a sampler state."""
    final_warm_up_state = warm_up_results.final_warm_up_state
    return DynamicNUTSState(
        log_density=warm_up_results.sampling_log_density, params=params,
        cache=cache, metric=final_warm_up_state.metric,
        step_size=final_warm_up_state.step_size)


def _write_back(model, params, cache, stats, config):
    params = params.with_vector(cache.pos, config.space).with_logp(
        cache.log_dens)
    transition = Transition(
        params=params.constrained_values(model), log_density=cache.log_dens,
        stats=stats)
    return params, transition


def initial_step(rng, model, initial_draw, config):
    """Start a chain: link, warm up and take a first transition.

    Args:
        rng (numpy.random.Generator): Numpy random number generator.
        model (hmcbridge.models.Model): Model to sample from.
        initial_draw (None or Mapping[str, array] or ParameterSpace): Initial
            values. If `None` values are drawn uniformly on `[-2, 2]` in
            unconstrained space, redrawing up to `config.max_init_attempts`
            times until the log density is finite.
        config (DynamicNUTS): Sampler configuration.

    Returns:
        transition (Transition): First draw.
        state (DynamicNUTSState): Chain state to pass to `step`.

    Raises:
        hmcbridge.errors.TransformError: If the initial values cannot be
            linked.
        hmcbridge.errors.WarmupDivergence: If the warm up fails.
    """
    params, log_density = _init_params(rng, model, initial_draw, config)
    warm_up_results = run_warm_up(
        rng, log_density, params.vector(config.space), config)
    steps = mcmc_steps(
        rng, config.sampler, warm_up_results.final_warm_up_state.metric,
        warm_up_results.sampling_log_density,
        warm_up_results.final_warm_up_state.step_size)
    cache, stats = mcmc_next_step(
        steps, warm_up_results.final_warm_up_state.q)
    params, transition = _write_back(model, params, cache, stats, config)
    return transition, _state_from_warm_up(warm_up_results, params, cache)


def step(rng, model, state, config):
    """Advance a chain by one transition with the calibrated metric and step size.

    Args:
        rng (numpy.random.Generator): Numpy random number generator.
        model (hmcbridge.models.Model): Model being sampled.
        state (DynamicNUTSState): Current chain state. Not modified.
        config (DynamicNUTS): Sampler configuration.

    Returns:
        transition (Transition): New draw.
        state (DynamicNUTSState): New chain state sharing the oracle, metric
            and step size of `state`.
    """
    steps = mcmc_steps(
        rng, config.sampler, state.metric, state.log_density, state.step_size)
    cache, stats = mcmc_next_step(steps, state.cache)
    params, transition = _write_back(model, state.params, cache, stats, config)
    return transition, DynamicNUTSState(
        log_density=state.log_density, params=params, cache=cache,
        metric=state.metric, step_size=state.step_size)


def sample_chain(rng, model, config, n_draw, initial_draw=None):
    """Sample a chain of draws by one `initial_step` and repeated `step` calls.

    Args:
        rng (numpy.random.Generator): Numpy random number generator.
        model (hmcbridge.models.Model): Model to sample from.
        config (DynamicNUTS): Sampler configuration.
        n_draw (int): Number of draws, including the one from `initial_step`.
        initial_draw (None or Mapping[str, array] or ParameterSpace): Initial
            values, as for `initial_step`.

    Returns:
        List[Transition]: Draws in order.
    """
    if n_draw < 1:
        raise ValueError('Number of draws must be positive.')
    transition, state = initial_step(rng, model, initial_draw, config)
    transitions = [transition]
    for _ in range(n_draw - 1):
        transition, state = step(rng, model, state, config)
        transitions.append(transition)
    return transitions


def _get_per_chain_rngs(base_rng, n_chain):
    """Construct random number generators (RNGs) for each of a set of chains.

    If the base RNG bit generator has a `jumped` method this is used to produce
    a sequence of independent random substreams. Otherwise if the base RNG bit
    generator has a `_seed_seq` attribute this is used to spawn a sequence off
    generators.
    """
    if hasattr(base_rng, 'bit_generator'):
        bit_generator = base_rng.bit_generator
    elif hasattr(base_rng, '_bit_generator'):
        bit_generator = base_rng._bit_generator
    else:
        bit_generator = None
    if bit_generator is not None and hasattr(bit_generator, 'jumped'):
        return [default_rng(bit_generator.jumped(i)) for i in range(n_chain)]
    elif bit_generator is not None and hasattr(bit_generator, '_seed_seq'):
        seed_sequence = bit_generator._seed_seq
        return [default_rng(seed) for seed in seed_sequence.spawn(n_chain)]
    else:
        raise ValueError(
            f'Unsupported random number generator type {type(base_rng)}.')


def _sample_chain_worker(rng, model, config, n_draw, initial_draw,
                         max_threads):
    context = (
        threadpool_limits(limits=max_threads)
        if THREADPOOLCTL_AVAILABLE and max_threads is not None
        else nullcontext())
    with context:
        return sample_chain(rng, model, config, n_draw, initial_draw)


@contextmanager
def _pool_context_manager(n_process):
    """Context-manager for process pool that ensures clean exiting.

    Calls `close` and then `join` on exit rather than `terminate`, so that
    worker processes exit cleanly.
    """
    pool = Pool(n_process)
    try:
        yield pool
    finally:
        pool.close()
        pool.join()


def sample_chains(rng, model, config, n_draw, n_chain, initial_draws=None,
                  n_process=1, max_threads_per_process=None):
    """Sample multiple independent chains, optionally in parallel.

    Each chain is given its own random number generator derived from `rng`,
    and builds its own log density oracle.

    Args:
        rng (numpy.random.Generator): Base random number generator.
        model (hmcbridge.models.Model): Model to sample from.
        config (DynamicNUTS): Sampler configuration.
        n_draw (int): Number of draws per chain.
        n_chain (int): Number of chains.
        initial_draws (None or Sequence): Initial values for each chain, each
            as for `initial_step`. If `None` all chains draw their initial
            values.
        n_process (int): Number of processes to run chains on. If 1 chains
            are run sequentially in the current process.
        max_threads_per_process (None or int): If `threadpoolctl` is available
            and `n_process > 1`, the maximum number of threads used by thread
            pools (e.g. BLAS) in each process.

    Returns:
        List[List[Transition]]: Draws of each chain.
    """
    if initial_draws is None:
        initial_draws = [None] * n_chain
    elif len(initial_draws) != n_chain:
        raise ValueError('Number of initial draws must equal n_chain.')
    rngs = _get_per_chain_rngs(rng, n_chain)
    if n_process == 1:
        return [
            sample_chain(chain_rng, model, config, n_draw, initial_draw)
            for chain_rng, initial_draw in zip(rngs, initial_draws)]
    args = [
        (chain_rng, model, config, n_draw, initial_draw,
         max_threads_per_process)
        for chain_rng, initial_draw in zip(rngs, initial_draws)]
    try:
        with _pool_context_manager(n_process) as pool:
            return pool.starmap(_sample_chain_worker, args)
    except PicklingError as e:
        if not MULTIPROCESS_AVAILABLE:
            raise RuntimeError(
                'Error encountered while trying to run chains on multiple '
                'processes in parallel. The inbuilt multiprocessing module '
                'uses pickle to communicate between processes and pickle does '
                'not support pickling anonymous or nested functions. Installing '
                'the Python package multiprocess, which is able to serialise '
                'such functions and is used in preference to multiprocessing '
                'when available, may resolve this error.') from e
        raise e
