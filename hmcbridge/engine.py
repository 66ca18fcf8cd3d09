"""Adaptive Hamiltonian Monte Carlo engine.

The engine is used through three functions:

  * `mcmc_keep_warm_up` runs a complete adaptive warm up from an initial
    position, calibrating the integrator step size and the metric, and
    returns the final warm up state together with any post warm up draws.
  * `mcmc_steps` bundles a calibrated metric and step size with a log density
    into an object describing a fixed (non-adaptive) Markov transition.
  * `mcmc_next_step` applies such a transition to an evaluated position,
    returning a new evaluated position and the transition statistics.

An evaluated position records the memoised log density and gradient at the
position in an opaque read-only chain state, so that advancing a chain never
re-evaluates the log density at a position it has already been evaluated at.
"""

from collections import OrderedDict, namedtuple
import logging
import numpy as np
from hmcbridge.states import ChainState
from hmcbridge.systems import EuclideanMetricSystem
from hmcbridge.integrators import LeapfrogIntegrator
from hmcbridge.transitions import (
    IndependentMomentumTransition, MetropolisStaticIntegrationTransition,
    MultinomialDynamicIntegrationTransition)
from hmcbridge.adapters import (
    DualAveragingStepSizeAdapter, OnlineVarianceMetricAdapter,
    OnlineCovarianceMetricAdapter)
from hmcbridge.stagers import WindowedWarmUpStager
from hmcbridge.metrics import (
    IdentityMatrix, PositiveDiagonalMatrix, DensePositiveDefiniteMatrix)
from hmcbridge.errors import AdaptationError, LinAlgError, WarmupDivergence

logger = logging.getLogger(__name__)


NUTS = namedtuple('NUTS', ['max_tree_depth', 'max_delta_h'], defaults=(10, 1000.))
NUTS.__doc__ = """No-U-turn sampler: multinomial dynamic HMC.

Trajectories are expanded by repeated doubling until the generalised no-U-turn
criterion holds on the trajectory or one of its subtrees, the tree reaches
`max_tree_depth` or the change in the Hamiltonian exceeds `max_delta_h`.
"""

StaticHMC = namedtuple('StaticHMC', ['n_step'], defaults=(10,))
StaticHMC.__doc__ = """Static HMC: `n_step` leapfrog steps then Metropolis accept."""

WarmUpConfig = namedtuple(
    'WarmUpConfig', ['n_iter', 'adapt_stat_target', 'metric_kind', 'stager'],
    defaults=(900, 0.8, 'diagonal', None))
WarmUpConfig.__doc__ = """Settings of the adaptive warm up.

`metric_kind` is one of `'diagonal'`, `'dense'` or `'identity'`, the last
meaning the metric is not adapted. If `stager` is `None` a
`hmcbridge.stagers.WindowedWarmUpStager` with default settings is used.
"""

EvaluatedPosition = namedtuple(
    'EvaluatedPosition', ['pos', 'log_dens', 'grad_log_dens', 'state'])
EvaluatedPosition.__doc__ = """Position with the log density evaluated at it.

`state` is an opaque read-only `hmcbridge.states.ChainState` caching the
evaluations. It should only be passed back to `mcmc_next_step`.
"""

WarmUpState = namedtuple('WarmUpState', ['q', 'metric', 'step_size'])

WarmUpResults = namedtuple(
    'WarmUpResults',
    ['final_warm_up_state', 'sampling_log_density', 'draws', 'warm_up_stats'])

MCMCSteps = namedtuple(
    'MCMCSteps',
    ['rng', 'system', 'momentum_transition', 'integration_transition'])

METRIC_KINDS = ('diagonal', 'dense', 'identity')


def _init_metric(metric_kind, dim):
    if metric_kind == 'identity':
        return IdentityMatrix(dim)
    elif metric_kind == 'diagonal':
        return PositiveDiagonalMatrix(np.ones(dim))
    elif metric_kind == 'dense':
        return DensePositiveDefiniteMatrix(np.identity(dim))
    else:
        raise ValueError(
            f'Unknown metric kind {metric_kind!r}, must be one of '
            f'{METRIC_KINDS}.')


def _metric_adapters(metric_kind):
    if metric_kind == 'diagonal':
        return [OnlineVarianceMetricAdapter()]
    elif metric_kind == 'dense':
        return [OnlineCovarianceMetricAdapter()]
    else:
        return []


def _integration_transition(algorithm, system, integrator):
    if isinstance(algorithm, NUTS):
        return MultinomialDynamicIntegrationTransition(
            system, integrator, max_tree_depth=algorithm.max_tree_depth,
            max_delta_h=algorithm.max_delta_h)
    elif isinstance(algorithm, StaticHMC):
        return MetropolisStaticIntegrationTransition(
            system, integrator, n_step=algorithm.n_step)
    else:
        raise ValueError(
            f'Unknown algorithm {algorithm!r}, must be an instance of NUTS or '
            f'StaticHMC.')


def _read_only_array(val):
    array = np.array(val, dtype=np.float64)
    array.flags.writeable = False
    return array


def _evaluated_position(system, state):
    grad_log_dens = -system.grad_neg_log_dens(state)
    log_dens = -system.neg_log_dens(state)
    return EvaluatedPosition(
        pos=_read_only_array(state.pos), log_dens=float(log_dens),
        grad_log_dens=_read_only_array(grad_log_dens),
        state=state.copy(read_only=True))


def _run_adaptive_stage(label, stage, state, rng, momentum_transition,
                        integration_transition):
    """Run the iterations of one adaptive warm up stage.

    The momentum is resampled before initialising the adapters so that values
    cached for the momentum under the metric of the previous stage are
    discarded.

    Returns:
        state (hmcbridge.states.ChainState): Final chain state of stage.
        n_diverging (int): Number of transitions in stage flagged diverging.
    """
    state, _ = momentum_transition.sample(state, rng)
    adapter_states = []
    for adapter in stage.adapters:
        try:
            adapter_states.append(
                adapter.initialize(state, integration_transition))
        except AdaptationError as e:
            logger.error(
                f'Initialisation of {type(adapter).__name__} in stage '
                f'"{label}" failed: {e}')
            raise WarmupDivergence(
                f'Warm up failed in stage "{label}": {e}') from e
    n_diverging = 0
    sum_accept_stat = 0.
    for i in range(stage.n_iter):
        state, _ = momentum_transition.sample(state, rng)
        state, trans_stats = integration_transition.sample(state, rng)
        for adapter, adapter_state in zip(stage.adapters, adapter_states):
            adapter.update(
                adapter_state, state, trans_stats, integration_transition)
        n_diverging += int(trans_stats.get('diverging', False))
        sum_accept_stat += trans_stats['accept_stat']
    for adapter, adapter_state in zip(stage.adapters, adapter_states):
        try:
            adapter.finalize(adapter_state, integration_transition)
        except (AdaptationError, LinAlgError) as e:
            logger.error(
                f'Finalisation of {type(adapter).__name__} in stage '
                f'"{label}" failed: {e}')
            raise WarmupDivergence(
                f'Warm up failed in stage "{label}": {e}') from e
    step_size = integration_transition.integrator.step_size
    logger.debug(
        f'{label}: {stage.n_iter} iterations, {n_diverging} diverging, '
        f'step size {step_size:.3g}')
    stage_stats = {
        'n_iter': stage.n_iter,
        'n_diverging': n_diverging,
        'av_accept_stat': sum_accept_stat / stage.n_iter,
        'step_size': step_size,
    }
    return state, stage_stats


def mcmc_keep_warm_up(rng, log_density, n_draws, init_pos, algorithm=NUTS(),
                      warm_up=WarmUpConfig()):
    """Run adaptive warm up of a chain and optionally draw further samples.

    The warm up iterations are split into stages by the stager in `warm_up`.
    Each stage starts by re-initialising its adapters, with the step size
    adapter first running a coarse search for a workable step size. The metric
    and step size are fixed once the last stage finishes.

    Args:
        rng (numpy.random.Generator): Numpy random number generator.
        log_density (LogDensity): Object with methods `logdensity(x)` and
            `logdensity_and_gradient(x)` evaluating the unnormalized log
            density of the target distribution and its gradient.
        n_draws (int): Number of non-adaptive draws to take after warm up.
        init_pos (array): Initial position as a one-dimensional array.
        algorithm (NUTS or StaticHMC): Transition algorithm.
        warm_up (WarmUpConfig): Warm up settings.

    Returns:
        WarmUpResults: Named tuple with entries

          * `final_warm_up_state`: `WarmUpState(q, metric, step_size)` with
            `q` the `EvaluatedPosition` at the end of warm up, `metric` the
            calibrated metric and `step_size` the calibrated step size.
          * `sampling_log_density`: The log density object used for sampling.
          * `draws`: List of `(EvaluatedPosition, stats)` pairs for each of
            the `n_draws` post warm up draws.
          * `warm_up_stats`: Ordered dictionary of summary statistics of each
            warm up stage keyed by stage label.

    Raises:
        ValueError: If `warm_up.n_iter` is not positive, `n_draws` is negative
            or an option is not recognised.
        hmcbridge.errors.WarmupDivergence: If the log density is not finite at
            the initial position, if the adapters fail to find a usable step
            size or metric, or if every adaptive transition diverged.
    """
    if warm_up.n_iter <= 0:
        raise ValueError('Number of warm up iterations must be positive.')
    if n_draws < 0:
        raise ValueError('Number of draws must be non-negative.')
    init_pos = np.array(init_pos, dtype=np.float64)
    if init_pos.ndim != 1:
        raise ValueError('Initial position must be a one-dimensional array.')
    system = EuclideanMetricSystem(
        log_density, _init_metric(warm_up.metric_kind, init_pos.shape[0]))
    integrator = LeapfrogIntegrator(system)
    integration_transition = _integration_transition(
        algorithm, system, integrator)
    momentum_transition = IndependentMomentumTransition(system)
    state = ChainState(pos=init_pos, mom=None, dir=1)
    system.grad_neg_log_dens(state)
    if not np.isfinite(system.neg_log_dens(state)):
        raise WarmupDivergence(
            f'Log density at initial position is '
            f'{-system.neg_log_dens(state)}.')
    adapters = [
        DualAveragingStepSizeAdapter(warm_up.adapt_stat_target)
    ] + _metric_adapters(warm_up.metric_kind)
    stager = WindowedWarmUpStager() if warm_up.stager is None else warm_up.stager
    warm_up_stats = OrderedDict()
    for label, stage in stager.stages(warm_up.n_iter, 0, adapters).items():
        state, warm_up_stats[label] = _run_adaptive_stage(
            label, stage, state, rng, momentum_transition,
            integration_transition)
    n_iter = sum(s['n_iter'] for s in warm_up_stats.values())
    n_diverging = sum(s['n_diverging'] for s in warm_up_stats.values())
    if n_diverging == n_iter:
        raise WarmupDivergence(
            f'All {n_iter} adaptive transitions diverged during warm up.')
    final_warm_up_state = WarmUpState(
        q=_evaluated_position(system, state), metric=system.metric,
        step_size=float(integrator.step_size))
    draws = []
    if n_draws > 0:
        steps = mcmc_steps(
            rng, algorithm, final_warm_up_state.metric, log_density,
            final_warm_up_state.step_size)
        q = final_warm_up_state.q
        for i in range(n_draws):
            q, stats = mcmc_next_step(steps, q)
            draws.append((q, stats))
    return WarmUpResults(
        final_warm_up_state=final_warm_up_state,
        sampling_log_density=log_density, draws=draws,
        warm_up_stats=warm_up_stats)


def mcmc_steps(rng, algorithm, metric, log_density, step_size):
    """Construct a fixed Markov transition for advancing a chain.

    Args:
        rng (numpy.random.Generator): Numpy random number generator used by
            the transition.
        algorithm (NUTS or StaticHMC): Transition algorithm.
        metric (hmcbridge.metrics.PositiveDefiniteMatrix): Metric, used as the
            covariance of the momentum distribution.
        log_density (LogDensity): Log density object, with the same interface
            as for `mcmc_keep_warm_up`.
        step_size (float): Integrator step size.

    Returns:
        MCMCSteps: Object to pass to `mcmc_next_step`.
    """
    if not step_size > 0:
        raise ValueError('Step size must be positive.')
    system = EuclideanMetricSystem(log_density, metric)
    integrator = LeapfrogIntegrator(system, step_size)
    return MCMCSteps(
        rng=rng, system=system,
        momentum_transition=IndependentMomentumTransition(system),
        integration_transition=_integration_transition(
            algorithm, system, integrator))


def mcmc_next_step(steps, q):
    """Advance a chain by one transition.

    The momentum is resampled and a trajectory integrated from the position
    in `q`, reusing the log density and gradient cached in `q`. The input is
    not modified. Numerical divergences do not raise; they are reported by
    the `diverging` entry of the returned statistics.

    Args:
        steps (MCMCSteps): Transition constructed by `mcmc_steps`.
        q (EvaluatedPosition): Current evaluated position.

    Returns:
        q (EvaluatedPosition): Evaluated position after transition.
        stats (Dict[str, numeric]): Transition statistics.
    """
    state = q.state.copy()
    state, _ = steps.momentum_transition.sample(state, steps.rng)
    state, stats = steps.integration_transition.sample(state, steps.rng)
    return _evaluated_position(steps.system, state), stats
