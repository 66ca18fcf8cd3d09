"""Methods for adaptively setting the step size and metric during warm up."""

from abc import ABC, abstractmethod
from math import exp, log
import numpy as np
from hmcbridge.errors import IntegratorError, AdaptationError
from hmcbridge.metrics import PositiveDiagonalMatrix, DensePositiveDefiniteMatrix


class Adapter(ABC):
    """Abstract adapter for schemes adapting transition parameters.

    Adaptation schemes update a collection of adaptation variables (the
    adapter state) after each chain transition based on the sampled chain
    state and / or statistics of the transition. After a run of adaptive
    transitions the final adapter state is used to set the transition
    parameters.
    """

    @abstractmethod
    def initialize(self, chain_state, transition):
        """Initialize adapter state prior to starting adaptive transitions.

        Args:
            chain_state (hmcbridge.states.ChainState): Initial chain state
                adaptive transitions will be started from. Not mutated.
            transition (hmcbridge.transitions.IntegrationTransition): Markov
                transition being adapted. Attributes of the transition or its
                child objects may be updated in place.

        Returns:
            adapt_state (Dict[str, Any]): Initial adapter state.
        """

    @abstractmethod
    def update(self, adapt_state, chain_state, trans_stats, transition):
        """Update adapter state after sampling transition being adapted.

        Args:
            adapt_state (Dict[str, Any]): Current adapter state. Updated in
                place.
            chain_state (hmcbridge.states.ChainState): Chain state following
                the transition. Not mutated.
            trans_stats (Dict[str, numeric]): Statistics of the transition.
            transition (hmcbridge.transitions.IntegrationTransition): Markov
                transition being adapted.
        """

    @abstractmethod
    def finalize(self, adapt_state, transition):
        """Update transition parameters based on final adapter state.

        Args:
            adapt_state (Dict[str, Any]): Final adapter state.
            transition (hmcbridge.transitions.IntegrationTransition): Markov
                transition being adapted. Updated in place.
        """

    @property
    @abstractmethod
    def is_fast(self):
        """Whether the adapter only requires local information ('fast')."""


class DualAveragingStepSizeAdapter(Adapter):
    """Dual averaging integrator step size adapter.

    Implementation of the dual averaging step size adaptation algorithm
    described in [1], a modified version of the stochastic optimisation scheme
    of [2]. The step size is adapted to control the `accept_stat` statistic of
    an integration transition to be close to a target value.

    References:

      1. Hoffman, M.D. and Gelman, A., 2014. The No-U-turn sampler:
         adaptively setting path lengths in Hamiltonian Monte Carlo.
         Journal of Machine Learning Research, 15(1), pp.1593-1623.
      2. Nesterov, Y., 2009. Primal-dual subgradient methods for convex
         problems. Mathematical programming 120(1), pp.221-259.
    """

    is_fast = True

    def __init__(self, adapt_stat_target=0.8, log_step_size_reg_coefficient=0.05,
                 iter_decay_coeff=0.75, iter_offset=10,
                 max_init_step_size_iters=100):
        """
        Args:
            adapt_stat_target (float): Target value for the acceptance
                statistic of the transition during adaptation.
            log_step_size_reg_coefficient (float): Coefficient controlling the
                amount of regularisation of the logarithm of the step size
                towards `log(10 * init_step_size)`, where `init_step_size` is
                found by a coarse search at the start of adaptation.
            iter_decay_coeff (float): Coefficient in (0.5, 1] controlling the
                exponent of the decay in the schedule weighting updates to the
                smoothed log step size estimate.
            iter_offset (int): Non-negative offset used in the iteration based
                weighting of the adaptation statistic error estimate.
            max_init_step_size_iters (int): Maximum number of iterations of
                the initial step size search before raising an
                `AdaptationError`.
        """
        if not 0 < adapt_stat_target < 1:
            raise ValueError('adapt_stat_target must be in (0, 1).')
        self.adapt_stat_target = adapt_stat_target
        self.log_step_size_reg_coefficient = log_step_size_reg_coefficient
        self.iter_decay_coeff = iter_decay_coeff
        self.iter_offset = iter_offset
        self.max_init_step_size_iters = max_init_step_size_iters

    def initialize(self, chain_state, transition):
        init_step_size = self._find_and_set_init_step_size(
            chain_state, transition.system, transition.integrator)
        return {
            'iter': 0,
            'smoothed_log_step_size': 0.,
            'adapt_stat_error': 0.,
            'log_step_size_reg_target': log(10 * init_step_size),
        }

    def _find_and_set_init_step_size(self, state, system, integrator):
        """Find initial step size by coarse search using single step statistics.

        Adaptation of Algorithm 4 in Hoffman and Gelman (2014). The step size
        is repeatedly halved or doubled until the absolute change in the
        Hamiltonian over a single step crosses `log(2)`. A failed integrator
        step or a non-finite change counts as the step size being too big.

        The search fails if the step size becomes so small that a step leaves
        the position unchanged, which happens when the log density is only
        finite at an isolated point.
        """
        init_state = state.copy()
        h_init = system.h(init_state)
        if not np.isfinite(h_init):
            raise AdaptationError(
                f'Hamiltonian evaluating to {h_init} at initial state.')
        integrator.step_size = 1.
        delta_h_threshold = log(2)
        for s in range(self.max_init_step_size_iters):
            try:
                state = integrator.step(init_state)
                if np.array_equal(state.pos, init_state.pos):
                    break
                delta_h = abs(h_init - system.h(state))
                if s == 0 or not np.isfinite(delta_h):
                    step_size_too_big = (
                        not np.isfinite(delta_h) or delta_h > delta_h_threshold)
                if (step_size_too_big and delta_h <= delta_h_threshold) or (
                        not step_size_too_big and delta_h > delta_h_threshold):
                    return integrator.step_size
                elif step_size_too_big:
                    integrator.step_size /= 2
                else:
                    integrator.step_size *= 2
            except IntegratorError:
                step_size_too_big = True
                integrator.step_size /= 2
        raise AdaptationError(
            f'Could not find reasonable initial step size in {s + 1} '
            f'iterations (final step size {integrator.step_size}). A very '
            f'large final step size may indicate that the target distribution '
            f'is improper while a very small final step size may indicate that '
            f'the log density is not finite in any neighbourhood of the point '
            f'initialized at.')

    def update(self, adapt_state, chain_state, trans_stats, transition):
        adapt_state['iter'] += 1
        error_weight = 1 / (self.iter_offset + adapt_state['iter'])
        adapt_state['adapt_stat_error'] *= (1 - error_weight)
        adapt_state['adapt_stat_error'] += error_weight * (
            self.adapt_stat_target - trans_stats['accept_stat'])
        smoothing_weight = (1 / adapt_state['iter'])**self.iter_decay_coeff
        log_step_size = adapt_state['log_step_size_reg_target'] - (
            adapt_state['adapt_stat_error'] * adapt_state['iter']**0.5 /
            self.log_step_size_reg_coefficient)
        adapt_state['smoothed_log_step_size'] *= (1 - smoothing_weight)
        adapt_state['smoothed_log_step_size'] += (
            smoothing_weight * log_step_size)
        transition.integrator.step_size = exp(log_step_size)

    def finalize(self, adapt_state, transition):
        transition.integrator.step_size = exp(
            adapt_state['smoothed_log_step_size'])


class OnlineVarianceMetricAdapter(Adapter):
    """Diagonal metric adapter using online variance estimates.

    Uses Welford's algorithm [1] to stably compute an online estimate of the
    sample variances of the position components during sampling. The
    variance estimates are regularized towards a common scalar value, with
    increasing weight for small numbers of samples, following the approach in
    Stan [2]. The metric is set to a diagonal matrix with diagonal elements
    equal to the reciprocal of the regularized variance estimates.

    References:

      1. Welford, B. P., 1962. Note on a method for calculating corrected sums
         of squares and products. Technometrics, 4(3), pp. 419-420.
      2. Carpenter, B., Gelman, A., Hoffman, M.D., Lee, D., Goodrich, B.,
         Betancourt, M., Brubaker, M., Guo, J., Li, P. and Riddell, A., 2017.
         Stan: A probabilistic programming language. Journal of Statistical
         Software, 76(1).
    """

    is_fast = False

    def __init__(self, reg_iter_offset=5, reg_scale=1e-3):
        """
        Args:
            reg_iter_offset (int): Iteration offset used in weighting between
                the regularisation target and the variance estimate. Higher
                values give stronger regularisation.
            reg_scale (float): Positive scalar variance estimates are
                regularized towards.
        """
        self.reg_iter_offset = reg_iter_offset
        self.reg_scale = reg_scale

    def initialize(self, chain_state, transition):
        return {
            'iter': 0,
            'mean': np.zeros(np.shape(chain_state.pos)),
            'sum_diff_sq': np.zeros(np.shape(chain_state.pos))
        }

    def update(self, adapt_state, chain_state, trans_stats, transition):
        adapt_state['iter'] += 1
        pos_minus_mean = chain_state.pos - adapt_state['mean']
        adapt_state['mean'] += pos_minus_mean / adapt_state['iter']
        adapt_state['sum_diff_sq'] += pos_minus_mean * (
            chain_state.pos - adapt_state['mean'])

    def finalize(self, adapt_state, transition):
        n_iter = adapt_state['iter']
        if n_iter < 2:
            raise AdaptationError(
                'At least two chain samples required to compute variance '
                'estimates.')
        var_est = adapt_state.pop('sum_diff_sq') / (n_iter - 1)
        # regularize towards common scalar value
        var_est *= n_iter / (self.reg_iter_offset + n_iter)
        var_est += self.reg_scale * (
            self.reg_iter_offset / (self.reg_iter_offset + n_iter))
        transition.system.metric = PositiveDiagonalMatrix(var_est).inv


class OnlineCovarianceMetricAdapter(Adapter):
    """Dense metric adapter using online covariance estimates.

    Uses Welford's algorithm [1] to stably compute an online estimate of the
    sample covariance matrix of the position components during sampling. The
    estimate is regularized towards a scaled identity matrix, with increasing
    weight for small numbers of samples. The metric is set to a dense matrix
    equal to the inverse of the regularized covariance estimate.

    References:

      1. Welford, B. P., 1962. Note on a method for calculating corrected sums
         of squares and products. Technometrics, 4(3), pp. 419-420.
    """

    is_fast = False

    def __init__(self, reg_iter_offset=5, reg_scale=1e-3):
        self.reg_iter_offset = reg_iter_offset
        self.reg_scale = reg_scale

    def initialize(self, chain_state, transition):
        dim_pos = np.shape(chain_state.pos)[0]
        return {
            'iter': 0,
            'mean': np.zeros(shape=(dim_pos,)),
            'sum_diff_outer': np.zeros(shape=(dim_pos, dim_pos))
        }

    def update(self, adapt_state, chain_state, trans_stats, transition):
        adapt_state['iter'] += 1
        pos_minus_mean = chain_state.pos - adapt_state['mean']
        adapt_state['mean'] += pos_minus_mean / adapt_state['iter']
        adapt_state['sum_diff_outer'] += pos_minus_mean[None, :] * (
            chain_state.pos - adapt_state['mean'])[:, None]

    def finalize(self, adapt_state, transition):
        n_iter = adapt_state['iter']
        if n_iter < 2:
            raise AdaptationError(
                'At least two chain samples required to compute covariance '
                'estimate.')
        covar_est = adapt_state.pop('sum_diff_outer') / (n_iter - 1)
        # symmetrize and regularize towards scaled identity
        covar_est = 0.5 * (covar_est + covar_est.T)
        covar_est *= n_iter / (self.reg_iter_offset + n_iter)
        covar_est_diagonal = np.einsum('ii->i', covar_est)
        covar_est_diagonal += self.reg_scale * (
            self.reg_iter_offset / (self.reg_iter_offset + n_iter))
        transition.system.metric = DensePositiveDefiniteMatrix(covar_est).inv
