"""Hamiltonian systems encapsulating energy functions and their derivatives."""

import numpy as np
from hmcbridge.states import cache_in_state, cache_in_state_with_aux
import hmcbridge.metrics as metrics


class EuclideanMetricSystem(object):
    r"""Hamiltonian system with a Euclidean metric on the position space.

    The Hamiltonian function \(h\) takes the separable form

    \[ h(q, p) = h_1(q) + h_2(p) \]

    with \(h_1(q) = -\log \pi(q)\) the negative logarithm of the unnormalized
    target density evaluated by the log density oracle and

    \[ h_2(p) = \frac{1}{2} p^T M^{-1} p \]

    the negative log density of a zero-mean Gaussian momentum distribution
    with covariance given by the fixed metric \(M\).

    Values of the log density and its gradient are memoised in the chain
    states passed to the system methods, keyed on the identity of the log
    density oracle. A new system may therefore be built for each step of a
    chain with all evaluations recorded in a state by a previous system
    wrapping the same oracle reused.
    """

    def __init__(self, log_density, metric=None):
        """
        Args:
            log_density (LogDensity): Object with methods `logdensity(x)`
                returning the log of the unnormalized target density at
                position `x` and `logdensity_and_gradient(x)` returning the
                log density value together with its gradient with respect to
                `x`.
            metric (None or PositiveDefiniteMatrix): Matrix representation
                of the metric on position space, equal to the covariance of
                the Gaussian marginal distribution on the momentum. If `None`
                the identity is used.
        """
        self.log_density = log_density
        self.metric = metrics.IdentityMatrix() if metric is None else metric

    @property
    def cache_token(self):
        """Token identifying the target density the cached values refer to."""
        return id(self.log_density)

    @cache_in_state('pos')
    def neg_log_dens(self, state):
        """Negative logarithm of unnormalized density of target distribution.

        Args:
            state (hmcbridge.states.ChainState): State to compute value at.

        Returns:
            float: Value of computed negative log density.
        """
        return -self.log_density.logdensity(state.pos)

    @cache_in_state_with_aux('pos', 'neg_log_dens')
    def grad_neg_log_dens(self, state):
        """Derivative of negative log density with respect to position.

        Args:
            state (hmcbridge.states.ChainState): State to compute value at.

        Returns:
            array: Value of `neg_log_dens(state)` derivative with respect to
                `state.pos`.
        """
        log_dens, grad_log_dens = self.log_density.logdensity_and_gradient(
            state.pos)
        return -grad_log_dens, -log_dens

    def h1(self, state):
        return self.neg_log_dens(state)

    def dh1_dpos(self, state):
        return self.grad_neg_log_dens(state)

    def h1_flow(self, state, dt):
        """Apply exact flow map corresponding to `h1` Hamiltonian component.

        `state` argument is modified in place.

        Args:
            state (hmcbridge.states.ChainState): State to start flow at.
            dt (float): Time interval to simulate flow for.
        """
        state.mom = state.mom - dt * self.dh1_dpos(state)

    @cache_in_state('mom')
    def h2(self, state):
        return 0.5 * state.mom @ self.dh2_dmom(state)

    @cache_in_state('mom')
    def dh2_dmom(self, state):
        return self.metric.inv @ state.mom

    def h2_flow(self, state, dt):
        """Apply exact flow map corresponding to `h2` Hamiltonian component.

        `state` argument is modified in place.

        Args:
            state (hmcbridge.states.ChainState): State to start flow at.
            dt (float): Time interval to simulate flow for.
        """
        state.pos = state.pos + dt * self.dh2_dmom(state)

    def h(self, state):
        """Hamiltonian function for system.

        Args:
            state (hmcbridge.states.ChainState): State to compute value at.

        Returns:
            float: Value of Hamiltonian.
        """
        return self.h1(state) + self.h2(state)

    def dh_dmom(self, state):
        return self.dh2_dmom(state)

    def sample_momentum(self, state, rng):
        """Sample a momentum from its Gaussian marginal distribution.

        Args:
            state (hmcbridge.states.ChainState): State defining position
                (only used for its shape).
            rng (numpy.random.Generator): Numpy random number generator.

        Returns:
            mom (array): Sampled momentum.
        """
        return self.metric.sqrt @ rng.standard_normal(np.shape(state.pos))
