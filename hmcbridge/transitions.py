"""Markov transition kernels."""

from abc import ABC, abstractmethod
from collections import namedtuple
import logging
import numpy as np
from hmcbridge.utils import log_sum_exp, log_ratio_to_prob
from hmcbridge.errors import IntegratorError, NumericDivergence

logger = logging.getLogger(__name__)


def _process_integrator_error(exception, stats):
    logger.info(f'Terminating trajectory due to error:\n{exception!s}')
    if isinstance(exception, NumericDivergence):
        stats['diverging'] = True


class Transition(ABC):
    """Base class for Markov transition kernels."""

    @property
    @abstractmethod
    def state_variables(self):
        """A set of names of state variables accessed by this transition."""

    @abstractmethod
    def sample(self, state, rng):
        """Sample a new chain state from the Markov transition kernel.

        Args:
            state (hmcbridge.states.ChainState): Current chain state to
                condition transition kernel on. May be updated in place.
            rng (numpy.random.Generator): Numpy random number generator.

        Returns:
            state (hmcbridge.states.ChainState): Updated state object.
            trans_stats (Dict[str, numeric] or None): Any statistics computed
                during the transition or `None` if no statistics.
        """


class IndependentMomentumTransition(Transition):
    """Independent momentum transition.

    Independently resamples the momentum component of the state from its
    conditional distribution given the remaining state.
    """

    state_variables = {'mom'}

    def __init__(self, system):
        self.system = system

    def sample(self, state, rng):
        state.mom = self.system.sample_momentum(state, rng)
        return state, None


class IntegrationTransition(Transition):
    """Base class for integration transitions.

    Markov transition kernel which leaves the canonical distribution invariant
    and jointly updates the position and momentum components of the chain
    state by integrating the Hamiltonian dynamics of the system to propose new
    values for the state.
    """

    state_variables = {'pos', 'mom', 'dir'}

    def __init__(self, system, integrator):
        """
        Args:
            system (hmcbridge.systems.EuclideanMetricSystem): Hamiltonian
                system to be simulated.
            integrator (hmcbridge.integrators.LeapfrogIntegrator): Symplectic
                integrator for the system.
        """
        self.system = system
        self.integrator = integrator


class MetropolisStaticIntegrationTransition(IntegrationTransition):
    """Static integration transition with Metropolis sampling of new state.

    The trajectory is generated by integrating the state a fixed number of
    integrator steps in the current integration direction. The terminal state
    with negated direction is used as the proposal in a Metropolis acceptance
    step, after which the direction is negated again irrespective of the
    accept decision.

    References:

      1. Duane, S., Kennedy, A.D., Pendleton, B.J. and Roweth, D., 1987.
         Hybrid Monte Carlo. Physics letters B, 195(2), pp.216-222.
    """

    def __init__(self, system, integrator, n_step, max_delta_h=1000):
        """
        Args:
            system (hmcbridge.systems.EuclideanMetricSystem): Hamiltonian
                system to be simulated.
            integrator (hmcbridge.integrators.LeapfrogIntegrator): Symplectic
                integrator for the system.
            n_step (int): Number of integrator steps to simulate in each
                transition.
            max_delta_h (float): Maximum change in the Hamiltonian over the
                trajectory before the transition is flagged as diverging.
        """
        super().__init__(system, integrator)
        assert n_step > 0, 'Number of integrator steps must be positive'
        self.n_step = n_step
        self.max_delta_h = max_delta_h

    def sample(self, state, rng):
        h_init = self.system.h(state)
        state_p = state
        for s in range(self.n_step):
            state_p = self.integrator.step(state_p)
        state_p.dir *= -1
        stats = {'n_step': self.n_step, 'diverging': False}
        h_final = self.system.h(state_p)
        delta_h = h_final - h_init
        if np.isnan(delta_h) or delta_h > self.max_delta_h:
            _process_integrator_error(
                NumericDivergence(f'delta_h = {delta_h}'), stats)
            accept_prob = 0.
        else:
            accept_prob = 1. if delta_h <= 0 else np.exp(-delta_h)
        stats['metrop_accept_prob'] = accept_prob
        stats['accept_stat'] = accept_prob
        if rng.uniform() < accept_prob:
            state = state_p
        state.dir *= -1
        return state, stats


def riemannian_no_u_turn_criterion(system, state_1, state_2, sum_mom):
    """Generalized no-U-turn termination criterion [1, 2].

    Terminates trajectories when the velocities at the terminal states of the
    trajectory both have negative dot products with the sum of the momentums
    across the trajectory.

    Args:
        system (hmcbridge.systems.EuclideanMetricSystem): Hamiltonian system
            being integrated.
        state_1 (hmcbridge.states.ChainState): First terminal state of
            trajectory.
        state_2 (hmcbridge.states.ChainState): Second terminal state of
            trajectory.
        sum_mom (array): Sum of momentums of trajectory states.

    Returns:
        terminate (bool): True if termination criterion is satisfied.

    References:

      1. Hoffman, M.D. and Gelman, A., 2014. The No-U-turn sampler:
         adaptively setting path lengths in Hamiltonian Monte Carlo.
         Journal of Machine Learning Research, 15(1), pp.1593-1623.
      2. Betancourt, M., 2013. Generalizing the no-U-turn sampler to Riemannian
         manifolds. arXiv preprint arXiv:1304.1920.
    """
    return (
        np.sum(system.dh_dmom(state_1) * sum_mom) < 0 or
        np.sum(system.dh_dmom(state_2) * sum_mom) < 0)


_SubTree = namedtuple('_SubTree', [
    'negative', 'positive', 'sum_mom', 'log_weight', 'depth'])


class MultinomialDynamicIntegrationTransition(IntegrationTransition):
    """Dynamic integration transition with multinomial sampling of new state.

    In each transition a binary tree of states is recursively computed by
    integrating randomly forward and backward in time by a number of steps
    equal to the previous tree size until a termination criterion on the
    tree leaves is met [1]. The next chain state is chosen from the candidate
    states using a progressive multinomial sampling scheme based on the
    relative probability densities of the candidate states, biased towards
    states further from the current state [2].

    Trajectory expansion is also terminated if the change in the Hamiltonian
    exceeds `max_delta_h`, in which case the transition is flagged as
    diverging in the returned statistics.

    References:

      1. Hoffman, M.D. and Gelman, A., 2014. The No-U-turn sampler:
         adaptively setting path lengths in Hamiltonian Monte Carlo.
         Journal of Machine Learning Research, 15(1), pp.1593-1623.
      2. Betancourt, M., 2017. A conceptual introduction to Hamiltonian Monte
         Carlo. arXiv preprint arXiv:1701.02434.
    """

    def __init__(self, system, integrator, max_tree_depth=10, max_delta_h=1000,
                 termination_criterion=riemannian_no_u_turn_criterion,
                 do_extra_subtree_checks=True):
        """
        Args:
            system (hmcbridge.systems.EuclideanMetricSystem): Hamiltonian
                system to be simulated.
            integrator (hmcbridge.integrators.LeapfrogIntegrator): Symplectic
                integrator for the system.
            max_tree_depth (int): Maximum depth to expand trajectory binary
                tree to. The maximum number of integrator steps corresponds to
                `2**max_tree_depth - 1`.
            max_delta_h (float): Maximum change to tolerate in the Hamiltonian
                function over a trajectory before signalling a divergence.
            termination_criterion (
                    Callable[[System, ChainState, ChainState, array], bool]):
                Criterion used to determine when to terminate trajectory tree
                expansion, called with the system, the two edge states of a
                (sub-)tree and the sum of the momentums over the (sub-)tree.
            do_extra_subtree_checks (bool): Whether to also check the
                termination criterion on overlapping subtrees of the current
                tree. This reduces the resonant behaviour seen at certain step
                sizes for targets close to a set of independent harmonic
                oscillators, where the criterion on the whole tree fails to
                detect a U-turn.
        """
        super().__init__(system, integrator)
        assert max_tree_depth > 0, 'max_tree_depth must be positive'
        self.max_tree_depth = max_tree_depth
        self.max_delta_h = max_delta_h
        self.termination_criterion = termination_criterion
        self.do_extra_subtree_checks = do_extra_subtree_checks

    def _termination_criterion(self, tree, neg_subtree, pos_subtree):
        # Extra subtree checks only evaluated if whole tree check fails and
        # for trees of depth 2 and above, being redundant for depth 1 trees.
        if self.termination_criterion(
                self.system, tree.negative, tree.positive, tree.sum_mom):
            return True
        elif tree.depth > 1 and self.do_extra_subtree_checks:
            if self.termination_criterion(
                    self.system, neg_subtree.negative, pos_subtree.negative,
                    neg_subtree.sum_mom + pos_subtree.negative.mom):
                return True
            elif self.termination_criterion(
                    self.system, neg_subtree.positive, pos_subtree.positive,
                    pos_subtree.sum_mom + neg_subtree.positive.mom):
                return True
        return False

    def _new_leaf(self, state, h):
        return _SubTree(
            negative=state, positive=state, sum_mom=np.asarray(state.mom),
            log_weight=-h, depth=0)

    def _merge_subtrees(self, neg_subtree, pos_subtree):
        assert neg_subtree.depth == pos_subtree.depth, (
            'Cannot merge subtrees of different depths')
        return _SubTree(
            negative=neg_subtree.negative, positive=pos_subtree.positive,
            log_weight=log_sum_exp(
                neg_subtree.log_weight, pos_subtree.log_weight),
            sum_mom=neg_subtree.sum_mom + pos_subtree.sum_mom,
            depth=neg_subtree.depth + 1)

    def _build_tree(self, depth, state, stats, rng, h_init):
        if depth == 0:
            try:
                # integrate forward/backward one step depending on state.dir
                state = self.integrator.step(state)
                h = self.system.h(state)
                h = np.inf if np.isnan(h) else h
                stats['sum_metrop_accept_prob'] += log_ratio_to_prob(-h, -h_init)
                stats['n_step'] += 1
                if h - h_init > self.max_delta_h:
                    raise NumericDivergence(f'delta_h = {h - h_init}')
                tree = self._new_leaf(state, h)
            except IntegratorError as e:
                _process_integrator_error(e, stats)
                return True, None, None
            return False, tree, state
        # build 'inner' subtree, i.e. starting from current state
        terminate, inner_tree, inner_proposal = self._build_tree(
            depth - 1, state, stats, rng, h_init)
        if terminate:
            return terminate, None, None
        # build 'outer' subtree, i.e. starting from terminus of inner subtree
        state = inner_tree.positive if state.dir == 1 else inner_tree.negative
        terminate, outer_tree, outer_proposal = self._build_tree(
            depth - 1, state, stats, rng, h_init)
        if terminate:
            return terminate, None, None
        neg_subtree = inner_tree if state.dir == 1 else outer_tree
        pos_subtree = outer_tree if state.dir == 1 else inner_tree
        tree = self._merge_subtrees(neg_subtree, pos_subtree)
        accept_outer_prob = log_ratio_to_prob(
            outer_tree.log_weight, tree.log_weight)
        proposal = (
            outer_proposal if rng.uniform() < accept_outer_prob else
            inner_proposal)
        terminate = self._termination_criterion(tree, neg_subtree, pos_subtree)
        return terminate, tree, proposal

    def sample(self, state, rng):
        stats = {
            'n_step': 0, 'sum_metrop_accept_prob': 0., 'reject_prob': 1.,
            'diverging': False}
        h_init = self.system.h(state)
        tree = self._new_leaf(state, h_init)
        next_state = state
        for depth in range(self.max_tree_depth):
            # uniformly sample direction to expand tree in
            direction = 2 * (rng.uniform() < 0.5) - 1
            state = tree.positive if direction == 1 else tree.negative
            state.dir = direction
            terminate, new_tree, new_proposal = self._build_tree(
                depth, state, stats, rng, h_init)
            if terminate:
                break
            # progressively sample new state, biasing towards the proposal
            # from the new subtree
            accept_proposal_prob = log_ratio_to_prob(
                new_tree.log_weight, tree.log_weight)
            if rng.uniform() < accept_proposal_prob:
                next_state = new_proposal
            stats['reject_prob'] *= (1. - accept_proposal_prob)
            neg_subtree = tree if direction == 1 else new_tree
            pos_subtree = new_tree if direction == 1 else tree
            tree = self._merge_subtrees(neg_subtree, pos_subtree)
            if self._termination_criterion(tree, neg_subtree, pos_subtree):
                break
        sum_accept_prob = stats.pop('sum_metrop_accept_prob')
        if stats['n_step'] > 0:
            stats['av_metrop_accept_prob'] = sum_accept_prob / stats['n_step']
        else:
            stats['av_metrop_accept_prob'] = 0.
        stats['accept_stat'] = (
            0. if stats['diverging'] else stats['av_metrop_accept_prob'])
        stats['tree_depth'] = depth
        return next_state, stats
