"""Symplectic integrators for simulation of Hamiltonian dynamics."""

from hmcbridge.errors import AdaptationError


class LeapfrogIntegrator(object):
    r"""Leapfrog integrator for Hamiltonian systems with tractable component flows.

    The Hamiltonian function is assumed to be expressible as the sum of two
    analytically tractable components \(h(q, p) = h_1(q) + h_2(q, p)\) for
    which the corresponding Hamiltonian flows can be exactly simulated, with a
    step composing a half step of the \(h_1\) flow, a full step of the
    \(h_2\) flow and a further half step of the \(h_1\) flow.

    As the derivative of \(h_1\) at the end of one step is memoised in the
    returned state, the gradient of the log density is evaluated only once per
    step when stepping repeatedly from a state.
    """

    def __init__(self, system, step_size=None):
        """
        Args:
            system (hmcbridge.systems.EuclideanMetricSystem): Hamiltonian
                system to integrate the dynamics of.
            step_size (float or None): Integrator time step. If set to `None`
                (the default) it is assumed that a step size adapter will be
                used to set the step size before calling the `step` method.
        """
        self.system = system
        self.step_size = step_size

    def step(self, state):
        """Perform a single integrator step from a supplied state.

        Args:
            state (hmcbridge.states.ChainState): System state to perform
                integrator step from. Not modified.

        Returns:
            new_state (hmcbridge.states.ChainState): New object corresponding
                to stepped state.
        """
        if self.step_size is None:
            raise AdaptationError(
                'Integrator `step_size` is `None`. This value should only be '
                'used if a step size adapter is being used to set the step '
                'size.')
        state = state.copy()
        dt = state.dir * self.step_size
        self.system.h1_flow(state, 0.5 * dt)
        self.system.h2_flow(state, dt)
        self.system.h1_flow(state, 0.5 * dt)
        return state
