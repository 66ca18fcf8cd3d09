"""Exception types."""


class Error(RuntimeError):
    """Base class for errors."""


class TransformError(Error):
    """Error raised when values cannot be mapped to unconstrained space."""


class IntegratorError(Error):
    """Error raised when integrator step fails."""


class NumericDivergence(IntegratorError):
    """Error raised when the energy along a trajectory diverges.

    Only raised inside trajectory building, where it is caught and recorded in
    the transition statistics rather than propagated to the caller.
    """


class LinAlgError(Error):
    """Error raised when a matrix operation raises a linear algebra error."""


class AdaptationError(Error):
    """Error raised when adaptation of transition parameters fails."""


class WarmupDivergence(AdaptationError):
    """Error raised when warm up cannot find a usable step size or metric."""


class ReadOnlyStateError(Error):
    """Error raised when writing to attributes of read-only chain state."""
