"""Bijective maps between constrained and unconstrained parameter values.

All transforms act elementwise. The `link` method maps constrained values to
unconstrained real values and `invlink` maps back. Methods which need to be
differentiable through an automatic differentiation framework take a `xp`
argument specifying the NumPy compatible module to compute with.
"""

from abc import ABC, abstractmethod
import numpy as np
from hmcbridge.errors import TransformError


class Transform(ABC):
    """Base class for elementwise transforms to unconstrained space."""

    def link(self, x):
        """Map constrained values to unconstrained space.

        Args:
            x (array): Constrained values.

        Returns:
            array: Unconstrained values.

        Raises:
            hmcbridge.errors.TransformError: If any value is outside the
                support of the transform or maps to a non-finite value.
        """
        x = np.asarray(x, dtype=np.float64)
        if not np.all(self.in_support(x)):
            raise TransformError(
                f'Values {x} not all in support of {self}.')
        with np.errstate(divide='ignore', over='ignore', invalid='ignore'):
            y = self._link(x)
        if not np.all(np.isfinite(y)):
            raise TransformError(
                f'Values {x} map to non-finite unconstrained values {y} under '
                f'{self}.')
        return y

    @abstractmethod
    def _link(self, x):
        """Map constrained values known to be in support to unconstrained."""

    @abstractmethod
    def invlink(self, y, xp=np):
        """Map unconstrained values to constrained space."""

    @abstractmethod
    def log_abs_det_jacobian(self, y, xp=np):
        """Log absolute determinant of Jacobian of `invlink` at `y`.

        Summed over all elements so a scalar is returned.
        """

    @abstractmethod
    def invlink_derivative(self, y):
        """Elementwise derivative of `invlink` at `y`."""

    @abstractmethod
    def grad_log_abs_det_jacobian(self, y):
        """Gradient of `log_abs_det_jacobian` with respect to `y`."""

    @abstractmethod
    def in_support(self, x):
        """Elementwise indicator of whether values are in the support."""

    def __repr__(self):
        return type(self).__name__ + '()'


class IdentityTransform(Transform):
    """Identity map for real valued variables."""

    def _link(self, x):
        return x.copy()

    def invlink(self, y, xp=np):
        return y

    def log_abs_det_jacobian(self, y, xp=np):
        return 0.

    def invlink_derivative(self, y):
        return np.ones_like(y)

    def grad_log_abs_det_jacobian(self, y):
        return np.zeros_like(y)

    def in_support(self, x):
        return np.isfinite(x)


class LowerBoundTransform(Transform):
    """Map from the interval `(lower, inf)`, with `x = lower + exp(y)`."""

    def __init__(self, lower):
        self.lower = lower

    def _link(self, x):
        return np.log(x - self.lower)

    def invlink(self, y, xp=np):
        return self.lower + xp.exp(y)

    def log_abs_det_jacobian(self, y, xp=np):
        return xp.sum(y)

    def invlink_derivative(self, y):
        return np.exp(y)

    def grad_log_abs_det_jacobian(self, y):
        return np.ones_like(y)

    def in_support(self, x):
        return x > self.lower

    def __repr__(self):
        return f'{type(self).__name__}(lower={self.lower})'


class LogTransform(LowerBoundTransform):
    """Map from the positive reals, with `x = exp(y)`."""

    def __init__(self):
        super().__init__(0.)

    def __repr__(self):
        return type(self).__name__ + '()'


class UpperBoundTransform(Transform):
    """Map from the interval `(-inf, upper)`, with `x = upper - exp(y)`."""

    def __init__(self, upper):
        self.upper = upper

    def _link(self, x):
        return np.log(self.upper - x)

    def invlink(self, y, xp=np):
        return self.upper - xp.exp(y)

    def log_abs_det_jacobian(self, y, xp=np):
        return xp.sum(y)

    def invlink_derivative(self, y):
        return -np.exp(y)

    def grad_log_abs_det_jacobian(self, y):
        return np.ones_like(y)

    def in_support(self, x):
        return x < self.upper

    def __repr__(self):
        return f'{type(self).__name__}(upper={self.upper})'


class IntervalTransform(Transform):
    """Map from the interval `(lower, upper)` by a scaled logistic sigmoid."""

    def __init__(self, lower, upper):
        if not lower < upper:
            raise ValueError('lower must be less than upper.')
        self.lower = lower
        self.upper = upper

    @property
    def width(self):
        return self.upper - self.lower

    def _link(self, x):
        u = (x - self.lower) / self.width
        return np.log(u) - np.log1p(-u)

    def invlink(self, y, xp=np):
        return self.lower + self.width / (1 + xp.exp(-y))

    def log_abs_det_jacobian(self, y, xp=np):
        return xp.sum(
            np.log(self.width) - xp.logaddexp(0, y) - xp.logaddexp(0, -y))

    def invlink_derivative(self, y):
        sigmoid = 1 / (1 + np.exp(-y))
        return self.width * sigmoid * (1 - sigmoid)

    def grad_log_abs_det_jacobian(self, y):
        return -np.tanh(y / 2)

    def in_support(self, x):
        return (x > self.lower) & (x < self.upper)

    def __repr__(self):
        return f'{type(self).__name__}(lower={self.lower}, upper={self.upper})'
