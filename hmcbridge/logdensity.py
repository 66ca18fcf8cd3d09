"""Log density functions on unconstrained space and their gradients."""

from math import inf
import numpy as np
import hmcbridge.autodiff as autodiff


class LogDensityFunction(object):
    """Log density of a model as a function of an unconstrained vector.

    The vector holds the linked values of a subset of the model variables,
    flattened and concatenated in model order. The remaining variables are
    held fixed at their values in the parameter space the function is
    constructed from. The log absolute Jacobian determinant of the inverse
    link of the subset variables is added to the model log joint density so
    the function is a density with respect to the Lebesgue measure on the
    unconstrained space.
    """

    def __init__(self, model, params, subset=(), numpy_module=np):
        """
        Args:
            model (hmcbridge.models.Model): Model to evaluate log joint density
                of.
            params (hmcbridge.parameters.ParameterSpace): Parameter values.
                Variables in `subset` must be linked; values of the other
                variables are held fixed.
            subset (Iterable[str]): Names of the variables the vector argument
                holds values for. If empty all variables are used.
            numpy_module (module): NumPy compatible module to compute the
                inverse link maps with, allowing differentiation by an
                automatic differentiation framework.
        """
        self.model = model
        self.names = model.select(subset)
        if not params.is_linked(self.names):
            raise ValueError(
                f'Variables {self.names} must be linked to define an '
                f'unconstrained log density.')
        self.dimension = model.dimension(self.names)
        self.numpy_module = numpy_module
        self._fixed_values = {
            name: val for name, val in params.invlink(model).values.items()
            if name not in self.names}

    def _split(self, x):
        offset = 0
        for name in self.names:
            variable = self.model.variables[name]
            size = self.model.size(name)
            yield name, variable.transform, x[offset:offset + size].reshape(
                variable.shape)
            offset += size

    def constrain(self, x):
        """Constrained values and log Jacobian determinant at vector `x`.

        Args:
            x (array): Unconstrained vector.

        Returns:
            values (Dict[str, array]): Constrained values of all variables.
            log_abs_det (float): Log absolute Jacobian determinant of the map
                from `x` to the constrained subset values.
        """
        xp = self.numpy_module
        values = {}
        log_abs_det = 0.
        for name, transform, y in self._split(x):
            values[name] = transform.invlink(y, xp)
            log_abs_det = log_abs_det + transform.log_abs_det_jacobian(y, xp)
        for name, val in self._fixed_values.items():
            values[name] = val
        return values, log_abs_det

    def grad_and_value(self, x):
        """Gradient and value at `x` using the model's explicit gradient.

        The gradient of the model log joint density with respect to the
        constrained values is mapped to the unconstrained vector by the
        elementwise chain rule through the transforms.
        """
        if self.model.grad_log_joint is None:
            raise ValueError('Model does not define grad_log_joint.')
        values, log_abs_det = self.constrain(x)
        grads = self.model.grad_log_joint(values)
        grad = np.concatenate([np.zeros(0)] + [
            np.ravel(
                np.asarray(grads[name]) * transform.invlink_derivative(y) +
                transform.grad_log_abs_det_jacobian(y))
            for name, transform, y in self._split(x)])
        return grad, self.model.log_joint(values) + log_abs_det

    def __call__(self, x):
        values, log_abs_det = self.constrain(x)
        return self.model.log_joint(values) + log_abs_det


class LogDensityOracle(object):
    """Log density function together with a way of computing its gradient.

    Evaluations are deterministic and have no side effects. A NaN log density
    is reported as `-inf`.
    """

    def __init__(self, log_density_function, backend='autograd'):
        """
        Args:
            log_density_function (LogDensityFunction): Function to evaluate.
            backend (None or str or hmcbridge.autodiff.AutodiffBackend):
                Automatic differentiation backend handle or name used to
                compute gradients. If `None` the gradient is computed from the
                model's explicit `grad_log_joint` function.
        """
        self.log_density_function = log_density_function
        if backend is None:
            if log_density_function.model.grad_log_joint is None:
                raise ValueError(
                    'Model must define grad_log_joint if no automatic '
                    'differentiation backend is used.')
            self.backend = None
            self._grad_and_value = log_density_function.grad_and_value
        else:
            self.backend = autodiff.get_backend(backend)
            self._grad_and_value = autodiff.grad_and_value(
                self.backend, log_density_function)

    @property
    def dimension(self):
        """Dimension of the unconstrained space."""
        return self.log_density_function.dimension

    def _check_shape(self, x):
        x = np.asarray(x, dtype=np.float64)
        if x.shape != (self.dimension,):
            raise ValueError(
                f'Expected position of shape {(self.dimension,)}, got '
                f'{x.shape}.')
        return x

    def logdensity(self, x):
        """Log density at `x`.

        Args:
            x (array): Unconstrained position vector.

        Returns:
            float: Log density value, `-inf` if not defined.
        """
        val = float(self.log_density_function(self._check_shape(x)))
        return -inf if np.isnan(val) else val

    def logdensity_and_gradient(self, x):
        """Log density and its gradient at `x`.

        Args:
            x (array): Unconstrained position vector.

        Returns:
            val (float): Log density value, `-inf` if not defined.
            grad (array): Gradient of log density with respect to `x`.
        """
        grad, val = self._grad_and_value(self._check_shape(x))
        val = float(val)
        return (-inf if np.isnan(val) else val), np.asarray(
            grad, dtype=np.float64)
