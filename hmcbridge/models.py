"""Descriptions of the probabilistic models sampled from."""

from collections import OrderedDict, namedtuple
import numpy as np
from hmcbridge.transforms import IdentityTransform


Variable = namedtuple('Variable', ['shape', 'transform'],
                      defaults=((), IdentityTransform()))
Variable.__doc__ = """Random variable of a model.

`shape` is the shape of the (array) value of the variable, `()` for a scalar,
and `transform` the `hmcbridge.transforms.Transform` mapping its support to
unconstrained space.
"""


class Model(object):
    """Probabilistic model defined by an unnormalized log joint density.

    The model is an ordered collection of named variables together with a
    function evaluating the logarithm of the joint density of the variables
    in constrained coordinates. The order of the variables fixes the order
    in which their values are concatenated into a single vector.
    """

    def __init__(self, variables, log_joint, grad_log_joint=None):
        """
        Args:
            variables (Mapping[str, Variable] or
                    Iterable[Tuple[str, Variable]]): Named model variables in
                order.
            log_joint (Callable[[Dict[str, array]], float]): Function which
                given a dictionary of constrained variable values returns the
                logarithm of the unnormalized joint density. If gradients are
                to be computed by automatic differentiation it should be
                written with the NumPy API of the chosen backend.
            grad_log_joint (None or
                    Callable[[Dict[str, array]], Dict[str, array]]): Optional
                function returning the gradients of `log_joint` with respect
                to each constrained variable value. Required if no automatic
                differentiation backend is used.
        """
        variables = OrderedDict(variables)
        for name, variable in variables.items():
            if not isinstance(variable, Variable):
                raise TypeError(
                    f'Variable {name} must be a Variable instance.')
        self.variables = variables
        self.log_joint = log_joint
        self.grad_log_joint = grad_log_joint

    @property
    def names(self):
        """Names of all variables in model order."""
        return tuple(self.variables)

    def size(self, name):
        """Number of scalar elements in the value of a variable."""
        return int(np.prod(self.variables[name].shape, dtype=np.int64))

    def select(self, subset=()):
        """Names of the variables in a subset in model order.

        Args:
            subset (Iterable[str]): Names of variables to select. If empty all
                variables are selected.

        Returns:
            Tuple[str]: Selected names ordered as in the model.

        Raises:
            ValueError: If `subset` contains a name which is not a variable of
                the model.
        """
        subset = set(subset)
        unknown = subset - set(self.variables)
        if unknown:
            raise ValueError(
                f'Names {sorted(unknown)} are not variables of the model.')
        if not subset:
            return self.names
        return tuple(name for name in self.variables if name in subset)

    def dimension(self, subset=()):
        """Total number of scalar elements in the values of a subset."""
        return sum(self.size(name) for name in self.select(subset))

    def __repr__(self):
        return f'{type(self).__name__}(variables={dict(self.variables)})'
