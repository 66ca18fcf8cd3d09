"""Immutable records of the parameter values of a chain."""

from math import inf
from types import MappingProxyType
import numpy as np
from hmcbridge.errors import TransformError


def _read_only_array(val):
    array = np.array(val, dtype=np.float64)
    array.flags.writeable = False
    return array


class ParameterSpace(object):
    """Current values of the variables of a model.

    Records the value of each variable, the set of variables whose values are
    currently held in unconstrained (linked) coordinates and the last recorded
    log density. Instances are never modified: all update methods return a
    new instance and the stored arrays are read-only.

    Variables are kept in model order, which determines the order values are
    concatenated in by `vector`.
    """

    def __init__(self, values, linked=frozenset(), logp=-inf):
        """
        Args:
            values (Mapping[str, array]): Variable values in model order.
            linked (Iterable[str]): Names of variables whose values are in
                unconstrained coordinates.
            logp (float): Last recorded log density.
        """
        self._values = MappingProxyType(
            {name: _read_only_array(val) for name, val in values.items()})
        self._linked = frozenset(linked)
        unknown = self._linked - set(self._values)
        if unknown:
            raise ValueError(f'Linked names {sorted(unknown)} have no values.')
        self._logp = float(logp)

    @classmethod
    def from_values(cls, model, values):
        """Create a parameter space from constrained variable values.

        Args:
            model (hmcbridge.models.Model): Model the values are for.
            values (Mapping[str, array]): Constrained value of every model
                variable.

        Returns:
            ParameterSpace: New space with no variables linked.

        Raises:
            ValueError: If a variable is missing, an unknown name is given or a
                value has the wrong shape.
        """
        missing = set(model.names) - set(values)
        if missing:
            raise ValueError(f'No values given for variables {sorted(missing)}.')
        unknown = set(values) - set(model.names)
        if unknown:
            raise ValueError(
                f'Names {sorted(unknown)} are not variables of the model.')
        ordered_values = {}
        for name, variable in model.variables.items():
            value = np.asarray(values[name], dtype=np.float64)
            if value.shape != tuple(variable.shape):
                raise ValueError(
                    f'Value for {name} has shape {value.shape} but variable has '
                    f'shape {tuple(variable.shape)}.')
            ordered_values[name] = value
        return cls(ordered_values)

    @classmethod
    def sample_uniform(cls, rng, model, low=-2., high=2.):
        """Sample initial values uniformly in unconstrained space.

        Each element of each variable is drawn uniformly on `[low, high]` in
        unconstrained coordinates and mapped to constrained coordinates.

        Args:
            rng (numpy.random.Generator): Numpy random number generator.
            model (hmcbridge.models.Model): Model to sample values for.
            low (float): Lower bound of unconstrained values.
            high (float): Upper bound of unconstrained values.

        Returns:
            ParameterSpace: New space with no variables linked.
        """
        values = {}
        for name, variable in model.variables.items():
            unconstrained = rng.uniform(low, high, size=variable.shape)
            values[name] = np.asarray(
                variable.transform.invlink(unconstrained)).reshape(
                    variable.shape)
        return cls(values)

    @property
    def values(self):
        """Read-only mapping from variable names to values."""
        return self._values

    @property
    def linked(self):
        """Names of variables whose values are in unconstrained coordinates."""
        return self._linked

    @property
    def logp(self):
        """Last recorded log density."""
        return self._logp

    def _select(self, subset):
        subset = set(subset)
        unknown = subset - set(self._values)
        if unknown:
            raise ValueError(f'Names {sorted(unknown)} have no values.')
        return tuple(
            name for name in self._values if not subset or name in subset)

    def _replace(self, values=None, linked=None, logp=None):
        return type(self)(
            self._values if values is None else values,
            self._linked if linked is None else linked,
            self._logp if logp is None else logp)

    def is_linked(self, subset=()):
        """Whether all variables in `subset` (all if empty) are linked."""
        return all(name in self._linked for name in self._select(subset))

    def link(self, model, subset=()):
        """Map values of variables in `subset` to unconstrained coordinates.

        Variables which are already linked are left unchanged, so linking is
        idempotent.

        Args:
            model (hmcbridge.models.Model): Model defining the transforms.
            subset (Iterable[str]): Names of variables to link. If empty all
                variables are linked.

        Returns:
            ParameterSpace: New space with the variables linked.

        Raises:
            hmcbridge.errors.TransformError: If a value is outside the support
                of its transform.
        """
        values = dict(self._values)
        names = self._select(subset)
        for name in names:
            if name not in self._linked:
                transform = model.variables[name].transform
                try:
                    values[name] = transform.link(values[name])
                except TransformError as e:
                    raise TransformError(
                        f'Cannot link variable {name}: {e}') from e
        return self._replace(values=values, linked=self._linked | set(names))

    def invlink(self, model, subset=()):
        """Map values of variables in `subset` to constrained coordinates.

        Variables which are not linked are left unchanged.

        Args:
            model (hmcbridge.models.Model): Model defining the transforms.
            subset (Iterable[str]): Names of variables to map. If empty all
                variables are mapped.

        Returns:
            ParameterSpace: New space with the variables not linked.
        """
        values = dict(self._values)
        names = self._select(subset)
        for name in names:
            if name in self._linked:
                values[name] = np.asarray(
                    model.variables[name].transform.invlink(values[name]))
        return self._replace(values=values, linked=self._linked - set(names))

    def vector(self, subset=()):
        """Values of variables in `subset` flattened into a single vector.

        Args:
            subset (Iterable[str]): Names of variables to include. If empty all
                variables are included.

        Returns:
            array: One-dimensional array of values concatenated in model order.
        """
        names = self._select(subset)
        if not names:
            return np.zeros(0)
        return np.concatenate([self._values[name].ravel() for name in names])

    def with_vector(self, vector, subset=()):
        """Replace values of variables in `subset` from a flat vector.

        Args:
            vector (array): One-dimensional array of new values, in the layout
                returned by `vector(subset)`.
            subset (Iterable[str]): Names of variables to replace. If empty all
                variables are replaced.

        Returns:
            ParameterSpace: New space with replaced values.

        Raises:
            ValueError: If the length of `vector` does not match the total size
                of the selected variables.
        """
        vector = np.asarray(vector, dtype=np.float64)
        names = self._select(subset)
        sizes = [self._values[name].size for name in names]
        if vector.shape != (sum(sizes),):
            raise ValueError(
                f'Vector of shape {vector.shape} does not match total size '
                f'{sum(sizes)} of variables {names}.')
        values = dict(self._values)
        offset = 0
        for name, size in zip(names, sizes):
            values[name] = vector[offset:offset + size].reshape(
                self._values[name].shape)
            offset += size
        return self._replace(values=values)

    def with_logp(self, logp):
        """Return new space with the recorded log density replaced."""
        return self._replace(logp=logp)

    def constrained_values(self, model):
        """Dictionary of all variable values in constrained coordinates."""
        return dict(self.invlink(model).values)

    def __repr__(self):
        values = ', '.join(f'{k}={v}' for k, v in self._values.items())
        return (
            f'{type(self).__name__}({values}, linked={sorted(self._linked)}, '
            f'logp={self._logp})')
