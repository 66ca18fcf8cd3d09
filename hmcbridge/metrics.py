"""Structured positive definite matrices used as mass matrices (metrics).

Only the operations needed to simulate Euclidean Hamiltonian dynamics are
implemented: left and right multiplication of arrays by a matrix, its
inverse and a square root factor. Inverses and factors are computed lazily
on first access and then reused, and any arrays held by a matrix object are
flagged read-only so a calibrated metric cannot be modified in place.
"""

import abc
import numpy as np
import numpy.linalg as nla
import scipy.linalg as sla
from hmcbridge.errors import LinAlgError


class Matrix(abc.ABC):
    """Base class for matrix-like objects.

    Implements the matrix multiplication operator `@` for array arguments on
    either side.
    """

    __array_priority__ = 1

    def __init__(self, shape, **kwargs):
        """
        Args:
           shape (Tuple[int, int]): Shape of matrix `(num_rows, num_columns)`.
           **kwargs: Attributes to set on the object. Any NumPy arrays are
               made read-only.
        """
        self._shape = shape
        self._transpose = None
        for k, v in kwargs.items():
            if isinstance(v, np.ndarray):
                v.flags.writeable = False
            self.__dict__[k] = v

    def __array__(self, dtype=None, copy=None):
        return np.asarray(self.array, dtype=dtype)

    def __matmul__(self, other):
        if isinstance(other, Matrix):
            return NotImplemented
        if self.shape[1] is not None and other.shape[0] != self.shape[1]:
            raise ValueError(
                f'Inconsistent dimensions for matrix multiplication: '
                f'{self.shape} and {other.shape}.')
        return self._left_matrix_multiply(other)

    def __rmatmul__(self, other):
        if isinstance(other, Matrix):
            return NotImplemented
        if self.shape[0] is not None and other.shape[-1] != self.shape[0]:
            raise ValueError(
                f'Inconsistent dimensions for matrix multiplication: '
                f'{other.shape} and {self.shape}.')
        return self._right_matrix_multiply(other)

    @property
    def shape(self):
        """Shape of matrix as a tuple `(num_rows, num_columns)`."""
        return self._shape

    @property
    @abc.abstractmethod
    def array(self):
        """Full dense representation of matrix as a 2D array."""

    @abc.abstractmethod
    def _left_matrix_multiply(self, other):
        """Left multiply argument by the represented matrix."""

    @abc.abstractmethod
    def _right_matrix_multiply(self, other):
        """Right multiply argument by the represented matrix."""

    @property
    def transpose(self):
        """Transpose of matrix."""
        if self._transpose is None:
            self._transpose = self._construct_transpose()
        return self._transpose

    T = transpose

    @abc.abstractmethod
    def _construct_transpose(self):
        """Construct transpose of matrix."""

    @property
    def diagonal(self):
        """Diagonal of matrix as a 1D array."""
        return self.array.diagonal()

    def __str__(self):
        return f'(shape={self.shape})'

    def __repr__(self):
        return type(self).__name__ + str(self)

    @abc.abstractmethod
    def _check_equality(self, other):
        """Check for equality with another instance of the same class."""

    def __eq__(self, other):
        return other is self or (
            other.__class__ == self.__class__ and self._check_equality(other))

    __hash__ = object.__hash__


class ExplicitArrayMatrix(Matrix):
    """Matrix with an explicit array representation."""

    def __init__(self, shape, **kwargs):
        if '_array' not in kwargs:
            raise ValueError('_array must be specified in kwargs')
        kwargs['_array'] = np.array(kwargs['_array'], dtype=np.float64)
        if not np.all(np.isfinite(kwargs['_array'])):
            raise ValueError('Matrix array must contain only finite values.')
        super().__init__(shape, **kwargs)

    @property
    def array(self):
        return self._array

    def _left_matrix_multiply(self, other):
        return self._array @ other

    def _right_matrix_multiply(self, other):
        return other @ self._array

    def _check_equality(self, other):
        return np.array_equal(self.array, other.array)


class ImplicitArrayMatrix(Matrix):
    """Matrix with an implicit array representation."""

    def __init__(self, shape, **kwargs):
        super().__init__(shape, **kwargs)
        self._array = None

    @property
    def array(self):
        """Full dense representation of matrix as a 2D array.

        Constructed on first access; operations on the matrix object itself
        should be preferred as they exploit its structure.
        """
        if self._array is None:
            self._array = self._construct_array()
            self._array.flags.writeable = False
        return self._array

    @abc.abstractmethod
    def _construct_array(self):
        """Construct full dense representation of matrix as a 2D array."""


class SquareMatrix(Matrix):
    """Base class for matrices with equal numbers of rows and columns."""

    def __init__(self, shape, **kwargs):
        if shape[0] != shape[1]:
            raise ValueError(
                f'{shape} is not a valid shape for a square matrix.')
        super().__init__(shape, **kwargs)

    @property
    @abc.abstractmethod
    def log_abs_det(self):
        """Logarithm of absolute value of determinant of matrix."""


class InvertibleMatrix(SquareMatrix):
    """Base class for non-singular square matrices."""

    def __init__(self, shape, **kwargs):
        super().__init__(shape, **kwargs)
        self._inv = None

    @property
    def inv(self):
        """Inverse of matrix as a `Matrix` object.

        May be implicit, i.e. implement multiplication by solving a linear
        system with the original matrix rather than forming the inverse.
        """
        if self._inv is None:
            self._inv = self._construct_inv()
        return self._inv

    @abc.abstractmethod
    def _construct_inv(self):
        """Construct inverse of matrix as a `Matrix` object."""


class SymmetricMatrix(SquareMatrix):
    """Base class for square matrices which are equal to their transpose."""

    def _construct_transpose(self):
        return self


class PositiveDefiniteMatrix(SymmetricMatrix, InvertibleMatrix):
    """Base class for positive definite matrices.

    All metric representations are instances of this class.
    """

    def __init__(self, shape, **kwargs):
        self._sqrt = None
        super().__init__(shape, **kwargs)

    @property
    def sqrt(self):
        """Square-root factor satisfying `matrix == sqrt @ sqrt.T`.

        Not in general the symmetric square root.
        """
        if self._sqrt is None:
            self._sqrt = self._construct_sqrt()
        return self._sqrt

    @abc.abstractmethod
    def _construct_sqrt(self):
        """Construct square-root factor satisfying `matrix == sqrt @ sqrt.T`."""


class IdentityMatrix(PositiveDefiniteMatrix, ImplicitArrayMatrix):
    """Matrix representing identity operator on a vector space.

    May be defined with an implicit shape `(None, None)`, in which case only
    the operations not requiring the size are available.
    """

    def __init__(self, size=None):
        """
        Args:
            size (int or None): Number of rows / columns in matrix or `None` if
                matrix is to be implicitly shaped.
        """
        super().__init__((size, size))

    def _left_matrix_multiply(self, other):
        return other

    def _right_matrix_multiply(self, other):
        return other

    def _construct_sqrt(self):
        return self

    def _construct_inv(self):
        return self

    @property
    def diagonal(self):
        return np.ones(self.shape[0])

    def _construct_array(self):
        if self.shape[0] is None:
            raise RuntimeError(
                'Cannot get array representation for identity matrix with '
                'implicit size.')
        return np.identity(self.shape[0])

    @property
    def log_abs_det(self):
        return 0.

    def _check_equality(self, other):
        return self.shape == other.shape


class PositiveDiagonalMatrix(PositiveDefiniteMatrix, ImplicitArrayMatrix):
    """Diagonal matrix with strictly positive diagonal elements."""

    def __init__(self, diagonal):
        """
        Args:
            diagonal (array): 1D array specifying diagonal elements of matrix.
                All values must be positive and finite.
        """
        diagonal = np.array(diagonal, dtype=np.float64)
        if diagonal.ndim != 1:
            raise ValueError('Specified diagonal must be a 1D array.')
        if not np.all((diagonal > 0) & np.isfinite(diagonal)):
            raise ValueError('Diagonal values must all be positive and finite.')
        super().__init__((diagonal.size, diagonal.size), _diagonal=diagonal)

    @property
    def diagonal(self):
        return self._diagonal

    def _left_matrix_multiply(self, other):
        if other.ndim == 2:
            return self.diagonal[:, None] * other
        elif other.ndim == 1:
            return self.diagonal * other
        else:
            raise ValueError(
                'Left matrix multiplication only defined for one or two '
                'dimensional right hand sides.')

    def _right_matrix_multiply(self, other):
        return self.diagonal * other

    def _construct_inv(self):
        return PositiveDiagonalMatrix(1. / self.diagonal)

    def _construct_sqrt(self):
        return PositiveDiagonalMatrix(self.diagonal**0.5)

    def _construct_array(self):
        return np.diag(self.diagonal)

    @property
    def log_abs_det(self):
        return np.log(self.diagonal).sum()

    def _check_equality(self, other):
        return np.array_equal(self.diagonal, other.diagonal)


class TriangularMatrix(InvertibleMatrix, ExplicitArrayMatrix):
    """Matrix with non-zero values only in lower or upper triangle elements."""

    def __init__(self, array, lower=True):
        """
        Args:
            array (array): 2D array containing lower / upper triangular element
                values of matrix. Elements in the other triangle are zeroed.
            lower (bool): Whether the matrix is lower-triangular (`True`) or
                upper-triangular (`False`).
        """
        array = np.tril(array) if lower else np.triu(array)
        super().__init__(array.shape, _array=array)
        self._lower = lower

    @property
    def lower(self):
        return self._lower

    def _construct_inv(self):
        return InverseTriangularMatrix(self.array, lower=self.lower)

    def _construct_transpose(self):
        return TriangularMatrix(self.array.T, lower=not self.lower)

    @property
    def log_abs_det(self):
        return np.log(np.abs(self.diagonal)).sum()

    def __str__(self):
        return f'(shape={self.shape}, lower={self.lower})'


class InverseTriangularMatrix(InvertibleMatrix, ImplicitArrayMatrix):
    """Triangular matrix implicitly specified by its inverse.

    Multiplications are performed by triangular solves with the inverse.
    """

    def __init__(self, inverse_array, lower=True):
        """
        Args:
            inverse_array (array): 2D array containing values of *inverse* of
                this matrix, which is lower (upper) triangular when this
                matrix is.
            lower (bool): Whether the matrix is lower-triangular (`True`) or
                upper-triangular (`False`).
        """
        inverse_array = np.tril(inverse_array) if lower else np.triu(
            inverse_array)
        super().__init__(inverse_array.shape, _inverse_array=inverse_array)
        self._lower = lower

    @property
    def lower(self):
        return self._lower

    def _left_matrix_multiply(self, other):
        return sla.solve_triangular(
            self._inverse_array, other, lower=self.lower, check_finite=False)

    def _right_matrix_multiply(self, other):
        return sla.solve_triangular(
            self._inverse_array, other.T, lower=self.lower, trans=1,
            check_finite=False).T

    def _construct_inv(self):
        return TriangularMatrix(self._inverse_array, lower=self.lower)

    def _construct_transpose(self):
        return InverseTriangularMatrix(
            self._inverse_array.T, lower=not self.lower)

    def _construct_array(self):
        return self @ np.identity(self.shape[0])

    @property
    def diagonal(self):
        return 1. / self._inverse_array.diagonal()

    @property
    def log_abs_det(self):
        return -np.log(np.abs(self._inverse_array.diagonal())).sum()

    def __str__(self):
        return f'(shape={self.shape}, lower={self.lower})'

    def _check_equality(self, other):
        return (
            self.lower == other.lower and
            np.array_equal(self._inverse_array, other._inverse_array))


class DensePositiveDefiniteMatrix(PositiveDefiniteMatrix, ExplicitArrayMatrix):
    """Positive definite matrix specified by a dense 2D array.

    A triangular factor `factor` with `matrix == factor @ factor.T` is computed
    by a Cholesky decomposition when first needed, unless given on
    construction.
    """

    def __init__(self, array, factor=None):
        """
        Args:
            array (array): 2D array specifying matrix entries.
            factor (None or TriangularMatrix or InverseTriangularMatrix):
                Optional pre-computed triangular factor of the matrix.
        """
        array = np.asarray(array)
        super().__init__(array.shape, _array=array)
        self._factor = factor

    @property
    def factor(self):
        """Triangular matrix `factor` with `matrix == factor @ factor.T`."""
        if self._factor is None:
            try:
                self._factor = TriangularMatrix(
                    nla.cholesky(self._array), lower=True)
            except nla.LinAlgError as e:
                raise LinAlgError('Cholesky factorisation failed.') from e
        return self._factor

    def _construct_sqrt(self):
        return self.factor

    def _construct_inv(self):
        inv_factor = self.factor.inv.T
        return DensePositiveDefiniteMatrix(
            inv_factor @ inv_factor.array.T, factor=inv_factor)

    @property
    def log_abs_det(self):
        return 2 * self.factor.log_abs_det
