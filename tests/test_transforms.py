import numpy as np
import numpy.testing as npt
import pytest
import hmcbridge
from hmcbridge.errors import TransformError

SEED = 3046987125
SHAPES = ((), (3,), (2, 4))
FD_STEP = 1e-6


@pytest.fixture
def rng():
    return np.random.default_rng(SEED)


@pytest.fixture(params=SHAPES)
def shape(request):
    return request.param


@pytest.fixture
def unconstrained(rng, shape):
    return rng.standard_normal(shape) * 2


class TransformTests:

    def test_link_invlink(self, transform, unconstrained):
        constrained = transform.invlink(unconstrained)
        npt.assert_allclose(
            transform.link(constrained), unconstrained, rtol=1e-6, atol=1e-8)

    def test_invlink_in_support(self, transform, unconstrained):
        assert np.all(transform.in_support(transform.invlink(unconstrained)))

    def test_link_shape(self, transform, unconstrained):
        constrained = transform.invlink(unconstrained)
        assert np.shape(transform.link(constrained)) == np.shape(unconstrained)

    def test_log_abs_det_jacobian_scalar(self, transform, unconstrained):
        assert np.ndim(transform.log_abs_det_jacobian(unconstrained)) == 0

    def test_log_abs_det_jacobian(self, transform, unconstrained):
        npt.assert_allclose(
            transform.log_abs_det_jacobian(unconstrained),
            np.sum(np.log(np.abs(transform.invlink_derivative(unconstrained)))),
            atol=1e-10)

    def test_invlink_derivative(self, transform, unconstrained):
        fd_derivative = (
            transform.invlink(unconstrained + FD_STEP) -
            transform.invlink(unconstrained - FD_STEP)) / (2 * FD_STEP)
        npt.assert_allclose(
            transform.invlink_derivative(unconstrained), fd_derivative,
            rtol=1e-5, atol=1e-8)

    def test_grad_log_abs_det_jacobian(self, transform, unconstrained):
        flat = np.ravel(unconstrained)
        grad = np.ravel(transform.grad_log_abs_det_jacobian(unconstrained))
        for i in range(flat.size):
            shift = np.zeros_like(flat)
            shift[i] = FD_STEP
            fd_grad = (
                transform.log_abs_det_jacobian(flat + shift) -
                transform.log_abs_det_jacobian(flat - shift)) / (2 * FD_STEP)
            assert np.isclose(grad[i], fd_grad, rtol=1e-5, atol=1e-7)

    def test_link_nan_raises(self, transform):
        with pytest.raises(TransformError):
            transform.link(np.nan)

    def test_repr(self, transform):
        assert type(transform).__name__ in repr(transform)


class TestIdentityTransform(TransformTests):

    @pytest.fixture
    def transform(self):
        return hmcbridge.transforms.IdentityTransform()

    def test_link_infinite_raises(self, transform):
        with pytest.raises(TransformError):
            transform.link(np.array([0., np.inf]))


class TestLogTransform(TransformTests):

    @pytest.fixture
    def transform(self):
        return hmcbridge.transforms.LogTransform()

    @pytest.mark.parametrize('value', (0., -1., np.array([1., -2.])))
    def test_link_outside_support_raises(self, transform, value):
        with pytest.raises(TransformError):
            transform.link(value)

    def test_invlink_positive(self, transform, unconstrained):
        assert np.all(transform.invlink(unconstrained) > 0)


class TestLowerBoundTransform(TransformTests):

    @pytest.fixture
    def transform(self):
        return hmcbridge.transforms.LowerBoundTransform(-1.5)

    def test_link_outside_support_raises(self, transform):
        with pytest.raises(TransformError):
            transform.link(-2.)


class TestUpperBoundTransform(TransformTests):

    @pytest.fixture
    def transform(self):
        return hmcbridge.transforms.UpperBoundTransform(2.)

    def test_link_outside_support_raises(self, transform):
        with pytest.raises(TransformError):
            transform.link(2.)


class TestIntervalTransform(TransformTests):

    @pytest.fixture
    def transform(self):
        return hmcbridge.transforms.IntervalTransform(-1., 3.)

    @pytest.mark.parametrize('value', (-1., 3., 5.))
    def test_link_outside_support_raises(self, transform, value):
        with pytest.raises(TransformError):
            transform.link(value)

    def test_invalid_bounds_raises(self):
        with pytest.raises(ValueError):
            hmcbridge.transforms.IntervalTransform(1., 1.)
