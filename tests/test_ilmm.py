# mypy: ignore-errors

import jax
import jax.numpy as jnp
import pytest
from jax.scipy import linalg
from jax.scipy.stats import multivariate_normal
from tinygp import kernels

from tinylmm import (
    ConditionedProcess,
    IndependentLatentProcessSet,
    LatentGP,
    LinearMixingModel,
    MultiOutputInputs,
)
from tinylmm.errors import PreconditionViolation, ShapeMismatch
from tinylmm.ilmm import SAMPLE_JITTER, regulariser, sample_jitter
from tinylmm.inputs import indices_which_reorder_outputs_to_features
from tinylmm.test_utils import assert_allclose, dense_mixing_covariance


@pytest.fixture
def latent():
    return IndependentLatentProcessSet(
        [
            LatentGP(kernels.ExpSquared(1.0), mean=0.5),
            LatentGP(1.5 * kernels.Matern32(0.7), mean=-0.2),
        ]
    )


@pytest.fixture
def H(random):
    return jnp.asarray(random.normal(size=(3, 2)))


@pytest.fixture
def data(random):
    X = jnp.array([-1.2, 0.3, 1.9])
    X_test = jnp.array([-2.0, 0.0, 0.8, 2.5])
    y = jnp.asarray(random.normal(size=9))
    return X, X_test, y


def dense_model(latent, H, X, X_test=None):
    # The mean and covariance of the noise free outputs by brute force
    n = len(X)
    latent_mean = jnp.concatenate([f.mean(X) for f in latent.processes])
    mean = jnp.kron(H, jnp.eye(n)) @ latent_mean
    if X_test is None:
        cov = dense_mixing_covariance(
            [f.covariance(X) for f in latent.processes], H, 0.0
        )
        return mean, cov

    K = linalg.block_diag(*(f.covariance(X_test, X) for f in latent.processes))
    cross = jnp.kron(H, jnp.eye(len(X_test))) @ K @ jnp.kron(H, jnp.eye(n)).T
    return mean, cross


def test_mean_and_covariance(latent, H, data):
    X, X_test, _ = data
    model = LinearMixingModel(latent, H)
    assert model.num_outputs == 3
    assert model.num_latents == 2
    x = MultiOutputInputs.by_outputs(X, 3)
    x_test = MultiOutputInputs.by_outputs(X_test, 3)

    mean, cov = dense_model(latent, H, X)
    assert_allclose(model.mean(x), mean)
    assert_allclose(model.covariance(x), cov)
    assert_allclose(model.variance(x), jnp.diag(cov))

    _, cross = dense_model(latent, H, X, X_test)
    assert_allclose(model.covariance(x_test, x), cross)

    fx = model(x, 0.1)
    loc, variance = fx.mean_and_variance()
    assert_allclose(loc, mean)
    assert_allclose(variance, jnp.diag(cov) + 0.1)
    assert_allclose(fx.covariance, cov + 0.1 * jnp.eye(9))


def test_log_probability(latent, H, data):
    X, _, y = data
    model = LinearMixingModel(latent, H)
    x = MultiOutputInputs.by_outputs(X, 3)

    mean, cov = dense_model(latent, H, X)
    expected = multivariate_normal.logpdf(y, mean, cov + 0.1 * jnp.eye(9))
    assert_allclose(model(x, 0.1).log_probability(y), expected, atol=1e-6, rtol=1e-6)

    # Dense mixing covariance helper
    assert_allclose(
        dense_mixing_covariance(
            [f.covariance(X) for f in latent.processes], H, 0.1
        ),
        cov + 0.1 * jnp.eye(9),
    )


def test_regulariser_vanishes_for_square_mixing(random):
    # With p = m the projection is exact and only the determinant remains
    H = jnp.asarray(random.normal(size=(2, 2)))
    residual = jnp.zeros((2, 5))
    _, log_det = jnp.linalg.slogdet(0.1 * jnp.linalg.inv(H.T @ H))
    expected = -0.5 * 5 * (2 * jnp.log(0.1) - log_det)
    assert_allclose(regulariser(residual, 0.1, log_det, 2), expected)


def test_condition(latent, H, data):
    X, X_test, y = data
    model = LinearMixingModel(latent, H)
    x = MultiOutputInputs.by_outputs(X, 3)
    x_test = MultiOutputInputs.by_outputs(X_test, 3)

    log_prob, posterior = model(x, 0.1).condition(y)
    assert isinstance(posterior, LinearMixingModel)
    assert isinstance(posterior.latent, ConditionedProcess)
    assert_allclose(posterior.H, model.H)
    assert_allclose(log_prob, model(x, 0.1).log_probability(y))

    # Brute force posterior of the noise free outputs at the test inputs
    mean, cov = dense_model(latent, H, X)
    mean_test, _ = dense_model(latent, H, X_test)
    _, cross = dense_model(latent, H, X, X_test)
    C = cov + 0.1 * jnp.eye(9)
    expected_mean = mean_test + cross @ jnp.linalg.solve(C, y - mean)
    expected_cov = model.covariance(x_test) - cross @ jnp.linalg.solve(C, cross.T)

    assert_allclose(posterior.mean(x_test), expected_mean, atol=1e-6)
    assert_allclose(posterior.covariance(x_test), expected_cov, atol=1e-6)
    assert_allclose(posterior.variance(x_test), jnp.diag(expected_cov), atol=1e-6)


def test_scenario():
    H = jnp.array([[1.0, 0.0], [0.0, 1.0], [1.0, 1.0]])
    latent = IndependentLatentProcessSet(
        [LatentGP(kernels.ExpSquared()), LatentGP(kernels.ExpSquared())]
    )
    model = LinearMixingModel(latent, H)
    X = jnp.array([0.0, 1.0, 2.0])
    x = MultiOutputInputs.by_outputs(X, 3)
    y = jnp.array([0.1, 0.5, -0.3, 1.0, 0.8, 0.2, 1.2, 1.1, -0.1])

    log_prob = model(x, 0.1).log_probability(y)
    assert log_prob.shape == ()
    assert jnp.isfinite(log_prob)

    _, posterior = model(x, 0.1).condition(y)
    assert isinstance(posterior, LinearMixingModel)
    latent_x = MultiOutputInputs.by_outputs(X, 2)
    assert jnp.all(posterior.latent.variance(latent_x) < latent.variance(latent_x))


def test_noiseless_limit(latent, random):
    H = jnp.array([[1.0, 0.0], [0.0, 1.0], [1.0, 1.0]])
    model = LinearMixingModel(latent, H)
    X = jnp.array([-2.0, 0.0, 2.0])
    x = MultiOutputInputs.by_outputs(X, 3)

    # Observations that lie exactly in the column space of H
    F = jnp.asarray(random.normal(size=(2, 3)))
    y = (H @ F).ravel()

    _, posterior = model(x, 1e-6).condition(y)
    assert_allclose(posterior.variance(x), jnp.zeros(9), atol=1e-4)
    assert_allclose(posterior.mean(x), y, atol=1e-3)


def test_by_features(latent, H, data):
    X, X_test, y = data
    model = LinearMixingModel(latent, H)
    x = MultiOutputInputs.by_outputs(X, 3)
    x_feat = MultiOutputInputs.by_features(X, 3)
    perm = indices_which_reorder_outputs_to_features(x)

    assert_allclose(model.mean(x_feat), model.mean(x)[perm])
    assert_allclose(model.covariance(x_feat), model.covariance(x)[perm][:, perm])
    assert_allclose(
        model(x_feat, 0.1).log_probability(y[perm]),
        model(x, 0.1).log_probability(y),
    )

    _, posterior = model(x_feat, 0.1).condition(y[perm])
    _, expected = model(x, 0.1).condition(y)
    x_test = MultiOutputInputs.by_features(X_test, 3)
    assert_allclose(posterior.mean(x_test), expected.mean(x_test))
    assert_allclose(posterior.variance(x_test), expected.variance(x_test))


def test_sample(latent, data):
    X, _, _ = data
    H = jnp.array([[1.0, 0.0], [0.0, 1.0], [1.0, 1.0]])
    model = LinearMixingModel(latent, H)
    x = MultiOutputInputs.by_outputs(X, 3)
    fx = model(x, 0.1)
    key = jax.random.PRNGKey(1032)

    assert fx.sample(key).shape == (9,)
    assert fx.sample(key, (7,)).shape == (7, 9)
    assert fx.sample(key, (2, 3)).shape == (2, 3, 9)

    y = fx.sample(key, (50_000,))
    assert_allclose(jnp.mean(y, axis=0), fx.loc, atol=0.05)
    assert_allclose(jnp.cov(y, rowvar=False), fx.covariance, atol=0.08)

    x_feat = MultiOutputInputs.by_features(X, 3)
    perm = indices_which_reorder_outputs_to_features(x)
    assert_allclose(model(x_feat, 0.1).sample(key, (4,)), fx.sample(key, (4,))[:, perm])


def test_posterior_sample(latent, H, data):
    X, X_test, y = data
    x = MultiOutputInputs.by_outputs(X, 3)
    _, posterior = LinearMixingModel(latent, H)(x, 0.1).condition(y)
    x_test = MultiOutputInputs.by_outputs(X_test, 3)
    samples = posterior(x_test, 0.1).sample(jax.random.PRNGKey(3), (5,))
    assert samples.shape == (5, 12)
    assert jnp.all(jnp.isfinite(samples))


def test_jit(latent, H, data):
    X, _, y = data
    x = MultiOutputInputs.by_outputs(X, 3)

    @jax.jit
    def log_probability(H, sigma2):
        return LinearMixingModel(latent, H)(x, sigma2).log_probability(y)

    expected = LinearMixingModel(latent, H)(x, 0.1).log_probability(y)
    assert_allclose(log_probability(H, 0.1), expected)
    assert jnp.all(jnp.isfinite(jax.grad(log_probability)(H, 0.1)))


def test_invalid(latent, H, data):
    X, _, y = data
    model = LinearMixingModel(latent, H)
    x = MultiOutputInputs.by_outputs(X, 3)

    with pytest.raises(PreconditionViolation):
        LinearMixingModel(latent, H.T)

    with pytest.raises(PreconditionViolation):
        model.mean(MultiOutputInputs.by_outputs(X, 2))

    with pytest.raises(PreconditionViolation):
        model(X, 0.1).log_probability(y[:3])

    with pytest.raises(ShapeMismatch):
        model(x, 0.1).log_probability(y[:-1])

    with pytest.raises(ShapeMismatch):
        model(x, 0.1).condition(jnp.ones((3, 3)))

    # Heteroscedastic noise is not supported by the projection
    with pytest.raises(PreconditionViolation, match="Homoscedastic"):
        model(x, jnp.full(9, 0.1)).log_probability(y)


def test_sample_jitter():
    assert sample_jitter(jnp.float64) == SAMPLE_JITTER
    assert sample_jitter(jnp.float32) > jnp.finfo(jnp.float32).eps


def test_sample_single_precision():
    from jax import enable_x64

    with enable_x64(False):
        latent = IndependentLatentProcessSet(
            [LatentGP(kernels.ExpSquared(1.0)), LatentGP(kernels.Matern32(0.5))]
        )
        H = jnp.array([[1.0, 0.0], [0.0, 1.0], [1.0, 1.0]])
        model = LinearMixingModel(latent, H)
        x = MultiOutputInputs.by_outputs(jnp.linspace(0, 5, 40), 3)
        y = model(x, 0.1).sample(jax.random.PRNGKey(0), (3,))
        assert y.dtype == jnp.float32
        assert y.shape == (3, 120)
        assert jnp.all(jnp.isfinite(y))
