from __future__ import annotations

__all__ = ["LinearMixingModel", "SAMPLE_JITTER", "regulariser", "sample_jitter"]

from collections.abc import Sequence
from typing import Any

import equinox as eqx
import jax
import jax.numpy as jnp
import numpy as np
from tinygp.noise import Dense

from tinylmm.helpers import JAXArray, as_float_array
from tinylmm.inputs import (
    MultiOutputInputs,
    check_inputs,
    reorder_from_outputs,
    reorder_matrix_from_outputs,
    reorder_to_outputs,
)
from tinylmm.noise import noise_variance
from tinylmm.processes import ConditionResult, FiniteProcess, Process
from tinylmm.projection import (
    PROJECTION_JITTER,
    Projection,
    check_mixing_matrix,
    project,
)

SAMPLE_JITTER = 1e-12
"""The noise variance of the latent process when sampling a mixing model

This is only used when it is resolvable at the working precision; see
:func:`sample_jitter`.
"""


class LinearMixingModel(Process):
    """An Instantaneous Linear Mixing Model (ILMM)

    This is a distribution over vector-valued functions. If ``p`` is the
    number of observed outputs and ``m`` the number of latent processes, the
    ``p x m`` mixing matrix ``H`` has a column space that spans the output
    space, and the value of the model at an input ``x`` for all outputs is
    ``H @ [f(x, 1), f(x, 2), ..., f(x, m)]`` for a sample ``f`` from the latent
    process.

    The model must be evaluated at a :class:`tinylmm.MultiOutputInputs` index
    set with ``p`` outputs, and with homoscedastic observation noise given as
    a scalar variance. The log probability and conditioning use the exact
    projection of the observations onto the latent space (see
    :func:`tinylmm.project`), while the mean and covariance are computed using
    the dense ``H ⊗ I`` operator.

    Args:
        latent: A multi-output process with ``m`` outputs, typically a
            :class:`tinylmm.IndependentLatentProcessSet`.
        H: The ``p x m`` mixing matrix. This is a fixed basis and it is never
            updated by conditioning.
        jitter: The jitter used when computing the projection.
    """

    latent: Process
    H: JAXArray
    jitter: float = eqx.field(static=True)

    def __init__(
        self,
        latent: Process,
        H: JAXArray,
        *,
        jitter: float = PROJECTION_JITTER,
    ):
        H = as_float_array(H)
        check_mixing_matrix(H)
        self.latent = latent
        self.H = H
        self.jitter = jitter

    @property
    def num_outputs(self) -> int:
        return self.H.shape[0]

    @property
    def num_latents(self) -> int:
        return self.H.shape[1]

    def mean(self, x: MultiOutputInputs) -> JAXArray:
        x = self._check_inputs(x)
        mean = self._mixing_operator(x) @ self.latent.mean(self._latent_inputs(x))
        return reorder_from_outputs(x, mean)

    def variance(self, x: MultiOutputInputs) -> JAXArray:
        x = self._check_inputs(x)
        op = self._mixing_operator(x)
        K = self.latent.covariance(self._latent_inputs(x))
        return reorder_from_outputs(x, jnp.einsum("ij,jk,ik->i", op, K, op))

    def covariance(
        self, x: MultiOutputInputs, y: MultiOutputInputs | None = None
    ) -> JAXArray:
        x = self._check_inputs(x)
        y = x if y is None else self._check_inputs(y)
        K = self.latent.covariance(self._latent_inputs(x), self._latent_inputs(y))
        return reorder_matrix_from_outputs(
            x, y, self._mixing_operator(x) @ K @ self._mixing_operator(y).T
        )

    def _mean_and_variance(self, fx: FiniteProcess) -> tuple[JAXArray, JAXArray]:
        x, sigma2 = self._unpack(fx)
        return self.mean(x), self.variance(x) + sigma2

    def _mean_and_covariance(self, fx: FiniteProcess) -> tuple[JAXArray, JAXArray]:
        x, _ = self._unpack(fx)
        return self.mean(x), self.covariance(x) + fx.noise

    def _sample(
        self, key: JAXArray, fx: FiniteProcess, shape: Sequence[int]
    ) -> JAXArray:
        x, sigma2 = self._unpack(fx)
        n, p, m = x.num_inputs, self.num_outputs, self.num_latents
        latent_key, noise_key = jax.random.split(key)

        # Sample the latent process with a tiny bit of noise to keep the
        # factorization well posed, then mix and add the observation noise
        latent = self.latent(
            self._latent_inputs(x), sample_jitter(self.H.dtype)
        ).sample(latent_key, shape)
        latent = latent.reshape(tuple(shape) + (m, n))
        mixed = jnp.einsum("pm,...mn->...pn", self.H, latent).reshape(
            tuple(shape) + (p * n,)
        )
        noise = jax.random.normal(noise_key, mixed.shape, dtype=mixed.dtype)
        return reorder_from_outputs(x, mixed + jnp.sqrt(sigma2) * noise)

    def _log_probability(self, fx: FiniteProcess, y: JAXArray) -> JAXArray:
        x, sigma2 = self._unpack(fx)
        Y = self._observations(x, y)
        projection = project(self.H, sigma2, jitter=self.jitter)
        latent_fx = self._projected_latent(x, projection)
        return latent_fx.log_probability(
            (projection.T @ Y).ravel()
        ) + self._regulariser(projection, sigma2, Y)

    def _condition(self, fx: FiniteProcess, y: JAXArray) -> ConditionResult:
        x, sigma2 = self._unpack(fx)
        Y = self._observations(x, y)
        projection = project(self.H, sigma2, jitter=self.jitter)
        log_prob, latent = self._projected_latent(x, projection).condition(
            (projection.T @ Y).ravel()
        )
        return ConditionResult(
            log_prob + self._regulariser(projection, sigma2, Y),
            LinearMixingModel(latent, self.H, jitter=self.jitter),
        )

    def _check_inputs(self, x: MultiOutputInputs) -> MultiOutputInputs:
        return check_inputs(x, self.num_outputs, type(self).__name__)

    def _unpack(self, fx: FiniteProcess) -> tuple[MultiOutputInputs, JAXArray]:
        return self._check_inputs(fx.x), noise_variance(fx.noise)

    def _latent_inputs(self, x: MultiOutputInputs) -> MultiOutputInputs:
        return MultiOutputInputs.by_outputs(x.X, self.num_latents)

    def _mixing_operator(self, x: MultiOutputInputs) -> JAXArray:
        # This maps the latent values at x, grouped by output, to the observed
        # values, also grouped by output
        return jnp.kron(self.H, jnp.eye(x.num_inputs, dtype=self.H.dtype))

    def _observations(self, x: MultiOutputInputs, y: JAXArray) -> JAXArray:
        # Reshape to (p, n) with one row per output
        return reorder_to_outputs(x, y).reshape(self.num_outputs, x.num_inputs)

    def _projected_latent(
        self, x: MultiOutputInputs, projection: Projection
    ) -> FiniteProcess:
        noise = Dense(value=jnp.kron(projection.Sigma_T, jnp.eye(x.num_inputs)))
        return self.latent(self._latent_inputs(x), noise)

    def _regulariser(
        self, projection: Projection, sigma2: JAXArray, Y: JAXArray
    ) -> JAXArray:
        _, log_det = jnp.linalg.slogdet(projection.Sigma_T)
        residual = Y - self.H @ (projection.T @ Y)
        return regulariser(residual, sigma2, log_det, self.num_latents)


def sample_jitter(dtype: Any) -> float:
    """The latent noise variance used when sampling at the precision ``dtype``

    This is :data:`SAMPLE_JITTER` when that is larger than the machine epsilon
    of ``dtype``, and the square root of the machine epsilon otherwise; the
    same diagonal that ``tinygp`` adds by default.
    """
    eps = float(jnp.finfo(dtype).eps)
    if SAMPLE_JITTER > eps:
        return SAMPLE_JITTER
    return float(np.sqrt(eps))


def regulariser(
    residual: JAXArray,
    sigma2: JAXArray,
    log_det_Sigma_T: JAXArray,
    num_latents: int,
) -> JAXArray:
    """The part of the log probability lost by projecting onto the latent space

    See e.g. appendix A.4 of Bruinsma et al. (2020). This needs to be added to
    the log probability of the projected observations under the latent process
    to recover the exact log probability of the full model.

    Args:
        residual: The ``p x n`` matrix ``Y - H T Y``; the part of the
            observations that can't be explained by the column space of ``H``.
        sigma2: The observation noise variance ``σ²``.
        log_det_Sigma_T: The log determinant of the projected noise covariance.
        num_latents: The number of latent processes ``m``.
    """
    p, n = residual.shape
    return -0.5 * (
        n
        * (
            (p - num_latents) * np.log(2 * np.pi)
            + p * jnp.log(sigma2)
            - log_det_Sigma_T
        )
        + jnp.sum(jnp.square(residual)) / sigma2
    )

