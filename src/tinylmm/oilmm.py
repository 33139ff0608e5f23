"""
The Orthogonal Instantaneous Linear Mixing Model (OILMM) constrains the mixing
matrix to have orthogonal columns, ``H = U S^(1/2)`` where ``U`` has
orthonormal columns and ``S`` is a positive diagonal. With this constraint the
projection of the observations onto the latent space is ``T = S^(-1/2) U^T``
and the projected noise ``σ² S^(-1)`` is diagonal, so inference decomposes
into ``m`` independent single-output problems. No dense ``p x p`` or
Kronecker structured matrices are formed, giving ``O(n³ m)`` scaling instead
of ``O(n³ m³)``.

Reference:
    Bruinsma et al. (2020). "Scalable Exact Inference in Multi-Output Gaussian
    Processes." ICML.
"""

from __future__ import annotations

__all__ = [
    "ORTHONORMALITY_TOLERANCE",
    "OrthogonalLinearMixingModel",
    "orthonormalize",
]

import equinox as eqx
import jax.numpy as jnp

from tinylmm.errors import PreconditionViolation, ShapeMismatch
from tinylmm.helpers import JAXArray, as_float_array, is_concrete
from tinylmm.ilmm import LinearMixingModel, regulariser
from tinylmm.independent import IndependentLatentProcessSet
from tinylmm.inputs import (
    MultiOutputInputs,
    reorder_from_outputs,
    reorder_matrix_from_outputs,
)
from tinylmm.processes import ConditionResult, FiniteProcess
from tinylmm.projection import PROJECTION_JITTER, check_mixing_matrix

ORTHONORMALITY_TOLERANCE = 1e-6
"""The largest deviation of ``U^T U`` from the identity that is accepted"""


class OrthogonalLinearMixingModel(LinearMixingModel):
    """An Orthogonal Instantaneous Linear Mixing Model (OILMM)

    This has the same interface as :class:`tinylmm.LinearMixingModel`, and
    gives the same results up to numerical precision, but the mixing matrix
    is given in its factored form ``H = U @ diag(sqrt(S))``.

    Args:
        latent: The :class:`tinylmm.IndependentLatentProcessSet` with ``m``
            outputs.
        U: A ``p x m`` matrix with orthonormal columns.
        S: The ``m`` positive scales of the columns of the mixing matrix.
    """

    U: JAXArray
    S: JAXArray

    def __init__(
        self,
        latent: IndependentLatentProcessSet,
        U: JAXArray,
        S: JAXArray,
    ):
        if not isinstance(latent, IndependentLatentProcessSet):
            raise PreconditionViolation(
                "The latent process of an orthogonal mixing model must be an "
                f"IndependentLatentProcessSet, got {type(latent).__name__}"
            )
        U = as_float_array(U)
        S = as_float_array(S)
        check_mixing_matrix(U)
        if S.shape != U.shape[1:]:
            raise ShapeMismatch("the scales S", U.shape[1:], S.shape)
        if latent.num_outputs != U.shape[1]:
            raise PreconditionViolation(
                f"The latent process has {latent.num_outputs} outputs but the "
                f"mixing matrix has {U.shape[1]} columns"
            )

        eye = jnp.eye(U.shape[1], dtype=U.dtype)
        U = _check_values(
            U,
            jnp.max(jnp.abs(U.T @ U - eye)) > ORTHONORMALITY_TOLERANCE,
            "The columns of U must be orthonormal",
        )
        S = _check_values(S, jnp.any(S <= 0), "The scales S must be positive")

        self.latent = latent
        self.U = U
        self.S = S
        self.H = U * jnp.sqrt(S)
        self.jitter = PROJECTION_JITTER

    @classmethod
    def from_mixing_matrix(
        cls,
        latent: IndependentLatentProcessSet,
        H: JAXArray,
    ) -> OrthogonalLinearMixingModel:
        """Factor a mixing matrix with orthogonal columns into ``U`` and ``S``"""
        H = as_float_array(H)
        S = jnp.sum(jnp.square(H), axis=0)
        return cls(latent, H / jnp.sqrt(S), S)

    @property
    def T(self) -> JAXArray:
        """The projection ``S^(-1/2) U^T``; a left inverse of ``H``"""
        return self.U.T / jnp.sqrt(self.S)[:, None]

    def projected_noise_variance(self, sigma2: JAXArray) -> JAXArray:
        """The diagonal of the projected noise covariance, ``σ² / S``"""
        return sigma2 / self.S

    def mean(self, x: MultiOutputInputs) -> JAXArray:
        x = self._check_inputs(x)
        means = jnp.stack([f.mean(x.X) for f in self.latent.processes])
        return reorder_from_outputs(x, (self.H @ means).ravel())

    def variance(self, x: MultiOutputInputs) -> JAXArray:
        x = self._check_inputs(x)
        variances = jnp.stack([f.variance(x.X) for f in self.latent.processes])
        return reorder_from_outputs(x, (jnp.square(self.H) @ variances).ravel())

    def covariance(
        self, x: MultiOutputInputs, y: MultiOutputInputs | None = None
    ) -> JAXArray:
        x = self._check_inputs(x)
        if y is None:
            y = x
            blocks = jnp.stack([f.covariance(x.X) for f in self.latent.processes])
        else:
            y = self._check_inputs(y)
            blocks = jnp.stack(
                [f.covariance(x.X, y.X) for f in self.latent.processes]
            )

        # Cov[(p, i), (q, j)] = sum_m H[p, m] H[q, m] K_m[i, j]
        p = self.num_outputs
        covariance = jnp.einsum("pm,qm,mij->piqj", self.H, self.H, blocks).reshape(
            p * x.num_inputs, p * y.num_inputs
        )
        return reorder_matrix_from_outputs(x, y, covariance)

    def _log_probability(self, fx: FiniteProcess, y: JAXArray) -> JAXArray:
        x, sigma2 = self._unpack(fx)
        Y = self._observations(x, y)
        latent_fxs = self._projected_latents(x, sigma2)
        log_prob = sum(
            f.log_probability(y_i) for f, y_i in zip(latent_fxs, self.T @ Y)
        )
        return log_prob + self._orthogonal_regulariser(sigma2, Y)

    def _condition(self, fx: FiniteProcess, y: JAXArray) -> ConditionResult:
        x, sigma2 = self._unpack(fx)
        Y = self._observations(x, y)
        latent_fxs = self._projected_latents(x, sigma2)
        results = [f.condition(y_i) for f, y_i in zip(latent_fxs, self.T @ Y)]
        return ConditionResult(
            sum(r.log_probability for r in results)
            + self._orthogonal_regulariser(sigma2, Y),
            OrthogonalLinearMixingModel(
                IndependentLatentProcessSet(r.process for r in results),
                self.U,
                self.S,
            ),
        )

    def _projected_latents(
        self, x: MultiOutputInputs, sigma2: JAXArray
    ) -> list[FiniteProcess]:
        noise = self.projected_noise_variance(sigma2)
        return [f(x.X, s) for f, s in zip(self.latent.processes, noise)]

    def _orthogonal_regulariser(self, sigma2: JAXArray, Y: JAXArray) -> JAXArray:
        residual = Y - self.U @ (self.U.T @ Y)
        log_det = jnp.sum(jnp.log(self.projected_noise_variance(sigma2)))
        return regulariser(residual, sigma2, log_det, self.num_latents)


def _check_values(value: JAXArray, invalid: JAXArray, message: str) -> JAXArray:
    if is_concrete(invalid):
        if invalid:
            raise PreconditionViolation(message)
        return value
    return eqx.error_if(value, invalid, message)


def orthonormalize(A: JAXArray) -> JAXArray:
    """The closest matrix to ``A`` with orthonormal columns

    This uses the singular value decomposition ``A = U diag(s) V^T`` to project
    ``A`` onto the set of matrices with orthonormal columns, ``U V^T``.
    """
    U, _, Vt = jnp.linalg.svd(as_float_array(A), full_matrices=False)
    return U @ Vt
