r"""
The projection step at the heart of inference in a linear mixing model. Given
a ``p x m`` mixing matrix ``H`` and a homoscedastic noise variance ``σ²``, the
observations ``y`` at a single input can be mapped to the latent space as
``T y`` where

.. math::

    \Sigma_T^{-1} = H^\mathrm{T}\,H / \sigma^2 \quad\mathrm{and}\quad
    T = \Sigma_T\,H^\mathrm{T} / \sigma^2

The matrix ``T`` is a left inverse of ``H`` and ``Σ_T`` is the covariance of
the projected noise. Conditioning the latent process on the projected data
with noise ``Σ_T`` is exactly equivalent to conditioning the full model on
``y`` (see Bruinsma et al. 2020).
"""

from __future__ import annotations

__all__ = ["PROJECTION_JITTER", "Projection", "project"]

import logging
from typing import NamedTuple

import equinox as eqx
import jax.numpy as jnp
from jax.scipy import linalg

from tinylmm.errors import NumericalSingularity, PreconditionViolation
from tinylmm.helpers import JAXArray, as_float_array, is_concrete

logger = logging.getLogger(__name__)

PROJECTION_JITTER = 1e-9
"""The diagonal added to the projected precision before factorizing it"""

SINGULAR_MESSAGE = (
    "The projected precision matrix is numerically singular; "
    "check that the mixing matrix has full column rank"
)


def check_mixing_matrix(H: JAXArray) -> None:
    if H.ndim != 2 or H.shape[0] < H.shape[1]:
        raise PreconditionViolation(
            f"The mixing matrix must have shape (p, m) with p >= m, got {H.shape}"
        )


class Projection(NamedTuple):
    """The projection from the observed space to the latent space"""

    T: JAXArray
    """The ``m x p`` left inverse of the mixing matrix"""

    Sigma_T: JAXArray
    """The ``m x m`` covariance of the projected noise"""


def project(
    H: JAXArray,
    noise_variance: JAXArray | float,
    *,
    jitter: float = PROJECTION_JITTER,
) -> Projection:
    """Compute the projection for a mixing matrix and a noise variance

    Args:
        H: The ``p x m`` mixing matrix, with ``p >= m`` and full column rank.
        noise_variance: The scalar observation noise variance ``σ²``.
        jitter: The value added to the diagonal of the projected precision
            matrix before it is factorized.

    Returns:
        The :class:`Projection` ``(T, Sigma_T)``.

    Raises:
        PreconditionViolation: If ``H`` is not a tall matrix.
        NumericalSingularity: If the projected precision matrix cannot be
            factorized, typically because ``H`` is rank deficient. Under
            ``jax.jit`` this is reported as a ``RuntimeError`` instead.
    """
    H = as_float_array(H)
    check_mixing_matrix(H)
    logger.debug("Projecting %d outputs onto %d latent processes", *H.shape)

    precision = H.T @ H / noise_variance + jitter * jnp.eye(H.shape[1], dtype=H.dtype)
    factor = linalg.cholesky(precision, lower=True)
    singular = ~jnp.all(jnp.isfinite(factor))
    if is_concrete(singular):
        if singular:
            raise NumericalSingularity(SINGULAR_MESSAGE)
    else:
        factor = eqx.error_if(factor, singular, SINGULAR_MESSAGE)
    T = linalg.cho_solve((factor, True), H.T / noise_variance)
    Sigma_T = noise_variance * T @ T.T
    return Projection(T, Sigma_T)
