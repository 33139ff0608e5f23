"""
The observation noise models accepted by ``tinylmm`` processes. Linear mixing
models require homoscedastic noise that is shared by every output, which is
represented by the :class:`Isotropic` model defined here. It implements the
:class:`tinygp.noise.Noise` protocol, so it can be passed directly to a
:class:`tinygp.GaussianProcess`. The :class:`tinygp.noise.Diagonal` and
:class:`tinygp.noise.Dense` models are also accepted wherever a general noise
model makes sense.
"""

from __future__ import annotations

__all__ = ["Isotropic", "as_noise", "noise_variance"]

from typing import TYPE_CHECKING, Any

import equinox as eqx
import jax.numpy as jnp
from tinygp.noise import Dense, Diagonal, Noise

from tinylmm.errors import PreconditionViolation, ShapeMismatch
from tinylmm.helpers import JAXArray, default_jitter

if TYPE_CHECKING:
    from tinygp.solvers.quasisep.core import DiagQSM


class Isotropic(Noise):
    """A constant diagonal observation noise model

    This represents ``variance * I`` for an identity matrix with ``size`` rows,
    without ever materializing the diagonal unless it is requested.

    Args:
        variance: The scalar noise variance.
        size: The number of observations.
    """

    variance: JAXArray
    size: int = eqx.field(static=True)

    def __check_init__(self) -> None:
        if jnp.ndim(self.variance) != 0:
            raise PreconditionViolation(
                "The variance of an isotropic noise model must be a scalar"
            )

    def diagonal(self) -> JAXArray:
        return jnp.broadcast_to(self.variance, (self.size,))

    def _add(self, other: JAXArray) -> JAXArray:
        return jnp.asarray(other).at[jnp.diag_indices(other.shape[0])].add(
            self.variance
        )

    def __add__(self, other: JAXArray) -> JAXArray:
        return self._add(other)

    def __radd__(self, other: JAXArray) -> JAXArray:
        return self._add(other)

    def __matmul__(self, other: JAXArray) -> JAXArray:
        return self.variance * other

    def to_qsm(self) -> DiagQSM:
        from tinygp.solvers.quasisep.core import DiagQSM

        return DiagQSM(d=self.diagonal())


def as_noise(noise: Any, size: int) -> Noise:
    """Interpret ``noise`` as a noise model for ``size`` observations

    ``None`` gives a small isotropic jitter, a scalar gives an
    :class:`Isotropic` model, a vector gives a :class:`tinygp.noise.Diagonal`
    model, a matrix gives a :class:`tinygp.noise.Dense` model, and instances of
    :class:`tinygp.noise.Noise` are returned unchanged once their size is
    checked.
    """
    if isinstance(noise, Noise):
        if isinstance(noise, Isotropic):
            shape = (noise.size,)
        else:
            shape = noise.diagonal().shape
        if shape != (size,):
            raise ShapeMismatch("the noise diagonal", (size,), shape)
        return noise
    if noise is None:
        return Isotropic(default_jitter(), size)
    value = jnp.asarray(noise)
    if value.ndim == 0:
        return Isotropic(value, size)
    if value.ndim == 1:
        if value.shape != (size,):
            raise ShapeMismatch("the noise diagonal", (size,), value.shape)
        return Diagonal(diag=value)
    if value.shape != (size, size):
        raise ShapeMismatch("the noise covariance", (size, size), value.shape)
    return Dense(value=value)


def noise_variance(noise: Noise) -> JAXArray:
    """The shared variance of an isotropic noise model"""
    if not isinstance(noise, Isotropic):
        raise PreconditionViolation(
            "Homoscedastic noise that is shared by all outputs is required; "
            f"pass a scalar variance instead of a {type(noise).__name__} model"
        )
    return noise.variance

