"""
The process interface shared by every model in ``tinylmm``. A
:class:`Process` is a distribution over functions that can be evaluated at a
finite set of inputs, together with an observation noise model, to produce a
:class:`FiniteProcess`: a multivariate normal distribution that can be
sampled, evaluated and conditioned on data.

The base class implements all of the finite operations with dense linear
algebra, so a new process only needs to provide :func:`Process.mean` and
:func:`Process.covariance`. Processes with more structure, like
:class:`tinylmm.IndependentLatentProcessSet` or the mixing models, override the
finite hooks with specialized versions.
"""

from __future__ import annotations

__all__ = ["Process", "FiniteProcess", "ConditionedProcess", "ConditionResult"]

from abc import abstractmethod
from collections.abc import Sequence
from typing import Any, NamedTuple

import equinox as eqx
import jax
import jax.numpy as jnp
import numpy as np
from jax.scipy import linalg
from tinygp.noise import Noise

from tinylmm.errors import ShapeMismatch
from tinylmm.helpers import JAXArray
from tinylmm.noise import as_noise


class Process(eqx.Module):
    """The abstract base class for all processes

    Subclasses must implement :func:`Process.mean` and
    :func:`Process.covariance`; everything else has a (possibly slow) default.
    """

    @abstractmethod
    def mean(self, x: Any) -> JAXArray:
        """The mean of the process evaluated at ``x``"""
        raise NotImplementedError

    @abstractmethod
    def covariance(self, x: Any, y: Any | None = None) -> JAXArray:
        """The covariance between the process at ``x`` and at ``y``

        If ``y`` is not provided, this is the covariance matrix at ``x``. The
        result never includes any observation noise.
        """
        raise NotImplementedError

    def variance(self, x: Any) -> JAXArray:
        """The marginal variance of the process evaluated at ``x``"""
        return jnp.diag(self.covariance(x))

    def __call__(self, x: Any, noise: Any | None = None) -> FiniteProcess:
        """Evaluate the process at ``x`` with observation noise ``noise``

        See :func:`tinylmm.noise.as_noise` for the supported ``noise`` values.
        """
        return FiniteProcess(self, x, noise)

    def _mean_and_variance(self, fx: FiniteProcess) -> tuple[JAXArray, JAXArray]:
        return self.mean(fx.x), self.variance(fx.x) + fx.noise.diagonal()

    def _mean_and_covariance(self, fx: FiniteProcess) -> tuple[JAXArray, JAXArray]:
        return self.mean(fx.x), self.covariance(fx.x) + fx.noise

    def _log_probability(self, fx: FiniteProcess, y: JAXArray) -> JAXArray:
        loc, scale_tril = _dense_factor(fx)
        alpha = linalg.solve_triangular(scale_tril, y - loc, lower=True)
        return _log_probability(scale_tril, alpha)

    def _sample(
        self, key: JAXArray, fx: FiniteProcess, shape: tuple[int, ...]
    ) -> JAXArray:
        loc, scale_tril = _dense_factor(fx)
        normal_samples = jax.random.normal(
            key, shape=(len(fx),) + shape, dtype=loc.dtype
        )
        return loc + jnp.moveaxis(
            jnp.einsum("ij,j...->i...", scale_tril, normal_samples), 0, -1
        )

    def _condition(self, fx: FiniteProcess, y: JAXArray) -> ConditionResult:
        loc, scale_tril = _dense_factor(fx)
        alpha = linalg.solve_triangular(scale_tril, y - loc, lower=True)
        log_prob = _log_probability(scale_tril, alpha)

        # Below, we actually want alpha = K^-1 y instead of alpha = L^-1 y
        alpha = linalg.solve_triangular(scale_tril, alpha, lower=True, trans=1)
        return ConditionResult(
            log_prob,
            ConditionedProcess(self, fx.x, scale_tril, alpha),
        )


class FiniteProcess(eqx.Module):
    """A process evaluated at a finite set of inputs with observation noise

    This is a multivariate normal distribution over ``len(x)`` observations.
    Users generally won't instantiate this directly; call the process instead:
    ``process(x, noise)``.

    Args:
        process: The underlying process.
        x: The inputs; any object with a length that the process understands.
        noise: The observation noise; see :func:`tinylmm.noise.as_noise`.
    """

    process: Process
    x: Any
    noise: Noise

    def __init__(self, process: Process, x: Any, noise: Any | None = None):
        self.process = process
        self.x = x
        self.noise = as_noise(noise, len(x))

    def __len__(self) -> int:
        return len(self.x)

    @property
    def loc(self) -> JAXArray:
        return self.process._mean_and_variance(self)[0]

    @property
    def variance(self) -> JAXArray:
        return self.process._mean_and_variance(self)[1]

    @property
    def covariance(self) -> JAXArray:
        return self.process._mean_and_covariance(self)[1]

    def mean_and_variance(self) -> tuple[JAXArray, JAXArray]:
        """The mean and the marginal variances, including the noise"""
        return self.process._mean_and_variance(self)

    def mean_and_covariance(self) -> tuple[JAXArray, JAXArray]:
        """The mean and the full covariance matrix, including the noise"""
        return self.process._mean_and_covariance(self)

    def log_probability(self, y: JAXArray) -> JAXArray:
        """Compute the log probability of this multivariate normal

        Args:
            y (JAXArray): The observed data, with shape ``(len(x),)`` and laid
                out in the same order as ``x``.

        Returns:
            The marginal log probability of the data.
        """
        return self.process._log_probability(self, self._check_data(y))

    def sample(
        self,
        key: JAXArray,
        shape: Sequence[int] | None = None,
    ) -> JAXArray:
        """Generate samples from this distribution

        Args:
            key: A ``jax`` random number key array.
            shape (tuple, optional): The number and shape of samples to
                generate.

        Returns:
            The sampled realizations with shape ``shape + (len(x),)``; in
            particular, ``shape=(N,)`` gives ``N`` independent draws stacked as
            rows.
        """
        shape = () if shape is None else tuple(shape)
        if any(not isinstance(s, (int, np.integer)) or s < 0 for s in shape):
            raise ShapeMismatch("the sample shape", "non-negative integers", shape)
        return self.process._sample(key, self, shape)

    def condition(self, y: JAXArray) -> ConditionResult:
        """Condition the process on observed data

        Args:
            y (JAXArray): The observed data, with shape ``(len(x),)`` and laid
                out in the same order as ``x``.

        Returns:
            A named tuple where the first element ``log_probability`` is the log
            marginal probability of the data, and the second element
            ``process`` is the posterior process. The posterior has the same
            type of interface as the prior and can be evaluated anywhere.
        """
        return self.process._condition(self, self._check_data(y))

    def _check_data(self, y: JAXArray) -> JAXArray:
        y = jnp.asarray(y)
        if y.shape != (len(self),):
            raise ShapeMismatch("the observations", (len(self),), y.shape)
        return y


class ConditionedProcess(Process):
    r"""A process conditioned on observations under a general noise model

    This is the generic posterior used when no structure can be exploited. The
    mean and covariance at new inputs are

    .. math::

        m(x) + K(x,\,X)\,\alpha \quad\mathrm{and}\quad
        K(x,\,y) - K(x,\,X)\,C^{-1}\,K(X,\,y)

    where :math:`C = L\,L^\mathrm{T}` is the covariance of the observations.

    Args:
        prior: The process before conditioning.
        X: The inputs of the observations.
        scale_tril: The lower Cholesky factor :math:`L` of the covariance of
            the observations, including the noise.
        alpha: The value :math:`C^{-1}\,(y - m(X))`.
    """

    prior: Process
    X: Any
    scale_tril: JAXArray
    alpha: JAXArray

    def mean(self, x: Any) -> JAXArray:
        return self.prior.mean(x) + self.prior.covariance(x, self.X) @ self.alpha

    def variance(self, x: Any) -> JAXArray:
        Kx = self._solve(x)
        return self.prior.variance(x) - jnp.sum(jnp.square(Kx), axis=0)

    def covariance(self, x: Any, y: Any | None = None) -> JAXArray:
        Kx = self._solve(x)
        if y is None:
            return self.prior.covariance(x) - Kx.transpose() @ Kx
        return self.prior.covariance(x, y) - Kx.transpose() @ self._solve(y)

    def _solve(self, x: Any) -> JAXArray:
        return linalg.solve_triangular(
            self.scale_tril, self.prior.covariance(self.X, x), lower=True
        )


class ConditionResult(NamedTuple):
    """The result of conditioning a :class:`FiniteProcess` on data

    This has two entries, ``log_probability`` and ``process``, that are
    described below.
    """

    log_probability: JAXArray
    """The log marginal probability of the observed data under the prior"""

    process: Process
    """The posterior process

    For the mixing models this is another mixing model with the same mixing
    matrix and a conditioned latent process.
    """


def _dense_factor(fx: FiniteProcess) -> tuple[JAXArray, JAXArray]:
    loc, covariance = fx.mean_and_covariance()
    return loc, linalg.cholesky(covariance, lower=True)


def _log_probability(scale_tril: JAXArray, alpha: JAXArray) -> JAXArray:
    loglike = (
        -0.5 * jnp.sum(jnp.square(alpha))
        - jnp.sum(jnp.log(jnp.diag(scale_tril)))
        - 0.5 * scale_tril.shape[0] * np.log(2 * np.pi)
    )
    return jnp.where(jnp.isfinite(loglike), loglike, -jnp.inf)
