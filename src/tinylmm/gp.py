from __future__ import annotations

__all__ = ["LatentGP"]

from collections.abc import Sequence
from typing import Callable

import jax
import jax.numpy as jnp
from tinygp import GaussianProcess, kernels, means

from tinylmm.helpers import JAXArray
from tinylmm.processes import ConditionResult, FiniteProcess, Process


class LatentGP(Process):
    """A single-output Gaussian Process defined by a ``tinygp`` kernel

    This is the building block for the latent processes of a mixing model.
    All of the finite operations are executed by a
    :class:`tinygp.GaussianProcess`, so any kernel, mean and solver supported
    by ``tinygp`` can be used here.

    Args:
        kernel (Kernel): The kernel function.
        mean (Callable, optional): A callable or constant mean function that
            will be evaluated at each input coordinate: ``mean(X[i])``.
    """

    kernel: kernels.Kernel
    mean_function: means.MeanBase

    def __init__(
        self,
        kernel: kernels.Kernel,
        *,
        mean: means.MeanBase | Callable[[JAXArray], JAXArray] | JAXArray | None = None,
    ):
        self.kernel = kernel
        if isinstance(mean, means.MeanBase):
            self.mean_function = mean
        elif mean is None:
            self.mean_function = means.Mean(jnp.zeros(()))
        else:
            self.mean_function = means.Mean(mean)

    def mean(self, x: JAXArray) -> JAXArray:
        return jax.vmap(self.mean_function)(x)

    def variance(self, x: JAXArray) -> JAXArray:
        return self.kernel(x)

    def covariance(self, x: JAXArray, y: JAXArray | None = None) -> JAXArray:
        return self.kernel(x, x if y is None else y)

    def gaussian_process(self, fx: FiniteProcess) -> GaussianProcess:
        """The :class:`tinygp.GaussianProcess` describing ``fx``"""
        return GaussianProcess(
            self.kernel, fx.x, noise=fx.noise, mean=self.mean_function
        )

    def _mean_and_variance(self, fx: FiniteProcess) -> tuple[JAXArray, JAXArray]:
        gp = self.gaussian_process(fx)
        return gp.loc, gp.variance

    def _mean_and_covariance(self, fx: FiniteProcess) -> tuple[JAXArray, JAXArray]:
        gp = self.gaussian_process(fx)
        return gp.loc, gp.covariance

    def _log_probability(self, fx: FiniteProcess, y: JAXArray) -> JAXArray:
        return self.gaussian_process(fx).log_probability(y)

    def _sample(
        self, key: JAXArray, fx: FiniteProcess, shape: Sequence[int]
    ) -> JAXArray:
        return self.gaussian_process(fx).sample(key, shape=shape or None)

    def _condition(self, fx: FiniteProcess, y: JAXArray) -> ConditionResult:
        # The conditioned kernel and mean that tinygp constructs can be
        # evaluated at any input, so they define the posterior process.
        log_prob, gp = self.gaussian_process(fx).condition(y)
        return ConditionResult(log_prob, LatentGP(gp.kernel, mean=gp.mean_function))
