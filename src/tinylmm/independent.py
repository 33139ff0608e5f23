from __future__ import annotations

__all__ = ["IndependentLatentProcessSet"]

import logging
from collections.abc import Iterable, Sequence

import jax
import jax.numpy as jnp
from jax.scipy import linalg

from tinylmm.helpers import JAXArray
from tinylmm.inputs import (
    MultiOutputInputs,
    check_inputs,
    reorder_from_outputs,
    reorder_matrix_from_outputs,
    reorder_to_outputs,
)
from tinylmm.noise import Isotropic
from tinylmm.processes import ConditionResult, FiniteProcess, Process

logger = logging.getLogger(__name__)


class IndependentLatentProcessSet(Process):
    """A multi-output process with independent outputs

    Output ``i`` of this process is modelled by the single-output process
    ``processes[i]`` and the outputs are independent, so the covariance is
    block diagonal when evaluated at an output grouped index set. When the
    observation noise is :class:`tinylmm.noise.Isotropic`, the log
    probability, sampling and conditioning all decompose into independent
    operations on the individual processes. Other noise models fall back to
    the dense implementation in :class:`tinylmm.Process`.

    Args:
        processes: A sequence of ``m`` single-output processes, for example
            :class:`tinylmm.LatentGP` objects, that all accept the same inputs.
    """

    processes: tuple[Process, ...]

    def __init__(self, processes: Iterable[Process]):
        self.processes = tuple(processes)

    @property
    def num_outputs(self) -> int:
        return len(self.processes)

    def mean(self, x: MultiOutputInputs) -> JAXArray:
        x = check_inputs(x, self.num_outputs, type(self).__name__)
        mean = jnp.concatenate([f.mean(x.X) for f in self.processes])
        return reorder_from_outputs(x, mean)

    def variance(self, x: MultiOutputInputs) -> JAXArray:
        x = check_inputs(x, self.num_outputs, type(self).__name__)
        variance = jnp.concatenate([f.variance(x.X) for f in self.processes])
        return reorder_from_outputs(x, variance)

    def covariance(
        self, x: MultiOutputInputs, y: MultiOutputInputs | None = None
    ) -> JAXArray:
        x = check_inputs(x, self.num_outputs, type(self).__name__)
        if y is None:
            blocks = [f.covariance(x.X) for f in self.processes]
            y = x
        else:
            y = check_inputs(y, self.num_outputs, type(self).__name__)
            blocks = [f.covariance(x.X, y.X) for f in self.processes]
        return reorder_matrix_from_outputs(x, y, linalg.block_diag(*blocks))

    def finite_processes(self, fx: FiniteProcess) -> list[FiniteProcess]:
        """The finite processes for each output given isotropic noise"""
        variance = fx.noise.variance
        return [f(fx.x.X, variance) for f in self.processes]

    def _log_probability(self, fx: FiniteProcess, y: JAXArray) -> JAXArray:
        if not self._is_isotropic(fx):
            return super()._log_probability(fx, y)
        ys = self._split(fx, y)
        return sum(
            f.log_probability(y_i) for f, y_i in zip(self.finite_processes(fx), ys)
        )

    def _sample(
        self, key: JAXArray, fx: FiniteProcess, shape: Sequence[int]
    ) -> JAXArray:
        if not self._is_isotropic(fx):
            return super()._sample(key, fx, shape)
        keys = jax.random.split(key, self.num_outputs)
        samples = jnp.concatenate(
            [f.sample(k, shape) for f, k in zip(self.finite_processes(fx), keys)],
            axis=-1,
        )
        return reorder_from_outputs(fx.x, samples)

    def _condition(self, fx: FiniteProcess, y: JAXArray) -> ConditionResult:
        if not self._is_isotropic(fx):
            return super()._condition(fx, y)
        ys = self._split(fx, y)
        results = [f.condition(y_i) for f, y_i in zip(self.finite_processes(fx), ys)]
        return ConditionResult(
            sum(r.log_probability for r in results),
            IndependentLatentProcessSet(r.process for r in results),
        )

    def _is_isotropic(self, fx: FiniteProcess) -> bool:
        check_inputs(fx.x, self.num_outputs, type(self).__name__)
        if isinstance(fx.noise, Isotropic):
            return True
        logger.debug(
            "Using the dense implementation for %s noise", type(fx.noise).__name__
        )
        return False

    def _split(self, fx: FiniteProcess, y: JAXArray) -> JAXArray:
        x = fx.x
        return reorder_to_outputs(x, y).reshape(x.num_outputs, x.num_inputs)

