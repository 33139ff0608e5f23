"""
Multi-output processes are evaluated at index sets where every output shares
the same base inputs (an "isotopic" index set). The observations for such an
index set can be laid out in two orders:

1. :attr:`Grouping.BY_OUTPUT`: all ``n`` inputs for the first output, followed
   by all ``n`` inputs for the second output, and so on.
2. :attr:`Grouping.BY_FEATURE`: all ``p`` outputs for the first input, followed
   by all ``p`` outputs for the second input, and so on.

For example, with ``n = 2`` inputs and ``p = 3`` outputs, the elements of a
vector laid out by output are indexed as ``(x1, 1), (x2, 1), (x1, 2), (x2, 2),
(x1, 3), (x2, 3)`` whereas the same vector laid out by feature is indexed as
``(x1, 1), (x1, 2), (x1, 3), (x2, 1), (x2, 2), (x2, 3)``.

The structured computations in ``tinylmm`` are all implemented for the output
grouped layout, and feature grouped index sets are handled by permuting to
that layout and back using the helpers defined here.
"""

from __future__ import annotations

__all__ = [
    "Grouping",
    "MultiOutputInputs",
    "indices_which_reorder_outputs_to_features",
    "indices_which_reorder_features_to_outputs",
    "reorder_from_outputs",
    "reorder_matrix_from_outputs",
    "reorder_to_outputs",
]

import enum
from typing import Any

import equinox as eqx
import jax
import numpy as np

from tinylmm.errors import PreconditionViolation
from tinylmm.helpers import JAXArray


class Grouping(enum.Enum):
    """The layout of the observations for a :class:`MultiOutputInputs`"""

    BY_OUTPUT = "by_output"
    BY_FEATURE = "by_feature"


class MultiOutputInputs(eqx.Module):
    """An isotopic multi-output index set

    Args:
        X: The base input coordinates, shared by all outputs. This can be any
            array where the zeroth dimension is ``n``, the number of inputs.
        num_outputs: The number of outputs ``p``.
        grouping: The layout of the ``n * p`` points; see :class:`Grouping`.
    """

    X: JAXArray
    num_outputs: int = eqx.field(static=True)
    grouping: Grouping = eqx.field(static=True, default=Grouping.BY_OUTPUT)

    def __check_init__(self) -> None:
        if self.num_outputs < 1:
            raise PreconditionViolation(
                f"The number of outputs must be positive, got {self.num_outputs}"
            )
        if not isinstance(self.grouping, Grouping):
            raise PreconditionViolation(f"Unknown grouping: {self.grouping!r}")

    @classmethod
    def by_outputs(cls, X: JAXArray, num_outputs: int) -> MultiOutputInputs:
        return cls(X, num_outputs, Grouping.BY_OUTPUT)

    @classmethod
    def by_features(cls, X: JAXArray, num_outputs: int) -> MultiOutputInputs:
        return cls(X, num_outputs, Grouping.BY_FEATURE)

    @property
    def num_inputs(self) -> int:
        return jax.tree_util.tree_leaves(self.X)[0].shape[0]

    def __len__(self) -> int:
        return self.num_inputs * self.num_outputs


def indices_which_reorder_outputs_to_features(x: MultiOutputInputs) -> np.ndarray:
    """Indices which, applied to a vector ordered by outputs, order it by features

    These are computed using ``numpy`` from the (static) shape of ``x`` so they
    can be used to index arrays while tracing.
    """
    return np.arange(len(x)).reshape(x.num_outputs, x.num_inputs).T.ravel()


def indices_which_reorder_features_to_outputs(x: MultiOutputInputs) -> np.ndarray:
    """Indices which, applied to a vector ordered by features, order it by outputs"""
    return np.arange(len(x)).reshape(x.num_inputs, x.num_outputs).T.ravel()


def check_inputs(x: Any, num_outputs: int, owner: str) -> MultiOutputInputs:
    if not isinstance(x, MultiOutputInputs):
        raise PreconditionViolation(
            f"{owner} must be evaluated at a MultiOutputInputs index set, "
            f"got {type(x).__name__}"
        )
    if x.num_outputs != num_outputs:
        raise PreconditionViolation(
            f"The index set has {x.num_outputs} outputs but {owner} has "
            f"{num_outputs}"
        )
    return x


def reorder_from_outputs(x: MultiOutputInputs, value: JAXArray) -> JAXArray:
    """Permute the last axis of ``value`` from output grouping to ``x``'s grouping"""
    if x.grouping is Grouping.BY_FEATURE:
        return value[..., indices_which_reorder_outputs_to_features(x)]
    return value


def reorder_to_outputs(x: MultiOutputInputs, value: JAXArray) -> JAXArray:
    """Permute the last axis of ``value`` from ``x``'s grouping to output grouping"""
    if x.grouping is Grouping.BY_FEATURE:
        return value[..., indices_which_reorder_features_to_outputs(x)]
    return value


def reorder_matrix_from_outputs(
    x: MultiOutputInputs, y: MultiOutputInputs, value: JAXArray
) -> JAXArray:
    """Permute a matrix indexed by ``x`` and ``y`` from output grouping"""
    if x.grouping is Grouping.BY_FEATURE:
        value = value[indices_which_reorder_outputs_to_features(x)]
    return reorder_from_outputs(y, value)
