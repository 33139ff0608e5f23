"""
Exceptions raised by ``tinylmm``. All of them derive from
:class:`MixingModelError`.

Structural misuse (types, shapes and output counts) is detected from static
information, so it is raised immediately, including while tracing under
``jax.jit``. Checks that depend on array *values*, like the orthonormality of
the ``U`` factor of an :class:`tinylmm.OrthogonalLinearMixingModel` or the
finiteness of the Cholesky factor computed by :func:`tinylmm.project`, raise
these exceptions directly when the values are concrete. Under ``jax.jit`` the
values are not known while tracing, so the same checks are implemented using
:func:`equinox.error_if` and surface as a ``RuntimeError`` carrying the same
message when the compiled function runs.
"""

__all__ = [
    "MixingModelError",
    "NumericalSingularity",
    "PreconditionViolation",
    "ShapeMismatch",
]

from typing import Any


class MixingModelError(Exception):
    """Base class for exceptions raised by ``tinylmm``"""


class PreconditionViolation(MixingModelError, ValueError):
    """An input does not satisfy the structural requirements of a model

    For example, an index set with a different number of outputs than the
    mixing matrix has rows, or a noise model that is not isotropic where an
    isotropic one is required.
    """


class ShapeMismatch(MixingModelError, ValueError):
    """An array does not have the shape implied by the index set"""

    def __init__(self, name: str, expected: Any, actual: Any):
        super().__init__(
            f"Invalid shape for {name}: expected {expected}, got {actual}"
        )
        self.expected = expected
        self.actual = actual


class NumericalSingularity(MixingModelError, RuntimeError):
    """A matrix that must be positive definite could not be factorized"""
