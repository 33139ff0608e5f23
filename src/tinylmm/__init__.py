"""
``tinylmm`` implements exact inference for multi-output Gaussian Processes
under a linear mixing model, built on top of `jax
<https://github.com/google/jax>`_ and `tinygp <https://tinygp.readthedocs.io>`_.
The observed ``p`` outputs are modelled as a fixed linear transform ``H`` of
``m`` independent latent processes plus homoscedastic observation noise. The
main entry points are :class:`LinearMixingModel`, which handles any full rank
mixing matrix, and :class:`OrthogonalLinearMixingModel`, which exploits a
mixing matrix with orthogonal columns to reduce inference to ``m`` independent
single-output problems. Both are evaluated at a :class:`MultiOutputInputs`
index set and wrap an :class:`IndependentLatentProcessSet` of
:class:`LatentGP` objects.
"""

__all__ = [
    "ConditionResult",
    "ConditionedProcess",
    "FiniteProcess",
    "Grouping",
    "IndependentLatentProcessSet",
    "LatentGP",
    "LinearMixingModel",
    "MultiOutputInputs",
    "OrthogonalLinearMixingModel",
    "Process",
    "Projection",
    "errors",
    "noise",
    "orthonormalize",
    "project",
]

from tinylmm import errors as errors, noise as noise
from tinylmm.gp import LatentGP as LatentGP
from tinylmm.ilmm import LinearMixingModel as LinearMixingModel
from tinylmm.independent import (
    IndependentLatentProcessSet as IndependentLatentProcessSet,
)
from tinylmm.inputs import Grouping as Grouping, MultiOutputInputs as MultiOutputInputs
from tinylmm.oilmm import (
    OrthogonalLinearMixingModel as OrthogonalLinearMixingModel,
    orthonormalize as orthonormalize,
)
from tinylmm.processes import (
    ConditionedProcess as ConditionedProcess,
    ConditionResult as ConditionResult,
    FiniteProcess as FiniteProcess,
    Process as Process,
)
from tinylmm.projection import Projection as Projection, project as project

__version__ = "0.1.0"
__author__ = "tinylmm developers"
__email__ = "tinylmm@users.noreply.github.com"
__uri__ = "https://github.com/tinylmm/tinylmm"
__license__ = "BSD"
__description__ = "Exact inference for linear mixing models of Gaussian Processes"
