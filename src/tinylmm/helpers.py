from __future__ import annotations

__all__ = ["JAXArray", "as_float_array", "default_jitter", "is_concrete"]

from typing import Any

import jax
import jax.numpy as jnp

JAXArray = jax.Array


def as_float_array(value: Any) -> JAXArray:
    """Convert ``value`` to an array with a floating point data type"""
    value = jnp.asarray(value)
    return value.astype(jnp.result_type(value, float))


def default_jitter() -> JAXArray:
    """The square root of machine epsilon for the default float type

    This matches the diagonal that ``tinygp`` adds to a process when no noise
    model is given, and it follows the ``jax_enable_x64`` setting.
    """
    return jnp.sqrt(jnp.finfo(jnp.result_type(float)).eps)


def is_concrete(*values: Any) -> bool:
    """Are none of ``values`` abstract tracers, so they can be inspected?"""
    return not any(isinstance(value, jax.core.Tracer) for value in values)
