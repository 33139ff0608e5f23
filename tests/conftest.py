# mypy: ignore-errors

import jax
import pytest
from numpy import random as np_random

jax.config.update("jax_enable_x64", True)


@pytest.fixture
def random():
    return np_random.default_rng(1058390)
