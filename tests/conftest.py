import numpy as np
import pytest


class ConstantTexture:
    """Texture that returns the same value everywhere and remembers its seeds."""

    vectorized = True

    def __init__(self, value):
        self.value = value
        self.seeds = []

    def reseed(self, seed):
        self.seeds.append(seed)

    def sample(self, x, y, z):
        return np.full(np.shape(x), self.value)


@pytest.fixture
def constant_texture():
    return ConstantTexture
