"""Shared fixtures: deterministic random sources and small fixed networks."""

import itertools

import numpy as np
import pytest

from simulation import build_knn_graph


class ConstantRNG:
    """Returns the same sample on every draw."""

    def __init__(self, value):
        self.value = value
        self.draws = 0

    def random(self):
        self.draws += 1
        return self.value


class ScriptedRNG:
    """Replays a fixed list of samples, cycling when exhausted."""

    def __init__(self, values):
        self.values = list(values)
        self.pos = 0

    def random(self):
        value = self.values[self.pos % len(self.values)]
        self.pos += 1
        return value


@pytest.fixture
def constant_rng():
    return ConstantRNG


@pytest.fixture
def scripted_rng():
    return ScriptedRNG


@pytest.fixture
def cube_positions():
    """Corners of the unit cube; corner i's opposite corner is 7 - i."""
    return np.array(list(itertools.product((0.0, 1.0), repeat=3)))


@pytest.fixture
def random_network():
    rng = np.random.default_rng(1234)
    positions = rng.uniform(-1.0, 1.0, size=(200, 3))
    adjacency, links = build_knn_graph(positions)
    return positions, adjacency, links
