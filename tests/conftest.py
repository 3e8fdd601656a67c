"""
Pytest configuration and shared fixtures.
"""

import numpy as np
import pytest

from prunelik.core.data import TipData
from prunelik.core.matrix import EigenDecomposition, create_reversible_Q, transition_matrix
from prunelik.core.model import MixtureModel
from prunelik.core.tree import EdgeList


HKY_PI = np.array([0.3, 0.2, 0.15, 0.35])


def hky_exchangeabilities(kappa: float) -> np.ndarray:
    """Exchangeabilities of HKY85 in ACGT order."""
    rates = np.ones((4, 4))
    rates[0, 2] = rates[2, 0] = kappa
    rates[1, 3] = rates[3, 1] = kappa
    return rates


def simulate_states(edges, lengths, eigen, pi, n_sites, seed=0):
    """Simulate leaf states down the tree (single rate class)."""
    rng = np.random.default_rng(seed)
    n_states = len(pi)
    states = {edges.root: rng.choice(n_states, size=n_sites, p=pi)}
    for parent, child in edges.preorder():
        P = np.clip(transition_matrix(eigen, lengths[edges.edge_index(child)]), 0.0, None)
        P /= P.sum(axis=1, keepdims=True)
        cumulative = np.cumsum(P[states[parent]], axis=1)
        u = rng.random(n_sites)
        states[child] = np.minimum((u[:, np.newaxis] > cumulative).sum(axis=1), n_states - 1)
    return np.array([states[tip] for tip in range(1, edges.n_tips + 1)])


def caterpillar(n_tips: int) -> EdgeList:
    """Ladder tree (((1,2),3),4)... with internal nodes n_tips+1 .. 2*n_tips-1."""
    pairs = [(n_tips + 1, 1), (n_tips + 1, 2)]
    for i in range(2, n_tips):
        pairs.append((n_tips + i, n_tips + i - 1))
        pairs.append((n_tips + i, i + 1))
    return EdgeList.from_pairs(pairs, n_tips=n_tips)


@pytest.fixture
def jc69_eigen():
    """Eigendecomposition of the normalised JC69 rate matrix."""
    pi = np.full(4, 0.25)
    Q = create_reversible_Q(np.ones((4, 4)), pi)
    return EigenDecomposition.from_rate_matrix(Q, pi)


@pytest.fixture
def jc69_model(jc69_eigen):
    """JC69 with a single rate class."""
    return MixtureModel(eigen=jc69_eigen, frequencies=np.full(4, 0.25))


@pytest.fixture
def hky_eigen():
    """Eigendecomposition of HKY85 with kappa = 2."""
    Q = create_reversible_Q(hky_exchangeabilities(2.0), HKY_PI)
    return EigenDecomposition.from_rate_matrix(Q, HKY_PI)


@pytest.fixture
def hky_gamma_model(hky_eigen):
    """HKY85 + G4 + I."""
    return MixtureModel.gamma(hky_eigen, HKY_PI, shape=0.8, n_categories=4, p_invariant=0.1)


@pytest.fixture
def two_state_eigen():
    """Symmetric two-state model: P(t) = 1/2 ± 1/2 exp(-2t)."""
    return EigenDecomposition(
        values=np.array([0.0, -2.0]),
        vectors=np.array([[1.0, 1.0], [1.0, -1.0]]),
        inverse=0.5 * np.array([[1.0, 1.0], [1.0, -1.0]]),
    )


@pytest.fixture
def five_tip_tree():
    """((1,2)6,3,(4,5)7)8 and its branch lengths."""
    edges = EdgeList.from_pairs(
        [(6, 1), (6, 2), (7, 4), (7, 5), (8, 6), (8, 3), (8, 7)], n_tips=5
    )
    lengths = np.array([0.08, 0.12, 0.05, 0.2, 0.07, 0.15, 0.1])
    return edges, lengths


@pytest.fixture
def six_tip_tree():
    """(((1,2)7,5)9,(3,4)8,6)10 and its branch lengths."""
    edges = EdgeList.from_pairs(
        [(7, 1), (7, 2), (9, 7), (9, 5), (8, 3), (8, 4), (10, 9), (10, 8), (10, 6)],
        n_tips=6,
    )
    lengths = np.array([0.1, 0.05, 0.12, 0.3, 0.08, 0.15, 0.06, 0.2, 0.25])
    return edges, lengths


@pytest.fixture
def five_tip_data(five_tip_tree, hky_eigen):
    """200 site patterns simulated on the five-tip tree, with some missing data."""
    edges, lengths = five_tip_tree
    states = simulate_states(edges, lengths, hky_eigen, HKY_PI, n_sites=200, seed=7)
    states[1, :10] = -1
    weights = np.random.default_rng(3).integers(1, 4, size=200).astype(float)
    return TipData.from_states(states, n_states=4, weights=weights)


@pytest.fixture
def six_tip_data(six_tip_tree, hky_eigen):
    """150 site patterns simulated on the six-tip tree."""
    edges, lengths = six_tip_tree
    states = simulate_states(edges, lengths, hky_eigen, HKY_PI, n_sites=150, seed=11)
    return TipData.from_states(states, n_states=4)


@pytest.fixture
def simulate():
    """Leaf-state simulator ``simulate(edges, lengths, eigen, pi, n_sites, seed)``."""
    return simulate_states


@pytest.fixture
def ladder():
    """Builder ``ladder(n_tips)`` of caterpillar trees."""
    return caterpillar
