"""
prunelik: phylogenetic likelihood core with incremental branch length updates.

Computes tree likelihoods under reversible substitution models with
discrete rate mixtures, caches conditional likelihoods in a per-session
arena, and optimises branch lengths edge by edge without re-traversing the
tree.

Quick Start
-----------
>>> from prunelik import EdgeList, TipData, MixtureModel, LikelihoodSession
>>> from prunelik import EigenDecomposition, optimize_edges
>>> edges = EdgeList.from_pairs([(5, 1), (5, 2), (6, 3), (6, 4), (7, 5), (7, 6)], n_tips=4)
>>> with LikelihoodSession(edges, lengths, model, tips) as session:
...     print(session.log_likelihood())
...     results, lnL = optimize_edges(session)
"""

__version__ = "0.1.0"

from .core.data import TipData
from .core.incremental import IncrementalUpdater, RotatedEdge
from .core.matrix import EigenDecomposition, transition_matrix
from .core.model import MixtureModel, discrete_gamma
from .core.pruning import PruningEngine, contrast_tip_combine, dense_tip_combine
from .core.scaling import rescale, skip_rescale
from .core.session import LikelihoodSession
from .core.store import PartialLikelihoodStore
from .core.tree import EdgeList
from .optimize.edges import optimize_edges
from .optimize.newton import (
    DEFAULT_SETTINGS,
    FAST_SETTINGS,
    EdgeLengthOptimizer,
    EdgeLengthResult,
    NewtonSettings,
)

__all__ = [
    # Inputs
    "EdgeList",
    "TipData",
    "EigenDecomposition",
    "MixtureModel",
    "discrete_gamma",

    # Likelihood
    "LikelihoodSession",
    "PartialLikelihoodStore",
    "PruningEngine",
    "contrast_tip_combine",
    "dense_tip_combine",
    "rescale",
    "skip_rescale",
    "transition_matrix",

    # Incremental updates and optimisation
    "IncrementalUpdater",
    "RotatedEdge",
    "EdgeLengthOptimizer",
    "EdgeLengthResult",
    "NewtonSettings",
    "DEFAULT_SETTINGS",
    "FAST_SETTINGS",
    "optimize_edges",

    # Version
    "__version__",
]
