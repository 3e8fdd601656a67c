"""
Core algorithms for phylogenetic likelihood calculation.

- **Pruning**: Felsenstein's algorithm over post-order edge lists, with
  per-site rescaling against underflow
- **Storage**: one flat arena of conditional likelihoods per session
- **Incremental updates**: downdate, rotate and re-apply single edges,
  moving the free root along the tree
- **Matrix operations**: eigendecomposition and transition matrices
"""

from prunelik.core.incremental import IncrementalUpdater
from prunelik.core.matrix import EigenDecomposition, eigen_decompose_rev, matrix_exponential
from prunelik.core.session import LikelihoodSession

__all__ = [
    "LikelihoodSession",
    "IncrementalUpdater",
    "EigenDecomposition",
    "matrix_exponential",
    "eigen_decompose_rev",
]
