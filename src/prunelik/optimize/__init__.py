"""
Branch length optimisation.

:class:`EdgeLengthOptimizer` runs a damped Newton-Raphson search on one
exposed edge; :func:`optimize_edges` drives it over a sequence of edges.
"""

from prunelik.optimize.edges import optimize_edges
from prunelik.optimize.newton import EdgeLengthOptimizer, NewtonSettings

__all__ = ["EdgeLengthOptimizer", "NewtonSettings", "optimize_edges"]
