"""
One round of per-edge branch length optimisation.
"""

import logging
from typing import Iterable, Optional

import numpy as np

from ..core.incremental import IncrementalUpdater
from ..core.session import LikelihoodSession
from .newton import DEFAULT_SETTINGS, EdgeLengthOptimizer, EdgeLengthResult, NewtonSettings

logger = logging.getLogger(__name__)


def optimize_edges(
    session: LikelihoodSession,
    edges: Optional[Iterable[tuple[int, int]]] = None,
    settings: NewtonSettings = DEFAULT_SETTINGS,
) -> tuple[list[EdgeLengthResult], float]:
    """
    Optimise branch lengths one edge at a time without full passes.

    Runs a full pass, then for every ``(parent, child)`` edge exposes it,
    optimises its length and commits the result. The free root travels along
    the tree between edges, so visiting edges in pre-order keeps every move
    short.

    Parameters
    ----------
    session : LikelihoodSession
        Created session; ``session.lengths`` is updated in place
    edges : iterable of (int, int), optional
        Edges to visit, in order (default: ``session.edges.preorder()``)
    settings : NewtonSettings, default=DEFAULT_SETTINGS
        Newton-Raphson constants

    Returns
    -------
    results : list of EdgeLengthResult
        One entry per visited edge
    log_likelihood : float
        Pattern-weighted log-likelihood at the final free root
    """
    if edges is None:
        edges = session.edges.preorder()

    start = session.log_likelihood()
    updater = IncrementalUpdater(session)
    optimizer = EdgeLengthOptimizer.from_model(session.model, session.tips.weights, settings)

    results = []
    for parent, child in edges:
        exposed = updater.expose(parent, child)
        result = optimizer.optimize(
            exposed.rotated, exposed.length, exposed.baseline, exposed.log_scale
        )
        updater.commit(parent, child, result.length)
        if not np.isfinite(result.log_likelihood):
            logger.warning(
                f"Non-finite log-likelihood after updating edge ({parent}, {child})"
            )
        results.append(result)

    final = session.free_root_log_likelihood()
    logger.debug(f"Optimised {len(results)} edges: lnL {start:.6f} -> {final:.6f}")
    return results, final
