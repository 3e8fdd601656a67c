"""
Incremental single-edge updates of a session's arena.

After a full pass every internal node holds the likelihood of the data below
it. The updater keeps a stronger invariant: one internal node, the *free
root*, holds the likelihood of all the data, and every other internal node
holds the likelihood of the data on its side away from the free root. Moving
the free root across an edge, or swapping the length of an edge incident to
it, costs O(sites x states) per rate class instead of a full traversal.

Edge optimisation then reduces to:

1. :meth:`IncrementalUpdater.expose` the edge (move the free root to its
   parent, divide out the child, rotate both sides into the eigenbasis),
2. optimise the length on the rotated vectors,
3. :meth:`IncrementalUpdater.commit` the new length.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from .matrix import transition_matrix
from .scaling import LOG_SCALE_EPS, relative_scale_factors, row_min_scale
from .session import LikelihoodSession

logger = logging.getLogger(__name__)


@dataclass
class RotatedEdge:
    """
    One edge of the tree expressed in the eigenbasis of the rate matrix.

    With ``X = rotated`` the scaled site likelihood of the whole tree as a
    function of the edge length ``t`` is
    ``f_s(t) = Σ_k w_k Σ_h X[k, s, h] exp(λ_h r_k t) + baseline_s``.

    Attributes
    ----------
    parent, child : int
        The edge
    length : float
        Branch length at the time the edge was exposed
    rotated : ndarray, shape (k, n_sites, n_states)
        Per-class product of the rotated parent and child sides
    baseline : ndarray, shape (n_sites,) or None
        Invariant-site term in the same scaled units as ``rotated``
    log_scale : ndarray, shape (n_sites,)
        ``log`` of the factor removed by scaling; add it to ``log f_s``
        to get the true site log-likelihood
    """

    parent: int
    child: int
    length: float
    rotated: np.ndarray
    baseline: Optional[np.ndarray]
    log_scale: np.ndarray


class IncrementalUpdater:
    """
    Downdate, rotate and re-apply single edges of a session's arena.

    Parameters
    ----------
    session : LikelihoodSession
        A created session on which a full pass has been run

    Notes
    -----
    Divisions in :meth:`downdate` are carried out with numpy's floating-point
    errors silenced: a zero divisor yields NaN or inf in the arena, which
    surfaces as a non-finite log-likelihood for the caller to handle.
    """

    def __init__(self, session: LikelihoodSession):
        self.session = session
        self.edges = session.edges
        self.engine = session.engine
        self.eigen = session.model.eigen
        self.rates = session.model.rates
        self.frequencies = session.model.frequencies
        # Tip side of the rotation depends only on the contrast rows
        self._contrast_rotated = session.tips.contrast @ self.eigen.inverse.T
        self._scratch = np.empty((session.tips.n_sites, session.tips.n_states))
        # (parent, child, length, rows) of the last downdate
        self._undo = None

    @property
    def free_root(self) -> int:
        return self.session.free_root

    def _length_of(self, child: int) -> float:
        return float(self.session.lengths[self.edges.edge_index(child)])

    def _partial_of(self, k: int):
        return lambda node: self.session.partial(node, k)

    # ------------------------------------------------------------------ #
    # Single-edge primitives
    # ------------------------------------------------------------------ #

    def downdate(self, parent: int, child: int, length: float) -> None:
        """
        Remove ``child``'s contribution from ``parent``.

        Divides the parent's matrix by ``contribution(child, P(length))`` for
        every rate class. ``length`` must be the length the contribution was
        applied with.
        """
        rows = np.stack([self.session.partial(parent, k) for k in range(len(self.rates))])
        self._undo = (parent, child, length, rows)
        with np.errstate(divide="ignore", invalid="ignore"):
            for k, rate in enumerate(self.rates):
                P = transition_matrix(self.eigen, length, rate)
                self.engine.contribution(child, P, self._partial_of(k), out=self._scratch)
                self.session.partial(parent, k)[...] /= self._scratch

    def reprepare(self, parent: int, child: int) -> np.ndarray:
        """
        Rotate both sides of a downdated edge into the eigenbasis.

        Parameters
        ----------
        parent : int
            Downdated parent (the free root)
        child : int
            Leaf or internal node on the other end

        Returns
        -------
        ndarray, shape (k, n_sites, n_states)
            ``((A * π) @ U) * (C @ V.T)`` per rate class, multiplied by the
            relative scale factors of the classes
        """
        tips = self.session.tips
        factors = relative_scale_factors(self.session.root_scaling())
        rotated = np.empty((len(self.rates), tips.n_sites, tips.n_states))
        for k in range(len(self.rates)):
            parent_side = (self.session.partial(parent, k) * self.frequencies) @ self.eigen.vectors
            if self.edges.is_tip(child):
                child_side = self._contrast_rotated[tips.tip_codes(child)]
            else:
                child_side = self.session.partial(child, k) @ self.eigen.inverse.T
            rotated[k] = parent_side * child_side * factors[k][:, np.newaxis]
        return rotated

    def go_up(self, parent: int, tip: int, length: float) -> None:
        """
        Re-apply a leaf's contribution to ``parent``; the free root stays put.

        Re-applying the length that was just downdated restores the saved
        rows exactly.
        """
        undo, self._undo = self._undo, None
        if undo is not None and undo[:3] == (parent, tip, length):
            for k in range(len(self.rates)):
                self.session.partial(parent, k)[...] = undo[3][k]
            return
        for k, rate in enumerate(self.rates):
            P = transition_matrix(self.eigen, length, rate)
            self.engine.contribution(tip, P, self._partial_of(k), out=self._scratch)
            self.session.partial(parent, k)[...] *= self._scratch

    def go_down(self, parent: int, child: int, length: float) -> None:
        """
        Multiply the downdated ``parent`` into internal ``child``.

        The child then holds the likelihood of all the data and becomes the
        free root.
        """
        self._undo = None
        for k, rate in enumerate(self.rates):
            P = transition_matrix(self.eigen, length, rate)
            np.matmul(self.session.partial(parent, k), P.T, out=self._scratch)
            self.session.partial(child, k)[...] *= self._scratch
        self.session.free_root = child

    def commit(self, parent: int, child: int, length: float) -> None:
        """
        Apply the edge with its new length, via :meth:`go_up` or :meth:`go_down`.

        The length is recorded in ``session.lengths`` so later moves and
        downdates use it.
        """
        self.session.lengths[self.edges.edge_index(child)] = length
        if self.edges.is_tip(child):
            self.go_up(parent, child, length)
        else:
            self.go_down(parent, child, length)

    # ------------------------------------------------------------------ #
    # Free-root moves
    # ------------------------------------------------------------------ #

    def move_to(self, node: int) -> None:
        """
        Walk the free root along the tree path to internal ``node``.

        Each step from ``u`` to its neighbour ``v`` divides ``v``'s
        contribution out of ``u`` and multiplies the rest of ``u`` into
        ``v``, with the edge's current length.
        """
        if self.edges.is_tip(node):
            raise ValueError(f"The free root must be an internal node, got leaf {node}")
        path = self.edges.path(self.free_root, node)
        for u, v in zip(path[:-1], path[1:]):
            child = u if u != self.edges.root and self.edges.parent_of(u) == v else v
            length = self._length_of(child)
            self.downdate(u, v, length)
            self.go_down(u, v, length)
        if len(path) > 1:
            logger.debug(f"Moved free root {path[0]} -> {node} in {len(path) - 1} steps")

    def expose(self, parent: int, child: int) -> RotatedEdge:
        """
        Prepare edge ``(parent, child)`` for length optimisation.

        Moves the free root to ``parent``, downdates the child with the
        edge's current length and rotates both sides. The arena stays in the
        downdated state until :meth:`commit` is called for the same edge.
        """
        length = self._length_of(child)
        self.move_to(parent)
        self.downdate(parent, child, length)
        rotated = self.reprepare(parent, child)

        _, minimum = row_min_scale(self.session.root_scaling())
        log_scale = LOG_SCALE_EPS * minimum
        baseline = None
        if self.session.invariant is not None:
            with np.errstate(divide="ignore"):
                baseline = np.exp(np.log(self.session.invariant) - log_scale)
        return RotatedEdge(
            parent=parent,
            child=child,
            length=length,
            rotated=rotated,
            baseline=baseline,
            log_scale=log_scale,
        )
