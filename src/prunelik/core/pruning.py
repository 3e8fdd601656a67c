"""
Felsenstein's pruning algorithm over post-order edge lists.

A single traversal serves the full-tree pass and the quartet fast path. What
varies between them is supplied from outside:

- where each internal node's matrix lives (``partial_of`` / ``scaling_of``),
- how a leaf is combined with its transition matrix (``tip_combine``),
- how a finished node is protected against underflow (``scale``).
"""

from typing import Callable, Sequence

import numpy as np

from .data import TipData
from .matrix import EigenDecomposition, transition_matrix
from .scaling import rescale

PartialResolver = Callable[[int], np.ndarray]


def contrast_tip_combine(tips: TipData, tip: int, P: np.ndarray, out: np.ndarray) -> None:
    """
    Leaf contribution through the contrast matrix.

    Multiplies only the contrast rows by ``P.T`` (n_codes x n_states, usually
    far fewer rows than sites) and gathers the rows observed at the leaf.
    """
    table = tips.contrast @ P.T
    np.take(table, tips.tip_codes(tip), axis=0, out=out)


def dense_tip_combine(tips: TipData, tip: int, P: np.ndarray, out: np.ndarray) -> None:
    """Leaf contribution as a full (n_sites x n_states) product."""
    np.matmul(tips.tip_partial(tip), P.T, out=out)


class PruningEngine:
    """
    Post-order traversal filling conditional likelihood matrices.

    Parameters
    ----------
    eigen : EigenDecomposition
        Decomposition of the rate matrix
    tips : TipData
        Leaf data and contrast matrix
    tip_combine : callable, default=contrast_tip_combine
        ``tip_combine(tips, tip, P, out)`` writes a leaf's contribution
    scale : callable, default=rescale
        ``scale(matrix, counter)`` run once on every finished parent

    Notes
    -----
    The child -> parent contribution is ``partial @ P.T``: entry ``[s, i]`` is
    the probability of the data below the child given state ``i`` at the
    parent.
    """

    def __init__(
        self,
        eigen: EigenDecomposition,
        tips: TipData,
        tip_combine: Callable = contrast_tip_combine,
        scale: Callable = rescale,
    ):
        if tips.n_states != eigen.n_states:
            raise ValueError(
                f"Contrast matrix has {tips.n_states} states but the model has {eigen.n_states}"
            )
        self.eigen = eigen
        self.tips = tips
        self.n_tips = tips.n_tips
        self.tip_combine = tip_combine
        self.scale = scale
        self._scratch = np.empty((tips.n_sites, tips.n_states))

    def contribution(
        self, child: int, P: np.ndarray, partial_of: PartialResolver, out: np.ndarray
    ) -> np.ndarray:
        """
        Write the contribution of ``child`` through ``P`` into ``out``.

        Parameters
        ----------
        child : int
            Child node (leaf or internal)
        P : ndarray, shape (n_states, n_states)
            Transition matrix of the child's edge
        partial_of : callable
            Resolves internal nodes to their conditional likelihood matrix
        out : ndarray, shape (n_sites, n_states)
            Destination

        Returns
        -------
        ndarray
            ``out``
        """
        if child <= self.n_tips:
            self.tip_combine(self.tips, child, P, out)
        else:
            np.matmul(partial_of(child), P.T, out=out)
        return out

    def traverse(
        self,
        parents: Sequence[int],
        children: Sequence[int],
        lengths: Sequence[float],
        rate: float,
        partial_of: PartialResolver,
        scaling_of: PartialResolver,
    ) -> int:
        """
        Run the pruning pass for one rate class.

        Parameters
        ----------
        parents, children : sequence of int
            Edge list in parent-contiguous post-order
        lengths : sequence of float
            Branch length of each edge
        rate : float
            Rate multiplier of the class
        partial_of : callable
            ``partial_of(node)`` returns the writable matrix of an internal node
        scaling_of : callable
            ``scaling_of(node)`` returns its writable scaling counter

        Returns
        -------
        int
            The last parent finalised (the root)
        """
        current = -1
        target = counter = None
        for parent, child, length in zip(parents, children, lengths):
            parent = int(parent)
            child = int(child)
            P = transition_matrix(self.eigen, length, rate)
            if parent != current:
                if current != -1:
                    self.scale(target, counter)
                current = parent
                target = partial_of(parent)
                counter = scaling_of(parent)
                counter[:] = 0
                self.contribution(child, P, partial_of, out=target)
            else:
                self.contribution(child, P, partial_of, out=self._scratch)
                target *= self._scratch
            if child > self.n_tips:
                counter += scaling_of(child)
        if current != -1:
            self.scale(target, counter)
        return current

    @staticmethod
    def site_values(root_partial: np.ndarray, frequencies: np.ndarray) -> np.ndarray:
        """Collapse the root's state dimension with the equilibrium frequencies."""
        return root_partial @ frequencies
