"""
Likelihood sessions: one analysis, one arena.

A :class:`LikelihoodSession` bundles the tree, branch lengths, model and tip
data of an analysis with the :class:`PartialLikelihoodStore` holding its
conditional likelihoods. Independent sessions share no state, so separate
threads may each drive their own session; a single session is not
thread-safe.
"""

import logging
from typing import Callable, Optional, Sequence

import numpy as np

from .data import TipData
from .model import MixtureModel
from .pruning import PruningEngine, contrast_tip_combine
from .scaling import mix_log_likelihoods, relative_scale_factors, rescale
from .store import PartialLikelihoodStore
from .tree import EdgeList

logger = logging.getLogger(__name__)


class LikelihoodSession:
    """
    Compute and cache phylogenetic likelihoods for one analysis.

    Parameters
    ----------
    edges : EdgeList
        Rooted tree in post-order
    lengths : array_like, shape (n_edges,)
        Branch length of each edge, aligned with ``edges``
    model : MixtureModel
        Substitution model and rate mixture
    tips : TipData
        Leaf data, contrast matrix and site-pattern weights
    tip_combine : callable, optional
        Leaf strategy passed to :class:`PruningEngine`
    scale : callable, optional
        Scaling strategy passed to :class:`PruningEngine`

    Examples
    --------
    >>> with LikelihoodSession(edges, lengths, model, tips) as session:
    ...     lnL = session.log_likelihood()
    ...     root = session.partial(edges.root, 0)
    """

    def __init__(
        self,
        edges: EdgeList,
        lengths: Sequence[float],
        model: MixtureModel,
        tips: TipData,
        tip_combine: Callable = contrast_tip_combine,
        scale: Callable = rescale,
    ):
        self.edges = edges
        self.model = model
        self.tips = tips
        self.lengths = np.array(lengths, dtype=np.float64)

        if self.lengths.shape != (edges.n_edges,):
            raise ValueError(
                f"Got {len(self.lengths)} branch lengths for {edges.n_edges} edges"
            )
        if tips.n_tips != edges.n_tips:
            raise ValueError(
                f"Tip data has {tips.n_tips} sequences but tree has {edges.n_tips} leaves"
            )

        self.engine = PruningEngine(model.eigen, tips, tip_combine=tip_combine, scale=scale)
        self.store: Optional[PartialLikelihoodStore] = None
        self.free_root = edges.root

        self._quartet_partials = np.empty((2, tips.n_sites, tips.n_states))
        self._quartet_scaling = np.zeros((2, tips.n_sites), dtype=np.int64)

        if model.p_invariant > 0:
            self.invariant = model.p_invariant * (tips.invariant_sites() @ model.frequencies)
        else:
            self.invariant = None

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def create(self) -> "LikelihoodSession":
        """Allocate the arena. Must be called exactly once before any pass."""
        if self.store is not None:
            raise RuntimeError("LikelihoodSession.create() called twice")
        self.store = PartialLikelihoodStore.create(
            n_sites=self.tips.n_sites,
            n_states=self.model.n_states,
            n_rate_classes=self.model.n_classes,
            n_internal=self.edges.n_internal,
            n_tips=self.edges.n_tips,
        )
        logger.debug(
            f"Session created: {self.edges.n_tips} tips, {self.edges.n_edges} edges, "
            f"{self.tips.n_sites} patterns, {self.model.n_classes} rate classes"
        )
        return self

    def destroy(self) -> None:
        """Free the arena."""
        self._require_store().destroy()

    def __enter__(self) -> "LikelihoodSession":
        if self.store is None:
            self.create()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.store is not None and self.store.is_alive:
            self.destroy()

    def _require_store(self) -> PartialLikelihoodStore:
        if self.store is None:
            raise RuntimeError("LikelihoodSession used before create()")
        if not self.store.is_alive:
            raise RuntimeError("LikelihoodSession used after destroy()")
        return self.store

    # ------------------------------------------------------------------ #
    # Full pass
    # ------------------------------------------------------------------ #

    def class_site_likelihoods(
        self, lengths: Optional[Sequence[float]] = None
    ) -> tuple[np.ndarray, np.ndarray]:
        """
        Run the full pruning pass and return scaled per-class site values.

        Parameters
        ----------
        lengths : array_like, optional
            New branch lengths; replaces ``self.lengths`` if given

        Returns
        -------
        values : ndarray, shape (k, n_sites)
            Scaled site likelihood of each rate class
        counts : ndarray of int, shape (k, n_sites)
            Scaling exponents of each class at the root
        """
        store = self._require_store()
        if lengths is not None:
            lengths = np.asarray(lengths, dtype=np.float64)
            if lengths.shape != self.lengths.shape:
                raise ValueError(
                    f"Got {len(lengths)} branch lengths for {self.edges.n_edges} edges"
                )
            self.lengths[:] = lengths

        k_classes = self.model.n_classes
        values = np.empty((k_classes, self.tips.n_sites))
        counts = np.empty((k_classes, self.tips.n_sites), dtype=np.int64)
        for k, rate in enumerate(self.model.rates):
            root = self.engine.traverse(
                self.edges.parents,
                self.edges.children,
                self.lengths,
                rate,
                partial_of=lambda node, k=k: store.get(node, k),
                scaling_of=lambda node, k=k: store.get_scaling(node, k),
            )
            values[k] = self.engine.site_values(store.get(root, k), self.model.frequencies)
            counts[k] = store.get_scaling(root, k)
        self.free_root = self.edges.root
        return values, counts

    def site_log_likelihoods(self, lengths: Optional[Sequence[float]] = None) -> np.ndarray:
        """
        Per-site-pattern log-likelihoods from a full pass.

        Parameters
        ----------
        lengths : array_like, optional
            New branch lengths; replaces ``self.lengths`` if given

        Returns
        -------
        ndarray, shape (n_sites,)
        """
        values, counts = self.class_site_likelihoods(lengths)
        return mix_log_likelihoods(values, self.model.weights, counts, self.invariant)

    def log_likelihood(self, lengths: Optional[Sequence[float]] = None) -> float:
        """Pattern-weighted total log-likelihood from a full pass."""
        lnL = float(self.tips.weights @ self.site_log_likelihoods(lengths))
        logger.debug(f"Full pass: lnL = {lnL:.6f}")
        return lnL

    # ------------------------------------------------------------------ #
    # Quartet fast path
    # ------------------------------------------------------------------ #

    def quartet_site_log_likelihoods(
        self, children: Sequence[int], lengths: Sequence[float]
    ) -> np.ndarray:
        """
        Score a quartet without touching the rest of the tree.

        The quartet is ``((a, b), (c, d))``: ``a`` and ``b`` meet at one inner
        node, ``c`` and ``d`` at the other, and the two inner nodes are joined
        by the internal edge. Each of ``a..d`` may be a leaf or an internal
        node whose matrix is already in the arena (a subtree).

        Parameters
        ----------
        children : sequence of 4 int
            Nodes ``a, b, c, d``
        lengths : sequence of 5 float
            Pendant lengths for ``a, b, c, d`` followed by the internal edge

        Returns
        -------
        ndarray, shape (n_sites,)
        """
        if len(children) != 4 or len(lengths) != 5:
            raise ValueError(
                f"A quartet needs 4 children and 5 lengths, got {len(children)} and {len(lengths)}"
            )
        a, b, c, d = (int(node) for node in children)
        pair = self.edges.n_nodes + 1
        top = self.edges.n_nodes + 2
        parents = [pair, pair, top, top, top]
        nodes = [a, b, pair, c, d]
        edge_lengths = [lengths[0], lengths[1], lengths[4], lengths[2], lengths[3]]
        scratch = {pair: 0, top: 1}

        def partial_of(node, k):
            if node in scratch:
                return self._quartet_partials[scratch[node]]
            return self._require_store().get(node, k)

        def scaling_of(node, k):
            if node in scratch:
                return self._quartet_scaling[scratch[node]]
            return self._require_store().get_scaling(node, k)

        k_classes = self.model.n_classes
        values = np.empty((k_classes, self.tips.n_sites))
        counts = np.empty((k_classes, self.tips.n_sites), dtype=np.int64)
        for k, rate in enumerate(self.model.rates):
            self.engine.traverse(
                parents,
                nodes,
                edge_lengths,
                rate,
                partial_of=lambda node, k=k: partial_of(node, k),
                scaling_of=lambda node, k=k: scaling_of(node, k),
            )
            values[k] = self.engine.site_values(self._quartet_partials[1], self.model.frequencies)
            counts[k] = self._quartet_scaling[1]
        return mix_log_likelihoods(values, self.model.weights, counts, self.invariant)

    def quartet_log_likelihood(self, children: Sequence[int], lengths: Sequence[float]) -> float:
        """Pattern-weighted total of :meth:`quartet_site_log_likelihoods`."""
        return float(self.tips.weights @ self.quartet_site_log_likelihoods(children, lengths))

    # ------------------------------------------------------------------ #
    # Arena access
    # ------------------------------------------------------------------ #

    def partial(self, node: int, rate_class: int) -> np.ndarray:
        """
        Conditional likelihood matrix of an internal node.

        Returns the live view into the arena; its meaning depends on where the
        free root currently is (see :class:`~prunelik.core.incremental.IncrementalUpdater`).
        """
        return self._require_store().get(node, rate_class)

    def scaling(self, node: int, rate_class: int) -> np.ndarray:
        """Scaling exponents of an internal node (live view)."""
        return self._require_store().get_scaling(node, rate_class)

    def root_scaling(self) -> np.ndarray:
        """Copy of the root's scaling exponents, shape (k, n_sites)."""
        store = self._require_store()
        return np.array(
            [store.get_scaling(self.edges.root, k) for k in range(self.model.n_classes)]
        )

    def relative_scale_factors(self) -> np.ndarray:
        """``SCALE_EPS ** (counts - min)`` at the root, shape (k, n_sites)."""
        return relative_scale_factors(self.root_scaling())

    def free_root_site_log_likelihoods(self) -> np.ndarray:
        """
        Per-site log-likelihoods read from the arena at the current free root.

        Incremental updates keep the free root's matrix equal to the full
        conditional likelihood of the data, with the same total scaling as the
        root of the last full pass.
        """
        store = self._require_store()
        values = np.array(
            [
                self.engine.site_values(store.get(self.free_root, k), self.model.frequencies)
                for k in range(self.model.n_classes)
            ]
        )
        return mix_log_likelihoods(
            values, self.model.weights, self.root_scaling(), self.invariant
        )

    def free_root_log_likelihood(self) -> float:
        """Pattern-weighted total of :meth:`free_root_site_log_likelihoods`."""
        return float(self.tips.weights @ self.free_root_site_log_likelihoods())
