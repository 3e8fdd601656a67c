"""
Session-scoped storage for conditional likelihoods and scaling exponents.
"""

import logging
from typing import Optional

import numpy as np

logger = logging.getLogger(__name__)


class PartialLikelihoodStore:
    """
    Arena of per-(node, rate class) conditional likelihood matrices.

    All matrices live in one flat float64 buffer laid out row-major as
    ``[rate_class, internal_node, site, state]``; the scaling exponents live
    in a parallel flat int buffer laid out as ``[rate_class, internal_node,
    site]``. Internal node ``n`` (numbered ``n_tips + 1 ..``) occupies slot
    ``n - n_tips - 1``.

    The store is allocated once by :meth:`create` and released once by
    :meth:`destroy`. Every pruning and update call of a session writes into
    it in place.

    Attributes
    ----------
    n_sites : int
        Number of site patterns
    n_states : int
        Number of model states
    n_rate_classes : int
        Number of mixture components
    n_internal : int
        Number of internal nodes
    n_tips : int
        Number of leaves (internal node numbering starts after them)
    """

    def __init__(self):
        self.n_sites = 0
        self.n_states = 0
        self.n_rate_classes = 0
        self.n_internal = 0
        self.n_tips = 0
        self._flat: Optional[np.ndarray] = None
        self._flat_scaling: Optional[np.ndarray] = None
        self._partials: Optional[np.ndarray] = None
        self._scaling: Optional[np.ndarray] = None
        self._destroyed = False

    @classmethod
    def create(
        cls,
        n_sites: int,
        n_states: int,
        n_rate_classes: int,
        n_internal: int,
        n_tips: int,
    ) -> "PartialLikelihoodStore":
        """
        Allocate a zero-initialised store.

        Parameters
        ----------
        n_sites : int
            Number of site patterns
        n_states : int
            Number of model states
        n_rate_classes : int
            Number of rate classes
        n_internal : int
            Number of internal nodes
        n_tips : int
            Number of leaves

        Returns
        -------
        PartialLikelihoodStore
        """
        for name, value in (
            ("n_sites", n_sites),
            ("n_states", n_states),
            ("n_rate_classes", n_rate_classes),
            ("n_internal", n_internal),
        ):
            if value < 1:
                raise ValueError(f"{name} must be positive, got {value}")

        store = cls()
        store.n_sites = n_sites
        store.n_states = n_states
        store.n_rate_classes = n_rate_classes
        store.n_internal = n_internal
        store.n_tips = n_tips

        store._flat = np.zeros(n_rate_classes * n_internal * n_sites * n_states)
        store._flat_scaling = np.zeros(n_rate_classes * n_internal * n_sites, dtype=np.int64)
        store._partials = store._flat.reshape(n_rate_classes, n_internal, n_sites, n_states)
        store._scaling = store._flat_scaling.reshape(n_rate_classes, n_internal, n_sites)

        logger.debug(
            f"Allocated store: {n_rate_classes} classes x {n_internal} nodes x "
            f"{n_sites} sites x {n_states} states "
            f"({store._flat.nbytes / 1024**2:.2f} MB)"
        )
        return store

    def destroy(self) -> None:
        """Release the buffers. Any later access raises RuntimeError."""
        self._check_alive()
        self._flat = None
        self._flat_scaling = None
        self._partials = None
        self._scaling = None
        self._destroyed = True
        logger.debug("Store destroyed")

    @property
    def is_alive(self) -> bool:
        """True between :meth:`create` and :meth:`destroy`."""
        return self._partials is not None

    def __enter__(self) -> "PartialLikelihoodStore":
        self._check_alive()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.is_alive:
            self.destroy()

    def _check_alive(self) -> None:
        if self._destroyed:
            raise RuntimeError("PartialLikelihoodStore used after destroy()")
        if self._partials is None:
            raise RuntimeError("PartialLikelihoodStore used before create()")

    def _slot(self, node: int) -> int:
        slot = node - self.n_tips - 1
        if not 0 <= slot < self.n_internal:
            raise IndexError(
                f"Node {node} is not an internal node "
                f"(expected {self.n_tips + 1}..{self.n_tips + self.n_internal})"
            )
        return slot

    def _class(self, rate_class: int) -> int:
        if not 0 <= rate_class < self.n_rate_classes:
            raise IndexError(
                f"Rate class {rate_class} out of range (0..{self.n_rate_classes - 1})"
            )
        return rate_class

    def offset(self, node: int, rate_class: int) -> int:
        """Start of the (node, rate_class) matrix in the flat buffer."""
        self._check_alive()
        block = self.n_sites * self.n_states
        return (self._class(rate_class) * self.n_internal + self._slot(node)) * block

    def get(self, node: int, rate_class: int) -> np.ndarray:
        """
        Writable (n_sites, n_states) view of one conditional likelihood matrix.

        Parameters
        ----------
        node : int
            Internal node number
        rate_class : int
            Rate class index

        Returns
        -------
        ndarray
            View into the store; writes go straight to the arena
        """
        self._check_alive()
        return self._partials[self._class(rate_class), self._slot(node)]

    def get_scaling(self, node: int, rate_class: int) -> np.ndarray:
        """Writable (n_sites,) view of one node's scaling exponents."""
        self._check_alive()
        return self._scaling[self._class(rate_class), self._slot(node)]

    @property
    def flat(self) -> np.ndarray:
        """The flat likelihood buffer, for external linear-algebra calls."""
        self._check_alive()
        return self._flat

    @property
    def flat_scaling(self) -> np.ndarray:
        """The flat scaling-exponent buffer."""
        self._check_alive()
        return self._flat_scaling

    def reset(self) -> None:
        """Zero both buffers without reallocating."""
        self._check_alive()
        self._flat.fill(0.0)
        self._flat_scaling.fill(0)
