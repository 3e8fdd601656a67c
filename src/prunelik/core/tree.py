"""
Post-order edge lists describing rooted trees.
"""

from dataclasses import dataclass, field
from typing import Sequence

import numpy as np


@dataclass
class EdgeList:
    """
    Rooted tree given as (parent, child) edges in post-order.

    Edges sharing a parent must be contiguous and every node's own incoming
    edge must come after all edges below it. Leaves are numbered
    ``1..n_tips``, internal nodes ``n_tips + 1 ..``. These are caller
    preconditions and are not checked.

    Attributes
    ----------
    parents : ndarray of int, shape (n_edges,)
        Parent node of each edge
    children : ndarray of int, shape (n_edges,)
        Child node of each edge
    n_tips : int
        Number of leaves

    Examples
    --------
    >>> # ((1,2)6,3,(4,5)7)8 rooted at 8
    >>> edges = EdgeList.from_pairs(
    ...     [(6, 1), (6, 2), (7, 4), (7, 5), (8, 6), (8, 3), (8, 7)], n_tips=5
    ... )
    >>> edges.root
    8
    """

    parents: np.ndarray
    children: np.ndarray
    n_tips: int
    _ancestors: dict = field(default=None, init=False, repr=False)
    _edge_of: dict = field(default=None, init=False, repr=False)

    def __post_init__(self):
        self.parents = np.asarray(self.parents, dtype=np.int64)
        self.children = np.asarray(self.children, dtype=np.int64)
        if self.parents.shape != self.children.shape:
            raise ValueError(
                f"parents has {len(self.parents)} entries but children has {len(self.children)}"
            )
        self._ancestors = {int(c): int(p) for p, c in zip(self.parents, self.children)}
        self._edge_of = {int(c): i for i, c in enumerate(self.children)}

    @classmethod
    def from_pairs(cls, pairs: Sequence[tuple[int, int]], n_tips: int) -> "EdgeList":
        """Build from a sequence of (parent, child) tuples."""
        pairs = list(pairs)
        return cls(
            parents=np.array([p for p, _ in pairs], dtype=np.int64),
            children=np.array([c for _, c in pairs], dtype=np.int64),
            n_tips=n_tips,
        )

    @property
    def n_edges(self) -> int:
        """Number of edges."""
        return len(self.children)

    @property
    def n_nodes(self) -> int:
        """Number of nodes (highest node number)."""
        return int(max(self.parents.max(), self.children.max()))

    @property
    def n_internal(self) -> int:
        """Number of internal nodes."""
        return self.n_nodes - self.n_tips

    @property
    def root(self) -> int:
        """The root, i.e. the parent finalised last in post-order."""
        return int(self.parents[-1])

    def is_tip(self, node: int) -> bool:
        """True for leaves."""
        return 1 <= node <= self.n_tips

    def parent_of(self, node: int) -> int:
        """Parent of ``node`` (KeyError for the root)."""
        return self._ancestors[node]

    @property
    def ancestors(self) -> dict:
        """Mapping child -> parent."""
        return dict(self._ancestors)

    def edge_index(self, child: int) -> int:
        """Position of the edge leading to ``child``."""
        return self._edge_of[child]

    def pairs(self) -> list[tuple[int, int]]:
        """Edges as a list of (parent, child) tuples in post-order."""
        return [(int(p), int(c)) for p, c in zip(self.parents, self.children)]

    def preorder(self) -> list[tuple[int, int]]:
        """
        Edges with every parent visited before its descendants.

        This is the reversed post-order. Walking edges in this order keeps
        the pathwise moves of the incremental updater short.
        """
        return self.pairs()[::-1]

    def path_to_root(self, node: int) -> list[int]:
        """Nodes from ``node`` up to and including the root."""
        path = [node]
        while path[-1] in self._ancestors:
            path.append(self._ancestors[path[-1]])
        return path

    def path(self, start: int, end: int) -> list[int]:
        """
        Nodes on the unique tree path from ``start`` to ``end`` (inclusive).

        Parameters
        ----------
        start : int
            First node
        end : int
            Last node

        Returns
        -------
        list[int]
        """
        up = self.path_to_root(start)
        down = self.path_to_root(end)
        on_up = set(up)
        meet = next(node for node in down if node in on_up)
        head = up[: up.index(meet) + 1]
        tail = down[: down.index(meet)]
        return head + tail[::-1]
