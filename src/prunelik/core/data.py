"""
Tip site patterns resolved through a shared contrast matrix.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np


@dataclass
class TipData:
    """
    Compressed site patterns of the leaves.

    Every observed character (including gaps and ambiguity codes) is a row
    of ``contrast`` giving the likelihood of each model state; the data of a
    leaf is just a vector of row indices. Ambiguity therefore needs no
    special casing anywhere in the pruning loops.

    Attributes
    ----------
    codes : ndarray of int, shape (n_tips, n_sites)
        Row of ``contrast`` observed at each tip and site pattern (0-based).
        Row ``i`` belongs to leaf ``i + 1``.
    contrast : ndarray, shape (n_codes, n_states)
        Contrast matrix
    weights : ndarray, shape (n_sites,)
        Number of alignment columns represented by each site pattern
    """

    codes: np.ndarray
    contrast: np.ndarray
    weights: Optional[np.ndarray] = None

    def __post_init__(self):
        self.codes = np.asarray(self.codes, dtype=np.intp)
        self.contrast = np.asarray(self.contrast, dtype=np.float64)
        if self.codes.ndim != 2:
            raise ValueError(f"codes must be 2-dimensional, got shape {self.codes.shape}")
        if self.contrast.ndim != 2:
            raise ValueError(f"contrast must be 2-dimensional, got shape {self.contrast.shape}")
        if self.codes.size and (self.codes.min() < 0 or self.codes.max() >= len(self.contrast)):
            raise ValueError(
                f"codes must index rows 0..{len(self.contrast) - 1} of the contrast matrix"
            )
        if self.weights is None:
            self.weights = np.ones(self.n_sites)
        else:
            self.weights = np.asarray(self.weights, dtype=np.float64)
            if self.weights.shape != (self.n_sites,):
                raise ValueError(
                    f"weights has shape {self.weights.shape}, expected ({self.n_sites},)"
                )

    @property
    def n_tips(self) -> int:
        return self.codes.shape[0]

    @property
    def n_sites(self) -> int:
        return self.codes.shape[1]

    @property
    def n_states(self) -> int:
        return self.contrast.shape[1]

    @classmethod
    def from_states(
        cls, states: np.ndarray, n_states: int, weights: Optional[np.ndarray] = None
    ) -> "TipData":
        """
        Build tip data from integer-coded states.

        States ``0..n_states-1`` map to the matching identity row; any
        negative value is treated as missing data and maps to an extra
        all-ones row.

        Parameters
        ----------
        states : ndarray of int, shape (n_tips, n_sites)
            Observed state index per tip and site, negative for missing
        n_states : int
            Number of model states
        weights : ndarray, shape (n_sites,), optional
            Site-pattern weights (default: all ones)

        Returns
        -------
        TipData
        """
        states = np.asarray(states)
        if states.size and states.max() >= n_states:
            raise ValueError(f"states must be below {n_states}, got {states.max()}")
        contrast = np.vstack([np.eye(n_states), np.ones((1, n_states))])
        codes = np.where(states < 0, n_states, states)
        return cls(codes=codes, contrast=contrast, weights=weights)

    def tip_partial(self, tip: int) -> np.ndarray:
        """Dense (n_sites, n_states) conditional likelihood of leaf ``tip``."""
        return self.contrast[self.codes[tip - 1]]

    def tip_codes(self, tip: int) -> np.ndarray:
        """Contrast row indices of leaf ``tip``."""
        return self.codes[tip - 1]

    def invariant_sites(self) -> np.ndarray:
        """
        Per-site product of the tips' contrast rows.

        Entry ``[s, i]`` is non-zero only if every tip is compatible with
        state ``i`` at site ``s``; weighted by the equilibrium frequencies it
        gives the likelihood of a site under the invariant class.

        Returns
        -------
        ndarray, shape (n_sites, n_states)
        """
        result = np.ones((self.n_sites, self.n_states))
        for tip_codes in self.codes:
            result *= self.contrast[tip_codes]
        return result
