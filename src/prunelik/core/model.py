"""
Substitution model and discrete rate mixture.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np

from .matrix import EigenDecomposition


def discrete_gamma(shape: float, n_categories: int) -> np.ndarray:
    """
    Rates of a discretised gamma distribution with mean one.

    Splits Gamma(shape, rate=shape) into ``n_categories`` equally probable
    bins and returns the mean of each bin (Yang 1994, mean method).

    Parameters
    ----------
    shape : float
        Gamma shape parameter alpha
    n_categories : int
        Number of rate categories

    Returns
    -------
    ndarray, shape (n_categories,)
        Category rates; their average is 1

    Examples
    --------
    >>> rates = discrete_gamma(0.5, 4)
    >>> bool(np.isclose(rates.mean(), 1.0))
    True
    """
    from scipy.stats import gamma

    if shape <= 0:
        raise ValueError(f"shape must be > 0, got {shape}")
    if n_categories < 1:
        raise ValueError(f"n_categories must be >= 1, got {n_categories}")
    if n_categories == 1:
        return np.ones(1)

    K = n_categories
    cuts = gamma.ppf(np.arange(1, K) / K, shape, scale=1.0 / shape)
    # Mean of each bin via the incomplete gamma of shape + 1
    upper = gamma.cdf(cuts, shape + 1.0, scale=1.0 / shape)
    return np.diff(np.concatenate([[0.0], upper, [1.0]])) * K


@dataclass
class MixtureModel:
    """
    Rate-heterogeneous substitution model.

    Attributes
    ----------
    eigen : EigenDecomposition
        Decomposition of the instantaneous rate matrix
    frequencies : ndarray, shape (n_states,)
        Equilibrium frequencies used at the root
    weights : ndarray, shape (k,)
        Probability of each rate class
    rates : ndarray, shape (k,)
        Rate multiplier of each rate class
    p_invariant : float
        Proportion of invariant sites; ``weights.sum() + p_invariant == 1``
    """

    eigen: EigenDecomposition
    frequencies: np.ndarray
    weights: Optional[np.ndarray] = None
    rates: Optional[np.ndarray] = None
    p_invariant: float = 0.0

    def __post_init__(self):
        n = self.eigen.n_states
        self.frequencies = np.asarray(self.frequencies, dtype=np.float64)
        if self.frequencies.shape != (n,):
            raise ValueError(
                f"frequencies has shape {self.frequencies.shape}, expected ({n},)"
            )
        if not 0.0 <= self.p_invariant < 1.0:
            raise ValueError(f"p_invariant must be in [0, 1), got {self.p_invariant}")

        if self.rates is None:
            self.rates = np.ones(1)
        self.rates = np.asarray(self.rates, dtype=np.float64)
        if self.weights is None:
            self.weights = np.full(len(self.rates), (1.0 - self.p_invariant) / len(self.rates))
        self.weights = np.asarray(self.weights, dtype=np.float64)

        if self.weights.shape != self.rates.shape:
            raise ValueError(
                f"Number of weights ({len(self.weights)}) must match "
                f"number of rates ({len(self.rates)})"
            )
        if np.any(self.weights < 0) or np.any(self.rates < 0):
            raise ValueError("weights and rates must be non-negative")
        total = self.weights.sum() + self.p_invariant
        if not np.isclose(total, 1.0, rtol=0.0, atol=1e-8):
            raise ValueError(f"weights plus p_invariant must sum to 1, got {total}")

    @property
    def n_states(self) -> int:
        return self.eigen.n_states

    @property
    def n_classes(self) -> int:
        return len(self.rates)

    @classmethod
    def gamma(
        cls,
        eigen: EigenDecomposition,
        frequencies: np.ndarray,
        shape: float,
        n_categories: int = 4,
        p_invariant: float = 0.0,
    ) -> "MixtureModel":
        """
        Discrete-gamma mixture, optionally with invariant sites.

        The variable classes share ``1 - p_invariant`` equally and their
        rates are inflated by ``1 / (1 - p_invariant)`` so that the overall
        mean rate stays one.
        """
        rates = discrete_gamma(shape, n_categories) / (1.0 - p_invariant)
        weights = np.full(n_categories, (1.0 - p_invariant) / n_categories)
        return cls(
            eigen=eigen,
            frequencies=frequencies,
            weights=weights,
            rates=rates,
            p_invariant=p_invariant,
        )
