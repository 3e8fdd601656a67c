"""
Damped Newton-Raphson optimisation of a single branch length.

Works on the rotated representation of an exposed edge (see
:class:`prunelik.core.incremental.RotatedEdge`), so every likelihood and
derivative evaluation is a weighted sum of exponentials with no transition
matrix to build. The step is taken in ``log t`` with the outer-product
(scoring) approximation of the second derivative.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from ..core.model import MixtureModel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NewtonSettings:
    """
    Constants of the Newton-Raphson branch length search.

    Attributes
    ----------
    max_iterations : int
        Maximum number of proposals
    tolerance : float
        Stop once an accepted step improves the log-likelihood by less
    max_step : float
        Bound on the absolute Newton step in ``log t``
    min_length, max_length : float
        Branch lengths are clamped to this interval
    refresh_threshold : float
        The Newton direction is recomputed only while the step scale is
        above this value; after a rejection the halved step reuses it
    """

    max_iterations: int = 10
    tolerance: float = 1e-5
    max_step: float = 3.0
    min_length: float = 1e-8
    max_length: float = 10.0
    refresh_threshold: float = 0.6


DEFAULT_SETTINGS = NewtonSettings()
FAST_SETTINGS = NewtonSettings(max_iterations=5)


@dataclass
class EdgeLengthResult:
    """
    Outcome of optimising one branch length.

    Attributes
    ----------
    length : float
        Final branch length
    variance : float
        Inverse of the outer-product information at ``length``
    log_likelihood : float
        Pattern-weighted log-likelihood at ``length``
    iterations : int
        Number of proposals evaluated
    """

    length: float
    variance: float
    log_likelihood: float
    iterations: int


class EdgeLengthOptimizer:
    """
    Newton-Raphson search for one branch length of a rate mixture.

    Parameters
    ----------
    eigenvalues : ndarray, shape (n_states,)
        Eigenvalues of the rate matrix
    rates : ndarray, shape (k,)
        Rate multiplier of each class
    weights : ndarray, shape (k,)
        Mixture weight of each class
    site_weights : ndarray, shape (n_sites,)
        Site-pattern weights
    settings : NewtonSettings, default=DEFAULT_SETTINGS
        Search constants
    """

    def __init__(
        self,
        eigenvalues: np.ndarray,
        rates: np.ndarray,
        weights: np.ndarray,
        site_weights: np.ndarray,
        settings: NewtonSettings = DEFAULT_SETTINGS,
    ):
        self.eigenvalues = np.asarray(eigenvalues, dtype=np.float64)
        self.rates = np.asarray(rates, dtype=np.float64)
        self.weights = np.asarray(weights, dtype=np.float64)
        self.site_weights = np.asarray(site_weights, dtype=np.float64)
        self.settings = settings
        if self.rates.shape != self.weights.shape:
            raise ValueError(
                f"Number of weights ({len(self.weights)}) must match "
                f"number of rates ({len(self.rates)})"
            )
        # exponent[k, h] = λ_h r_k
        self.exponent = self.rates[:, np.newaxis] * self.eigenvalues[np.newaxis, :]

    @classmethod
    def from_model(
        cls,
        model: MixtureModel,
        site_weights: np.ndarray,
        settings: NewtonSettings = DEFAULT_SETTINGS,
    ) -> "EdgeLengthOptimizer":
        """Build an optimiser for the classes of ``model``."""
        return cls(model.eigen.values, model.rates, model.weights, site_weights, settings)

    def site_likelihoods(
        self, rotated: np.ndarray, t: float, baseline: Optional[np.ndarray] = None
    ) -> np.ndarray:
        """
        Scaled site likelihoods at branch length ``t``.

        Parameters
        ----------
        rotated : ndarray, shape (k, n_sites, n_states)
            Rotated edge
        t : float
            Branch length
        baseline : ndarray, shape (n_sites,), optional
            Term independent of ``t`` (invariant sites)

        Returns
        -------
        ndarray, shape (n_sites,)
        """
        decay = np.exp(self.exponent * t)
        f = np.einsum("k,ksh,kh->s", self.weights, rotated, decay)
        if baseline is not None:
            f = f + baseline
        return f

    def _derivative(self, rotated: np.ndarray, t: float) -> np.ndarray:
        """``∂f/∂t`` per site."""
        decay = self.exponent * np.exp(self.exponent * t)
        return np.einsum("k,ksh,kh->s", self.weights, rotated, decay)

    def log_likelihood(
        self,
        rotated: np.ndarray,
        t: float,
        baseline: Optional[np.ndarray] = None,
        log_scale: Optional[np.ndarray] = None,
    ) -> float:
        """Pattern-weighted log-likelihood at branch length ``t``."""
        with np.errstate(divide="ignore", invalid="ignore"):
            site_log = np.log(self.site_likelihoods(rotated, t, baseline))
        if log_scale is not None:
            site_log = site_log + log_scale
        return float(self.site_weights @ site_log)

    def variance(
        self, rotated: np.ndarray, t: float, baseline: Optional[np.ndarray] = None
    ) -> float:
        """Inverse outer-product information ``1 / Σ w_s (f'_s / f_s)²``."""
        with np.errstate(divide="ignore", invalid="ignore"):
            score = self._derivative(rotated, t) / self.site_likelihoods(rotated, t, baseline)
            return float(1.0 / (self.site_weights @ score**2))

    def optimize(
        self,
        rotated: np.ndarray,
        length: float,
        baseline: Optional[np.ndarray] = None,
        log_scale: Optional[np.ndarray] = None,
    ) -> EdgeLengthResult:
        """
        Maximise the likelihood of one edge.

        Parameters
        ----------
        rotated : ndarray, shape (k, n_sites, n_states)
            Rotated edge
        length : float
            Starting branch length
        baseline : ndarray, shape (n_sites,), optional
            Term independent of the length (invariant sites)
        log_scale : ndarray, shape (n_sites,), optional
            Scaling offset added to the reported log-likelihood

        Returns
        -------
        EdgeLengthResult
        """
        s = self.settings
        t = float(np.clip(length, s.min_length, s.max_length))
        l0 = self.log_likelihood(rotated, t, baseline)
        offset = 0.0 if log_scale is None else float(self.site_weights @ log_scale)

        if not np.isfinite(l0):
            logger.warning(
                f"Non-finite log-likelihood ({l0}) at length {length}; edge left unchanged"
            )
            return EdgeLengthResult(
                length=float(length), variance=np.nan, log_likelihood=l0 + offset, iterations=0
            )

        step_scale = 1.0
        delta = 0.0
        improvement = np.inf
        iterations = 0
        while improvement > s.tolerance and iterations < s.max_iterations:
            if step_scale > s.refresh_threshold:
                with np.errstate(divide="ignore", invalid="ignore"):
                    f = self.site_likelihoods(rotated, t, baseline)
                    g = t * self._derivative(rotated, t) / f
                    delta = (self.site_weights @ g) / (self.site_weights @ g**2)
                if not np.isfinite(delta):
                    break
                delta = float(np.clip(delta, -s.max_step, s.max_step))

            proposal = np.exp(np.log(t) + step_scale * delta)
            proposal = float(np.clip(proposal, s.min_length, s.max_length))
            l1 = self.log_likelihood(rotated, proposal, baseline)
            improvement = l1 - l0
            iterations += 1

            if np.isnan(improvement):
                break
            if np.isfinite(l1) and improvement > 0:
                t = proposal
                l0 = l1
                step_scale = 1.0
            else:
                step_scale /= 2.0
                improvement = np.inf

        result = EdgeLengthResult(
            length=t,
            variance=self.variance(rotated, t, baseline),
            log_likelihood=l0 + offset,
            iterations=iterations,
        )
        logger.debug(
            f"Newton: {length:.6g} -> {t:.6g} in {iterations} iterations, "
            f"lnL = {result.log_likelihood:.6f}"
        )
        return result
