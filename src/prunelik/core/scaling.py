"""
Underflow protection for conditional likelihood arrays.

Rows (sites) whose likelihood mass drops below ``SCALE_EPS`` are multiplied by
``SCALE_MAX`` and the number of rescalings is counted per site. The true
log-likelihood is recovered by adding ``count * LOG_SCALE_EPS``.
"""

from typing import Optional

import numpy as np

SCALE_EPS = 2.0 ** -32
SCALE_MAX = 2.0 ** 32
LOG_SCALE_EPS = float(np.log(SCALE_EPS))


def rescale(matrix: np.ndarray, counter: np.ndarray) -> None:
    """
    Rescale the rows of ``matrix`` in place.

    While a row sums to less than ``SCALE_EPS``, every entry of the row is
    multiplied by ``SCALE_MAX`` and the row's counter is incremented, so a row
    that underflowed by several orders of 2^32 is fixed in one call.

    Parameters
    ----------
    matrix : ndarray, shape (n_sites, n_states)
        Conditional likelihoods of one node and rate class
    counter : ndarray of int, shape (n_sites,)
        Scaling exponents of the same node and rate class

    Notes
    -----
    Rows with zero (or NaN) mass cannot be brought above the threshold and
    are left untouched.
    """
    totals = matrix.sum(axis=1)
    low = (totals < SCALE_EPS) & (totals > 0.0)
    while low.any():
        matrix[low] *= SCALE_MAX
        counter[low] += 1
        totals[low] *= SCALE_MAX
        low = (totals < SCALE_EPS) & (totals > 0.0)


def skip_rescale(matrix: np.ndarray, counter: np.ndarray) -> None:
    """Scaling strategy that leaves the matrix unscaled."""


def row_min_scale(counts: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Normalise scaling exponents across rate classes.

    Parameters
    ----------
    counts : ndarray of int, shape (k, n_sites)
        Per-class, per-site scaling exponents

    Returns
    -------
    relative : ndarray of int, shape (k, n_sites)
        ``counts`` minus the per-site minimum across classes
    minimum : ndarray of int, shape (n_sites,)
        The per-site minimum
    """
    counts = np.asarray(counts)
    minimum = counts.min(axis=0)
    return counts - minimum[np.newaxis, :], minimum


def relative_scale_factors(counts: np.ndarray) -> np.ndarray:
    """
    Per-class multipliers ``SCALE_EPS ** (counts - min)``.

    A class rescaled more often than the least-rescaled class at a site holds
    values inflated by that many powers of ``SCALE_MAX``; these factors bring
    every class back to the common scale of the least-rescaled one.

    Parameters
    ----------
    counts : ndarray of int, shape (k, n_sites)

    Returns
    -------
    ndarray, shape (k, n_sites)
    """
    relative, _ = row_min_scale(counts)
    return np.exp(LOG_SCALE_EPS * relative)


def mix_log_likelihoods(
    class_values: np.ndarray,
    weights: np.ndarray,
    counts: np.ndarray,
    invariant: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Per-site log-likelihood of a rate mixture from scaled class values.

    Computes ``log(Σ_k w_k · SCALE_EPS**(c_k - min) · L_k) + min · log(SCALE_EPS)``
    and, if given, log-adds the (unscaled) invariant-site term.

    Parameters
    ----------
    class_values : ndarray, shape (k, n_sites)
        Scaled site likelihoods of each rate class
    weights : ndarray, shape (k,)
        Mixture weights of the rate classes
    counts : ndarray of int, shape (k, n_sites)
        Scaling exponents of each class at the root
    invariant : ndarray, shape (n_sites,), optional
        Already weighted invariant-site likelihood ``p_inv * L_inv``

    Returns
    -------
    ndarray, shape (n_sites,)
    """
    relative, minimum = row_min_scale(counts)
    mixed = np.einsum(
        "k,ks->s", weights, np.exp(LOG_SCALE_EPS * relative) * class_values
    )
    with np.errstate(divide="ignore", invalid="ignore"):
        site_log = np.log(mixed) + LOG_SCALE_EPS * minimum
        if invariant is not None:
            site_log = np.logaddexp(site_log, np.log(invariant))
    return site_log
