"""
Transition probability matrices from a cached eigendecomposition.

This module provides the eigendecomposition container shared by every edge
and rate class of an analysis, and the routines that turn it into transition
probability matrices for a branch length and rate multiplier.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy.linalg import expm


@dataclass(frozen=True)
class EigenDecomposition:
    """
    Eigendecomposition Q = U @ diag(values) @ V of a rate matrix.

    Attributes
    ----------
    values : ndarray, shape (n,)
        Eigenvalues of Q
    vectors : ndarray, shape (n, n)
        Right eigenvectors U (columns)
    inverse : ndarray, shape (n, n)
        Inverse eigenvector matrix V = U^-1

    Notes
    -----
    Instances are immutable and meant to be shared across all edges and rate
    classes of one analysis.
    """

    values: np.ndarray
    vectors: np.ndarray
    inverse: np.ndarray

    def __post_init__(self):
        n = len(self.values)
        if self.vectors.shape != (n, n):
            raise ValueError(
                f"Eigenvector matrix has shape {self.vectors.shape}, expected ({n}, {n})"
            )
        if self.inverse.shape != (n, n):
            raise ValueError(
                f"Inverse eigenvector matrix has shape {self.inverse.shape}, expected ({n}, {n})"
            )

    @property
    def n_states(self) -> int:
        """Number of states of the model."""
        return len(self.values)

    @classmethod
    def from_rate_matrix(
        cls, Q: np.ndarray, pi: Optional[np.ndarray] = None
    ) -> "EigenDecomposition":
        """
        Decompose a rate matrix.

        If ``pi`` is given and Q satisfies detailed balance with it, the
        symmetrisation route of :func:`eigen_decompose_rev` is used. Otherwise
        the general (non-symmetric) eigen solver is used and only the real
        parts are kept.

        Parameters
        ----------
        Q : ndarray, shape (n, n)
            Instantaneous rate matrix
        pi : ndarray, shape (n,), optional
            Stationary distribution

        Returns
        -------
        EigenDecomposition
        """
        Q = np.asarray(Q, dtype=np.float64)
        if pi is not None and check_detailed_balance(Q, np.asarray(pi, dtype=np.float64)):
            values, U, V = eigen_decompose_rev(Q, np.asarray(pi, dtype=np.float64))
        else:
            values, U = np.linalg.eig(Q)
            values = np.real(values)
            U = np.real(U)
            V = np.linalg.inv(U)
        return cls(values=values, vectors=U, inverse=V)


def transition_matrix(
    eigen: EigenDecomposition, branch_length: float, rate: float = 1.0
) -> np.ndarray:
    """
    Compute P(t) = U @ diag(exp(values * rate * t)) @ V.

    Parameters
    ----------
    eigen : EigenDecomposition
        Cached decomposition of the rate matrix
    branch_length : float
        Branch length t
    rate : float, default=1.0
        Rate multiplier of the rate class

    Returns
    -------
    P : ndarray, shape (n, n)
        P[i, j] is the probability of moving from state i to state j

    Notes
    -----
    A zero branch length or a zero rate returns the exact identity instead
    of evaluating the exponential, which would leave rounding noise off the
    diagonal.

    Examples
    --------
    >>> eigen = EigenDecomposition.from_rate_matrix(Q, pi)
    >>> P = transition_matrix(eigen, 0.1, rate=0.5)
    >>> np.allclose(P.sum(axis=1), 1.0)
    True
    """
    n = eigen.n_states
    if branch_length == 0.0 or rate == 0.0:
        return np.eye(n)
    decay = np.exp(eigen.values * (rate * branch_length))
    return (eigen.vectors * decay[np.newaxis, :]) @ eigen.inverse


def transition_matrices(
    eigen: EigenDecomposition, lengths: np.ndarray, rates: np.ndarray
) -> np.ndarray:
    """
    Transition matrices for every (edge, rate class) pair.

    Parameters
    ----------
    eigen : EigenDecomposition
        Cached decomposition of the rate matrix
    lengths : ndarray, shape (n_edges,)
        Branch lengths
    rates : ndarray, shape (k,)
        Rate multipliers

    Returns
    -------
    ndarray, shape (n_edges, k, n, n)
    """
    lengths = np.asarray(lengths, dtype=np.float64)
    rates = np.asarray(rates, dtype=np.float64)
    n = eigen.n_states
    result = np.empty((len(lengths), len(rates), n, n))
    for e, t in enumerate(lengths):
        for k, rate in enumerate(rates):
            result[e, k] = transition_matrix(eigen, t, rate)
    return result


def matrix_exponential(Q: np.ndarray, t: float) -> np.ndarray:
    """
    Compute P(t) = exp(Q*t) with scipy's Padé approximation.

    Independent of the eigendecomposition route; used as a reference.

    Parameters
    ----------
    Q : ndarray, shape (n, n)
        Rate matrix
    t : float
        Branch length (time)

    Returns
    -------
    P : ndarray, shape (n, n)
    """
    return expm(Q * t)


def eigen_decompose_rev(Q: np.ndarray, pi: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Eigendecompose reversible rate matrix Q = U @ diag(eigenvalues) @ V.

    Transforms Q to the symmetric matrix √D @ Q @ √D^(-1), where D = diag(pi),
    eigendecomposes it with ``numpy.linalg.eigh`` and transforms back.

    Parameters
    ----------
    Q : ndarray, shape (n, n)
        Reversible rate matrix satisfying π_i * Q[i,j] = π_j * Q[j,i]
    pi : ndarray, shape (n,)
        Stationary distribution

    Returns
    -------
    eigenvalues : ndarray, shape (n,)
        Eigenvalues of Q in ascending order (the last one is ~0)
    U : ndarray, shape (n, n)
        Right eigenvector matrix
    V : ndarray, shape (n, n)
        Inverse of U
    """
    sqrt_pi = np.sqrt(pi)

    Q_sym = Q * sqrt_pi[:, np.newaxis] / sqrt_pi[np.newaxis, :]
    # eigh only reads the lower triangle
    Q_sym = (Q_sym + Q_sym.T) / 2.0
    eigenvalues, eigenvectors = np.linalg.eigh(Q_sym)

    U = eigenvectors / sqrt_pi[:, np.newaxis]
    V = eigenvectors.T * sqrt_pi[np.newaxis, :]

    return eigenvalues, U, V


def create_reversible_Q(
    rates: np.ndarray, pi: np.ndarray, normalize: bool = True
) -> np.ndarray:
    """
    Create a reversible rate matrix from exchangeabilities and frequencies.

    Parameters
    ----------
    rates : ndarray, shape (n, n)
        Symmetric exchangeability matrix (r[i,j] = r[j,i])
    pi : ndarray, shape (n,)
        Stationary distribution
    normalize : bool, default=True
        Scale Q to one expected substitution per unit time

    Returns
    -------
    Q : ndarray, shape (n, n)
        Q[i,j] = r[i,j] * pi[j] off the diagonal, rows summing to zero

    Examples
    --------
    >>> # JC69
    >>> Q = create_reversible_Q(np.ones((4, 4)), np.ones(4) / 4)
    """
    Q = np.asarray(rates, dtype=np.float64) * pi[np.newaxis, :]

    np.fill_diagonal(Q, 0.0)
    np.fill_diagonal(Q, -Q.sum(axis=1))

    if normalize:
        expected_rate = -np.dot(pi, Q.diagonal())
        Q /= expected_rate

    return Q


def check_detailed_balance(Q: np.ndarray, pi: np.ndarray, rtol: float = 1e-10) -> bool:
    """
    Test whether Q satisfies detailed balance with stationary distribution pi.

    Parameters
    ----------
    Q : ndarray, shape (n, n)
        Rate matrix
    pi : ndarray, shape (n,)
        Proposed stationary distribution
    rtol : float
        Relative tolerance

    Returns
    -------
    bool
        True if π_i * Q[i, j] == π_j * Q[j, i] for all i, j
    """
    if Q.shape != (len(pi), len(pi)) or np.any(pi <= 0):
        return False
    flux = pi[:, np.newaxis] * Q
    return bool(np.allclose(flux, flux.T, rtol=rtol, atol=0.0))
