"""Linear algebra helpers for the level-scheme least-squares systems."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import numpy as np
from scipy import linalg

# Relative SVD cut: sigma_i <= RCOND * max(shape) * sigma_max is treated as zero
RCOND = 1e-15


@dataclass
class PseudoInverse:
    """
    Truncated-SVD Moore-Penrose inverse.

    Attributes:
        matrix: The pseudoinverse
        rank: Number of singular values kept
        singular_values: All singular values, descending
        threshold: Absolute cut applied to the singular values
    """

    matrix: np.ndarray
    rank: int
    singular_values: np.ndarray
    threshold: float

    def is_full_rank(self, n_unknowns: int) -> bool:
        return self.rank >= n_unknowns


def pseudo_inverse(mat: np.ndarray, rcond: float = RCOND) -> PseudoInverse:
    """
    Moore-Penrose pseudoinverse from a truncated singular value decomposition.

    Parameters
    ----------
    mat : np.ndarray
        Matrix to invert, shape (m, n).
    rcond : float
        Relative tolerance; singular values below
        ``rcond * max(m, n) * sigma_max`` are excluded from the inversion.

    Returns
    -------
    PseudoInverse
        Inverse of shape (n, m) together with the truncated rank.
    """
    mat = np.atleast_2d(np.asarray(mat, dtype=float))
    if mat.size == 0:
        return PseudoInverse(np.zeros(mat.shape[::-1]), 0, np.zeros(0), 0.0)

    U, s, Vh = linalg.svd(mat, full_matrices=False)
    threshold = rcond * max(mat.shape) * (s[0] if s.size else 0.0)
    keep = s > threshold
    rank = int(np.sum(keep))
    s_inv = np.zeros_like(s)
    s_inv[keep] = 1.0 / s[keep]
    pinv = (Vh.T * s_inv) @ U.T
    return PseudoInverse(matrix=pinv, rank=rank, singular_values=s, threshold=threshold)


def weighted_normal_solve(
    design: np.ndarray,
    weights: np.ndarray,
    values: np.ndarray,
    rcond: float = RCOND,
) -> Tuple[np.ndarray, PseudoInverse]:
    """
    Solve the weighted normal equations ``(G^T W G) x = G^T W y``.

    ``weights`` is the diagonal of W. Returns the solution and the
    pseudoinverse of the Gram matrix, which is the unscaled covariance.
    """
    design = np.asarray(design, dtype=float)
    weights = np.asarray(weights, dtype=float)
    values = np.asarray(values, dtype=float)
    if design.shape[0] != weights.shape[0] or design.shape[0] != values.shape[0]:
        raise ValueError("Design matrix, weights and values shape mismatch.")
    gtw = design.T * weights
    inverse = pseudo_inverse(gtw @ design, rcond)
    solution = inverse.matrix @ (gtw @ values)
    return solution, inverse
