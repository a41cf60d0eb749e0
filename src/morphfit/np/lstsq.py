from __future__ import annotations

from typing import Optional

import numpy as np
import scipy.linalg


def lstsq(
    matrix: np.ndarray,
    rhs: np.ndarray,
    weights: np.ndarray,
    l2_regularizer: Optional[np.ndarray] = None,
    return_info: bool = False,
):
    """Weighted least squares with L2 regularization.

    Minimizes ``sum(weights * (matrix @ x - rhs)**2) + sum(l2_regularizer * x**2)`` through
    its normal equations, which are solved with a column-pivoted QR decomposition. If the
    normal matrix is rank deficient, the basic solution is returned (the parameters of the
    dropped pivots are zero) instead of failing.

    Args:
        matrix: Design matrix, shape (n_points, n_params).
        rhs: Right-hand side, shape (n_points,) or (n_points, n_outputs).
        weights: Per-row weights, shape (n_points,).
        l2_regularizer: L2 regularization coefficients, shape (n_params,).
        return_info: If True, also return a dict with ``rank``, ``data_rank``,
            ``condition_number`` and ``residual_norm``.

    Returns:
        Solution, shape (n_params,) or (n_params, n_outputs), and the info dict if requested.
    """
    weighted_matrix = weights[:, np.newaxis] * matrix
    gramian = weighted_matrix.T @ matrix
    ATb = weighted_matrix.T @ rhs

    regularized_gramian = gramian.copy()
    if l2_regularizer is not None:
        regularized_gramian[np.diag_indices_from(regularized_gramian)] += l2_regularizer

    q, r, perm = scipy.linalg.qr(regularized_gramian, mode='economic', pivoting=True)
    rank = _rank_from_triangular(r)

    x = np.zeros((gramian.shape[1],) + ATb.shape[1:], dtype=np.result_type(ATb, q))
    if rank > 0:
        x[perm[:rank]] = scipy.linalg.solve_triangular(r[:rank, :rank], (q.T @ ATb)[:rank])

    if not return_info:
        return x

    abs_diag = np.abs(np.diag(r))
    if rank < abs_diag.shape[0]:
        condition_number = np.inf
    else:
        condition_number = float(abs_diag[0] / abs_diag[-1])

    info = dict(
        rank=rank,
        data_rank=int(np.linalg.matrix_rank(gramian)) if gramian.size else 0,
        condition_number=condition_number,
        residual_norm=float(np.linalg.norm(regularized_gramian @ x - ATb)),
    )
    return x, info


def _rank_from_triangular(r):
    # Same threshold as Eigen's ColPivHouseholderQR: eps * size relative to the largest pivot
    if r.size == 0:
        return 0
    abs_diag = np.abs(np.diag(r))
    threshold = np.finfo(r.dtype).eps * max(r.shape) * abs_diag[0]
    return int(np.count_nonzero(abs_diag > threshold))
