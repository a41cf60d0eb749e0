from __future__ import annotations

from typing import Optional

import torch


def lstsq(
    matrix: torch.Tensor,
    rhs: torch.Tensor,
    weights: torch.Tensor,
    l2_regularizer: Optional[torch.Tensor] = None,
    return_info: bool = False,
):
    """Weighted least squares with L2 regularization.

    The normal equations are solved through an SVD, singular values below the numerical
    rank threshold are discarded, which gives the minimum norm solution for rank deficient
    systems. Unlike LAPACK's pivoted QR solvers, this also runs on the GPU.

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
    weighted_matrix = weights.unsqueeze(-1) * matrix
    gramian = weighted_matrix.mT @ matrix
    ATb = weighted_matrix.mT @ rhs

    if l2_regularizer is not None:
        regularized_gramian = gramian + torch.diag(l2_regularizer)
    else:
        regularized_gramian = gramian

    U, S, Vh = torch.linalg.svd(regularized_gramian)
    threshold = torch.finfo(S.dtype).eps * max(regularized_gramian.shape) * S[0]
    keep = S > threshold
    S_inv = torch.where(
        keep, torch.where(keep, S, torch.ones_like(S)).reciprocal(), torch.zeros_like(S)
    )

    UtB = U.mT @ ATb
    if UtB.ndim == 1:
        x = Vh.mT @ (S_inv * UtB)
    else:
        x = Vh.mT @ (S_inv.unsqueeze(-1) * UtB)

    if not return_info:
        return x

    rank = int(torch.count_nonzero(keep))
    if rank < S.shape[0]:
        condition_number = float('inf')
    else:
        condition_number = float(S[0] / S[-1])

    info = dict(
        rank=rank,
        data_rank=int(torch.linalg.matrix_rank(gramian)),
        condition_number=condition_number,
        residual_norm=float(torch.linalg.norm(regularized_gramian @ x - ATb)),
    )
    return x, info
