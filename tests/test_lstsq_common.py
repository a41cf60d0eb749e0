"""Regularized weighted least squares tests across backends."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from conftest import Backend


def _closed_form(matrix, rhs, weights, l2_regularizer):
    weighted_matrix = weights[:, np.newaxis] * matrix
    return np.linalg.solve(
        weighted_matrix.T @ matrix + np.diag(l2_regularizer), weighted_matrix.T @ rhs
    )


def test_lstsq_matches_closed_form(backend: Backend):
    rng = np.random.RandomState(0)
    matrix = rng.randn(30, 6)
    rhs = rng.randn(30)
    weights = rng.uniform(0.5, 2.0, 30)
    l2_regularizer = rng.uniform(0.1, 1.0, 6)

    x = backend.module.lstsq(
        backend.to_tensor(matrix),
        backend.to_tensor(rhs),
        backend.to_tensor(weights),
        backend.to_tensor(l2_regularizer),
    )
    np.testing.assert_allclose(
        backend.to_numpy(x), _closed_form(matrix, rhs, weights, l2_regularizer), rtol=1e-8
    )


def test_lstsq_multiple_outputs(backend: Backend):
    rng = np.random.RandomState(1)
    matrix = rng.randn(20, 4)
    rhs = rng.randn(20, 3)
    weights = np.ones(20)

    x = backend.module.lstsq(
        backend.to_tensor(matrix), backend.to_tensor(rhs), backend.to_tensor(weights)
    )
    expected, *_ = np.linalg.lstsq(matrix, rhs, rcond=None)
    assert backend.to_numpy(x).shape == (4, 3)
    np.testing.assert_allclose(backend.to_numpy(x), expected, rtol=1e-8, atol=1e-10)


def test_lstsq_rank_deficient(backend: Backend):
    """A zero column makes the system singular, the solve still succeeds."""
    rng = np.random.RandomState(2)
    matrix = rng.randn(15, 4)
    matrix[:, 2] = 0
    rhs = rng.randn(15)
    weights = np.ones(15)

    x, info = backend.module.lstsq(
        backend.to_tensor(matrix),
        backend.to_tensor(rhs),
        backend.to_tensor(weights),
        return_info=True,
    )
    x = backend.to_numpy(x)

    assert info['rank'] == 3
    assert info['data_rank'] == 3
    assert info['condition_number'] == np.inf
    assert abs(x[2]) < 1e-12
    expected, *_ = np.linalg.lstsq(np.delete(matrix, 2, axis=1), rhs, rcond=None)
    np.testing.assert_allclose(np.delete(x, 2), expected, rtol=1e-8)
    assert info['residual_norm'] < 1e-8


def test_lstsq_info_of_regular_system(backend: Backend):
    rng = np.random.RandomState(3)
    matrix = rng.randn(10, 3)
    weights = np.ones(10)

    _, info = backend.module.lstsq(
        backend.to_tensor(matrix),
        backend.to_tensor(rng.randn(10)),
        backend.to_tensor(weights),
        backend.to_tensor(np.full(3, 0.5)),
        return_info=True,
    )
    gramian = matrix.T @ matrix + 0.5 * np.eye(3)

    assert info['rank'] == 3
    assert info['data_rank'] == 3
    assert info['condition_number'] >= 1.0
    # Both backends estimate the condition number of the normal matrix
    assert info['condition_number'] <= 10 * np.linalg.cond(gramian)
