"""Shape model accessor tests across backends."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import pytest

import morphfit

if TYPE_CHECKING:
    from conftest import Backend


def test_accessors(backend: Backend, model_arrays):
    model = backend.make_model(**model_arrays)
    rescaled_basis = model_arrays['orthonormal_basis'] * np.sqrt(model_arrays['eigenvalues'])

    assert model.num_vertices == 20
    assert model.num_principal_components == 5
    assert model.data_dimension == 60
    np.testing.assert_allclose(backend.to_numpy(model.get_mean()), model_arrays['mean'])
    np.testing.assert_allclose(
        backend.to_numpy(model.get_mean_at_point(4)), model_arrays['mean'][12:15]
    )
    np.testing.assert_allclose(
        backend.to_numpy(model.get_rescaled_pca_basis_at_point(4)), rescaled_basis[12:15]
    )
    assert backend.to_numpy(model.get_rescaled_pca_basis_at_point(4)).shape == (3, 5)
    np.testing.assert_allclose(
        backend.to_numpy(model.get_orthonormal_pca_basis()), model_arrays['orthonormal_basis']
    )
    np.testing.assert_allclose(backend.to_numpy(model.get_eigenvalues()), model_arrays['eigenvalues'])


def test_draw_sample(backend: Backend, model_arrays):
    model = backend.make_model(**model_arrays)
    rescaled_basis = model_arrays['orthonormal_basis'] * np.sqrt(model_arrays['eigenvalues'])

    mean_sample = backend.to_numpy(model.draw_sample(backend.to_tensor(np.zeros(5))))
    np.testing.assert_allclose(mean_sample, model_arrays['mean'])

    coeffs = np.array([1.0, -2.0])
    sample = backend.to_numpy(model.draw_sample(backend.to_tensor(coeffs)))
    np.testing.assert_allclose(sample, model_arrays['mean'] + rescaled_basis[:, :2] @ coeffs)

    with pytest.raises(morphfit.DimensionMismatch):
        model.draw_sample(backend.to_tensor(np.zeros(6)))


def test_unit_coefficient_moves_by_one_standard_deviation(backend: Backend, model_arrays):
    model = backend.make_model(**model_arrays)
    coeffs = np.zeros(5)
    coeffs[1] = 1.0
    offset = backend.to_numpy(model.draw_sample(backend.to_tensor(coeffs))) - model_arrays['mean']
    np.testing.assert_allclose(np.linalg.norm(offset), np.sqrt(model_arrays['eigenvalues'][1]))
