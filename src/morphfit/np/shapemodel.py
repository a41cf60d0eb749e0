from __future__ import annotations

from typing import Optional

import numpy as np
from .. import common as morphfit_common


class ShapeModel:
    """
    Represents a PCA shape model of a 3D morphable model.

    A shape is the mean plus a linear combination of the principal components. The
    coefficients of the rescaled basis (eigenvectors multiplied by the square root of their
    eigenvalues) follow a standard normal distribution.

    Parameters:
        mean: Mean shape, shape (3 * num_vertices,), laid out as x0, y0, z0, x1, ...
        orthonormal_basis: Eigenvectors as columns, shape (3 * num_vertices,
            num_principal_components).
        eigenvalues: Variance along each eigenvector, shape (num_principal_components,).
        rescaled_basis: Alternatively to the two above, the rescaled basis directly.
        triangles: Triangle list of the mesh, shape (num_triangles, 3).
        num_coefficients: Number of principal components to keep. By default, all of them.
    """

    def __init__(
        self,
        mean,
        orthonormal_basis=None,
        eigenvalues=None,
        rescaled_basis=None,
        triangles=None,
        num_coefficients=None,
    ):
        data = morphfit_common.initialize(
            mean, orthonormal_basis, eigenvalues, rescaled_basis, triangles, num_coefficients
        )
        self.mean = data.mean
        self.rescaled_basis = data.rescaled_basis
        self.orthonormal_basis = data.orthonormal_basis
        self.eigenvalues = data.eigenvalues
        self.triangles = data.triangles
        self.num_vertices = data.num_vertices
        self.num_principal_components = data.num_principal_components

    @property
    def data_dimension(self) -> int:
        return self.mean.shape[0]

    def get_mean(self) -> np.ndarray:
        return self.mean

    def get_mean_at_point(self, vertex_id: int) -> np.ndarray:
        return self.mean[3 * vertex_id : 3 * vertex_id + 3]

    def get_rescaled_pca_basis(self) -> np.ndarray:
        return self.rescaled_basis

    def get_rescaled_pca_basis_at_point(self, vertex_id: int) -> np.ndarray:
        """Returns the 3 rows of the rescaled basis belonging to a vertex, shape
        (3, num_principal_components)."""
        return self.rescaled_basis[3 * vertex_id : 3 * vertex_id + 3]

    def get_orthonormal_pca_basis(self) -> np.ndarray:
        return self.orthonormal_basis

    def get_eigenvalues(self) -> np.ndarray:
        return self.eigenvalues

    def draw_sample(self, coefficients: Optional[np.ndarray] = None) -> np.ndarray:
        """
        Returns the shape for the given coefficients of the rescaled basis.

        Parameters:
            coefficients: Standard-normal coefficients, shape (num_coefficients,) with
                num_coefficients <= num_principal_components. Missing trailing coefficients
                are taken as zero.

        Returns:
            The shape vector, shape (3 * num_vertices,).
        """
        if coefficients is None:
            return self.mean.copy()
        coefficients = np.asarray(coefficients, np.float64)
        num_coeffs = coefficients.shape[0]
        if num_coeffs > self.num_principal_components:
            raise morphfit_common.DimensionMismatch(
                f'Got {num_coeffs} coefficients for a model with '
                f'{self.num_principal_components} principal components.'
            )
        return self.mean + self.rescaled_basis[:, :num_coeffs] @ coefficients
