from __future__ import annotations

from typing import Optional

import torch
import torch.nn as nn

from .. import common as morphfit_common


class ShapeModel(nn.Module):
    """
    Represents a PCA shape model of a 3D morphable model.

    The arrays are registered as buffers, so ``.to(device)`` moves the model. See
    :class:`morphfit.np.ShapeModel` for the parameters.

    Parameters:
        mean: Mean shape, shape (3 * num_vertices,).
        orthonormal_basis: Eigenvectors as columns.
        eigenvalues: Variance along each eigenvector.
        rescaled_basis: Alternatively to the two above, the rescaled basis directly.
        triangles: Triangle list of the mesh, shape (num_triangles, 3).
        num_coefficients: Number of principal components to keep. By default, all of them.
        dtype: Floating point type of the buffers.
    """

    def __init__(
        self,
        mean,
        orthonormal_basis=None,
        eigenvalues=None,
        rescaled_basis=None,
        triangles=None,
        num_coefficients=None,
        dtype=torch.float32,
    ):
        super().__init__()
        data = morphfit_common.initialize(
            mean, orthonormal_basis, eigenvalues, rescaled_basis, triangles, num_coefficients
        )
        self.register_buffer('mean', torch.tensor(data.mean, dtype=dtype))
        self.register_buffer('rescaled_basis', torch.tensor(data.rescaled_basis, dtype=dtype))
        self.register_buffer(
            'orthonormal_basis', torch.tensor(data.orthonormal_basis, dtype=dtype)
        )
        self.register_buffer('eigenvalues', torch.tensor(data.eigenvalues, dtype=dtype))
        self.triangles = data.triangles
        self.num_vertices = data.num_vertices
        self.num_principal_components = data.num_principal_components

    @property
    def data_dimension(self) -> int:
        return self.mean.shape[0]

    def get_mean(self) -> torch.Tensor:
        return self.mean

    def get_mean_at_point(self, vertex_id: int) -> torch.Tensor:
        return self.mean[3 * vertex_id : 3 * vertex_id + 3]

    def get_rescaled_pca_basis(self) -> torch.Tensor:
        return self.rescaled_basis

    def get_rescaled_pca_basis_at_point(self, vertex_id: int) -> torch.Tensor:
        return self.rescaled_basis[3 * vertex_id : 3 * vertex_id + 3]

    def get_orthonormal_pca_basis(self) -> torch.Tensor:
        return self.orthonormal_basis

    def get_eigenvalues(self) -> torch.Tensor:
        return self.eigenvalues

    def forward(self, coefficients: Optional[torch.Tensor] = None) -> torch.Tensor:
        """Returns the shape vector for the given coefficients of the rescaled basis, shape
        (3 * num_vertices,). Missing trailing coefficients are taken as zero."""
        if coefficients is None:
            return self.mean.clone()
        coefficients = torch.as_tensor(coefficients, dtype=self.mean.dtype, device=self.mean.device)
        num_coeffs = coefficients.shape[0]
        if num_coeffs > self.num_principal_components:
            raise morphfit_common.DimensionMismatch(
                f'Got {num_coeffs} coefficients for a model with '
                f'{self.num_principal_components} principal components.'
            )
        return self.mean + self.rescaled_basis[:, :num_coeffs] @ coefficients

    def draw_sample(self, coefficients: Optional[torch.Tensor] = None) -> torch.Tensor:
        return self(coefficients)
