from __future__ import annotations

import warnings
from typing import TYPE_CHECKING, Optional, Sequence

import torch
import torch.nn as nn

from .. import common as morphfit_common
from .lstsq import lstsq

if TYPE_CHECKING:
    import morphfit.pt


class ShapeFitter(nn.Module):
    """
    Fits the shape coefficients of a PCA shape model to 2D landmarks seen by known affine
    cameras. PyTorch version of :class:`morphfit.np.ShapeFitter`, computing on the device and
    in the dtype of the model.

    Parameters:
        shape_model: The shape model whose coefficients are estimated. It is only read.
    """

    def __init__(self, shape_model: 'morphfit.pt.ShapeModel'):
        super().__init__()
        self.shape_model = shape_model

    def fit(
        self,
        camera_matrix: torch.Tensor,
        image_points: torch.Tensor,
        vertex_ids: torch.Tensor,
        base_shape: Optional[torch.Tensor] = None,
        regularization: float = 3.0,
        num_coefficients_to_fit: Optional[int] = None,
        detector_std: Optional[float] = None,
        model_std: Optional[float] = None,
        return_diagnostics: bool = False,
        _stacklevel: int = 1,
    ):
        """Fits the shape to the landmarks of a single image. Same as :meth:`fit_multi` with
        one-element lists."""
        return self.fit_multi(
            [camera_matrix],
            [image_points],
            [vertex_ids],
            base_shapes=[base_shape],
            regularization=regularization,
            num_coefficients_to_fit=num_coefficients_to_fit,
            detector_std=detector_std,
            model_std=model_std,
            return_diagnostics=return_diagnostics,
            _stacklevel=_stacklevel + 1,
        )

    def fit_multi(
        self,
        camera_matrices: Sequence[torch.Tensor],
        image_points: Sequence[torch.Tensor],
        vertex_ids: Sequence[torch.Tensor],
        base_shapes: Optional[Sequence[Optional[torch.Tensor]]] = None,
        regularization: float = 3.0,
        num_coefficients_to_fit: Optional[int] = None,
        detector_std: Optional[float] = None,
        model_std: Optional[float] = None,
        return_diagnostics: bool = False,
        _stacklevel: int = 1,
    ):
        """
        Fits one shape jointly to the landmarks of several images.

        Parameters:
            camera_matrices: Affine camera matrix of each image, each shaped (3, 4).
            image_points: 2D landmarks of each image, each shaped (num_landmarks_i, 2).
            vertex_ids: Model vertex indices of each image, parallel to `image_points`.
            base_shapes: Shape the fit starts from for each image, the mean where None.
            regularization: Weight of the prior towards the mean, multiplied by the number of
                images.
            num_coefficients_to_fit: Number of leading coefficients to fit, all by default.
            detector_std: Standard deviation of the landmarks in pixels, sqrt(3) by default.
            model_std: Standard deviation of the model vertices projected to 2D, in pixels.
            return_diagnostics: Whether to return a dictionary with diagnostics.

        Returns:
            The coefficients as a tensor, or the same dictionary as
            :meth:`morphfit.np.ShapeFitter.fit_multi` if `return_diagnostics` is True.
        """
        config = morphfit_common.FittingConfig(
            regularization=regularization,
            num_coefficients_to_fit=num_coefficients_to_fit,
            detector_std=detector_std,
            model_std=model_std,
        )
        return self._fit(
            camera_matrices,
            image_points,
            vertex_ids,
            config,
            base_shapes,
            return_diagnostics,
            stacklevel=_stacklevel + 2,
        )

    def fit_with_config(
        self,
        camera_matrices: Sequence[torch.Tensor],
        image_points: Sequence[torch.Tensor],
        vertex_ids: Sequence[torch.Tensor],
        config: morphfit_common.FittingConfig,
        base_shapes: Optional[Sequence[Optional[torch.Tensor]]] = None,
        return_diagnostics: bool = False,
        _stacklevel: int = 1,
    ):
        return self._fit(
            camera_matrices,
            image_points,
            vertex_ids,
            config,
            base_shapes,
            return_diagnostics,
            stacklevel=_stacklevel + 2,
        )

    def _fit(
        self,
        camera_matrices,
        image_points,
        vertex_ids,
        config,
        base_shapes,
        return_diagnostics,
        stacklevel,
    ):
        correspondences, num_landmarks = morphfit_common.validate_correspondences(
            camera_matrices,
            image_points,
            vertex_ids,
            base_shapes,
            self.shape_model.num_vertices,
            self.shape_model.get_mean(),
        )
        num_coeffs = config.resolve_num_coefficients(self.shape_model.num_principal_components)
        basis = self.shape_model.get_rescaled_pca_basis()
        dtype = basis.dtype
        device = basis.device

        V_hat_h = select_basis_rows(basis, correspondences, num_coeffs)
        P = assemble_projection_matrix(correspondences, dtype, device)
        y, v_bar = assemble_target_vectors(correspondences, dtype, device)

        A = torch.sparse.mm(P, V_hat_h)
        b = torch.sparse.mm(P, v_bar.unsqueeze(-1)).squeeze(-1) - y
        omega = torch.full(
            (3 * num_landmarks,), 1.0 / config.sigma_squared, dtype=dtype, device=device
        )
        lambda_eff = config.effective_regularization(len(correspondences))
        l2_regularizer = torch.full((num_coeffs,), lambda_eff, dtype=dtype, device=device)

        coeffs, info = lstsq(A, -b, omega, l2_regularizer=l2_regularizer, return_info=True)
        if info['rank'] < num_coeffs:
            warnings.warn(
                f'The shape fitting system is rank deficient (rank {info["rank"]} for '
                f'{num_coeffs} coefficients, {num_landmarks} landmarks). Use more landmarks, '
                'fewer coefficients or a positive regularization.',
                morphfit_common.DegenerateSystemWarning,
                stacklevel=stacklevel,
            )

        if not return_diagnostics:
            return coeffs

        residual_2d = torch.reshape(A @ coeffs + b, (num_landmarks, 3))[:, :2]
        return dict(
            coefficients=coeffs,
            reprojection_rmse=float(torch.sqrt(torch.mean(torch.sum(residual_2d**2, dim=1)))),
            regularization=lambda_eff,
            num_landmarks=num_landmarks,
            **info,
        )


def select_basis_rows(
    rescaled_basis: torch.Tensor,
    correspondences: Sequence[morphfit_common.Correspondence],
    num_coeffs: int,
) -> torch.Tensor:
    device = rescaled_basis.device
    all_vertex_ids = torch.cat(
        [torch.as_tensor(c.vertex_ids, device=device) for c in correspondences]
    )
    row_indices = 3 * all_vertex_ids.unsqueeze(-1) + torch.arange(3, device=device)
    V_hat_h = torch.zeros(
        (all_vertex_ids.shape[0], 4, num_coeffs), dtype=rescaled_basis.dtype, device=device
    )
    V_hat_h[:, :3] = rescaled_basis[:, :num_coeffs][row_indices]
    return torch.reshape(V_hat_h, (-1, num_coeffs))


def assemble_projection_matrix(
    correspondences: Sequence[morphfit_common.Correspondence],
    dtype: torch.dtype,
    device: torch.device,
) -> torch.Tensor:
    indices, values = [], []
    i_landmark = 0
    for c in correspondences:
        n = c.num_landmarks
        landmark_indices = torch.arange(i_landmark, i_landmark + n, device=device)
        block_rows = (
            3 * landmark_indices[:, None, None] + torch.arange(3, device=device)[:, None]
        )
        block_cols = 4 * landmark_indices[:, None, None] + torch.arange(4, device=device)
        indices.append(
            torch.stack(
                [block_rows.expand(n, 3, 4).reshape(-1), block_cols.expand(n, 3, 4).reshape(-1)]
            )
        )
        camera_matrix = torch.as_tensor(c.camera_matrix, dtype=dtype, device=device)
        values.append(camera_matrix.expand(n, 3, 4).reshape(-1))
        i_landmark += n

    return torch.sparse_coo_tensor(
        torch.cat(indices, dim=1),
        torch.cat(values),
        size=(3 * i_landmark, 4 * i_landmark),
    ).coalesce()


def assemble_target_vectors(
    correspondences: Sequence[morphfit_common.Correspondence],
    dtype: torch.dtype,
    device: torch.device,
) -> tuple[torch.Tensor, torch.Tensor]:
    ys, v_bars = [], []
    for c in correspondences:
        points = torch.as_tensor(c.image_points, dtype=dtype, device=device)
        ys.append(torch.nn.functional.pad(points, (0, 1), value=1.0))

        base_shape = torch.as_tensor(c.base_shape, dtype=dtype, device=device)
        vertex_ids = torch.as_tensor(c.vertex_ids, device=device)
        base_points = torch.reshape(base_shape, (-1, 3))[vertex_ids]
        v_bars.append(torch.nn.functional.pad(base_points, (0, 1), value=1.0))

    return torch.cat(ys).reshape(-1), torch.cat(v_bars).reshape(-1)
