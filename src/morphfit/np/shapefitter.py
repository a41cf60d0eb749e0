from __future__ import annotations

import warnings
from typing import TYPE_CHECKING, Optional, Sequence

import numpy as np
import scipy.sparse

from .. import common as morphfit_common
from .lstsq import lstsq

if TYPE_CHECKING:
    import morphfit.np


class ShapeFitter:
    """
    Fits the shape coefficients of a PCA shape model to 2D landmarks seen by known affine
    cameras, as proposed in Aldrian & Smith, "Inverse Rendering of Faces with a 3D Morphable
    Model", PAMI 2013.

    It is a linear, closed-form maximum likelihood fit with a prior towards the mean
    (Tikhonov regularization). The returned coefficients refer to the rescaled basis, so they
    are approximately standard normal.

    Parameters:
        shape_model: The shape model whose coefficients are estimated. It is only read.
    """

    def __init__(self, shape_model: 'morphfit.np.ShapeModel'):
        self.shape_model = shape_model

    def fit(
        self,
        camera_matrix: np.ndarray,
        image_points: np.ndarray,
        vertex_ids: np.ndarray,
        base_shape: Optional[np.ndarray] = None,
        regularization: float = 3.0,
        num_coefficients_to_fit: Optional[int] = None,
        detector_std: Optional[float] = None,
        model_std: Optional[float] = None,
        return_diagnostics: bool = False,
        _stacklevel: int = 1,
    ):
        """
        Fits the shape to the landmarks of a single image. Same as :meth:`fit_multi` with
        one-element lists.

        Parameters:
            camera_matrix: Affine camera matrix from model to image space, shape (3, 4).
            image_points: 2D landmarks, shape (num_landmarks, 2).
            vertex_ids: Model vertex index of each landmark, shape (num_landmarks,).
            base_shape: Shape the fit starts from. The model mean by default.
            regularization: Weight of the prior towards the mean.
            num_coefficients_to_fit: Number of leading coefficients to fit, all by default.
            detector_std: Standard deviation of the landmarks in pixels, sqrt(3) by default.
            model_std: Standard deviation of the model vertices projected to 2D, in pixels.
            return_diagnostics: Whether to return a dictionary with diagnostics.

        Returns:
            The coefficients, see :meth:`fit_multi`.
        """
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
        camera_matrices: Sequence[np.ndarray],
        image_points: Sequence[np.ndarray],
        vertex_ids: Sequence[np.ndarray],
        base_shapes: Optional[Sequence[Optional[np.ndarray]]] = None,
        regularization: float = 3.0,
        num_coefficients_to_fit: Optional[int] = None,
        detector_std: Optional[float] = None,
        model_std: Optional[float] = None,
        return_diagnostics: bool = False,
        _stacklevel: int = 1,
    ):
        """
        Fits one shape jointly to the landmarks of several images, e.g. multiple views or
        video frames of the same identity.

        Parameters:
            camera_matrices: Affine camera matrix of each image, each shaped (3, 4).
            image_points: 2D landmarks of each image, each shaped (num_landmarks_i, 2).
            vertex_ids: Model vertex indices of each image, parallel to `image_points`.
            base_shapes: Shape the fit starts from for each image. None entries (or None
                for the whole list) stand for the model mean.
            regularization: Weight of the prior towards the mean. It gets multiplied by the
                number of images, so that the prior keeps its influence.
            num_coefficients_to_fit: Number of leading coefficients to fit, all by default.
                Fewer coefficients are jointly re-optimized over the smaller basis, the result
                is not a truncation of the full fit.
            detector_std: Standard deviation of the landmarks in pixels, sqrt(3) by default.
            model_std: Standard deviation of the model vertices projected to 2D, in pixels,
                0 by default.
            return_diagnostics: Whether to return a dictionary with diagnostics instead of
                just the coefficients.
            _stacklevel: Frames between the caller and this method, used to attribute the
                rank deficiency warning to the caller's line.

        Returns:
            The coefficients, shaped (num_coefficients_to_fit,). If `return_diagnostics` is
            True, a dictionary containing
                - **coefficients** -- The coefficients.
                - **rank** -- Numerical rank of the regularized normal matrix.
                - **data_rank** -- Numerical rank of the normal matrix without the prior.
                - **condition_number** -- Condition estimate of the regularized normal matrix.
                - **residual_norm** -- Residual norm of the normal equations.
                - **reprojection_rmse** -- Root mean square 2D distance between the projected
                    fitted shape and the landmarks.
                - **regularization** -- The regularization weight used after scaling.
                - **num_landmarks** -- Total number of landmarks.

        Raises:
            ShapeMismatch: If the per-image inputs do not match up.
            DimensionMismatch: If a base shape has the wrong length.
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
        camera_matrices: Sequence[np.ndarray],
        image_points: Sequence[np.ndarray],
        vertex_ids: Sequence[np.ndarray],
        config: morphfit_common.FittingConfig,
        base_shapes: Optional[Sequence[Optional[np.ndarray]]] = None,
        return_diagnostics: bool = False,
        _stacklevel: int = 1,
    ):
        """Same as :meth:`fit_multi`, with the options given as a
        :class:`~morphfit.FittingConfig`."""
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

        V_hat_h = select_basis_rows(
            self.shape_model.get_rescaled_pca_basis(), correspondences, num_coeffs
        )
        P = assemble_projection_matrix(correspondences)
        y, v_bar = assemble_target_vectors(correspondences)

        # Bring into standard regularized quadratic form with diagonal weights Omega
        A = P @ V_hat_h
        b = P @ v_bar - y
        omega = np.full(3 * num_landmarks, 1.0 / config.sigma_squared)
        lambda_eff = config.effective_regularization(len(correspondences))

        coeffs, info = lstsq(
            A, -b, omega, l2_regularizer=np.full(num_coeffs, lambda_eff), return_info=True
        )
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

        residual_2d = np.reshape(A @ coeffs + b, (num_landmarks, 3))[:, :2]
        return dict(
            coefficients=coeffs,
            reprojection_rmse=float(np.sqrt(np.mean(np.sum(np.square(residual_2d), axis=1)))),
            regularization=lambda_eff,
            num_landmarks=num_landmarks,
            **info,
        )


def select_basis_rows(
    rescaled_basis: np.ndarray,
    correspondences: Sequence[morphfit_common.Correspondence],
    num_coeffs: int,
) -> np.ndarray:
    """
    Stacks the basis rows of the landmark vertices in landmark order, with a row of zeros
    inserted after every third row.

    Returns:
        The homogeneous basis, shape (4 * total_num_landmarks, num_coeffs).
    """
    all_vertex_ids = np.concatenate([c.vertex_ids for c in correspondences])
    row_indices = 3 * all_vertex_ids[:, np.newaxis] + np.arange(3)
    V_hat_h = np.zeros((all_vertex_ids.shape[0], 4, num_coeffs), dtype=rescaled_basis.dtype)
    V_hat_h[:, :3] = rescaled_basis[row_indices, :num_coeffs]
    return np.reshape(V_hat_h, (-1, num_coeffs))


def assemble_projection_matrix(
    correspondences: Sequence[morphfit_common.Correspondence],
) -> scipy.sparse.csr_matrix:
    """
    Forms the block diagonal matrix that has the camera matrix of the corresponding image at
    the block of each landmark.

    Returns:
        Sparse matrix, shape (3 * total_num_landmarks, 4 * total_num_landmarks).
    """
    rows, cols, values = [], [], []
    i_landmark = 0
    for c in correspondences:
        landmark_indices = np.arange(i_landmark, i_landmark + c.num_landmarks)
        block_rows = 3 * landmark_indices[:, np.newaxis, np.newaxis] + np.arange(3)[:, np.newaxis]
        block_cols = 4 * landmark_indices[:, np.newaxis, np.newaxis] + np.arange(4)
        rows.append(np.broadcast_to(block_rows, (c.num_landmarks, 3, 4)).reshape(-1))
        cols.append(np.broadcast_to(block_cols, (c.num_landmarks, 3, 4)).reshape(-1))
        values.append(np.broadcast_to(c.camera_matrix, (c.num_landmarks, 3, 4)).reshape(-1))
        i_landmark += c.num_landmarks

    P = scipy.sparse.coo_matrix(
        (np.concatenate(values), (np.concatenate(rows), np.concatenate(cols))),
        shape=(3 * i_landmark, 4 * i_landmark),
    )
    return P.tocsr()


def assemble_target_vectors(
    correspondences: Sequence[morphfit_common.Correspondence],
) -> tuple[np.ndarray, np.ndarray]:
    """
    Stacks the landmarks and the base shape at the landmark vertices in homogeneous
    coordinates.

    Returns:
        A tuple containing
            - **y** -- The landmarks as (x, y, 1) triplets, shape (3 * total_num_landmarks,).
            - **v_bar** -- The base shape points as (x, y, z, 1) quadruplets, shape
                (4 * total_num_landmarks,).
    """
    y = np.concatenate(
        [np.pad(c.image_points, ((0, 0), (0, 1)), constant_values=1) for c in correspondences]
    )
    v_bar = np.concatenate(
        [
            np.pad(
                np.reshape(np.asarray(c.base_shape, np.float64), (-1, 3))[c.vertex_ids],
                ((0, 0), (0, 1)),
                constant_values=1,
            )
            for c in correspondences
        ]
    )
    return np.reshape(y, (-1,)), np.reshape(v_bar, (-1,))
