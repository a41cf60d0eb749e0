from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Optional, Sequence

import numpy as np


def _set_module_for_docs(module_name, module_globals, all_names):
    """Override __module__ on exported objects so Sphinx resolves package-level names.

    Without this, e.g. ``ShapeFitter`` imported from ``morphfit.np.shapefitter`` would not
    link to ``morphfit.np.ShapeFitter``. The original __module__ is saved as
    ``_module_original_`` so that ``inspect.getsourcefile`` can still find the real source
    file.
    """
    for name in all_names:
        obj = module_globals.get(name)
        if obj is not None and callable(obj):
            obj._module_original_ = obj.__module__
            obj.__module__ = module_name


class ShapeMismatch(ValueError):
    """The per-image inputs disagree in their number or structure."""


class DimensionMismatch(ValueError):
    """An array does not have the length implied by the shape model."""


class DegenerateSystemWarning(RuntimeWarning):
    """The fitting system is rank deficient, the solution is only a basic solution."""


@dataclass
class ShapeModelData:
    """Arrays of a PCA shape model.

    This dataclass holds the arrays needed to instantiate a shape model in any backend
    (NumPy, PyTorch).
    """

    mean: np.ndarray
    """Mean shape, shape (3 * num_vertices,), laid out as x0, y0, z0, x1, ..."""

    rescaled_basis: np.ndarray
    """Eigenvectors scaled by the square root of their eigenvalues, shape
    (3 * num_vertices, num_principal_components)."""

    orthonormal_basis: np.ndarray
    """Eigenvectors, shape (3 * num_vertices, num_principal_components)."""

    eigenvalues: np.ndarray
    """PCA variances, shape (num_principal_components,)."""

    triangles: np.ndarray
    """Triangle vertex indices, shape (num_triangles, 3)."""

    num_vertices: int
    """Number of vertices of the model mesh."""

    num_principal_components: int
    """Number of columns of the basis."""


def initialize(
    mean,
    orthonormal_basis=None,
    eigenvalues=None,
    rescaled_basis=None,
    triangles=None,
    num_coefficients=None,
):
    mean = np.asarray(mean, dtype=np.float64).reshape(-1)
    if mean.shape[0] % 3 != 0:
        raise DimensionMismatch(
            f'The mean must hold 3 coordinates per vertex, got length {mean.shape[0]}.'
        )

    if rescaled_basis is not None:
        rescaled_basis = np.asarray(rescaled_basis, dtype=np.float64)
        if rescaled_basis.ndim != 2:
            raise DimensionMismatch(
                f'The basis must be a matrix, got shape {rescaled_basis.shape}.'
            )
        if eigenvalues is None:
            eigenvalues = np.sum(np.square(rescaled_basis), axis=0)
        eigenvalues = _check_eigenvalues(eigenvalues, rescaled_basis.shape[1])
        if orthonormal_basis is None:
            norms = np.sqrt(eigenvalues)
            orthonormal_basis = rescaled_basis / np.where(norms > 0, norms, 1)
    elif orthonormal_basis is None or eigenvalues is None:
        raise ValueError(
            'Either rescaled_basis or both orthonormal_basis and eigenvalues must be given.'
        )

    orthonormal_basis = np.asarray(orthonormal_basis, dtype=np.float64)
    if orthonormal_basis.ndim != 2:
        raise DimensionMismatch(
            f'The basis must be a matrix, got shape {orthonormal_basis.shape}.'
        )
    eigenvalues = _check_eigenvalues(eigenvalues, orthonormal_basis.shape[1])
    if rescaled_basis is None:
        rescaled_basis = orthonormal_basis * np.sqrt(eigenvalues)

    for basis in (rescaled_basis, orthonormal_basis):
        if basis.shape != (mean.shape[0], eigenvalues.shape[0]):
            raise DimensionMismatch(
                f'The basis has shape {basis.shape}, expected '
                f'({mean.shape[0]}, {eigenvalues.shape[0]}) to match the mean.'
            )

    if triangles is None:
        triangles = np.zeros((0, 3), np.int64)
    else:
        triangles = np.asarray(triangles, dtype=np.int64).reshape(-1, 3)

    num_principal_components = eigenvalues.shape[0]
    if num_coefficients is not None:
        if not 1 <= num_coefficients <= num_principal_components:
            raise ValueError(
                f'num_coefficients must be between 1 and {num_principal_components}, '
                f'got {num_coefficients}.'
            )
        num_principal_components = num_coefficients

    return ShapeModelData(
        mean=mean,
        rescaled_basis=rescaled_basis[:, :num_principal_components],
        orthonormal_basis=orthonormal_basis[:, :num_principal_components],
        eigenvalues=eigenvalues[:num_principal_components],
        triangles=triangles,
        num_vertices=mean.shape[0] // 3,
        num_principal_components=num_principal_components,
    )


def _check_eigenvalues(eigenvalues, num_columns):
    eigenvalues = np.asarray(eigenvalues, dtype=np.float64).reshape(-1)
    if eigenvalues.shape[0] != num_columns:
        raise DimensionMismatch(
            f'Got {eigenvalues.shape[0]} eigenvalues for a basis with {num_columns} columns.'
        )
    if np.any(eigenvalues < 0):
        raise DimensionMismatch('The eigenvalues must be non-negative.')
    return eigenvalues


@dataclass
class FittingConfig:
    """Options of the linear shape fit.

    The optional fields are None when the caller wants the default, which is resolved
    against the model at fitting time.
    """

    regularization: float = 3.0
    """Weight of the prior towards the mean (lambda). It is multiplied by the number of
    images before solving."""

    num_coefficients_to_fit: Optional[int] = None
    """How many leading principal components to fit. None fits all of them."""

    detector_std: Optional[float] = None
    """Standard deviation of the 2D points in pixels. None means sqrt(3)."""

    model_std: Optional[float] = None
    """Standard deviation of the model vertices projected to 2D, in pixels. None means
    0."""

    def __post_init__(self):
        if self.regularization < 0:
            raise ValueError(f'regularization must be non-negative, got {self.regularization}.')
        if self.sigma_squared <= 0:
            raise ValueError(
                'The combined detector and model variance must be positive, got '
                f'detector_std={self.detector_std}, model_std={self.model_std}.'
            )

    @property
    def sigma_squared(self) -> float:
        detector_std = math.sqrt(3.0) if self.detector_std is None else self.detector_std
        model_std = 0.0 if self.model_std is None else self.model_std
        return detector_std**2 + model_std**2

    def effective_regularization(self, num_images: int) -> float:
        return self.regularization * num_images

    def resolve_num_coefficients(self, num_principal_components: int) -> int:
        if self.num_coefficients_to_fit is None:
            return num_principal_components
        if not 1 <= self.num_coefficients_to_fit <= num_principal_components:
            raise ValueError(
                f'num_coefficients_to_fit must be between 1 and {num_principal_components}, '
                f'got {self.num_coefficients_to_fit}.'
            )
        return self.num_coefficients_to_fit


@dataclass(frozen=True)
class Correspondence:
    """Validated inputs of one image.

    The arrays are NumPy arrays, except ``base_shape``, which is whatever the backend
    model's mean is when the caller did not give one.
    """

    camera_matrix: np.ndarray
    """Affine camera, shape (3, 4)."""

    image_points: np.ndarray
    """Observed 2D points, shape (num_landmarks, 2)."""

    vertex_ids: np.ndarray
    """Model vertex of each point, shape (num_landmarks,)."""

    base_shape: Any
    """Shape the fit starts from, shape (3 * num_vertices,)."""

    @property
    def num_landmarks(self) -> int:
        return self.vertex_ids.shape[0]


def validate_correspondences(
    camera_matrices: Sequence,
    image_points: Sequence,
    vertex_ids: Sequence,
    base_shapes: Optional[Sequence],
    num_vertices: int,
    mean: Any,
) -> tuple[list[Correspondence], int]:
    """Checks the structure of the per-image inputs and resolves the base shapes.

    Parameters:
        camera_matrices: One affine camera matrix (3, 4) per image.
        image_points: One sequence of 2D points per image.
        vertex_ids: One sequence of model vertex indices per image, parallel to the points.
        base_shapes: None, or one entry per image, where an entry of None stands for the
            model mean.
        num_vertices: Number of vertices of the shape model.
        mean: The model mean, used for the missing base shapes.

    Returns:
        A tuple containing
            - **correspondences** -- A new :class:`Correspondence` per image.
            - **total_num_landmarks** -- Number of landmarks summed over all images.

    Raises:
        ShapeMismatch: If the number of images or of landmarks disagree, an image has no
            landmarks, an input is not a regular array, a camera is not 3x4 or a vertex
            index is out of range.
        DimensionMismatch: If a base shape's length is not 3 * num_vertices.
    """
    num_images = len(camera_matrices)
    if num_images == 0:
        raise ShapeMismatch('At least one image is needed for fitting.')
    if len(image_points) != num_images or len(vertex_ids) != num_images:
        raise ShapeMismatch(
            f'Got {num_images} camera matrices, {len(image_points)} point lists and '
            f'{len(vertex_ids)} vertex id lists, their numbers must be equal.'
        )
    if base_shapes is None:
        base_shapes = [None] * num_images
    elif len(base_shapes) != num_images:
        raise ShapeMismatch(
            f'Got {len(base_shapes)} base shapes for {num_images} images.'
        )

    correspondences = []
    for i_image in range(num_images):
        camera_matrix = _as_numpy(camera_matrices[i_image], f'camera matrix of image {i_image}')
        if camera_matrix.shape != (3, 4):
            raise ShapeMismatch(
                f'The camera matrix of image {i_image} has shape {camera_matrix.shape}, '
                'expected (3, 4).'
            )

        points = _as_numpy(image_points[i_image], f'points of image {i_image}')
        if points.size == 0:
            raise ShapeMismatch(f'Image {i_image} has no landmarks.')
        if points.ndim != 2 or points.shape[1] != 2:
            raise ShapeMismatch(
                f'The points of image {i_image} have shape {points.shape}, expected (N, 2).'
            )

        ids = _as_numpy(vertex_ids[i_image], f'vertex ids of image {i_image}').reshape(-1)
        if ids.shape[0] != points.shape[0]:
            raise ShapeMismatch(
                f'Image {i_image} has {points.shape[0]} points but {ids.shape[0]} vertex ids.'
            )
        if not np.issubdtype(ids.dtype, np.integer):
            raise ShapeMismatch(f'The vertex ids of image {i_image} must be integers.')
        if np.any(ids < 0) or np.any(ids >= num_vertices):
            raise ShapeMismatch(
                f'The vertex ids of image {i_image} must be in [0, {num_vertices}), '
                f'got range [{ids.min()}, {ids.max()}].'
            )

        base_shape = base_shapes[i_image]
        if base_shape is None:
            base_shape = mean
        else:
            base_shape = _as_numpy(base_shape).astype(np.float64)
            if base_shape.shape != (3 * num_vertices,):
                raise DimensionMismatch(
                    f'The base shape of image {i_image} has shape {base_shape.shape}, '
                    f'expected ({3 * num_vertices},).'
                )

        correspondences.append(
            Correspondence(
                camera_matrix=camera_matrix.astype(np.float64),
                image_points=points.astype(np.float64),
                vertex_ids=ids.astype(np.int64),
                base_shape=base_shape,
            )
        )

    total_num_landmarks = sum(c.num_landmarks for c in correspondences)
    return correspondences, total_num_landmarks


def _as_numpy(x, what='input'):
    # Tensors are moved to host memory, everything else goes through np.asarray
    if hasattr(x, 'detach'):
        x = x.detach().cpu().numpy()
    try:
        return np.asarray(x)
    except ValueError as e:
        raise ShapeMismatch(f'Could not convert the {what} to an array: {e}') from e
