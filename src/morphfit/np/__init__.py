"""NumPy implementation of the shape model and the linear shape fitter."""

from __future__ import annotations

from .shapemodel import ShapeModel
from .shapefitter import ShapeFitter
from .lstsq import lstsq
from morphfit.common import _set_module_for_docs

__all__ = [
    'ShapeModel',
    'ShapeFitter',
    'lstsq',
    'fit_shape_to_landmarks_linear',
    'fit_shape_to_landmarks_linear_multi',
]


def fit_shape_to_landmarks_linear_multi(shape_model, camera_matrices, image_points, vertex_ids,
                                        **kwargs):
    """Fits the shape to landmarks of several images. See :meth:`ShapeFitter.fit_multi`."""
    return ShapeFitter(shape_model).fit_multi(
        camera_matrices, image_points, vertex_ids, _stacklevel=2, **kwargs
    )


def fit_shape_to_landmarks_linear(shape_model, camera_matrix, image_points, vertex_ids, **kwargs):
    """Fits the shape to landmarks of one image. See :meth:`ShapeFitter.fit`."""
    return ShapeFitter(shape_model).fit(
        camera_matrix, image_points, vertex_ids, _stacklevel=2, **kwargs
    )


_set_module_for_docs(__name__, globals(), __all__)
