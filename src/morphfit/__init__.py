"""MorphFit fits the shape of 3D morphable models to 2D landmarks in closed form.

Main submodules:
- :mod:`morphfit.np` - NumPy backend
- :mod:`morphfit.pt` - PyTorch backend
"""

from __future__ import annotations

from .common import (
    Correspondence,
    DegenerateSystemWarning,
    DimensionMismatch,
    FittingConfig,
    ShapeMismatch,
    ShapeModelData,
    initialize,
    validate_correspondences,
    _set_module_for_docs,
)

try:
    from ._version import version as __version__
except ImportError:
    __version__ = '0.0.0'

__all__ = [
    'Correspondence',
    'DegenerateSystemWarning',
    'DimensionMismatch',
    'FittingConfig',
    'ShapeMismatch',
    'ShapeModelData',
    'initialize',
    'validate_correspondences',
    '__version__',
]
_set_module_for_docs(__name__, globals(), __all__)
