"""Shared pytest fixtures for morphfit tests.

The cross-backend tests run once per importable backend. Without the `pytorch` extra only
the NumPy backend is collected and the PyTorch-specific tests are skipped, so a full run
needs `pip install -e .[test,pytorch]`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

import numpy as np
import pytest


@dataclass
class Backend:
    """Abstraction for testing across different backends."""

    name: str
    module: Any
    to_tensor: Callable[[np.ndarray], Any]
    to_numpy: Callable[[Any], np.ndarray]
    make_model: Callable[..., Any]


def _make_np_backend() -> Backend:
    """Create NumPy backend."""
    import morphfit.np as module

    return Backend(
        name='np',
        module=module,
        to_tensor=lambda x: x,
        to_numpy=lambda x: np.asarray(x),
        make_model=lambda **kwargs: module.ShapeModel(**kwargs),
    )


def _make_pt_backend() -> Optional[Backend]:
    """Create PyTorch backend if available. Runs on the CPU in double precision."""
    try:
        import torch

        import morphfit.pt as module
    except ImportError:
        return None

    return Backend(
        name='pt',
        module=module,
        to_tensor=lambda x: torch.from_numpy(np.asarray(x)),
        to_numpy=lambda x: x.detach().cpu().numpy(),
        make_model=lambda **kwargs: module.ShapeModel(dtype=torch.float64, **kwargs),
    )


_BACKEND_FACTORIES = {
    'np': _make_np_backend,
    'pt': _make_pt_backend,
}


def _get_available_backends() -> list[str]:
    """Get list of available backend names."""
    # NumPy is always available (dependency)
    available = ['np']

    try:
        import torch  # noqa: F401

        available.append('pt')
    except ImportError:
        pass

    return available


@pytest.fixture(params=_get_available_backends(), ids=lambda x: x)
def backend(request) -> Backend:
    """Fixture providing backend abstraction for cross-backend tests."""
    result = _BACKEND_FACTORIES[request.param]()
    if result is None:
        pytest.skip(f'{request.param} backend not available')
    return result


def make_random_model_arrays(num_vertices=20, num_components=5, seed=0):
    """Random mean and rescaled basis, with decreasing variances like a real PCA model."""
    rng = np.random.RandomState(seed)
    mean = rng.uniform(-50, 50, (num_vertices * 3,))
    orthonormal_basis, _ = np.linalg.qr(rng.randn(num_vertices * 3, num_components))
    eigenvalues = np.linspace(40.0, 5.0, num_components) ** 2
    return dict(mean=mean, orthonormal_basis=orthonormal_basis, eigenvalues=eigenvalues)


def make_affine_camera(scale=1.0, rotation=None, tx=0.0, ty=0.0):
    """Scaled orthographic camera as a 3x4 affine matrix."""
    if rotation is None:
        rotation = np.eye(3)
    camera = np.zeros((3, 4))
    camera[:2, :3] = scale * rotation[:2]
    camera[:2, 3] = [tx, ty]
    camera[2, 3] = 1.0
    return camera


def rotation_about_y(angle):
    c, s = np.cos(angle), np.sin(angle)
    return np.array([[c, 0, s], [0, 1, 0], [-s, 0, c]])


def project(camera, shape, vertex_ids):
    """Projects the given vertices of a flat shape vector to 2D."""
    points = np.reshape(shape, (-1, 3))[vertex_ids]
    points_h = np.concatenate([points, np.ones((len(points), 1))], axis=1)
    return (points_h @ camera.T)[:, :2]


@pytest.fixture
def model_arrays():
    return make_random_model_arrays()
