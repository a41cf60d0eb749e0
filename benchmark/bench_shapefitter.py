"""Benchmark linear shape fitting: NumPy vs PyTorch."""

import numpy as np
import time


def benchmark(func, args, kwargs, n_warmup=3, n_iter=50):
    """Run benchmark and return mean time in ms."""
    # Warmup
    for _ in range(n_warmup):
        func(*args, **kwargs)

    # Timed runs
    start = time.perf_counter()
    for _ in range(n_iter):
        func(*args, **kwargs)
    elapsed = time.perf_counter() - start
    return elapsed / n_iter * 1000  # ms


def make_model_arrays(num_vertices, num_components, rng):
    orthonormal_basis, _ = np.linalg.qr(rng.randn(num_vertices * 3, num_components))
    return dict(
        mean=rng.uniform(-50, 50, num_vertices * 3),
        orthonormal_basis=orthonormal_basis,
        eigenvalues=np.linspace(40.0, 1.0, num_components) ** 2,
    )


def make_inputs(num_vertices, num_images, num_landmarks, rng):
    cameras, points, vertex_ids = [], [], []
    for _ in range(num_images):
        camera = np.zeros((3, 4))
        camera[:2, :3] = rng.randn(2, 3)
        camera[:2, 3] = rng.uniform(0, 500, 2)
        camera[2, 3] = 1.0
        cameras.append(camera)
        points.append(rng.uniform(0, 500, (num_landmarks, 2)))
        vertex_ids.append(rng.choice(num_vertices, num_landmarks, replace=False))
    return cameras, points, vertex_ids


def main():
    import morphfit.np as morphfit_np

    try:
        import torch
        import morphfit.pt as morphfit_pt

        has_torch = True
    except ImportError as e:
        print(f'PyTorch not available: {e}')
        has_torch = False

    print('Benchmarking ShapeFitter.fit_multi')
    print('=' * 70)

    rng = np.random.RandomState(0)
    num_vertices = 3448
    for num_components in [63, 199]:
        print(f'\nPrincipal components: {num_components}')

        arrays = make_model_arrays(num_vertices, num_components, rng)
        fitter_np = morphfit_np.ShapeFitter(morphfit_np.ShapeModel(**arrays))
        if has_torch:
            fitter_pt = morphfit_pt.ShapeFitter(
                morphfit_pt.ShapeModel(**arrays, dtype=torch.float64)
            )

        for num_images in [1, 4, 16]:
            for num_landmarks in [68, 500]:
                cameras, points, vertex_ids = make_inputs(
                    num_vertices, num_images, num_landmarks, rng
                )
                args = (cameras, points, vertex_ids)
                kwargs = dict(regularization=3.0)

                time_np = benchmark(fitter_np.fit_multi, args, kwargs)
                print(f'\n    images={num_images:2d} landmarks={num_landmarks:3d}')
                print(f'      NumPy:   {time_np:8.3f} ms')

                if has_torch:
                    time_pt = benchmark(fitter_pt.fit_multi, args, kwargs)
                    print(
                        f'      PyTorch: {time_pt:8.3f} ms  {time_np/time_pt:5.1f}x vs NumPy'
                    )

                    # Verify correctness
                    result_np = fitter_np.fit_multi(*args, **kwargs)
                    result_pt = fitter_pt.fit_multi(*args, **kwargs).numpy()
                    if not np.allclose(result_np, result_pt, atol=1e-6):
                        diff = np.abs(result_np - result_pt).max()
                        print('      WARNING: PyTorch coefficients differ!')
                        print(f'               Max diff: {diff}')


if __name__ == '__main__':
    main()
