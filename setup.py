from setuptools import find_packages, setup

setup(
    name='morphfit',
    version='0.1.0',
    package_dir={'': 'src'},
    packages=find_packages('src'),
    scripts=[],
    description='Closed-form linear shape fitting of 3D morphable models to 2D landmarks, '
    'with NumPy and PyTorch backends',
    python_requires='>=3.9',
    install_requires=[
        'numpy',
        'scipy',
    ],
    extras_require={
        'pytorch': ['torch'],
        'test': ['pytest'],
        'docs': ['sphinx', 'sphinx-book-theme'],
    },
)
