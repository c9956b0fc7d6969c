from setuptools import setup, find_packages

setup(
    name="tube_centerlines",
    version="0.1",
    packages=find_packages(exclude=["tests"]),
    py_modules=["run_centerline_extraction"],
    install_requires=[
        'numpy',
        'SimpleITK',
        'scipy',
        'tqdm',
        'networkx',
    ],
    extras_require={
        'test': ['pytest'],
    },
)
