from setuptools import find_packages, setup


setup(
    name='pmatrix',
    version='0.1.0',
    description='Block cyclic distributed dense matrices over MPI.',
    license='BSD',
    packages=find_packages(exclude=['tests']),
    scripts=['bin/ownership_map.py', 'bin/diag_timing.py'],
    install_requires=['numpy', 'scipy', 'mpi4py'],
    extras_require={
        'test': ['pytest'],
    },
)
