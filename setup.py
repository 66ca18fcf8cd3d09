import setuptools

setuptools.setup(
    name='hmcbridge',
    version='0.1.0',
    description=(
        'Step-wise sampler interface to an adaptive Hamiltonian Monte Carlo '
        'engine'
    ),
    long_description=(
        'hmcbridge is a Python package exposing an adaptive Hamiltonian Monte '
        'Carlo engine, with a complete windowed warm up calibrating the '
        'integrator step size and metric, as a step-wise sampler which '
        'advances a Markov chain one transition at a time on models with '
        'constrained variables.'
    ),
    packages=['hmcbridge'],
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Programming Language :: Python :: 3',
        'License :: OSI Approved :: MIT License',
        'Operating System :: OS Independent',
        'Topic :: Scientific/Engineering',
        'Intended Audience :: Science/Research',
        'Intended Audience :: Developers'
    ],
    keywords='inference sampling MCMC HMC NUTS',
    license='MIT',
    install_requires=['numpy>=1.17', 'scipy>=1.1'],
    python_requires='>=3.7',
    extras_require={
        'autodiff': [
            'autograd>=1.3', 'multiprocess>=0.70', 'threadpoolctl>=2.0'],
        'jax': ['jax>=0.4'],
        'test': ['pytest>=6.0', 'autograd>=1.3', 'multiprocess>=0.70'],
    }
)
