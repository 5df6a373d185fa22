#!/usr/bin/env python

from setuptools import setup

setup(name='slds',
      version='0.0.1',
      description='Switching linear dynamical systems fit with variational EM',
      install_requires=['numpy', 'scipy', 'autograd', 'tqdm', 'joblib',
                        'scikit-learn', 'matplotlib'],
      extras_require={'test': ['pytest']},
      packages=['slds'],
      )
