"""
This package has code for simulating, learning, and performing inference in
switching linear dynamical systems (SLDS) and the models they are built from.

Currently, it implements the following models:

Hidden Markov Models (HMM) with Gaussian observations
Linear Dynamical Systems (LDS)
Switching Linear Dynamical Systems (SLDS)

HMMs and LDSs are fit with expectation maximization (EM).  For the SLDS,
we use variational EM: the posterior over discrete and continuous latent
states is approximated by q(z) prod_k q(x^{(k)}), and the E-step alternates
between forward-backward on the discrete chain and weighted Kalman smoothing
in each regime.

Data are single sequences, given as arrays of shape (time_bins, observation_dim).

    model = initialize_slds(K=2, d=2, p=10)
    z, x, y = model.sample(500)
    result = model.fit(y)
    result.elbos, result.posterior.forward_backward.Ez
"""
from slds.models import HMM, LDS, SLDS, initialize_slds
from slds.core import EStepResult, FitResult
from slds.util import NumericalInstability, DegenerateLikelihood
