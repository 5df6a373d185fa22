import autograd.numpy as np
import autograd.numpy.random as npr

from slds.core import BaseHMM, BaseSwitchingLDS
from slds.init_state_distns import InitialStateDistribution
from slds.transitions import StationaryTransitions
from slds.observations import GaussianObservations
from slds.lds import GaussianStateModel, GaussianObservationModel, \
    LinearDynamicalSystem, FIT_PARAMS


def HMM(num_states, observation_dim, observations="gaussian", pi0=None, Ps=None):
    """
    Construct a hidden Markov model.
    """
    observation_classes = dict(gaussian=GaussianObservations)

    if observations not in observation_classes:
        raise Exception("Invalid observation model: {}. Must be one of {}".
                        format(observations, list(observation_classes.keys())))

    return BaseHMM(num_states, observation_dim,
                   InitialStateDistribution(num_states, pi0=pi0),
                   StationaryTransitions(num_states, Ps=Ps),
                   observation_classes[observations](num_states, observation_dim))


def LDS(A, Q, C, R, x0=None, P0=None, fit_params=FIT_PARAMS):
    """
    Construct a linear dynamical system.  x0 defaults to zero and
    P0 to the identity.
    """
    D = np.shape(A)[0]
    x0 = np.zeros(D) if x0 is None else x0
    P0 = np.eye(D) if P0 is None else P0
    return LinearDynamicalSystem(GaussianStateModel(A, Q, x0, P0),
                                 GaussianObservationModel(C, R),
                                 fit_params=fit_params)


def SLDS(regimes, pi0=None, Ps=None):
    """
    Construct a switching linear dynamical system from a list of
    LinearDynamicalSystem objects, one per discrete state.
    """
    num_states = len(regimes)
    return BaseSwitchingLDS(num_states,
                            InitialStateDistribution(num_states, pi0=pi0),
                            StationaryTransitions(num_states, Ps=Ps),
                            regimes)


def initialize_slds(K=2, d=2, p=10, self_bias=5.0, seed=42):
    """
    A random SLDS with sticky transitions and a distinct slow rotation in
    each regime, handy for simulation and as a starting point for fitting.

    Each row of the transition matrix is drawn from a Dirichlet with
    concentration self_bias on the diagonal and 1 elsewhere.  Regime k
    rotates latent dimensions (i, i+1) by 0.1 + 2 pi k / K + 0.2 i
    with a 0.95 decay.  Emission matrices are standard normal and
    all noise covariances are 0.001 I.
    """
    npr.seed(seed)

    Ps = np.zeros((K, K))
    for i in range(K):
        alpha = np.ones(K)
        alpha[i] = self_bias
        Ps[i] = npr.dirichlet(alpha)
    pi0 = npr.dirichlet(np.ones(K))

    regimes = []
    for k in range(K):
        A = np.eye(d)
        for i in range(0, d - 1, 2):
            theta = 0.1 + 2 * np.pi * k / K + 0.2 * i
            A[i:i+2, i:i+2] = 0.95 * np.array([[np.cos(theta), -np.sin(theta)],
                                               [np.sin(theta), np.cos(theta)]])
        if d % 2 == 1:
            A[d-1, d-1] = 0.95

        regimes.append(LDS(A, 0.001 * np.eye(d), npr.randn(p, d), 0.001 * np.eye(p),
                           x0=np.zeros(d), P0=0.001 * np.eye(d)))

    return SLDS(regimes, pi0=pi0, Ps=Ps)
