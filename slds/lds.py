r"""
Linear Gaussian state space models.

    x_1 ~ N(x0, P0)
    x_t | x_{t-1} ~ N(A x_{t-1}, Q)
    y_t | x_t ~ N(C x_t, R)

Each regime of a switching LDS is one of these models.  Smoothing accepts
per time bin weights w_t, which scale the observation log likelihood,

    p_w(x | y) \propto p(x) \prod_t N(y_t | C x_t, R)^{w_t},

so that a regime only explains the time bins it is responsible for.
"""
from tqdm.auto import trange

import autograd.numpy as np
import autograd.numpy.random as npr
from autograd.misc import flatten

from slds.primitives import symmetrize, cholesky, inv_and_logdet, \
    convert_block_tridiag_to_banded, solve_symm_block_tridiag, \
    logdet_banded_symmetric, block_tridiag_inverse
from slds.util import check_data, check_weights, NumericalInstability

FIT_PARAMS = ("x0", "P0", "A", "Q", "C", "R")


def _solve(A, B, name):
    try:
        return np.linalg.solve(A, B)
    except np.linalg.LinAlgError:
        raise NumericalInstability("{} is singular.".format(name))


class GaussianStateModel(object):
    def __init__(self, A, Q, x0, P0):
        self.A = np.array(A, dtype=float)
        self.Q = np.array(Q, dtype=float)
        self.x0 = np.array(x0, dtype=float)
        self.P0 = np.array(P0, dtype=float)

        D = self.x0.shape[0]
        if self.A.shape != (D, D) or self.Q.shape != (D, D) or self.P0.shape != (D, D):
            raise ValueError("A, Q and P0 must be {0} x {0} matrices.".format(D))

    @property
    def latent_dim(self):
        return self.x0.shape[0]

    @property
    def params(self):
        return self.A, self.Q, self.x0, self.P0

    @params.setter
    def params(self, value):
        self.A, self.Q, self.x0, self.P0 = value

    def sample_initial_state(self, with_noise=True):
        D = self.latent_dim
        if not with_noise:
            return self.x0.copy()
        return self.x0 + cholesky(self.P0, "P0").dot(npr.randn(D))

    def sample_next_state(self, x, with_noise=True):
        D = self.latent_dim
        if not with_noise:
            return self.A.dot(x)
        return self.A.dot(x) + cholesky(self.Q, "Q").dot(npr.randn(D))

    def expected_log_likelihood(self, E_z, E_zz, E_zz_prev):
        """
        E[log p(x_{1:T})] under a Gaussian posterior summarized by its
        sufficient statistics.
        """
        T, D = E_z.shape
        A, x0 = self.A, self.x0

        # Initial state
        P0inv, logdet_P0 = inv_and_logdet(self.P0, "initial state covariance P0")
        S0 = E_zz[0] - np.outer(E_z[0], x0) - np.outer(x0, E_z[0]) + np.outer(x0, x0)
        ll = -0.5 * (D * np.log(2 * np.pi) + logdet_P0 + np.sum(P0inv * S0))

        # Dynamics
        if T > 1:
            Qinv, logdet_Q = inv_and_logdet(self.Q, "process noise covariance Q")
            Szzp = np.sum(E_zz_prev, axis=0)
            S = np.sum(E_zz[1:], axis=0) - A.dot(Szzp.T) - Szzp.dot(A.T) \
                + A.dot(np.sum(E_zz[:-1], axis=0)).dot(A.T)
            ll += -0.5 * ((T - 1) * (D * np.log(2 * np.pi) + logdet_Q) + np.sum(Qinv * S))

        return ll


class GaussianObservationModel(object):
    def __init__(self, C, R):
        self.C = np.array(C, dtype=float)
        self.R = np.array(R, dtype=float)

        N = self.C.shape[0]
        if self.C.ndim != 2 or self.R.shape != (N, N):
            raise ValueError("C must be N x D and R must be N x N.")

    @property
    def observation_dim(self):
        return self.C.shape[0]

    @property
    def latent_dim(self):
        return self.C.shape[1]

    @property
    def params(self):
        return self.C, self.R

    @params.setter
    def params(self, value):
        self.C, self.R = value

    def sample_observation(self, x, with_noise=True):
        N = self.observation_dim
        if not with_noise:
            return self.C.dot(x)
        return self.C.dot(x) + cholesky(self.R, "R").dot(npr.randn(N))

    def expected_log_likelihoods(self, E_z, E_zz, data):
        """
        E[log N(y_t | C x_t, R)] for each time bin, using the expected
        sufficient statistics of x_t rather than a point estimate:

            -1/2 tr(R^{-1} E[(y_t - C x_t)(y_t - C x_t)^T]) - 1/2 log |2 pi R|
        """
        N = self.observation_dim
        C = self.C
        Rinv, logdet_R = inv_and_logdet(self.R, "observation noise covariance R")
        RinvC = Rinv.dot(C)

        quad = np.sum(data.dot(Rinv) * data, axis=1)
        quad -= 2 * np.sum(data.dot(RinvC) * E_z, axis=1)
        quad += np.einsum('ij,tji->t', C.T.dot(RinvC), E_zz)
        return -0.5 * quad - 0.5 * (N * np.log(2 * np.pi) + logdet_R)


class LinearDynamicalSystem(object):
    """
    A linear Gaussian state space model.

    Parameters
    ----------
    state_model : GaussianStateModel
        Latent dynamics (A, Q, x0, P0).

    obs_model : GaussianObservationModel
        Emissions (C, R).

    fit_params : iterable of str
        Which of ("x0", "P0", "A", "Q", "C", "R") the M-step updates.
    """
    def __init__(self, state_model, obs_model, fit_params=FIT_PARAMS):
        if state_model.latent_dim != obs_model.latent_dim:
            raise ValueError("State model and observation model disagree on latent_dim.")
        unknown = set(fit_params) - set(FIT_PARAMS)
        if unknown:
            raise Exception("Invalid fit_params: {}. Options are {}".format(unknown, FIT_PARAMS))

        self.state_model = state_model
        self.obs_model = obs_model
        self.fit_params = tuple(fit_params)

    @property
    def latent_dim(self):
        return self.state_model.latent_dim

    @property
    def observation_dim(self):
        return self.obs_model.observation_dim

    @property
    def params(self):
        return self.state_model.params, self.obs_model.params

    @params.setter
    def params(self, value):
        self.state_model.params = value[0]
        self.obs_model.params = value[1]

    def sample(self, T, with_noise=True):
        """
        Sample latent states x (T, latent_dim) and observations y (T, observation_dim).
        """
        assert T > 0
        x = np.zeros((T, self.latent_dim))
        y = np.zeros((T, self.observation_dim))
        x[0] = self.state_model.sample_initial_state(with_noise)
        for t in range(1, T):
            x[t] = self.state_model.sample_next_state(x[t-1], with_noise)
        for t in range(T):
            y[t] = self.obs_model.sample_observation(x[t], with_noise)
        return x, y

    @check_data
    def smooth(self, data, weights=None):
        return smooth(self, data, weights)

    @check_data
    def log_likelihood(self, data):
        """
        Marginal log likelihood log p(y_{1:T}).  The ELBO is tight when it is
        evaluated at the exact posterior, which is what smoothing returns.
        """
        x_smooth, p_smooth, p_smooth_tt1, entropy = smooth(self, data)
        E_z, E_zz, E_zz_prev = sufficient_statistics(x_smooth, p_smooth, p_smooth_tt1)
        return calculate_elbo(self, E_z, E_zz, E_zz_prev, data, entropy)

    def m_step(self, E_z, E_zz, E_zz_prev, data, weights=None):
        update_initial_state_mean(self, E_z)
        update_initial_state_covariance(self, E_z, E_zz)
        update_A(self, E_zz, E_zz_prev)
        update_Q(self, E_zz, E_zz_prev)
        update_C(self, E_z, E_zz, data, weights)
        update_R(self, E_z, E_zz, data, weights)

    @check_data
    def fit(self, data, max_iter=100, tol=1e-6, verbose=True):
        """
        Fit the parameters with expectation maximization.

        E step: exact smoothing of the latent path;
        M-step: closed form maximization of E[log p(x, y; theta)].

        Returns the list of marginal log likelihoods, one per iteration.
        """
        lls = []
        pbar = trange(max_iter, disable=not verbose)
        for itr in pbar:
            x_smooth, p_smooth, p_smooth_tt1, entropy = smooth(self, data)
            E_z, E_zz, E_zz_prev = sufficient_statistics(x_smooth, p_smooth, p_smooth_tt1)
            lls.append(calculate_elbo(self, E_z, E_zz, E_zz_prev, data, entropy))
            pbar.set_description("LL: {:.1f}".format(lls[-1]))

            if len(lls) > 1 and abs(lls[-1] - lls[-2]) < tol:
                break

            self.m_step(E_z, E_zz, E_zz_prev, data)

        return lls


def smooth(lds, data, weights=None):
    """
    Posterior over the latent path given (weighted) observations.

    Returns
    -------
    x_smooth : (T, D) posterior means
    p_smooth : (T, D, D) posterior covariances
    p_smooth_tt1 : (T-1, D, D) lag one cross covariances Cov(x_{t+1}, x_t)
    entropy : float, entropy of the Gaussian posterior over x_{1:T}
    """
    T = data.shape[0]
    D = lds.latent_dim
    weights = check_weights(weights, T)
    A, Q, x0, P0 = lds.state_model.params
    C, R = lds.obs_model.params

    Qinv, _ = inv_and_logdet(Q, "process noise covariance Q")
    P0inv, _ = inv_and_logdet(P0, "initial state covariance P0")
    Rinv, _ = inv_and_logdet(R, "observation noise covariance R")
    CtRinv = C.T.dot(Rinv)

    # Block tridiagonal precision of the posterior
    J_diag = weights[:, None, None] * CtRinv.dot(C)[None, :, :]
    J_diag[0] += P0inv
    J_diag[1:] += Qinv
    J_diag[:-1] += A.T.dot(Qinv).dot(A)
    J_upper = np.tile(-A.T.dot(Qinv)[None, :, :], (T - 1, 1, 1))

    # Linear term
    h = weights[:, None] * data.dot(CtRinv.T)
    h[0] += P0inv.dot(x0)

    ab = convert_block_tridiag_to_banded(J_diag, J_upper)
    x_smooth = solve_symm_block_tridiag(J_diag, J_upper, h, ab=ab)
    entropy = 0.5 * T * D * (1 + np.log(2 * np.pi)) - 0.5 * logdet_banded_symmetric(ab)

    p_smooth, p_smooth_upper = block_tridiag_inverse(J_diag, J_upper)
    p_smooth_tt1 = np.swapaxes(p_smooth_upper, -1, -2)
    return x_smooth, p_smooth, p_smooth_tt1, entropy


def sufficient_statistics(x_smooth, p_smooth, p_smooth_tt1):
    """
    E[x_t], E[x_t x_t^T] and E[x_{t+1} x_t^T] from the smoother output.
    """
    E_z = x_smooth
    E_zz = p_smooth + np.einsum('ti,tj->tij', x_smooth, x_smooth)
    E_zz_prev = p_smooth_tt1 + np.einsum('ti,tj->tij', x_smooth[1:], x_smooth[:-1])
    return E_z, E_zz, E_zz_prev


def calculate_elbo(lds, E_z, E_zz, E_zz_prev, data, entropy, weights=None,
                   include_emissions=True):
    """
    Evidence lower bound for a (weighted) LDS,

        E[log p(x)] + sum_t w_t E[log p(y_t | x_t)] + H[q(x)].

    With include_emissions=False the observation term is left out; a
    switching LDS accounts for it through its discrete chain.
    """
    elbo = lds.state_model.expected_log_likelihood(E_z, E_zz, E_zz_prev) + entropy
    if include_emissions:
        weights = check_weights(weights, data.shape[0])
        elbo += np.dot(weights, lds.obs_model.expected_log_likelihoods(E_z, E_zz, data))
    return elbo


### M-step updates
#
# Each update maximizes the expected log joint with respect to one parameter,
# holding the others fixed, and is skipped if the parameter is not listed in
# lds.fit_params.  Updating (x0, P0), (A, Q) and (C, R) in that order
# maximizes jointly over each pair.
###
def update_initial_state_mean(lds, E_z):
    if "x0" in lds.fit_params:
        lds.state_model.x0 = E_z[0].copy()


def update_initial_state_covariance(lds, E_z, E_zz):
    if "P0" in lds.fit_params:
        x0 = lds.state_model.x0
        P0 = E_zz[0] - np.outer(x0, E_z[0]) - np.outer(E_z[0], x0) + np.outer(x0, x0)
        lds.state_model.P0 = symmetrize(P0)


def update_A(lds, E_zz, E_zz_prev):
    if "A" in lds.fit_params and E_zz.shape[0] > 1:
        Szzp = np.sum(E_zz_prev, axis=0)
        Spp = np.sum(E_zz[:-1], axis=0)
        lds.state_model.A = _solve(Spp, Szzp.T, "sum_t E[x_t x_t^T]").T


def update_Q(lds, E_zz, E_zz_prev):
    if "Q" in lds.fit_params and E_zz.shape[0] > 1:
        T = E_zz.shape[0]
        A = lds.state_model.A
        Szzp = np.sum(E_zz_prev, axis=0)
        S = np.sum(E_zz[1:], axis=0) - A.dot(Szzp.T) - Szzp.dot(A.T) \
            + A.dot(np.sum(E_zz[:-1], axis=0)).dot(A.T)
        lds.state_model.Q = symmetrize(S / (T - 1))


def update_C(lds, E_z, E_zz, data, weights=None):
    if "C" in lds.fit_params:
        weights = check_weights(weights, data.shape[0])
        Syz = (weights[:, None] * data).T.dot(E_z)
        Szz = np.einsum('t,tij->ij', weights, E_zz)
        lds.obs_model.C = _solve(Szz, Syz.T, "sum_t w_t E[x_t x_t^T]").T


def update_R(lds, E_z, E_zz, data, weights=None):
    if "R" in lds.fit_params:
        weights = check_weights(weights, data.shape[0])
        C = lds.obs_model.C
        Syy = (weights[:, None] * data).T.dot(data)
        Syz = (weights[:, None] * data).T.dot(E_z)
        Szz = np.einsum('t,tij->ij', weights, E_zz)
        R = Syy - C.dot(Syz.T) - Syz.dot(C.T) + C.dot(Szz).dot(C.T)
        lds.obs_model.R = symmetrize(R / np.sum(weights))


def stateparams(lds):
    return flatten(lds.state_model.params)[0]


def obsparams(lds):
    return flatten(lds.obs_model.params)[0]
