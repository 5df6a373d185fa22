import warnings
from collections import namedtuple

from joblib import Parallel, delayed
from tqdm.auto import trange

import autograd.numpy as np
import autograd.numpy.random as npr

from slds.lds import smooth, calculate_elbo, stateparams, obsparams, \
    update_initial_state_mean, update_initial_state_covariance, \
    update_A, update_Q, update_C, update_R as update_observation_noise
from slds.messages import hmm_normalizer, hmm_expected_states, hmm_filter, \
    hmm_sample, hmm_elbo, viterbi
from slds.posterior import SwitchingPosterior
from slds.util import check_data

EStepResult = namedtuple("EStepResult", ["elbo", "elbos", "converged"])
FitResult = namedtuple("FitResult", ["elbos", "param_diffs", "posterior", "converged"])


class _DiscreteChainModel(object):
    """
    Anything with a Markov chain over K discrete states: an initial
    distribution, a transition matrix and a (T, K) array of log scores.
    The message passing routines only need these three.
    """
    def __init__(self, num_states, init_state_distn, transitions):
        self.num_states = num_states
        self.init_state_distn = init_state_distn
        self.transitions = transitions

    def log_initial_state_distn(self):
        return self.init_state_distn.log_initial_state_distn()

    def log_transition_matrix(self):
        return self.transitions.log_transition_matrix()

    def log_likelihoods(self, *args, **kwargs):
        raise NotImplementedError


class BaseHMM(_DiscreteChainModel):
    """
    Base class for hidden Markov models.
    """
    def __init__(self, num_states, observation_dim,
                 init_state_distn, transitions, observations):
        """
        Construct a hidden Markov model (HMM).

        Parameters
        ----------
        num_states : int > 0
            The number of discrete states

        observation_dim : int > 0

        init_state_distn : InitialStateDistribution object
            Object encapsulating the initial state distribution
            p(z_1)

        transitions : StationaryTransitions object
            Object encapsulating the transition distribution
            p(z_t | z_{t-1})

        observations : GaussianObservations object
            Object encapsulating the observation distribution
            p(x_t | z_t)
        """
        super(BaseHMM, self).__init__(num_states, init_state_distn, transitions)
        self.observation_dim = observation_dim
        self.observations = observations

    @property
    def params(self):
        return self.init_state_distn.params, \
               self.transitions.params, \
               self.observations.params

    @params.setter
    def params(self, value):
        self.init_state_distn.params = value[0]
        self.transitions.params = value[1]
        self.observations.params = value[2]

    @check_data
    def initialize(self, data):
        """
        Initialize the observation model given data.
        """
        self.observations.initialize(data)

    def permute(self, perm):
        """
        Permute the discrete latent states.

        Parameters
        ----------

        perm : array_like (K,) (int)
            A permutation of the K discrete states

        """
        assert np.all(np.sort(perm) == np.arange(self.num_states))
        self.init_state_distn.permute(perm)
        self.transitions.permute(perm)
        self.observations.permute(perm)

    def sample(self, T, with_noise=True):
        """
        Sample synthetic data from the model.

        Parameters
        ----------
        T : int
            number of time steps to sample

        with_noise : bool
            If False, emit the state means instead of noisy observations.

        Returns
        -------
        z : array_like (T,) (int)
            discrete states

        data : array_like (T, observation_dim)
            observations
        """
        K, D = self.num_states, self.observation_dim
        pi0 = np.exp(self.log_initial_state_distn())
        P = np.exp(self.log_transition_matrix())

        z = np.zeros(T, dtype=int)
        data = np.zeros((T, D))
        z[0] = npr.choice(K, p=pi0 / pi0.sum())
        for t in range(1, T):
            z[t] = npr.choice(K, p=P[z[t-1]] / P[z[t-1]].sum())
        for t in range(T):
            data[t] = self.observations.sample_observation(z[t], with_noise=with_noise)
        return z, data

    def log_likelihoods(self, data):
        return self.observations.log_likelihoods(data)

    @check_data
    def expected_states(self, data):
        """
        Compute the posterior distribution of discrete states given
        observed data, p(z | x).

        Returns
        -------
        Ez : (T, K) posterior marginals
        Ezzp1 : (T-1, K, K) posterior pairwise marginals
        normalizer : log p(x)
        """
        log_Ez, log_Ezzp1, normalizer, _, _ = \
            hmm_expected_states(self.log_initial_state_distn(),
                                self.log_transition_matrix(),
                                self.log_likelihoods(data))
        return np.exp(log_Ez), np.exp(log_Ezzp1), normalizer

    @check_data
    def most_likely_states(self, data):
        """
        Compute the most likely sequence of discrete states given
        observed data, z* = argmax p(z | x).
        """
        return viterbi(self.log_initial_state_distn(),
                       self.log_transition_matrix(),
                       self.log_likelihoods(data))

    @check_data
    def filter(self, data):
        """
        Compute the filtered posterior distribution of discrete states given
        observed data, p(z_t | x_{1:t}).
        """
        return hmm_filter(self.log_initial_state_distn(),
                          self.log_transition_matrix(),
                          self.log_likelihoods(data))

    @check_data
    def posterior_sample(self, data):
        return hmm_sample(self.log_initial_state_distn(),
                          self.log_transition_matrix(),
                          self.log_likelihoods(data))

    @check_data
    def smooth(self, data):
        """
        Compute the smoothed observations, taking an expectation over
        the posterior distribution of the discrete states,
        E_{p(z | x)}[x | z].
        """
        Ez, _, _ = self.expected_states(data)
        return self.observations.smooth(Ez, data)

    @check_data
    def log_likelihood(self, data):
        """
        Compute the log probability of the data under the current
        model parameters, log p(x), marginalizing over discrete states.
        """
        return hmm_normalizer(self.log_initial_state_distn(),
                              self.log_transition_matrix(),
                              self.log_likelihoods(data))

    def _fit_em(self, data, num_em_iters=100, tolerance=0, verbose=True, **kwargs):
        """
        Fit the parameters with expectation maximization.

        E step: compute E[z_t] and E[z_t, z_{t+1}] with message passing;
        M-step: analytical maximization of E_{p(z | x)} [log p(x, z; theta)].
        """
        lls = [self.log_likelihood(data)]

        pbar = trange(num_em_iters, disable=not verbose)
        pbar.set_description("LP: {:.1f}".format(lls[-1]))
        for itr in pbar:
            # E step: compute expected latent states with current parameters
            Ez, Ezzp1, _ = self.expected_states(data)

            # M step: maximize expected log joint wrt parameters
            self.init_state_distn.m_step([(Ez, Ezzp1)], **kwargs)
            self.transitions.m_step([(Ez, Ezzp1)], **kwargs)
            self.observations.m_step(Ez, data)

            # Store progress
            lls.append(self.log_likelihood(data))
            pbar.set_description("LP: {:.1f}".format(lls[-1]))

            if abs(lls[-1] - lls[-2]) < tolerance:
                break

        return lls

    @check_data
    def fit(self, data, method="em", initialize=True, **kwargs):
        _fitting_methods = dict(em=self._fit_em)

        if method not in _fitting_methods:
            raise Exception("Invalid method: {}. Options are {}".
                            format(method, _fitting_methods.keys()))

        if initialize:
            self.initialize(data)

        return _fitting_methods[method](data, **kwargs)


class BaseSwitchingLDS(_DiscreteChainModel):
    """
    Switching linear dynamical system in which each discrete state owns
    its own linear Gaussian latent chain,

        z_1 ~ pi,  z_t | z_{t-1} ~ A[z_{t-1}]
        x^{(k)}_t | x^{(k)}_{t-1} ~ N(A_k x^{(k)}_{t-1}, Q_k)     for every k
        y_t | z_t, x ~ N(C_{z_t} x^{(z_t)}_t, R_{z_t})

    fit with variational EM.  The posterior is approximated by
    q(z) prod_k q(x^{(k)}); the E-step alternates between forward-backward
    on the discrete chain and weighted smoothing of each regime.
    """
    def __init__(self, num_states, init_state_distn, transitions, regimes):
        """
        Construct a switching linear dynamical system (SLDS).

        Parameters
        ----------
        num_states : int > 0
            The number of discrete states

        init_state_distn : InitialStateDistribution object
            Object encapsulating the initial state distribution
            p(z_1)

        transitions : StationaryTransitions object
            Object encapsulating the transition distribution
            p(z_t | z_{t-1})

        regimes : list of LinearDynamicalSystem
            One linear Gaussian state space model per discrete state.
            All must share observation_dim and latent_dim.
        """
        super(BaseSwitchingLDS, self).__init__(num_states, init_state_distn, transitions)
        if len(regimes) != num_states:
            raise ValueError("Expected {} regimes, got {}".format(num_states, len(regimes)))
        if len(set([lds.observation_dim for lds in regimes])) != 1 or \
                len(set([lds.latent_dim for lds in regimes])) != 1:
            raise ValueError("All regimes must share observation_dim and latent_dim.")
        self.regimes = list(regimes)

    @property
    def observation_dim(self):
        return self.regimes[0].observation_dim

    @property
    def latent_dim(self):
        return self.regimes[0].latent_dim

    @property
    def params(self):
        return self.init_state_distn.params, \
               self.transitions.params, \
               tuple(lds.params for lds in self.regimes)

    @params.setter
    def params(self, value):
        self.init_state_distn.params = value[0]
        self.transitions.params = value[1]
        for lds, prms in zip(self.regimes, value[2]):
            lds.params = prms

    @check_data
    def initialize(self, data, jitter=0.01):
        """
        Point every regime's emission matrix at the principal subspace of the
        data, with a small per regime perturbation so the regimes can separate.
        """
        from sklearn.decomposition import PCA
        T, N = data.shape
        D = self.latent_dim
        if D > min(T, N):
            raise ValueError("Cannot initialize a {}-dimensional latent space from "
                             "{} x {} data.".format(D, T, N))

        print("Initializing emissions with PCA.")
        pca = PCA(n_components=D).fit(data)
        C = pca.components_.T
        resid = data - data.dot(C).dot(C.T)
        R = np.diag(np.maximum(np.var(resid, axis=0), 1e-4))

        for lds in self.regimes:
            lds.obs_model.C = C + jitter * npr.randn(N, D)
            lds.obs_model.R = R.copy()

    def permute(self, perm):
        """
        Permute the discrete latent states.
        """
        assert np.all(np.sort(perm) == np.arange(self.num_states))
        self.init_state_distn.permute(perm)
        self.transitions.permute(perm)
        self.regimes = [self.regimes[i] for i in perm]

    def sample(self, T, with_noise=True):
        """
        Sample discrete states z (T,), latent states of every regime
        x (T, K, latent_dim) and observations y (T, observation_dim).
        All K latent chains evolve at every step; z_t picks the one observed.
        """
        K, D, N = self.num_states, self.latent_dim, self.observation_dim
        pi0 = np.exp(self.log_initial_state_distn())
        P = np.exp(self.log_transition_matrix())

        z = np.zeros(T, dtype=int)
        x = np.zeros((T, K, D))
        y = np.zeros((T, N))

        z[0] = npr.choice(K, p=pi0 / pi0.sum())
        for k, lds in enumerate(self.regimes):
            x[0, k] = lds.state_model.sample_initial_state(with_noise)

        for t in range(1, T):
            z[t] = npr.choice(K, p=P[z[t-1]] / P[z[t-1]].sum())
            for k, lds in enumerate(self.regimes):
                x[t, k] = lds.state_model.sample_next_state(x[t-1, k], with_noise)

        for t in range(T):
            y[t] = self.regimes[z[t]].obs_model.sample_observation(x[t, z[t]], with_noise)
        return z, x, y

    def log_likelihoods(self, posterior, n_jobs=-1):
        """
        Expected log likelihood of each observation under each regime,
        using that regime's current smoothed statistics.  Returns (T, K).
        """
        log_likes = np.zeros((posterior.T, self.num_states))

        def _score(k):
            fs = posterior.filter_smooth[k]
            log_likes[:, k] = self.regimes[k].obs_model.expected_log_likelihoods(
                fs.E_z, fs.E_zz, posterior.data)

        Parallel(n_jobs=n_jobs, prefer="threads", require="sharedmem")(
            delayed(_score)(k) for k in range(self.num_states))
        return log_likes

    def _smooth_regimes(self, posterior):
        # Each regime only sees the time bins it is responsible for
        Ez = posterior.forward_backward.Ez
        for k, (lds, fs) in enumerate(zip(self.regimes, posterior.filter_smooth)):
            fs.update(*smooth(lds, posterior.data, Ez[:, k]))

    def variational_expectation(self, posterior, tol=1e-6, max_iters=100, n_jobs=-1):
        """
        Coordinate ascent on q(z) prod_k q(x^{(k)}) with the parameters held
        fixed.  Each sweep runs forward-backward given the regime scores,
        re-smooths every regime with the new responsibilities and re-scores,
        so the ELBO never decreases.  Stops when it changes by less than tol.

        Returns an EStepResult; the posterior is updated in place.
        """
        fb = posterior.forward_backward
        log_pi0 = self.log_initial_state_distn()
        log_Ps = self.log_transition_matrix()

        fb.log_likes = self.log_likelihoods(posterior, n_jobs=n_jobs)
        elbos = []
        converged = False
        for itr in range(max_iters):
            fb.log_Ez, fb.log_Ezzp1, fb.normalizer, fb.alphas, fb.betas = \
                hmm_expected_states(log_pi0, log_Ps, fb.log_likes)

            self._smooth_regimes(posterior)
            fb.log_likes = self.log_likelihoods(posterior, n_jobs=n_jobs)

            elbos.append(self.elbo(posterior))
            if len(elbos) > 1 and abs(elbos[-1] - elbos[-2]) < tol:
                converged = True
                break

        if not converged:
            warnings.warn("Variational E-step did not converge in {} iterations. "
                          "Last change in ELBO: {:.2e}".format(
                              max_iters, abs(elbos[-1] - elbos[-2]) if len(elbos) > 1 else np.inf))
        return EStepResult(elbos[-1], elbos, converged)

    def elbo(self, posterior):
        """
        Evidence lower bound of the data under the current parameters and
        the current variational posterior.
        """
        fb = posterior.forward_backward
        elbo = hmm_elbo(self.log_initial_state_distn(), self.log_transition_matrix(),
                        fb.log_likes, fb.log_Ez, fb.log_Ezzp1)
        for lds, fs in zip(self.regimes, posterior.filter_smooth):
            elbo += calculate_elbo(lds, fs.E_z, fs.E_zz, fs.E_zz_prev, posterior.data,
                                   fs.entropy, include_emissions=False)
        return elbo

    def most_likely_states(self, posterior):
        fb = posterior.forward_backward
        return viterbi(self.log_initial_state_distn(), self.log_transition_matrix(), fb.log_likes)

    def posterior_sample(self, posterior):
        fb = posterior.forward_backward
        return hmm_sample(self.log_initial_state_distn(), self.log_transition_matrix(), fb.log_likes)

    def smooth(self, posterior):
        """
        Compute the mean observation under the variational posterior,
        sum_k q(z_t = k) C_k E[x^{(k)}_t].
        """
        Ez = posterior.forward_backward.Ez
        return sum([Ez[:, k:k+1] * fs.E_z.dot(lds.obs_model.C.T)
                    for k, (lds, fs) in enumerate(zip(self.regimes, posterior.filter_smooth))])

    def _flat_regime_params(self):
        return np.concatenate([stateparams(lds) for lds in self.regimes] +
                              [obsparams(lds) for lds in self.regimes])

    def m_step(self, posterior, update_R=False):
        """
        Closed form maximization of the ELBO with respect to the parameters,
        holding the variational posterior fixed.  The observation noise R is
        left alone unless update_R is True; re-estimating it tends to be
        numerically unstable.

        Returns the norm of the change in the regime parameters.
        """
        old_params = self._flat_regime_params()
        Ez, Ezzp1 = posterior.expectations

        self.init_state_distn.m_step([(Ez, Ezzp1)])
        self.transitions.m_step([(Ez, Ezzp1)])

        for k, (lds, fs) in enumerate(zip(self.regimes, posterior.filter_smooth)):
            update_initial_state_mean(lds, fs.E_z)
            update_initial_state_covariance(lds, fs.E_z, fs.E_zz)
            update_A(lds, fs.E_zz, fs.E_zz_prev)
            update_Q(lds, fs.E_zz, fs.E_zz_prev)
            update_C(lds, fs.E_z, fs.E_zz, posterior.data, Ez[:, k])
            if update_R:
                update_observation_noise(lds, fs.E_z, fs.E_zz, posterior.data, Ez[:, k])

        return np.linalg.norm(self._flat_regime_params() - old_params)

    def _fit_variational_em(self, data, max_iter=1000, tol=1e-3, inner_tol=1e-6,
                            max_inner_iters=100, update_R=False, n_jobs=-1, verbose=True):
        """
        Alternate the variational E-step and the M-step until the ELBO
        changes by less than tol.
        """
        posterior = SwitchingPosterior(self, data)
        self._smooth_regimes(posterior)

        elbos, param_diffs = [], []
        converged = False
        pbar = trange(max_iter, disable=not verbose)
        for itr in pbar:
            estep = self.variational_expectation(posterior, tol=inner_tol,
                                                 max_iters=max_inner_iters, n_jobs=n_jobs)
            param_diffs.append(self.m_step(posterior, update_R=update_R))
            elbos.append(estep.elbo)
            pbar.set_description("ELBO: {:.1f}".format(elbos[-1]))

            if len(elbos) > 1 and abs(elbos[-1] - elbos[-2]) < tol:
                converged = True
                break

        return FitResult(elbos, param_diffs, posterior, converged)

    @check_data
    def fit(self, data, method="variational_em", initialize=False, **kwargs):
        """
        Fit the model to a (time_bins, observation_dim) array.

        Returns a FitResult of the ELBO after each E-step, the change in
        parameters after each M-step, the final SwitchingPosterior and
        whether the ELBO converged before max_iter.
        """
        _fitting_methods = dict(variational_em=self._fit_variational_em)

        if method not in _fitting_methods:
            raise Exception("Invalid method: {}. Options are {}".
                            format(method, _fitting_methods.keys()))

        if initialize:
            self.initialize(data)

        return _fitting_methods[method](data, **kwargs)
