import autograd.numpy as np
import autograd.numpy.random as npr
from scipy.linalg import solve_triangular

from slds.primitives import cholesky


class GaussianObservations(object):
    """
    Full covariance Gaussian emissions for a hidden Markov model,

        (x_t | z_t = k) ~ N(mu_k, Sigma_k)
    """
    def __init__(self, num_states, observation_dim):
        self.num_states = num_states
        self.observation_dim = observation_dim
        self.mus = npr.randn(num_states, observation_dim)
        self._sqrt_Sigmas = npr.randn(num_states, observation_dim, observation_dim)

    @property
    def params(self):
        return self.mus, self._sqrt_Sigmas

    @params.setter
    def params(self, value):
        self.mus, self._sqrt_Sigmas = value

    def permute(self, perm):
        self.mus = self.mus[perm]
        self._sqrt_Sigmas = self._sqrt_Sigmas[perm]

    @property
    def Sigmas(self):
        return np.matmul(self._sqrt_Sigmas, np.swapaxes(self._sqrt_Sigmas, -1, -2))

    @Sigmas.setter
    def Sigmas(self, value):
        assert value.shape == (self.num_states, self.observation_dim, self.observation_dim)
        self._sqrt_Sigmas = cholesky(value, "Sigmas")

    def initialize(self, data):
        # Initialize with KMeans
        from sklearn.cluster import KMeans
        km = KMeans(self.num_states, n_init=10).fit(data)
        self.mus = km.cluster_centers_
        Sigmas = np.array([np.cov(data[km.labels_ == k].T).reshape(self.observation_dim, -1)
                           if np.sum(km.labels_ == k) > 1 else np.eye(self.observation_dim)
                           for k in range(self.num_states)])
        self._sqrt_Sigmas = cholesky(Sigmas + 1e-8 * np.eye(self.observation_dim), "Sigmas")

    def log_likelihoods(self, data):
        T, D = data.shape
        lls = np.zeros((T, self.num_states))
        for k, (mu, Sigma) in enumerate(zip(self.mus, self.Sigmas)):
            L = cholesky(Sigma, "Sigmas[{}]".format(k))
            z = solve_triangular(L, (data - mu).T, lower=True)
            lls[:, k] = -0.5 * np.sum(z**2, axis=0) \
                        - np.sum(np.log(np.diag(L))) \
                        - 0.5 * D * np.log(2 * np.pi)
        return lls

    def sample_observation(self, z, with_noise=True):
        K, D, mus = self.num_states, self.observation_dim, self.mus
        sqrt_Sigmas = self._sqrt_Sigmas if with_noise else np.zeros((K, D, D))
        return mus[z] + np.dot(sqrt_Sigmas[z], npr.randn(D))

    def m_step(self, Ez, data, **kwargs):
        D = self.observation_dim
        J = np.sum(Ez, axis=0)
        h = Ez.T.dot(data)
        self.mus = h / J[:, None]

        # Update the covariance
        resid = data[:, None, :] - self.mus
        sqerr = np.einsum('tk,tki,tkj->kij', Ez, resid, resid)
        self._sqrt_Sigmas = cholesky(sqerr / J[:, None, None] + 1e-8 * np.eye(D), "Sigmas")

    def smooth(self, expectations, data):
        """
        Compute the mean observation under the posterior distribution
        of latent discrete states.
        """
        return expectations.dot(self.mus)
