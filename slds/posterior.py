import autograd.numpy as np

from slds.lds import sufficient_statistics


class Posterior(object):
    """
    Base class for a posterior distribution over latent states given data x
    and parameters theta.

        p(z | x; theta) = p(z, x; theta) / p(x; theta)

    where z is a latent variable and x is the observed data.
    """
    def __init__(self, model, data):
        """
        Initialize the posterior with a ref to the model and the data,
        a (time_bins, observation_dim) array.
        """
        self.model = model
        self.data = data
        self.T = data.shape[0]

    @property
    def expectations(self):
        """
        Return posterior expectations of the latent states given the data
        """
        raise NotImplementedError

    @property
    def mode(self):
        """
        Return posterior mode of the latent states given the data
        """
        raise NotImplementedError

    @property
    def marginal_likelihood(self):
        """
        Compute (or approximate) the marginal likelihood of the data p(x; theta).
        For simple models like HMMs and LDSs, this will be exact.  For more
        complex models, like SLDS, this will be approximate.
        """
        raise NotImplementedError

    def update(self):
        """
        Update the posterior distribution given the model parameters.
        """
        raise NotImplementedError


class ForwardBackward(object):
    """
    Messages and marginals of the discrete chain, all in log space.

        alphas, betas : (T, K) forward and backward messages
        log_likes     : (T, K) per time bin score of each state
        log_Ez        : (T, K) log p(z_t = k)
        log_Ezzp1     : (T-1, K, K) log p(z_t = j, z_{t+1} = k)
    """
    def __init__(self, T, K):
        self.alphas = np.zeros((T, K))
        self.betas = np.zeros((T, K))
        self.log_likes = np.zeros((T, K))
        self.log_Ez = -np.log(K) * np.ones((T, K))
        self.log_Ezzp1 = -2 * np.log(K) * np.ones((T - 1, K, K))
        self.normalizer = np.nan

    @property
    def Ez(self):
        return np.exp(self.log_Ez)

    @property
    def Ezzp1(self):
        return np.exp(self.log_Ezzp1)


class FilterSmooth(object):
    """
    Smoothed latent path of one regime and its sufficient statistics.
    """
    def __init__(self, T, D):
        self.x_smooth = np.zeros((T, D))
        self.p_smooth = np.tile(np.eye(D), (T, 1, 1))
        self.p_smooth_tt1 = np.zeros((T - 1, D, D))
        self.entropy = 0.
        self.E_z, self.E_zz, self.E_zz_prev = \
            sufficient_statistics(self.x_smooth, self.p_smooth, self.p_smooth_tt1)

    def update(self, x_smooth, p_smooth, p_smooth_tt1, entropy):
        self.x_smooth = x_smooth
        self.p_smooth = p_smooth
        self.p_smooth_tt1 = p_smooth_tt1
        self.entropy = entropy
        self.E_z, self.E_zz, self.E_zz_prev = \
            sufficient_statistics(x_smooth, p_smooth, p_smooth_tt1)


class SwitchingPosterior(Posterior):
    """
    Structured variational posterior for a switching LDS,

        q(z, x) = q(z) prod_k q(x^{(k)}),

    where q(z) is a Markov chain (held in forward_backward) and each q(x^{(k)})
    is the weighted smoothing posterior of regime k (held in filter_smooth[k]).
    One of these is allocated per call to fit and updated in place by the
    E and M steps.
    """
    def __init__(self, model, data):
        super(SwitchingPosterior, self).__init__(model, data)
        self.forward_backward = ForwardBackward(self.T, model.num_states)
        self.filter_smooth = [FilterSmooth(self.T, lds.latent_dim) for lds in model.regimes]

    @property
    def expectations(self):
        return self.forward_backward.Ez, self.forward_backward.Ezzp1

    @property
    def mode(self):
        return self.model.most_likely_states(self)

    @property
    def marginal_likelihood(self):
        return self.model.elbo(self)

    def update(self, **kwargs):
        return self.model.variational_expectation(self, **kwargs)
