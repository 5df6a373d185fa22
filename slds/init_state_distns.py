import autograd.numpy as np
from autograd.scipy.special import logsumexp


class InitialStateDistribution(object):
    def __init__(self, num_states, pi0=None):
        self.num_states = num_states
        if pi0 is None:
            self.log_pi0 = -np.log(num_states) * np.ones(num_states)
        else:
            pi0 = np.asarray(pi0, dtype=float)
            if pi0.shape != (num_states,) or np.any(pi0 < 0) or not pi0.sum() > 0:
                raise ValueError("pi0 must be a non-negative vector of length {}".format(num_states))
            with np.errstate(divide="ignore"):
                self.log_pi0 = np.log(pi0 / pi0.sum())

    @property
    def params(self):
        return (self.log_pi0,)

    @params.setter
    def params(self, value):
        self.log_pi0 = value[0]

    def permute(self, perm):
        """
        Permute the discrete latent states.
        """
        self.log_pi0 = self.log_pi0[perm]

    @property
    def init_state_distn(self):
        return np.exp(self.log_pi0 - logsumexp(self.log_pi0))

    def log_initial_state_distn(self):
        return self.log_pi0 - logsumexp(self.log_pi0)

    def m_step(self, expectations, eps=1e-10, **kwargs):
        """
        Set pi0 to the (summed over sequences) posterior probability of the
        first state.  Entries are floored at eps so no state is ruled out.
        """
        pi0 = sum([Ez[0] for Ez, _ in expectations])
        pi0 = np.clip(pi0 / pi0.sum(), eps, 1.0)
        self.log_pi0 = np.log(pi0 / pi0.sum())
