import autograd.numpy as np
import autograd.numpy.random as npr
from autograd.scipy.special import logsumexp


class StationaryTransitions(object):
    """
    Fixed (time invariant) K x K transition matrix of a Markov chain.
    """
    def __init__(self, num_states, Ps=None):
        self.num_states = num_states
        if Ps is None:
            Ps = .95 * np.eye(num_states) + .05 * npr.rand(num_states, num_states)
        Ps = np.asarray(Ps, dtype=float)
        if Ps.shape != (num_states, num_states) or np.any(Ps < 0) or \
                not np.all(Ps.sum(axis=1) > 0):
            raise ValueError("Ps must be a non-negative {0} x {0} matrix with "
                             "nonzero rows.".format(num_states))
        Ps = Ps / Ps.sum(axis=1, keepdims=True)
        with np.errstate(divide="ignore"):
            self.log_Ps = np.log(Ps)

    @property
    def params(self):
        return (self.log_Ps,)

    @params.setter
    def params(self, value):
        self.log_Ps = value[0]

    def permute(self, perm):
        """
        Permute the discrete latent states.
        """
        self.log_Ps = self.log_Ps[np.ix_(perm, perm)]

    @property
    def transition_matrix(self):
        return np.exp(self.log_transition_matrix())

    def log_transition_matrix(self):
        return self.log_Ps - logsumexp(self.log_Ps, axis=1, keepdims=True)

    def m_step(self, expectations, eps=1e-10, **kwargs):
        """
        Row j of the transition matrix is proportional to the expected number
        of j -> k transitions.  Entries are floored at eps.
        """
        K = self.num_states
        P = sum([np.sum(Ezzp1, axis=0) for _, Ezzp1 in expectations]) + np.zeros((K, K))
        P = P + eps
        P /= P.sum(axis=-1, keepdims=True)
        P = np.clip(P, eps, 1.0)
        P /= P.sum(axis=-1, keepdims=True)
        self.log_Ps = np.log(P)
