"""
Message passing for Markov chains over K discrete states.

All quantities are kept in log space.  The transition matrices may be
given either as a single (K, K) array or as a (T-1, K, K) stack.
"""
import autograd.numpy as np
import autograd.numpy.random as npr
from autograd.scipy.special import logsumexp

from slds.util import DegenerateLikelihood


def _check_log_likes(log_likes):
    if log_likes.ndim != 2:
        raise ValueError("log_likes must be a (T, K) array.")
    if np.any(np.isnan(log_likes)) or np.any(log_likes == np.inf):
        raise DegenerateLikelihood("Emission log likelihoods contain NaN or +inf.")
    bad = np.where(np.all(np.isneginf(log_likes), axis=1))[0]
    if len(bad) > 0:
        raise DegenerateLikelihood("Every state has zero likelihood at time bin {}."
                                   .format(bad[0]))


def _broadcast_transitions(log_Ps, T, K):
    if log_Ps.ndim == 2:
        log_Ps = np.broadcast_to(log_Ps, (max(T - 1, 0), K, K))
    assert log_Ps.shape == (max(T - 1, 0), K, K)
    return log_Ps


def forward_pass(log_pi0, log_Ps, log_likes):
    T, K = log_likes.shape
    log_Ps = _broadcast_transitions(log_Ps, T, K)

    alphas = np.zeros((T, K))
    alphas[0] = log_pi0 + log_likes[0]
    for t in range(T - 1):
        alphas[t+1] = logsumexp(alphas[t][:, None] + log_Ps[t], axis=0) + log_likes[t+1]
    return alphas


def backward_pass(log_Ps, log_likes):
    T, K = log_likes.shape
    log_Ps = _broadcast_transitions(log_Ps, T, K)

    betas = np.zeros((T, K))
    for t in range(T - 2, -1, -1):
        betas[t] = logsumexp(log_Ps[t] + log_likes[t+1] + betas[t+1], axis=1)
    return betas


def hmm_normalizer(log_pi0, log_Ps, log_likes):
    _check_log_likes(log_likes)
    alphas = forward_pass(log_pi0, log_Ps, log_likes)
    Z = logsumexp(alphas[-1])
    if not np.isfinite(Z):
        raise DegenerateLikelihood("The discrete chain assigns zero probability to the data.")
    return Z


def hmm_expected_states(log_pi0, log_Ps, log_likes):
    """
    Posterior marginals of the discrete states.

    Returns
    -------
    log_Ez : (T, K) array
        log p(z_t = k | data); each row is normalized.
    log_Ezzp1 : (T-1, K, K) array
        log p(z_t = j, z_{t+1} = k | data); each slice is normalized.
    normalizer : float
        log p(data) under the chain.
    alphas, betas : (T, K) arrays
        forward and backward messages.
    """
    _check_log_likes(log_likes)
    T, K = log_likes.shape
    log_Ps = _broadcast_transitions(log_Ps, T, K)

    alphas = forward_pass(log_pi0, log_Ps, log_likes)
    betas = backward_pass(log_Ps, log_likes)
    normalizer = logsumexp(alphas[-1])
    if not np.isfinite(normalizer):
        raise DegenerateLikelihood("The discrete chain assigns zero probability to the data.")

    log_Ez = alphas + betas
    log_Ez = log_Ez - logsumexp(log_Ez, axis=1, keepdims=True)

    log_Ezzp1 = alphas[:-1, :, None] + log_Ps + (log_likes[1:] + betas[1:])[:, None, :]
    log_Ezzp1 = log_Ezzp1 - logsumexp(log_Ezzp1, axis=(1, 2), keepdims=True)

    return log_Ez, log_Ezzp1, normalizer, alphas, betas


def hmm_filter(log_pi0, log_Ps, log_likes):
    """
    Filtered state probabilities p(z_t | data_{1:t}).
    """
    _check_log_likes(log_likes)
    alphas = forward_pass(log_pi0, log_Ps, log_likes)
    return np.exp(alphas - logsumexp(alphas, axis=1, keepdims=True))


def viterbi(log_pi0, log_Ps, log_likes):
    """
    Most likely state sequence argmax_z p(z | data).
    """
    _check_log_likes(log_likes)
    T, K = log_likes.shape
    log_Ps = _broadcast_transitions(log_Ps, T, K)

    # Run the max-product recursion backward, storing the best next state
    scores = np.zeros((T, K))
    args = np.zeros((T, K), dtype=int)
    for t in range(T - 2, -1, -1):
        vals = log_Ps[t] + scores[t+1] + log_likes[t+1]
        args[t+1] = vals.argmax(axis=1)
        scores[t] = vals.max(axis=1)

    # Trace forward to recover the path
    z = np.zeros(T, dtype=int)
    z[0] = (scores[0] + log_pi0 + log_likes[0]).argmax()
    for t in range(1, T):
        z[t] = args[t, z[t-1]]
    return z


def hmm_sample(log_pi0, log_Ps, log_likes):
    """
    Draw a state sequence from p(z | data) by forward filtering,
    backward sampling.
    """
    _check_log_likes(log_likes)
    T, K = log_likes.shape
    log_Ps = _broadcast_transitions(log_Ps, T, K)
    alphas = forward_pass(log_pi0, log_Ps, log_likes)

    def _sample(log_p):
        p = np.exp(log_p - logsumexp(log_p))
        return npr.choice(K, p=p / p.sum())

    z = np.zeros(T, dtype=int)
    z[-1] = _sample(alphas[-1])
    for t in range(T - 2, -1, -1):
        z[t] = _sample(alphas[t] + log_Ps[t][:, z[t+1]])
    return z


def hmm_elbo(log_pi0, log_Ps, log_likes, log_Ez, log_Ezzp1, eps=1e-10):
    """
    Variational lower bound contributed by the discrete chain,

        E_q[log p(data, z)] - E_q[log q(z)],

    where q(z) is the Markov chain with single and pairwise marginals
    exp(log_Ez) and exp(log_Ezzp1).  Probabilities are clamped to
    [eps, 1] before taking logs, so this is a (slightly biased) stable
    evaluation rather than an exact one.
    """
    T, K = log_likes.shape
    log_Ps = _broadcast_transitions(log_Ps, T, K)
    log_eps = np.log(eps)

    Ez = np.exp(log_Ez)
    Ezzp1 = np.exp(log_Ezzp1)
    safe_log_pi0 = np.log(np.clip(np.exp(log_pi0), eps, 1.0))
    safe_log_Ps = np.log(np.clip(np.exp(log_Ps), eps, 1.0))

    # E_q[log p(data, z)]: initial state, transitions and emissions
    log_p = np.sum(Ez[0] * safe_log_pi0)
    log_p += np.sum(Ezzp1 * safe_log_Ps)
    log_p += np.sum(Ez * log_likes)

    # E_q[log q(z)] = E[log q(z_1)] + sum_t E[log q(z_{t+1} | z_t)]
    safe_log_Ez = np.clip(log_Ez, log_eps, 0.0)
    safe_log_Ezzp1 = np.clip(log_Ezzp1, log_eps, 0.0)
    log_q = np.sum(Ez[0] * safe_log_Ez[0])
    log_q += np.sum(Ezzp1 * (safe_log_Ezzp1 - safe_log_Ez[:-1, :, None]))

    return log_p - log_q
