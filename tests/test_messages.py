import itertools

import pytest

import autograd.numpy as np
import autograd.numpy.random as npr
from autograd import grad
from autograd.scipy.special import logsumexp

from slds.messages import forward_pass, backward_pass, hmm_normalizer, \
    hmm_expected_states, hmm_filter, hmm_sample, hmm_elbo, viterbi
from slds.util import DegenerateLikelihood


def forward_pass_np(log_pi0, log_Ps, log_likes):
    T, K = log_likes.shape
    alphas = []
    alphas.append(log_likes[0] + log_pi0)
    for t in range(T-1):
        anext = logsumexp(alphas[t] + log_Ps[t].T, axis=1)
        anext = anext + log_likes[t+1]
        alphas.append(anext)
    return np.array(alphas)


def hmm_normalizer_np(log_pi0, log_Ps, ll):
    alphas = forward_pass_np(log_pi0, log_Ps, ll)
    Z = logsumexp(alphas[-1])
    return Z


def make_parameters(T, K):
    log_pi0 = -np.log(K) * np.ones(K)
    As = npr.rand(T-1, K, K)
    As /= As.sum(axis=2, keepdims=True)
    log_Ps = np.log(As)
    ll = npr.randn(T, K)
    return log_pi0, log_Ps, ll


def enumerate_paths(log_pi0, log_Ps, ll):
    T, K = ll.shape
    paths = np.array(list(itertools.product(range(K), repeat=T)))
    log_joints = np.array([log_pi0[z[0]] +
                           sum([log_Ps[t, z[t], z[t+1]] for t in range(T-1)]) +
                           sum([ll[t, z[t]] for t in range(T)])
                           for z in paths])
    return paths, log_joints


def test_forward_pass(T=10, K=3):
    npr.seed(0)
    log_pi0, log_Ps, ll = make_parameters(T, K)
    assert np.allclose(forward_pass(log_pi0, log_Ps, ll),
                       forward_pass_np(log_pi0, log_Ps, ll))


def test_normalizer_matches_backward_pass(T=10, K=3):
    npr.seed(1)
    log_pi0, log_Ps, ll = make_parameters(T, K)
    betas = backward_pass(log_Ps, ll)
    assert np.allclose(hmm_normalizer(log_pi0, log_Ps, ll),
                       logsumexp(log_pi0 + ll[0] + betas[0]))


def test_stationary_transitions_broadcast(T=8, K=4):
    npr.seed(2)
    log_pi0, _, ll = make_parameters(T, K)
    P = npr.rand(K, K)
    log_P = np.log(P / P.sum(axis=1, keepdims=True))
    stacked = np.tile(log_P[None, :, :], (T-1, 1, 1))
    for a, b in zip(hmm_expected_states(log_pi0, log_P, ll),
                    hmm_expected_states(log_pi0, stacked, ll)):
        assert np.allclose(a, b)


def test_expected_states_normalized(T=20, K=4):
    npr.seed(3)
    log_pi0, log_Ps, ll = make_parameters(T, K)
    log_Ez, log_Ezzp1, _, _, _ = hmm_expected_states(log_pi0, log_Ps, ll)
    assert log_Ez.shape == (T, K)
    assert log_Ezzp1.shape == (T-1, K, K)
    assert np.allclose(np.exp(log_Ez).sum(axis=1), 1)
    assert np.allclose(np.exp(log_Ezzp1).sum(axis=(1, 2)), 1)

    # Pairwise marginals are consistent with the single marginals
    Ezzp1 = np.exp(log_Ezzp1)
    assert np.allclose(Ezzp1.sum(axis=2), np.exp(log_Ez[:-1]))
    assert np.allclose(Ezzp1.sum(axis=1), np.exp(log_Ez[1:]))


def test_expected_states_brute_force(T=4, K=3):
    npr.seed(4)
    log_pi0, log_Ps, ll = make_parameters(T, K)
    log_Ez, log_Ezzp1, normalizer, _, _ = hmm_expected_states(log_pi0, log_Ps, ll)

    paths, log_joints = enumerate_paths(log_pi0, log_Ps, ll)
    assert np.allclose(normalizer, logsumexp(log_joints))

    probs = np.exp(log_joints - logsumexp(log_joints))
    Ez = np.zeros((T, K))
    Ezzp1 = np.zeros((T-1, K, K))
    for z, p in zip(paths, probs):
        Ez[np.arange(T), z] += p
        Ezzp1[np.arange(T-1), z[:-1], z[1:]] += p
    assert np.allclose(np.exp(log_Ez), Ez)
    assert np.allclose(np.exp(log_Ezzp1), Ezzp1)


def test_expected_states_are_gradient_of_normalizer(T=10, K=3):
    npr.seed(5)
    log_pi0, log_Ps, ll = make_parameters(T, K)
    log_Ez, _, _, _, _ = hmm_expected_states(log_pi0, log_Ps, ll)
    dll = grad(hmm_normalizer_np, argnum=2)(log_pi0, log_Ps, ll)
    assert np.allclose(np.exp(log_Ez), dll)


def test_viterbi_brute_force(T=5, K=3):
    npr.seed(6)
    log_pi0, log_Ps, ll = make_parameters(T, K)
    paths, log_joints = enumerate_paths(log_pi0, log_Ps, ll)
    assert np.all(viterbi(log_pi0, log_Ps, ll) == paths[np.argmax(log_joints)])


def test_filter_ends_at_smoothed_marginal(T=4, K=2):
    npr.seed(7)
    log_pi0, log_Ps, ll = make_parameters(T, K)
    filtered = hmm_filter(log_pi0, log_Ps, ll)
    assert np.allclose(filtered.sum(axis=1), 1)

    # The last filtered marginal is the last smoothed marginal
    log_Ez, _, _, _, _ = hmm_expected_states(log_pi0, log_Ps, ll)
    assert np.allclose(filtered[-1], np.exp(log_Ez[-1]))


def test_hmm_sample(T=50, K=3):
    npr.seed(8)
    log_pi0, log_Ps, ll = make_parameters(T, K)
    z = hmm_sample(log_pi0, log_Ps, ll)
    assert z.shape == (T,)
    assert z.min() >= 0 and z.max() < K

    # A state with -inf likelihood is never sampled
    ll[:, 0] = -np.inf
    z = hmm_sample(log_pi0, log_Ps, ll)
    assert np.all(z > 0)


def test_hmm_elbo_is_tight_at_posterior(T=10, K=3):
    npr.seed(9)
    log_pi0, log_Ps, ll = make_parameters(T, K)
    log_Ez, log_Ezzp1, normalizer, _, _ = hmm_expected_states(log_pi0, log_Ps, ll)
    assert np.allclose(hmm_elbo(log_pi0, log_Ps, ll, log_Ez, log_Ezzp1), normalizer)


def test_hmm_elbo_is_a_lower_bound(T=10, K=3):
    npr.seed(10)
    log_pi0, log_Ps, ll = make_parameters(T, K)
    normalizer = hmm_normalizer(log_pi0, log_Ps, ll)

    # Any other Markov chain gives a lower value
    for _ in range(5):
        log_Ez, log_Ezzp1, _, _, _ = hmm_expected_states(log_pi0, log_Ps, npr.randn(T, K))
        assert hmm_elbo(log_pi0, log_Ps, ll, log_Ez, log_Ezzp1) <= normalizer + 1e-8


def test_degenerate_likelihoods(T=10, K=3):
    npr.seed(11)
    log_pi0, log_Ps, ll = make_parameters(T, K)

    bad = ll.copy()
    bad[4] = -np.inf
    with pytest.raises(DegenerateLikelihood):
        hmm_expected_states(log_pi0, log_Ps, bad)
    with pytest.raises(DegenerateLikelihood):
        viterbi(log_pi0, log_Ps, bad)

    bad = ll.copy()
    bad[2, 1] = np.nan
    with pytest.raises(DegenerateLikelihood):
        hmm_normalizer(log_pi0, log_Ps, bad)

    # Each state is possible somewhere, but no path connects them
    ll = np.zeros((3, 2))
    ll[0, 1] = ll[1, 0] = ll[2, 1] = -np.inf
    log_P = np.array([[0., -np.inf], [-np.inf, 0.]])
    with pytest.raises(DegenerateLikelihood):
        hmm_expected_states(np.log(np.ones(2) / 2), log_P, ll)
