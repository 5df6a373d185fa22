import copy
import warnings

import pytest

import autograd.numpy as np
import autograd.numpy.random as npr

from slds.core import EStepResult, FitResult
from slds.lds import smooth
from slds.models import HMM, LDS, SLDS, initialize_slds
from slds.posterior import SwitchingPosterior
from slds.util import find_permutation, DegenerateLikelihood


def rotation(theta):
    return np.array([[np.cos(theta), -np.sin(theta)],
                     [np.sin(theta), np.cos(theta)]])


def make_slds(N=6, D=2, Ps=((.95, .05), (.05, .95)), fit_params=("x0", "P0", "A", "Q", "C", "R")):
    regimes = [LDS(0.95 * rotation(theta), 0.05 * np.eye(D), npr.randn(N, D), 0.01 * np.eye(N),
                   x0=np.zeros(D), P0=0.1 * np.eye(D), fit_params=fit_params)
               for theta in (np.pi / 20, np.pi / 4)]
    return SLDS(regimes, pi0=np.ones(2) / 2, Ps=np.array(Ps))


def primed_posterior(model, y):
    posterior = SwitchingPosterior(model, y)
    model._smooth_regimes(posterior)
    return posterior


def test_sample(T=100):
    npr.seed(0)
    model = make_slds()
    z, x, y = model.sample(T)
    assert z.shape == (T,)
    assert x.shape == (T, 2, 2)
    assert y.shape == (T, 6)

    z, x, y = model.sample(T, with_noise=False)
    for t in range(T):
        assert np.allclose(y[t], model.regimes[z[t]].obs_model.C.dot(x[t, z[t]]))


def test_initialize_slds():
    model = initialize_slds(K=3, d=3, p=5)
    assert model.num_states == 3
    assert model.latent_dim == 3
    assert model.observation_dim == 5
    assert np.allclose(model.transitions.transition_matrix.sum(axis=1), 1)
    assert np.allclose(model.init_state_distn.init_state_distn.sum(), 1)

    # Same seed, same model
    other = initialize_slds(K=3, d=3, p=5)
    for a, b in zip(model.regimes, other.regimes):
        assert np.allclose(a.obs_model.C, b.obs_model.C)


def test_responsibilities_are_normalized(T=100):
    npr.seed(1)
    model = make_slds()
    _, _, y = model.sample(T)
    posterior = primed_posterior(model, y)
    model.variational_expectation(posterior, n_jobs=1)

    Ez, Ezzp1 = posterior.expectations
    assert Ez.shape == (T, 2)
    assert Ezzp1.shape == (T-1, 2, 2)
    assert np.allclose(Ez.sum(axis=1), 1)
    assert np.allclose(Ezzp1.sum(axis=(1, 2)), 1)


def test_inner_elbo_is_monotone(T=100):
    npr.seed(2)
    model = make_slds()
    _, _, y = model.sample(T)
    posterior = primed_posterior(model, y)

    result = model.variational_expectation(posterior)
    assert isinstance(result, EStepResult)
    assert result.converged
    assert result.elbo == result.elbos[-1]
    assert np.all(np.diff(result.elbos) >= -1e-6)
    assert np.allclose(result.elbo, posterior.marginal_likelihood)


def test_inner_budget_warns(T=100):
    npr.seed(3)
    model = make_slds()
    _, _, y = model.sample(T)
    posterior = primed_posterior(model, y)

    with warnings.catch_warnings(record=True) as w:
        warnings.simplefilter("always")
        result = model.variational_expectation(posterior, tol=0, max_iters=3, n_jobs=1)
    assert not result.converged
    assert len(result.elbos) == 3
    assert any("did not converge" in str(wi.message) for wi in w)


def test_outer_elbo_is_monotone(T=100):
    npr.seed(4)
    true_model = make_slds()
    _, _, y = true_model.sample(T)

    model = make_slds()
    result = model.fit(y, max_iter=20, tol=0, n_jobs=1, verbose=False)
    assert isinstance(result, FitResult)
    assert len(result.elbos) == 20
    assert len(result.param_diffs) == 20
    assert not result.converged
    assert np.all(np.diff(result.elbos) >= -1e-6)


def test_small_step_at_true_parameters(T=150):
    npr.seed(5)
    true_model = make_slds(fit_params=("A", "Q", "C"))
    _, _, y = true_model.sample(T)

    model = copy.deepcopy(true_model)
    at_truth = model.fit(y, max_iter=1, n_jobs=1, verbose=False).param_diffs[0]

    model = copy.deepcopy(true_model)
    for lds in model.regimes:
        lds.obs_model.C = lds.obs_model.C + 0.5 * npr.randn(*lds.obs_model.C.shape)
    perturbed = model.fit(y, max_iter=1, n_jobs=1, verbose=False).param_diffs[0]

    assert at_truth < 0.5 * perturbed


def test_recovers_self_transitions(T=150):
    npr.seed(6)
    true_model = make_slds(fit_params=("A", "Q", "C"))
    z, _, y = true_model.sample(T)

    model = copy.deepcopy(true_model)
    model.transitions.log_Ps = np.log(np.array([[.6, .4], [.4, .6]]))
    for lds in model.regimes:
        lds.obs_model.C = lds.obs_model.C + 0.1 * npr.randn(*lds.obs_model.C.shape)

    result = model.fit(y, max_iter=500, n_jobs=1, verbose=False)
    assert result.converged

    P_true = true_model.transitions.transition_matrix
    P_fit = model.transitions.transition_matrix
    assert np.allclose(P_fit.sum(axis=1), 1)
    assert np.allclose(np.diag(P_fit), np.diag(P_true), atol=0.2)

    # The regimes keep their labels and explain most time bins
    zhat = result.posterior.mode
    assert np.all(find_permutation(z, zhat, 2, 2) == np.arange(2))
    assert np.mean(zhat == z) > 0.8


def test_single_regime_reduces_to_lds(T=50):
    npr.seed(7)
    lds = make_slds().regimes[0]
    _, y = lds.sample(T)
    model = SLDS([copy.deepcopy(lds)])

    posterior = primed_posterior(model, y)
    model.variational_expectation(posterior, n_jobs=1)
    assert np.allclose(posterior.forward_backward.Ez, 1)

    x_smooth, p_smooth, p_smooth_tt1, _ = smooth(lds, y)
    fs = posterior.filter_smooth[0]
    assert np.allclose(fs.x_smooth, x_smooth)
    assert np.allclose(fs.p_smooth, p_smooth)
    assert np.allclose(fs.p_smooth_tt1, p_smooth_tt1)
    assert np.allclose(model.elbo(posterior), lds.log_likelihood(y))

    model.m_step(posterior)
    assert np.allclose(model.transitions.transition_matrix, [[1.]])
    assert np.allclose(model.init_state_distn.init_state_distn, [1.])


def test_update_R_is_off_by_default(T=100):
    npr.seed(8)
    model = make_slds()
    _, _, y = model.sample(T)
    Rs = [lds.obs_model.R.copy() for lds in model.regimes]

    model.fit(y, max_iter=2, n_jobs=1, verbose=False)
    for R, lds in zip(Rs, model.regimes):
        assert np.allclose(lds.obs_model.R, R)

    model.fit(y, max_iter=2, update_R=True, n_jobs=1, verbose=False)
    for R, lds in zip(Rs, model.regimes):
        assert not np.allclose(lds.obs_model.R, R)


def test_smooth_and_initialize(T=100):
    npr.seed(9)
    true_model = make_slds()
    _, _, y = true_model.sample(T)

    model = make_slds()
    model.initialize(y)
    for lds in model.regimes:
        assert lds.obs_model.C.shape == (6, 2)
        assert np.all(np.linalg.eigvalsh(lds.obs_model.R) > 0)

    result = model.fit(y, max_iter=3, n_jobs=1, verbose=False)
    yhat = model.smooth(result.posterior)
    assert yhat.shape == y.shape
    assert model.posterior_sample(result.posterior).shape == (T,)

    with pytest.raises(Exception):
        model.fit(y, method="svi")


def test_permute(T=50):
    npr.seed(10)
    model = make_slds(Ps=((.9, .1), (.3, .7)))
    C0 = model.regimes[0].obs_model.C.copy()
    P = model.transitions.transition_matrix
    model.permute(np.array([1, 0]))
    assert np.allclose(model.regimes[1].obs_model.C, C0)
    assert np.allclose(model.transitions.transition_matrix, P[::-1, ::-1])


def test_hmm_em(T=300):
    npr.seed(11)
    true_hmm = HMM(3, 2)
    true_hmm.observations.mus = 5 * npr.randn(3, 2)
    true_hmm.observations.Sigmas = np.tile(0.5 * np.eye(2), (3, 1, 1))
    z, y = true_hmm.sample(T)

    hmm = HMM(3, 2)
    lls = hmm.fit(y, num_em_iters=30, verbose=False)
    assert np.all(np.diff(lls) >= -1e-6)

    hmm.permute(find_permutation(z, hmm.most_likely_states(y)))
    assert np.mean(hmm.most_likely_states(y) == z) > 0.9
    assert np.allclose(hmm.filter(y).sum(axis=1), 1)
    assert hmm.smooth(y).shape == y.shape

    with pytest.raises(DegenerateLikelihood):
        hmm.observations.mus[0] = np.nan
        hmm.log_likelihood(y)
