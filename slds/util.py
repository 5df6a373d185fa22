from functools import wraps

import autograd.numpy as np
import autograd.numpy.random as npr


class NumericalInstability(ValueError):
    """
    Raised when a covariance (or posterior precision) that must be
    positive definite fails its Cholesky factorization.
    """
    pass


class DegenerateLikelihood(ValueError):
    """
    Raised when the discrete chain cannot be normalized: some time step
    has zero likelihood under every state, the scores contain NaNs, or
    a smoother is asked to use weights that are all zero.
    """
    pass


def check_data(f):
    """
    Coerce the observations passed as the first argument of a method
    into a (time_bins, observation_dim) float array and make sure they
    match the model.
    """
    @wraps(f)
    def wrapper(self, data, *args, **kwargs):
        data = np.asarray(data, dtype=float)
        if data.ndim == 1:
            data = data[:, None]
        if data.ndim != 2:
            raise ValueError("data must be a (time_bins, observation_dim) array. "
                             "Got an array with shape {}".format(data.shape))
        if data.shape[0] < 1:
            raise ValueError("data must contain at least one time bin.")
        if data.shape[1] != self.observation_dim:
            raise ValueError("data has {} columns but the model expects observation_dim={}"
                             .format(data.shape[1], self.observation_dim))
        if not np.all(np.isfinite(data)):
            raise ValueError("data contains NaNs or infs.")
        return f(self, data, *args, **kwargs)
    return wrapper


def check_weights(weights, T):
    """
    Validate the per time bin weights passed to a smoother.
    Returns a float array of shape (T,).
    """
    if weights is None:
        return np.ones(T)

    weights = np.asarray(weights, dtype=float).ravel()
    if weights.shape != (T,):
        raise ValueError("Expected {} weights, got {}".format(T, weights.shape[0]))
    if np.any(np.isnan(weights)) or np.any(weights < 0):
        raise DegenerateLikelihood("Smoothing weights must be non-negative numbers.")
    if not np.any(weights > 0):
        raise DegenerateLikelihood("Smoothing weights are all zero; the observations "
                                   "carry no information for this model.")
    return weights


def random_rotation(n, theta=None):
    if theta is None:
        # Sample a random, slow rotation
        theta = 0.5 * np.pi * npr.rand()

    if n == 1:
        return npr.rand() * np.eye(1)

    rot = np.array([[np.cos(theta), -np.sin(theta)],
                    [np.sin(theta), np.cos(theta)]])
    out = np.eye(n)
    out[:2, :2] = rot
    q = np.linalg.qr(npr.randn(n, n))[0]
    return q.dot(out).dot(q.T)


def find_permutation(z1, z2, K1=None, K2=None):
    """
    Find the permutation of the states in z2 that best matches z1,
    using the Hungarian algorithm on the overlap counts.
    """
    from scipy.optimize import linear_sum_assignment
    K1 = max(z1.max(), z2.max()) + 1 if K1 is None else K1
    K2 = max(z1.max(), z2.max()) + 1 if K2 is None else K2

    assert z1.shape == z2.shape
    assert z1.min() >= 0 and z1.max() < K1
    assert z2.min() >= 0 and z2.max() < K2

    # Compute the overlap between the true and inferred state sequences
    overlap = np.zeros((K1, K2))
    for k1 in range(K1):
        for k2 in range(K2):
            overlap[k1, k2] = np.sum((z1 == k1) & (z2 == k2))

    # Maximize the overlap
    _, perm = linear_sum_assignment(-overlap)

    # Pad any unused states
    if K2 > K1:
        unused = np.array(list(set(np.arange(K2)) - set(perm)))
        perm = np.concatenate((perm, unused))

    return perm
