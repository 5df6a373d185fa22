import autograd.numpy as np
import scipy.linalg as spla

from slds.util import NumericalInstability


def symmetrize(A):
    return 0.5 * (A + np.swapaxes(A, -1, -2))


def cholesky(A, name="matrix"):
    """
    Lower Cholesky factor of the symmetrized matrix A (or stack of matrices).
    Raises NumericalInstability if A is not positive definite.
    """
    try:
        L = np.linalg.cholesky(symmetrize(A))
    except np.linalg.LinAlgError:
        raise NumericalInstability("{} is not positive definite.".format(name))
    if not np.all(np.isfinite(L)):
        raise NumericalInstability("{} is not positive definite.".format(name))
    return L


def inv_and_logdet(A, name="matrix"):
    """
    Inverse and log determinant of a symmetric positive definite matrix.
    """
    L = cholesky(A, name)
    Ainv = spla.cho_solve((L, True), np.eye(A.shape[-1]))
    return symmetrize(Ainv), 2 * np.sum(np.log(np.diag(L)))


### LDS helpers
#
# The posterior over the continuous latent path x_{1:T} of a linear Gaussian
# state space model is Gaussian with a block tridiagonal precision matrix
#
# J: TD x TD matrix
# h: TD array
#
# so that the posterior mean is J^{-1} h and the posterior entropy is
#
#     H = TD/2 (1 + log 2\pi) - 1/2 log |J|
#       = TD/2 (1 + log 2\pi) - \sum_i log L_{ii}
#
# where L = cholesky(J, lower=True).  We store J in the banded "lower form"
# required by scipy.linalg.solveh_banded and scipy.linalg.cholesky_banded.
###
def convert_block_tridiag_to_banded(H_diag, H_upper_diag):
    """
    convert blocks to banded matrix representation required for scipy.
    we are using the "lower form."
    see https://docs.scipy.org/doc/scipy/reference/generated/scipy.linalg.solveh_banded.html
    """
    T, D, _ = H_diag.shape
    assert H_diag.ndim == 3 and H_diag.shape[2] == D
    assert H_upper_diag.shape == (T - 1, D, D)
    H_lower_diag = np.swapaxes(H_upper_diag, -2, -1)

    ab = np.zeros((2 * D, T * D))

    # Fill in blocks along the diagonal
    for d in range(D):
        # Get indices of (-d)-th diagonal of H_diag
        i = np.arange(d, D)
        j = np.arange(0, D - d)
        h = np.column_stack((H_diag[:, i, j], np.zeros((T, d))))
        ab[d] = h.ravel()

    # Fill in lower left corner of blocks below the diagonal
    for d in range(0, D):
        # Get indices of (-d)-th diagonal of H_diag
        i = np.arange(d, D)
        j = np.arange(0, D - d)
        h = np.column_stack((H_lower_diag[:, i, j], np.zeros((T - 1, d))))
        ab[D + d, :D * (T - 1)] = h.ravel()

    # Fill in upper corner of blocks below the diagonal
    for d in range(1, D):
        # Get indices of (+d)-th diagonal of H_lower_diag
        i = np.arange(0, D - d)
        j = np.arange(d, D)
        h = np.column_stack((np.zeros((T - 1, d)), H_lower_diag[:, i, j]))
        ab[D - d, :D * (T - 1)] += h.ravel()

    return ab


def solve_symm_block_tridiag(H_diag, H_upper_diag, v, ab=None):
    """
    use scipy.linalg.solveh_banded to solve a symmetric block tridiagonal system
    see https://docs.scipy.org/doc/scipy/reference/generated/scipy.linalg.solveh_banded.html
    """
    ab = convert_block_tridiag_to_banded(H_diag, H_upper_diag) \
        if ab is None else ab
    try:
        x = spla.solveh_banded(ab, v.ravel(), lower=True)
    except np.linalg.LinAlgError:
        raise NumericalInstability("Posterior precision of the latent states "
                                   "is not positive definite.")
    return x.reshape(v.shape)


def logdet_banded_symmetric(ab):
    # Get the Cholesky factorization of the banded symmetric matrix
    # in lower form (ab represents the lower bands).  Log determinant
    # is then twice the sum of the log of the diagonal.
    try:
        Lab = spla.cholesky_banded(ab, lower=True)
    except np.linalg.LinAlgError:
        raise NumericalInstability("Posterior precision of the latent states "
                                   "is not positive definite.")
    return 2 * np.sum(np.log(Lab[0]))


def block_tridiag_inverse(H_diag, H_upper_diag):
    """
    Diagonal and first off-diagonal blocks of the inverse of a symmetric
    positive definite block tridiagonal matrix.

    Eliminating blocks from the front gives the conditional precisions

        S_1 = H_{11},   S_t = H_{tt} - H_{t-1,t}^T S_{t-1}^{-1} H_{t-1,t}

    and sweeping back from the last block,

        Sigma_{TT}    = S_T^{-1}
        Sigma_{t,t+1} = -S_t^{-1} H_{t,t+1} Sigma_{t+1,t+1}
        Sigma_{tt}    = S_t^{-1} - Sigma_{t,t+1} (S_t^{-1} H_{t,t+1})^T

    Returns
    -------
    Sigma_diag : (T, D, D) array, the blocks Sigma_{tt}
    Sigma_upper : (T-1, D, D) array, the blocks Sigma_{t,t+1}
    """
    T, D, _ = H_diag.shape
    assert H_upper_diag.shape == (T - 1, D, D)

    # Forward elimination
    Ss = np.zeros((T, D, D))
    Ss[0] = H_diag[0]
    for t in range(1, T):
        U = H_upper_diag[t-1]
        Ss[t] = H_diag[t] - U.T.dot(np.linalg.solve(Ss[t-1], U))

    # Backward substitution
    Sigma_diag = np.zeros((T, D, D))
    Sigma_upper = np.zeros((T - 1, D, D))
    Sigma_diag[-1] = symmetrize(np.linalg.inv(Ss[-1]))
    for t in range(T - 2, -1, -1):
        G = np.linalg.solve(Ss[t], H_upper_diag[t])
        Sigma_upper[t] = -G.dot(Sigma_diag[t+1])
        Sigma_diag[t] = symmetrize(np.linalg.inv(Ss[t]) - Sigma_upper[t].dot(G.T))

    return Sigma_diag, Sigma_upper
