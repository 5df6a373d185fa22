import copy

import autograd.numpy as np
import autograd.numpy.random as npr
npr.seed(0)

import matplotlib
import matplotlib.pyplot as plt

from slds.models import initialize_slds
from slds.util import find_permutation

# Set the parameters of the SLDS
T = 1000                  # number of time bins
num_states = 2            # number of discrete states
latent_dim = 2            # number of latent dimensions
observation_dim = 10      # number of observed dimensions

# Make an SLDS with the true parameters
true_slds = initialize_slds(K=num_states, d=latent_dim, p=observation_dim, seed=0)
states, latents, observations = true_slds.sample(T)

# Start the fit from a perturbed copy of the truth
model = copy.deepcopy(true_slds)
model.transitions.log_Ps = np.log(np.ones((num_states, num_states)) / num_states)
for lds in model.regimes:
    lds.obs_model.C = lds.obs_model.C + 0.1 * npr.randn(observation_dim, latent_dim)

print("Fitting SLDS with variational EM")
fit_result = model.fit(observations)
print("Converged: {} after {} iterations".format(fit_result.converged, len(fit_result.elbos)))

# Permute to match the true states
model.permute(find_permutation(states, fit_result.posterior.mode))
result = model.fit(observations, max_iter=1, verbose=False)
inferred_states = result.posterior.mode
smoothed_observations = model.smooth(result.posterior)

print("True transition matrix")
print(true_slds.transitions.transition_matrix)
print("Inferred transition matrix")
print(model.transitions.transition_matrix)

# Plot the true and inferred states
fig, axs = plt.subplots(3, 1, figsize=(12, 8), sharex=True)
plt.sca(axs[0])
plt.imshow(np.vstack((states, inferred_states)), aspect="auto", cmap="jet")
plt.yticks([0, 1], ["true", "inferred"])
plt.title("discrete states")

plt.sca(axs[1])
plt.plot(result.posterior.forward_backward.Ez)
plt.ylabel("$q(z_t = k)$")

plt.sca(axs[2])
for n in range(3):
    plt.plot(observations[:, n], '-k', lw=2)
    plt.plot(smoothed_observations[:, n], ':', lw=1)
plt.xlabel("time")
plt.ylabel("$y$")
plt.tight_layout()

# Plot the ELBO
plt.figure(figsize=(6, 4))
plt.plot(fit_result.elbos, "-k")
plt.xlabel("iteration")
plt.ylabel("ELBO")
plt.tight_layout()

plt.show()
