import numpy as np

# Marginal (collapsed) prior of the linear predictors implied by the DLM:
#   eta^T ~ MN(B, U, Sigma) with eta^T the (D-1) x N matrix of response rows,
#   integrating Theta_0, ..., Theta_T out of the state equation.


def _G_powers(G, max_power):
    G_pows = [np.eye(G.shape[0])]
    for _ in range(max_power):
        G_pows.append(G @ G_pows[-1])
    return G_pows


def _observation_checker(observations):
    observations = np.asarray(observations)
    if observations.ndim != 1 or observations.shape[0] == 0:
        raise ValueError("observations should be a non-empty sequence of time indices")
    if np.any(observations < 0) or not np.all(observations == np.round(observations)):
        raise ValueError("observation times should be non-negative integers")
    return observations.astype(int)


def dlm_B(F, G, M0, observations):
    "(D-1) x N, column i = (F^T G^{t_i} M0)^T"
    observations = _observation_checker(observations)
    F = np.reshape(F, (-1, 1))
    FG = [np.transpose(F) @ G_pow for G_pow in _G_powers(G, int(np.max(observations)))]
    return np.column_stack([np.transpose(FG[t] @ M0) for t in observations])


def dlm_U(F, G, W, C0, observations, W_scale=1.0, gamma_scale=0.0):
    "N x N row covariance of eta; the defaults (W_scale=1, gamma_scale=0) leave both scales out"
    observations = _observation_checker(observations)
    F = np.reshape(F, (-1, 1))
    FG = [np.transpose(F) @ G_pow for G_pow in _G_powers(G, int(np.max(observations)))] #F^T G^k, 1 x system_dim

    num_obs = observations.shape[0]
    U = np.zeros((num_obs, num_obs))
    for i in range(num_obs):
        for j in range(i, num_obs):
            ti, tj = observations[i], observations[j]
            cov_ij = FG[ti] @ C0 @ np.transpose(FG[tj])
            for k in range(1, min(ti, tj)+1):
                cov_ij = cov_ij + FG[ti-k] @ W @ np.transpose(FG[tj-k])
            U[i, j] = W_scale * cov_ij[0, 0]
            U[j, i] = U[i, j]
    return U + gamma_scale * np.eye(num_obs)


if __name__=="__main__":
    # random walk: U_ij = C0 + min(t_i, t_j) W
    print(dlm_U(np.array([1]), np.array([[1]]), np.array([[1]]), np.array([[1]]), [1, 2, 4]))
    print(dlm_B(np.array([1, 0]), np.array([[1, 1],[0, 1]]), np.array([[0, 1],[1, 0]]), [0, 1, 2, 3]))
