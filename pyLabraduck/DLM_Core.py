from typing import NamedTuple

import numpy as np
import scipy.linalg

from pyLabraduck.rv_gen_matrix_variate import make_random_generator, Sampler_matrix_normal, Sampler_InvWishart


class DLM_model_container:
    # matrix-variate DLM with time-invariant F, G, W (notation: following West(1997))
    # obser eta_t = F^T Theta_t + v_t,          v_t ~ N(0, gamma_scale * Sigma)  (row vector, 1 x (D-1))
    # state Theta_t = G Theta_{t-1} + Omega_t,  Omega_t ~ MN(0, W_scale * W, Sigma)
    # init  Theta_0 ~ MN(M0, W_scale * C0, Sigma)
    # Sigma ~ inv.wishart(upsilon, Xi), shared by the state and the observation equation
    def __init__(self):
        self.F_obs_eq_design = None #system_dim x 1
        self.G_sys_eq_transition = None #system_dim x system_dim
        self.W_sys_eq_covariance = None #system_dim x system_dim
        self.W_scale = 1.0
        self.gamma_scale = 1.0

        self.upsilon = None
        self.Xi = None #(D-1) x (D-1)
        self.M0 = None #system_dim x (D-1)
        self.C0 = None #system_dim x system_dim

        self.observations = None #time index of each response row

    def _square_checker(self, mat, name):
        if mat.ndim != 2 or mat.shape[0] != mat.shape[1]:
            raise ValueError(name + " should be a square matrix")

    # == setters (all constant on time) ==
    def set_F_const_design_mat(self, F: np.ndarray):
        "F, the column vector (not F^T)"
        F = np.asarray(F, dtype=float)
        if F.ndim == 1:
            F = np.reshape(F, (F.shape[0], 1))
        if F.ndim != 2 or F.shape[1] != 1:
            raise ValueError("F should be a system_dim x 1 column")
        self.F_obs_eq_design = F

    def set_G_const_transition_mat(self, G: np.ndarray):
        G = np.atleast_2d(np.asarray(G, dtype=float))
        self._square_checker(G, "G")
        self.G_sys_eq_transition = G

    def set_W_const_state_error_cov(self, W: np.ndarray, W_scale: float = 1.0):
        W = np.atleast_2d(np.asarray(W, dtype=float))
        self._square_checker(W, "W")
        if W_scale < 0:
            raise ValueError("W_scale should be >=0")
        self.W_sys_eq_covariance = W
        self.W_scale = float(W_scale)

    def set_gamma_scale(self, gamma_scale: float):
        if gamma_scale < 0:
            raise ValueError("gamma_scale should be >=0")
        self.gamma_scale = float(gamma_scale)

    def set_inverse_wishart_prior(self, upsilon: float, Xi: np.ndarray):
        Xi = np.atleast_2d(np.asarray(Xi, dtype=float))
        self._square_checker(Xi, "Xi")
        if upsilon <= Xi.shape[0]-1:
            raise ValueError("upsilon should be > D-2")
        if not np.allclose(Xi, Xi.T):
            raise ValueError("Xi should be symmetric")
        if np.any(np.linalg.eigvalsh(Xi) <= 0):
            raise ValueError("Xi should be positive definite")
        self.upsilon = upsilon
        self.Xi = Xi

    def set_initial_state_prior(self, M0: np.ndarray, C0: np.ndarray):
        M0 = np.asarray(M0, dtype=float)
        if M0.ndim == 1:
            M0 = np.reshape(M0, (M0.shape[0], 1))
        C0 = np.atleast_2d(np.asarray(C0, dtype=float))
        self._square_checker(C0, "C0")
        if not np.allclose(C0, C0.T):
            raise ValueError("C0 should be symmetric")
        if M0.shape[0] != C0.shape[0]:
            raise ValueError("M0 and C0 should have the same number of rows")
        self.M0 = M0
        self.C0 = C0

    def set_observation_times(self, observations):
        observations = np.asarray(observations, dtype=float)
        if observations.ndim != 1 or observations.shape[0] == 0:
            raise ValueError("observations should be a non-empty sequence of time indices")
        if not np.all(observations == np.round(observations)):
            raise ValueError("observation times should be integers")
        if np.any(observations < 0):
            raise ValueError("observation times should be >=0")
        if np.max(observations) < 1:
            raise ValueError("the last observation time should be >=1")
        self.observations = observations.astype(int)
    # == end setters ==

    def get_T(self):
        # the earliest time is the baseline 0
        return int(np.max(self.observations))

    def get_system_dim(self):
        return self.G_sys_eq_transition.shape[1]


class DLM_factorization_error(np.linalg.LinAlgError):
    def __init__(self, time_index, message):
        self.time_index = time_index
        super().__init__("at t=" + str(time_index) + ": " + message)


class DLM_step_record(NamedTuple):
    t: int
    obs_row: int | None
    a_prior_mean: np.ndarray #A_t=E[Theta_t|D_{t-1}]
    R_prior_var: np.ndarray #R_t=Var(Theta_t|D_{t-1}) (row covariance)
    m_posterior_mean: np.ndarray #M_t=E[Theta_t|D_t]
    C_posterior_var: np.ndarray #C_t=Var(Theta_t|D_t) (row covariance)
    f_one_step_forecast_mean: np.ndarray | None #f_t=E[eta_t|D_{t-1}]
    q_one_step_forecast_var: float | None #q_t, forecast scale
    e_one_step_forecast_err: np.ndarray | None #e_t = eta_t - f_t


class DLM_fit_config(NamedTuple):
    # copy of the model taken at the start of a filtering run; the smoother reads this one
    F_obs_eq_design: np.ndarray
    G_sys_eq_transition: np.ndarray
    W_sys_eq_covariance: np.ndarray
    W_scale: float
    gamma_scale: float
    observations: np.ndarray


class DLM_utility:
    def container_checker(self, model_inst: DLM_model_container):
        if model_inst.F_obs_eq_design is None:
            raise ValueError("specify F")
        if model_inst.G_sys_eq_transition is None:
            raise ValueError("specify G")
        if model_inst.W_sys_eq_covariance is None:
            raise ValueError("specify W")
        if model_inst.upsilon is None or model_inst.Xi is None:
            raise ValueError("specify upsilon, Xi")
        if model_inst.M0 is None or model_inst.C0 is None:
            raise ValueError("specify M0, C0")
        if model_inst.observations is None:
            raise ValueError("specify observation times")

        system_dim = model_inst.get_system_dim()
        for name, mat in [("F", model_inst.F_obs_eq_design), ("W", model_inst.W_sys_eq_covariance),
                          ("M0", model_inst.M0), ("C0", model_inst.C0)]:
            if mat.shape[0] != system_dim:
                raise ValueError(name + " should have " + str(system_dim) + " rows (system_dim)")
        if model_inst.M0.shape[1] != model_inst.Xi.shape[0]:
            raise ValueError("M0 should have D-1=" + str(model_inst.Xi.shape[0]) + " columns, same as Xi")

    def observation_index_map(self, observations, T) -> dict:
        # t -> row of the response matrix.
        # repeated times keep the last row in sequence order
        obs_idx_map = {}
        for row, t in enumerate(observations):
            if 1 <= t <= T:
                obs_idx_map[int(t)] = row
        return obs_idx_map

    # == flattened (column-major) storage ==
    def pack_sample(self, mat: np.ndarray) -> np.ndarray:
        return np.reshape(mat, (-1,), order="F")

    def unpack_sample(self, samples: np.ndarray, no_rows: int, no_cols: int, sample_idx: int) -> np.ndarray:
        if samples.shape[0] != no_rows*no_cols:
            raise ValueError("samples should have " + str(no_rows*no_cols) + " rows, got " + str(samples.shape[0]))
        if not -samples.shape[1] <= sample_idx < samples.shape[1]:
            raise ValueError("sample_idx out of range")
        return np.reshape(samples[:, sample_idx], (no_rows, no_cols), order="F")

    def stack_samples(self, mat_seq: list) -> np.ndarray:
        return np.column_stack([self.pack_sample(mat) for mat in mat_seq])
    # ==

    def lower_cholesky(self, mat, time_index, name) -> np.ndarray:
        try:
            return scipy.linalg.cholesky((mat + np.transpose(mat))/2, lower=True)
        except np.linalg.LinAlgError as e:
            raise DLM_factorization_error(time_index, name + " is not positive definite") from e

    def draw_Sigma_reverse_cholesky(self, iw_sampler: Sampler_InvWishart, upsilon_t, Xi_t, time_index) -> np.ndarray:
        try:
            return iw_sampler.sampler_reverse_cholesky(upsilon_t, Xi_t, check=False)
        except np.linalg.LinAlgError as e:
            raise DLM_factorization_error(time_index, "inverse-Wishart scale Xi_t is not positive definite") from e

    def psd_factor(self, mat) -> np.ndarray:
        # L with L @ L^T = mat, for positive semi-definite mat
        eigvals, eigvecs = np.linalg.eigh((mat + np.transpose(mat))/2)
        return eigvecs @ np.diag(np.sqrt(np.clip(eigvals, 0, None)))


class DLM_simulator:
    def __init__(self, model_inst: DLM_model_container, set_seed=None):
        self.util_inst = DLM_utility()
        self.util_inst.container_checker(model_inst)
        self.DLM_model = model_inst

        self.Sigma = None
        self.theta_seq = []
        self.eta_seq = []
        self.random_generator = make_random_generator(set_seed)
        self.mn_sampler = Sampler_matrix_normal(random_generator=self.random_generator)
        self.iw_sampler = Sampler_InvWishart(random_generator=self.random_generator)

    def simulate_data(self):
        model = self.DLM_model
        self.theta_seq = []
        self.eta_seq = []

        U_Sigma = self.iw_sampler.sampler_reverse_cholesky(model.upsilon, model.Xi)
        self.Sigma = U_Sigma @ np.transpose(U_Sigma)

        theta_0 = self.mn_sampler.sampler(model.M0, self.util_inst.psd_factor(model.C0 * model.W_scale), U_Sigma)
        self.theta_seq.append(theta_0)
        L_W = self.util_inst.psd_factor(model.W_sys_eq_covariance * model.W_scale)
        zero_mean = np.zeros(model.M0.shape)
        for _ in range(model.get_T()):
            theta_t = model.G_sys_eq_transition @ self.theta_seq[-1] + self.mn_sampler.sampler(zero_mean, L_W, U_Sigma)
            self.theta_seq.append(theta_t)

        Ft = np.transpose(model.F_obs_eq_design)
        for t in model.observations:
            v_t = np.sqrt(model.gamma_scale) * self.random_generator.standard_normal(size=(1, model.M0.shape[1])) @ np.transpose(U_Sigma)
            self.eta_seq.append(Ft @ self.theta_seq[t] + v_t)

    def get_theta_eta(self):
        "theta_1,...,theta_T and the N x (D-1) response matrix"
        return self.theta_seq[1:], np.vstack(self.eta_seq)


class DLM_matrix_variate_filter:
    def __init__(self, model_inst: DLM_model_container, seed_val=None):
        self.util_inst = DLM_utility()
        self.util_inst.container_checker(model_inst)
        self.DLM_model = model_inst

        self.random_generator = make_random_generator(seed_val)
        self.mn_sampler = Sampler_matrix_normal(random_generator=self.random_generator)
        self.iw_sampler = Sampler_InvWishart(random_generator=self.random_generator)

        self.run_count = 0 #bumped by every run(), successful or not
        self._init_containers()

    def _init_containers(self):
        self.fit_config = None
        self.eta = None
        self.y_len = None #T
        self.num_obs = None #N
        self.system_dim = self.DLM_model.get_system_dim()
        self.obs_idx_map = {}

        #result containers. index 0 -> t=1
        self.archive = []
        self.theta_filtered_samples = []
        self.upsilonT = None
        self.XiT = None
        self.filtered = False

    def _eta_checker(self, eta):
        eta = np.asarray(eta, dtype=float)
        if eta.ndim == 1:
            eta = np.reshape(eta, (eta.shape[0], 1))
        if eta.shape[0] != len(self.DLM_model.observations):
            raise ValueError("eta should have one row per observation: expected " +
                             str(len(self.DLM_model.observations)) + " rows, got " + str(eta.shape[0]))
        if eta.shape[1] != self.DLM_model.Xi.shape[0]:
            raise ValueError("eta should have D-1=" + str(self.DLM_model.Xi.shape[0]) + " columns")
        return eta

    def _one_iter(self, t, M_last, C_last, upsilon_last, Xi_last):
        config = self.fit_config
        G = config.G_sys_eq_transition
        F = config.F_obs_eq_design
        obs_row = self.obs_idx_map.get(t)

        # prior
        A_t = G @ M_last
        R_t = G @ C_last @ np.transpose(G) + config.W_sys_eq_covariance * config.W_scale

        if obs_row is None:
            # no observation at t: posterior = prior
            M_t = A_t
            C_t = R_t
            upsilon_t, Xi_t = upsilon_last, Xi_last
            f_t, q_t, e_t = None, None, None
        else:
            # one-step forecast
            f_t = np.transpose(F) @ A_t
            q_t = config.gamma_scale + (np.transpose(F) @ R_t @ F)[0, 0]
            if not q_t > 0:
                raise DLM_factorization_error(t, "one-step forecast variance q_t=" + str(q_t) + " is not positive")

            # posterior
            e_t = self.eta[obs_row:(obs_row+1), :] - f_t
            S_t = R_t @ F / q_t
            M_t = A_t + S_t @ e_t
            C_t = R_t - q_t * (S_t @ np.transpose(S_t))
            upsilon_t = upsilon_last + 1
            Xi_t = Xi_last + (np.transpose(e_t) @ e_t) / q_t

        # sample Sigma (column factor) and Theta_t
        LU = self.util_inst.lower_cholesky(C_t, t, "C_t")
        LV = self.util_inst.draw_Sigma_reverse_cholesky(self.iw_sampler, upsilon_t, Xi_t, t)
        Theta_t = self.mn_sampler.sampler(M_t, LU, LV)

        #save
        self.archive.append(DLM_step_record(t, obs_row, A_t, R_t, M_t, C_t, f_t, q_t, e_t))
        self.theta_filtered_samples.append(Theta_t)
        return M_t, C_t, upsilon_t, Xi_t

    def run(self, eta, verbose=False):
        self.run_count += 1
        self._init_containers()
        model = self.DLM_model
        self.eta = self._eta_checker(eta)
        self.fit_config = DLM_fit_config(np.array(model.F_obs_eq_design, dtype=float),
                                         np.array(model.G_sys_eq_transition, dtype=float),
                                         np.array(model.W_sys_eq_covariance, dtype=float),
                                         float(model.W_scale), float(model.gamma_scale),
                                         np.array(model.observations))
        self.num_obs = self.eta.shape[0]
        self.y_len = model.get_T()
        self.obs_idx_map = self.util_inst.observation_index_map(self.fit_config.observations, self.y_len)

        M_t = model.M0
        C_t = model.C0 * self.fit_config.W_scale
        upsilon_t = model.upsilon
        Xi_t = model.Xi
        try:
            for t in range(1, self.y_len+1):
                M_t, C_t, upsilon_t, Xi_t = self._one_iter(t, M_t, C_t, upsilon_t, Xi_t)
        except np.linalg.LinAlgError:
            self._init_containers()
            raise

        self.upsilonT = upsilon_t
        self.XiT = Xi_t
        self.filtered = True
        if verbose:
            print("filtering done: T =", self.y_len, ", matched observation times =", len(self.obs_idx_map),
                  "/", self.num_obs, ", upsilonT =", self.upsilonT)

    # == getters ==
    def get_filtered_samples(self):
        return self.theta_filtered_samples

    def get_posterior_m_C(self):
        return [r.m_posterior_mean for r in self.archive], [r.C_posterior_var for r in self.archive]

    def get_prior_a_R(self):
        return [r.a_prior_mean for r in self.archive], [r.R_prior_var for r in self.archive]

    def get_one_step_forecast_f_q(self):
        return [r.f_one_step_forecast_mean for r in self.archive], [r.q_one_step_forecast_var for r in self.archive]

    def get_posterior_upsilon_Xi(self):
        return self.upsilonT, self.XiT

    def get_archive(self):
        return self.archive

    def get_flattened_filtered_samples(self):
        "(system_dim*(D-1)) x T, column-major at each t"
        return self.util_inst.stack_samples(self.theta_filtered_samples)

    def get_flattened_archive(self):
        "Rs, Ms, Cs as in the column-major layout"
        a, R = self.get_prior_a_R()
        m, C = self.get_posterior_m_C()
        return self.util_inst.stack_samples(R), self.util_inst.stack_samples(m), self.util_inst.stack_samples(C)


if __name__=="__main__":
    import matplotlib.pyplot as plt

    # local linear trend, D-1=2 response coordinates, observed with gaps
    model_inst = DLM_model_container()
    model_inst.set_F_const_design_mat(np.array([[1],[0]]))
    model_inst.set_G_const_transition_mat(np.array([[1,1],[0,1]]))
    model_inst.set_W_const_state_error_cov(np.array([[0.1, 0],[0, 0.01]]), W_scale=1)
    model_inst.set_gamma_scale(1)
    model_inst.set_inverse_wishart_prior(5, np.array([[1, 0.3],[0.3, 1]]))
    model_inst.set_initial_state_prior(np.zeros((2,2)), np.eye(2))
    model_inst.set_observation_times([t for t in range(1, 101) if t%7 != 0])

    sim_inst = DLM_simulator(model_inst, 20230318)
    sim_inst.simulate_data()
    true_theta, sim_eta = sim_inst.get_theta_eta()

    filter_inst = DLM_matrix_variate_filter(model_inst, seed_val=20230318)
    filter_inst.run(sim_eta, verbose=True)
    m, C = filter_inst.get_posterior_m_C()
    plt.plot(range(1, 101), [theta[0,0] for theta in true_theta]) #blue: true theta
    plt.plot(range(1, 101), [mt[0,0] for mt in m], color="orange") #orange: posterior E(theta_t|D_t)
    plt.scatter(model_inst.observations, sim_eta[:,0], s=10)
    plt.show()
