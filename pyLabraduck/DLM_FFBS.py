import time

import numpy as np

from pyLabraduck.DLM_Core import DLM_matrix_variate_filter, DLM_utility, DLM_factorization_error
from pyLabraduck.rv_gen_matrix_variate import make_random_generator, Sampler_matrix_normal, Sampler_InvWishart, Sampler_standard_normal


class DLM_BackwardSampling_Smoothing:
    def __init__(self, dlm_fitter_filtered: DLM_matrix_variate_filter, seed_val=None):
        self.filtering_inst = dlm_fitter_filtered
        self.util_inst = DLM_utility()

        self.random_generator = make_random_generator(seed_val)
        self.mn_sampler = Sampler_matrix_normal(random_generator=self.random_generator)
        self.iw_sampler = Sampler_InvWishart(random_generator=self.random_generator)
        self.noise_sampler = Sampler_standard_normal(random_generator=self.random_generator)

        self._init_containers()

    def _init_containers(self):
        # all index 0 -> t=1 after run_bs()
        self.backward_smoothing_samples = [] #Thetas_smoothed, reversed while running
        self.Ms_star = []
        self.M_star_conditional_mean = []
        self.etas = []
        self.fit_config = None
        self.smoothed_filter_run = None #filtering_inst.run_count of the fit the current draw came from

    def _stale_checker(self):
        # a new filtering run discards the draw made from the previous one
        if self.smoothed_filter_run is not None and self.smoothed_filter_run != self.filtering_inst.run_count:
            self._init_containers()

    @property
    def smoothed(self):
        self._stale_checker()
        return self.smoothed_filter_run is not None

    def _synthesize_eta(self, Theta_t, LV, noise_scale):
        F = self.fit_config.F_obs_eq_design
        noise = self.noise_sampler.sampler((1, LV.shape[0]))
        return np.transpose(F) @ Theta_t + noise @ np.transpose(LV) * noise_scale

    def _retro_one_iter(self, t, archive, LV):
        G = self.fit_config.G_sys_eq_transition
        R_next = archive[t].R_prior_var #R_{t+1}, the prior at t+1
        M_t = archive[t-1].m_posterior_mean
        C_t = archive[t-1].C_posterior_var
        try:
            R_next_inv = np.linalg.inv(R_next)
        except np.linalg.LinAlgError as e:
            raise DLM_factorization_error(t+1, "R_t is singular") from e

        Z_t = C_t @ np.transpose(G) @ R_next_inv
        A_t = G @ M_t
        M_t_star = M_t + Z_t @ (self.backward_smoothing_samples[-1] - A_t)
        C_t_star = C_t - Z_t @ R_next @ np.transpose(Z_t)

        LU = self.util_inst.lower_cholesky(C_t_star, t, "smoothed C*_t")
        Theta_t = self.mn_sampler.sampler(M_t_star, LU, LV)

        self.backward_smoothing_samples.append(Theta_t)
        self.Ms_star.append(Theta_t)
        self.M_star_conditional_mean.append(M_t_star)
        self.etas.append(self._synthesize_eta(Theta_t, LV, np.sqrt(self.fit_config.gamma_scale)))

    def _run_bs(self):
        self.fit_config = self.filtering_inst.fit_config
        archive = self.filtering_inst.get_archive()
        data_T = len(archive)
        upsilonT, XiT = self.filtering_inst.get_posterior_upsilon_Xi()

        # one joint draw of Sigma for the whole trajectory
        LV = self.util_inst.draw_Sigma_reverse_cholesky(self.iw_sampler, upsilonT, XiT, data_T)

        # at T: nothing to condition on
        M_T = archive[-1].m_posterior_mean
        LU = self.util_inst.lower_cholesky(archive[-1].C_posterior_var, data_T, "C_T")
        Theta_T = self.mn_sampler.sampler(M_T, LU, LV)
        self.backward_smoothing_samples.append(Theta_T)
        self.Ms_star.append(Theta_T)
        self.M_star_conditional_mean.append(M_T)
        self.etas.append(self._synthesize_eta(Theta_T, LV, 1.0))

        for t in range(data_T-1, 0, -1):
            self._retro_one_iter(t, archive, LV)

        for container in (self.backward_smoothing_samples, self.Ms_star, self.M_star_conditional_mean, self.etas):
            container.reverse()

    def run_bs(self): # always from last T
        if not self.filtering_inst.filtered:
            raise AttributeError("run the filter before the backward sampling")
        self._init_containers()
        try:
            self._run_bs()
        except np.linalg.LinAlgError:
            self._init_containers()
            raise
        self.smoothed_filter_run = self.filtering_inst.run_count

    def sampler_iter(self, sample_size: int, verbose=False, print_iter_cycle=100):
        "repeat run_bs() and collect the smoothed trajectories"
        start_time = time.time()
        paths = []
        for i in range(1, sample_size+1):
            self.run_bs()
            paths.append(self.get_onesample_path())
            if verbose and i%print_iter_cycle == 0:
                print("backward sampling", i, "/", sample_size)
        if verbose:
            elap_time = time.time()-start_time
            print("backward sampling", sample_size, "/", sample_size, " done! (elapsed time for execution: ", elap_time//60,"min ", elap_time%60,"sec)")
        return paths

    # == getters ==
    def get_onesample_path(self):
        self._stale_checker()
        return self.backward_smoothing_samples

    def get_Ms_star(self):
        "realised samples, same values as get_onesample_path()"
        self._stale_checker()
        return self.Ms_star

    def get_smoothed_conditional_means(self):
        self._stale_checker()
        return self.M_star_conditional_mean

    def get_etas(self):
        self._stale_checker()
        return self.etas

    def get_flattened_onesample_path(self):
        self._stale_checker()
        return self.util_inst.stack_samples(self.backward_smoothing_samples)

    def get_flattened_Ms_star(self):
        self._stale_checker()
        return self.util_inst.stack_samples(self.Ms_star)

    def get_flattened_etas(self):
        "(D-1) x T"
        self._stale_checker()
        return self.util_inst.stack_samples(self.etas)



if __name__=="__main__":
    import matplotlib.pyplot as plt

    from pyLabraduck.DLM_Core import DLM_model_container, DLM_simulator

    model_inst = DLM_model_container()
    model_inst.set_F_const_design_mat(np.array([[1],[0]]))
    model_inst.set_G_const_transition_mat(np.array([[1,1],[0,1]]))
    model_inst.set_W_const_state_error_cov(np.array([[0.1, 0],[0, 0.01]]), W_scale=1)
    model_inst.set_gamma_scale(1)
    model_inst.set_inverse_wishart_prior(6, np.eye(3))
    model_inst.set_initial_state_prior(np.zeros((2,3)), np.eye(2))
    model_inst.set_observation_times([0] + [t for t in range(1, 81) if t%5 != 0])

    sim_inst = DLM_simulator(model_inst, 20230318)
    sim_inst.simulate_data()
    true_theta, sim_eta = sim_inst.get_theta_eta()

    filter_inst = DLM_matrix_variate_filter(model_inst, seed_val=20230318)
    filter_inst.run(sim_eta, verbose=True)

    ffbs_inst = DLM_BackwardSampling_Smoothing(filter_inst, seed_val=20230319)
    ex_paths = ffbs_inst.sampler_iter(5, verbose=True)
    for ex_path in ex_paths:
        plt.plot(range(1, len(ex_path)+1), [theta[0,0] for theta in ex_path], color="green")
    plt.plot(range(1, 81), [theta[0,0] for theta in true_theta], color="black")
    plt.show()
