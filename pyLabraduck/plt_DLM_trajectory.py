import numpy as np
import scipy.stats as scss
import matplotlib.pyplot as plt

from pyLabraduck.DLM_Core import DLM_matrix_variate_filter
from pyLabraduck.DLM_FFBS import DLM_BackwardSampling_Smoothing


class DLM_trajectory_visualizer:
    def __init__(self, filter_inst: DLM_matrix_variate_filter, cred: float = 0.95,
                 smoother_inst: DLM_BackwardSampling_Smoothing | None = None):
        if not filter_inst.filtered:
            raise AttributeError("run the filter first")
        self.filter_inst = filter_inst
        self.smoother_inst = smoother_inst
        self.cred = cred

        # ===
        self.y_len = filter_inst.y_len
        self.filter_run = filter_inst.run_count
        self.obs_times = filter_inst.fit_config.observations
        self.eta = filter_inst.eta
        self.z_q = scss.norm.ppf([1-(1-cred)/2])[0]

        # E(Sigma|D_T), for the column scale of the bands
        upsilonT, XiT = filter_inst.get_posterior_upsilon_Xi()
        p_dim = XiT.shape[0]
        if upsilonT > p_dim+1:
            self.Sigma_mean = XiT / (upsilonT-p_dim-1)
        else:
            self.Sigma_mean = XiT / upsilonT

        # ===
        self.variable_names = ["param"+str(i) for i in range(filter_inst.system_dim)]

    def set_variable_names(self, name_list):
        self.variable_names = name_list

    def _scatter_obs(self, col_idx):
        in_range = [(t, row) for row, t in enumerate(self.obs_times) if 1 <= t <= self.y_len]
        plt.scatter([t for t, _ in in_range], [self.eta[row, col_idx] for _, row in in_range], s=10) #blue dot: obs

    def _filter_checker(self):
        if self.filter_inst.run_count != self.filter_run or not self.filter_inst.filtered:
            raise AttributeError("the filter was run again; build a new visualizer")

    def show_filtering_specific_dim(self, param_idx, col_idx=0, show=False):
        self._filter_checker()
        posterior_mt, posterior_ct = self.filter_inst.get_posterior_m_C()
        filtered_samples = self.filter_inst.get_filtered_samples()
        time_range = range(1, self.y_len+1)
        sd_col = np.sqrt(self.Sigma_mean[col_idx, col_idx])

        self._scatter_obs(col_idx)
        plt.plot(time_range, [m[param_idx, col_idx] for m in posterior_mt], color="orange") #orange: posterior E(theta_t|D_t)
        plt.plot(time_range, [s[param_idx, col_idx] for s in filtered_samples], color="green", alpha=0.5) #green: marginal samples
        cred_interval_upper = [m[param_idx, col_idx] + self.z_q*np.sqrt(c[param_idx, param_idx])*sd_col for m, c in zip(posterior_mt, posterior_ct)]
        cred_interval_lower = [m[param_idx, col_idx] - self.z_q*np.sqrt(c[param_idx, param_idx])*sd_col for m, c in zip(posterior_mt, posterior_ct)]
        plt.plot(time_range, cred_interval_upper, color="grey")
        plt.plot(time_range, cred_interval_lower, color="grey")
        plt.ylabel("filtering: "+str(self.variable_names[param_idx]))
        if show:
            plt.show()

    def show_filtering(self, figure_grid_dim, choose_param_dims: None|list = None, col_idxs: None|list = None, show=True):
        self._filter_checker()
        grid_row, grid_column = figure_grid_dim
        if choose_param_dims is None:
            choose_param_dims = [i for i in range(self.filter_inst.system_dim)]
        if col_idxs is None:
            col_idxs = [0 for _ in range(len(choose_param_dims))]

        plt.figure(figsize=(6*grid_column, 3*grid_row))
        for i, (param_dim, col_idx) in enumerate(zip(choose_param_dims, col_idxs)):
            plt.subplot(grid_row, grid_column, i+1)
            self.show_filtering_specific_dim(param_dim, col_idx, show=False)
        if show:
            plt.show()

    def _smoother_checker(self):
        self._filter_checker()
        if self.smoother_inst is None or not self.smoother_inst.smoothed:
            raise AttributeError("run the backward sampling first")

    def show_smoothing_specific_dim(self, param_idx, col_idx=0, show=False):
        self._smoother_checker()
        time_range = range(1, self.y_len+1)

        self._scatter_obs(col_idx)
        plt.plot(time_range, [s[param_idx, col_idx] for s in self.smoother_inst.get_onesample_path()], color="red") #red: smoothed sample
        plt.plot(time_range, [e[0, col_idx] for e in self.smoother_inst.get_etas()], color="grey", alpha=0.5) #grey: simulated eta
        plt.ylabel("smoothing: "+str(self.variable_names[param_idx]))
        if show:
            plt.show()

    def show_smoothing(self, figure_grid_dim, choose_param_dims: None|list = None, col_idxs: None|list = None, show=True):
        self._smoother_checker()
        grid_row, grid_column = figure_grid_dim
        if choose_param_dims is None:
            choose_param_dims = [i for i in range(self.filter_inst.system_dim)]
        if col_idxs is None:
            col_idxs = [0 for _ in range(len(choose_param_dims))]

        plt.figure(figsize=(6*grid_column, 3*grid_row))
        for i, (param_dim, col_idx) in enumerate(zip(choose_param_dims, col_idxs)):
            plt.subplot(grid_row, grid_column, i+1)
            self.show_smoothing_specific_dim(param_dim, col_idx, show=False)
        if show:
            plt.show()


if __name__=="__main__":
    from pyLabraduck.DLM_Core import DLM_model_container, DLM_simulator

    model_inst = DLM_model_container()
    model_inst.set_F_const_design_mat(np.array([[1],[0]]))
    model_inst.set_G_const_transition_mat(np.array([[1,1],[0,1]]))
    model_inst.set_W_const_state_error_cov(np.array([[0.1, 0],[0, 0.01]]))
    model_inst.set_gamma_scale(0.5)
    model_inst.set_inverse_wishart_prior(5, np.eye(2))
    model_inst.set_initial_state_prior(np.zeros((2,2)), np.eye(2))
    model_inst.set_observation_times([t for t in range(1, 61) if t%4 != 0])

    sim_inst = DLM_simulator(model_inst, 20230601)
    sim_inst.simulate_data()
    _, sim_eta = sim_inst.get_theta_eta()

    filter_inst = DLM_matrix_variate_filter(model_inst, seed_val=1)
    filter_inst.run(sim_eta)
    ffbs_inst = DLM_BackwardSampling_Smoothing(filter_inst, seed_val=2)
    ffbs_inst.run_bs()

    vis_inst = DLM_trajectory_visualizer(filter_inst, 0.95, ffbs_inst)
    vis_inst.set_variable_names(["level", "slope"])
    vis_inst.show_filtering((1,2))
    vis_inst.show_smoothing((1,2), col_idxs=[1, 1])
