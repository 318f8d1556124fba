import numpy as np
import numpy.testing as npt
import pytest

from pyLabraduck.DLM_Core import (DLM_model_container, DLM_utility, DLM_matrix_variate_filter,
                                  DLM_factorization_error, DLM_simulator)

np.random.seed(666)


def scalar_model(observations, W_scale=1., gamma_scale=1., upsilon=3):
    model_inst = DLM_model_container()
    model_inst.set_F_const_design_mat(np.array([[1.]]))
    model_inst.set_G_const_transition_mat(np.array([[1.]]))
    model_inst.set_W_const_state_error_cov(np.array([[1.]]), W_scale=W_scale)
    model_inst.set_gamma_scale(gamma_scale)
    model_inst.set_inverse_wishart_prior(upsilon, np.array([[1.]]))
    model_inst.set_initial_state_prior(np.array([[0.]]), np.array([[1.]]))
    model_inst.set_observation_times(observations)
    return model_inst


def trend_model(observations, W_scale=1., gamma_scale=1.):
    """
    local linear trend, system_dim=2, D-1=2
    """
    model_inst = DLM_model_container()
    model_inst.set_F_const_design_mat(np.array([[1.], [0.]]))
    model_inst.set_G_const_transition_mat(np.array([[1., 1.], [0., 1.]]))
    model_inst.set_W_const_state_error_cov(np.array([[0.5, 0.], [0., 0.1]]), W_scale=W_scale)
    model_inst.set_gamma_scale(gamma_scale)
    model_inst.set_inverse_wishart_prior(4, np.array([[1., 0.2], [0.2, 1.]]))
    model_inst.set_initial_state_prior(np.array([[1., 2.], [0., -1.]]), np.array([[1., 0.1], [0.1, 0.5]]))
    model_inst.set_observation_times(observations)
    return model_inst


def test_single_step_conjugate_update():
    model_inst = trend_model([1], W_scale=2., gamma_scale=0.5)
    eta = np.array([[0.3, -0.2]])
    filter_inst = DLM_matrix_variate_filter(model_inst, seed_val=1)
    filter_inst.run(eta)

    F, G, W = model_inst.F_obs_eq_design, model_inst.G_sys_eq_transition, model_inst.W_sys_eq_covariance
    a = G @ model_inst.M0
    R = G @ (2. * model_inst.C0) @ G.T + 2. * W
    q = 0.5 + (F.T @ R @ F)[0, 0]
    e = eta - F.T @ a
    m = a + R @ F @ e / q
    C = R - R @ F @ F.T @ R / q

    record = filter_inst.get_archive()[0]
    npt.assert_allclose(record.a_prior_mean, a)
    npt.assert_allclose(record.R_prior_var, R)
    npt.assert_allclose(record.q_one_step_forecast_var, q)
    npt.assert_allclose(record.e_one_step_forecast_err, e)
    npt.assert_allclose(record.m_posterior_mean, m)
    npt.assert_allclose(record.C_posterior_var, C)

    upsilonT, XiT = filter_inst.get_posterior_upsilon_Xi()
    assert upsilonT == 5
    npt.assert_allclose(XiT, model_inst.Xi + e.T @ e / q)
    assert filter_inst.get_filtered_samples()[0].shape == (2, 2)


def test_noise_free_limit():
    # gamma_scale stays at 1: with both scales at 0, q_t goes to 0 and the gain S_t does not vanish
    model_inst = trend_model([1, 2, 3, 4, 5], W_scale=1e-12, gamma_scale=1.)
    eta = np.random.randn(5, 2)
    filter_inst = DLM_matrix_variate_filter(model_inst, seed_val=2)
    filter_inst.run(eta)

    m, C = filter_inst.get_posterior_m_C()
    G = model_inst.G_sys_eq_transition
    m_last = model_inst.M0
    for m_t, C_t in zip(m, C):
        npt.assert_allclose(m_t, G @ m_last, atol=1e-8)
        npt.assert_allclose(C_t, np.zeros((2, 2)), atol=1e-9)
        m_last = m_t


def test_gap_handling():
    model_inst = trend_model([1, 3, 5])
    eta = np.array([[0.5, 0.1], [1.2, -0.3], [2.0, 0.4]])
    filter_inst = DLM_matrix_variate_filter(model_inst, seed_val=3)
    filter_inst.run(eta)

    archive = filter_inst.get_archive()
    assert len(archive) == 5
    assert [r.t for r in archive] == [1, 2, 3, 4, 5]
    assert [r.obs_row for r in archive] == [0, None, 1, None, 2]
    for record in (archive[1], archive[3]):
        assert record.C_posterior_var is record.R_prior_var
        npt.assert_array_equal(record.m_posterior_mean, record.a_prior_mean)
        assert record.f_one_step_forecast_mean is None
        assert record.q_one_step_forecast_var is None
        assert np.all(np.linalg.eigvalsh(record.C_posterior_var) > 0)
    for record in (archive[0], archive[2], archive[4]):
        # an observation can only shrink the covariance
        assert np.all(np.linalg.eigvalsh(record.R_prior_var - record.C_posterior_var) > -1e-12)
    assert filter_inst.get_posterior_upsilon_Xi()[0] == 7
    assert len(filter_inst.get_filtered_samples()) == 5


def test_scalar_scenario():
    model_inst = scalar_model([1, 2, 3])
    filter_inst = DLM_matrix_variate_filter(model_inst, seed_val=4)
    filter_inst.run(np.array([0.5, -0.3, 0.8]))

    archive = filter_inst.get_archive()
    assert len(archive) == 3
    for record in archive:
        assert record.C_posterior_var[0, 0] < record.R_prior_var[0, 0]

    # t=1: R=2, q=3 ; t=2: R=5/3, q=8/3
    npt.assert_allclose(archive[0].R_prior_var, [[2.]])
    npt.assert_allclose(archive[0].m_posterior_mean, [[1 / 3]])
    npt.assert_allclose(archive[0].C_posterior_var, [[2 / 3]])
    npt.assert_allclose(archive[1].R_prior_var, [[5 / 3]])
    npt.assert_allclose(archive[1].m_posterior_mean, [[-0.0625]])
    npt.assert_allclose(archive[1].C_posterior_var, [[0.625]])
    npt.assert_allclose(archive[2].R_prior_var, [[1.625]])

    upsilonT, XiT = filter_inst.get_posterior_upsilon_Xi()
    assert upsilonT == 6
    expected_XiT = 1 + sum(r.e_one_step_forecast_err[0, 0] ** 2 / r.q_one_step_forecast_var for r in archive)
    npt.assert_allclose(XiT, [[expected_XiT]])


def test_repeated_time_uses_last_row():
    model_inst = scalar_model([1, 1, 2])
    eta = np.array([[5.], [0.1], [0.2]])
    filter_inst = DLM_matrix_variate_filter(model_inst, seed_val=5)
    filter_inst.run(eta)

    archive = filter_inst.get_archive()
    assert archive[0].obs_row == 1
    npt.assert_allclose(archive[0].e_one_step_forecast_err, [[0.1]])
    assert filter_inst.get_posterior_upsilon_Xi()[0] == 3 + 2


def test_baseline_observation_is_not_matched():
    model_inst = scalar_model([0, 1, 2])
    filter_inst = DLM_matrix_variate_filter(model_inst, seed_val=6)
    filter_inst.run(np.array([100., 0.1, 0.2]))

    assert filter_inst.y_len == 2
    assert [r.obs_row for r in filter_inst.get_archive()] == [1, 2]
    assert filter_inst.get_posterior_upsilon_Xi()[0] == 5


def test_seeded_filter_is_reproducible():
    model_inst = trend_model([1, 2, 4, 5, 6])
    eta = np.random.randn(5, 2)

    samples = []
    for seed_val in (7, 7, 8):
        filter_inst = DLM_matrix_variate_filter(model_inst, seed_val=seed_val)
        filter_inst.run(eta)
        samples.append(filter_inst.get_flattened_filtered_samples())
    npt.assert_array_equal(samples[0], samples[1])
    assert not np.array_equal(samples[0], samples[2])


def test_flattened_archive_layout():
    model_inst = trend_model([1, 2, 3])
    filter_inst = DLM_matrix_variate_filter(model_inst, seed_val=9)
    filter_inst.run(np.random.randn(3, 2))

    util_inst = DLM_utility()
    thetas = filter_inst.get_flattened_filtered_samples()
    Rs, Ms, Cs = filter_inst.get_flattened_archive()
    assert thetas.shape == (4, 3)
    assert Rs.shape == (4, 3)
    m, C = filter_inst.get_posterior_m_C()
    _, R = filter_inst.get_prior_a_R()
    for t in range(3):
        npt.assert_array_equal(util_inst.unpack_sample(thetas, 2, 2, t), filter_inst.get_filtered_samples()[t])
        npt.assert_array_equal(util_inst.unpack_sample(Ms, 2, 2, t), m[t])
        npt.assert_array_equal(util_inst.unpack_sample(Rs, 2, 2, t), R[t])
        npt.assert_array_equal(util_inst.unpack_sample(Cs, 2, 2, t), C[t])
    # column-major: entry (i, j) at i + j*rows
    assert Ms[2, 0] == m[0][0, 1]


def test_utility_checks():
    util_inst = DLM_utility()
    assert util_inst.observation_index_map([3, 1, 1, 0, 9], 3) == {3: 0, 1: 2}
    with pytest.raises(ValueError):
        util_inst.unpack_sample(np.zeros((4, 2)), 3, 2, 0)
    with pytest.raises(ValueError):
        util_inst.unpack_sample(np.zeros((4, 2)), 2, 2, 2)


def test_degenerate_forecast_variance():
    model_inst = scalar_model([1, 2], W_scale=0., gamma_scale=0.)
    filter_inst = DLM_matrix_variate_filter(model_inst, seed_val=10)
    with pytest.raises(DLM_factorization_error) as excinfo:
        filter_inst.run(np.array([0.1, 0.2]))
    assert excinfo.value.time_index == 1
    assert not filter_inst.filtered
    assert filter_inst.get_archive() == []
    assert filter_inst.get_filtered_samples() == []


def test_non_pd_covariance_at_unobserved_time():
    model_inst = scalar_model([3], W_scale=0., gamma_scale=1.)
    filter_inst = DLM_matrix_variate_filter(model_inst, seed_val=11)
    with pytest.raises(DLM_factorization_error) as excinfo:
        filter_inst.run(np.array([0.1]))
    assert excinfo.value.time_index == 1
    assert filter_inst.get_archive() == []


def test_preconditions():
    with pytest.raises(ValueError):
        DLM_matrix_variate_filter(DLM_model_container())

    model_inst = scalar_model([1, 2, 3])
    filter_inst = DLM_matrix_variate_filter(model_inst)
    with pytest.raises(ValueError):
        filter_inst.run(np.array([0.1, 0.2]))
    with pytest.raises(ValueError):
        filter_inst.run(np.zeros((3, 2)))

    with pytest.raises(ValueError):
        model_inst.set_observation_times([])
    with pytest.raises(ValueError):
        model_inst.set_observation_times([1, 2.5])
    with pytest.raises(ValueError):
        model_inst.set_observation_times([0, 0])
    with pytest.raises(ValueError):
        model_inst.set_inverse_wishart_prior(3, np.array([[1., 2.], [2., 1.]]))
    with pytest.raises(ValueError):
        model_inst.set_gamma_scale(-1.)
    with pytest.raises(ValueError):
        model_inst.set_F_const_design_mat(np.ones((2, 2)))

    model_inst.set_initial_state_prior(np.zeros((1, 2)), np.array([[1.]]))
    with pytest.raises(ValueError):
        DLM_matrix_variate_filter(model_inst)


def test_filter_tracks_simulated_state():
    model_inst = trend_model([t for t in range(1, 61) if t % 6 != 1], gamma_scale=0.1)
    model_inst.set_W_const_state_error_cov(np.array([[0.05, 0.], [0., 0.001]]))
    sim_inst = DLM_simulator(model_inst, set_seed=20230318)
    sim_inst.simulate_data()
    true_theta, sim_eta = sim_inst.get_theta_eta()
    assert len(true_theta) == 60
    assert sim_eta.shape == (50, 2)

    filter_inst = DLM_matrix_variate_filter(model_inst, seed_val=12)
    filter_inst.run(sim_eta)
    m, _ = filter_inst.get_posterior_m_C()
    level_err = np.array([m_t[0] - theta_t[0] for m_t, theta_t in zip(m[20:], true_theta[20:])])
    level_sd = np.sqrt(np.diag(sim_inst.Sigma))
    assert np.all(np.mean(np.abs(level_err), axis=0) < 3 * level_sd)
