import numpy as np
import scipy.linalg


def make_random_generator(set_seed=None) -> np.random.Generator:
    if set_seed is not None:
        return np.random.default_rng(seed=set_seed)
    else:
        return np.random.default_rng()


class MatrixVariateBase:
    def __init__(self, set_seed=None, random_generator: np.random.Generator | None = None):
        # a shared generator wins over the seed
        if random_generator is not None:
            self.random_generator = random_generator
        else:
            self.random_generator = make_random_generator(set_seed)

    def reseed(self, set_seed):
        self.random_generator = make_random_generator(set_seed)


class Sampler_standard_normal(MatrixVariateBase):
    def sampler(self, shape: tuple[int, int]) -> np.ndarray:
        return self.random_generator.standard_normal(size=shape)


class Sampler_matrix_normal(MatrixVariateBase):
    # X ~ MN(M, U, V) <=> X = M + L_row @ Z @ L_col^T, with U = L_row L_row^T, V = L_col L_col^T
    def _parameter_support_checker(self, M, L_row, L_col):
        if M.ndim != 2:
            raise ValueError("M should be a matrix")
        r, c = M.shape
        if L_row.shape != (r, r):
            raise ValueError("L_row should be " + str(r) + "x" + str(r) + ", got " + str(L_row.shape))
        if L_col.shape != (c, c):
            raise ValueError("L_col should be " + str(c) + "x" + str(c) + ", got " + str(L_col.shape))

    def sampler(self, M: np.ndarray, L_row: np.ndarray, L_col: np.ndarray) -> np.ndarray:
        self._parameter_support_checker(M, L_row, L_col)
        Z = self.random_generator.standard_normal(size=M.shape)
        return M + L_row @ Z @ np.transpose(L_col)

    def sampler_iter(self, sample_size: int, M, L_row, L_col):
        samples = []
        for _ in range(sample_size):
            samples.append(self.sampler(M, L_row, L_col))
        return samples


class Sampler_InvWishart(MatrixVariateBase):
    # Sigma ~ inv.wishart(df, Xi) <=> Sigma^(-1) ~ wishart(df, Xi^(-1)), E(Sigma) = Xi/(df-p-1)

    def _parameter_support_checker(self, df, Xi_scale, p_dim):
        if Xi_scale.shape != (p_dim, p_dim):
            raise ValueError("Xi should be a square matrix")
        if df <= (p_dim-1):
            raise ValueError("degrees of freedom should be > p-1")
        if not np.allclose(Xi_scale, Xi_scale.T, rtol=1e-05, atol=1e-08):
            print("Xi_scale: \n", Xi_scale)
            raise ValueError("Xi should be symmetric")
        eigvals = np.linalg.eigvalsh(Xi_scale)
        if any([val<=0 for val in eigvals]):
            raise ValueError("Xi should be positive definite")

    def bartlett_base(self, df, V_scale: np.ndarray, p_dim) -> tuple[np.ndarray, np.ndarray]:
        # A: lower triangular, A_ii^2 ~ chisq(df-i), A_ij ~ N(0,1) for i>j
        bartlett_A_mat = np.zeros((p_dim, p_dim))
        for i in range(p_dim):
            bartlett_A_mat[i, :i] = self.random_generator.standard_normal(size=i)
            bartlett_A_mat[i, i] = self.random_generator.chisquare(df-i)**0.5
        bartlett_L_mat = scipy.linalg.cholesky(V_scale, lower=True)
        return bartlett_A_mat, bartlett_L_mat

    def _wishart_scale(self, Xi_scale, p_dim):
        Xi_cho = scipy.linalg.cho_factor(Xi_scale, lower=True)
        V_scale = scipy.linalg.cho_solve(Xi_cho, np.eye(p_dim))
        return (V_scale + np.transpose(V_scale))/2

    def _sampler_reverse_cholesky(self, df, Xi_scale, p_dim):
        bartlett_A_mat, bartlett_L_mat = self.bartlett_base(df, self._wishart_scale(Xi_scale, p_dim), p_dim)
        # wishart sample = (LA)(LA)^T, so the inverse is (LA)^{-T}(LA)^{-1}
        LA_inv = scipy.linalg.solve_triangular(bartlett_L_mat @ bartlett_A_mat, np.eye(p_dim), lower=True)
        return np.transpose(LA_inv)

    def sampler_reverse_cholesky(self, df, Xi_scale: np.ndarray, check=True) -> np.ndarray:
        "returns upper triangular U with Sigma = U @ U^T"
        Xi_scale = np.atleast_2d(Xi_scale)
        p_dim = Xi_scale.shape[0]
        if check:
            # skip it inside long recursions; a non-PD Xi then raises LinAlgError at the factorization
            self._parameter_support_checker(df, Xi_scale, p_dim)
        return self._sampler_reverse_cholesky(df, Xi_scale, p_dim)

    def sampler(self, df, Xi_scale: np.ndarray) -> np.ndarray:
        U = self.sampler_reverse_cholesky(df, Xi_scale)
        return U @ np.transpose(U)

    def sampler_iter(self, sample_size: int, df, Xi_scale: np.ndarray):
        Xi_scale = np.atleast_2d(Xi_scale)
        p_dim = Xi_scale.shape[0]
        self._parameter_support_checker(df, Xi_scale, p_dim)

        samples = []
        for _ in range(sample_size):
            U = self._sampler_reverse_cholesky(df, Xi_scale, p_dim)
            samples.append(U @ np.transpose(U))
        return samples


if __name__=="__main__":
    inv_wishart_inst = Sampler_InvWishart(set_seed=20220420)
    Xi = np.array([[2,-1],[-1,3]])
    inv_wishart_samples = inv_wishart_inst.sampler_iter(20000, 6, Xi)
    print(np.mean(inv_wishart_samples, axis=0), "\n", Xi/(6-2-1))

    mn_inst = Sampler_matrix_normal(set_seed=20220420)
    mn_samples = mn_inst.sampler_iter(5, np.zeros((2,3)), np.eye(2), np.linalg.cholesky(np.array([[1,0.5,0],[0.5,1,0],[0,0,1]])))
    print(mn_samples)
