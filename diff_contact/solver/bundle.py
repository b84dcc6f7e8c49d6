# 约束集合（SapConstraintBundle）：把一个已冻结SapContactProblem的全部约束按接触问题图的边顺序打包，
# 组装块稀疏雅可比J（块行=图的边，块列=参与clique），并预计算每个约束的对角正则化R、R⁻¹和偏置速度vhat。
# 每次Newton迭代需要的量都由纯函数给出：
#   vc = J·v，y = -R⁻¹·(vc - vhat)，γ = P(y)（逐约束投影），Jᵀ·γ，正则化代价，以及Hessian贡献 Jᵀ·G·J，G_i = dP_i/dy_i·R_i⁻¹
# 约束方程在本类中一律按"边顺序"存放（边内保持原约束顺序），与问题中的约束顺序通过equations_permutation()互相转换。
import torch

from diff_contact.solver.block_sparse import BlockSparseMatrix


class SapConstraintBundle(object):
    """按图的边顺序组织的约束集合与逐迭代求值接口（构造后只读）"""

    def __init__(self, problem, delassus_diagonal, cliques_permutation=None):
        """
        Args:
            problem (SapContactProblem): 问题（若未冻结会被冻结）
            delassus_diagonal (torch.Tensor): 每个约束的Delassus对角近似wi（问题中的约束顺序）
            cliques_permutation (PartialPermutation/None): clique → 块列的置换，None时使用图的参与clique置换
        """
        graph = problem.graph()
        if cliques_permutation is None:
            cliques_permutation = graph.make_cliques_permutation()
        if cliques_permutation.domain_size() != problem.num_cliques():
            raise ValueError(
                f"The cliques permutation is defined over {cliques_permutation.domain_size()} cliques, "
                f"but the problem has {problem.num_cliques()}.")
        delassus_diagonal = torch.as_tensor(delassus_diagonal)
        if delassus_diagonal.shape != (problem.num_constraints(),):
            raise ValueError(
                f"Expected {problem.num_constraints()} Delassus diagonal entries, "
                f"got shape {tuple(delassus_diagonal.shape)}.")

        self._time_step = problem.time_step()
        self._constraints_permutation = graph.make_constraints_permutation()
        self._equations_permutation = graph.make_constraint_equations_permutation(
            [c.num_constraint_equations() for c in problem.constraints()])
        self._constraints = [problem.get_constraint(self._constraints_permutation.domain_index(k))
                             for k in range(self._constraints_permutation.permuted_domain_size())]

        # 每个约束在边顺序方程向量中的区间
        self._slices = []
        start = 0
        for constraint in self._constraints:
            n = constraint.num_constraint_equations()
            self._slices.append(slice(start, start + n))
            start += n
        self._num_equations = start

        # 组装雅可比：块行=边，块列=参与clique
        block_rows = [e.num_constraint_equations for e in graph.edges()]
        block_cols = [problem.num_velocities(cliques_permutation.domain_index(k))
                      for k in range(cliques_permutation.permuted_domain_size())]
        self._J = BlockSparseMatrix(block_rows, block_cols)
        # 块行内的约束区间（相对约束列表的下标）
        self._edge_constraints = []
        k = 0
        for e, edge in enumerate(graph.edges()):
            members = list(range(k, k + edge.num_constraints()))
            k += edge.num_constraints()
            self._edge_constraints.append(members)
            cliques = (edge.cliques[0],) if edge.is_self_pair() else edge.cliques
            for c in cliques:
                rows = [self._clique_jacobian(self._constraints[m], c) for m in members]
                self._J.add_block(e, cliques_permutation.permuted_index(c), torch.cat(rows, dim=0))

        # 正则化与偏置速度（边顺序）
        R, vhat = [], []
        # 同一约束实例可被多个问题共享，wi按其在本问题中的位置读取
        for k, constraint in enumerate(self._constraints):
            wi = delassus_diagonal[self._constraints_permutation.domain_index(k)]
            R.append(constraint.calc_diagonal_regularization(self._time_step, wi))
            vhat.append(constraint.calc_bias_term(self._time_step, wi))
        self._R = torch.cat(R) if R else delassus_diagonal.new_zeros(0)
        self._vhat = torch.cat(vhat) if vhat else delassus_diagonal.new_zeros(0)
        if (self._R <= 0).any():
            raise ValueError("Constraint regularization must be strictly positive.")
        self._Rinv = 1.0 / self._R

    @staticmethod
    def _clique_jacobian(constraint, clique):
        if constraint.first_clique() == clique:
            return constraint.first_clique_jacobian()
        return constraint.second_clique_jacobian()

    def num_constraints(self):
        return len(self._constraints)

    def num_constraint_equations(self):
        return self._num_equations

    def constraints(self):
        """按边顺序排列的约束"""
        return list(self._constraints)

    def J(self):
        return self._J

    def R(self):
        return self._R

    def Rinv(self):
        return self._Rinv

    def vhat(self):
        return self._vhat

    def constraints_permutation(self):
        """问题约束顺序 → 本类的边顺序"""
        return self._constraints_permutation

    def equations_permutation(self):
        """问题约束方程顺序 → 本类的边顺序"""
        return self._equations_permutation

    def calc_constraint_velocities(self, v):
        """vc = J·v（v为参与clique的速度）"""
        return self._J.multiply(v)

    def calc_unprojected_impulses(self, vc):
        """y = -R⁻¹·(vc - vhat)"""
        return -self._Rinv.to(vc) * (vc - self._vhat.to(vc))

    def project_impulses(self, y, compute_derivative=True):
        """
        逐约束投影
        Returns:
            tuple: (gamma, dPdy)，dPdy为每个约束的导数块列表（compute_derivative=False时为None）
        """
        R = self._R.to(y)
        gamma, dPdy = [], []
        for constraint, s in zip(self._constraints, self._slices):
            if compute_derivative:
                gamma_i, dPdy_i = constraint.project(y[s], R[s])
                dPdy.append(dPdy_i)
            else:
                gamma_i = constraint.calc_impulse(y[s], R[s])
            gamma.append(gamma_i)
        gamma = torch.cat(gamma) if gamma else y.new_zeros(0)
        return gamma, (dPdy if compute_derivative else None)

    def calc_generalized_impulses(self, gamma):
        """Jᵀ·γ（参与clique的广义冲量）"""
        return self._J.multiply_transpose(gamma)

    def calc_regularizer_cost(self, y):
        """Σ_i ℓ_i(y_i)，关于vc的梯度为-γ"""
        R = self._R.to(y)
        cost = y.new_zeros(())
        for constraint, s in zip(self._constraints, self._slices):
            cost = cost + constraint.calc_cost(y[s], R[s])
        return cost

    def calc_impulses_hessian_blocks(self, dPdy):
        """G_i = dP_i/dy_i · diag(R_i⁻¹)（对称半正定）"""
        return [dPdy_i * self._Rinv[s].to(dPdy_i).unsqueeze(0)
                for dPdy_i, s in zip(dPdy, self._slices)]

    def calc_hessian_contribution(self, G):
        """
        稠密 Jᵀ·G·J，G为逐约束的对角块列表；只遍历每个块行内的非零块对
        Returns:
            torch.Tensor: shape=[J.cols(), J.cols()]
        """
        reference = G[0] if G else self._R
        H = reference.new_zeros(self._J.cols(), self._J.cols())
        col_starts = self._J.block_col_starts()
        col_sizes = self._J.block_cols()
        for e, members in enumerate(self._edge_constraints):
            Ge = torch.block_diag(*[G[m] for m in members])
            row_blocks = self._J.get_row_blocks(e)
            for a, Ja in row_blocks:
                GJa = Ge @ Ja.to(reference)
                for b, Jb in row_blocks:
                    ra, rb = col_starts[a], col_starts[b]
                    H[rb:rb + col_sizes[b], ra:ra + col_sizes[a]] += Jb.to(reference).T @ GJa
        return H

    def __repr__(self):
        return (f"SapConstraintBundle(num_constraints={self.num_constraints()}, "
                f"num_equations={self.num_constraint_equations()}, J={self._J})")
