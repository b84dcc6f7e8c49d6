# 接触问题图（ContactProblemGraph）：节点为clique，边为"至少有一个约束作用于其上"的无序clique对。
# 每条边携带作用在该clique对上的约束索引列表（保持原约束列表顺序）。
# 边的遍历顺序按clique对字典序排列，与约束插入顺序无关，下游块矩阵组装依赖这一顺序获得逐位可复现的结果。
from typing import List, NamedTuple, Tuple

from diff_contact.partial_permutation import PartialPermutation


class Constraint_Cluster(NamedTuple):
    """
    图的一条边：一个排序后的clique对及作用其上的约束
    字段说明：
        cliques: (c0, c1)，c0 <= c1；单clique约束对应自环(c, c)
        constraint_index: 约束在原列表中的索引（升序，即原列表顺序）
        num_constraint_equations: 该边上所有约束的方程总数
    """
    cliques: Tuple[int, int]
    constraint_index: List[int]
    num_constraint_equations: int

    def is_self_pair(self):
        return self.cliques[0] == self.cliques[1]

    def num_constraints(self):
        return len(self.constraint_index)


class ContactProblemGraph:
    """
    clique上的稀疏图，构造后不可变
    节点：0..num_cliques-1（包括没有任何边的clique）
    边：按clique对字典序排列的Constraint_Cluster列表
    """

    def __init__(self, num_cliques, clusters=()):
        """
        一般通过build()构造；直接构造时clusters必须已去重并按字典序排列
        """
        if num_cliques < 0:
            raise ValueError(f"num_cliques must be non-negative, got {num_cliques}.")
        self._num_cliques = int(num_cliques)
        self._clusters = tuple(clusters)
        keys = [e.cliques for e in self._clusters]
        if keys != sorted(set(keys)):
            raise ValueError("Graph edges must be unique and sorted by clique pair.")
        for e in self._clusters:
            self._check_clique(e.cliques[0])
            self._check_clique(e.cliques[1])
        self._edge_lookup = {e.cliques: k for k, e in enumerate(self._clusters)}

    @classmethod
    def build(cls, num_cliques, constraints):
        """
        从有序约束列表构造确定性的图
        Args:
            num_cliques (int): clique总数
            constraints: 约束序列，每个约束需提供first_clique()、second_clique()（单clique约束返回None）
                         和num_constraint_equations()
        Returns:
            ContactProblemGraph
        Raises:
            ValueError: 约束引用的clique索引越界
        """
        if num_cliques < 0:
            raise ValueError(f"num_cliques must be non-negative, got {num_cliques}.")
        # 按clique对分组（字典保持首次出现顺序，最后统一排序）
        groups = {}
        for index, constraint in enumerate(constraints):
            c0 = constraint.first_clique()
            c1 = constraint.second_clique()
            if c1 is None:
                c1 = c0
            for c in (c0, c1):
                if c < 0 or c >= num_cliques:
                    raise ValueError(
                        f"Constraint {index} references clique {c}, but only {num_cliques} cliques exist.")
            key = (c0, c1) if c0 <= c1 else (c1, c0)
            group = groups.setdefault(key, [[], 0])
            group[0].append(index)
            group[1] += constraint.num_constraint_equations()

        clusters = [Constraint_Cluster(key, indices, num_equations)
                    for key, (indices, num_equations) in sorted(groups.items())]
        return cls(num_cliques, clusters)

    def num_cliques(self):
        return self._num_cliques

    def num_edges(self):
        return len(self._clusters)

    def num_constraints(self):
        return sum(e.num_constraints() for e in self._clusters)

    def num_constraint_equations(self):
        return sum(e.num_constraint_equations for e in self._clusters)

    def edges(self):
        return list(self._clusters)

    def get_edge(self, e):
        return self._clusters[e]

    def find_edge(self, c0, c1):
        """查找clique对对应的边索引（无序），不存在返回None"""
        key = (c0, c1) if c0 <= c1 else (c1, c0)
        return self._edge_lookup.get(key)

    def make_cliques_permutation(self):
        """
        参与clique的置换：至少有一条边的clique，按在边序列中首次出现的顺序编号
        """
        selected = []
        seen = set()
        for e in self._clusters:
            for c in e.cliques:
                if c not in seen:
                    seen.add(c)
                    selected.append(c)
        return PartialPermutation(self._num_cliques, selected)

    def make_constraints_permutation(self):
        """
        约束置换：原约束顺序 → 按边遍历（边内保持原顺序）后的顺序
        """
        selected = [i for e in self._clusters for i in e.constraint_index]
        return PartialPermutation(self.num_constraints(), selected)

    def make_constraint_equations_permutation(self, equation_counts):
        """
        约束方程（标量）级别的置换，equation_counts[i]为第i个约束的方程数
        """
        return self.make_constraints_permutation().expand(equation_counts)

    def _check_clique(self, c):
        if c < 0 or c >= self._num_cliques:
            raise ValueError(f"Clique index {c} is out of range [0, {self._num_cliques}).")

    def __eq__(self, other):
        if not isinstance(other, ContactProblemGraph):
            return NotImplemented
        return self._num_cliques == other._num_cliques and self._clusters == other._clusters

    def __repr__(self):
        return f"ContactProblemGraph(num_cliques={self._num_cliques}, num_edges={self.num_edges()})"
