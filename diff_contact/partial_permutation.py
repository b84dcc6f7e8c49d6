# 部分置换（PartialPermutation）：把大小为N的索引域映射到一个压缩、重排后的子集（大小M≤N）。
# SAP接触问题中凡是"只有部分索引参与计算"的地方都用它来做稠密寻址：参与约束的clique、参与约束的速度分量、
# 按图边顺序重排后的约束方程等。原始索引域不会被重新编号，只是多了一层O(1)的正/逆查找。
import torch


class PartialPermutation:
    """
    部分置换：domain（原索引域，大小N）→ permuted domain（压缩域，大小M）
    - 正向查找：domain索引 → 压缩索引（可能不存在）
    - 逆向查找：压缩索引 → domain索引（总是存在）
    构造后不可变，所有查找均为O(1)
    """

    def __init__(self, domain_size, selected=()):
        """
        Args:
            domain_size (int): 原索引域大小N
            selected: 有序的参与索引序列，第k个元素获得压缩索引k
        Raises:
            ValueError: domain_size为负、索引越界或重复
        """
        domain_size = int(domain_size)
        if domain_size < 0:
            raise ValueError(f"domain_size must be non-negative, got {domain_size}.")
        permutation = [-1] * domain_size
        inverse = []
        for k, i in enumerate(selected):
            i = int(i)
            if i < 0 or i >= domain_size:
                raise ValueError(f"Index {i} is out of range [0, {domain_size}).")
            if permutation[i] >= 0:
                raise ValueError(f"Index {i} appears more than once in the selected sequence.")
            permutation[i] = k
            inverse.append(i)
        self._permutation = tuple(permutation)  # i → 压缩索引（-1表示不参与）
        self._inverse = tuple(inverse)          # 压缩索引 → i

    @classmethod
    def from_permutation(cls, permutation):
        """
        由"逐元素给出压缩索引"的列表构造：permutation[i]为i的压缩索引，-1表示i不参与
        压缩索引必须恰好覆盖0..M-1且无重复
        """
        permutation = [int(k) for k in permutation]
        num_participating = sum(1 for k in permutation if k >= 0)
        selected = [None] * num_participating
        for i, k in enumerate(permutation):
            if k < -1:
                raise ValueError(f"Invalid permuted index {k} for element {i}.")
            if k == -1:
                continue
            if k >= num_participating or selected[k] is not None:
                raise ValueError(
                    f"Permuted indices must be a permutation of 0..{num_participating - 1}; "
                    f"element {i} maps to {k}.")
            selected[k] = i
        return cls(len(permutation), selected)

    @classmethod
    def identity(cls, domain_size):
        """全参与、顺序不变的置换"""
        return cls(domain_size, range(domain_size))

    def domain_size(self):
        return len(self._permutation)

    def permuted_domain_size(self):
        return len(self._inverse)

    def participates(self, i):
        """判断domain索引i是否参与"""
        return self._permutation[self._check_domain_index(i)] >= 0

    def find_permuted_index(self, i):
        """正向查找，不参与时返回None"""
        k = self._permutation[self._check_domain_index(i)]
        return k if k >= 0 else None

    def permuted_index(self, i):
        """正向查找，不参与时抛出ValueError"""
        k = self.find_permuted_index(i)
        if k is None:
            raise ValueError(f"Index {i} does not participate in this permutation.")
        return k

    def domain_index(self, k):
        """逆向查找：压缩索引k → domain索引"""
        if k < 0 or k >= len(self._inverse):
            raise IndexError(f"Permuted index {k} is out of range [0, {len(self._inverse)}).")
        return self._inverse[k]

    def permutation(self):
        """长度为N的正向表（-1表示不参与）"""
        return list(self._permutation)

    def inverse(self):
        """长度为M的逆向表"""
        return list(self._inverse)

    def compose(self, other):
        """
        复合置换：先应用self，再应用other
        Args:
            other (PartialPermutation): 定义在self压缩域上的置换（other.domain_size() == self.permuted_domain_size()）
        Returns:
            PartialPermutation: 从self.domain到other压缩域的置换
        """
        if other.domain_size() != self.permuted_domain_size():
            raise ValueError(
                f"Cannot compose: the permuted domain of size {self.permuted_domain_size()} "
                f"does not match the other domain of size {other.domain_size()}.")
        selected = [self._inverse[other.domain_index(k)] for k in range(other.permuted_domain_size())]
        return PartialPermutation(self.domain_size(), selected)

    def expand(self, block_sizes):
        """
        把"块"上的置换提升为"块内标量"上的置换（如clique置换 → 速度分量置换）
        domain中第i个块有block_sizes[i]个元素，块按原顺序连续存放；
        结果中参与块的元素按压缩顺序连续排列，块内顺序不变
        """
        block_sizes = [int(n) for n in block_sizes]
        if len(block_sizes) != self.domain_size():
            raise ValueError(
                f"Expected {self.domain_size()} block sizes, got {len(block_sizes)}.")
        starts = [0]
        for n in block_sizes:
            if n < 0:
                raise ValueError(f"Block sizes must be non-negative, got {n}.")
            starts.append(starts[-1] + n)
        selected = []
        for i in self._inverse:
            selected.extend(range(starts[i], starts[i + 1]))
        return PartialPermutation(starts[-1], selected)

    def apply(self, x):
        """
        gather：x（首维大小N）→ x_permuted（首维大小M），x_permuted[k] = x[domain_index(k)]
        对torch张量保持可微
        """
        if x.shape[0] != self.domain_size():
            raise ValueError(
                f"Expected a leading dimension of {self.domain_size()}, got {x.shape[0]}.")
        index = torch.tensor(self._inverse, dtype=torch.long, device=x.device)
        return x.index_select(0, index)

    def apply_inverse(self, x_permuted, x=None):
        """
        scatter：把压缩域的值写回原域
        Args:
            x_permuted: 首维大小M的张量
            x: 可选的原域张量（首维大小N），不参与的位置保留其值；None则用零填充
        Returns:
            torch.Tensor: 新张量（不修改输入）
        """
        if x_permuted.shape[0] != self.permuted_domain_size():
            raise ValueError(
                f"Expected a leading dimension of {self.permuted_domain_size()}, got {x_permuted.shape[0]}.")
        if x is None:
            x = x_permuted.new_zeros((self.domain_size(),) + tuple(x_permuted.shape[1:]))
        elif x.shape[0] != self.domain_size():
            raise ValueError(
                f"Expected a leading dimension of {self.domain_size()}, got {x.shape[0]}.")
        index = torch.tensor(self._inverse, dtype=torch.long, device=x_permuted.device)
        return x.index_copy(0, index, x_permuted)

    def _check_domain_index(self, i):
        if i < 0 or i >= len(self._permutation):
            raise IndexError(f"Index {i} is out of range [0, {len(self._permutation)}).")
        return i

    def __eq__(self, other):
        if not isinstance(other, PartialPermutation):
            return NotImplemented
        return self._permutation == other._permutation

    def __hash__(self):
        return hash(self._permutation)

    def __repr__(self):
        return f"PartialPermutation(domain_size={self.domain_size()}, selected={list(self._inverse)})"
