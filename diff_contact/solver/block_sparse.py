# 块稀疏矩阵（BlockSparseMatrix）：按"块行 × 块列"存储非零块，用于接触雅可比J的组装与乘法。
# 块行对应接触问题图的一条边（该边上所有约束方程），块列对应一个参与clique（该clique的全部速度）。
# 乘法只遍历已存储的块；所有运算都是torch张量运算，对autograd透明。
import torch


class BlockSparseMatrix(object):
    """
    块稀疏矩阵
    - block_rows[i]：第i个块行的行数
    - block_cols[j]：第j个块列的列数
    - 每个(i, j)位置至多存储一个块，按添加顺序保存
    """

    def __init__(self, block_rows, block_cols):
        self._block_rows = [int(n) for n in block_rows]
        self._block_cols = [int(n) for n in block_cols]
        if any(n < 0 for n in self._block_rows + self._block_cols):
            raise ValueError("Block sizes must be non-negative.")
        self._row_starts = self._starts(self._block_rows)
        self._col_starts = self._starts(self._block_cols)
        self._blocks = []  # (i, j, Bij)，按添加顺序
        self._index = {}  # (i, j) → self._blocks中的位置
        self._row_blocks = [[] for _ in self._block_rows]  # 块行i → 该行已存储块在self._blocks中的位置

    @staticmethod
    def _starts(sizes):
        starts = [0]
        for n in sizes:
            starts.append(starts[-1] + n)
        return starts

    def add_block(self, i, j, Bij):
        """
        添加非零块
        Raises:
            ValueError: 块索引越界、重复添加或块尺寸不匹配
        """
        if i < 0 or i >= len(self._block_rows) or j < 0 or j >= len(self._block_cols):
            raise ValueError(
                f"Block ({i}, {j}) is out of range for a {len(self._block_rows)}x{len(self._block_cols)} "
                f"block matrix.")
        if (i, j) in self._index:
            raise ValueError(f"Block ({i}, {j}) was already added.")
        Bij = torch.as_tensor(Bij)
        expected = (self._block_rows[i], self._block_cols[j])
        if tuple(Bij.shape) != expected:
            raise ValueError(f"Block ({i}, {j}) must have shape {expected}, got {tuple(Bij.shape)}.")
        self._index[(i, j)] = len(self._blocks)
        self._row_blocks[i].append(len(self._blocks))
        self._blocks.append((i, j, Bij))

    def rows(self):
        return self._row_starts[-1]

    def cols(self):
        return self._col_starts[-1]

    def num_block_rows(self):
        return len(self._block_rows)

    def num_block_cols(self):
        return len(self._block_cols)

    def num_blocks(self):
        return len(self._blocks)

    def block_rows(self):
        return list(self._block_rows)

    def block_cols(self):
        return list(self._block_cols)

    def block_row_starts(self):
        return self._row_starts[:-1]

    def block_col_starts(self):
        return self._col_starts[:-1]

    def get_blocks(self):
        """全部非零块 [(i, j, Bij)]，按添加顺序"""
        return list(self._blocks)

    def get_row_blocks(self, i):
        """第i个块行的非零块 [(j, Bij)]"""
        return [self._blocks[k][1:] for k in self._row_blocks[i]]

    def get_block(self, i, j):
        """(i, j)处的块，不存在返回None"""
        k = self._index.get((i, j))
        return None if k is None else self._blocks[k][2]

    def multiply(self, x):
        """
        y = B·x
        Args:
            x (torch.Tensor): shape=[cols]
        Returns:
            torch.Tensor: shape=[rows]
        """
        if x.shape[0] != self.cols():
            raise ValueError(f"Expected a vector of size {self.cols()}, got {x.shape[0]}.")
        segments = []
        for i, n in enumerate(self._block_rows):
            yi = x.new_zeros(n)
            for j, Bij in self.get_row_blocks(i):
                c0 = self._col_starts[j]
                yi = yi + Bij.to(x) @ x[c0:c0 + self._block_cols[j]]
            segments.append(yi)
        if len(segments) == 0:
            return x.new_zeros(0)
        return torch.cat(segments)

    def multiply_transpose(self, y):
        """
        x = Bᵀ·y
        Args:
            y (torch.Tensor): shape=[rows]
        Returns:
            torch.Tensor: shape=[cols]
        """
        if y.shape[0] != self.rows():
            raise ValueError(f"Expected a vector of size {self.rows()}, got {y.shape[0]}.")
        segments = [y.new_zeros(n) for n in self._block_cols]
        for i, j, Bij in self._blocks:
            r0 = self._row_starts[i]
            segments[j] = segments[j] + Bij.to(y).T @ y[r0:r0 + self._block_rows[i]]
        if len(segments) == 0:
            return y.new_zeros(0)
        return torch.cat(segments)

    def to_dense(self, dtype=None):
        """转为稠密矩阵（用于调试与测试），位于首个块所在的设备上"""
        device = self._blocks[0][2].device if self._blocks else None
        if dtype is None:
            dtype = self._blocks[0][2].dtype if self._blocks else torch.get_default_dtype()
        dense = torch.zeros(self.rows(), self.cols(), dtype=dtype, device=device)
        for i, j, Bij in self._blocks:
            r0, c0 = self._row_starts[i], self._col_starts[j]
            dense[r0:r0 + self._block_rows[i], c0:c0 + self._block_cols[j]] = Bij.to(dtype)
        return dense

    def __repr__(self):
        return (f"BlockSparseMatrix(rows={self.rows()}, cols={self.cols()}, "
                f"num_blocks={self.num_blocks()})")
