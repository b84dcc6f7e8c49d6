# 接触几何的张量工具函数：由接触法向构造接触坐标系（两个切向 + 法向），
# 并把世界坐标系下的接触点速度雅可比转换为摩擦锥约束所需的(t1, t2, n)行顺序。
# Copyright 2024 Max-Planck-Gesellschaft
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# https://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
import torch
from torch.nn.functional import normalize


def orthogonal(v):
    """
    计算3D空间中与输入向量正交的任意向量（用于构造切向方向）
    找到v中绝对值最小的分量，以对应坐标轴为基向量与v叉乘
    Args:
        v (torch.Tensor): 3D向量，shape=[3]
    Returns:
        torch.Tensor: 与v正交的3D向量，shape=[3]
    """
    min_index = torch.argmin(v.abs())
    base_vector = torch.zeros_like(v)
    base_vector[min_index] = 1.0
    return torch.linalg.cross(base_vector, v)


def contact_frame(normal):
    """
    由接触法向构造接触坐标系，返回的矩阵按行依次为 t1, t2, n（世界坐标 → 接触坐标）
    Args:
        normal (torch.Tensor): 接触法向（由物体A指向物体B），shape=[3]
    Returns:
        torch.Tensor: shape=[3, 3]
    Raises:
        ValueError: 法向为零向量
    """
    normal = torch.as_tensor(normal)
    if normal.shape != (3,):
        raise ValueError(f"The contact normal must be a 3D vector, got shape {tuple(normal.shape)}.")
    if torch.linalg.vector_norm(normal) == 0:
        raise ValueError("The contact normal must be non-zero.")
    n = normalize(normal, dim=0)
    t1 = normalize(orthogonal(n), dim=0)
    t2 = torch.linalg.cross(n, t1)
    return torch.stack([t1, t2, n])


def contact_jacobian(R_CW, J_world):
    """
    世界坐标系下的接触点速度雅可比（shape=[3, nv]）→ 接触坐标系下的约束雅可比
    """
    J_world = torch.as_tensor(J_world, dtype=R_CW.dtype)
    if J_world.dim() != 2 or J_world.shape[0] != 3:
        raise ValueError(f"The world Jacobian must have 3 rows, got shape {tuple(J_world.shape)}.")
    return R_CW @ J_world
