"""
Tensor Utilities for Finite-Strain Crystal Plasticity
=====================================================
Small rank-2 / rank-4 helpers shared by the point solver:

  - symmetric part, fast 3×3 determinant and inverse
  - double contractions of rank-2 and rank-4 tensors
  - Green–Lagrange strain  E = ½(FᵀF − I)
  - Voigt ↔ tensor conversions for stiffness (6×6 ↔ 3×3×3×3)

Voigt order throughout: [11, 22, 33, 23, 13, 12].
"""

import numpy as np


I3 = np.eye(3, dtype=np.float64)

# Voigt map: (0,0)->0  (1,1)->1  (2,2)->2  (1,2)->3  (0,2)->4  (0,1)->5
VOIGT_PAIRS = [(0, 0), (1, 1), (2, 2), (1, 2), (0, 2), (0, 1)]


# ============================================================================
#  1.  Rank-2 utilities
# ============================================================================

def sym(A):
    """Return sym(A) = 0.5*(A + A^T), supports batched (...,3,3)."""
    return 0.5 * (A + np.swapaxes(A, -2, -1))


def det3(A):
    """Fast determinant of (...,3,3) matrices."""
    a = A
    return (a[..., 0, 0] * (a[..., 1, 1] * a[..., 2, 2] - a[..., 1, 2] * a[..., 2, 1])
            - a[..., 0, 1] * (a[..., 1, 0] * a[..., 2, 2] - a[..., 1, 2] * a[..., 2, 0])
            + a[..., 0, 2] * (a[..., 1, 0] * a[..., 2, 1] - a[..., 1, 1] * a[..., 2, 0]))


def inv3(A):
    """Inverse of (...,3,3) matrices using the adjugate formula.

    Raises ``np.linalg.LinAlgError`` when a determinant vanishes.
    """
    a = A
    c00 = a[..., 1, 1] * a[..., 2, 2] - a[..., 1, 2] * a[..., 2, 1]
    c01 = a[..., 1, 2] * a[..., 2, 0] - a[..., 1, 0] * a[..., 2, 2]
    c02 = a[..., 1, 0] * a[..., 2, 1] - a[..., 1, 1] * a[..., 2, 0]
    c10 = a[..., 0, 2] * a[..., 2, 1] - a[..., 0, 1] * a[..., 2, 2]
    c11 = a[..., 0, 0] * a[..., 2, 2] - a[..., 0, 2] * a[..., 2, 0]
    c12 = a[..., 0, 1] * a[..., 2, 0] - a[..., 0, 0] * a[..., 2, 1]
    c20 = a[..., 0, 1] * a[..., 1, 2] - a[..., 0, 2] * a[..., 1, 1]
    c21 = a[..., 0, 2] * a[..., 1, 0] - a[..., 0, 0] * a[..., 1, 2]
    c22 = a[..., 0, 0] * a[..., 1, 1] - a[..., 0, 1] * a[..., 1, 0]
    det = a[..., 0, 0] * c00 + a[..., 0, 1] * c01 + a[..., 0, 2] * c02
    if np.any(np.abs(det) < 1e-300):
        raise np.linalg.LinAlgError("singular 3x3 matrix")
    inv_det = 1.0 / np.asarray(det)[..., None, None]
    out = np.empty_like(A, dtype=np.float64)
    out[..., 0, 0] = c00; out[..., 0, 1] = c10; out[..., 0, 2] = c20
    out[..., 1, 0] = c01; out[..., 1, 1] = c11; out[..., 1, 2] = c21
    out[..., 2, 0] = c02; out[..., 2, 1] = c12; out[..., 2, 2] = c22
    return out * inv_det


def green_lagrange(F):
    """Green–Lagrange strain  E = ½(FᵀF − I)."""
    return 0.5 * (np.swapaxes(F, -2, -1) @ F - I3)


def ddot(A, B):
    """Double contraction  A : B  of rank-2 tensors (batched over leading axes)."""
    return np.einsum('...ij,...ij->...', A, B)


# ============================================================================
#  2.  Rank-4 utilities
# ============================================================================

def identity4():
    """Full fourth-order identity  I_ijkl = δ_ik δ_jl  (maps A → A)."""
    return np.einsum('ik,jl->ijkl', I3, I3)


def identity4_sym():
    """Symmetric fourth-order identity  ½(δ_ik δ_jl + δ_il δ_jk)."""
    return 0.5 * (np.einsum('ik,jl->ijkl', I3, I3) + np.einsum('il,jk->ijkl', I3, I3))


def ddot42(C, A):
    """C : A  →  rank-2  (C_ijkl A_kl)."""
    return np.einsum('ijkl,kl->ij', C, A)


def ddot24(A, C):
    """A : C  →  rank-2  (A_ij C_ijkl)."""
    return np.einsum('ij,ijkl->kl', A, C)


def ddot44(A, B):
    """A : B  →  rank-4  (A_ijmn B_mnkl)."""
    return np.einsum('ijmn,mnkl->ijkl', A, B)


def as_matrix9(T4):
    """Reshape a rank-4 tensor to the 9×9 matrix acting on flattened rank-2 tensors."""
    return np.ascontiguousarray(T4).reshape(9, 9)


def from_matrix9(M):
    """Inverse of :func:`as_matrix9`."""
    return np.ascontiguousarray(M).reshape(3, 3, 3, 3)


# ============================================================================
#  3.  Voigt  ↔  tensor conversions
# ============================================================================

def voigt_to_tensor(C_voigt):
    """Convert 6×6 Voigt matrix to 3×3×3×3 tensor."""
    C = np.zeros((3, 3, 3, 3))
    for I in range(6):
        i, j = VOIGT_PAIRS[I]
        for J in range(6):
            k, l = VOIGT_PAIRS[J]
            C[i, j, k, l] = C_voigt[I, J]
            C[j, i, k, l] = C_voigt[I, J]
            C[i, j, l, k] = C_voigt[I, J]
            C[j, i, l, k] = C_voigt[I, J]
    return C


def tensor_to_voigt(C_tensor):
    """Convert 3×3×3×3 tensor to 6×6 Voigt matrix."""
    C = np.zeros((6, 6))
    for I in range(6):
        i, j = VOIGT_PAIRS[I]
        for J in range(6):
            k, l = VOIGT_PAIRS[J]
            C[I, J] = C_tensor[i, j, k, l]
    return C

