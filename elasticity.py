"""
Single-Crystal Elasticity
=========================
Builds the fourth-order elasticity tensor consumed by the point solver:

  - Bunge Euler angles → rotation matrix
  - Cubic (C11, C12, C44) and isotropic (E, ν) stiffness in Voigt form
  - Rotation of the stiffness into the sample frame
  - Longitudinal wave speed estimate for the Landshoff viscosity term

Polycrystal texture averaging is left to the host framework; this module
only orients one crystal.
"""

import numpy as np

from tensor_utils import voigt_to_tensor, tensor_to_voigt


# ============================================================================
# Orientation utilities (Bunge Euler angles)
# ============================================================================

def euler_to_rotation(phi1, Phi, phi2):
    """
    Convert Bunge Euler angles (φ₁, Φ, φ₂) in radians to a 3×3 rotation matrix.
    Convention: ZXZ rotations.  The returned matrix maps crystal-frame
    vectors into the sample frame (its transpose of the passive Bunge matrix).
    """
    c1, s1 = np.cos(phi1), np.sin(phi1)
    c, s = np.cos(Phi), np.sin(Phi)
    c2, s2 = np.cos(phi2), np.sin(phi2)

    R = np.array([
        [c1*c2 - s1*s2*c,   s1*c2 + c1*s2*c,   s2*s],
        [-c1*s2 - s1*c2*c, -s1*s2 + c1*c2*c,   c2*s],
        [s1*s,             -c1*s,               c    ],
    ])
    return R.T


# ============================================================================
# Stiffness tensor utilities
# ============================================================================

def cubic_stiffness_voigt(C11, C12, C44):
    """
    Build the 6×6 Voigt stiffness matrix for cubic symmetry.

    Parameters:
        C11, C12, C44 : float, elastic constants
    Returns:
        C : (6, 6) array, Voigt stiffness matrix
    """
    C = np.zeros((6, 6))
    C[0, 0] = C[1, 1] = C[2, 2] = C11
    C[0, 1] = C[0, 2] = C[1, 0] = C[1, 2] = C[2, 0] = C[2, 1] = C12
    C[3, 3] = C[4, 4] = C[5, 5] = C44
    return C


def isotropic_stiffness_voigt(E, nu):
    """6×6 Voigt stiffness of an isotropic solid from Young's modulus and Poisson's ratio."""
    if not -1.0 < nu < 0.5:
        raise ValueError(f"Poisson's ratio must lie in (-1, 0.5), got {nu!r}")
    lam = E * nu / ((1.0 + nu) * (1.0 - 2.0 * nu))
    mu = E / (2.0 * (1.0 + nu))
    return cubic_stiffness_voigt(lam + 2.0 * mu, lam, mu)


def rotate_stiffness_voigt(C_voigt, R):
    """
    Rotate a 6×6 Voigt stiffness matrix by rotation matrix R.

    Uses the full 4th-order tensor transformation:
        C'_ijkl = R_ip R_jq R_kr R_ls C_pqrs
    then converts back to Voigt notation.
    """
    C_full = voigt_to_tensor(C_voigt)
    C_rot_full = np.einsum('ip,jq,kr,ls,pqrs->ijkl', R, R, R, R, C_full)
    return tensor_to_voigt(C_rot_full)


def elasticity_tensor(C_voigt, euler_angles=None):
    """
    Fourth-order elasticity tensor (3,3,3,3) in the sample frame.

    Parameters
    ----------
    C_voigt      : (6,6) crystal-frame stiffness
    euler_angles : optional (φ₁, Φ, φ₂) in radians
    """
    C_voigt = np.asarray(C_voigt, dtype=float)
    if C_voigt.shape != (6, 6):
        raise ValueError(f"Voigt stiffness must be 6x6, got shape {C_voigt.shape}")
    if euler_angles is not None:
        C_voigt = rotate_stiffness_voigt(C_voigt, euler_to_rotation(*euler_angles))
    return voigt_to_tensor(C_voigt)


def longitudinal_wave_speed(C_voigt, density):
    """
    Isotropic (Voigt-averaged) longitudinal wave speed  c = √((K + 4G/3)/ρ).

    Used as the default wave speed of the Landshoff viscosity term when the
    host framework does not provide one.
    """
    if density <= 0.0:
        raise ValueError(f"density must be positive, got {density!r}")
    C = np.asarray(C_voigt, dtype=float)
    K = (C[0, 0] + C[1, 1] + C[2, 2] + 2.0 * (C[0, 1] + C[0, 2] + C[1, 2])) / 9.0
    G = ((C[0, 0] + C[1, 1] + C[2, 2]) - (C[0, 1] + C[0, 2] + C[1, 2])
         + 3.0 * (C[3, 3] + C[4, 4] + C[5, 5])) / 15.0
    return np.sqrt((K + 4.0 * G / 3.0) / density)
