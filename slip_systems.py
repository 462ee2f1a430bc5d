"""
Slip System Geometry
====================
Immutable slip-system tables shared read-only by every integration point
of a crystal:

  - FCC {111}<110> and BCC {110}<111> families (12 systems each)
  - Plain-text slip tables (one system per row: normal, then direction)
  - Rotation by crystal orientation
  - Schmid tensors  P^α = s^α ⊗ n^α  and their symmetric parts
  - Coplanar grouping for latent hardening
"""

from pathlib import Path

import numpy as np

from elasticity import euler_to_rotation


# ============================================================================
# FCC Slip System Geometry (12 {111}<110> systems)
# ============================================================================

FCC_NORMALS = np.array([
    [ 1, 1, 1], [ 1, 1, 1], [ 1, 1, 1],
    [-1, 1, 1], [-1, 1, 1], [-1, 1, 1],
    [ 1,-1, 1], [ 1,-1, 1], [ 1,-1, 1],
    [ 1, 1,-1], [ 1, 1,-1], [ 1, 1,-1],
], dtype=float) / np.sqrt(3)

FCC_DIRECTIONS = np.array([
    [ 0, 1,-1], [-1, 0, 1], [ 1,-1, 0],
    [ 0, 1,-1], [ 1, 0, 1], [-1,-1, 0],
    [ 0, 1, 1], [-1, 0, 1], [ 1, 1, 0],
    [ 0, 1, 1], [ 1, 0, 1], [-1, 1, 0],
], dtype=float) / np.sqrt(2)


# ============================================================================
# BCC Slip System Geometry (12 {110}<111> systems)
# ============================================================================

BCC_NORMALS = np.array([
    [ 0, 1, 1], [ 0, 1, 1],
    [ 0, 1,-1], [ 0, 1,-1],
    [ 1, 0, 1], [ 1, 0, 1],
    [ 1, 0,-1], [ 1, 0,-1],
    [ 1, 1, 0], [ 1, 1, 0],
    [ 1,-1, 0], [ 1,-1, 0],
], dtype=float) / np.sqrt(2)

BCC_DIRECTIONS = np.array([
    [ 1, 1,-1], [ 1,-1, 1],
    [ 1, 1, 1], [-1, 1, 1],
    [ 1, 1,-1], [-1, 1, 1],
    [ 1, 1, 1], [ 1,-1, 1],
    [ 1,-1, 1], [-1, 1, 1],
    [ 1, 1, 1], [ 1, 1,-1],
], dtype=float) / np.sqrt(3)


def _frozen(a):
    a = np.array(a, dtype=np.float64)
    a.setflags(write=False)
    return a


class SlipSystems:
    """
    Ordered, immutable table of slip systems for one oriented crystal.

    Attributes
    ----------
    normals        : (n_slip, 3)     unit slip-plane normals n^α
    directions     : (n_slip, 3)     unit slip directions s^α
    schmid         : (n_slip, 3, 3)  s^α ⊗ n^α
    schmid_sym     : (n_slip, 3, 3)  ½(s^α ⊗ n^α + n^α ⊗ s^α)
    coplanar_groups: (n_slip,) int   systems sharing a slip plane share a label
    """

    def __init__(self, normals, directions, tol=1e-8):
        normals = np.atleast_2d(np.asarray(normals, dtype=float))
        directions = np.atleast_2d(np.asarray(directions, dtype=float))
        if normals.shape != directions.shape or normals.shape[-1] != 3:
            raise ValueError(
                f"normals and directions must both be (n_slip, 3), got "
                f"{normals.shape} and {directions.shape}")
        n_len = np.linalg.norm(normals, axis=1)
        s_len = np.linalg.norm(directions, axis=1)
        if np.any(n_len < tol) or np.any(s_len < tol):
            raise ValueError("slip normals and directions must be non-zero")
        normals = normals / n_len[:, None]
        directions = directions / s_len[:, None]

        dots = np.abs(np.einsum('ai,ai->a', normals, directions))
        if np.any(dots > tol):
            bad = int(np.argmax(dots))
            raise ValueError(
                f"slip direction {bad} is not orthogonal to its plane normal "
                f"(|s·n| = {dots[bad]:.3e})")

        self.normals = _frozen(normals)
        self.directions = _frozen(directions)
        self.schmid = _frozen(np.einsum('ai,aj->aij', directions, normals))
        self.schmid_sym = _frozen(0.5 * (self.schmid + np.swapaxes(self.schmid, 1, 2)))
        self.coplanar_groups = self._group_planes(normals, tol)
        self.coplanar_groups.setflags(write=False)

    @staticmethod
    def _group_planes(normals, tol):
        groups = np.full(normals.shape[0], -1, dtype=int)
        label = 0
        for a in range(normals.shape[0]):
            if groups[a] >= 0:
                continue
            # n and −n describe the same plane
            same = np.abs(np.abs(normals @ normals[a]) - 1.0) < tol
            groups[same & (groups < 0)] = label
            label += 1
        return groups

    @property
    def n_slip(self):
        return self.normals.shape[0]

    def rotated(self, R):
        """Return the table rotated by R (crystal frame → sample frame)."""
        R = np.asarray(R, dtype=float)
        return SlipSystems((R @ self.normals.T).T, (R @ self.directions.T).T)

    def resolved_shear_stress(self, stress):
        """τ^α = S : sym(s^α ⊗ n^α) for a (3,3) stress."""
        return np.einsum('aij,ij->a', self.schmid_sym, stress)

    def __len__(self):
        return self.n_slip

    def __repr__(self):
        return f"SlipSystems(n_slip={self.n_slip}, planes={self.coplanar_groups.max() + 1})"


def fcc_slip_systems():
    """The 12 FCC {111}<110> systems in the crystal frame."""
    return SlipSystems(FCC_NORMALS, FCC_DIRECTIONS)


def bcc_slip_systems():
    """The 12 BCC {110}<111> systems in the crystal frame."""
    return SlipSystems(BCC_NORMALS, BCC_DIRECTIONS)


def load_slip_systems(file_path):
    """
    Read a slip table with one system per row: ``n1 n2 n3 s1 s2 s3``.
    Blank lines and ``#`` comments are ignored; vectors are normalised.
    """
    data = np.loadtxt(Path(file_path), comments='#', ndmin=2)
    if data.shape[1] != 6:
        raise ValueError(
            f"slip table {file_path} must have 6 columns (normal, direction), "
            f"found {data.shape[1]}")
    return SlipSystems(data[:, :3], data[:, 3:])


_FAMILIES = {
    'fcc': fcc_slip_systems,
    'bcc': bcc_slip_systems,
}


def build_slip_systems(source='fcc', euler_angles=None):
    """
    Slip systems for one oriented crystal.

    Parameters
    ----------
    source       : 'fcc', 'bcc', a path to a slip table, or a SlipSystems
    euler_angles : optional Bunge angles (rad) rotating the table into the sample frame
    """
    if isinstance(source, SlipSystems):
        systems = source
    elif isinstance(source, str) and source.lower() in _FAMILIES:
        systems = _FAMILIES[source.lower()]()
    elif isinstance(source, (str, Path)):
        systems = load_slip_systems(source)
    else:
        raise ValueError(f"Unknown slip system source: {source!r}")
    if euler_angles is not None:
        systems = systems.rotated(euler_to_rotation(*euler_angles))
    return systems
