"""Slip system tables."""

import numpy as np
import pytest

from elasticity import euler_to_rotation
from slip_systems import (
    SlipSystems, fcc_slip_systems, bcc_slip_systems, load_slip_systems,
    build_slip_systems,
)


class TestFamilies:

    @pytest.mark.parametrize('factory, n_planes', [(fcc_slip_systems, 4),
                                                   (bcc_slip_systems, 6)])
    def test_geometry(self, factory, n_planes):
        slip = factory()
        assert slip.n_slip == 12
        assert len(np.unique(slip.coplanar_groups)) == n_planes
        assert np.allclose(np.linalg.norm(slip.normals, axis=1), 1.0)
        assert np.allclose(np.einsum('ai,ai->a', slip.normals, slip.directions), 0.0)
        # Schmid tensors are traceless
        assert np.allclose(np.trace(slip.schmid, axis1=1, axis2=2), 0.0)

    def test_tables_are_read_only(self):
        slip = fcc_slip_systems()
        with pytest.raises(ValueError):
            slip.schmid[0, 0, 0] = 1.0

    def test_resolved_shear_stress(self):
        slip = fcc_slip_systems()
        S = np.diag([100.0, 0.0, 0.0])
        tau = slip.resolved_shear_stress(S)
        # Schmid factor of {111}<110> under [100] tension is 1/√6 or 0
        assert np.allclose(np.sort(np.abs(tau))[-8:], 100.0 / np.sqrt(6.0))
        assert np.allclose(np.sort(np.abs(tau))[:4], 0.0)


class TestRotation:

    def test_rotation_preserves_rss_invariants(self):
        slip = fcc_slip_systems()
        R = euler_to_rotation(0.4, 0.8, 1.2)
        rotated = slip.rotated(R)
        S = np.diag([50.0, -20.0, 10.0])
        # τ of the rotated crystal under R S Rᵀ equals τ of the unrotated crystal under S
        assert np.allclose(rotated.resolved_shear_stress(R @ S @ R.T),
                           slip.resolved_shear_stress(S))

    def test_build_with_euler_angles(self):
        angles = (0.4, 0.8, 1.2)
        slip = build_slip_systems('fcc', angles)
        R = euler_to_rotation(*angles)
        assert np.allclose(slip.normals, (R @ fcc_slip_systems().normals.T).T)


class TestLoading:

    def test_load_normalises(self, tmp_path):
        path = tmp_path / 'slip.txt'
        path.write_text("# n1 n2 n3 s1 s2 s3\n"
                        "1 1 1  0 1 -1\n"
                        "\n"
                        "1 1 1  1 -1 0\n")
        slip = load_slip_systems(path)
        assert slip.n_slip == 2
        assert np.allclose(slip.normals[0], np.ones(3) / np.sqrt(3.0))
        assert len(np.unique(slip.coplanar_groups)) == 1

    def test_build_from_path(self, tmp_path):
        path = tmp_path / 'slip.txt'
        path.write_text("0 1 0 1 0 0\n")
        assert build_slip_systems(str(path)).n_slip == 1

    def test_wrong_columns(self, tmp_path):
        path = tmp_path / 'slip.txt'
        path.write_text("1 1 1 0 1\n")
        with pytest.raises(ValueError):
            load_slip_systems(path)

    def test_non_orthogonal_rejected(self):
        with pytest.raises(ValueError):
            SlipSystems([[1, 0, 0]], [[1, 1, 0]])

    def test_unknown_source(self):
        with pytest.raises(ValueError):
            build_slip_systems(42)
