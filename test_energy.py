"""Energy bookkeeping and artificial bulk viscosity."""

import dataclasses

import numpy as np
import pytest

from tensor_utils import I3, det3, sym
from crystal_plasticity import CrystalPlasticityModel
from energy import (
    BulkViscosity, volumetric_strain_rate, viscous_stress, elastic_energy,
    plastic_work_increment, elastic_energy_derivative, plastic_work_derivative,
    account_energies,
)


class TestBulkViscosity:

    def test_no_pressure_under_expansion(self):
        visc = BulkViscosity(C0=1.0, C1=1.0)
        assert visc.pressures(1e-3, 1.0, 5.0) == (0.0, 0.0)
        assert visc.pressures(0.0, 1.0, 5.0) == (0.0, 0.0)

    def test_pressure_under_compression(self):
        visc = BulkViscosity(C0=2.0, C1=0.5, density=3.0)
        q_vn, q_l = visc.pressures(-1e-2, 0.1, 5.0)
        assert np.isclose(q_vn, 2.0 * 3.0 * (0.1 * 1e-2) ** 2)
        assert np.isclose(q_l, 0.5 * 3.0 * 5.0 * 0.1 * 1e-2)

    def test_rate_scaling(self):
        visc = BulkViscosity(C0=1.0, C1=1.0)
        q_vn1, q_l1 = visc.pressures(-2e-3, 1.0, 1.0)
        q_vn2, q_l2 = visc.pressures(-1e-3, 1.0, 1.0)
        assert np.isclose(q_vn2 / q_vn1, 0.25)
        assert np.isclose(q_l2 / q_l1, 0.5)

    def test_inactive_by_default(self):
        assert not BulkViscosity().active
        assert BulkViscosity(C1=0.1).active

    @pytest.mark.parametrize('kwargs', [
        {'C0': -1.0}, {'C1': -0.1}, {'density': 0.0}, {'coupling': 'implicit'},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            BulkViscosity(**kwargs)


class TestKinematics:

    def test_volumetric_strain_rate(self):
        F = np.diag([0.99, 1.0, 1.0])
        assert np.isclose(volumetric_strain_rate(F, I3, 2.0), np.log(0.99) / 2.0)

    def test_isochoric_rate_is_zero(self):
        F = I3 + 1e-2 * np.outer([1, 0, 0], [0, 1, 0])
        assert np.isclose(volumetric_strain_rate(F, I3, 1.0), 0.0)

    def test_bad_increment(self):
        with pytest.raises(ValueError):
            volumetric_strain_rate(I3, I3, 0.0)

    def test_viscous_stress_is_pressure(self):
        fe = np.diag([0.98, 1.01, 1.0]) + 1e-3 * np.outer([0, 1, 0], [1, 0, 0])
        sv = viscous_stress(2.5, fe)
        cauchy = fe @ sv @ fe.T / det3(fe)
        assert np.allclose(cauchy, -2.5 * I3)

    def test_zero_pressure_gives_zero_stress(self):
        assert np.all(viscous_stress(0.0, I3) == 0.0)


class TestEnergies:

    def test_elastic_energy(self):
        S = np.diag([2.0, 1.0, 0.0])
        E = np.diag([1e-3, 2e-3, 0.0])
        assert np.isclose(elastic_energy(S, E), 0.5 * (2e-3 + 2e-3))

    def test_plastic_work_non_negative(self):
        tau = np.array([10.0, -5.0, 0.0])
        dgamma = np.array([1e-3, -2e-3, 0.0])
        assert np.isclose(plastic_work_increment(tau, dgamma), 0.02)

    def test_elastic_energy_derivative_without_plastic_flow(self):
        S = np.diag([3.0, 1.0, -1.0])
        assert np.allclose(elastic_energy_derivative(S, I3), S)

    def test_accumulation(self):
        n = 2
        schmid_sym = np.zeros((n, 3, 3))
        state = account_energies(
            pk2_elastic=np.diag([2.0, 0.0, 0.0]), ee=np.diag([1e-3, 0.0, 0.0]),
            fp_inv=I3, rss=np.array([10.0, -4.0]), dgamma=np.array([1e-3, -1e-3]),
            ddg_dtau=np.zeros(n), schmid_sym=schmid_sym,
            dS_dF=np.zeros((3, 3, 3, 3)), F=I3,
            plastic_work_old=1.0, viscous_dissipation_old=0.5,
            von_neumann_pressure=2.0, landshoff_pressure=1.0,
            strain_rate=-1e-2, dt=0.5)
        assert np.isclose(state.plastic_work_increment, 0.014)
        assert np.isclose(state.plastic_work, 1.014)
        assert np.isclose(state.viscous_dissipation_increment, 3.0 * 1e-2 * 0.5)
        assert np.isclose(state.viscous_dissipation, 0.5 + 0.015)
        assert np.isclose(state.viscous_pressure, 3.0)
        assert np.isclose(state.elastic_energy, 1e-3)


class TestPlasticWorkDerivative:

    def test_matches_finite_differences(self, fcc_variant, tight_settings, tension):
        model = CrystalPlasticityModel(
            fcc_variant, dataclasses.replace(tight_settings, jacobian='numerical'))
        F = tension(1e-3)
        result = model.evaluate(model.new_point(), F, 1.0)
        assert result.converged
        assert result.energies.plastic_work_increment > 0.0

        h = 1e-6
        dW_dF = np.zeros((3, 3))
        for k in range(3):
            for l in range(3):
                dF = np.zeros((3, 3))
                dF[k, l] = h
                w_p = model.evaluate(model.new_point(), F + dF, 1.0).energies
                w_m = model.evaluate(model.new_point(), F - dF, 1.0).energies
                dW_dF[k, l] = (w_p.plastic_work_increment
                               - w_m.plastic_work_increment) / (2 * h)
        fd = sym(np.linalg.inv(F) @ dW_dF)
        dW_dE = result.energies.d_plastic_work_dstrain
        assert np.linalg.norm(dW_dE - fd) < 5e-4 * np.linalg.norm(fd)

    def test_hardening_term(self):
        schmid_sym = np.zeros((1, 3, 3))
        schmid_sym[0, 0, 1] = schmid_sym[0, 1, 0] = 0.5
        args = (np.array([10.0]), np.array([1e-3]), np.array([2e-4]), schmid_sym)
        # ∂ΔW0p/∂τ = Δγ + τ ∂Δγ/∂τ + τ ∂Δγ/∂g ∂g/∂τ
        #          = 1e-3 + 2e-3 + 10 · (−1e-4) · 0.5
        coeff = []
        for extra in ({}, {'ddg_dg': np.array([-1e-4]), 'dg_dtau': np.array([[0.5]])}):
            tangent = np.zeros((3, 3, 3, 3))
            tangent[0, 1, 0, 1] = 1.0
            d = plastic_work_derivative(*args, tangent, I3, **extra)
            coeff.append(2.0 * d[0, 1])
        assert np.isclose(coeff[0], 0.5 * 3e-3)
        assert np.isclose(coeff[1], 0.5 * 2.5e-3)
