"""Shared fixtures.  Stresses and moduli in MPa."""

import numpy as np
import pytest

from elasticity import isotropic_stiffness_voigt, elasticity_tensor
from slip_systems import SlipSystems, fcc_slip_systems
from constitutive import PowerLawFlowRule, ThresholdFlowRule, VoceHardening
from finite_strain import SolverSettings
from crystal_plasticity import CrystalPlasticity, CrystalPlasticityModel


E_MOD = 200e3
NU = 0.3
MU = E_MOD / (2.0 * (1.0 + NU))


@pytest.fixture
def iso_elasticity():
    return elasticity_tensor(isotropic_stiffness_voigt(E_MOD, NU))


@pytest.fixture
def voce():
    return VoceHardening(tau0=100.0, tau_s=200.0, h0=1000.0)


@pytest.fixture
def fcc():
    return fcc_slip_systems()


@pytest.fixture
def two_systems():
    # (s=e1, n=e2) carries simple shear in the 1-2 plane; (s=e3, n=e1) sees τ = S13
    return SlipSystems([[0, 1, 0], [1, 0, 0]], [[1, 0, 0], [0, 0, 1]])


@pytest.fixture
def tight_settings():
    return SolverSettings(rtol=1e-10, abs_tol=1e-8, state_tol=1e-12)


@pytest.fixture
def fcc_variant(iso_elasticity, fcc, voce):
    return CrystalPlasticity(iso_elasticity, fcc, PowerLawFlowRule(1e-3, 10.0), voce)


@pytest.fixture
def fcc_model(fcc_variant, tight_settings):
    return CrystalPlasticityModel(fcc_variant, tight_settings)


@pytest.fixture
def threshold_model(iso_elasticity, fcc, voce, tight_settings):
    variant = CrystalPlasticity(iso_elasticity, fcc, ThresholdFlowRule(1e-3, 2.0), voce)
    return CrystalPlasticityModel(variant, tight_settings)


@pytest.fixture
def tension():
    """Deformation gradient of uniaxial strain along x."""
    def _tension(e):
        return np.diag([1.0 + e, 1.0, 1.0])
    return _tension
