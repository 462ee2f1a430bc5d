"""Parameter files and model assembly."""

import numpy as np
import pytest

from tensor_utils import tensor_to_voigt
from elasticity import cubic_stiffness_voigt
from constitutive import ThresholdFlowRule, SaturationHardening
from crystal_plasticity import CrystalPlasticity, ViscousCrystalPlasticity
from config import parse_material_params, build_model


PARAMS = """\
# copper single crystal, MPa
elasticity = 'cubic'
C11 = 168.4e3
C12 = 121.4e3
C44 = 75.4e3      # shear modulus
slip_systems = fcc
flow_rule = 'threshold'
gamma_dot_0 = 1e-3
n_exponent = 2
hardening = 'saturation'
tau0 = 16.0
tau_s = 148.0
h0 = 250.0
a_exponent = 2.25
C0 = 0.5
C1 = 0.06
density = 8.96e-9
coupling = 'residual'
rtol = 1e-8
state_method = 'fixed_point'
verbose = False
"""


class TestParse:

    def test_literals_and_strings(self, tmp_path):
        path = tmp_path / 'copper.txt'
        path.write_text(PARAMS)
        params = parse_material_params(path)
        assert params['C44'] == 75.4e3
        assert params['n_exponent'] == 2
        assert params['slip_systems'] == 'fcc'
        assert params['flow_rule'] == 'threshold'
        assert params['verbose'] is False

    def test_tuples(self, tmp_path):
        path = tmp_path / 'p.txt'
        path.write_text("euler_angles = (0.1, 0.2, 0.3)\n\nnot a pair\n")
        assert parse_material_params(path) == {'euler_angles': (0.1, 0.2, 0.3)}

    def test_hash_inside_quotes(self, tmp_path):
        (tmp_path / 'slip#1.txt').write_text("0 1 0 1 0 0\n")
        path = tmp_path / 'p.txt'
        path.write_text("E = 200e3\nnu = 0.3\nslip_systems = 'slip#1.txt'  # one system\n"
                        "coupling = \"post\"#trailing\n")
        params = parse_material_params(path)
        assert params['slip_systems'] == 'slip#1.txt'
        assert params['coupling'] == 'post'
        assert build_model(path).variant.slip_systems.n_slip == 1


class TestBuild:

    def test_from_file(self, tmp_path):
        path = tmp_path / 'copper.txt'
        path.write_text(PARAMS)
        model = build_model(path)
        variant = model.variant
        assert isinstance(variant, ViscousCrystalPlasticity)
        assert variant.viscosity.coupling == 'residual'
        assert isinstance(variant.base.flow_rule, ThresholdFlowRule)
        assert isinstance(variant.hardening, SaturationHardening)
        assert variant.slip_systems.n_slip == 12
        assert np.allclose(tensor_to_voigt(variant.elasticity),
                           cubic_stiffness_voigt(168.4e3, 121.4e3, 75.4e3))
        assert model.settings.rtol == 1e-8
        assert model.settings.state_method == 'fixed_point'

    def test_defaults_without_viscosity(self):
        model = build_model({'E': 200e3, 'nu': 0.3, 'tau0': 100.0})
        assert isinstance(model.variant, CrystalPlasticity)
        assert np.allclose(model.new_point().old.resistance, 100.0)

    def test_overrides(self):
        model = build_model({'E': 200e3, 'nu': 0.3}, slip_systems='bcc', max_iter=7)
        assert model.settings.max_iter == 7
        assert len(np.unique(model.variant.slip_systems.coplanar_groups)) == 6

    def test_relative_slip_table(self, tmp_path):
        (tmp_path / 'single.txt').write_text("0 1 0 1 0 0\n")
        path = tmp_path / 'p.txt'
        path.write_text("E = 200e3\nnu = 0.3\nslip_systems = 'single.txt'\n")
        assert build_model(path).variant.slip_systems.n_slip == 1

    def test_orientation(self):
        angles = (0.3, 0.6, 0.9)
        rotated = build_model({'C11': 168.4e3, 'C12': 121.4e3, 'C44': 75.4e3,
                               'euler_angles': angles})
        plain = build_model({'C11': 168.4e3, 'C12': 121.4e3, 'C44': 75.4e3})
        assert not np.allclose(rotated.variant.elasticity, plain.variant.elasticity)
        assert not np.allclose(rotated.variant.slip_systems.normals,
                               plain.variant.slip_systems.normals)

    @pytest.mark.parametrize('params', [
        {'E': 200e3, 'nu': 0.3, 'yield_stress': 1.0},
        {'C11': 168.4e3, 'C12': 121.4e3},
        {'elasticity': 'orthotropic'},
        {'E': 200e3, 'nu': 0.3, 'flow_rule': 'exponential'},
        {'E': 200e3, 'nu': 0.3, 'hardening': 'linear'},
        {'E': 200e3, 'nu': 0.3, 'a_exponent': 2.0},
        {'E': 200e3, 'nu': 0.3, 'state_method': 'secant'},
    ])
    def test_invalid(self, params):
        with pytest.raises(ValueError):
            build_model(params)

    def test_evaluates(self, tension):
        model = build_model({'E': 200e3, 'nu': 0.3, 'tau0': 100.0, 'tau_s': 200.0,
                             'h0': 1000.0})
        result = model.evaluate(model.new_point(), tension(1e-3), 1.0)
        assert result.converged
