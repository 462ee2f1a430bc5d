"""
Model Configuration
===================
Builds a ``CrystalPlasticityModel`` from a flat parameter mapping or a
``key = value`` parameter file, e.g.

    # copper, single crystal
    elasticity   = 'cubic'
    C11 = 168.4e9
    C12 = 121.4e9
    C44 = 75.4e9
    euler_angles = (0.0, 0.7854, 0.0)
    slip_systems = 'fcc'
    flow_rule    = 'powerlaw'
    gamma_dot_0  = 1e-3
    n_exponent   = 20
    hardening    = 'voce'
    tau0 = 16e6
    tau_s = 148e6
    h0 = 250e6
    C0 = 0.0
    C1 = 0.06
    density = 8960.0
    rtol = 1e-8

Values are read with ``ast.literal_eval``; anything that is not a Python
literal is kept as a string.  Relative slip-table paths are resolved
against the parameter file's directory.
"""

import ast
import dataclasses
from pathlib import Path

from elasticity import cubic_stiffness_voigt, isotropic_stiffness_voigt, elasticity_tensor
from slip_systems import build_slip_systems
from constitutive import FLOW_RULES, HARDENING_LAWS
from energy import BulkViscosity
from finite_strain import SolverSettings
from crystal_plasticity import (
    CrystalPlasticity, ViscousCrystalPlasticity, CrystalPlasticityModel,
)


ELASTICITY_KEYS = {'elasticity', 'C11', 'C12', 'C44', 'E', 'nu', 'euler_angles'}
FLOW_KEYS = {'flow_rule', 'gamma_dot_0', 'n_exponent'}
HARDENING_KEYS = {'hardening', 'tau0', 'tau_s', 'h0', 'h1', 'a_exponent',
                  'q_latent', 'coplanar'}
VISCOSITY_KEYS = {'C0', 'C1', 'density', 'coupling'}
SLIP_KEYS = {'slip_systems'}
SETTINGS_KEYS = {f.name for f in dataclasses.fields(SolverSettings)}

KNOWN_KEYS = (ELASTICITY_KEYS | FLOW_KEYS | HARDENING_KEYS | VISCOSITY_KEYS
              | SLIP_KEYS | SETTINGS_KEYS)


def _strip_comment(line):
    """Drop a trailing ``#`` comment; a ``#`` inside quotes is kept."""
    quote = None
    for i, ch in enumerate(line):
        if quote is not None:
            if ch == quote:
                quote = None
        elif ch in ('"', "'"):
            quote = ch
        elif ch == '#':
            return line[:i]
    return line


def parse_material_params(file_path):
    """
    Parse a ``key = value`` parameter file.

    Blank lines, lines without ``=`` and ``#`` comments are skipped.
    """
    params = {}
    file_path = Path(file_path)
    with open(file_path, 'r', encoding='utf-8') as f:
        for line in f:
            line = _strip_comment(line).strip()
            if not line or '=' not in line:
                continue
            key, value = line.split('=', 1)
            key = key.strip()
            value = value.strip()
            try:
                params[key] = ast.literal_eval(value)
            except (ValueError, SyntaxError):
                params[key] = value
    return params


def _pick(params, keys):
    return {k: params[k] for k in keys if k in params}


def build_elasticity(params):
    """(3,3,3,3) sample-frame elasticity tensor from cubic or isotropic constants."""
    kind = params.get('elasticity', 'isotropic' if 'E' in params else 'cubic')
    if kind == 'cubic':
        missing = [k for k in ('C11', 'C12', 'C44') if k not in params]
        if missing:
            raise ValueError(f"cubic elasticity needs {', '.join(missing)}")
        C_voigt = cubic_stiffness_voigt(params['C11'], params['C12'], params['C44'])
    elif kind == 'isotropic':
        missing = [k for k in ('E', 'nu') if k not in params]
        if missing:
            raise ValueError(f"isotropic elasticity needs {', '.join(missing)}")
        C_voigt = isotropic_stiffness_voigt(params['E'], params['nu'])
    else:
        raise ValueError(f"Unknown elasticity type: {kind!r}")
    return elasticity_tensor(C_voigt, params.get('euler_angles'))


def build_model(params, base_dir=None, **overrides):
    """
    Assemble a CrystalPlasticityModel.

    Parameters
    ----------
    params    : dict of parameters, or a path to a parameter file
    base_dir  : directory for relative slip-table paths (defaults to the
                parameter file's directory)
    overrides : parameters taking precedence over ``params``

    A viscous variant is built when C0 or C1 is positive.
    """
    if isinstance(params, (str, Path)):
        if base_dir is None:
            base_dir = Path(params).parent
        params = parse_material_params(params)
    params = {**params, **overrides}

    unknown = sorted(set(params) - KNOWN_KEYS)
    if unknown:
        raise ValueError(f"Unknown parameters: {', '.join(unknown)}")

    C4 = build_elasticity(params)

    source = params.get('slip_systems', 'fcc')
    if isinstance(source, str) and source.lower() not in ('fcc', 'bcc') and base_dir is not None:
        path = Path(source)
        source = path if path.is_absolute() else Path(base_dir) / path
    slip = build_slip_systems(source, params.get('euler_angles'))

    flow_name = params.get('flow_rule', 'powerlaw')
    if flow_name not in FLOW_RULES:
        raise ValueError(f"Unknown flow rule: {flow_name!r}")
    flow_kwargs = _pick(params, FLOW_KEYS - {'flow_rule'})
    flow = FLOW_RULES[flow_name](**flow_kwargs)

    hard_name = params.get('hardening', 'voce')
    if hard_name not in HARDENING_LAWS:
        raise ValueError(f"Unknown hardening law: {hard_name!r}")
    hard_kwargs = _pick(params, HARDENING_KEYS - {'hardening'})
    if hard_name == 'voce' and 'a_exponent' in hard_kwargs:
        raise ValueError("a_exponent applies to saturation hardening only")
    if hard_name == 'saturation' and 'h1' in hard_kwargs:
        raise ValueError("h1 applies to voce hardening only")
    hardening = HARDENING_LAWS[hard_name](**hard_kwargs)

    variant = CrystalPlasticity(C4, slip, flow, hardening)
    viscosity = BulkViscosity(**_pick(params, VISCOSITY_KEYS))
    if viscosity.active:
        variant = ViscousCrystalPlasticity(variant, viscosity)

    settings = SolverSettings(**_pick(params, SETTINGS_KEYS))
    return CrystalPlasticityModel(variant, settings)
