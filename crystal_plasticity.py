"""
Crystal Plasticity Material Point
=================================
Point-level driver of the finite-strain crystal plasticity model.

  - PointState / MaterialPoint : old and current snapshots of one point
  - ConstitutiveVariant        : capability interface the Newton driver uses
  - CrystalPlasticity          : elastic-viscoplastic base variant
  - ViscousCrystalPlasticity   : base variant + Von Neumann / Landshoff bulk
                                 viscosity and plastic-work bookkeeping
  - CrystalPlasticityModel     : predictor → stress solve → energies, with
                                 failures reported as a SolveStatus

Usage
-----
>>> model = CrystalPlasticityModel(CrystalPlasticity(C4, slip, flow, hardening))
>>> point = model.new_point()
>>> result = model.evaluate(point, F, dt)
>>> if result.converged:
...     point.advance()
... else:
...     point.rollback()
"""

from dataclasses import dataclass, field
from typing import Protocol

import numpy as np

from tensor_utils import I3, tensor_to_voigt
from elasticity import longitudinal_wave_speed
from energy import (
    BulkViscosity, EnergyState, account_energies,
    volumetric_strain_rate, viscous_stress,
)
from finite_strain import (
    SolveStatus, ConstitutiveFailure, IllConditionedTangent, SolverSettings, StepContext,
    elastic_predictor, calc_residual, solve_statevar, solve_stress,
    post_solve_statevar, stress_tangent, first_piola_kirchhoff, cauchy_stress,
)
from solver_utils import run_all_checks


# ============================================================================
#  1.  Per-point state
# ============================================================================

@dataclass
class PointState:
    """Snapshot of one integration point at the end of a step."""
    F: np.ndarray
    fp: np.ndarray
    resistance: np.ndarray
    accumulated_slip: np.ndarray
    stress: np.ndarray
    elastic_energy: float = 0.0
    plastic_work: float = 0.0
    viscous_dissipation: float = 0.0
    d_elastic_energy_dstrain: np.ndarray = field(default_factory=lambda: np.zeros((3, 3)))
    d_plastic_work_dstrain: np.ndarray = field(default_factory=lambda: np.zeros((3, 3)))

    @classmethod
    def initial(cls, resistance):
        """Undeformed, stress-free state with the given slip resistances."""
        resistance = np.array(resistance, dtype=np.float64)
        return cls(F=I3.copy(), fp=I3.copy(), resistance=resistance,
                   accumulated_slip=np.zeros_like(resistance),
                   stress=np.zeros((3, 3)))


class MaterialPoint:
    """
    Old/current snapshot pair.  Solves read ``old`` and write only
    ``current``; the caller accepts a step with :meth:`advance` or
    discards it with :meth:`rollback`.
    """

    def __init__(self, initial_state):
        self.old = initial_state
        self.current = None

    def advance(self):
        if self.current is None:
            raise ValueError("no converged state to advance to")
        self.old = self.current
        self.current = None

    def rollback(self):
        self.current = None


# ============================================================================
#  2.  Capability interface
# ============================================================================

class ConstitutiveVariant(Protocol):
    """What the Newton driver needs from a constitutive variant."""
    elasticity: np.ndarray
    slip_systems: object
    hardening: object

    def compute_residual(self, ctx, stress, resistance): ...

    def update_internal_state(self, ctx, stress, resistance_guess): ...

    def compute_energies(self, ctx, solution, tangent, old_state) -> EnergyState: ...


class CrystalPlasticity:
    """
    Elastic-viscoplastic single crystal.

    Parameters
    ----------
    elasticity   : (3,3,3,3) sample-frame elasticity tensor
    slip_systems : SlipSystems (already rotated into the sample frame)
    flow_rule    : PowerLawFlowRule or ThresholdFlowRule
    hardening    : VoceHardening or SaturationHardening
    """

    def __init__(self, elasticity, slip_systems, flow_rule, hardening):
        elasticity = np.asarray(elasticity, dtype=np.float64)
        if elasticity.shape != (3, 3, 3, 3):
            raise ValueError(f"elasticity tensor must be (3,3,3,3), got {elasticity.shape}")
        self.elasticity = elasticity
        self.slip_systems = slip_systems
        self.flow_rule = flow_rule
        self.hardening = hardening
        self.interaction = hardening.interaction_matrix(slip_systems)

    def compute_residual(self, ctx, stress, resistance, extra_stress=None):
        return calc_residual(stress, resistance, ctx.trial, self.elasticity,
                             self.slip_systems, self.flow_rule, ctx.dt,
                             extra_stress=extra_stress)

    def update_internal_state(self, ctx, stress, resistance_guess):
        return solve_statevar(stress, ctx.resistance_old, resistance_guess, ctx.dt,
                              self.slip_systems, self.flow_rule, self.hardening,
                              self.interaction, ctx.settings)

    def compute_energies(self, ctx, solution, tangent, old_state, von_neumann_pressure=0.0,
                         landshoff_pressure=0.0, strain_rate=0.0):
        ev = solution.evaluation
        try:
            dg_dtau = self.hardening.resistance_sensitivity(
                solution.state.resistance, ctx.resistance_old, ev.dgamma, ev.ddg_dtau,
                ev.ddg_dg, self.interaction)
        except np.linalg.LinAlgError as exc:
            raise IllConditionedTangent("singular internal-state Jacobian") from exc
        return account_energies(
            ev.pk2_elastic, ev.ee, ev.fp_inv, ev.rss, ev.dgamma, ev.ddg_dtau,
            self.slip_systems.schmid_sym, tangent, ctx.F,
            ddg_dg=ev.ddg_dg, dg_dtau=dg_dtau,
            plastic_work_old=old_state.plastic_work,
            viscous_dissipation_old=old_state.viscous_dissipation,
            von_neumann_pressure=von_neumann_pressure,
            landshoff_pressure=landshoff_pressure,
            strain_rate=strain_rate, dt=ctx.dt)

    def __repr__(self):
        return (f"CrystalPlasticity(n_slip={self.slip_systems.n_slip}, "
                f"flow={self.flow_rule!r}, hardening={self.hardening!r})")


class ViscousCrystalPlasticity:
    """
    Base variant plus artificial bulk viscosity.

    The pressure q = q_VN + q_L acts as the Cauchy stress −q I.  With
    ``coupling='post'`` it is added to the converged stress; with
    ``coupling='residual'`` it is frozen at the trial kinematics and enters
    the stress residual, so it also drives slip.  The tangent excludes it
    in both modes.

    Parameters
    ----------
    base      : CrystalPlasticity
    viscosity : BulkViscosity
    """

    def __init__(self, base, viscosity):
        if not isinstance(viscosity, BulkViscosity):
            raise ValueError(f"expected a BulkViscosity, got {type(viscosity).__name__}")
        self.base = base
        self.viscosity = viscosity
        self.default_wave_speed = longitudinal_wave_speed(
            tensor_to_voigt(base.elasticity), viscosity.density)

    @property
    def elasticity(self):
        return self.base.elasticity

    @property
    def slip_systems(self):
        return self.base.slip_systems

    @property
    def hardening(self):
        return self.base.hardening

    def pressures(self, ctx):
        """(q_VN, q_L, ε̇v) for the step."""
        rate = volumetric_strain_rate(ctx.F, ctx.F_old, ctx.dt)
        c = self.default_wave_speed if ctx.wave_speed is None else ctx.wave_speed
        q_vn, q_l = self.viscosity.pressures(rate, ctx.element_length, c)
        return q_vn, q_l, rate

    def compute_residual(self, ctx, stress, resistance):
        extra = None
        if self.viscosity.coupling == 'residual':
            q_vn, q_l, _ = self.pressures(ctx)
            extra = viscous_stress(q_vn + q_l, ctx.trial.fe)
        return self.base.compute_residual(ctx, stress, resistance, extra_stress=extra)

    def update_internal_state(self, ctx, stress, resistance_guess):
        return self.base.update_internal_state(ctx, stress, resistance_guess)

    def compute_energies(self, ctx, solution, tangent, old_state):
        q_vn, q_l, rate = self.pressures(ctx)
        energies = self.base.compute_energies(
            ctx, solution, tangent, old_state, von_neumann_pressure=q_vn,
            landshoff_pressure=q_l, strain_rate=rate)
        if self.viscosity.coupling == 'post':
            energies.stress_correction = viscous_stress(
                energies.viscous_pressure, solution.evaluation.fe)
        return energies

    def __repr__(self):
        return f"ViscousCrystalPlasticity({self.base!r}, {self.viscosity!r})"


# ============================================================================
#  3.  Point driver
# ============================================================================

@dataclass
class PointResult:
    """
    Outcome of one point evaluation.

    stress  : total PK2 (intermediate configuration), viscous part included
    pk1     : first Piola–Kirchhoff stress
    cauchy  : Cauchy stress
    tangent : dS/dF  (3,3,3,3), viscous part excluded
    """
    status: SolveStatus
    stress: np.ndarray = None
    pk1: np.ndarray = None
    cauchy: np.ndarray = None
    tangent: np.ndarray = None
    state: PointState = None
    energies: EnergyState = None
    info: dict = field(default_factory=dict)

    @property
    def converged(self):
        return self.status is SolveStatus.CONVERGED


class CrystalPlasticityModel:
    """
    Runs predictor, stress solve and energy accounting for one point and
    one step.  Constitutive failures never escape :meth:`evaluate`; they are
    reported through ``PointResult.status`` so the caller can cut the step.
    """

    def __init__(self, variant, settings=None):
        self.variant = variant
        self.settings = settings if settings is not None else SolverSettings()

    def new_point(self):
        """MaterialPoint in the undeformed state with initial resistances."""
        n_slip = self.variant.slip_systems.n_slip
        return MaterialPoint(PointState.initial(
            self.variant.hardening.initial_resistance(n_slip)))

    def evaluate(self, point, F, dt, element_length=1.0, wave_speed=None):
        """
        Stress update of ``point`` to the deformation gradient ``F``.

        Parameters
        ----------
        point          : MaterialPoint  (``old`` is read, ``current`` written)
        F              : (3,3) total deformation gradient at the end of the step
        dt             : float  time increment (> 0)
        element_length : float  characteristic element length L
        wave_speed     : float  longitudinal wave speed c (None: isotropic estimate)

        Returns
        -------
        PointResult
        """
        F = np.asarray(F, dtype=np.float64)
        if F.shape != (3, 3):
            raise ValueError(f"deformation gradient must be 3x3, got shape {F.shape}")
        if dt <= 0.0:
            raise ValueError(f"time increment must be positive, got {dt!r}")
        if element_length <= 0.0:
            raise ValueError(f"element length must be positive, got {element_length!r}")

        settings = self.settings
        old = point.old
        point.current = None
        try:
            trial = elastic_predictor(F, old.fp, self.variant.elasticity)
            ctx = StepContext(trial=trial, F_old=old.F, dt=float(dt),
                              resistance_old=old.resistance, settings=settings,
                              element_length=float(element_length),
                              wave_speed=wave_speed)
            solution = solve_stress(self.variant, ctx)
            fp = post_solve_statevar(solution, settings)
            tangent = stress_tangent(self.variant, ctx, solution)
            energies = self.variant.compute_energies(ctx, solution, tangent, old)
        except ConstitutiveFailure as exc:
            if settings.verbose:
                print(f"  Point solve failed [{exc.status.value}]: {exc}")
            return PointResult(status=exc.status,
                               info={'converged': False, 'message': str(exc)})

        ev = solution.evaluation
        pk2 = solution.iterate.stress + energies.stress_correction
        resistance = solution.iterate.resistance.copy()
        state = PointState(
            F=F.copy(), fp=fp, resistance=resistance,
            accumulated_slip=old.accumulated_slip + np.abs(ev.dgamma),
            stress=pk2,
            elastic_energy=energies.elastic_energy,
            plastic_work=energies.plastic_work,
            viscous_dissipation=energies.viscous_dissipation,
            d_elastic_energy_dstrain=energies.d_elastic_energy_dstrain,
            d_plastic_work_dstrain=energies.d_plastic_work_dstrain,
        )
        point.current = state

        info = {
            'converged': True,
            'iterations': solution.iterate.iteration,
            'state_iterations': solution.iterate.state_iterations,
            'errors': solution.history,
            'final_error': solution.iterate.residual_norm,
            'state_residual': solution.state.residual_norm,
            'message': '',
        }
        if settings.debug_checks:
            info['checks'] = run_all_checks(
                fp, resistance, old.resistance, energies.plastic_work_increment,
                energies.viscous_dissipation_increment, det_tol=settings.det_tolerance)

        return PointResult(
            status=SolveStatus.CONVERGED, stress=pk2,
            pk1=first_piola_kirchhoff(pk2, ev.fe, ev.fp_inv),
            cauchy=cauchy_stress(pk2, ev.fe), tangent=tangent,
            state=state, energies=energies, info=info)
