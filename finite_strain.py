"""
Finite-Strain Crystal Plasticity: Point Solver
==============================================
Stress update of one integration point for one time step.

  1. Kinematic predictor:  Fe_tr = F·Fp_old⁻¹,  S_tr = C : Ee_tr
  2. Stress residual solve (outer Newton–Raphson on the PK2 stress S)

        R(S) = S − C : Ee(S)
        Fp⁻¹ = Fp_old⁻¹ · (I − Σ_α Δγ^α s^α⊗n^α)      (backward Euler)

  3. Internal-variable solve (inner backward Euler on the resistance g,
     re-equilibrated against S at every outer iterate)

        g = g_old + Σ_β q_{αβ} h_β(g) |Δγ^β(S, g)|

  4. Post-solve: commit g and Fp, check det Fp ≈ 1, consistent tangent dS/dF

Stress measures:
  - 2nd Piola–Kirchhoff  S  in the intermediate configuration
  - 1st Piola–Kirchhoff  P = Fe·S·Fp⁻ᵀ
  - Cauchy               σ = Fe·S·Feᵀ / det Fe

Failures (non-convergence, singular Jacobians, non-isochoric Fp) raise a
``ConstitutiveFailure`` carrying a ``SolveStatus``; the point-level driver
turns them into a status for the time-stepping caller.

References:
  Kalidindi, Bronkhorst, Anand, JMPS 40:537-569, 1992
  Roters et al., Acta Mater. 58:1152-1211, 2010
"""

import warnings
from dataclasses import dataclass, field
from enum import Enum

import numpy as np
import numba as nb
import scipy.linalg

from tensor_utils import (
    I3, inv3, det3, sym, green_lagrange, ddot42,
    identity4, identity4_sym, ddot44, as_matrix9, from_matrix9,
)
from solver_utils import AndersonAccelerator


# ============================================================================
#  0.  Failure channel
# ============================================================================

class SolveStatus(Enum):
    CONVERGED = 'converged'
    NON_CONVERGENCE = 'non_convergence'
    ILL_CONDITIONED_TANGENT = 'ill_conditioned_tangent'
    INVALID_STATE = 'invalid_state'


class ConstitutiveFailure(Exception):
    """Recoverable failure of a point solve."""
    status = None


class NonConvergence(ConstitutiveFailure):
    """Outer or inner Newton loop exhausted its budget or diverged."""
    status = SolveStatus.NON_CONVERGENCE


class IllConditionedTangent(ConstitutiveFailure):
    """Singular or near-singular Newton Jacobian."""
    status = SolveStatus.ILL_CONDITIONED_TANGENT


class InvalidState(ConstitutiveFailure):
    """Kinematic breakdown: det Fp drifted from 1 or det Fe ≤ 0."""
    status = SolveStatus.INVALID_STATE


# ============================================================================
#  1.  Numba kernel
# ============================================================================

@nb.njit(cache=True, fastmath=True)
def _plastic_velocity_gradient(dgamma, schmid):
    """Plastic velocity gradient increment  ΔLp = Σ_α Δγ^α (s^α ⊗ n^α)."""
    dlp = np.zeros((3, 3))
    for a in range(dgamma.shape[0]):
        dg = dgamma[a]
        if dg == 0.0:
            continue
        for i in range(3):
            for j in range(3):
                dlp[i, j] += dg * schmid[a, i, j]
    return dlp


# ============================================================================
#  2.  Solver settings
# ============================================================================

STATE_METHODS = ('newton', 'fixed_point')
JACOBIANS = ('analytic', 'numerical')
TANGENT_MODULI = ('exact', 'elastic')


@dataclass
class SolverSettings:
    """
    Tolerances and iteration budgets of one model instance.

    rtol, abs_tol            : outer convergence  |R| < rtol·|R0|  or  |R| < abs_tol
    max_iter                 : outer Newton budget
    state_tol                : inner tolerance on max|r|, relative to max(1, max|g_old|)
    max_state_iter           : inner budget
    state_method             : 'newton' or 'fixed_point' (Anderson-accelerated)
    jacobian                 : outer Newton Jacobian, 'analytic' or 'numerical'
    tangent_modulus          : reported dS/dF, 'exact' (consistent) or 'elastic'
    line_search              : cut-half line search on |R|
    min_line_search_step     : smallest line-search step
    slip_increment_tolerance : largest admissible |Δγ| per step
    det_tolerance            : admissible |det Fp − 1|
    divergence_factor        : |R| > factor·|R0| is treated as divergence
    max_stagnation           : outer iterations without a new smallest |R| before giving up
    max_condition            : largest admissible Jacobian condition number
    fd_step                  : relative finite-difference step (numerical Jacobian)
    """
    rtol: float = 1e-6
    abs_tol: float = 1e-6
    max_iter: int = 100
    state_tol: float = 1e-8
    max_state_iter: int = 100
    state_method: str = 'newton'
    jacobian: str = 'analytic'
    tangent_modulus: str = 'exact'
    line_search: bool = False
    min_line_search_step: float = 1e-3
    slip_increment_tolerance: float = 2e-2
    det_tolerance: float = 1e-6
    divergence_factor: float = 1e10
    max_stagnation: int = 10
    max_condition: float = 1e14
    fd_step: float = 1e-6
    verbose: bool = False
    debug_checks: bool = False

    def __post_init__(self):
        if self.state_method not in STATE_METHODS:
            raise ValueError(f"Unknown state_method: {self.state_method!r}")
        if self.jacobian not in JACOBIANS:
            raise ValueError(f"Unknown jacobian: {self.jacobian!r}")
        if self.tangent_modulus not in TANGENT_MODULI:
            raise ValueError(f"Unknown tangent_modulus: {self.tangent_modulus!r}")
        if self.max_iter < 1 or self.max_state_iter < 1:
            raise ValueError("iteration budgets must be at least 1")
        if self.max_stagnation < 1:
            raise ValueError(f"max_stagnation must be at least 1, got {self.max_stagnation!r}")
        if self.rtol <= 0.0 or self.abs_tol <= 0.0 or self.state_tol <= 0.0:
            raise ValueError("tolerances must be positive")


# ============================================================================
#  3.  Kinematic predictor
# ============================================================================

@dataclass(frozen=True)
class TrialState:
    """Elastic trial state of a step (Fp frozen at its previous value)."""
    F: np.ndarray
    fp_old_inv: np.ndarray
    fe: np.ndarray
    ee: np.ndarray
    pk2: np.ndarray


def elastic_predictor(F, fp_old, elasticity):
    """
    Elastic trial state  Fe = F·Fp_old⁻¹,  Ee = ½(FeᵀFe − I),  S = C : Ee.

    Parameters
    ----------
    F          : (3,3) current total deformation gradient
    fp_old     : (3,3) converged plastic deformation gradient
    elasticity : (3,3,3,3) elasticity tensor
    """
    F = np.asarray(F, dtype=np.float64)
    if det3(F) <= 0.0:
        raise InvalidState(f"deformation gradient has non-positive determinant {det3(F):.4e}")
    try:
        fp_old_inv = inv3(np.asarray(fp_old, dtype=np.float64))
    except np.linalg.LinAlgError as exc:
        raise InvalidState("previous plastic deformation gradient is singular") from exc
    fe = F @ fp_old_inv
    ee = green_lagrange(fe)
    return TrialState(F=F, fp_old_inv=fp_old_inv, fe=fe, ee=ee,
                      pk2=ddot42(elasticity, ee))


# ============================================================================
#  4.  Step context and iterate
# ============================================================================

@dataclass(frozen=True)
class StepContext:
    """Everything held fixed during one point solve."""
    trial: TrialState
    F_old: np.ndarray
    dt: float
    resistance_old: np.ndarray
    settings: SolverSettings
    element_length: float = 1.0
    wave_speed: float = None

    @property
    def F(self):
        return self.trial.F


@dataclass(frozen=True)
class Iterate:
    """Candidate (S, g) threaded through the outer Newton loop."""
    stress: np.ndarray
    resistance: np.ndarray
    iteration: int = 0
    state_iterations: int = 0
    residual_norm: float = np.inf


def pre_solve_statevar(trial, resistance_old):
    """First iterate: trial stress, previous-step resistances, zero counters."""
    return Iterate(stress=trial.pk2.copy(),
                   resistance=np.array(resistance_old, dtype=np.float64))


# ============================================================================
#  5.  Stress residual
# ============================================================================

@dataclass(frozen=True)
class ResidualEval:
    """Residual R(S) and the kinematic quantities it was built from."""
    residual: np.ndarray
    pk2_elastic: np.ndarray
    fe: np.ndarray
    ee: np.ndarray
    fp_inv: np.ndarray
    rss: np.ndarray
    dgamma: np.ndarray
    ddg_dtau: np.ndarray
    ddg_dg: np.ndarray

    @property
    def norm(self):
        return float(np.linalg.norm(self.residual))


def calc_residual(stress, resistance, trial, elasticity, slip_systems, flow_rule, dt,
                  extra_stress=None):
    """
    R(S) = S − C : Ee(S) − S_extra.

    Slip increments at (S, g) update Fp⁻¹ by backward Euler; the implied
    elastic strain gives the elastic stress.  ``extra_stress`` is a stress
    held fixed over the step (residual-coupled bulk viscosity).
    """
    rss = slip_systems.resolved_shear_stress(stress)
    dgamma, ddg_dtau, ddg_dg = flow_rule.slip_increments(rss, resistance, dt)
    if not np.all(np.isfinite(dgamma)):
        raise NonConvergence("non-finite slip increments")

    dlp = _plastic_velocity_gradient(dgamma, slip_systems.schmid)
    fp_inv = trial.fp_old_inv @ (I3 - dlp)
    fe = trial.F @ fp_inv
    if det3(fe) <= 0.0:
        raise InvalidState(f"elastic deformation gradient inverted (det Fe = {det3(fe):.4e})")
    ee = green_lagrange(fe)
    pk2_el = ddot42(elasticity, ee)

    residual = stress - pk2_el
    if extra_stress is not None:
        residual = residual - extra_stress
    return ResidualEval(residual=residual, pk2_elastic=pk2_el, fe=fe, ee=ee,
                        fp_inv=fp_inv, rss=rss, dgamma=dgamma,
                        ddg_dtau=ddg_dtau, ddg_dg=ddg_dg)


def residual_jacobian(ev, trial, elasticity, slip_systems):
    """
    Analytical Newton Jacobian with frozen resistance.

        ∂Fp⁻¹/∂S = Σ_α (−Fp_old⁻¹ · s^α⊗n^α) ⊗ (∂Δγ^α/∂τ^α · P^α_sym)
        ∂Fe/∂S   = F · ∂Fp⁻¹/∂S
        ∂Ee/∂S   = sym(Feᵀ · ∂Fe/∂S)
        ∂R/∂S    = I − C : ∂Ee/∂S
    """
    dfpinv_dslip = -np.einsum('ij,ajk->aik', trial.fp_old_inv, slip_systems.schmid)
    dfpinv_dS = np.einsum('aij,a,akl->ijkl', dfpinv_dslip, ev.ddg_dtau,
                          slip_systems.schmid_sym)
    dfe_dS = np.einsum('im,mjkl->ijkl', trial.F, dfpinv_dS)
    dee_dS = 0.5 * (np.einsum('mikl,mj->ijkl', dfe_dS, ev.fe)
                    + np.einsum('mi,mjkl->ijkl', ev.fe, dfe_dS))
    return identity4() - ddot44(elasticity, dee_dS)


def _solve_linear(A, b, max_condition, what="Newton Jacobian"):
    """Solve A·x = b, mapping singular or ill-conditioned systems to IllConditionedTangent."""
    cond = np.linalg.cond(A)
    if not np.isfinite(cond) or cond > max_condition:
        raise IllConditionedTangent(f"{what} is ill-conditioned (cond = {cond:.3e})")
    with warnings.catch_warnings():
        warnings.simplefilter('error', scipy.linalg.LinAlgWarning)
        try:
            return scipy.linalg.solve(A, b)
        except (scipy.linalg.LinAlgError, scipy.linalg.LinAlgWarning) as exc:
            raise IllConditionedTangent(f"{what}: {exc}") from exc


# ============================================================================
#  6.  Internal-variable solve (inner backward Euler)
# ============================================================================

@dataclass(frozen=True)
class StateSolution:
    """Resistance consistent with a fixed stress."""
    resistance: np.ndarray
    residual_norm: float
    iterations: int


def solve_statevar(stress, resistance_old, resistance_guess, dt, slip_systems,
                   flow_rule, hardening, interaction, settings):
    """
    Backward-Euler resistance update for a fixed candidate stress.

        r(g) = g − g_old − Σ_β q_{αβ} h_β(g) |Δγ^β(τ(S), g)| = 0

    Parameters
    ----------
    stress           : (3,3) candidate PK2 stress
    resistance_old   : (n_slip,) previous-step resistance
    resistance_guess : (n_slip,) starting point (last outer iterate)
    interaction      : (n_slip, n_slip) latent hardening matrix
    settings         : SolverSettings (state_tol, max_state_iter, state_method)

    Returns
    -------
    StateSolution
    """
    g_old = np.asarray(resistance_old, dtype=np.float64)
    g = np.array(resistance_guess, dtype=np.float64)
    rss = slip_systems.resolved_shear_stress(stress)
    tol = settings.state_tol * max(1.0, float(np.max(np.abs(g_old))))
    accelerator = AndersonAccelerator() if settings.state_method == 'fixed_point' else None

    r_norm = np.inf
    for it in range(settings.max_state_iter + 1):
        dgamma, _, ddg_dg = flow_rule.slip_increments(rss, g, dt)
        r, J = hardening.residual(g, g_old, dgamma, ddg_dg, interaction)
        r_norm = float(np.max(np.abs(r)))
        if not np.isfinite(r_norm):
            raise NonConvergence("non-finite internal-state residual")
        if r_norm <= tol:
            return StateSolution(resistance=g, residual_norm=r_norm, iterations=it)
        if it == settings.max_state_iter:
            break
        if accelerator is None:
            g = g - _solve_linear(J, r, settings.max_condition, "internal-state Jacobian")
        else:
            # G(g) = g − r(g)
            g = accelerator.step(g, g - r)

    raise NonConvergence(
        f"internal state not converged after {settings.max_state_iter} iterations "
        f"(max|r| = {r_norm:.3e})")


# ============================================================================
#  7.  Stress solve (outer Newton–Raphson)
# ============================================================================

@dataclass(frozen=True)
class StressSolution:
    """Converged outer/inner pair."""
    iterate: Iterate
    evaluation: ResidualEval
    state: StateSolution
    history: np.ndarray = field(default_factory=lambda: np.zeros(0))


def _check_slip(ev, settings):
    dg_max = float(np.max(np.abs(ev.dgamma))) if ev.dgamma.size else 0.0
    if dg_max > settings.slip_increment_tolerance:
        raise NonConvergence(
            f"slip increment {dg_max:.3e} exceeds tolerance "
            f"{settings.slip_increment_tolerance:.3e}")


def _converged(r_norm, r_norm0, settings):
    return r_norm < settings.abs_tol or r_norm < settings.rtol * r_norm0


def _evaluate(variant, ctx, stress, resistance_guess):
    state = variant.update_internal_state(ctx, stress, resistance_guess)
    ev = variant.compute_residual(ctx, stress, state.resistance)
    _check_slip(ev, ctx.settings)
    return state, ev


def numerical_jacobian(variant, ctx, iterate):
    """
    Central-difference ∂R/∂S through the inner solve.

    Symmetric perturbations fill the symmetric block; the skew block is set
    to the identity so the 9×9 system stays regular.
    """
    settings = ctx.settings
    h = settings.fd_step * max(1.0, float(np.linalg.norm(iterate.stress)))
    J = np.zeros((3, 3, 3, 3))
    for k in range(3):
        for l in range(k, 3):
            dS = np.zeros((3, 3))
            dS[k, l] = dS[l, k] = h
            _, ev_p = _evaluate(variant, ctx, iterate.stress + dS, iterate.resistance)
            _, ev_m = _evaluate(variant, ctx, iterate.stress - dS, iterate.resistance)
            col = (ev_p.residual - ev_m.residual) / (2.0 * h)
            if k == l:
                J[:, :, k, l] = col
            else:
                J[:, :, k, l] = J[:, :, l, k] = 0.5 * col
    return J + (identity4() - identity4_sym())


def newton_jacobian(variant, ctx, iterate, ev):
    """Outer Newton Jacobian ∂R/∂S per ``settings.jacobian``."""
    if ctx.settings.jacobian == 'numerical':
        return numerical_jacobian(variant, ctx, iterate)
    return residual_jacobian(ev, ctx.trial, variant.elasticity, variant.slip_systems)


def solve_stress(variant, ctx):
    """
    Staggered Newton–Raphson on R(S) = 0.

    Every outer iterate first re-solves the resistance against the
    candidate stress (``update_internal_state``) and only then evaluates the
    residual (``compute_residual``).  The accepted pair satisfies both the
    outer and the inner tolerance.

    Parameters
    ----------
    variant : ConstitutiveVariant
    ctx     : StepContext

    Returns
    -------
    StressSolution

    Raises
    ------
    NonConvergence, IllConditionedTangent, InvalidState
    """
    settings = ctx.settings
    it = pre_solve_statevar(ctx.trial, ctx.resistance_old)
    state, ev = _evaluate(variant, ctx, it.stress, it.resistance)
    r_norm0 = r_norm = ev.norm
    history = [r_norm]
    it = Iterate(stress=it.stress, resistance=state.resistance, iteration=0,
                 state_iterations=state.iterations, residual_norm=r_norm)
    scale = r_norm0 if r_norm0 > 0.0 else 1.0
    best, stalled = r_norm0, 0

    if settings.verbose:
        print(f"  Newton {0:3d}: |R|/|R0|={1.0:.4e}  |R|={r_norm:.4e}  "
              f"(state: {state.iterations} iters)")

    while not _converged(r_norm, r_norm0, settings):
        if it.iteration >= settings.max_iter:
            raise NonConvergence(
                f"stress residual not converged after {settings.max_iter} iterations "
                f"(|R|/|R0| = {r_norm / scale:.3e})")
        if not np.isfinite(r_norm) or r_norm > settings.divergence_factor * max(r_norm0, settings.abs_tol):
            raise NonConvergence(f"stress residual diverged (|R| = {r_norm:.3e})")
        if stalled >= settings.max_stagnation:
            raise NonConvergence(
                f"stress residual stagnated: no decrease below {best:.3e} "
                f"in {stalled} iterations")

        J = newton_jacobian(variant, ctx, it, ev)
        dS = _solve_linear(as_matrix9(J), -ev.residual.reshape(9),
                           settings.max_condition).reshape(3, 3)
        dS = sym(dS)

        step = 1.0
        while True:
            stress_new = it.stress + step * dS
            try:
                state_new, ev_new = _evaluate(variant, ctx, stress_new, it.resistance)
            except NonConvergence:
                # inadmissible trial step (e.g. slip increment too large)
                if not settings.line_search or 0.5 * step < settings.min_line_search_step:
                    raise
                step *= 0.5
                continue
            if (not settings.line_search or ev_new.norm < r_norm
                    or 0.5 * step < settings.min_line_search_step):
                break
            step *= 0.5

        state, ev = state_new, ev_new
        r_norm = ev.norm
        history.append(r_norm)
        if r_norm < best:
            best, stalled = r_norm, 0
        else:
            stalled += 1
        it = Iterate(stress=stress_new, resistance=state.resistance,
                     iteration=it.iteration + 1,
                     state_iterations=it.state_iterations + state.iterations,
                     residual_norm=r_norm)

        if settings.verbose:
            ls_tag = f"  step={step:.3g}" if step < 1.0 else ""
            print(f"  Newton {it.iteration:3d}: |R|/|R0|={r_norm / scale:.4e}  "
                  f"|R|={r_norm:.4e}  (state: {state.iterations} iters){ls_tag}")

    if settings.verbose:
        print(f"  Converged at Newton iter {it.iteration} (|R| = {r_norm:.2e})")

    return StressSolution(iterate=it, evaluation=ev, state=state,
                          history=np.array(history))


# ============================================================================
#  8.  Post-solve: commit, invariants, tangent
# ============================================================================

def post_solve_statevar(solution, settings):
    """
    Finalise the plastic deformation gradient of a converged solve.

    Returns
    -------
    fp : (3,3)  Fp = (Fp⁻¹)⁻¹

    Raises
    ------
    InvalidState  when |det Fp − 1| > det_tolerance
    """
    try:
        fp = inv3(solution.evaluation.fp_inv)
    except np.linalg.LinAlgError as exc:
        raise InvalidState("plastic deformation gradient is singular") from exc
    det_dev = abs(det3(fp) - 1.0)
    if det_dev > settings.det_tolerance:
        raise InvalidState(f"plastic flow not isochoric: |det Fp - 1| = {det_dev:.3e}")
    return fp


def stress_tangent(variant, ctx, solution):
    """
    dS/dF at the converged state.

    'exact'   : dS/dF = (∂R/∂S)⁻¹ : C : ∂Ee/∂F|_S
    'elastic' : C : ∂Ee/∂F with Fp frozen

    with  ∂Fe_ij/∂F_kl = δ_ik Fp⁻¹_lj.
    """
    ev = solution.evaluation
    dfe_dF = np.einsum('ik,lj->ijkl', I3, ev.fp_inv)
    dee_dF = 0.5 * (np.einsum('mikl,mj->ijkl', dfe_dF, ev.fe)
                    + np.einsum('mi,mjkl->ijkl', ev.fe, dfe_dF))
    B = ddot44(variant.elasticity, dee_dF)
    if ctx.settings.tangent_modulus == 'elastic':
        return B
    J = newton_jacobian(variant, ctx, solution.iterate, ev)
    X = _solve_linear(as_matrix9(J), as_matrix9(B), ctx.settings.max_condition,
                      "consistent tangent")
    return from_matrix9(X)


def first_piola_kirchhoff(pk2, fe, fp_inv):
    """P = Fe · S · Fp⁻ᵀ."""
    return fe @ pk2 @ fp_inv.T


def cauchy_stress(pk2, fe):
    """σ = Fe · S · Feᵀ / det Fe."""
    return fe @ pk2 @ fe.T / det3(fe)
