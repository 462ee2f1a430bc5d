"""
Energy & Bulk-Viscosity Accounting
==================================
Post-convergence bookkeeping for one integration point:

  - Stored elastic energy       W0e = ½ S_el : Ee
  - Plastic work                W0p = W0p_old + Σ_α τ^α Δγ^α
  - Artificial bulk viscosity   q = q_VN + q_L   (compression only)
        q_VN = C0 · ρ · (L ε̇v)²          Von Neumann (quadratic)
        q_L  = C1 · ρ · c · L · |ε̇v|     Landshoff  (linear)
  - Viscous dissipation         Wv = Wv_old + q |ε̇v| Δt
  - Energy derivatives with respect to the total Green–Lagrange strain

The viscous pressure acts as the Cauchy stress −q I; pulled back to the
intermediate configuration it reads  S_v = −q Je Ce⁻¹.

References:
  Von Neumann & Richtmyer, J. Appl. Phys. 21:232, 1950
  Landshoff, LA-1930, 1955
"""

from dataclasses import dataclass, field

import numpy as np

from tensor_utils import det3, inv3, ddot, ddot24, sym


COUPLINGS = ('post', 'residual')


# ============================================================================
#  Bulk viscosity parameters
# ============================================================================

class BulkViscosity:
    """
    Von Neumann / Landshoff artificial viscosity.

    Parameters
    ----------
    C0       : float  quadratic (Von Neumann) coefficient
    C1       : float  linear (Landshoff) coefficient
    density  : float  reference mass density ρ
    coupling : 'post'     : viscous stress added after the stress solve
               'residual' : viscous stress enters the stress residual
    """

    def __init__(self, C0=0.0, C1=0.0, density=1.0, coupling='post'):
        if C0 < 0.0 or C1 < 0.0:
            raise ValueError(f"viscosity coefficients must be non-negative, got C0={C0!r}, C1={C1!r}")
        if density <= 0.0:
            raise ValueError(f"density must be positive, got {density!r}")
        if coupling not in COUPLINGS:
            raise ValueError(f"Unknown viscosity coupling: {coupling!r}")
        self.C0 = float(C0)
        self.C1 = float(C1)
        self.density = float(density)
        self.coupling = coupling

    @property
    def active(self):
        return self.C0 > 0.0 or self.C1 > 0.0

    def pressures(self, rate, element_length, wave_speed):
        """
        Von Neumann and Landshoff pressures for a volumetric strain rate.

        Both vanish for expansion (rate ≥ 0) and are ≥ 0 under compression.
        """
        if rate >= 0.0:
            return 0.0, 0.0
        q_vn = self.C0 * self.density * (element_length * rate) ** 2
        q_l = self.C1 * self.density * element_length * wave_speed * abs(rate)
        return q_vn, q_l

    def __repr__(self):
        return (f"BulkViscosity(C0={self.C0}, C1={self.C1}, density={self.density}, "
                f"coupling={self.coupling!r})")


# ============================================================================
#  Kinematic and energetic helpers
# ============================================================================

def volumetric_strain_rate(F, F_old, dt):
    """Logarithmic volumetric strain rate  ε̇v = ln(J / J_old) / Δt."""
    if dt <= 0.0:
        raise ValueError(f"time increment must be positive, got {dt!r}")
    J, J_old = det3(F), det3(F_old)
    if J <= 0.0 or J_old <= 0.0:
        raise ValueError(f"deformation gradient must have positive determinant, got {J}, {J_old}")
    return float(np.log(J / J_old) / dt)


def viscous_stress(q, fe):
    """Intermediate-configuration PK2 of the Cauchy pressure −q I:  −q Je Ce⁻¹."""
    if q == 0.0:
        return np.zeros((3, 3))
    ce = fe.T @ fe
    return -q * det3(fe) * inv3(ce)


def elastic_energy(pk2_elastic, ee):
    """Stored elastic energy density  W0e = ½ S_el : Ee."""
    return 0.5 * float(ddot(pk2_elastic, ee))


def plastic_work_increment(rss, dgamma):
    """Incremental plastic work  ΔW0p = Σ_α τ^α Δγ^α."""
    return float(np.dot(rss, dgamma))


def elastic_energy_derivative(pk2_elastic, fp_inv):
    """∂W0e/∂E = Fp⁻¹ S_el Fp⁻ᵀ  (E total Green–Lagrange strain, Fp held)."""
    return fp_inv @ pk2_elastic @ fp_inv.T


def plastic_work_derivative(rss, dgamma, ddg_dtau, schmid_sym, dS_dF, F,
                            ddg_dg=None, dg_dtau=None):
    """
    ∂ΔW0p/∂E from the chain  E → F → S → (τ, g, Δγ).

        ∂ΔW0p/∂τ^β = Δγ^β + τ^β ∂Δγ^β/∂τ^β + Σ_α τ^α ∂Δγ^α/∂g^α ∂g^α/∂τ^β
        ∂ΔW0p/∂S   = Σ_β ∂ΔW0p/∂τ^β P^β_sym
        ∂ΔW0p/∂F   = ∂ΔW0p/∂S : dS/dF
        ∂ΔW0p/∂E   = sym(F⁻¹ · ∂ΔW0p/∂F)

    Without ``ddg_dg`` and ``dg_dtau`` the resistance is held at its
    converged value and the hardening term is dropped.
    """
    coeff = dgamma + rss * ddg_dtau
    if ddg_dg is not None and dg_dtau is not None:
        coeff = coeff + dg_dtau.T @ (rss * ddg_dg)
    dW_dS = np.einsum('a,aij->ij', coeff, schmid_sym)
    dW_dF = ddot24(dW_dS, dS_dF)
    return sym(inv3(F) @ dW_dF)


# ============================================================================
#  Energy state
# ============================================================================

@dataclass
class EnergyState:
    """Energies and their strain derivatives for the current snapshot."""
    elastic_energy: float = 0.0
    plastic_work: float = 0.0
    plastic_work_increment: float = 0.0
    viscous_dissipation: float = 0.0
    viscous_dissipation_increment: float = 0.0
    von_neumann_pressure: float = 0.0
    landshoff_pressure: float = 0.0
    volumetric_strain_rate: float = 0.0
    d_elastic_energy_dstrain: np.ndarray = field(default_factory=lambda: np.zeros((3, 3)))
    d_plastic_work_dstrain: np.ndarray = field(default_factory=lambda: np.zeros((3, 3)))
    # PK2 added to the converged stress (post-coupled viscosity)
    stress_correction: np.ndarray = field(default_factory=lambda: np.zeros((3, 3)))

    @property
    def viscous_pressure(self):
        return self.von_neumann_pressure + self.landshoff_pressure


def account_energies(pk2_elastic, ee, fp_inv, rss, dgamma, ddg_dtau, schmid_sym,
                     dS_dF, F, plastic_work_old, viscous_dissipation_old=0.0,
                     von_neumann_pressure=0.0, landshoff_pressure=0.0,
                     strain_rate=0.0, dt=1.0, ddg_dg=None, dg_dtau=None):
    """
    Assemble the energy snapshot of a converged step.

    Parameters
    ----------
    pk2_elastic      : (3,3)  elastic part of the converged PK2 stress, C:Ee
    ee               : (3,3)  converged elastic Green–Lagrange strain
    fp_inv           : (3,3)  converged Fp⁻¹
    rss, dgamma, ddg_dtau : (n_slip,) converged slip quantities
    schmid_sym       : (n_slip,3,3)
    dS_dF            : (3,3,3,3) consistent tangent
    F                : (3,3)  total deformation gradient
    plastic_work_old, viscous_dissipation_old : previous-step totals
    von_neumann_pressure, landshoff_pressure  : this step's viscous pressures
    strain_rate      : volumetric strain rate ε̇v
    dt               : time increment
    ddg_dg, dg_dtau  : ∂Δγ/∂g and ∂g/∂τ for the hardening term of ∂ΔW0p/∂E
    """
    dWp = plastic_work_increment(rss, dgamma)
    q = von_neumann_pressure + landshoff_pressure
    dWv = q * abs(strain_rate) * dt
    return EnergyState(
        elastic_energy=elastic_energy(pk2_elastic, ee),
        plastic_work=plastic_work_old + dWp,
        plastic_work_increment=dWp,
        viscous_dissipation=viscous_dissipation_old + dWv,
        viscous_dissipation_increment=dWv,
        von_neumann_pressure=von_neumann_pressure,
        landshoff_pressure=landshoff_pressure,
        volumetric_strain_rate=strain_rate,
        d_elastic_energy_dstrain=elastic_energy_derivative(pk2_elastic, fp_inv),
        d_plastic_work_dstrain=plastic_work_derivative(
            rss, dgamma, ddg_dtau, schmid_sym, dS_dF, F,
            ddg_dg=ddg_dg, dg_dtau=dg_dtau),
    )
