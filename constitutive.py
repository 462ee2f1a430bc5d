"""
Slip Kinematics and Hardening Laws
==================================
Per-slip-system constitutive ingredients of the crystal plasticity point
solver.

Implements:
  - Power-law viscoplastic flow rule (Peirce, Asaro, Needleman 1983)
  - Overstress (threshold) power-law flow rule, zero below the resistance
  - Voce-type hardening with latent interaction
  - Saturation-power hardening (Kalidindi et al. 1992)
  - Latent-hardening interaction matrix  q_{αβ}

Flow rules return the slip increment Δγ^α together with the analytical
derivatives ∂Δγ/∂τ and ∂Δγ/∂g used by the Newton solvers.

References:
  Peirce, Asaro, Needleman (1983): rate-dependent CP
  Kalidindi, Bronkhorst, Anand (1992): saturation hardening
"""

import numpy as np
import numba as nb


# Floor on the slip resistance to keep |τ/g| finite
MIN_RESISTANCE = 1e-10

# Clamp for |τ/g| before exponentiation (overflow guard)
MAX_STRESS_RATIO = 100.0


# ============================================================================
#  Numba-accelerated flow-rule kernels
# ============================================================================

@nb.njit(cache=True, fastmath=True)
def _powerlaw_kernel(rss, resistance, dt, gamma_dot_0, n_exponent):
    """Δγ = γ̇₀ |τ/g|ⁿ sign(τ) Δt  with ∂Δγ/∂τ and ∂Δγ/∂g."""
    ns = rss.shape[0]
    dgamma = np.zeros(ns)
    ddg_dtau = np.zeros(ns)
    ddg_dg = np.zeros(ns)
    rate_dt = gamma_dot_0 * dt
    for a in range(ns):
        g = abs(resistance[a])
        if g < MIN_RESISTANCE:
            g = MIN_RESISTANCE
        tau = rss[a]
        tau_abs = abs(tau)
        if tau_abs == 0.0:
            if n_exponent == 1.0:
                ddg_dtau[a] = rate_dt / g
            continue
        sgn = 1.0 if tau > 0.0 else -1.0
        ratio = tau_abs / g
        if ratio > MAX_STRESS_RATIO:
            # clamped: Δγ no longer depends on τ or g
            dgamma[a] = rate_dt * MAX_STRESS_RATIO ** n_exponent * sgn
            continue
        r_nm1 = ratio ** (n_exponent - 1.0)
        dg = rate_dt * r_nm1 * ratio * sgn
        dgamma[a] = dg
        ddg_dtau[a] = rate_dt * n_exponent * r_nm1 / g
        ddg_dg[a] = -n_exponent * dg / g
    return dgamma, ddg_dtau, ddg_dg


@nb.njit(cache=True, fastmath=True)
def _threshold_kernel(rss, resistance, dt, gamma_dot_0, n_exponent):
    """Δγ = γ̇₀ ⟨|τ|/g − 1⟩ⁿ sign(τ) Δt  with ∂Δγ/∂τ and ∂Δγ/∂g."""
    ns = rss.shape[0]
    dgamma = np.zeros(ns)
    ddg_dtau = np.zeros(ns)
    ddg_dg = np.zeros(ns)
    rate_dt = gamma_dot_0 * dt
    for a in range(ns):
        g = abs(resistance[a])
        if g < MIN_RESISTANCE:
            g = MIN_RESISTANCE
        tau = rss[a]
        tau_abs = abs(tau)
        over = tau_abs / g - 1.0
        if over <= 0.0:
            continue
        sgn = 1.0 if tau > 0.0 else -1.0
        if over > MAX_STRESS_RATIO:
            dgamma[a] = rate_dt * MAX_STRESS_RATIO ** n_exponent * sgn
            continue
        o_nm1 = over ** (n_exponent - 1.0)
        dgamma[a] = rate_dt * o_nm1 * over * sgn
        ddg_dtau[a] = rate_dt * n_exponent * o_nm1 / g
        ddg_dg[a] = -rate_dt * n_exponent * o_nm1 * tau_abs / (g * g) * sgn
    return dgamma, ddg_dtau, ddg_dg


# ============================================================================
#  Flow rules
# ============================================================================

class PowerLawFlowRule:
    """
    Power-law viscoplastic flow rule.

        Δγ^α = γ̇₀ · |τ^α / g^α|ⁿ · sign(τ^α) · Δt

    Parameters
    ----------
    gamma_dot_0 : float  reference slip rate (s⁻¹)
    n_exponent  : float  rate sensitivity exponent (1/m)
    """

    name = 'powerlaw'

    def __init__(self, gamma_dot_0=1e-3, n_exponent=10.0):
        if gamma_dot_0 <= 0.0:
            raise ValueError(f"gamma_dot_0 must be positive, got {gamma_dot_0!r}")
        if n_exponent <= 0.0:
            raise ValueError(f"n_exponent must be positive, got {n_exponent!r}")
        self.gamma_dot_0 = float(gamma_dot_0)
        self.n_exponent = float(n_exponent)

    def slip_increments(self, rss, resistance, dt):
        """
        Parameters
        ----------
        rss        : (n_slip,) resolved shear stress
        resistance : (n_slip,) slip resistance g
        dt         : float  time increment

        Returns
        -------
        dgamma   : (n_slip,) slip increments
        ddg_dtau : (n_slip,) ∂Δγ/∂τ  (≥ 0)
        ddg_dg   : (n_slip,) ∂Δγ/∂g
        """
        return _powerlaw_kernel(np.ascontiguousarray(rss, dtype=np.float64),
                                np.ascontiguousarray(resistance, dtype=np.float64),
                                float(dt), self.gamma_dot_0, self.n_exponent)

    def __repr__(self):
        return f"PowerLawFlowRule(gamma_dot_0={self.gamma_dot_0}, n_exponent={self.n_exponent})"


class ThresholdFlowRule(PowerLawFlowRule):
    """
    Overstress power law: no slip until |τ| exceeds the resistance.

        Δγ^α = γ̇₀ · ⟨|τ^α|/g^α − 1⟩ⁿ · sign(τ^α) · Δt

    n_exponent ≥ 1 keeps the rule differentiable at the threshold.
    """

    name = 'threshold'

    def __init__(self, gamma_dot_0=1e-3, n_exponent=2.0):
        if n_exponent < 1.0:
            raise ValueError(f"threshold flow needs n_exponent >= 1, got {n_exponent!r}")
        super().__init__(gamma_dot_0, n_exponent)

    def slip_increments(self, rss, resistance, dt):
        return _threshold_kernel(np.ascontiguousarray(rss, dtype=np.float64),
                                 np.ascontiguousarray(resistance, dtype=np.float64),
                                 float(dt), self.gamma_dot_0, self.n_exponent)

    def __repr__(self):
        return f"ThresholdFlowRule(gamma_dot_0={self.gamma_dot_0}, n_exponent={self.n_exponent})"


FLOW_RULES = {
    'powerlaw': PowerLawFlowRule,
    'threshold': ThresholdFlowRule,
}


# ============================================================================
#  Hardening laws
# ============================================================================

class _HardeningLaw:
    """
    Common backward-Euler machinery for slip-resistance evolution

        g^α = g^α_old + Σ_β q_{αβ} h_β(g) |Δγ^β|

    Subclasses provide ``moduli(g) -> (h, dh/dg)``.
    """

    # True when h_β ≥ 0 for every admissible g (no softening/recovery)
    monotone = True

    def __init__(self, tau0, q_latent=1.4, coplanar=True):
        if tau0 <= 0.0:
            raise ValueError(f"initial resistance tau0 must be positive, got {tau0!r}")
        self.tau0 = float(tau0)
        self.q_latent = float(q_latent)
        self.coplanar = coplanar

    def initial_resistance(self, n_slip):
        """Initial slip resistance for every system."""
        return np.full(n_slip, self.tau0)

    def interaction_matrix(self, slip_systems):
        """
        Latent hardening matrix q_{αβ}: 1 for α = β (and for coplanar
        systems when ``coplanar``), q_latent otherwise.
        """
        n = slip_systems.n_slip
        if self.coplanar:
            groups = slip_systems.coplanar_groups
            same = groups[:, None] == groups[None, :]
        else:
            same = np.eye(n, dtype=bool)
        return np.where(same, 1.0, self.q_latent)

    def moduli(self, g):
        raise NotImplementedError

    def increment(self, g, dgamma, Q):
        """Δg^α = Σ_β q_{αβ} h_β(g) |Δγ^β|."""
        h, _ = self.moduli(g)
        return Q @ (h * np.abs(dgamma))

    def residual(self, g, g_old, dgamma, ddg_dg, Q):
        """
        Backward-Euler residual  r = g − g_old − Δg(g)  and its Jacobian.

        Parameters
        ----------
        g, g_old : (n_slip,) trial and previous-step resistance
        dgamma   : (n_slip,) slip increments evaluated at g
        ddg_dg   : (n_slip,) ∂Δγ/∂g evaluated at g
        Q        : (n_slip, n_slip) interaction matrix

        Returns
        -------
        r : (n_slip,)
        J : (n_slip, n_slip)  ∂r/∂g
        """
        h, dh = self.moduli(g)
        abs_dg = np.abs(dgamma)
        r = g - g_old - Q @ (h * abs_dg)
        # ∂(h_β |Δγ^β|)/∂g_β = h'_β |Δγ^β| + h_β sign(Δγ^β) ∂Δγ^β/∂g_β
        dterm = dh * abs_dg + h * np.sign(dgamma) * ddg_dg
        J = np.eye(g.shape[0]) - Q * dterm[None, :]
        return r, J

    def resistance_sensitivity(self, g, g_old, dgamma, ddg_dtau, ddg_dg, Q):
        """
        dg/dτ of the converged backward-Euler update.

        Differentiating r(g, τ) = 0 at fixed g_old:

            ∂r/∂g · dg = Q · diag(h sign(Δγ) ∂Δγ/∂τ) · dτ

        Returns
        -------
        (n_slip, n_slip) array, entry [α, β] = ∂g^α/∂τ^β
        """
        _, J = self.residual(g, g_old, dgamma, ddg_dg, Q)
        h, _ = self.moduli(g)
        rhs = Q * (h * np.sign(dgamma) * ddg_dtau)[None, :]
        return np.linalg.solve(J, rhs)


class VoceHardening(_HardeningLaw):
    """
    Voce-type hardening for slip resistance evolution.

    ġ^α = Σ_β q_{αβ} h_β |γ̇^β|
    h_β = h₁ + (h₀ − h₁) · max(0, 1 − g^β/g_s)

    When h1=0 this reduces to the standard simplified Voce law; h1 > 0
    gives the extended Voce law with asymptotic hardening rate θ₁.
    """

    def __init__(self, tau0=50e6, tau_s=200e6, h0=500e6, h1=0.0,
                 q_latent=1.4, coplanar=True):
        super().__init__(tau0, q_latent, coplanar)
        if tau_s <= 0.0:
            raise ValueError(f"saturation resistance tau_s must be positive, got {tau_s!r}")
        self.tau_s = float(tau_s)
        self.h0 = float(h0)
        self.h1 = float(h1)
        self.monotone = self.h0 >= 0.0 and self.h1 >= 0.0

    def moduli(self, g):
        x = 1.0 - g / self.tau_s
        h = self.h1 + (self.h0 - self.h1) * np.maximum(0.0, x)
        dh = np.where(x > 0.0, -(self.h0 - self.h1) / self.tau_s, 0.0)
        return h, dh

    def __repr__(self):
        return (f"VoceHardening(tau0={self.tau0}, tau_s={self.tau_s}, h0={self.h0}, "
                f"h1={self.h1}, q_latent={self.q_latent})")


class SaturationHardening(_HardeningLaw):
    """
    Saturation-power hardening (Kalidindi et al. 1992).

    h_β = h₀ · |1 − g^β/g_s|ᵃ · sign(1 − g^β/g_s)

    Resistances above g_s soften back towards the saturation value, so
    this law is not monotone.
    """

    monotone = False

    def __init__(self, tau0=50e6, tau_s=200e6, h0=500e6, a_exponent=2.0,
                 q_latent=1.4, coplanar=True):
        super().__init__(tau0, q_latent, coplanar)
        if tau_s <= 0.0:
            raise ValueError(f"saturation resistance tau_s must be positive, got {tau_s!r}")
        self.tau_s = float(tau_s)
        self.h0 = float(h0)
        self.a_exponent = float(a_exponent)

    def moduli(self, g):
        x = 1.0 - g / self.tau_s
        ax = np.maximum(np.abs(x), 1e-30)
        h = self.h0 * ax ** self.a_exponent * np.sign(x)
        dh = -self.h0 * self.a_exponent * ax ** (self.a_exponent - 1.0) / self.tau_s
        return h, dh

    def __repr__(self):
        return (f"SaturationHardening(tau0={self.tau0}, tau_s={self.tau_s}, h0={self.h0}, "
                f"a_exponent={self.a_exponent}, q_latent={self.q_latent})")


HARDENING_LAWS = {
    'voce': VoceHardening,
    'saturation': SaturationHardening,
}
