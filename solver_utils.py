"""
Solver Utilities for the Crystal Plasticity Point Solver
========================================================
Small helpers:
  - Anderson acceleration for the fixed-point resistance update
  - Wall-clock and outcome tally for batched point updates
  - Physics-invariant debug checks on accepted states
"""

from collections import deque
from contextlib import contextmanager

import numpy as np
import time


# ============================================================================
# Anderson Acceleration of the resistance fixed point
# ============================================================================

class AndersonAccelerator:
    """
    Anderson mixing for the fixed point  g = G(g)  of the backward-Euler
    resistance update.

    Keeps the last *m* differences of iterates ΔX and of fixed-point
    residuals ΔF (f = G(g) − g) and extrapolates with the least-squares
    combination θ = argmin ||f_k − ΔF θ||:

        g_{k+1} = g_k + β f_k − (ΔX + β ΔF) θ

    Parameters
    ----------
    m    : int   history depth (0 gives the damped Picard iteration)
    beta : float relaxation of the residual step
    """

    def __init__(self, m=3, beta=1.0):
        if m < 0:
            raise ValueError(f"history depth must be non-negative, got {m!r}")
        if not 0.0 < beta <= 1.0:
            raise ValueError(f"relaxation must lie in (0, 1], got {beta!r}")
        self.m = m
        self.beta = beta
        self.reset()

    def reset(self):
        self._dX = deque(maxlen=max(self.m, 1))
        self._dF = deque(maxlen=max(self.m, 1))
        self._x_prev = None
        self._f_prev = None

    def step(self, g, Gg):
        """Next resistance iterate from the current one and its image G(g)."""
        g = np.asarray(g, dtype=np.float64)
        f = np.asarray(Gg, dtype=np.float64) - g
        if self.m > 0 and self._x_prev is not None:
            self._dX.append(g - self._x_prev)
            self._dF.append(f - self._f_prev)
        self._x_prev, self._f_prev = g.copy(), f.copy()

        g_new = g + self.beta * f
        if self.m == 0 or not self._dF:
            return g_new
        dX = np.column_stack(self._dX)
        dF = np.column_stack(self._dF)
        theta = np.linalg.lstsq(dF, f, rcond=None)[0]
        return g_new - (dX + self.beta * dF) @ theta


# ============================================================================
# Batched update profile
# ============================================================================

class SolverProfiler:
    """
    Wall-clock time per named phase and tally of point outcomes over a
    batched update.

    >>> prof = SolverProfiler()
    >>> with prof.phase('evaluate'):
    ...     result = model.evaluate(point, F, dt)
    >>> prof.record(result)
    """

    def __init__(self):
        self._times = {}
        self._counts = {}
        self._statuses = {}
        self._start = time.perf_counter()

    @contextmanager
    def phase(self, name):
        t0 = time.perf_counter()
        try:
            yield
        finally:
            self._times[name] = self._times.get(name, 0.0) + time.perf_counter() - t0
            self._counts[name] = self._counts.get(name, 0) + 1

    def record(self, result):
        """Count one point result by its solve status."""
        key = result.status.value
        self._statuses[key] = self._statuses.get(key, 0) + 1

    def as_dict(self):
        return {
            'times': dict(self._times),
            'counts': dict(self._counts),
            'statuses': dict(self._statuses),
            'total': time.perf_counter() - self._start,
        }

    def summary(self, label="Point update profile"):
        total = time.perf_counter() - self._start
        lines = [f"  {label} ({total:.3f}s total)"]
        for name, t in sorted(self._times.items(), key=lambda kv: -kv[1]):
            n = self._counts[name]
            lines.append(f"    {name:20s}  {t:8.3f}s  [{n} calls, {1e3 * t / n:.2f} ms/call]")
        if self._statuses:
            tally = ", ".join(f"{k}: {v}" for k, v in sorted(self._statuses.items()))
            lines.append(f"    outcomes: {tally}")
        return "\n".join(lines)


# ============================================================================
# Physics Invariant Checks (debug mode)
# ============================================================================

def check_isochoric(Fp, name="Fp", tol=1e-6):
    """
    Check that det(Fp) stays within *tol* of 1.
    Returns |det(Fp) − 1|.
    """
    dev = float(abs(np.linalg.det(Fp) - 1.0))
    if dev > tol:
        print(f"  [DEBUG] {name}: |det - 1| = {dev:.2e}  (> tol {tol:.0e})")
    return dev


def check_hardening_monotone(g_new, g_old, name="resistance", tol=0.0):
    """
    Check that no slip resistance decreased over the step.
    Returns the largest decrease (≤ 0 means monotone).
    """
    drop = float(np.max(np.asarray(g_old) - np.asarray(g_new)))
    if drop > tol:
        print(f"  [DEBUG] {name}: max decrease = {drop:.4e}")
    return drop


def check_energy_increment(increment, name="energy increment", tol=1e-12):
    """
    Check that a dissipation increment is non-negative.
    Returns the increment.
    """
    increment = float(increment)
    if increment < -tol:
        print(f"  [DEBUG] {name}: negative increment {increment:.4e}")
    return increment


def run_all_checks(Fp, g_new, g_old, plastic_work_increment,
                   viscous_dissipation_increment, det_tol=1e-6):
    """Run all invariant checks on an accepted state. Returns dict of results."""
    return {
        'isochoric_error': check_isochoric(Fp, tol=det_tol),
        'max_resistance_drop': check_hardening_monotone(g_new, g_old),
        'plastic_work_increment': check_energy_increment(
            plastic_work_increment, "plastic work increment"),
        'viscous_dissipation_increment': check_energy_increment(
            viscous_dissipation_increment, "viscous dissipation increment"),
    }
