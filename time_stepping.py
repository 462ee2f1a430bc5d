"""
Time-Stepping Collaborators
===========================
Thin drivers around ``CrystalPlasticityModel.evaluate``:

  - update_points         : one step for a batch of independent points,
                            timed per phase with SolverProfiler
  - advance_with_substeps : one step for one point, halving the increment
                            (linearly interpolated F) on failure
"""

import numpy as np

from solver_utils import SolverProfiler


def update_points(model, points, F, dt, element_length=1.0, wave_speed=None,
                  profiler=None, verbose=False):
    """
    Evaluate every point to its own deformation gradient.

    Points are independent: each solve reads only its own ``old`` snapshot
    and the model's read-only data.  Converged points keep their result in
    ``current``; the caller decides whether to advance.

    Parameters
    ----------
    model    : CrystalPlasticityModel
    points   : sequence of MaterialPoint
    F        : (n_points, 3, 3) deformation gradients
    dt       : float  time increment
    profiler : optional SolverProfiler (a new one is created otherwise)

    Returns
    -------
    results  : list of PointResult
    profiler : SolverProfiler
    """
    F = np.asarray(F, dtype=np.float64).reshape(-1, 3, 3)
    if F.shape[0] != len(points):
        raise ValueError(f"got {F.shape[0]} deformation gradients for {len(points)} points")
    if profiler is None:
        profiler = SolverProfiler()

    results = []
    n_failed = 0
    for point, F_p in zip(points, F):
        with profiler.phase('evaluate'):
            result = model.evaluate(point, F_p, dt, element_length=element_length,
                                    wave_speed=wave_speed)
        profiler.record(result)
        if not result.converged:
            n_failed += 1
        results.append(result)

    if verbose:
        print(f"  Updated {len(points)} points, {n_failed} failed")
        print(profiler.summary())
    return results, profiler


def advance_with_substeps(model, point, F, dt, max_cuts=4, element_length=1.0,
                          wave_speed=None):
    """
    Take the step  point.old.F → F  over ``dt``, halving the sub-increment
    each time a solve fails.

    Accepted sub-steps are committed internally.  On success ``point.old``
    is restored to the state at the start of the step and ``point.current``
    holds the end state, so the caller advances or rolls back the whole
    step.  After more than ``max_cuts`` cuts the point is left untouched and
    the failing result is returned.

    Returns
    -------
    PointResult  (``info['substeps']`` and ``info['cuts']`` added)
    """
    if dt <= 0.0:
        raise ValueError(f"time increment must be positive, got {dt!r}")
    if max_cuts < 0:
        raise ValueError(f"max_cuts must be non-negative, got {max_cuts!r}")
    verbose = model.settings.verbose
    start = point.old
    F_start = start.F
    F = np.asarray(F, dtype=np.float64)

    t = 0.0
    h = float(dt)
    cuts = 0
    substeps = 0
    result = None
    while t < dt * (1.0 - 1e-12):
        h = min(h, dt - t)
        F_target = F_start + ((t + h) / dt) * (F - F_start)
        result = model.evaluate(point, F_target, h, element_length=element_length,
                                wave_speed=wave_speed)
        if result.converged:
            t += h
            substeps += 1
            point.advance()
            continue

        point.rollback()
        cuts += 1
        if cuts > max_cuts:
            if verbose:
                print(f"  Sub-stepping gave up after {max_cuts} cuts "
                      f"(t/dt = {t / dt:.4f}, status {result.status.value})")
            point.old = start
            result.info.update(substeps=substeps, cuts=cuts)
            return result
        h *= 0.5
        if verbose:
            print(f"  Cut {cuts}: dt -> {h:.4e} ({result.status.value})")

    point.current = point.old
    point.old = start
    result.info.update(substeps=substeps, cuts=cuts)
    return result
