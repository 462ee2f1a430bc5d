"""Batched point updates and sub-stepping."""

import numpy as np
import pytest

from finite_strain import SolveStatus
from solver_utils import SolverProfiler
from time_stepping import update_points, advance_with_substeps


class TestUpdatePoints:

    def test_independent_points(self, fcc_model, tension):
        points = [fcc_model.new_point() for _ in range(3)]
        F = np.stack([tension(1e-4), tension(5e-3), tension(1e-3)])
        results, profiler = update_points(fcc_model, points, F, 1.0)
        assert [r.status for r in results] == [SolveStatus.CONVERGED,
                                               SolveStatus.NON_CONVERGENCE,
                                               SolveStatus.CONVERGED]
        assert points[1].current is None
        assert points[0].current is not None and points[2].current is not None
        assert profiler.as_dict()['counts']['evaluate'] == 3
        assert profiler.as_dict()['statuses'] == {'converged': 2, 'non_convergence': 1}

    def test_same_input_same_result(self, fcc_model, tension):
        points = [fcc_model.new_point() for _ in range(2)]
        F = np.stack([tension(1e-3)] * 2)
        results, _ = update_points(fcc_model, points, F, 1.0)
        assert np.array_equal(results[0].stress, results[1].stress)

    def test_shared_profiler_and_summary(self, fcc_model, tension, capsys):
        profiler = SolverProfiler()
        points = [fcc_model.new_point()]
        _, prof = update_points(fcc_model, points, tension(1e-4)[None], 1.0,
                                profiler=profiler, verbose=True)
        assert prof is profiler
        out = capsys.readouterr().out
        assert "evaluate" in out
        assert "converged: 1" in out

    def test_shape_mismatch(self, fcc_model, tension):
        with pytest.raises(ValueError):
            update_points(fcc_model, [fcc_model.new_point()],
                          np.stack([tension(1e-4)] * 2), 1.0)


class TestSubstepping:

    def test_recovers_by_cutting(self, fcc_model, tension):
        point = fcc_model.new_point()
        start = point.old
        direct = fcc_model.evaluate(fcc_model.new_point(), tension(5e-3), 1.0)
        assert not direct.converged

        result = advance_with_substeps(fcc_model, point, tension(5e-3), 1.0, max_cuts=8)
        assert result.converged
        assert result.info['cuts'] >= 1
        assert result.info['substeps'] >= 2
        assert point.old is start
        assert np.allclose(point.current.F, tension(5e-3))
        assert point.current.plastic_work > 0.0
        point.advance()
        assert np.allclose(point.old.F, tension(5e-3))

    def test_no_cut_needed(self, fcc_model, tension):
        point = fcc_model.new_point()
        result = advance_with_substeps(fcc_model, point, tension(1e-4), 1.0)
        assert result.converged
        assert result.info['cuts'] == 0
        assert result.info['substeps'] == 1

    def test_gives_up(self, fcc_model, tension):
        point = fcc_model.new_point()
        start = point.old
        result = advance_with_substeps(fcc_model, point, tension(5e-3), 1.0, max_cuts=0)
        assert not result.converged
        assert result.info['cuts'] == 1
        assert point.old is start
        assert point.current is None

    def test_invalid_arguments(self, fcc_model, tension):
        with pytest.raises(ValueError):
            advance_with_substeps(fcc_model, fcc_model.new_point(), tension(1e-4), 0.0)
        with pytest.raises(ValueError):
            advance_with_substeps(fcc_model, fcc_model.new_point(), tension(1e-4), 1.0,
                                  max_cuts=-1)
