"""Tests for Monte Carlo sampling of LAI contributions and their aggregation by plot."""
import numpy as np
import pandas as pd
import pytest

from litterlai import (InvalidTrialCountError, LAIMonteCarlo, PlotSpeciesEstimate, UncertaintyInputTable,
                       fold_trials_by_plot, simulate, summarize_trials)


class TestSimulate:

    def test_same_seed_same_trials(self, single_row):
        first = simulate(single_row, 'both', 500, 42)
        second = simulate(single_row, 'both', 500, 42)
        np.testing.assert_array_equal(first, second)

    def test_different_seed_different_trials(self, single_row):
        assert not np.array_equal(simulate(single_row, 'both', 500, 1), simulate(single_row, 'both', 500, 2))

    def test_litter_mode_holds_sla_fixed(self, single_row):
        lai, litter_mass, sla = simulate(single_row, 'litter', 1000, 7, return_draws=True)
        assert np.std(sla, ddof=1) == 0
        assert np.all(sla == single_row.mean_sla)
        assert np.std(litter_mass, ddof=1) > 0

    def test_sla_mode_holds_litter_fixed(self, single_row):
        lai, litter_mass, sla = simulate(single_row, 'sla', 1000, 7, return_draws=True)
        assert np.std(litter_mass, ddof=1) == 0
        assert np.all(litter_mass == single_row.mean_litter_mass)
        assert np.std(sla, ddof=1) > 0

    def test_contribution_is_litter_times_sla(self, single_row):
        lai, litter_mass, sla = simulate(single_row, 'both', 100, 3, return_draws=True)
        np.testing.assert_allclose(lai, litter_mass * sla / 10000)

    def test_draws_are_uncorrelated_in_both_mode(self, single_row):
        lai, litter_mass, sla = simulate(single_row, 'both', 1000, 11, return_draws=True)
        assert abs(np.corrcoef(litter_mass, sla)[0, 1]) < .1

    def test_negative_draws_are_kept(self):
        row = PlotSpeciesEstimate('A', 'LURA', 10., 100., 150., 15.)
        lai = simulate(row, 'litter', 1000, 5)
        assert (lai < 0).any()
        assert lai.size == 1000

    def test_accepts_generator_and_seed_sequence(self, single_row):
        from_generator = simulate(single_row, 'both', 50, np.random.default_rng(9))
        from_seed_sequence = simulate(single_row, 'both', 50, np.random.SeedSequence(9))
        np.testing.assert_array_equal(from_generator, from_seed_sequence)

    def test_mode_is_case_insensitive(self, single_row):
        np.testing.assert_array_equal(simulate(single_row, 'Both', 20, 1), simulate(single_row, 'both', 20, 1))

    def test_unknown_mode_raises(self, single_row):
        with pytest.raises(ValueError):
            simulate(single_row, 'leaf', 10, 1)

    @pytest.mark.parametrize('n_trials', [0, -5, 2.5, True])
    def test_invalid_trial_count_raises(self, single_row, n_trials):
        with pytest.raises(InvalidTrialCountError):
            simulate(single_row, 'both', n_trials, 1)


class TestAggregation:

    def test_fold_sums_rows_by_plot(self):
        contributions = np.array([[1., 2., 3.],
                                  [10., 20., 30.],
                                  [100., 200., 300.]])
        totals = fold_trials_by_plot(contributions, np.array([0, 1, 1]), 2)
        np.testing.assert_array_equal(totals, [[1., 2., 3.], [110., 220., 330.]])

    def test_fold_kernel_compiled_once(self):
        from litterlai import utils
        contributions = np.array([[1., 2.], [3., 4.]])
        first = fold_trials_by_plot(contributions, np.array([0, 0]), 1)
        kernel = utils._fold_kernel()
        second = fold_trials_by_plot(contributions * 2, np.array([0, 1]), 2)
        assert utils._fold_kernel() is kernel
        np.testing.assert_array_equal(first, [[4., 6.]])
        np.testing.assert_array_equal(second, [[2., 4.], [6., 8.]])

    def test_summarize_trials(self):
        totals = [1., 2., 3., 4., 5.]
        median, lower, upper = summarize_trials(totals)
        sd = np.std(totals, ddof=1)
        assert median == 3.
        assert lower == pytest.approx(3. - 1.96 * sd)
        assert upper == pytest.approx(3. + 1.96 * sd)

    def test_summarize_single_trial_warns(self):
        with pytest.warns(RuntimeWarning):
            median, lower, upper = summarize_trials([4.])
        assert median == 4.
        assert np.isnan(lower) and np.isnan(upper)

    def test_summarize_empty_raises(self):
        with pytest.raises(ValueError):
            summarize_trials([])


class TestLAIMonteCarlo:

    def test_invalid_trial_count_raises(self, two_plot_table):
        with pytest.raises(InvalidTrialCountError):
            LAIMonteCarlo(two_plot_table, n_trials=0)

    def test_summarize_before_run_raises(self, two_plot_table):
        with pytest.raises(ValueError):
            LAIMonteCarlo(two_plot_table, n_trials=10, seed=1).summarize()

    def test_same_seed_same_summary(self, two_plot_table):
        first = LAIMonteCarlo(two_plot_table, n_trials=200, seed=3).run().summarize()
        second = LAIMonteCarlo(two_plot_table, n_trials=200, seed=3).run().summarize()
        pd.testing.assert_frame_equal(first, second)

    def test_rerun_is_repeatable(self, two_plot_table):
        mc = LAIMonteCarlo(two_plot_table, n_trials=100, seed=3).run()
        first = {key: value.copy() for key, value in mc.trials.items()}
        mc.run()
        for key in first:
            np.testing.assert_array_equal(first[key], mc.trials[key])

    def test_accepts_dataframe(self, two_plot_estimates):
        mc = LAIMonteCarlo(two_plot_estimates, n_trials=10, seed=1).run()
        assert mc.plots == ['A', 'B']

    def test_summary_has_one_row_per_plot_and_mode(self, two_plot_table):
        summary = LAIMonteCarlo(two_plot_table, n_trials=100, seed=1).run().summarize()
        assert list(summary.columns) == ['plot', 'mode', 'lai_median', 'lai_lower', 'lai_upper']
        assert summary.shape[0] == 6
        assert list(summary['mode'][:3]) == ['litter', 'sla', 'both']
        assert (summary['lai_lower'] < summary['lai_median']).all()
        assert (summary['lai_upper'] > summary['lai_median']).all()

    def test_single_species_plot_median_matches_species(self, two_plot_table):
        mc = LAIMonteCarlo(two_plot_table, n_trials=1000, seed=21).run()
        summary = mc.summarize().set_index(['plot', 'mode'])
        row = next(r for r in two_plot_table.rows() if r.plot == 'A')
        contributions = simulate(row, 'both', 1000, mc.stream_for('A', 'RHMA', 'both'))
        assert summary.loc[('A', 'both'), 'lai_median'] == np.median(contributions)

    def test_trials_paired_by_index_within_plot(self, two_plot_table):
        mc = LAIMonteCarlo(two_plot_table, n_trials=300, seed=8).run()
        rows = {r.species_code: r for r in two_plot_table.rows() if r.plot == 'B'}
        expected = (simulate(rows['AVGE'], 'sla', 300, mc.stream_for('B', 'AVGE', 'sla'))
                    + simulate(rows['RHMA'], 'sla', 300, mc.stream_for('B', 'RHMA', 'sla')))
        np.testing.assert_allclose(mc.trials[('B', 'sla')], expected)

    def test_streams_independent_across_species_and_modes(self, two_plot_table):
        mc = LAIMonteCarlo(two_plot_table, n_trials=10, seed=8)
        states = {(plot, species, mode): mc.stream_for(plot, species, mode).generate_state(4).tolist()
                  for plot, species in [('A', 'RHMA'), ('B', 'RHMA'), ('B', 'AVGE')]
                  for mode in ['litter', 'sla', 'both']}
        assert len({tuple(state) for state in states.values()}) == 9

    def test_mode_subset_matches_full_run(self, two_plot_table):
        full = LAIMonteCarlo(two_plot_table, n_trials=200, seed=4).run()
        both_only = LAIMonteCarlo(two_plot_table, n_trials=200, seed=4, modes=['both']).run()
        assert set(both_only.trials.keys()) == {('A', 'both'), ('B', 'both')}
        np.testing.assert_array_equal(full.trials[('B', 'both')], both_only.trials[('B', 'both')])

    def test_unknown_stream_raises(self, two_plot_table):
        with pytest.raises(KeyError):
            LAIMonteCarlo(two_plot_table, n_trials=10, seed=1).stream_for('A', 'AVGE', 'both')

    def test_combined_variance_exceeds_single_sources(self, two_plot_table):
        variances = []
        for seed in range(5):
            mc = LAIMonteCarlo(two_plot_table, n_trials=1000, seed=seed).run()
            variances.append(mc.decompose_variance().set_index('plot'))
        mean_var = sum(variances) / len(variances)
        for plot in ['A', 'B']:
            assert mean_var.loc[plot, 'var_both'] >= mean_var.loc[plot, 'var_litter']
            assert mean_var.loc[plot, 'var_both'] >= mean_var.loc[plot, 'var_sla']
            # Independent sources add up, within sampling tolerance
            expected = mean_var.loc[plot, 'var_litter'] + mean_var.loc[plot, 'var_sla']
            assert mean_var.loc[plot, 'var_both'] == pytest.approx(expected, rel=.1)

    def test_variance_shares(self, two_plot_table):
        decomposition = LAIMonteCarlo(two_plot_table, n_trials=500, seed=2).run().decompose_variance()
        assert list(decomposition.columns) == ['plot', 'var_litter', 'var_sla', 'var_both',
                                               'share_litter', 'share_sla']
        assert ((decomposition['share_litter'] > 0) & (decomposition['share_litter'] < 1)).all()

    def test_trials_to_pandas(self, two_plot_table):
        trials = LAIMonteCarlo(two_plot_table, n_trials=50, seed=2).run().trials_to_pandas()
        assert list(trials.columns) == ['plot', 'mode', 'trial', 'lai']
        assert trials.shape[0] == 2 * 3 * 50

    def test_export_trials_as_csv(self, two_plot_table, tmp_path):
        path = tmp_path / 'trials.csv'
        LAIMonteCarlo(two_plot_table, n_trials=20, seed=2).run().export_trials_as_csv(path)
        assert pd.read_csv(path).shape[0] == 2 * 3 * 20

    def test_to_file_and_from_file(self, two_plot_table, tmp_path):
        mc = LAIMonteCarlo(two_plot_table, n_trials=50, seed=2).run()
        path = tmp_path / 'mc.pkl'
        mc.to_file(path)
        loaded = LAIMonteCarlo.from_file(path)
        pd.testing.assert_frame_equal(loaded.summarize(), mc.summarize())


class TestEndToEnd:

    def test_two_plot_scenario(self, two_plot_table):
        mc = LAIMonteCarlo(two_plot_table, n_trials=1000, seed=2024).run()
        summary = mc.summarize().set_index(['plot', 'mode'])
        assert summary.loc[('A', 'both'), 'lai_median'] == pytest.approx(300 * 150 / 10000, abs=.3)

        width = summary['lai_upper'] - summary['lai_lower']
        assert width[('A', 'both')] > width[('A', 'litter')]
        assert width[('A', 'both')] > width[('A', 'sla')]

    def test_from_records_to_summary(self):
        rng = np.random.default_rng(0)
        litter = pd.DataFrame({'plot': np.repeat(['L1', 'H1'], 10),
                               'trap': np.tile(np.arange(10), 2),
                               'species_code': 'RHMA',
                               'litter_mass': rng.normal(300, 30, 20)})
        sla = pd.DataFrame({'plot': np.repeat(['L1'], 15), 'species_code': 'RHMA',
                            'sla': rng.normal(150, 15, 15)})
        table = UncertaintyInputTable.from_records(litter, sla, substitute_plots={'H1': 'L1'})
        summary = LAIMonteCarlo(table, n_trials=1000, seed=1).run().summarize()
        assert summary['lai_median'].between(3.5, 5.5).all()
