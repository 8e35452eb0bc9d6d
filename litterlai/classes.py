import logging
import re
import numpy as np
import pandas as pd
from typing import Union, Sequence, NamedTuple, Iterator

from litterlai.exceptions import IncompleteInputError
from litterlai.utils import (DEFAULT_N_TRIALS, MODES, STAT_COLS, check_mode, check_n_trials, simulate,
                             fold_trials_by_plot, summarize_trials, summarize_litter, summarize_sla,
                             pool_minor_species_sla)

logger = logging.getLogger(__name__)

_SPECIES_CODE = re.compile(r'^[A-Za-z0-9]{4}$')


class PlotSpeciesEstimate(NamedTuple):
    """Litter mass (g/m^2) and SLA (cm^2/g) statistics for one species in one plot"""
    plot: str
    species_code: str
    mean_litter_mass: float
    sd_litter_mass: float
    mean_sla: float
    sd_sla: float


class PlotLAIEstimate(NamedTuple):
    """Summary of simulated total LAI (m^2/m^2) for one plot and uncertainty mode"""
    plot: str
    mode: str
    lai_median: float
    lai_lower: float
    lai_upper: float


def _finite_values(values) -> Union[np.ndarray, None]:
    values = pd.to_numeric(pd.Series(values), errors='coerce').to_numpy(dtype=np.float64)
    values = values[np.isfinite(values)]
    if values.size == 0:
        return None
    return values


class LocalMeasurement:
    """Use the value measured in the plot itself"""
    name = 'local'

    def resolve(self, table:pd.DataFrame, plot:str, species_code:str, column:str) -> Union[float, None]:
        values = _finite_values(table.loc[(table['plot'] == plot) & (table['species_code'] == species_code), column])
        return None if values is None else float(values[0])


class SubstitutePlot:
    """Use the value measured in a designated substitute plot"""
    name = 'substitute'

    def __init__(self, substitute_plots:Union[dict, None] = None):
        self.substitute_plots = {} if substitute_plots is None else {str(k): str(v) for k, v in substitute_plots.items()}

    def resolve(self, table:pd.DataFrame, plot:str, species_code:str, column:str) -> Union[float, None]:
        substitute = self.substitute_plots.get(plot)
        if substitute is None or substitute == plot:
            return None
        return LocalMeasurement().resolve(table, substitute, species_code, column)


class DatasetMedian:
    """Use the median of the values measured for the species across all plots"""
    name = 'median'

    def resolve(self, table:pd.DataFrame, plot:str, species_code:str, column:str) -> Union[float, None]:
        values = _finite_values(table.loc[table['species_code'] == species_code, column])
        return None if values is None else float(np.median(values))


class UncertaintyInputTable:
    """Table of litter mass and SLA statistics by plot and species, used as input to LAIMonteCarlo

    Missing statistics are filled by an ordered list of fallback strategies, evaluated for each species and statistic
    independently. Strategies only read values that were present in the input table, so filled values never feed
    other fills.
    """
    def __init__(self, estimates:Union['pd.DataFrame','pl.DataFrame'],
                 substitute_plots:Union[dict, None] = None,
                 strategies:Union[Sequence, None] = None):
        """Initialize from a prepared table and fill missing values

        Args:
            estimates: table with columns plot, species_code, mean_litter_mass, sd_litter_mass, mean_sla, sd_sla.
                One row per plot and species. Missing values may be nan or null.
            substitute_plots (dict): maps a plot to the plot whose measurements are used when its own are missing
            strategies: fallback strategies, tried in order. Defaults to local measurement, substitute plot,
                dataset median.
        """
        if not isinstance(estimates, pd.DataFrame):
            estimates = estimates.to_pandas()
        for col in ['plot', 'species_code'] + STAT_COLS:
            if col not in estimates.columns:
                raise KeyError(f'Required column {col} not found in estimates')
        if estimates.shape[0] == 0:
            raise ValueError('estimates must contain at least one row')

        table = estimates[['plot', 'species_code'] + STAT_COLS].copy()
        table['plot'] = table['plot'].astype(str)
        table['species_code'] = table['species_code'].astype(str)
        for col in STAT_COLS:
            table[col] = pd.to_numeric(table[col], errors='coerce').astype(np.float64)

        bad_codes = [code for code in table['species_code'].unique()
                     if code != 'OTHER' and not _SPECIES_CODE.match(code)]
        if len(bad_codes) > 0:
            raise ValueError('Species codes must have 4 characters or be OTHER: ' + str(bad_codes))
        if table.duplicated(['plot', 'species_code']).any():
            raise ValueError('estimates must have one row per plot and species')

        if strategies is None:
            strategies = [LocalMeasurement(), SubstitutePlot(substitute_plots), DatasetMedian()]
        self.strategies = list(strategies)
        self.substitute_plots = substitute_plots

        self.table = table.sort_values(['plot', 'species_code']).reset_index(drop=True)
        self.backfill()

    @classmethod
    def from_records(cls, litter:Union['pd.DataFrame','pl.DataFrame'],
                     sla:Union['pd.DataFrame','pl.DataFrame'],
                     substitute_plots:Union[dict, None] = None,
                     minor_species:Union[Sequence[str], None] = None,
                     basal_area:Union['pd.DataFrame','pl.DataFrame', None] = None,
                     plot_col:str = 'plot',
                     trap_col:str = 'trap',
                     species_col:str = 'species_code',
                     mass_col:str = 'litter_mass',
                     sla_col:str = 'sla',
                     basal_area_col:str = 'basal_area') -> 'UncertaintyInputTable':
        """Build input table from litter trap records and leaf sample records

        Every species that contributed litter in a plot gets a row. SLA statistics come from leaf samples in the same
        plot and are filled by the fallback strategies where missing.

        Args:
            litter: one row per trap collection with plot, trap, species and litter mass (g/m^2)
            sla: one row per leaf sample with plot, species and SLA (cm^2/g)
            substitute_plots (dict): maps a plot to the plot whose measurements are used when its own are missing
            minor_species: species pooled as 'OTHER'. Requires basal_area for weighting SLA.
            basal_area: table with basal area by plot and species
            *_col: column names in the input tables

        Returns: UncertaintyInputTable
        """
        litter_summary = summarize_litter(litter, minor_species, plot_col, trap_col, species_col, mass_col)
        sla_summary = summarize_sla(sla, plot_col, species_col, sla_col)
        if minor_species is not None:
            if basal_area is None:
                raise ValueError('basal_area is required to pool minor species')
            sla_summary = pool_minor_species_sla(sla_summary, basal_area, minor_species,
                                                 plot_col, species_col, basal_area_col)

        estimates = litter_summary.join(sla_summary, on=['plot', 'species_code'], how='left')
        estimates = estimates.select(['plot', 'species_code'] + STAT_COLS)
        # Leave nulls in place for backfill
        estimates = pd.DataFrame({col: estimates[col].to_list() for col in estimates.columns})
        return cls(estimates, substitute_plots=substitute_plots)

    def backfill(self) -> None:
        """Fill missing statistics with the first strategy that resolves a value.

        Raises IncompleteInputError listing every cell that no strategy could fill.
        """
        original = self.table.copy()
        log = []
        missing = []
        for i in self.table.index:
            plot = self.table.loc[i, 'plot']
            species_code = self.table.loc[i, 'species_code']
            for col in STAT_COLS:
                for strategy in self.strategies:
                    value = strategy.resolve(original, plot, species_code, col)
                    if value is not None:
                        break
                else:
                    missing.append((plot, species_code, col))
                    continue

                if strategy.name != LocalMeasurement.name:
                    logger.info('Filled %s of %s in plot %s from %s: %s', col, species_code, plot, strategy.name, value)
                    log.append({'plot': plot, 'species_code': species_code, 'column': col,
                                'source': strategy.name, 'value': value})
                self.table.loc[i, col] = value

        if missing:
            raise IncompleteInputError(*missing[0], missing=missing)
        self.backfill_log = pd.DataFrame(log, columns=['plot', 'species_code', 'column', 'source', 'value'])

        negative_sd = (self.table['sd_litter_mass'] < 0) | (self.table['sd_sla'] < 0)
        if negative_sd.any():
            raise ValueError('Standard deviations must not be negative: '
                             + str(self.table.loc[negative_sd, ['plot', 'species_code']].values.tolist()))

    @property
    def plots(self) -> list:
        return sorted(self.table['plot'].unique())

    def rows(self) -> Iterator[PlotSpeciesEstimate]:
        """Yield one PlotSpeciesEstimate per plot and species, sorted by plot then species"""
        for rec in self.table.itertuples(index=False):
            yield PlotSpeciesEstimate(rec.plot, rec.species_code, float(rec.mean_litter_mass),
                                      float(rec.sd_litter_mass), float(rec.mean_sla), float(rec.sd_sla))

    def to_pandas(self) -> pd.DataFrame:
        return self.table.copy()


class LAIMonteCarlo:
    """Monte Carlo estimate of plot LAI from litter mass and SLA, with uncertainty separated by source

    Each plot/species/mode combination draws from its own child stream of a single root seed. Trial i of every species
    in a plot is summed into trial i of that plot's total LAI.
    """
    def __init__(self, input_table:Union[UncertaintyInputTable, 'pd.DataFrame'],
                 n_trials:int = DEFAULT_N_TRIALS,
                 seed:Union[int, None] = None,
                 modes:Sequence[str] = MODES):
        """
        Args:
            input_table: UncertaintyInputTable, or a table accepted by UncertaintyInputTable
            n_trials: number of trials per plot/species/mode
            seed: root seed. If None, fresh entropy is drawn and stored in self.seed.
            modes: uncertainty modes to simulate
        """
        if not isinstance(input_table, UncertaintyInputTable):
            input_table = UncertaintyInputTable(input_table)
        self.input_table = input_table
        self.n_trials = check_n_trials(n_trials)
        self.modes = [check_mode(mode) for mode in modes]
        self.root_seed = np.random.SeedSequence(seed)
        self.seed = self.root_seed.entropy
        self.rows = list(input_table.rows())
        self.plots = input_table.plots
        # Streams are indexed by position in MODES so results of one mode do not depend on which others are run
        self._streams = self.root_seed.spawn(len(MODES) * len(self.rows))
        self.trials = None

    def _stream(self, mode_index:int, row_index:int) -> 'np.random.SeedSequence':
        # Fresh copy each time, spawning children from it must not change later draws
        stream = self._streams[mode_index * len(self.rows) + row_index]
        return np.random.SeedSequence(stream.entropy, spawn_key=stream.spawn_key, pool_size=stream.pool_size)

    def stream_for(self, plot:str, species_code:str, mode:str) -> 'np.random.SeedSequence':
        """Return the seed sequence used for one plot/species/mode combination"""
        mode = check_mode(mode)
        for r, row in enumerate(self.rows):
            if row.plot == plot and row.species_code == species_code:
                return self._stream(MODES.index(mode), r)
        raise KeyError(f'No row for species {species_code} in plot {plot}')

    def run(self) -> 'LAIMonteCarlo':
        """Simulate all plot/species/mode combinations and sum trials within each plot.

        Results are stored in self.trials as {(plot, mode): array of n_trials total LAI values}.
        """
        plot_index = np.array([self.plots.index(row.plot) for row in self.rows], dtype=np.int64)
        logger.debug('Running %s trials for %s plot/species rows, modes %s, seed %s',
                     self.n_trials, len(self.rows), self.modes, self.seed)

        self.trials = {}
        for mode in self.modes:
            contributions = np.empty((len(self.rows), self.n_trials), dtype=np.float64)
            for r, row in enumerate(self.rows):
                contributions[r, :] = simulate(row, mode, self.n_trials, self._stream(MODES.index(mode), r))
            totals = fold_trials_by_plot(contributions, plot_index, len(self.plots))
            for p, plot in enumerate(self.plots):
                self.trials[(plot, mode)] = totals[p]

        logger.debug('Finished Monte Carlo run for %s plots', len(self.plots))
        return self

    def _check_run(self):
        if self.trials is None:
            raise ValueError('No simulated trials. Use run()')

    def summarize(self) -> pd.DataFrame:
        """Summarize total LAI by plot and mode as a table of PlotLAIEstimate rows"""
        self._check_run()
        records = []
        for (plot, mode), totals in self.trials.items():
            median, lower, upper = summarize_trials(totals)
            records.append(PlotLAIEstimate(plot, mode, median, lower, upper))
        summary = pd.DataFrame(records, columns=list(PlotLAIEstimate._fields))
        summary['mode'] = pd.Categorical(summary['mode'], categories=list(MODES), ordered=True)
        summary = summary.sort_values(['plot', 'mode']).reset_index(drop=True)
        summary['mode'] = summary['mode'].astype(str)
        return summary

    def decompose_variance(self) -> pd.DataFrame:
        """Variance of total LAI under each mode and share of the combined variance due to each source"""
        self._check_run()
        results = []
        for plot in self.plots:
            result = {'plot': plot}
            for mode in self.modes:
                result['var_' + mode] = float(np.var(self.trials[(plot, mode)], ddof=1))
            if 'both' in self.modes:
                for mode in ('litter', 'sla'):
                    if mode in self.modes:
                        result['share_' + mode] = result['var_' + mode] / result['var_both'] \
                            if result['var_both'] > 0 else np.nan
            results.append(result)
        return pd.DataFrame(results)

    def trials_to_pandas(self) -> pd.DataFrame:
        """Long table of per-trial total LAI (columns plot, mode, trial, lai) for density plots"""
        self._check_run()
        frames = []
        for (plot, mode), totals in self.trials.items():
            frames.append(pd.DataFrame({'plot': plot, 'mode': mode, 'trial': np.arange(totals.size), 'lai': totals}))
        return pd.concat(frames).reset_index(drop=True)

    def export_trials_as_csv(self, filepath):
        """Write per-trial total LAI to csv file"""
        self.trials_to_pandas().to_csv(filepath, index=False)

    @classmethod
    def from_file(cls, filepath):
        """
        Read simulation inputs and results from a binary file produced by LAIMonteCarlo.to_file()
        """
        import pickle
        with open(filepath, 'rb') as f:
            obj = pickle.load(f)
        return obj

    def to_file(self, filepath):
        """
        Save simulation inputs and results to a binary file.
        """
        import pickle
        with open(filepath, 'wb') as f:
            pickle.dump(self, f)


class LAIReport:
    def __init__(self, estimates:Union['pd.DataFrame', Sequence[PlotLAIEstimate]], mode:str = 'both', decimals:int = 2):
        """Plot-keyed view of LAI estimates for narrative and tables. Values are projected, never recomputed.

        Args:
            estimates: output of LAIMonteCarlo.summarize() or a sequence of PlotLAIEstimate
            mode: uncertainty mode to report
            decimals: decimals shown in formatted strings
        """
        estimates = pd.DataFrame(estimates, columns=list(PlotLAIEstimate._fields)) \
            if not isinstance(estimates, pd.DataFrame) else estimates
        for col in PlotLAIEstimate._fields:
            if col not in estimates.columns:
                raise KeyError(f'Required column {col} not found in estimates')
        self.mode = check_mode(mode)
        self.decimals = decimals
        self.all_estimates = estimates.copy()
        self.estimates = estimates[estimates['mode'].astype(str).str.lower() == self.mode] \
            .set_index('plot').sort_index()
        if self.estimates.shape[0] == 0:
            raise ValueError(f'No estimates for mode {self.mode}')

    @property
    def plots(self) -> list:
        return list(self.estimates.index)

    def interval_string(self, plot:str) -> str:
        rec = self.estimates.loc[plot]
        return f'{rec["lai_lower"]:.{self.decimals}f} to {rec["lai_upper"]:.{self.decimals}f}'

    def by_plot(self) -> dict:
        """Return {plot: (median, interval string)}"""
        return {plot: (float(self.estimates.loc[plot, 'lai_median']), self.interval_string(plot))
                for plot in self.plots}

    def plots_matching(self, pattern:str) -> dict:
        """Subset of by_plot() for plots matching a shell-style pattern, e.g. 'L*' for low elevation plots"""
        import fnmatch
        return {plot: value for plot, value in self.by_plot().items() if fnmatch.fnmatchcase(plot, pattern)}

    def compare(self, pattern_a:str, pattern_b:str) -> pd.DataFrame:
        """Table of plots matching either pattern, labelled by group"""
        frames = []
        for pattern in (pattern_a, pattern_b):
            plots = list(self.plots_matching(pattern).keys())
            df = self.estimates.loc[plots].reset_index()
            df.insert(0, 'group', pattern)
            frames.append(df)
        return pd.concat(frames).reset_index(drop=True)

    def narrative(self, plot:str) -> str:
        median, interval = self.by_plot()[plot]
        return f'Plot {plot}: LAI {median:.{self.decimals}f} m2/m2 (95% interval {interval})'

    def to_pandas(self) -> pd.DataFrame:
        df = self.estimates.reset_index()
        df['interval'] = [self.interval_string(plot) for plot in df['plot']]
        return df

    def median_by_mode(self) -> pd.DataFrame:
        """Median LAI of every plot (rows) and mode (columns), for comparing uncertainty sources"""
        df = self.all_estimates.pivot(index='plot', columns='mode', values='lai_median')
        df = df[[mode for mode in MODES if mode in df.columns]]
        df.columns.name = None
        return df.reset_index()
