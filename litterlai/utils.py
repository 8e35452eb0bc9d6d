import logging
import warnings
import numpy as np
import pandas as pd
from typing import Union, Sequence, Tuple

from litterlai.exceptions import InvalidTrialCountError

logger = logging.getLogger(__name__)

DEFAULT_N_TRIALS = 1000
Z_95 = 1.96
CM2_PER_M2 = 10000
MODES = ('litter', 'sla', 'both')
STAT_COLS = ['mean_litter_mass', 'sd_litter_mass', 'mean_sla', 'sd_sla']


def check_mode(mode:str) -> str:
    """Normalize an uncertainty mode name, raise ValueError if it is not one of MODES"""
    mode_norm = str(mode).lower()
    if mode_norm not in MODES:
        raise ValueError(f'mode must be one of {MODES}, got {mode!r}')
    return mode_norm


def check_n_trials(n_trials) -> int:
    if isinstance(n_trials, bool) or not isinstance(n_trials, (int, np.integer)) or n_trials <= 0:
        raise InvalidTrialCountError(n_trials)
    return int(n_trials)


def _to_polars(df:Union['pd.DataFrame','pl.DataFrame'], required_cols:Sequence[str]) -> 'pl.DataFrame':
    import polars as pl
    if isinstance(df, pd.DataFrame):
        df = pl.from_pandas(df)
    for col in required_cols:
        if col not in df.columns:
            raise KeyError(f'Required column {col} not found in table')
    return df


def summarize_litter(litter:Union['pd.DataFrame','pl.DataFrame'],
                     minor_species:Union[Sequence[str],None] = None,
                     plot_col:str = 'plot',
                     trap_col:str = 'trap',
                     species_col:str = 'species_code',
                     mass_col:str = 'litter_mass') -> 'pl.DataFrame':
    """Summarize litter trap records to mean and standard deviation of litter mass by plot and species.

    Masses of the same species within a trap are summed first. Species listed in minor_species are relabelled
    'OTHER' before summing. A trap with no record for a species collected elsewhere in the same plot is counted as
    0 g/m^2 for that species. Collections with a missing (nan or null) mass are left out of that species' mean and
    standard deviation instead.

    Args:
        litter: table with one row per trap collection. Litter mass must be in g/m^2 of ground area.
        minor_species: species codes to pool as 'OTHER'. If None, no pooling is done.
        plot_col, trap_col, species_col, mass_col: column names in litter

    Returns: pl.DataFrame with columns plot, species_code, mean_litter_mass, sd_litter_mass
    """
    import polars as pl
    df = _to_polars(litter, [plot_col, trap_col, species_col, mass_col])
    df = df.select(pl.col(plot_col).cast(pl.Utf8).alias('plot'),
                   pl.col(trap_col).cast(pl.Utf8).alias('trap'),
                   pl.col(species_col).cast(pl.Utf8).alias('species_code'),
                   pl.col(mass_col).cast(pl.Float64).fill_nan(None).alias('litter_mass'))

    if minor_species is not None:
        df = df.with_columns(pl.when(pl.col('species_code').is_in(list(minor_species)))
                             .then(pl.lit('OTHER'))
                             .otherwise(pl.col('species_code'))
                             .alias('species_code'))

    keys = ['plot', 'trap', 'species_code']
    traps = df.select(['plot', 'trap']).unique()
    species = df.select(['plot', 'species_code']).unique()
    # Trap/species collections with a missing mass are unknown, not zero
    missing = df.filter(pl.col('litter_mass').is_null()).select(keys).unique()
    if missing.height > 0:
        logger.info('Trap collections with missing litter mass left out: %s', missing.rows())

    df = df.drop_nulls('litter_mass').group_by(keys).agg(pl.col('litter_mass').sum())

    # Fill absent species in each trap with zero mass
    df = traps.join(species, on='plot', how='inner') \
              .join(missing, on=keys, how='anti') \
              .join(df, on=keys, how='left') \
              .with_columns(pl.col('litter_mass').fill_null(0.))

    summary = df.group_by(['plot', 'species_code']).agg(pl.col('litter_mass').mean().alias('mean_litter_mass'),
                                                         pl.col('litter_mass').std().alias('sd_litter_mass'))
    # Species without any known mass keep a row with nulls for backfill
    summary = species.join(summary, on=['plot', 'species_code'], how='left')
    return summary.sort(['plot', 'species_code'])


def summarize_sla(sla:Union['pd.DataFrame','pl.DataFrame'],
                  plot_col:str = 'plot',
                  species_col:str = 'species_code',
                  sla_col:str = 'sla') -> 'pl.DataFrame':
    """Summarize leaf samples to mean and standard deviation of SLA (cm^2/g) by plot and species"""
    import polars as pl
    df = _to_polars(sla, [plot_col, species_col, sla_col])
    df = df.select(pl.col(plot_col).cast(pl.Utf8).alias('plot'),
                   pl.col(species_col).cast(pl.Utf8).alias('species_code'),
                   pl.col(sla_col).cast(pl.Float64).fill_nan(None).alias('sla'))
    df = df.drop_nulls('sla')
    summary = df.group_by(['plot', 'species_code']).agg(pl.col('sla').mean().alias('mean_sla'),
                                                         pl.col('sla').std().alias('sd_sla'))
    return summary.sort(['plot', 'species_code'])


def pool_minor_species_sla(sla_summary:'pl.DataFrame',
                           basal_area:Union['pd.DataFrame','pl.DataFrame'],
                           minor_species:Sequence[str],
                           plot_col:str = 'plot',
                           species_col:str = 'species_code',
                           basal_area_col:str = 'basal_area') -> 'pl.DataFrame':
    """Combine SLA of minor species into a single 'OTHER' pseudo-species using basal area weights.

    Within each plot, weights are the basal area of each minor species divided by the total basal area of minor
    species that have SLA data. The pooled mean is the weighted mean of species means. The pooled standard deviation
    is the standard deviation of the weighted mixture, sqrt(sum(w * (sd^2 + (mean - pooled_mean)^2))).
    Minor species without a basal area record are left out of the pool. If any pooled species has no standard
    deviation (e.g. a single leaf sample), the pooled standard deviation is left null for backfill.

    Args:
        sla_summary: output of summarize_sla()
        basal_area: table with basal area by plot and species (any area unit, only proportions are used)
        minor_species: species codes to pool

    Returns: pl.DataFrame with the same columns as sla_summary
    """
    import polars as pl
    minor_species = list(minor_species)
    ba = _to_polars(basal_area, [plot_col, species_col, basal_area_col])
    ba = ba.select(pl.col(plot_col).cast(pl.Utf8).alias('plot'),
                   pl.col(species_col).cast(pl.Utf8).alias('species_code'),
                   pl.col(basal_area_col).cast(pl.Float64).alias('basal_area'))
    ba = ba.group_by(['plot', 'species_code']).agg(pl.col('basal_area').sum())

    is_minor = pl.col('species_code').is_in(minor_species)
    minor = sla_summary.filter(is_minor & pl.col('mean_sla').is_not_null())
    unweighted = minor.join(ba, on=['plot', 'species_code'], how='anti')
    if unweighted.height > 0:
        logger.info('Minor species without basal area left out of OTHER: %s',
                    unweighted.select(['plot', 'species_code']).rows())

    minor = minor.join(ba, on=['plot', 'species_code'], how='inner')
    minor = minor.with_columns((pl.col('basal_area') / pl.col('basal_area').sum().over('plot')).alias('weight'))
    minor = minor.with_columns((pl.col('weight') * pl.col('mean_sla')).sum().over('plot').alias('pooled_mean'))
    pooled = minor.group_by('plot').agg(
        pl.col('pooled_mean').first().alias('mean_sla'),
        pl.when(pl.col('sd_sla').null_count() > 0)
        .then(pl.lit(None, dtype=pl.Float64))
        .otherwise((pl.col('weight') * (pl.col('sd_sla') ** 2 + (pl.col('mean_sla') - pl.col('pooled_mean')) ** 2))
                   .sum().sqrt())
        .alias('sd_sla'))
    pooled = pooled.with_columns(pl.lit('OTHER').alias('species_code')).select(sla_summary.columns)

    pooled = pooled.cast(sla_summary.schema)
    return pl.concat([sla_summary.filter(~is_minor), pooled]).sort(['plot', 'species_code'])


def draw_normal(mean:float, sd:float, n_trials:int, rng:'np.random.Generator', stochastic:bool=True) -> np.ndarray:
    """Draw n_trials values from Normal(mean, sd). If not stochastic, every value equals mean (zero spread)."""
    if stochastic:
        return rng.normal(mean, sd, n_trials)
    else:
        return np.full(n_trials, mean, dtype=np.float64)


def simulate(row,
             mode:str = 'both',
             n_trials:int = DEFAULT_N_TRIALS,
             rng:Union[int,'np.random.SeedSequence','np.random.Generator',None] = None,
             return_draws:bool = False) -> Union[np.ndarray, Tuple[np.ndarray, np.ndarray, np.ndarray]]:
    """Simulate LAI contributions (m^2/m^2) of one plot/species combination.

    Litter mass and SLA are drawn from independent normal distributions using two independent child streams of rng.
    Mode 'litter' holds SLA at its mean, mode 'sla' holds litter mass at its mean, mode 'both' draws both.
    Negative draws are kept as they are.

    Args:
        row: PlotSpeciesEstimate (or any object with mean_litter_mass, sd_litter_mass, mean_sla, sd_sla)
        mode: one of 'litter', 'sla', 'both'
        n_trials: number of Monte Carlo trials
        rng: seed, SeedSequence or Generator. Anything accepted by np.random.default_rng.
        return_draws: If True, also return litter mass and SLA draws.

    Returns: array of n_trials LAI contributions, or (lai, litter_mass_draws, sla_draws) if return_draws
    """
    mode = check_mode(mode)
    n_trials = check_n_trials(n_trials)
    rng = np.random.default_rng(rng)
    litter_rng, sla_rng = rng.spawn(2)

    litter_mass = draw_normal(row.mean_litter_mass, row.sd_litter_mass, n_trials, litter_rng,
                              stochastic=mode in ('litter', 'both'))
    sla = draw_normal(row.mean_sla, row.sd_sla, n_trials, sla_rng,
                      stochastic=mode in ('sla', 'both'))

    # cm^2/g * g/m^2 = cm^2/m^2
    lai = litter_mass * sla / CM2_PER_M2

    if return_draws:
        return lai, litter_mass, sla
    else:
        return lai


_FOLD_KERNEL = None


def _fold_kernel():
    """Compile the per-plot fold kernel on first use and reuse it afterwards"""
    global _FOLD_KERNEL
    if _FOLD_KERNEL is None:
        from numba import njit, float64, int64, prange

        # Parallel over plots only. Trial columns stay paired across species.
        @njit(float64[:, :](float64[:, :], int64[:], int64), parallel=True)
        def fold(contributions, plot_index, n_plots):
            n_trials = contributions.shape[1]
            totals = np.zeros((n_plots, n_trials), dtype=np.float64)
            for p in prange(n_plots):
                for row in range(contributions.shape[0]):
                    if plot_index[row] == p:
                        for t in range(n_trials):
                            totals[p, t] += contributions[row, t]
            return totals

        _FOLD_KERNEL = fold
    return _FOLD_KERNEL


def fold_trials_by_plot(contributions:np.ndarray, plot_index:np.ndarray, n_plots:int) -> np.ndarray:
    """Sum LAI contributions of all species in each plot, trial by trial.

    Args:
        contributions: 2D array with one row per plot/species combination and one column per trial
        plot_index: plot number (0 to n_plots-1) of each row in contributions
        n_plots: number of plots

    Returns: 2D array with one row per plot and one column per trial
    """
    contributions = np.ascontiguousarray(contributions, dtype=np.float64)
    plot_index = np.ascontiguousarray(plot_index, dtype=np.int64)
    if contributions.ndim != 2 or contributions.shape[0] != plot_index.size:
        raise ValueError('contributions must be 2D with one row per entry in plot_index')

    return _fold_kernel()(contributions, plot_index, np.int64(n_plots))


def summarize_trials(totals:Sequence[float], z:float = Z_95) -> Tuple[float, float, float]:
    """Return median and normal-approximation interval (median -/+ z * sd) of per-trial totals"""
    totals = np.asarray(totals, dtype=np.float64)
    if totals.size == 0:
        raise ValueError('Cannot summarize an empty trial sequence')
    median = float(np.median(totals))
    if totals.size > 1:
        sd = float(np.std(totals, ddof=1))
    else:
        warnings.warn('Standard deviation is undefined for a single trial, interval is nan', RuntimeWarning)
        sd = np.nan
    return median, median - z * sd, median + z * sd
