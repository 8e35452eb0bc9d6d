import pandas as pd
import pytest

from litterlai import PlotSpeciesEstimate, UncertaintyInputTable


@pytest.fixture
def single_row():
    return PlotSpeciesEstimate('A', 'RHMA', 300., 30., 150., 15.)


@pytest.fixture
def two_plot_estimates():
    """Plot A with one species, plot B with two species"""
    return pd.DataFrame({
        'plot': ['A', 'B', 'B'],
        'species_code': ['RHMA', 'RHMA', 'AVGE'],
        'mean_litter_mass': [300., 200., 100.],
        'sd_litter_mass': [30., 25., 20.],
        'mean_sla': [150., 140., 90.],
        'sd_sla': [15., 12., 10.],
    })


@pytest.fixture
def two_plot_table(two_plot_estimates):
    return UncertaintyInputTable(two_plot_estimates)
