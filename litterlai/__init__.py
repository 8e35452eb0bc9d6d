import logging

from litterlai.exceptions import IncompleteInputError, InvalidTrialCountError
from litterlai.utils import (DEFAULT_N_TRIALS, Z_95, CM2_PER_M2, MODES, check_mode, check_n_trials,
                             summarize_litter, summarize_sla, pool_minor_species_sla, draw_normal, simulate,
                             fold_trials_by_plot, summarize_trials)
from litterlai.classes import (PlotSpeciesEstimate, PlotLAIEstimate, LocalMeasurement, SubstitutePlot,
                               DatasetMedian, UncertaintyInputTable, LAIMonteCarlo, LAIReport)

logging.getLogger(__name__).addHandler(logging.NullHandler())
