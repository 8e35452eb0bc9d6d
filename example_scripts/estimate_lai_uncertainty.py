# Estimate LAI with Monte Carlo uncertainty for every plot, from litter trap and leaf sample tables.
import logging
import pandas as pd

import litterlai

logging.basicConfig(level=logging.INFO)

litter_path = 'data/litterfall_by_trap.csv'    # plot, trap, species_code, litter_mass (g/m2/yr)
sla_path = 'data/leaf_samples.csv'             # plot, species_code, sla (cm2/g)
basal_area_path = 'data/inventory_basal_area.csv'  # plot, species_code, basal_area
export_path = 'results/lai_trials.csv'

# Plots without leaf samples of their own borrow SLA from a nearby plot
substitute_plots = {'LS2': 'LS1', 'HF2': 'HF1'}
minor_species = ['LAGU', 'CASP', 'CODE']
n_trials = 1000
seed = 20240611

litter = pd.read_csv(litter_path)
sla = pd.read_csv(sla_path)
basal_area = pd.read_csv(basal_area_path)

input_table = litterlai.UncertaintyInputTable.from_records(litter, sla,
                                                           substitute_plots=substitute_plots,
                                                           minor_species=minor_species,
                                                           basal_area=basal_area)
print(input_table.backfill_log)

mc = litterlai.LAIMonteCarlo(input_table, n_trials=n_trials, seed=seed).run()
estimates = mc.summarize()
mc.export_trials_as_csv(export_path)

report = litterlai.LAIReport(estimates)
for plot in report.plots:
    print(report.narrative(plot))

# Low elevation plots against high elevation plots
print(report.compare('L*', 'H*'))
print(report.median_by_mode())
print(mc.decompose_variance())
