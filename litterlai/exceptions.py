class IncompleteInputError(ValueError):
    """Raised when plot/species statistics cannot be filled by any fallback strategy.

    plot, species_code and column name the first unfillable cell. missing lists every
    unfillable (plot, species_code, column) found in the table.
    """
    def __init__(self, plot, species_code, column, missing=None):
        self.plot = plot
        self.species_code = species_code
        self.column = column
        self.missing = list(missing) if missing else [(plot, species_code, column)]
        cells = '; '.join(f'{c} for species {s} in plot {p}' for p, s, c in self.missing)
        super().__init__(f'Could not fill {cells}: no local measurement, '
                         f'no substitute plot value and no dataset median available')


class InvalidTrialCountError(ValueError):
    """Raised when the number of Monte Carlo trials is not a positive integer."""
    def __init__(self, n_trials):
        self.n_trials = n_trials
        super().__init__(f'n_trials must be a positive integer, got {n_trials!r}')
