"""Detection primitives: robust statistics, baselines, tier decisions, state.

Everything below the detector loop is pure: it takes samples and config in and
returns values, so the live loop and the inspection path share one code path.
"""
