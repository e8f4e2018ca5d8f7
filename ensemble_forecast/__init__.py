"""Ensemble Forecast Merger.

## Overview
Gridded seismicity models are rarely delivered as a single forecast.
Instead a logic tree produces many alternative *realizations* (branches)
of the same gridded rupture forecast, each weighted by its credibility.
This package folds a weighted ensemble of realizations into one
consensus realization that preserves the weighted statistics of every
distinguishable rupture.

- `ensemble_forecast.ruptures` :: The `GriddedRupture` record.
- `ensemble_forecast.realizations` :: The `RealizationSource` container, magnitude frequency distributions and shard combination.
- `ensemble_forecast.match_keys` :: Rupture identity across realizations, and the detection pass choosing it.
- `ensemble_forecast.accumulators` :: Online weighted accumulators for rupture properties and fault section associations.
- `ensemble_forecast.merger` :: The `EnsembleMerger` and the `merge` convenience function.
- `ensemble_forecast.config` :: Merge tolerances, loaded from versioned defaults.

## Merging an Ensemble

```python
from ensemble_forecast import merger

consensus = merger.merge([(branch_a, 0.6), (branch_b, 0.4)])
```

Weights need not sum to one. A rupture present in only some branches is
normalised against the weight of the whole ensemble, so its merged rate
is scaled down by the weight of the branches that lack it.

## Logging
Every stage of a merge logs in a structured format (see
`ensemble_forecast.log_utils`). Set the environment variable
`LOG_FORMAT=JSON` to emit JSON records instead of tab separated text.
"""
