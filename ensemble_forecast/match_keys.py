"""Rupture identity for matching ruptures across realizations.

Two equivalence relations over `GriddedRupture` decide whether ruptures
from different realizations are the same rupture:

- `MatchKey.CORE` (core-identity) compares the location, magnitude,
  focal mechanism, tectonic region and associated section ids. Depth,
  length and hypocentre fields are averaged over matched ruptures.
- `MatchKey.FULL` (full-identity) additionally compares the upper and
  lower depths, length, hypocentral DAS and hypocentral depth, so
  ruptures differing in any of them are kept as distinct ruptures.

The choice between the two is made once for a whole ensemble by
`detect_match_key`, and threaded explicitly through the merge.
"""

from collections.abc import Iterable
from enum import StrEnum
from typing import Any, Optional

from ensemble_forecast import log_utils
from ensemble_forecast.realizations import RealizationSource
from ensemble_forecast.ruptures import GriddedRupture, Strike
from ensemble_forecast.schemas import StrikeRange

SortKey = tuple[Any, ...]


def _strike_key(strike: Strike) -> tuple[int, float, float]:
    # unspecified strikes sort first, then fixed strikes, then ranges
    if strike is None:
        return (0, 0.0, 0.0)
    if isinstance(strike, StrikeRange):
        return (2, strike.lower, strike.upper)
    return (1, strike, 0.0)


def _optional_key(value: Optional[float]) -> tuple[int, float]:
    # unset sorts before any explicit value, including the derived default
    if value is None:
        return (0, 0.0)
    return (1, value)


class MatchKey(StrEnum):
    """The equivalence relation used to match ruptures."""

    CORE = "core"
    """Match on location, magnitude, mechanism, region and associations."""
    FULL = "full"
    """Match on the core fields plus depth, length and hypocentre."""

    def sort_key(self, rupture: GriddedRupture) -> SortKey:
        """Compute the totally ordered key of a rupture.

        Two ruptures are the same rupture under this relation if and
        only if their keys are equal.

        Parameters
        ----------
        rupture : GriddedRupture
            The rupture to compute the key for.

        Returns
        -------
        tuple
            The sort key.
        """
        core = (
            rupture.grid_index,
            rupture.magnitude,
            rupture.rake,
            rupture.dip,
            _strike_key(rupture.strike),
        )
        identity = (
            rupture.tectonic_region.order,
            tuple(sorted(rupture.associated_sections)),
        )
        if self is MatchKey.CORE:
            return core + identity
        return (
            core
            + (
                rupture.upper_depth,
                rupture.lower_depth,
                rupture.length,
                _optional_key(rupture.hypocentral_das),
                _optional_key(rupture.hypocentral_depth),
            )
            + identity
        )


def has_heterogeneous_depths(ruptures: Iterable[GriddedRupture]) -> bool:
    """Check a cell for core-identical ruptures with differing geometry.

    Parameters
    ----------
    ruptures : Iterable[GriddedRupture]
        The ruptures of a single realization at a single location and
        tectonic region.

    Returns
    -------
    bool
        True if two ruptures share a core-identity but differ in their
        full-identity (depth, length or hypocentre fields).
    """
    keyed = sorted(
        (MatchKey.CORE.sort_key(rupture), MatchKey.FULL.sort_key(rupture))
        for rupture in ruptures
    )
    return any(
        previous_core == core and previous_full != full
        for (previous_core, previous_full), (core, full) in zip(keyed, keyed[1:])
    )


def detect_match_key(realizations: Iterable[RealizationSource]) -> MatchKey:
    """Choose the match key for an ensemble of realizations.

    Every cell (tectonic region and location) of every realization is
    scanned. If any cell contains two ruptures that share a
    core-identity but differ in depth, length or hypocentre, the whole
    ensemble is matched with `MatchKey.FULL`, otherwise with
    `MatchKey.CORE`.

    Parameters
    ----------
    realizations : Iterable[RealizationSource]
        The realizations of the ensemble.

    Returns
    -------
    MatchKey
        The match key to use for the entire merge.
    """
    for realization_index, realization in enumerate(realizations):
        for tectonic_region in realization.tectonic_regions:
            for grid_index in range(realization.num_locations):
                if has_heterogeneous_depths(
                    realization.ruptures(tectonic_region, grid_index)
                ):
                    log_utils.log(
                        "multiple depths or lengths for otherwise identical ruptures, depth information will not be averaged",
                        realization=realization_index,
                        tectonic_region=tectonic_region,
                        grid_index=grid_index,
                    )
                    return MatchKey.FULL
    return MatchKey.CORE
