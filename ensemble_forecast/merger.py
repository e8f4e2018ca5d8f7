"""Weighted ensemble merging of gridded rupture forecasts.

An `EnsembleMerger` folds a sequence of weighted realizations into one
consensus `RealizationSource`. A merge runs in three phases:

1. `detect` scans every realization once, checks they share the same
   grid locations and chooses the match key (see `match_keys`) used for
   the whole merge.
2. `accumulate` folds each (realization, weight) pair into per-cell
   sorted lists of rupture accumulators. The order realizations are
   accumulated in does not change the result.
3. `finalize` normalises every accumulator against the total ensemble
   weight and emits the merged realization.

A merger is single use: once finalized it cannot accumulate again.

Examples
--------
>>> merged = merge([(branch_a, 0.6), (branch_b, 0.4)])
>>> merged.total_rate()
"""

import bisect
import dataclasses
import logging
from collections.abc import Iterable, Sequence
from enum import StrEnum
from typing import Optional

import numpy as np
import numpy.typing as npt
import tqdm

from ensemble_forecast import log_utils
from ensemble_forecast.accumulators import (
    ExactSum,
    NonPositiveWeightError,
    RupturePropertyAccumulator,
)
from ensemble_forecast.config import MergeParameters
from ensemble_forecast.match_keys import MatchKey, SortKey, detect_match_key
from ensemble_forecast.realizations import RealizationSource
from ensemble_forecast.ruptures import GriddedRupture
from ensemble_forecast.schemas import TectonicRegion

__all__ = [
    "EnsembleMerger",
    "MalformedAssociationError",
    "MergeState",
    "MergerStateError",
    "NonPositiveWeightError",
    "ShapeMismatchError",
    "WeightedRuptureAccumulator",
    "merge",
]


class ShapeMismatchError(ValueError):
    """Raised when realizations do not share the same grid locations."""

    pass


class MalformedAssociationError(ValueError):
    """Raised when a rupture has an invalid fault section association list."""

    pass


class MergerStateError(RuntimeError):
    """Raised when a merger is used out of order, or reused after finalizing."""

    pass


class MergeState(StrEnum):
    """The lifecycle state of an `EnsembleMerger`."""

    EMPTY = "empty"
    """No realizations have been seen."""
    DETECTING = "detecting"
    """The match key and reference locations are fixed, nothing accumulated yet."""
    ACCUMULATING = "accumulating"
    """At least one realization has been accumulated."""
    FINALIZED = "finalized"
    """The merged realization has been built, the merger cannot be reused."""


def check_associations(
    rupture: GriddedRupture,
    tectonic_region: TectonicRegion,
    grid_index: int,
    rupture_index: int,
) -> None:
    """Check the fault section association list of a rupture.

    Parameters
    ----------
    rupture : GriddedRupture
        The rupture to check.
    tectonic_region : TectonicRegion
        The tectonic region of the rupture (for error reporting).
    grid_index : int
        The grid index of the rupture (for error reporting).
    rupture_index : int
        The index of the rupture within its cell (for error reporting).

    Raises
    ------
    MalformedAssociationError
        If the association id and fraction lists differ in length, or
        a fraction is outside [0, 1].
    """
    location = f"{tectonic_region} grid index {grid_index} rupture {rupture_index}"
    if len(rupture.associated_sections) != len(rupture.associated_fractions):
        raise MalformedAssociationError(
            f"{location} has {len(rupture.associated_sections)} associated sections "
            f"but {len(rupture.associated_fractions)} association fractions"
        )
    for section_id, fraction in zip(
        rupture.associated_sections, rupture.associated_fractions
    ):
        if not 0 <= fraction <= 1:
            raise MalformedAssociationError(
                f"{location} has association fraction {fraction} for section {section_id}"
            )


@dataclasses.dataclass
class _Cell:
    """Sorted rupture accumulators of one (tectonic region, location) cell."""

    keys: list[SortKey] = dataclasses.field(default_factory=list)
    properties: list[RupturePropertyAccumulator] = dataclasses.field(
        default_factory=list
    )

    def add(self, match_key: MatchKey, rupture: GriddedRupture, weight: float) -> None:
        key = match_key.sort_key(rupture)
        index = bisect.bisect_left(self.keys, key)
        if index == len(self.keys) or self.keys[index] != key:
            self.keys.insert(index, key)
            self.properties.insert(index, RupturePropertyAccumulator(rupture))
        self.properties[index].add(rupture, weight)


class WeightedRuptureAccumulator:
    """Accumulates weighted ruptures with a fixed match key.

    Parameters
    ----------
    locations : np.ndarray
        The reference grid locations shared by every realization.
    match_key : MatchKey
        The match key used to identify ruptures across realizations.
        It is fixed for the lifetime of the accumulator.
    parameters : MergeParameters
        The merge tolerances.
    """

    def __init__(
        self,
        locations: npt.NDArray[np.float64],
        match_key: MatchKey,
        parameters: MergeParameters,
    ):
        self.locations = locations
        self.match_key = match_key
        self.parameters = parameters
        self._total_weight = ExactSum()
        self.num_realizations = 0
        self._cells: dict[TectonicRegion, list[Optional[_Cell]]] = {}

    @property
    def total_weight(self) -> float:
        """float: The exact total weight of the realizations added."""
        return self._total_weight.value

    def add(self, realization: RealizationSource, weight: float) -> None:
        """Fold a weighted realization into the accumulator.

        Every association list is checked before anything is folded, so
        a malformed realization leaves the accumulator unchanged.

        Parameters
        ----------
        realization : RealizationSource
            The realization, with the reference grid locations.
        weight : float
            The weight of the realization.

        Raises
        ------
        MalformedAssociationError
            If a rupture has an invalid association list.
        """
        for tectonic_region in realization.tectonic_regions:
            for grid_index in range(realization.num_locations):
                for rupture_index, rupture in enumerate(
                    realization.ruptures(tectonic_region, grid_index)
                ):
                    check_associations(
                        rupture, tectonic_region, grid_index, rupture_index
                    )

        for tectonic_region in realization.tectonic_regions:
            cells = self._cells.setdefault(
                tectonic_region, [None] * len(self.locations)
            )
            for grid_index in range(realization.num_locations):
                ruptures = realization.ruptures(tectonic_region, grid_index)
                if not ruptures:
                    continue
                cell = cells[grid_index]
                if cell is None:
                    cell = cells[grid_index] = _Cell()
                for rupture in ruptures:
                    cell.add(self.match_key, rupture, weight)

        self._total_weight.add(weight)
        self.num_realizations += 1

    def build(self) -> RealizationSource:
        """Build the merged realization.

        Returns
        -------
        RealizationSource
            The merged realization, with ruptures in each cell ordered
            by their match key.

        Raises
        ------
        NonPositiveWeightError
            If the total weight accumulated is not positive.
        """
        total_weight = self.total_weight
        if not total_weight > 0:
            raise NonPositiveWeightError(
                f"Total ensemble weight is {total_weight}, cannot build a consensus"
            )
        merged_ruptures = {
            tectonic_region: [
                (
                    []
                    if cell is None
                    else [
                        properties.build(
                            total_weight,
                            self.parameters.weight_rtol,
                            self.parameters.default_rtol,
                        )
                        for properties in cell.properties
                    ]
                )
                for cell in cells
            ]
            for tectonic_region, cells in self._cells.items()
        }
        return RealizationSource(self.locations, merged_ruptures)


class EnsembleMerger:
    """Merges weighted realizations into a consensus realization.

    The merger moves through the states of `MergeState`: `detect`
    (EMPTY to DETECTING), `accumulate` (to ACCUMULATING) and `finalize`
    (to FINALIZED). Calling an operation in any other state raises
    `MergerStateError`. A merger instance is not thread safe.

    Parameters
    ----------
    parameters : Optional[MergeParameters]
        The merge tolerances. Defaults to `MergeParameters()`.
    """

    def __init__(self, parameters: Optional[MergeParameters] = None):
        self.parameters = parameters or MergeParameters()
        self.state = MergeState.EMPTY
        self._reference: Optional[RealizationSource] = None
        self._accumulator: Optional[WeightedRuptureAccumulator] = None

    @property
    def match_key(self) -> Optional[MatchKey]:
        """Optional[MatchKey]: The match key chosen by `detect`, if any."""
        if self._accumulator is None:
            return None
        return self._accumulator.match_key

    @property
    def total_weight(self) -> float:
        """float: The total weight accumulated so far."""
        if self._accumulator is None:
            return 0.0
        return self._accumulator.total_weight

    def _require_state(self, operation: str, *states: MergeState) -> None:
        if self.state not in states:
            raise MergerStateError(
                f"Cannot {operation} a merger in the {self.state} state"
            )

    def _check_shape(self, realization: RealizationSource, index: int) -> None:
        if not self._reference.has_similar_locations(
            realization, self.parameters.location_tolerance
        ):
            raise ShapeMismatchError(
                f"Realization {index} has {realization.num_locations} grid locations "
                "that do not match the reference "
                f"{self._reference.num_locations} grid locations"
            )

    @log_utils.log_call(exclude_args={"self", "realizations"})
    def detect(self, realizations: Sequence[RealizationSource]) -> MatchKey:
        """Check the ensemble shape and choose the match key.

        Parameters
        ----------
        realizations : Sequence[RealizationSource]
            Every realization that will be accumulated.

        Returns
        -------
        MatchKey
            The match key used for the rest of the merge.

        Raises
        ------
        MergerStateError
            If detection has already run.
        ValueError
            If there are no realizations.
        ShapeMismatchError
            If the realizations do not share the same grid locations.
        """
        self._require_state("detect with", MergeState.EMPTY)
        realizations = list(realizations)
        if not realizations:
            raise ValueError("Cannot merge an empty ensemble")
        self._reference = realizations[0]
        for index, realization in enumerate(realizations[1:], start=1):
            self._check_shape(realization, index)

        match_key = detect_match_key(realizations)
        log_utils.log(
            "detected match key",
            match_key=match_key,
            realizations=len(realizations),
            locations=self._reference.num_locations,
        )
        self._accumulator = WeightedRuptureAccumulator(
            self._reference.locations, match_key, self.parameters
        )
        self.state = MergeState.DETECTING
        return match_key

    def accumulate(self, realization: RealizationSource, weight: float) -> None:
        """Fold a weighted realization into the merge.

        Parameters
        ----------
        realization : RealizationSource
            The realization to add.
        weight : float
            The (non-negative) weight of the realization.

        Raises
        ------
        MergerStateError
            If `detect` has not run or the merger is finalized.
        ValueError
            If the weight is negative or not finite.
        ShapeMismatchError
            If the realization's grid locations differ from the reference.
        MalformedAssociationError
            If a rupture has an invalid association list.
        """
        self._require_state(
            "accumulate into", MergeState.DETECTING, MergeState.ACCUMULATING
        )
        if not np.isfinite(weight) or weight < 0:
            raise ValueError(f"Realization weight must be finite and >= 0, not {weight}")
        self._check_shape(realization, self._accumulator.num_realizations)
        self._accumulator.add(realization, weight)
        log_utils.log(
            "accumulated realization",
            None,
            logging.DEBUG,
            weight=weight,
            ruptures=realization.num_ruptures,
            total_weight=self._accumulator.total_weight,
        )
        self.state = MergeState.ACCUMULATING

    @log_utils.log_call(exclude_args={"self"}, include_result=False)
    def finalize(self) -> RealizationSource:
        """Build the merged realization.

        Returns
        -------
        RealizationSource
            The weighted consensus realization.

        Raises
        ------
        MergerStateError
            If `detect` has not run or the merger is already finalized.
        NonPositiveWeightError
            If the total accumulated weight is not positive.
        """
        self._require_state("finalize", MergeState.DETECTING, MergeState.ACCUMULATING)
        merged = self._accumulator.build()
        log_utils.log(
            "merged ensemble",
            match_key=self._accumulator.match_key,
            realizations=self._accumulator.num_realizations,
            total_weight=self._accumulator.total_weight,
            ruptures=merged.num_ruptures,
            total_rate=merged.total_rate(),
        )
        self._accumulator = None
        self.state = MergeState.FINALIZED
        return merged


@log_utils.log_call(exclude_args={"weighted_realizations"}, include_result=False)
def merge(
    weighted_realizations: Iterable[tuple[RealizationSource, float]],
    parameters: Optional[MergeParameters] = None,
) -> RealizationSource:
    """Merge weighted realizations into a consensus realization.

    Parameters
    ----------
    weighted_realizations : Iterable[tuple[RealizationSource, float]]
        The (realization, weight) pairs of the ensemble.
    parameters : Optional[MergeParameters]
        The merge tolerances. Defaults to `MergeParameters()`.

    Returns
    -------
    RealizationSource
        The weighted consensus realization.
    """
    weighted_realizations = list(weighted_realizations)
    merger = EnsembleMerger(parameters)
    merger.detect([realization for realization, _ in weighted_realizations])
    progress = (
        weighted_realizations
        if len(weighted_realizations) < merger.parameters.progress_threshold
        else tqdm.tqdm(weighted_realizations, desc="Merging", unit="realization")
    )
    for realization, weight in progress:
        merger.accumulate(realization, weight)
    return merger.finalize()
