"""Online weighted accumulators for merging rupture properties.

Every accumulator here normalises against the *total ensemble weight*
given at finalisation, not the weight it observed. A rupture absent
from some realizations has an effective rate of zero in them, so its
ensemble-wide properties are scaled down by the fraction of the weight
that actually produced it.

Weighted sums are accumulated exactly (as a list of non-overlapping
partial sums) and rounded once when read, so the result does not depend
on the order in which observations are added.
"""

import dataclasses
import math
from collections.abc import Sequence
from typing import Optional

import numpy as np

from ensemble_forecast.ruptures import GriddedRupture, midpoint_depth


class NonPositiveWeightError(ValueError):
    """Raised when an average is requested for a non-positive total weight."""

    pass


class ExactSum:
    """A floating point sum without intermediate rounding error.

    The running total is kept as non-overlapping partial sums
    (Shewchuk's algorithm, as used by `math.fsum`), so the value is the
    correctly rounded exact sum of everything added, independent of the
    order of addition.
    """

    __slots__ = ("_partials",)

    def __init__(self) -> None:
        self._partials: list[float] = []

    def add(self, x: float) -> None:
        """Add a value to the sum.

        Parameters
        ----------
        x : float
            The value to add.
        """
        partials = []
        for y in self._partials:
            if abs(x) < abs(y):
                x, y = y, x
            hi = x + y
            lo = y - (hi - x)
            if lo:
                partials.append(lo)
            x = hi
        partials.append(x)
        self._partials = partials

    @property
    def value(self) -> float:
        """float: The correctly rounded sum."""
        return math.fsum(self._partials)


class PropertyAccumulator:
    """Online weighted mean of a single scalar rupture property."""

    def __init__(self) -> None:
        self._sum_weight = ExactSum()
        self._weighted_sum = ExactSum()
        self.first_value: Optional[float] = None
        """The first value added."""
        self.all_same = False
        """True if every value added equals the first value."""

    @property
    def sum_weight(self) -> float:
        """float: The total weight of the observations added."""
        return self._sum_weight.value

    @property
    def weighted_sum(self) -> float:
        """float: The sum of each observation multiplied by its weight."""
        return self._weighted_sum.value

    def add(self, value: float, weight: float) -> None:
        """Fold one weighted observation into the accumulator.

        Parameters
        ----------
        value : float
            The observed value.
        weight : float
            The weight of the realization the value came from.
        """
        if self.first_value is None:
            self.first_value = value
            self.all_same = True
        else:
            self.all_same &= value == self.first_value
        self._weighted_sum.add(value * weight)
        self._sum_weight.add(weight)

    def average(self, total_weight: float, rtol: float = 1e-6) -> float:
        """Compute the ensemble-wide weighted average.

        If every observation had the same value, that value is returned
        directly when the observed weight matches `total_weight`, and
        scaled by `sum_weight / total_weight` otherwise. If the values
        differ the weighted sum is divided by `total_weight`.

        Parameters
        ----------
        total_weight : float
            The total weight of the ensemble (including realizations
            that did not contribute to this accumulator).
        rtol : float
            The relative tolerance used to decide whether `sum_weight`
            equals `total_weight`.

        Returns
        -------
        float
            The average value.

        Raises
        ------
        NonPositiveWeightError
            If `total_weight` is not positive.
        ValueError
            If no observations were added.
        """
        if not total_weight > 0:
            raise NonPositiveWeightError(
                f"Cannot average with a total weight of {total_weight}"
            )
        if self.first_value is None:
            raise ValueError("Cannot average an empty accumulator")
        if self.all_same:
            sum_weight = self.sum_weight
            if np.isclose(sum_weight, total_weight, rtol=rtol, atol=0.0):
                return self.first_value
            return self.first_value * sum_weight / total_weight
        return self.weighted_sum / total_weight


class AssociationAccumulator:
    """Weighted union of sparse fault section association lists.

    Section ids are kept in the order they were first seen.
    """

    def __init__(self) -> None:
        self.section_ids: list[int] = []
        self._fraction_sums: list[ExactSum] = []
        self._slots: dict[int, int] = {}

    def add(
        self, section_ids: Sequence[int], fractions: Sequence[float], weight: float
    ) -> None:
        """Add a weighted association list.

        Parameters
        ----------
        section_ids : Sequence[int]
            The associated section ids.
        fractions : Sequence[float]
            The association fraction for each section id.
        weight : float
            The weight of the realization the associations came from.
        """
        for section_id, fraction in zip(section_ids, fractions, strict=True):
            slot = self._slots.get(section_id)
            if slot is None:
                self._slots[section_id] = len(self.section_ids)
                self.section_ids.append(section_id)
                self._fraction_sums.append(ExactSum())
            self._fraction_sums[self._slots[section_id]].add(fraction * weight)

    def finalize(self, total_weight: float) -> tuple[tuple[int, ...], tuple[float, ...]]:
        """Normalise the weighted fraction sums by the ensemble weight.

        Parameters
        ----------
        total_weight : float
            The total weight of the ensemble.

        Returns
        -------
        tuple[tuple[int, ...], tuple[float, ...]]
            The section ids (in first-seen order) and their averaged
            association fractions.

        Raises
        ------
        NonPositiveWeightError
            If `total_weight` is not positive.
        """
        if not total_weight > 0:
            raise NonPositiveWeightError(
                f"Cannot normalise associations with a total weight of {total_weight}"
            )
        return tuple(self.section_ids), tuple(
            fraction_sum.value / total_weight for fraction_sum in self._fraction_sums
        )


@dataclasses.dataclass
class RupturePropertyAccumulator:
    """Accumulated properties of one matched rupture.

    The first rupture added is the key, supplying the invariant fields
    (location, magnitude, mechanism, tectonic region) of the merged
    rupture. Rate, depths, length and hypocentre are averaged.
    """

    key: GriddedRupture
    """The first rupture matched."""
    rate: PropertyAccumulator = dataclasses.field(default_factory=PropertyAccumulator)
    upper_depth: PropertyAccumulator = dataclasses.field(
        default_factory=PropertyAccumulator
    )
    lower_depth: PropertyAccumulator = dataclasses.field(
        default_factory=PropertyAccumulator
    )
    length: PropertyAccumulator = dataclasses.field(default_factory=PropertyAccumulator)
    hypocentral_depth: PropertyAccumulator = dataclasses.field(
        default_factory=PropertyAccumulator
    )
    hypocentral_das: PropertyAccumulator = dataclasses.field(
        default_factory=PropertyAccumulator
    )
    associations: AssociationAccumulator = dataclasses.field(
        default_factory=AssociationAccumulator
    )
    explicit_depth_seen: bool = False
    """True if any contributing rupture explicitly set its hypocentral depth."""
    explicit_das_seen: bool = False
    """True if any contributing rupture explicitly set its hypocentral DAS."""

    def add(self, rupture: GriddedRupture, weight: float) -> None:
        """Add a matched rupture from a realization.

        Parameters
        ----------
        rupture : GriddedRupture
            The rupture, matching `key`.
        weight : float
            The weight of the realization containing the rupture.
        """
        self.rate.add(rupture.rate, weight)
        self.upper_depth.add(rupture.upper_depth, weight)
        self.lower_depth.add(rupture.lower_depth, weight)
        self.length.add(rupture.length, weight)
        self.hypocentral_depth.add(rupture.effective_hypocentral_depth, weight)
        self.hypocentral_das.add(rupture.effective_hypocentral_das, weight)
        self.explicit_depth_seen |= rupture.hypocentral_depth is not None
        self.explicit_das_seen |= rupture.hypocentral_das is not None
        self.associations.add(
            rupture.associated_sections, rupture.associated_fractions, weight
        )

    def build(
        self, total_weight: float, weight_rtol: float = 1e-6, default_rtol: float = 1e-6
    ) -> GriddedRupture:
        """Build the merged rupture.

        A hypocentral depth (DAS) is left unset in the merged rupture if
        it was never explicitly set by a contributing rupture, every
        contribution was identical, and the average equals the midpoint
        depth (half length) of the averaged geometry.

        Parameters
        ----------
        total_weight : float
            The total weight of the ensemble.
        weight_rtol : float
            Relative tolerance for the constant-value weight shortcut.
        default_rtol : float
            Relative tolerance when comparing averaged hypocentre values
            with their derived defaults.

        Returns
        -------
        GriddedRupture
            The merged rupture.
        """
        upper_depth = self.upper_depth.average(total_weight, weight_rtol)
        lower_depth = self.lower_depth.average(total_weight, weight_rtol)
        length = self.length.average(total_weight, weight_rtol)

        hypocentral_depth: Optional[float] = self.hypocentral_depth.average(
            total_weight, weight_rtol
        )
        if (
            self.hypocentral_depth.all_same
            and not self.explicit_depth_seen
            and np.isclose(
                hypocentral_depth,
                midpoint_depth(upper_depth, lower_depth),
                rtol=default_rtol,
                atol=0.0,
            )
        ):
            hypocentral_depth = None

        hypocentral_das: Optional[float] = self.hypocentral_das.average(
            total_weight, weight_rtol
        )
        if (
            self.hypocentral_das.all_same
            and not self.explicit_das_seen
            and np.isclose(hypocentral_das, 0.5 * length, rtol=default_rtol, atol=0.0)
        ):
            hypocentral_das = None

        associated_sections, associated_fractions = self.associations.finalize(
            total_weight
        )
        return dataclasses.replace(
            self.key,
            rate=self.rate.average(total_weight, weight_rtol),
            upper_depth=upper_depth,
            lower_depth=lower_depth,
            length=length,
            hypocentral_depth=hypocentral_depth,
            hypocentral_das=hypocentral_das,
            associated_sections=associated_sections,
            associated_fractions=associated_fractions,
        )
