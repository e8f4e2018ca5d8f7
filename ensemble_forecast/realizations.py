"""The realizations module defines the gridded rupture forecast container.

A `RealizationSource` holds one complete gridded seismicity model: a
list of grid locations and, for every tectonic region, the ruptures at
each location. It is both the input (one per logic tree branch) and the
output (the weighted consensus) of an ensemble merge.

A *source* is one non-empty (tectonic region, grid location) cell.
Sources are indexed in tectonic region order, then grid index order.
"""

import itertools
from collections import defaultdict
from collections.abc import Iterator, Mapping, Sequence
from typing import NamedTuple, Optional, Self

import numpy as np
import numpy.typing as npt
import pandas as pd

from ensemble_forecast import log_utils
from ensemble_forecast.ruptures import GriddedRupture
from ensemble_forecast.schemas import StrikeRange, TectonicRegion

MFD_BIN_WIDTH = 0.1

STRIKE_SLIP_RAKE_RANGES = [(-180.0, -135.0), (-45.0, 45.0), (135.0, 180.0)]
REVERSE_RAKE_RANGES = [(45.0, 135.0)]
NORMAL_RAKE_RANGES = [(-135.0, -45.0)]


class IncrementalMFD(NamedTuple):
    """An incremental magnitude frequency distribution."""

    magnitudes: npt.NDArray[np.float64]
    """The magnitude bin centres."""
    rates: npt.NDArray[np.float64]
    """The annual rate in each magnitude bin."""

    @property
    def total_rate(self) -> float:
        """float: The total rate over all bins."""
        return float(self.rates.sum())


def _reference_magnitudes(magnitudes: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
    """Compute the reference magnitude gridding for a set of magnitudes.

    Bins are `MFD_BIN_WIDTH` wide. If every magnitude lies on a tenth
    (e.g. 5.0, 5.1) the bin centres are the tenths, otherwise the bin
    centres are offset by half a bin so that the bin edges are tenths.

    Parameters
    ----------
    magnitudes : np.ndarray
        The rupture magnitudes.

    Returns
    -------
    np.ndarray
        The reference bin centres.
    """
    if len(magnitudes) == 0:
        return np.array([], dtype=np.float64)
    # compared in single precision, so 6.1 * 10 counts as a whole number
    scaled = (magnitudes * 10.0).astype(np.float32)
    tenth_aligned = np.all(scaled == np.round(scaled))
    min_magnitude = float(magnitudes.min())
    max_magnitude = float(magnitudes.max())
    if not tenth_aligned:
        min_magnitude = np.floor(min_magnitude * 10.0) / 10.0 + 0.5 * MFD_BIN_WIDTH
        max_magnitude = np.floor(max_magnitude * 10.0) / 10.0 + 0.5 * MFD_BIN_WIDTH
    size = int(np.round((max_magnitude - min_magnitude) / MFD_BIN_WIDTH)) + 1
    return min_magnitude + MFD_BIN_WIDTH * np.arange(size)


def _in_rake_ranges(rake: float, rake_ranges: Sequence[tuple[float, float]]) -> bool:
    return any(lower <= rake <= upper for lower, upper in rake_ranges)


class RealizationSource:
    """A gridded rupture forecast over a fixed list of grid locations.

    Parameters
    ----------
    locations : np.ndarray
        The grid locations, shape (n, 2) with columns latitude and
        longitude (in decimal degrees).
    ruptures : Mapping[TectonicRegion, Sequence[Optional[Sequence[GriddedRupture]]]]
        For each tectonic region, one (possibly empty or None) sequence
        of ruptures per grid location.

    Raises
    ------
    ValueError
        If a region does not have one rupture list per location, or a
        rupture's grid index or tectonic region does not match its
        position in the container.
    """

    def __init__(
        self,
        locations: npt.ArrayLike,
        ruptures: Mapping[
            TectonicRegion, Sequence[Optional[Sequence[GriddedRupture]]]
        ],
    ):
        locations = np.atleast_2d(np.array(locations, dtype=np.float64))
        if locations.size == 0:
            locations = locations.reshape((0, 2))
        if locations.ndim != 2 or locations.shape[1] != 2:
            raise ValueError(
                f"Locations must have shape (n, 2), not {locations.shape}"
            )
        locations.setflags(write=False)
        self._locations = locations

        self._ruptures: dict[TectonicRegion, list[tuple[GriddedRupture, ...]]] = {}
        for tectonic_region in TectonicRegion:
            if tectonic_region not in ruptures:
                continue
            rupture_lists = ruptures[tectonic_region]
            if len(rupture_lists) != self.num_locations:
                raise ValueError(
                    f"{tectonic_region} has {len(rupture_lists)} rupture lists for {self.num_locations} locations"
                )
            cells = []
            for grid_index, cell in enumerate(rupture_lists):
                cell = tuple(cell or ())
                for rupture in cell:
                    if rupture.tectonic_region != tectonic_region:
                        raise ValueError(
                            f"Rupture in {tectonic_region} has tectonic region {rupture.tectonic_region}"
                        )
                    if rupture.grid_index != grid_index:
                        raise ValueError(
                            f"Rupture at grid index {grid_index} has grid index {rupture.grid_index}"
                        )
                cells.append(cell)
            self._ruptures[tectonic_region] = cells

        self._source_cells = [
            (tectonic_region, grid_index)
            for tectonic_region, cells in self._ruptures.items()
            for grid_index, cell in enumerate(cells)
            if cell
        ]
        self._section_grid_indexes: dict[int, set[int]] = defaultdict(set)
        for rupture in self.iter_ruptures():
            for section_id in rupture.associated_sections:
                self._section_grid_indexes[section_id].add(rupture.grid_index)
        self._reference_magnitudes: Optional[npt.NDArray[np.float64]] = None

    @property
    def locations(self) -> npt.NDArray[np.float64]:
        """np.ndarray: The (read-only) grid locations, shape (n, 2)."""
        return self._locations

    @property
    def num_locations(self) -> int:
        """int: The number of grid locations."""
        return len(self._locations)

    def location(self, grid_index: int) -> npt.NDArray[np.float64]:
        """Return the (latitude, longitude) of a grid location."""
        return self._locations[grid_index]

    @property
    def tectonic_regions(self) -> list[TectonicRegion]:
        """list[TectonicRegion]: The tectonic regions present, in enum order."""
        return list(self._ruptures)

    def ruptures(
        self, tectonic_region: Optional[TectonicRegion], grid_index: int
    ) -> tuple[GriddedRupture, ...]:
        """Return the ruptures at a grid location.

        Parameters
        ----------
        tectonic_region : Optional[TectonicRegion]
            The tectonic region, or None for ruptures from every region.
        grid_index : int
            The grid location index.

        Returns
        -------
        tuple[GriddedRupture, ...]
            The ruptures, empty if there are none.
        """
        if tectonic_region is None:
            return tuple(
                itertools.chain.from_iterable(
                    cells[grid_index] for cells in self._ruptures.values()
                )
            )
        cells = self._ruptures.get(tectonic_region)
        if cells is None:
            return ()
        return cells[grid_index]

    def iter_ruptures(self) -> Iterator[GriddedRupture]:
        """Iterate over every rupture, in tectonic region then grid index order."""
        for cells in self._ruptures.values():
            for cell in cells:
                yield from cell

    @property
    def num_ruptures(self) -> int:
        """int: The total number of ruptures."""
        return sum(len(cell) for cells in self._ruptures.values() for cell in cells)

    @property
    def num_sources(self) -> int:
        """int: The number of non-empty (tectonic region, location) cells."""
        return len(self._source_cells)

    def source_location_index(self, source_index: int) -> int:
        """Return the grid index of a source."""
        return self._source_cells[source_index][1]

    def source_tectonic_region(self, source_index: int) -> TectonicRegion:
        """Return the tectonic region of a source."""
        return self._source_cells[source_index][0]

    def source_ruptures(self, source_index: int) -> tuple[GriddedRupture, ...]:
        """Return the ruptures of a source."""
        tectonic_region, grid_index = self._source_cells[source_index]
        return self.ruptures(tectonic_region, grid_index)

    def associated_grid_indexes(self, section_id: int) -> set[int]:
        """Return the grid indexes with ruptures associated with a fault section.

        Parameters
        ----------
        section_id : int
            The fault section id.

        Returns
        -------
        set[int]
            The associated grid indexes, empty if there are none.
        """
        return set(self._section_grid_indexes.get(section_id, ()))

    def associated_ruptures(self, section_id: int) -> list[GriddedRupture]:
        """Return every rupture associated with a fault section."""
        return [
            rupture
            for grid_index in sorted(self.associated_grid_indexes(section_id))
            for rupture in self.ruptures(None, grid_index)
            if section_id in rupture.associated_sections
        ]

    def ruptures_sub_seis_on_fault(
        self, tectonic_region: Optional[TectonicRegion], grid_index: int
    ) -> tuple[GriddedRupture, ...]:
        """Return the ruptures at a location associated with any fault section."""
        return tuple(
            rupture
            for rupture in self.ruptures(tectonic_region, grid_index)
            if rupture.is_associated
        )

    def ruptures_unassociated(
        self, tectonic_region: Optional[TectonicRegion], grid_index: int
    ) -> tuple[GriddedRupture, ...]:
        """Return the ruptures at a location not associated with any fault section."""
        return tuple(
            rupture
            for rupture in self.ruptures(tectonic_region, grid_index)
            if not rupture.is_associated
        )

    @property
    def reference_magnitudes(self) -> npt.NDArray[np.float64]:
        """np.ndarray: The magnitude bin centres used by `mfd`."""
        if self._reference_magnitudes is None:
            self._reference_magnitudes = _reference_magnitudes(
                np.array(
                    [rupture.magnitude for rupture in self.iter_ruptures()],
                    dtype=np.float64,
                )
            )
        return self._reference_magnitudes

    def mfd(
        self,
        tectonic_region: Optional[TectonicRegion],
        grid_index: int,
        min_magnitude: float = -np.inf,
        include_unassociated: bool = True,
        include_associated: bool = True,
    ) -> IncrementalMFD:
        """Compute the magnitude frequency distribution at a location.

        Rates are binned on `reference_magnitudes`, and the distribution
        is trimmed above the last non-zero bin.

        Parameters
        ----------
        tectonic_region : Optional[TectonicRegion]
            The tectonic region, or None for every region.
        grid_index : int
            The grid location index.
        min_magnitude : float
            Ruptures below this magnitude are excluded. A finite value
            is snapped to the lower edge of the closest reference bin.
        include_unassociated : bool
            If True, include ruptures not associated with a fault section.
        include_associated : bool
            If True, include ruptures associated with a fault section.

        Returns
        -------
        IncrementalMFD
            The magnitude frequency distribution.
        """
        magnitudes = self.reference_magnitudes
        if len(magnitudes) == 0:
            return IncrementalMFD(magnitudes.copy(), np.zeros(0))
        if np.isfinite(min_magnitude):
            min_index = int(np.argmin(np.abs(magnitudes - min_magnitude)))
            magnitudes = magnitudes[min_index:]
            min_magnitude = magnitudes[0] - 0.5 * MFD_BIN_WIDTH
        rates = np.zeros(len(magnitudes))
        max_index = 0
        for rupture in self.ruptures(tectonic_region, grid_index):
            if rupture.is_associated and not include_associated:
                continue
            if not rupture.is_associated and not include_unassociated:
                continue
            if rupture.magnitude >= min_magnitude and rupture.rate >= 0:
                index = int(np.argmin(np.abs(magnitudes - rupture.magnitude)))
                rates[index] += rupture.rate
                max_index = max(max_index, index)
        return IncrementalMFD(magnitudes[: max_index + 1].copy(), rates[: max_index + 1])

    def _fraction_with_rake(
        self, grid_index: int, rake_ranges: Sequence[tuple[float, float]]
    ) -> float:
        total_rate = 0.0
        matching_rate = 0.0
        for rupture in self.ruptures(None, grid_index):
            total_rate += rupture.rate
            if _in_rake_ranges(rupture.rake, rake_ranges):
                matching_rate += rupture.rate
        if total_rate == 0:
            return 0.0
        return matching_rate / total_rate

    def fraction_strike_slip(self, grid_index: int) -> float:
        """Return the rate fraction of strike-slip ruptures at a location."""
        return self._fraction_with_rake(grid_index, STRIKE_SLIP_RAKE_RANGES)

    def fraction_reverse(self, grid_index: int) -> float:
        """Return the rate fraction of reverse ruptures at a location."""
        return self._fraction_with_rake(grid_index, REVERSE_RAKE_RANGES)

    def fraction_normal(self, grid_index: int) -> float:
        """Return the rate fraction of normal ruptures at a location."""
        return self._fraction_with_rake(grid_index, NORMAL_RAKE_RANGES)

    def total_rate(self, tectonic_region: Optional[TectonicRegion] = None) -> float:
        """Return the total rate of all ruptures (optionally in one region)."""
        return float(
            sum(
                rupture.rate
                for rupture in self.iter_ruptures()
                if tectonic_region is None or rupture.tectonic_region == tectonic_region
            )
        )

    def filtered_for_min_magnitude(self, min_magnitude: float) -> Self:
        """Return a copy without ruptures below a minimum magnitude.

        Magnitudes are compared in single precision.

        Parameters
        ----------
        min_magnitude : float
            The minimum magnitude to keep.

        Returns
        -------
        RealizationSource
            The filtered realization.
        """
        threshold = np.float32(min_magnitude)
        return type(self)(
            self._locations,
            {
                tectonic_region: [
                    [
                        rupture
                        for rupture in cell
                        if np.float32(rupture.magnitude) >= threshold
                    ]
                    for cell in cells
                ]
                for tectonic_region, cells in self._ruptures.items()
            },
        )

    def scaled(
        self,
        values: npt.ArrayLike,
        tectonic_region: Optional[TectonicRegion] = None,
    ) -> Self:
        """Return a copy with the rates at each location scaled.

        Parameters
        ----------
        values : array-like
            One scale factor per grid location. A factor of zero removes
            every rupture at the location.
        tectonic_region : Optional[TectonicRegion]
            The tectonic region to scale, or None to scale every region.

        Returns
        -------
        RealizationSource
            The scaled realization.

        Raises
        ------
        ValueError
            If there is not one scale factor per location.
        """
        values = np.asarray(values, dtype=np.float64)
        if values.shape != (self.num_locations,):
            raise ValueError(
                f"Scale value size mismatch: {len(values)} != {self.num_locations}"
            )
        scaled_ruptures = {}
        for region, cells in self._ruptures.items():
            if tectonic_region is not None and region != tectonic_region:
                scaled_ruptures[region] = cells
                continue
            scaled_cells = []
            for scale, cell in zip(values, cells):
                if scale == 0:
                    scaled_cells.append(())
                elif scale == 1:
                    scaled_cells.append(cell)
                else:
                    scaled_cells.append(
                        tuple(rupture.with_rate(rupture.rate * scale) for rupture in cell)
                    )
            scaled_ruptures[region] = scaled_cells
        return type(self)(self._locations, scaled_ruptures)

    def has_similar_locations(self, other: "RealizationSource", tolerance: float) -> bool:
        """Check that another realization has the same grid locations.

        Parameters
        ----------
        other : RealizationSource
            The realization to compare with.
        tolerance : float
            The absolute tolerance (in decimal degrees) for coordinates
            to be considered equal.

        Returns
        -------
        bool
            True if both realizations have the same number of locations,
            in the same order, at the same coordinates.
        """
        if self.num_locations != other.num_locations:
            return False
        return bool(
            np.allclose(self._locations, other.locations, rtol=0.0, atol=tolerance)
        )

    def to_dataframe(self) -> pd.DataFrame:
        """Tabulate every rupture, one row per rupture.

        Returns
        -------
        pd.DataFrame
            The ruptures with the location of each rupture. Unset
            hypocentre values are NaN; strike ranges are split into
            `strike_lower` and `strike_upper` columns.
        """
        rows = []
        for rupture in self.iter_ruptures():
            latitude, longitude = self.location(rupture.grid_index)
            strike = rupture.strike
            rows.append(
                {
                    "grid_index": rupture.grid_index,
                    "latitude": latitude,
                    "longitude": longitude,
                    "magnitude": rupture.magnitude,
                    "rate": rupture.rate,
                    "rake": rupture.rake,
                    "dip": rupture.dip,
                    "strike": (
                        np.nan
                        if strike is None or isinstance(strike, StrikeRange)
                        else strike
                    ),
                    "strike_lower": (
                        strike.lower if isinstance(strike, StrikeRange) else np.nan
                    ),
                    "strike_upper": (
                        strike.upper if isinstance(strike, StrikeRange) else np.nan
                    ),
                    "upper_depth": rupture.upper_depth,
                    "lower_depth": rupture.lower_depth,
                    "length": rupture.length,
                    "hypocentral_depth": (
                        np.nan
                        if rupture.hypocentral_depth is None
                        else rupture.hypocentral_depth
                    ),
                    "hypocentral_das": (
                        np.nan
                        if rupture.hypocentral_das is None
                        else rupture.hypocentral_das
                    ),
                    "tectonic_region": rupture.tectonic_region.value,
                    "associated_sections": list(rupture.associated_sections),
                    "associated_fractions": list(rupture.associated_fractions),
                }
            )
        return pd.DataFrame(
            rows,
            columns=[
                "grid_index",
                "latitude",
                "longitude",
                "magnitude",
                "rate",
                "rake",
                "dip",
                "strike",
                "strike_lower",
                "strike_upper",
                "upper_depth",
                "lower_depth",
                "length",
                "hypocentral_depth",
                "hypocentral_das",
                "tectonic_region",
                "associated_sections",
                "associated_fractions",
            ],
        )


def combine(*sources: RealizationSource) -> RealizationSource:
    """Combine realizations covering (possibly overlapping) grid locations.

    The combined location list is the union of every source's
    locations, in first-seen order. Ruptures are re-indexed onto the
    combined locations and concatenated, so shards of a grid merged
    independently can be joined back together.

    Parameters
    ----------
    *sources : RealizationSource
        The realizations to combine.

    Returns
    -------
    RealizationSource
        The combined realization.

    Raises
    ------
    ValueError
        If no sources are given.
    """
    if not sources:
        raise ValueError("Must combine at least one realization")

    combined_indexes: dict[tuple[float, float], int] = {}
    index_maps = []
    for source in sources:
        index_maps.append(
            [
                combined_indexes.setdefault(
                    (float(latitude), float(longitude)), len(combined_indexes)
                )
                for latitude, longitude in source.locations
            ]
        )
    log_utils.log(
        "combining realizations",
        sources=len(sources),
        locations=len(combined_indexes),
        total_locations=sum(source.num_locations for source in sources),
    )

    combined_ruptures: dict[TectonicRegion, list[list[GriddedRupture]]] = {}
    for source, index_map in zip(sources, index_maps):
        for tectonic_region in source.tectonic_regions:
            cells = combined_ruptures.setdefault(
                tectonic_region, [[] for _ in combined_indexes]
            )
            for grid_index, combined_index in enumerate(index_map):
                cells[combined_index].extend(
                    rupture.with_grid_index(combined_index)
                    for rupture in source.ruptures(tectonic_region, grid_index)
                )

    return RealizationSource(
        np.array(list(combined_indexes), dtype=np.float64).reshape((-1, 2)),
        combined_ruptures,
    )
