"""Gridded rupture records.

A `GriddedRupture` describes one candidate earthquake at one grid
location of a gridded seismicity model: its magnitude, annual rate,
focal mechanism, finite rupture geometry, tectonic region and an
optional list of fault sections the rupture is associated with.

Ruptures are immutable. The hypocentral depth and hypocentral distance
along strike (DAS) may be left unset (`None`), in which case their
effective values are derived from the rupture geometry. Unset values
are never replaced by their derived defaults inside a record, so that
"unset" and "explicitly equal to the default" remain distinguishable.
"""

import dataclasses
from typing import Any, Optional, Self, Union

from ensemble_forecast import schemas
from ensemble_forecast.schemas import StrikeRange, TectonicRegion

Strike = Union[float, StrikeRange, None]


@dataclasses.dataclass(frozen=True)
class GriddedRupture:
    """A finite rupture at a single grid location."""

    grid_index: int
    """The index of the grid location of the rupture."""
    magnitude: float
    """The moment magnitude of the rupture."""
    rate: float
    """The annual rate of the rupture."""
    rake: float
    """The rake of the rupture (in degrees)."""
    dip: float
    """The dip of the rupture (in degrees)."""
    strike: Strike
    """The strike of the rupture (in degrees), a range of strikes, or
    None if the strike is unspecified."""
    upper_depth: float
    """The upper depth of the rupture (in km)."""
    lower_depth: float
    """The lower depth of the rupture (in km)."""
    length: float
    """The length of the rupture (in km)."""
    tectonic_region: TectonicRegion
    """The tectonic region of the rupture."""
    hypocentral_depth: Optional[float] = None
    """The hypocentral depth (in km), or None for the depth midpoint."""
    hypocentral_das: Optional[float] = None
    """The hypocentral distance along strike (in km), or None for half
    the rupture length."""
    associated_sections: tuple[int, ...] = ()
    """The ids of fault sections this rupture is associated with."""
    associated_fractions: tuple[float, ...] = ()
    """The fraction of the rupture associated with each section in
    `associated_sections`."""

    @property
    def midpoint_depth(self) -> float:
        """float: The midpoint of the upper and lower depth."""
        return midpoint_depth(self.upper_depth, self.lower_depth)

    @property
    def effective_hypocentral_depth(self) -> float:
        """float: The hypocentral depth, or the depth midpoint if unset."""
        if self.hypocentral_depth is not None:
            return self.hypocentral_depth
        return self.midpoint_depth

    @property
    def effective_hypocentral_das(self) -> float:
        """float: The hypocentral DAS, or half the length if unset."""
        if self.hypocentral_das is not None:
            return self.hypocentral_das
        return 0.5 * self.length

    @property
    def fractional_hypocentral_das(self) -> float:
        """float: The hypocentral DAS as a fraction of length, 0.5 if unset."""
        if self.hypocentral_das is not None and self.length > 0:
            return self.hypocentral_das / self.length
        return 0.5

    @property
    def is_associated(self) -> bool:
        """bool: True if the rupture is associated with any fault section."""
        return len(self.associated_sections) > 0

    def fraction_associated(self, section_id: int) -> float:
        """Return the fraction of this rupture associated with a section.

        Parameters
        ----------
        section_id : int
            The fault section id.

        Returns
        -------
        float
            The association fraction, or 0 if the rupture is not
            associated with the section.
        """
        for associated_id, fraction in zip(
            self.associated_sections, self.associated_fractions
        ):
            if associated_id == section_id:
                return fraction
        return 0.0

    def with_rate(self, rate: float) -> Self:
        """Return a copy of this rupture with a new rate."""
        return dataclasses.replace(self, rate=rate)

    def with_grid_index(self, grid_index: int) -> Self:
        """Return a copy of this rupture at a new grid index."""
        return dataclasses.replace(self, grid_index=grid_index)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the object to a dictionary representation.

        Unset hypocentre values and strikes are represented as None.

        Returns
        -------
        dict
            Dictionary representation of the object.
        """
        rupture_dict = dataclasses.asdict(self)
        if isinstance(self.strike, StrikeRange):
            rupture_dict["strike"] = self.strike._asdict()
        rupture_dict["tectonic_region"] = self.tectonic_region.value
        rupture_dict["associated_sections"] = list(self.associated_sections)
        rupture_dict["associated_fractions"] = list(self.associated_fractions)
        return rupture_dict

    @classmethod
    def from_dict(cls, rupture_dict: dict[str, Any]) -> Self:
        """Build a rupture from its dictionary representation.

        Parameters
        ----------
        rupture_dict : dict
            The rupture dictionary, as produced by `to_dict`.

        Returns
        -------
        GriddedRupture
            The rupture.

        Raises
        ------
        schema.SchemaError
            If the dictionary fails validation against
            `schemas.RUPTURE_SCHEMA`.
        """
        validated = schemas.RUPTURE_SCHEMA.validate(rupture_dict)
        validated["associated_sections"] = tuple(validated["associated_sections"])
        validated["associated_fractions"] = tuple(validated["associated_fractions"])
        return cls(**validated)


def midpoint_depth(upper_depth: float, lower_depth: float) -> float:
    """Compute the midpoint of a depth interval.

    Parameters
    ----------
    upper_depth : float
        The upper depth.
    lower_depth : float
        The lower depth.

    Returns
    -------
    float
        The midpoint depth. Returns `upper_depth` exactly when the two
        depths coincide.
    """
    if upper_depth == lower_depth:
        return upper_depth
    return upper_depth + 0.5 * (lower_depth - upper_depth)
