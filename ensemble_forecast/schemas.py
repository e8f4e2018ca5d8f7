"""Module containing schema definitions for gridded ruptures and merge parameters.

See the `ruptures` module for the rupture record these schemas
validate, and the `config` module for the merge parameters.
"""

from enum import StrEnum
from typing import NamedTuple

from schema import And, Literal, Optional, Or, Schema, Use

# NOTE: These functions seem silly and short, however when the schema
# library reports an error it prints the name of the predicate. So
#
# And(float, lambda x: x >= 0).validate(-12)
#
# Would report the error
#
# schema.SchemaError: <lambda>(-12) should evaluate to True
#
# But using the function `is_non_negative` we instead have
#
# schema.SchemaError: is_non_negative(-12) should evaluate to True
#
# Accordingly, the most trivial of these functions lack docstrings.


class TectonicRegion(StrEnum):
    """Tectonic region types partitioning ruptures by seismogenic setting.

    Member order is significant, it is the order used when sorting
    ruptures by their match keys.
    """

    ACTIVE_SHALLOW = "active_shallow"
    STABLE_SHALLOW = "stable_shallow"
    SUBDUCTION_INTERFACE = "subduction_interface"
    SUBDUCTION_SLAB = "subduction_slab"
    VOLCANIC = "volcanic"

    @property
    def order(self) -> int:
        """int: The position of this region in the declaration order."""
        return list(TectonicRegion).index(self)


class StrikeRange(NamedTuple):
    """A closed range of strike angles (in degrees)."""

    lower: float
    """The lower end of the strike range."""
    upper: float
    """The upper end of the strike range."""


def is_positive(x: float) -> bool:
    return x > 0


def is_non_negative(x: float) -> bool:
    return x >= 0


def is_plausible_magnitude(magnitude: float) -> bool:
    return magnitude < 11


def is_valid_rake(rake: float) -> bool:
    return -180 <= rake <= 180


def is_valid_dip(dip: float) -> bool:
    return 0 <= dip <= 90


def is_valid_degrees(degrees: float) -> bool:
    return -360 <= degrees <= 360


def is_valid_fraction(fraction: float) -> bool:
    return 0 <= fraction <= 1


def is_ordered_range(strike_range: StrikeRange) -> bool:
    return strike_range.lower <= strike_range.upper


def has_ordered_depths(rupture: dict) -> bool:
    return rupture["upper_depth"] <= rupture["lower_depth"]


def has_matching_association_lengths(rupture: dict) -> bool:
    """Check the association id and fraction lists are parallel.

    Parameters
    ----------
    rupture : dict
        The (partially validated) rupture dictionary.

    Returns
    -------
    bool
        True if there is exactly one association fraction per
        associated section id.
    """
    return len(rupture["associated_sections"]) == len(rupture["associated_fractions"])


NUMBER = And(Or(int, float), Use(float))

STRIKE_RANGE_SCHEMA = Schema(
    And(
        {
            Literal("lower", description="Lower strike bound (in degrees)"): And(
                NUMBER, is_valid_degrees
            ),
            Literal("upper", description="Upper strike bound (in degrees)"): And(
                NUMBER, is_valid_degrees
            ),
        },
        Use(lambda strike_range: StrikeRange(**strike_range)),
        is_ordered_range,
    )
)

RUPTURE_SCHEMA = Schema(
    And(
        {
            Literal("grid_index", description="Index of the grid location"): And(
                int, is_non_negative
            ),
            Literal("magnitude", description="Moment magnitude"): And(
                NUMBER, is_plausible_magnitude
            ),
            Literal("rate", description="Annual rate of the rupture"): And(
                NUMBER, is_non_negative
            ),
            Literal("rake", description="Rake (in degrees)"): And(
                NUMBER, is_valid_rake
            ),
            Literal("dip", description="Dip (in degrees)"): And(NUMBER, is_valid_dip),
            Optional(
                "strike",
                default=None,
                description="Strike (in degrees), a strike range, or null for a random strike",
            ): Or(None, And(NUMBER, is_valid_degrees), STRIKE_RANGE_SCHEMA),
            Literal("upper_depth", description="Upper rupture depth (in km)"): NUMBER,
            Literal("lower_depth", description="Lower rupture depth (in km)"): NUMBER,
            Literal("length", description="Rupture length (in km)"): And(
                NUMBER, is_non_negative
            ),
            Optional(
                "hypocentral_depth",
                default=None,
                description="Hypocentral depth (in km), or null for the depth midpoint",
            ): Or(None, NUMBER),
            Optional(
                "hypocentral_das",
                default=None,
                description="Hypocentral distance along strike (in km), or null for half the length",
            ): Or(None, And(NUMBER, is_non_negative)),
            Literal("tectonic_region", description="Tectonic region type"): And(
                str, Use(TectonicRegion)
            ),
            Optional(
                "associated_sections",
                default=[],
                description="Associated fault section ids",
            ): [And(int, is_non_negative)],
            Optional(
                "associated_fractions",
                default=[],
                description="Fraction of the rupture associated with each section",
            ): [And(NUMBER, is_valid_fraction)],
        },
        has_ordered_depths,
        has_matching_association_lengths,
    )
)

MERGE_PARAMETERS_SCHEMA = Schema(
    {
        Literal(
            "weight_rtol",
            description="Relative tolerance for the constant-value weight shortcut",
        ): And(float, is_non_negative),
        Literal(
            "default_rtol",
            description="Relative tolerance for comparing averages with derived defaults",
        ): And(float, is_non_negative),
        Literal(
            "location_tolerance",
            description="Absolute tolerance for grid location equality (in degrees)",
        ): And(float, is_non_negative),
        Literal(
            "progress_threshold",
            description="Minimum ensemble size to display merge progress",
        ): And(int, is_positive),
    }
)
