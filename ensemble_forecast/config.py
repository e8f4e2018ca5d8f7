"""Configuration for ensemble merging.

The merge parameters are loaded from the versioned scientific defaults
(see `defaults`), or built directly from a dictionary, and validated
against `schemas.MERGE_PARAMETERS_SCHEMA`.
"""

import dataclasses
from typing import Any, ClassVar, Self

from schema import Schema

from ensemble_forecast import defaults, schemas
from ensemble_forecast.defaults import DefaultsVersion


class ConfigurationError(Exception):
    """Merge configuration lookup error."""

    pass


@dataclasses.dataclass(frozen=True)
class MergeParameters:
    """Numerical tolerances and behaviour switches for an ensemble merge."""

    _config_key: ClassVar[str] = "merge"
    """The configuration key to load from in the defaults."""
    _schema: ClassVar[Schema] = schemas.MERGE_PARAMETERS_SCHEMA
    """The reference schema to validate against."""

    weight_rtol: float = 1e-6
    """Relative tolerance when comparing the weight that produced a
    rupture with the total ensemble weight. If the two are close the
    constant value is returned unscaled."""
    default_rtol: float = 1e-6
    """Relative tolerance when comparing an averaged hypocentral depth
    (or DAS) with the default derived from the averaged geometry."""
    location_tolerance: float = 1e-6
    """Absolute tolerance (in decimal degrees) for two grid locations to
    be considered the same."""
    progress_threshold: int = 100
    """Ensembles with at least this many realizations display a
    progress bar while merging."""

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the object to a dictionary representation.

        Returns
        -------
        dict
            Dictionary representation of the object.
        """
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, parameters: dict[str, Any]) -> Self:
        """Build merge parameters from a dictionary.

        Parameters
        ----------
        parameters : dict
            The parameter dictionary, validated against `cls._schema`.

        Returns
        -------
        MergeParameters
            The validated merge parameters.

        Raises
        ------
        schema.SchemaError
            If the dictionary does not match the schema.
        """
        return cls(**cls._schema.validate(parameters))

    @classmethod
    def read_from_defaults(cls, defaults_version: DefaultsVersion) -> Self:
        """Read default values for the merge parameters.

        Parameters
        ----------
        defaults_version : DefaultsVersion
            The default parameter version to load with.

        Returns
        -------
        MergeParameters
            The parameters loaded from the defaults.

        Raises
        ------
        ConfigurationError
            If the key in `cls._config_key` is not present in the
            scientific defaults configuration.
        """
        default_config = defaults.load_defaults(defaults_version)
        if cls._config_key not in default_config:
            raise ConfigurationError(f"No {cls._config_key} in defaults configuration")
        return cls.from_dict(default_config[cls._config_key])
