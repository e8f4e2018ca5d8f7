"""Functions to load default parameters for ensemble merging."""

import importlib
from enum import StrEnum
from importlib import resources
from typing import Any

import yaml


class DefaultsVersion(StrEnum):
    """Enum of versions that can be loaded by load_defaults."""

    v25_1 = "25.1"
    develop = "develop"


def load_defaults(version: DefaultsVersion) -> dict[str, Any]:
    """Load default merge parameters from a YAML file.

    Parameters
    ----------
    version : DefaultsVersion
        Version of the defaults to load. Released versions are in the
        format 'YY.R'.

    Returns
    -------
    dict
        A dictionary containing the default parameters loaded from the
        YAML file, keyed by configuration section (e.g. "merge").
    """
    if version == DefaultsVersion.develop:
        defaults_package = importlib.import_module(
            "ensemble_forecast.default_parameters.develop"
        )
    else:
        defaults_package = importlib.import_module(
            f"ensemble_forecast.default_parameters.v{version.value.replace('.', '_')}"
        )
    defaults_path = resources.files(defaults_package) / "defaults.yaml"
    with defaults_path.open(encoding="utf-8") as defaults_file_handle:
        return yaml.safe_load(defaults_file_handle)
