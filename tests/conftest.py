from collections import defaultdict
from collections.abc import Callable, Sequence

import numpy as np
import pytest

from ensemble_forecast.realizations import RealizationSource
from ensemble_forecast.ruptures import GriddedRupture
from ensemble_forecast.schemas import TectonicRegion

# A mag 6 vertical strike-slip rupture, 0-12km deep and 20km long.
RUPTURE_DEFAULTS = dict(
    grid_index=0,
    magnitude=6.0,
    rate=0.01,
    rake=0.0,
    dip=90.0,
    strike=None,
    upper_depth=0.0,
    lower_depth=12.0,
    length=20.0,
    tectonic_region=TectonicRegion.ACTIVE_SHALLOW,
)

CHRISTCHURCH = [-43.53, 172.63]
WELLINGTON = [-41.29, 174.78]


@pytest.fixture
def make_rupture() -> Callable[..., GriddedRupture]:
    def factory(**kwargs) -> GriddedRupture:
        return GriddedRupture(**(RUPTURE_DEFAULTS | kwargs))

    return factory


@pytest.fixture
def make_realization() -> Callable[..., RealizationSource]:
    def factory(
        ruptures: Sequence[GriddedRupture],
        locations: Sequence[Sequence[float]] = (CHRISTCHURCH,),
    ) -> RealizationSource:
        cells: dict[TectonicRegion, list[list[GriddedRupture]]] = defaultdict(
            lambda: [[] for _ in locations]
        )
        for rupture in ruptures:
            cells[rupture.tectonic_region][rupture.grid_index].append(rupture)
        return RealizationSource(np.array(locations, dtype=np.float64), cells)

    return factory
