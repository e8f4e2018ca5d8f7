import itertools
import logging

import numpy as np
import pytest

from ensemble_forecast import merger
from ensemble_forecast.config import MergeParameters
from ensemble_forecast.match_keys import MatchKey
from ensemble_forecast.merger import (
    EnsembleMerger,
    MalformedAssociationError,
    MergerStateError,
    MergeState,
    NonPositiveWeightError,
    ShapeMismatchError,
)
from ensemble_forecast.realizations import RealizationSource
from ensemble_forecast.ruptures import GriddedRupture
from ensemble_forecast.schemas import StrikeRange, TectonicRegion

CHRISTCHURCH = [-43.53, 172.63]
WELLINGTON = [-41.29, 174.78]


def rupture_dicts(realization: RealizationSource) -> list[dict]:
    return [rupture.to_dict() for rupture in realization.iter_ruptures()]


@pytest.fixture
def branch(make_rupture, make_realization) -> RealizationSource:
    return make_realization(
        [
            make_rupture(grid_index=0, magnitude=6.0, rate=0.01),
            make_rupture(
                grid_index=0,
                magnitude=6.5,
                rate=0.004,
                strike=StrikeRange(30.0, 60.0),
                hypocentral_depth=8.0,
                associated_sections=(3, 1),
                associated_fractions=(0.25, 0.75),
            ),
            make_rupture(
                grid_index=1,
                magnitude=7.0,
                rate=0.001,
                rake=90.0,
                dip=30.0,
                strike=200.0,
                upper_depth=5.0,
                lower_depth=25.0,
                length=40.0,
                hypocentral_das=10.0,
                tectonic_region=TectonicRegion.SUBDUCTION_INTERFACE,
            ),
        ],
        [CHRISTCHURCH, WELLINGTON],
    )


def test_identity(branch: RealizationSource):
    merged = merger.merge([(branch, 1.0)])
    assert rupture_dicts(merged) == rupture_dicts(branch)
    np.testing.assert_array_equal(merged.locations, branch.locations)


@pytest.mark.parametrize("copies", [2, 3, 4])
def test_replication_idempotent(branch: RealizationSource, copies: int):
    merged = merger.merge([(branch, 1.0 / copies)] * copies)
    assert rupture_dicts(merged) == rupture_dicts(branch)


def test_weighted_average(make_rupture, make_realization):
    merged = merger.merge(
        [
            (make_realization([make_rupture(rate=0.03)]), 2.0),
            (make_realization([make_rupture(rate=0.06)]), 1.0),
        ]
    )
    (rupture,) = merged.iter_ruptures()
    assert rupture.rate == pytest.approx((0.03 * 2.0 + 0.06 * 1.0) / 3.0)


def test_partial_presence(make_rupture, make_realization):
    merged = merger.merge(
        [
            (
                make_realization([make_rupture(), make_rupture(magnitude=7.0, rate=0.2)]),
                0.5,
            ),
            (make_realization([make_rupture()]), 0.5),
        ]
    )
    rates = {rupture.magnitude: rupture.rate for rupture in merged.iter_ruptures()}
    assert rates == {6.0: 0.01, 7.0: pytest.approx(0.1)}


def test_commutative(make_rupture, make_realization):
    ensemble = [
        (
            make_realization(
                [
                    make_rupture(rate=0.1, lower_depth=12.0),
                    make_rupture(
                        magnitude=6.5,
                        rate=0.7,
                        associated_sections=(1, 2),
                        associated_fractions=(0.3, 0.1),
                    ),
                ]
            ),
            0.2,
        ),
        (make_realization([make_rupture(rate=0.3, lower_depth=11.0)]), 0.3),
        (
            make_realization(
                [
                    make_rupture(rate=0.7, lower_depth=13.3, hypocentral_das=3.0),
                    make_rupture(
                        magnitude=6.5,
                        rate=0.1,
                        associated_sections=(1, 2),
                        associated_fractions=(0.7, 0.9),
                    ),
                ]
            ),
            0.5,
        ),
    ]
    expected = rupture_dicts(merger.merge(ensemble))
    for permutation in itertools.permutations(ensemble):
        assert rupture_dicts(merger.merge(permutation)) == expected


def test_association_normalisation(make_rupture, make_realization):
    merged = merger.merge(
        [
            (
                make_realization(
                    [make_rupture(associated_sections=(9,), associated_fractions=(0.2,))]
                ),
                0.25,
            ),
            (
                make_realization(
                    [make_rupture(associated_sections=(9,), associated_fractions=(0.6,))]
                ),
                0.75,
            ),
        ]
    )
    (rupture,) = merged.iter_ruptures()
    assert rupture.associated_sections == (9,)
    assert rupture.associated_fractions == pytest.approx((0.2 * 0.25 + 0.6 * 0.75,))


def test_default_canonicalisation(make_rupture, make_realization):
    merged = merger.merge(
        [
            (make_realization([make_rupture(rate=0.01)]), 0.3),
            (make_realization([make_rupture(rate=0.02)]), 0.7),
        ]
    )
    (rupture,) = merged.iter_ruptures()
    assert rupture.hypocentral_depth is None
    assert rupture.hypocentral_das is None
    assert rupture.effective_hypocentral_depth == 6.0


def test_explicit_midpoint_not_canonicalised(make_rupture, make_realization):
    merged = merger.merge(
        [
            (make_realization([make_rupture(hypocentral_depth=6.0)]), 0.5),
            (make_realization([make_rupture(hypocentral_depth=6.0)]), 0.5),
        ]
    )
    (rupture,) = merged.iter_ruptures()
    assert rupture.hypocentral_depth == 6.0


def test_heterogeneity_preserved(make_rupture, make_realization):
    ensemble = [
        (
            make_realization(
                [make_rupture(lower_depth=12.0), make_rupture(lower_depth=20.0)]
            ),
            0.5,
        ),
        (make_realization([make_rupture(lower_depth=12.0)]), 0.5),
    ]
    ensemble_merger = EnsembleMerger()
    assert ensemble_merger.detect([realization for realization, _ in ensemble]) == (
        MatchKey.FULL
    )
    for realization, weight in ensemble:
        ensemble_merger.accumulate(realization, weight)
    merged = ensemble_merger.finalize()
    shallow, deep = merged.iter_ruptures()
    assert shallow.rate == 0.01
    assert shallow.lower_depth == 12.0
    # geometry is normalised against the whole ensemble like the rate
    assert deep.rate == pytest.approx(0.005)
    assert deep.lower_depth == pytest.approx(10.0)


def test_concrete_scenario(make_rupture, make_realization):
    a = make_realization([make_rupture(rate=0.01, lower_depth=12.0)])
    b = make_realization([make_rupture(rate=0.02, lower_depth=10.0)])
    merged = merger.merge([(a, 0.6), (b, 0.4)])
    (rupture,) = merged.ruptures(TectonicRegion.ACTIVE_SHALLOW, 0)
    assert rupture.rate == pytest.approx(0.014)
    assert rupture.upper_depth == 0.0
    assert rupture.lower_depth == pytest.approx(11.2)
    assert rupture.length == 20.0
    assert rupture.magnitude == 6.0
    assert rupture.hypocentral_depth == pytest.approx(5.6)
    assert rupture.hypocentral_das is None


def test_regions_merged_independently(make_rupture, make_realization):
    merged = merger.merge(
        [
            (make_realization([make_rupture()]), 0.5),
            (
                make_realization(
                    [make_rupture(tectonic_region=TectonicRegion.VOLCANIC)]
                ),
                0.5,
            ),
        ]
    )
    assert merged.tectonic_regions == [
        TectonicRegion.ACTIVE_SHALLOW,
        TectonicRegion.VOLCANIC,
    ]
    assert merged.total_rate() == pytest.approx(0.01)


def test_merged_ruptures_sorted(make_rupture, make_realization):
    merged = merger.merge(
        [
            (
                make_realization(
                    [make_rupture(magnitude=7.0), make_rupture(magnitude=5.0)]
                ),
                1.0,
            ),
            (make_realization([make_rupture(magnitude=6.0)]), 1.0),
        ]
    )
    assert [rupture.magnitude for rupture in merged.iter_ruptures()] == [5.0, 6.0, 7.0]


def test_shape_mismatch_on_detect(make_rupture, make_realization):
    with pytest.raises(ShapeMismatchError):
        merger.merge(
            [
                (make_realization([make_rupture()]), 0.5),
                (make_realization([make_rupture()], [WELLINGTON]), 0.5),
            ]
        )


def test_shape_mismatch_on_accumulate(make_rupture, make_realization):
    ensemble_merger = EnsembleMerger()
    ensemble_merger.detect([make_realization([make_rupture()])])
    with pytest.raises(ShapeMismatchError):
        ensemble_merger.accumulate(
            make_realization([make_rupture()], [CHRISTCHURCH, WELLINGTON]), 1.0
        )


def test_location_tolerance(make_rupture, make_realization):
    nudged = [CHRISTCHURCH[0] + 1e-4, CHRISTCHURCH[1]]
    ensemble = [
        (make_realization([make_rupture()]), 0.5),
        (make_realization([make_rupture()], [nudged]), 0.5),
    ]
    with pytest.raises(ShapeMismatchError):
        merger.merge(ensemble)
    merged = merger.merge(ensemble, MergeParameters(location_tolerance=1e-3))
    np.testing.assert_array_equal(merged.location(0), CHRISTCHURCH)


@pytest.mark.parametrize(
    "sections, fractions",
    [((1, 2), (0.5,)), ((1,), (1.5,)), ((1,), (-0.1,)), ((1,), (float("nan"),))],
)
def test_malformed_associations(make_rupture, make_realization, sections, fractions):
    realization = make_realization(
        [
            make_rupture(),
            make_rupture(
                magnitude=6.5,
                associated_sections=sections,
                associated_fractions=fractions,
            ),
        ]
    )
    ensemble_merger = EnsembleMerger()
    ensemble_merger.detect([realization])
    with pytest.raises(
        MalformedAssociationError, match="active_shallow grid index 0 rupture 1"
    ):
        ensemble_merger.accumulate(realization, 1.0)
    assert ensemble_merger.state == MergeState.DETECTING
    assert ensemble_merger.total_weight == 0.0


@pytest.mark.parametrize("weight", [-0.5, float("nan"), float("inf")])
def test_invalid_weight(make_rupture, make_realization, weight: float):
    realization = make_realization([make_rupture()])
    ensemble_merger = EnsembleMerger()
    ensemble_merger.detect([realization])
    with pytest.raises(ValueError, match="weight"):
        ensemble_merger.accumulate(realization, weight)


def test_zero_total_weight(make_rupture, make_realization):
    realization = make_realization([make_rupture()])
    with pytest.raises(NonPositiveWeightError):
        merger.merge([(realization, 0.0), (realization, 0.0)])


def test_zero_weight_realization_ignored(make_rupture, make_realization):
    merged = merger.merge(
        [
            (make_realization([make_rupture(rate=0.01)]), 1.0),
            (make_realization([make_rupture(rate=0.5, magnitude=7.0)]), 0.0),
        ]
    )
    rates = {rupture.magnitude: rupture.rate for rupture in merged.iter_ruptures()}
    assert rates == {6.0: 0.01, 7.0: 0.0}


def test_empty_ensemble():
    with pytest.raises(ValueError):
        merger.merge([])


def test_state_machine(make_rupture, make_realization):
    realization = make_realization([make_rupture()])
    ensemble_merger = EnsembleMerger()
    assert ensemble_merger.state == MergeState.EMPTY
    assert ensemble_merger.match_key is None

    with pytest.raises(MergerStateError):
        ensemble_merger.accumulate(realization, 1.0)
    with pytest.raises(MergerStateError):
        ensemble_merger.finalize()

    ensemble_merger.detect([realization])
    assert ensemble_merger.state == MergeState.DETECTING
    assert ensemble_merger.match_key == MatchKey.CORE
    with pytest.raises(MergerStateError):
        ensemble_merger.detect([realization])

    ensemble_merger.accumulate(realization, 1.0)
    assert ensemble_merger.state == MergeState.ACCUMULATING
    assert ensemble_merger.total_weight == 1.0

    merged = ensemble_merger.finalize()
    assert isinstance(merged, RealizationSource)
    assert ensemble_merger.state == MergeState.FINALIZED

    with pytest.raises(MergerStateError):
        ensemble_merger.accumulate(realization, 1.0)
    with pytest.raises(MergerStateError):
        ensemble_merger.finalize()
    with pytest.raises(MergerStateError):
        ensemble_merger.detect([realization])


def test_finalize_without_accumulating(make_rupture, make_realization):
    ensemble_merger = EnsembleMerger()
    ensemble_merger.detect([make_realization([make_rupture()])])
    with pytest.raises(NonPositiveWeightError):
        ensemble_merger.finalize()


def test_merge_logging(
    make_rupture, make_realization, caplog: pytest.LogCaptureFixture
):
    caplog.set_level(logging.INFO)
    merger.merge([(make_realization([make_rupture()]), 1.0)])
    assert any("detected match key" in message for message in caplog.messages)
    assert any(
        "merged ensemble" in message and "ruptures=1" in message
        for message in caplog.messages
    )
    assert any(
        "completed" in message and "function='merge'" in message
        for message in caplog.messages
    )


def test_merge_failure_logged(caplog: pytest.LogCaptureFixture):
    caplog.set_level(logging.INFO)
    with pytest.raises(ValueError):
        merger.merge([])
    assert any(
        "failed" in message and "empty ensemble" in message
        for message in caplog.messages
    )


def test_merge_progress(
    make_rupture, make_realization, capsys: pytest.CaptureFixture
):
    realization = make_realization([make_rupture()])
    merged = merger.merge(
        [(realization, 1.0)] * 3, MergeParameters(progress_threshold=2)
    )
    assert merged.total_rate() == pytest.approx(0.01)
    assert "Merging" in capsys.readouterr().err


def test_merger_accepts_rupture_records(make_rupture, make_realization):
    merged = merger.merge([(make_realization([make_rupture()]), 1.0)])
    assert all(isinstance(rupture, GriddedRupture) for rupture in merged.iter_ruptures())
