"""Tests for participant and census ingestion."""

import numpy as np
import pandas as pd
import pytest

from seroifr.data import ParticipantDataset, StratumTable, design_columns, design_matrix

LEVELS = ("young", "middle", "old")


def _participants(**overrides) -> ParticipantDataset:
    kwargs = dict(
        stratum=["young", "old", "middle", "old"],
        titres=np.array([[0.1, 0.2], [1.0, 2.0], [-1.0, 0.0], [0.5, 0.5]]),
        levels=LEVELS,
        titre_names=("anti_n", "anti_s"),
    )
    kwargs.update(overrides)
    return ParticipantDataset(**kwargs)


class TestParticipantDataset:
    def test_stratum_index_follows_levels(self) -> None:
        data = _participants()
        np.testing.assert_array_equal(data.stratum_index, [0, 2, 1, 2])
        assert data.n_participants == 4
        assert data.n_titres == 2

    def test_records_are_read_only(self) -> None:
        data = _participants()
        with pytest.raises(ValueError):
            data.titres[0, 0] = 5.0

    def test_unknown_stratum_rejected(self) -> None:
        with pytest.raises(ValueError, match="Unknown stratum"):
            _participants(stratum=["young", "old", "middle", "ancient"])

    def test_single_titre_rejected(self) -> None:
        with pytest.raises(ValueError, match="D>=2"):
            _participants(titres=np.zeros((4, 1)), titre_names=("anti_n",))

    def test_missing_titre_rejected(self) -> None:
        titres = np.zeros((4, 2))
        titres[1, 1] = np.nan
        with pytest.raises(ValueError, match="NaN"):
            _participants(titres=titres)

    def test_titre_names_must_match_columns(self) -> None:
        with pytest.raises(ValueError, match="name"):
            _participants(titre_names=("anti_n",))

    def test_from_frame(self) -> None:
        frame = pd.DataFrame(
            {
                "age_group": ["old", "young", "young"],
                "n": [0.1, 0.2, 0.3],
                "s": [1.0, 2.0, 3.0],
                "sex": [0.0, 1.0, 1.0],
            }
        )
        data = ParticipantDataset.from_frame(
            frame, "age_group", ["n", "s"], levels=LEVELS, covariate_columns=["sex"]
        )
        assert data.titre_names == ("n", "s")
        assert data.covariate_names == ("sex",)
        np.testing.assert_array_equal(data.counts_by_stratum().values, [2, 0, 1])

    def test_from_frame_missing_column(self) -> None:
        frame = pd.DataFrame({"age_group": ["old"], "n": [0.1]})
        with pytest.raises(ValueError, match="missing"):
            ParticipantDataset.from_frame(frame, "age_group", ["n", "s"])


class TestStratumTable:
    def test_counts_validated(self) -> None:
        with pytest.raises(ValueError, match="non-negative"):
            StratumTable(LEVELS, [10, -1, 5])
        with pytest.raises(ValueError, match="whole numbers"):
            StratumTable(LEVELS, [10, 1.5, 5])

    def test_duplicate_strata_rejected(self) -> None:
        with pytest.raises(ValueError, match="unique"):
            StratumTable(("a", "a", "b"), [1, 2, 3])

    def test_deaths_need_ltc_total(self) -> None:
        with pytest.raises(ValueError, match="together"):
            StratumTable(LEVELS, [10, 20, 30], deaths=[1, 2, 3])

    def test_with_deaths_returns_new_table(self) -> None:
        table = StratumTable(LEVELS, [10, 20, 30], [0, 1, 2])
        assert not table.has_deaths
        with_deaths = table.with_deaths([1, 2, 3], ltc_deaths=2)
        assert with_deaths.has_deaths
        assert with_deaths.ltc_deaths == 2
        assert not table.has_deaths
        assert with_deaths.total_population == 60

    def test_from_frames_matches_deaths_by_label(self) -> None:
        census = pd.DataFrame(
            {
                "stratum": ["young", "middle", "old"],
                "population": [100, 200, 300],
                "ltc_population": [0, 5, 50],
            }
        )
        deaths = pd.DataFrame({"stratum": ["old", "young", "middle"], "deaths": [9, 1, 2]})
        table = StratumTable.from_frames(census, deaths, ltc_deaths=4)
        np.testing.assert_array_equal(table.deaths, [1, 2, 9])
        np.testing.assert_array_equal(table.ltc_population, [0, 5, 50])
        assert list(table.to_frame().columns) == ["population", "ltc_population", "deaths"]

    def test_from_frames_requires_every_stratum(self) -> None:
        census = pd.DataFrame({"stratum": ["young", "old"], "population": [1, 2]})
        deaths = pd.DataFrame({"stratum": ["young"], "deaths": [0]})
        with pytest.raises(ValueError, match="No deaths"):
            StratumTable.from_frames(census, deaths, ltc_deaths=0)


class TestDesignMatrix:
    def test_reference_level_is_first(self) -> None:
        X = design_matrix(np.array([0, 1, 2]), LEVELS)
        np.testing.assert_array_equal(
            X, [[1.0, 0.0, 0.0], [1.0, 1.0, 0.0], [1.0, 0.0, 1.0]]
        )
        assert design_columns(LEVELS) == ["intercept", "stratum[middle]", "stratum[old]"]

    def test_covariates_appended(self) -> None:
        X = design_matrix(np.array([0, 2]), LEVELS, np.array([[0.5], [1.5]]))
        assert X.shape == (2, 4)
        np.testing.assert_array_equal(X[:, -1], [0.5, 1.5])

    def test_participant_and_census_share_coding(self) -> None:
        participants = _participants()
        census = StratumTable(LEVELS, [10, 20, 30])
        X_census = census.design_matrix()
        np.testing.assert_array_equal(
            participants.design_matrix(), X_census[participants.stratum_index]
        )
