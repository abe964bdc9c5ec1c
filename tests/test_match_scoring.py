"""
Tests for candidate scoring and the DataFrame-backed candidate source.
"""

from datetime import datetime, timedelta

import pandas as pd
import pytest
from conftest import make_record

from tollsync.core.errors import ValidationError
from tollsync.domain.matching.candidates import FrameCandidateProvider
from tollsync.domain.matching.scoring import MatchWeights, score_candidate
from tollsync.domain.models import CandidateEntity

RECORD_TIME = datetime(2024, 1, 15, 8, 30, 0)

WEIGHTS = MatchWeights(card=0.35, vehicle=0.25, time=0.30, amount=0.10, window=timedelta(minutes=30))


def candidate(offset_minutes=0, **fields):
    return CandidateEntity(
        entity_id=fields.pop("entity_id", 1),
        entity_type=fields.pop("entity_type", "dtako_row"),
        occurred_at=RECORD_TIME + timedelta(minutes=offset_minutes),
        **fields,
    )


class TestScoring:
    def test_full_match(self):
        match = score_candidate(
            make_record(), candidate(vehicle_id="V-100", card_id="1111222233334444", amount=1200), WEIGHTS
        )
        assert match.confidence == 1.0
        assert len(match.reasons) == 4

    def test_time_proximity_decays_linearly(self):
        near = score_candidate(make_record(), candidate(-6), WEIGHTS)
        far = score_candidate(make_record(), candidate(24), WEIGHTS)
        assert near.confidence == pytest.approx(0.24)
        assert far.confidence == pytest.approx(0.06)

    def test_outside_window_is_skipped(self):
        assert score_candidate(make_record(), candidate(31, card_id="1111222233334444"), WEIGHTS) is None

    def test_window_edge_scores_identifiers_only(self):
        match = score_candidate(make_record(), candidate(30, card_id="1111222233334444"), WEIGHTS)
        assert match.confidence == 0.35
        assert match.reasons == ["exact card-number match"]

    def test_identifier_comparison_normalizes(self):
        match = score_candidate(make_record(), candidate(30, vehicle_id=" Ｖ-100 "), WEIGHTS)
        assert match.reasons == ["exact vehicle-number match"]

    def test_blank_identifiers_never_match(self):
        record = make_record(vehicle_id=" ")
        assert score_candidate(record, candidate(30, vehicle_id=""), WEIGHTS).confidence == 0.0

    def test_weights_clamped_to_one(self):
        heavy = MatchWeights(card=0.8, vehicle=0.8, time=0.0, amount=0.0, window=timedelta(minutes=30))
        match = score_candidate(make_record(), candidate(vehicle_id="V-100", card_id="1111222233334444"), heavy)
        assert match.confidence == 1.0

    def test_default_weights_come_from_settings(self):
        weights = MatchWeights.from_settings()
        assert weights.window == timedelta(minutes=30)
        assert weights.card + weights.vehicle + weights.time + weights.amount == pytest.approx(1.0)


class TestFrameCandidateProvider:
    CSV = (
        "Entity_ID,entity_type,occurred_at,vehicle_id,card_id,amount\n"
        "7,dtako_row,2024-01-15 08:40:00,V-100,1111222233334444,1200\n"
        "3,dtako_row,2024-01-15 08:20:00,V-200,,\n"
        "9,trip,2024-01-15 12:00:00,V-100,,800\n"
    ).encode("utf-8")

    def test_from_csv_window(self):
        provider = FrameCandidateProvider.from_csv(self.CSV)
        assert len(provider) == 3

        found = provider.candidates_between(RECORD_TIME - timedelta(minutes=30), RECORD_TIME + timedelta(minutes=30))
        assert [c.entity_id for c in found] == [3, 7]
        assert found[0].card_id is None
        assert found[0].amount is None
        assert found[1].card_id == "1111222233334444"
        assert found[1].amount == 1200
        assert found[1].occurred_at == datetime(2024, 1, 15, 8, 40)

    def test_timezone_aware_values_are_made_naive(self):
        frame = pd.DataFrame({
            "entity_id": [1],
            "entity_type": ["trip"],
            "occurred_at": ["2024-01-15T08:30:00+09:00"],
        })
        provider = FrameCandidateProvider(frame)
        found = provider.candidates_between(RECORD_TIME, RECORD_TIME)
        assert [c.entity_id for c in found] == [1]
        assert found[0].vehicle_id is None

    def test_missing_required_column(self):
        with pytest.raises(ValidationError) as excinfo:
            FrameCandidateProvider(pd.DataFrame({"entity_id": [1], "occurred_at": ["2024-01-15"]}))
        assert excinfo.value.details["missing_columns"] == ["entity_type"]

    @pytest.mark.parametrize(
        "column, value",
        [("entity_id", "abc"), ("entity_id", 0), ("occurred_at", "not a time")],
    )
    def test_invalid_values(self, column, value):
        data = {"entity_id": [1], "entity_type": ["trip"], "occurred_at": ["2024-01-15 08:30:00"]}
        data[column] = [value]
        with pytest.raises(ValidationError):
            FrameCandidateProvider(pd.DataFrame(data))

    def test_empty_upload_rejected(self):
        with pytest.raises(ValidationError):
            FrameCandidateProvider.from_csv(b"")

    def test_unparseable_timestamp_names_column(self):
        with pytest.raises(ValidationError) as excinfo:
            FrameCandidateProvider.from_csv(b"entity_id,entity_type,occurred_at\n1,trip,not-a-date\n")
        assert excinfo.value.message == "occurred_at contains a value that is not a timestamp"
        assert excinfo.value.details == {"column": "occurred_at"}

    def test_unreadable_upload_message_is_fixed(self):
        with pytest.raises(ValidationError) as excinfo:
            FrameCandidateProvider.from_csv(b"")
        assert excinfo.value.message == "Candidate export is not valid UTF-8 CSV with a header row"

    def test_fractional_amount_never_matches(self):
        provider = FrameCandidateProvider.from_csv(
            b"entity_id,entity_type,occurred_at,amount\n"
            b"1,trip,2024-01-15 08:30:00,1200.5\n"
            b"2,trip,2024-01-15 08:30:00,1200\n"
        )
        found = provider.candidates_between(RECORD_TIME, RECORD_TIME)
        assert [c.amount for c in found] == [None, 1200]
        assert "exact amount match" not in score_candidate(make_record(), found[0], WEIGHTS).reasons
        assert "exact amount match" in score_candidate(make_record(), found[1], WEIGHTS).reasons
