"""Unit tests for metadata filter validation and evaluation."""

from __future__ import annotations

import pytest

from notebookrag.providers.vector_store.filters import matches_filter, validate_filter
from notebookrag.utils.errors import ValidationError

_METADATA = {
    "category": "Residential",
    "decision_date": "2023-04-01",
    "units": 140,
    "tags": ["flood", "heritage"],
    "summary": "Approved after appeal",
    "appeal": None,
}


class TestMatchesFilter:
    @pytest.mark.parametrize(
        "metadata_filter, expected",
        [
            (None, True),
            ({}, True),
            ({"category": "residential"}, True),
            ({"category": {"$eq": "commercial"}}, False),
            ({"category": {"$ne": "commercial"}}, True),
            ({"category": {"$in": ["mixed", "RESIDENTIAL"]}}, True),
            ({"category": {"$nin": ["residential"]}}, False),
            ({"tags": {"$contains": "Heritage"}}, True),
            ({"summary": {"$contains": "appeal"}}, True),
            ({"units": {"$gte": 100, "$lt": 200}}, True),
            ({"units": {"$gt": 140}}, False),
            ({"decision_date": {"$gte": "2023-01-01", "$lte": "2023-12-31"}}, True),
            ({"$or": [{"category": "commercial"}, {"units": 140}]}, True),
            ({"$and": [{"category": "residential"}, {"units": {"$lt": 100}}]}, False),
        ],
    )
    def test_operators(self, metadata_filter, expected) -> None:
        assert matches_filter(_METADATA, metadata_filter) is expected

    def test_missing_and_null_fields_only_match_negations(self) -> None:
        assert not matches_filter(_METADATA, {"appeal": {"$gte": "2020"}})
        assert not matches_filter(_METADATA, {"ward": {"$in": ["north"]}})
        assert matches_filter(_METADATA, {"ward": {"$ne": "north"}})
        assert matches_filter(_METADATA, {"appeal": {"$nin": ["upheld"]}})

    def test_incomparable_types_do_not_match(self) -> None:
        assert not matches_filter(_METADATA, {"category": {"$gt": 5}})


class TestValidateFilter:
    @pytest.mark.parametrize(
        "metadata_filter",
        [
            {"category": {"$regex": "res.*"}},
            {"$not": {"category": "x"}},
            {"$and": {"category": "x"}},
            {"category": {"$in": "residential"}},
            ["category"],
        ],
    )
    def test_malformed_filters_rejected(self, metadata_filter) -> None:
        with pytest.raises(ValidationError):
            validate_filter(metadata_filter)

    def test_valid_nested_filter_accepted(self) -> None:
        validate_filter({"$or": [{"units": {"$gte": 10}}, {"$and": [{"category": "mixed"}]}]})
