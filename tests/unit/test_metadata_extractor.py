"""Unit tests for the MetadataExtractor and value coercion."""

from __future__ import annotations

import json

import pytest

from notebookrag.models.document import FieldType, MetadataField, MetadataSchema
from notebookrag.services.ingestion.metadata_extractor import MetadataExtractor, coerce_value
from notebookrag.utils.errors import ProviderTimeoutError
from tests.conftest import FakeLLM

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_SCHEMA = MetadataSchema(
    notebook_id="nb-1",
    fields=[
        MetadataField(name="application_ref", required=True),
        MetadataField(name="decision_date", field_type=FieldType.DATE),
        MetadataField(name="units", field_type=FieldType.NUMBER),
        MetadataField(
            name="category",
            allowed_values=["Residential", "Commercial", "Mixed use"],
        ),
        MetadataField(name="topics", field_type=FieldType.ARRAY),
    ],
)


def _responding(payload: dict | str) -> FakeLLM:
    text = payload if isinstance(payload, str) else json.dumps(payload)
    return FakeLLM(responder=lambda prompt: text)


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestExtract:
    @pytest.mark.asyncio
    async def test_values_are_coerced_to_field_types(self) -> None:
        llm = _responding(
            {
                "application_ref": "21/0456",
                "decision_date": "14 March 2023",
                "units": "140 homes",
                "category": "residential",
                "topics": "flood risk, parking",
                "_confidence": {"units": 0.9, "category": 1.7},
            }
        )
        extracted = await MetadataExtractor(llm).extract("document text", _SCHEMA)

        assert extracted.values == {
            "application_ref": "21/0456",
            "decision_date": "2023-03-14",
            "units": 140,
            "category": "Residential",
            "topics": ["flood risk", "parking"],
        }
        assert extracted.confidence == {"units": 0.9, "category": 1.0}
        assert extracted.warnings == []

    @pytest.mark.asyncio
    async def test_missing_required_field_becomes_null_with_warning(self) -> None:
        llm = _responding({"decision_date": "2023-03-14", "units": 12})
        extracted = await MetadataExtractor(llm).extract("document text", _SCHEMA)

        assert extracted.values["application_ref"] is None
        assert extracted.values["units"] == 12
        assert "required field 'application_ref' missing" in extracted.warnings

    @pytest.mark.asyncio
    async def test_every_schema_field_is_present(self) -> None:
        extracted = await MetadataExtractor(_responding({"units": 3})).extract("text", _SCHEMA)
        assert set(extracted.values) == set(_SCHEMA.field_names())

    @pytest.mark.asyncio
    async def test_invalid_value_becomes_null(self) -> None:
        llm = _responding({"application_ref": "A1", "category": "Industrial", "units": "many"})
        extracted = await MetadataExtractor(llm).extract("text", _SCHEMA)

        assert extracted.values["category"] is None
        assert extracted.values["units"] is None
        assert any("category" in w for w in extracted.warnings)
        assert any("units" in w for w in extracted.warnings)

    @pytest.mark.asyncio
    async def test_fenced_json_is_parsed(self) -> None:
        llm = _responding('Here you go:\n```json\n{"application_ref": "B2"}\n```')
        extracted = await MetadataExtractor(llm).extract("text", _SCHEMA)
        assert extracted.values["application_ref"] == "B2"

    @pytest.mark.asyncio
    async def test_unparseable_output_yields_all_null(self) -> None:
        extracted = await MetadataExtractor(_responding("I could not find anything.")).extract(
            "text", _SCHEMA
        )

        assert all(v is None for v in extracted.values.values())
        assert "metadata extraction returned unparseable output" in extracted.warnings

    @pytest.mark.asyncio
    async def test_provider_failure_does_not_raise(self) -> None:
        llm = FakeLLM(
            failures={"Extract": ProviderTimeoutError(message="timed out", provider_name="fake-llm")}
        )
        extracted = await MetadataExtractor(llm).extract("text", _SCHEMA)

        assert all(v is None for v in extracted.values.values())
        assert any("ProviderTimeoutError" in w for w in extracted.warnings)
        assert "required field 'application_ref' missing" in extracted.warnings

    @pytest.mark.asyncio
    async def test_empty_schema_skips_llm(self) -> None:
        llm = FakeLLM()
        extracted = await MetadataExtractor(llm).extract("text", MetadataSchema(notebook_id="nb"))

        assert extracted.values == {}
        assert llm.prompts == []

    @pytest.mark.asyncio
    async def test_only_leading_text_is_sent(self) -> None:
        llm = _responding({})
        await MetadataExtractor(llm, max_chars=10).extract("0123456789TAIL", _SCHEMA)
        assert "TAIL" not in llm.prompts[0]

    @pytest.mark.asyncio
    async def test_batch_extraction(self) -> None:
        llm = _responding({"application_ref": "X"})
        results = await MetadataExtractor(llm, max_concurrent=2).extract_batch(
            ["a", "b", "c"], _SCHEMA
        )
        assert [r.values["application_ref"] for r in results] == ["X", "X", "X"]


class TestCoerceValue:
    @pytest.mark.parametrize(
        "field_type, raw, expected",
        [
            (FieldType.NUMBER, "2.4 hectares", 2.4),
            (FieldType.NUMBER, "1,200", 1200),
            (FieldType.NUMBER, 7, 7),
            (FieldType.BOOLEAN, "Yes", True),
            (FieldType.BOOLEAN, "refused", False),
            (FieldType.DATE, "2021-06-30", "2021-06-30"),
            (FieldType.ARRAY, ["a", None, " b "], ["a", "b"]),
            (FieldType.TEXT, "  padded  ", "padded"),
        ],
    )
    def test_coercion(self, field_type, raw, expected) -> None:
        assert coerce_value(raw, MetadataField(name="f", field_type=field_type)) == expected

    @pytest.mark.parametrize(
        "field_type, raw",
        [
            (FieldType.NUMBER, True),
            (FieldType.BOOLEAN, "perhaps"),
            (FieldType.DATE, 20210630),
            (FieldType.TEXT, {"nested": 1}),
        ],
    )
    def test_uncoercible_values_raise(self, field_type, raw) -> None:
        with pytest.raises(ValueError):
            coerce_value(raw, MetadataField(name="f", field_type=field_type))

    def test_allowed_values_on_arrays(self) -> None:
        spec = MetadataField(
            name="tags", field_type=FieldType.ARRAY, allowed_values=["Flood", "Heritage"]
        )
        assert coerce_value("flood, HERITAGE", spec) == ["Flood", "Heritage"]
        with pytest.raises(ValueError):
            coerce_value(["Flood", "Zoning"], spec)
