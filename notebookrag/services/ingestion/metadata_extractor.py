"""LLM-powered document metadata extraction against a notebook schema.

Uses an :class:`~notebookrag.interfaces.llm_provider.ILLMProvider` to read
the start of a document and fill in the fields of the notebook's
:class:`~notebookrag.models.document.MetadataSchema`.  Extracted metadata
enables **filtered retrieval** -- e.g. "only decisions after 2020 for
residential applications" -- on top of pure vector similarity.

The extraction flow:

1. The first ``max_chars`` characters are sent to the LLM with a prompt
   listing every field's name, type, allowed values and description.
2. The LLM returns a single JSON object, optionally with a ``_confidence``
   map of per-field scores.
3. The JSON is parsed (handling markdown fences and prose around it).
4. Every schema field is coerced to its declared type; values that fail
   coercion or fall outside ``allowed_values`` become ``None`` with a
   warning.

Extraction failures never block ingestion: provider errors and unparseable
output produce all-``None`` metadata plus a warning.
"""

from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog
from dateutil import parser as dateutil_parser

from notebookrag.models.document import FieldType, MetadataField, MetadataSchema
from notebookrag.utils.concurrency import get_throttle, throttled_gather
from notebookrag.utils.errors import NotebookRAGError
from notebookrag.utils.text_normalizer import match_allowed_value

if TYPE_CHECKING:
    from notebookrag.interfaces.llm_provider import ILLMProvider

logger = structlog.get_logger(logger_name=__name__)

_EXTRACTION_SYSTEM_PROMPT = (
    "You are a metadata extraction assistant. You read documents and return "
    "structured metadata as a single JSON object. Only report values stated "
    "in the document; use null when a value is not present."
)

_EXTRACTION_USER_PROMPT = """\
Extract the following metadata fields from the document below.

Fields:
{fields}

Return a single JSON object whose keys are the field names above. Use null
for any field you cannot find. Dates must be YYYY-MM-DD. You may add a
"_confidence" object mapping field names to a score between 0 and 1.

Document:
{text}"""

_TRUE_WORDS = frozenset({"true", "yes", "y", "1", "approved"})
_FALSE_WORDS = frozenset({"false", "no", "n", "0", "refused"})
_NUMBER_RE = re.compile(r"-?\d[\d,]*(?:\.\d+)?")


@dataclass(frozen=True)
class ExtractedMetadata:
    """Schema-conformant metadata for one document."""

    values: dict[str, Any] = field(default_factory=dict)
    confidence: dict[str, float] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)


class MetadataExtractor:
    """Extracts schema fields from document text using an LLM.

    Parameters
    ----------
    llm:
        The LLM provider used for extraction prompts (injected, swappable).
    max_chars:
        Number of leading characters of the document sent to the LLM.
    temperature:
        Sampling temperature; kept low to minimize invented values.
    max_concurrent:
        Upper bound on simultaneous extractions in :meth:`extract_batch`.
    """

    def __init__(
        self,
        llm: ILLMProvider,
        max_chars: int = 8000,
        temperature: float = 0.1,
        max_concurrent: int = 5,
    ) -> None:
        self._llm = llm
        self._max_chars = max_chars
        self._temperature = temperature
        self._max_concurrent = max_concurrent

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def extract(self, text: str, schema: MetadataSchema) -> ExtractedMetadata:
        """Extract *schema* fields from *text*.

        Returns
        -------
        ExtractedMetadata
            One value per schema field (``None`` where extraction or
            coercion failed).  Never raises for provider or parse failures.
        """
        if not schema.fields:
            return ExtractedMetadata()

        empty = {f.name: None for f in schema.fields}
        throttle = get_throttle(self._llm.get_provider_name())
        try:
            async with throttle.slot():
                response = await self._llm.complete(
                    system_prompt=_EXTRACTION_SYSTEM_PROMPT,
                    user_prompt=_EXTRACTION_USER_PROMPT.format(
                        fields=self._describe_fields(schema.fields),
                        text=text[: self._max_chars],
                    ),
                    temperature=self._temperature,
                    max_tokens=1000,
                )
        except NotebookRAGError as exc:
            logger.warning(
                "metadata_extraction_failed",
                error_kind=exc.kind,
                error=exc.message,
                msg="Returning empty metadata; ingestion continues.",
            )
            warnings = [f"metadata extraction failed: {exc.kind}: {exc.message}"]
            warnings += [f"required field '{f.name}' missing" for f in schema.fields if f.required]
            return ExtractedMetadata(values=empty, warnings=warnings)

        data = self._parse_response(response)
        if data is None:
            warnings = ["metadata extraction returned unparseable output"]
            warnings += [f"required field '{f.name}' missing" for f in schema.fields if f.required]
            return ExtractedMetadata(values=empty, warnings=warnings)

        return self._validate(data, schema)

    async def extract_batch(
        self,
        texts: list[str],
        schema: MetadataSchema,
    ) -> list[ExtractedMetadata]:
        """Extract metadata for many documents, bounded by ``max_concurrent``."""
        if not texts:
            return []
        results = await throttled_gather(
            [self.extract(t, schema) for t in texts],
            semaphore=asyncio.Semaphore(self._max_concurrent),
            return_exceptions=False,
        )
        logger.info(
            "batch_extraction_complete",
            total=len(results),
            with_warnings=sum(1 for r in results if r.warnings),
        )
        return list(results)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _describe_fields(fields: list[MetadataField]) -> str:
        lines = []
        for f in fields:
            line = f"- {f.name} ({f.field_type.value}{', required' if f.required else ''})"
            if f.description:
                line += f": {f.description}"
            if f.allowed_values:
                line += f" Allowed values: {', '.join(f.allowed_values)}."
            lines.append(line)
        return "\n".join(lines)

    @staticmethod
    def _parse_response(response: str) -> dict[str, Any] | None:
        """Parse the LLM response into a dict, or ``None`` if it is not JSON.

        Handles clean JSON, markdown-fenced JSON and JSON embedded in prose.
        """
        cleaned = response.strip()
        fence_match = re.search(r"```(?:json)?\s*\n?(.*?)```", cleaned, re.DOTALL)
        if fence_match:
            cleaned = fence_match.group(1).strip()
        else:
            brace_start = cleaned.find("{")
            brace_end = cleaned.rfind("}")
            if brace_start != -1 and brace_end > brace_start:
                cleaned = cleaned[brace_start : brace_end + 1]

        try:
            data = json.loads(cleaned)
        except json.JSONDecodeError:
            logger.warning("metadata_json_parse_failed", response_preview=response[:200])
            return None
        return data if isinstance(data, dict) else None

    def _validate(self, data: dict[str, Any], schema: MetadataSchema) -> ExtractedMetadata:
        raw_confidence = data.get("_confidence")
        confidence_in = raw_confidence if isinstance(raw_confidence, dict) else {}

        values: dict[str, Any] = {}
        confidence: dict[str, float] = {}
        warnings: list[str] = []
        for f in schema.fields:
            raw = data.get(f.name)
            if raw is None or raw == "" or raw == []:
                values[f.name] = None
                if f.required:
                    warnings.append(f"required field '{f.name}' missing")
                continue

            try:
                value = coerce_value(raw, f)
            except (TypeError, ValueError, OverflowError) as exc:
                values[f.name] = None
                warnings.append(f"field '{f.name}': {exc}")
                continue

            values[f.name] = value
            score = confidence_in.get(f.name)
            if isinstance(score, int | float) and not isinstance(score, bool):
                confidence[f.name] = max(0.0, min(1.0, float(score)))

        if warnings:
            logger.info("metadata_validation_warnings", warnings=warnings)
        return ExtractedMetadata(values=values, confidence=confidence, warnings=warnings)


def coerce_value(raw: Any, spec: MetadataField) -> Any:
    """Coerce an LLM-returned value to the field's declared type.

    Raises
    ------
    ValueError
        If the value cannot be represented as the field type, or is not
        one of the field's ``allowed_values``.
    """
    if spec.field_type == FieldType.NUMBER:
        value = _to_number(raw)
    elif spec.field_type == FieldType.BOOLEAN:
        value = _to_bool(raw)
    elif spec.field_type == FieldType.DATE:
        value = _to_date(raw)
    elif spec.field_type == FieldType.ARRAY:
        value = _to_list(raw)
    else:
        if isinstance(raw, dict | list):
            raise ValueError(f"expected text, got {type(raw).__name__}")
        value = str(raw).strip()

    if spec.allowed_values:
        if isinstance(value, list):
            matched = [match_allowed_value(str(v), spec.allowed_values) for v in value]
            rejected = [v for v, m in zip(value, matched, strict=True) if m is None]
            if rejected:
                raise ValueError(f"values {rejected} not in allowed values")
            return matched
        match = match_allowed_value(str(value), spec.allowed_values)
        if match is None:
            raise ValueError(f"value {value!r} not in allowed values")
        return match
    return value


def _to_number(raw: Any) -> int | float:
    if isinstance(raw, bool):
        raise ValueError("expected number, got boolean")
    if isinstance(raw, int | float):
        return raw
    match = _NUMBER_RE.search(str(raw))
    if not match:
        raise ValueError(f"not a number: {raw!r}")
    number = float(match.group(0).replace(",", ""))
    return int(number) if number.is_integer() and "." not in match.group(0) else number


def _to_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    word = str(raw).strip().casefold()
    if word in _TRUE_WORDS:
        return True
    if word in _FALSE_WORDS:
        return False
    raise ValueError(f"not a boolean: {raw!r}")


def _to_date(raw: Any) -> str:
    if not isinstance(raw, str):
        raise ValueError(f"expected date string, got {type(raw).__name__}")
    parsed = dateutil_parser.parse(raw.strip(), fuzzy=True)
    return parsed.date().isoformat()


def _to_list(raw: Any) -> list[str]:
    if isinstance(raw, list):
        return [str(v).strip() for v in raw if v is not None and str(v).strip()]
    if isinstance(raw, str):
        return [part.strip() for part in raw.split(",") if part.strip()]
    raise ValueError(f"expected list, got {type(raw).__name__}")
