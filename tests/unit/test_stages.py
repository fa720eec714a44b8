"""Unit tests for the three inference stages and their helpers.

Covers:
- ``normalizers``: numbers with separators, conditions, URLs, lists.
- ``explore``: response parsing, entry-URL fallback, failure classes.
- ``extract``: alias keys, dropped fields, year range, failure classes.
- ``validate``: response parsing, percentage rescaling, the rule-based
  fallback, required-field enforcement and the quality gate boundary.
"""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from dealerbot.clients.fetcher import FetchedPage, PageFetcher
from dealerbot.clients.inference import InferenceClient
from dealerbot.core.exceptions import (
    FetchError,
    InferenceError,
    InferenceResponseError,
    RateLimitExceededError,
)
from dealerbot.core.models import (
    CandidateItem,
    ExtractedRecord,
    OpportunityLevel,
    Source,
    ValidationOutcome,
    VehicleCondition,
)
from dealerbot.stages import prompts
from dealerbot.stages.explore import explore, parse_explore_response
from dealerbot.stages.extract import extract, parse_extracted_record
from dealerbot.stages.normalizers import (
    normalise_condition,
    normalise_number,
    normalise_opportunity,
    normalise_string_list,
    normalise_url,
    normalise_url_list,
)
from dealerbot.stages.results import ErrorKind
from dealerbot.stages.validate import (
    FALLBACK_QUALITY_SCORE,
    FALLBACK_SUBSCORE,
    enforce_required_fields,
    fallback_validation,
    parse_validation_outcome,
    passes_quality_gate,
    validate,
)

_BASE = "https://norte.example/usados"


def _make_source(**overrides: Any) -> Source:
    values: dict[str, Any] = {
        "id": "src-1",
        "name": "Autos del Norte",
        "entry_urls": [_BASE, "https://norte.example/"],
    }
    values.update(overrides)
    return Source(**values)


def _make_record(**overrides: Any) -> ExtractedRecord:
    values: dict[str, Any] = {
        "brand": "Toyota",
        "model": "Corolla",
        "condition": "used",
        "year": 2019,
        "price": 15000,
        "mileage": 42000,
        "description": "Única dueña",
        "location": "Bogotá",
        "features": ["ABS"],
        "image_urls": ["https://norte.example/img/1.jpg"],
    }
    values.update(overrides)
    return ExtractedRecord(**values)


def _page(url: str = _BASE, text: str = "<html>cars</html>") -> FetchedPage:
    return FetchedPage(url=url, status_code=200, text=text)


def _fetcher(*results: FetchedPage | Exception) -> MagicMock:
    fetcher = MagicMock(spec=PageFetcher)
    fetcher.fetch = AsyncMock(side_effect=list(results))
    return fetcher


def _inference(*results: dict[str, Any] | Exception) -> MagicMock:
    inference = MagicMock(spec=InferenceClient)
    inference.generate = AsyncMock(side_effect=list(results))
    return inference


# ===========================================================================
# Normalizers
# ===========================================================================


class TestNormalizers:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            (15000, 15000.0),
            (15000.5, 15000.5),
            ("$ 1.500.000", 1500000.0),
            ("12,500.50", 12500.5),
            ("12.500,50", 12500.5),
            ("15.000", 15000.0),
            ("9,5", 9.5),
            ("45 000 km", 45000.0),
            (-3, None),
            ("consultar", None),
            (True, None),
            (None, None),
            (float("nan"), None),
        ],
    )
    def test_normalise_number(self, raw: Any, expected: float | None) -> None:
        assert normalise_number(raw) == expected

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("Usado", VehicleCondition.USED),
            ("nuevo", VehicleCondition.NEW),
            ("0km", VehicleCondition.NEW),
            ("Seminuevo", VehicleCondition.CERTIFIED),
            ("salvage", None),
            (3, None),
        ],
    )
    def test_normalise_condition(self, raw: Any, expected: VehicleCondition | None) -> None:
        assert normalise_condition(raw) == expected

    def test_normalise_opportunity_defaults_to_medium(self) -> None:
        assert normalise_opportunity("Alta") is OpportunityLevel.HIGH
        assert normalise_opportunity("whatever") is OpportunityLevel.MEDIUM
        assert normalise_opportunity(None) is OpportunityLevel.MEDIUM

    def test_normalise_url(self) -> None:
        assert normalise_url("/auto/1#fotos", base_url=_BASE) == "https://norte.example/auto/1"
        assert normalise_url("javascript:void(0)", base_url=_BASE) is None
        assert normalise_url("mailto:x@y.z", base_url=_BASE) is None
        assert normalise_url(42, base_url=_BASE) is None

    def test_normalise_url_list_dedupes(self) -> None:
        urls = normalise_url_list(["/a", "/a", "ftp://x/y", "https://cdn.example/b"], base_url=_BASE)
        assert urls == ["https://norte.example/a", "https://cdn.example/b"]

    def test_normalise_string_list(self) -> None:
        assert normalise_string_list("ABS, Airbags ,,ABS") == ["ABS", "Airbags"]
        assert normalise_string_list(["  a ", 3, None, "b"]) == ["a", "b"]
        assert normalise_string_list({"a": 1}) == []


# ===========================================================================
# Explore
# ===========================================================================


class TestParseExploreResponse:
    def test_objects_and_bare_strings(self) -> None:
        result = parse_explore_response(
            {
                "vehicle_urls": [
                    {"url": "/auto/1", "title": "Corolla 2019", "price": "$15.000", "opportunity": "high"},
                    "/auto/2",
                    {"url": "javascript:void(0)"},
                    {"url": "/auto/1"},
                ],
                "pagination_urls": ["?page=2"],
                "challenges": ["lazy loading"],
            },
            base_url=_BASE,
            max_candidates=10,
        )
        assert [c.url for c in result.candidates] == [
            "https://norte.example/auto/1",
            "https://norte.example/auto/2",
        ]
        first = result.candidates[0]
        assert first.title == "Corolla 2019"
        assert first.price == 15000.0
        assert first.opportunity is OpportunityLevel.HIGH
        assert result.candidates[1].opportunity is OpportunityLevel.MEDIUM
        assert result.pagination_urls == ("https://norte.example/usados?page=2",)
        assert result.challenges == ("lazy loading",)

    def test_spanish_and_camel_case_keys(self) -> None:
        result = parse_explore_response(
            {"vehicleUrls": [{"url": "/a", "opportunityLevel": "baja"}], "challengesDetected": ["captcha"]},
            base_url=_BASE,
            max_candidates=10,
        )
        assert result.candidates[0].opportunity is OpportunityLevel.LOW
        assert result.challenges == ("captcha",)

    def test_max_candidates(self) -> None:
        result = parse_explore_response(
            {"vehicle_urls": [f"/auto/{i}" for i in range(10)]},
            base_url=_BASE,
            max_candidates=3,
        )
        assert len(result.candidates) == 3

    def test_empty_list_is_valid(self) -> None:
        assert parse_explore_response({"vehicle_urls": []}, base_url=_BASE, max_candidates=5).candidates == ()

    @pytest.mark.parametrize("data", [{}, {"vehicle_urls": "nope"}])
    def test_missing_list_is_malformed(self, data: dict[str, Any]) -> None:
        with pytest.raises(InferenceResponseError):
            parse_explore_response(data, base_url=_BASE, max_candidates=5)


class TestExploreStage:
    async def test_success(self) -> None:
        fetcher = _fetcher(_page())
        inference = _inference({"vehicle_urls": ["/auto/1"]})
        result = await explore(_make_source(), fetcher, inference)
        assert result.ok
        assert result.value is not None
        assert result.value.entry_url == _BASE
        assert [c.url for c in result.value.candidates] == ["https://norte.example/auto/1"]
        args = inference.generate.await_args.args
        assert "Autos del Norte" in args[0]
        assert args[1] is prompts.EXPLORE_SCHEMA

    async def test_falls_back_to_next_entry_url(self) -> None:
        root = "https://norte.example/"
        fetcher = _fetcher(FetchError(_BASE, "HTTP 404"), _page(url=root))
        inference = _inference({"vehicle_urls": ["/x"]})
        result = await explore(_make_source(), fetcher, inference)
        assert result.ok
        assert result.value is not None
        assert result.value.entry_url == root
        assert fetcher.fetch.await_count == 2

    async def test_all_entry_urls_fail_is_transient(self) -> None:
        fetcher = _fetcher(FetchError(_BASE, "boom"), FetchError("root", "boom"))
        result = await explore(_make_source(), fetcher, _inference())
        assert not result.ok
        assert result.failure is not None
        assert result.failure.stage == "explore"
        assert result.failure.kind is ErrorKind.TRANSIENT_EXTERNAL

    async def test_malformed_response(self) -> None:
        result = await explore(_make_source(), _fetcher(_page()), _inference({"nothing": True}))
        assert result.failure is not None
        assert result.failure.kind is ErrorKind.MALFORMED_UPSTREAM

    async def test_rate_limited_inference_is_transient(self) -> None:
        result = await explore(
            _make_source(), _fetcher(_page()), _inference(RateLimitExceededError("inference", 3.0))
        )
        assert result.failure is not None
        assert result.failure.kind is ErrorKind.TRANSIENT_EXTERNAL

    async def test_source_without_urls(self) -> None:
        result = await explore(_make_source(entry_urls=[]), _fetcher(), _inference())
        assert result.failure is not None
        assert result.failure.kind is ErrorKind.UNEXPECTED


# ===========================================================================
# Extract
# ===========================================================================


class TestParseExtractedRecord:
    def test_full_record_with_spanish_keys(self) -> None:
        record, dropped = parse_extracted_record(
            {
                "marca": "Mazda",
                "modelo": "CX-5",
                "condicion": "usado",
                "año": "2021",
                "precio": "$ 98.500.000",
                "kilometraje": "35.000 km",
                "descripcion": "Full equipo",
                "ubicacion": "Medellín",
                "caracteristicas": ["Techo", "Cuero"],
                "imagenes": ["/fotos/1.jpg", "javascript:x"],
            },
            base_url="https://sur.example/auto/9",
            year_min=1990,
            year_max=2026,
        )
        assert dropped == []
        assert record.brand == "Mazda"
        assert record.model == "CX-5"
        assert record.condition is VehicleCondition.USED
        assert record.year == 2021
        assert record.price == 98_500_000.0
        assert record.mileage == 35000
        assert record.features == ["Techo", "Cuero"]
        assert record.image_urls == ["https://sur.example/fotos/1.jpg"]

    def test_invalid_fields_become_none_and_are_reported(self) -> None:
        record, dropped = parse_extracted_record(
            {"brand": "Kia", "model": "Rio", "year": 1850, "price": "consultar", "condition": "wrecked"},
            base_url=_BASE,
            year_min=1990,
            year_max=2026,
        )
        assert record.brand == "Kia"
        assert record.year is None
        assert record.price is None
        assert record.condition is None
        assert sorted(dropped) == ["condition", "price", "year"]

    def test_year_range_is_inclusive(self) -> None:
        low, _ = parse_extracted_record({"year": 1990}, base_url=_BASE, year_min=1990, year_max=2026)
        high, _ = parse_extracted_record({"year": 2026}, base_url=_BASE, year_min=1990, year_max=2026)
        above, _ = parse_extracted_record({"year": 2027}, base_url=_BASE, year_min=1990, year_max=2026)
        assert low.year == 1990
        assert high.year == 2026
        assert above.year is None

    def test_absent_fields_are_not_dropped(self) -> None:
        record, dropped = parse_extracted_record({}, base_url=_BASE, year_min=1990, year_max=2026)
        assert dropped == []
        assert record.missing_required == ["brand", "model", "year", "price"]


class TestExtractStage:
    _CANDIDATE = CandidateItem(url="https://norte.example/auto/1", title="Corolla")

    async def test_success(self) -> None:
        fetcher = _fetcher(_page(url=self._CANDIDATE.url))
        inference = _inference({"brand": "Toyota", "model": "Corolla", "year": 2019, "price": 1})
        result = await extract(self._CANDIDATE, fetcher, inference, year_min=1990, year_max=2026)
        assert result.ok
        assert result.value is not None
        assert result.value.record.brand == "Toyota"
        assert result.value.source_url == self._CANDIDATE.url
        prompt = inference.generate.await_args.args[0]
        assert "Listing title: Corolla" in prompt

    async def test_fetch_failure_is_transient(self) -> None:
        result = await extract(
            self._CANDIDATE,
            _fetcher(FetchError(self._CANDIDATE.url, "HTTP 500")),
            _inference(),
            year_min=1990,
            year_max=2026,
        )
        assert result.failure is not None
        assert result.failure.stage == "extract"
        assert result.failure.kind is ErrorKind.TRANSIENT_EXTERNAL

    async def test_malformed_inference(self) -> None:
        result = await extract(
            self._CANDIDATE,
            _fetcher(_page(url=self._CANDIDATE.url)),
            _inference(InferenceResponseError("inference", "garbage")),
            year_min=1990,
            year_max=2026,
        )
        assert result.failure is not None
        assert result.failure.kind is ErrorKind.MALFORMED_UPSTREAM


# ===========================================================================
# Validate
# ===========================================================================


class TestParseValidationOutcome:
    def test_english_keys(self) -> None:
        outcome = parse_validation_outcome(
            {
                "is_valid": True,
                "completeness": 0.8,
                "accuracy": 0.9,
                "consistency": 1.0,
                "is_duplicate": True,
                "issues": ["odd mileage"],
                "quality_score": 3,
            }
        )
        assert outcome.is_valid
        assert outcome.is_duplicate
        assert outcome.issues == ["odd mileage"]
        assert outcome.quality_score == 90
        assert not outcome.fallback

    def test_spanish_keys_and_percentages(self) -> None:
        outcome = parse_validation_outcome(
            {"esValido": False, "completitud": 80, "precision": 60, "consistencia": 70, "problemas": "x, y"}
        )
        assert not outcome.is_valid
        assert outcome.completeness == pytest.approx(0.8)
        assert outcome.quality_score == 70
        assert outcome.issues == ["x", "y"]
        assert outcome.is_duplicate is False

    @pytest.mark.parametrize(
        "data",
        [
            {"completeness": 1, "accuracy": 1, "consistency": 1},
            {"is_valid": "yes", "completeness": 1, "accuracy": 1, "consistency": 1},
            {"is_valid": True, "completeness": "high", "accuracy": 1, "consistency": 1},
            {"is_valid": True, "completeness": 150, "accuracy": 1, "consistency": 1},
            {"is_valid": True, "completeness": -1, "accuracy": 1, "consistency": 1},
            {"is_valid": True, "accuracy": 1, "consistency": 1},
        ],
    )
    def test_malformed(self, data: dict[str, Any]) -> None:
        with pytest.raises(InferenceResponseError):
            parse_validation_outcome(data)


class TestFallbackValidation:
    def test_complete_record(self) -> None:
        outcome = fallback_validation(_make_record(), year_min=1990, year_max=2026)
        assert outcome.is_valid
        assert outcome.fallback
        assert outcome.completeness == pytest.approx(1.0)
        assert outcome.accuracy == FALLBACK_SUBSCORE
        assert outcome.consistency == FALLBACK_SUBSCORE
        assert outcome.quality_score == 80

    def test_missing_required_field(self) -> None:
        outcome = fallback_validation(_make_record(price=None), year_min=1990, year_max=2026)
        assert not outcome.is_valid
        assert any("price" in issue for issue in outcome.issues)

    def test_zero_price_invalid(self) -> None:
        outcome = fallback_validation(_make_record(price=0), year_min=1990, year_max=2026)
        assert not outcome.is_valid
        assert "price must be positive" in outcome.issues

    def test_year_out_of_range(self) -> None:
        outcome = fallback_validation(_make_record(year=1985), year_min=1990, year_max=2026)
        assert not outcome.is_valid

    def test_completeness_counts_present_fields(self) -> None:
        record = ExtractedRecord(brand="Kia", model="Rio", year=2020, price=1000)
        outcome = fallback_validation(record, year_min=1990, year_max=2026, score_floor=0)
        assert outcome.is_valid
        assert outcome.completeness == pytest.approx(4 / 9)
        assert outcome.quality_score == round((4 / 9 + 0.7 + 0.7) / 3 * 100)

    def test_sparse_valid_record_scores_at_least_the_floor(self) -> None:
        record = ExtractedRecord(
            brand="Kia", model="Rio", condition="used", year=2020, price=1000, mileage=5000
        )
        outcome = fallback_validation(record, year_min=1990, year_max=2026)
        assert outcome.is_valid
        assert outcome.quality_score == FALLBACK_QUALITY_SCORE
        assert passes_quality_gate(outcome, FALLBACK_QUALITY_SCORE)

    def test_floor_follows_configured_threshold(self) -> None:
        record = ExtractedRecord(brand="Kia", model="Rio", year=2020, price=1000)
        outcome = fallback_validation(record, year_min=1990, year_max=2026, score_floor=85)
        assert outcome.quality_score == 85

    def test_floor_does_not_lower_a_higher_score(self) -> None:
        outcome = fallback_validation(_make_record(), year_min=1990, year_max=2026, score_floor=50)
        assert outcome.quality_score == 80


class TestEnforceRequiredFields:
    def test_forces_invalid_when_required_missing(self) -> None:
        outcome = ValidationOutcome(is_valid=True, completeness=1, accuracy=1, consistency=1)
        enforced = enforce_required_fields(outcome, _make_record(model=None))
        assert not enforced.is_valid
        assert enforced.issues == ["missing required field(s): model"]

    def test_complete_record_untouched(self) -> None:
        outcome = ValidationOutcome(is_valid=True, completeness=1, accuracy=1, consistency=1)
        assert enforce_required_fields(outcome, _make_record()) is outcome


class TestQualityGate:
    @staticmethod
    def _outcome(score: int, **overrides: Any) -> ValidationOutcome:
        values: dict[str, Any] = {
            "is_valid": True,
            "completeness": score / 100,
            "accuracy": score / 100,
            "consistency": score / 100,
        }
        values.update(overrides)
        return ValidationOutcome(**values)

    def test_boundary_is_inclusive(self) -> None:
        assert self._outcome(70).quality_score == 70
        assert passes_quality_gate(self._outcome(70), 70)
        assert not passes_quality_gate(self._outcome(69), 70)

    def test_invalid_never_passes(self) -> None:
        assert not passes_quality_gate(self._outcome(100, is_valid=False), 0)

    def test_duplicate_flag(self) -> None:
        dup = self._outcome(95, is_duplicate=True)
        assert not passes_quality_gate(dup, 70)
        assert passes_quality_gate(dup, 70, honor_duplicate_flag=False)


class TestValidateStage:
    async def test_model_outcome(self) -> None:
        inference = _inference({"is_valid": True, "completeness": 0.9, "accuracy": 0.9, "consistency": 0.9})
        result = await validate(
            _make_record(),
            inference,
            year_min=1990,
            year_max=2026,
            context={"source": "Autos del Norte"},
        )
        assert result.ok
        assert result.value is not None
        assert result.value.quality_score == 90
        assert not result.value.fallback
        prompt = inference.generate.await_args.args[0]
        assert "Autos del Norte" in prompt

    async def test_malformed_response_uses_fallback(self) -> None:
        result = await validate(
            _make_record(),
            _inference({"verdict": "looks fine"}),
            year_min=1990,
            year_max=2026,
        )
        assert result.ok
        assert result.value is not None
        assert result.value.fallback
        assert result.value.quality_score == 80

    async def test_transient_failure_is_a_stage_failure(self) -> None:
        result = await validate(
            _make_record(),
            _inference(InferenceError("inference", "timeout")),
            year_min=1990,
            year_max=2026,
        )
        assert result.failure is not None
        assert result.failure.stage == "validate"
        assert result.failure.kind is ErrorKind.TRANSIENT_EXTERNAL

    async def test_model_cannot_validate_incomplete_record(self) -> None:
        result = await validate(
            _make_record(brand=None),
            _inference({"is_valid": True, "completeness": 1, "accuracy": 1, "consistency": 1}),
            year_min=1990,
            year_max=2026,
        )
        assert result.value is not None
        assert not result.value.is_valid
