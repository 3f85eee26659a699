"""Tests for field validators."""
import math

from app.research_core.validators import (
    CARGO_TYPES,
    critical_errors,
    round6,
    validate_capacity,
    validate_cargo_types,
    validate_coordinates,
    validate_enforcement_strength,
    validate_identity_adoption_rate,
    validate_identity_competitors,
    validate_isps_level,
    validate_operator_type,
    validate_parent_companies,
    validate_port_authority,
)


class TestEnumValidators:
    def test_exact_isps_level_passes_unchanged(self):
        result = validate_isps_level("High")
        assert result.is_valid
        assert result.corrected_value == "High"
        assert result.warnings == []

    def test_isps_level_case_is_corrected(self):
        result = validate_isps_level("very high")
        assert result.is_valid
        assert result.corrected_value == "Very High"
        assert len(result.warnings) == 1

    def test_isps_level_guess_is_invalid_with_suggestion(self):
        result = validate_isps_level("moderately risky")
        assert not result.is_valid
        assert result.corrected_value == "Medium"
        assert result.suggestions == ["Medium"]

    def test_unrecognised_enforcement_lists_valid_options(self):
        result = validate_enforcement_strength("excellent")
        assert not result.is_valid
        assert "Must be one of" in result.errors[0]
        assert result.suggestions == ["Weak", "Moderate", "Strong", "Very Strong"]

    def test_empty_enum_is_valid_null(self):
        result = validate_enforcement_strength("  ")
        assert result.is_valid
        assert result.corrected_value is None


class TestOperatorType:
    def test_lowercases_valid_type(self):
        result = validate_operator_type("Commercial")
        assert result.is_valid
        assert result.corrected_value == "commercial"

    def test_infers_captive_from_description(self):
        result = validate_operator_type("Private industrial terminal")
        assert result.is_valid
        assert result.corrected_value == "captive"

    def test_unknown_type_is_critical(self):
        result = validate_operator_type("state-run")
        assert not result.is_valid
        assert critical_errors(result) == result.errors


class TestNameLists:
    def test_competitors_are_trimmed_and_deduplicated(self):
        result = validate_identity_competitors(["Rotterdam ", "rotterdam", "Antwerp", 5])
        assert result.is_valid
        assert result.corrected_value == ["Rotterdam", "Antwerp"]
        assert any("Duplicate" in w for w in result.warnings)
        assert any("Invalid" in w for w in result.warnings)

    def test_single_string_is_wrapped(self):
        result = validate_parent_companies("DP World")
        assert result.corrected_value == ["DP World"]

    def test_non_list_is_invalid(self):
        result = validate_parent_companies({"name": "x"})
        assert not result.is_valid


class TestAdoptionRate:
    def test_percentage_is_normalised(self):
        assert validate_identity_adoption_rate("45 %").corrected_value == "45%"

    def test_percentage_out_of_range(self):
        assert not validate_identity_adoption_rate("150%").is_valid

    def test_keyword_mapping(self):
        result = validate_identity_adoption_rate("moderate uptake")
        assert result.is_valid
        assert result.corrected_value == "Medium"

    def test_unclear_text_is_kept_with_warning(self):
        result = validate_identity_adoption_rate("pilot phase")
        assert result.is_valid
        assert result.corrected_value == "pilot phase"
        assert result.warnings


class TestCoordinates:
    def test_rounds_to_six_decimals(self):
        result = validate_coordinates(51.95123456789, 4.14)
        assert result.is_valid
        assert result.corrected_value == {"lat": 51.951235, "lon": 4.14}
        assert result.warnings

    def test_rounding_is_idempotent(self):
        for value in (51.95123456789, -179.9999995, 0.1 + 0.2, 4.0, -33.8688197):
            assert round6(round6(value)) == round6(value)
        result = validate_coordinates(51.95123456789, 4.123456789)
        again = validate_coordinates(result.corrected_value)
        assert again.corrected_value == result.corrected_value
        assert not again.warnings

    def test_accepts_dict_shape(self):
        result = validate_coordinates({"lat": 10, "lon": 20})
        assert result.corrected_value == {"lat": 10.0, "lon": 20.0}

    def test_out_of_range_is_critical(self):
        result = validate_coordinates(95, 10)
        assert not result.is_valid
        assert critical_errors(result)

    def test_nan_is_rejected(self):
        result = validate_coordinates(math.nan, 1.0)
        assert not result.is_valid

    def test_zero_zero_warns(self):
        result = validate_coordinates(0, 0)
        assert result.is_valid
        assert any("(0, 0)" in w for w in result.warnings)

    def test_strings_are_not_numbers(self):
        assert not validate_coordinates("51.9", "4.1").is_valid


class TestPortAuthorityAndCapacity:
    def test_missing_authority_is_required(self):
        result = validate_port_authority(None)
        assert not result.is_valid
        assert critical_errors(result)

    def test_authority_without_keywords_warns(self):
        result = validate_port_authority("Havenbedrijf Rotterdam")
        assert result.is_valid
        assert result.warnings

    def test_capacity_unclear_format_warns(self):
        result = validate_capacity("large")
        assert result.is_valid
        assert result.corrected_value == "large"
        assert result.warnings

    def test_capacity_teu_has_no_warning(self):
        assert validate_capacity("2.5 million TEU").warnings == []


class TestCargoTypes:
    def test_guesses_and_drops_unknown(self):
        result = validate_cargo_types(["containers", "RORO", "spaceships", "Container"])
        assert result.is_valid
        assert result.corrected_value == ["Container", "RoRo"]
        assert any("Unknown cargo type" in w for w in result.warnings)

    def test_comma_separated_string(self):
        result = validate_cargo_types("Dry Bulk, liquid bulk")
        assert result.corrected_value == ["Dry Bulk", "Liquid Bulk"]

    def test_every_result_is_canonical(self):
        result = validate_cargo_types(["ferry", "multi-purpose", "break bulk cargo"])
        assert set(result.corrected_value) <= set(CARGO_TYPES)
