from __future__ import annotations

import pytest

from portpass.research_core.validators import (
    validate_cargo_types,
    validate_coordinates,
    validate_enforcement_strength,
    validate_field,
    validate_identity_adoption_rate,
    validate_identity_competitors,
    validate_isps_level,
    validate_operator_type,
    validate_port_authority,
)


class TestPortAuthority:
    def test_valid_name_is_trimmed(self):
        result = validate_port_authority("  Port of Rotterdam Authority ")
        assert result.is_valid
        assert result.corrected_value == "Port of Rotterdam Authority"
        assert result.warnings == []

    def test_missing_name_is_critical(self):
        result = validate_port_authority("   ")
        assert not result.is_valid
        assert result.critical

    def test_short_name_is_an_error_but_not_critical(self):
        result = validate_port_authority("PA")
        assert not result.is_valid
        assert not result.critical

    def test_name_without_keywords_warns(self):
        result = validate_port_authority("Havenbedrijf Rotterdam")
        assert result.is_valid
        assert any("keywords" in w for w in result.warnings)


class TestEnums:
    def test_case_is_corrected_with_warning(self):
        result = validate_isps_level("very high")
        assert result.is_valid
        assert result.corrected_value == "Very High"
        assert result.warnings

    def test_fuzzy_match_is_suggested(self):
        result = validate_enforcement_strength("fairly strong enforcement")
        assert not result.is_valid
        assert not result.critical
        assert result.corrected_value == "Strong"
        assert result.suggestions == ["Strong"]

    def test_unrecognized_value_is_critical(self):
        result = validate_isps_level("Purple")
        assert result.critical
        assert "Must be one of" in result.errors[0]

    def test_operator_type_synonym(self):
        result = validate_operator_type("Dedicated in-house terminal")
        assert result.corrected_value == "captive"

    def test_empty_enum_passes(self):
        assert validate_isps_level(None).is_valid


def test_competitor_list_is_deduplicated():
    result = validate_identity_competitors(["Portbase", " portbase ", "", "TradeLens"])
    assert result.corrected_value == ["Portbase", "TradeLens"]
    assert any("Duplicate" in w for w in result.warnings)


def test_competitors_accept_delimited_string():
    result = validate_identity_competitors("Portbase; TradeLens, NxtPort")
    assert result.corrected_value == ["Portbase", "TradeLens", "NxtPort"]


@pytest.mark.parametrize(
    "value,expected",
    [("40", "40%"), ("40.5 %", "40.5%"), ("medium", "Medium"), ("Mostly low uptake", "Low")],
)
def test_adoption_rate_normalization(value, expected):
    assert validate_identity_adoption_rate(value).corrected_value == expected


def test_adoption_rate_over_100_is_critical():
    result = validate_identity_adoption_rate("140%")
    assert result.critical


class TestCoordinates:
    def test_valid_coordinates_are_rounded(self):
        result = validate_coordinates({"lat": 51.922512345, "lon": 4.4791712345})
        assert result.is_valid
        assert result.corrected_value == {"lat": 51.922512, "lon": 4.479171}
        assert result.warnings

    def test_out_of_range_is_critical(self):
        result = validate_coordinates({"lat": 95.0, "lon": 4.0})
        assert result.critical

    def test_null_island_warns(self):
        result = validate_coordinates([0, 0])
        assert result.is_valid
        assert any("(0, 0)" in w for w in result.warnings)

    def test_non_numeric_is_critical(self):
        assert validate_coordinates({"lat": "north", "lon": 4}).critical

    @pytest.mark.parametrize("value", [{"lat": None, "lon": None}, {"lat": 51.9, "lon": None}, {}])
    def test_missing_half_means_not_found(self, value):
        result = validate_coordinates(value)
        assert result.is_valid
        assert not result.critical
        assert result.corrected_value is None


def test_cargo_types_map_to_canonical_categories():
    result = validate_cargo_types(["containers", "Dry Bulk", "roll-on roll-off", "spaceships"])
    assert result.is_valid
    assert result.corrected_value == ["Container", "Dry Bulk", "RoRo"]
    assert any("spaceships" in w for w in result.warnings)


def test_validate_field_without_validator_passes_through():
    result = validate_field(None, "anything")
    assert result.is_valid
    assert result.corrected_value == "anything"


def test_validate_field_unknown_validator():
    with pytest.raises(KeyError):
        validate_field("nope", "x")
