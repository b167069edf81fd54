"""Field-specific validators.

Each validator takes the raw extracted value and returns a
``ValidationResult``. A validator may correct near-miss values (case,
whitespace, duplicates); the corrected value replaces the extracted one
before scoring. ``critical`` marks hard-constraint violations that abort a
research run instead of being shown to the reviewer.
"""
from __future__ import annotations

import math
import re
from typing import Any, Callable

from portpass.models.research import ValidationResult

ISPS_RISK_LEVELS = ("Low", "Medium", "High", "Very High")
ENFORCEMENT_STRENGTHS = ("Weak", "Moderate", "Strong", "Very Strong")
ADOPTION_LEVELS = ("High", "Medium", "Low", "None")
OPERATOR_TYPES = ("commercial", "captive")
CARGO_TYPES = (
    "Container",
    "RoRo",
    "Dry Bulk",
    "Liquid Bulk",
    "Break Bulk",
    "Multipurpose",
    "Passenger/Ferry",
)

_PLACEHOLDERS = {"unknown", "n/a", "none"}
_ONLY_DIGITS_RE = re.compile(r"^[\d\s\-_]+$")
_AUTHORITY_KEYWORD_RE = re.compile(r"authority|port|harbor|harbour|maritime", re.IGNORECASE)
_PERCENTAGE_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*%?$")
_TEU_RE = re.compile(r"(\d+(?:[.,]\d+)?)\s*(?:million\s*)?teu", re.IGNORECASE)
_TONNAGE_RE = re.compile(r"(\d+(?:[.,]\d+)?)\s*(?:million\s*)?(?:tons?|tonnes?|mt)", re.IGNORECASE)

Validator = Callable[[Any], ValidationResult]


def _ok(value: Any, warnings: list[str] | None = None) -> ValidationResult:
    return ValidationResult(is_valid=True, warnings=warnings or [], corrected_value=value)


def _critical(message: str, suggestions: list[str] | None = None) -> ValidationResult:
    return ValidationResult(
        is_valid=False,
        errors=[message],
        suggestions=suggestions or [],
        critical=True,
    )


def _validate_name(value: Any, label: str, min_length: int, require_keyword: bool) -> ValidationResult:
    if value is None or not str(value).strip():
        return _critical(f"{label} is required")
    trimmed = str(value).strip()
    errors: list[str] = []
    warnings: list[str] = []

    if len(trimmed) < min_length:
        errors.append(f"{label} is too short (minimum {min_length} characters)")
    if len(trimmed) > 200:
        warnings.append(f"{label} is very long (over 200 characters)")
    if _ONLY_DIGITS_RE.match(trimmed):
        warnings.append(f"{label} appears to be only numbers or special characters")
    if require_keyword and not _AUTHORITY_KEYWORD_RE.search(trimmed):
        warnings.append(f"{label} does not contain common keywords (authority, port, harbor, maritime)")
    if trimmed.lower() in _PLACEHOLDERS:
        warnings.append(f"{label} appears to be a placeholder value")

    return ValidationResult(
        is_valid=not errors,
        errors=errors,
        warnings=warnings,
        corrected_value=trimmed if not errors else None,
    )


def validate_port_authority(value: Any) -> ValidationResult:
    return _validate_name(value, "Port authority name", min_length=3, require_keyword=True)


def validate_operator_group(value: Any) -> ValidationResult:
    if value is None or not str(value).strip():
        return _ok(None)
    return _validate_name(value, "Operator group name", min_length=2, require_keyword=False)


def _validate_enum(
    value: Any,
    label: str,
    allowed: tuple[str, ...],
    fuzzy: Callable[[str], str | None],
) -> ValidationResult:
    if value is None or not str(value).strip():
        return _ok(None)
    normalized = str(value).strip()
    if normalized in allowed:
        return _ok(normalized)

    lowered = normalized.lower()
    for option in allowed:
        if option.lower() == lowered:
            return _ok(option, [f'{label} case corrected: "{normalized}" -> "{option}"'])

    suggestion = fuzzy(lowered)
    if suggestion:
        return ValidationResult(
            is_valid=False,
            errors=[f'Invalid {label.lower()}: "{normalized}". Did you mean "{suggestion}"?'],
            suggestions=[suggestion],
            corrected_value=suggestion,
        )
    return _critical(
        f'Invalid {label.lower()}: "{normalized}". Must be one of: {", ".join(allowed)}',
        list(allowed),
    )


def _fuzzy_risk(lowered: str) -> str | None:
    if "low" in lowered and "high" not in lowered:
        return "Low"
    if "medium" in lowered or "moderate" in lowered:
        return "Medium"
    if "high" in lowered and "very" not in lowered:
        return "High"
    if "very" in lowered and "high" in lowered:
        return "Very High"
    return None


def _fuzzy_strength(lowered: str) -> str | None:
    if "weak" in lowered:
        return "Weak"
    if "moderate" in lowered or "medium" in lowered:
        return "Moderate"
    if "strong" in lowered and "very" not in lowered:
        return "Strong"
    if "very" in lowered and "strong" in lowered:
        return "Very Strong"
    return None


def _fuzzy_operator_type(lowered: str) -> str | None:
    if "captive" in lowered or "dedicated" in lowered or "in-house" in lowered:
        return "captive"
    if "commercial" in lowered or "common user" in lowered or "multi-user" in lowered:
        return "commercial"
    return None


def validate_isps_level(value: Any) -> ValidationResult:
    return _validate_enum(value, "ISPS level", ISPS_RISK_LEVELS, _fuzzy_risk)


def validate_enforcement_strength(value: Any) -> ValidationResult:
    return _validate_enum(value, "Enforcement strength", ENFORCEMENT_STRENGTHS, _fuzzy_strength)


def validate_operator_type(value: Any) -> ValidationResult:
    return _validate_enum(value, "Operator type", OPERATOR_TYPES, _fuzzy_operator_type)


def _clean_name_list(value: Any, label: str) -> ValidationResult:
    if value is None or value == [] or value == "":
        return _ok(None)
    if isinstance(value, str):
        value = [part for part in re.split(r"[;,]", value)]
    if not isinstance(value, (list, tuple)):
        return _critical(f"{label} must be a list")

    warnings: list[str] = []
    cleaned: list[str] = []
    seen: set[str] = set()
    for entry in value:
        if not isinstance(entry, str) or not entry:
            warnings.append(f"Invalid {label.lower()} entry: {entry!r}")
            continue
        trimmed = entry.strip()
        if not trimmed:
            continue
        key = trimmed.lower()
        if key in seen:
            warnings.append(f'Duplicate {label.lower()} removed: "{trimmed}"')
            continue
        seen.add(key)
        cleaned.append(trimmed)

    for name in cleaned:
        if len(name) < 2:
            warnings.append(f'{label} name is very short: "{name}"')
        if len(name) > 100:
            warnings.append(f'{label} name is very long: "{name}"')

    return _ok(cleaned or None, warnings)


def validate_identity_competitors(value: Any) -> ValidationResult:
    return _clean_name_list(value, "Competitor")


def validate_parent_companies(value: Any) -> ValidationResult:
    return _clean_name_list(value, "Parent company")


def validate_identity_adoption_rate(value: Any) -> ValidationResult:
    if value is None or not str(value).strip():
        return _ok(None)
    trimmed = str(value).strip()

    match = _PERCENTAGE_RE.match(trimmed)
    if match:
        percentage = float(match.group(1))
        if percentage < 0 or percentage > 100:
            return _critical(f"Percentage must be between 0 and 100, got: {percentage:g}")
        return _ok(f"{percentage:g}%")

    lowered = trimmed.lower()
    for option in ADOPTION_LEVELS:
        if option.lower() == lowered:
            return _ok(option)

    for needles, option in (
        (("high",), "High"),
        (("medium", "moderate"), "Medium"),
        (("low",), "Low"),
        (("none", "no"), "None"),
    ):
        if any(needle in lowered for needle in needles):
            return _ok(option, [f'Adoption rate normalized: "{trimmed}" -> "{option}"'])

    return _ok(
        trimmed,
        [
            f'Adoption rate format unclear: "{trimmed}". '
            'Expected percentage (e.g., "50%") or text (High/Medium/Low/None)'
        ],
    )


def _coerce_coordinates(value: Any) -> tuple[Any, Any]:
    if isinstance(value, dict):
        lat = value.get("lat", value.get("latitude"))
        lon = value.get("lon", value.get("lng", value.get("longitude")))
        return lat, lon
    if isinstance(value, (list, tuple)) and len(value) == 2:
        return value[0], value[1]
    return None, None


def validate_coordinates(value: Any) -> ValidationResult:
    lat, lon = _coerce_coordinates(value)
    if lat is None or lon is None:
        # "Not found" is reported as null halves; nothing to propose.
        return _ok(None)
    if isinstance(lat, bool) or isinstance(lon, bool) or not isinstance(lat, (int, float)) or not isinstance(lon, (int, float)):
        return _critical("Latitude and longitude must be numbers")
    if math.isnan(lat) or math.isnan(lon):
        return _critical("Latitude and longitude cannot be NaN")

    errors: list[str] = []
    warnings: list[str] = []
    if lat < -90 or lat > 90:
        errors.append(f"Latitude must be between -90 and 90, got: {lat}")
    if lon < -180 or lon > 180:
        errors.append(f"Longitude must be between -180 and 180, got: {lon}")
    if errors:
        return ValidationResult(is_valid=False, errors=errors, critical=True)

    lat_rounded = round(float(lat), 6)
    lon_rounded = round(float(lon), 6)
    if lat_rounded != lat or lon_rounded != lon:
        warnings.append("Coordinates rounded to 6 decimal places for precision")
    if lat == 0 and lon == 0:
        warnings.append("Coordinates are (0, 0) which may be a default/error value")

    return _ok({"lat": lat_rounded, "lon": lon_rounded}, warnings)


def validate_capacity(value: Any) -> ValidationResult:
    if value is None or not str(value).strip():
        return _ok(None)
    trimmed = str(value).strip()
    warnings: list[str] = []

    if not _TEU_RE.search(trimmed) and not _TONNAGE_RE.search(trimmed) and not trimmed[:1].isdigit():
        warnings.append(
            f'Capacity format unclear: "{trimmed}". '
            'Expected format like "2.5 million TEU" or "10 million tons"'
        )
    if trimmed.lower() in {"unknown", "n/a"}:
        warnings.append("Capacity appears to be a placeholder value")
    return _ok(trimmed, warnings)


def _fuzzy_cargo(lowered: str) -> str | None:
    if "container" in lowered:
        return "Container"
    if "roro" in lowered or "roll-on" in lowered:
        return "RoRo"
    if "bulk" in lowered:
        if "dry" in lowered:
            return "Dry Bulk"
        if "liquid" in lowered:
            return "Liquid Bulk"
        if "break" in lowered:
            return "Break Bulk"
    if "multipurpose" in lowered or "multi-purpose" in lowered:
        return "Multipurpose"
    if "passenger" in lowered or "ferry" in lowered:
        return "Passenger/Ferry"
    return None


def validate_cargo_types(value: Any) -> ValidationResult:
    if value is None or value == [] or value == "":
        return _ok(None)
    if isinstance(value, str):
        value = [part for part in re.split(r"[;,]", value)]
    if not isinstance(value, (list, tuple)):
        return _critical("Cargo types must be a list")

    warnings: list[str] = []
    suggestions: list[str] = []
    cleaned: list[str] = []

    def add(option: str) -> None:
        if option not in cleaned:
            cleaned.append(option)

    for entry in value:
        if not isinstance(entry, str) or not entry:
            warnings.append(f"Invalid cargo type entry: {entry!r}")
            continue
        trimmed = entry.strip()
        if not trimmed:
            continue
        if trimmed in CARGO_TYPES:
            add(trimmed)
            continue
        lowered = trimmed.lower()
        matched = next((option for option in CARGO_TYPES if option.lower() == lowered), None)
        if matched:
            if matched not in cleaned:
                warnings.append(f'Cargo type case corrected: "{trimmed}" -> "{matched}"')
            add(matched)
            continue
        suggestion = _fuzzy_cargo(lowered)
        if suggestion:
            warnings.append(f'Cargo type "{trimmed}" not recognized. Did you mean "{suggestion}"?')
            if suggestion not in suggestions:
                suggestions.append(suggestion)
            add(suggestion)
        else:
            warnings.append(f'Unknown cargo type: "{trimmed}". Valid types: {", ".join(CARGO_TYPES)}')

    return ValidationResult(
        is_valid=True,
        warnings=warnings,
        corrected_value=cleaned or None,
        suggestions=suggestions,
    )


def validate_port_name(value: Any) -> ValidationResult:
    if value is None or not str(value).strip():
        return _ok(None)
    trimmed = str(value).strip()
    warnings = []
    if trimmed.lower() in _PLACEHOLDERS:
        warnings.append("Suggested port name appears to be a placeholder value")
    return _ok(trimmed, warnings)


VALIDATORS: dict[str, Validator] = {
    "port_authority": validate_port_authority,
    "operator_group": validate_operator_group,
    "isps_level": validate_isps_level,
    "enforcement_strength": validate_enforcement_strength,
    "operator_type": validate_operator_type,
    "name_list_competitors": validate_identity_competitors,
    "name_list_parents": validate_parent_companies,
    "adoption_rate": validate_identity_adoption_rate,
    "coordinates": validate_coordinates,
    "capacity": validate_capacity,
    "cargo_types": validate_cargo_types,
    "port_name": validate_port_name,
}


def validate_field(validator_name: str | None, value: Any) -> ValidationResult:
    """Run the named validator; fields without one pass through unchanged."""
    if not validator_name:
        return _ok(value)
    try:
        validator = VALIDATORS[validator_name]
    except KeyError:
        raise KeyError(f"Unknown validator: {validator_name}") from None
    return validator(value)
