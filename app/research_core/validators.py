"""Field validators for values extracted from research text.

Each validator normalizes one semantic field type and returns a
``ValidationResult``. Errors make the value invalid; warnings never do.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any

ISPS_LEVELS = ("Low", "Medium", "High", "Very High")
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
_CRITICAL_MARKERS = ("must be", "required", "cannot be")

_PERCENT_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*%?$")
_TEU_RE = re.compile(r"(\d+(?:[.,]\d+)?)\s*(?:million\s*)?teu", re.IGNORECASE)
_TONNAGE_RE = re.compile(r"(\d+(?:[.,]\d+)?)\s*(?:million\s*)?(?:tons?|tonnes?|mt)", re.IGNORECASE)


@dataclass
class ValidationResult:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    corrected_value: Any = None
    suggestions: list[str] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "isValid": self.is_valid,
            "errors": self.errors,
            "warnings": self.warnings,
            "correctedValue": self.corrected_value,
            "suggestions": self.suggestions,
        }


def critical_errors(result: ValidationResult) -> list[str]:
    """Errors severe enough to abort a research run."""
    return [e for e in result.errors if any(m in e for m in _CRITICAL_MARKERS)]


def round6(value: float) -> float:
    return round(value, 6)


def _validate_enum(
    value: Any,
    valid: tuple[str, ...],
    label: str,
    guesses: list[tuple[str, Any]],
) -> ValidationResult:
    if value is None or (isinstance(value, str) and not value.strip()):
        return ValidationResult(is_valid=True, corrected_value=None)

    text = str(value).strip()
    if text in valid:
        return ValidationResult(is_valid=True, corrected_value=text)

    lowered = text.lower()
    for candidate in valid:
        if candidate.lower() == lowered:
            return ValidationResult(
                is_valid=True,
                warnings=[f'{label[:1].upper()}{label[1:]} case corrected: "{text}" -> "{candidate}"'],
                corrected_value=candidate,
            )

    for candidate, predicate in guesses:
        if predicate(lowered):
            return ValidationResult(
                is_valid=False,
                errors=[f'Invalid {label}: "{text}". Did you mean "{candidate}"?'],
                corrected_value=candidate,
                suggestions=[candidate],
            )

    return ValidationResult(
        is_valid=False,
        errors=[f'Invalid {label}: "{text}". Must be one of: {", ".join(valid)}'],
        suggestions=list(valid),
    )


def validate_isps_level(level: Any) -> ValidationResult:
    return _validate_enum(
        level,
        ISPS_LEVELS,
        "ISPS level",
        [
            ("Low", lambda s: "low" in s and "high" not in s),
            ("Medium", lambda s: "medium" in s or "moderate" in s),
            ("High", lambda s: "high" in s and "very" not in s),
            ("Very High", lambda s: "very" in s and "high" in s),
        ],
    )


def validate_enforcement_strength(strength: Any) -> ValidationResult:
    return _validate_enum(
        strength,
        ENFORCEMENT_STRENGTHS,
        "enforcement strength",
        [
            ("Weak", lambda s: "weak" in s),
            ("Moderate", lambda s: "moderate" in s or "medium" in s),
            ("Strong", lambda s: "strong" in s and "very" not in s),
            ("Very Strong", lambda s: "very" in s and "strong" in s),
        ],
    )


def validate_operator_type(value: Any) -> ValidationResult:
    if value is None or (isinstance(value, str) and not value.strip()):
        return ValidationResult(is_valid=True, corrected_value=None)

    text = str(value).strip()
    lowered = text.lower()
    if lowered in OPERATOR_TYPES:
        warnings = [] if text == lowered else [f'Operator type case corrected: "{text}" -> "{lowered}"']
        return ValidationResult(is_valid=True, warnings=warnings, corrected_value=lowered)

    guess = None
    if "captive" in lowered or "own cargo" in lowered or "industrial" in lowered or "private" in lowered:
        guess = "captive"
    elif "commercial" in lowered or "third-party" in lowered or "third party" in lowered or "public" in lowered:
        guess = "commercial"

    if guess:
        return ValidationResult(
            is_valid=True,
            warnings=[f'Operator type normalized: "{text}" -> "{guess}"'],
            corrected_value=guess,
            suggestions=[guess],
        )
    return ValidationResult(
        is_valid=False,
        errors=[f'Operator type must be commercial or captive, got: "{text}"'],
        suggestions=list(OPERATOR_TYPES),
    )


def _clean_name_list(values: Any, label: str) -> ValidationResult:
    if values is None or values == [] or values == "":
        return ValidationResult(is_valid=True, corrected_value=None)

    warnings: list[str] = []
    if isinstance(values, str):
        warnings.append(f"{label} given as a single string; wrapped into a list")
        values = [values]
    if not isinstance(values, list):
        return ValidationResult(is_valid=False, errors=[f"{label} must be an array"])

    cleaned: list[str] = []
    seen: set[str] = set()
    for entry in values:
        if not isinstance(entry, str) or not entry:
            warnings.append(f"Invalid {label.lower()} entry: {entry!r}")
            continue
        trimmed = entry.strip()
        if not trimmed:
            continue
        key = trimmed.lower()
        if key in seen:
            warnings.append(f'Duplicate {label.lower()} entry removed: "{trimmed}"')
            continue
        seen.add(key)
        cleaned.append(trimmed)

    for name in cleaned:
        if len(name) < 2:
            warnings.append(f'{label} entry is very short: "{name}"')
        if len(name) > 100:
            warnings.append(f'{label} entry is very long: "{name}"')

    return ValidationResult(is_valid=True, warnings=warnings, corrected_value=cleaned or None)


def validate_identity_competitors(competitors: Any) -> ValidationResult:
    return _clean_name_list(competitors, "Identity competitors")


def validate_parent_companies(companies: Any) -> ValidationResult:
    return _clean_name_list(companies, "Parent companies")


def validate_identity_adoption_rate(rate: Any) -> ValidationResult:
    if rate is None or (isinstance(rate, str) and not rate.strip()):
        return ValidationResult(is_valid=True, corrected_value=None)

    text = str(rate).strip()
    match = _PERCENT_RE.match(text)
    if match:
        pct = float(match.group(1))
        if pct < 0 or pct > 100:
            return ValidationResult(
                is_valid=False, errors=[f"Percentage must be between 0 and 100, got: {pct:g}"]
            )
        return ValidationResult(is_valid=True, corrected_value=f"{pct:g}%")

    lowered = text.lower()
    for level in ADOPTION_LEVELS:
        if level.lower() == lowered:
            return ValidationResult(is_valid=True, corrected_value=level)

    for level, keys in (
        ("High", ("high",)),
        ("Medium", ("medium", "moderate")),
        ("Low", ("low",)),
        ("None", ("none", "no")),
    ):
        if any(k in lowered for k in keys):
            return ValidationResult(
                is_valid=True,
                warnings=[f'Adoption rate normalized: "{text}" -> "{level}"'],
                corrected_value=level,
            )

    return ValidationResult(
        is_valid=True,
        warnings=[
            f'Adoption rate format unclear: "{text}". Expected percentage (e.g., "50%") '
            "or text (High/Medium/Low/None)"
        ],
        corrected_value=text,
    )


def _as_pair(value: Any) -> tuple[Any, Any]:
    if isinstance(value, dict):
        lat = value.get("lat", value.get("latitude"))
        lon = value.get("lon", value.get("lng", value.get("longitude")))
        return lat, lon
    if isinstance(value, (list, tuple)) and len(value) == 2:
        return value[0], value[1]
    return None, None


def validate_coordinates(lat: Any, lon: Any = None) -> ValidationResult:
    """Validate a (lat, lon) pair; a single dict or 2-sequence is also accepted."""
    if lon is None and isinstance(lat, (dict, list, tuple)):
        lat, lon = _as_pair(lat)

    if lat is None or lon is None:
        return ValidationResult(is_valid=True, corrected_value=None)

    if isinstance(lat, bool) or isinstance(lon, bool) or not isinstance(lat, (int, float)) or not isinstance(lon, (int, float)):
        return ValidationResult(is_valid=False, errors=["Latitude and longitude must be numbers"])

    if math.isnan(lat) or math.isnan(lon) or math.isinf(lat) or math.isinf(lon):
        return ValidationResult(is_valid=False, errors=["Latitude and longitude cannot be NaN or infinite"])

    errors: list[str] = []
    warnings: list[str] = []
    if lat < -90 or lat > 90:
        errors.append(f"Latitude must be between -90 and 90, got: {lat}")
    if lon < -180 or lon > 180:
        errors.append(f"Longitude must be between -180 and 180, got: {lon}")

    lat_r, lon_r = round6(float(lat)), round6(float(lon))
    if lat_r != lat or lon_r != lon:
        warnings.append("Coordinates rounded to 6 decimal places for precision")
    if lat == 0 and lon == 0:
        warnings.append("Coordinates are (0, 0) which may be a default/error value")

    return ValidationResult(
        is_valid=not errors,
        errors=errors,
        warnings=warnings,
        corrected_value={"lat": lat_r, "lon": lon_r} if not errors else None,
    )


def _validate_name(value: Any, label: str, min_len: int, required: bool) -> ValidationResult:
    if value is None or not str(value).strip():
        if required:
            return ValidationResult(is_valid=False, errors=[f"{label} name is required"])
        return ValidationResult(is_valid=True, corrected_value=None)

    text = str(value).strip()
    errors: list[str] = []
    warnings: list[str] = []
    if len(text) < min_len:
        errors.append(f"{label} name is too short (minimum {min_len} characters)")
    if len(text) > 200:
        warnings.append(f"{label} name is very long (over 200 characters)")
    if re.fullmatch(r"[\d\s\-_]+", text):
        warnings.append(f"{label} name appears to be only numbers or special characters")
    if text.lower() in _PLACEHOLDERS:
        warnings.append(f"{label} name appears to be a placeholder value")
    return ValidationResult(
        is_valid=not errors,
        errors=errors,
        warnings=warnings,
        corrected_value=text if not errors else None,
    )


def validate_port_authority(name: Any) -> ValidationResult:
    result = _validate_name(name, "Port authority", 3, required=True)
    if result.is_valid and not re.search(r"authority|port|harbou?r|maritime", str(name), re.IGNORECASE):
        result.warnings.append(
            "Port authority name does not contain common keywords (authority, port, harbor, maritime)"
        )
    return result


def validate_operator_group(name: Any) -> ValidationResult:
    return _validate_name(name, "Operator group", 2, required=False)


def validate_capacity(capacity: Any) -> ValidationResult:
    if capacity is None or not str(capacity).strip():
        return ValidationResult(is_valid=True, corrected_value=None)

    text = str(capacity).strip()
    warnings: list[str] = []
    if not _TEU_RE.search(text) and not _TONNAGE_RE.search(text) and not re.match(r"^\d+", text):
        warnings.append(
            f'Capacity format unclear: "{text}". Expected format like "2.5 million TEU" or "10 million tons"'
        )
    if text.lower() in ("unknown", "n/a"):
        warnings.append("Capacity appears to be a placeholder value")
    return ValidationResult(is_valid=True, warnings=warnings, corrected_value=text)


def _guess_cargo_type(lowered: str) -> str | None:
    if "container" in lowered:
        return "Container"
    if "roro" in lowered or "ro-ro" in lowered or "roll-on" in lowered:
        return "RoRo"
    if "dry" in lowered and "bulk" in lowered:
        return "Dry Bulk"
    if "liquid" in lowered and "bulk" in lowered:
        return "Liquid Bulk"
    if "break" in lowered and "bulk" in lowered:
        return "Break Bulk"
    if "multipurpose" in lowered or "multi-purpose" in lowered:
        return "Multipurpose"
    if "passenger" in lowered or "ferry" in lowered:
        return "Passenger/Ferry"
    return None


def validate_cargo_types(types: Any) -> ValidationResult:
    if types is None or types == []:
        return ValidationResult(is_valid=True, corrected_value=[])
    if isinstance(types, str):
        types = [t for t in re.split(r"[,;]", types)]
    if not isinstance(types, list):
        return ValidationResult(is_valid=False, errors=["Cargo types must be an array"])

    cleaned: list[str] = []
    seen: set[str] = set()
    warnings: list[str] = []
    suggestions: list[str] = []

    def add(canonical: str) -> None:
        if canonical.lower() not in seen:
            seen.add(canonical.lower())
            cleaned.append(canonical)

    for entry in types:
        if not isinstance(entry, str):
            warnings.append(f"Invalid cargo type entry: {entry!r}")
            continue
        trimmed = entry.strip()
        if not trimmed:
            continue
        if trimmed in CARGO_TYPES:
            add(trimmed)
            continue

        lowered = trimmed.lower()
        exact = next((c for c in CARGO_TYPES if c.lower() == lowered), None)
        if exact:
            if exact.lower() not in seen:
                warnings.append(f'Cargo type case corrected: "{trimmed}" -> "{exact}"')
            add(exact)
            continue

        guess = _guess_cargo_type(lowered)
        if guess:
            suggestions.append(guess)
            warnings.append(f'Cargo type "{trimmed}" not recognized. Did you mean "{guess}"?')
            add(guess)
        else:
            warnings.append(f'Unknown cargo type: "{trimmed}". Valid types: {", ".join(CARGO_TYPES)}')

    return ValidationResult(
        is_valid=True,
        warnings=warnings,
        corrected_value=cleaned,
        suggestions=list(dict.fromkeys(suggestions)) or None,
    )
