"""
Profile context forwarded at session start.

The profile object is opaque to the pipeline; it is forwarded as-is in the
start handshake. This module only:
- loads a profile from disk (YAML or JSON, via PyYAML's safe_load which parses both)
- derives the initial free-text context string sent alongside it
"""

from __future__ import annotations

from datetime import date
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml


def load_profile(path: str | Path) -> dict[str, Any]:
    """
    Load a profile file. Returns {} for an empty file.

    Raises ValueError if the document is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Profile file {path} must contain a mapping")
    return data


def json_safe(value: Any) -> Any:
    """
    Copy of a loaded profile that the JSON encoder accepts.

    YAML turns unquoted dates and timestamps into date objects; they are sent
    as ISO strings. Tuples and sets become lists, other scalars are kept.
    """
    if isinstance(value, Mapping):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [json_safe(v) for v in value]
    if isinstance(value, date):
        return value.isoformat()
    return value


def _age_on(birth: date, today: date) -> int:
    age = today.year - birth.year
    if (today.month, today.day) < (birth.month, birth.day):
        age -= 1
    return age


def _parse_date(value: Any) -> Optional[date]:
    # YAML already turns unquoted ISO dates into date objects.
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            return None
    return None


def _joined(values: Any) -> str:
    if isinstance(values, str):
        return values.strip()
    if isinstance(values, (list, tuple)):
        return ", ".join(str(v).strip() for v in values if str(v).strip())
    return ""


def build_initial_context(
    profile: Optional[Mapping[str, Any]],
    *,
    today: Optional[date] = None,
) -> str:
    """
    Summarize the profile as one line of free text for the remote service.

    Fields used when present: full_name, date_of_birth (rendered as age),
    gender, chronic_conditions, medications, allergies.
    """
    if not profile:
        return ""

    today = today or date.today()
    parts: list[str] = []

    name = profile.get("full_name")
    if isinstance(name, str) and name.strip():
        parts.append(f"Patient name: {name.strip()}.")

    birth = _parse_date(profile.get("date_of_birth"))
    if birth is not None:
        parts.append(f"Age: {_age_on(birth, today)} years.")

    gender = profile.get("gender")
    if isinstance(gender, str) and gender.strip():
        parts.append(f"Gender: {gender.strip()}.")

    for key, label in (
        ("chronic_conditions", "Medical conditions"),
        ("medications", "Current medications"),
        ("allergies", "Allergies"),
    ):
        joined = _joined(profile.get(key))
        if joined:
            parts.append(f"{label}: {joined}.")

    return " ".join(parts)
