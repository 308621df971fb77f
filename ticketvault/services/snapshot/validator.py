from __future__ import annotations

from typing import Any


HEADER_KEY = "exportInfo"
DATA_KEY = "data"
# Sections that must be JSON arrays when present, with their display names.
LIST_SECTIONS: dict[str, str] = {
    "users": "Users",
    "tickets": "Tickets",
    "customFields": "Custom fields",
    "attachments": "Attachments",
}


def validate_import_document(document: Any) -> list[str]:
    """Return structural problems with an inbound snapshot; empty means valid.

    Pure shape checks only. Nothing here touches storage, so dry runs can
    call it freely.
    """
    errors: list[str] = []
    if not isinstance(document, dict):
        return ["Import data must be a valid JSON object"]

    header = document.get(HEADER_KEY)
    if header is None:
        errors.append(f"Missing {HEADER_KEY} section")
    elif not isinstance(header, dict):
        errors.append(f"{HEADER_KEY} section must be an object")

    data = document.get(DATA_KEY)
    if data is None:
        errors.append(f"Missing {DATA_KEY} section")
        return errors
    if not isinstance(data, dict):
        errors.append(f"{DATA_KEY} section must be an object")
        return errors

    for key, label in LIST_SECTIONS.items():
        if key in data and data[key] is not None and not isinstance(data[key], list):
            errors.append(f"{label} data must be an array")
    return errors
