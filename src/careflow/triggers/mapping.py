"""Raw change types to trigger types, and appointment categorisation."""

from __future__ import annotations

import re
from collections.abc import Mapping

from careflow.core.config import DEFAULT_APPOINTMENT_CATEGORIES
from careflow.core.constants import TriggerType

APPOINTMENT_TRIGGERS: dict[str, TriggerType] = {
    "scheduled": TriggerType.APPOINTMENT_SCHEDULED,
    "rescheduled": TriggerType.APPOINTMENT_SCHEDULED,
    "completed": TriggerType.APPOINTMENT_COMPLETED,
    "no_show": TriggerType.APPOINTMENT_NO_SHOW,
    "cancelled": TriggerType.APPOINTMENT_CANCELLED,
}

CLIENT_TRIGGERS: dict[str, TriggerType] = {
    "created": TriggerType.CLIENT_CREATED,
    "updated": TriggerType.CLIENT_UPDATED,
}


def _normalise_change(change_type: str) -> str:
    return change_type.strip().lower().replace("-", "_").replace(" ", "_")


def map_appointment_change(change_type: str) -> TriggerType | None:
    """Trigger for an appointment status change, or ``None`` when unmapped."""
    return APPOINTMENT_TRIGGERS.get(_normalise_change(change_type))


def map_client_change(change_type: str) -> TriggerType | None:
    """Trigger for a client change, or ``None`` when unmapped."""
    return CLIENT_TRIGGERS.get(_normalise_change(change_type))


class AppointmentCategorizer:
    """Maps free-text appointment types to a small set of categories.

    Patterns are matched as case-insensitive substrings, first category wins
    in table order. Unmatched text falls back to its normalised form, or
    ``"general"`` when empty.

    Args:
        categories: Ordered mapping of category -> substring patterns.
    """

    GENERAL = "general"

    def __init__(self, categories: Mapping[str, list[str]] | None = None) -> None:
        table = categories if categories is not None else DEFAULT_APPOINTMENT_CATEGORIES
        self._table: list[tuple[str, list[str]]] = [
            (name, [p.lower() for p in patterns]) for name, patterns in table.items()
        ]

    @staticmethod
    def normalise(text: str | None) -> str:
        return re.sub(r"[^a-z0-9]+", "_", (text or "").lower()).strip("_")

    def categorize(self, *texts: str | None) -> str:
        """Return the category for the first text (type, then title) that matches."""
        for text in texts:
            lowered = (text or "").lower()
            if not lowered:
                continue
            for name, patterns in self._table:
                if any(pattern in lowered for pattern in patterns):
                    return name
        for text in texts:
            normalised = self.normalise(text)
            if normalised:
                return normalised
        return self.GENERAL
