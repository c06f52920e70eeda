"""Event to workflow matching."""
from careflow.triggers.evaluator import TriggerEvaluator
from careflow.triggers.mapping import (
    APPOINTMENT_TRIGGERS,
    CLIENT_TRIGGERS,
    AppointmentCategorizer,
    map_appointment_change,
    map_client_change,
)

__all__ = [
    "TriggerEvaluator",
    "APPOINTMENT_TRIGGERS",
    "CLIENT_TRIGGERS",
    "AppointmentCategorizer",
    "map_appointment_change",
    "map_client_change",
]
