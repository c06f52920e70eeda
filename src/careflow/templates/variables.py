"""Standard merge variables available to every outbound message."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from careflow.core.types import Appointment, Client

_SCALARS = (str, int, float, bool)


def client_variables(client: Client) -> dict[str, Any]:
    full_name = client.full_name or " ".join(
        part for part in (client.first_name, client.last_name) if part
    )
    name_parts = full_name.split()
    first_name = client.first_name or (name_parts[0] if name_parts else None)
    last_name = client.last_name or (" ".join(name_parts[1:]) if len(name_parts) > 1 else None)
    return {
        "first_name": first_name,
        "last_name": last_name,
        "client_name": full_name or None,
        "phone": client.phones[0] if client.phones else None,
        "email": client.email,
    }


def appointment_variables(appointment: Appointment) -> dict[str, Any]:
    variables: dict[str, Any] = {
        "appointment_type": appointment.type or appointment.title or None,
        "appointment_title": appointment.title or None,
    }
    if appointment.start_time is not None:
        variables["appointment_date"] = appointment.start_time.strftime("%Y-%m-%d")
        variables["appointment_time"] = appointment.start_time.strftime("%H:%M")
    return variables


def build_merge_variables(
    client: Client | None = None,
    appointment: Appointment | None = None,
    context: Mapping[str, Any] | None = None,
    defaults: Mapping[str, Any] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Assemble the variable map for a template render.

    Precedence, lowest to highest: org *defaults*, scalar *context* values,
    *client* fields, *appointment* fields, explicit *overrides* (step config).
    ``None`` values never shadow a lower layer.
    """
    layers: list[Mapping[str, Any]] = [defaults or {}]
    if context:
        layers.append({k: v for k, v in context.items() if isinstance(v, _SCALARS)})
    if client is not None:
        layers.append(client_variables(client))
    if appointment is not None:
        layers.append(appointment_variables(appointment))
    layers.append(overrides or {})

    merged: dict[str, Any] = {}
    for layer in layers:
        for key, value in layer.items():
            if value is not None:
                merged[key] = value
    return merged
