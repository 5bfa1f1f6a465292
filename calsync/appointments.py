"""Read access to the booking application's appointments.

The sync engine never writes business records. Everything it needs about an
appointment is loaded here in one shape, with customer, pet, service and
add-ons joined in.
"""

import logging
from typing import Iterable, Optional

from pydantic import BaseModel

from calsync.database import get_database

logger = logging.getLogger(__name__)


class Customer(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class Pet(BaseModel):
    name: Optional[str] = None
    size: Optional[str] = None


class Service(BaseModel):
    name: Optional[str] = None
    duration_minutes: Optional[int] = None


class Addon(BaseModel):
    id: str
    name: Optional[str] = None
    duration_minutes: int = 0


class Appointment(BaseModel):
    """Appointment with the related records needed to build a calendar event."""
    id: str
    customer_id: Optional[str] = None
    pet_id: Optional[str] = None
    service_id: Optional[str] = None
    scheduled_at: Optional[str] = None
    status: str = "pending"
    notes: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    customer: Optional[Customer] = None
    pet: Optional[Pet] = None
    service: Optional[Service] = None
    addons: list[Addon] = []


_APPOINTMENT_SELECT = """
    SELECT a.*,
           c.first_name AS customer_first_name,
           c.last_name AS customer_last_name,
           c.email AS customer_email,
           c.phone AS customer_phone,
           p.name AS pet_name,
           p.size AS pet_size,
           s.name AS service_name,
           s.duration_minutes AS service_duration_minutes
    FROM appointments a
    LEFT JOIN customers c ON a.customer_id = c.id
    LEFT JOIN pets p ON a.pet_id = p.id
    LEFT JOIN services s ON a.service_id = s.id
"""


def _row_to_appointment(row, addons: list[Addon]) -> Appointment:
    customer = None
    if row["customer_id"]:
        customer = Customer(
            first_name=row["customer_first_name"],
            last_name=row["customer_last_name"],
            email=row["customer_email"],
            phone=row["customer_phone"],
        )

    pet = None
    if row["pet_id"]:
        pet = Pet(name=row["pet_name"], size=row["pet_size"])

    service = None
    if row["service_id"]:
        service = Service(
            name=row["service_name"],
            duration_minutes=row["service_duration_minutes"],
        )

    return Appointment(
        id=row["id"],
        customer_id=row["customer_id"],
        pet_id=row["pet_id"],
        service_id=row["service_id"],
        scheduled_at=row["scheduled_at"],
        status=row["status"],
        notes=row["notes"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        customer=customer,
        pet=pet,
        service=service,
        addons=addons,
    )


async def _load_addons(appointment_ids: list[str]) -> dict[str, list[Addon]]:
    if not appointment_ids:
        return {}

    db = await get_database()
    placeholders = ",".join("?" for _ in appointment_ids)
    cursor = await db.execute(
        f"""SELECT aa.appointment_id, ad.id, ad.name, ad.duration_minutes
            FROM appointment_addons aa
            JOIN addons ad ON aa.addon_id = ad.id
            WHERE aa.appointment_id IN ({placeholders})""",
        tuple(appointment_ids),
    )
    rows = await cursor.fetchall()

    result: dict[str, list[Addon]] = {}
    for row in rows:
        result.setdefault(row["appointment_id"], []).append(
            Addon(
                id=row["id"],
                name=row["name"],
                duration_minutes=row["duration_minutes"] or 0,
            )
        )
    return result


async def get_appointment(appointment_id: str) -> Optional[Appointment]:
    """Load one appointment, or None if it no longer exists."""
    appointments = await get_appointments([appointment_id])
    return appointments.get(appointment_id)


async def get_appointments(appointment_ids: Iterable[str]) -> dict[str, Appointment]:
    """Bulk-load appointments keyed by id. Missing ids are simply absent."""
    ids = list(dict.fromkeys(appointment_ids))
    if not ids:
        return {}

    db = await get_database()
    placeholders = ",".join("?" for _ in ids)
    cursor = await db.execute(
        f"{_APPOINTMENT_SELECT} WHERE a.id IN ({placeholders})",
        tuple(ids),
    )
    rows = await cursor.fetchall()

    addons = await _load_addons([row["id"] for row in rows])
    return {
        row["id"]: _row_to_appointment(row, addons.get(row["id"], []))
        for row in rows
    }


async def list_appointments_between(
    date_from: str,
    date_to: str,
    statuses: Optional[list[str]] = None,
) -> list[Appointment]:
    """List appointments scheduled within [date_from, date_to], oldest first."""
    db = await get_database()
    query = f"{_APPOINTMENT_SELECT} WHERE a.scheduled_at >= ? AND a.scheduled_at <= ?"
    params: list = [date_from, date_to]

    if statuses:
        placeholders = ",".join("?" for _ in statuses)
        query += f" AND a.status IN ({placeholders})"
        params.extend(statuses)

    query += " ORDER BY a.scheduled_at ASC"
    cursor = await db.execute(query, tuple(params))
    rows = await cursor.fetchall()

    addons = await _load_addons([row["id"] for row in rows])
    return [_row_to_appointment(row, addons.get(row["id"], [])) for row in rows]


async def get_existing_appointment_ids(appointment_ids: Iterable[str]) -> set[str]:
    """Return the subset of ids that still exist."""
    ids = list(dict.fromkeys(appointment_ids))
    if not ids:
        return set()

    db = await get_database()
    placeholders = ",".join("?" for _ in ids)
    cursor = await db.execute(
        f"SELECT id FROM appointments WHERE id IN ({placeholders})",
        tuple(ids),
    )
    return {row["id"] for row in await cursor.fetchall()}
