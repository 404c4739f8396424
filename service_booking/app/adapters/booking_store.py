"""
Source-of-truth data access for departments, appointments and settings.

Every read returns plain JSON-ready dicts so results can be cached by any
cache tier without further conversion.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Optional

import asyncpg

from shared.errors import ConflictError, DataSourceError, NotFoundError, ValidationError
from shared.logging import get_logger
from ..domain.models import (
    Appointment,
    AppointmentStatus,
    BookingRequest,
    Department,
    DepartmentCreateRequest,
    DepartmentUpdateRequest,
    RELEASED_STATUSES,
    WEEK_DAYS,
)


def compute_available_slots(department: Department, day: date, taken: Iterable[int]) -> List[int]:
    """Slot numbers ``1..slots_per_day`` not held by a live appointment.

    Empty when the department is inactive or does not work on ``day``.
    """
    if not department.is_active or not department.works_on(day):
        return []
    held = set(taken)
    return [slot for slot in range(1, department.slots_per_day + 1) if slot not in held]


def week_bounds(day: date) -> tuple:
    """Sunday-to-Saturday week containing ``day``."""
    start = day - timedelta(days=(day.weekday() + 1) % 7)
    return start, start + timedelta(days=6)


class BookingStore(ABC):
    """Booking data source."""

    async def start(self) -> None:
        """Open connections."""

    async def stop(self) -> None:
        """Close connections."""

    @abstractmethod
    async def check(self) -> str:
        """Return "ok" or raise when the store is unreachable."""

    @abstractmethod
    async def list_departments(self) -> List[Dict[str, Any]]:
        """Active departments ordered by name."""

    @abstractmethod
    async def get_department(self, department_id: int) -> Dict[str, Any]:
        """Department by id or NotFoundError."""

    @abstractmethod
    async def create_department(self, request: DepartmentCreateRequest) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def update_department(self, department_id: int, request: DepartmentUpdateRequest) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def departments_with_availability(self, day: date) -> List[Dict[str, Any]]:
        """Active departments with their free slot count on ``day``."""

    @abstractmethod
    async def available_slots(self, department_id: int, day: date) -> List[int]:
        ...

    @abstractmethod
    async def book_appointment(self, request: BookingRequest) -> Dict[str, Any]:
        """Book a slot; ConflictError when it is already held."""

    @abstractmethod
    async def cancel_appointment(self, appointment_id: int) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def list_appointments(
        self,
        client_id: Optional[int] = None,
        day: Optional[date] = None,
    ) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def dashboard_stats(self, client_id: int, today: date) -> Dict[str, Any]:
        """Per-client counts for the patient dashboard."""

    @abstractmethod
    async def weekly_available_slots(self, day: date) -> int:
        """Free slots across active departments in the week containing ``day``."""

    @abstractmethod
    async def get_system_settings(self) -> Dict[str, str]:
        ...


def _dashboard_from(appointments: List[Appointment], today: date) -> Dict[str, Any]:
    live = [a for a in appointments if a.status not in RELEASED_STATUSES]
    upcoming = sorted(
        (a for a in live if a.appointment_date >= today and a.status != AppointmentStatus.COMPLETED),
        key=lambda a: (a.appointment_date, a.slot_number),
    )
    this_month = [
        a for a in appointments
        if a.appointment_date.year == today.year and a.appointment_date.month == today.month
    ]
    recent = sorted(appointments, key=lambda a: a.created_at, reverse=True)[:5]

    days_until_next = None
    if upcoming:
        days_until_next = (upcoming[0].appointment_date - today).days

    return {
        "upcoming_appointments": len(upcoming),
        "total_appointments": len(this_month),
        "completed_appointments": sum(1 for a in appointments if a.status == AppointmentStatus.COMPLETED),
        "days_until_next": days_until_next,
        "recent_appointments": [a.to_dict() for a in recent],
    }


class InMemoryBookingStore(BookingStore):
    """Process-local store, seeded with a small hospital directory."""

    def __init__(self, departments: Optional[List[Department]] = None, settings: Optional[Dict[str, str]] = None):
        self.logger = get_logger("booking.store.memory")
        self._lock = asyncio.Lock()
        self._departments: Dict[int, Department] = {}
        self._appointments: Dict[int, Appointment] = {}
        self._next_appointment_id = 1

        for department in departments if departments is not None else self._seed_departments():
            self._departments[department.id] = department
        self._settings = dict(settings) if settings is not None else {
            "hospital_name": "City General Hospital",
            "booking_window_days": "30",
            "timezone": "UTC",
        }

    @staticmethod
    def _seed_departments() -> List[Department]:
        return [
            Department(id=1, name="Cardiology", description="Heart and vascular care", color="#EF4444"),
            Department(id=2, name="Pediatrics", description="Care for children", slots_per_day=12, color="#10B981"),
            Department(
                id=3,
                name="Radiology",
                description="Imaging",
                slots_per_day=8,
                working_days=list(WEEK_DAYS),
            ),
        ]

    async def check(self) -> str:
        return "ok"

    async def list_departments(self) -> List[Dict[str, Any]]:
        active = [d for d in self._departments.values() if d.is_active]
        return [d.to_dict() for d in sorted(active, key=lambda d: d.name)]

    async def get_department(self, department_id: int) -> Dict[str, Any]:
        return self._department(department_id).to_dict()

    async def create_department(self, request: DepartmentCreateRequest) -> Dict[str, Any]:
        async with self._lock:
            department_id = max(self._departments, default=0) + 1
            department = Department(
                id=department_id,
                name=request.name,
                description=request.description,
                slots_per_day=request.slots_per_day,
                working_days=list(request.working_days),
                working_hours=request.working_hours.model_dump(),
                color=request.color,
            )
            self._departments[department_id] = department
        self.logger.info("Department created", department_id=department_id, name=request.name)
        return department.to_dict()

    async def update_department(self, department_id: int, request: DepartmentUpdateRequest) -> Dict[str, Any]:
        async with self._lock:
            department = self._department(department_id)
            changes = request.model_dump(exclude_unset=True, exclude_none=True)
            for name, value in changes.items():
                setattr(department, name, value)
        self.logger.info("Department updated", department_id=department_id, fields=sorted(changes))
        return department.to_dict()

    async def departments_with_availability(self, day: date) -> List[Dict[str, Any]]:
        result = []
        for department in sorted(self._departments.values(), key=lambda d: d.name):
            if not department.is_active:
                continue
            slots = compute_available_slots(department, day, self._taken(department.id, day))
            entry = department.to_dict()
            entry["available_slots"] = len(slots)
            entry["is_working_day"] = department.works_on(day)
            result.append(entry)
        return result

    async def available_slots(self, department_id: int, day: date) -> List[int]:
        department = self._departments.get(department_id)
        if department is None:
            return []
        return compute_available_slots(department, day, self._taken(department_id, day))

    async def book_appointment(self, request: BookingRequest) -> Dict[str, Any]:
        async with self._lock:
            department = self._bookable_department(request)
            day = request.appointment_date
            if request.slot_number in self._taken(department.id, day):
                raise ConflictError(
                    "This time slot is no longer available",
                    details={"department_id": department.id, "date": day.isoformat(), "slot_number": request.slot_number},
                )

            appointment = Appointment(
                id=self._next_appointment_id,
                client_id=request.client_id,
                department_id=department.id,
                appointment_date=day,
                slot_number=request.slot_number,
            )
            self._appointments[appointment.id] = appointment
            self._next_appointment_id += 1

        self.logger.info(
            "Appointment booked",
            appointment_id=appointment.id,
            department_id=appointment.department_id,
            date=day.isoformat(),
            slot_number=appointment.slot_number,
        )
        return appointment.to_dict()

    async def cancel_appointment(self, appointment_id: int) -> Dict[str, Any]:
        async with self._lock:
            appointment = self._appointments.get(appointment_id)
            if appointment is None:
                raise NotFoundError("Appointment not found", details={"appointment_id": appointment_id})
            appointment.status = AppointmentStatus.CANCELLED
        self.logger.info("Appointment cancelled", appointment_id=appointment_id)
        return appointment.to_dict()

    async def list_appointments(
        self,
        client_id: Optional[int] = None,
        day: Optional[date] = None,
    ) -> List[Dict[str, Any]]:
        appointments = [
            a for a in self._appointments.values()
            if (client_id is None or a.client_id == client_id)
            and (day is None or a.appointment_date == day)
        ]
        appointments.sort(key=lambda a: (a.appointment_date, a.department_id, a.slot_number))
        return [a.to_dict() for a in appointments]

    async def dashboard_stats(self, client_id: int, today: date) -> Dict[str, Any]:
        mine = [a for a in self._appointments.values() if a.client_id == client_id]
        return _dashboard_from(mine, today)

    async def weekly_available_slots(self, day: date) -> int:
        start, _ = week_bounds(day)
        total = 0
        for offset in range(7):
            current = start + timedelta(days=offset)
            for department in self._departments.values():
                total += len(compute_available_slots(department, current, self._taken(department.id, current)))
        return total

    async def get_system_settings(self) -> Dict[str, str]:
        return dict(self._settings)

    def _department(self, department_id: int) -> Department:
        department = self._departments.get(department_id)
        if department is None:
            raise NotFoundError("Department not found", details={"department_id": department_id})
        return department

    def _bookable_department(self, request: BookingRequest) -> Department:
        department = self._department(request.department_id)
        if not department.is_active:
            raise ValidationError("Department is not accepting bookings", details={"department_id": department.id})
        if not department.works_on(request.appointment_date):
            raise ValidationError(
                "Department does not work on this day",
                details={"department_id": department.id, "date": request.appointment_date.isoformat()},
            )
        if request.slot_number > department.slots_per_day:
            raise ValidationError(
                "Slot number out of range",
                details={"slot_number": request.slot_number, "slots_per_day": department.slots_per_day},
            )
        return department

    def _taken(self, department_id: int, day: date) -> List[int]:
        return [
            a.slot_number for a in self._appointments.values()
            if a.department_id == department_id and a.appointment_date == day and a.holds_slot
        ]


_RELEASED = [status.value for status in RELEASED_STATUSES]


class PostgresBookingStore(BookingStore):
    """PostgreSQL booking store on an asyncpg pool."""

    def __init__(self, dsn: str):
        self.dsn = dsn
        self.logger = get_logger("booking.store.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Start the persistence layer."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=2,
                max_size=10,
                command_timeout=30
            )
            await self._create_tables()
            self.logger.info("PostgreSQL booking store started")
        except (asyncpg.PostgresError, OSError) as e:
            self.logger.error("Failed to start PostgreSQL booking store", error=str(e))
            raise DataSourceError("Failed to start PostgreSQL booking store", details={"error": str(e)}) from e

    async def stop(self):
        """Stop the persistence layer."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL booking store stopped")

    async def _create_tables(self):
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS departments (
                    id SERIAL PRIMARY KEY,
                    name VARCHAR(255) NOT NULL,
                    description TEXT,
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    slots_per_day INTEGER NOT NULL DEFAULT 10,
                    working_days TEXT[] NOT NULL DEFAULT ARRAY['monday','tuesday','wednesday','thursday','friday'],
                    working_hours JSONB NOT NULL DEFAULT '{"start": "09:00", "end": "17:00"}',
                    color VARCHAR(7) NOT NULL DEFAULT '#3B82F6'
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS appointments (
                    id SERIAL PRIMARY KEY,
                    client_id INTEGER NOT NULL,
                    department_id INTEGER NOT NULL REFERENCES departments(id),
                    appointment_date DATE NOT NULL,
                    slot_number INTEGER NOT NULL,
                    status VARCHAR(20) NOT NULL DEFAULT 'scheduled',
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
            """)
            # One live appointment per slot.
            await conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_appointments_live_slot
                ON appointments(department_id, appointment_date, slot_number)
                WHERE status NOT IN ('cancelled', 'no_show');
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_appointments_client ON appointments(client_id);
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS system_settings (
                    setting_key VARCHAR(255) PRIMARY KEY,
                    setting_value TEXT
                );
            """)

    async def _fetch(self, sql: str, *args) -> List[asyncpg.Record]:
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetch(sql, *args)
        except (asyncpg.PostgresError, OSError) as e:
            self.logger.error("Booking store query failed", error=str(e))
            raise DataSourceError("Booking store query failed", details={"error": str(e)}) from e

    async def _fetchrow(self, sql: str, *args) -> Optional[asyncpg.Record]:
        rows = await self._fetch(sql, *args)
        return rows[0] if rows else None

    async def check(self) -> str:
        await self._fetch("SELECT 1")
        return "ok"

    @staticmethod
    def _department(row: asyncpg.Record) -> Department:
        hours = row["working_hours"]
        if isinstance(hours, str):
            hours = json.loads(hours)
        return Department(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            is_active=row["is_active"],
            slots_per_day=row["slots_per_day"],
            working_days=list(row["working_days"]),
            working_hours=dict(hours),
            color=row["color"],
        )

    @staticmethod
    def _appointment(row: asyncpg.Record) -> Appointment:
        return Appointment(
            id=row["id"],
            client_id=row["client_id"],
            department_id=row["department_id"],
            appointment_date=row["appointment_date"],
            slot_number=row["slot_number"],
            status=AppointmentStatus(row["status"]),
            created_at=row["created_at"],
        )

    async def _load_department(self, department_id: int) -> Department:
        row = await self._fetchrow("SELECT * FROM departments WHERE id = $1", department_id)
        if row is None:
            raise NotFoundError("Department not found", details={"department_id": department_id})
        return self._department(row)

    async def _taken(self, department_id: int, day: date) -> List[int]:
        rows = await self._fetch(
            """
            SELECT slot_number FROM appointments
            WHERE department_id = $1 AND appointment_date = $2 AND status <> ALL($3::text[])
            """,
            department_id, day, _RELEASED,
        )
        return [row["slot_number"] for row in rows]

    async def list_departments(self) -> List[Dict[str, Any]]:
        rows = await self._fetch("SELECT * FROM departments WHERE is_active = true ORDER BY name")
        return [self._department(row).to_dict() for row in rows]

    async def get_department(self, department_id: int) -> Dict[str, Any]:
        return (await self._load_department(department_id)).to_dict()

    async def create_department(self, request: DepartmentCreateRequest) -> Dict[str, Any]:
        row = await self._fetchrow(
            """
            INSERT INTO departments (name, description, slots_per_day, working_days, working_hours, color)
            VALUES ($1, $2, $3, $4, $5::jsonb, $6)
            RETURNING *
            """,
            request.name,
            request.description,
            request.slots_per_day,
            list(request.working_days),
            json.dumps(request.working_hours.model_dump()),
            request.color,
        )
        self.logger.info("Department created", department_id=row["id"], name=request.name)
        return self._department(row).to_dict()

    async def update_department(self, department_id: int, request: DepartmentUpdateRequest) -> Dict[str, Any]:
        department = await self._load_department(department_id)
        changes = request.model_dump(exclude_unset=True, exclude_none=True)
        for name, value in changes.items():
            setattr(department, name, value)

        row = await self._fetchrow(
            """
            UPDATE departments
            SET name = $2, description = $3, is_active = $4, slots_per_day = $5,
                working_days = $6, working_hours = $7::jsonb, color = $8
            WHERE id = $1
            RETURNING *
            """,
            department_id,
            department.name,
            department.description,
            department.is_active,
            department.slots_per_day,
            list(department.working_days),
            json.dumps(department.working_hours),
            department.color,
        )
        if row is None:
            raise NotFoundError("Department not found", details={"department_id": department_id})
        self.logger.info("Department updated", department_id=department_id, fields=sorted(changes))
        return self._department(row).to_dict()

    async def departments_with_availability(self, day: date) -> List[Dict[str, Any]]:
        rows = await self._fetch("SELECT * FROM departments WHERE is_active = true ORDER BY name")
        result = []
        for row in rows:
            department = self._department(row)
            slots = compute_available_slots(department, day, await self._taken(department.id, day))
            entry = department.to_dict()
            entry["available_slots"] = len(slots)
            entry["is_working_day"] = department.works_on(day)
            result.append(entry)
        return result

    async def available_slots(self, department_id: int, day: date) -> List[int]:
        row = await self._fetchrow("SELECT * FROM departments WHERE id = $1", department_id)
        if row is None:
            return []
        return compute_available_slots(self._department(row), day, await self._taken(department_id, day))

    async def book_appointment(self, request: BookingRequest) -> Dict[str, Any]:
        department = await self._load_department(request.department_id)
        day = request.appointment_date
        if not department.is_active:
            raise ValidationError("Department is not accepting bookings", details={"department_id": department.id})
        if not department.works_on(day):
            raise ValidationError(
                "Department does not work on this day",
                details={"department_id": department.id, "date": day.isoformat()},
            )
        if request.slot_number > department.slots_per_day:
            raise ValidationError(
                "Slot number out of range",
                details={"slot_number": request.slot_number, "slots_per_day": department.slots_per_day},
            )

        conflict = ConflictError(
            "This time slot is no longer available",
            details={"department_id": department.id, "date": day.isoformat(), "slot_number": request.slot_number},
        )
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    INSERT INTO appointments (client_id, department_id, appointment_date, slot_number, status)
                    VALUES ($1, $2, $3, $4, 'scheduled')
                    RETURNING *
                    """,
                    request.client_id, department.id, day, request.slot_number,
                )
        except asyncpg.UniqueViolationError as e:
            raise conflict from e
        except (asyncpg.PostgresError, OSError) as e:
            self.logger.error("Failed to book appointment", error=str(e))
            raise DataSourceError("Failed to book appointment", details={"error": str(e)}) from e

        appointment = self._appointment(row)
        self.logger.info(
            "Appointment booked",
            appointment_id=appointment.id,
            department_id=appointment.department_id,
            date=day.isoformat(),
            slot_number=appointment.slot_number,
        )
        return appointment.to_dict()

    async def cancel_appointment(self, appointment_id: int) -> Dict[str, Any]:
        row = await self._fetchrow(
            "UPDATE appointments SET status = 'cancelled' WHERE id = $1 RETURNING *",
            appointment_id,
        )
        if row is None:
            raise NotFoundError("Appointment not found", details={"appointment_id": appointment_id})
        self.logger.info("Appointment cancelled", appointment_id=appointment_id)
        return self._appointment(row).to_dict()

    async def list_appointments(
        self,
        client_id: Optional[int] = None,
        day: Optional[date] = None,
    ) -> List[Dict[str, Any]]:
        rows = await self._fetch(
            """
            SELECT * FROM appointments
            WHERE ($1::int IS NULL OR client_id = $1)
              AND ($2::date IS NULL OR appointment_date = $2)
            ORDER BY appointment_date, department_id, slot_number
            """,
            client_id, day,
        )
        return [self._appointment(row).to_dict() for row in rows]

    async def dashboard_stats(self, client_id: int, today: date) -> Dict[str, Any]:
        rows = await self._fetch("SELECT * FROM appointments WHERE client_id = $1", client_id)
        return _dashboard_from([self._appointment(row) for row in rows], today)

    async def weekly_available_slots(self, day: date) -> int:
        start, end = week_bounds(day)
        departments = [
            self._department(row)
            for row in await self._fetch("SELECT * FROM departments WHERE is_active = true")
        ]
        rows = await self._fetch(
            """
            SELECT department_id, appointment_date, slot_number FROM appointments
            WHERE appointment_date BETWEEN $1 AND $2 AND status <> ALL($3::text[])
            """,
            start, end, _RELEASED,
        )
        taken: Dict[tuple, List[int]] = {}
        for row in rows:
            taken.setdefault((row["department_id"], row["appointment_date"]), []).append(row["slot_number"])

        total = 0
        for offset in range(7):
            current = start + timedelta(days=offset)
            for department in departments:
                total += len(compute_available_slots(department, current, taken.get((department.id, current), [])))
        return total

    async def get_system_settings(self) -> Dict[str, str]:
        rows = await self._fetch("SELECT setting_key, setting_value FROM system_settings")
        return {row["setting_key"]: row["setting_value"] for row in rows}


def build_store(kind: str, *, postgres_dsn: str) -> BookingStore:
    if kind == "postgres":
        return PostgresBookingStore(postgres_dsn)
    return InMemoryBookingStore()
