"""SQLAlchemy StateRepository (PostgreSQL in production, SQLite in tests).

At most one unresolved alert per (machine_id, type) is enforced by a
partial unique index; an insert that hits it means the alert is already
open and ``open_alert`` returns None.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    false,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from ..domain.models import (
    Alert,
    AlertType,
    BrewType,
    MachineRecord,
    MachineStatus,
    MachineTelemetryState,
    MetricKind,
    Severity,
    UsageEvent,
    utcnow,
)
from .repository import StateRepository

logger = logging.getLogger(__name__)

metadata = MetaData()

coffee_machines = Table(
    "coffee_machines",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=False),
    Column("name", String(200)),
    Column("active", Boolean, nullable=False, default=True),
)

machine_telemetry_state = Table(
    "machine_telemetry_state",
    metadata,
    Column("machine_id", Integer, ForeignKey("coffee_machines.id"), primary_key=True),
    Column("status", String(16)),
    Column("temperature_c", Float),
    Column("water_level_pct", Integer),
    Column("milk_level_pct", Integer),
    Column("beans_level_pct", Integer),
    Column("last_updated", DateTime(timezone=True), nullable=False),
    Column("field_timestamps", JSON, nullable=False, default=dict),
)

usage_events = Table(
    "usage_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("machine_id", Integer, ForeignKey("coffee_machines.id"), nullable=False, index=True),
    Column("brew_type", String(32), nullable=False),
    Column("volume_ml", Integer),
    Column("temp_at_brew_c", Float),
    Column("timestamp", DateTime(timezone=True), nullable=False),
)

alerts = Table(
    "alerts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("machine_id", Integer, ForeignKey("coffee_machines.id"), nullable=False),
    Column("type", String(32), nullable=False),
    Column("severity", String(16), nullable=False),
    Column("message", String(500), nullable=False),
    Column("threshold_value", Float, nullable=False),
    Column("resolved", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

Index(
    "uq_alerts_open_per_type",
    alerts.c.machine_id,
    alerts.c.type,
    unique=True,
    sqlite_where=alerts.c.resolved == false(),
    postgresql_where=alerts.c.resolved == false(),
)


def create_schema(engine: Engine) -> None:
    metadata.create_all(engine)
    logger.info("[DB] Schema ready tables=%s", sorted(metadata.tables))


class SqlStateRepository(StateRepository):

    def __init__(self, engine: Engine):
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine

    def register_machine(self, machine_id: int, name: Optional[str] = None, active: bool = True) -> MachineRecord:
        with self._engine.begin() as conn:
            result = conn.execute(
                update(coffee_machines)
                .where(coffee_machines.c.id == machine_id)
                .values(name=name, active=active)
            )
            if result.rowcount == 0:
                conn.execute(insert(coffee_machines).values(id=machine_id, name=name, active=active))
        return MachineRecord(machine_id=machine_id, name=name, active=active)

    # -- machines -----------------------------------------------------------

    def get_machine(self, machine_id: int) -> Optional[MachineRecord]:
        with self._engine.connect() as conn:
            row = conn.execute(
                select(coffee_machines).where(coffee_machines.c.id == machine_id)
            ).mappings().first()
        if row is None:
            return None
        return MachineRecord(machine_id=row["id"], name=row["name"], active=bool(row["active"]))

    def load_machine_state(self, machine_id: int) -> Optional[MachineTelemetryState]:
        with self._engine.connect() as conn:
            row = conn.execute(
                select(machine_telemetry_state).where(
                    machine_telemetry_state.c.machine_id == machine_id
                )
            ).mappings().first()
        if row is None:
            return None
        return MachineTelemetryState(
            machine_id=row["machine_id"],
            status=MachineStatus(row["status"]) if row["status"] else None,
            temperature_c=row["temperature_c"],
            water_level_pct=row["water_level_pct"],
            milk_level_pct=row["milk_level_pct"],
            beans_level_pct=row["beans_level_pct"],
            last_updated=_as_utc(row["last_updated"]),
            field_timestamps={
                MetricKind(k): _as_utc(datetime.fromisoformat(v))
                for k, v in (row["field_timestamps"] or {}).items()
            },
        )

    def save_machine_state(self, machine_id: int, state: MachineTelemetryState) -> None:
        values = {
            "status": state.status.value if state.status else None,
            "temperature_c": state.temperature_c,
            "water_level_pct": state.water_level_pct,
            "milk_level_pct": state.milk_level_pct,
            "beans_level_pct": state.beans_level_pct,
            "last_updated": state.last_updated,
            "field_timestamps": {k.value: v.isoformat() for k, v in state.field_timestamps.items()},
        }
        with self._engine.begin() as conn:
            result = conn.execute(
                update(machine_telemetry_state)
                .where(machine_telemetry_state.c.machine_id == machine_id)
                .values(**values)
            )
            if result.rowcount == 0:
                conn.execute(insert(machine_telemetry_state).values(machine_id=machine_id, **values))

    # -- usage --------------------------------------------------------------

    def append_usage(self, event: UsageEvent) -> UsageEvent:
        with self._engine.begin() as conn:
            result = conn.execute(
                insert(usage_events).values(
                    machine_id=event.machine_id,
                    brew_type=event.brew_type.value,
                    volume_ml=event.volume_ml,
                    temp_at_brew_c=event.temp_at_brew_c,
                    timestamp=event.timestamp,
                )
            )
            new_id = result.inserted_primary_key[0]
        return UsageEvent(
            machine_id=event.machine_id,
            brew_type=event.brew_type,
            volume_ml=event.volume_ml,
            temp_at_brew_c=event.temp_at_brew_c,
            timestamp=event.timestamp,
            id=new_id,
        )

    def list_usage(self, machine_id: int, limit: int = 100) -> list[UsageEvent]:
        with self._engine.connect() as conn:
            rows = conn.execute(
                select(usage_events)
                .where(usage_events.c.machine_id == machine_id)
                .order_by(usage_events.c.id.desc())
                .limit(limit)
            ).mappings().all()
        return [
            UsageEvent(
                machine_id=r["machine_id"],
                brew_type=BrewType(r["brew_type"]),
                volume_ml=r["volume_ml"],
                temp_at_brew_c=r["temp_at_brew_c"],
                timestamp=_as_utc(r["timestamp"]),
                id=r["id"],
            )
            for r in rows
        ]

    # -- alerts -------------------------------------------------------------

    def open_alert(self, alert: Alert) -> Optional[Alert]:
        try:
            with self._engine.begin() as conn:
                result = conn.execute(
                    insert(alerts).values(
                        machine_id=alert.machine_id,
                        type=alert.type.value,
                        severity=alert.severity.value,
                        message=alert.message,
                        threshold_value=alert.threshold_value,
                        resolved=False,
                        created_at=alert.created_at,
                        updated_at=alert.updated_at,
                    )
                )
                new_id = result.inserted_primary_key[0]
        except IntegrityError:
            logger.debug(
                "[DB] Alert already open machine=%s type=%s",
                alert.machine_id, alert.type.value,
            )
            return None
        return self.get_alert(new_id)

    def find_unresolved(self, machine_id: int, alert_type: AlertType) -> Optional[Alert]:
        with self._engine.connect() as conn:
            row = conn.execute(
                select(alerts)
                .where(
                    alerts.c.machine_id == machine_id,
                    alerts.c.type == alert_type.value,
                    alerts.c.resolved == false(),
                )
                .order_by(alerts.c.id.desc())
            ).mappings().first()
        return _alert_from_row(row) if row is not None else None

    def refresh_alert(
        self,
        alert_id: int,
        severity: Severity,
        message: str,
        threshold_value: float,
    ) -> Optional[Alert]:
        with self._engine.begin() as conn:
            result = conn.execute(
                update(alerts)
                .where(alerts.c.id == alert_id, alerts.c.resolved == false())
                .values(
                    severity=severity.value,
                    message=message,
                    threshold_value=threshold_value,
                    updated_at=utcnow(),
                )
            )
            updated = result.rowcount
        if updated == 0:
            return None
        return self.get_alert(alert_id)

    def resolve_alerts(self, machine_id: int, alert_type: AlertType) -> list[Alert]:
        now = utcnow()
        with self._engine.begin() as conn:
            rows = conn.execute(
                select(alerts).where(
                    alerts.c.machine_id == machine_id,
                    alerts.c.type == alert_type.value,
                    alerts.c.resolved == false(),
                )
            ).mappings().all()
            # Report only the rows this transaction flipped.
            won = []
            for row in rows:
                result = conn.execute(
                    update(alerts)
                    .where(alerts.c.id == row["id"], alerts.c.resolved == false())
                    .values(resolved=True, updated_at=now)
                )
                if result.rowcount == 1:
                    won.append(row)
        return [_alert_from_row({**r, "resolved": True, "updated_at": now}) for r in won]

    def resolve_alert(self, alert_id: int) -> Optional[Alert]:
        with self._engine.begin() as conn:
            result = conn.execute(
                update(alerts)
                .where(alerts.c.id == alert_id, alerts.c.resolved == false())
                .values(resolved=True, updated_at=utcnow())
            )
            updated = result.rowcount
        if updated == 0:
            return None
        return self.get_alert(alert_id)

    def get_alert(self, alert_id: int) -> Optional[Alert]:
        with self._engine.connect() as conn:
            row = conn.execute(select(alerts).where(alerts.c.id == alert_id)).mappings().first()
        return _alert_from_row(row) if row is not None else None

    def list_unresolved(self, machine_id: Optional[int] = None) -> list[Alert]:
        query = select(alerts).where(alerts.c.resolved == false()).order_by(alerts.c.id)
        if machine_id is not None:
            query = query.where(alerts.c.machine_id == machine_id)
        with self._engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
        return [_alert_from_row(r) for r in rows]


def _alert_from_row(row: Any) -> Alert:
    return Alert(
        id=row["id"],
        machine_id=row["machine_id"],
        type=AlertType(row["type"]),
        severity=Severity(row["severity"]),
        message=row["message"],
        threshold_value=row["threshold_value"],
        resolved=bool(row["resolved"]),
        created_at=_as_utc(row["created_at"]),
        updated_at=_as_utc(row["updated_at"]),
    )


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo; everything is stored in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
