import logging
import sqlite3
from datetime import datetime
from typing import List, Optional

from pydantic import ValidationError as SchemaError

from database import DatabaseManager, from_db_time, to_db_time
from errors import ValidationError
from models import Reading, ReadingRecord, StoredReading

logger = logging.getLogger("irrigation_api.readings")


class ReadingStore:
    """Almacén de lecturas: solo inserciones, indexado por dispositivo y fecha."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    @staticmethod
    def _row_to_reading(row: sqlite3.Row) -> StoredReading:
        return StoredReading(
            id=row["id"],
            device_id=row["device_id"],
            soil_moisture=row["soil_moisture"],
            temperature=row["temperature"],
            humidity=row["humidity"],
            pump_status=bool(row["pump_status"]),
            dht_error=bool(row["dht_error"]),
            timestamp=from_db_time(row["timestamp"]),
        )

    def append(self, reading: Reading) -> StoredReading:
        """Guarda una lectura. Los valores fuera de rango se rechazan."""
        try:
            record = ReadingRecord.model_validate(reading.model_dump())
        except SchemaError as e:
            fields = ", ".join(str(err["loc"][0]) for err in e.errors())
            raise ValidationError(f"Lectura fuera de rango ({fields})") from e

        with self.db.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO readings
                    (device_id, soil_moisture, temperature, humidity,
                     pump_status, dht_error, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.device_id,
                    record.soil_moisture,
                    record.temperature,
                    record.humidity,
                    1 if record.pump_status else 0,
                    1 if record.dht_error else 0,
                    to_db_time(record.timestamp),
                ),
            )
            reading_id = cursor.lastrowid

        return StoredReading(id=reading_id, **record.model_dump())

    def query(
        self,
        device_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 50,
    ) -> List[StoredReading]:
        """Lecturas más recientes primero, con filtros opcionales."""
        clauses = []
        params: list = []
        if device_id:
            clauses.append("device_id = ?")
            params.append(device_id)
        if since:
            clauses.append("timestamp >= ?")
            params.append(to_db_time(since))
        if until:
            clauses.append("timestamp <= ?")
            params.append(to_db_time(until))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)

        with self.db.transaction() as cursor:
            cursor.execute(
                f"SELECT * FROM readings {where} ORDER BY timestamp DESC, id DESC LIMIT ?",
                params,
            )
            rows = cursor.fetchall()
        return [self._row_to_reading(row) for row in rows]

    def latest_per_device(self) -> List[StoredReading]:
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                SELECT r.* FROM readings r
                WHERE r.id = (
                    SELECT r2.id FROM readings r2
                    WHERE r2.device_id = r.device_id
                    ORDER BY r2.timestamp DESC, r2.id DESC
                    LIMIT 1
                )
                ORDER BY r.device_id
                """
            )
            rows = cursor.fetchall()
        return [self._row_to_reading(row) for row in rows]

    def count(self, device_id: Optional[str] = None) -> int:
        with self.db.transaction() as cursor:
            if device_id:
                cursor.execute(
                    "SELECT COUNT(*) FROM readings WHERE device_id = ?", (device_id,)
                )
            else:
                cursor.execute("SELECT COUNT(*) FROM readings")
            return cursor.fetchone()[0]
