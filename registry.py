import logging
import sqlite3
from datetime import datetime
from typing import Callable, List, Optional

from database import DatabaseManager, from_db_time, to_db_time
from errors import DeviceNotFound, ValidationError
from models import (
    DEFAULT_THRESHOLD_HIGH,
    DEFAULT_THRESHOLD_LOW,
    Device,
    DeviceSettings,
    utcnow,
)

logger = logging.getLogger("irrigation_api.registry")


def default_device_name(device_id: str) -> str:
    """Nombre generado para un dispositivo auto-registrado."""
    return f"Device {device_id[-6:]}"


def validate_thresholds(low: float, high: float) -> None:
    if not (0 <= low <= 100 and 0 <= high <= 100):
        raise ValidationError("Los umbrales deben estar entre 0 y 100")
    if low >= high:
        raise ValidationError("El umbral bajo debe ser menor que el umbral alto")


class DeviceRegistry:
    """Registro durable de dispositivos.

    Es el único dueño del estado de umbrales, modo y presencia: el pipeline
    de ingesta y el despachador de comandos solo lo modifican a través de
    estos métodos.
    """

    def __init__(self, db: DatabaseManager):
        self.db = db

    @staticmethod
    def _row_to_device(row: sqlite3.Row) -> Device:
        return Device(
            device_id=row["device_id"],
            name=row["name"],
            location=row["location"],
            auto_mode=bool(row["auto_mode"]),
            is_online=bool(row["is_online"]),
            last_seen=from_db_time(row["last_seen"]),
            settings=DeviceSettings(
                moisture_threshold_low=row["moisture_threshold_low"],
                moisture_threshold_high=row["moisture_threshold_high"],
                notifications_enabled=bool(row["notifications_enabled"]),
            ),
            created_at=from_db_time(row["created_at"]),
        )

    def _require(self, cursor: sqlite3.Cursor, device_id: str) -> Device:
        cursor.execute("SELECT * FROM devices WHERE device_id = ?", (device_id,))
        row = cursor.fetchone()
        if row is None:
            raise DeviceNotFound(device_id)
        return self._row_to_device(row)

    def find_by_device_id(self, device_id: str) -> Optional[Device]:
        with self.db.transaction() as cursor:
            cursor.execute("SELECT * FROM devices WHERE device_id = ?", (device_id,))
            row = cursor.fetchone()
        return self._row_to_device(row) if row else None

    def list_devices(self) -> List[Device]:
        with self.db.transaction() as cursor:
            cursor.execute("SELECT * FROM devices ORDER BY name")
            rows = cursor.fetchall()
        return [self._row_to_device(row) for row in rows]

    def upsert_on_sighting(
        self,
        device_id: str,
        default_name: Callable[[str], str] = default_device_name,
    ) -> Device:
        """Crea el dispositivo en su primer avistamiento o actualiza su presencia.

        Alta y presencia van en una sola sentencia.
        """
        now = to_db_time(utcnow())
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO devices
                    (device_id, name, is_online, last_seen,
                     moisture_threshold_low, moisture_threshold_high, created_at)
                VALUES (?, ?, 1, ?, ?, ?, ?)
                ON CONFLICT(device_id) DO UPDATE SET
                    last_seen = excluded.last_seen,
                    is_online = 1
                """,
                (
                    device_id,
                    default_name(device_id),
                    now,
                    DEFAULT_THRESHOLD_LOW,
                    DEFAULT_THRESHOLD_HIGH,
                    now,
                ),
            )
            device = self._require(cursor, device_id)

        # created_at solo se escribe en el alta
        if to_db_time(device.created_at) == now:
            logger.info(f"Nuevo dispositivo registrado: {device_id} ({device.name})")
        return device

    def mark_seen(self, device: Device) -> Device:
        """Actualiza la presencia de un dispositivo conocido.

        Si otro proceso lo borró entretanto, vuelve a crearse con su nombre.
        """
        return self.upsert_on_sighting(device.device_id, lambda _: device.name)

    def set_mode(self, device_id: str, auto_mode: bool) -> Device:
        with self.db.transaction() as cursor:
            cursor.execute(
                "UPDATE devices SET auto_mode = ? WHERE device_id = ?",
                (1 if auto_mode else 0, device_id),
            )
            if cursor.rowcount == 0:
                raise DeviceNotFound(device_id)
            device = self._require(cursor, device_id)
        logger.info(f"Modo de {device_id}: {'automático' if auto_mode else 'manual'}")
        return device

    def set_thresholds(self, device_id: str, low: float, high: float) -> Device:
        """Actualiza ambos umbrales o ninguno."""
        validate_thresholds(low, high)
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                UPDATE devices
                SET moisture_threshold_low = ?, moisture_threshold_high = ?
                WHERE device_id = ?
                """,
                (low, high, device_id),
            )
            if cursor.rowcount == 0:
                raise DeviceNotFound(device_id)
            return self._require(cursor, device_id)

    def set_notifications(self, device_id: str, enabled: bool) -> Device:
        with self.db.transaction() as cursor:
            cursor.execute(
                "UPDATE devices SET notifications_enabled = ? WHERE device_id = ?",
                (1 if enabled else 0, device_id),
            )
            if cursor.rowcount == 0:
                raise DeviceNotFound(device_id)
            return self._require(cursor, device_id)

    def save_device(
        self,
        device_id: str,
        name: str,
        location: Optional[str] = None,
        settings: Optional[DeviceSettings] = None,
    ) -> Device:
        """Alta o modificación administrativa de un dispositivo."""
        with self.db.transaction() as cursor:
            cursor.execute("SELECT * FROM devices WHERE device_id = ?", (device_id,))
            row = cursor.fetchone()
            current = self._row_to_device(row) if row else None

            merged = settings or (current.settings if current else DeviceSettings())
            validate_thresholds(merged.moisture_threshold_low, merged.moisture_threshold_high)

            if current is None:
                cursor.execute(
                    """
                    INSERT INTO devices
                        (device_id, name, location, moisture_threshold_low,
                         moisture_threshold_high, notifications_enabled, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        device_id,
                        name,
                        location,
                        merged.moisture_threshold_low,
                        merged.moisture_threshold_high,
                        1 if merged.notifications_enabled else 0,
                        to_db_time(utcnow()),
                    ),
                )
            else:
                cursor.execute(
                    """
                    UPDATE devices
                    SET name = ?, location = ?, moisture_threshold_low = ?,
                        moisture_threshold_high = ?, notifications_enabled = ?
                    WHERE device_id = ?
                    """,
                    (
                        name,
                        location if location is not None else current.location,
                        merged.moisture_threshold_low,
                        merged.moisture_threshold_high,
                        1 if merged.notifications_enabled else 0,
                        device_id,
                    ),
                )
            return self._require(cursor, device_id)

    def delete(self, device_id: str) -> None:
        with self.db.transaction() as cursor:
            cursor.execute("DELETE FROM devices WHERE device_id = ?", (device_id,))
            if cursor.rowcount == 0:
                raise DeviceNotFound(device_id)
        logger.info(f"Dispositivo eliminado: {device_id}")

    def mark_offline_before(self, cutoff: datetime) -> List[Device]:
        """Marca fuera de línea los dispositivos sin avistamientos desde `cutoff`."""
        limit = to_db_time(cutoff)
        with self.db.transaction() as cursor:
            cursor.execute(
                "SELECT * FROM devices WHERE is_online = 1 AND "
                "(last_seen IS NULL OR last_seen < ?)",
                (limit,),
            )
            stale = [self._row_to_device(row) for row in cursor.fetchall()]
            cursor.executemany(
                "UPDATE devices SET is_online = 0 WHERE device_id = ? AND "
                "(last_seen IS NULL OR last_seen < ?)",
                [(device.device_id, limit) for device in stale],
            )
        return [device.model_copy(update={"is_online": False}) for device in stale]
