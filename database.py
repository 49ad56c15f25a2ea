import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from errors import StoreUnavailable

logger = logging.getLogger("irrigation_api.database")


def to_db_time(value: datetime) -> str:
    """Fechas en UTC y con microsegundos, para que el orden de texto sea cronológico."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class DatabaseManager:
    """Acceso a SQLite: una conexión corta por operación."""

    def __init__(self, db_path="irrigation.db"):
        self.db_path = db_path
        self.initialize_db()

    def get_connection(self):
        conn = sqlite3.connect(self.db_path, timeout=5.0)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """Cursor dentro de una transacción; cualquier error de SQLite
        se reporta como StoreUnavailable."""
        try:
            conn = self.get_connection()
        except sqlite3.Error as e:
            raise StoreUnavailable(f"No se pudo abrir la base de datos: {e}") from e
        try:
            cursor = conn.cursor()
            yield cursor
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreUnavailable(f"Error de base de datos: {e}") from e
        finally:
            conn.close()

    def initialize_db(self):
        with self.transaction() as cursor:
            # Tabla de dispositivos
            cursor.execute("""
            CREATE TABLE IF NOT EXISTS devices (
                device_id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                location TEXT,
                auto_mode INTEGER NOT NULL DEFAULT 1,
                is_online INTEGER NOT NULL DEFAULT 0,
                last_seen TEXT,
                moisture_threshold_low REAL NOT NULL DEFAULT 30,
                moisture_threshold_high REAL NOT NULL DEFAULT 55,
                notifications_enabled INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL
            )
            """)

            # Tabla de lecturas (solo inserciones)
            cursor.execute("""
            CREATE TABLE IF NOT EXISTS readings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                device_id TEXT NOT NULL,
                soil_moisture REAL NOT NULL,
                temperature REAL NOT NULL,
                humidity REAL NOT NULL,
                pump_status INTEGER NOT NULL,
                dht_error INTEGER NOT NULL DEFAULT 0,
                timestamp TEXT NOT NULL
            )
            """)
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_readings_device_ts "
                "ON readings (device_id, timestamp DESC)"
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_readings_ts ON readings (timestamp)"
            )
        logger.info(f"Base de datos inicializada correctamente en {self.db_path}")
