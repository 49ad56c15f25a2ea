import os
from dataclasses import dataclass
from typing import Dict, List, Optional

from dotenv import load_dotenv

from models import TopicKind

# Cargar variables de entorno
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Configuración del backend, leída del entorno / archivo .env."""

    database_path: str = "irrigation.db"

    mqtt_enabled: bool = True
    mqtt_broker_url: str = "mqtt://localhost:1883"
    mqtt_client_id: Optional[str] = None
    mqtt_username: Optional[str] = None
    mqtt_password: Optional[str] = None
    topic_sensor_data: str = "irrigation/sensor_data"
    topic_sensors_data: str = "sensors/data"
    topic_status: str = "irrigation/status"
    topic_alerts: str = "irrigation/alerts"
    topic_pump_control: str = "irrigation/pump_control"
    command_timeout_seconds: float = 5.0

    email_host: Optional[str] = None
    email_port: int = 587
    email_user: Optional[str] = None
    email_pass: Optional[str] = None
    email_recipient: Optional[str] = None
    notify_max_pending: int = 20

    offline_after_seconds: int = 300
    offline_sweep_seconds: int = 60

    log_level: str = "INFO"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_path=os.getenv("DATABASE_PATH", cls.database_path),
            mqtt_enabled=_env_bool("MQTT_ENABLED", cls.mqtt_enabled),
            mqtt_broker_url=os.getenv("MQTT_BROKER_URL", cls.mqtt_broker_url),
            mqtt_client_id=os.getenv("MQTT_CLIENT_ID"),
            mqtt_username=os.getenv("MQTT_USERNAME"),
            mqtt_password=os.getenv("MQTT_PASSWORD"),
            topic_sensor_data=os.getenv("MQTT_TOPIC_SENSOR_DATA", cls.topic_sensor_data),
            topic_sensors_data=os.getenv("MQTT_TOPIC_SENSORS_DATA", cls.topic_sensors_data),
            topic_status=os.getenv("MQTT_TOPIC_STATUS", cls.topic_status),
            topic_alerts=os.getenv("MQTT_TOPIC_ALERTS", cls.topic_alerts),
            topic_pump_control=os.getenv("MQTT_TOPIC_PUMP_CONTROL", cls.topic_pump_control),
            command_timeout_seconds=float(
                os.getenv("COMMAND_TIMEOUT_SECONDS", cls.command_timeout_seconds)
            ),
            email_host=os.getenv("EMAIL_HOST"),
            email_port=int(os.getenv("EMAIL_PORT", cls.email_port)),
            email_user=os.getenv("EMAIL_USER"),
            email_pass=os.getenv("EMAIL_PASS"),
            email_recipient=os.getenv("EMAIL_RECIPIENT"),
            notify_max_pending=int(os.getenv("NOTIFY_MAX_PENDING", cls.notify_max_pending)),
            offline_after_seconds=int(
                os.getenv("OFFLINE_AFTER_SECONDS", cls.offline_after_seconds)
            ),
            offline_sweep_seconds=int(
                os.getenv("OFFLINE_SWEEP_SECONDS", cls.offline_sweep_seconds)
            ),
            log_level=os.getenv("LOG_LEVEL", cls.log_level),
            port=int(os.getenv("PORT", cls.port)),
        )

    @property
    def email_configured(self) -> bool:
        return bool(self.email_host and self.email_user and self.email_pass)

    def topic_kinds(self) -> Dict[str, TopicKind]:
        """Mapa tópico MQTT -> formato de mensaje."""
        return {
            self.topic_sensor_data: TopicKind.PRIMARY_SENSOR,
            self.topic_sensors_data: TopicKind.ALTERNATE_SENSOR,
            self.topic_status: TopicKind.STATUS,
            self.topic_alerts: TopicKind.ALERT,
        }

    def missing_critical(self) -> List[str]:
        """Lista de variables que faltan para el funcionamiento completo."""
        missing = []
        if self.mqtt_enabled and not self.mqtt_broker_url:
            missing.append("MQTT_BROKER_URL")
        if not self.email_configured:
            missing.extend(
                name
                for name, value in (
                    ("EMAIL_HOST", self.email_host),
                    ("EMAIL_USER", self.email_user),
                    ("EMAIL_PASS", self.email_pass),
                )
                if not value
            )
        if not self.email_recipient:
            missing.append("EMAIL_RECIPIENT")
        return missing
