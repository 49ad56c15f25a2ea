from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

DEFAULT_THRESHOLD_LOW = 30.0
DEFAULT_THRESHOLD_HIGH = 55.0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Modelos expuestos al dashboard: claves en camelCase (deviceId, pumpStatus...)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TopicKind(str, Enum):
    PRIMARY_SENSOR = "primary_sensor"
    ALTERNATE_SENSOR = "alternate_sensor"
    STATUS = "status"
    ALERT = "alert"


# Modelos de dispositivo
class DeviceSettings(CamelModel):
    moisture_threshold_low: float = Field(DEFAULT_THRESHOLD_LOW, ge=0, le=100)
    moisture_threshold_high: float = Field(DEFAULT_THRESHOLD_HIGH, ge=0, le=100)
    notifications_enabled: bool = True


class Device(CamelModel):
    device_id: str
    name: str
    location: Optional[str] = None
    auto_mode: bool = True
    is_online: bool = False
    last_seen: Optional[datetime] = None
    settings: DeviceSettings = Field(default_factory=DeviceSettings)
    created_at: datetime = Field(default_factory=utcnow)


# Lecturas de sensores
class Reading(CamelModel):
    """Lectura canónica: todos los campos siempre presentes."""

    device_id: str
    soil_moisture: float
    temperature: float
    humidity: float
    pump_status: bool
    timestamp: datetime
    dht_error: bool = False


class ReadingRecord(Reading):
    """Esquema en el borde del almacén: fuera de rango se rechaza, no se corrige."""

    soil_moisture: float = Field(..., ge=0, le=100)
    humidity: float = Field(..., ge=0, le=100)


class StoredReading(Reading):
    id: int


class StatusReport(CamelModel):
    device_id: str
    status: str
    timestamp: datetime


class DeviceAlertReport(CamelModel):
    """Alerta enviada directamente por el dispositivo (tópico de alertas)."""

    device_id: str
    alert_type: str
    message: str
    timestamp: datetime
    soil_moisture: float = 0
    temperature: float = 0
    humidity: float = 0


class Alert(CamelModel):
    device_id: str
    device_name: Optional[str] = None
    kind: str
    message: str
    violations: List[str] = Field(default_factory=list)
    soil_moisture: float
    temperature: float
    humidity: float
    timestamp: datetime


# Comandos de bomba
class PumpCommand(BaseModel):
    """Mensaje hacia el dispositivo; las claves del canal MQTT van en snake_case."""

    device_id: str
    pump: bool
    auto: bool


class PumpAck(CamelModel):
    device_id: str
    pump_status: bool
    auto_mode: bool
    message: str


# Cuerpos de las peticiones REST
class PumpControlRequest(CamelModel):
    status: bool
    auto_mode: Optional[bool] = None


class ModeRequest(CamelModel):
    auto_mode: bool


class ThresholdsRequest(CamelModel):
    moisture_threshold_low: Optional[float] = None
    moisture_threshold_high: Optional[float] = None


class SettingsRequest(ThresholdsRequest):
    notifications_enabled: Optional[bool] = None


class DeviceCreateRequest(CamelModel):
    device_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    location: Optional[str] = None
    settings: Optional[SettingsRequest] = None


class ControlPumpMessage(CamelModel):
    """Mensaje `controlPump` recibido por WebSocket."""

    device_id: str
    pump_status: bool
    auto_mode: Optional[bool] = None
