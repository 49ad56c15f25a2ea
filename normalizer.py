"""Normalización de los mensajes entrantes de los dispositivos.

El firmware de los sensores ha cambiado el nombre de los campos varias
veces. Cada campo canónico tiene una lista ordenada de claves candidatas;
gana la primera presente. Un formato nuevo de firmware se soporta
agregando claves a estas tablas.
"""

import json
import math
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Sequence, Tuple, Union

from errors import MalformedMessage
from models import DeviceAlertReport, Reading, StatusReport, TopicKind, utcnow

# Valor que envía el firmware cuando falla la lectura del DHT
SENSOR_ERROR_SENTINEL = -999
UNKNOWN_DEVICE = "unknown"

FieldAliases = Sequence[Tuple[str, Sequence[str]]]

DEVICE_ID_KEYS = ("device_id", "deviceId", "id")

SENSOR_FIELDS: FieldAliases = (
    ("device_id", DEVICE_ID_KEYS),
    ("soil_moisture", ("soil_moisture", "soilMoisture", "moisture")),
    ("temperature", ("temperature", "temp")),
    ("humidity", ("humidity", "humid")),
    ("pump_status", ("pump_status", "pumpStatus", "pump")),
    ("dht_error", ("dht_error", "dhtError")),
    ("timestamp", ("timestamp", "ts")),
)

STATUS_FIELDS: FieldAliases = (
    ("device_id", DEVICE_ID_KEYS),
    ("status", ("status", "state")),
    ("timestamp", ("timestamp", "ts")),
)

ALERT_FIELDS: FieldAliases = (
    ("device_id", DEVICE_ID_KEYS),
    ("alert_type", ("type", "alert_type", "alertType")),
    ("message", ("message", "msg")),
    ("soil_moisture", ("soil_moisture", "soilMoisture", "moisture")),
    ("temperature", ("temperature", "temp")),
    ("humidity", ("humidity", "humid")),
    ("timestamp", ("timestamp", "ts")),
)

FORMAT_FIELDS: Dict[TopicKind, FieldAliases] = {
    TopicKind.PRIMARY_SENSOR: SENSOR_FIELDS,
    TopicKind.ALTERNATE_SENSOR: SENSOR_FIELDS,
    TopicKind.STATUS: STATUS_FIELDS,
    TopicKind.ALERT: ALERT_FIELDS,
}

Normalized = Union[Reading, StatusReport, DeviceAlertReport]


def decode_payload(body: Union[bytes, str, Mapping[str, Any]]) -> Dict[str, Any]:
    """Convierte el cuerpo crudo de un mensaje en un diccionario."""
    if isinstance(body, Mapping):
        return dict(body)
    try:
        if isinstance(body, bytes):
            body = body.decode("utf-8")
        data = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedMessage(f"Payload no es JSON válido: {e}") from e
    if not isinstance(data, dict):
        raise MalformedMessage("El payload debe ser un objeto JSON")
    return data


def resolve_fields(raw: Mapping[str, Any], fields: FieldAliases) -> Dict[str, Any]:
    """Primer valor presente (no nulo) de cada campo; None si no aparece."""
    resolved: Dict[str, Any] = {}
    for canonical, keys in fields:
        resolved[canonical] = next(
            (raw[key] for key in keys if raw.get(key) is not None), None
        )
    return resolved


# Conversores de valores
def _to_float(name: str, value: Any, default: float = 0.0) -> float:
    if value is None:
        return default
    if isinstance(value, bool):
        raise MalformedMessage(f"{name} no es numérico: {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError) as e:
        raise MalformedMessage(f"{name} no es numérico: {value!r}") from e
    if math.isnan(number) or math.isinf(number):
        raise MalformedMessage(f"{name} no es un número finito: {value!r}")
    return number


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "on", "yes")
    return bool(value)


def _to_timestamp(value: Any) -> datetime:
    if value is None:
        return utcnow()
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        # Epoch en segundos o en milisegundos
        seconds = value / 1000 if value > 1e11 else value
        try:
            parsed = datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            raise MalformedMessage(f"timestamp fuera de rango: {value!r}") from e
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise MalformedMessage(f"timestamp inválido: {value!r}") from e
    else:
        raise MalformedMessage(f"timestamp inválido: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _to_device_id(value: Any) -> str:
    if value is None:
        return UNKNOWN_DEVICE
    device_id = str(value).strip()
    return device_id or UNKNOWN_DEVICE


def _sensor_value(name: str, value: Any) -> Tuple[float, bool]:
    """Devuelve (valor, falló_el_sensor). El centinela se reemplaza por 0."""
    number = _to_float(name, value)
    if number == SENSOR_ERROR_SENTINEL:
        return 0.0, True
    return number, False


# Normalizadores por formato
def _normalize_sensor(fields: Dict[str, Any]) -> Reading:
    temperature, temp_failed = _sensor_value("temperature", fields["temperature"])
    humidity, humid_failed = _sensor_value("humidity", fields["humidity"])
    moisture = max(0.0, _to_float("soil_moisture", fields["soil_moisture"]))

    return Reading(
        device_id=_to_device_id(fields["device_id"]),
        soil_moisture=moisture,
        temperature=temperature,
        humidity=humidity,
        pump_status=_to_bool(fields["pump_status"]),
        timestamp=_to_timestamp(fields["timestamp"]),
        dht_error=_to_bool(fields["dht_error"]) or temp_failed or humid_failed,
    )


def _normalize_status(fields: Dict[str, Any]) -> StatusReport:
    status = fields["status"]
    return StatusReport(
        device_id=_to_device_id(fields["device_id"]),
        status=str(status).strip().lower() if status is not None else "unknown",
        timestamp=_to_timestamp(fields["timestamp"]),
    )


def _normalize_alert(fields: Dict[str, Any]) -> DeviceAlertReport:
    return DeviceAlertReport(
        device_id=_to_device_id(fields["device_id"]),
        alert_type=str(fields["alert_type"] or "unknown"),
        message=str(fields["message"] or "No details provided"),
        soil_moisture=_to_float("soil_moisture", fields["soil_moisture"]),
        temperature=_to_float("temperature", fields["temperature"]),
        humidity=_to_float("humidity", fields["humidity"]),
        timestamp=_to_timestamp(fields["timestamp"]),
    )


_BUILDERS: Dict[TopicKind, Callable[[Dict[str, Any]], Normalized]] = {
    TopicKind.PRIMARY_SENSOR: _normalize_sensor,
    TopicKind.ALTERNATE_SENSOR: _normalize_sensor,
    TopicKind.STATUS: _normalize_status,
    TopicKind.ALERT: _normalize_alert,
}


def normalize(topic_kind: TopicKind, raw: Mapping[str, Any]) -> Normalized:
    """Convierte un payload crudo en su modelo canónico.

    Lanza MalformedMessage si algún valor presente no se puede interpretar.
    Los campos ausentes toman su valor por defecto, nunca quedan vacíos.
    """
    if not isinstance(raw, Mapping):
        raise MalformedMessage("El payload debe ser un objeto JSON")
    fields = resolve_fields(raw, FORMAT_FIELDS[topic_kind])
    return _BUILDERS[topic_kind](fields)
