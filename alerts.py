"""Evaluación de rangos seguros de una lectura.

Estos rangos son fijos y no dependen de los umbrales de riego de cada
dispositivo (30/55 por defecto), que gobiernan la bomba en modo automático.
"""

from typing import List, Optional

from models import Alert, Reading

MIN_SOIL_MOISTURE = 20
TEMPERATURE_RANGE = (10, 40)
HUMIDITY_RANGE = (20, 90)

ABNORMAL_READINGS = "abnormal_readings"


def _fmt(value: float) -> str:
    return f"{value:g}"


def violations(reading: Reading) -> List[str]:
    """Descripción de cada valor fuera de rango.

    Con el DHT en falla solo se revisa la humedad del suelo.
    """
    found = []
    if reading.soil_moisture < MIN_SOIL_MOISTURE:
        found.append(f"Humedad del suelo críticamente baja: {_fmt(reading.soil_moisture)}%")

    if reading.dht_error:
        return found

    low, high = TEMPERATURE_RANGE
    if not low <= reading.temperature <= high:
        found.append(f"Temperatura fuera de rango normal: {_fmt(reading.temperature)}°C")

    low, high = HUMIDITY_RANGE
    if not low <= reading.humidity <= high:
        found.append(f"Humedad fuera de rango normal: {_fmt(reading.humidity)}%")
    return found


def evaluate(reading: Reading) -> Optional[Alert]:
    """Una sola alerta por lectura, con todas las violaciones, o None."""
    found = violations(reading)
    if not found:
        return None
    return Alert(
        device_id=reading.device_id,
        kind=ABNORMAL_READINGS,
        message="Lecturas anormales detectadas: " + "; ".join(found),
        violations=found,
        soil_moisture=reading.soil_moisture,
        temperature=reading.temperature,
        humidity=reading.humidity,
        timestamp=reading.timestamp,
    )
