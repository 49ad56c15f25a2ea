"""Pipeline de ingesta de mensajes de los dispositivos.

Cada mensaje recorre, en orden:

    RECEIVED -> NORMALIZED -> PERSISTED -> DEVICE_SYNCED -> EVALUATED
             -> FANNED_OUT -> DONE

y termina en REJECTED si no se puede interpretar o guardar. Los errores de
los pasos posteriores a la persistencia (registro, notificaciones) se
registran y no detienen el mensaje. Los mensajes de estado y de alerta
siguen un camino reducido.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, List, Mapping, Optional, Union

import alerts
from errors import IrrigationError, MalformedMessage, StoreUnavailable, ValidationError
from fanout import DEVICE_ALERT, DEVICE_STATUS, SENSOR_DATA, RealtimeFanout
from models import Alert, Device, DeviceAlertReport, Reading, StatusReport, TopicKind, utcnow
from normalizer import decode_payload, normalize
from notifications import AlertNotifier
from readings import ReadingStore
from registry import DeviceRegistry

logger = logging.getLogger("irrigation_api.pipeline")

CONNECTED = "connected"


class IngestState(str, Enum):
    """Estado final de un mensaje."""

    DONE = "done"
    REJECTED = "rejected"


class IngestionPipeline:
    def __init__(
        self,
        registry: DeviceRegistry,
        readings: ReadingStore,
        fanout: RealtimeFanout,
        notifier: AlertNotifier,
        offline_after_seconds: int = 300,
    ):
        self.registry = registry
        self.readings = readings
        self.fanout = fanout
        self.notifier = notifier
        self.offline_after = timedelta(seconds=offline_after_seconds)

    async def ingest_message(
        self, topic_kind: TopicKind, body: Union[bytes, str, Mapping[str, Any]]
    ) -> IngestState:
        """Punto de entrada único para todos los tópicos. Nunca lanza excepciones."""
        try:
            try:
                normalized = normalize(topic_kind, decode_payload(body))
            except MalformedMessage as e:
                logger.warning(f"Mensaje {topic_kind.value} descartado: {e}")
                return IngestState.REJECTED

            if isinstance(normalized, StatusReport):
                return await self._handle_status(normalized)
            if isinstance(normalized, DeviceAlertReport):
                return await self._handle_device_alert(normalized)
            return await self._handle_reading(normalized)
        except Exception:
            logger.exception(f"Error inesperado procesando mensaje {topic_kind.value}")
            return IngestState.REJECTED

    async def _handle_reading(self, reading: Reading) -> IngestState:
        try:
            stored = self.readings.append(reading)
        except ValidationError as e:
            logger.warning(f"Lectura de {reading.device_id} rechazada: {e}")
            return IngestState.REJECTED
        except StoreUnavailable as e:
            logger.error(f"Lectura de {reading.device_id} perdida: {e}")
            return IngestState.REJECTED

        logger.info(
            f"Lectura de {stored.device_id} - Humedad suelo: {stored.soil_moisture:g}%, "
            f"Temp: {stored.temperature:g}°C, Humedad: {stored.humidity:g}%, "
            f"Bomba: {stored.pump_status}, Error DHT: {stored.dht_error}"
        )

        # La lectura ya está guardada: un fallo del registro no la revierte
        device = self._sighting(stored.device_id)

        alert = alerts.evaluate(stored)
        if alert is not None:
            self._forward_alert(alert, device)

        await self.fanout.broadcast(SENSOR_DATA, stored)
        return IngestState.DONE

    async def _handle_status(self, report: StatusReport) -> IngestState:
        if report.status != CONNECTED:
            logger.debug(f"Estado '{report.status}' de {report.device_id} ignorado")
            return IngestState.DONE

        try:
            device = self.registry.find_by_device_id(report.device_id)
            if device is None:
                self.registry.upsert_on_sighting(report.device_id)
            else:
                self.registry.mark_seen(device)
        except IrrigationError as e:
            logger.error(f"No se pudo actualizar el dispositivo {report.device_id}: {e}")

        await self.fanout.broadcast(
            DEVICE_STATUS, {"deviceId": report.device_id, "isOnline": True}
        )
        return IngestState.DONE

    async def _handle_device_alert(self, report: DeviceAlertReport) -> IngestState:
        logger.info(f"Alerta recibida de {report.device_id}: {report.alert_type}")
        try:
            device = self.registry.find_by_device_id(report.device_id)
        except StoreUnavailable as e:
            logger.error(f"No se pudo consultar {report.device_id}: {e}")
            device = None

        if device is not None:
            self._forward_alert(
                Alert(
                    device_id=report.device_id,
                    kind=report.alert_type,
                    message=report.message,
                    soil_moisture=report.soil_moisture,
                    temperature=report.temperature,
                    humidity=report.humidity,
                    timestamp=report.timestamp,
                ),
                device,
            )

        await self.fanout.broadcast(
            DEVICE_ALERT,
            {
                "deviceId": report.device_id,
                "alertType": report.alert_type,
                "message": report.message,
                "timestamp": report.timestamp.isoformat(),
            },
        )
        return IngestState.DONE

    def _sighting(self, device_id: str) -> Optional[Device]:
        try:
            return self.registry.upsert_on_sighting(device_id)
        except IrrigationError as e:
            # Se reintenta con el siguiente mensaje del dispositivo
            logger.error(f"No se pudo actualizar el dispositivo {device_id}: {e}")
            return None

    def _forward_alert(self, alert: Alert, device: Optional[Device]) -> None:
        if device is None:
            logger.warning(f"Alerta de {alert.device_id} sin dispositivo: no se notifica")
            return
        if not device.settings.notifications_enabled:
            logger.debug(f"Notificaciones desactivadas para {device.device_id}")
            return
        self.notifier.notify(alert.model_copy(update={"device_name": device.name}))

    async def sweep_offline(self, now: Optional[datetime] = None) -> List[Device]:
        """Marca fuera de línea los dispositivos sin avistamientos recientes."""
        cutoff = (now or utcnow()) - self.offline_after
        try:
            devices = self.registry.mark_offline_before(cutoff)
        except StoreUnavailable as e:
            logger.error(f"No se pudo revisar la presencia de dispositivos: {e}")
            return []

        for device in devices:
            logger.info(f"Dispositivo {device.device_id} fuera de línea")
            await self.fanout.broadcast(
                DEVICE_STATUS, {"deviceId": device.device_id, "isOnline": False}
            )
        return devices

    async def monitor_liveness(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            await self.sweep_offline()
