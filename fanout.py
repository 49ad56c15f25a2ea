import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Set

from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from errors import IrrigationError
from models import ControlPumpMessage

logger = logging.getLogger("irrigation_api.fanout")

# Eventos servidor -> cliente
SENSOR_DATA = "sensorData"
DEVICE_STATUS = "deviceStatus"
PUMP_STATUS = "pumpStatus"
DEVICE_ALERT = "deviceAlert"

# Eventos cliente -> servidor
CONTROL_PUMP = "controlPump"

ControlHandler = Callable[[str, bool, Optional[bool]], Awaitable[Any]]


class Subscriber(Protocol):
    async def send_json(self, data: Any) -> None: ...


class RealtimeFanout:
    """Conjunto de clientes del dashboard conectados por WebSocket."""

    def __init__(self):
        self._subscribers: Set[Subscriber] = set()
        # Se conecta con CommandDispatcher.dispatch al armar los servicios
        self.on_control_pump: Optional[ControlHandler] = None

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.add(subscriber)
        logger.info(f"Nuevo cliente conectado ({len(self._subscribers)} activos)")

    def unsubscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.discard(subscriber)
        logger.info(f"Cliente desconectado ({len(self._subscribers)} activos)")

    async def broadcast(self, event: str, data: Any) -> int:
        """Envía un evento a todos los clientes; devuelve cuántos lo recibieron.

        Los clientes que fallan al recibir se eliminan del conjunto.
        """
        if isinstance(data, BaseModel):
            data = data.model_dump(mode="json", by_alias=True)
        message = {"event": event, "data": data}

        delivered = 0
        dead = []
        for subscriber in list(self._subscribers):
            try:
                await subscriber.send_json(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"Cliente descartado al enviar {event}: {e}")
                dead.append(subscriber)

        for subscriber in dead:
            self._subscribers.discard(subscriber)
        return delivered

    async def handle_client_message(self, message: Dict[str, Any]) -> None:
        """Procesa un mensaje recibido de un cliente del dashboard."""
        event = message.get("event") if isinstance(message, dict) else None
        if event != CONTROL_PUMP:
            logger.debug(f"Evento de cliente ignorado: {event!r}")
            return

        try:
            control = ControlPumpMessage.model_validate(message.get("data") or {})
        except SchemaError as e:
            logger.warning(f"controlPump inválido: {e.errors()}")
            return

        if self.on_control_pump is None:
            logger.error("controlPump recibido sin despachador de comandos configurado")
            return

        try:
            await self.on_control_pump(
                control.device_id, control.pump_status, control.auto_mode
            )
        except IrrigationError as e:
            logger.error(f"Error controlando la bomba de {control.device_id}: {e}")
