import logging
from typing import Optional, Protocol

from errors import DeviceNotFound, TransportUnavailable
from fanout import PUMP_STATUS, RealtimeFanout
from models import PumpAck, PumpCommand
from registry import DeviceRegistry

logger = logging.getLogger("irrigation_api.commands")


class PumpCommandPublisher(Protocol):
    """Canal de salida hacia los dispositivos.

    Debe lanzar TransportUnavailable si no puede entregar el comando a tiempo.
    """

    async def publish_pump_command(self, command: PumpCommand) -> None: ...


class CommandDispatcher:
    """Convierte una orden del usuario (REST o WebSocket) en un comando de bomba."""

    def __init__(
        self,
        registry: DeviceRegistry,
        publisher: PumpCommandPublisher,
        fanout: RealtimeFanout,
    ):
        self.registry = registry
        self.publisher = publisher
        self.fanout = fanout

    async def dispatch(
        self, device_id: str, pump_on: bool, auto_mode: Optional[bool] = None
    ) -> PumpAck:
        """Envía el comando de bomba.

        El modo se persiste antes de publicar y no se revierte si la
        publicación falla: el modo es un dato del registro y el encendido de
        la bomba es un comando de mejor esfuerzo. El dashboard recibe el
        estado pedido aunque falle el transporte; el estado real llega con la
        siguiente lectura del dispositivo.
        """
        device = self.registry.find_by_device_id(device_id)
        if device is None:
            raise DeviceNotFound(device_id)

        if auto_mode is not None:
            device = self.registry.set_mode(device_id, auto_mode)

        command = PumpCommand(device_id=device_id, pump=pump_on, auto=device.auto_mode)
        transport_error = None
        try:
            await self.publisher.publish_pump_command(command)
            logger.info(
                f"Comando enviado a {device_id}: bomba={'ON' if pump_on else 'OFF'}, "
                f"auto={device.auto_mode}"
            )
        except TransportUnavailable as e:
            logger.error(f"No se pudo enviar el comando a {device_id}: {e}")
            transport_error = e

        await self.fanout.broadcast(
            PUMP_STATUS,
            {"deviceId": device_id, "pumpStatus": pump_on, "autoMode": device.auto_mode},
        )

        if transport_error is not None:
            raise transport_error

        return PumpAck(
            device_id=device_id,
            pump_status=pump_on,
            auto_mode=device.auto_mode,
            message=f"Bomba {'encendida' if pump_on else 'apagada'}",
        )
