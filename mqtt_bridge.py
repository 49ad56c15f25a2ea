import asyncio
import logging
from typing import Awaitable, Callable, Optional
from urllib.parse import urlparse

import paho.mqtt.client as mqtt

from config import Settings
from errors import TransportUnavailable
from models import PumpCommand, TopicKind

logger = logging.getLogger("irrigation_api.mqtt")

MessageHandler = Callable[[TopicKind, bytes], Awaitable[object]]

QOS_AT_LEAST_ONCE = 1


class MqttBridge:
    """Cliente MQTT: recibe los tópicos de los dispositivos y publica comandos.

    paho corre su propio hilo de red; cada mensaje recibido se entrega como
    corrutina al event loop de la aplicación.
    """

    def __init__(self, settings: Settings, handler: MessageHandler):
        self.settings = settings
        self.handler = handler
        self.topic_kinds = settings.topic_kinds()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        url = urlparse(settings.mqtt_broker_url)
        secure = url.scheme in ("mqtts", "ssl")
        self.host = url.hostname or "localhost"
        self.port = url.port or (8883 if secure else 1883)

        self.client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=settings.mqtt_client_id or "",
            clean_session=True,
        )
        if settings.mqtt_username:
            self.client.username_pw_set(settings.mqtt_username, settings.mqtt_password)
        if secure:
            self.client.tls_set()
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_message = self._on_message

    @property
    def connected(self) -> bool:
        return self.client.is_connected()

    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        logger.info(f"Conectando al broker MQTT {self.host}:{self.port}")
        self.client.connect_async(self.host, self.port)
        self.client.loop_start()

    def stop(self) -> None:
        self.client.disconnect()
        self.client.loop_stop()
        logger.info("Cliente MQTT detenido")

    # Callbacks de paho (hilo de red)
    def _on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code.is_failure:
            logger.error(f"Error de conexión MQTT: {reason_code}")
            return
        logger.info("Conectado al broker MQTT")
        client.subscribe([(topic, QOS_AT_LEAST_ONCE) for topic in self.topic_kinds])
        for topic in self.topic_kinds:
            logger.info(f"Suscrito a {topic}")

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties):
        logger.warning(f"Desconectado del broker MQTT: {reason_code}")

    def _on_message(self, client, userdata, message):
        kind = self.topic_kinds.get(message.topic)
        if kind is None:
            logger.warning(f"Mensaje en tópico no esperado: {message.topic}")
            return
        if self._loop is None or self._loop.is_closed():
            logger.error(f"Mensaje de {message.topic} descartado: event loop no disponible")
            return
        logger.debug(f"Mensaje MQTT recibido: {message.topic}")
        asyncio.run_coroutine_threadsafe(self.handler(kind, message.payload), self._loop)

    # Salida de comandos
    async def publish_pump_command(self, command: PumpCommand) -> None:
        if not self.connected:
            raise TransportUnavailable("Cliente MQTT no conectado")
        await asyncio.to_thread(self._publish, command.model_dump_json())

    def _publish(self, payload: str) -> None:
        info = self.client.publish(
            self.settings.topic_pump_control, payload, qos=QOS_AT_LEAST_ONCE
        )
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise TransportUnavailable(f"Publicación rechazada: {mqtt.error_string(info.rc)}")
        try:
            info.wait_for_publish(timeout=self.settings.command_timeout_seconds)
        except (RuntimeError, ValueError) as e:
            raise TransportUnavailable(f"Publicación fallida: {e}") from e
        if not info.is_published():
            raise TransportUnavailable("Tiempo de espera agotado publicando el comando")
