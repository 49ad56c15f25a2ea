"""Errores del sistema de riego.

Las rutas REST traducen estas excepciones a códigos HTTP; el pipeline de
ingesta las captura y las registra sin propagarlas.
"""


class IrrigationError(Exception):
    """Clase base para todos los errores del dominio."""


class MalformedMessage(IrrigationError):
    """Payload ilegible o con valores no interpretables. Se descarta."""


class ValidationError(IrrigationError):
    """Se violó una invariante del esquema (umbrales, rangos de lectura)."""


class DeviceNotFound(IrrigationError):
    def __init__(self, device_id: str):
        super().__init__(f"Dispositivo no encontrado: {device_id}")
        self.device_id = device_id


class StoreUnavailable(IrrigationError):
    """Falló una escritura o lectura en la base de datos."""


class TransportUnavailable(IrrigationError):
    """El canal de comandos hacia los dispositivos no está disponible."""


class GatewayFailure(IrrigationError):
    """Falló el envío de una notificación (email)."""
