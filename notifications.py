import asyncio
import html
import logging
import smtplib
from email.message import EmailMessage
from typing import Protocol, Set

from config import Settings
from errors import GatewayFailure
from models import Alert

logger = logging.getLogger("irrigation_api.notifications")


class NotificationGateway(Protocol):
    def send(self, alert: Alert) -> None: ...


def render_alert_html(alert: Alert) -> str:
    # Tipo, mensaje e id llegan del dispositivo
    device = html.escape(alert.device_name or alert.device_id)
    violations = "".join(f"<li>{html.escape(line)}</li>" for line in alert.violations)
    details = (
        f"<ul>{violations}</ul>" if violations else f"<p>{html.escape(alert.message)}</p>"
    )
    return f"""
        <h2>Alerta: {html.escape(alert.kind)}</h2>
        <p><strong>Dispositivo:</strong> {device} ({html.escape(alert.device_id)})</p>
        <p><strong>Hora:</strong> {alert.timestamp.isoformat()}</p>

        <h3>Detalles:</h3>
        {details}

        <h3>Lecturas actuales:</h3>
        <ul>
          <li>Humedad del suelo: {alert.soil_moisture:g}%</li>
          <li>Temperatura: {alert.temperature:g}°C</li>
          <li>Humedad: {alert.humidity:g}%</li>
        </ul>

        <p>Revise el sistema de riego y los sensores.</p>
        <p>Mensaje automático del Sistema de Riego Inteligente.</p>
    """


class EmailNotificationGateway:
    """Envía las alertas por email (SMTP con STARTTLS)."""

    def __init__(self, settings: Settings, timeout: float = 10.0):
        self.settings = settings
        self.timeout = timeout
        self._warned = False

    def build_message(self, alert: Alert) -> EmailMessage:
        device = alert.device_name or alert.device_id
        msg = EmailMessage()
        msg["Subject"] = f"Alerta: {alert.kind} de {device}"
        msg["From"] = self.settings.email_user
        msg["To"] = self.settings.email_recipient or self.settings.email_user
        msg.set_content(alert.message)
        msg.add_alternative(render_alert_html(alert), subtype="html")
        return msg

    def send(self, alert: Alert) -> None:
        if not self.settings.email_configured:
            if not self._warned:
                logger.warning("Email no configurado - las alertas no se enviarán")
                self._warned = True
            return

        msg = self.build_message(alert)
        try:
            with smtplib.SMTP(
                self.settings.email_host, self.settings.email_port, timeout=self.timeout
            ) as smtp:
                smtp.starttls()
                smtp.login(self.settings.email_user, self.settings.email_pass)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise GatewayFailure(f"Error enviando email de alerta: {e}") from e
        logger.info(f"Email de alerta enviado para {alert.device_id}")


class AlertNotifier:
    """Entrega de alertas en segundo plano.

    Cada alerta corre en su propia tarea; el pipeline no la espera y sus
    errores se registran aquí sin propagarse.
    """

    def __init__(self, gateway: NotificationGateway, max_pending: int = 20):
        self.gateway = gateway
        self._slots = asyncio.Semaphore(max_pending)
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def notify(self, alert: Alert) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._deliver(alert))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _deliver(self, alert: Alert) -> None:
        async with self._slots:
            try:
                await asyncio.to_thread(self.gateway.send, alert)
            except Exception as e:
                logger.error(f"Fallo la notificación de {alert.device_id}: {e}")

    async def drain(self) -> None:
        """Espera las notificaciones pendientes."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
