import asyncio
import json
import logging
import random
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from fastapi import (
    APIRouter,
    Depends,
    FastAPI,
    HTTPException,
    Query,
    Request,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from commands import CommandDispatcher, PumpCommandPublisher
from config import Settings
from database import DatabaseManager
from errors import (
    DeviceNotFound,
    StoreUnavailable,
    TransportUnavailable,
    ValidationError,
)
from fanout import RealtimeFanout
from models import (
    Device,
    DeviceCreateRequest,
    DeviceSettings,
    ModeRequest,
    PumpAck,
    PumpCommand,
    PumpControlRequest,
    SettingsRequest,
    StoredReading,
    ThresholdsRequest,
    TopicKind,
)
from mqtt_bridge import MqttBridge
from notifications import AlertNotifier, EmailNotificationGateway, NotificationGateway
from pipeline import IngestionPipeline
from readings import ReadingStore
from registry import DeviceRegistry

settings = Settings.from_env()

# Configuración de logging
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler()],
)
logger = logging.getLogger("irrigation_api")


@dataclass
class Services:
    db: DatabaseManager
    registry: DeviceRegistry
    readings: ReadingStore
    fanout: RealtimeFanout
    notifier: AlertNotifier
    pipeline: IngestionPipeline
    dispatcher: CommandDispatcher
    bridge: Optional[MqttBridge] = None


class DisabledPublisher:
    """Publicador usado cuando MQTT está deshabilitado."""

    async def publish_pump_command(self, command: PumpCommand) -> None:
        raise TransportUnavailable("MQTT deshabilitado")


def build_services(
    settings: Settings,
    publisher: Optional[PumpCommandPublisher] = None,
    gateway: Optional[NotificationGateway] = None,
) -> Services:
    """Construye los servicios y los conecta entre sí."""
    db = DatabaseManager(settings.database_path)
    registry = DeviceRegistry(db)
    readings = ReadingStore(db)
    fanout = RealtimeFanout()
    notifier = AlertNotifier(
        gateway or EmailNotificationGateway(settings), settings.notify_max_pending
    )
    pipeline = IngestionPipeline(
        registry, readings, fanout, notifier, settings.offline_after_seconds
    )

    bridge = None
    if publisher is None:
        if settings.mqtt_enabled:
            bridge = MqttBridge(settings, pipeline.ingest_message)
            publisher = bridge
        else:
            publisher = DisabledPublisher()

    dispatcher = CommandDispatcher(registry, publisher, fanout)
    fanout.on_control_pump = dispatcher.dispatch

    return Services(db, registry, readings, fanout, notifier, pipeline, dispatcher, bridge)


def get_services(request: Request) -> Services:
    return request.app.state.services


router = APIRouter()


# Endpoints generales
@router.get("/")
async def root():
    """Endpoint raíz para verificar que la API está funcionando."""
    return {
        "mensaje": "API del Sistema de Riego Inteligente funcionando correctamente",
        "endpoints": [
            {"ruta": "/api/devices", "método": "GET", "descripción": "Listar dispositivos"},
            {"ruta": "/api/devices/{deviceId}/pump", "método": "POST", "descripción": "Controlar bomba"},
            {"ruta": "/api/devices/{deviceId}/mode", "método": "PATCH", "descripción": "Modo automático/manual"},
            {"ruta": "/api/devices/{deviceId}/thresholds", "método": "PATCH", "descripción": "Umbrales de humedad"},
            {"ruta": "/api/sensor-data/data", "método": "GET", "descripción": "Lecturas con filtros"},
            {"ruta": "/api/sensor-data/latest", "método": "GET", "descripción": "Última lectura por dispositivo"},
            {"ruta": "/ws", "método": "WEBSOCKET", "descripción": "Actualizaciones en tiempo real"},
        ],
        "version": "1.0.0",
    }


@router.get("/health")
async def health(services: Services = Depends(get_services)):
    return {
        "ok": True,
        "mqtt": services.bridge.connected if services.bridge else False,
        "clientes": services.fanout.subscriber_count,
        "lecturas": services.readings.count(),
        "notificaciones_pendientes": services.notifier.pending,
    }


# Endpoints de dispositivos
@router.get("/api/devices", response_model=List[Device])
async def list_devices(services: Services = Depends(get_services)):
    return services.registry.list_devices()


@router.get("/api/devices/{device_id}", response_model=Device)
async def get_device(device_id: str, services: Services = Depends(get_services)):
    device = services.registry.find_by_device_id(device_id)
    if device is None:
        raise HTTPException(status_code=404, detail="Dispositivo no encontrado")
    return device


@router.post("/api/devices", response_model=Device)
async def save_device(body: DeviceCreateRequest, services: Services = Depends(get_services)):
    """Crea un dispositivo o actualiza uno existente."""
    current = services.registry.find_by_device_id(body.device_id)
    settings_ = current.settings if current else DeviceSettings()
    if body.settings is not None:
        settings_ = settings_.model_copy(update=body.settings.model_dump(exclude_none=True))
    return services.registry.save_device(body.device_id, body.name, body.location, settings_)


@router.patch("/api/devices/{device_id}/settings", response_model=Device)
async def update_settings(
    device_id: str, body: SettingsRequest, services: Services = Depends(get_services)
):
    device = services.registry.find_by_device_id(device_id)
    if device is None:
        raise HTTPException(status_code=404, detail="Dispositivo no encontrado")

    # Umbrales primero: si se rechazan no se aplica nada
    if body.moisture_threshold_low is not None or body.moisture_threshold_high is not None:
        device = _apply_thresholds(services.registry, device, body)
    if body.notifications_enabled is not None:
        device = services.registry.set_notifications(device_id, body.notifications_enabled)
    return device


@router.patch("/api/devices/{device_id}/mode", response_model=Device)
async def update_mode(
    device_id: str, body: ModeRequest, services: Services = Depends(get_services)
):
    return services.registry.set_mode(device_id, body.auto_mode)


@router.patch("/api/devices/{device_id}/thresholds", response_model=Device)
async def update_thresholds(
    device_id: str, body: ThresholdsRequest, services: Services = Depends(get_services)
):
    if body.moisture_threshold_low is None and body.moisture_threshold_high is None:
        raise HTTPException(
            status_code=400,
            detail="Se requiere moistureThresholdLow o moistureThresholdHigh",
        )
    device = services.registry.find_by_device_id(device_id)
    if device is None:
        raise HTTPException(status_code=404, detail="Dispositivo no encontrado")
    return _apply_thresholds(services.registry, device, body)


def _apply_thresholds(registry: DeviceRegistry, device: Device, body: ThresholdsRequest) -> Device:
    """Completa el umbral que falte con el valor actual."""
    low = body.moisture_threshold_low
    high = body.moisture_threshold_high
    return registry.set_thresholds(
        device.device_id,
        device.settings.moisture_threshold_low if low is None else low,
        device.settings.moisture_threshold_high if high is None else high,
    )


@router.post("/api/devices/{device_id}/pump", response_model=PumpAck)
async def control_pump(
    device_id: str, body: PumpControlRequest, services: Services = Depends(get_services)
):
    return await services.dispatcher.dispatch(device_id, body.status, body.auto_mode)


@router.delete("/api/devices/{device_id}")
async def delete_device(device_id: str, services: Services = Depends(get_services)):
    services.registry.delete(device_id)
    return {"mensaje": "Dispositivo eliminado correctamente"}


# Endpoints de lecturas
@router.get("/api/sensor-data/data")
async def get_sensor_data(
    limit: int = Query(50, ge=1, le=1000),
    device_id: Optional[str] = Query(None, alias="deviceId"),
    since: Optional[datetime] = Query(None, alias="from"),
    until: Optional[datetime] = Query(None, alias="to"),
    services: Services = Depends(get_services),
):
    """Lecturas para el dashboard, más recientes primero."""
    data = services.readings.query(device_id, since, until, limit)
    return {
        "success": True,
        "count": len(data),
        "data": [r.model_dump(mode="json", by_alias=True) for r in data],
    }


@router.get("/api/sensor-data/latest", response_model=List[StoredReading])
async def get_latest_readings(services: Services = Depends(get_services)):
    return services.readings.latest_per_device()


@router.get("/api/sensor-data/device/{device_id}", response_model=List[StoredReading])
async def get_device_readings(
    device_id: str,
    limit: int = Query(100, ge=1, le=1000),
    since: Optional[datetime] = Query(None, alias="from"),
    until: Optional[datetime] = Query(None, alias="to"),
    services: Services = Depends(get_services),
):
    return services.readings.query(device_id, since, until, limit)


# Endpoint simulador para probar sin ESP32 real
@router.get("/api/simulator/generate-data")
async def generate_simulated_data(services: Services = Depends(get_services)):
    """Genera lecturas simuladas como si vinieran del ESP32."""
    device_ids = [d.device_id for d in services.registry.list_devices()] or ["ESP32_DEMO"]

    results = []
    for device_id in device_ids:
        moisture = round(random.uniform(10.0, 80.0), 1)
        payload = {
            "device_id": device_id,
            "soil_moisture": moisture,
            "temperature": round(random.uniform(15.0, 35.0), 1),
            "humidity": round(random.uniform(30.0, 85.0), 1),
            "pump": moisture < 30.0,
        }
        state = await services.pipeline.ingest_message(TopicKind.PRIMARY_SENSOR, payload)
        results.append({"device_id": device_id, "simulated_data": payload, "estado": state.value})

    return {"simulation_results": results}


@router.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    services: Services = ws.app.state.services
    await ws.accept()
    services.fanout.subscribe(ws)
    try:
        while True:
            text = await ws.receive_text()
            try:
                message = json.loads(text)
            except json.JSONDecodeError:
                logger.warning("Mensaje WebSocket no es JSON válido")
                continue
            await services.fanout.handle_client_message(message)
    except WebSocketDisconnect:
        pass
    finally:
        services.fanout.unsubscribe(ws)


# Traducción de errores del dominio a respuestas HTTP
def _error(status_code: int):
    async def handler(request: Request, exc: Exception):
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    return handler


async def _invalid_request(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


def create_app(
    settings: Settings = settings, services: Optional[Services] = None
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc = services or build_services(settings)
        app.state.services = svc

        for name in settings.missing_critical():
            logger.warning(f"{name} no está configurado en .env")

        if svc.bridge is not None:
            svc.bridge.start(asyncio.get_running_loop())
        monitor = asyncio.create_task(
            svc.pipeline.monitor_liveness(settings.offline_sweep_seconds)
        )
        try:
            yield
        finally:
            monitor.cancel()
            with suppress(asyncio.CancelledError):
                await monitor
            if svc.bridge is not None:
                svc.bridge.stop()
            await svc.notifier.drain()

    app = FastAPI(title="Sistema de Riego Inteligente", lifespan=lifespan)

    # Configurar CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(RequestValidationError, _invalid_request)
    app.add_exception_handler(ValidationError, _error(400))
    app.add_exception_handler(DeviceNotFound, _error(404))
    app.add_exception_handler(TransportUnavailable, _error(500))
    app.add_exception_handler(StoreUnavailable, _error(503))

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=settings.port)
