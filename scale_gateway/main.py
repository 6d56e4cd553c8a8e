import os
from typing import Any, Optional
from contextlib import asynccontextmanager

from dotenv import load_dotenv

# Carga .env ANTES de importar servicios que leen variables en import
load_dotenv()

import httpx
import uvicorn
from fastapi import APIRouter, Body, Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from scale_gateway.errors import DownstreamError, ErrorKind, GatewayError, SinkError
from scale_gateway.schemas import BatchRequest, ScaleTarget
from scale_gateway.services.batch import read_all
from scale_gateway.services.ledger import MAX_ENTRIES, RegistrationLedger
from scale_gateway.services.reader import TIMEOUT_S, discover_scales, read_scale
from scale_gateway.services.resolver import clean_endpoint, discovery_url
from scale_gateway.services.sink import (
    DEFAULT_TABLES, ClientCredentialsProvider, DataverseSink, TokenCache,
)
from scale_gateway.services.validator import validate_registration
from scale_gateway.utils.log import get_logger
from scale_gateway.utils.timezone import now_utc_iso, parse_client_timestamp

logger = get_logger("scale_gateway")

# ───────────── Configuración desde ENV ─────────────
HOST               = os.getenv("HOST", "0.0.0.0")
PORT               = int(os.getenv("PORT", "3001"))
DEFAULT_SCALE_PORT = os.getenv("DEFAULT_SCALE_PORT", "8000")
SERVICE_NAME       = os.getenv("SERVICE_NAME", "scale-monitor-api")
API_VERSION        = "1.0.0"

DATAVERSE_URL           = os.getenv("DATAVERSE_URL", "")
DATAVERSE_TENANT_ID     = os.getenv("DATAVERSE_TENANT_ID", "")
DATAVERSE_CLIENT_ID     = os.getenv("DATAVERSE_CLIENT_ID", "")
DATAVERSE_CLIENT_SECRET = os.getenv("DATAVERSE_CLIENT_SECRET", "")
DATAVERSE_SCOPE         = os.getenv("DATAVERSE_SCOPE", "")
DATAVERSE_TABLES        = os.getenv("DATAVERSE_TABLES", "")

AVAILABLE_ENDPOINTS = [
    "GET /health",
    "GET /api/v1/docs",
    "GET /api/v1/weight/:endpoint/:scaleName",
    "POST /api/v1/weight/batch",
    "GET /api/v1/discover/:endpoint",
    "POST /api/v1/register-weight",
    "GET /api/v1/registrations",
    "GET /api/v1/registrations/stats",
    "POST /api/v1/registrations/:id/forward",
]

ERROR_MESSAGES = {
    ErrorKind.DOWNSTREAM_UNREACHABLE: "Failed to fetch scale data",
    ErrorKind.PARSE_ERROR:            "Failed to fetch scale data",
    ErrorKind.MISSING_FIELD:          "Missing required fields: scale_name, weight, sscc_number",
    ErrorKind.INVALID_SSCC_FORMAT:    "Invalid SSCC format. Must be exactly 20 digits",
    ErrorKind.INVALID_WEIGHT:         "Invalid weight. Must be a positive number",
    ErrorKind.SINK_NOT_CONFIGURED:    "Ledger sink not configured",
    ErrorKind.SINK_SCHEMA_NOT_FOUND:  "Ledger sink schema not found",
    ErrorKind.SINK_AUTH_EXPIRED:      "Ledger sink authentication expired",
    ErrorKind.SINK_REJECTED:          "Ledger sink rejected the registration",
}

STATUS_BY_KIND = {
    ErrorKind.DOWNSTREAM_UNREACHABLE: 500,
    ErrorKind.PARSE_ERROR:            500,
    ErrorKind.MISSING_FIELD:          400,
    ErrorKind.INVALID_SSCC_FORMAT:    400,
    ErrorKind.INVALID_WEIGHT:         400,
    ErrorKind.SINK_NOT_CONFIGURED:    503,
    ErrorKind.SINK_SCHEMA_NOT_FOUND:  502,
    ErrorKind.SINK_AUTH_EXPIRED:      401,
    ErrorKind.SINK_REJECTED:          502,
}

# ───────────── Dependencias (estado de la app) ─────────────
def get_http(request: Request) -> httpx.AsyncClient:
    return request.app.state.http

def get_ledger(request: Request) -> RegistrationLedger:
    return request.app.state.ledger

def get_sink(request: Request) -> Optional[DataverseSink]:
    return request.app.state.sink

def build_sink(client: httpx.AsyncClient) -> Optional[DataverseSink]:
    if not (DATAVERSE_URL and DATAVERSE_TENANT_ID and DATAVERSE_CLIENT_ID):
        logger.info("Ledger sink no configurado (DATAVERSE_URL / DATAVERSE_TENANT_ID / DATAVERSE_CLIENT_ID)")
        return None
    provider = ClientCredentialsProvider(
        tenant_id=DATAVERSE_TENANT_ID,
        client_id=DATAVERSE_CLIENT_ID,
        client_secret=DATAVERSE_CLIENT_SECRET,
        scope=DATAVERSE_SCOPE or f"{DATAVERSE_URL.rstrip('/')}/.default",
    )
    tables = [t.strip() for t in DATAVERSE_TABLES.split(",") if t.strip()] or DEFAULT_TABLES
    logger.info(f"Ledger sink -> {DATAVERSE_URL} (tablas candidatas={len(tables)})")
    return DataverseSink(client, DATAVERSE_URL, TokenCache(provider), tables=tables)

# ───────────── Endpoints ─────────────
router = APIRouter()

@router.get("/health")
async def health():
    return {"status": "ok", "timestamp": now_utc_iso(), "service": SERVICE_NAME}

@router.get("/api/v1/docs")
async def api_docs(request: Request):
    return {
        "title": "Scale Monitor API",
        "version": API_VERSION,
        "base_url": str(request.base_url).rstrip("/"),
        "endpoints": {
            "GET /health": "Health check",
            "GET /api/v1/weight/:endpoint/:scaleName": {
                "description": "Get weight reading from a specific scale",
                "parameters": {
                    "endpoint": "IP address or FQDN of the scale server",
                    "scaleName": "Name of the scale",
                    "port": f"Port number (optional, default: {DEFAULT_SCALE_PORT})",
                },
                "example": f"/api/v1/weight/192.168.1.100/scale_left?port={DEFAULT_SCALE_PORT}",
            },
            "POST /api/v1/weight/batch": {
                "description": "Get weight readings from multiple scales",
                "body": {
                    "scales": [
                        {"endpoint": "192.168.1.100", "scaleName": "scale_left"},
                        {"endpoint": "192.168.1.101", "scaleName": "scale_right", "customPort": "8001"},
                    ],
                    "port": DEFAULT_SCALE_PORT,
                },
            },
            "GET /api/v1/discover/:endpoint": {
                "description": "Discover available scales on an endpoint",
                "parameters": {
                    "endpoint": "IP address or FQDN of the scale server",
                    "port": f"Port number (optional, default: {DEFAULT_SCALE_PORT})",
                },
            },
            "POST /api/v1/register-weight": {
                "description": "Register a weight against an SSCC scanned by a barcode reader",
                "body": {
                    "scale_name": "scale_left",
                    "weight": 12.3,
                    "sscc_number": "00123456789012345678",
                    "timestamp": "2024-01-01T12:00:00.000Z",
                    "source": "barcode_scanner",
                    "raspberry_ip": "192.168.1.100",
                },
            },
            "GET /api/v1/registrations": "List registrations (limit, scale_name, status)",
            "GET /api/v1/registrations/stats": "Registration statistics",
            "POST /api/v1/registrations/:id/forward": "Forward a registration to the ledger sink",
        },
    }

@router.get("/api/v1/weight/{endpoint}/{scale_name}")
async def weight_single(endpoint: str, scale_name: str, port: Optional[str] = None,
                        client: httpx.AsyncClient = Depends(get_http)):
    target = ScaleTarget(endpoint=endpoint, scale_name=scale_name, port=port or DEFAULT_SCALE_PORT)
    outcome = await read_scale(client, target, TIMEOUT_S)

    if outcome.success:
        return {"success": True, "data": outcome.model_dump(mode="json", exclude={"success"})}
    return JSONResponse(status_code=500, content={
        "success": False,
        "error": ERROR_MESSAGES[outcome.error_kind],
        "details": outcome.error,
        "scale_name": outcome.scale_name,
        "endpoint": outcome.endpoint,
        "target_url": outcome.target_url,
        "timestamp": now_utc_iso(),
    })

@router.post("/api/v1/weight/batch")
async def weight_batch(req: BatchRequest, client: httpx.AsyncClient = Depends(get_http)):
    """
    Lee VARIAS balanzas en paralelo. Los fallos individuales van en results,
    nunca hacen fallar el lote.
    """
    summary = await read_all(client, req.targets(DEFAULT_SCALE_PORT), TIMEOUT_S)
    return {
        "success": True,
        "total_scales": summary.total,
        "successful_readings": summary.successful,
        "failed_readings": summary.failed,
        "results": [r.model_dump(mode="json") for r in summary.results],
        "timestamp": now_utc_iso(),
    }

@router.get("/api/v1/discover/{endpoint}")
async def discover(endpoint: str, port: Optional[str] = None,
                   client: httpx.AsyncClient = Depends(get_http)):
    port = port or DEFAULT_SCALE_PORT
    try:
        scales = await discover_scales(client, endpoint, port, TIMEOUT_S)
    except DownstreamError as e:
        logger.warning(f"[DISCOVER] Error descubriendo balanzas en {e.target_url}: {e.detail}")
        return JSONResponse(status_code=500, content={
            "success": False,
            "error": "Failed to discover scales",
            "details": e.detail,
            "endpoint": clean_endpoint(endpoint),
            "target_url": discovery_url(endpoint, port),
            "timestamp": now_utc_iso(),
        })
    return {
        "success": True,
        "endpoint": clean_endpoint(endpoint),
        "scales": scales,
        "timestamp": now_utc_iso(),
    }

@router.post("/api/v1/register-weight")
async def register_weight(request: Request, payload: Any = Body(None),
                          ledger: RegistrationLedger = Depends(get_ledger)):
    validated = validate_registration(payload if payload is not None else {})

    scan_timestamp = parse_client_timestamp(payload.get("timestamp"))
    if scan_timestamp is None and payload.get("timestamp"):
        logger.warning(f"[REGISTER] timestamp ilegible {payload.get('timestamp')!r}, se usa la hora de recepción")
    client_ip = request.client.host if request.client else "unknown"

    registration = ledger.append(
        validated,
        source=str(payload.get("source") or "unknown"),
        raspberry_ip=str(payload.get("raspberry_ip") or client_ip),
        scan_timestamp=scan_timestamp,
    )
    return {
        "success": True,
        "registration_id": registration.id,
        "scale_name": registration.scale_name,
        "weight": registration.weight,
        "sscc_number": registration.sscc_number,
        "processed_at": registration.model_dump(mode="json")["processed_at"],
        "message": "Weight registration processed successfully",
    }

@router.get("/api/v1/registrations")
async def list_registrations(limit: int = 50, scale_name: Optional[str] = None, status: Optional[str] = None,
                             ledger: RegistrationLedger = Depends(get_ledger)):
    registrations = ledger.query(limit=limit, scale_name=scale_name or None, status=status or None)
    return {
        "success": True,
        "registrations": [r.model_dump(mode="json") for r in registrations],
        "total_count": len(ledger),
        "filtered_count": len(registrations),
        "timestamp": now_utc_iso(),
    }

@router.get("/api/v1/registrations/stats")
async def registration_stats(ledger: RegistrationLedger = Depends(get_ledger)):
    return {
        "success": True,
        "stats": ledger.stats().model_dump(mode="json"),
        "timestamp": now_utc_iso(),
    }

@router.post("/api/v1/registrations/{registration_id}/forward")
async def forward_registration(registration_id: str,
                               ledger: RegistrationLedger = Depends(get_ledger),
                               sink: Optional[DataverseSink] = Depends(get_sink)):
    """
    Envía un registro ya admitido al sistema externo. Un fallo aquí no
    toca el ledger: el registro sigue admitido.
    """
    registration = ledger.get(registration_id)
    if registration is None:
        return JSONResponse(status_code=404, content={
            "success": False,
            "error": "Registration not found",
            "registration_id": registration_id,
            "timestamp": now_utc_iso(),
        })
    if sink is None:
        raise SinkError(ErrorKind.SINK_NOT_CONFIGURED, "DATAVERSE_URL / credentials not set")

    receipt = await sink.submit(registration)
    return {
        "success": True,
        "registration_id": registration.id,
        "remote_id": receipt.remote_id,
        "table": receipt.table,
        "timestamp": now_utc_iso(),
    }

# ───────────── Manejo de errores ─────────────
async def validation_error_handler(request: Request, exc: RequestValidationError):
    if request.url.path == "/api/v1/weight/batch":
        message = "Invalid request body. Expected 'scales' array with {endpoint, scaleName} objects"
    else:
        message = "Invalid request"
    logger.info(f"400 {request.method} {request.url.path}: {message}")
    return JSONResponse(status_code=400, content={
        "success": False,
        "error": message,
        "details": jsonable_encoder(exc.errors()),
        "timestamp": now_utc_iso(),
    })

async def gateway_error_handler(request: Request, exc: GatewayError):
    status = STATUS_BY_KIND.get(exc.kind, 500)
    logger.warning(f"{status} {request.method} {request.url.path}: {exc.kind.value} {exc.detail}")
    return JSONResponse(status_code=status, content={
        "success": False,
        "error": ERROR_MESSAGES.get(exc.kind, exc.kind.value),
        "error_kind": exc.kind.value,
        "details": exc.detail,
        "timestamp": now_utc_iso(),
    })

async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        return JSONResponse(status_code=404, content={
            "success": False,
            "error": "Endpoint not found",
            "available_endpoints": AVAILABLE_ENDPOINTS,
            "timestamp": now_utc_iso(),
        })
    return JSONResponse(status_code=exc.status_code, content={
        "success": False,
        "error": exc.detail,
        "timestamp": now_utc_iso(),
    })

async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Error no controlado en {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={
        "success": False,
        "error": "Internal server error",
        "timestamp": now_utc_iso(),
    })

# ───────────── App (lifespan) ─────────────
def create_app(ledger: Optional[RegistrationLedger] = None,
               http_client: Optional[httpx.AsyncClient] = None,
               sink: Optional[DataverseSink] = None) -> FastAPI:
    """
    Construye la app. El ledger, el cliente HTTP y el sink se inyectan para
    que los tests usen instancias aisladas; si no se pasan se crean aquí.
    """
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_client = http_client is None
        client = httpx.AsyncClient() if owns_client else http_client
        app.state.http = client
        app.state.sink = sink if sink is not None else build_sink(client)
        logger.info(f"Iniciando {SERVICE_NAME} -- puerto balanzas por defecto {DEFAULT_SCALE_PORT}, "
                    f"timeout {TIMEOUT_S:g}s, ledger max {app.state.ledger.max_entries}")
        try:
            yield
        finally:
            if owns_client:
                await client.aclose()
            logger.info(f"{SERVICE_NAME} detenido")

    app = FastAPI(title="Scale Monitor API", version=API_VERSION, lifespan=lifespan)
    app.state.ledger = ledger if ledger is not None else RegistrationLedger(MAX_ENTRIES)
    app.include_router(router)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(GatewayError, gateway_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
    return app

app = create_app()

if __name__ == "__main__":
    uvicorn.run(app, host=HOST, port=PORT)
