import os
import math
import time
import asyncio
from typing import Any, Tuple

import httpx

from scale_gateway.errors import DownstreamError, ErrorKind
from scale_gateway.schemas import DEFAULT_PORT, Port, ReadFailure, ReadOutcome, ScaleTarget, WeightReading
from scale_gateway.services.resolver import clean_endpoint, discovery_url, target_url
from scale_gateway.utils.log import get_logger
from scale_gateway.utils.timezone import utc_now

logger = get_logger("scale_gateway")

# Timeout por llamada a una balanza (segundos). Se lee una vez del entorno.
TIMEOUT_S = float(os.getenv("SCALE_TIMEOUT_S", "5"))

def _as_number(value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError(f"peso no numérico: {value!r}")
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        number = float(value.strip())
    else:
        raise ValueError(f"peso no numérico: {value!r}")
    if not math.isfinite(number):
        raise ValueError(f"peso no finito: {value!r}")
    return number

def extract_weight(body: Any) -> Tuple[float, str]:
    """
    Extrae (peso, unidad) de la respuesta de la balanza en dos pasos:
      1. objeto con campo 'weight'  → {"weight": 12.3, "unit": "kg"}
      2. cuerpo completo como número → 12.3  (o "12.3")
    Si ninguno produce un número lanza ValueError. La unidad por defecto es "kg".
    """
    if isinstance(body, dict):
        if "weight" not in body:
            raise ValueError("respuesta sin campo 'weight'")
        unit = body.get("unit") or "kg"
        return _as_number(body["weight"]), str(unit)
    return _as_number(body), "kg"

def _failure(target: ScaleTarget, endpoint: str, url: str, kind: ErrorKind, message: str) -> ReadFailure:
    return ReadFailure(
        scale_name=target.scale_name,
        endpoint=endpoint,
        target_url=url,
        error=message,
        error_kind=kind,
        timestamp=utc_now(),
    )

async def _get(client: httpx.AsyncClient, url: str, timeout: float) -> httpx.Response:
    """GET acotado: timeout de httpx más un wait_for externo por si la conexión se cuelga."""
    try:
        return await asyncio.wait_for(client.get(url, timeout=timeout), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise DownstreamError(ErrorKind.DOWNSTREAM_UNREACHABLE, f"Timed out after {timeout:g}s", url) from e
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        raise DownstreamError(ErrorKind.DOWNSTREAM_UNREACHABLE, str(e) or e.__class__.__name__, url) from e

async def read_scale(client: httpx.AsyncClient, target: ScaleTarget, timeout: float = TIMEOUT_S) -> ReadOutcome:
    """
    Una lectura de peso con tiempo acotado. Nunca lanza: cualquier fallo
    (red, timeout, status != 2xx, cuerpo ilegible) se devuelve como ReadFailure.
    """
    url = target_url(target)
    endpoint = clean_endpoint(target.endpoint)
    tag = f"[{target.scale_name}@{endpoint}]"

    start = time.monotonic()
    try:
        response = await _get(client, url, timeout)
        if not response.is_success:
            raise DownstreamError(
                ErrorKind.DOWNSTREAM_UNREACHABLE,
                f"Scale responded with status: {response.status_code}",
                url,
            )
        try:
            weight, unit = extract_weight(response.json())
        except ValueError as e:
            raise DownstreamError(ErrorKind.PARSE_ERROR, f"Unreadable weight payload: {e}", url) from e
    except DownstreamError as e:
        logger.warning(f"{tag} Lectura fallida ({e.kind.value}) url={url}: {e.detail}")
        return _failure(target, endpoint, url, e.kind, e.detail)
    except Exception as e:
        logger.exception(f"{tag} Error inesperado leyendo {url}")
        return _failure(target, endpoint, url, ErrorKind.DOWNSTREAM_UNREACHABLE, str(e) or e.__class__.__name__)

    elapsed_ms = int(round((time.monotonic() - start) * 1000))
    logger.info(f"{tag} {weight} {unit} en {elapsed_ms} ms")
    return WeightReading(
        weight=weight,
        unit=unit,
        scale_name=target.scale_name,
        endpoint=endpoint,
        timestamp=utc_now(),
        response_time_ms=elapsed_ms,
    )

async def discover_scales(client: httpx.AsyncClient, endpoint: str, port: Port = DEFAULT_PORT,
                          timeout: float = TIMEOUT_S) -> Any:
    """
    Proxy de GET /scales de un equipo. Devuelve el listado tal cual lo decodifica.
    Lanza DownstreamError si el equipo no responde o la respuesta no es JSON.
    """
    url = discovery_url(endpoint, port)
    response = await _get(client, url, timeout)
    if not response.is_success:
        raise DownstreamError(
            ErrorKind.DOWNSTREAM_UNREACHABLE,
            f"Endpoint responded with status: {response.status_code}",
            url,
        )
    try:
        scales = response.json()
    except ValueError as e:
        raise DownstreamError(ErrorKind.PARSE_ERROR, f"Unreadable scale listing: {e}", url) from e
    logger.info(f"[DISCOVER] {clean_endpoint(endpoint)}:{port} respondió con listado de balanzas")
    return scales
