import os
import re
import time
import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import httpx

from scale_gateway.errors import ErrorKind, SinkError
from scale_gateway.schemas import Registration, SinkReceipt
from scale_gateway.utils.log import get_logger

logger = get_logger("scale_gateway")

SINK_TIMEOUT_S   = float(os.getenv("SINK_TIMEOUT_S", "15"))
TOKEN_MARGIN_S   = 60.0
API_PATH         = "/api/data/v9.2"
AUTHORITY        = "https://login.microsoftonline.com"

# Nombres posibles de la tabla remota, en orden de probabilidad
DEFAULT_TABLES = [
    "cr417_bc_weightregistrations",
    "cr417_BC_WeightRegistrations",
    "cr417_weightregistrations",
    "cr417_weightregistration",
    "cr417_bc_weightregistration",
    "BC_WeightRegistrations",
    "weightregistrations",
]

# Variantes de nombres de columna (sscc, weight)
DEFAULT_FIELD_VARIANTS: List[Dict[str, str]] = [
    {"sscc": "cr417_sscc_no", "weight": "cr417_weight"},
    {"sscc": "cr417_SSCC_No", "weight": "cr417_Weight"},
    {"sscc": "cr417_SSCC_NO", "weight": "cr417_WEIGHT"},
    {"sscc": "sscc_no",       "weight": "weight"},
]

ODATA_HEADERS = {
    "Accept": "application/json",
    "OData-MaxVersion": "4.0",
    "OData-Version": "4.0",
}

_ENTITY_ID_RE = re.compile(r"\(([^)]+)\)")

# Devuelve (access_token, expires_in en segundos)
CredentialProvider = Callable[[httpx.AsyncClient], Awaitable[Tuple[str, float]]]

class ClientCredentialsProvider:
    """Obtiene un token OAuth2 (client credentials) del directorio de Azure AD."""

    def __init__(self, tenant_id: str, client_id: str, client_secret: str, scope: str,
                 authority: str = AUTHORITY):
        self.token_url = f"{authority}/{tenant_id}/oauth2/v2.0/token"
        self.client_id = client_id
        self.client_secret = client_secret
        self.scope = scope

    async def __call__(self, client: httpx.AsyncClient) -> Tuple[str, float]:
        try:
            resp = await client.post(
                self.token_url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "scope": self.scope,
                },
                timeout=SINK_TIMEOUT_S,
            )
        except httpx.HTTPError as e:
            raise SinkError(ErrorKind.SINK_AUTH_EXPIRED, f"Token endpoint unreachable: {e}") from e
        if not resp.is_success:
            raise SinkError(ErrorKind.SINK_AUTH_EXPIRED, f"Token request failed: HTTP {resp.status_code}")
        try:
            body = resp.json()
            return body["access_token"], float(body.get("expires_in", 3600))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise SinkError(ErrorKind.SINK_AUTH_EXPIRED, "Malformed token response") from e

class TokenCache:
    """
    Guarda el token con su vencimiento y lo reutiliza hasta que caduca
    (menos un margen); el siguiente get() lo vuelve a pedir.
    """

    def __init__(self, provider: CredentialProvider, margin_s: float = TOKEN_MARGIN_S,
                 clock: Callable[[], float] = time.monotonic):
        self._provider = provider
        self._margin_s = margin_s
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    @property
    def valid(self) -> bool:
        return self._token is not None and self._clock() < self._expires_at

    async def get(self, client: httpx.AsyncClient) -> str:
        async with self._lock:
            if self.valid:
                return self._token
            logger.info("[SINK] Solicitando token de acceso")
            token, expires_in = await self._provider(client)
            self._token = token
            self._expires_at = self._clock() + max(float(expires_in) - self._margin_s, 0.0)
            return token

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0.0

def _remote_id(resp: httpx.Response, table: str) -> Optional[str]:
    try:
        body = resp.json() if resp.content else {}
    except ValueError:
        body = {}
    if isinstance(body, dict):
        rid = body.get(f"{table}id") or body.get("id")
        if rid:
            return str(rid)
    for header in ("OData-EntityId", "Location"):
        value = resp.headers.get(header)
        if value:
            match = _ENTITY_ID_RE.search(value)
            return match.group(1) if match else value
    return None

class DataverseSink:
    """
    Reenvía un registro ya admitido al sistema de registro externo (OData).

    El esquema remoto no es fijo: prueba una lista ordenada de nombres de
    tabla y de columnas, y recuerda la primera combinación que funciona
    durante el resto de la sesión. Nunca modifica el ledger local.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        credentials: TokenCache,
        tables: Sequence[str] = DEFAULT_TABLES,
        field_variants: Sequence[Dict[str, str]] = DEFAULT_FIELD_VARIANTS,
        timeout: float = SINK_TIMEOUT_S,
    ):
        if not tables:
            raise ValueError("Se necesita al menos un nombre de tabla candidato")
        self._client = client
        self._api = base_url.rstrip("/") + API_PATH
        self._credentials = credentials
        self._tables = list(tables)
        self._field_variants = [dict(v) for v in field_variants]
        self._timeout = timeout
        self.table: Optional[str] = None
        self.fields: Optional[Dict[str, str]] = None

    def reset_schema_cache(self) -> None:
        self.table = None
        self.fields = None

    def _auth_expired(self, detail: str) -> SinkError:
        self._credentials.invalidate()
        logger.warning(f"[SINK] Autenticación rechazada: {detail}")
        return SinkError(ErrorKind.SINK_AUTH_EXPIRED, "Authentication expired. Please login again.")

    async def _headers(self) -> Dict[str, str]:
        token = await self._credentials.get(self._client)
        return {**ODATA_HEADERS, "Authorization": f"Bearer {token}"}

    async def find_table(self) -> str:
        if self.table:
            return self.table

        headers = await self._headers()
        answered = False
        last_error = None
        for name in self._tables:
            try:
                resp = await self._client.get(f"{self._api}/{name}", params={"$top": "1"},
                                              headers=headers, timeout=self._timeout)
            except httpx.HTTPError as e:
                last_error = str(e) or e.__class__.__name__
                logger.info(f"[SINK] Tabla {name}: sin respuesta ({last_error})")
                continue
            answered = True
            if resp.status_code == 401:
                raise self._auth_expired(f"table lookup {name}")
            if resp.is_success:
                logger.info(f"[SINK] Tabla encontrada: {name}")
                self.table = name
                return name
            logger.info(f"[SINK] Tabla {name} no disponible (HTTP {resp.status_code})")

        if not answered:
            raise SinkError(ErrorKind.SINK_REJECTED, f"Ledger sink unreachable: {last_error}")
        raise SinkError(
            ErrorKind.SINK_SCHEMA_NOT_FOUND,
            f"None of the candidate tables exist: {', '.join(self._tables)}",
        )

    def _variants(self) -> List[Dict[str, str]]:
        if self.fields is None:
            return self._field_variants
        return [self.fields] + [v for v in self._field_variants if v != self.fields]

    async def submit(self, registration: Registration) -> SinkReceipt:
        table = await self.find_table()
        headers = {**await self._headers(), "Content-Type": "application/json",
                   "Prefer": "return=representation"}

        last_error = None
        for attempt, fields in enumerate(self._variants(), start=1):
            payload = {
                fields["sscc"]: registration.sscc_number,
                fields["weight"]: registration.weight,
            }
            try:
                resp = await self._client.post(f"{self._api}/{table}", json=payload,
                                               headers=headers, timeout=self._timeout)
            except httpx.HTTPError as e:
                last_error = str(e) or e.__class__.__name__
                logger.info(f"[SINK] Intento {attempt} fallido ({fields}): {last_error}")
                continue

            if resp.is_success:
                self.fields = fields
                remote_id = _remote_id(resp, table)
                logger.info(f"[SINK] {registration.id} enviado a {table} remote_id={remote_id}")
                return SinkReceipt(remote_id=remote_id, table=table, fields=fields)
            if resp.status_code == 401:
                raise self._auth_expired(f"POST {table}")
            if resp.status_code == 404:
                # la tabla cacheada ya no existe: se vuelve a descubrir en el próximo envío
                self.reset_schema_cache()
                raise SinkError(ErrorKind.SINK_SCHEMA_NOT_FOUND, f'Table "{table}" not found')

            last_error = f"HTTP {resp.status_code}: {resp.text}"
            logger.info(f"[SINK] Intento {attempt} fallido ({fields}): {last_error}")

        raise SinkError(
            ErrorKind.SINK_REJECTED,
            f"Failed to submit after trying all field name variations. Last error: {last_error}",
        )
