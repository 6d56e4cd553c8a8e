from enum import Enum
from datetime import datetime
from typing import Optional, List, Dict, Union, Literal, Annotated
from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, field_validator

from scale_gateway.errors import ErrorKind
from scale_gateway.utils.timezone import to_iso_z

SSCC_PATTERN = r"^[0-9]{20}$"
DEFAULT_PORT = "8000"

# Fechas siempre en UTC con milisegundos y 'Z' al serializar a JSON
IsoDatetime = Annotated[datetime, PlainSerializer(to_iso_z, return_type=str, when_used="json")]
Port        = Union[int, str]

# ───────────── Lecturas de balanzas ─────────────
class ScaleTarget(BaseModel):
    model_config = ConfigDict(frozen=True)

    endpoint: str   = Field(...)
    scale_name: str = Field(..., min_length=1)
    port: str       = DEFAULT_PORT

    @field_validator("port", mode="before")
    @classmethod
    def port_as_str(cls, v) -> str:
        # acepta 8000 o "8000"; el host/puerto no se valida aquí
        return DEFAULT_PORT if v is None or v == "" else str(v)

class BatchScale(BaseModel):
    """Elemento de /api/v1/weight/batch tal como llega por el cable."""
    endpoint: str  = Field(...)
    scaleName: str = Field(..., min_length=1)
    customPort: Optional[Port] = None

class BatchRequest(BaseModel):
    scales: List[BatchScale]
    port: Optional[Port] = None

    def targets(self, default_port: Port = DEFAULT_PORT) -> List[ScaleTarget]:
        base_port = self.port or default_port
        return [
            ScaleTarget(endpoint=s.endpoint, scale_name=s.scaleName, port=s.customPort or base_port)
            for s in self.scales
        ]

class WeightReading(BaseModel):
    success: Literal[True] = True
    weight: float
    unit: str = "kg"
    scale_name: str
    endpoint: str
    timestamp: IsoDatetime
    response_time_ms: int = Field(..., ge=0)

class ReadFailure(BaseModel):
    success: Literal[False] = False
    scale_name: str
    endpoint: str
    target_url: str
    error: str
    error_kind: ErrorKind
    timestamp: IsoDatetime

ReadOutcome = Union[WeightReading, ReadFailure]

class BatchSummary(BaseModel):
    total: int
    successful: int
    failed: int
    results: List[ReadOutcome] = Field(default_factory=list)

# ───────────── Registros peso ↔ SSCC ─────────────
class RegistrationStatus(str, Enum):
    PROCESSED = "processed"

class ValidatedRegistration(BaseModel):
    model_config = ConfigDict(frozen=True)

    scale_name: str  = Field(..., min_length=1)
    weight: float    = Field(..., gt=0)
    sscc_number: str = Field(..., pattern=SSCC_PATTERN)

class Registration(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    scale_name: str
    weight: float    = Field(..., gt=0)
    sscc_number: str = Field(..., pattern=SSCC_PATTERN)
    source: str
    raspberry_ip: str
    scan_timestamp: IsoDatetime
    processed_at: IsoDatetime
    status: RegistrationStatus = RegistrationStatus.PROCESSED

class LedgerStats(BaseModel):
    total: int
    last_24h: int
    last_hour: int
    by_scale: Dict[str, int] = Field(default_factory=dict)
    by_status: Dict[str, int] = Field(default_factory=dict)
    latest: Optional[Registration] = None

class SinkReceipt(BaseModel):
    remote_id: Optional[str] = None
    table: str
    fields: Dict[str, str]
