from enum import Enum


class ErrorKind(str, Enum):
    # Lectura de balanzas
    DOWNSTREAM_UNREACHABLE = "DownstreamUnreachable"
    PARSE_ERROR            = "ParseError"
    # Validación de registros
    MISSING_FIELD          = "MissingField"
    INVALID_SSCC_FORMAT    = "InvalidSSCCFormat"
    INVALID_WEIGHT         = "InvalidWeight"
    # Sistema externo (ledger sink)
    SINK_NOT_CONFIGURED    = "SinkNotConfigured"
    SINK_SCHEMA_NOT_FOUND  = "SinkSchemaMismatch"
    SINK_AUTH_EXPIRED      = "SinkAuthExpired"
    SINK_REJECTED          = "SinkRejected"


class GatewayError(Exception):
    """Error de dominio: un tipo cerrado (ErrorKind) más un detalle libre."""

    def __init__(self, kind: ErrorKind, detail: str):
        super().__init__(f"{kind.value}: {detail}")
        self.kind = kind
        self.detail = detail


class DownstreamError(GatewayError):
    """Fallo hablando con una balanza (red, timeout, status, cuerpo ilegible)."""

    def __init__(self, kind: ErrorKind, detail: str, target_url: str):
        super().__init__(kind, detail)
        self.target_url = target_url


class RegistrationError(GatewayError):
    pass


class SinkError(GatewayError):
    pass
