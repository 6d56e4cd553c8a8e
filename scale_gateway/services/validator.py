import re
import math
from typing import Any, Mapping

from scale_gateway.errors import ErrorKind, RegistrationError
from scale_gateway.schemas import ValidatedRegistration

REQUIRED_FIELDS = ("scale_name", "weight", "sscc_number")
SSCC_LENGTH = 20
_SSCC_RE = re.compile(r"[0-9]{%d}" % SSCC_LENGTH)

def _missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())

def _parse_weight(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        weight = float(value.strip() if isinstance(value, str) else value)
    except (TypeError, ValueError):
        return None
    return weight if math.isfinite(weight) else None

def validate_registration(candidate: Mapping[str, Any]) -> ValidatedRegistration:
    """
    Valida un registro entrante antes de admitirlo en el ledger. Orden fijo,
    se detiene en el primer fallo:
      1. presencia de scale_name, weight, sscc_number  → MISSING_FIELD
      2. sscc_number con exactamente 20 dígitos         → INVALID_SSCC_FORMAT
      3. weight numérico y > 0                          → INVALID_WEIGHT
    """
    if not isinstance(candidate, Mapping):
        raise RegistrationError(ErrorKind.MISSING_FIELD, "El cuerpo debe ser un objeto JSON")

    missing = [f for f in REQUIRED_FIELDS if _missing(candidate.get(f))]
    if missing:
        raise RegistrationError(ErrorKind.MISSING_FIELD, f"Faltan campos obligatorios: {', '.join(missing)}")

    sscc = str(candidate["sscc_number"]).strip()
    if not _SSCC_RE.fullmatch(sscc):
        raise RegistrationError(
            ErrorKind.INVALID_SSCC_FORMAT,
            f"SSCC debe tener exactamente {SSCC_LENGTH} dígitos, recibidos {len(sscc)} caracteres",
        )

    weight = _parse_weight(candidate["weight"])
    if weight is None or weight <= 0:
        raise RegistrationError(
            ErrorKind.INVALID_WEIGHT,
            f"El peso debe ser un número positivo, recibido {candidate['weight']!r}",
        )

    return ValidatedRegistration(
        scale_name=str(candidate["scale_name"]).strip(),
        weight=weight,
        sscc_number=sscc,
    )
