from datetime import datetime, timezone

def utc_now() -> datetime:
    """Instante actual en UTC (aware)."""
    return datetime.now(timezone.utc)

def to_iso_z(value: datetime) -> str:
    """ISO-8601 con milisegundos y sufijo 'Z', igual que Date.toISOString()."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")

def now_utc_iso() -> str:
    """Fecha/hora UTC en ISO con milisegundos."""
    return to_iso_z(utc_now())

def parse_client_timestamp(raw) -> datetime | None:
    """
    Interpreta el timestamp enviado por el lector (ISO-8601, admite 'Z').
    Devuelve None si no viene o no se puede interpretar.
    """
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        parsed = raw
    else:
        try:
            parsed = datetime.fromisoformat(str(raw).strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    # fuera de rango al pasar a UTC (p. ej. año 1 con offset positivo)
    try:
        return parsed.astimezone(timezone.utc)
    except (ValueError, OverflowError):
        return None
