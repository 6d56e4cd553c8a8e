import re

from scale_gateway.schemas import DEFAULT_PORT, Port, ScaleTarget

_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)

def clean_endpoint(raw: str) -> str:
    """Quita el prefijo http:// o https://. No valida que lo restante sea un host."""
    return _SCHEME_RE.sub("", raw.strip())

def weight_url(endpoint: str, scale_name: str, port: Port = DEFAULT_PORT) -> str:
    return f"http://{clean_endpoint(endpoint)}:{port}/scales/{scale_name}/weight"

def discovery_url(endpoint: str, port: Port = DEFAULT_PORT) -> str:
    return f"http://{clean_endpoint(endpoint)}:{port}/scales"

def target_url(target: ScaleTarget) -> str:
    return weight_url(target.endpoint, target.scale_name, target.port)
