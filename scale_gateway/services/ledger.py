import os
import time
import threading
from uuid import uuid4
from collections import Counter, deque
from datetime import datetime, timedelta
from typing import Callable, Deque, List, Optional

from scale_gateway.schemas import LedgerStats, Registration, RegistrationStatus, ValidatedRegistration
from scale_gateway.utils.log import get_logger
from scale_gateway.utils.timezone import utc_now

logger = get_logger("scale_gateway")

MAX_ENTRIES = int(os.getenv("LEDGER_MAX_ENTRIES", "1000"))

def new_registration_id() -> str:
    """reg_<epoch ms>_<sufijo aleatorio>: único aunque lleguen dos en el mismo milisegundo."""
    return f"reg_{int(time.time() * 1000)}_{uuid4().hex[:12]}"

class RegistrationLedger:
    """
    Historial en memoria de registros peso ↔ SSCC, del más nuevo al más viejo,
    con capacidad fija: al superar max_entries se descartan los más antiguos.

    Un único escritor a la vez (append); query/stats copian las referencias
    bajo el mismo lock y trabajan sobre esa foto. El lock nunca se mantiene
    durante I/O ni durante el filtrado.
    """

    def __init__(self, max_entries: int = MAX_ENTRIES, clock: Callable[[], datetime] = utc_now):
        if max_entries <= 0:
            raise ValueError("max_entries debe ser > 0")
        self.max_entries = max_entries
        # appendleft sobre un deque lleno descarta por la derecha (el más viejo)
        self._entries: Deque[Registration] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        self._clock = clock

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _snapshot(self) -> List[Registration]:
        with self._lock:
            return list(self._entries)

    def append(
        self,
        validated: ValidatedRegistration,
        *,
        source: str,
        raspberry_ip: str,
        scan_timestamp: Optional[datetime] = None,
    ) -> Registration:
        processed_at = self._clock()
        registration = Registration(
            id=new_registration_id(),
            scale_name=validated.scale_name,
            weight=validated.weight,
            sscc_number=validated.sscc_number,
            source=source,
            raspberry_ip=raspberry_ip,
            scan_timestamp=scan_timestamp or processed_at,
            processed_at=processed_at,
            status=RegistrationStatus.PROCESSED,
        )
        with self._lock:
            evicted = len(self._entries) == self.max_entries
            self._entries.appendleft(registration)
            size = len(self._entries)
        if evicted:
            logger.debug(f"[LEDGER] Capacidad {self.max_entries} alcanzada, se descartó el registro más antiguo")
        logger.info(
            f"[LEDGER] {registration.id} scale={registration.scale_name} "
            f"weight={registration.weight} sscc={registration.sscc_number} (total={size})"
        )
        return registration

    def get(self, registration_id: str) -> Optional[Registration]:
        for registration in self._snapshot():
            if registration.id == registration_id:
                return registration
        return None

    def query(
        self,
        limit: Optional[int] = None,
        scale_name: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[Registration]:
        """Filtra (coincidencia exacta) y luego limita. limit <= 0 o None = sin límite."""
        entries = self._snapshot()
        if scale_name:
            entries = [r for r in entries if r.scale_name == scale_name]
        if status:
            entries = [r for r in entries if r.status.value == status]
        if limit is not None and limit > 0:
            entries = entries[:limit]
        return entries

    def stats(self, now: Optional[datetime] = None) -> LedgerStats:
        """
        Conteos sobre todo el ledger actual. Las ventanas son deslizantes:
        processed_at en [now - 24h, now] y [now - 1h, now].
        """
        now = now or self._clock()
        day_ago = now - timedelta(hours=24)
        hour_ago = now - timedelta(hours=1)
        entries = self._snapshot()

        return LedgerStats(
            total=len(entries),
            last_24h=sum(1 for r in entries if day_ago <= r.processed_at <= now),
            last_hour=sum(1 for r in entries if hour_ago <= r.processed_at <= now),
            by_scale=dict(Counter(r.scale_name for r in entries)),
            by_status=dict(Counter(r.status.value for r in entries)),
            latest=entries[0] if entries else None,
        )
