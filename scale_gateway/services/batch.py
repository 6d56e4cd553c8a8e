import os
import asyncio
from typing import List, Optional, Sequence

import httpx

from scale_gateway.errors import ErrorKind
from scale_gateway.schemas import BatchSummary, ReadFailure, ReadOutcome, ScaleTarget
from scale_gateway.services.reader import TIMEOUT_S, read_scale
from scale_gateway.services.resolver import clean_endpoint, target_url
from scale_gateway.utils.log import get_logger
from scale_gateway.utils.timezone import utc_now

logger = get_logger("scale_gateway")

# Lecturas simultáneas por lote (0 = sin límite)
BATCH_CONCURRENCY = int(os.getenv("BATCH_CONCURRENCY", "0"))

async def read_all(
    client: httpx.AsyncClient,
    targets: Sequence[ScaleTarget],
    timeout: float = TIMEOUT_S,
    concurrency: Optional[int] = None,
) -> BatchSummary:
    """
    Lee VARIAS balanzas en paralelo y espera a todas (nunca corta en el primer fallo).
      • results[i] corresponde siempre a targets[i]
      • un objetivo caído o lento no afecta al resto
    Lanza TypeError si la entrada no es una secuencia de ScaleTarget.
    """
    if isinstance(targets, (str, bytes)) or not isinstance(targets, Sequence):
        raise TypeError("targets debe ser una secuencia de ScaleTarget")
    for i, t in enumerate(targets):
        if not isinstance(t, ScaleTarget):
            raise TypeError(f"targets[{i}] no es un ScaleTarget: {t!r}")

    if not targets:
        return BatchSummary(total=0, successful=0, failed=0, results=[])

    limit = BATCH_CONCURRENCY if concurrency is None else concurrency
    sem = asyncio.Semaphore(limit) if limit and limit > 0 else None
    logger.info(f"[BATCH] objetivos={len(targets)}  concurr={limit or 'sin límite'}  timeout={timeout:g}s")

    async def one_scale(target: ScaleTarget) -> ReadOutcome:
        if sem is None:
            return await read_scale(client, target, timeout)
        async with sem:
            return await read_scale(client, target, timeout)

    gathered = await asyncio.gather(*(one_scale(t) for t in targets), return_exceptions=True)

    results: List[ReadOutcome] = []
    for target, outcome in zip(targets, gathered):
        if isinstance(outcome, BaseException):
            # read_scale no debería lanzar; si ocurre, se registra como fallo de ese objetivo
            logger.error(f"[BATCH][{target.scale_name}] excepción no capturada: {outcome!r}")
            outcome = ReadFailure(
                scale_name=target.scale_name,
                endpoint=clean_endpoint(target.endpoint),
                target_url=target_url(target),
                error=str(outcome) or outcome.__class__.__name__,
                error_kind=ErrorKind.DOWNSTREAM_UNREACHABLE,
                timestamp=utc_now(),
            )
        results.append(outcome)

    successful = sum(1 for r in results if r.success)
    summary = BatchSummary(
        total=len(targets),
        successful=successful,
        failed=len(targets) - successful,
        results=results,
    )
    logger.info(f"[BATCH] Fin ok={summary.successful} fail={summary.failed}")
    return summary
