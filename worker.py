"""
One-shot request/response boundary around the tabulation engines.

Every handler takes one message (a plain dict, as posted by the host) and
returns exactly one envelope::

    {"success": True, ...payload}   or   {"success": False, "error": "..."}

Nothing partial is ever returned: the first failure anywhere in a request
becomes the error envelope.  ``submit`` runs a handler in a separate
process; once submitted a request cannot be cancelled and the core applies
no timeout.  Setting ``TABULATION_WORKERS=0`` runs handlers in the calling
process.
"""
import json
import logging
import os
import threading
from concurrent.futures import Future, ProcessPoolExecutor
from concurrent.futures.process import BrokenProcessPool
from types import MappingProxyType
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError

from duplicate_cases import duplicate_statistics, find_duplicate_cases
from frequency import VariableProcessingError, compute_all
from messages import DuplicateRequest, FrequencyRequest
from tables import frequency_table, statistics_table

TABULATION_WORKERS = int(os.getenv("TABULATION_WORKERS", "2"))
MAX_REQUEST_CELLS = int(os.getenv("MAX_REQUEST_CELLS", str(5_000_000)))

logger = logging.getLogger("tabulation")

Envelope = Dict[str, Any]


class RequestTooLarge(ValueError):
    pass


def _failure(error: str) -> Envelope:
    return {"success": False, "error": error}


def _validation_message(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "message"
        parts.append(f"{loc}: {err.get('msg')}")
    return "Invalid request: " + "; ".join(parts)


def _check_cells(n_cells: int) -> None:
    if n_cells > MAX_REQUEST_CELLS:
        raise RequestTooLarge(f"Request has {n_cells} cells; the limit is {MAX_REQUEST_CELLS}")


def _guarded(kind: str, body: Callable[[], Envelope], request_id: Optional[str]) -> Envelope:
    logger.info(json.dumps({"event": f"{kind}_start", "request_id": request_id}))
    try:
        envelope = body()
    except ValidationError as exc:
        envelope = _failure(_validation_message(exc))
    except (VariableProcessingError, RequestTooLarge) as exc:
        envelope = _failure(str(exc))
    except Exception as exc:
        logger.exception(json.dumps({
            "event": f"{kind}_exception",
            "request_id": request_id,
            "error_type": type(exc).__name__,
            "error": str(exc),
        }))
        envelope = _failure(f"{type(exc).__name__}: {exc}")
    logger.info(json.dumps({
        "event": f"{kind}_end",
        "request_id": request_id,
        "success": envelope["success"],
    }))
    return envelope


# -----------------------------
# Handlers
# -----------------------------
def handle_frequency_message(message: Any, request_id: Optional[str] = None) -> Envelope:
    def _run() -> Envelope:
        req = FrequencyRequest.model_validate(message)
        _check_cells(sum(len(v.data) for v in req.variable_data))
        results = compute_all(req.variable_data, request_id=request_id, percentile_method=req.percentile_method)
        tables = [frequency_table(r) for r in results]
        return {
            "success": True,
            "frequencies": [r.to_wire() for r in results],
            "tables": [statistics_table(results)] + tables,
        }

    return _guarded("frequencies", _run, request_id)


def handle_duplicate_message(message: Any, request_id: Optional[str] = None) -> Envelope:
    def _run() -> Envelope:
        req = DuplicateRequest.model_validate(message)
        _check_cells(sum(len(row) for row in req.data))
        result = find_duplicate_cases(req, request_id=request_id)
        return {
            "success": True,
            "result": result.to_wire(),
            "statistics": duplicate_statistics(req, result),
        }

    return _guarded("duplicates", _run, request_id)


HANDLERS = MappingProxyType({
    "frequencies": handle_frequency_message,
    "duplicates": handle_duplicate_message,
})


# -----------------------------
# Process pool
# -----------------------------
_pool: Optional[ProcessPoolExecutor] = None
_pool_lock = threading.Lock()


def _get_pool() -> ProcessPoolExecutor:
    global _pool
    with _pool_lock:
        if _pool is None:
            _pool = ProcessPoolExecutor(max_workers=max(1, TABULATION_WORKERS))
        return _pool


def _discard_pool(pool: ProcessPoolExecutor) -> None:
    global _pool
    with _pool_lock:
        if _pool is pool:
            _pool = None
    pool.shutdown(wait=False)


def submit(kind: str, message: Any, request_id: Optional[str] = None) -> "Future[Envelope]":
    if kind not in HANDLERS:
        raise KeyError(f"Unknown engine '{kind}'")
    return _get_pool().submit(HANDLERS[kind], message, request_id)


def run(kind: str, message: Any, request_id: Optional[str] = None) -> Envelope:
    """Submit and wait; a terminated worker is reported like any other failure."""
    if TABULATION_WORKERS <= 0:
        return HANDLERS[kind](message, request_id)
    pool = _get_pool()
    try:
        return pool.submit(HANDLERS[kind], message, request_id).result()
    except BrokenProcessPool as exc:
        logger.error(json.dumps({
            "event": "worker_terminated",
            "request_id": request_id,
            "engine": kind,
            "error": str(exc),
        }))
        _discard_pool(pool)
        return _failure(f"Worker terminated before responding: {exc}")


def shutdown() -> None:
    global _pool
    with _pool_lock:
        pool, _pool = _pool, None
    if pool is not None:
        pool.shutdown(wait=True)
