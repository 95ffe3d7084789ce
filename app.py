from typing import Any, Dict, List, Optional
import asyncio
import io
import json
import logging
import os
import re
import time
import uuid
from collections import defaultdict, deque
from contextlib import asynccontextmanager

import pandas as pd
from fastapi import Body, Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

import worker
from missing_values import to_number
from xlsx_export import build_xlsx_bytes


# --- Config ---
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(20 * 1024 * 1024)))  # 20MB default

RATE_LIMIT_MAX = int(os.getenv("RATE_LIMIT_MAX", "30"))          # requests
RATE_LIMIT_WINDOW = int(os.getenv("RATE_LIMIT_WINDOW", "60"))    # seconds

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))

logger = logging.getLogger("tabulation")

# Stage logger: per-request progress lines
stage_logger = logging.getLogger("tabulation.stage")


@asynccontextmanager
async def lifespan(_: FastAPI):
    yield
    worker.shutdown()


app = FastAPI(lifespan=lifespan)
bearer = HTTPBearer(auto_error=True)

# ip -> timestamps
_req_times = defaultdict(deque)

LIMITED_PATHS = (
    "/frequencies",
    "/frequencies/file",
    "/duplicates",
    "/duplicates/file",
    "/export/statistics-xlsx",
)


def require_token(creds: HTTPAuthorizationCredentials = Depends(bearer)) -> None:
    expected = os.getenv("TABULATION_API_KEY")
    token = creds.credentials
    if not expected or token != expected:
        raise HTTPException(status_code=401, detail="Invalid token")


def _client_ip(request: Request) -> str:
    xff = request.headers.get("x-forwarded-for")
    if xff:
        return xff.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


@app.middleware("http")
async def limit_upload_size(request: Request, call_next):
    if request.url.path in LIMITED_PATHS and request.method.upper() == "POST":
        cl = request.headers.get("content-length")
        if cl is not None:
            try:
                if int(cl) > MAX_UPLOAD_BYTES:
                    raise HTTPException(status_code=413, detail="Upload too large")
            except ValueError:
                raise HTTPException(status_code=400, detail="Invalid Content-Length")
    return await call_next(request)


@app.middleware("http")
async def basic_rate_limit(request: Request, call_next):
    if request.url.path in LIMITED_PATHS and request.method.upper() == "POST":
        ip = _client_ip(request)
        now = time.time()
        q = _req_times[ip]

        cutoff = now - RATE_LIMIT_WINDOW
        while q and q[0] < cutoff:
            q.popleft()

        if len(q) >= RATE_LIMIT_MAX:
            raise HTTPException(status_code=429, detail="Rate limit exceeded")

        q.append(now)

    return await call_next(request)


# -----------------------------
# Request logging middleware
# -----------------------------
@app.middleware("http")
async def request_logging(request: Request, call_next):
    start = time.time()
    rid = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = rid

    status = 500
    try:
        response = await call_next(request)
        status = response.status_code
        response.headers["X-Request-Id"] = rid
        return response

    except HTTPException as exc:
        status = exc.status_code
        response = JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
        )
        response.headers["X-Request-Id"] = rid
        return response

    except Exception as exc:
        status = 500
        logger.exception(json.dumps({
            "event": "request_exception",
            "request_id": rid,
            "method": request.method,
            "path": request.url.path,
            "error_type": type(exc).__name__,
            "error": str(exc),
        }))
        response = JSONResponse(
            status_code=500,
            content={"detail": "Internal Server Error"},
        )
        response.headers["X-Request-Id"] = rid
        return response

    finally:
        duration_ms = int((time.time() - start) * 1000)
        logger.info(json.dumps({
            "event": "request",
            "request_id": rid,
            "method": request.method,
            "path": request.url.path,
            "status": status,
            "duration_ms": duration_ms,
        }))


# -----------------------------
# Helpers
# -----------------------------
def _read_dataframe(raw_bytes: bytes, filename: Optional[str]) -> pd.DataFrame:
    # Every cell stays text; blanks become "" (system-missing for numeric variables).
    name = (filename or "").lower()
    if name.endswith(".xlsx") or name.endswith(".xls"):
        return pd.read_excel(io.BytesIO(raw_bytes), dtype=str, keep_default_na=False)
    return pd.read_csv(io.BytesIO(raw_bytes), dtype=str, keep_default_na=False, low_memory=False)


async def _read_upload(request: Request, file: UploadFile) -> pd.DataFrame:
    rid = getattr(request.state, "request_id", None)
    try:
        raw_bytes = await file.read(MAX_UPLOAD_BYTES + 1)
    except Exception as e:
        raise HTTPException(status_code=400, detail=f"Failed to read uploaded file: {e}")
    if len(raw_bytes) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="Upload too large")
    if not raw_bytes:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")

    stage_logger.info(
        "stage=upload_received request_id=%s bytes=%s filename=%s",
        rid, len(raw_bytes), file.filename or "unknown"
    )

    t = time.time()
    try:
        df = _read_dataframe(raw_bytes, file.filename)
    except Exception as e:
        stage_logger.exception("stage=read_file_error request_id=%s", rid)
        raise HTTPException(status_code=400, detail=f"Failed to parse file: {e}")

    stage_logger.info(
        "stage=read_file_end request_id=%s secs=%.2f shape=%s",
        rid, time.time() - t, df.shape
    )
    return df


def _parse_json_form(raw: str, field: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise HTTPException(status_code=400, detail=f"{field} is not valid JSON: {e}")


def _column_index(df: pd.DataFrame, name: Any) -> int:
    columns = [str(c) for c in df.columns]
    if str(name) not in columns:
        raise HTTPException(status_code=404, detail=f"Column '{name}' not found")
    return columns.index(str(name))


def _weight_cell(cell: Any) -> Any:
    # Text cells are passed through and drop their case.
    x = to_number(cell)
    return cell if x is None else x


async def _dispatch(request: Request, kind: str, message: Any) -> JSONResponse:
    rid = getattr(request.state, "request_id", None)
    loop = asyncio.get_running_loop()
    envelope = await loop.run_in_executor(None, worker.run, kind, message, rid)
    return JSONResponse(status_code=200 if envelope.get("success") else 400, content=envelope)


# -----------------------------
# Frequency engine
# -----------------------------
@app.post("/frequencies")
async def frequencies(
    request: Request,
    body: Dict[str, Any] = Body(...),
    _=Depends(require_token),
) -> JSONResponse:
    return await _dispatch(request, "frequencies", body)


@app.post("/frequencies/file")
async def frequencies_file(
    request: Request,
    file: UploadFile = File(...),
    variables_json: str = Form(...),
    weight_column: Optional[str] = Form(None),
    percentile_method: str = Form("waverage"),
    _=Depends(require_token),
) -> JSONResponse:
    df = await _read_upload(request, file)
    variables = _parse_json_form(variables_json, "variables_json")
    if not isinstance(variables, list) or not variables:
        raise HTTPException(status_code=400, detail="variables_json must be a non-empty list")

    weights = None
    if weight_column:
        column = df.iloc[:, _column_index(df, weight_column)].tolist()
        weights = [_weight_cell(c) for c in column]

    variable_data: List[Dict[str, Any]] = []
    for v in variables:
        if not isinstance(v, dict) or "name" not in v:
            raise HTTPException(status_code=400, detail="each variable needs a name")
        idx = _column_index(df, v["name"])
        variable_data.append({"variable": v, "data": df.iloc[:, idx].tolist(), "weights": weights})

    message = {"variableData": variable_data, "percentileMethod": percentile_method}
    return await _dispatch(request, "frequencies", message)


# -----------------------------
# Duplicate-case engine
# -----------------------------
@app.post("/duplicates")
async def duplicates(
    request: Request,
    body: Dict[str, Any] = Body(...),
    _=Depends(require_token),
) -> JSONResponse:
    return await _dispatch(request, "duplicates", body)


@app.post("/duplicates/file")
async def duplicates_file(
    request: Request,
    file: UploadFile = File(...),
    options_json: str = Form(...),
    _=Depends(require_token),
) -> JSONResponse:
    df = await _read_upload(request, file)
    options = _parse_json_form(options_json, "options_json")
    if not isinstance(options, dict):
        raise HTTPException(status_code=400, detail="options_json must be an object")

    message = dict(options)
    for names_key, refs_key in (("matchingColumns", "matchingVariables"), ("sortingColumns", "sortingVariables")):
        names = message.pop(names_key, None)
        if names is None:
            continue
        if not isinstance(names, list):
            raise HTTPException(status_code=400, detail=f"{names_key} must be a list of column names")
        message[refs_key] = [{"columnIndex": _column_index(df, n), "name": str(n)} for n in names]

    message["data"] = df.values.tolist()
    return await _dispatch(request, "duplicates", message)


# -----------------------------
# Export
# -----------------------------
class XlsxExportRequest(BaseModel):
    tables: List[Dict[str, Any]]
    filename: str | None = None


@app.post("/export/statistics-xlsx")
def export_statistics_xlsx(
    req: XlsxExportRequest,
    _: None = Depends(require_token),
) -> Response:
    try:
        xlsx_bytes = build_xlsx_bytes(req.tables)
    except Exception as e:
        raise HTTPException(status_code=400, detail=f"XLSX build failed: {e}")

    def _sanitize_filename(name: str) -> str:
        name = (name or "").strip().replace("\n", "").replace("\r", "")
        name = re.sub(r"[^A-Za-z0-9._-]+", "_", name)
        if not name.lower().endswith(".xlsx"):
            name += ".xlsx"
        return name or "statistics.xlsx"

    filename = _sanitize_filename(req.filename or "statistics.xlsx")

    return Response(
        content=xlsx_bytes,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}
