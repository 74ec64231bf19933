from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')


# Security Headers Middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response: Response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "SAMEORIGIN"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # الحضور يحتاج الموقع فقط
        response.headers["Permissions-Policy"] = "geolocation=(self), camera=(), microphone=()"

        # HSTS - Enable in production
        if os.environ.get("ENVIRONMENT") == "production":
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response

from database import db, ensure_indexes
from routes.attendance import router as attendance_router
from routes.work_locations import router as work_locations_router
from pymongo.errors import ConnectionFailure
from utils.error_codes import AttendanceError, TransientError

# App Version
APP_VERSION = "1.0"

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

app = FastAPI(title="HR Attendance Engine", version=APP_VERSION, redirect_slashes=False)

app.add_middleware(SecurityHeadersMiddleware)

app.include_router(attendance_router)
app.include_router(work_locations_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AttendanceError)
async def attendance_error_handler(request: Request, exc: AttendanceError):
    if exc.status_code >= 500:
        logger.warning(f"{request.url.path}: {exc.error_code[0]} {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_response())


@app.exception_handler(ConnectionFailure)
async def storage_unavailable_handler(request: Request, exc: ConnectionFailure):
    # انقطاع التخزين خارج مهلة الطلب (مثلاً أثناء التحقق من التوكن)
    error = TransientError("Attendance storage is unavailable, please retry", details={"reason": str(exc)})
    logger.warning(f"{request.url.path}: {error.error_code[0]} {exc}")
    return JSONResponse(status_code=error.status_code, content=error.to_response())


@app.on_event("startup")
async def startup():
    await ensure_indexes(db)
    logger.info("✅ Attendance indexes ensured")


@app.get("/health")
async def health_check():
    return {"status": "ok", "service": "HR Attendance Engine", "version": APP_VERSION}


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "HR Attendance Engine", "version": APP_VERSION}
