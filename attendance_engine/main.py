from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError

from attendance_engine.config import settings
from attendance_engine.core.errors import StoreUnavailable
from attendance_engine.db import Base, engine
from attendance_engine.metrics import flush_cache_metrics
from attendance_engine.route_logging import EndpointNameRoute
from attendance_engine.routers import attendance, emergency_leave, holidays, leaves, locks, missed_sessions
from attendance_engine.scheduler import start_scheduler, stop_scheduler
from attendance_engine.services.reconciliation_events import events_snapshot

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s %(levelname)s %(name)s %(message)s',
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    Base.metadata.create_all(bind=engine)
    if settings.enable_scheduler:
        start_scheduler()
    yield
    stop_scheduler()
    flush_cache_metrics()


app = FastAPI(title=settings.app_name, version='0.1.0', lifespan=lifespan)
app.router.route_class = EndpointNameRoute


@app.middleware('http')
async def slow_request_logger(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - started) * 1000.0
    if duration_ms >= settings.metrics_slow_ms:
        logging.getLogger('attendance_engine.request').info(
            'request_slow path=%s method=%s status_code=%s duration_ms=%.2f',
            request.url.path,
            request.method,
            response.status_code,
            duration_ms,
        )
    return response


@app.exception_handler(OperationalError)
@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(request: Request, exc: Exception):
    logging.getLogger('attendance_engine.request').warning(
        'store_unavailable path=%s method=%s error=%s',
        request.url.path,
        request.method,
        exc.__class__.__name__,
    )
    return JSONResponse(status_code=503, content={'detail': 'Attendance store unavailable'}, headers={'Retry-After': '5'})


app.include_router(missed_sessions.router)
app.include_router(emergency_leave.router)
app.include_router(holidays.router)
app.include_router(leaves.router)
app.include_router(attendance.router)
app.include_router(locks.router)


@app.get('/')
def root():
    return {'app': settings.app_name, 'status': 'ok'}


@app.get('/health')
def health():
    return {'status': 'ok', 'events_24h': events_snapshot()}
