from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI, Request

from mentor_platform.config import settings
from mentor_platform.db import Base, engine
from mentor_platform.metrics import flush_metrics
from mentor_platform.route_logging import EndpointNameRoute
from mentor_platform.routers import booking, schedule
from mentor_platform.scheduler import start_scheduler, stop_scheduler

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s %(levelname)s %(name)s %(message)s',
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    Base.metadata.create_all(bind=engine)
    start_scheduler()
    yield
    stop_scheduler()
    flush_metrics()


app = FastAPI(title=settings.app_name, version='0.1.0', lifespan=lifespan)
app.router.route_class = EndpointNameRoute


@app.middleware('http')
async def slow_request_logger(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - started) * 1000.0
    if duration_ms >= settings.metrics_slow_ms:
        logging.getLogger('mentor_platform.request').info(
            'request_slow path=%s method=%s status_code=%s duration_ms=%.2f request_id=%s',
            request.url.path,
            request.method,
            response.status_code,
            duration_ms,
            response.headers.get('X-Request-Id', '-'),
        )
    return response

app.include_router(schedule.router)
app.include_router(booking.router)


@app.get('/')
def health():
    return {'app': settings.app_name, 'status': 'ok'}


@app.get('/health')
def healthcheck():
    return {'status': 'ok'}
