"""
VotePay application entry point.

Startup order: logging, configuration, database, aggregator and notification
clients, then the tracker sweeper. Shutdown reverses it.
"""

from datetime import timedelta
from fastapi import FastAPI, Request, Depends
from contextlib import asynccontextmanager
from votepay.database import init_db, close_database, health_check as database_health_check
from votepay.routes.payments import router as payments_router
from votepay.core.config import load_config
from votepay.core.handlers import setup_exception_handlers
from votepay.core.middleware import RequestLoggingMiddleware
from votepay.core.monitoring import setup_monitoring, error_monitor, monitor_errors
from votepay.core.limiter import limiter, MONITORING_RATE_LIMIT
from votepay.security import verify_monitoring_access
from votepay.services.bulkclix import init_bulkclix_client, close_bulkclix_client
from votepay.services.notification_service import init_notification_service
from votepay.tracker import TrackerSweeper, transaction_tracker
from slowapi import _rate_limit_exceeded_handler
from slowapi.middleware import SlowAPIMiddleware
from slowapi.errors import RateLimitExceeded
import logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle events"""
    try:
        config = load_config()
        setup_monitoring(config.logging.level)
        logging.getLogger("votepay.requests").disabled = not config.logging.log_requests

        await init_db(config.database)
        init_bulkclix_client(config.aggregator)
        init_notification_service(config.notifications)

        transaction_tracker.retention = timedelta(hours=config.tracker.retention_hours)
        sweeper = TrackerSweeper(transaction_tracker, config.tracker.sweep_interval_seconds)
        sweeper.start()
        app.state.tracker_sweeper = sweeper

        logger.info("VotePay started successfully")

    except Exception as e:
        error_monitor.log_error(e, {"context": "application_startup"})
        logger.error(f"Failed to start VotePay: {str(e)}")
        raise

    yield

    logger.info("VotePay shutting down")
    await sweeper.stop()
    await close_bulkclix_client()
    await close_database()

    final_summary = error_monitor.get_error_summary()
    logger.info(f"Shutdown - Total errors handled: {final_summary['total_errors']}")


app = FastAPI(
    title="VotePay",
    description="Mobile-money payment collection and reconciliation for Prelyct Votes",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

setup_exception_handlers(app)

app.add_middleware(RequestLoggingMiddleware)

app.include_router(payments_router, prefix="/api/payments")


@app.get("/")
@limiter.limit("30/minute")
async def root(request: Request):
    return {
        "status": "active",
        "service": "VotePay",
        "description": "Payment reconciliation service is running",
    }


@app.get("/monitoring/errors", dependencies=[Depends(verify_monitoring_access)])
@limiter.limit(MONITORING_RATE_LIMIT)
@monitor_errors("monitoring_errors")
async def get_monitoring_errors(request: Request):
    """Error statistics for this process (authenticated)."""
    return error_monitor.get_error_summary()


@app.get("/monitoring/health", dependencies=[Depends(verify_monitoring_access)])
@limiter.limit(MONITORING_RATE_LIMIT)
async def get_monitoring_health(request: Request):
    """Database reachability and tracker occupancy for this process (authenticated)."""
    sweeper = getattr(request.app.state, "tracker_sweeper", None)
    return {
        "database": await database_health_check(),
        "tracker": {
            "transactions": len(transaction_tracker),
            "retention_hours": transaction_tracker.retention.total_seconds() / 3600,
            "sweeper_running": bool(sweeper and sweeper.running),
        },
    }
