from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from jobengine.config.settings import Settings, SettingsDep
from jobengine.infra.database import get_session
from jobengine.v1.core.exceptions import create_success_response

router = APIRouter()


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class BrokerHealth(BaseModel):
    """Broker connection status as seen by this process."""

    connected: bool


class EngineHealth(BaseModel):
    """In-process job engine status, when one is attached to the app."""

    running: bool
    accepting: bool
    in_flight: int
    relay_running: bool


@router.get("/healthz", response_model=dict)
async def health_check(
    request: Request,
    settings: Settings = SettingsDep,
    session: AsyncSession = Depends(get_session),
):
    """Health check endpoint with database, broker and engine status."""

    timestamp = datetime.now(UTC).isoformat()

    db_health = await _check_database_health(session)
    overall_ok = db_health.connected

    engine = getattr(request.app.state, "engine", None)
    broker_health = None
    engine_health = None
    if engine is not None:
        broker_health = BrokerHealth(connected=engine.broker.is_connected())
        engine_health = EngineHealth(
            running=engine.running,
            accepting=engine.drain.accepting,
            in_flight=engine.in_flight,
            relay_running=engine.relay.is_running(),
        )
        if not broker_health.connected:
            overall_ok = False

    health_data = {
        "ok": overall_ok,
        "version": settings.version,
        "environment": settings.environment,
        "timestamp": timestamp,
        "database": db_health.model_dump(),
        "broker": broker_health.model_dump() if broker_health else None,
        "engine": engine_health.model_dump() if engine_health else None,
    }

    return create_success_response(data=health_data)


async def _check_database_health(session: AsyncSession) -> DatabaseHealth:
    """Check database connectivity and response time."""
    start_time = datetime.now(UTC)

    try:
        await session.execute(text("SELECT 1"))

        end_time = datetime.now(UTC)
        response_time_ms = (end_time - start_time).total_seconds() * 1000

        return DatabaseHealth(
            connected=True, response_time_ms=round(response_time_ms, 2)
        )

    except Exception as e:
        return DatabaseHealth(connected=False, error=str(e))
