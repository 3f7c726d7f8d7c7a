"""
Health check endpoints для мониторинга состояния сервисов
"""
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from tradeframe.dependencies import get_database_client
from tradeframe.logger import logger
from tradeframe.services.database_client import EnhancedDatabaseClient

router = APIRouter(prefix="/health", tags=["Health"])


async def check_database(client: EnhancedDatabaseClient) -> Dict[str, Any]:
    """
    Проверка подключения к внешней БД

    Отсутствие настроек подключения не считается сбоем: функции БД
    просто недоступны.
    """
    if not client.is_initialized():
        return {"status": "not_configured"}

    result = await client.test_connection()
    if result.success:
        return {"status": "healthy"}

    logger.error(f"Database health check failed: {result.error}")
    return {"status": "unhealthy", "error": result.error}


@router.get("/live")
async def liveness():
    """
    Liveness probe - проверка что приложение запущено.

    Returns:
        200 OK если приложение работает
    """
    return {"status": "alive", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/ready")
async def readiness(client: EnhancedDatabaseClient = Depends(get_database_client)):
    """
    Readiness probe - проверка готовности принимать трафик.

    Returns:
        200 OK если приложение готово
        503 Service Unavailable если БД настроена, но недоступна
    """
    checks = {"database": await check_database(client)}

    all_healthy = all(c["status"] != "unhealthy" for c in checks.values())

    response = {
        "status": "ready" if all_healthy else "not_ready",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks
    }

    if not all_healthy:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=response
        )

    return response
