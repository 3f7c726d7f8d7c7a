"""
Middleware для логирования запросов
"""
import time

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from tradeframe.logger import logger


# Служебные endpoints не логируются
SKIP_PATHS = ("/health", "/docs", "/openapi.json", "/redoc")


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware для логирования всех HTTP запросов
    """
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()

        client_ip = request.client.host if request.client else "unknown"
        should_log = not request.url.path.startswith(SKIP_PATHS)

        if should_log:
            logger.info(
                f"Входящий запрос: {request.method} {request.url.path}",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "client_ip": client_ip,
                    "query_params": str(request.query_params) if request.query_params else None
                }
            )

        try:
            response = await call_next(request)
        except Exception as e:
            process_time = time.time() - start_time
            logger.error(
                f"Ошибка при обработке запроса: {request.method} {request.url.path}",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "error": str(e),
                    "process_time_ms": round(process_time * 1000, 2),
                    "client_ip": client_ip
                },
                exc_info=True
            )
            raise

        process_time = time.time() - start_time

        if should_log:
            logger.info(
                f"Запрос выполнен: {request.method} {request.url.path}",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "process_time_ms": round(process_time * 1000, 2),
                    "client_ip": client_ip
                }
            )

        # Добавляем заголовок с временем выполнения
        response.headers["X-Process-Time"] = str(round(process_time * 1000, 2))

        return response
