"""
Роутер проверки разрешений пользователей
"""
from typing import List

from fastapi import APIRouter

from tradeframe.logger import logger
from tradeframe.schemas import (
    Permission,
    PermissionCheckRequest,
    PermissionCheckResponse,
    PermissionValidationResponse,
    ScopeCheckRequest,
    User,
)
from tradeframe.services.permission_checker import PermissionChecker, PermissionValidator

router = APIRouter(prefix="/api/v1/permissions", tags=["Permissions"])


@router.post("/check", response_model=PermissionCheckResponse)
async def check_permissions(request: PermissionCheckRequest):
    """
    Проверка разрешений пользователя

    mode:
    - single: первое разрешение из списка
    - any: хотя бы одно разрешение (OR)
    - all: все разрешения (AND)
    """
    if request.mode == "any":
        allowed = PermissionChecker.has_any_permission(request.user, request.permissions)
    elif request.mode == "all":
        allowed = PermissionChecker.has_all_permissions(request.user, request.permissions)
    else:
        first = request.permissions[0]
        allowed = PermissionChecker.has_permission(
            request.user, first.section, first.resource, first.action, first.context
        )

    logger.debug("Проверка разрешений", extra={
        "user_id": request.user.id if request.user else None,
        "mode": request.mode,
        "allowed": allowed
    })

    return PermissionCheckResponse(allowed=allowed)


@router.post("/check-scope", response_model=PermissionCheckResponse)
async def check_scope(request: ScopeCheckRequest):
    """
    Проверка доступа роли к области (сеть, торговая точка, назначенные ресурсы)
    """
    return PermissionCheckResponse(allowed=PermissionChecker.check_scope_access(
        request.role, request.requested_scope, request.requested_value
    ))


@router.post("/validate", response_model=PermissionValidationResponse)
async def validate_permission(permission: Permission):
    """
    Проверка структуры разрешения (действия, операторы условий)
    """
    errors = PermissionValidator.validate_permission(permission)
    return PermissionValidationResponse(valid=not errors, errors=errors)


@router.post("/effective", response_model=List[Permission])
async def get_effective_permissions(user: User):
    """
    Итоговые разрешения пользователя: роли + прямые разрешения
    """
    return PermissionChecker.get_user_permissions(user)
