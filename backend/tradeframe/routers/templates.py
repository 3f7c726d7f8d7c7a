"""
Роутер для работы с шаблонами команд
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from tradeframe.dependencies import get_template_repository
from tradeframe.schemas import (
    CommandTemplate,
    CommandTemplateClone,
    CommandTemplateCreate,
    CommandTemplateListResponse,
    CommandTemplateUpdate,
    TemplateMode,
    TemplateScope,
    TemplateStatus,
    TemplateTestResult,
)
from tradeframe.services.command_templates import CommandTemplateRepository

router = APIRouter(prefix="/api/v1/templates", tags=["Templates"])


@router.get("", response_model=CommandTemplateListResponse)
async def list_templates(
    template_id: Optional[str] = Query(None, description="Подстрока идентификатора шаблона"),
    provider_ref: Optional[str] = Query(None, description="Ссылка на подключение"),
    scope: Optional[TemplateScope] = Query(None),
    mode: Optional[TemplateMode] = Query(None),
    template_status: Optional[TemplateStatus] = Query(None, alias="status"),
    is_system: Optional[bool] = Query(None, description="Только системные / только пользовательские"),
    search: Optional[str] = Query(None, description="Поиск по идентификатору, названию и описанию"),
    sort_by: str = Query("created_at", description="Поле сортировки: created_at, updated_at, name, template_id, version, status"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    repository: CommandTemplateRepository = Depends(get_template_repository)
):
    """
    Список шаблонов команд (системные + пользовательские)
    """
    return repository.list(
        template_id=template_id,
        provider_ref=provider_ref,
        scope=scope,
        mode=mode,
        status=template_status,
        is_system=is_system,
        search=search,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit
    )


@router.post("", response_model=CommandTemplate, status_code=status.HTTP_201_CREATED)
async def create_template(
    data: CommandTemplateCreate,
    repository: CommandTemplateRepository = Depends(get_template_repository)
):
    """
    Создание пользовательского шаблона (всегда в статусе draft)
    """
    return repository.create(data)


@router.get("/{template_id}", response_model=CommandTemplate)
async def get_template(
    template_id: str,
    repository: CommandTemplateRepository = Depends(get_template_repository)
):
    return repository.get(template_id)


@router.patch("/{template_id}", response_model=CommandTemplate)
async def update_template(
    template_id: str,
    data: CommandTemplateUpdate,
    repository: CommandTemplateRepository = Depends(get_template_repository)
):
    """
    Обновление пользовательского шаблона. Системные шаблоны не изменяются (404).
    """
    return repository.update(template_id, data)


@router.delete("/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_template(
    template_id: str,
    repository: CommandTemplateRepository = Depends(get_template_repository)
):
    repository.delete(template_id)


@router.post("/{template_id}/clone", response_model=CommandTemplate, status_code=status.HTTP_201_CREATED)
async def clone_template(
    template_id: str,
    data: CommandTemplateClone,
    repository: CommandTemplateRepository = Depends(get_template_repository)
):
    """
    Клонирование шаблона с новым идентификатором и версией
    """
    return repository.clone(template_id, data)


@router.post("/{template_id}/test", response_model=TemplateTestResult)
async def test_template(
    template_id: str,
    repository: CommandTemplateRepository = Depends(get_template_repository)
):
    return repository.test(template_id)
