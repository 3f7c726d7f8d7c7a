"""
Репозиторий шаблонов команд

Системные шаблоны передаются при создании репозитория и не изменяются.
Пользовательские шаблоны хранятся в хранилище (ключ new_templates_v1)
и сохраняются после каждого изменения.
"""
import math
import random
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError

from tradeframe.errors import TemplateConflictError, TemplateNotFoundError, TemplateValidationError
from tradeframe.logger import logger
from tradeframe.schemas import (
    CommandTemplate,
    CommandTemplateClone,
    CommandTemplateCreate,
    CommandTemplateListResponse,
    CommandTemplateUpdate,
    TemplateStatus,
    TemplateTestExecution,
    TemplateTestResult,
)
from tradeframe.storage import StorageBackend


SEMVER_PATTERN = re.compile(
    r"(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-((?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)))*"
    r"(?:\+([0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?"
)

SORT_FIELDS = ("created_at", "updated_at", "name", "template_id", "version", "status")

DEFAULT_USER = "current_user"

_TMS_PROVIDER = "cs_autooplata_tms_001"

# Встроенные шаблоны команд API торговой сети
SYSTEM_TEMPLATES: List[Dict[str, Any]] = [
    {
        "id": "sys_autooplata_login",
        "template_id": "autooplata_login",
        "version": "1.0.0",
        "provider_ref": _TMS_PROVIDER,
        "scope": "network",
        "mode": "push",
        "method": "POST",
        "endpoint": "/v1/login",
        "timeout_ms": 10000,
        "name": "Авторизация в Autooplata TMS",
        "description": "Получение JWT токена для авторизации в системе управления терминалами",
        "schemas": {
            "request": {"type": "object", "required": ["username", "password"]},
            "response": {"type": "string", "description": "JWT токен для авторизации"},
        },
        "status": "active",
        "created_at": "2024-01-15T10:30:00Z",
        "updated_at": "2024-02-20T14:15:00Z",
        "created_by": "system",
        "updated_by": "admin",
        "version_notes": "Шаблон для авторизации в TMS Autooplata",
    },
    {
        "id": "sys_autooplata_get_prices",
        "template_id": "autooplata_get_prices",
        "version": "1.0.0",
        "provider_ref": _TMS_PROVIDER,
        "scope": "trading_point",
        "mode": "pull",
        "method": "GET",
        "endpoint": "/v1/pos/prices/{station}",
        "timeout_ms": 8000,
        "name": "Получение цен с АЗС",
        "description": "Получение актуальных цен на топливо с конкретной АЗС через TMS Autooplata",
        "schemas": {
            "request": {"type": "object", "required": ["system", "date"]},
            "response": {"type": "object", "required": ["prices"]},
        },
        "status": "active",
        "created_at": "2024-01-15T10:30:00Z",
        "updated_at": "2024-02-20T14:15:00Z",
        "created_by": "system",
        "updated_by": "admin",
    },
    {
        "id": "sys_autooplata_get_services",
        "template_id": "autooplata_get_services",
        "version": "1.0.0",
        "provider_ref": _TMS_PROVIDER,
        "scope": "network",
        "mode": "pull",
        "method": "GET",
        "endpoint": "/v1/services",
        "timeout_ms": 6000,
        "name": "Справочник услуг",
        "description": "Получение справочника услуг (топлива) из TMS Autooplata",
        "schemas": {
            "request": {"type": "object", "required": ["system"]},
            "response": {"type": "array"},
        },
        "status": "active",
        "created_at": "2024-01-15T10:30:00Z",
        "updated_at": "2024-01-15T10:30:00Z",
        "created_by": "system",
        "updated_by": "system",
    },
    {
        "id": "sys_autooplata_get_coupons",
        "template_id": "autooplata_get_coupons",
        "version": "1.0.0",
        "provider_ref": _TMS_PROVIDER,
        "scope": "network",
        "mode": "pull",
        "method": "GET",
        "endpoint": "/v1/coupons",
        "timeout_ms": 15000,
        "name": "Купоны (сдача топливом)",
        "description": "Получение выданных купонов по системе и станции",
        "schemas": {
            "request": {"type": "object", "required": ["system"]},
            "response": {"type": "array"},
        },
        "status": "active",
        "created_at": "2024-03-01T09:00:00Z",
        "updated_at": "2024-03-01T09:00:00Z",
        "created_by": "system",
        "updated_by": "system",
    },
]


def is_valid_semver(version: str) -> bool:
    return SEMVER_PATTERN.fullmatch(version) is not None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CommandTemplateRepository:
    """
    Шаблоны команд: системные + пользовательские
    """

    def __init__(
        self,
        storage: StorageBackend,
        storage_key: str = "new_templates_v1",
        system_templates: Optional[Iterable[Union[CommandTemplate, Dict[str, Any]]]] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Args:
            storage: Хранилище пользовательских шаблонов
            storage_key: Ключ в хранилище
            system_templates: Системные шаблоны (по умолчанию SYSTEM_TEMPLATES)
            clock: Текущее время (для тестов)
        """
        self._storage = storage
        self.storage_key = storage_key
        self._clock = clock or _utc_now

        source = SYSTEM_TEMPLATES if system_templates is None else system_templates
        self._system_templates = [
            CommandTemplate.model_validate(
                {**(t.model_dump() if isinstance(t, CommandTemplate) else t), "is_system": True}
            )
            for t in source
        ]
        self._user_templates = self._load_user_templates()

    def _load_user_templates(self) -> List[CommandTemplate]:
        raw = self._storage.load(self.storage_key, [])
        if not isinstance(raw, list):
            logger.warning("Неверная структура пользовательских шаблонов: ожидался массив", extra={
                "key": self.storage_key
            })
            return []

        templates = []
        for item in raw:
            try:
                templates.append(CommandTemplate.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Пропущен поврежденный шаблон: {e}", extra={"key": self.storage_key})
        return templates

    def _save_user_templates(self) -> None:
        self._storage.save(self.storage_key, [t.model_dump(mode="json") for t in self._user_templates])

    def all_templates(self) -> List[CommandTemplate]:
        return self._system_templates + self._user_templates

    @staticmethod
    def _new_id(moment: datetime) -> str:
        return f"tpl_{int(moment.timestamp() * 1000)}_{uuid.uuid4().hex[:9]}"

    def _find(self, template_id: str) -> Optional[CommandTemplate]:
        return next((t for t in self.all_templates() if t.id == template_id), None)

    def _find_user_index(self, template_id: str) -> int:
        return next((i for i, t in enumerate(self._user_templates) if t.id == template_id), -1)

    def _exists(self, template_id: str, version: str) -> bool:
        return any(t.template_id == template_id and t.version == version for t in self.all_templates())

    # ------------------------------------------------------------------
    # Чтение
    # ------------------------------------------------------------------

    def list(
        self,
        template_id: Optional[str] = None,
        provider_ref: Optional[str] = None,
        scope: Optional[str] = None,
        mode: Optional[str] = None,
        status: Optional[str] = None,
        is_system: Optional[bool] = None,
        search: Optional[str] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        page: int = 1,
        limit: int = 50
    ) -> CommandTemplateListResponse:
        """
        Список шаблонов с фильтрами, сортировкой и пагинацией

        Args:
            template_id: Подстрока идентификатора шаблона
            provider_ref: Точное совпадение ссылки на подключение
            scope: Область (network, trading_point, ...)
            mode: pull / push
            status: Статус шаблона
            is_system: Только системные / только пользовательские
            search: Поиск без учета регистра по template_id, name, description
            sort_by: Поле сортировки
            sort_order: asc / desc
            page: Номер страницы (с 1)
            limit: Размер страницы

        Raises:
            TemplateValidationError: неизвестное поле сортировки или неверная пагинация
        """
        if sort_by not in SORT_FIELDS:
            raise TemplateValidationError(
                f"Invalid sort field: {sort_by}",
                {"sort_by": [f"Must be one of: {', '.join(SORT_FIELDS)}"]}
            )
        if page < 1 or limit < 1:
            raise TemplateValidationError(
                "Invalid pagination parameters",
                {"page": ["Must be >= 1"], "limit": ["Must be >= 1"]}
            )

        filtered = self.all_templates()

        if template_id:
            filtered = [t for t in filtered if template_id in t.template_id]
        if provider_ref:
            filtered = [t for t in filtered if t.provider_ref == provider_ref]
        if scope:
            filtered = [t for t in filtered if t.scope == scope]
        if mode:
            filtered = [t for t in filtered if t.mode == mode]
        if status:
            filtered = [t for t in filtered if t.status == status]
        if is_system is not None:
            filtered = [t for t in filtered if t.is_system == is_system]
        if search:
            term = search.lower()
            filtered = [
                t for t in filtered
                if term in t.template_id.lower() or term in t.name.lower() or term in t.description.lower()
            ]

        filtered.sort(key=lambda t: getattr(t, sort_by), reverse=sort_order == "desc")

        total = len(filtered)
        start = (page - 1) * limit

        return CommandTemplateListResponse(
            data=filtered[start:start + limit],
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit)
        )

    def get(self, template_id: str) -> CommandTemplate:
        template = self._find(template_id)
        if template is None:
            raise TemplateNotFoundError(f"Template with ID {template_id} not found")
        return template

    # ------------------------------------------------------------------
    # Изменение
    # ------------------------------------------------------------------

    def create(self, data: CommandTemplateCreate, user: str = DEFAULT_USER) -> CommandTemplate:
        """
        Создание пользовательского шаблона (статус draft)

        Raises:
            TemplateValidationError: версия не в формате semver
            TemplateConflictError: шаблон с таким template_id и версией уже есть
        """
        if not is_valid_semver(data.version):
            raise TemplateValidationError(
                "Invalid semantic version format",
                {"version": ["Must be a valid semantic version (e.g., 1.0.0)"]}
            )

        if self._exists(data.template_id, data.version):
            raise TemplateConflictError("Template with this ID and version already exists")

        now = self._clock()
        template = CommandTemplate(
            **data.model_dump(),
            id=self._new_id(now),
            status=TemplateStatus.DRAFT,
            is_system=False,
            created_at=now,
            updated_at=now,
            created_by=user,
            updated_by=user
        )

        self._user_templates.append(template)
        self._save_user_templates()

        logger.info(f"Создан шаблон команды {template.template_id} v{template.version}", extra={
            "template_id": template.template_id,
            "id": template.id
        })
        return template

    def update(self, template_id: str, data: CommandTemplateUpdate, user: str = DEFAULT_USER) -> CommandTemplate:
        """
        Обновление пользовательского шаблона (системные шаблоны не изменяются)
        """
        index = self._find_user_index(template_id)
        if index == -1:
            raise TemplateNotFoundError(f"Template with ID {template_id} not found or is a system template")

        changes = data.model_dump(exclude_unset=True)
        changes.update(updated_at=self._clock(), updated_by=user)

        # model_copy не проверяет значения, поэтому шаблон собирается заново
        try:
            updated = CommandTemplate.model_validate({**self._user_templates[index].model_dump(), **changes})
        except ValidationError as e:
            raise TemplateValidationError(
                "Invalid template fields",
                {str(err["loc"][0]): [err["msg"]] for err in e.errors()}
            ) from e

        self._user_templates[index] = updated
        self._save_user_templates()

        logger.info(f"Обновлен шаблон команды {updated.template_id}", extra={
            "id": template_id,
            "fields": sorted(data.model_dump(exclude_unset=True))
        })
        return updated

    def clone(self, template_id: str, data: CommandTemplateClone, user: str = DEFAULT_USER) -> CommandTemplate:
        """
        Клонирование шаблона (в том числе системного) в новый пользовательский черновик
        """
        original = self.get(template_id)

        if not is_valid_semver(data.new_version):
            raise TemplateValidationError(
                "Invalid semantic version format",
                {"new_version": ["Must be a valid semantic version (e.g., 1.0.0)"]}
            )

        if self._exists(data.new_template_id, data.new_version):
            raise TemplateConflictError("Template with this ID and version already exists")

        now = self._clock()
        cloned = original.model_copy(update={
            "id": self._new_id(now),
            "template_id": data.new_template_id,
            "version": data.new_version,
            "status": TemplateStatus.DRAFT,
            "is_system": False,
            "schemas": dict(original.schemas),
            "created_at": now,
            "updated_at": now,
            "created_by": user,
            "updated_by": user,
            "version_notes": data.version_notes or f"Cloned from {original.template_id} v{original.version}",
        })

        self._user_templates.append(cloned)
        self._save_user_templates()

        logger.info(f"Шаблон {original.template_id} v{original.version} клонирован", extra={
            "source_id": original.id,
            "id": cloned.id
        })
        return cloned

    def delete(self, template_id: str) -> None:
        index = self._find_user_index(template_id)
        if index == -1:
            raise TemplateNotFoundError(
                f"Template with ID {template_id} not found or cannot be deleted (system template)"
            )

        del self._user_templates[index]
        self._save_user_templates()
        logger.info("Удален шаблон команды", extra={"id": template_id})

    def test(self, template_id: str) -> TemplateTestResult:
        """
        Проверка шаблона: успешна только для активного шаблона с заполненными схемами

        Выполнение команды имитируется, запрос во внешнее API не отправляется.
        """
        template = self.get(template_id)
        success = template.status == TemplateStatus.ACTIVE and bool(template.schemas)

        if not success:
            return TemplateTestResult(
                success=False,
                validation_errors={"schemas": ["Template schemas are required for testing"]},
                tested_at=self._clock()
            )

        return TemplateTestResult(
            success=True,
            test_execution=TemplateTestExecution(
                request={"test": "data"},
                response={"success": True, "test_result": "ok"},
                execution_time_ms=random.randint(100, 599)
            ),
            tested_at=self._clock()
        )
