"""
Проверка разрешений пользователя

Гранулярные разрешения (раздел, ресурс, действие), условия по контексту
и проверка области действия (scope) роли. Ввода-вывода нет, все функции
чистые и детерминированные.
"""
from typing import Any, Dict, Iterable, List, NamedTuple, Optional

from tradeframe.logger import logger
from tradeframe.schemas import (
    PERMISSION_WILDCARD,
    ConditionOperator,
    Permission,
    PermissionAction,
    PermissionCondition,
    PermissionRequest,
    RoleScope,
    User,
    UserRole,
    UserStatus,
)


class PermissionKey(NamedTuple):
    """Ключ разрешения: пара (раздел, ресурс)"""
    section: str
    resource: str


# Значение для отсутствующего пути в контексте. Не равно никакому значению условия.
_MISSING = object()

VALID_ACTIONS = [action.value for action in PermissionAction]
VALID_OPERATORS = [operator.value for operator in ConditionOperator]


def _strict_equals(left: Any, right: Any) -> bool:
    """
    Строгое сравнение: True не равно 1, "1" не равно 1
    """
    if left is _MISSING or right is _MISSING:
        return left is right
    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is type(right) and left == right
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return left == right
    return type(left) is type(right) and left == right


class PermissionChecker:
    """
    Проверка разрешений пользователя

    Разрешения ролей и прямые разрешения объединяются. Спецразрешение "*"
    (раздел "*" или ресурс "*" внутри раздела) дает доступ без проверки
    действий и условий.
    """

    @classmethod
    def has_permission(
        cls,
        user: Optional[User],
        section: str,
        resource: str,
        action: str,
        context: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Проверить разрешение пользователя

        Args:
            user: Пользователь (None - доступ запрещен)
            section: Раздел системы
            resource: Ресурс раздела
            action: Действие (read, write, delete, manage, view_menu)
            context: Контекст для проверки условий разрешения

        Returns:
            True если действие разрешено
        """
        if user is None or user.status != UserStatus.ACTIVE.value:
            return False

        all_permissions = cls.get_user_permissions(user)

        has_all = any(
            p.section == PERMISSION_WILDCARD
            or (p.section == section and p.resource == PERMISSION_WILDCARD)
            for p in all_permissions
        )
        if has_all:
            return True

        permission = next(
            (
                p for p in all_permissions
                if p.section == section and p.resource == resource and action in p.actions
            ),
            None
        )
        if permission is None:
            return False

        if permission.conditions:
            return cls.check_conditions(permission.conditions, context or {})

        return True

    @classmethod
    def has_any_permission(cls, user: Optional[User], permissions: Iterable[PermissionRequest]) -> bool:
        """Проверить любое из разрешений (OR)"""
        return any(
            cls.has_permission(user, p.section, p.resource, p.action, p.context)
            for p in permissions
        )

    @classmethod
    def has_all_permissions(cls, user: Optional[User], permissions: Iterable[PermissionRequest]) -> bool:
        """Проверить все разрешения (AND)"""
        return all(
            cls.has_permission(user, p.section, p.resource, p.action, p.context)
            for p in permissions
        )

    @classmethod
    def get_user_permissions(cls, user: User) -> List[Permission]:
        """
        Все разрешения пользователя: разрешения ролей + прямые разрешения

        Разрешения с одинаковой парой (раздел, ресурс) сливаются в одно,
        действия объединяются. Условия берутся из последнего встреченного
        разрешения; прямые разрешения обрабатываются после ролей, поэтому
        их условия заменяют условия ролей.
        """
        permissions: List[Permission] = []
        for role in user.roles:
            permissions.extend(role.permissions)
        if user.direct_permissions:
            permissions.extend(user.direct_permissions)

        return cls.merge_permissions(permissions)

    @staticmethod
    def merge_permissions(permissions: Iterable[Permission]) -> List[Permission]:
        """
        Слияние разрешений по ключу (раздел, ресурс) с сохранением порядка
        """
        merged: Dict[PermissionKey, Permission] = {}

        for permission in permissions:
            key = PermissionKey(permission.section, permission.resource)
            existing = merged.get(key)

            if existing is None:
                merged[key] = Permission(
                    section=permission.section,
                    resource=permission.resource,
                    actions=list(dict.fromkeys(permission.actions)),
                    conditions=permission.conditions
                )
                continue

            for action in permission.actions:
                if action not in existing.actions:
                    existing.actions.append(action)
            existing.conditions = permission.conditions

        return list(merged.values())

    @classmethod
    def check_conditions(cls, conditions: List[PermissionCondition], context: Dict[str, Any]) -> bool:
        """
        Проверить условия доступа (все условия должны выполняться)
        """
        return all(cls._check_condition(condition, context) for condition in conditions)

    @classmethod
    def _check_condition(cls, condition: PermissionCondition, context: Dict[str, Any]) -> bool:
        context_value = cls.get_context_value(context, condition.field)
        operator = condition.operator
        value = condition.value

        if operator == ConditionOperator.EQ.value:
            return _strict_equals(context_value, value)

        if operator == ConditionOperator.NE.value:
            return not _strict_equals(context_value, value)

        if operator == ConditionOperator.IN.value:
            return isinstance(value, list) and any(_strict_equals(context_value, v) for v in value)

        if operator == ConditionOperator.NOT_IN.value:
            return isinstance(value, list) and not any(_strict_equals(context_value, v) for v in value)

        if operator == ConditionOperator.CONTAINS.value:
            return isinstance(context_value, str) and isinstance(value, str) and value in context_value

        if operator == ConditionOperator.STARTS_WITH.value:
            return isinstance(context_value, str) and isinstance(value, str) and context_value.startswith(value)

        logger.warning(f"Неизвестный оператор условия: {operator}", extra={"field": condition.field})
        return False

    @staticmethod
    def get_context_value(context: Dict[str, Any], field: str) -> Any:
        """
        Значение из контекста по пути через точку (network.id, items.0)

        Числовая часть пути индексирует список или кортеж.

        Returns:
            Значение или внутренний маркер отсутствия
        """
        value: Any = context
        for part in field.split("."):
            if isinstance(value, dict) and part in value:
                value = value[part]
            elif isinstance(value, (list, tuple)) and part.isdigit() and int(part) < len(value):
                value = value[int(part)]
            else:
                return _MISSING
        return value

    @staticmethod
    def check_scope_access(role: UserRole, requested_scope: str, requested_value: Optional[str] = None) -> bool:
        """
        Проверить доступ роли к области (scope)

        Args:
            role: Роль пользователя
            requested_scope: Запрашиваемая область (network, trading_point, ...)
            requested_value: Идентификатор сети/точки
        """
        scope = role.scope

        if scope == RoleScope.GLOBAL.value:
            return True

        if scope == RoleScope.NETWORK.value:
            if requested_scope == RoleScope.NETWORK.value:
                return not role.scope_value or role.scope_value == requested_value
            if requested_scope == RoleScope.TRADING_POINT.value:
                # TODO: проверять принадлежность точки к сети роли через справочник торговых точек
                return True
            return False

        if scope == RoleScope.TRADING_POINT.value:
            return requested_scope == RoleScope.TRADING_POINT.value and (
                not role.scope_value or role.scope_value == requested_value
            )

        if scope == RoleScope.ASSIGNED.value:
            return role.scope_value == requested_value

        return False

    @staticmethod
    def get_available_scope_values(role: UserRole, context: Dict[str, Any]) -> List[str]:
        """
        Доступные значения области для роли из контекста
        """
        if role.scope == RoleScope.NETWORK.value:
            return list(context.get("availableNetworks") or [])
        if role.scope == RoleScope.TRADING_POINT.value:
            return list(context.get("availableTradingPoints") or [])
        if role.scope == RoleScope.ASSIGNED.value:
            return list(context.get("assignedResources") or [])
        # global не требует конкретных значений
        return []


class PermissionValidator:
    """Валидация структуры разрешений"""

    @classmethod
    def validate_permission(cls, permission: Permission) -> List[str]:
        errors: List[str] = []

        if not permission.section:
            errors.append("Не указан раздел разрешения")

        if not permission.resource:
            errors.append("Не указан ресурс разрешения")

        if not permission.actions:
            errors.append("Не указаны действия для разрешения")
        else:
            invalid_actions = [a for a in permission.actions if a not in VALID_ACTIONS]
            if invalid_actions:
                errors.append(f"Недопустимые действия: {', '.join(invalid_actions)}")

        for index, condition in enumerate(permission.conditions or [], start=1):
            for error in cls.validate_condition(condition):
                errors.append(f"Условие {index}: {error}")

        return errors

    @staticmethod
    def validate_condition(condition: PermissionCondition) -> List[str]:
        errors: List[str] = []

        if not condition.field:
            errors.append("Не указано поле условия")

        if not condition.operator:
            errors.append("Не указан оператор условия")
        elif condition.operator not in VALID_OPERATORS:
            errors.append(f"Недопустимый оператор: {condition.operator}")

        if condition.value is None:
            errors.append("Не указано значение условия")

        if condition.operator in (ConditionOperator.IN.value, ConditionOperator.NOT_IN.value) \
                and not isinstance(condition.value, list):
            errors.append("Для операторов in/not_in значение должно быть массивом")

        return errors


# Строки разрешений вида "section.resource.action"

def create_permission_string(section: str, resource: str, action: str) -> str:
    return f"{section}.{resource}.{action}"


def parse_permission_string(permission_string: str) -> Optional[PermissionRequest]:
    parts = permission_string.split(".")
    if len(parts) != 3:
        return None

    section, resource, action = parts
    if action not in VALID_ACTIONS:
        return None

    return PermissionRequest(section=section, resource=resource, action=action)


def permission_to_strings(permission: Permission) -> List[str]:
    return [create_permission_string(permission.section, permission.resource, a) for a in permission.actions]


def strings_to_permissions(permission_strings: Iterable[str]) -> List[Permission]:
    """
    Сборка разрешений из строк; некорректные строки пропускаются
    """
    parsed = []
    for value in permission_strings:
        request = parse_permission_string(value)
        if request is not None:
            parsed.append(Permission(section=request.section, resource=request.resource, actions=[request.action]))
    return PermissionChecker.merge_permissions(parsed)
