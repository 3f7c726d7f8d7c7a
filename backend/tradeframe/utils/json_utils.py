"""
Утилиты для работы с JSON
"""
import json
from typing import Any, Dict, Optional


def parse_stored_json(json_data: Optional[Any]) -> Optional[Dict[str, Any]]:
    """
    Парсинг JSON данных из хранилища настроек

    Обрабатывает как строки JSON (формат localStorage), так и уже
    распарсенные словари

    Args:
        json_data: JSON данные (строка или словарь)

    Returns:
        Optional[Dict]: Распарсенный словарь или None
    """
    if json_data is None:
        return None

    if isinstance(json_data, dict):
        return json_data

    if isinstance(json_data, str):
        try:
            parsed_data = json.loads(json_data)
        except json.JSONDecodeError:
            return None
        return parsed_data if isinstance(parsed_data, dict) else None

    return None
