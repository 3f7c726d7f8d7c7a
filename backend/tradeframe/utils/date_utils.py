"""
Утилиты для работы с датами
"""
from datetime import datetime, timedelta
from typing import Optional


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Парсинг даты/времени в формате ISO 8601

    Поддерживает форматы:
    - YYYY-MM-DD
    - YYYY-MM-DD HH:MM:SS
    - YYYY-MM-DDTHH:MM:SS[.ffffff][Z|±HH:MM]

    Дата без часового пояса считается локальным временем сервера.

    Args:
        value: Строка с датой

    Returns:
        Datetime с часовым поясом или None, если строку не удалось разобрать
    """
    if not value:
        return None

    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None

    # astimezone() у наивной даты интерпретирует ее как локальное время
    return parsed.astimezone() if parsed.tzinfo is None else parsed


def local_now() -> datetime:
    """Текущее локальное время с часовым поясом"""
    return datetime.now().astimezone()


def start_of_day(moment: datetime, days_ago: int = 0) -> datetime:
    """
    Полночь дня moment (в его часовом поясе), сдвинутая на days_ago дней назад
    """
    midnight = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight - timedelta(days=days_ago)
