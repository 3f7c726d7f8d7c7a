"""
Вспомогательные утилиты
"""
from .date_utils import parse_iso_datetime, local_now, start_of_day
from .json_utils import parse_stored_json

__all__ = [
    "parse_iso_datetime",
    "local_now",
    "start_of_day",
    "parse_stored_json"
]
