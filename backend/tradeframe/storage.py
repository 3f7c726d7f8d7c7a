"""
Хранилища пар ключ -> значение для сохраняемых настроек

Серверный аналог localStorage: настройки подключения к БД, конфигурация
API торговой сети и пользовательские шаблоны команд. Хранилище передается
в сервисы явно, вместо глобальных переменных модуля.
"""
import json
import os
import threading
from pathlib import Path
from typing import Any, Dict, Optional

from tradeframe.logger import logger


class StorageBackend:
    """
    Интерфейс хранилища: load / save
    """

    def load(self, key: str, default: Any = None) -> Any:
        raise NotImplementedError

    def save(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def remove(self, key: str) -> None:
        raise NotImplementedError


class MemoryStorage(StorageBackend):
    """Хранилище в памяти процесса (тесты, режим без диска)"""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, str] = {}
        for key, value in (initial or {}).items():
            self.save(key, value)

    def load(self, key: str, default: Any = None) -> Any:
        raw = self._data.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Поврежденные данные в хранилище по ключу '{key}': {e}", extra={"key": key})
            return default

    def save(self, key: str, value: Any) -> None:
        # Значения хранятся сериализованными, как в localStorage
        self._data[key] = json.dumps(value, ensure_ascii=False, default=str)

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def set_raw(self, key: str, raw: str) -> None:
        """Записать строку как есть (без сериализации)"""
        self._data[key] = raw


class JsonFileStorage(StorageBackend):
    """
    Хранилище в JSON-файле

    Файл содержит объект {ключ: значение}. Отсутствующий или поврежденный
    файл трактуется как пустое хранилище.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read_all(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Не удалось прочитать хранилище {self.path}: {e}", extra={"path": str(self.path)})
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Неверная структура хранилища {self.path}: ожидался объект")
            return {}
        return data

    def _write_all(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2, default=str)
        os.replace(tmp_path, self.path)

    def load(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._read_all().get(key, default)

    def save(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._read_all()
            data[key] = value
            self._write_all(data)
        logger.debug(f"Сохранен ключ хранилища '{key}'", extra={"key": key})

    def remove(self, key: str) -> None:
        with self._lock:
            data = self._read_all()
            if key in data:
                del data[key]
                self._write_all(data)
