"""
Сервисы приложения
"""
