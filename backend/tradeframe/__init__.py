"""
Tradeframe - backend администрирования сети АЗС

Клиент хостируемой БД с повторами, проверка разрешений пользователей,
аналитика купонов и интеграция с API торговой сети.
"""
