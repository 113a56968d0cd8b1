import os
from dotenv import load_dotenv

# Загрузка переменных окружения
load_dotenv()

# MongoDB
MONGODB_URI = os.getenv("MONGODB_URI", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("MONGODB_DB_NAME", "battleitout")

# Батлы
BATTLE_DURATION_HOURS = int(os.getenv("BATTLE_DURATION_HOURS", "24"))
SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "300"))  # 5 минут
SWEEP_BATCH_SIZE = int(os.getenv("SWEEP_BATCH_SIZE", "50"))
GAME_CATEGORIES = [
    c.strip()
    for c in os.getenv("GAME_CATEGORIES", "Sports,Racing,Gym,Swimming").split(",")
    if c.strip()
]

# Просмотры
MIN_VIEW_DURATION_MS = int(os.getenv("MIN_VIEW_DURATION_MS", "3000"))

# Кэш
CACHE_TTL_SECONDS = int(os.getenv("CACHE_TTL_SECONDS", "300"))

# Push-уведомления
EXPO_PUSH_URL = os.getenv("EXPO_PUSH_URL", "https://exp.host/--/api/v2/push/send")
PUSH_TIMEOUT_SECONDS = float(os.getenv("PUSH_TIMEOUT_SECONDS", "10"))

# Онлайн-статус
PRESENCE_INTERVAL_SECONDS = int(os.getenv("PRESENCE_INTERVAL_SECONDS", "30"))

# Сервер
PORT = int(os.getenv("PORT", "8080"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
