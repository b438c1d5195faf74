"""
Конфигурация приложения
"""
import os
from pathlib import Path
from typing import List

from dotenv import load_dotenv

load_dotenv()

# Базовые пути
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = BASE_DIR / "data"

# PostgreSQL
DATABASE_URL = os.getenv("DATABASE_URL", "postgresql://localhost/dumpling_rewards")

# Redis
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

# Погашение наград
REDEMPTION_TTL_MINUTES = int(os.getenv("REDEMPTION_TTL_MINUTES", "15"))  # код действует 15 минут
REDEMPTION_CODE_LENGTH = 8

# Каталог наград: reward_id -> название и стоимость в баллах
REWARD_CATALOG = {
    "sauce_or_drink": {"title": "Free Sauce or Soda", "points": 250},
    "fruit_tea": {"title": "Fruit Tea or Milk Tea", "points": 450},
    "small_appetizer": {"title": "Small Appetizer", "points": 500},
    "dumplings_6pc": {"title": "6 Piece Dumplings", "points": 650},
    "dumplings_12pc": {"title": "12 Piece Dumplings", "points": 850},
    "full_combo": {"title": "Full Combo", "points": 1500},
}

# Реферальная программа ("Give 50, Get 50")
REFERRAL_CODE_LENGTH = 6
REFERRAL_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
REFERRAL_ELIGIBILITY_CEILING = int(os.getenv("REFERRAL_ELIGIBILITY_CEILING", "50"))  # получатель с >= 50 баллов не может принять код
REFERRAL_RECEIVER_REWARD = int(os.getenv("REFERRAL_RECEIVER_REWARD", "50"))
REFERRAL_REFERRER_REWARD = int(os.getenv("REFERRAL_REFERRER_REWARD", "50"))

# Rate limiting
RATE_LIMIT_REFERRAL_PER_MINUTE = int(os.getenv("RATE_LIMIT_REFERRAL_PER_MINUTE", "5"))
RATE_LIMIT_REFERRAL_WINDOW = 60  # секунд

# Сверка просроченных наград (worker)
RECONCILE_INTERVAL = int(os.getenv("RECONCILE_INTERVAL", "60"))  # секунд
RECONCILE_BATCH_SIZE = 200

# Администраторы (список user id)
ADMIN_IDS_STR = os.getenv("ADMIN_IDS", "")  # Через запятую: "uid1,uid2"
ADMIN_IDS: List[str] = [uid.strip() for uid in ADMIN_IDS_STR.split(",") if uid.strip()]

# Сотрудники кассы (могут отмечать награды использованными)
STAFF_IDS_STR = os.getenv("STAFF_IDS", "")  # Через запятую: "uid1,uid2"
STAFF_IDS: List[str] = [uid.strip() for uid in STAFF_IDS_STR.split(",") if uid.strip()]

# API Server
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("PORT", "8080"))

# Логирование
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Создание директорий
DATA_DIR.mkdir(exist_ok=True)
(DATA_DIR / "logs").mkdir(exist_ok=True)
