import os
from dotenv import load_dotenv

load_dotenv()

class Config:
    STEAM_API_KEY = os.getenv("STEAM_API_KEY")
    PROXY = os.getenv("PROXY")  # "http://user:pass@ip:port"
    LOGS_DIR = os.getenv("LOGS_DIR", "logs")
    HTTP_TIMEOUT = float(os.getenv("HTTP_TIMEOUT", "60"))

    # Повторы запросов к Steam
    RETRY_NUMBER_OF_TRIES = int(os.getenv("RETRY_NUMBER_OF_TRIES", "3"))
    RETRY_REQUEST_DELAY = float(os.getenv("RETRY_REQUEST_DELAY", "0.5"))

    # Живой трейд (секунды)
    TRADE_POLL_INTERVAL = float(os.getenv("TRADE_POLL_INTERVAL", "1"))
    TRADE_POLL_TIMEOUT = float(os.getenv("TRADE_POLL_TIMEOUT", "60"))
    TRADE_PARTNER_TIMEOUT = float(os.getenv("TRADE_PARTNER_TIMEOUT", "120"))

    # Трейд-офферы (секунды)
    TRADE_OFFER_POLL_INTERVAL = float(os.getenv("TRADE_OFFER_POLL_INTERVAL", "20"))
