import logging
from datetime import datetime
from pathlib import Path

from config import Config


def setup_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    # повторный вызов не должен дублировать обработчики
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)

    if Config.LOGS_DIR:
        log_dir = Path(Config.LOGS_DIR) / name
        log_dir.mkdir(parents=True, exist_ok=True)

        formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')

        file_handler = logging.FileHandler(log_dir / f"{datetime.now().date()}.log")
        file_handler.setFormatter(formatter)

        logger.addHandler(file_handler)
    else:
        logger.addHandler(logging.NullHandler())
    return logger
