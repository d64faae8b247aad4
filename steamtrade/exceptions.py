from typing import List, Optional


class BotError(Exception):
    """Базовое исключение для бота"""
    pass


class RetryError(BotError):
    """Все попытки операции завершились исключениями"""

    def __init__(self, errors: List[Exception]):
        self.errors = list(errors)
        super().__init__(f"Operation failed after {len(self.errors)} attempts: {self.errors[-1]!r}")


class TradeError(BotError):
    """Ошибка живого трейда"""
    pass


class TradeStateError(TradeError):
    """Действие недопустимо в текущем состоянии трейда"""
    pass


class TradeOfferError(BotError):
    """Ошибка при работе с трейд-офферами"""

    def __init__(self, message: str, retryable: bool = False, server_message: Optional[str] = None):
        super().__init__(message)
        self.retryable = retryable
        self.server_message = server_message


class TradeOfferStateError(TradeOfferError):
    """Действие недопустимо для оффера в текущем статусе или направлении"""

    def __init__(self, message: str):
        super().__init__(message, retryable=False)


class EscrowDurationError(BotError):
    """Не удалось извлечь срок удержания (escrow) со страницы"""

    def __init__(self, message: str = None):
        super().__init__(
            message or "Could not extract or parse the escrow duration. "
                       "Trade is invalid or the offer request rejected."
        )


class InventoryError(BotError):
    """Ошибка при работе с инвентарем"""
    pass


class InventoryOverviewError(InventoryError):
    """Не удалось получить обзор приложений инвентаря партнера"""
    pass


class ProxyError(BotError):
    """Ошибка прокси"""
    pass
