import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List, Optional

from .models import Asset, OfferedItemsAction


@dataclass(frozen=True)
class PartnerAcceptedEvent:
    partner_steam_id: int
    my_offered_items: List[Asset]
    partner_offered_items: List[Asset]


@dataclass(frozen=True)
class PartnerMessagedEvent:
    partner_steam_id: int
    message: str
    time: Optional[datetime]


@dataclass(frozen=True)
class PartnerOfferedItemsChangedEvent:
    partner_steam_id: int
    action: OfferedItemsAction
    asset: Asset


@dataclass(frozen=True)
class PartnerReadyStateChangedEvent:
    partner_steam_id: int
    is_partner_ready: bool


@dataclass(frozen=True)
class PartnerStatusChangedEvent:
    partner_steam_id: int
    is_in_trade: bool
    is_first_connection: bool
    is_timeout: bool


@dataclass(frozen=True)
class TradeEndedEvent:
    partner_steam_id: int
    is_completed: bool
    is_canceled: bool
    does_need_confirmation: bool
    trade_id: Optional[int]
    my_offered_items: List[Asset]
    partner_offered_items: List[Asset]


@dataclass(frozen=True)
class TradeTimedOutEvent:
    partner_steam_id: int
    last_partner_interaction: Optional[datetime]


@dataclass(frozen=True)
class TradeCreatedEvent:
    partner_steam_id: int
    trade: Any


class EventHook:
    """Подписчики одного события. Исключения обработчиков логируются и не пробрасываются"""

    def __init__(self, name: str, logger: logging.Logger):
        self.name = name
        self._logger = logger
        self._handlers: List[Callable[[Any], Any]] = []
        self._lock = threading.Lock()

    def subscribe(self, handler: Callable[[Any], Any]):
        with self._lock:
            self._handlers.append(handler)
        return handler

    def unsubscribe(self, handler: Callable[[Any], Any]):
        with self._lock:
            if handler in self._handlers:
                self._handlers.remove(handler)

    def fire(self, payload: Any):
        with self._lock:
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(payload)
            except Exception:
                self._logger.exception(f"Handler {handler!r} of {self.name} failed")


class ListenerChain:
    """
    Упорядоченный список слушателей оффера. Каждый возвращает флаг продолжения:
    False (или исключение) прерывает цепочку, None считается подтверждением.
    """

    def __init__(self, name: str, logger: logging.Logger):
        self.name = name
        self._logger = logger
        self._listeners: List[Callable[[Any], Optional[bool]]] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Callable[[Any], Optional[bool]]):
        with self._lock:
            self._listeners.append(listener)
        return listener

    def unsubscribe(self, listener: Callable[[Any], Optional[bool]]):
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def dispatch(self, payload: Any) -> bool:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                if listener(payload) is False:
                    return False
            except Exception:
                self._logger.exception(f"Listener {listener!r} of {self.name} failed")
                return False
        return True
