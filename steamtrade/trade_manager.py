import threading
from typing import List

import requests

from utils.logger import setup_logger
from .events import EventHook, TradeCreatedEvent
from .exceptions import RetryError, TradeError, TradeOfferError
from .models import TradeOfferStatus, TradeStatus
from .options import TradeOptions
from .scraping import page_mentions_partner
from .steam_client import COMMUNITY_BASE_URL, SteamWebAccess, SteamWebAccessRequest, SteamWebAPI
from .trade import TRADE_URL, Trade
from .trade_offer_manager import fetch_trade_offer


class TradeManager:
    """Создание живых трейдов и учет активных / ждущих подтверждения"""

    def __init__(self, web_api: SteamWebAPI, web_access: SteamWebAccess, options: TradeOptions = None):
        if web_api is None or web_access is None:
            raise ValueError("web_api and web_access are required")

        self.web_api = web_api
        self.web_access = web_access
        self.options = options or TradeOptions.default()
        self.logger = setup_logger("TradeManager")

        self._trades: List[Trade] = []
        self._lock = threading.Lock()

        self.trade_created = EventHook("trade_created", self.logger)

    def create_trade(self, partner_steam_id: int) -> Trade:
        if not self._validate_access(partner_steam_id):
            raise TradeError("Can not create a trade. Ask for an invite or send a new one.")

        with self._lock:
            trade = Trade(partner_steam_id, self.web_access, self.options)
            self._trades.append(trade)

        self.logger.info(f"Created trade with {partner_steam_id}")
        self.trade_created.fire(TradeCreatedEvent(partner_steam_id, trade))
        trade.start_polling()
        return trade

    def get_active_trades(self) -> List[Trade]:
        self._prune_trades()
        with self._lock:
            return [trade for trade in self._trades if trade.status == TradeStatus.ACTIVE]

    def get_waiting_confirmation_trades(self) -> List[Trade]:
        self._prune_trades()
        with self._lock:
            return [trade for trade in self._trades
                    if trade.status == TradeStatus.COMPLETED_WAITING_FOR_CONFIRMATION]

    def _validate_access(self, partner_steam_id: int) -> bool:
        try:
            page = self.web_access.fetch_string(SteamWebAccessRequest(
                TRADE_URL.format(partner_steam_id),
                referer=COMMUNITY_BASE_URL,
                is_ajax=False,
            ))
        except requests.RequestException as e:
            self.logger.warning(f"Failed to open trade page of {partner_steam_id}: {e!r}")
            return False
        return page_mentions_partner(page, partner_steam_id)

    def _prune_trades(self):
        # запросы к Steam идут вне self._lock
        with self._lock:
            trades = list(self._trades)

        settled = []
        for trade in trades:
            if trade.status in (TradeStatus.CANCELED, TradeStatus.COMPLETED):
                settled.append(trade)
            elif trade.status == TradeStatus.COMPLETED_WAITING_FOR_CONFIRMATION:
                if trade.trade_id is None or self._is_confirmation_settled(trade.trade_id):
                    settled.append(trade)

        with self._lock:
            self._trades = [trade for trade in self._trades if trade not in settled]

    def _is_confirmation_settled(self, trade_id: int) -> bool:
        try:
            offer = fetch_trade_offer(self.web_api, trade_id, self.options)
        except (TradeOfferError, requests.RequestException, RetryError) as e:
            self.logger.warning(f"Failed to check confirmation of trade {trade_id}: {e!r}")
            return False
        return offer.status not in (TradeOfferStatus.NEEDS_CONFIRMATION, TradeOfferStatus.INVALID)
