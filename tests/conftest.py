"""Общие фикстуры: поддельный транспорт Steam и быстрые настройки повторов."""
from collections import defaultdict, deque
from datetime import timedelta
from typing import Any, Deque, Dict, List

import pytest
import requests

from config import Config
from steamtrade.models import TradeOfferStatus
from steamtrade.options import TradeOfferOptions, TradeOptions
from steamtrade.steam_client import SteamWebAccessRequest

PARTNER_STEAM_ID = 76561198000000002
MY_STEAM_ID = 76561198000000001


class FakeWebAccess:
    """Записывает запросы и отдает ответы, поставленные в очередь для конкретного URL"""

    session_id = "test-session"

    def __init__(self):
        self.requests: List[SteamWebAccessRequest] = []
        self._responses: Dict[str, Deque[Any]] = defaultdict(deque)

    def queue(self, url: str, *payloads: Any):
        self._responses[url].extend(payloads)

    def calls_to(self, url: str) -> List[SteamWebAccessRequest]:
        return [request for request in self.requests if request.url == url]

    def fetch_string(self, request: SteamWebAccessRequest) -> str:
        self.requests.append(request)
        return self._next(request.url)

    def fetch_object(self, request: SteamWebAccessRequest, model):
        self.requests.append(request)
        payload = self._next(request.url)
        if payload is None:
            return None
        return model.model_validate(payload)

    def _next(self, url: str) -> Any:
        queue = self._responses.get(url)
        if not queue:
            raise requests.ConnectionError(f"No response queued for {url}")
        payload = queue.popleft()
        if isinstance(payload, Exception):
            raise payload
        return payload


class FakeWebAPI:
    """Поддельный api.steampowered.com: ответы ставятся в очередь по имени метода"""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self._responses: Dict[str, Deque[Any]] = defaultdict(deque)

    def queue(self, function: str, *payloads: Any):
        self._responses[function].extend(payloads)

    def calls_to(self, function: str) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call["function"] == function]

    def request_object(self, interface, method, function, version, params, model):
        self.calls.append({
            "interface": interface,
            "method": method,
            "function": function,
            "version": version,
            "params": dict(params or {}),
        })
        queue = self._responses.get(function)
        if not queue:
            raise requests.ConnectionError(f"No response queued for {function}")
        payload = queue.popleft()
        if isinstance(payload, Exception):
            raise payload
        if payload is None:
            return None
        return model.model_validate(payload)


def econ_offer(offer_id: int,
               status: TradeOfferStatus = TradeOfferStatus.ACTIVE,
               is_our_offer: bool = False,
               trade_id: int = None,
               time_created: int = 1600000000,
               time_updated: int = 1600000000) -> Dict[str, Any]:
    """Оффер в формате IEconService"""
    offer = {
        "tradeofferid": str(offer_id),
        "accountid_other": 39734274,
        "message": "",
        "expiration_time": 1700000000,
        "trade_offer_state": status.server_code,
        "items_to_give": [
            {"appid": 730, "contextid": "2", "assetid": "111", "classid": "10", "instanceid": "0", "amount": "1"}
        ],
        "items_to_receive": [],
        "is_our_offer": is_our_offer,
        "time_created": time_created,
        "time_updated": time_updated,
    }
    if trade_id is not None:
        offer["tradeid"] = str(trade_id)
    return offer


@pytest.fixture(autouse=True)
def _no_log_files(monkeypatch):
    monkeypatch.setattr(Config, "LOGS_DIR", None)


@pytest.fixture
def web_access() -> FakeWebAccess:
    return FakeWebAccess()


@pytest.fixture
def web_api() -> FakeWebAPI:
    return FakeWebAPI()


@pytest.fixture
def trade_options() -> TradeOptions:
    return TradeOptions(number_of_tries=1, request_delay=timedelta(0))


@pytest.fixture
def trade_offer_options() -> TradeOfferOptions:
    return TradeOfferOptions(number_of_tries=1, request_delay=timedelta(0))
