from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional

from steampy.utils import account_id_to_steam_id, steam_id_to_account_id


def from_unix_time(seconds: Optional[int]) -> Optional[datetime]:
    """Перевод unix-времени Steam в datetime (UTC); 0 и пустые значения -> None"""
    if not seconds or seconds <= 0:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def to_unix_time(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def to_account_id(steam_id: int) -> int:
    return int(steam_id_to_account_id(str(steam_id)))


def to_steam_id(account_id: int) -> int:
    return int(account_id_to_steam_id(str(account_id)))


@dataclass(frozen=True)
class Asset:
    app_id: int
    context_id: int
    asset_id: int
    amount: int = 1


@dataclass(frozen=True)
class TradeOfferAsset(Asset):
    """Предмет оффера; равенство только по полям Asset"""
    class_id: int = field(default=0, compare=False)
    instance_id: int = field(default=0, compare=False)
    is_missing: bool = field(default=False, compare=False)


class TradeStatus(str, Enum):
    ACTIVE = "active"
    CANCELED = "canceled"
    COMPLETED = "completed"
    COMPLETED_WAITING_FOR_CONFIRMATION = "completed_waiting_for_confirmation"


class TradePartnerStatus(str, Enum):
    CONNECTING = "connecting"
    IN_TRADE = "in_trade"
    TIMEOUT = "timeout"


class TradeStateStatus(IntEnum):
    """Грубый статус трейда в ответе tradestatus"""
    ON_GOING = 0
    COMPLETED = 1
    EMPTY = 2
    CANCELED = 3
    SESSION_EXPIRED = 4
    FAILED = 5
    PENDING_CONFIRMATION = 6


class TradeEventType(IntEnum):
    ITEM_ADDED = 0
    ITEM_REMOVED = 1
    SET_READY = 2
    SET_UNREADY = 3
    ACCEPT = 4
    MODIFIED_CURRENCY = 6
    CHAT = 7


@dataclass(frozen=True)
class TradeEvent:
    """Запись журнала событий трейда. amount не входит в идентичность записи"""
    timestamp: int
    steam_id: int
    action: int
    app_id: int = 0
    context_id: int = 0
    asset_id: int = 0
    currency_id: int = 0
    text: Optional[str] = None
    amount: int = field(default=0, compare=False)

    @property
    def time(self) -> Optional[datetime]:
        return from_unix_time(self.timestamp)

    def get_asset(self) -> Optional[Asset]:
        if not self.asset_id:
            return None
        return Asset(self.app_id, self.context_id, self.asset_id, self.amount or 1)


class OfferedItemsAction(str, Enum):
    ADDED = "added"
    REMOVED = "removed"


class TradeOfferStatus(str, Enum):
    INVALID = "invalid"
    ACTIVE = "active"
    ACCEPTED = "accepted"
    COUNTERED = "countered"
    EXPIRED = "expired"
    CANCELED = "canceled"
    DECLINED = "declined"
    INVALID_ITEMS = "invalid_items"
    NEEDS_CONFIRMATION = "needs_confirmation"
    CANCELED_BY_SECOND_FACTOR = "canceled_by_second_factor"
    IN_ESCROW = "in_escrow"

    @classmethod
    def from_server_code(cls, code: Optional[int]) -> "TradeOfferStatus":
        return _STATUS_BY_SERVER_CODE.get(code, cls.INVALID)

    @property
    def server_code(self) -> int:
        return _SERVER_CODE_BY_STATUS[self]


# коды trade_offer_state из IEconService
_SERVER_CODE_BY_STATUS = {
    TradeOfferStatus.INVALID: 1,
    TradeOfferStatus.ACTIVE: 2,
    TradeOfferStatus.ACCEPTED: 3,
    TradeOfferStatus.COUNTERED: 4,
    TradeOfferStatus.EXPIRED: 5,
    TradeOfferStatus.CANCELED: 6,
    TradeOfferStatus.DECLINED: 7,
    TradeOfferStatus.INVALID_ITEMS: 8,
    TradeOfferStatus.NEEDS_CONFIRMATION: 9,
    TradeOfferStatus.CANCELED_BY_SECOND_FACTOR: 10,
    TradeOfferStatus.IN_ESCROW: 11,
}
_STATUS_BY_SERVER_CODE = {code: status for status, code in _SERVER_CODE_BY_STATUS.items()}


@dataclass(frozen=True)
class EscrowDuration:
    my_escrow_duration: timedelta
    partner_escrow_duration: timedelta


@dataclass
class TradeOffersSummary:
    pending_received: int = 0
    new_received: int = 0
    updated_received: int = 0
    historical_received: int = 0
    pending_sent: int = 0
    newly_accepted_sent: int = 0
    updated_sent: int = 0
    historical_sent: int = 0


class NewTradeOfferItemsList:
    """Списки предметов нового оффера (наши / партнера) без дубликатов"""

    def __init__(self, our_assets: List[Asset] = None, their_assets: List[Asset] = None):
        self._our_assets: List[Asset] = []
        self._their_assets: List[Asset] = []
        for asset in our_assets or []:
            self.add_our_item(asset)
        for asset in their_assets or []:
            self.add_their_item(asset)

    @property
    def our_assets(self) -> List[Asset]:
        return list(self._our_assets)

    @property
    def their_assets(self) -> List[Asset]:
        return list(self._their_assets)

    def add_our_item(self, asset: Asset) -> bool:
        if asset in self._our_assets:
            return False
        self._our_assets.append(asset)
        return True

    def add_their_item(self, asset: Asset) -> bool:
        if asset in self._their_assets:
            return False
        self._their_assets.append(asset)
        return True

    def remove_our_item(self, asset: Asset) -> bool:
        if asset not in self._our_assets:
            return False
        self._our_assets.remove(asset)
        return True

    def remove_their_item(self, asset: Asset) -> bool:
        if asset not in self._their_assets:
            return False
        self._their_assets.remove(asset)
        return True

    def as_trade_offer_state(self, version: int = 1) -> Dict[str, Any]:
        """Структура для поля json_tradeoffer"""
        return {
            "newversion": version > 1,
            "version": version,
            "me": _party_state(self._our_assets),
            "them": _party_state(self._their_assets),
        }


def _party_state(assets: List[Asset]) -> Dict[str, Any]:
    return {
        "assets": [
            {
                "appid": asset.app_id,
                "contextid": str(asset.context_id),
                "amount": asset.amount,
                "assetid": str(asset.asset_id),
            }
            for asset in assets
        ],
        "currency": [],
        "ready": False,
    }
