from datetime import datetime
from typing import List, Optional, Tuple

from .models import TradeOfferAsset, TradeOfferStatus, from_unix_time, to_steam_id
from .wire import AssetDescription, EconTradeOffer


class TradeOffer:
    """Неизменяемый снимок трейд-оффера"""

    __slots__ = (
        "_trade_offer_id",
        "_is_our_offer",
        "_status",
        "_our_assets",
        "_their_assets",
        "_message",
        "_time_created",
        "_time_updated",
        "_expiration_time",
        "_trade_id",
        "_partner_steam_id",
        "_descriptions",
    )

    def __init__(self, offer: EconTradeOffer, descriptions: List[AssetDescription] = None):
        if not offer.trade_offer_id:
            raise ValueError("TradeOfferId is missing or invalid.")

        self._trade_offer_id: int = offer.trade_offer_id
        self._is_our_offer: bool = offer.is_our_offer
        self._status = TradeOfferStatus.from_server_code(offer.state)
        self._our_assets: Tuple[TradeOfferAsset, ...] = tuple(a.to_trade_offer_asset() for a in offer.items_to_give)
        self._their_assets: Tuple[TradeOfferAsset, ...] = tuple(
            a.to_trade_offer_asset() for a in offer.items_to_receive
        )
        self._message: Optional[str] = offer.message
        self._time_created: Optional[datetime] = from_unix_time(offer.time_created)
        self._time_updated: Optional[datetime] = from_unix_time(offer.time_updated)
        self._expiration_time: Optional[datetime] = from_unix_time(offer.expiration_time)
        self._trade_id: Optional[int] = offer.trade_id
        self._partner_steam_id: int = to_steam_id(offer.account_id_other)
        self._descriptions: Tuple[AssetDescription, ...] = tuple(descriptions or ())

    @property
    def trade_offer_id(self) -> int:
        return self._trade_offer_id

    @property
    def is_our_offer(self) -> bool:
        return self._is_our_offer

    @property
    def status(self) -> TradeOfferStatus:
        return self._status

    @property
    def our_assets(self) -> List[TradeOfferAsset]:
        return list(self._our_assets)

    @property
    def their_assets(self) -> List[TradeOfferAsset]:
        return list(self._their_assets)

    @property
    def has_missing(self) -> bool:
        return any(a.is_missing for a in self._our_assets + self._their_assets)

    @property
    def message(self) -> Optional[str]:
        return self._message

    @property
    def time_created(self) -> Optional[datetime]:
        return self._time_created

    @property
    def time_updated(self) -> Optional[datetime]:
        return self._time_updated

    @property
    def expiration_time(self) -> Optional[datetime]:
        return self._expiration_time

    @property
    def trade_id(self) -> Optional[int]:
        return self._trade_id

    @property
    def partner_steam_id(self) -> int:
        return self._partner_steam_id

    @property
    def is_first_offer(self) -> bool:
        return self._time_created == self._time_updated

    def get_asset_description(self, asset: TradeOfferAsset) -> Optional[AssetDescription]:
        if asset is None:
            return None
        for description in self._descriptions:
            if description.describes(asset):
                return description
        return None

    def __repr__(self):
        direction = "ours" if self._is_our_offer else "theirs"
        return f"<TradeOffer {self._trade_offer_id} {self._status.value} ({direction})>"
