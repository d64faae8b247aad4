"""
Pydantic-модели ответов Steam. Описаны только поля, влияющие на состояние.
Steam присылает числа строками и списки словарями - валидаторы это выравнивают.
"""
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import Asset, TradeEvent, TradeOfferAsset


def _as_list(value: Any) -> Any:
    # {"0": {...}, "1": {...}} -> [{...}, {...}]
    if isinstance(value, dict):
        return [value[key] for key in sorted(value, key=lambda k: int(k) if str(k).isdigit() else 0)]
    if value is None:
        return []
    return value


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# --- живой трейд ---

class TradeUserAsset(WireModel):
    app_id: int = Field(0, alias="appid")
    context_id: int = Field(0, alias="contextid")
    asset_id: int = Field(0, alias="assetid")
    amount: int = 1

    def to_asset(self) -> Asset:
        return Asset(self.app_id, self.context_id, self.asset_id, self.amount)


class TradeUserObject(WireModel):
    # после удаления предмета Steam присылает словарь слот -> предмет вместо списка
    assets: Any = None
    confirmed: bool = False
    ready: bool = False
    connection_pending: bool = False
    sec_since_touch: int = 0

    def get_assets(self) -> List[Tuple[Optional[int], TradeUserAsset]]:
        if isinstance(self.assets, list):
            return [(None, TradeUserAsset.model_validate(item)) for item in self.assets]
        if isinstance(self.assets, dict):
            return [(int(slot), TradeUserAsset.model_validate(item)) for slot, item in self.assets.items()]
        return []

    def offered_items(self) -> List[Asset]:
        return [asset.to_asset() for _, asset in self.get_assets()]


class TradeEventModel(WireModel):
    action: int = -1
    timestamp: int = 0
    steam_id: int = Field(0, alias="steamid")
    app_id: int = Field(0, alias="appid")
    context_id: int = Field(0, alias="contextid")
    asset_id: int = Field(0, alias="assetid")
    currency_id: int = Field(0, alias="currencyid")
    amount: int = 0
    text: Optional[str] = None

    def to_event(self) -> TradeEvent:
        return TradeEvent(
            timestamp=self.timestamp,
            steam_id=self.steam_id,
            action=self.action,
            app_id=self.app_id,
            context_id=self.context_id,
            asset_id=self.asset_id,
            currency_id=self.currency_id,
            text=self.text,
            amount=self.amount,
        )


class TradeStateResponse(WireModel):
    success: bool = False
    error: Optional[str] = None
    trade_status: int = 0
    new_version: bool = Field(False, alias="newversion")
    version: int = 0
    log_position: int = Field(0, alias="logpos")
    trade_id: Optional[int] = Field(None, alias="tradeid")
    me: Optional[TradeUserObject] = None
    them: Optional[TradeUserObject] = None
    events: List[TradeEventModel] = Field(default_factory=list)

    @field_validator("events", mode="before")
    @classmethod
    def _events_as_list(cls, value: Any) -> Any:
        return _as_list(value)


# --- IEconService ---

class EconAsset(WireModel):
    app_id: int = Field(0, alias="appid")
    context_id: int = Field(0, alias="contextid")
    asset_id: int = Field(0, alias="assetid")
    class_id: int = Field(0, alias="classid")
    instance_id: int = Field(0, alias="instanceid")
    amount: int = 1
    missing: bool = False

    def to_trade_offer_asset(self) -> TradeOfferAsset:
        return TradeOfferAsset(
            self.app_id, self.context_id, self.asset_id, self.amount,
            class_id=self.class_id, instance_id=self.instance_id, is_missing=self.missing,
        )


class AssetDescription(WireModel):
    app_id: int = Field(0, alias="appid")
    class_id: int = Field(0, alias="classid")
    instance_id: int = Field(0, alias="instanceid")
    name: Optional[str] = None
    market_name: Optional[str] = None
    market_hash_name: Optional[str] = None
    type: Optional[str] = None
    icon_url: Optional[str] = None
    tradable: bool = False
    marketable: bool = False
    commodity: bool = False

    def describes(self, asset: TradeOfferAsset) -> bool:
        return (asset.app_id == self.app_id and
                asset.class_id == self.class_id and
                asset.instance_id == self.instance_id)


class EconTradeOffer(WireModel):
    trade_offer_id: Optional[int] = Field(None, alias="tradeofferid")
    account_id_other: int = Field(0, alias="accountid_other")
    message: Optional[str] = None
    expiration_time: int = 0
    state: int = Field(0, alias="trade_offer_state")
    items_to_give: List[EconAsset] = Field(default_factory=list)
    items_to_receive: List[EconAsset] = Field(default_factory=list)
    is_our_offer: bool = False
    time_created: int = 0
    time_updated: int = 0
    trade_id: Optional[int] = Field(None, alias="tradeid")
    from_real_time_trade: bool = False
    escrow_end_date: int = 0
    confirmation_method: int = 0

    def is_valid(self) -> bool:
        # 0 - неизвестный статус, 1 - Invalid
        return (bool(self.trade_offer_id) and
                self.state not in (0, 1) and
                bool(self.items_to_give or self.items_to_receive))


class GetTradeOfferResponse(WireModel):
    offer: Optional[EconTradeOffer] = None
    descriptions: List[AssetDescription] = Field(default_factory=list)


class GetTradeOffersResponse(WireModel):
    trade_offers_sent: List[EconTradeOffer] = Field(default_factory=list)
    trade_offers_received: List[EconTradeOffer] = Field(default_factory=list)
    descriptions: List[AssetDescription] = Field(default_factory=list)

    @property
    def all_offers(self) -> List[EconTradeOffer]:
        return self.trade_offers_sent + self.trade_offers_received


class TradeOffersSummaryResponse(WireModel):
    pending_received_count: int = 0
    new_received_count: int = 0
    updated_received_count: int = 0
    historical_received_count: int = 0
    pending_sent_count: int = 0
    newly_accepted_sent_count: int = 0
    updated_sent_count: int = 0
    historical_sent_count: int = 0


class WebApiEmptyResponse(WireModel):
    pass


# --- community /tradeoffer ---

class TradeOfferAcceptResponse(WireModel):
    error: Optional[str] = Field(None, alias="strError")
    is_accepted: bool = Field(False, alias="isaccepted")
    trade_id: Optional[int] = Field(None, alias="tradeid")
    needs_mobile_confirmation: bool = False
    needs_email_confirmation: bool = False


class TradeOfferActionResponse(WireModel):
    """Ответ cancel / decline"""
    error: Optional[str] = Field(None, alias="strError")
    trade_offer_id: Optional[int] = Field(None, alias="tradeofferid")


class TradeOfferCreateResponse(WireModel):
    error: Optional[str] = Field(None, alias="strError")
    trade_offer_id: Optional[int] = Field(None, alias="tradeofferid")
    needs_mobile_confirmation: bool = False
    needs_email_confirmation: bool = False


# --- инвентарь партнера ---

class InventoryAsset(WireModel):
    asset_id: int = Field(0, alias="id")
    class_id: int = Field(0, alias="classid")
    instance_id: int = Field(0, alias="instanceid")
    amount: int = 1
    pos: int = 0


class InventoryResponse(WireModel):
    success: bool = False
    assets: Dict[str, InventoryAsset] = Field(default_factory=dict, alias="rgInventory")
    descriptions: Dict[str, AssetDescription] = Field(default_factory=dict, alias="rgDescriptions")
    more: bool = False
    more_start: int = 0

    @field_validator("assets", "descriptions", mode="before")
    @classmethod
    def _empty_list_as_dict(cls, value: Any) -> Any:
        # пустой инвентарь приходит как []
        if isinstance(value, list) or value is None:
            return {}
        return value

    @field_validator("more_start", mode="before")
    @classmethod
    def _more_start_false(cls, value: Any) -> Any:
        if value is False or value is None:
            return 0
        return value
