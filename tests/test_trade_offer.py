import pytest

from conftest import PARTNER_STEAM_ID, econ_offer
from steamtrade.models import TradeOfferAsset, TradeOfferStatus
from steamtrade.trade_offer import TradeOffer
from steamtrade.wire import AssetDescription, EconTradeOffer


def make_offer(**kwargs):
    return EconTradeOffer.model_validate(econ_offer(1, **kwargs))


class TestTradeOffer:
    def test_snapshot_fields(self):
        offer = TradeOffer(make_offer(status=TradeOfferStatus.ACCEPTED, trade_id=9))

        assert offer.trade_offer_id == 1
        assert offer.status == TradeOfferStatus.ACCEPTED
        assert offer.partner_steam_id == PARTNER_STEAM_ID
        assert offer.trade_id == 9
        assert offer.our_assets == [TradeOfferAsset(730, 2, 111, 1)]
        assert offer.their_assets == []
        assert not offer.has_missing

    def test_snapshot_is_read_only(self):
        offer = TradeOffer(make_offer())

        with pytest.raises(AttributeError):
            offer.status = TradeOfferStatus.ACCEPTED
        with pytest.raises(AttributeError):
            offer.note = "extra"
        offer.our_assets.clear()

        assert offer.status == TradeOfferStatus.ACTIVE
        assert offer.our_assets == [TradeOfferAsset(730, 2, 111, 1)]

    def test_first_offer(self):
        assert TradeOffer(make_offer()).is_first_offer
        assert not TradeOffer(make_offer(time_updated=1600000500)).is_first_offer

    def test_unknown_status_is_invalid(self):
        raw = econ_offer(1)
        raw["trade_offer_state"] = 42
        assert TradeOffer(EconTradeOffer.model_validate(raw)).status == TradeOfferStatus.INVALID

    def test_missing_id_rejected(self):
        raw = econ_offer(1)
        del raw["tradeofferid"]
        with pytest.raises(ValueError):
            TradeOffer(EconTradeOffer.model_validate(raw))

    def test_asset_description(self):
        description = AssetDescription.model_validate(
            {"appid": 730, "classid": "10", "instanceid": "0", "name": "AK-47"}
        )
        offer = TradeOffer(make_offer(), [description])

        assert offer.get_asset_description(offer.our_assets[0]).name == "AK-47"
        assert offer.get_asset_description(TradeOfferAsset(730, 2, 5, class_id=99)) is None
        assert offer.get_asset_description(None) is None


class TestEconTradeOffer:
    def test_valid(self):
        assert make_offer().is_valid()

    def test_invalid_state(self):
        raw = econ_offer(1)
        raw["trade_offer_state"] = 1
        assert not EconTradeOffer.model_validate(raw).is_valid()

    def test_no_items(self):
        raw = econ_offer(1)
        raw["items_to_give"] = []
        assert not EconTradeOffer.model_validate(raw).is_valid()
