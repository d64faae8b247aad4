import threading

import pytest

from conftest import PARTNER_STEAM_ID, econ_offer
from steamtrade.exceptions import TradeError
from steamtrade.models import TradeOfferStatus, TradeStatus
from steamtrade.trade import TRADE_URL, Trade
from steamtrade.trade_manager import TradeManager
from steamtrade.trade_offer import TradeOffer
from steamtrade.wire import EconTradeOffer

PAGE_URL = TRADE_URL.format(PARTNER_STEAM_ID)


@pytest.fixture
def manager(web_api, web_access, trade_options):
    return TradeManager(web_api, web_access, trade_options)


@pytest.fixture
def no_polling(monkeypatch):
    monkeypatch.setattr(Trade, "start_polling", lambda self: None)


def waiting_trade(manager, trade_id):
    trade = Trade(PARTNER_STEAM_ID, manager.web_access, manager.options)
    trade.status = TradeStatus.COMPLETED_WAITING_FOR_CONFIRMATION
    trade.trade_id = trade_id
    manager._trades.append(trade)
    return trade


class TestCreateTrade:
    def test_created_and_announced(self, manager, web_access, no_polling):
        web_access.queue(PAGE_URL, f"<script>var g_ulTradePartnerSteamID = '{PARTNER_STEAM_ID}';</script>")
        created = []
        manager.trade_created.subscribe(created.append)

        trade = manager.create_trade(PARTNER_STEAM_ID)

        assert trade.partner_steam_id == PARTNER_STEAM_ID
        assert [event.trade for event in created] == [trade]
        assert manager.get_active_trades() == [trade]
        assert web_access.requests[0].referer == "https://steamcommunity.com"

    def test_no_access(self, manager, web_access):
        web_access.queue(PAGE_URL, "<div id='error_msg'>You cannot trade with this user.</div>")

        with pytest.raises(TradeError, match="Can not create a trade"):
            manager.create_trade(PARTNER_STEAM_ID)
        assert manager.get_active_trades() == []

    def test_page_unreachable(self, manager):
        with pytest.raises(TradeError):
            manager.create_trade(PARTNER_STEAM_ID)


class TestTradeLists:
    def test_ended_trades_pruned(self, manager, web_access, no_polling):
        web_access.queue(PAGE_URL, str(PARTNER_STEAM_ID))
        trade = manager.create_trade(PARTNER_STEAM_ID)
        trade.status = TradeStatus.COMPLETED

        assert manager.get_active_trades() == []
        assert manager._trades == []

    def test_waiting_trade_kept_while_offer_needs_confirmation(self, manager, web_api):
        trade = waiting_trade(manager, 42)
        web_api.queue("GetTradeOffer", {"offer": econ_offer(42, TradeOfferStatus.NEEDS_CONFIRMATION)})

        assert manager.get_waiting_confirmation_trades() == [trade]

    def test_waiting_trade_dropped_once_confirmed(self, manager, web_api):
        waiting_trade(manager, 42)
        web_api.queue("GetTradeOffer", {"offer": econ_offer(42, TradeOfferStatus.ACCEPTED)})

        assert manager.get_waiting_confirmation_trades() == []

    def test_waiting_trade_kept_on_lookup_failure(self, manager):
        trade = waiting_trade(manager, 42)

        assert manager.get_waiting_confirmation_trades() == [trade]

    def test_waiting_trade_without_id_dropped(self, manager):
        waiting_trade(manager, None)

        assert manager.get_waiting_confirmation_trades() == []

    def test_offer_lookup_runs_outside_manager_lock(self, manager, web_access, monkeypatch, no_polling):
        waiting_trade(manager, 42)
        web_access.queue(PAGE_URL, str(PARTNER_STEAM_ID))
        created = []

        def lookup_while_creating(web_api, trade_id, retry_helper):
            worker = threading.Thread(target=lambda: created.append(manager.create_trade(PARTNER_STEAM_ID)),
                                      daemon=True)
            worker.start()
            worker.join(3)
            return TradeOffer(EconTradeOffer.model_validate(econ_offer(trade_id, TradeOfferStatus.ACCEPTED)))

        monkeypatch.setattr("steamtrade.trade_manager.fetch_trade_offer", lookup_while_creating)

        assert manager.get_waiting_confirmation_trades() == []
        assert len(created) == 1
        assert manager.get_active_trades() == created
