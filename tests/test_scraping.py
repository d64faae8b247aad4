from datetime import timedelta

import pytest

from steamtrade.exceptions import EscrowDurationError, InventoryOverviewError
from steamtrade.scraping import (
    TRADE_APP_CONTEXT_VARIABLE,
    offer_page_mentions_partner,
    page_mentions_partner,
    parse_app_context_data,
    parse_escrow_duration,
)

ESCROW_PAGE = """
<script>
    var g_daysMyEscrow = 15;
    var g_daysTheirEscrow = 3;
</script>
"""

OVERVIEW_PAGE = """
<script>
    var g_rgForeignAppContextData = {"730":{"appid":730,"name":"Counter-Strike 2","icon":"https://x/icon.jpg","rgContexts":{"2":{"id":"2","name":"Backpack","asset_count":12}}}};
</script>
"""


class TestEscrowDuration:
    def test_separate_durations(self):
        escrow = parse_escrow_duration(ESCROW_PAGE)
        assert escrow.my_escrow_duration == timedelta(days=15)
        assert escrow.partner_escrow_duration == timedelta(days=3)

    def test_both_override(self):
        escrow = parse_escrow_duration(ESCROW_PAGE + "var g_daysBothEscrow = 7;")
        assert escrow.my_escrow_duration == timedelta(days=7)
        assert escrow.partner_escrow_duration == timedelta(days=7)

    @pytest.mark.parametrize("page", [None, "", "   ", "var g_daysMyEscrow = 1;"])
    def test_missing_values(self, page):
        with pytest.raises(EscrowDurationError):
            parse_escrow_duration(page)


class TestAppContextData:
    def test_overview_parsed(self):
        apps = parse_app_context_data(OVERVIEW_PAGE, TRADE_APP_CONTEXT_VARIABLE)
        assert len(apps) == 1
        assert apps[0].app_id == 730
        assert apps[0].name == "Counter-Strike 2"
        assert apps[0].contexts[2].asset_count == 12

    def test_empty_overview(self):
        assert parse_app_context_data(f"var {TRADE_APP_CONTEXT_VARIABLE} = [];", TRADE_APP_CONTEXT_VARIABLE) == []

    def test_missing_variable(self):
        with pytest.raises(InventoryOverviewError):
            parse_app_context_data("<html></html>", TRADE_APP_CONTEXT_VARIABLE, 1)

    def test_broken_json(self):
        with pytest.raises(InventoryOverviewError):
            parse_app_context_data(f"var {TRADE_APP_CONTEXT_VARIABLE} = {{oops;", TRADE_APP_CONTEXT_VARIABLE, 1)


class TestPartnerMentions:
    def test_trade_page(self):
        assert page_mentions_partner("<div data-steamid='76561198000000002'>", 76561198000000002)
        assert not page_mentions_partner("<div>error</div>", 76561198000000002)
        assert not page_mentions_partner(None, 76561198000000002)

    def test_offer_page(self):
        page = "var g_ulTradePartnerSteamID = '76561198000000002';"
        assert offer_page_mentions_partner(page, 76561198000000002)
        assert not offer_page_mentions_partner("var g_ulTradePartnerSteamID = '1';", 76561198000000002)
