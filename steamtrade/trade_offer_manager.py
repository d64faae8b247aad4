"""
Асинхронные трейд-офферы: опрос IEconService, доставка изменений статуса
слушателям и действия над офферами (accept / decline / cancel / counter / send).
"""
import json
import threading
from collections import deque
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Deque, Dict, List, Optional, Tuple

import requests

from utils.logger import setup_logger
from .events import ListenerChain
from .exceptions import InventoryOverviewError, RetryError, TradeOfferError, TradeOfferStateError
from .inventory import UserAppInventory, UserInventory, fetch_inventory_pages
from .models import (
    EscrowDuration,
    NewTradeOfferItemsList,
    TradeOffersSummary,
    TradeOfferStatus,
    to_account_id,
    to_unix_time,
)
from .options import TradeOfferOptions
from .retry import OperationRetryHelper
from .scraping import (
    TRADE_OFFER_APP_CONTEXT_VARIABLE,
    offer_page_mentions_partner,
    parse_app_context_data,
    parse_escrow_duration,
)
from .steam_client import (
    COMMUNITY_BASE_URL,
    RequestMethod,
    SteamWebAccess,
    SteamWebAccessRequest,
    SteamWebAPI,
    append_query,
)
from .trade_offer import TradeOffer
from .wire import (
    GetTradeOfferResponse,
    GetTradeOffersResponse,
    InventoryResponse,
    TradeOfferAcceptResponse,
    TradeOfferActionResponse,
    TradeOfferCreateResponse,
    TradeOffersSummaryResponse,
    WebApiEmptyResponse,
)

TRADE_OFFER_URL = COMMUNITY_BASE_URL + "/tradeoffer/{0}"
TRADE_OFFER_ACCEPT_URL = TRADE_OFFER_URL + "/accept"
TRADE_OFFER_CANCEL_URL = TRADE_OFFER_URL + "/cancel"
TRADE_OFFER_DECLINE_URL = TRADE_OFFER_URL + "/decline"
NEW_TRADE_OFFER_URL = COMMUNITY_BASE_URL + "/tradeoffer/new"
NEW_TRADE_OFFER_SEND_URL = NEW_TRADE_OFFER_URL + "/send"
PARTNER_INVENTORY_URL = NEW_TRADE_OFFER_URL + "/partnerinventory/"

ECON_SERVICE = "IEconService"
# время, раньше которого Steam не отдает историю офферов
HISTORICAL_CUTOFF = 1389106496
POLL_OVERLAP = timedelta(minutes=5)


class ActionResult(Enum):
    """Что сказал ответ на само действие"""
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    MISSING = "missing"


class Corroboration(Enum):
    """Что показал повторный запрос оффера"""
    CONFIRMED = "confirmed"
    CONTRADICTED = "contradicted"
    MISSING = "missing"


class ActionOutcome(Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    FATAL = "fatal"


_ACTION_OUTCOMES = {
    (ActionResult.CONFIRMED, Corroboration.CONFIRMED): ActionOutcome.SUCCESS,
    (ActionResult.CONFIRMED, Corroboration.CONTRADICTED): ActionOutcome.SUCCESS,
    (ActionResult.CONFIRMED, Corroboration.MISSING): ActionOutcome.SUCCESS,
    (ActionResult.REJECTED, Corroboration.CONFIRMED): ActionOutcome.SUCCESS,
    (ActionResult.REJECTED, Corroboration.CONTRADICTED): ActionOutcome.FATAL,
    (ActionResult.REJECTED, Corroboration.MISSING): ActionOutcome.FATAL,
    (ActionResult.MISSING, Corroboration.CONFIRMED): ActionOutcome.SUCCESS,
    (ActionResult.MISSING, Corroboration.CONTRADICTED): ActionOutcome.RETRYABLE,
    (ActionResult.MISSING, Corroboration.MISSING): ActionOutcome.RETRYABLE,
}


def resolve_action_outcome(result: ActionResult, corroboration: Corroboration) -> ActionOutcome:
    return _ACTION_OUTCOMES[(result, corroboration)]


def fetch_trade_offer(web_api: SteamWebAPI, trade_offer_id: int, retry_helper: OperationRetryHelper) -> TradeOffer:
    """Канонический запрос оффера по id"""
    response = retry_helper.retry_operation(
        lambda: web_api.request_object(
            ECON_SERVICE,
            RequestMethod.GET,
            "GetTradeOffer",
            "v1",
            {
                "tradeofferid": str(trade_offer_id),
                "language": "en_us",
                "get_descriptions": 1,
            },
            GetTradeOfferResponse,
        ),
        lambda r: r is not None and r.offer is not None and r.offer.is_valid(),
    )

    if response is None or response.offer is None or not response.offer.is_valid():
        raise TradeOfferError("Failed to retrieve trade offer.", retryable=True)

    return TradeOffer(response.offer, response.descriptions)


def _new_offer_query(partner_steam_id: int, token: str = None) -> Dict[str, str]:
    query = {"partner": str(to_account_id(partner_steam_id))}
    if token:
        query["token"] = token
    return query


class TradeOfferManager:
    def __init__(self, web_api: SteamWebAPI, web_access: SteamWebAccess, options: TradeOfferOptions = None):
        if web_api is None or web_access is None:
            raise ValueError("web_api and web_access are required")

        self.web_api = web_api
        self.web_access = web_access
        self.options = options or TradeOfferOptions.default()
        self.logger = setup_logger("TradeOfferManager")
        self.last_update: Optional[datetime] = None

        self._pending_offers: Deque[TradeOffer] = deque()
        self._pending_offers_lock = threading.Lock()
        self._known_offers: Dict[int, TradeOfferStatus] = {}
        self._known_offers_lock = threading.Lock()
        self._is_handling = False
        self._handling_lock = threading.Lock()

        self._poll_thread: Optional[threading.Thread] = None
        self._stop_polling = threading.Event()

        self.trade_offer_changed = ListenerChain("trade_offer_changed", self.logger)
        self.trade_offer_sent = ListenerChain("trade_offer_sent", self.logger)
        self.trade_offer_received = ListenerChain("trade_offer_received", self.logger)
        self.trade_offer_accepted = ListenerChain("trade_offer_accepted", self.logger)
        self.trade_offer_canceled = ListenerChain("trade_offer_canceled", self.logger)
        self.trade_offer_declined = ListenerChain("trade_offer_declined", self.logger)
        self.trade_offer_needs_confirmation = ListenerChain("trade_offer_needs_confirmation", self.logger)
        self.trade_offer_in_escrow = ListenerChain("trade_offer_in_escrow", self.logger)

    # --- опрос ---

    def start_polling(self):
        if self._poll_thread is not None and self._poll_thread.is_alive() and not self._stop_polling.is_set():
            return
        # у каждого цикла свой флаг остановки: старый поток после dispose() доработает сам
        self._stop_polling = threading.Event()
        self._poll_thread = threading.Thread(
            target=self._poll_loop, args=(self._stop_polling,), name="trade-offers", daemon=True
        )
        self._poll_thread.start()
        self.logger.info("Trade offers polling started")

    def dispose(self):
        if self._stop_polling.is_set():
            return
        self._stop_polling.set()
        self.logger.info("Trade offers polling stopped")

    def poll(self):
        """Один тик: запросить изменившиеся офферы, поставить в очередь и разобрать ее"""
        start_time = datetime.now(timezone.utc)
        try:
            if self.last_update is None:
                offers = self.get_trade_offers(True, True, True, True, False)
            else:
                offers = self.get_trade_offers(True, True, False, True, False, self.last_update - POLL_OVERLAP)

            self.last_update = start_time
            with self._pending_offers_lock:
                self._pending_offers.extend(offers)
        except Exception:
            self.logger.exception("Failed to poll trade offers")

        self._handle_pending_offers()

    def _poll_loop(self, stop: threading.Event):
        interval = self.options.poll_interval.total_seconds()
        while not stop.wait(interval):
            self.poll()

    def _handle_pending_offers(self):
        with self._handling_lock:
            if self._is_handling:
                return
            self._is_handling = True

        try:
            while True:
                with self._pending_offers_lock:
                    if not self._pending_offers:
                        break
                    offer = self._pending_offers.popleft()

                with self._known_offers_lock:
                    if self._known_offers.get(offer.trade_offer_id) == offer.status:
                        continue

                # прерванная доставка не запоминается - оффер придет снова со следующим опросом
                if self._dispatch(offer):
                    with self._known_offers_lock:
                        self._known_offers[offer.trade_offer_id] = offer.status
                else:
                    self.logger.info(f"Dispatch of {offer!r} aborted by a listener")
        finally:
            with self._handling_lock:
                self._is_handling = False

    def _dispatch(self, offer: TradeOffer) -> bool:
        if not self.trade_offer_changed.dispatch(offer):
            return False

        chain = self._route(offer)
        if chain is None:
            return True
        return chain.dispatch(offer)

    def _route(self, offer: TradeOffer) -> Optional[ListenerChain]:
        status = offer.status
        if status == TradeOfferStatus.ACTIVE:
            return self.trade_offer_sent if offer.is_our_offer else self.trade_offer_received
        if status == TradeOfferStatus.ACCEPTED:
            return self.trade_offer_accepted
        if status == TradeOfferStatus.EXPIRED:
            return self.trade_offer_canceled if offer.is_our_offer else self.trade_offer_declined
        if status in (TradeOfferStatus.CANCELED, TradeOfferStatus.CANCELED_BY_SECOND_FACTOR):
            return self.trade_offer_canceled
        if status in (TradeOfferStatus.COUNTERED, TradeOfferStatus.DECLINED):
            return self.trade_offer_declined
        if status == TradeOfferStatus.NEEDS_CONFIRMATION:
            return self.trade_offer_needs_confirmation
        if status == TradeOfferStatus.IN_ESCROW:
            return self.trade_offer_in_escrow
        return None

    # --- запросы ---

    def get_trade_offer(self, trade_offer_id: int) -> TradeOffer:
        return fetch_trade_offer(self.web_api, trade_offer_id, self.options)

    def get_trade_offers(self,
                         get_sent_offers: bool,
                         get_received_offers: bool,
                         get_descriptions: bool,
                         active_only: bool,
                         historical_only: bool,
                         time_historical_cutoff: datetime = None) -> List[TradeOffer]:
        if not get_sent_offers and not get_received_offers:
            raise ValueError("get_sent_offers and get_received_offers can't be both false")

        cutoff = to_unix_time(time_historical_cutoff) if time_historical_cutoff else HISTORICAL_CUTOFF
        response = self.options.retry_operation(
            lambda: self.web_api.request_object(
                ECON_SERVICE,
                RequestMethod.GET,
                "GetTradeOffers",
                "v1",
                {
                    "get_sent_offers": int(get_sent_offers),
                    "get_received_offers": int(get_received_offers),
                    "get_descriptions": int(get_descriptions),
                    "language": "en_us",
                    "active_only": int(active_only),
                    "historical_only": int(historical_only),
                    "time_historical_cutoff": str(cutoff),
                },
                GetTradeOffersResponse,
            )
        )

        if response is None:
            return []
        return [TradeOffer(offer, response.descriptions) for offer in response.all_offers if offer.is_valid()]

    def get_trade_offers_summary(self, since: datetime) -> TradeOffersSummary:
        response = self.options.retry_operation(
            lambda: self.web_api.request_object(
                ECON_SERVICE,
                RequestMethod.GET,
                "GetTradeOffersSummary",
                "v1",
                {"time_last_visit": to_unix_time(since)},
                TradeOffersSummaryResponse,
            )
        ) or TradeOffersSummaryResponse()

        return TradeOffersSummary(
            pending_received=response.pending_received_count,
            new_received=response.new_received_count,
            updated_received=response.updated_received_count,
            historical_received=response.historical_received_count,
            pending_sent=response.pending_sent_count,
            newly_accepted_sent=response.newly_accepted_sent_count,
            updated_sent=response.updated_sent_count,
            historical_sent=response.historical_sent_count,
        )

    def validate_access(self, partner_steam_id: int, token: str = None) -> bool:
        """Можно ли отправить партнеру оффер (с токеном или как другу)"""
        try:
            page = self.options.retry_operation(
                lambda: self.web_access.fetch_string(self._new_offer_page_request(partner_steam_id, token))
            )
        except (requests.RequestException, RetryError) as e:
            self.logger.warning(f"Failed to validate access to {partner_steam_id}: {e!r}")
            return False
        return offer_page_mentions_partner(page, partner_steam_id)

    def get_escrow_duration(self, partner_steam_id: int, token: str = None) -> EscrowDuration:
        page = self.options.retry_operation(
            lambda: self.web_access.fetch_string(self._new_offer_page_request(partner_steam_id, token)),
            throw_on_total_failure=False,
        )
        return parse_escrow_duration(page)

    def get_trade_offer_escrow_duration(self, offer: TradeOffer) -> EscrowDuration:
        page = self.options.retry_operation(
            lambda: self.web_access.fetch_string(SteamWebAccessRequest(
                TRADE_OFFER_URL.format(offer.trade_offer_id),
                referer=COMMUNITY_BASE_URL,
                is_ajax=False,
            )),
            throw_on_total_failure=False,
        )
        return parse_escrow_duration(page)

    def get_partner_inventory(self, partner_steam_id: int, token: str = None) -> UserInventory:
        page = self.options.retry_operation(
            lambda: self.web_access.fetch_string(self._new_offer_page_request(partner_steam_id, token)),
            lambda text: bool(text) and TRADE_OFFER_APP_CONTEXT_VARIABLE in text,
            throw_on_total_failure=False,
        )
        try:
            apps = parse_app_context_data(page, TRADE_OFFER_APP_CONTEXT_VARIABLE, partner_steam_id)
        except InventoryOverviewError as e:
            self.logger.warning(str(e))
            apps = []

        def load(app_id: int, context_id: int) -> UserAppInventory:
            return self._load_partner_inventory(partner_steam_id, app_id, context_id)

        return UserInventory(partner_steam_id, apps, load)

    # --- действия ---

    def accept(self, offer: TradeOffer) -> Optional[int]:
        """Принять входящий оффер. Возвращает id трейда, если Steam его сообщил"""
        if offer.is_our_offer or offer.status != TradeOfferStatus.ACTIVE:
            raise TradeOfferStateError("Can't accept a trade offer that is not active and/or is ours.")

        response = self._post_offer_action(TRADE_OFFER_ACCEPT_URL, offer, TradeOfferAcceptResponse)

        if response is not None and response.is_accepted:
            result = ActionResult.CONFIRMED
        elif response is not None and response.error:
            result = ActionResult.REJECTED
        else:
            result = ActionResult.MISSING

        refreshed = None
        corroboration = Corroboration.MISSING
        # id трейда может прийти только в повторном запросе
        if result != ActionResult.CONFIRMED or response.trade_id is None:
            refreshed, corroboration = self._corroborate(offer, TradeOfferStatus.ACCEPTED)

        self._raise_on_failure("accept", result, corroboration, response)
        self.logger.info(f"Accepted trade offer {offer.trade_offer_id}")

        if response is not None and response.trade_id is not None:
            return response.trade_id
        if corroboration == Corroboration.CONFIRMED:
            return refreshed.trade_id
        return None

    def decline(self, offer: TradeOffer):
        if offer.is_our_offer or offer.status != TradeOfferStatus.ACTIVE:
            raise TradeOfferStateError("Can't decline a trade offer that is not active and/or is ours.")

        response = self._post_offer_action(TRADE_OFFER_DECLINE_URL, offer, TradeOfferActionResponse)
        self._finish_offer_action("decline", offer, response, TradeOfferStatus.DECLINED)

    def cancel(self, offer: TradeOffer):
        if not offer.is_our_offer or offer.status != TradeOfferStatus.ACTIVE:
            raise TradeOfferStateError("Can't cancel a trade offer that is not active and/or not ours.")

        response = self._post_offer_action(TRADE_OFFER_CANCEL_URL, offer, TradeOfferActionResponse)
        self._finish_offer_action("cancel", offer, response, TradeOfferStatus.CANCELED)

    def decline_alternate(self, offer: TradeOffer):
        """Отклонение через IEconService/DeclineTradeOffer"""
        if offer.is_our_offer or offer.status != TradeOfferStatus.ACTIVE:
            raise TradeOfferStateError("Can't decline a trade offer that is not active and/or is ours.")
        self._web_api_offer_action("decline", "DeclineTradeOffer", offer, TradeOfferStatus.DECLINED)

    def cancel_alternate(self, offer: TradeOffer):
        """Отмена через IEconService/CancelTradeOffer"""
        if not offer.is_our_offer or offer.status != TradeOfferStatus.ACTIVE:
            raise TradeOfferStateError("Can't cancel a trade offer that is not active and/or not ours.")
        self._web_api_offer_action("cancel", "CancelTradeOffer", offer, TradeOfferStatus.CANCELED)

    def counter_offer(self, old_offer: TradeOffer, items: NewTradeOfferItemsList, message: str = "") -> Optional[int]:
        """Встречный оффер. Возвращает id нового оффера, если Steam его сообщил"""
        if old_offer.is_our_offer or old_offer.status != TradeOfferStatus.ACTIVE:
            raise TradeOfferStateError("Can't counter a trade offer that is not active and/or is ours.")

        form = self._new_offer_form(old_offer.partner_steam_id, items, message, "{}", version=2)
        form["tradeofferid_countered"] = str(old_offer.trade_offer_id)
        request = SteamWebAccessRequest(
            NEW_TRADE_OFFER_SEND_URL,
            RequestMethod.POST,
            form,
            referer=TRADE_OFFER_URL.format(old_offer.trade_offer_id),
        )
        response = self.options.retry_operation(
            lambda: self.web_access.fetch_object(request, TradeOfferCreateResponse),
            throw_on_total_failure=False,
        )

        if response is not None and response.trade_offer_id:
            self.logger.info(f"Countered trade offer {old_offer.trade_offer_id} with {response.trade_offer_id}")
            return response.trade_offer_id

        result = ActionResult.REJECTED if response is not None and response.error else ActionResult.MISSING
        _, corroboration = self._corroborate(old_offer, TradeOfferStatus.COUNTERED)
        self._raise_on_failure("counter", result, corroboration, response)
        self.logger.info(f"Countered trade offer {old_offer.trade_offer_id}")
        return None

    def send(self, partner_steam_id: int, items: NewTradeOfferItemsList, message: str = "") -> int:
        return self._send_offer(partner_steam_id, items, message, None)

    def send_with_token(self, partner_steam_id: int, token: str, items: NewTradeOfferItemsList,
                        message: str = "") -> int:
        if not token or not token.strip():
            raise ValueError("Partner trade offer token is missing or invalid.")
        return self._send_offer(partner_steam_id, items, message, token)

    # --- вспомогательное ---

    def _send_offer(self, partner_steam_id: int, items: NewTradeOfferItemsList, message: str,
                    token: Optional[str]) -> int:
        create_params = json.dumps({"trade_offer_access_token": token}) if token else "{}"
        request = SteamWebAccessRequest(
            NEW_TRADE_OFFER_SEND_URL,
            RequestMethod.POST,
            self._new_offer_form(partner_steam_id, items, message, create_params),
            referer=append_query(NEW_TRADE_OFFER_URL, _new_offer_query(partner_steam_id, token)),
        )
        response = self.options.retry_operation(
            lambda: self.web_access.fetch_object(request, TradeOfferCreateResponse),
            throw_on_total_failure=False,
        )

        if response is not None and response.trade_offer_id:
            self.logger.info(f"Sent trade offer {response.trade_offer_id} to {partner_steam_id}")
            return response.trade_offer_id
        if response is not None and response.error:
            raise TradeOfferError(response.error, retryable=False, server_message=response.error)
        raise TradeOfferError("Failed to send trade offer.", retryable=True)

    def _new_offer_form(self, partner_steam_id: int, items: NewTradeOfferItemsList, message: str,
                        create_params: str, version: int = 1) -> Dict[str, str]:
        return {
            "sessionid": self.web_access.session_id,
            "serverid": "1",
            "partner": str(partner_steam_id),
            "tradeoffermessage": message or "",
            "json_tradeoffer": json.dumps(items.as_trade_offer_state(version)),
            "trade_offer_create_params": create_params,
        }

    def _post_offer_action(self, url: str, offer: TradeOffer, model):
        request = SteamWebAccessRequest(
            url.format(offer.trade_offer_id),
            RequestMethod.POST,
            {
                "sessionid": self.web_access.session_id,
                "tradeofferid": str(offer.trade_offer_id),
                "serverid": "1",
            },
            referer=TRADE_OFFER_URL.format(offer.trade_offer_id),
        )
        return self.options.retry_operation(
            lambda: self.web_access.fetch_object(request, model),
            throw_on_total_failure=False,
        )

    def _finish_offer_action(self, action: str, offer: TradeOffer, response: Optional[TradeOfferActionResponse],
                             expected: TradeOfferStatus):
        if response is not None and response.trade_offer_id == offer.trade_offer_id:
            result = ActionResult.CONFIRMED
        elif response is not None and response.error:
            result = ActionResult.REJECTED
        else:
            result = ActionResult.MISSING

        corroboration = Corroboration.MISSING
        if result != ActionResult.CONFIRMED:
            _, corroboration = self._corroborate(offer, expected)

        self._raise_on_failure(action, result, corroboration, response)
        self.logger.info(f"Trade offer {offer.trade_offer_id}: {action} done")

    def _web_api_offer_action(self, action: str, function: str, offer: TradeOffer, expected: TradeOfferStatus):
        response = self.options.retry_operation(
            lambda: self.web_api.request_object(
                ECON_SERVICE,
                RequestMethod.POST,
                function,
                "v1",
                {"tradeofferid": str(offer.trade_offer_id)},
                WebApiEmptyResponse,
            ),
            throw_on_total_failure=False,
        )

        result = ActionResult.CONFIRMED if response is not None else ActionResult.MISSING
        corroboration = Corroboration.MISSING
        if result != ActionResult.CONFIRMED:
            _, corroboration = self._corroborate(offer, expected)

        self._raise_on_failure(action, result, corroboration, None)
        self.logger.info(f"Trade offer {offer.trade_offer_id}: {action} done via {function}")

    def _corroborate(self, offer: TradeOffer, expected: TradeOfferStatus) -> Tuple[Optional[TradeOffer],
                                                                                  Corroboration]:
        try:
            refreshed = self.get_trade_offer(offer.trade_offer_id)
        except (TradeOfferError, requests.RequestException, RetryError) as e:
            self.logger.warning(f"Failed to refetch trade offer {offer.trade_offer_id}: {e!r}")
            return None, Corroboration.MISSING

        if refreshed.status == expected:
            return refreshed, Corroboration.CONFIRMED
        return refreshed, Corroboration.CONTRADICTED

    def _raise_on_failure(self, action: str, result: ActionResult, corroboration: Corroboration, response):
        outcome = resolve_action_outcome(result, corroboration)
        if outcome == ActionOutcome.SUCCESS:
            return

        server_message = getattr(response, "error", None)
        self.logger.warning(f"Failed to {action} trade offer: {outcome.value}, server said {server_message!r}")
        if outcome == ActionOutcome.FATAL:
            raise TradeOfferError(server_message or f"Failed to {action} trade offer.",
                                  retryable=False, server_message=server_message)
        raise TradeOfferError(f"Failed to {action} trade offer.", retryable=True, server_message=server_message)

    def _new_offer_page_request(self, partner_steam_id: int, token: str = None) -> SteamWebAccessRequest:
        return SteamWebAccessRequest(
            NEW_TRADE_OFFER_URL,
            RequestMethod.GET,
            _new_offer_query(partner_steam_id, token),
            referer=COMMUNITY_BASE_URL,
            is_ajax=False,
        )

    def _load_partner_inventory(self, partner_steam_id: int, app_id: int, context_id: int) -> UserAppInventory:
        def fetch_page(start: int) -> Optional[InventoryResponse]:
            data = {
                "sessionid": self.web_access.session_id,
                "partner": partner_steam_id,
                "appid": app_id,
                "contextid": context_id,
            }
            if start > 0:
                data["start"] = start
            return self.web_access.fetch_object(
                SteamWebAccessRequest(
                    PARTNER_INVENTORY_URL,
                    RequestMethod.GET,
                    data,
                    referer=NEW_TRADE_OFFER_URL,
                ),
                InventoryResponse,
            )

        return fetch_inventory_pages(fetch_page, self.options, app_id, context_id, partner_steam_id)
