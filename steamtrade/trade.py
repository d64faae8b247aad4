"""
Живой трейд: обе стороны одновременно опрашивают один диалог.
Логика протокола повторяет веб-клиент Steam (economy_trade.js).
"""
import threading
from collections import deque
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional, Set, Tuple

from utils.logger import setup_logger
from .events import (
    EventHook,
    PartnerAcceptedEvent,
    PartnerMessagedEvent,
    PartnerOfferedItemsChangedEvent,
    PartnerReadyStateChangedEvent,
    PartnerStatusChangedEvent,
    TradeEndedEvent,
    TradeTimedOutEvent,
)
from .exceptions import InventoryOverviewError, TradeError, TradeStateError
from .inventory import UserAppInventory, UserInventory, fetch_inventory_pages
from .models import (
    Asset,
    EscrowDuration,
    OfferedItemsAction,
    TradeEvent,
    TradeEventType,
    TradePartnerStatus,
    TradeStateStatus,
    TradeStatus,
)
from .options import TradeOptions
from .retry import CancellationToken
from .scraping import TRADE_APP_CONTEXT_VARIABLE, parse_app_context_data, parse_escrow_duration
from .steam_client import COMMUNITY_BASE_URL, RequestMethod, SteamWebAccess, SteamWebAccessRequest
from .wire import InventoryResponse, TradeEventModel, TradeStateResponse

TRADE_URL = COMMUNITY_BASE_URL + "/trade/{0}"
TRADE_ADD_ITEM_URL = TRADE_URL + "/additem"
TRADE_CANCEL_URL = TRADE_URL + "/cancel"
TRADE_CHAT_URL = TRADE_URL + "/chat"
TRADE_CONFIRM_URL = TRADE_URL + "/confirm"
TRADE_PARTNER_INVENTORY_URL = TRADE_URL + "/foreigninventory"
TRADE_REMOVE_ITEM_URL = TRADE_URL + "/removeitem"
TRADE_STATUS_URL = TRADE_URL + "/tradestatus"
TRADE_TOGGLE_READY_URL = TRADE_URL + "/toggleready"

MAX_FAILED_TRADE_STATES = 3
PARTNER_ACTIVE_SECONDS = 5

_CANCELED_STATES = (TradeStateStatus.CANCELED, TradeStateStatus.SESSION_EXPIRED, TradeStateStatus.FAILED)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Trade:
    def __init__(self, partner_steam_id: int, web_access: SteamWebAccess, options: TradeOptions = None):
        self.partner_steam_id = partner_steam_id
        self.web_access = web_access
        self.options = options or TradeOptions.default()
        self.logger = setup_logger("Trade")

        self.status = TradeStatus.ACTIVE
        self.partner_status = TradePartnerStatus.CONNECTING
        self.is_ready = False
        self.is_partner_ready = False
        self.is_partner_accepted = False
        self.trade_id: Optional[int] = None

        self.trade_created = _now()
        self.last_partner_interaction: Optional[datetime] = None
        self.last_version_change = self.trade_created

        self._my_offered_items: List[Asset] = []
        self._my_offered_items_lock = threading.Lock()
        self._partner_offered_items: List[Asset] = []
        self._partner_offered_items_lock = threading.Lock()
        # слот -> предмет: что мы намерены выставить, пока сервер не подтвердил
        self._pending_items: Dict[int, Asset] = {}
        self._pending_items_lock = threading.Lock()
        self._processed_events: Set[TradeEvent] = set()
        self._processed_events_lock = threading.Lock()

        self._status_lock = threading.Lock()
        self._user_action_lock = threading.Lock()
        self._action_owner: Optional[int] = None
        # события копятся под блокировкой действий и рассылаются после ее снятия
        self._queued_events: Deque[Tuple[EventHook, Any]] = deque()
        self._queued_events_lock = threading.Lock()
        self._failed_trade_states = 0
        self._version = 0
        self._log_position = 0

        self._poll_token: Optional[CancellationToken] = None
        self._poll_thread: Optional[threading.Thread] = None
        self._stop_polling = threading.Event()

        self.partner_accepted = EventHook("partner_accepted", self.logger)
        self.partner_messaged = EventHook("partner_messaged", self.logger)
        self.partner_offered_items_changed = EventHook("partner_offered_items_changed", self.logger)
        self.partner_ready_state_changed = EventHook("partner_ready_state_changed", self.logger)
        self.partner_status_changed = EventHook("partner_status_changed", self.logger)
        self.trade_ended = EventHook("trade_ended", self.logger)
        self.trade_timed_out = EventHook("trade_timed_out", self.logger)

    @property
    def my_offered_items(self) -> List[Asset]:
        with self._my_offered_items_lock:
            return list(self._my_offered_items)

    @property
    def partner_offered_items(self) -> List[Asset]:
        with self._partner_offered_items_lock:
            return list(self._partner_offered_items)

    @property
    def pending_items(self) -> Dict[int, Asset]:
        with self._pending_items_lock:
            return dict(self._pending_items)

    @property
    def trade_version(self) -> Tuple[int, int]:
        return self._version, self._log_position

    @property
    def failed_trade_states(self) -> int:
        return self._failed_trade_states

    def start_polling(self):
        """Запуск цикла опроса tradestatus (повторный вызов ничего не делает)"""
        if self.status != TradeStatus.ACTIVE:
            return
        if self._poll_thread is not None and self._poll_thread.is_alive() and not self._stop_polling.is_set():
            return
        # у каждого цикла свой флаг остановки: старый поток после dispose() доработает сам
        self._stop_polling = threading.Event()
        self._poll_thread = threading.Thread(
            target=self._poll_loop, args=(self._stop_polling,), name=f"trade-{self.partner_steam_id}", daemon=True
        )
        self._poll_thread.start()

    def dispose(self):
        self._stop_polling.set()
        self._cancel_poll()

    # --- действия пользователя ---

    def add_item(self, asset: Asset):
        if asset is None:
            raise ValueError("asset is required")
        if self._get_item_slot(asset) is not None:
            raise TradeStateError("Can not add an item twice.")

        # любое изменение предметов сбрасывает готовность
        if self.is_ready:
            self.set_ready_state(False)

        with self._user_action():
            with self._pending_items_lock:
                if any(item.asset_id == asset.asset_id for item in self._pending_items.values()):
                    raise TradeStateError("Can not add an item twice.")
                slot = self._next_trade_slot()
                self._pending_items[slot] = asset

            try:
                self._apply_action_state(self._request_trade_state(TRADE_ADD_ITEM_URL, {
                    "appid": asset.app_id,
                    "contextid": asset.context_id,
                    "itemid": asset.asset_id,
                    "slot": slot,
                }))
            except Exception:
                with self._pending_items_lock:
                    self._pending_items.pop(slot, None)
                self._trade_status_failure()
                raise

        self.logger.info(f"Trade {self.partner_steam_id}: added item {asset.asset_id} to slot {slot}")

    def remove_item(self, asset: Asset):
        if asset is None:
            raise ValueError("asset is required")
        if self._get_item_slot(asset) is None:
            raise TradeStateError("Can not remove an item before adding it.")

        if self.is_ready:
            self.set_ready_state(False)

        with self._user_action():
            slot = self._get_item_slot(asset)
            if slot is None:
                raise TradeStateError("Can not remove an item before adding it.")
            with self._pending_items_lock:
                cached_asset = self._pending_items.pop(slot)

            try:
                self._apply_action_state(self._request_trade_state(TRADE_REMOVE_ITEM_URL, {
                    "appid": asset.app_id,
                    "contextid": asset.context_id,
                    "itemid": asset.asset_id,
                    "slot": slot,
                }))
            except Exception:
                with self._pending_items_lock:
                    self._pending_items[slot] = cached_asset
                self._trade_status_failure()
                raise

        self.logger.info(f"Trade {self.partner_steam_id}: removed item {asset.asset_id} from slot {slot}")

    def set_ready_state(self, is_ready: bool):
        with self._user_action():
            if self.is_ready == is_ready:
                return
            try:
                self._change_ready_state(is_ready)
            except Exception:
                self._trade_status_failure()
                raise

    def send_message(self, message: str):
        if not message or not message.strip():
            raise ValueError("Empty or null message passed.")

        with self._user_action():
            try:
                self._apply_action_state(self._request_trade_state(TRADE_CHAT_URL, {
                    "message": message,
                    "logpos": str(self._log_position),
                    "version": str(self._version),
                }))
            except Exception:
                self._trade_status_failure()
                raise

    def accept_trade(self):
        if not self.is_ready:
            raise TradeStateError("Can't accept a trade if you are not yet ready.")
        if not self.verify_trade_items():
            raise TradeStateError("Local trade items does not match the steam accepted trade items.")

        with self._user_action():
            try:
                self._apply_action_state(self._request_trade_state(TRADE_CONFIRM_URL, {
                    "version": str(self._version),
                }))
            except Exception:
                self._trade_status_failure()
                raise

    def cancel_trade(self):
        # статус меняется до запроса, чтобы параллельные читатели сразу видели отмену
        if not self._transition(TradeStatus.CANCELED):
            return

        self._stop_polling.set()
        self._cancel_poll()
        self.logger.info(f"Trade {self.partner_steam_id}: canceling")

        try:
            self._request_trade_state(TRADE_CANCEL_URL, {})
        except Exception as e:
            self.logger.warning(f"Trade {self.partner_steam_id}: cancel request failed: {e!r}")
            self._trade_status_failure()

        self._emit(self.trade_ended, TradeEndedEvent(
            self.partner_steam_id, False, True, False, None,
            self.my_offered_items, self.partner_offered_items,
        ))
        self._fire_queued_events()

    def verify_trade_items(self) -> bool:
        """Совпадают ли наши намерения с подтвержденным сервером набором (по assetid, без учета порядка)"""
        if self.status != TradeStatus.ACTIVE:
            raise TradeStateError("Trade already ended.")

        with self._pending_items_lock:
            pending = sorted(asset.asset_id for asset in self._pending_items.values())
        with self._my_offered_items_lock:
            confirmed = sorted(asset.asset_id for asset in self._my_offered_items)
        return pending == confirmed

    def get_escrow_duration(self) -> EscrowDuration:
        page = self.options.retry_operation(
            lambda: self.web_access.fetch_string(self._trade_page_request()),
            throw_on_total_failure=False,
        )
        return parse_escrow_duration(page)

    def get_partner_inventory(self) -> UserInventory:
        page = self.options.retry_operation(
            lambda: self.web_access.fetch_string(self._trade_page_request()),
            lambda text: bool(text) and TRADE_APP_CONTEXT_VARIABLE in text,
            throw_on_total_failure=False,
        )
        try:
            apps = parse_app_context_data(page, TRADE_APP_CONTEXT_VARIABLE, self.partner_steam_id)
        except InventoryOverviewError as e:
            self.logger.warning(f"Trade {self.partner_steam_id}: {e}")
            apps = []
        return UserInventory(self.partner_steam_id, apps, self._load_partner_inventory)

    # --- опрос ---

    def poll(self):
        """Один тик опроса. Никогда не бросает исключений - только копит ошибки"""
        if self.status != TradeStatus.ACTIVE:
            return
        # идет действие пользователя - пропускаем тик
        if not self._acquire_action_lock(blocking=False):
            return

        try:
            token = CancellationToken(self.options.poll_timeout)
            self._poll_token = token

            try:
                state = self._request_trade_state(TRADE_STATUS_URL, {
                    "logpos": self._log_position,
                    "version": self._version,
                }, cancellation=token)
            except Exception as e:
                self.logger.warning(f"Trade {self.partner_steam_id}: status poll failed: {e!r}")
                state = None

            if token.cancel_requested:
                return
            if state is None:
                self._trade_status_failure()
                return

            try:
                self._process_trade_state(state)
            except Exception:
                self.logger.exception(f"Trade {self.partner_steam_id}: failed to process trade state")
                self._trade_status_failure()
        finally:
            self._poll_token = None
            self._release_action_lock()
            self._fire_queued_events()

    def _poll_loop(self, stop: threading.Event):
        interval = self.options.poll_interval.total_seconds()
        # следующий тик планируется только после окончания обработки предыдущего
        while not stop.wait(interval):
            if self.status != TradeStatus.ACTIVE:
                break
            self.poll()

    def _cancel_poll(self):
        token = self._poll_token
        if token is not None:
            token.cancel()

    # --- обработка состояния ---

    def _process_trade_state(self, state: TradeStateResponse):
        if self.status != TradeStatus.ACTIVE:
            return

        if not state.success:
            self.logger.warning(f"Trade {self.partner_steam_id}: unsuccessful state {state.error!r}")
            self._trade_status_failure()
            return

        if state.trade_status == TradeStateStatus.COMPLETED:
            self._end_trade(TradeStatus.COMPLETED, state.trade_id)
            return
        if state.trade_status == TradeStateStatus.PENDING_CONFIRMATION:
            self._end_trade(TradeStatus.COMPLETED_WAITING_FOR_CONFIRMATION, state.trade_id)
            return
        if state.trade_status in _CANCELED_STATES:
            self._end_trade(TradeStatus.CANCELED)
            return

        if state.trade_status != TradeStateStatus.ON_GOING or state.me is None or state.them is None:
            self._trade_status_failure()
            return

        if state.new_version:
            self._handle_version_change(state)

        if self.is_partner_ready != state.them.ready:
            self.is_partner_ready = state.them.ready
            self._emit(
                self.partner_ready_state_changed,
                PartnerReadyStateChangedEvent(self.partner_steam_id, self.is_partner_ready),
            )

        if state.them.confirmed and not self.is_partner_accepted:
            self.is_partner_accepted = True
            self._emit(self.partner_accepted, PartnerAcceptedEvent(
                self.partner_steam_id, self.my_offered_items, self.partner_offered_items
            ))

        self._update_partner_status(state.them.connection_pending, state.them.sec_since_touch)

        # сервер уже снял нашу готовность
        if self.is_ready and not state.me.ready:
            self.is_ready = False

        if state.events:
            self._handle_events(state.events)
            if self.status != TradeStatus.ACTIVE:
                return

        if state.log_position:
            self._log_position = state.log_position
            self.last_version_change = _now()

        self._failed_trade_states = 0
        self._check_timeout()

    def _handle_version_change(self, state: TradeStateResponse):
        partner_items = state.them.offered_items()
        my_items = state.me.offered_items()

        # списки заменяются целиком, чтобы пропущенный тик не оставил рассинхрон
        with self._partner_offered_items_lock:
            partner_old = self._partner_offered_items
            self._partner_offered_items = list(partner_items)
        with self._my_offered_items_lock:
            my_old = self._my_offered_items
            self._my_offered_items = list(my_items)

        removed = [asset for asset in partner_old if asset not in partner_items]
        added = [asset for asset in partner_items if asset not in partner_old]
        my_changed = set(my_old) != set(my_items)

        if removed or added:
            self.last_partner_interaction = _now()

        for asset in removed:
            self._emit(
                self.partner_offered_items_changed,
                PartnerOfferedItemsChangedEvent(self.partner_steam_id, OfferedItemsAction.REMOVED, asset),
            )
        for asset in added:
            self._emit(
                self.partner_offered_items_changed,
                PartnerOfferedItemsChangedEvent(self.partner_steam_id, OfferedItemsAction.ADDED, asset),
            )

        if self._version != state.version:
            self._version = state.version
            self.last_version_change = _now()

        if self.is_ready and (removed or added or my_changed):
            self._change_ready_state(False)

    def _handle_events(self, events: List[TradeEventModel]):
        for model in sorted(events, key=lambda e: e.timestamp):
            event = model.to_event()

            with self._processed_events_lock:
                if event in self._processed_events:
                    continue
                self._processed_events.add(event)

            is_us = event.steam_id != self.partner_steam_id
            event_time = event.time

            if event.action in (TradeEventType.ITEM_ADDED, TradeEventType.ITEM_REMOVED):
                self._handle_item_event(event, is_us)
            elif event.action == TradeEventType.SET_READY:
                if not is_us:
                    self.last_partner_interaction = event_time
                    if not self.is_partner_ready:
                        self.is_partner_ready = True
                        self._emit(
                            self.partner_ready_state_changed,
                            PartnerReadyStateChangedEvent(self.partner_steam_id, True),
                        )
            elif event.action == TradeEventType.SET_UNREADY:
                if is_us:
                    self.is_ready = False
                else:
                    self.last_partner_interaction = event_time
                    if self.is_partner_ready:
                        self.is_partner_ready = False
                        self._emit(
                            self.partner_ready_state_changed,
                            PartnerReadyStateChangedEvent(self.partner_steam_id, False),
                        )
            elif event.action == TradeEventType.ACCEPT:
                if not is_us:
                    self.last_partner_interaction = event_time
                    if not self.is_partner_accepted:
                        self.is_partner_accepted = True
                        self._emit(self.partner_accepted, PartnerAcceptedEvent(
                            self.partner_steam_id, self.my_offered_items, self.partner_offered_items
                        ))
            elif event.action == TradeEventType.CHAT:
                if not is_us:
                    self.last_partner_interaction = event_time
                    self._emit(
                        self.partner_messaged,
                        PartnerMessagedEvent(self.partner_steam_id, event.text, event_time),
                    )
            else:
                # валюта в трейде не поддерживается
                self.logger.warning(
                    f"Trade {self.partner_steam_id}: unsupported trade event {event.action}, canceling"
                )
                self.cancel_trade()
                return

    def _handle_item_event(self, event: TradeEvent, is_us: bool):
        asset = event.get_asset()
        if asset is None:
            return

        adding = event.action == TradeEventType.ITEM_ADDED
        if is_us:
            items, lock = self._my_offered_items, self._my_offered_items_lock
        else:
            items, lock = self._partner_offered_items, self._partner_offered_items_lock

        # то же изменение могло уже прийти через diff версии
        with lock:
            changed = (asset not in items) if adding else (asset in items)
            if changed:
                if adding:
                    items.append(asset)
                else:
                    items.remove(asset)

        if not changed:
            return

        if self.is_ready:
            self._change_ready_state(False)

        if not is_us:
            self.last_partner_interaction = event.time
            action = OfferedItemsAction.ADDED if adding else OfferedItemsAction.REMOVED
            self._emit(
                self.partner_offered_items_changed,
                PartnerOfferedItemsChangedEvent(self.partner_steam_id, action, asset),
            )

    def _update_partner_status(self, connection_pending: bool, seconds_since_touch: int):
        if not connection_pending and seconds_since_touch < PARTNER_ACTIVE_SECONDS:
            if self.partner_status == TradePartnerStatus.CONNECTING:
                self.partner_status = TradePartnerStatus.IN_TRADE
                self._emit(
                    self.partner_status_changed,
                    PartnerStatusChangedEvent(self.partner_steam_id, True, True, False),
                )
            elif self.partner_status == TradePartnerStatus.TIMEOUT:
                self.partner_status = TradePartnerStatus.IN_TRADE
                self._emit(
                    self.partner_status_changed,
                    PartnerStatusChangedEvent(self.partner_steam_id, True, False, False),
                )
        elif self.partner_status == TradePartnerStatus.IN_TRADE:
            self.partner_status = TradePartnerStatus.TIMEOUT
            self._emit(
                self.partner_status_changed,
                PartnerStatusChangedEvent(self.partner_steam_id, False, False, True),
            )

    def _check_timeout(self):
        last_interaction = self.last_partner_interaction or self.trade_created
        if _now() - last_interaction <= self.options.trade_timeout:
            return

        self.logger.info(f"Trade {self.partner_steam_id}: partner timed out")
        self.cancel_trade()
        self._emit(self.trade_timed_out, TradeTimedOutEvent(self.partner_steam_id, self.last_partner_interaction))

    def _end_trade(self, status: TradeStatus, trade_id: Optional[int] = None):
        if not self._transition(status):
            return

        self.trade_id = trade_id
        self._stop_polling.set()
        self.logger.info(f"Trade {self.partner_steam_id}: ended with {status.value}, trade id {trade_id}")
        self._emit(self.trade_ended, TradeEndedEvent(
            self.partner_steam_id,
            status != TradeStatus.CANCELED,
            status == TradeStatus.CANCELED,
            status == TradeStatus.COMPLETED_WAITING_FOR_CONFIRMATION,
            trade_id,
            self.my_offered_items,
            self.partner_offered_items,
        ))

    def _transition(self, status: TradeStatus) -> bool:
        # из Active можно выйти только один раз
        with self._status_lock:
            if self.status != TradeStatus.ACTIVE:
                return False
            self.status = status
            return True

    def _trade_status_failure(self):
        self._failed_trade_states += 1
        if self._failed_trade_states > MAX_FAILED_TRADE_STATES:
            self.logger.warning(
                f"Trade {self.partner_steam_id}: {self._failed_trade_states} consecutive failures, canceling"
            )
            self.cancel_trade()

    # --- вспомогательное ---

    @contextmanager
    def _user_action(self):
        self._cancel_poll()
        self._acquire_action_lock()
        try:
            if self.status != TradeStatus.ACTIVE:
                raise TradeStateError("Trade already ended.")
            yield
        finally:
            self._release_action_lock()
            self._fire_queued_events()

    def _acquire_action_lock(self, blocking: bool = True) -> bool:
        if not self._user_action_lock.acquire(blocking):
            return False
        self._action_owner = threading.get_ident()
        return True

    def _release_action_lock(self):
        self._action_owner = None
        self._user_action_lock.release()

    def _emit(self, hook: EventHook, event: Any):
        with self._queued_events_lock:
            self._queued_events.append((hook, event))

    def _fire_queued_events(self):
        """Рассылает накопленные события; под блокировкой действий ничего не делает"""
        if self._action_owner == threading.get_ident():
            return
        while True:
            with self._queued_events_lock:
                if not self._queued_events:
                    return
                hook, event = self._queued_events.popleft()
            hook.fire(event)

    def _change_ready_state(self, is_ready: bool):
        """Вызывается под блокировкой действий пользователя"""
        self.is_ready = is_ready
        try:
            self._apply_action_state(self._request_trade_state(TRADE_TOGGLE_READY_URL, {
                "ready": "true" if is_ready else "false",
                "version": str(self._version),
            }))
        except Exception:
            self.is_ready = not is_ready
            raise

    def _apply_action_state(self, state: TradeStateResponse):
        if not state.success:
            raise TradeError(state.error or "Trade action was rejected by the server.")
        self._process_trade_state(state)

    def _request_trade_state(self,
                             url: str,
                             data: Dict[str, Any],
                             cancellation: CancellationToken = None) -> TradeStateResponse:
        form = {"sessionid": self.web_access.session_id}
        form.update(data)
        request = SteamWebAccessRequest(
            url.format(self.partner_steam_id),
            RequestMethod.POST,
            form,
            referer=TRADE_URL.format(self.partner_steam_id),
        )
        state = self.options.retry_operation(
            lambda: self.web_access.fetch_object(request, TradeStateResponse),
            cancellation=cancellation,
        )
        if state is None:
            raise TradeError(f"No usable response from {request.url}")
        return state

    def _trade_page_request(self) -> SteamWebAccessRequest:
        return SteamWebAccessRequest(
            TRADE_URL.format(self.partner_steam_id),
            referer=COMMUNITY_BASE_URL,
            is_ajax=False,
        )

    def _load_partner_inventory(self, app_id: int, context_id: int) -> UserAppInventory:
        def fetch_page(start: int) -> Optional[InventoryResponse]:
            data = {
                "sessionid": self.web_access.session_id,
                "steamid": self.partner_steam_id,
                "appid": app_id,
                "contextid": context_id,
            }
            if start > 0:
                data["start"] = start
            return self.web_access.fetch_object(
                SteamWebAccessRequest(
                    TRADE_PARTNER_INVENTORY_URL.format(self.partner_steam_id),
                    RequestMethod.GET,
                    data,
                    referer=TRADE_URL.format(self.partner_steam_id),
                ),
                InventoryResponse,
            )

        return fetch_inventory_pages(fetch_page, self.options, app_id, context_id, self.partner_steam_id)

    def _get_item_slot(self, asset: Asset) -> Optional[int]:
        with self._pending_items_lock:
            for slot, item in self._pending_items.items():
                if item.asset_id == asset.asset_id:
                    return slot
        return None

    def _next_trade_slot(self) -> int:
        """Наименьший свободный слот; вызывается под _pending_items_lock"""
        slot = 0
        while slot in self._pending_items:
            slot += 1
        return slot
