"""Разбор глобальных переменных, встроенных в HTML-страницы трейда и оффера"""
import json
import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional

from .exceptions import EscrowDurationError, InventoryOverviewError
from .models import EscrowDuration

_ESCROW_PATTERN = r"{name}(?:[\s=]+)(?P<days>\d+);"

TRADE_APP_CONTEXT_VARIABLE = "g_rgForeignAppContextData"
TRADE_OFFER_APP_CONTEXT_VARIABLE = "g_rgPartnerAppContextData"


@dataclass(frozen=True)
class InventoryAppContext:
    context_id: int
    name: str
    asset_count: int


@dataclass(frozen=True)
class InventoryApp:
    app_id: int
    name: str
    icon: Optional[str] = None
    contexts: Dict[int, InventoryAppContext] = field(default_factory=dict, hash=False)


def _escrow_days(page: str, name: str) -> Optional[int]:
    match = re.search(_ESCROW_PATTERN.format(name=name), page, re.IGNORECASE)
    return int(match.group("days")) if match else None


def parse_escrow_duration(page: str) -> EscrowDuration:
    """g_daysMyEscrow / g_daysTheirEscrow, при наличии g_daysBothEscrow - общий срок для обоих"""
    if not page or not page.strip():
        raise EscrowDurationError()

    my_days = _escrow_days(page, "g_daysMyEscrow")
    their_days = _escrow_days(page, "g_daysTheirEscrow")
    if my_days is None or their_days is None:
        raise EscrowDurationError()

    both_days = _escrow_days(page, "g_daysBothEscrow")
    if both_days is not None:
        my_days = their_days = both_days

    return EscrowDuration(timedelta(days=my_days), timedelta(days=their_days))


def parse_app_context_data(page: str, variable: str, partner_steam_id: int = None) -> List[InventoryApp]:
    """Обзор приложений/контекстов инвентаря из var <variable> = {...};"""
    match = re.search(rf"var {re.escape(variable)} = (.*?);", page or "")
    if not match or not match.group(1).strip():
        raise InventoryOverviewError(f"Failed to fetch inventory overview of {partner_steam_id}.")

    try:
        raw = json.loads(match.group(1))
    except ValueError as e:
        raise InventoryOverviewError(f"Failed to parse inventory overview of {partner_steam_id}: {e}") from e

    if not isinstance(raw, dict):
        # у пользователя без инвентарей Steam отдает []
        return []

    apps = []
    for app_id, app in raw.items():
        contexts = {}
        for context_id, context in (app.get("rgContexts") or {}).items():
            contexts[int(context_id)] = InventoryAppContext(
                context_id=int(context_id),
                name=context.get("name", ""),
                asset_count=int(context.get("asset_count", 0)),
            )
        apps.append(InventoryApp(
            app_id=int(app.get("appid", app_id)),
            name=app.get("name", ""),
            icon=app.get("icon"),
            contexts=contexts,
        ))
    return apps


def page_mentions_partner(page: str, partner_steam_id: int) -> bool:
    """Страница /trade/<id> доступна, только если в ней есть id партнера"""
    return bool(page) and str(partner_steam_id) in page.lower()


def offer_page_mentions_partner(page: str, partner_steam_id: int) -> bool:
    """Страница нового оффера открыта для партнера"""
    return bool(page) and f"g_ultradepartnersteamid = '{partner_steam_id}" in page.lower()
