import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import requests

from .exceptions import InventoryError, RetryError
from .retry import OperationRetryHelper
from .scraping import InventoryApp
from .wire import AssetDescription, InventoryResponse


@dataclass(frozen=True)
class UserInventoryAsset:
    app_id: int
    context_id: int
    asset_id: int
    class_id: int
    instance_id: int
    amount: int = 1


@dataclass
class UserAppInventory:
    assets: List[UserInventoryAsset] = field(default_factory=list)
    descriptions: List[AssetDescription] = field(default_factory=list)


def fetch_inventory_pages(
        fetch_page: Callable[[int], Optional[InventoryResponse]],
        retry_helper: OperationRetryHelper,
        app_id: int,
        context_id: int,
        partner_steam_id: int) -> UserAppInventory:
    """Постраничная загрузка инвентаря партнера (more / more_start)"""
    inventory = UserAppInventory()
    known_descriptions = set()
    start = 0

    while True:
        position = start
        try:
            response = retry_helper.retry_operation(
                lambda: fetch_page(position),
                lambda r: r is not None and r.success,
            )
        except (requests.RequestException, RetryError) as e:
            raise InventoryError(
                f"Failed to fetch user {partner_steam_id} app {app_id}, context {context_id} inventory."
            ) from e

        if response is None or not response.success:
            raise InventoryError(
                f"Failed to fetch user {partner_steam_id} app {app_id}, context {context_id} inventory."
            )

        for item in response.assets.values():
            asset = UserInventoryAsset(app_id, context_id, item.asset_id, item.class_id, item.instance_id,
                                       item.amount)
            if asset not in inventory.assets:
                inventory.assets.append(asset)

        for description in response.descriptions.values():
            key = (description.app_id or app_id, description.class_id, description.instance_id)
            if key not in known_descriptions:
                known_descriptions.add(key)
                inventory.descriptions.append(description)

        if not response.more:
            return inventory

        start = response.more_start
        time.sleep(retry_helper.request_delay.total_seconds())


class UserInventory:
    """Обзор инвентарей партнера и ленивая загрузка предметов по (app, context)"""

    def __init__(self,
                 partner_steam_id: int,
                 apps: List[InventoryApp],
                 loader: Callable[[int, int], UserAppInventory]):
        self.partner_steam_id = partner_steam_id
        self.apps = list(apps or [])
        self._loader = loader

    def get_app(self, app_id: int) -> Optional[InventoryApp]:
        return next((app for app in self.apps if app.app_id == app_id), None)

    def get_assets(self, app_id: int, context_id: int) -> UserAppInventory:
        return self._loader(app_id, context_id)
