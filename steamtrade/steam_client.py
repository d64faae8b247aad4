from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional, Type, TypeVar
from urllib.parse import urlencode

import requests
from pydantic import BaseModel, ValidationError
from steampy.client import SteamClient
from steampy.exceptions import InvalidCredentials

from config import Config
from utils.logger import setup_logger
from .exceptions import BotError, ProxyError

COMMUNITY_BASE_URL = "https://steamcommunity.com"
WEB_API_BASE_URL = "https://api.steampowered.com"

M = TypeVar("M", bound=BaseModel)


class RequestMethod(str, Enum):
    GET = "GET"
    POST = "POST"


@dataclass
class SteamWebAccessRequest:
    url: str
    method: RequestMethod = RequestMethod.GET
    data: Optional[Dict[str, Any]] = None
    referer: Optional[str] = None
    accept_failure_responses: bool = False
    is_ajax: bool = True
    timeout: float = field(default_factory=lambda: Config.HTTP_TIMEOUT)


def append_query(url: str, params: Dict[str, Any]) -> str:
    return f"{url}?{urlencode(params)}" if params else url


class SteamWebAccess:
    """HTTP-доступ к steamcommunity.com поверх авторизованной requests-сессии"""

    def __init__(self, session: requests.Session, session_id_provider: Callable[[], str] = None):
        self.session = session
        self._session_id_provider = session_id_provider
        self.logger = setup_logger("SteamWebAccess")

    @property
    def session_id(self) -> Optional[str]:
        if self._session_id_provider is not None:
            return self._session_id_provider()
        return self.session.cookies.get("sessionid", domain="steamcommunity.com")

    def _send(self, request: SteamWebAccessRequest) -> requests.Response:
        headers = {}
        if request.referer:
            headers["Referer"] = request.referer
        if request.is_ajax:
            headers["X-Requested-With"] = "XMLHttpRequest"

        if request.method == RequestMethod.POST:
            response = self.session.post(request.url, data=request.data, headers=headers, timeout=request.timeout)
        else:
            response = self.session.get(request.url, params=request.data, headers=headers, timeout=request.timeout)

        if not request.accept_failure_responses:
            response.raise_for_status()
        return response

    def fetch_string(self, request: SteamWebAccessRequest) -> str:
        return self._send(request).text

    def fetch_object(self, request: SteamWebAccessRequest, model: Type[M]) -> Optional[M]:
        """JSON-ответ как модель; None, если тело не разбирается"""
        response = self._send(request)
        try:
            return model.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            self.logger.warning(f"Bad response from {request.url}: {e}")
            return None


class SteamWebAPI:
    """Ключевые методы api.steampowered.com (IEconService и т.п.)"""

    def __init__(self, api_key: str, session: requests.Session = None):
        self.api_key = api_key
        self.session = session or requests.Session()
        self.logger = setup_logger("SteamWebAPI")

    def request_object(self,
                       interface: str,
                       method: RequestMethod,
                       function: str,
                       version: str,
                       params: Dict[str, Any],
                       model: Type[M]) -> Optional[M]:
        url = f"{WEB_API_BASE_URL}/{interface}/{function}/{version}/"
        payload = dict(params or {})
        payload["key"] = self.api_key

        if method == RequestMethod.POST:
            response = self.session.post(url, data=payload, timeout=Config.HTTP_TIMEOUT)
        else:
            response = self.session.get(url, params=payload, timeout=Config.HTTP_TIMEOUT)
        response.raise_for_status()

        try:
            body = response.json()
            return model.model_validate(body.get("response", {}))
        except (ValueError, AttributeError, ValidationError) as e:
            self.logger.warning(f"Bad response from {interface}/{function}: {e}")
            return None


class SteamClientWrapper:
    """Авторизация через steampy; выдает транспорт и менеджеры трейдов"""

    def __init__(self, api_key: str, username: str, password: str, ma_file_path: str, proxy: str = None):
        self.client = SteamClient(api_key)
        self.api_key = api_key
        self.proxy = proxy
        self._setup_session()
        self._login(username, password, ma_file_path)
        self.web_access = SteamWebAccess(self.client._session, self.client._get_session_id)
        self.web_api = SteamWebAPI(api_key, self.client._session)

    @classmethod
    def from_config(cls, username: str, password: str, ma_file_path: str) -> "SteamClientWrapper":
        """Ключ API и прокси берутся из .env"""
        return cls(Config.STEAM_API_KEY, username, password, ma_file_path, Config.PROXY)

    def _setup_session(self):
        if self.proxy:
            proxies = {"http": self.proxy, "https": self.proxy}
            self.client._session.proxies.update(proxies)
            try:
                # Проверка работоспособности прокси
                test = requests.get(WEB_API_BASE_URL, proxies=proxies, timeout=10)
                if test.status_code != 200:
                    raise ProxyError("Proxy test failed")
            except requests.RequestException as e:
                raise ProxyError(f"Proxy error: {e}")

    def _login(self, username: str, password: str, ma_file_path: str):
        try:
            self.client.login(username, password, ma_file_path)
        except InvalidCredentials as e:
            raise BotError(f"Steam auth failed: {e}")

    def trade_manager(self, options=None):
        from .trade_manager import TradeManager
        return TradeManager(self.web_api, self.web_access, options)

    def trade_offer_manager(self, options=None):
        from .trade_offer_manager import TradeOfferManager
        return TradeOfferManager(self.web_api, self.web_access, options)
