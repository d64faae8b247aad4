from datetime import timedelta
from typing import Optional

from config import Config
from .retry import OperationRetryHelper


class TradeOptions(OperationRetryHelper):
    """Настройки живого трейда: политика повторов + опрос и таймауты"""

    _default: Optional["TradeOptions"] = None

    def __init__(self,
                 number_of_tries: int = 3,
                 request_delay: timedelta = None,
                 trade_timeout: timedelta = None,
                 poll_timeout: timedelta = None,
                 poll_interval: timedelta = None):
        super().__init__(number_of_tries, request_delay)
        self.trade_timeout = trade_timeout if trade_timeout is not None else timedelta(seconds=120)
        self.poll_timeout = poll_timeout if poll_timeout is not None else timedelta(seconds=60)
        self.poll_interval = poll_interval if poll_interval is not None else timedelta(seconds=1)

    @classmethod
    def from_config(cls) -> "TradeOptions":
        return cls(
            number_of_tries=Config.RETRY_NUMBER_OF_TRIES,
            request_delay=timedelta(seconds=Config.RETRY_REQUEST_DELAY),
            trade_timeout=timedelta(seconds=Config.TRADE_PARTNER_TIMEOUT),
            poll_timeout=timedelta(seconds=Config.TRADE_POLL_TIMEOUT),
            poll_interval=timedelta(seconds=Config.TRADE_POLL_INTERVAL),
        )

    @classmethod
    def default(cls) -> "TradeOptions":
        if cls._default is None:
            cls._default = cls.from_config()
        return cls._default


class TradeOfferOptions(OperationRetryHelper):
    """Настройки менеджера офферов"""

    _default: Optional["TradeOfferOptions"] = None

    def __init__(self,
                 number_of_tries: int = 3,
                 request_delay: timedelta = None,
                 poll_interval: timedelta = None):
        super().__init__(number_of_tries, request_delay)
        self.poll_interval = poll_interval if poll_interval is not None else timedelta(seconds=20)

    @classmethod
    def from_config(cls) -> "TradeOfferOptions":
        return cls(
            number_of_tries=Config.RETRY_NUMBER_OF_TRIES,
            request_delay=timedelta(seconds=Config.RETRY_REQUEST_DELAY),
            poll_interval=timedelta(seconds=Config.TRADE_OFFER_POLL_INTERVAL),
        )

    @classmethod
    def default(cls) -> "TradeOfferOptions":
        if cls._default is None:
            cls._default = cls.from_config()
        return cls._default
