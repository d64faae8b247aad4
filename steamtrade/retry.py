import logging
import threading
import time
from datetime import timedelta
from typing import Any, Callable, List, Optional, TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_fixed,
)

from utils.logger import setup_logger
from .exceptions import RetryError

T = TypeVar("T")


class CancellationToken:
    """Кооперативная отмена: вручную через cancel() или по истечении таймаута"""

    def __init__(self, timeout: Optional[timedelta] = None):
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout.total_seconds() if timeout is not None else None

    def cancel(self):
        self._event.set()

    @property
    def cancel_requested(self) -> bool:
        """Отменен вручную (истечение таймаута сюда не входит)"""
        return self._event.is_set()

    @property
    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def wait(self, seconds: float) -> bool:
        """Пауза, прерываемая отменой. True - если токен отменен"""
        if self._deadline is not None:
            seconds = min(seconds, max(0.0, self._deadline - time.monotonic()))
        self._event.wait(seconds)
        return self.is_cancelled


def _is_not_empty(result: Any) -> bool:
    if result is None:
        return False
    if isinstance(result, (str, bytes, list, tuple, dict)):
        return len(result) > 0
    return True


class OperationRetryHelper:
    """Повтор удаленной операции фиксированное число раз с фиксированной паузой"""

    def __init__(self, number_of_tries: int = 3, request_delay: Optional[timedelta] = None):
        if number_of_tries <= 0:
            raise ValueError("Number of tries should be a value bigger or equal to one.")
        self.number_of_tries = number_of_tries
        self.request_delay = request_delay if request_delay is not None else timedelta(seconds=0.5)
        self.logger = setup_logger("OperationRetryHelper")

    def retry_operation(
            self,
            operation: Callable[[], T],
            validity_checker: Callable[[T], bool] = None,
            throw_on_total_failure: bool = True,
            cancellation: CancellationToken = None) -> Optional[T]:
        """
        Выполняет operation, пока результат не пройдет validity_checker.
        После исчерпания попыток пробрасывает пойманные исключения
        (одно как есть, несколько - RetryError) либо возвращает None.
        """
        validity_checker = validity_checker or _is_not_empty
        errors: List[BaseException] = []

        retrying = Retrying(
            stop=stop_after_attempt(self.number_of_tries),
            wait=wait_fixed(self.request_delay.total_seconds()),
            retry=retry_if_exception_type() | retry_if_result(lambda r: not validity_checker(r)),
            sleep=cancellation.wait if cancellation is not None else time.sleep,
            before_sleep=before_sleep_log(self.logger, logging.DEBUG),
            retry_error_callback=lambda retry_state: None,
        )

        for attempt in retrying:
            # отмена прерывает и паузу, и следующую попытку
            if cancellation is not None and cancellation.is_cancelled:
                break
            valid = False
            with attempt:
                result = operation()
                valid = validity_checker(result)
            outcome = attempt.retry_state.outcome
            if outcome.failed:
                errors.append(outcome.exception())
            else:
                attempt.retry_state.set_result(result)
                if valid:
                    return result

        if errors and throw_on_total_failure:
            raise errors[0] if len(errors) == 1 else RetryError(errors)
        return None
