import logging
import time
from typing import Callable, Optional, Protocol, Sequence

from .models import DispatchResult, Group, Job, MessageSpec, ProviderError, RecipientFailure

LOGGER = logging.getLogger(__name__)


class Provider(Protocol):
    def send(self, instance: str, recipient_id: str, message: MessageSpec, mention_everyone: bool = False) -> None:
        ...


class Dispatcher:
    """
    Sends one claimed job to its resolved recipients.

    Calls go out one at a time, recipient by recipient and chunk by chunk,
    with `rate_limit` seconds between consecutive calls. A failed call is
    tallied and reported to `on_failure`; the remaining recipients are still
    attempted.
    """

    def __init__(
        self,
        provider: Provider,
        *,
        rate_limit: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        on_failure: Optional[Callable[[str, str], None]] = None,
    ):
        self._provider = provider
        self.rate_limit = rate_limit
        self._sleep = sleep
        self._on_failure = on_failure

    def dispatch(self, job: Job, recipients: Sequence[Group], on_failure=None, on_attempt=None) -> DispatchResult:
        # Raises InvalidMessageError before anything is sent.
        job.message.validate()
        on_failure = on_failure or self._on_failure

        chunks = job.message.chunks()
        result = DispatchResult()
        for group in recipients:
            for index, chunk in enumerate(chunks):
                if result.attempted and self.rate_limit > 0:
                    self._sleep(self.rate_limit)
                result.attempted += 1
                if on_attempt is not None:
                    on_attempt()
                try:
                    self._provider.send(job.instance, group.id, chunk, job.mention_everyone)
                except ProviderError as e:
                    detail = e.detail
                except Exception as e:
                    LOGGER.exception("[job #%s] Unexpected error sending to %s", job.id, group.id)
                    detail = f"{type(e).__name__}: {e}"
                else:
                    result.succeeded += 1
                    continue

                if len(chunks) > 1:
                    detail = f"part {index + 1}/{len(chunks)}: {detail}"
                LOGGER.warning("[job #%s] Failed to send to %s: %s", job.id, group.id, detail)
                result.failed += 1
                result.failures.append(RecipientFailure(group.id, detail))
                if on_failure is not None:
                    on_failure(group.id, detail)

        LOGGER.info("[job #%s] %s", job.id, result.summary)
        return result
