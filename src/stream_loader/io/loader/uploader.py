"""Transfer staged files to the staging area with bounded retries."""

import time
from typing import Callable, Optional

from stream_loader.io.loader.models import LoadConnectionError, StagedFile
from stream_loader.io.stage.transport import StageTransport
from stream_loader.utils.logging import get_logger

logger = get_logger(__name__)


class StageUploader:
    """Upload staged files, retrying transient transport failures.

    Transient failures are ``OSError`` subclasses (which include the builtin
    ``ConnectionError`` and ``TimeoutError``). Retries reuse the object name,
    so the remote object is replaced rather than duplicated.
    """

    _MAX_BACKOFF_MS = 30_000

    def __init__(
        self,
        transport: StageTransport,
        retry_max: int = 5,
        backoff_ms: int = 500,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.transport = transport
        self.retry_max = max(1, retry_max)
        self.backoff_ms = backoff_ms
        self._sleep = sleep or time.sleep

    def upload(self, staged: StagedFile) -> None:
        """Put ``staged`` into the stage.

        Raises:
            LoadConnectionError: After ``retry_max`` failed attempts
        """
        last_error: Optional[BaseException] = None
        for attempt in range(self.retry_max):
            try:
                self.transport.put(staged.name, staged.payload)
                logger.debug(
                    "stage.upload.completed",
                    name=staged.name,
                    bytes=len(staged.payload),
                    attempt=attempt + 1,
                )
                return
            except OSError as e:
                last_error = e
                if attempt == self.retry_max - 1:
                    break
                wait_ms = min(self.backoff_ms * (2**attempt), self._MAX_BACKOFF_MS)
                logger.warning(
                    "stage.upload.retry",
                    name=staged.name,
                    attempt=attempt + 1,
                    wait_ms=wait_ms,
                    error=str(e),
                )
                self._sleep(wait_ms / 1000)

        logger.error(
            "stage.upload.failed",
            name=staged.name,
            attempts=self.retry_max,
            error=str(last_error),
        )
        raise LoadConnectionError(
            f"Failed to upload {staged.name} after {self.retry_max} attempts: {last_error}",
            cause=last_error,
        ) from last_error

    def fetch(self, staged: StagedFile) -> bytes:
        """Read the staged payload back for the load statement."""
        try:
            return self.transport.get(staged.name)
        except OSError as e:
            raise LoadConnectionError(
                f"Staged file {staged.name} is not readable: {e}", cause=e
            ) from e

    def discard(self, staged: StagedFile) -> None:
        """Remove a staged object; failures are logged, the load already succeeded."""
        try:
            self.transport.remove(staged.name)
        except OSError as e:
            logger.warning("stage.remove.failed", name=staged.name, error=str(e))
