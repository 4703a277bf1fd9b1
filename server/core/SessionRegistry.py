"""Per-user workspaces for the API server.

Each user partition gets its own store, orchestrator and background queue, so
package lists and queue state never mix between users. The backend and OCR
clients are shared.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable

from services.background_processing.BackgroundProcessingService import BackgroundProcessingService
from services.mail_processing.MailProcessingService import MailProcessingService, utc_now
from shared.clients.backend.BackendClientInterface import BackendClientInterface
from shared.clients.ocr.OCRClientInterface import OCRClientInterface
from shared.helper.HelperConfig import HelperConfig
from shared.storage.LocalStore import LocalStore


@dataclass
class UserSession:
    store: LocalStore
    mail_service: MailProcessingService
    background_service: BackgroundProcessingService


class SessionRegistry:
    def __init__(
        self,
        helper_config: HelperConfig,
        backend_client: BackendClientInterface,
        ocr_client: OCRClientInterface,
        root_dir: Path | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.logging = helper_config.get_logger()
        self._helper_config = helper_config
        self._backend_client = backend_client
        self._ocr_client = ocr_client
        self._root_dir = root_dir
        self._clock = clock
        self._sessions: dict[str, UserSession] = {}
        self._lock = asyncio.Lock()

    async def get(self, user_id: str | None) -> UserSession:
        """Return the session of a user, creating and recovering it on first use.

        Raises:
            ValueError: If the user id is not a valid partition name.
        """
        async with self._lock:
            store = LocalStore(helper_config=self._helper_config, user_id=user_id, root_dir=self._root_dir)
            session = self._sessions.get(store.user_id)
            if session is not None:
                return session

            mail_service = MailProcessingService(
                helper_config=self._helper_config,
                backend_client=self._backend_client,
                ocr_client=self._ocr_client,
                store=store,
                clock=self._clock,
            )
            background_service = BackgroundProcessingService(
                helper_config=self._helper_config,
                mail_processing_service=mail_service,
                store=store,
                clock=self._clock,
            )
            session = UserSession(store=store, mail_service=mail_service, background_service=background_service)
            self._sessions[store.user_id] = session

            await store.migrate_image_paths()
            await background_service.recover_pending()
            self.logging.info("Opened mail session for user '%s'.", store.user_id)
            return session

    async def close_all(self) -> None:
        for session in self._sessions.values():
            await session.background_service.close()
        self._sessions.clear()
