"""Application context: wires the services together for one database."""

import logging
from typing import Any, Callable, Optional

from .accounts import AccountService
from .auth import IdentityProvider
from .borrowing import BorrowingService
from .catalog import CatalogService
from .config import Settings
from .database import Database
from .fines import FineLedger
from .inventory import InventoryLedger
from .models import utcnow
from .reservations import ReservationService
from .services.email_service import EmailDispatcher
from .store import EntityStore

logger = logging.getLogger(__name__)


class LibraryContext:
    """Everything a request handler or CLI command needs.

    ``clock`` returns the current UTC time and ``mailer`` sends notification
    emails; both can be swapped out, which is how the tests control time and
    capture email.
    """

    def __init__(
        self,
        config: Settings,
        clock: Optional[Callable] = None,
        mailer: Optional[Any] = None,
    ) -> None:
        self.config = config
        self.clock = clock or utcnow
        self.mailer = mailer or EmailDispatcher(config)

        self.db = Database(config.database_file)
        self.store = EntityStore()
        self.inventory = InventoryLedger(self.store, self.clock)
        self.fines = FineLedger(self.db, self.store, self.clock)
        self.identity = IdentityProvider(self.db, self.store, config, self.clock)
        self.reservations = ReservationService(self.db, self.store, self.fines, self.mailer, config, self.clock)
        self.borrowings = BorrowingService(
            self.db, self.store, self.inventory, self.fines, self.reservations, config, self.clock
        )
        self.catalog = CatalogService(self.db, self.store, self.inventory, self.clock)
        self.accounts = AccountService(self.db, self.store, self.identity, self.mailer, config, self.clock)

    def open(self) -> "LibraryContext":
        self.db.initialize()
        logger.info(f"{self.config.app_name} context opened ({self.config.environment})")
        return self

    def close(self) -> None:
        self.db.close()
        logger.info("Library context closed")

    def __enter__(self) -> "LibraryContext":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()
