import logging
from datetime import date
from typing import Any, Callable, Dict, List

from .database import Database
from .errors import NotFound, ValidationError
from .inventory import InventoryLedger, derive_status
from .models import Book, Category
from .store import EntityStore, ListQuery
from .validators import ISBNValidator, TextValidator

logger = logging.getLogger(__name__)

# Descriptive fields staff may edit; copies go through update_inventory().
BOOK_UPDATE_FIELDS = ("title", "author", "isbn", "category", "description", "publisher", "published_date", "pages")


class CatalogService:
    """Manages the book collection and its copy counts."""

    def __init__(self, db: Database, store: EntityStore, inventory: InventoryLedger, clock: Callable) -> None:
        self.db = db
        self.store = store
        self.inventory = inventory
        self.clock = clock

    # ------------------------- Core operations ------------------------- #
    def add_book(self, data: Dict[str, Any]) -> Book:
        """Add a book. Copies default to one, all of them available."""
        values = self._clean_descriptive(data, require_all=True)
        total = data.get("total_copies")
        total = 1 if total is None else total
        available = data.get("available_copies")
        available = total if available is None else available
        if total < 0 or available < 0 or available > total:
            raise ValidationError("Copies must satisfy 0 <= available <= total")
        values.update(total_copies=total, available_copies=available, status=derive_status(available))

        with self.db.transaction() as conn:
            book_id = self.store.insert_book(conn, values, self.clock())
            book = self.store.get_book(conn, book_id)
        logger.info(f"Added book {book_id}: {book.title} by {book.author}")
        return book

    def get_book(self, book_id: int) -> Book:
        with self.db.session() as conn:
            book = self.store.get_book(conn, book_id)
        if book is None:
            raise NotFound("Book not found")
        return book

    def list_books(self, query: ListQuery) -> List[Book]:
        with self.db.session() as conn:
            return self.store.list_books(conn, query)

    def update_book(self, book_id: int, data: Dict[str, Any]) -> Book:
        if set(data) - set(BOOK_UPDATE_FIELDS):
            raise ValidationError("Invalid updates!")
        values = self._clean_descriptive(data, require_all=False)
        with self.db.transaction() as conn:
            if self.store.get_book(conn, book_id) is None:
                raise NotFound("Book not found")
            self.store.update_book(conn, book_id, values, self.clock())
            book = self.store.get_book(conn, book_id)
        logger.info(f"Updated book {book_id}: {sorted(values)}")
        return book

    def delete_book(self, book_id: int) -> Book:
        with self.db.transaction() as conn:
            book = self.store.get_book(conn, book_id)
            if book is None:
                raise NotFound("Book not found")
            if self.store.count_active_borrowings_for_book(conn, book_id):
                raise ValidationError("Cannot delete a book with active borrowings")
            self.store.delete_book(conn, book_id)
        logger.info(f"Deleted book {book_id}: {book.title}")
        return book

    def update_inventory(self, book_id: int, total_copies: int) -> Book:
        with self.db.transaction() as conn:
            return self.inventory.set_total_copies(conn, book_id, total_copies)

    def statistics(self) -> Dict[str, Any]:
        with self.db.session() as conn:
            return self.store.statistics(conn, self.clock())

    # ------------------------- Helpers ------------------------- #
    @staticmethod
    def _clean_descriptive(data: Dict[str, Any], require_all: bool) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        for name in ("title", "author"):
            if require_all or name in data:
                values[name] = TextValidator.require(data.get(name), name.capitalize())
        for name in ("description", "publisher"):
            if name in data:
                values[name] = TextValidator.clean(data[name])
        if "isbn" in data:
            raw = data["isbn"]
            if raw in (None, ""):
                values["isbn"] = None
            else:
                isbn = ISBNValidator.normalize_isbn(raw)
                if not ISBNValidator.is_valid_isbn(isbn):
                    raise ValidationError("Invalid ISBN format.")
                values["isbn"] = isbn
        if "category" in data or require_all:
            values["category"] = Category(data.get("category") or Category.OTHER)
        if "published_date" in data:
            published = data["published_date"]
            if isinstance(published, str):
                published = date.fromisoformat(published)
            values["published_date"] = published
        if "pages" in data:
            pages = data["pages"]
            if pages is not None and pages < 1:
                raise ValidationError("Pages must be a positive number")
            values["pages"] = pages
        return values
