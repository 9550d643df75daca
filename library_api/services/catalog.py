"""Catalog management: books, authors and categories."""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, Iterable, List, Optional, Sequence, Type

from ..errors import DuplicateError, NotFoundError, ValidationError
from ..models import Author, Book, Category, new_id, to_timestamp
from ..utils.validators import ISBNValidator, TextValidator
from .base import Page, Service

logger = logging.getLogger(__name__)


def _unique(ids: Iterable[str]) -> List[str]:
    seen: Dict[str, None] = {}
    for item in ids:
        seen.setdefault(item, None)
    return list(seen)


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


class BookService(Service):
    """Books with their author/category links and copy counts."""

    def create_book(
        self,
        isbn: str,
        title: str,
        total_copies: int,
        author_ids: Sequence[str],
        category_ids: Sequence[str],
    ) -> Book:
        isbn = ISBNValidator.normalize_isbn(isbn)
        if not ISBNValidator.is_valid_isbn(isbn):
            raise ValidationError("Invalid ISBN format.", [{"field": "isbn", "message": "Invalid ISBN format"}])
        title = TextValidator.sanitize_text(title)
        if not title:
            raise ValidationError("Title cannot be empty.", [{"field": "title", "message": "Title is required"}])
        if total_copies < 1:
            raise ValidationError("A book needs at least one copy.",
                                  [{"field": "total_copies", "message": "Must be at least 1"}])
        author_ids = _unique(author_ids)
        category_ids = _unique(category_ids)
        if not author_ids or not category_ids:
            raise ValidationError("A book needs at least one author and one category.")

        book_id = new_id()
        stamp = to_timestamp(self.now())
        try:
            with self.db.transaction() as conn:
                if conn.execute("SELECT 1 FROM books WHERE isbn = ?", (isbn,)).fetchone():
                    raise DuplicateError(f"Book with ISBN {isbn} already exists.")
                self._require_ids(conn, "authors", "Author", author_ids)
                self._require_ids(conn, "categories", "Category", category_ids)
                conn.execute(
                    """
                    INSERT INTO books (id, isbn, title, total_copies, available_copies,
                                       deleted_at, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, NULL, ?, ?)
                    """,
                    (book_id, isbn, title, total_copies, total_copies, stamp, stamp),
                )
                self._link(conn, book_id, "book_authors", "author_id", author_ids, stamp)
                self._link(conn, book_id, "book_categories", "category_id", category_ids, stamp)
        except sqlite3.IntegrityError as exc:
            raise DuplicateError(f"Book with ISBN {isbn} already exists.") from exc

        logger.info("Added book %s (%s) with %d copies", book_id, isbn, total_copies)
        return self.get_book(book_id)

    def update_book(
        self,
        book_id: str,
        *,
        title: Optional[str] = None,
        total_copies: Optional[int] = None,
        author_ids: Optional[Sequence[str]] = None,
        category_ids: Optional[Sequence[str]] = None,
    ) -> Book:
        """Update a book. Changing ``total_copies`` shifts the available count by the same delta."""
        if title is None and total_copies is None and author_ids is None and category_ids is None:
            raise ValidationError("Nothing to update. Provide title, total_copies, author_ids or category_ids.")

        stamp = to_timestamp(self.now())
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM books WHERE id = ? AND deleted_at IS NULL", (book_id,)
            ).fetchone()
            if row is None:
                raise NotFoundError("Book not found")
            book = Book.from_row(row)

            new_title = TextValidator.sanitize_text(title) if title is not None else book.title
            if not new_title:
                raise ValidationError("Title cannot be empty.")

            new_total, new_available = book.total_copies, book.available_copies
            if total_copies is not None:
                on_loan = book.total_copies - book.available_copies
                if total_copies < max(on_loan, 1):
                    raise ValidationError(
                        f"total_copies cannot be lower than {max(on_loan, 1)} "
                        f"({on_loan} copies are currently on loan)"
                    )
                new_total, new_available = total_copies, total_copies - on_loan

            conn.execute(
                """
                UPDATE books SET title = ?, total_copies = ?, available_copies = ?, updated_at = ?
                WHERE id = ?
                """,
                (new_title, new_total, new_available, stamp, book_id),
            )
            if author_ids is not None:
                self._replace_links(conn, book_id, "authors", "Author", "book_authors", "author_id",
                                    _unique(author_ids), stamp)
            if category_ids is not None:
                self._replace_links(conn, book_id, "categories", "Category", "book_categories", "category_id",
                                    _unique(category_ids), stamp)

        logger.info("Updated book %s", book_id)
        return self.get_book(book_id)

    def delete_book(self, book_id: str) -> None:
        """Soft delete: the book stays for loan history but is hidden and cannot be borrowed."""
        stamp = to_timestamp(self.now())
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE books SET deleted_at = ?, updated_at = ? WHERE id = ? AND deleted_at IS NULL",
                (stamp, stamp, book_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("Book not found")
        logger.info("Soft-deleted book %s", book_id)

    def get_book(self, book_id: str) -> Book:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM books WHERE id = ? AND deleted_at IS NULL", (book_id,)
            ).fetchone()
            if row is None:
                raise NotFoundError("Book not found")
            books = [Book.from_row(row)]
            self._attach_relations(conn, books)
        return books[0]

    def list_books(
        self,
        search: Optional[str] = None,
        category_id: Optional[str] = None,
        author_id: Optional[str] = None,
        available: Optional[bool] = None,
        page: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> Page[Book]:
        page, limit, offset = self.paginate(page, limit)
        clauses = ["b.deleted_at IS NULL"]
        params: List[Any] = []
        if search:
            like = f"%{search.strip()}%"
            clauses.append("(b.title LIKE ? OR b.isbn LIKE ?)")
            params.extend([like, like])
        if available:
            clauses.append("b.available_copies > 0")
        if category_id:
            clauses.append("EXISTS (SELECT 1 FROM book_categories bc WHERE bc.book_id = b.id AND bc.category_id = ?)")
            params.append(category_id)
        if author_id:
            clauses.append("EXISTS (SELECT 1 FROM book_authors ba WHERE ba.book_id = b.id AND ba.author_id = ?)")
            params.append(author_id)
        where = " WHERE " + " AND ".join(clauses)

        with self.db.connection() as conn:
            total = conn.execute("SELECT COUNT(*) FROM books b" + where, params).fetchone()[0]
            rows = conn.execute(
                "SELECT b.* FROM books b" + where + " ORDER BY b.title COLLATE NOCASE, b.id LIMIT ? OFFSET ?",
                [*params, limit, offset],
            ).fetchall()
            books = [Book.from_row(r) for r in rows]
            self._attach_relations(conn, books)
        return Page(items=books, total=total, page=page, limit=limit)

    # ------------------------- Helpers ------------------------- #
    @staticmethod
    def _require_ids(conn: sqlite3.Connection, table: str, label: str, ids: Sequence[str]) -> None:
        found = {
            row["id"]
            for row in conn.execute(f"SELECT id FROM {table} WHERE id IN ({_placeholders(ids)})", list(ids))
        }
        missing = [i for i in ids if i not in found]
        if missing:
            raise NotFoundError(f"{label} not found: {', '.join(missing)}")

    @staticmethod
    def _link(conn: sqlite3.Connection, book_id: str, join_table: str, column: str,
              ids: Sequence[str], stamp: str) -> None:
        conn.executemany(
            f"INSERT INTO {join_table} (book_id, {column}, created_at, updated_at) VALUES (?, ?, ?, ?)",
            [(book_id, i, stamp, stamp) for i in ids],
        )

    def _replace_links(self, conn: sqlite3.Connection, book_id: str, table: str, label: str,
                       join_table: str, column: str, ids: Sequence[str], stamp: str) -> None:
        if not ids:
            raise ValidationError(f"A book needs at least one {label.lower()}.")
        self._require_ids(conn, table, label, ids)
        conn.execute(f"DELETE FROM {join_table} WHERE book_id = ?", (book_id,))
        self._link(conn, book_id, join_table, column, ids, stamp)

    @staticmethod
    def _attach_relations(conn: sqlite3.Connection, books: List[Book]) -> None:
        if not books:
            return
        by_id = {book.id: book for book in books}
        ids = list(by_id)
        for row in conn.execute(
            f"""
            SELECT ba.book_id, a.id, a.name FROM book_authors ba
            JOIN authors a ON a.id = ba.author_id
            WHERE ba.book_id IN ({_placeholders(ids)}) ORDER BY a.name
            """,
            ids,
        ):
            by_id[row["book_id"]].authors.append({"id": row["id"], "name": row["name"]})
        for row in conn.execute(
            f"""
            SELECT bc.book_id, c.id, c.name FROM book_categories bc
            JOIN categories c ON c.id = bc.category_id
            WHERE bc.book_id IN ({_placeholders(ids)}) ORDER BY c.name
            """,
            ids,
        ):
            by_id[row["book_id"]].categories.append({"id": row["id"], "name": row["name"]})


class _NamedEntityService(Service):
    """CRUD for the simple named entities linked to books."""

    table: str = ""
    join_table: str = ""
    join_column: str = ""
    label: str = ""
    model: Type[Author] = Author

    def _select(self) -> str:
        return f"""
            SELECT e.*,
                   (SELECT COUNT(*) FROM {self.join_table} j
                      JOIN books b ON b.id = j.book_id AND b.deleted_at IS NULL
                     WHERE j.{self.join_column} = e.id) AS book_count
            FROM {self.table} e
        """

    def _clean_name(self, name: str) -> str:
        cleaned = TextValidator.sanitize_text(name)
        if not TextValidator.validate_name(cleaned):
            raise ValidationError(
                f"{self.label} name must be at least 2 characters.",
                [{"field": "name", "message": "Must be at least 2 characters and contain letters"}],
            )
        return cleaned

    def create(self, name: str) -> Author:
        name = self._clean_name(name)
        entity_id = new_id()
        stamp = to_timestamp(self.now())
        try:
            with self.db.transaction() as conn:
                conn.execute(
                    f"INSERT INTO {self.table} (id, name, created_at, updated_at) VALUES (?, ?, ?, ?)",
                    (entity_id, name, stamp, stamp),
                )
        except sqlite3.IntegrityError as exc:
            raise DuplicateError(f"{self.label} '{name}' already exists") from exc
        logger.info("Created %s %s", self.label.lower(), entity_id)
        return self.get(entity_id)

    def update(self, entity_id: str, name: str) -> Author:
        name = self._clean_name(name)
        try:
            with self.db.transaction() as conn:
                cursor = conn.execute(
                    f"UPDATE {self.table} SET name = ?, updated_at = ? WHERE id = ?",
                    (name, to_timestamp(self.now()), entity_id),
                )
                if cursor.rowcount == 0:
                    raise NotFoundError(f"{self.label} not found")
        except sqlite3.IntegrityError as exc:
            raise DuplicateError(f"{self.label} '{name}' already exists") from exc
        return self.get(entity_id)

    def delete(self, entity_id: str) -> None:
        with self.db.transaction() as conn:
            cursor = conn.execute(f"DELETE FROM {self.table} WHERE id = ?", (entity_id,))
            if cursor.rowcount == 0:
                raise NotFoundError(f"{self.label} not found")
        logger.info("Deleted %s %s", self.label.lower(), entity_id)

    def get(self, entity_id: str) -> Author:
        with self.db.connection() as conn:
            row = conn.execute(self._select() + " WHERE e.id = ?", (entity_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"{self.label} not found")
        return self.model.from_row(row)

    def list_all(self, search: Optional[str] = None, page: Optional[int] = None,
                 limit: Optional[int] = None) -> Page[Author]:
        page, limit, offset = self.paginate(page, limit)
        where, params = "", []
        if search:
            where = " WHERE e.name LIKE ?"
            params.append(f"%{search.strip()}%")
        with self.db.connection() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM {self.table} e" + where, params).fetchone()[0]
            rows = conn.execute(
                self._select() + where + " ORDER BY e.name COLLATE NOCASE, e.id LIMIT ? OFFSET ?",
                [*params, limit, offset],
            ).fetchall()
        return Page(items=[self.model.from_row(r) for r in rows], total=total, page=page, limit=limit)


class AuthorService(_NamedEntityService):
    table = "authors"
    join_table = "book_authors"
    join_column = "author_id"
    label = "Author"
    model = Author


class CategoryService(_NamedEntityService):
    table = "categories"
    join_table = "book_categories"
    join_column = "category_id"
    label = "Category"
    model = Category
