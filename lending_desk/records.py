from __future__ import annotations

import logging
from datetime import date
from typing import List, Optional

from lending_desk import rules
from lending_desk.config import settings
from lending_desk.errors import ExternalServiceError, RecordNotFound
from lending_desk.models import Book, BookStatus, Loan, LoanStatus, Student
from lending_desk.services.airtable_service import AirtableService, escape_formula_value

logger = logging.getLogger(__name__)


class LibraryRecords:
    """Domain view of the Books, Students and Loans tables.

    Formulas and writes always use the canonical field names; reads go through
    the DTO ``from_record`` constructors, which also accept the legacy labels.
    """

    def __init__(
        self,
        store: Optional[AirtableService] = None,
        books_table: Optional[str] = None,
        students_table: Optional[str] = None,
        loans_table: Optional[str] = None,
    ) -> None:
        self.store = store or AirtableService()
        self.books_table = books_table or settings.books_table
        self.students_table = students_table or settings.students_table
        self.loans_table = loans_table or settings.loans_table

    # ------------------------- Lookups ------------------------- #
    async def find_book_by_title(self, fragment: str) -> Optional[Book]:
        """First book whose title contains ``fragment`` (case-insensitive)."""
        needle = escape_formula_value(fragment.strip().lower())
        formula = f'SEARCH("{needle}", LOWER({{Title}})) > 0'
        records = await self.store.list_records(self.books_table, formula=formula, max_records=1)
        if not records:
            return None
        book = Book.from_record(records[0])
        logger.info(f"Book found for {fragment!r}: {book.title} ({book.id})")
        return book

    async def find_student(self, name_or_id: str) -> Optional[Student]:
        value = escape_formula_value(name_or_id.strip())
        formula = f'OR({{StudentID}} = "{value}", {{Name}} = "{value}")'
        records = await self.store.list_records(self.students_table, formula=formula, max_records=1)
        if not records:
            return None
        return Student.from_record(records[0])

    async def open_loans(self) -> List[Loan]:
        """All loans whose book has not been returned.

        Linked-record fields render as display names inside formulas, so the
        filtering by book or student id happens here rather than in the formula.
        Each call therefore pages through every open loan in the library; that
        stays small for a school collection but grows with the number of loans out.
        """
        formula = f'{{ReturnStatus}} = "{LoanStatus.ON_LOAN.value}"'
        records = await self.store.list_records(self.loans_table, formula=formula)
        return [loan for loan in map(Loan.from_record, records) if loan.is_open]

    async def open_loans_for_book(self, book_id: str) -> List[Loan]:
        return [loan for loan in await self.open_loans() if loan.references_book(book_id)]

    async def loan_count_for(self, student_id: str) -> rules.LoanCount:
        count = rules.loan_count_for(student_id, await self.open_loans())
        logger.info(f"Student {student_id} holds {count.count}/{rules.MAX_OPEN_LOANS} books")
        return count

    async def find_open_loan(self, book_id: str, student_id: str) -> Optional[Loan]:
        for loan in await self.open_loans():
            if loan.references_book(book_id) and loan.references_student(student_id):
                return loan
        return None

    async def get_loan(self, loan_id: str) -> Optional[Loan]:
        try:
            record = await self.store.get_record(self.loans_table, loan_id)
        except RecordNotFound:
            return None
        return Loan.from_record(record)

    async def loans_for_book(self, book_id: str) -> List[Loan]:
        """Every loan of a book, open or closed, newest first."""
        records = await self.store.list_records(self.loans_table)
        loans = [loan for loan in map(Loan.from_record, records) if loan.references_book(book_id)]
        return sorted(loans, key=lambda loan: loan.loan_date or date.min, reverse=True)

    async def is_book_available(self, book_id: str) -> bool:
        """Availability derived from open loans; a failed lookup counts as unavailable."""
        try:
            open_loans = await self.open_loans()
        except ExternalServiceError:
            logger.exception(f"Availability check for book {book_id} failed; treating it as unavailable")
            return False
        available = rules.is_book_available(book_id, open_loans)
        logger.info(f"Book {book_id} is {'available' if available else 'on loan'}")
        return available

    # ------------------------- Mutations ------------------------- #
    async def create_loan(self, book: Book, student: Student, today: date) -> Loan:
        fields = {
            "Book": [book.id],
            "Student": [student.id],
            "LoanDate": today.isoformat(),
            "DueDate": rules.new_due_date_after_borrow(today).isoformat(),
            "ReturnStatus": LoanStatus.ON_LOAN.value,
        }
        record = await self.store.create_record(self.loans_table, fields)
        loan = Loan.from_record(record)
        logger.info(f"Loan {loan.id} created: book {book.id} -> student {student.id}")
        return loan

    async def set_book_status(self, book: Book, status: BookStatus) -> bool:
        """Advisory status flag; availability never depends on it, so failures are only logged."""
        try:
            await self.store.update_record(self.books_table, book.id, {"Status": status.value})
        except ExternalServiceError:
            logger.warning(f"Could not set book {book.id} status to {status.value!r}; continuing")
            return False
        return True

    async def mark_loan_returned(self, loan: Loan, today: date) -> Loan:
        fields = {
            "ReturnStatus": LoanStatus.RETURNED.value,
            "ReturnedDate": today.isoformat(),
        }
        record = await self.store.update_record(self.loans_table, loan.id, fields)
        return Loan.from_record(record)

    async def extend_loan(self, loan: Loan) -> Loan:
        new_due = rules.new_due_date_after_extend(loan.due_date)
        fields = {
            "DueDate": new_due.isoformat(),
            "ExtensionCount": loan.extension_count + 1,
        }
        record = await self.store.update_record(self.loans_table, loan.id, fields)
        return Loan.from_record(record)
