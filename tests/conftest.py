from datetime import date, timedelta
from typing import Dict, List, Optional

import httpx
import pytest
from fastapi.testclient import TestClient

from lending_desk.errors import ExternalServiceError, RecordRejected
from lending_desk.models import Book, BookStatus, Loan, LoanStatus, Student
from lending_desk.records import LibraryRecords
from lending_desk.services.airtable_service import AirtableService
from lending_desk.services.http_client import OptimizedHTTPClient
from lending_desk.sessions import SessionStore
from lending_desk.workflow import LendingDesk

TODAY = date(2026, 10, 19)


class InMemoryRecords(LibraryRecords):
    """Record store double: primitive lookups and writes in memory, derived queries inherited."""

    def __init__(self) -> None:
        super().__init__(store=AirtableService(api_key="test-key", base_id="appTest"))
        self.books: Dict[str, Book] = {}
        self.students: Dict[str, Student] = {}
        self.loans: Dict[str, Loan] = {}
        self.book_statuses: List[tuple] = []
        self.created_loans: List[Loan] = []
        self.fail_lookups = False
        self.fail_create = False
        self.reject_return = False
        self._seq = 0

    def _id(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}{self._seq:04d}"

    # --- seeding ---
    def add_book(self, title: str, author: str = "Anon", status: BookStatus = BookStatus.AVAILABLE) -> Book:
        book = Book(id=self._id("recBook"), title=title, author=author, status=status)
        self.books[book.id] = book
        return book

    def add_student(self, name: str, student_number: Optional[str] = None) -> Student:
        student = Student(id=self._id("recStu"), name=name, student_number=student_number)
        self.students[student.id] = student
        return student

    def add_loan(
        self,
        book: Book,
        student: Student,
        due_date: date,
        extension_count: int = 0,
        status: LoanStatus = LoanStatus.ON_LOAN,
    ) -> Loan:
        loan = Loan(
            id=self._id("recLoan"),
            book_ids=[book.id],
            student_ids=[student.id],
            loan_date=due_date - timedelta(days=14),
            due_date=due_date,
            status=status,
            extension_count=extension_count,
            book_title=book.title,
        )
        self.loans[loan.id] = loan
        return loan

    # --- primitives ---
    def _check(self) -> None:
        if self.fail_lookups:
            raise ExternalServiceError()

    async def find_book_by_title(self, fragment: str) -> Optional[Book]:
        self._check()
        needle = fragment.strip().lower()
        return next((b for b in self.books.values() if needle in b.title.lower()), None)

    async def find_student(self, name_or_id: str) -> Optional[Student]:
        self._check()
        value = name_or_id.strip()
        return next((s for s in self.students.values() if value in (s.name, s.student_number)), None)

    async def open_loans(self) -> List[Loan]:
        self._check()
        return [loan for loan in self.loans.values() if loan.is_open]

    async def get_loan(self, loan_id: str) -> Optional[Loan]:
        self._check()
        return self.loans.get(loan_id)

    async def loans_for_book(self, book_id: str) -> List[Loan]:
        loans = [loan for loan in self.loans.values() if loan.references_book(book_id)]
        return sorted(loans, key=lambda loan: loan.loan_date or date.min, reverse=True)

    async def create_loan(self, book: Book, student: Student, today: date) -> Loan:
        if self.fail_create:
            raise ExternalServiceError()
        loan = self.add_loan(book, student, today + timedelta(days=14))
        loan.loan_date = today
        self.created_loans.append(loan)
        return loan

    async def set_book_status(self, book: Book, status: BookStatus) -> bool:
        self.book_statuses.append((book.id, status))
        self.books[book.id].status = status
        return True

    async def mark_loan_returned(self, loan: Loan, today: date) -> Loan:
        if self.reject_return:
            raise RecordRejected(details={"type": "INVALID_MULTIPLE_CHOICE_OPTIONS"})
        stored = self.loans[loan.id]
        stored.status = LoanStatus.RETURNED
        stored.returned_date = today
        return stored

    async def extend_loan(self, loan: Loan) -> Loan:
        stored = self.loans[loan.id]
        stored.due_date = stored.due_date + timedelta(days=7)
        stored.extension_count += 1
        return stored


class FakeVision:
    def __init__(self, text: str = "") -> None:
        self.text = text
        self.calls = 0
        self.fail = False

    async def extract_text(self, image_bytes: bytes) -> str:
        self.calls += 1
        if self.fail:
            raise ExternalServiceError()
        return self.text


@pytest.fixture
def records():
    return InMemoryRecords()


@pytest.fixture
def vision():
    return FakeVision()


@pytest.fixture
def sessions():
    return SessionStore(ttl_seconds=3600, max_entries=100)


@pytest.fixture
def desk(records, vision, sessions):
    return LendingDesk(records=records, vision=vision, sessions=sessions, clock=lambda: TODAY)


@pytest.fixture
def client(desk):
    from lending_desk.api import app, get_desk

    app.dependency_overrides[get_desk] = lambda: desk
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def mock_http():
    """Factory for HTTP clients whose requests are answered by ``handler(request) -> httpx.Response``."""

    def make(handler) -> OptimizedHTTPClient:
        return OptimizedHTTPClient(transport=httpx.MockTransport(handler))

    return make
