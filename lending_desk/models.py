from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class BookStatus(Enum):
    AVAILABLE = "Available"
    ON_LOAN = "On Loan"


class LoanStatus(Enum):
    ON_LOAN = "On Loan"
    RETURNED = "Returned"


# Canonical field name -> labels seen in older bases (Japanese-labelled schema).
BOOK_FIELDS: Dict[str, tuple] = {
    "Title": ("Title", "タイトル"),
    "Author": ("Author", "著者"),
    "Status": ("Status", "status", "ステータス"),
}

STUDENT_FIELDS: Dict[str, tuple] = {
    "Name": ("Name", "名前"),
    "StudentID": ("StudentID", "Student ID", "生徒ID"),
}

LOAN_FIELDS: Dict[str, tuple] = {
    "Book": ("Book", "本"),
    "Student": ("Student", "生徒"),
    "LoanDate": ("LoanDate", "Loan Date", "貸出日"),
    "DueDate": ("DueDate", "Due Date", "返却期限"),
    "ReturnStatus": ("ReturnStatus", "Return Status", "返却状況"),
    "ExtensionCount": ("ExtensionCount", "Extension Count", "延長回数"),
    "ReturnedDate": ("ReturnedDate", "Returned Date", "実際の返却日", "返却日"),
    "Title (from Book)": ("Title (from Book)", "タイトル (from 本)", "Title (from 本)"),
}

_BOOK_STATUS_LABELS = {
    "available": BookStatus.AVAILABLE,
    "貸出可": BookStatus.AVAILABLE,
    "利用可能": BookStatus.AVAILABLE,
    "on loan": BookStatus.ON_LOAN,
    "貸出中": BookStatus.ON_LOAN,
}

_LOAN_STATUS_LABELS = {
    "on loan": LoanStatus.ON_LOAN,
    "貸出中": LoanStatus.ON_LOAN,
    "returned": LoanStatus.RETURNED,
    "available": LoanStatus.RETURNED,
    "返却済": LoanStatus.RETURNED,
    "貸出可": LoanStatus.RETURNED,
    "利用可能": LoanStatus.RETURNED,
}


def normalize_fields(raw: Dict[str, Any], schema: Dict[str, tuple]) -> Dict[str, Any]:
    """Map whichever label variant a record uses onto the canonical field names.

    The first alias present wins. Fields that are not part of the schema are dropped.
    """
    out: Dict[str, Any] = {}
    for canonical, aliases in schema.items():
        for alias in aliases:
            if alias in raw:
                out[canonical] = raw[alias]
                break
    return out


def parse_book_status(label: Any) -> Optional[BookStatus]:
    if not isinstance(label, str):
        return None
    return _BOOK_STATUS_LABELS.get(label.strip().lower())


def parse_loan_status(label: Any) -> Optional[LoanStatus]:
    if not isinstance(label, str):
        return None
    status = _LOAN_STATUS_LABELS.get(label.strip().lower())
    if status is None:
        logger.warning(f"Unknown loan status label: {label!r}")
    return status


def parse_date(value: Any) -> Optional[date]:
    """Accept ``YYYY-MM-DD`` or a full ISO timestamp; anything else is ``None``."""
    if isinstance(value, date):
        return value
    if not value or not isinstance(value, str):
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        logger.warning(f"Unparseable date value: {value!r}")
        return None


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return [str(value)]


def _first_text(value: Any) -> Optional[str]:
    if isinstance(value, (list, tuple)):
        return str(value[0]) if value else None
    return str(value) if value is not None else None


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


@dataclass
class Book:
    """A book record from the Books table."""

    id: str
    title: str
    author: Optional[str] = None
    status: Optional[BookStatus] = None

    @staticmethod
    def from_record(record: Dict[str, Any]) -> "Book":
        fields = normalize_fields(record.get("fields", {}), BOOK_FIELDS)
        return Book(
            id=record["id"],
            title=(fields.get("Title") or "").strip(),
            author=fields.get("Author"),
            status=parse_book_status(fields.get("Status")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "title": self.title, "author": self.author}


@dataclass
class Student:
    """A student record from the Students table."""

    id: str
    name: str
    student_number: Optional[str] = None

    @staticmethod
    def from_record(record: Dict[str, Any]) -> "Student":
        fields = normalize_fields(record.get("fields", {}), STUDENT_FIELDS)
        number = fields.get("StudentID")
        return Student(
            id=record["id"],
            name=(fields.get("Name") or "").strip(),
            student_number=str(number) if number is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "studentId": self.student_number}


@dataclass
class Loan:
    """A loan record linking one book to one student."""

    id: str
    book_ids: List[str] = field(default_factory=list)
    student_ids: List[str] = field(default_factory=list)
    loan_date: Optional[date] = None
    due_date: Optional[date] = None
    status: Optional[LoanStatus] = None
    extension_count: int = 0
    returned_date: Optional[date] = None
    book_title: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status is LoanStatus.ON_LOAN

    def references_book(self, book_id: str) -> bool:
        return book_id in self.book_ids

    def references_student(self, student_id: str) -> bool:
        return student_id in self.student_ids

    @staticmethod
    def from_record(record: Dict[str, Any]) -> "Loan":
        fields = normalize_fields(record.get("fields", {}), LOAN_FIELDS)
        return Loan(
            id=record["id"],
            book_ids=_as_list(fields.get("Book")),
            student_ids=_as_list(fields.get("Student")),
            loan_date=parse_date(fields.get("LoanDate")),
            due_date=parse_date(fields.get("DueDate")),
            status=parse_loan_status(fields.get("ReturnStatus")),
            extension_count=_as_int(fields.get("ExtensionCount")),
            returned_date=parse_date(fields.get("ReturnedDate")),
            book_title=_first_text(fields.get("Title (from Book)")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "bookIds": self.book_ids,
            "studentIds": self.student_ids,
            "loanDate": self.loan_date.isoformat() if self.loan_date else None,
            "dueDate": self.due_date.isoformat() if self.due_date else None,
            "status": self.status.value if self.status else None,
            "extensionCount": self.extension_count,
            "returnedDate": self.returned_date.isoformat() if self.returned_date else None,
            "bookTitle": self.book_title,
        }
