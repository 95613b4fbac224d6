"""Lending rules.

Pure functions over loan snapshots and a caller-supplied ``today``. Nothing in
here talks to the record store; callers fetch the open loans first.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable, List, Optional

from lending_desk.models import Loan

MAX_OPEN_LOANS = 4
LOAN_PERIOD_DAYS = 14
EXTENSION_DAYS = 7
EXTENSION_WINDOW_DAYS = 2
MAX_EXTENSIONS = 1
EARLY_RETURN_DAYS = 2

# Refusal reasons for extensions
ALREADY_EXTENDED = "already_extended"
TOO_EARLY = "too_early"
NOT_ON_LOAN = "not_on_loan"
NO_DUE_DATE = "no_due_date"


@dataclass(frozen=True)
class LoanCount:
    count: int
    loans: tuple = ()

    @property
    def is_at_limit(self) -> bool:
        return self.count >= MAX_OPEN_LOANS


@dataclass(frozen=True)
class DeadlineStatus:
    days_remaining: int
    is_overdue: bool
    is_early_return: bool


def is_book_available(book_id: str, open_loans: Iterable[Loan]) -> bool:
    """True iff no open loan references ``book_id``."""
    return not any(loan.is_open and loan.references_book(book_id) for loan in open_loans)


def open_loans_for_student(student_id: str, loans: Iterable[Loan]) -> List[Loan]:
    return [loan for loan in loans if loan.is_open and loan.references_student(student_id)]


def loan_count_for(student_id: str, open_loans: Iterable[Loan]) -> LoanCount:
    mine = open_loans_for_student(student_id, open_loans)
    return LoanCount(count=len(mine), loans=tuple(mine))


def deadline_status(due_date: date, today: date) -> DeadlineStatus:
    seconds = (due_date - today).total_seconds()
    days = math.ceil(seconds / 86400)
    return DeadlineStatus(
        days_remaining=days,
        is_overdue=days < 0,
        is_early_return=days >= EARLY_RETURN_DAYS,
    )


def extension_window_start(due_date: date) -> date:
    return due_date - timedelta(days=EXTENSION_WINDOW_DAYS)


def can_extend_by_date(loan: Loan, today: date) -> bool:
    if loan.due_date is None:
        return False
    return today >= extension_window_start(loan.due_date)


def can_extend(loan: Loan, today: date) -> bool:
    """Overdue loans stay eligible; only a previous extension blocks a new one."""
    return can_extend_by_date(loan, today) and loan.extension_count < MAX_EXTENSIONS


def extension_refusal(loan: Loan, today: date) -> Optional[str]:
    """Reason the loan cannot be extended today, or None when it can."""
    if not loan.is_open:
        return NOT_ON_LOAN
    if loan.extension_count >= MAX_EXTENSIONS:
        return ALREADY_EXTENDED
    if loan.due_date is None:
        return NO_DUE_DATE
    if not can_extend_by_date(loan, today):
        return TOO_EARLY
    return None


def new_due_date_after_extend(due_date: date) -> date:
    return due_date + timedelta(days=EXTENSION_DAYS)


def new_due_date_after_borrow(today: date) -> date:
    return today + timedelta(days=LOAN_PERIOD_DAYS)
