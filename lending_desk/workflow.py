"""
The lending desk step machine.

Three flows share one session per browser:

    borrow: initial -> book_found -> name_request -> confirm_period -> show_rules -> completed
    return: initial -> book_found -> name_request -> check_deadline -> completed
    extend: initial -> loans_listed -> completed

Every step checks that the session belongs to its flow, sits on a step from
which this one may follow, and carries the selections earlier steps stored.
Terminal steps claim (pop) the session before writing to the record store, so
a repeated submission finds no session and is refused.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, Optional, Sequence

from lending_desk import messages, rules
from lending_desk.errors import (
    BookNotOnLoan,
    BookUnavailable,
    ExtensionRefused,
    ExternalServiceError,
    InvalidSessionState,
    LoanLimitReached,
    NotFoundError,
    RecordRejected,
    ValidationError,
)
from lending_desk.models import Book, BookStatus, Loan, Student
from lending_desk.records import LibraryRecords
from lending_desk.services.vision_service import VisionService, candidate_titles
from lending_desk.sessions import (
    BOOK_FOUND,
    BORROW,
    CHECK_DEADLINE,
    COMPLETED,
    CONFIRM_PERIOD,
    EXTEND,
    INITIAL,
    LOANS_LISTED,
    NAME_REQUEST,
    RETURN,
    SHOW_RULES,
    LendingSession,
    SessionStore,
)

logger = logging.getLogger(__name__)

CANCEL = "cancel"


@dataclass
class StepResult:
    message: str
    data: Dict[str, Any] = field(default_factory=dict)


class LendingDesk:
    """Runs the borrow, return and extend flows against the record store."""

    def __init__(
        self,
        records: Optional[LibraryRecords] = None,
        vision: Optional[VisionService] = None,
        sessions: Optional[SessionStore] = None,
        clock: Callable[[], date] = date.today,
    ) -> None:
        self.records = records or LibraryRecords()
        self.vision = vision or VisionService()
        self.sessions = sessions or SessionStore()
        self.clock = clock

    # ------------------------- Shared helpers ------------------------- #
    def today(self) -> date:
        return self.clock()

    def _cancel(self, session_id: Optional[str]) -> StepResult:
        if self.sessions.destroy(session_id):
            logger.info(f"Session {session_id[:8]} cancelled")
        return StepResult(messages.CANCELLED, {"step": INITIAL})

    def reset(self, session_id: Optional[str]) -> StepResult:
        self.sessions.destroy(session_id)
        return StepResult(messages.RESET, {"step": INITIAL})

    def _require(
        self,
        session_id: Optional[str],
        flow: str,
        steps: Sequence[str],
        *selections: str,
    ) -> LendingSession:
        session = self.sessions.get(session_id)
        if session is None or session.flow != flow or session.step not in steps or not session.has(*selections):
            logger.info(
                f"Refused {flow} step for session {(session_id or '-')[:8]}: "
                f"state={None if session is None else (session.flow, session.step)}"
            )
            raise InvalidSessionState()
        return session

    def _claim(self, session: LendingSession) -> None:
        """Take the session out of the store so no second request can act on it."""
        if self.sessions.pop(session.session_id) is not session:
            raise InvalidSessionState()

    @staticmethod
    def _require_action(action: Optional[str], expected: str) -> None:
        if action != expected:
            raise InvalidSessionState()

    async def _find_book_in_image(self, image: Optional[bytes]) -> Book:
        if not image:
            raise ValidationError(messages.NO_IMAGE)

        text = await self.vision.extract_text(image)
        if not text or not text.strip():
            raise ValidationError(messages.NO_TEXT)

        # First title that matches wins; the OCR rarely yields two plausible titles
        for line in candidate_titles(text):
            book = await self.records.find_book_by_title(line)
            if book:
                return book
        logger.info(f"No book matched any of the OCR lines: {text!r}")
        raise NotFoundError(messages.BOOK_NOT_FOUND)

    async def _find_student(self, name: str) -> Student:
        student = await self.records.find_student(name)
        if student is None:
            raise NotFoundError(messages.STUDENT_NOT_FOUND)
        return student

    # ------------------------- Borrow ------------------------- #
    async def borrow_find_book(self, session_id: str, image: Optional[bytes]) -> StepResult:
        book = await self._find_book_in_image(image)
        if not await self.records.is_book_available(book.id):
            raise BookUnavailable(messages.BOOK_ON_LOAN)

        session = self.sessions.start(session_id, BORROW)
        session.book = book
        session.step = BOOK_FOUND
        self.sessions.save(session)
        return StepResult(
            messages.BOOK_AVAILABLE,
            {"book": book.to_dict(), "step": BOOK_FOUND, "nextAction": "borrow_or_cancel"},
        )

    async def borrow_choose(self, session_id: Optional[str], action: Optional[str]) -> StepResult:
        if action == CANCEL:
            return self._cancel(session_id)
        self._require_action(action, "borrow")
        session = self._require(session_id, BORROW, (BOOK_FOUND, NAME_REQUEST), "book")

        session.step = NAME_REQUEST
        self.sessions.save(session)
        return StepResult(messages.ENTER_NAME, {"step": NAME_REQUEST, "nextAction": "enter_name"})

    async def borrow_identify_student(self, session_id: Optional[str], name: Optional[str]) -> StepResult:
        if not name or not name.strip():
            raise ValidationError(messages.NAME_REQUIRED)
        session = self._require(session_id, BORROW, (NAME_REQUEST, CONFIRM_PERIOD), "book")

        student = await self._find_student(name)
        loans = await self.records.loan_count_for(student.id)
        if loans.is_at_limit:
            raise LoanLimitReached(messages.at_loan_limit(student.name or name))

        session.student = student
        session.step = CONFIRM_PERIOD
        self.sessions.save(session)

        due = rules.new_due_date_after_borrow(self.today())
        return StepResult(
            messages.loan_period(due),
            {
                "student": student.to_dict(),
                "dueDate": due.isoformat(),
                "dueDateLabel": messages.format_date(due),
                "loanCount": loans.count,
                "step": CONFIRM_PERIOD,
                "nextAction": "agree_or_cancel",
            },
        )

    async def borrow_accept_period(self, session_id: Optional[str], action: Optional[str]) -> StepResult:
        if action == CANCEL:
            return self._cancel(session_id)
        self._require_action(action, "agree")
        session = self._require(session_id, BORROW, (CONFIRM_PERIOD, SHOW_RULES), "book", "student")

        session.step = SHOW_RULES
        self.sessions.save(session)
        return StepResult(messages.LENDING_RULES, {"step": SHOW_RULES, "nextAction": "agree_or_cancel"})

    async def borrow_accept_rules(self, session_id: Optional[str], action: Optional[str]) -> StepResult:
        if action == CANCEL:
            return self._cancel(session_id)
        self._require_action(action, "agree")
        session = self._require(session_id, BORROW, (SHOW_RULES,), "book", "student")
        self._claim(session)

        today = self.today()
        try:
            # Someone else may have borrowed it while this session was open
            if not await self.records.is_book_available(session.book.id):
                raise BookUnavailable(messages.BOOK_ON_LOAN)
            loan = await self.records.create_loan(session.book, session.student, today)
        except ExternalServiceError:
            self.sessions.save(session)
            raise

        await self.records.set_book_status(session.book, BookStatus.ON_LOAN)

        due = loan.due_date or rules.new_due_date_after_borrow(today)
        logger.info(f"Borrow completed: {session.book.title!r} -> {session.student.name} until {due}")
        return StepResult(
            messages.borrow_done(due),
            {
                "step": COMPLETED,
                "loan": {"id": loan.id, "dueDate": due.isoformat(), "dueDateLabel": messages.format_date(due)},
                "redirectToMain": True,
            },
        )

    # ------------------------- Return ------------------------- #
    async def return_find_book(self, session_id: str, image: Optional[bytes]) -> StepResult:
        book = await self._find_book_in_image(image)
        if not await self.records.open_loans_for_book(book.id):
            raise BookNotOnLoan(messages.book_not_on_loan(book.status.value if book.status else None))

        session = self.sessions.start(session_id, RETURN)
        session.book = book
        session.step = BOOK_FOUND
        self.sessions.save(session)
        return StepResult(
            messages.BOOK_TO_RETURN,
            {"book": book.to_dict(), "step": f"return_{BOOK_FOUND}", "nextAction": "return_or_cancel"},
        )

    async def return_choose(self, session_id: Optional[str], action: Optional[str]) -> StepResult:
        if action == CANCEL:
            return self._cancel(session_id)
        self._require_action(action, "return")
        session = self._require(session_id, RETURN, (BOOK_FOUND, NAME_REQUEST), "book")

        session.step = NAME_REQUEST
        self.sessions.save(session)
        return StepResult(messages.ENTER_NAME, {"step": f"return_{NAME_REQUEST}", "nextAction": "enter_name"})

    async def return_identify_student(self, session_id: Optional[str], name: Optional[str]) -> StepResult:
        if not name or not name.strip():
            raise ValidationError(messages.NAME_REQUIRED)
        session = self._require(session_id, RETURN, (NAME_REQUEST, CHECK_DEADLINE), "book")

        student = await self._find_student(name)
        loan = await self.records.find_open_loan(session.book.id, student.id)
        if loan is None:
            raise NotFoundError(messages.LOAN_NOT_FOUND)

        session.student = student
        session.loan = loan
        session.step = CHECK_DEADLINE
        self.sessions.save(session)

        data: Dict[str, Any] = {
            "student": student.to_dict(),
            "dueDate": None,
            "dueDateLabel": None,
            "daysRemaining": None,
            "isOverdue": False,
            "step": f"return_{CHECK_DEADLINE}",
            "nextAction": "confirm_or_cancel",
        }
        if loan.due_date is None:
            return StepResult(messages.due_on_unknown(), data)

        status = rules.deadline_status(loan.due_date, self.today())
        if status.is_overdue:
            message = messages.overdue(abs(status.days_remaining))
        elif status.is_early_return:
            message = messages.early_return(status.days_remaining)
        else:
            message = messages.due_on(loan.due_date)

        data.update(
            dueDate=loan.due_date.isoformat(),
            dueDateLabel=messages.format_date(loan.due_date),
            daysRemaining=status.days_remaining,
            isOverdue=status.is_overdue,
        )
        return StepResult(message, data)

    async def return_confirm(self, session_id: Optional[str], action: Optional[str]) -> StepResult:
        if action == CANCEL:
            return self._cancel(session_id)
        self._require_action(action, "confirm")
        session = self._require(session_id, RETURN, (CHECK_DEADLINE,), "book", "student", "loan")
        self._claim(session)

        try:
            await self.records.mark_loan_returned(session.loan, self.today())
        except RecordRejected:
            # The payload itself is wrong; retrying the same session cannot help
            logger.error(f"Return of loan {session.loan.id} rejected by the record store")
            raise
        except ExternalServiceError:
            self.sessions.save(session)
            raise

        await self.records.set_book_status(session.book, BookStatus.AVAILABLE)
        logger.info(f"Return completed: {session.book.title!r} from {session.student.name}")
        return StepResult(messages.RETURN_DONE, {"step": f"return_{COMPLETED}", "redirectToMain": True})

    # ------------------------- Extend ------------------------- #
    def _describe_loan(self, loan: Loan, today: date) -> Dict[str, Any]:
        due = loan.due_date
        new_due = rules.new_due_date_after_extend(due) if due else None
        return {
            "id": loan.id,
            "title": loan.book_title or messages.UNKNOWN_TITLE,
            "dueDate": due.isoformat() if due else None,
            "dueDateLabel": messages.format_date(due) if due else None,
            "newDueDate": new_due.isoformat() if new_due else None,
            "newDueDateLabel": messages.format_date(new_due) if new_due else None,
            "isOverdue": bool(due and due < today),
            "canExtend": rules.can_extend(loan, today),
            "canExtendByDate": rules.can_extend_by_date(loan, today),
            "extendCount": loan.extension_count,
        }

    async def extend_list_loans(self, session_id: str, name: Optional[str]) -> StepResult:
        if not name or not name.strip():
            raise ValidationError(messages.NAME_REQUIRED)

        student = await self._find_student(name)
        loans = await self.records.loan_count_for(student.id)
        today = self.today()
        data: Dict[str, Any] = {
            "student": student.to_dict(),
            "loans": [self._describe_loan(loan, today) for loan in loans.loans],
            "loanCount": loans.count,
            "atLimit": loans.is_at_limit,
            "step": LOANS_LISTED,
        }
        if not loans.count:
            data["step"] = INITIAL
            return StepResult(messages.NO_LOANS, data)

        session = self.sessions.start(session_id, EXTEND)
        session.student = student
        session.step = LOANS_LISTED
        self.sessions.save(session)
        logger.info(f"Listed {loans.count} loans for {student.name}")
        return StepResult(messages.choose_loan(loans.count), data)

    async def extend_loan(
        self,
        session_id: Optional[str],
        loan_id: Optional[str],
        student_name: Optional[str],
    ) -> StepResult:
        if not loan_id or not student_name or not student_name.strip():
            raise ValidationError(messages.MISSING_FIELDS)

        session = self.sessions.get(session_id)
        if (
            session is not None
            and session.flow == EXTEND
            and session.student is not None
            and student_name.strip() in (session.student.name, session.student.student_number)
        ):
            student = session.student
        else:
            student = await self._find_student(student_name)

        loan = await self.records.get_loan(loan_id)
        if loan is None or not loan.references_student(student.id):
            raise NotFoundError(messages.LOAN_NOT_FOUND)

        today = self.today()
        reason = rules.extension_refusal(loan, today)
        if reason == rules.ALREADY_EXTENDED:
            raise ExtensionRefused(messages.ALREADY_EXTENDED, reason=reason)
        if reason == rules.TOO_EARLY:
            raise ExtensionRefused(
                messages.extension_too_early(rules.extension_window_start(loan.due_date)), reason=reason
            )
        if reason == rules.NOT_ON_LOAN:
            raise ExtensionRefused(messages.NOT_ON_LOAN, reason=reason)
        if reason is not None:
            raise ExtensionRefused(messages.NOT_EXTENDABLE, reason=reason)

        updated = await self.records.extend_loan(loan)
        self.sessions.destroy(session_id)

        new_due = updated.due_date or rules.new_due_date_after_extend(loan.due_date)
        title = loan.book_title or messages.UNKNOWN_TITLE
        logger.info(f"Loan {loan.id} extended to {new_due}")
        return StepResult(
            messages.extension_done(title, new_due),
            {
                "loanId": loan.id,
                "bookTitle": title,
                "newDueDate": new_due.isoformat(),
                "newDueDateLabel": messages.format_date(new_due),
                "step": COMPLETED,
                "redirectToMain": True,
            },
        )
