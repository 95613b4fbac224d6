"""User-facing texts for the lending desk chat."""

from datetime import date

from lending_desk import rules

LENDING_RULES = f"""📚 Lending rules
Books are lent for {rules.LOAN_PERIOD_DAYS // 7} weeks, up to {rules.MAX_OPEN_LOANS} books at a time
Always return books by the due date (ask for an extension beforehand)
No writing, doodling or highlighting in books
Damaged, soiled or lost books must in principle be replaced
Repeated late returns or rule violations may suspend lending"""

CANCELLED = "Cancelled."
RESET = "Session reset."
BOOK_AVAILABLE = "🙆‍♀️ This book is available"
BOOK_TO_RETURN = "📚 Let's return this book"
ENTER_NAME = "📝 Please enter your name"
NO_IMAGE = "An image file is required."
NO_TEXT = "Could not read any text from the image."
BOOK_NOT_FOUND = "Sorry, this book could not be found."
BOOK_ON_LOAN = "Sorry, this book is currently on loan."
NAME_REQUIRED = "Please enter your name."
STUDENT_NOT_FOUND = "Sorry, no student with that name was found."
LOAN_NOT_FOUND = (
    "No loan record was found for this book. Someone else may have borrowed it, "
    "or it has already been returned."
)
MISSING_FIELDS = "Required information is missing."
NO_LOANS = "You have no books on loan."
RETURN_DONE = "✅ The book has been returned. Thank you!"
ALREADY_EXTENDED = "This book has already been extended and cannot be extended again."
NOT_ON_LOAN = "This book is not currently on loan."
NOT_EXTENDABLE = "This loan cannot be extended. Please ask at the desk."
UNKNOWN_TITLE = "Unknown book"


def format_date(value: date) -> str:
    """``November 2 (Mon)`` style label used in chat messages."""
    return f"{value:%B} {value.day} ({value:%a})"


def loan_period(due_date: date) -> str:
    return f"⏳ The loan period runs for two weeks from today, until {format_date(due_date)}"


def borrow_done(due_date: date) -> str:
    return f"🫡 Thank you! Please return the book by {format_date(due_date)}"


def at_loan_limit(name: str) -> str:
    return (
        f"Sorry, {name} already has {rules.MAX_OPEN_LOANS} books on loan and cannot borrow more. "
        "Please return a book first."
    )


def book_not_on_loan(status_label: str | None) -> str:
    if status_label:
        return f"This book is not currently on loan. (current status: {status_label})"
    return NOT_ON_LOAN


def overdue(days_late: int) -> str:
    return f"⚠️ This book is {days_late} day(s) overdue. Please return it right away."


def early_return(days_left: int) -> str:
    return f"⏰ There are still {days_left} days left. Return it now?"


def due_on(due_date: date) -> str:
    return f"📅 The due date is {format_date(due_date)}. Continue with the return?"


def due_on_unknown() -> str:
    return "📅 This loan has no due date on record. Continue with the return?"


def choose_loan(count: int) -> str:
    return f"You have {count} book(s) on loan. Choose the one to extend."


def extension_too_early(window_start: date) -> str:
    return f"Extensions can be requested from two days before the due date ({format_date(window_start)})."


def extension_done(title: str, new_due_date: date) -> str:
    return f"Your extension is complete!\n\nBook: {title}\nNew due date: {format_date(new_due_date)}"
