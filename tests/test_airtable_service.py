import asyncio
import json
from datetime import date

import httpx
import pytest

from lending_desk.errors import ExternalServiceError, RecordNotFound, RecordRejected
from lending_desk.models import Book, BookStatus, Loan, LoanStatus, Student
from lending_desk.records import LibraryRecords
from lending_desk.services.airtable_service import AirtableService, escape_formula_value


def run(coro):
    return asyncio.run(coro)


def make_store(mock_http, handler):
    return AirtableService(
        api_key="key123",
        base_id="appBase",
        base_url="https://airtable.test/v0",
        http=mock_http(handler),
    )


def loan_record(record_id, book="recB1", student="recS1", status="On Loan", due="2026-10-20", loan_date="2026-10-06"):
    return {
        "id": record_id,
        "fields": {
            "Book": [book],
            "Student": [student],
            "LoanDate": loan_date,
            "DueDate": due,
            "ReturnStatus": status,
        },
    }


def test_escape_formula_value():
    assert escape_formula_value('Say "hi"') == 'Say \\"hi\\"'
    assert escape_formula_value("back\\slash") == "back\\\\slash"


def test_list_records_follows_pagination(mock_http):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if "offset" not in request.url.params:
            return httpx.Response(200, json={"records": [{"id": "rec1"}], "offset": "page2"})
        return httpx.Response(200, json={"records": [{"id": "rec2"}]})

    store = make_store(mock_http, handler)
    records = run(store.list_records("Loans", formula="{ReturnStatus} = \"On Loan\""))

    assert [r["id"] for r in records] == ["rec1", "rec2"]
    assert len(seen) == 2
    assert seen[0].headers["Authorization"] == "Bearer key123"
    assert seen[0].url.path == "/v0/appBase/Loans"
    assert seen[0].url.params["filterByFormula"] == '{ReturnStatus} = "On Loan"'
    assert seen[1].url.params["offset"] == "page2"


def test_list_records_stops_at_max_records(mock_http):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"records": [{"id": "rec1"}, {"id": "rec2"}], "offset": "more"})

    records = run(make_store(mock_http, handler).list_records("Books", max_records=1))
    assert [r["id"] for r in records] == ["rec1"]
    assert len(calls) == 1
    assert calls[0].url.params["maxRecords"] == "1"


def test_table_names_are_quoted(mock_http):
    paths = []

    def handler(request):
        paths.append(request.url.raw_path)
        return httpx.Response(200, json={"records": []})

    run(make_store(mock_http, handler).list_records("貸出記録"))
    assert b"%E8%B2%B8" in paths[0]


def test_update_rejected_with_422(mock_http):
    def handler(request):
        return httpx.Response(
            422,
            json={"error": {"type": "INVALID_MULTIPLE_CHOICE_OPTIONS", "message": "Insufficient permissions"}},
        )

    with pytest.raises(RecordRejected) as exc:
        run(make_store(mock_http, handler).update_record("Loans", "recL1", {"ReturnStatus": "Returned"}))
    assert exc.value.status_code == 422
    assert exc.value.details["type"] == "INVALID_MULTIPLE_CHOICE_OPTIONS"


def test_server_error_maps_to_external_service_error(mock_http):
    def handler(request):
        return httpx.Response(503, text="unavailable")

    with pytest.raises(ExternalServiceError) as exc:
        run(make_store(mock_http, handler).list_records("Books"))
    assert exc.value.status_code == 500


def test_get_missing_record(mock_http):
    def handler(request):
        return httpx.Response(404, json={"error": "NOT_FOUND"})

    with pytest.raises(RecordNotFound):
        run(make_store(mock_http, handler).get_record("Loans", "recMissing"))


def test_unreachable_store(mock_http):
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    store = make_store(mock_http, handler)
    with pytest.raises(ExternalServiceError):
        run(store.create_record("Loans", {"Book": ["recB1"]}))


# ------------------------- LibraryRecords over HTTP ------------------------- #
def test_find_book_by_title_formula(mock_http):
    formulas = []

    def handler(request):
        formulas.append(request.url.params["filterByFormula"])
        return httpx.Response(
            200, json={"records": [{"id": "recB1", "fields": {"Title": "Sample Book", "Status": "Available"}}]}
        )

    records = LibraryRecords(store=make_store(mock_http, handler))
    book = run(records.find_book_by_title('  Sample "Book" '))

    assert book.id == "recB1"
    assert formulas == ['SEARCH("sample \\"book\\"", LOWER({Title})) > 0']


def test_find_student_by_name_or_number(mock_http):
    formulas = []

    def handler(request):
        formulas.append(request.url.params["filterByFormula"])
        return httpx.Response(200, json={"records": []})

    records = LibraryRecords(store=make_store(mock_http, handler))
    assert run(records.find_student("Alice")) is None
    assert formulas == ['OR({StudentID} = "Alice", {Name} = "Alice")']


def test_availability_and_loan_count(mock_http):
    def handler(request):
        return httpx.Response(
            200,
            json={
                "records": [
                    loan_record("recL1", book="recB1", student="recS1"),
                    loan_record("recL2", book="recB2", student="recS1"),
                    loan_record("recL3", book="recB3", student="recS2", status="返却済"),
                ]
            },
        )

    records = LibraryRecords(store=make_store(mock_http, handler))
    assert run(records.is_book_available("recB1")) is False
    assert run(records.is_book_available("recB3")) is True
    assert run(records.loan_count_for("recS1")).count == 2
    assert run(records.find_open_loan("recB2", "recS1")).id == "recL2"
    assert run(records.find_open_loan("recB2", "recS2")) is None


def test_availability_fails_safe(mock_http):
    def handler(request):
        return httpx.Response(500, json={"error": "SERVER_ERROR"})

    records = LibraryRecords(store=make_store(mock_http, handler))
    assert run(records.is_book_available("recB1")) is False


def test_loan_count_errors_propagate(mock_http):
    def handler(request):
        return httpx.Response(500, json={"error": "SERVER_ERROR"})

    records = LibraryRecords(store=make_store(mock_http, handler))
    with pytest.raises(ExternalServiceError):
        run(records.loan_count_for("recS1"))


def test_get_loan_missing_is_none(mock_http):
    def handler(request):
        return httpx.Response(404, json={"error": "NOT_FOUND"})

    records = LibraryRecords(store=make_store(mock_http, handler))
    assert run(records.get_loan("recMissing")) is None


def test_create_loan_payload(mock_http):
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        fields = bodies[-1]["records"][0]["fields"]
        return httpx.Response(200, json={"records": [{"id": "recNew", "fields": fields}]})

    records = LibraryRecords(store=make_store(mock_http, handler))
    book = Book(id="recB1", title="Sample Book")
    student = Student(id="recS1", name="Alice")
    loan = run(records.create_loan(book, student, date(2026, 10, 19)))

    assert bodies[0]["records"][0]["fields"] == {
        "Book": ["recB1"],
        "Student": ["recS1"],
        "LoanDate": "2026-10-19",
        "DueDate": "2026-11-02",
        "ReturnStatus": "On Loan",
    }
    assert loan.id == "recNew"
    assert loan.due_date == date(2026, 11, 2)


def test_extend_and_return_payloads(mock_http):
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={"id": "recL1", "fields": json.loads(request.content)["fields"]})

    records = LibraryRecords(store=make_store(mock_http, handler))
    loan = Loan(id="recL1", due_date=date(2026, 10, 20), status=LoanStatus.ON_LOAN)

    extended = run(records.extend_loan(loan))
    returned = run(records.mark_loan_returned(loan, date(2026, 10, 19)))

    assert requests[0].method == "PATCH"
    assert json.loads(requests[0].content) == {"fields": {"DueDate": "2026-10-27", "ExtensionCount": 1}}
    assert extended.due_date == date(2026, 10, 27)
    assert json.loads(requests[1].content) == {
        "fields": {"ReturnStatus": "Returned", "ReturnedDate": "2026-10-19"}
    }
    assert returned.status is LoanStatus.RETURNED


def test_book_status_update_is_advisory(mock_http):
    def handler(request):
        return httpx.Response(422, json={"error": {"type": "INVALID_VALUE_FOR_COLUMN"}})

    records = LibraryRecords(store=make_store(mock_http, handler))
    assert run(records.set_book_status(Book(id="recB1", title="X"), BookStatus.ON_LOAN)) is False


def test_loans_for_book_newest_first(mock_http):
    def handler(request):
        return httpx.Response(
            200,
            json={
                "records": [
                    loan_record("recOld", loan_date="2026-01-05", status="Returned"),
                    loan_record("recNew", loan_date="2026-10-06"),
                    loan_record("recOther", book="recB9"),
                ]
            },
        )

    records = LibraryRecords(store=make_store(mock_http, handler))
    loans = run(records.loans_for_book("recB1"))
    assert [loan.id for loan in loans] == ["recNew", "recOld"]


def test_non_json_success_body(mock_http):
    def handler(request):
        return httpx.Response(200, text="<html>oops</html>")

    with pytest.raises(ExternalServiceError):
        run(make_store(mock_http, handler).list_records("Students"))
