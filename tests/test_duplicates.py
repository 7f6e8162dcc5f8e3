"""Tests for duplicate detection."""

import pytest

from docsense.extraction.result import FieldValue
from docsense.ingest.loader import content_hash
from docsense.verification.duplicates import DuplicateDetector, DuplicateLevel


def _fields(**values: str) -> dict[str, FieldValue]:
    return {key: FieldValue(value, 0.9) for key, value in values.items()}


def _extracted(**values: str) -> dict:
    return {"fields": {key: {"value": value, "confidence": 0.9} for key, value in values.items()}}


@pytest.fixture
def detector(store) -> DuplicateDetector:
    return DuplicateDetector(store)


class TestContentHash:
    def test_sha256_hex(self) -> None:
        assert content_hash(b"abc") == (
            "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        )


class TestDuplicateDetector:
    """Tests for DuplicateDetector.check."""

    def test_identical_bytes_are_exact(self, store, detector, make_document) -> None:
        first = make_document(filename="a.txt")
        second = make_document(filename="b.txt")
        for document in (first, second):
            store.update_document(document.id, content_hash=content_hash(document.content))

        match = detector.check(store.get_document(second.id))

        assert match.level == DuplicateLevel.EXACT
        assert match.document_id == first.id
        assert match.filename == "a.txt"

    def test_never_matches_itself(self, store, detector, make_document) -> None:
        document = make_document()
        document = store.update_document(
            document.id, content_hash=content_hash(document.content)
        )
        assert detector.check(document) is None

    def test_other_users_ignored(self, store, detector, make_document) -> None:
        theirs = make_document(user_id="bob")
        mine = make_document()
        for document in (theirs, mine):
            store.update_document(document.id, content_hash=content_hash(document.content))
        store.update_document(
            theirs.id, extracted_data=_extracted(invoice_number="INV-1", vendor_name="Acme")
        )

        match = detector.check(
            store.get_document(mine.id), _fields(invoice_number="INV-1", vendor_name="Acme")
        )
        assert match is None

    def test_same_invoice_number_and_vendor_is_high(
        self, store, detector, make_document
    ) -> None:
        earlier = make_document(filename="scan.pdf", content=b"%PDF-1.4 scan")
        store.update_document(
            earlier.id,
            extracted_data=_extracted(
                invoice_number="INV-1001", vendor_name="ACME Supplies AB", total_amount="99.00"
            ),
        )
        current = make_document(filename="mail.txt")

        match = detector.check(
            current,
            _fields(
                invoice_number="INV-1001", vendor_name="Acme Supplies AB", total_amount="1250.00"
            ),
        )

        assert match.level == DuplicateLevel.HIGH
        assert match.document_id == earlier.id
        assert "INV-1001" in match.reason

    def test_same_vendor_and_total_is_medium(self, store, detector, make_document) -> None:
        earlier = make_document(filename="march.txt")
        store.update_document(
            earlier.id,
            extracted_data=_extracted(
                invoice_number="INV-7", vendor_name="Acme", total_amount="1 250,00"
            ),
        )
        current = make_document(filename="april.txt")

        match = detector.check(
            current, _fields(invoice_number="INV-8", vendor_name="acme", total_amount="1250.00")
        )

        assert match.level == DuplicateLevel.MEDIUM
        assert match.document_id == earlier.id

    def test_delivery_note_date_supplier_weight(self, store, detector, make_document) -> None:
        earlier = make_document(filename="note-1.csv", doc_type="delivery_note")
        store.update_document(
            earlier.id,
            extracted_data=_extracted(
                supplier="Ragn-Sells", document_date="2024-03-15", total_weight_kg="1200.05"
            ),
        )
        current = make_document(filename="note-2.csv", doc_type="delivery_note")

        match = detector.check(
            current,
            _fields(supplier="Ragn-Sells", document_date="2024-03-15", total_weight_kg="1200.0"),
        )

        assert match.level == DuplicateLevel.HIGH
        assert match.reason == "same date, supplier and weight"

    def test_strongest_match_wins(self, store, detector, make_document) -> None:
        amount_only = make_document(filename="x.txt")
        store.update_document(
            amount_only.id,
            extracted_data=_extracted(
                invoice_number="INV-2", vendor_name="Acme", total_amount="10.00"
            ),
        )
        same_number = make_document(filename="y.txt")
        store.update_document(
            same_number.id,
            extracted_data=_extracted(invoice_number="INV-1", vendor_name="Acme"),
        )
        current = make_document(filename="z.txt")

        match = detector.check(
            current, _fields(invoice_number="INV-1", vendor_name="Acme", total_amount="10.00")
        )

        assert match.document_id == same_number.id
        assert match.level == DuplicateLevel.HIGH

    def test_same_filename_is_medium(self, detector, make_document) -> None:
        earlier = make_document(filename="invoice.txt", content=b"Total: 10")
        current = make_document(filename="invoice.txt", content=b"Total: 20")

        match = detector.check(current)

        assert match.level == DuplicateLevel.MEDIUM
        assert match.document_id == earlier.id

    def test_different_vendor_no_match(self, store, detector, make_document) -> None:
        earlier = make_document(filename="a.txt")
        store.update_document(
            earlier.id,
            extracted_data=_extracted(
                invoice_number="INV-1", vendor_name="Acme", total_amount="10.00"
            ),
        )
        current = make_document(filename="b.txt")

        match = detector.check(
            current, _fields(invoice_number="INV-1", vendor_name="Globex", total_amount="10.00")
        )
        assert match is None
