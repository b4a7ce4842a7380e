"""Tests for quote version chains and lifecycle"""
from decimal import Decimal

import pytest

import quote_service
from errors import EntityNotFoundError, InvalidInputError, QuoteStateError
from models import OrderStatus, QuoteStatus


async def _send(db_session, quote, user):
    sent, created = await quote_service.update_quote_status(
        db_session, quote.id, QuoteStatus.SENT, "Sent to customer", user.id,
    )
    assert created is True
    return sent


async def _approve(db_session, quote, user):
    sent = await _send(db_session, quote, user)
    approved, created = await quote_service.update_quote_status(
        db_session, sent.id, QuoteStatus.APPROVED, user_id=user.id,
    )
    assert created is False
    return approved


def test_totals_add_vat():
    totals = quote_service.calculate_quote_totals([
        {"quantity": 3, "unit_price": "19.99"},
        {"quantity": 1, "unit_price": 0.05},
    ])
    assert totals == {
        "subtotal": Decimal("60.02"),
        "tax": Decimal("12.00"),
        "total": Decimal("72.02"),
    }


@pytest.mark.asyncio
async def test_create_quote_starts_a_chain(quote):
    assert quote.quote_reference == "QR-0001"
    assert quote.quote_number == "QR-0001-v1"
    assert quote.version_number == 1
    assert quote.is_latest_version is True
    assert quote.parent_quote_id is None
    assert quote.change_reason == "Initial creation"
    assert quote.status == QuoteStatus.DRAFT
    assert quote.total_amount == Decimal("720.00")
    assert [i.position for i in quote.line_items] == [0, 1]


@pytest.mark.asyncio
async def test_references_are_sequential(db_session, quote, customer, test_user):
    second = await quote_service.create_quote(
        db_session, {"customer_id": customer.id, "title": "Handrail"}, created_by_id=test_user.id,
    )
    assert second.quote_reference == "QR-0002"
    assert second.total_amount == Decimal("0.00")


@pytest.mark.asyncio
async def test_create_quote_requires_known_customer(db_session, test_user):
    with pytest.raises(InvalidInputError):
        await quote_service.create_quote(db_session, {"title": "No customer"}, test_user.id)
    with pytest.raises(EntityNotFoundError):
        await quote_service.create_quote(
            db_session, {"customer_id": "missing", "title": "Ghost"}, test_user.id,
        )


@pytest.mark.asyncio
async def test_draft_is_edited_in_place(db_session, quote):
    updated = await quote_service.update_draft_quote(db_session, quote.id, {
        "title": "Mezzanine floor, revised",
        "line_items": [{"description": "Plate", "quantity": 12, "unit_price": 40}],
    })
    assert updated.id == quote.id
    assert updated.version_number == 1
    assert updated.title == "Mezzanine floor, revised"
    assert updated.total_amount == Decimal("576.00")
    assert len(updated.line_items) == 1


@pytest.mark.asyncio
async def test_leaving_draft_needs_a_reason(db_session, quote):
    with pytest.raises(InvalidInputError):
        await quote_service.update_quote_status(db_session, quote.id, QuoteStatus.SENT)
    with pytest.raises(InvalidInputError):
        await quote_service.update_quote_status(db_session, quote.id, QuoteStatus.SENT, "   ")


@pytest.mark.asyncio
async def test_sending_creates_next_version(db_session, quote, test_user):
    sent = await _send(db_session, quote, test_user)

    assert sent.id != quote.id
    assert sent.version_number == 2
    assert sent.quote_number == "QR-0001-v2"
    assert sent.parent_quote_id == quote.id
    assert sent.status == QuoteStatus.SENT
    assert sent.change_reason == "Sent to customer"
    assert sent.description.startswith("Sent on: ")
    assert len(sent.line_items) == 2
    assert sent.total_amount == quote.total_amount

    versions = await quote_service.get_quote_versions(db_session, "QR-0001")
    assert [v.version_number for v in versions] == [1, 2]
    assert [v.is_latest_version for v in versions] == [False, True]
    assert versions[0].status == QuoteStatus.DRAFT


@pytest.mark.asyncio
async def test_sent_stamp_is_not_repeated(db_session, quote, test_user):
    sent = await _send(db_session, quote, test_user)
    declined, _ = await quote_service.update_quote_status(
        db_session, sent.id, QuoteStatus.DECLINED, user_id=test_user.id,
    )
    reopened, _ = await quote_service.update_quote_status(
        db_session, declined.id, QuoteStatus.SENT, user_id=test_user.id,
    )
    assert reopened.description.count("Sent on:") == 1


@pytest.mark.asyncio
async def test_unchanged_status_is_a_no_op(db_session, quote):
    same, created = await quote_service.update_quote_status(db_session, quote.id, QuoteStatus.DRAFT)
    assert created is False
    assert same.version_number == 1


@pytest.mark.asyncio
async def test_only_latest_version_changes(db_session, quote, test_user):
    await _send(db_session, quote, test_user)
    with pytest.raises(QuoteStateError):
        await quote_service.update_quote_status(db_session, quote.id, QuoteStatus.APPROVED)
    with pytest.raises(QuoteStateError):
        await quote_service.update_draft_quote(db_session, quote.id, {"title": "Stale edit"})
    with pytest.raises(QuoteStateError):
        await quote_service.create_quote_version(db_session, quote.id, {}, "Stale", test_user.id)


@pytest.mark.asyncio
async def test_explicit_version_copies_and_overrides(db_session, quote, test_user):
    sent = await _send(db_session, quote, test_user)
    revised = await quote_service.create_quote_version(
        db_session, sent.id, {"notes": "Galvanised finish", "status": "APPROVED"},
        "Customer asked for galvanising", test_user.id,
    )
    assert revised.version_number == 3
    assert revised.status == QuoteStatus.DRAFT
    assert revised.notes == "Galvanised finish"
    assert revised.title == quote.title


@pytest.mark.asyncio
async def test_version_needs_reason(db_session, quote, test_user):
    with pytest.raises(InvalidInputError):
        await quote_service.create_quote_version(db_session, quote.id, {}, "", test_user.id)


@pytest.mark.asyncio
async def test_no_versions_from_approved_quote(db_session, quote, test_user):
    approved = await _approve(db_session, quote, test_user)
    with pytest.raises(QuoteStateError):
        await quote_service.create_quote_version(
            db_session, approved.id, {}, "Late change", test_user.id,
        )


@pytest.mark.asyncio
async def test_clone_starts_new_reference(db_session, quote, test_user):
    clone = await quote_service.clone_quote(db_session, quote.id, test_user.id)

    assert clone.quote_reference == "QR-0002"
    assert clone.version_number == 1
    assert clone.status == QuoteStatus.DRAFT
    assert clone.title == "Mezzanine floor (Clone)"
    assert clone.valid_until is not None
    assert clone.total_amount == quote.total_amount
    assert [i.description for i in clone.line_items] == ["Plate", "Fabrication labour"]


@pytest.mark.asyncio
async def test_convert_requires_approval(db_session, quote, test_user):
    with pytest.raises(QuoteStateError):
        await quote_service.convert_quote_to_order(db_session, quote.id, test_user.id)


@pytest.mark.asyncio
async def test_convert_creates_order(db_session, quote, test_user):
    approved = await _approve(db_session, quote, test_user)
    converted, order = await quote_service.convert_quote_to_order(db_session, approved.id, test_user.id)

    assert converted.status == QuoteStatus.CONVERTED
    assert order.source_quote_id == approved.id
    assert order.status == OrderStatus.IN_PRODUCTION
    assert order.total_amount == Decimal("720.00")
    assert order.subtotal == Decimal("600.00")
    assert order.tax_amount == Decimal("120.00")
    assert order.quote_ref == "QR-0001-v2"

    with pytest.raises(QuoteStateError):
        await quote_service.update_quote_status(db_session, converted.id, QuoteStatus.DRAFT)


@pytest.mark.asyncio
async def test_list_quotes_shows_latest_versions(db_session, quote, test_user):
    await _send(db_session, quote, test_user)

    quotes, total = await quote_service.list_quotes(db_session)
    assert total == 1
    assert quotes[0].version_number == 2

    everything, total_all = await quote_service.list_quotes(db_session, latest_only=False)
    assert total_all == 2
