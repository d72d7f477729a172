import json
from datetime import timedelta
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import select

from paycore.core.exceptions import (
    AlreadyRefunded,
    ConcurrencyConflict,
    IntegrityFailure,
    InvalidRefundAmount,
    InvalidTransition,
    NotOrderOwner,
    OrderNotAwaitingPayment,
    ProviderRejected,
    ProviderTransientError,
    ProviderUnavailable,
)
from paycore.models import (
    Order,
    OrderStatus,
    Payment,
    PaymentAuditLog,
    PaymentHold,
    PaymentHoldStatus,
    PaymentStatus,
    Product,
    ProductStatus,
)
from paycore.providers import (
    IyzicoCredentials,
    IyzicoProvider,
    ProviderRegistry,
    RefundOutcome,
    RefundResult,
    VerifyOutcome,
    VerifyResult,
)
from paycore.providers.paytr import paytr_hmac
from paycore.services.audit_service import AuditService
from paycore.services.signature import HmacSignaturePolicy

IYZICO_SECRET = "iyzico-test-secret"
PAYTR_KEY = "paytr-key"
PAYTR_SALT = "paytr-salt"


def iyzico_callback(token: str) -> tuple[bytes, str]:
    body = json.dumps({"token": token}).encode()
    return body, HmacSignaturePolicy(IYZICO_SECRET).expected(body)


def paytr_callback(merchant_oid: str, status: str, total_amount: str = "100000") -> dict:
    return {
        "merchant_oid": merchant_oid,
        "status": status,
        "total_amount": total_amount,
        "hash": paytr_hmac(PAYTR_KEY, f"{merchant_oid}{PAYTR_SALT}{status}{total_amount}"),
    }


async def count(fetch_all, model, *where):
    rows = await fetch_all(select(model).where(*where))
    return len(rows)


# ---------------------------------------------------------------- initiate


async def test_initiate_creates_pending_payment(service, order, users, iyzico, fetch_all):
    session = await service.initiate(order.id, users["buyer"].id, "iyzico", client_ip="10.0.0.5")

    assert session.reused is False
    assert session.expires_in == 300
    assert session.payment_url == f"https://pay.example/{session.payment.id}"
    assert session.payment.status == PaymentStatus.PENDING
    assert session.payment.amount == Decimal("1000.00")
    assert session.payment.provider_token == f"tok-{session.payment.id.hex}"
    assert iyzico.count("initialize") == 1

    audit = await fetch_all(select(PaymentAuditLog).where(PaymentAuditLog.payment_id == session.payment.id))
    assert [entry.action for entry in audit] == ["payment.created"]
    assert audit[0].actor_id == users["buyer"].id


async def test_initiate_reuses_existing_pending_payment(service, order, users, iyzico, fetch_all):
    first = await service.initiate(order.id, users["buyer"].id, "iyzico")
    second = await service.initiate(order.id, users["buyer"].id, "iyzico")

    assert second.reused is True
    assert second.payment.id == first.payment.id
    assert second.payment_url == first.payment_url
    assert iyzico.count("initialize") == 1
    assert await count(fetch_all, Payment, Payment.order_id == order.id) == 1


async def test_initiate_rejects_other_users_order(service, order, users):
    with pytest.raises(NotOrderOwner):
        await service.initiate(order.id, users["stranger"].id, "iyzico")


async def test_initiate_rejects_order_not_awaiting_payment(service, pending_payment, order, users):
    await service.apply_success(pending_payment.id, "tx1")

    with pytest.raises(OrderNotAwaitingPayment):
        await service.initiate(order.id, users["buyer"].id, "iyzico")


async def test_initiate_with_unconfigured_provider_creates_nothing(service, order, users, paytr, fetch_all):
    paytr.configured = False

    with pytest.raises(ProviderUnavailable):
        await service.initiate(order.id, users["buyer"].id, "paytr")

    assert await count(fetch_all, Payment) == 0


async def test_initiate_rejected_by_provider_marks_payment_failed(service, order, users, iyzico, fetch_all):
    iyzico.initialize_error = ProviderRejected("Kart bilgileri geçersiz")

    with pytest.raises(ProviderRejected):
        await service.initiate(order.id, users["buyer"].id, "iyzico")

    payments = await fetch_all(select(Payment).where(Payment.order_id == order.id))
    assert len(payments) == 1
    assert payments[0].status == PaymentStatus.FAILED
    assert payments[0].failure_reason == "Kart bilgileri geçersiz"


async def test_initiate_after_provider_timeout_reopens_session(service, order, users, iyzico, fetch_all):
    iyzico.initialize_error = ProviderTransientError()

    with pytest.raises(ProviderTransientError):
        await service.initiate(order.id, users["buyer"].id, "iyzico")

    iyzico.initialize_error = None
    session = await service.initiate(order.id, users["buyer"].id, "iyzico")

    assert session.payment.status == PaymentStatus.PENDING
    assert session.payment_url == f"https://pay.example/{session.payment.id}"
    assert iyzico.count("initialize") == 2
    assert await count(fetch_all, Payment, Payment.order_id == order.id) == 1


# ---------------------------------------------------------------- success


async def test_success_creates_hold_and_marks_order_paid(service, pending_payment, order, users, events, fetch, fetch_all):
    result = await service.apply_success(pending_payment.id, "tx1")

    assert result.applied is True
    payment = await fetch(Payment, pending_payment.id)
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.provider_transaction_id == "tx1"
    assert payment.paid_at is not None

    saved_order = await fetch(Order, order.id)
    assert saved_order.status == OrderStatus.PAID
    assert saved_order.version == 1

    product = await fetch(Product, order.product_id)
    assert product.status == ProductStatus.SOLD

    holds = await fetch_all(select(PaymentHold).where(PaymentHold.payment_id == payment.id))
    assert len(holds) == 1
    assert holds[0].amount == Decimal("920.00")
    assert holds[0].seller_id == users["seller"].id
    assert holds[0].status == PaymentHoldStatus.HELD
    assert holds[0].release_at == payment.paid_at + timedelta(days=7)

    assert events.names() == ["order.paid"]
    payload = events.emitted[0][1]
    assert payload["order_id"] == str(order.id)
    assert payload["seller_email"] == "seller@example.com"
    assert payload["transaction_id"] == "tx1"


async def test_duplicate_success_delivery_is_a_no_op(service, pending_payment, events, fetch_all):
    first = await service.apply_success(pending_payment.id, "tx1")
    second = await service.apply_success(pending_payment.id, "tx1")

    assert first.applied is True
    assert second.applied is False
    assert await count(fetch_all, PaymentHold, PaymentHold.payment_id == pending_payment.id) == 1
    assert events.names().count("order.paid") == 1


async def test_failure_after_success_keeps_payment_completed(service, pending_payment, fetch):
    await service.apply_success(pending_payment.id, "tx1")
    result = await service.apply_failure(pending_payment.id, "late failure")

    assert result.applied is False
    payment = await fetch(Payment, pending_payment.id)
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.failure_reason is None


async def test_success_is_atomic_when_order_update_fails(service, pending_payment, order, events, mocker, fetch, fetch_all):
    payment_id = pending_payment.id
    mocker.patch.object(service, "_set_order_status", side_effect=ConcurrencyConflict())

    with pytest.raises(ConcurrencyConflict):
        await service.apply_success(payment_id, "tx1")

    payment = await fetch(Payment, payment_id)
    assert payment.status == PaymentStatus.PENDING
    assert payment.paid_at is None
    assert (await fetch(Order, order.id)).status == OrderStatus.PENDING_PAYMENT
    assert (await fetch(Product, order.product_id)).status == ProductStatus.RESERVED
    assert await count(fetch_all, PaymentHold) == 0
    assert events.emitted == []


async def test_stale_order_version_raises_conflict(service, pending_payment, order, session_factory, fetch):
    payment_id = pending_payment.id
    stale = await fetch(Order, order.id)
    async with session_factory() as session:
        current = await session.get(Order, order.id)
        current.version = 5
        await session.commit()

    with pytest.raises(ConcurrencyConflict):
        await service._set_order_status(stale, OrderStatus.PAID)
    await service.db.rollback()

    assert (await fetch(Payment, payment_id)).status == PaymentStatus.PENDING


async def test_event_failure_does_not_undo_commit(make_service, db, pending_payment, failing_events, fetch):
    service = make_service(db, events=failing_events)
    result = await service.apply_success(pending_payment.id, "tx1")

    assert result.applied is True
    assert (await fetch(Payment, pending_payment.id)).status == PaymentStatus.COMPLETED


async def test_audit_write_failure_does_not_undo_success(service, pending_payment, events, mocker, fetch, fetch_all):
    # Повтор уже занятого sequence нарушает уникальный ключ журнала
    mocker.patch.object(AuditService, "_next_sequence", return_value=1)

    result = await service.apply_success(pending_payment.id, "tx1")

    assert result.applied is True
    payment = await fetch(Payment, pending_payment.id)
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.payment_metadata["audit_history"][-1]["action"] == "payment.completed"
    assert await count(fetch_all, PaymentHold, PaymentHold.payment_id == payment.id) == 1
    assert events.names() == ["order.paid"]

    audit = await fetch_all(select(PaymentAuditLog).where(PaymentAuditLog.payment_id == payment.id))
    assert [entry.action for entry in audit] == ["payment.created"]


# ---------------------------------------------------------------- iyzico callback


async def test_iyzico_callback_completes_payment(service, pending_payment, iyzico, fetch):
    body, signature = iyzico_callback(pending_payment.provider_token)

    result = await service.handle_iyzico_callback(body, signature, {"token": pending_payment.provider_token})

    assert result.applied is True
    assert iyzico.calls[-1] == ("verify", pending_payment.provider_token)
    assert (await fetch(Payment, pending_payment.id)).status == PaymentStatus.COMPLETED


async def test_iyzico_callback_delivered_twice_creates_one_hold(service, pending_payment, iyzico, events, fetch_all):
    token = pending_payment.provider_token
    body, signature = iyzico_callback(token)

    await service.handle_iyzico_callback(body, signature, {"token": token})
    second = await service.handle_iyzico_callback(body, signature, {"token": token})

    assert second.applied is False
    assert iyzico.count("verify") == 1
    assert await count(fetch_all, PaymentHold) == 1
    assert events.names() == ["order.paid"]


async def test_iyzico_callback_with_bad_signature_changes_nothing(service, pending_payment, iyzico, events, fetch, fetch_all):
    token = pending_payment.provider_token
    body, _ = iyzico_callback(token)

    with pytest.raises(IntegrityFailure):
        await service.handle_iyzico_callback(body, "Zm9yZ2Vk", {"token": token})

    assert iyzico.count("verify") == 0
    assert (await fetch(Payment, pending_payment.id)).status == PaymentStatus.PENDING
    assert await count(fetch_all, PaymentHold) == 0
    assert events.emitted == []


async def test_iyzico_callback_timeout_leaves_payment_pending(service, pending_payment, iyzico, fetch):
    iyzico.verify_error = ProviderTransientError()
    body, signature = iyzico_callback(pending_payment.provider_token)

    with pytest.raises(ProviderTransientError):
        await service.handle_iyzico_callback(body, signature, {"token": pending_payment.provider_token})

    assert (await fetch(Payment, pending_payment.id)).status == PaymentStatus.PENDING


async def test_iyzico_callback_with_provider_system_error_leaves_payment_pending(make_service, db, pending_payment, paytr, events, fetch, fetch_all):
    def handler(request):
        return httpx.Response(200, json={"status": "failure", "errorCode": "1", "errorMessage": "Sistem hatası"})

    iyzico = IyzicoProvider(
        IyzicoCredentials(api_key="api-key", secret_key="secret", base_url="https://iyzico.test"),
        transport=httpx.MockTransport(handler),
    )
    service = make_service(db, providers=ProviderRegistry({"iyzico": iyzico, "paytr": paytr}))
    body, signature = iyzico_callback(pending_payment.provider_token)

    with pytest.raises(ProviderTransientError):
        await service.handle_iyzico_callback(body, signature, {"token": pending_payment.provider_token})

    payment = await fetch(Payment, pending_payment.id)
    assert payment.status == PaymentStatus.PENDING
    assert payment.failure_reason is None
    assert (await fetch(Order, payment.order_id)).status == OrderStatus.PENDING_PAYMENT
    assert await count(fetch_all, PaymentHold) == 0
    assert events.emitted == []


async def test_iyzico_callback_underpaid_amount_is_rejected(service, pending_payment, iyzico, fetch):
    iyzico.verify_result = VerifyResult(
        outcome=VerifyOutcome.SUCCESS,
        provider_transaction_id="tx1",
        raw_amount=Decimal("10.00"),
    )
    body, signature = iyzico_callback(pending_payment.provider_token)

    with pytest.raises(IntegrityFailure):
        await service.handle_iyzico_callback(body, signature, {"token": pending_payment.provider_token})

    assert (await fetch(Payment, pending_payment.id)).status == PaymentStatus.PENDING


async def test_iyzico_callback_failure_outcome_fails_payment(service, pending_payment, iyzico, events, fetch):
    iyzico.verify_result = VerifyResult(outcome=VerifyOutcome.FAILURE, error_message="Yetersiz bakiye")
    body, signature = iyzico_callback(pending_payment.provider_token)

    result = await service.handle_iyzico_callback(body, signature, {"token": pending_payment.provider_token})

    assert result.applied is True
    payment = await fetch(Payment, pending_payment.id)
    assert payment.status == PaymentStatus.FAILED
    assert payment.failure_reason == "Yetersiz bakiye"
    assert events.names() == ["payment.failed"]


async def test_iyzico_callback_for_unknown_token_is_ignored(service, pending_payment):
    body, signature = iyzico_callback("unknown-token")

    assert await service.handle_iyzico_callback(body, signature, {"token": "unknown-token"}) is None


# ---------------------------------------------------------------- PayTR callback


async def test_paytr_callback_success(service, order, users, fetch):
    session = await service.initiate(order.id, users["buyer"].id, "paytr")
    merchant_oid = session.payment.provider_conversation_id

    result = await service.handle_paytr_callback(paytr_callback(merchant_oid, "success"))

    assert result.applied is True
    payment = await fetch(Payment, session.payment.id)
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.provider_transaction_id == merchant_oid


async def test_paytr_callback_with_bad_hash_changes_nothing(service, order, users, fetch):
    session = await service.initiate(order.id, users["buyer"].id, "paytr")
    fields = paytr_callback(session.payment.provider_conversation_id, "success")
    fields["total_amount"] = "1"

    with pytest.raises(IntegrityFailure):
        await service.handle_paytr_callback(fields)

    assert (await fetch(Payment, session.payment.id)).status == PaymentStatus.PENDING


async def test_paytr_failed_callback_fails_payment(service, order, users, fetch):
    session = await service.initiate(order.id, users["buyer"].id, "paytr")
    fields = paytr_callback(session.payment.provider_conversation_id, "failed")
    fields["failed_reason_msg"] = "Kart limiti yetersiz"

    await service.handle_paytr_callback(fields)

    payment = await fetch(Payment, session.payment.id)
    assert payment.status == PaymentStatus.FAILED
    assert payment.failure_reason == "Kart limiti yetersiz"


# ---------------------------------------------------------------- refund


async def test_full_refund_cancels_hold_and_order(service, pending_payment, order, users, iyzico, events, fetch, fetch_all):
    await service.apply_success(pending_payment.id, "tx1")

    summary = await service.refund(order.id, actor_id=users["seller"].id)

    assert summary.full_refund is True
    assert summary.refund_amount == Decimal("1000.00")
    assert iyzico.calls[-1] == ("refund", "tx1", Decimal("1000.00"), "TRY")

    payment = await fetch(Payment, pending_payment.id)
    assert payment.status == PaymentStatus.REFUNDED
    assert payment.payment_metadata["provider_refund_id"] == "rf1"

    hold = (await fetch_all(select(PaymentHold).where(PaymentHold.payment_id == payment.id)))[0]
    assert hold.status == PaymentHoldStatus.CANCELLED

    saved_order = await fetch(Order, order.id)
    assert saved_order.status == OrderStatus.CANCELLED
    assert saved_order.version == 2
    assert events.names() == ["order.paid", "payment.refunded"]


async def test_refund_is_sent_in_payment_currency(service, order, users, iyzico, session_factory):
    async with session_factory() as session:
        (await session.get(Order, order.id)).currency = "EUR"
        await session.commit()
    checkout = await service.initiate(order.id, users["buyer"].id, "iyzico")
    await service.apply_success(checkout.payment.id, "tx1")

    await service.refund(order.id, actor_id=users["seller"].id, amount=Decimal("250.00"))

    assert iyzico.calls[-1] == ("refund", "tx1", Decimal("250.00"), "EUR")


async def test_second_refund_raises_already_refunded(service, pending_payment, order, users, iyzico):
    await service.apply_success(pending_payment.id, "tx1")
    await service.refund(order.id, actor_id=users["seller"].id)

    with pytest.raises(AlreadyRefunded):
        await service.refund(order.id, actor_id=users["seller"].id)

    assert iyzico.count("refund") == 1


async def test_partial_refund_keeps_order_status(service, pending_payment, order, users, fetch):
    await service.apply_success(pending_payment.id, "tx1")

    summary = await service.refund(order.id, amount=Decimal("300"), actor_id=users["admin"].id, is_admin=True)

    assert summary.full_refund is False
    payment = await fetch(Payment, pending_payment.id)
    assert payment.status == PaymentStatus.REFUNDED
    assert payment.payment_metadata["refund_amount"] == "300.00"
    assert payment.payment_metadata["partial_refund"] is True
    assert (await fetch(Order, order.id)).status == OrderStatus.PAID


@pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5"), Decimal("1000.01")])
async def test_refund_amount_out_of_range(service, pending_payment, order, users, iyzico, amount):
    await service.apply_success(pending_payment.id, "tx1")

    with pytest.raises(InvalidRefundAmount):
        await service.refund(order.id, amount=amount, actor_id=users["seller"].id)

    assert iyzico.count("refund") == 0


async def test_refund_already_refunded_at_provider(service, pending_payment, order, users, iyzico, fetch):
    await service.apply_success(pending_payment.id, "tx1")
    iyzico.refund_result = RefundResult(outcome=RefundOutcome.ALREADY_REFUNDED, error_message="already refunded")

    with pytest.raises(AlreadyRefunded):
        await service.refund(order.id, actor_id=users["seller"].id)

    assert (await fetch(Payment, pending_payment.id)).status == PaymentStatus.COMPLETED


async def test_refund_rejected_by_provider(service, pending_payment, order, users, iyzico, fetch):
    await service.apply_success(pending_payment.id, "tx1")
    iyzico.refund_result = RefundResult(outcome=RefundOutcome.FAILURE, error_message="İade reddedildi")

    with pytest.raises(ProviderRejected):
        await service.refund(order.id, actor_id=users["seller"].id)

    assert (await fetch(Payment, pending_payment.id)).status == PaymentStatus.COMPLETED


async def test_buyer_cannot_refund(service, pending_payment, order, users, iyzico):
    await service.apply_success(pending_payment.id, "tx1")

    with pytest.raises(NotOrderOwner):
        await service.refund(order.id, actor_id=users["buyer"].id)

    assert iyzico.count("refund") == 0


# ---------------------------------------------------------------- retry / cancel


async def test_retry_creates_new_payment_and_keeps_original(service, pending_payment, order, users, iyzico, fetch, fetch_all):
    await service.apply_failure(pending_payment.id, "card declined")

    session = await service.retry(pending_payment.id, users["buyer"].id)

    assert session.payment.id != pending_payment.id
    assert session.payment.status == PaymentStatus.PENDING
    assert session.payment.payment_metadata["retried_from"] == str(pending_payment.id)
    assert iyzico.count("initialize") == 2

    original = await fetch(Payment, pending_payment.id)
    assert original.status == PaymentStatus.FAILED
    assert original.failure_reason == "card declined"
    assert await count(fetch_all, Payment, Payment.order_id == order.id) == 2


async def test_retry_requires_failed_payment(service, pending_payment, users):
    with pytest.raises(InvalidTransition):
        await service.retry(pending_payment.id, users["buyer"].id)


async def test_retry_by_stranger_is_forbidden(service, pending_payment, users):
    await service.apply_failure(pending_payment.id, "card declined")

    with pytest.raises(NotOrderOwner):
        await service.retry(pending_payment.id, users["stranger"].id)


async def test_retry_initialization_failure_marks_new_payment_failed(service, pending_payment, order, users, iyzico, fetch_all):
    await service.apply_failure(pending_payment.id, "card declined")
    iyzico.initialize_error = ProviderRejected("Geçersiz istek")

    with pytest.raises(ProviderRejected):
        await service.retry(pending_payment.id, users["buyer"].id)

    payments = await fetch_all(select(Payment).where(Payment.order_id == order.id))
    assert len(payments) == 2
    assert {p.status for p in payments} == {PaymentStatus.FAILED.value}


async def test_cancel_pending_payment(service, pending_payment, users, events, fetch, fetch_all):
    result = await service.cancel(pending_payment.id, users["seller"].id)

    assert result.applied is True
    payment = await fetch(Payment, pending_payment.id)
    assert payment.status == PaymentStatus.FAILED
    assert payment.failure_reason == "cancelled by user"
    assert events.names() == ["payment.failed"]

    audit = await fetch_all(
        select(PaymentAuditLog)
        .where(PaymentAuditLog.payment_id == pending_payment.id)
        .order_by(PaymentAuditLog.sequence)
    )
    assert [entry.action for entry in audit] == ["payment.created", "payment.cancelled"]
    assert [entry.sequence for entry in audit] == [1, 2]

    with pytest.raises(InvalidTransition):
        await service.cancel(pending_payment.id, users["buyer"].id)


async def test_cancel_by_stranger_is_forbidden(service, pending_payment, users):
    with pytest.raises(NotOrderOwner):
        await service.cancel(pending_payment.id, users["stranger"].id)


# ---------------------------------------------------------------- reads


async def test_get_status_requires_participant(service, pending_payment, users):
    payment = await service.get_status(pending_payment.id, users["seller"].id)
    assert payment.status == PaymentStatus.PENDING

    with pytest.raises(NotOrderOwner):
        await service.get_status(pending_payment.id, users["stranger"].id)


async def test_admin_reads_any_payment_with_audit_log(service, pending_payment, users):
    with pytest.raises(NotOrderOwner):
        await service.get_payment(pending_payment.id, users["admin"].id)

    payment = await service.get_payment(pending_payment.id, users["admin"].id, is_admin=True)
    assert payment.id == pending_payment.id

    await service.apply_failure(pending_payment.id, "card declined")
    audit = await service.get_audit_log(pending_payment.id)
    assert [entry.action for entry in audit] == ["payment.created", "payment.failed"]
    assert [entry.sequence for entry in audit] == [1, 2]


async def test_list_user_payments_is_paginated(service, pending_payment, users):
    await service.apply_failure(pending_payment.id, "card declined")
    await service.retry(pending_payment.id, users["buyer"].id)

    payments, total = await service.list_user_payments(users["buyer"].id, page=1, limit=1)
    assert total == 2
    assert len(payments) == 1

    failed, failed_total = await service.list_user_payments(users["seller"].id, status="failed")
    assert failed_total == 1
    assert failed[0].id == pending_payment.id

    _, stranger_total = await service.list_user_payments(users["stranger"].id)
    assert stranger_total == 0
