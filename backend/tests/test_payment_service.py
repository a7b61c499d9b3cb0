# backend/tests/test_payment_service.py

"""
Unit tests for payments and the PayRec ledger

Tests cover:
- Payment create defaults to DRAFT; invalid mode / amount rejected
- Only DRAFT payments can be updated, reset or submitted (409 otherwise)
- Soft delete hides the payment; totals over the filtered set
- PayRec: accounts-only access, 3P rules, soft delete / restore, status changes
"""

import pytest

from errors import Conflict, Forbidden, NotFound, ValidationFailed
from factories import ADMIN, EMPLOYEE
from payment_service import PaymentService, PayRecService, normalize_payrec, require_accounts

ACCOUNTS = {**EMPLOYEE, "id": "u-acc", "userId": "acc1", "userType": "AC"}


def payment_body(**overrides):
    body = {"transType": "RECEIPT", "amount": 25000, "mode": "NEFT", "custCd": "C001",
            "custName": "Acme Infra", "txDate": "2026-10-19T10:00:00+00:00"}
    body.update(overrides)
    return body


def payrec_body(**overrides):
    body = {"date": "2026-10-19", "trType": "RECEIPT", "partyCode": "C001", "partyName": "Acme Infra",
            "mode": "BANK", "amount": 5000}
    body.update(overrides)
    return body


class TestPayments:
    @pytest.mark.asyncio
    async def test_create_is_draft(self, db):
        service = PaymentService(db)
        created = await service.create_payment(payment_body(), ADMIN)
        payment = await service.get_payment(created["id"])
        assert payment["status"] == "DRAFT"
        assert payment["amount"] == 25000.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides", [{"mode": "BITCOIN"}, {"amount": -1}, {"transType": "GIFT"}])
    async def test_invalid_payloads(self, db, overrides):
        with pytest.raises(ValidationFailed):
            await PaymentService(db).create_payment(payment_body(**overrides), ADMIN)

    @pytest.mark.asyncio
    async def test_submitted_payment_is_locked(self, db):
        service = PaymentService(db)
        created = await service.create_payment(payment_body(), ADMIN)
        await service.update_payment(created["id"], {"amount": 30000}, ADMIN)
        await service.submit_payment(created["id"], ADMIN)

        with pytest.raises(Conflict):
            await service.update_payment(created["id"], {"amount": 1}, ADMIN)
        with pytest.raises(Conflict):
            await service.reset_payment(created["id"], ADMIN)
        with pytest.raises(Conflict):
            await service.submit_payment(created["id"], ADMIN)
        payment = await service.get_payment(created["id"])
        assert payment["status"] == "SUBMITTED"
        assert payment["amount"] == 30000.0

    @pytest.mark.asyncio
    async def test_reset_keeps_type_and_date(self, db):
        service = PaymentService(db)
        created = await service.create_payment(payment_body(), ADMIN)
        await service.reset_payment(created["id"], ADMIN)
        payment = await service.get_payment(created["id"])
        assert payment["amount"] == 0
        assert payment["custCd"] == ""
        assert payment["transType"] == "RECEIPT"
        assert payment["txDate"] == "2026-10-19T10:00:00+00:00"

    @pytest.mark.asyncio
    async def test_soft_delete_and_totals(self, db):
        service = PaymentService(db)
        first = await service.create_payment(payment_body(amount=1000), ADMIN)
        await service.create_payment(payment_body(amount=2500.5), ADMIN)
        await service.delete_payment(first["id"], ADMIN)

        with pytest.raises(NotFound):
            await service.get_payment(first["id"])
        listed = await service.list_payments()
        assert listed["total"] == 1
        assert listed["totals"]["amount"] == 2500.5
        assert (await service.list_payments(include_deleted=True))["total"] == 2

    @pytest.mark.asyncio
    async def test_search(self, db):
        service = PaymentService(db)
        await service.create_payment(payment_body(refNo="UTR-555"), ADMIN)
        await service.create_payment(payment_body(custName="Other Co", custCd="C002"), ADMIN)
        assert (await service.list_payments(q="utr-555"))["total"] == 1


class TestPayRecRules:
    def test_accounts_required(self):
        require_accounts(ADMIN)
        require_accounts(ACCOUNTS)
        with pytest.raises(Forbidden):
            require_accounts(EMPLOYEE)

    def test_non_third_party_mirrors_party(self):
        doc = normalize_payrec(payrec_body())
        assert doc["forPartyCode"] == "C001"
        assert doc["forPartyName"] == "Acme Infra"
        assert doc["status"] == "ACTIVE"

    def test_third_party_needs_for_party(self):
        with pytest.raises(ValidationFailed):
            normalize_payrec(payrec_body(trType="3P_RECEIPT"))
        doc = normalize_payrec(payrec_body(trType="3P_RECEIPT", forPartyCode="C009"))
        assert doc["forPartyCode"] == "C009"


class TestPayRecLifecycle:
    @pytest.mark.asyncio
    async def test_soft_delete_blocks_updates_until_restored(self, db):
        service = PayRecService(db)
        rec = await service.create(payrec_body(), ACCOUNTS)

        assert (await service.soft_delete(rec["id"], ACCOUNTS))["deleted"] is True
        assert (await service.soft_delete(rec["id"], ACCOUNTS))["deleted"] is True
        with pytest.raises(Conflict):
            await service.update(rec["id"], {"amount": 10}, ACCOUNTS)
        assert (await service.list())["total"] == 0

        await service.restore(rec["id"], ACCOUNTS)
        updated = await service.update(rec["id"], {"amount": 10}, ACCOUNTS)
        assert updated["amount"] == 10.0
        with pytest.raises(Conflict):
            await service.restore(rec["id"], ACCOUNTS)

    @pytest.mark.asyncio
    async def test_post_status(self, db):
        service = PayRecService(db)
        rec = await service.create(payrec_body(), ACCOUNTS)
        posted = await service.set_status(rec["id"], "POSTED", ACCOUNTS)
        assert posted["status"] == "POSTED"
        with pytest.raises(ValidationFailed):
            await service.set_status(rec["id"], "DELETED", ACCOUNTS)

    @pytest.mark.asyncio
    async def test_list_filters(self, db):
        service = PayRecService(db)
        await service.create(payrec_body(), ACCOUNTS)
        await service.create(payrec_body(partyCode="C002", partyName="Beta", date="2026-10-01"), ACCOUNTS)
        assert (await service.list(party_code="C002"))["total"] == 1
        assert (await service.list(date_from="2026-10-10"))["total"] == 1
        assert (await service.list(q="beta"))["items"][0]["partyCode"] == "C002"
