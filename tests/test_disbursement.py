"""Tests for paying out approved withdrawal requests and gateway confirmations."""

import uuid
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from campaign_escrow.errors import IllegalTransition, PaymentGatewayError, TransferNotFound
from campaign_escrow.models.escrow import EscrowAction, WithdrawalStatus
from campaign_escrow.models.payment import PaymentTransfer, TransferKind, TransferStatus
from campaign_escrow.models.vote import VoteValue
from campaign_escrow.schemas.payment import GatewayTransferEvent
from campaign_escrow.services import escrow as escrow_service
from campaign_escrow.services import ledger
from campaign_escrow.services.disbursement import (
    process_release,
    recover_pending_releases,
    release_escrow,
    release_idempotency_key,
)
from campaign_escrow.services.review import approve_request
from campaign_escrow.services.transfers import handle_transfer_event
from campaign_escrow.services.voting import cast_vote
from tests.conftest import donate, finish_voting, make_campaign, mock_gateway, open_voting


async def _approved_request(db: AsyncSession, amount: str = "400.00"):  # type: ignore[no-untyped-def]
    campaign = await make_campaign(db)
    donor = uuid.uuid4()
    await donate(db, campaign.campaign_id, "1000.00", donor)
    request = await open_voting(db, campaign, amount)
    await cast_vote(db, request.escrow_id, donor, VoteValue.APPROVE)
    await finish_voting(db, request)
    return campaign, await approve_request(db, request.escrow_id, uuid.uuid4())


async def _transfers(db: AsyncSession) -> list[PaymentTransfer]:
    result = await db.execute(select(PaymentTransfer).execution_options(populate_existing=True))
    return list(result.scalars().all())


@pytest.mark.asyncio
async def test_release_pays_creator_once(db_session: AsyncSession) -> None:
    campaign, request = await _approved_request(db_session)

    with mock_gateway() as gateway:
        released = await release_escrow(db_session, request.escrow_id)
        again = await release_escrow(db_session, request.escrow_id)

    assert released.request_status == WithdrawalStatus.RELEASED
    assert released.released_at is not None
    assert again.request_status == WithdrawalStatus.RELEASED
    gateway.assert_awaited_once()
    key, recipient, amount, _ = gateway.await_args.args
    assert key == release_idempotency_key(request.escrow_id)
    assert recipient == campaign.creator_id
    assert amount == Decimal("400.00")

    (transfer,) = await _transfers(db_session)
    assert transfer.kind == TransferKind.DISBURSEMENT
    assert transfer.status == TransferStatus.SUCCEEDED
    assert transfer.gateway_transaction_id == "txn-1"

    campaign = await ledger.get_campaign(db_session, campaign.campaign_id, for_update=True)
    assert campaign.current_amount == Decimal("600.00")
    assert await ledger.get_total_released(db_session, campaign.campaign_id) == Decimal("400.00")

    trail = await escrow_service.get_audit_trail(db_session, request.escrow_id)
    assert [e.action for e in trail].count(EscrowAction.RELEASED) == 1


@pytest.mark.asyncio
async def test_release_requires_approval(db_session: AsyncSession) -> None:
    campaign = await make_campaign(db_session)
    await donate(db_session, campaign.campaign_id, "1000.00")
    request = await open_voting(db_session, campaign, "100.00")
    with mock_gateway() as gateway, pytest.raises(IllegalTransition):
        await release_escrow(db_session, request.escrow_id)
    gateway.assert_not_awaited()


@pytest.mark.asyncio
async def test_declined_payout_can_be_retried(db_session: AsyncSession) -> None:
    campaign, request = await _approved_request(db_session)

    with mock_gateway("failed", "insufficient platform balance"), pytest.raises(PaymentGatewayError):
        await release_escrow(db_session, request.escrow_id)

    await db_session.refresh(request)
    assert request.request_status == WithdrawalStatus.ADMIN_APPROVED
    (transfer,) = await _transfers(db_session)
    assert transfer.status == TransferStatus.FAILED
    assert transfer.last_error == "insufficient platform balance"

    with mock_gateway() as gateway:
        released = await release_escrow(db_session, request.escrow_id)
    assert released.request_status == WithdrawalStatus.RELEASED
    assert gateway.await_args.args[0] == release_idempotency_key(request.escrow_id)

    (transfer,) = await _transfers(db_session)
    assert transfer.status == TransferStatus.SUCCEEDED
    assert transfer.attempts == 2


@pytest.mark.asyncio
async def test_unreachable_gateway_records_failure(db_session: AsyncSession) -> None:
    _, request = await _approved_request(db_session)

    async def _down(*args, **kwargs):  # type: ignore[no-untyped-def]
        raise PaymentGatewayError("Payment gateway unreachable", attempts=3)

    with mock_gateway() as gateway:
        gateway.side_effect = _down
        with pytest.raises(PaymentGatewayError):
            await release_escrow(db_session, request.escrow_id)

    (transfer,) = await _transfers(db_session)
    assert transfer.status == TransferStatus.FAILED
    assert transfer.attempts == 3


@pytest.mark.asyncio
async def test_pending_payout_settles_on_callback(db_session: AsyncSession) -> None:
    campaign, request = await _approved_request(db_session)

    with mock_gateway("pending") as gateway:
        pending = await release_escrow(db_session, request.escrow_id)
        # A second release waits for the callback instead of paying again
        await release_escrow(db_session, request.escrow_id)
    assert pending.request_status == WithdrawalStatus.ADMIN_APPROVED
    gateway.assert_awaited_once()

    event = GatewayTransferEvent(
        idempotency_key=release_idempotency_key(request.escrow_id),
        transaction_id="txn-1",
        status="succeeded",
    )
    transfer = await handle_transfer_event(db_session, event)
    assert transfer.status == TransferStatus.SUCCEEDED

    await db_session.refresh(request)
    assert request.request_status == WithdrawalStatus.RELEASED

    # Replayed callback changes nothing
    await handle_transfer_event(db_session, event)
    campaign = await ledger.get_campaign(db_session, campaign.campaign_id, for_update=True)
    assert campaign.current_amount == Decimal("600.00")
    trail = await escrow_service.get_audit_trail(db_session, request.escrow_id)
    assert [e.action for e in trail].count(EscrowAction.RELEASED) == 1


@pytest.mark.asyncio
async def test_failure_callback_keeps_request_approved(db_session: AsyncSession) -> None:
    _, request = await _approved_request(db_session)
    with mock_gateway("pending"):
        await release_escrow(db_session, request.escrow_id)

    transfer = await handle_transfer_event(db_session, GatewayTransferEvent(
        idempotency_key=release_idempotency_key(request.escrow_id),
        transaction_id="txn-1",
        status="failed",
        failure_reason="account closed",
    ))
    assert transfer.status == TransferStatus.FAILED
    assert transfer.last_error == "account closed"
    await db_session.refresh(request)
    assert request.request_status == WithdrawalStatus.ADMIN_APPROVED


@pytest.mark.asyncio
async def test_callback_for_unknown_transfer(db_session: AsyncSession) -> None:
    with pytest.raises(TransferNotFound):
        await handle_transfer_event(db_session, GatewayTransferEvent(
            idempotency_key="escrow-release:missing", transaction_id="txn-x", status="succeeded",
        ))


@pytest.mark.asyncio
async def test_background_release_and_recovery(
    db_session: AsyncSession, session_factory: async_sessionmaker[AsyncSession],
) -> None:
    _, request = await _approved_request(db_session)

    with mock_gateway("failed", "bank offline"):
        # Failures are logged, not raised, in the background task
        await process_release(request.escrow_id, session_factory)

    with patch("campaign_escrow.services.disbursement.spawn_release") as spawn:
        assert await recover_pending_releases(session_factory) == 1
    spawn.assert_called_once_with(request.escrow_id)

    with mock_gateway():
        await process_release(request.escrow_id, session_factory)
    await db_session.refresh(request)
    assert request.request_status == WithdrawalStatus.RELEASED
