"""Tests for the burn orchestrator."""

import threading

import pytest

from core.adapters.ledger_adapter import LedgerError, LedgerUnavailableError
from core.burn import BurnOutcome
from core.exceptions import (
    BurnInProgressError,
    InvalidTransitionError,
    PersistenceError,
    ReconciliationRequiredError,
)
from core.models import BurnAttemptStatus, RedemptionOrder
from core.services import build_services
from core.signals import burn_stage_changed
from ledger_stub.models import LedgerStubBalance, LedgerStubTx

from .conftest import ACCOUNT_ID, ITEM_ID, TOKEN_ID


def collect_stages(services):
    stages = []
    services.orchestrator.add_listener(lambda progress: stages.append(progress.stage))
    return stages


class TestHappyPath:

    def test_scenario_full_run_completes_the_order(self, memory_services, make_order, ledger):
        order = make_order(memory_services, amount=10)
        stages = collect_stages(memory_services)

        result = memory_services.orchestrator.run(order.order_id)

        assert result.outcome == BurnOutcome.COMPLETED
        assert result.recorded is True
        assert stages == ['preparing', 'signing', 'broadcasting', 'confirming', 'completing', 'completed']
        stored = memory_services.orders.get_order(order.order_id)
        assert stored.status == 'completed'
        assert stored.transaction_id == result.transaction_id
        assert stored.fulfillment_updates[-1]['performed_by'] == 'system'
        assert result.transaction_id in stored.fulfillment_updates[-1]['message']
        assert ledger.balances[(ACCOUNT_ID, TOKEN_ID)] == 90

    def test_transaction_id_is_recorded_before_broadcast(self, memory_services, make_order):
        order = make_order(memory_services)
        seen = []
        attempts = memory_services.orchestrator.attempts

        def on_progress(progress):
            if progress.stage == 'broadcasting':
                seen.append(attempts.latest_for_order(order.order_id).transaction_id)

        memory_services.orchestrator.add_listener(on_progress)
        result = memory_services.orchestrator.run(order.order_id)

        assert seen == [result.transaction_id]

    def test_completed_order_is_not_burned_twice(self, memory_services, make_order, ledger):
        order = make_order(memory_services)
        first = memory_services.orchestrator.run(order.order_id)

        again = memory_services.orchestrator.run(order.order_id)

        assert again.outcome == BurnOutcome.COMPLETED
        assert again.transaction_id == first.transaction_id
        assert ledger.calls.count('broadcast') == 1

    def test_signal_receivers_see_every_stage(self, memory_services, make_order):
        order = make_order(memory_services)
        received = []

        def receiver(sender, **kwargs):
            received.append((kwargs['order_id'], kwargs['stage']))

        burn_stage_changed.connect(receiver)
        try:
            memory_services.orchestrator.run(order.order_id)
        finally:
            burn_stage_changed.disconnect(receiver)

        assert [stage for _, stage in received][-1] == 'completed'
        assert {order_id for order_id, _ in received} == {order.order_id}

    def test_failing_listener_does_not_break_the_run(self, memory_services, make_order):
        order = make_order(memory_services)

        def broken(progress):
            raise RuntimeError('listener bug')

        memory_services.orchestrator.add_listener(broken)
        result = memory_services.orchestrator.run(order.order_id)

        assert result.outcome == BurnOutcome.COMPLETED

    def test_stock_is_taken_for_the_combination(self, memory_services, make_order):
        combinator = memory_services.variations
        combinator.add_variation(ITEM_ID, 'Size', ['S'])
        row = combinator.get_stock_for_combination(ITEM_ID, 'Size: S')
        combinator.set_stock(row.id, 2)
        order = make_order(memory_services, combination='Size: S')

        memory_services.orchestrator.run(order.order_id)

        assert combinator.get_stock(row.id).stock == 1


class TestFailuresBeforeBroadcast:

    def test_scenario_signing_failure_leaves_order_untouched(self, memory_services, make_order, ledger):
        order = make_order(memory_services)
        before = memory_services.orders.get_order(order.order_id).as_dict()
        ledger.failures['sign'] = LedgerError('User rejected the request')
        stages = collect_stages(memory_services)

        result = memory_services.orchestrator.run(order.order_id)

        assert result.outcome == BurnOutcome.FAILED
        assert result.retryable is True
        assert 'User rejected' in result.error
        assert stages[-1] == 'failed'
        assert memory_services.orders.get_order(order.order_id).as_dict() == before
        assert 'broadcast' not in ledger.calls

    def test_failed_run_may_be_retried(self, memory_services, make_order, ledger):
        order = make_order(memory_services)
        ledger.failures['sign'] = LedgerError('User rejected the request')
        memory_services.orchestrator.run(order.order_id)
        del ledger.failures['sign']

        result = memory_services.orchestrator.run(order.order_id)

        assert result.outcome == BurnOutcome.COMPLETED
        assert memory_services.orders.get_order(order.order_id).status == 'completed'

    def test_insufficient_balance_fails_without_broadcasting(self, memory_services, make_order, ledger):
        order = make_order(memory_services, amount=500)

        result = memory_services.orchestrator.run(order.order_id)

        assert result.outcome == BurnOutcome.FAILED
        assert 'Insufficient token balance' in result.error
        assert 'prepare_burn' not in ledger.calls

    def test_cancellation_before_signing(self, memory_services, make_order, ledger):
        order = make_order(memory_services)
        cancel = threading.Event()
        cancel.set()

        result = memory_services.orchestrator.run(order.order_id, cancel_event=cancel)

        assert result.outcome == BurnOutcome.FAILED
        assert 'sign' not in ledger.calls

    def test_signing_failure_releases_reserved_stock(self, memory_services, make_order, ledger):
        combinator = memory_services.variations
        combinator.add_variation(ITEM_ID, 'Size', ['S'])
        row = combinator.get_stock_for_combination(ITEM_ID, 'Size: S')
        combinator.set_stock(row.id, 1)
        order = make_order(memory_services, combination='Size: S')
        ledger.failures['sign'] = LedgerError('wallet closed')

        memory_services.orchestrator.run(order.order_id)

        assert combinator.get_stock(row.id).stock == 1

    def test_unrecorded_transaction_id_aborts_before_broadcast(self, memory_services, make_order, ledger, monkeypatch):
        order = make_order(memory_services)
        attempts = memory_services.orchestrator.attempts
        real_save = attempts.save

        def save(attempt):
            if attempt.stage == 'broadcasting':
                raise PersistenceError('disk full')
            return real_save(attempt)

        monkeypatch.setattr(attempts, 'save', save)
        result = memory_services.orchestrator.run(order.order_id)

        assert result.outcome == BurnOutcome.FAILED
        assert 'broadcast' not in ledger.calls

    def test_non_pending_order_is_refused(self, memory_services, make_order, ledger):
        order = make_order(memory_services)
        memory_services.orders.update_order(order.order_id, {'status': 'cancelled'})

        with pytest.raises(InvalidTransitionError):
            memory_services.orchestrator.run(order.order_id)
        assert ledger.calls == []


class TestAmbiguousOutcomes:

    def test_broadcast_transport_error_is_unknown(self, memory_services, make_order, ledger):
        order = make_order(memory_services)
        ledger.failures['broadcast'] = LedgerUnavailableError('connection reset')
        stages = collect_stages(memory_services)

        result = memory_services.orchestrator.run(order.order_id)

        assert result.outcome == BurnOutcome.UNKNOWN
        assert result.retryable is False
        assert stages[-1] == 'unknown'
        assert memory_services.orders.get_order(order.order_id).status == 'pending'

    def test_unknown_outcome_blocks_retry(self, memory_services, make_order, ledger):
        order = make_order(memory_services)
        ledger.failures['broadcast'] = LedgerUnavailableError('connection reset')
        memory_services.orchestrator.run(order.order_id)
        del ledger.failures['broadcast']

        with pytest.raises(ReconciliationRequiredError):
            memory_services.orchestrator.run(order.order_id)
        assert ledger.calls.count('broadcast') == 1

    def test_lost_broadcast_response_is_settled_by_reconciliation(self, memory_services, make_order, ledger):
        order = make_order(memory_services)
        ledger.failures['broadcast'] = LedgerUnavailableError('response lost')
        ledger.execute_before_failing = True

        result = memory_services.orchestrator.run(order.order_id)
        assert result.outcome == BurnOutcome.UNKNOWN

        attempt = memory_services.reconciler.reconcile_order(order.order_id)

        assert attempt.status == BurnAttemptStatus.COMPLETED
        stored = memory_services.orders.get_order(order.order_id)
        assert stored.status == 'completed'
        assert stored.transaction_id == result.transaction_id
        assert len(ledger.burns()) == 1

    def test_confirm_timeout_is_unknown(self, memory_services, make_order, ledger):
        order = make_order(memory_services)
        ledger.failures['confirm'] = LedgerUnavailableError('receipt query timed out')

        result = memory_services.orchestrator.run(order.order_id)

        assert result.outcome == BurnOutcome.UNKNOWN
        assert result.transaction_id in ledger.transactions

    def test_ledger_rejection_at_confirm_is_failed(self, memory_services, make_order, ledger):
        order = make_order(memory_services)

        def drain(progress):
            # Balance spent elsewhere between the pre-check and the broadcast
            if progress.stage == 'broadcasting':
                ledger.balances[(ACCOUNT_ID, TOKEN_ID)] = 0

        memory_services.orchestrator.add_listener(drain)
        result = memory_services.orchestrator.run(order.order_id)

        assert result.outcome == BurnOutcome.FAILED
        assert result.retryable is True
        assert memory_services.orders.get_order(order.order_id).status == 'pending'

    def test_stage_timeout_during_broadcast_is_unknown(self, ledger, clock, make_order):
        services = build_services(backend='memory', ledger=ledger, clock=clock, stage_timeout=0.05)
        order = make_order(services)
        ledger.delays['broadcast'] = 0.3

        result = services.orchestrator.run(order.order_id)

        assert result.outcome == BurnOutcome.UNKNOWN
        assert 'did not answer' in result.error

        # The late broadcast still lands; reconciliation picks it up
        assert ledger.broadcast_done.wait(5)
        attempt = services.reconciler.reconcile_order(order.order_id)
        assert attempt.status == BurnAttemptStatus.COMPLETED


class TestPersistAfterBurn:

    def test_order_update_failure_is_reported_as_completed(self, memory_services, make_order, ledger, monkeypatch):
        order = make_order(memory_services)
        repo = memory_services.orders.repository
        real_save = repo.save
        failures = iter([PersistenceError('database is locked')])

        def flaky_save(o):
            for error in failures:
                raise error
            return real_save(o)

        monkeypatch.setattr(repo, 'save', flaky_save)
        result = memory_services.orchestrator.run(order.order_id)

        assert result.outcome == BurnOutcome.COMPLETED
        assert result.recorded is False
        attempt = memory_services.orchestrator.attempts.latest_for_order(order.order_id)
        assert attempt.status == BurnAttemptStatus.PERSIST_PENDING
        assert memory_services.orders.get_order(order.order_id).status == 'pending'

        # A retry only finishes the bookkeeping
        again = memory_services.orchestrator.run(order.order_id)

        assert again.outcome == BurnOutcome.COMPLETED
        assert again.recorded is True
        assert again.transaction_id == result.transaction_id
        assert ledger.calls.count('broadcast') == 1
        assert memory_services.orders.get_order(order.order_id).transaction_id == result.transaction_id


class TestSingleFlight:

    def test_second_run_while_first_is_in_flight(self, memory_services, make_order):
        order = make_order(memory_services)
        errors = []

        def reenter(progress):
            if progress.stage == 'signing':
                try:
                    memory_services.orchestrator.run(order.order_id)
                except BurnInProgressError as e:
                    errors.append(e)

        memory_services.orchestrator.add_listener(reenter)
        result = memory_services.orchestrator.run(order.order_id)

        assert result.outcome == BurnOutcome.COMPLETED
        assert len(errors) == 1


@pytest.mark.django_db
class TestSingleFlightAcrossServices:
    """Each request wires its own services; only the database is shared."""

    def test_running_attempt_blocks_another_request(self, ledger, make_order):
        first = build_services(backend='django', ledger=ledger)
        second = build_services(backend='django', ledger=ledger)
        order = make_order(first)
        errors = []

        def from_another_request(progress):
            if progress.stage == 'broadcasting':
                try:
                    second.orchestrator.run(order.order_id)
                except BurnInProgressError as e:
                    errors.append(e)

        first.orchestrator.add_listener(from_another_request)
        result = first.orchestrator.run(order.order_id)

        assert result.outcome == BurnOutcome.COMPLETED
        assert len(errors) == 1
        assert len(ledger.burns()) == 1
        row = RedemptionOrder.objects.get(order_id=order.order_id)
        assert row.current_status == 'completed'
        assert row.transaction_id == result.transaction_id

    def test_claim_race_burns_once(self, ledger, make_order, monkeypatch):
        first = build_services(backend='django', ledger=ledger)
        second = build_services(backend='django', ledger=ledger)
        order = make_order(first)
        attempts = first.orchestrator.attempts
        real_latest = attempts.latest_for_order
        raced = []

        def latest_then_race(order_id):
            previous = real_latest(order_id)
            if not raced:
                # Another request claims the order between our read and our insert
                raced.append(second.orchestrator.run(order_id))
            return previous

        monkeypatch.setattr(attempts, 'latest_for_order', latest_then_race)

        with pytest.raises(BurnInProgressError):
            first.orchestrator.run(order.order_id)

        assert raced[0].outcome == BurnOutcome.COMPLETED
        assert len(ledger.burns()) == 1
        assert ledger.calls.count('broadcast') == 1

    def test_later_request_sees_the_completed_burn(self, ledger, make_order):
        first = build_services(backend='django', ledger=ledger)
        order = make_order(first)
        result = first.orchestrator.run(order.order_id)

        again = build_services(backend='django', ledger=ledger).orchestrator.run(order.order_id)

        assert again.outcome == BurnOutcome.COMPLETED
        assert again.transaction_id == result.transaction_id
        assert ledger.calls.count('broadcast') == 1


class TestStatusHeldDuringBurn:

    def test_admin_status_change_mid_burn_is_refused(self, memory_services, make_order, ledger):
        order = make_order(memory_services)
        errors = []

        def staff_confirms(progress):
            if progress.stage == 'broadcasting':
                try:
                    memory_services.orders.update_order(order.order_id, {'fulfillment_update': {'status': 'confirmed'}})
                except BurnInProgressError as e:
                    errors.append(e)

        memory_services.orchestrator.add_listener(staff_confirms)
        result = memory_services.orchestrator.run(order.order_id)

        assert len(errors) == 1
        assert result.outcome == BurnOutcome.COMPLETED
        assert result.recorded is True
        stored = memory_services.orders.get_order(order.order_id)
        assert stored.status == 'completed'
        assert stored.transaction_id == result.transaction_id
        assert memory_services.reconciler.pending() == []

    def test_unknown_burn_holds_the_status_until_reconciled(self, memory_services, make_order, ledger, clock):
        order = make_order(memory_services)
        ledger.failures['broadcast'] = LedgerUnavailableError('response lost')
        memory_services.orchestrator.run(order.order_id)

        with pytest.raises(BurnInProgressError):
            memory_services.orders.update_order(order.order_id, {'status': 'cancelled'})
        with pytest.raises(BurnInProgressError):
            memory_services.orders.update_order(order.order_id, {'transaction_id': '0.0.1001@1.000000009'})
        # Non-status fields stay editable
        assert memory_services.orders.update_order(order.order_id, {'notes': 'Customer called'}).notes == 'Customer called'

        clock.advance(600)
        memory_services.reconciler.reconcile_order(order.order_id)

        assert memory_services.orders.update_order(order.order_id, {'status': 'cancelled'}).status == 'cancelled'

    def test_persist_pending_burn_holds_the_status(self, db_services, make_order, monkeypatch):
        order = make_order(db_services)
        repo = db_services.orders.repository
        real_save = repo.save
        failures = iter([PersistenceError('database is locked')])

        def flaky_save(o):
            for error in failures:
                raise error
            return real_save(o)

        monkeypatch.setattr(repo, 'save', flaky_save)
        result = db_services.orchestrator.run(order.order_id)
        assert result.recorded is False

        with pytest.raises(BurnInProgressError):
            db_services.orders.update_order(order.order_id, {'status': 'confirmed'})

        assert db_services.reconciler.run_pending() == {'checked': 1, 'settled': 1, 'failed': 0, 'unresolved': 0}
        row = RedemptionOrder.objects.get(order_id=order.order_id)
        assert row.current_status == 'completed'
        assert row.transaction_id == result.transaction_id


@pytest.mark.django_db
class TestWithStubLedger:

    def test_full_run_against_the_stub(self, stub_ledger, make_order):
        services = build_services(backend='django', ledger=stub_ledger)
        order = make_order(services, amount=25)

        result = services.orchestrator.run(order.order_id)

        assert result.outcome == BurnOutcome.COMPLETED
        row = RedemptionOrder.objects.get(order_id=order.order_id)
        assert row.current_status == 'completed'
        assert row.transaction_id == result.transaction_id
        assert LedgerStubBalance.objects.get(account_id=ACCOUNT_ID, token_id=TOKEN_ID).balance_units == 75
        assert LedgerStubTx.objects.get(transaction_id=result.transaction_id).kind == 'burn'
        assert result.transaction_id.startswith(f'{ACCOUNT_ID}@')
