"""Tests for the storage backends' locks and unique keys."""

import threading

import pytest
from django.utils import timezone

from core.exceptions import ConcurrentUpdateError, DuplicateKeyError
from core.models import BurnAttempt, BurnAttemptStatus, ItemVariation
from core.repositories import (
    DjangoBurnAttemptRepository,
    DjangoVariantRepository,
    InMemoryBurnAttemptRepository,
    InMemoryOrderRepository,
    InMemoryVariantRepository,
    _KeyedLocks,
)
from core.services import build_services

from .conftest import ACCOUNT_ID, ITEM_ID, TOKEN_ID


def attempt_for(order_id, status=BurnAttemptStatus.IN_PROGRESS):
    now = timezone.now()
    return BurnAttempt(
        order_id=order_id,
        account_id=ACCOUNT_ID,
        token_id=TOKEN_ID,
        amount=10,
        status=status,
        created_at=now,
        updated_at=now,
    )


def variation_at(position, name, physical_item_id=ITEM_ID):
    return ItemVariation(physical_item_id=physical_item_id, name=name, options=['A'], position=position)


class TestKeyedLocks:

    def test_locks_are_dropped_once_released(self):
        locks = _KeyedLocks()

        for order_id in ('ORD-1', 'ORD-2', 'ORD-3'):
            with locks.hold(order_id):
                assert len(locks) == 1

        assert len(locks) == 0

    def test_reentrant_hold_keeps_the_lock_until_the_outer_release(self):
        locks = _KeyedLocks()

        with locks.hold('ORD-1'):
            with locks.hold('ORD-1'):
                pass
            assert len(locks) == 1

        assert len(locks) == 0

    def test_waiting_thread_runs_after_the_holder(self):
        locks = _KeyedLocks()
        entered = threading.Event()
        order = []

        def contender():
            entered.set()
            with locks.hold('ORD-1'):
                order.append('contender')

        with locks.hold('ORD-1'):
            worker = threading.Thread(target=contender)
            worker.start()
            assert entered.wait(5)
            order.append('holder')
        worker.join(5)

        assert order == ['holder', 'contender']
        assert len(locks) == 0

    def test_order_repository_does_not_grow_per_order(self):
        repo = InMemoryOrderRepository()

        for n in range(50):
            with repo.lock(f'ORD-{n}'):
                pass

        assert len(repo._locks) == 0


class TestLiveBurnAttemptKey:

    def test_in_memory_refuses_a_second_live_attempt(self):
        repo = InMemoryBurnAttemptRepository()
        repo.add(attempt_for('ORD-1'))

        with pytest.raises(DuplicateKeyError):
            repo.add(attempt_for('ORD-1'))

    def test_in_memory_allows_a_new_attempt_after_a_failure(self):
        repo = InMemoryBurnAttemptRepository()
        first = repo.add(attempt_for('ORD-1'))
        first.status = BurnAttemptStatus.FAILED
        repo.save(first)

        assert repo.add(attempt_for('ORD-1')).id != first.id

    @pytest.mark.django_db
    def test_database_refuses_a_second_live_attempt(self):
        repo = DjangoBurnAttemptRepository()
        repo.add(attempt_for('ORD-1', status=BurnAttemptStatus.COMPLETED))

        with pytest.raises(DuplicateKeyError):
            repo.add(attempt_for('ORD-1'))
        assert BurnAttempt.objects.filter(order_id='ORD-1').count() == 1

    @pytest.mark.django_db
    def test_database_allows_a_new_attempt_after_a_failure(self):
        repo = DjangoBurnAttemptRepository()
        repo.add(attempt_for('ORD-1', status=BurnAttemptStatus.FAILED))
        repo.add(attempt_for('ORD-1', status=BurnAttemptStatus.FAILED))

        repo.add(attempt_for('ORD-1'))

        assert BurnAttempt.objects.filter(order_id='ORD-1').count() == 3


class TestVariationKeys:

    def test_in_memory_position_is_unique_per_item(self):
        repo = InMemoryVariantRepository()
        repo.add_variation(variation_at(0, 'Size'))

        with pytest.raises(DuplicateKeyError):
            repo.add_variation(variation_at(0, 'Color'))
        repo.add_variation(variation_at(0, 'Size', physical_item_id=ITEM_ID + 1))

    @pytest.mark.django_db
    def test_database_position_and_name_are_unique_per_item(self):
        repo = DjangoVariantRepository()
        repo.add_variation(variation_at(0, 'Size'))

        with pytest.raises(DuplicateKeyError):
            repo.add_variation(variation_at(0, 'Color'))
        with pytest.raises(DuplicateKeyError):
            repo.add_variation(variation_at(1, 'Size'))
        repo.add_variation(variation_at(0, 'Size', physical_item_id=ITEM_ID + 1))

    @pytest.mark.django_db
    def test_racing_first_variations_do_not_share_a_position(self, db_services, ledger, monkeypatch):
        racer = build_services(backend='django', ledger=ledger)
        repo = db_services.variations.repository
        real_list = repo.list_variations
        raced = []

        def list_then_race(physical_item_id):
            rows = real_list(physical_item_id)
            if not raced:
                # Another request adds the item's first variation after our read
                raced.append(racer.variations.add_variation(physical_item_id, 'Color', ['Red']))
            return rows

        monkeypatch.setattr(repo, 'list_variations', list_then_race)

        with pytest.raises(ConcurrentUpdateError):
            db_services.variations.add_variation(ITEM_ID, 'Size', ['S', 'M'])
        assert raced[0].position == 0
