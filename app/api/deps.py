"""
Request-scoped dependencies. The store and profile registry live on
app.state (built in the lifespan); services are thin wrappers around them.
"""
from __future__ import annotations

from fastapi import Depends, Request

from app.core.config import Settings, get_settings
from app.ledger.store import LedgerStore
from app.scoring.profiles import ProfileRegistry
from app.services.allocator import CreditAllocator
from app.services.lifecycle import InterviewLifecycle


def get_store(request: Request) -> LedgerStore:
    return request.app.state.store


def get_profiles(request: Request) -> ProfileRegistry:
    return request.app.state.profiles


def get_allocator(
    store: LedgerStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
) -> CreditAllocator:
    return CreditAllocator(
        store,
        max_attempts=settings.reservation_max_attempts,
        student_reservations_consume_quota=settings.student_reservations_consume_quota,
    )


def get_lifecycle(
    store: LedgerStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
) -> InterviewLifecycle:
    return InterviewLifecycle(store, max_attempts=settings.reservation_max_attempts)
