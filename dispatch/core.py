"""
Wiring for the dispatch core.

``build_core`` assembles every service around one session factory, one
location store and one publisher.  The API lifespan builds it against
PostgreSQL/Redis; tests build it against SQLite and in-memory fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dispatch.config import Settings, settings
from dispatch.domain.lifecycle import auto_transitions
from dispatch.domain.matching import EligibilityPolicy
from dispatch.domain.pricing import FareEngine
from dispatch.infrastructure.location_store import LocationStore
from dispatch.infrastructure.messaging import DatabaseNotifier, Notifier, Publisher
from dispatch.services.deliveries import DeliveryRequests
from dispatch.services.effects import EffectDispatcher
from dispatch.services.matcher import DriverMatcher
from dispatch.services.state_machine import DeliveryStateMachine
from dispatch.services.tracking import HistoryWriter, TrackingIngest


@dataclass
class DispatchCore:
    config: Settings
    session_factory: async_sessionmaker[AsyncSession]
    store: LocationStore
    publisher: Publisher
    notifier: Notifier
    fares: FareEngine
    matcher: DriverMatcher
    effects: EffectDispatcher
    state_machine: DeliveryStateMachine
    history: HistoryWriter
    tracking: TrackingIngest
    deliveries: DeliveryRequests


def build_core(
    session_factory: async_sessionmaker[AsyncSession],
    store: LocationStore,
    publisher: Publisher,
    notifier: Optional[Notifier] = None,
    config: Settings = settings,
) -> DispatchCore:
    notifier = notifier or DatabaseNotifier(session_factory, publisher)
    fares = FareEngine(config.local_timezone)
    matcher = DriverMatcher(
        store,
        session_factory,
        notifier,
        publisher,
        policy=EligibilityPolicy(
            min_rating=config.match_min_rating,
            update_interval=timedelta(seconds=config.location_update_interval_seconds),
            stale_is_ineligible=config.stale_location_is_ineligible,
        ),
        min_cache_hits=config.match_min_cache_hits,
        h3_resolution=config.h3_resolution,
    )
    effects = EffectDispatcher(
        store,
        session_factory,
        notifier,
        publisher,
        location_ttl_seconds=config.location_ttl_seconds,
    )
    state_machine = DeliveryStateMachine(
        session_factory,
        effects,
        publisher,
        rules=auto_transitions(
            pending_dispute_after=timedelta(seconds=config.pending_dispute_after_seconds),
            accepted_cancel_after=timedelta(seconds=config.accepted_cancel_after_seconds),
            delivered_complete_after=timedelta(
                seconds=config.delivered_complete_after_seconds
            ),
        ),
        payment_dispute_after=timedelta(seconds=config.payment_dispute_after_seconds),
        sweep_batch_size=config.sweep_batch_size,
    )
    history = HistoryWriter(
        session_factory,
        batch_size=config.history_batch_size,
        flush_interval=config.history_flush_interval_seconds,
        h3_resolution=config.h3_resolution,
    )
    tracking = TrackingIngest(
        store,
        session_factory,
        publisher,
        history,
        location_ttl_seconds=config.location_ttl_seconds,
    )
    deliveries = DeliveryRequests(
        session_factory,
        fares,
        matcher,
        state_machine,
        max_distance_km=config.match_max_distance_km,
        max_candidates=config.match_max_candidates,
    )
    return DispatchCore(
        config=config,
        session_factory=session_factory,
        store=store,
        publisher=publisher,
        notifier=notifier,
        fares=fares,
        matcher=matcher,
        effects=effects,
        state_machine=state_machine,
        history=history,
        tracking=tracking,
        deliveries=deliveries,
    )
