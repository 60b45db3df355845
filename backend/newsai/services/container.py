"""Wiring of the long-lived services shared by routes and workers."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx
from sqlalchemy.orm import Session, sessionmaker

from newsai.schemas.config import AppConfig
from newsai.services.credit_ledger import CreditLedger
from newsai.services.kv_store import KeyValueStore, SqlKeyValueStore
from newsai.services.orchestrator import GenerationOrchestrator
from newsai.services.rendering_client import RenderingClient


@dataclass
class ServiceContainer:
    config: AppConfig
    session_factory: sessionmaker[Session]
    ledger: CreditLedger
    kv_store: KeyValueStore
    client: RenderingClient
    orchestrator: GenerationOrchestrator
    transport: Optional[httpx.AsyncBaseTransport] = None

    def apply_config(self, config: AppConfig) -> None:
        """Use ``config`` for new work; in-flight pollers keep their settings."""
        self.config = config
        self.ledger = CreditLedger(self.session_factory, config.credits)
        self.client = RenderingClient(config.rendering, transport=self.transport)
        self.orchestrator.ledger = self.ledger
        self.orchestrator.client = self.client
        self.orchestrator.config = config


def build_services(
    config: AppConfig,
    session_factory: sessionmaker[Session],
    *,
    kv_store: Optional[KeyValueStore] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Callable[[], float] = time.time,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    background_progress: bool = True,
) -> ServiceContainer:
    ledger = CreditLedger(session_factory, config.credits)
    store = kv_store if kv_store is not None else SqlKeyValueStore(session_factory)
    client = RenderingClient(config.rendering, transport=transport)
    orchestrator = GenerationOrchestrator(
        ledger,
        store,
        client,
        config,
        clock=clock,
        sleep=sleep,
        background_progress=background_progress,
    )
    return ServiceContainer(
        config=config,
        session_factory=session_factory,
        ledger=ledger,
        kv_store=store,
        client=client,
        orchestrator=orchestrator,
        transport=transport,
    )
