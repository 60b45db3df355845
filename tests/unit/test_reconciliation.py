import asyncio
from datetime import datetime, timedelta, timezone

from newsai.services.kv_store import MemoryKeyValueStore
from newsai.services.orchestrator import GenerationOrchestrator
from newsai.services.reconciliation import sweep_stale_jobs
from newsai.services.rendering_client import RenderingClient


def test_sweep_refunds_only_stale_unreachable_jobs(ledger, config, rendering, fund, make_status) -> None:
    orchestrator = GenerationOrchestrator(
        ledger,
        MemoryKeyValueStore(),
        RenderingClient(config.rendering, transport=rendering.transport),
        config,
        background_progress=False,
    )
    now = datetime.now(timezone.utc)
    fund("alice", 0)
    fund("bob", 0)
    alice = orchestrator.pending_ledger("alice")
    alice.add("job_lost", "Lost", 60, started_at=now - timedelta(minutes=30))
    alice.add("job_fresh", "Fresh", 30, started_at=now - timedelta(minutes=2))
    orchestrator.pending_ledger("bob").add("job_busy", "Busy", 30, started_at=now - timedelta(minutes=40))
    rendering.script_status("job_lost", "network")
    rendering.script_status("job_busy", make_status("job_busy", "processing"))

    results = asyncio.run(sweep_stale_jobs(orchestrator, stale_after_s=20 * 60, now=now))

    assert sorted((r.job_id, r.success) for r in results) == [("job_busy", False), ("job_lost", True)]
    assert ledger.balance("alice") == 20
    assert ledger.balance("bob") == 0
    assert alice.get("job_lost") is None
    assert alice.get("job_fresh") is not None
    assert rendering.status_calls("job_fresh") == 0
