from __future__ import annotations

from fastapi import Request

from qbo_sync.services.orchestrator import SyncOrchestrator


def get_sync_orchestrator(request: Request) -> SyncOrchestrator:
    return request.app.state.orchestrator
