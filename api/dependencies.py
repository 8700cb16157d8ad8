"""Shared request dependencies.

The upstream auth layer authenticates callers and forwards the principal
and organization in headers; this service trusts them as given.
"""

from typing import Optional

from fastapi import Header, HTTPException, Request

from core.sync.models import AuthContext
from core.sync.orchestrator import SyncOrchestrator
from core.sync.runtime import build_orchestrator


def get_auth_context(
    x_principal_id: Optional[str] = Header(default=None),
    x_organization_id: Optional[str] = Header(default=None),
) -> AuthContext:
    if not x_principal_id or not x_organization_id:
        raise HTTPException(
            status_code=401,
            detail="Missing X-Principal-Id or X-Organization-Id header",
        )
    return AuthContext(principal_id=x_principal_id, organization_id=x_organization_id)


def get_orchestrator(request: Request) -> SyncOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        orchestrator = build_orchestrator()
        request.app.state.orchestrator = orchestrator
    return orchestrator
