from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends

from ..reconciler import Reconciler, ReconcileResult
from ..repositories import Repository, get_repository
from ..schemas import ConflictOut, SyncResponse, TaskIn, TaskOut

router = APIRouter(
    prefix="/api/v1/sync",
    tags=["sync"],
)


def get_reconciler(repo: Repository = Depends(get_repository)) -> Reconciler:
    """
    Dependency building a Reconciler bound to the configured repository.
    """
    return Reconciler(repo)


def _to_response(result: ReconcileResult) -> SyncResponse:
    return SyncResponse(
        synced=[TaskOut.from_entity(t) for t in result.synced],
        conflicts=[
            ConflictOut(
                id=c.id,
                server=TaskOut.from_entity(c.server),
                client=TaskOut.from_entity(c.client),
            )
            for c in result.conflicts
        ],
        errors=list(result.errors),
    )


# PUBLIC_INTERFACE
@router.post(
    "",
    response_model=SyncResponse,
    summary="Sync Tasks",
    description=(
        "Reconcile a batch of client task records against the server.\n\n"
        "Per record, in submission order:\n"
        "- no id: created with a generated id and the current time\n"
        "- id unknown to the server: created with the supplied id\n"
        "- client updatedAt newer: client's title/description/completed replace the server's\n"
        "- server updatedAt newer: reported in conflicts, nothing is written\n"
        "- equal updatedAt: server version returned unchanged\n\n"
        "A record that fails is reported in errors; the rest of the batch still syncs."
    ),
    responses={
        200: {"description": "Batch reconciled (check conflicts and errors)"},
        422: {"description": "Validation error"},
        503: {"description": "Record store unavailable; nothing was written"},
    },
)
def sync_tasks(payload: List[TaskIn], reconciler: Reconciler = Depends(get_reconciler)) -> SyncResponse:
    """
    Reconcile a batch of client tasks.
    """
    result = reconciler.reconcile([item.to_entity() for item in payload])
    return _to_response(result)
