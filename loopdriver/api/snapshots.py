"""
Snapshot Endpoints
==================
Manual snapshot management for the project root.

Snapshots may only be taken or restored while no loop is running; working
tree copies are not safe to interleave with an active iteration.
"""
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query

from loopdriver.core.exceptions import InvalidSnapshotError, SnapshotNotFoundError
from loopdriver.models.snapshot import SnapshotInfo
from loopdriver.services.loop_registry import LoopRegistry, get_loop_registry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/snapshots", tags=["Snapshots"])


def _ensure_idle(registry: LoopRegistry) -> None:
    if registry.any_busy():
        raise HTTPException(status_code=409, detail="A loop is running; try again when it has finished")


# Declared before /{run_id} so "cleanup" is not taken for a run id
@router.post("/cleanup")
async def cleanup_snapshots(
    max_age_ms: int = Query(..., gt=0),
    registry: LoopRegistry = Depends(get_loop_registry),
):
    deleted = registry.snapshot_manager.cleanup(max_age_ms)
    return {"deleted": deleted}


@router.get("", response_model=List[SnapshotInfo])
async def list_snapshots(registry: LoopRegistry = Depends(get_loop_registry)):
    return registry.snapshot_manager.list()


@router.post("/{run_id}", status_code=201)
async def create_snapshot(run_id: str, registry: LoopRegistry = Depends(get_loop_registry)):
    _ensure_idle(registry)
    manager = registry.snapshot_manager
    try:
        path = manager.create(run_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    manifest = manager.read_manifest(path)
    return {"run_id": run_id, "path": path, "files": manifest.files}


@router.post("/{run_id}/restore")
async def restore_snapshot(run_id: str, registry: LoopRegistry = Depends(get_loop_registry)):
    _ensure_idle(registry)
    manager = registry.snapshot_manager
    try:
        restored = manager.restore(manager.snapshot_path_for(run_id))
    except SnapshotNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (InvalidSnapshotError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    logger.info("Snapshot %s restored via API (%d files)", run_id, len(restored))
    return {"run_id": run_id, "restored": restored}


@router.delete("/{run_id}")
async def delete_snapshot(run_id: str, registry: LoopRegistry = Depends(get_loop_registry)):
    manager = registry.snapshot_manager
    try:
        manager.delete(manager.snapshot_path_for(run_id))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"run_id": run_id, "deleted": True}
