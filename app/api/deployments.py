"""Deployments API — deployment history, logs and manual rollback."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.api.deps import get_build_queue, get_db, require_user_auth
from app.schemas.builds import BuildAccepted, DeploymentDetail, DeploymentRead

router = APIRouter(tags=["deployments"])


@router.get("/stacks/{stack_id}/deployments", response_model=list[DeploymentRead])
def list_deployments(
    stack_id: str,
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    auth=Depends(require_user_auth),
):
    from app.services.deploy_service import DeployService

    return DeployService(db).list_deployments(stack_id, limit=limit, offset=offset)


@router.get("/deployments/{deployment_id}", response_model=DeploymentDetail)
def get_deployment(
    deployment_id: UUID,
    db: Session = Depends(get_db),
    auth=Depends(require_user_auth),
):
    from app.services.deploy_service import DeployService

    deployment = DeployService(db).get_deployment(deployment_id)
    if not deployment:
        raise HTTPException(status_code=404, detail="Deployment not found")
    return deployment


@router.post(
    "/deployments/{deployment_id}/rollback",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=BuildAccepted,
)
def rollback_deployment(
    deployment_id: UUID,
    db: Session = Depends(get_db),
    auth=Depends(require_user_auth),
    queue=Depends(get_build_queue),
):
    """Queue a redeploy of this deployment's recorded artifact."""
    from app.services.build_service import BuildService

    try:
        request = BuildService(db, queue=queue).request_rollback(deployment_id, triggered_by=auth.get("actor_id"))
        db.commit()
        return {"build_id": request.build_id, "status": request.status.value}
    except LookupError as e:
        db.rollback()
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))
