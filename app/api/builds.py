"""Builds API: build configs, manual triggers and cancellation."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.api.deps import get_build_queue, get_db, require_user_auth
from app.schemas.builds import BuildAccepted, BuildConfigRead, BuildConfigWrite, BuildRead, BuildTrigger

router = APIRouter(tags=["builds"])


@router.get("/stacks/{stack_id}/build-config", response_model=BuildConfigRead)
def get_build_config(
    stack_id: str,
    db: Session = Depends(get_db),
    auth=Depends(require_user_auth),
):
    from app.services.build_config_service import BuildConfigService

    config = BuildConfigService(db).get_for_stack(stack_id)
    if not config:
        raise HTTPException(status_code=404, detail="Build config not found")
    return BuildConfigService.serialize(config)


@router.put("/stacks/{stack_id}/build-config", response_model=BuildConfigRead)
def put_build_config(
    stack_id: str,
    payload: BuildConfigWrite,
    db: Session = Depends(get_db),
    auth=Depends(require_user_auth),
):
    from app.services.build_config_service import BuildConfigService

    fields = payload.model_dump(exclude_unset=True, exclude={"env_vars"})
    if payload.env_vars is not None:
        fields["env_vars"] = [item.model_dump() for item in payload.env_vars]
    try:
        config = BuildConfigService(db).upsert(stack_id, **fields)
        db.commit()
        return BuildConfigService.serialize(config)
    except LookupError as e:
        db.rollback()
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/stacks/{stack_id}/builds", status_code=status.HTTP_202_ACCEPTED, response_model=BuildAccepted)
def trigger_build(
    stack_id: str,
    payload: BuildTrigger | None = None,
    db: Session = Depends(get_db),
    auth=Depends(require_user_auth),
    queue=Depends(get_build_queue),
):
    from app.services.build_service import BuildService

    payload = payload or BuildTrigger()
    try:
        request = BuildService(db, queue=queue).trigger_manual(
            stack_id,
            triggered_by=auth.get("actor_id"),
            trigger=payload.trigger,
            branch=payload.branch,
            tag=payload.tag,
        )
        db.commit()
        return {"build_id": request.build_id, "status": request.status.value}
    except LookupError as e:
        db.rollback()
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/stacks/{stack_id}/builds", response_model=list[BuildRead])
def list_builds(
    stack_id: str,
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    auth=Depends(require_user_auth),
):
    from app.services.build_service import BuildService, serialize_build
    from app.services.git_repo_service import GitRepoService

    repo = GitRepoService(db).get_by_stack(stack_id)
    if not repo:
        raise HTTPException(status_code=404, detail="Repo not found")
    return [serialize_build(r) for r in BuildService(db).list_for_repo(repo.repo_id, limit=limit)]


@router.get("/builds/{build_id}", response_model=BuildRead)
def get_build(
    build_id: str,
    db: Session = Depends(get_db),
    auth=Depends(require_user_auth),
):
    from app.services.build_service import BuildService, serialize_build

    request = BuildService(db).get(build_id)
    if not request:
        raise HTTPException(status_code=404, detail="Build not found")
    return serialize_build(request)


@router.post("/builds/{build_id}/cancel")
def cancel_build(
    build_id: str,
    db: Session = Depends(get_db),
    auth=Depends(require_user_auth),
    queue=Depends(get_build_queue),
):
    from app.services.build_service import BuildService

    try:
        outcome = BuildService(db, queue=queue).cancel(build_id)
        db.commit()
    except LookupError as e:
        db.rollback()
        raise HTTPException(status_code=404, detail=str(e))
    if outcome == "finished":
        raise HTTPException(status_code=409, detail="Build already finished")
    return {"build_id": build_id, "result": outcome}
