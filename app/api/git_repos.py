"""Git Repos API: repositories, credentials and working-copy views."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.api.deps import get_db, require_user_auth
from app.schemas.git_repos import CommitRead, GitRepoCreate, GitRepoRead, GitRepoUpdate, WebhookSecretUpdate
from app.services.pipeline_errors import PathTraversalError, SyncError, WorkingCopyBusyError

router = APIRouter(prefix="/git-repos", tags=["git-repos"])


@router.get("", response_model=list[GitRepoRead])
def list_repos(
    db: Session = Depends(get_db),
    auth=Depends(require_user_auth),
):
    from app.services.git_repo_service import GitRepoService

    svc = GitRepoService(db)
    return [svc.serialize_repo(r) for r in svc.list_repos()]


@router.post("", status_code=status.HTTP_201_CREATED, response_model=GitRepoRead)
def create_repo(
    payload: GitRepoCreate,
    db: Session = Depends(get_db),
    auth=Depends(require_user_auth),
):
    from app.services.git_repo_service import GitRepoService

    svc = GitRepoService(db)
    try:
        repo = svc.create_repo(
            payload.stack_id,
            payload.url,
            branch=payload.branch,
            auth_type=payload.auth_type,
            credentials=payload.credentials.as_dict() if payload.credentials else None,
            provider=payload.provider,
            webhook_secret=payload.webhook_secret,
        )
        db.commit()
        return svc.serialize_repo(repo)
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/{repo_id}", response_model=GitRepoRead)
def get_repo(
    repo_id: UUID,
    db: Session = Depends(get_db),
    auth=Depends(require_user_auth),
):
    from app.services.git_repo_service import GitRepoService

    svc = GitRepoService(db)
    repo = svc.get_by_id(repo_id)
    if not repo:
        raise HTTPException(status_code=404, detail="Repo not found")
    return svc.serialize_repo(repo)


@router.put("/{repo_id}", response_model=GitRepoRead)
def update_repo(
    repo_id: UUID,
    payload: GitRepoUpdate,
    db: Session = Depends(get_db),
    auth=Depends(require_user_auth),
):
    from app.services.git_repo_service import GitRepoService

    kwargs = payload.model_dump(exclude_unset=True, exclude={"credentials"})
    if payload.credentials is not None:
        kwargs["credentials"] = payload.credentials.as_dict()
    svc = GitRepoService(db)
    try:
        repo = svc.update_repo(repo_id, **kwargs)
        db.commit()
        return svc.serialize_repo(repo)
    except LookupError as e:
        db.rollback()
        raise HTTPException(status_code=404, detail=str(e))
    except WorkingCopyBusyError as e:
        db.rollback()
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))


@router.delete("/{repo_id}")
def delete_repo(
    repo_id: UUID,
    db: Session = Depends(get_db),
    auth=Depends(require_user_auth),
):
    from app.services.git_repo_service import GitRepoService

    try:
        GitRepoService(db).delete_repo(repo_id)
        db.commit()
        return {"deleted": str(repo_id)}
    except LookupError as e:
        db.rollback()
        raise HTTPException(status_code=404, detail=str(e))
    except WorkingCopyBusyError as e:
        db.rollback()
        raise HTTPException(status_code=409, detail=str(e))


@router.put("/{repo_id}/webhook-secret")
def update_webhook_secret(
    repo_id: UUID,
    payload: WebhookSecretUpdate,
    db: Session = Depends(get_db),
    auth=Depends(require_user_auth),
):
    """Set, generate or clear the webhook secret. A generated secret is returned once."""
    from app.services.git_repo_service import GitRepoService

    svc = GitRepoService(db)
    try:
        if payload.generate:
            secret = svc.generate_webhook_secret(repo_id)
            db.commit()
            return {"repo_id": str(repo_id), "secret": secret}
        svc.set_webhook_secret(repo_id, payload.secret)
        db.commit()
        return {"repo_id": str(repo_id), "secret": None}
    except LookupError as e:
        db.rollback()
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/{repo_id}/test")
def test_repo(
    repo_id: UUID,
    db: Session = Depends(get_db),
    auth=Depends(require_user_auth),
):
    from app.services.git_repo_service import GitRepoService

    try:
        return GitRepoService(db).test_connection(repo_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/{repo_id}/default-branch")
def default_branch(
    repo_id: UUID,
    db: Session = Depends(get_db),
    auth=Depends(require_user_auth),
):
    from app.services.git_repo_service import GitRepoService

    try:
        return {"branch": GitRepoService(db).resolve_default_branch(repo_id)}
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/{repo_id}/commits", response_model=list[CommitRead])
def list_commits(
    repo_id: UUID,
    limit: int = Query(10, ge=1, le=200),
    db: Session = Depends(get_db),
    auth=Depends(require_user_auth),
):
    from app.services.git_repo_service import GitRepoService

    try:
        return GitRepoService(db).history(repo_id, limit=limit)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SyncError as e:
        raise HTTPException(status_code=409, detail=e.message)


@router.get("/{repo_id}/files")
def list_files(
    repo_id: UUID,
    path: str = "",
    db: Session = Depends(get_db),
    auth=Depends(require_user_auth),
):
    from app.services.git_repo_service import GitRepoService

    try:
        return {"path": path, "entries": GitRepoService(db).list_files(repo_id, path)}
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PathTraversalError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (FileNotFoundError, NotADirectoryError):
        raise HTTPException(status_code=404, detail="Directory not found")
