from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Response, UploadFile
from fastapi.responses import FileResponse

from fellowship.auth import require_approved_user
from fellowship.models import StoredFile, UserProfile
from fellowship.services.file_store import (
    COMMUNITY_BUCKET,
    FileStoreError,
    FileStoreNotFoundError,
    file_store,
)
from fellowship.services.permissions import audit_check, can_manage_files

router = APIRouter(prefix="/files", tags=["files"])


def _raise_file_http_error(exc: FileStoreError) -> None:
    if isinstance(exc, FileStoreNotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    raise HTTPException(status_code=400, detail=str(exc))


@router.post("/upload", response_model=StoredFile, status_code=201)
async def upload_file(
    file: UploadFile = File(...),
    folder: str = Form(default="posts"),
    user: UserProfile = Depends(require_approved_user),
):
    data = await file.read()
    try:
        return file_store.upload(
            COMMUNITY_BUCKET,
            data,
            filename=file.filename or "file",
            content_type=file.content_type or "application/octet-stream",
            folder=f"{folder}/{user.id}",
        )
    except FileStoreError as exc:
        _raise_file_http_error(exc)


@router.get("/list/{bucket}", response_model=list[str])
def list_files(
    bucket: str,
    folder: Optional[str] = Query(default=None),
    user: UserProfile = Depends(require_approved_user),
):
    if not audit_check(user, "file", "manage", can_manage_files(user)):
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    try:
        return file_store.list_folder(bucket, folder)
    except FileStoreError as exc:
        _raise_file_http_error(exc)


@router.get("/{bucket}/{path:path}")
def get_file(bucket: str, path: str):
    try:
        target = file_store.open_path(bucket, path)
    except FileStoreError as exc:
        _raise_file_http_error(exc)
    return FileResponse(target)


@router.delete("/{bucket}/{path:path}", status_code=204)
def delete_file(bucket: str, path: str, user: UserProfile = Depends(require_approved_user)):
    try:
        owns_file = file_store.uploader_of(bucket, path) == user.id
        if not audit_check(user, "file", "delete", owns_file or can_manage_files(user)):
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        file_store.delete(bucket, path)
    except FileStoreError as exc:
        _raise_file_http_error(exc)
    return Response(status_code=204)
