"""
FastAPI router for image metadata endpoints.

The upload handler stores the blob elsewhere and then calls `POST /images`;
federation ingestion calls `POST /images/remote` with the links it found.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from auth import dependencies as auth_dependencies
from core import db

from . import repository, schemas

router = APIRouter(prefix="/images")


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, db.NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, db.ConstraintViolationError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Image already exists.")
    if isinstance(exc, schemas.MalformedUrlError):
        return HTTPException(status_code=422, detail=str(exc))
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database unavailable.")


@router.get("")
async def list_images(
    local_user_id: int = Depends(auth_dependencies.get_current_user_id),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
) -> dict:
    """
    List the current user's uploaded images, newest first.
    """
    try:
        images = await repository.list_local_images_for_user(local_user_id, limit=limit, offset=offset)
    except db.DbError as exc:
        raise _http_error(exc) from exc
    return {
        "images": images,
        "limit": limit,
        "offset": offset,
        "count": len(images),
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_image(
    body: schemas.CreateImageRequest,
    local_user_id: int = Depends(auth_dependencies.get_current_user_id),
) -> schemas.LocalImage:
    form = schemas.LocalImageForm(local_user_id=local_user_id, alias=body.alias)
    try:
        return await repository.create_local_image(form, body.details)
    except (db.DbError, schemas.MalformedUrlError) as exc:
        raise _http_error(exc) from exc


@router.delete("/{alias}")
async def delete_image(
    alias: str,
    local_user_id: int = Depends(auth_dependencies.get_current_user_id),
) -> dict:
    """
    Delete one of the current user's images. Other users' aliases are 404.
    """
    try:
        image = await repository.delete_local_image_by_alias_and_user(alias, local_user_id)
    except db.DbError as exc:
        raise _http_error(exc) from exc
    return {"ok": True, "image": image}


@router.post("/remote")
async def register_remote_images(
    body: schemas.RegisterRemoteImagesRequest,
    _: int = Depends(auth_dependencies.get_current_user_id),
) -> dict:
    try:
        inserted = await repository.create_remote_images(body.links)
    except (db.DbError, schemas.MalformedUrlError) as exc:
        raise _http_error(exc) from exc
    return {"requested": len(body.links), "inserted": inserted}


@router.get("/remote", status_code=status.HTTP_204_NO_CONTENT)
async def validate_remote_image(link: str = Query(..., min_length=1)) -> Response:
    try:
        await repository.validate_remote_image(link)
    except (db.DbError, schemas.MalformedUrlError) as exc:
        raise _http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/details")
async def image_details(link: str = Query(..., min_length=1)) -> schemas.ImageDetails:
    try:
        return await repository.get_image_details(link)
    except (db.DbError, schemas.MalformedUrlError) as exc:
        raise _http_error(exc) from exc
