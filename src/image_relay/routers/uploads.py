"""Routes for storing inline images in object storage."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from ..auth import AuthError, ConfigurationError, IdentityClient
from ..extraction import InvalidImageData, parse_data_url
from ..schemas.generation import UploadImageRequest, UploadImageResponse
from ..services.storage import ImageStorage, StorageError
from .generate import get_identity_client

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["uploads"])

DEFAULT_UPLOAD_FOLDER = "uploads"


def get_image_storage(request: Request) -> ImageStorage:
    storage = getattr(request.app.state, "image_storage", None)
    if storage is None:
        raise HTTPException(status_code=500, detail="Image storage unavailable")
    return storage


async def _optional_caller_id(
    identity: IdentityClient, authorization: Optional[str]
) -> Optional[str]:
    if not authorization or not identity.configured:
        return None
    try:
        caller = await identity.authenticate(authorization)
    except (AuthError, ConfigurationError):
        logger.info("Upload authentication failed; storing anonymously")
        return None
    return caller.user_id


@router.post("/upload-image", response_model=UploadImageResponse)
async def upload_image(
    payload: UploadImageRequest,
    authorization: Optional[str] = Header(default=None),
    identity: IdentityClient = Depends(get_identity_client),
    storage: ImageStorage = Depends(get_image_storage),
) -> UploadImageResponse:
    """Store an inline data-URI image and return signed/public URLs."""

    try:
        image = parse_data_url(payload.image)
    except InvalidImageData as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    caller_id = await _optional_caller_id(identity, authorization)
    try:
        stored = await storage.store(
            image,
            caller_id=caller_id,
            folder=payload.folder or DEFAULT_UPLOAD_FOLDER,
        )
    except StorageError as exc:
        logger.error("Image upload failed: %s", exc)
        raise HTTPException(status_code=503, detail=str(exc)) from exc

    return UploadImageResponse(
        url=stored.url,
        public_url=stored.public_url,
        signed_url=stored.signed_url,
        object_name=stored.object_name,
        bucket=stored.bucket,
    )


__all__ = ["get_image_storage", "router"]
