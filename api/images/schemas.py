"""
Image record types and insert forms.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import AnyHttpUrl, BaseModel, Field, TypeAdapter, ValidationError

_http_url = TypeAdapter(AnyHttpUrl)


class MalformedUrlError(ValueError):
    pass


def normalize_link(url: str | AnyHttpUrl) -> str:
    """
    Validate a link and return the normalized text that is stored and compared.

    Lower-cases scheme and host and drops default ports, so
    "HTTPS://Example.COM:443/a.png" and "https://example.com/a.png" are the
    same remote image. There is no length cap; federated links can be long.
    """
    try:
        return str(_http_url.validate_python(str(url).strip()))
    except ValidationError as exc:
        raise MalformedUrlError(f"Invalid image link: {url!r}") from exc


class LocalImageForm(BaseModel):
    local_user_id: int
    alias: str = Field(..., min_length=1, max_length=2000)


class ImageDetailsInsertForm(BaseModel):
    link: AnyHttpUrl
    width: int = Field(..., ge=0)
    height: int = Field(..., ge=0)
    content_type: str = Field(..., min_length=1, max_length=200)
    blurhash: str | None = Field(default=None, max_length=200)


class LocalImage(BaseModel):
    id: int
    local_user_id: int
    alias: str
    published: datetime


class ImageDetails(BaseModel):
    id: int
    link: str
    width: int
    height: int
    content_type: str
    blurhash: str | None = None
    published: datetime


class CreateImageRequest(BaseModel):
    """
    Body of `POST /images`, sent by the upload handler once the blob is stored.
    """

    alias: str = Field(..., min_length=1, max_length=2000)
    details: ImageDetailsInsertForm


class RegisterRemoteImagesRequest(BaseModel):
    links: list[str] = Field(..., max_length=1000)
