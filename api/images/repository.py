"""
Image metadata persistence (raw SQL).

Three tables, from the dbmate migration in `db/migrations/`:
- local_image(id, local_user_id, alias unique, published)
- remote_image(id, link unique, published)
- image_details(id, link unique, width, height, content_type, blurhash, published)

A local image is always written together with its details row in one
transaction. Remote images and details are insert-or-ignore on their unique
`link` column.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any
from urllib.parse import urlsplit

import asyncpg

from core import db

from . import schemas

logger = logging.getLogger(__name__)

_LOCAL_IMAGE_COLUMNS = "id, local_user_id, alias, published"
_IMAGE_DETAILS_COLUMNS = "id, link, width, height, content_type, blurhash, published"


def _to_local_image(row: Any) -> schemas.LocalImage:
    return schemas.LocalImage.model_validate(dict(row))


def _to_image_details(row: Any) -> schemas.ImageDetails:
    return schemas.ImageDetails.model_validate(dict(row))


def alias_from_url(url: str) -> str:
    """
    Return the last non-empty `/` segment of the path of `url`.

    "https://host/media/abc123" -> "abc123". The host never counts, so
    "https://host/" has no alias. The segment is not checked any further;
    raises NotFoundError when there is none.
    """
    for segment in reversed(urlsplit(str(url)).path.split("/")):
        if segment:
            return segment
    raise db.NotFoundError(f"No alias in url: {url!r}")


# --- Local images ---------------------------------------------------------


async def create_local_image(
    form: schemas.LocalImageForm,
    details_form: schemas.ImageDetailsInsertForm,
) -> schemas.LocalImage:
    """
    Insert a local image and its details row in a single transaction.

    If the details insert fails the local image insert is rolled back too.
    """
    async with db.transaction() as conn:
        row = await conn.fetchrow(
            f"""
            INSERT INTO local_image (local_user_id, alias)
            VALUES ($1, $2)
            RETURNING {_LOCAL_IMAGE_COLUMNS}
            """,
            form.local_user_id,
            form.alias,
        )
        if row is None:
            raise RuntimeError("Failed to insert local image.")

        await create_image_details(details_form, conn=conn)

    image = _to_local_image(row)
    logger.info(
        "local_image_created id=%s alias=%s local_user_id=%s",
        image.id,
        image.alias,
        image.local_user_id,
    )
    return image


async def delete_local_image_by_alias(alias: str) -> schemas.LocalImage:
    """
    Delete the local image with this alias. No ownership check.
    """
    row = await db.fetch_one(
        f"""
        DELETE FROM local_image
        WHERE alias = $1
        RETURNING {_LOCAL_IMAGE_COLUMNS}
        """,
        alias,
    )
    if row is None:
        raise db.NotFoundError(f"Local image not found: {alias!r}")
    logger.info("local_image_deleted alias=%s", alias)
    return _to_local_image(row)


async def delete_local_image_by_alias_and_user(alias: str, local_user_id: int) -> schemas.LocalImage:
    """
    Delete the local image only if it belongs to `local_user_id`.

    A wrong owner looks exactly like a missing alias (NotFoundError).
    """
    row = await db.fetch_one(
        f"""
        DELETE FROM local_image
        WHERE alias = $1
          AND local_user_id = $2
        RETURNING {_LOCAL_IMAGE_COLUMNS}
        """,
        alias,
        local_user_id,
    )
    if row is None:
        raise db.NotFoundError(f"Local image not found: {alias!r}")
    logger.info("local_image_deleted alias=%s local_user_id=%s", alias, local_user_id)
    return _to_local_image(row)


async def delete_local_image_by_url(url: str) -> schemas.LocalImage:
    link = schemas.normalize_link(url)
    alias = alias_from_url(link)
    logger.debug("local_image_delete_by_url url=%s alias=%s", link, alias)
    return await delete_local_image_by_alias(alias)


async def list_local_images_for_user(
    local_user_id: int,
    *,
    limit: int = 100,
    offset: int = 0,
) -> list[schemas.LocalImage]:
    rows = await db.fetch_all(
        f"""
        SELECT {_LOCAL_IMAGE_COLUMNS}
        FROM local_image
        WHERE local_user_id = $1
        ORDER BY published DESC, id DESC
        LIMIT $2
        OFFSET $3
        """,
        local_user_id,
        limit,
        offset,
    )
    return [_to_local_image(r) for r in rows]


async def delete_local_images_for_user(local_user_id: int) -> list[schemas.LocalImage]:
    """
    Delete every local image owned by a user (account purge).
    """
    rows = await db.fetch_all(
        f"""
        DELETE FROM local_image
        WHERE local_user_id = $1
        RETURNING {_LOCAL_IMAGE_COLUMNS}
        """,
        local_user_id,
    )
    logger.info("local_images_purged local_user_id=%s count=%s", local_user_id, len(rows))
    return [_to_local_image(r) for r in rows]


# --- Remote images --------------------------------------------------------


async def create_remote_images(links: Iterable[str]) -> int:
    """
    Register a batch of remote image links, ignoring ones already known.

    Returns the row count Postgres reports for the insert.
    """
    normalized = [schemas.normalize_link(link) for link in links]
    if not normalized:
        return 0

    inserted = await db.execute(
        """
        INSERT INTO remote_image (link)
        SELECT unnest($1::text[])
        ON CONFLICT (link) DO NOTHING
        """,
        normalized,
    )
    logger.info("remote_images_registered requested=%s inserted=%s", len(normalized), inserted)
    return inserted


async def validate_remote_image(link: str) -> None:
    """
    Raise NotFoundError unless `link` was registered as a remote image.
    """
    normalized = schemas.normalize_link(link)
    exists = await db.fetch_val(
        """
        SELECT EXISTS (
          SELECT 1
          FROM remote_image
          WHERE link = $1
        )
        """,
        normalized,
    )
    if not exists:
        raise db.NotFoundError(f"Remote image not registered: {normalized!r}")


# --- Image details --------------------------------------------------------


async def create_image_details(
    form: schemas.ImageDetailsInsertForm,
    *,
    conn: asyncpg.Connection | None = None,
) -> int:
    """
    Insert an image details row; a row with the same link is left untouched.

    Pass `conn` to run inside a caller's transaction.
    """
    sql = """
        INSERT INTO image_details (link, width, height, content_type, blurhash)
        VALUES ($1, $2, $3, $4, $5)
        ON CONFLICT (link) DO NOTHING
        """
    args = (
        schemas.normalize_link(form.link),
        form.width,
        form.height,
        form.content_type,
        form.blurhash,
    )
    if conn is None:
        return await db.execute(sql, *args)
    return db.rows_affected(await conn.execute(sql, *args))


async def get_image_details(link: str) -> schemas.ImageDetails:
    row = await db.fetch_one(
        f"""
        SELECT {_IMAGE_DETAILS_COLUMNS}
        FROM image_details
        WHERE link = $1
        """,
        schemas.normalize_link(link),
    )
    if row is None:
        raise db.NotFoundError(f"Image details not found: {link!r}")
    return _to_image_details(row)
