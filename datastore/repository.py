"""Async persistence of screenshot and project records."""

from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional

from sqlalchemy import case, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from common.contracts import ImageSwap, Project, ScreenshotRecord, ScreenshotStatus
from common.errors import DatastoreError, StaleRecordError
from common.logger import get_logger
from datastore.models import Base, ProjectRow, ScreenshotRow

_UPDATABLE = frozenset({
    "status",
    "error",
    "image_url",
    "last_image_url",
    "diff_image_url",
    "diff_percentage",
    "updated_at",
})


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SqlDatastore:
    """Screenshot/project store on any SQLAlchemy async engine.

    ``update_screenshot`` is last-writer-wins. ``swap_image`` is a
    compare-and-set on the ``version`` column: it moves the current image
    to ``last_image_url`` and installs the new one in a single statement,
    so two capture jobs cannot both claim the same previous image. The
    returned ``ImageSwap`` names the image that was pushed out; storing the
    image that is already current displaces nothing.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._logger = get_logger(__name__)
        self._engine = engine
        self._sessions = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @classmethod
    def from_url(cls, database_url: str) -> "SqlDatastore":
        return cls(create_async_engine(database_url, echo=False, pool_pre_ping=True))

    async def close(self) -> None:
        await self._engine.dispose()

    async def create_schema(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def add_all(self, rows: Iterable[Base]) -> None:
        try:
            async with self._sessions.begin() as session:
                session.add_all(list(rows))
        except SQLAlchemyError as e:
            raise DatastoreError(f"Insert failed: {e}") from e

    async def ping(self) -> None:
        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            raise DatastoreError(f"Database check failed: {e}") from e

    async def get_screenshot(self, id: str) -> Optional[ScreenshotRecord]:
        try:
            async with self._sessions() as session:
                row = await session.get(ScreenshotRow, id)
                return row.to_domain() if row else None
        except SQLAlchemyError as e:
            raise DatastoreError(f"Screenshot lookup failed for {id}: {e}") from e

    async def get_project(self, id: str) -> Optional[Project]:
        try:
            async with self._sessions() as session:
                row = await session.get(ProjectRow, id)
                return row.to_domain() if row else None
        except SQLAlchemyError as e:
            raise DatastoreError(f"Project lookup failed for {id}: {e}") from e

    async def update_screenshot(self, id: str, fields: Mapping[str, Any]) -> None:
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update screenshot fields: {', '.join(sorted(unknown))}")

        values = {
            key: value.value if isinstance(value, ScreenshotStatus) else value
            for key, value in fields.items()
        }
        values.setdefault("updated_at", _now())

        try:
            async with self._sessions.begin() as session:
                result = await session.execute(
                    update(ScreenshotRow)
                    .where(ScreenshotRow.id == id)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
        except SQLAlchemyError as e:
            raise DatastoreError(f"Database update failed for {id}: {e}") from e

        if result.rowcount == 0:
            raise DatastoreError(f"Screenshot {id} not found")

    async def swap_image(
            self,
            id: str,
            image_url: str,
            expected_version: int,
    ) -> ImageSwap:
        guard = (ScreenshotRow.id == id, ScreenshotRow.version == expected_version)
        statement = (
            update(ScreenshotRow)
            .where(*guard)
            .values(
                # a re-run that produced the same object keeps the older image
                last_image_url=case(
                    (ScreenshotRow.image_url == image_url, ScreenshotRow.last_image_url),
                    else_=ScreenshotRow.image_url,
                ),
                image_url=image_url,
                status=ScreenshotStatus.COMPLETED.value,
                error=None,
                version=ScreenshotRow.version + 1,
                updated_at=_now(),
            )
            .returning(ScreenshotRow.id)
            .execution_options(synchronize_session=False)
        )

        try:
            async with self._sessions.begin() as session:
                current = (await session.execute(
                    select(ScreenshotRow.image_url).where(*guard).with_for_update()
                )).one_or_none()
                swapped = None
                if current is not None:
                    swapped = (await session.execute(statement)).scalar_one_or_none()
                if swapped is None:
                    exists = await session.get(ScreenshotRow, id)
                    if exists is None:
                        raise DatastoreError(f"Screenshot {id} not found")
                    raise StaleRecordError(
                        f"Screenshot {id} is at version {exists.version}, "
                        f"expected {expected_version}"
                    )

                row = await session.get(ScreenshotRow, id, populate_existing=True)
                self._logger.debug("Screenshot %s now at version %d", id, row.version)

                displaced = current.image_url
                if displaced == image_url:
                    displaced = None
                return ImageSwap(record=row.to_domain(), displaced_image_url=displaced)
        except SQLAlchemyError as e:
            raise DatastoreError(f"Image swap failed for {id}: {e}") from e
