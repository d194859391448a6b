"""Shop-keyed access to ConnectionRecord and offline sessions."""

from datetime import datetime
from typing import Any, Optional
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.database import ConnectionRecord, ConnectionStatus, Session


class ConnectionStore:
    """Create-or-update access to the one ConnectionRecord per shop."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, shop: str) -> Optional[ConnectionRecord]:
        result = await self.session.execute(
            select(ConnectionRecord).where(ConnectionRecord.shop == shop)
        )
        return result.scalar_one_or_none()

    async def upsert(self, shop: str, **fields: Any) -> ConnectionRecord:
        """Create the shop's record or overwrite the given fields, then commit."""
        record = await self.get(shop)
        if record is None:
            record = ConnectionRecord(shop=shop, sync_count=0)
            self.session.add(record)

        for name, value in fields.items():
            setattr(record, name, value)
        record.updated_at = datetime.utcnow()

        await self.session.commit()
        return record

    async def mark_connected(self, shop: str, identifiers: dict[str, str]) -> ConnectionRecord:
        """
        Store the pipeline identifiers and bump sync_count.

        The increment is done in SQL (sync_count = sync_count + 1) so two
        concurrent connects cannot both read the same old value.
        """
        record = await self.get(shop)
        if record is None:
            record = ConnectionRecord(shop=shop, sync_count=0)
            self.session.add(record)
            await self.session.flush()

        now = datetime.utcnow()
        await self.session.execute(
            update(ConnectionRecord)
            .where(ConnectionRecord.shop == shop)
            .values(
                status=ConnectionStatus.CONNECTED.value,
                connection_id=identifiers["connection_id"],
                source_id=identifiers["source_id"],
                destination_id=identifiers["destination_id"],
                job_id=identifiers["job_id"],
                error_message=None,
                last_sync_at=now,
                updated_at=now,
                sync_count=ConnectionRecord.sync_count + 1,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        await self.session.refresh(record)
        return record

    async def mark_disconnected(self, shop: str) -> int:
        """Set an existing record to disconnected without creating one."""
        result = await self.session.execute(
            update(ConnectionRecord)
            .where(ConnectionRecord.shop == shop)
            .values(status=ConnectionStatus.DISCONNECTED.value, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def get_offline_session(self, shop: str) -> Optional[Session]:
        result = await self.session.execute(
            select(Session)
            .where(Session.shop == shop, Session.is_online.is_(False))
            .limit(1)
        )
        return result.scalar_one_or_none()
