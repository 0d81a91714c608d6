import logging
import time
from typing import List, Optional

from sqlalchemy import Index
from sqlalchemy.engine import Engine
from sqlmodel import Field, Session, SQLModel, select

from shop_codec import DISCRIMINATOR_SIZE, PUBKEY_SIZE, PURCHASE_RECORD_SIZE, PurchaseHistory

logger = logging.getLogger("shop.mirror")

# What the program allocates for a history account on first purchase.
HISTORY_ACCOUNT_SPACE = 8 + 32 + 4 + 32 * 10

STATUS_CONFIRMED = "confirmed"
STATUS_ONCHAIN = "onchain"


def history_capacity(account_size: int = HISTORY_ACCOUNT_SPACE) -> int:
    """Number of purchase records that fit in a history account of ``account_size`` bytes."""
    body = account_size - DISCRIMINATOR_SIZE - PUBKEY_SIZE - 4
    if body <= 0:
        return 0
    return body // PURCHASE_RECORD_SIZE


class PurchaseMirror(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    wallet: str = Field(index=True)
    item_id: int
    timestamp: int = Field(default=0)
    position: Optional[int] = None  # index in the on-chain history; None until observed
    signature: Optional[str] = None
    status: str = Field(default=STATUS_CONFIRMED)
    created_at: float = Field(default_factory=lambda: time.time())
    updated_at: float = Field(default_factory=lambda: time.time())

    __table_args__ = (Index("idx_purchase_mirror_wallet_position", "wallet", "position"),)


class HistoryMirror:
    """Local view of each wallet's purchases, reconciled against the on-chain history."""

    def __init__(self, engine: Engine):
        self.engine = engine
        SQLModel.metadata.create_all(engine)

    def record_confirmed(self, wallet: str, item_id: int, signature: Optional[str] = None) -> PurchaseMirror:
        now = time.time()
        row = PurchaseMirror(
            wallet=wallet,
            item_id=item_id,
            timestamp=int(now),
            signature=signature,
            status=STATUS_CONFIRMED,
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
        logger.info("mirror_recorded wallet=%s item=%s sig=%s", wallet, item_id, signature)
        return row

    def sync(self, history: PurchaseHistory) -> int:
        """Upsert on-chain records by position; retire one pending local row per new one."""
        wallet = str(history.user)
        now = time.time()
        with Session(self.engine) as session:
            known = {
                row.position: row
                for row in session.exec(
                    select(PurchaseMirror).where(
                        PurchaseMirror.wallet == wallet,
                        PurchaseMirror.status == STATUS_ONCHAIN,
                    )
                ).all()
            }
            new_count = 0
            for position, record in enumerate(history.purchases):
                row = known.get(position)
                if row is None:
                    session.add(
                        PurchaseMirror(
                            wallet=wallet,
                            item_id=record.item_id,
                            timestamp=record.timestamp,
                            position=position,
                            status=STATUS_ONCHAIN,
                        )
                    )
                    new_count += 1
                elif row.item_id != record.item_id or row.timestamp != record.timestamp:
                    row.item_id = record.item_id
                    row.timestamp = record.timestamp
                    row.updated_at = now
                    session.add(row)
            if new_count:
                pending = session.exec(
                    select(PurchaseMirror)
                    .where(
                        PurchaseMirror.wallet == wallet,
                        PurchaseMirror.status == STATUS_CONFIRMED,
                    )
                    .order_by(PurchaseMirror.created_at, PurchaseMirror.id)
                    .limit(new_count)
                ).all()
                for row in pending:
                    session.delete(row)
            session.commit()
        logger.info("mirror_synced wallet=%s onchain=%s new=%s", wallet, len(history.purchases), new_count)
        return new_count

    def local_view(self, wallet: str) -> List[PurchaseMirror]:
        with Session(self.engine) as session:
            onchain = session.exec(
                select(PurchaseMirror)
                .where(PurchaseMirror.wallet == wallet, PurchaseMirror.status == STATUS_ONCHAIN)
                .order_by(PurchaseMirror.position)
            ).all()
            pending = session.exec(
                select(PurchaseMirror)
                .where(PurchaseMirror.wallet == wallet, PurchaseMirror.status == STATUS_CONFIRMED)
                .order_by(PurchaseMirror.created_at, PurchaseMirror.id)
            ).all()
        return list(onchain) + list(pending)
