"""
数据库模型 - SQLite

功能:
- 按集合保存记录（JSON 原样保存）
- 保存用户设置和最后修改时间
"""

from sqlalchemy import create_engine, func, Column, Integer, String, Text
from sqlalchemy.orm import declarative_base, sessionmaker
from datetime import datetime
from pathlib import Path
from fastapi import Request
from typing import Any, Dict, List, Optional
import json
import structlog

from tccsync.core.clock import MonotonicClock, ensure_aware
from tccsync.core.models import COLLECTIONS

logger = structlog.get_logger()

Base = declarative_base()

META_LAST_MODIFIED = 'last_modified'
META_USER_SETTINGS = 'user_settings'


# ========== 数据模型 ==========

class SyncRecord(Base):
    """集合中的一条记录"""
    __tablename__ = 'sync_records'

    collection = Column(String(50), primary_key=True)
    id = Column(String(200), primary_key=True)
    payload = Column(Text, nullable=False)  # 记录的完整 JSON
    updated_at = Column(String(40), nullable=True)
    position = Column(Integer, default=0)  # 客户端提交时的顺序


class SyncMeta(Base):
    """键值元数据"""
    __tablename__ = 'sync_meta'

    key = Column(String(50), primary_key=True)
    value = Column(Text, nullable=True)


# ========== 数据库管理器 ==========

class DatabaseManager:
    """数据库管理器"""

    def __init__(self, db_path: str, clock: Optional[MonotonicClock] = None):
        """
        初始化数据库管理器

        Args:
            db_path: 数据库文件路径
            clock: 时钟（保证最后修改时间严格递增）
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.clock = clock or MonotonicClock()

        self.engine = create_engine(
            f'sqlite:///{self.db_path}',
            echo=False,
            connect_args={"check_same_thread": False}
        )

        Base.metadata.create_all(self.engine)

        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=self.engine
        )

        self.clock.observe(self.get_last_modified())

        logger.info("Database initialized", path=str(self.db_path))

    def get_session(self):
        """获取数据库会话"""
        return self.SessionLocal()

    # ========== 元数据 ==========

    def get_last_modified(self) -> Optional[datetime]:
        """服务器最后修改时间，从未写入时返回 None"""
        session = self.get_session()
        try:
            meta = session.get(SyncMeta, META_LAST_MODIFIED)
            if meta is None or not meta.value:
                return None
            return ensure_aware(datetime.fromisoformat(meta.value))
        finally:
            session.close()

    def get_user_settings(self) -> Dict[str, Any]:
        session = self.get_session()
        try:
            meta = session.get(SyncMeta, META_USER_SETTINGS)
            return json.loads(meta.value) if meta is not None and meta.value else {}
        finally:
            session.close()

    # ========== 快照 ==========

    def load_state(self) -> Dict[str, Any]:
        """
        读取完整数据

        Returns:
            {lastSynced, data: {集合..., userSettings}}
        """
        session = self.get_session()
        try:
            data: Dict[str, Any] = {name: [] for name in COLLECTIONS}
            rows = session.query(SyncRecord).order_by(SyncRecord.collection, SyncRecord.position).all()
            for row in rows:
                if row.collection in data:
                    data[row.collection].append(json.loads(row.payload))
        finally:
            session.close()

        data['userSettings'] = self.get_user_settings()
        last_modified = self.get_last_modified()

        return {
            'lastSynced': last_modified.isoformat() if last_modified else None,
            'data': data,
        }

    def replace_state(self, data: Dict[str, Any]) -> datetime:
        """
        整体替换提交的集合和设置，并更新最后修改时间

        Args:
            data: {集合名: 记录列表, userSettings: {...}}

        Returns:
            新的最后修改时间
        """
        session = self.get_session()
        try:
            for name in COLLECTIONS:
                records = data.get(name)
                if records is None:
                    continue

                session.query(SyncRecord).filter(SyncRecord.collection == name).delete()
                for position, record in enumerate(records):
                    session.merge(_to_row(name, record, position))

            if data.get('userSettings') is not None:
                session.merge(SyncMeta(key=META_USER_SETTINGS, value=json.dumps(data['userSettings'])))

            stamp = self.clock.now()
            session.merge(SyncMeta(key=META_LAST_MODIFIED, value=stamp.isoformat()))
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error("Failed to replace sync state", error=str(e))
            raise
        finally:
            session.close()

        logger.info("Sync state replaced", last_modified=stamp.isoformat())
        return stamp

    # ========== 单条记录 ==========

    def list_records(self, collection: str) -> List[Dict[str, Any]]:
        session = self.get_session()
        try:
            rows = session.query(SyncRecord).filter(
                SyncRecord.collection == collection
            ).order_by(SyncRecord.position).all()
            return [json.loads(row.payload) for row in rows]
        finally:
            session.close()

    def get_record(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        session = self.get_session()
        try:
            row = session.get(SyncRecord, (collection, record_id))
            return json.loads(row.payload) if row is not None else None
        finally:
            session.close()

    def save_record(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """新增或覆盖一条记录，并更新最后修改时间"""
        session = self.get_session()
        try:
            existing = session.get(SyncRecord, (collection, str(record['id'])))
            if existing is not None:
                position = existing.position
            else:
                position = (session.query(func.max(SyncRecord.position)).filter(
                    SyncRecord.collection == collection
                ).scalar() or 0) + 1
            session.merge(_to_row(collection, record, position))
            session.merge(SyncMeta(key=META_LAST_MODIFIED, value=self.clock.now().isoformat()))
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error("Failed to save record", collection=collection, error=str(e))
            raise
        finally:
            session.close()
        return record


def get_db(request: Request) -> DatabaseManager:
    """FastAPI 依赖: 当前应用的数据库管理器"""
    return request.app.state.db


def _to_row(collection: str, record: Dict[str, Any], position: int) -> SyncRecord:
    return SyncRecord(
        collection=collection,
        id=str(record['id']),
        payload=json.dumps(record, ensure_ascii=False),
        updated_at=record.get('updatedAt') or record.get('createdAt'),
        position=position
    )
