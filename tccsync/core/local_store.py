"""
本地存储

功能:
- 将整个 AppData 序列化为一个 JSON 文件（固定键名）
- 每个集合提供 get / add / update / delete
- 软删除（deletedAt 墓碑），活跃读取时过滤
- 每次修改后发出"数据已变更"信号
"""

import json
import os
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
import structlog

from tccsync.core.clock import MonotonicClock, utcnow
from tccsync.core.models import COLLECTION_FIELDS, AppData, Record, migrate_payload
from tccsync.errors import NotFoundError, PersistenceError, ValidationError

logger = structlog.get_logger()

STORAGE_KEY = 'mytcc2_data'

# update() 不允许覆盖的字段
PROTECTED_FIELDS = {'id', 'createdAt', 'created_at', 'deletedAt', 'deleted_at'}


class CollectionAccessor:
    """单个集合的 CRUD 访问器"""

    def __init__(self, store: 'LocalStore', name: str):
        self._store = store
        self.name = name

    def get(self) -> List[Record]:
        """获取所有未删除的记录"""
        return [
            record.model_copy(deep=True)
            for record in self._store._data.get_collection(self.name)
            if not record.is_deleted
        ]

    def get_by_id(self, record_id: str) -> Optional[Record]:
        """按 id 获取未删除的记录"""
        for record in self._store._data.get_collection(self.name):
            if record.id == record_id and not record.is_deleted:
                return record.model_copy(deep=True)
        return None

    def add(self, fields: Optional[Dict[str, Any]] = None) -> Record:
        """
        新增记录

        Args:
            fields: 领域字段

        Returns:
            新记录（已分配 id，createdAt = updatedAt = now）
        """
        fields = dict(fields or {})
        for key in ('createdAt', 'updatedAt', 'deletedAt', 'created_at', 'updated_at', 'deleted_at'):
            fields.pop(key, None)

        def mutate(data: AppData) -> Record:
            records = data.get_collection(self.name)
            record_id = str(fields.pop('id', None) or uuid.uuid4())
            if any(r.id == record_id for r in records):
                raise ValidationError(f"Duplicate id in {self.name}: {record_id}")

            now = self._store.clock.now()
            record = Record.model_validate({**fields, 'id': record_id, 'createdAt': now, 'updatedAt': now})
            records.append(record)
            return record

        return self._store._mutate(mutate, action='add', collection=self.name)

    def update(self, record_id: str, fields: Dict[str, Any]) -> Record:
        """
        部分更新记录

        Args:
            record_id: 记录 id
            fields: 需要合并的字段

        Raises:
            ValidationError: 试图覆盖 id / createdAt / deletedAt
            NotFoundError: 记录不存在或已删除
        """
        forbidden = PROTECTED_FIELDS.intersection(fields)
        if forbidden:
            raise ValidationError(f"Cannot override protected field(s): {', '.join(sorted(forbidden))}")

        def mutate(data: AppData) -> Record:
            records = data.get_collection(self.name)
            index = self._find(records, record_id)

            merged = records[index].to_dict()
            merged.update({k: v for k, v in fields.items() if k not in ('updatedAt', 'updated_at')})
            merged['updatedAt'] = self._store.clock.now()

            record = Record.model_validate(merged)
            records[index] = record
            return record

        return self._store._mutate(mutate, action='update', collection=self.name, id=record_id)

    def delete(self, record_id: str) -> Record:
        """软删除：设置 deletedAt 和 updatedAt，记录保留"""

        def mutate(data: AppData) -> Record:
            records = data.get_collection(self.name)
            index = self._find(records, record_id)

            now = self._store.clock.now()
            record = records[index].model_copy(update={'deleted_at': now, 'updated_at': now})
            records[index] = record
            return record

        return self._store._mutate(mutate, action='delete', collection=self.name, id=record_id)

    def _find(self, records: List[Record], record_id: str) -> int:
        for index, record in enumerate(records):
            if record.id == record_id and not record.is_deleted:
                return index
        raise NotFoundError(f"{self.name} record not found: {record_id}", status=404)


class LocalStore:
    """本地数据存储"""

    def __init__(self, state_dir: str, clock: Optional[MonotonicClock] = None):
        """
        初始化本地存储

        Args:
            state_dir: 状态目录
            clock: 时钟（测试时可注入）
        """
        self.state_dir = Path(state_dir)
        self.path = self.state_dir / f"{STORAGE_KEY}.json"
        self.clock = clock or MonotonicClock()

        self._listeners: List[Callable[[], None]] = []
        self._accessors: Dict[str, CollectionAccessor] = {}

        for name, field_name in COLLECTION_FIELDS.items():
            accessor = CollectionAccessor(self, name)
            self._accessors[name] = accessor
            setattr(self, field_name, accessor)

        self._data = self._load()

        logger.info(
            "Local store initialized",
            path=str(self.path),
            last_synced=self._data.last_synced.isoformat() if self._data.last_synced else None
        )

    # ========== 读取 ==========

    def collection(self, name: str) -> CollectionAccessor:
        """按序列化键名获取集合访问器"""
        try:
            return self._accessors[name]
        except KeyError:
            raise ValueError(f"Unknown collection: {name}")

    def snapshot(self) -> AppData:
        """完整快照（包括墓碑记录）"""
        return self._data.model_copy(deep=True)

    @property
    def watermark(self) -> Optional[datetime]:
        return self._data.last_synced

    @property
    def settings(self) -> Dict[str, Any]:
        return dict(self._data.user_settings)

    # ========== 同步写入（不发出变更信号）==========

    def replace(self, snapshot: AppData):
        """整体覆盖本地数据（拉取 / 冲突解决时使用）"""
        data = snapshot.model_copy(deep=True)
        self._persist(data)
        self._data = data
        self.clock.observe(data.latest_edit())
        self.clock.observe(data.last_synced)
        logger.info("Local data replaced", last_synced=str(data.last_synced))

    def set_watermark(self, timestamp: Optional[datetime]):
        """更新 lastSynced 水位线"""
        data = self._data.model_copy(update={'last_synced': timestamp})
        self._persist(data)
        self._data = data
        self.clock.observe(timestamp)
        logger.debug("Watermark updated", last_synced=str(timestamp))

    def restamp_changes(self, baseline: AppData) -> int:
        """
        重新标记 baseline 之后被修改的记录

        推送期间发生的本地编辑可能早于后端返回的水位线。这里用当前时间
        （时钟已观察到水位线）刷新这些记录的 updatedAt，使下一轮仍能检测到。
        不发出变更信号。

        Args:
            baseline: 已推送的快照

        Returns:
            重新标记的记录数（设置变化计为 1）
        """
        data = self._data.model_copy(deep=True)
        restamped = 0

        for name in COLLECTION_FIELDS:
            pushed = {record.id: record.to_dict() for record in baseline.get_collection(name)}
            for record in data.get_collection(name):
                if pushed.get(record.id) != record.to_dict():
                    record.updated_at = self.clock.now()
                    restamped += 1

        if data.user_settings != baseline.user_settings:
            data.user_settings['updatedAt'] = self.clock.now().isoformat()
            restamped += 1

        if restamped:
            self._persist(data)
            self._data = data
            logger.info("Edits made during sync kept for next round", records=restamped)

        return restamped

    # ========== 设置 ==========

    def update_settings(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        """合并标量设置"""

        def mutate(data: AppData) -> Dict[str, Any]:
            data.user_settings.update(fields)
            data.user_settings['updatedAt'] = self.clock.now().isoformat()
            return dict(data.user_settings)

        return self._mutate(mutate, action='update_settings', collection='userSettings')

    # ========== 变更信号 ==========

    def subscribe(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        注册"数据已变更"监听器

        Returns:
            取消注册的函数
        """
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _notify(self):
        for callback in list(self._listeners):
            try:
                callback()
            except Exception as e:
                logger.error("Data changed listener failed", error=str(e))

    # ========== 内部 ==========

    def _mutate(self, mutate: Callable[[AppData], Any], **log_context):
        """在副本上修改，持久化成功后替换内存数据并发出信号"""
        data = self._data.model_copy(deep=True)
        result = mutate(data)

        self._persist(data)
        self._data = data

        logger.debug("Local data mutated", **log_context)
        self._notify()
        return result

    def _persist(self, data: AppData):
        """原子写入（临时文件 + 替换）"""
        temp_file = self.path.with_suffix('.tmp')
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            with open(temp_file, 'w', encoding='utf-8') as f:
                json.dump(data.to_payload(), f, ensure_ascii=False, indent=2)
            os.replace(temp_file, self.path)
        except (OSError, TypeError, ValueError) as e:
            logger.error("Failed to persist local data", path=str(self.path), error=str(e))
            raise PersistenceError(f"Failed to save data: {e}") from e

    def _load(self) -> AppData:
        """读取本地数据，必要时迁移 / 修复"""
        if not self.path.exists():
            return AppData()

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                payload = json.load(f)
            payload, migrated = migrate_payload(payload) if isinstance(payload, dict) else (payload, False)
            repaired = _repair_timestamps(payload) if isinstance(payload, dict) else False
            data = AppData.from_payload(payload)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            backup = self.path.with_name(f"{self.path.name}.corrupt-{self.clock.now().strftime('%Y%m%d_%H%M%S')}")
            logger.error(
                "Failed to load local data, starting empty",
                path=str(self.path),
                backup=str(backup),
                error=str(e)
            )
            self.path.replace(backup)
            return AppData()

        self.clock.observe(data.latest_edit())

        if migrated or repaired:
            logger.info("Local data migrated", schema_migrated=migrated, timestamps_repaired=repaired)
            self._persist(data)

        return data


def _repair_timestamps(payload: Dict[str, Any]) -> bool:
    """补齐缺失的 createdAt / updatedAt"""
    repaired = False
    for name in COLLECTION_FIELDS:
        records = payload.get(name)
        if not isinstance(records, list):
            # 格式错误交给模型校验
            continue
        for record in records:
            if not isinstance(record, dict):
                continue
            if not record.get('createdAt'):
                record['createdAt'] = record.get('updatedAt') or utcnow().isoformat()
                repaired = True
            if not record.get('updatedAt'):
                record['updatedAt'] = record['createdAt']
                repaired = True
    return repaired
