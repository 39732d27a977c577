"""
数据模型（pydantic）

AppData 是整个本地数据集的聚合根:
- 11 个记录集合
- userSettings 标量设置
- lastSynced 水位线
- schemaVersion 序列化版本

序列化格式使用 camelCase 键名，与远程后端的 JSON 文件保持一致。
"""

from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from tccsync.core.clock import ensure_aware
from tccsync.errors import ValidationError

SCHEMA_VERSION = 2

# 集合名（序列化键名） -> 模型字段名
COLLECTION_FIELDS: Dict[str, str] = {
    'tasks': 'tasks',
    'projects': 'projects',
    'modes': 'modes',
    'tags': 'tags',
    'wishes': 'wishes',
    'goals': 'goals',
    'memos': 'memos',
    'memoTemplates': 'memo_templates',
    'subTasks': 'sub_tasks',
    'dailyRecords': 'daily_records',
    'routineExecutions': 'routine_executions',
}

COLLECTIONS: Tuple[str, ...] = tuple(COLLECTION_FIELDS.keys())

# 不属于设置的顶层键
RESERVED_KEYS = set(COLLECTIONS) | {'schemaVersion', 'userSettings', 'lastSynced'}

TIMESTAMP_KEYS = ('createdAt', 'updatedAt', 'deletedAt')


class Record(BaseModel):
    """单条记录，领域字段原样保留"""

    model_config = ConfigDict(extra='allow', populate_by_name=True)

    id: str
    created_at: Optional[datetime] = Field(default=None, alias='createdAt')
    updated_at: Optional[datetime] = Field(default=None, alias='updatedAt')
    deleted_at: Optional[datetime] = Field(default=None, alias='deletedAt')

    @field_validator('id', mode='before')
    @classmethod
    def _coerce_id(cls, value):
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator('created_at', 'updated_at', 'deleted_at')
    @classmethod
    def _aware(cls, value):
        return ensure_aware(value)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def latest_timestamp(self) -> Optional[datetime]:
        """记录上最新的时间戳"""
        stamps = [t for t in (self.updated_at, self.created_at, self.deleted_at) if t is not None]
        return max(stamps) if stamps else None

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典（省略空的时间戳字段）"""
        data = self.model_dump(mode='json', by_alias=True)
        for key in TIMESTAMP_KEYS:
            if data.get(key) is None:
                data.pop(key, None)
        return data


class AppData(BaseModel):
    """本地数据集快照"""

    model_config = ConfigDict(populate_by_name=True)

    schema_version: int = Field(default=SCHEMA_VERSION, alias='schemaVersion')
    tasks: List[Record] = Field(default_factory=list)
    projects: List[Record] = Field(default_factory=list)
    modes: List[Record] = Field(default_factory=list)
    tags: List[Record] = Field(default_factory=list)
    wishes: List[Record] = Field(default_factory=list)
    goals: List[Record] = Field(default_factory=list)
    memos: List[Record] = Field(default_factory=list)
    memo_templates: List[Record] = Field(default_factory=list, alias='memoTemplates')
    sub_tasks: List[Record] = Field(default_factory=list, alias='subTasks')
    daily_records: List[Record] = Field(default_factory=list, alias='dailyRecords')
    routine_executions: List[Record] = Field(default_factory=list, alias='routineExecutions')
    user_settings: Dict[str, Any] = Field(default_factory=dict, alias='userSettings')
    last_synced: Optional[datetime] = Field(default=None, alias='lastSynced')

    @field_validator(*COLLECTION_FIELDS.values(), mode='before')
    @classmethod
    def _null_collection(cls, value):
        return [] if value is None else value

    @field_validator('user_settings', mode='before')
    @classmethod
    def _null_settings(cls, value):
        return {} if value is None else value

    @field_validator('last_synced')
    @classmethod
    def _aware(cls, value):
        return ensure_aware(value)

    @classmethod
    def from_payload(cls, payload: Any) -> 'AppData':
        """
        从 JSON 结构构建快照

        Args:
            payload: 反序列化后的 JSON 对象

        Returns:
            AppData

        Raises:
            ValidationError: 数据格式错误
        """
        if not isinstance(payload, dict):
            raise ValidationError(f"AppData payload must be an object, got {type(payload).__name__}")

        payload, _ = migrate_payload(payload)

        try:
            return cls.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError(f"Malformed AppData payload: {e.error_count()} invalid field(s): {e}")

    def to_payload(self) -> Dict[str, Any]:
        """转换为可序列化的字典"""
        payload: Dict[str, Any] = {'schemaVersion': self.schema_version}
        for name in COLLECTIONS:
            payload[name] = [record.to_dict() for record in self.get_collection(name)]
        payload['userSettings'] = dict(self.user_settings)
        payload['lastSynced'] = self.last_synced.isoformat() if self.last_synced else None
        return payload

    def get_collection(self, name: str) -> List[Record]:
        """按序列化键名获取集合"""
        try:
            return getattr(self, COLLECTION_FIELDS[name])
        except KeyError:
            raise ValueError(f"Unknown collection: {name}")

    def iter_records(self) -> Iterator[Tuple[str, Record]]:
        for name in COLLECTIONS:
            for record in self.get_collection(name):
                yield name, record

    def latest_edit(self) -> Optional[datetime]:
        """所有集合（包括墓碑记录）中最新的编辑时间，没有时间戳时返回 None"""
        latest = _parse_timestamp(self.user_settings.get('updatedAt'))
        for _, record in self.iter_records():
            stamp = record.latest_timestamp()
            if stamp is not None and (latest is None or stamp > latest):
                latest = stamp
        return latest

    def content_payload(self) -> Dict[str, Any]:
        """不含水位线的内容，用于比较两个快照是否内容相同"""
        payload = self.to_payload()
        payload.pop('lastSynced', None)
        return payload

    def count(self) -> Dict[str, Dict[str, int]]:
        """各集合的活跃 / 墓碑记录数"""
        stats = {}
        for name in COLLECTIONS:
            records = self.get_collection(name)
            deleted = sum(1 for r in records if r.is_deleted)
            stats[name] = {'active': len(records) - deleted, 'deleted': deleted}
        return stats


def migrate_payload(payload: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
    """
    将旧版本的数据迁移到当前版本

    v1: 没有 schemaVersion，设置字段（theme, summaryConfig ...）散落在顶层
    v2: 设置统一放在 userSettings 中

    Returns:
        (迁移后的数据, 是否发生迁移)

    Raises:
        ValidationError: schemaVersion 或 userSettings 类型错误
    """
    version = payload.get('schemaVersion', 1)
    if isinstance(version, bool) or not isinstance(version, int):
        raise ValidationError(f"Invalid schemaVersion: {version!r}")
    if version >= SCHEMA_VERSION:
        return payload, False

    settings = payload.get('userSettings') or {}
    if not isinstance(settings, dict):
        raise ValidationError(f"userSettings must be an object, got {type(settings).__name__}")

    migrated = {key: value for key, value in payload.items() if key in RESERVED_KEYS}
    settings = dict(settings)
    for key, value in payload.items():
        if key not in RESERVED_KEYS:
            settings.setdefault(key, value)

    migrated['userSettings'] = settings
    migrated['schemaVersion'] = SCHEMA_VERSION
    return migrated, True


def _parse_timestamp(value: Any) -> Optional[datetime]:
    """解析设置中的 ISO 时间字符串，无法解析时返回 None"""
    if isinstance(value, datetime):
        return ensure_aware(value)
    if not isinstance(value, str) or not value:
        return None
    try:
        return ensure_aware(datetime.fromisoformat(value.replace('Z', '+00:00')))
    except ValueError:
        return None
