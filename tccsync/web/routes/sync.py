"""
Sync API 路由 - 整体快照同步
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from typing import Any, Dict, Optional
from datetime import datetime
import structlog

from tccsync.core.clock import ensure_aware
from tccsync.core.models import COLLECTIONS
from tccsync.web.database import DatabaseManager, get_db

logger = structlog.get_logger()

router = APIRouter()


# ========== 数据模型 ==========

class SyncRequest(BaseModel):
    """同步请求"""
    lastSynced: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    force: bool = False  # 跳过并发检查（冲突解决时选择本地）


class SyncPayload(BaseModel):
    """同步数据"""
    lastSynced: Optional[str] = None
    data: Dict[str, Any]
    conflict: bool = False


class SyncResponse(BaseModel):
    """同步响应"""
    success: bool = True
    data: SyncPayload


# ========== API 端点 ==========

@router.get("", response_model=SyncResponse)
async def get_sync(
    lastSynced: Optional[str] = Query(None, description="客户端水位线（仅用于日志）"),
    db: DatabaseManager = Depends(get_db)
):
    """
    获取服务器上的完整数据

    Returns:
        {success, data: {lastSynced, data, conflict}}
    """
    state = db.load_state()
    logger.debug("Sync state requested", client_last_synced=lastSynced, server_last_modified=state['lastSynced'])
    return SyncResponse(data=SyncPayload(**state))


@router.post("", response_model=SyncResponse)
async def post_sync(body: SyncRequest, db: DatabaseManager = Depends(get_db)):
    """
    提交完整快照

    服务器在客户端水位线之后被修改过时返回 conflict=true 且不写入，
    除非请求带有 force=true。

    Returns:
        {success, data: {lastSynced, data, conflict}}
    """
    if body.data is None:
        raise HTTPException(status_code=400, detail="Data is required")

    _validate_data(body.data)

    server_modified = db.get_last_modified()
    if server_modified is not None and not body.force:
        client_synced = _parse_timestamp(body.lastSynced)
        if client_synced is None or client_synced < server_modified:
            logger.info(
                "Sync conflict",
                client_last_synced=body.lastSynced,
                server_last_modified=server_modified.isoformat()
            )
            return SyncResponse(data=SyncPayload(**db.load_state(), conflict=True))

    db.replace_state(body.data)

    state = db.load_state()
    logger.info("Sync data stored", last_modified=state['lastSynced'], forced=body.force)
    return SyncResponse(data=SyncPayload(**state))


def _validate_data(data: Dict[str, Any]):
    """每个集合必须是带 id 的对象列表"""
    for name in COLLECTIONS:
        records = data.get(name)
        if records is None:
            continue
        if not isinstance(records, list):
            raise HTTPException(status_code=400, detail=f"'{name}' must be a list")
        for record in records:
            if not isinstance(record, dict) or record.get('id') in (None, ''):
                raise HTTPException(status_code=400, detail=f"Every record in '{name}' needs an id")

    settings = data.get('userSettings')
    if settings is not None and not isinstance(settings, dict):
        raise HTTPException(status_code=400, detail="'userSettings' must be an object")


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return ensure_aware(datetime.fromisoformat(value.replace('Z', '+00:00')))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid lastSynced: {value}")
