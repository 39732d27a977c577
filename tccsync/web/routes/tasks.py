"""
Tasks API 路由 - 单条任务的增删改查
"""

from fastapi import APIRouter, Body, Depends, HTTPException
from typing import Any, Dict
import uuid
import structlog

from tccsync.core.clock import utcnow
from tccsync.web.database import DatabaseManager, get_db

logger = structlog.get_logger()

router = APIRouter()

COLLECTION = "tasks"


@router.get("")
async def list_tasks(db: DatabaseManager = Depends(get_db)):
    """获取所有未删除的任务"""
    tasks = [task for task in db.list_records(COLLECTION) if not task.get('deletedAt')]
    return {"success": True, "data": tasks}


@router.get("/{task_id}")
async def get_task(task_id: str, db: DatabaseManager = Depends(get_db)):
    """按 id 获取任务"""
    return {"success": True, "data": _require(db, task_id)}


@router.post("", status_code=201)
async def create_task(task: Dict[str, Any] = Body(...), db: DatabaseManager = Depends(get_db)):
    """
    创建任务

    没有 id 时自动分配，createdAt / updatedAt 由服务器设置。
    """
    task_id = str(task.get('id') or uuid.uuid4())
    if db.get_record(COLLECTION, task_id) is not None:
        raise HTTPException(status_code=409, detail=f"Task already exists: {task_id}")

    now = utcnow().isoformat()
    record = {**task, 'id': task_id, 'createdAt': now, 'updatedAt': now}
    record.pop('deletedAt', None)

    db.save_record(COLLECTION, record)
    logger.info("Task created", id=task_id)
    return {"success": True, "data": record}


@router.put("/{task_id}")
async def update_task(task_id: str, fields: Dict[str, Any] = Body(...), db: DatabaseManager = Depends(get_db)):
    """部分更新任务（id / createdAt 不可修改）"""
    record = _require(db, task_id)

    for key in ('id', 'createdAt', 'deletedAt'):
        fields.pop(key, None)
    record.update(fields)
    record['updatedAt'] = utcnow().isoformat()

    db.save_record(COLLECTION, record)
    logger.info("Task updated", id=task_id)
    return {"success": True, "data": record}


@router.delete("/{task_id}")
async def delete_task(task_id: str, db: DatabaseManager = Depends(get_db)):
    """软删除任务"""
    record = _require(db, task_id)

    now = utcnow().isoformat()
    record['deletedAt'] = now
    record['updatedAt'] = now

    db.save_record(COLLECTION, record)
    logger.info("Task deleted", id=task_id)
    return {"success": True, "data": {"id": task_id}}


def _require(db: DatabaseManager, task_id: str) -> Dict[str, Any]:
    record = db.get_record(COLLECTION, task_id)
    if record is None or record.get('deletedAt'):
        raise HTTPException(status_code=404, detail="Task not found")
    return record
