"""
Audit Service - سجل التدقيق لأحداث الحضور

الكتابة في السجل لا تؤثر أبداً على قرار الحضور:
- لكل كتابة مهلة خاصة بها
- الفشل يُسجل في اللوج ولا يُرفع
"""
import asyncio
import logging
import os
import uuid
from typing import List, Optional

from models.attendance import AuditEvent

logger = logging.getLogger(__name__)

# مهلة كتابة حدث تدقيق واحد (ثواني)
AUDIT_TIMEOUT_SECONDS = float(os.environ.get('AUDIT_TIMEOUT_SECONDS', 2))


class AuditSink:
    """واجهة سجل التدقيق - أي تنفيذ يستقبل حدثاً غير قابل للتعديل"""

    async def record(self, event: AuditEvent) -> None:
        raise NotImplementedError


class MongoAuditSink(AuditSink):
    """يكتب الأحداث في audit_logs"""

    def __init__(self, db):
        self.db = db

    async def record(self, event: AuditEvent) -> None:
        doc = {"id": str(uuid.uuid4()), **event.model_dump()}
        await self.db.audit_logs.insert_one(doc)


class BufferedAuditSink(AuditSink):
    """
    يجمع أحداث الطلب ثم يكتبها بعد انتهاء مهلة الطلب

    الاستخدام:
        audit = BufferedAuditSink(MongoAuditSink(db))
        try:
            await run_with_deadline(...)
        finally:
            await audit.flush()
    """

    def __init__(self, sink: AuditSink, timeout: Optional[float] = None):
        self.sink = sink
        self.timeout = timeout
        self.pending: List[AuditEvent] = []

    async def record(self, event: AuditEvent) -> None:
        self.pending.append(event)

    async def flush(self) -> None:
        events, self.pending = self.pending, []
        for event in events:
            await record_safely(self.sink, event, self.timeout)


async def record_safely(sink: AuditSink, event: AuditEvent, timeout: Optional[float] = None) -> bool:
    """كتابة حدث واحد بمهلة - يرجع False عند الفشل بدون رفع"""
    try:
        await asyncio.wait_for(sink.record(event), timeout=timeout or AUDIT_TIMEOUT_SECONDS)
        return True
    except asyncio.TimeoutError:
        logger.error(f"Audit log timed out for {event.action} {event.entity_id}")
    except Exception:
        logger.exception(f"Audit log failed for {event.action} {event.entity_id}")
    return False


async def get_audit_trail(db, entity_id: str, limit: int = 100) -> list:
    """جلب أحداث سجل معين - الأحدث أولاً"""
    return await db.audit_logs.find(
        {"entity_id": entity_id},
        {"_id": 0}
    ).sort("timestamp", -1).to_list(limit)
