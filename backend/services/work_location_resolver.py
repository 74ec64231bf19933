"""
Work Location Resolver - مواقع العمل المسموحة للموظف
============================================================
الموظف إما:
- لديه قائمة مواقع (work_locations: [id, ...]) - النظام الجديد
- أو موقع واحد مضمّن (work_location / personal_details.work_location) - النظام القديم

الاستراتيجيات تُجرب بالترتيب، وأول نتيجة غير فارغة هي المعتمدة.
المستدعي يحصل دائماً على قائمة WorkLocation بنفس الشكل.
لا ترمي أخطاء أبداً - القائمة الفارغة تعني "لا يوجد موقع معيّن".
"""
import logging
from typing import List, Optional

from pydantic import ValidationError

from models.attendance import WorkLocation, DEFAULT_RADIUS_METERS

logger = logging.getLogger(__name__)

LEGACY_LOCATION_ID = "legacy"


def _to_work_location(doc: dict, fallback_id: str) -> Optional[WorkLocation]:
    """تحويل مستند موقع إلى WorkLocation - يرجع None للمواقع التالفة"""
    radius = doc.get('radius_meters', doc.get('radius'))
    try:
        return WorkLocation(
            id=str(doc.get('id') or doc.get('_id') or fallback_id),
            name=doc.get('name') or doc.get('name_ar') or "Work Location",
            latitude=doc.get('latitude'),
            longitude=doc.get('longitude'),
            radius_meters=radius if radius is not None else DEFAULT_RADIUS_METERS,
        )
    except ValidationError as e:
        logger.warning(f"Skipping malformed work location {fallback_id}: {e.error_count()} errors")
        return None


class WorkLocationResolver:

    def __init__(self, db):
        self.db = db
        self.strategies = [
            ("multi_site", self._resolve_assigned_sites),
            ("legacy_site", self._resolve_legacy_site),
        ]

    async def resolve(self, employee: dict) -> List[WorkLocation]:
        for name, strategy in self.strategies:
            locations = await strategy(employee)
            if locations:
                logger.debug(f"Employee {employee.get('id')}: {len(locations)} site(s) via {name}")
                return locations
        return []

    async def _resolve_assigned_sites(self, employee: dict) -> List[WorkLocation]:
        ids = employee.get('work_locations')
        if not ids or not isinstance(ids, list):
            return []
        ids = [str(i) for i in ids]

        docs = await self.db.work_locations.find(
            {"id": {"$in": ids}, "is_active": {"$ne": False}},
            {"_id": 0}
        ).to_list(len(ids))

        # الحفاظ على ترتيب الموظف
        by_id = {doc.get('id'): doc for doc in docs}
        locations = []
        for location_id in ids:
            doc = by_id.get(location_id)
            if doc is None:
                continue
            location = _to_work_location(doc, location_id)
            if location:
                locations.append(location)
        return locations

    async def _resolve_legacy_site(self, employee: dict) -> List[WorkLocation]:
        legacy = employee.get('work_location') or (employee.get('personal_details') or {}).get('work_location')
        if not isinstance(legacy, dict):
            return []
        location = _to_work_location(legacy, LEGACY_LOCATION_ID)
        return [location] if location else []
